from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from leadflow.context import get_correlation_id
from leadflow.core.auth import AuthUser, get_current_user as get_auth_user
from leadflow.core.database import get_db
from leadflow.core.rbac import permissions_for_roles, resolve_role
from leadflow.crm.errors import LifecycleError
from leadflow.crm.schemas import (
    DealCreate,
    DealDetail,
    DealRead,
    DealStage,
    DealStageChangeRequest,
    DealUpdate,
    DuplicateCheckRequest,
    DuplicateReport,
    FunnelReport,
    InteractionCreate,
    InteractionRead,
    LeadCreate,
    LeadDetail,
    LeadPriority,
    LeadRead,
    LeadSource,
    LeadStatus,
    LeadUpdate,
    MeetingCreate,
    MeetingRead,
    MeetingStatus,
    MeetingUpdate,
    MeetingView,
    PaymentCreate,
    PaymentRead,
    RsvpRequest,
    StatsPeriod,
    StatsReport,
    TaskAgenda,
    TaskCreate,
    TaskPriority,
    TaskRead,
    TaskStatus,
    TaskType,
    TaskUpdate,
    TaskView,
    UserCreate,
    UserRead,
)
from leadflow.crm.service import (
    ActorUser,
    DealService,
    InteractionService,
    LeadService,
    MeetingService,
    ReportService,
    TaskService,
    UserService,
    duplicate_service,
    require_actor,
)

leads_router = APIRouter(prefix="/api/crm", tags=["crm.leads"])
deals_router = APIRouter(prefix="/api/crm", tags=["crm.deals"])
tasks_router = APIRouter(prefix="/api/crm", tags=["crm.tasks"])
interactions_router = APIRouter(prefix="/api/crm", tags=["crm.interactions"])
meetings_router = APIRouter(prefix="/api/crm", tags=["crm.meetings"])
reports_router = APIRouter(prefix="/api/crm", tags=["crm.reports"])
users_router = APIRouter(prefix="/api/crm", tags=["crm.users"])
lead_service = LeadService()
deal_service = DealService()
task_service = TaskService()
interaction_service = InteractionService()
meeting_service = MeetingService()
report_service = ReportService()
user_service = UserService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def failure_response(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    if isinstance(exc, LifecycleError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=exc.message,
            details=exc.context or None,
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def get_current_user(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    db: Session = Depends(get_db),
) -> ActorUser:
    actor = ActorUser(
        user_id=auth_user.sub,
        role=resolve_role(auth_user.roles),
        permissions=permissions_for_roles(auth_user.roles),
        correlation_id=get_correlation_id() or getattr(request.state, "correlation_id", None),
    )
    if not actor.is_anonymous:
        actor.is_active = user_service.is_approved(db, actor.user_uuid)
    return actor


# Leads


@leads_router.get("/leads", response_model=list[LeadRead])
def list_leads(
    request: Request,
    status_filter: LeadStatus | None = Query(default=None, alias="status"),
    source: LeadSource | None = None,
    priority: LeadPriority | None = None,
    assigned_to: uuid.UUID | None = None,
    q: str | None = None,
    cursor: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        filters = {"status": status_filter, "source": source, "priority": priority, "assigned_to": assigned_to, "q": q}
        return lead_service.list_leads(db, user, filters, cursor, limit)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_lead_list_failed")


@leads_router.post("/leads", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, user, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_lead_create_failed")


@leads_router.post("/leads/check-duplicate", response_model=DuplicateReport)
def check_duplicate(
    request: Request,
    dto: DuplicateCheckRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DuplicateReport | JSONResponse:
    try:
        require_actor(user, "crm.leads.read")
        return duplicate_service.check_duplicate(db, dto.model_dump(exclude={"exclude_id"}), dto.exclude_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_lead_duplicate_check_failed")


@leads_router.get("/leads/{lead_id}", response_model=LeadDetail)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadDetail | JSONResponse:
    try:
        return lead_service.get_lead(db, user, lead_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_lead_get_failed")


@leads_router.patch("/leads/{lead_id}", response_model=LeadRead)
def patch_lead(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadUpdate,
    contact_triggering: bool = False,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_lead(db, user, lead_id, dto, contact_triggering=contact_triggering)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_lead_update_failed")


@leads_router.delete("/leads/{lead_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        lead_service.delete_lead(db, user, lead_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_lead_delete_failed")


# Deals


@deals_router.get("/deals", response_model=list[DealRead])
def list_deals(
    request: Request,
    stage: DealStage | None = None,
    owner_id: uuid.UUID | None = None,
    lead_id: uuid.UUID | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DealRead] | JSONResponse:
    try:
        return deal_service.list_deals(db, user, {"stage": stage, "owner_id": owner_id, "lead_id": lead_id})
    except HTTPException as exc:
        return failure_response(request, exc, "crm_deal_list_failed")


@deals_router.post("/deals", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.create_deal(db, user, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_deal_create_failed")


@deals_router.get("/deals/{deal_id}", response_model=DealDetail)
def get_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealDetail | JSONResponse:
    try:
        return deal_service.get_deal(db, user, deal_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_deal_get_failed")


@deals_router.patch("/deals/{deal_id}", response_model=DealRead)
def patch_deal(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.update_deal(db, user, deal_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_deal_update_failed")


@deals_router.post("/deals/{deal_id}/stage", response_model=DealRead)
def change_deal_stage(
    request: Request,
    deal_id: uuid.UUID,
    dto: DealStageChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.update_stage(db, user, deal_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_deal_stage_change_failed")


@deals_router.delete("/deals/{deal_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_deal(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        deal_service.delete_deal(db, user, deal_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_deal_delete_failed")


@deals_router.get("/deals/{deal_id}/payments", response_model=list[PaymentRead])
def list_payments(
    request: Request,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[PaymentRead] | JSONResponse:
    try:
        return deal_service.list_payments(db, user, deal_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_payment_list_failed")


@deals_router.post("/deals/{deal_id}/payments", response_model=PaymentRead, status_code=status.HTTP_201_CREATED)
def record_payment(
    request: Request,
    deal_id: uuid.UUID,
    dto: PaymentCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PaymentRead | JSONResponse:
    try:
        return deal_service.record_payment(db, user, deal_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_payment_create_failed")


@deals_router.delete("/deals/{deal_id}/payments/{payment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_payment(
    request: Request,
    deal_id: uuid.UUID,
    payment_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        deal_service.delete_payment(db, user, deal_id, payment_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_payment_delete_failed")


# Tasks


def _task_filters(
    status_filter: TaskStatus | None = Query(default=None, alias="status"),
    assigned_to: uuid.UUID | None = None,
    lead_id: uuid.UUID | None = None,
    priority: TaskPriority | None = None,
    task_type: TaskType | None = Query(default=None, alias="type"),
) -> dict[str, Any]:
    return {
        "status": status_filter,
        "assigned_to": assigned_to,
        "lead_id": lead_id,
        "priority": priority,
        "type": task_type,
    }


@tasks_router.get("/tasks", response_model=list[TaskRead])
def list_tasks(
    request: Request,
    view: TaskView = "all",
    filters: dict[str, Any] = Depends(_task_filters),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        return task_service.list_tasks(db, user, view, filters)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_task_list_failed")


@tasks_router.post("/tasks", response_model=TaskRead, status_code=status.HTTP_201_CREATED)
def create_task(
    request: Request,
    dto: TaskCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.create_task(db, user, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_task_create_failed")


@tasks_router.get("/tasks/agenda", response_model=TaskAgenda)
def get_task_agenda(
    request: Request,
    filters: dict[str, Any] = Depends(_task_filters),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskAgenda | JSONResponse:
    try:
        return task_service.get_agenda(db, user, filters)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_task_agenda_failed")


@tasks_router.get("/tasks/{task_id}", response_model=TaskRead)
def get_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.get_task(db, user, task_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_task_get_failed")


@tasks_router.patch("/tasks/{task_id}", response_model=TaskRead)
def patch_task(
    request: Request,
    task_id: uuid.UUID,
    dto: TaskUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.update_task(db, user, task_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_task_update_failed")


@tasks_router.post("/tasks/{task_id}/complete", response_model=TaskRead)
def complete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.complete_task(db, user, task_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_task_complete_failed")


@tasks_router.post("/tasks/{task_id}/reopen", response_model=TaskRead)
def reopen_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        return task_service.reopen_task(db, user, task_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_task_reopen_failed")


@tasks_router.delete("/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        task_service.delete_task(db, user, task_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_task_delete_failed")


# Interactions


@interactions_router.get("/leads/{lead_id}/interactions", response_model=list[InteractionRead])
def list_interactions(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[InteractionRead] | JSONResponse:
    try:
        return interaction_service.list_interactions(db, user, lead_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_interaction_list_failed")


@interactions_router.post(
    "/leads/{lead_id}/interactions",
    response_model=InteractionRead,
    status_code=status.HTTP_201_CREATED,
)
def record_interaction(
    request: Request,
    lead_id: uuid.UUID,
    dto: InteractionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> InteractionRead | JSONResponse:
    try:
        return interaction_service.record_interaction(db, user, lead_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_interaction_create_failed")


# Meetings


def _meeting_filters(
    status_filter: MeetingStatus | None = Query(default=None, alias="status"),
    organizer_id: uuid.UUID | None = None,
    lead_id: uuid.UUID | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
) -> dict[str, Any]:
    return {
        "status": status_filter,
        "organizer_id": organizer_id,
        "lead_id": lead_id,
        "date_from": date_from,
        "date_to": date_to,
    }


@meetings_router.get("/meetings", response_model=list[MeetingRead])
def list_meetings(
    request: Request,
    view: MeetingView = "all",
    filters: dict[str, Any] = Depends(_meeting_filters),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[MeetingRead] | JSONResponse:
    try:
        return meeting_service.list_meetings(db, user, view, filters)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_meeting_list_failed")


@meetings_router.post("/meetings", response_model=MeetingRead, status_code=status.HTTP_201_CREATED)
def create_meeting(
    request: Request,
    dto: MeetingCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MeetingRead | JSONResponse:
    try:
        return meeting_service.create_meeting(db, user, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_meeting_create_failed")


@meetings_router.get("/meetings/{meeting_id}", response_model=MeetingRead)
def get_meeting(
    request: Request,
    meeting_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MeetingRead | JSONResponse:
    try:
        return meeting_service.get_meeting(db, user, meeting_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_meeting_get_failed")


@meetings_router.patch("/meetings/{meeting_id}", response_model=MeetingRead)
def patch_meeting(
    request: Request,
    meeting_id: uuid.UUID,
    dto: MeetingUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MeetingRead | JSONResponse:
    try:
        return meeting_service.update_meeting(db, user, meeting_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_meeting_update_failed")


@meetings_router.post("/meetings/{meeting_id}/rsvp", response_model=MeetingRead)
def respond_to_meeting(
    request: Request,
    meeting_id: uuid.UUID,
    dto: RsvpRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> MeetingRead | JSONResponse:
    try:
        return meeting_service.respond(db, user, meeting_id, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_meeting_rsvp_failed")


@meetings_router.delete("/meetings/{meeting_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_meeting(
    request: Request,
    meeting_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        meeting_service.delete_meeting(db, user, meeting_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_meeting_delete_failed")


# Reports


@reports_router.get("/reports/funnel", response_model=FunnelReport)
def get_funnel(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelReport | JSONResponse:
    try:
        return report_service.get_funnel(db, user)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_report_funnel_failed")


@reports_router.get("/reports/stats", response_model=StatsReport)
def get_stats(
    request: Request,
    period: StatsPeriod = "week",
    assigned_to: uuid.UUID | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StatsReport | JSONResponse:
    try:
        return report_service.get_stats(db, user, period, assigned_to)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_report_stats_failed")


# Users


@users_router.get("/users", response_model=list[UserRead])
def list_users(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[UserRead] | JSONResponse:
    try:
        return user_service.list_users(db, user)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_user_list_failed")


@users_router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    request: Request,
    dto: UserCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        return user_service.create_user(db, user, dto)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_user_create_failed")


@users_router.post("/users/{user_id}/approve", response_model=UserRead)
def approve_user(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        return user_service.approve_user(db, user, user_id)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_user_approve_failed")


@users_router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    request: Request,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        user_service.delete_user(db, user, user_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return failure_response(request, exc, "crm_user_delete_failed")
