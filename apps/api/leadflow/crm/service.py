from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from leadflow import audit, events
from leadflow.core.auth import ANONYMOUS_SUBJECT
from leadflow.core.config import get_settings
from leadflow.crm.errors import (
    ConflictError,
    DependencyFailure,
    ForbiddenError,
    LifecycleValidationError,
    NotFoundError,
    UnauthorizedError,
)
from leadflow.crm.lifecycle import (
    FOLLOW_UP_TASK_TYPES,
    IDENTIFIER_LABELS,
    DealWriteSet,
    SecondaryWrite,
    build_funnel,
    classify_tasks,
    duplicate_message,
    find_matched_field,
    meeting_window,
    normalize_identifiers,
    organizer_participant,
    payment_values,
    plan_deal_creation,
    plan_deal_stage_change,
    plan_deal_update,
    plan_interaction,
    plan_lead_creation,
    plan_lead_update,
    plan_meeting_creation,
    plan_meeting_participants,
    plan_meeting_update,
    rsvp_values,
    sum_values,
    task_completion_values,
    trend_percentage,
)
from leadflow.crm.models import (
    CRMDeal,
    CRMInteraction,
    CRMLead,
    CRMMeeting,
    CRMMeetingParticipant,
    CRMNotificationIntent,
    CRMPayment,
    CRMTask,
    CRMUser,
)
from leadflow.crm.repositories import (
    DealRepository,
    InteractionRepository,
    LeadRepository,
    MeetingRepository,
    PaymentRepository,
    TaskRepository,
    UserRepository,
)
from leadflow.crm.schemas import (
    DealCreate,
    DealDetail,
    DealRead,
    DealStageChangeRequest,
    DealUpdate,
    DuplicateLeadSummary,
    DuplicateReport,
    FunnelReport,
    FunnelStage,
    InteractionCreate,
    InteractionRead,
    LeadCreate,
    LeadDetail,
    LeadRead,
    LeadUpdate,
    MeetingCreate,
    MeetingRead,
    MeetingUpdate,
    PaymentCreate,
    PaymentRead,
    RsvpRequest,
    StatsReport,
    TaskAgenda,
    TaskCreate,
    TaskRead,
    TaskUpdate,
    UserCreate,
    UserRead,
)
from leadflow.metrics import observe_duplicate_check, observe_secondary_write_failure, observe_transition
from leadflow.otel import operation_span


logger = logging.getLogger("leadflow.lifecycle")

STATS_PERIOD_DAYS = {"week": 7, "month": 30}
STORE_CONFLICT_MESSAGE = "A lead with this phone, email, or social handle already exists"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_user_uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        return uuid.uuid5(uuid.NAMESPACE_URL, f"leadflow-actor:{value}")


@dataclass
class ActorUser:
    user_id: str
    role: str = "member"
    permissions: set[str] = field(default_factory=set)
    correlation_id: str | None = None
    is_active: bool = True

    @property
    def is_anonymous(self) -> bool:
        return self.user_id == ANONYMOUS_SUBJECT

    @property
    def user_uuid(self) -> uuid.UUID:
        return _coerce_user_uuid(self.user_id)


def require_actor(actor_user: ActorUser, permission: str | None = None) -> None:
    if actor_user.is_anonymous:
        raise UnauthorizedError("authentication required")
    if not actor_user.is_active:
        raise ForbiddenError("account is pending approval", code="user_pending_approval")
    if permission is not None and permission not in actor_user.permissions:
        raise ForbiddenError(f"Missing permission: {permission}", context={"permission": permission})


def _record_transition(entity_type: str, entity_id: uuid.UUID, from_state: str | None, to_state: str) -> None:
    observe_transition(entity_type, to_state)
    logger.info(
        "lifecycle.transition",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "from_state": from_state,
            "to_state": to_state,
        },
    )


def _write_secondary(session: Session, write: SecondaryWrite) -> None:
    try:
        session.execute(
            update(CRMLead)
            .where(CRMLead.id == write.entity_id)
            .values(**write.values, updated_at=utcnow())
        )
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise DependencyFailure(write.operation, f"{write.operation} failed; the primary record was saved") from exc


def apply_secondary_write(session: Session, write: SecondaryWrite | None, warnings: list[str]) -> bool:
    """Apply a cross-entity write after the primary commit.

    A failure never undoes the primary write; it is logged, counted and
    reported back through ``warnings``.
    """
    if write is None:
        return True
    try:
        _write_secondary(session, write)
    except DependencyFailure as failure:
        logger.error(
            "lifecycle.secondary_write_failed",
            exc_info=True,
            extra={
                "operation": failure.operation,
                "entity_type": write.entity_type,
                "entity_id": str(write.entity_id),
                "error": str(failure.__cause__),
            },
        )
        observe_secondary_write_failure(failure.operation)
        warnings.append(failure.message)
        return False

    new_status = write.values.get("status")
    if new_status is not None:
        _record_transition(write.entity_type, write.entity_id, write.from_state, new_status)
    return True


def _enqueue_notification(
    session: Session,
    intent_type: str,
    recipient_user_id: uuid.UUID,
    entity_type: str,
    entity_id: uuid.UUID,
    payload: dict[str, Any],
) -> None:
    # Delivery happens elsewhere; the intent commits with the caller's transaction.
    session.add(
        CRMNotificationIntent(
            intent_type=intent_type,
            recipient_user_id=recipient_user_id,
            entity_type=entity_type,
            entity_id=entity_id,
            payload_json=json.dumps(payload),
        )
    )


class DuplicateService:
    def __init__(self) -> None:
        self.leads = LeadRepository()
        self.users = UserRepository()

    def check_duplicate(
        self,
        session: Session,
        identifiers: Mapping[str, Any],
        exclude_id: uuid.UUID | None = None,
    ) -> DuplicateReport:
        normalized = normalize_identifiers(identifiers)
        if not normalized:
            observe_duplicate_check(False)
            return DuplicateReport(is_duplicate=False)

        existing = self.leads.find_duplicate(session, normalized, exclude_id)
        if existing is None:
            observe_duplicate_check(False)
            return DuplicateReport(is_duplicate=False)

        matched = find_matched_field(existing, normalized) or next(iter(normalized))
        assignee_name = self.users.name_of(session, existing.assigned_to)
        report = DuplicateReport(
            is_duplicate=True,
            matched_field=IDENTIFIER_LABELS[matched],
            existing_lead=DuplicateLeadSummary(
                id=existing.id,
                name=existing.name,
                phone=existing.phone,
                email=existing.email,
                status=existing.status,
                company_name=existing.company_name,
                assigned_to=existing.assigned_to,
                assigned_user_name=assignee_name,
            ),
            message=duplicate_message(matched, existing.name, assignee_name),
        )
        observe_duplicate_check(True)
        logger.info(
            "duplicate.detected",
            extra={"matched_field": IDENTIFIER_LABELS[matched], "lead_id": str(existing.id)},
        )
        return report

    def raise_if_duplicate(
        self,
        session: Session,
        identifiers: Mapping[str, Any],
        exclude_id: uuid.UUID | None = None,
    ) -> None:
        report = self.check_duplicate(session, identifiers, exclude_id)
        if report.is_duplicate:
            raise self._conflict(report)

    def conflict_after_integrity_error(
        self,
        session: Session,
        identifiers: Mapping[str, Any],
        exclude_id: uuid.UUID | None = None,
    ) -> ConflictError:
        report = self.check_duplicate(session, identifiers, exclude_id)
        if report.is_duplicate:
            return self._conflict(report)
        return ConflictError(STORE_CONFLICT_MESSAGE, code="duplicate_lead")

    def _conflict(self, report: DuplicateReport) -> ConflictError:
        return ConflictError(
            report.message or STORE_CONFLICT_MESSAGE,
            code="duplicate_lead",
            context={
                "matched_field": report.matched_field,
                "existing_lead": report.existing_lead.model_dump(mode="json") if report.existing_lead else None,
            },
        )


duplicate_service = DuplicateService()


class LeadService:
    entity_type = "crm.lead"

    def __init__(self) -> None:
        self.leads = LeadRepository()
        self.tasks = TaskRepository()
        self.interactions = InteractionRepository()
        self.users = UserRepository()

    def create_lead(self, session: Session, actor_user: ActorUser, dto: LeadCreate) -> LeadRead:
        require_actor(actor_user, "crm.leads.create")
        with operation_span("crm.lead.create", actor_user.user_id):
            fields = dto.model_dump(mode="python")
            if fields.get("email") is not None:
                fields["email"] = str(fields["email"])

            duplicate_service.raise_if_duplicate(session, fields)
            plan = plan_lead_creation(fields, actor_user.user_uuid, utcnow())

            lead = CRMLead(**plan.values)
            session.add(lead)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise duplicate_service.conflict_after_integrity_error(session, fields) from None

            created = self._to_read(lead)
            _record_transition("lead", lead.id, None, plan.to_status)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(lead.id),
                action="create",
                before=None,
                after=created.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.lead.created",
                    actor_user.user_id,
                    {"lead_id": str(lead.id), "status": lead.status, "source": lead.source},
                )
            )
            return created

    def list_leads(
        self,
        session: Session,
        actor_user: ActorUser,
        filters: dict[str, Any],
        cursor: str | None,
        limit: int,
    ) -> list[LeadRead]:
        require_actor(actor_user, "crm.leads.read")
        offset = int(cursor) if cursor and cursor.isdigit() else 0
        return [self._to_read(lead) for lead in self.leads.list(session, filters, offset, limit)]

    def get_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> LeadDetail:
        require_actor(actor_user, "crm.leads.read")
        lead = self._get_lead(session, lead_id)
        return LeadDetail(
            **self._to_read(lead).model_dump(),
            assigned_user_name=self.users.name_of(session, lead.assigned_to),
            interactions_count=self.interactions.count_for_lead(session, lead.id),
            pending_tasks_count=self.tasks.count_pending(session, lead_id=lead.id),
        )

    def update_lead(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: LeadUpdate,
        *,
        contact_triggering: bool = False,
    ) -> LeadRead:
        require_actor(actor_user, "crm.leads.update")
        with operation_span("crm.lead.update", actor_user.user_id):
            lead = self._get_lead(session, lead_id)
            patch = dto.model_dump(exclude_unset=True)
            if patch.get("email") is not None:
                patch["email"] = str(patch["email"])

            duplicate_service.raise_if_duplicate(session, patch, exclude_id=lead.id)
            plan = plan_lead_update(lead, patch, utcnow(), contact_triggering=contact_triggering)
            if not plan.values:
                return self._to_read(lead)

            before = self._to_read(lead).model_dump(mode="json")
            for key, value in plan.values.items():
                setattr(lead, key, value)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise duplicate_service.conflict_after_integrity_error(session, patch, lead_id) from None

            updated = self._to_read(lead)
            if plan.status_changed:
                _record_transition("lead", lead.id, plan.from_status, plan.to_status)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(lead.id),
                action="update",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.lead.updated",
                    actor_user.user_id,
                    {
                        "lead_id": str(lead.id),
                        "from_status": plan.from_status,
                        "status": updated.status,
                        "contact_triggering": contact_triggering,
                    },
                )
            )
            return updated

    def delete_lead(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> None:
        require_actor(actor_user, "crm.leads.delete")
        lead = self._get_lead(session, lead_id)
        before = self._to_read(lead).model_dump(mode="json")
        # Tasks and interactions go with the lead; deals are only unlinked.
        session.delete(lead)
        session.commit()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(lead_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(events.build_envelope("crm.lead.deleted", actor_user.user_id, {"lead_id": str(lead_id)}))

    def _get_lead(self, session: Session, lead_id: uuid.UUID) -> CRMLead:
        lead = self.leads.get(session, lead_id)
        if lead is None:
            raise NotFoundError("lead not found", context={"lead_id": str(lead_id)})
        return lead

    def _to_read(self, lead: CRMLead) -> LeadRead:
        return LeadRead.model_validate(lead)


class DealService:
    entity_type = "crm.deal"

    def __init__(self) -> None:
        self.deals = DealRepository()
        self.leads = LeadRepository()
        self.payments = PaymentRepository()

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        require_actor(actor_user, "crm.deals.create")
        with operation_span("crm.deal.create", actor_user.user_id):
            lead = self._get_linked_lead(session, dto.lead_id)
            now = utcnow()
            plan = plan_deal_creation(
                dto.model_dump(),
                actor_user.user_uuid,
                now.date(),
                now,
                lead=lead,
                default_currency=get_settings().default_currency,
            )

            deal = CRMDeal(**plan.values)
            session.add(deal)
            session.commit()
            deal_id = deal.id

            warnings: list[str] = []
            apply_secondary_write(session, plan.lead_write, warnings)

            deal = self._get_deal(session, deal_id)
            created = self._to_read(deal, warnings)
            _record_transition("deal", deal.id, None, plan.to_stage)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(deal.id),
                action="create",
                before=None,
                after=created.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.deal.created",
                    actor_user.user_id,
                    {"deal_id": str(deal.id), "lead_id": _str_or_none(deal.lead_id), "stage": deal.stage},
                )
            )
            self._publish_closed(actor_user, deal, plan)
            return created

    def list_deals(self, session: Session, actor_user: ActorUser, filters: dict[str, Any]) -> list[DealRead]:
        require_actor(actor_user, "crm.deals.read")
        return [self._to_read(deal) for deal in self.deals.list(session, filters)]

    def get_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> DealDetail:
        require_actor(actor_user, "crm.deals.read")
        return DealDetail.model_validate(self._get_deal(session, deal_id))

    def update_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID, dto: DealUpdate) -> DealRead:
        require_actor(actor_user, "crm.deals.update")
        with operation_span("crm.deal.update", actor_user.user_id):
            deal = self._get_deal(session, deal_id)
            lead = self.leads.get(session, deal.lead_id) if deal.lead_id is not None else None
            now = utcnow()
            plan = plan_deal_update(deal, dto.model_dump(exclude_unset=True), now.date(), now, lead=lead)
            return self._apply(session, actor_user, deal, plan, action="update")

    def update_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: DealStageChangeRequest,
    ) -> DealRead:
        require_actor(actor_user, "crm.deals.update")
        with operation_span("crm.deal.update_stage", actor_user.user_id):
            deal = self._get_deal(session, deal_id)
            lead = self.leads.get(session, deal.lead_id) if deal.lead_id is not None else None
            now = utcnow()
            plan = plan_deal_stage_change(deal, dto.stage, now.date(), now, lost_reason=dto.lost_reason, lead=lead)
            return self._apply(session, actor_user, deal, plan, action="change_stage")

    def delete_deal(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> None:
        require_actor(actor_user, "crm.deals.delete")
        deal = self._get_deal(session, deal_id)
        before = self._to_read(deal).model_dump(mode="json")
        session.delete(deal)
        session.commit()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )

    def list_payments(self, session: Session, actor_user: ActorUser, deal_id: uuid.UUID) -> list[PaymentRead]:
        require_actor(actor_user, "crm.deals.read")
        deal = self._get_deal(session, deal_id)
        return [PaymentRead.model_validate(payment) for payment in self.payments.list_for_deal(session, deal.id)]

    def record_payment(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        dto: PaymentCreate,
    ) -> PaymentRead:
        require_actor(actor_user, "crm.deals.update")
        with operation_span("crm.deal.record_payment", actor_user.user_id):
            deal = self._get_deal(session, deal_id)
            payment = CRMPayment(deal_id=deal.id, recorded_by=actor_user.user_uuid, **dto.model_dump())
            session.add(payment)
            session.flush()
            self._refresh_totals(session, deal)
            session.commit()

            recorded = PaymentRead.model_validate(payment)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type="crm.payment",
                entity_id=str(payment.id),
                action="create",
                before=None,
                after=recorded.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.deal.payment_recorded",
                    actor_user.user_id,
                    {
                        "deal_id": str(deal.id),
                        "payment_id": str(payment.id),
                        "amount": str(payment.amount),
                        "amount_received": str(deal.amount_received),
                        "payment_status": deal.payment_status,
                    },
                )
            )
            return recorded

    def delete_payment(
        self,
        session: Session,
        actor_user: ActorUser,
        deal_id: uuid.UUID,
        payment_id: uuid.UUID,
    ) -> None:
        require_actor(actor_user, "crm.deals.update")
        deal = self._get_deal(session, deal_id)
        payment = self.payments.get(session, payment_id)
        if payment is None or payment.deal_id != deal.id:
            raise NotFoundError("payment not found", context={"deal_id": str(deal_id), "payment_id": str(payment_id)})
        before = PaymentRead.model_validate(payment).model_dump(mode="json")
        session.delete(payment)
        session.flush()
        self._refresh_totals(session, deal)
        session.commit()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type="crm.payment",
            entity_id=str(payment_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )

    def _refresh_totals(self, session: Session, deal: CRMDeal) -> None:
        totals = payment_values(self.payments.amounts_for_deal(session, deal.id), deal.deal_value)
        for key, value in totals.items():
            setattr(deal, key, value)

    def _apply(
        self,
        session: Session,
        actor_user: ActorUser,
        deal: CRMDeal,
        plan: DealWriteSet,
        *,
        action: str,
    ) -> DealRead:
        if not plan.values:
            return self._to_read(deal)

        before = self._to_read(deal).model_dump(mode="json")
        for key, value in plan.values.items():
            setattr(deal, key, value)
        session.commit()
        deal_id = deal.id

        warnings: list[str] = []
        apply_secondary_write(session, plan.lead_write, warnings)

        deal = self._get_deal(session, deal_id)
        updated = self._to_read(deal, warnings)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(deal.id),
            action=action,
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        if plan.stage_changed:
            _record_transition("deal", deal.id, plan.from_stage, plan.to_stage)
            events.publish(
                events.build_envelope(
                    "crm.deal.stage_changed",
                    actor_user.user_id,
                    {
                        "deal_id": str(deal.id),
                        "lead_id": _str_or_none(deal.lead_id),
                        "from_stage": plan.from_stage,
                        "stage": plan.to_stage,
                    },
                )
            )
            self._publish_closed(actor_user, deal, plan)
        return updated

    def _publish_closed(self, actor_user: ActorUser, deal: CRMDeal, plan: DealWriteSet) -> None:
        if plan.to_stage not in {"won", "lost"} or not plan.stage_changed:
            return
        events.publish(
            events.build_envelope(
                f"crm.deal.closed_{plan.to_stage}",
                actor_user.user_id,
                {
                    "deal_id": str(deal.id),
                    "lead_id": _str_or_none(deal.lead_id),
                    "deal_value": str(deal.deal_value),
                    "currency": deal.currency,
                },
            )
        )

    def _get_linked_lead(self, session: Session, lead_id: uuid.UUID | None) -> CRMLead | None:
        if lead_id is None:
            return None
        lead = self.leads.get(session, lead_id)
        if lead is None:
            raise NotFoundError("lead not found", context={"lead_id": str(lead_id)})
        return lead

    def _get_deal(self, session: Session, deal_id: uuid.UUID) -> CRMDeal:
        deal = self.deals.get(session, deal_id)
        if deal is None:
            raise NotFoundError("deal not found", context={"deal_id": str(deal_id)})
        return deal

    def _to_read(self, deal: CRMDeal, warnings: list[str] | None = None) -> DealRead:
        read = DealRead.model_validate(deal)
        read.warnings = list(warnings or [])
        return read


class TaskService:
    entity_type = "crm.task"
    clearable_fields = {"description", "due_time"}

    def __init__(self) -> None:
        self.tasks = TaskRepository()
        self.leads = LeadRepository()

    def create_task(self, session: Session, actor_user: ActorUser, dto: TaskCreate) -> TaskRead:
        require_actor(actor_user, "crm.tasks.create")
        if dto.lead_id is not None and self.leads.get(session, dto.lead_id) is None:
            raise NotFoundError("lead not found", context={"lead_id": str(dto.lead_id)})

        task = CRMTask(**dto.model_dump(), created_by=actor_user.user_uuid, status="pending")
        session.add(task)
        session.flush()
        self._enqueue_assignment(session, actor_user, task)
        session.commit()
        task_id = task.id

        warnings: list[str] = []
        if dto.lead_id is not None and dto.type in FOLLOW_UP_TASK_TYPES:
            apply_secondary_write(
                session,
                SecondaryWrite(
                    operation="task.create.lead_follow_up",
                    entity_type="lead",
                    entity_id=dto.lead_id,
                    values={"next_follow_up_date": dto.due_date},
                ),
                warnings,
            )

        task = self._get_task(session, task_id)
        created = self._to_read(task, warnings)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(task.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.task.created",
                actor_user.user_id,
                {"task_id": str(task.id), "lead_id": _str_or_none(task.lead_id), "assigned_to": str(task.assigned_to)},
            )
        )
        return created

    def list_tasks(
        self,
        session: Session,
        actor_user: ActorUser,
        view: str,
        filters: dict[str, Any],
    ) -> list[TaskRead]:
        """Tasks for one view; ``all`` includes completed tasks, the bucket views only pending ones."""
        require_actor(actor_user, "crm.tasks.read")
        if view == "all":
            return [self._to_read(task) for task in self.tasks.list(session, filters)]

        buckets = classify_tasks(self.tasks.list(session, filters, pending_only=True), utcnow().date())
        selected = {"overdue": buckets.overdue, "today": buckets.due_today, "upcoming": buckets.upcoming}[view]
        return [self._to_read(task) for task in selected]

    def get_agenda(self, session: Session, actor_user: ActorUser, filters: dict[str, Any]) -> TaskAgenda:
        require_actor(actor_user, "crm.tasks.read")
        today = utcnow().date()
        buckets = classify_tasks(self.tasks.list(session, filters, pending_only=True), today)
        return TaskAgenda(
            today=today,
            overdue=[self._to_read(task) for task in buckets.overdue],
            due_today=[self._to_read(task) for task in buckets.due_today],
            upcoming=[self._to_read(task) for task in buckets.upcoming],
        )

    def get_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> TaskRead:
        require_actor(actor_user, "crm.tasks.read")
        return self._to_read(self._get_task(session, task_id))

    def update_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID, dto: TaskUpdate) -> TaskRead:
        require_actor(actor_user, "crm.tasks.update")
        task = self._get_task(session, task_id)
        patch = {
            key: value
            for key, value in dto.model_dump(exclude_unset=True).items()
            if value is not None or key in self.clearable_fields
        }
        new_status = patch.pop("status", None)
        if new_status is not None:
            patch.update(task_completion_values(task.status, new_status, utcnow()))
        return self._apply(session, actor_user, task, patch, action="update")

    def complete_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> TaskRead:
        require_actor(actor_user, "crm.tasks.update")
        task = self._get_task(session, task_id)
        values = task_completion_values(task.status, "completed", utcnow())
        return self._apply(session, actor_user, task, values, action="complete")

    def reopen_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> TaskRead:
        require_actor(actor_user, "crm.tasks.update")
        task = self._get_task(session, task_id)
        values = task_completion_values(task.status, "pending", utcnow())
        return self._apply(session, actor_user, task, values, action="reopen")

    def delete_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> None:
        require_actor(actor_user, "crm.tasks.delete")
        task = self._get_task(session, task_id)
        before = self._to_read(task).model_dump(mode="json")
        session.delete(task)
        session.commit()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(task_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )

    def _apply(
        self,
        session: Session,
        actor_user: ActorUser,
        task: CRMTask,
        values: dict[str, Any],
        *,
        action: str,
    ) -> TaskRead:
        if not values:
            return self._to_read(task)

        before = self._to_read(task).model_dump(mode="json")
        previous_assignee = task.assigned_to
        previous_status = task.status
        for key, value in values.items():
            setattr(task, key, value)
        if task.assigned_to != previous_assignee:
            self._enqueue_assignment(session, actor_user, task)
        session.commit()

        updated = self._to_read(task)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(task.id),
            action=action,
            before=before,
            after=updated.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        if task.status != previous_status:
            event_type = "crm.task.completed" if task.status == "completed" else "crm.task.reopened"
            events.publish(
                events.build_envelope(
                    event_type,
                    actor_user.user_id,
                    {"task_id": str(task.id), "lead_id": _str_or_none(task.lead_id)},
                )
            )
        return updated

    def _enqueue_assignment(self, session: Session, actor_user: ActorUser, task: CRMTask) -> None:
        if task.assigned_to == actor_user.user_uuid:
            return
        _enqueue_notification(
            session,
            "TASK_ASSIGNED",
            task.assigned_to,
            "task",
            task.id,
            {
                "title": task.title,
                "due_date": task.due_date.isoformat(),
                "assigned_by": actor_user.user_id,
                "correlation_id": actor_user.correlation_id,
            },
        )

    def _get_task(self, session: Session, task_id: uuid.UUID) -> CRMTask:
        task = self.tasks.get(session, task_id)
        if task is None:
            raise NotFoundError("task not found", context={"task_id": str(task_id)})
        return task

    def _to_read(self, task: CRMTask, warnings: list[str] | None = None) -> TaskRead:
        read = TaskRead.model_validate(task)
        read.warnings = list(warnings or [])
        return read


class InteractionService:
    entity_type = "crm.interaction"

    def __init__(self) -> None:
        self.interactions = InteractionRepository()
        self.leads = LeadRepository()

    def record_interaction(
        self,
        session: Session,
        actor_user: ActorUser,
        lead_id: uuid.UUID,
        dto: InteractionCreate,
    ) -> InteractionRead:
        require_actor(actor_user, "crm.interactions.create")
        with operation_span("crm.interaction.record", actor_user.user_id):
            lead = self.leads.get(session, lead_id)
            if lead is None:
                raise NotFoundError("lead not found", context={"lead_id": str(lead_id)})

            now = utcnow()
            plan = plan_interaction(lead, dto.model_dump(), actor_user.user_uuid, now)

            interaction = CRMInteraction(lead_id=lead.id, created_at=now, **plan.interaction_values)
            session.add(interaction)
            # Store-side increment so concurrent recordings never lose a count.
            session.execute(
                update(CRMLead)
                .where(CRMLead.id == lead.id)
                .values(
                    **plan.lead_values,
                    follow_up_count=CRMLead.follow_up_count + plan.follow_up_increment,
                    updated_at=now,
                )
            )
            if plan.follow_up_task is not None:
                session.add(CRMTask(lead_id=lead.id, status="pending", **plan.follow_up_task))
            session.commit()

            recorded = InteractionRead.model_validate(interaction)
            if plan.status_before != plan.status_after:
                _record_transition("lead", lead.id, plan.status_before, plan.status_after)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(interaction.id),
                action="create",
                before=None,
                after=recorded.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.interaction.recorded",
                    actor_user.user_id,
                    {
                        "interaction_id": str(interaction.id),
                        "lead_id": str(lead_id),
                        "type": interaction.type,
                        "status_before": plan.status_before,
                        "status_after": plan.status_after,
                    },
                )
            )
            return recorded

    def list_interactions(self, session: Session, actor_user: ActorUser, lead_id: uuid.UUID) -> list[InteractionRead]:
        require_actor(actor_user, "crm.interactions.read")
        if self.leads.get(session, lead_id) is None:
            raise NotFoundError("lead not found", context={"lead_id": str(lead_id)})
        return [InteractionRead.model_validate(item) for item in self.interactions.list_for_lead(session, lead_id)]


class MeetingService:
    entity_type = "crm.meeting"

    def __init__(self) -> None:
        self.meetings = MeetingRepository()
        self.leads = LeadRepository()

    def create_meeting(self, session: Session, actor_user: ActorUser, dto: MeetingCreate) -> MeetingRead:
        require_actor(actor_user, "crm.meetings.create")
        with operation_span("crm.meeting.create", actor_user.user_id):
            self._ensure_lead(session, dto.lead_id)
            now = utcnow()
            values = plan_meeting_creation(
                dto.model_dump(),
                actor_user.user_uuid,
                default_timezone=get_settings().default_timezone,
            )
            meeting = CRMMeeting(**values)
            meeting.participants.append(CRMMeetingParticipant(**organizer_participant(actor_user.user_uuid, now)))
            invited = [
                CRMMeetingParticipant(**row)
                for row in plan_meeting_participants(
                    actor_user.user_uuid,
                    [participant.model_dump() for participant in dto.participants],
                    now,
                )
            ]
            meeting.participants.extend(invited)
            session.add(meeting)
            session.flush()
            self._notify(session, actor_user, meeting, "MEETING_INVITE", invited)
            session.commit()

            created = self._to_read(meeting)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(meeting.id),
                action="create",
                before=None,
                after=created.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.meeting.scheduled",
                    actor_user.user_id,
                    {
                        "meeting_id": str(meeting.id),
                        "lead_id": _str_or_none(meeting.lead_id),
                        "participants": len(invited),
                    },
                )
            )
            return created

    def list_meetings(
        self,
        session: Session,
        actor_user: ActorUser,
        view: str,
        filters: dict[str, Any],
    ) -> list[MeetingRead]:
        require_actor(actor_user, "crm.meetings.read")
        window = meeting_window(view, utcnow())
        return [self._to_read(meeting) for meeting in self.meetings.list(session, window, filters)]

    def get_meeting(self, session: Session, actor_user: ActorUser, meeting_id: uuid.UUID) -> MeetingRead:
        require_actor(actor_user, "crm.meetings.read")
        return self._to_read(self._get_meeting(session, meeting_id))

    def update_meeting(
        self,
        session: Session,
        actor_user: ActorUser,
        meeting_id: uuid.UUID,
        dto: MeetingUpdate,
    ) -> MeetingRead:
        """Patch a meeting.

        A participant list replaces every invitee except the organizer.
        Invitees already on the meeting hear about a reschedule or a
        cancellation through a notification intent.
        """
        require_actor(actor_user, "crm.meetings.update")
        with operation_span("crm.meeting.update", actor_user.user_id):
            meeting = self._get_meeting(session, meeting_id)
            patch = dto.model_dump(exclude_unset=True)
            self._ensure_lead(session, patch.get("lead_id"))
            plan = plan_meeting_update(meeting, patch)

            before = self._to_read(meeting).model_dump(mode="json")
            for key, value in plan.values.items():
                setattr(meeting, key, value)

            invited: list[CRMMeetingParticipant] = []
            if dto.participants is not None:
                for participant in list(meeting.participants):
                    if participant.role != "organizer":
                        meeting.participants.remove(participant)
                # Removed rows must be gone before re-invited users are inserted again.
                session.flush()
                invited = [
                    CRMMeetingParticipant(**row)
                    for row in plan_meeting_participants(
                        meeting.organizer_id,
                        [participant.model_dump() for participant in dto.participants],
                        utcnow(),
                    )
                ]
                meeting.participants.extend(invited)
            session.flush()

            existing = [participant for participant in meeting.participants if participant not in invited]
            if plan.cancelled:
                self._notify(session, actor_user, meeting, "MEETING_CANCELLED", existing)
            elif plan.rescheduled:
                self._notify(session, actor_user, meeting, "MEETING_UPDATED", existing)
            self._notify(session, actor_user, meeting, "MEETING_INVITE", invited)
            session.commit()

            updated = self._to_read(meeting)
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(meeting.id),
                action="update",
                before=before,
                after=updated.model_dump(mode="json"),
                correlation_id=actor_user.correlation_id,
            )
            if plan.cancelled or plan.rescheduled:
                events.publish(
                    events.build_envelope(
                        "crm.meeting.cancelled" if plan.cancelled else "crm.meeting.rescheduled",
                        actor_user.user_id,
                        {"meeting_id": str(meeting.id), "lead_id": _str_or_none(meeting.lead_id)},
                    )
                )
            return updated

    def delete_meeting(self, session: Session, actor_user: ActorUser, meeting_id: uuid.UUID) -> None:
        require_actor(actor_user, "crm.meetings.delete")
        meeting = self._get_meeting(session, meeting_id)
        before = self._to_read(meeting).model_dump(mode="json")
        if meeting.status != "cancelled":
            self._notify(session, actor_user, meeting, "MEETING_CANCELLED", list(meeting.participants))
        session.delete(meeting)
        session.commit()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(meeting_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )

    def respond(
        self,
        session: Session,
        actor_user: ActorUser,
        meeting_id: uuid.UUID,
        dto: RsvpRequest,
    ) -> MeetingRead:
        require_actor(actor_user, "crm.meetings.update")
        meeting = self._get_meeting(session, meeting_id)
        participant = self.meetings.participant(session, meeting.id, actor_user.user_uuid)
        if participant is None:
            raise NotFoundError(
                "you are not a participant of this meeting",
                code="participant_not_found",
                context={"meeting_id": str(meeting_id)},
            )

        before = {"rsvp_status": participant.rsvp_status}
        for key, value in rsvp_values(dto.rsvp_status, utcnow()).items():
            setattr(participant, key, value)
        if meeting.organizer_id != actor_user.user_uuid:
            _enqueue_notification(
                session,
                "MEETING_RSVP",
                meeting.organizer_id,
                "meeting",
                meeting.id,
                {
                    "title": meeting.title,
                    "participant_id": actor_user.user_id,
                    "rsvp_status": participant.rsvp_status,
                    "correlation_id": actor_user.correlation_id,
                },
            )
        session.commit()

        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(meeting.id),
            action="rsvp",
            before=before,
            after={"rsvp_status": dto.rsvp_status},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.meeting.rsvp",
                actor_user.user_id,
                {"meeting_id": str(meeting.id), "rsvp_status": dto.rsvp_status},
            )
        )
        return self._to_read(meeting)

    def _notify(
        self,
        session: Session,
        actor_user: ActorUser,
        meeting: CRMMeeting,
        intent_type: str,
        participants: list[CRMMeetingParticipant],
    ) -> None:
        for participant in participants:
            if participant.user_id is None or participant.role == "organizer":
                continue
            if participant.user_id == actor_user.user_uuid:
                continue
            _enqueue_notification(
                session,
                intent_type,
                participant.user_id,
                "meeting",
                meeting.id,
                {
                    "title": meeting.title,
                    "start_time": meeting.start_time.isoformat(),
                    "organizer_id": str(meeting.organizer_id),
                    "correlation_id": actor_user.correlation_id,
                },
            )

    def _ensure_lead(self, session: Session, lead_id: uuid.UUID | None) -> None:
        if lead_id is not None and self.leads.get(session, lead_id) is None:
            raise NotFoundError("lead not found", context={"lead_id": str(lead_id)})

    def _get_meeting(self, session: Session, meeting_id: uuid.UUID) -> CRMMeeting:
        meeting = self.meetings.get(session, meeting_id)
        if meeting is None:
            raise NotFoundError("meeting not found", context={"meeting_id": str(meeting_id)})
        return meeting

    def _to_read(self, meeting: CRMMeeting) -> MeetingRead:
        return MeetingRead.model_validate(meeting)


class ReportService:
    def __init__(self) -> None:
        self.leads = LeadRepository()
        self.deals = DealRepository()
        self.tasks = TaskRepository()
        self.meetings = MeetingRepository()

    def get_funnel(self, session: Session, actor_user: ActorUser) -> FunnelReport:
        require_actor(actor_user, "crm.reports.read")
        counts = self.leads.count_by_status(session)
        total_leads = sum(counts.values())
        rows, conversion_rate = build_funnel(counts, total_leads)
        return FunnelReport(
            total_leads=total_leads,
            stages=[FunnelStage(status=row.status, count=row.count, percentage=row.percentage) for row in rows],
            conversion_rate=conversion_rate,
        )

    def get_stats(
        self,
        session: Session,
        actor_user: ActorUser,
        period: str,
        assigned_to: uuid.UUID | None = None,
    ) -> StatsReport:
        """Dashboard counters; task counts are team-wide unless narrowed to one assignee."""
        require_actor(actor_user, "crm.reports.read")
        days = STATS_PERIOD_DAYS.get(period)
        if days is None:
            raise LifecycleValidationError(f"unsupported period: {period}", code="invalid_period")

        now = utcnow()
        today = now.date()
        period_start = now - timedelta(days=days)
        previous_start = period_start - timedelta(days=days)

        today_window = meeting_window("today", now)
        new_leads = self.leads.count_created_between(session, period_start)
        previous_leads = self.leads.count_created_between(session, previous_start, period_start)
        return StatsReport(
            period=period,  # type: ignore[arg-type]
            period_start=period_start.date(),
            new_leads=new_leads,
            previous_period_leads=previous_leads,
            leads_trend=trend_percentage(new_leads, previous_leads),
            tasks_due_today=self.tasks.count_pending(session, due_on=today, assigned_to=assigned_to),
            overdue_tasks=self.tasks.count_pending(session, due_before=today, assigned_to=assigned_to),
            meetings_today=self.meetings.count_starting_between(
                session,
                today_window.starts_from,
                today_window.starts_before,
            ),
            pipeline_value=sum_values(self.deals.open_pipeline_values(session)),
            revenue_won=sum_values(self.deals.won_values_since(session, period_start.date())),
        )


class UserService:
    entity_type = "crm.user"

    def __init__(self) -> None:
        self.users = UserRepository()

    def list_users(self, session: Session, actor_user: ActorUser) -> list[UserRead]:
        require_actor(actor_user, "crm.users.read")
        return [UserRead.model_validate(user) for user in self.users.list(session)]

    def create_user(self, session: Session, actor_user: ActorUser, dto: UserCreate) -> UserRead:
        require_actor(actor_user, "crm.users.manage")
        user = CRMUser(
            email=str(dto.email).lower(),
            name=dto.name,
            phone=dto.phone,
            role=dto.role,
            daily_target=dto.daily_target,
            is_active=True,
        )
        session.add(user)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise ConflictError("A user with this email already exists", code="duplicate_user") from None

        created = UserRead.model_validate(user)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(user.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        return created

    def approve_user(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID) -> UserRead:
        require_actor(actor_user, "crm.users.manage")
        user = self._get_user(session, user_id)
        if not user.is_active:
            user.is_active = True
            session.commit()
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id=str(user.id),
                action="approve",
                before={"is_active": False},
                after={"is_active": True},
                correlation_id=actor_user.correlation_id,
            )
        return UserRead.model_validate(user)

    def delete_user(self, session: Session, actor_user: ActorUser, user_id: uuid.UUID) -> None:
        require_actor(actor_user, "crm.users.manage")
        if user_id == actor_user.user_uuid:
            raise LifecycleValidationError("you cannot delete your own account", code="cannot_delete_self")
        user = self._get_user(session, user_id)
        before = UserRead.model_validate(user).model_dump(mode="json")
        session.delete(user)
        session.commit()
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=str(user_id),
            action="delete",
            before=before,
            after=None,
            correlation_id=actor_user.correlation_id,
        )

    def is_approved(self, session: Session, user_id: uuid.UUID) -> bool:
        """Identities without a user row pass; provisioned accounts need approval first."""
        user = self.users.get(session, user_id)
        return user is None or user.is_active

    def _get_user(self, session: Session, user_id: uuid.UUID) -> CRMUser:
        user = self.users.get(session, user_id)
        if user is None:
            raise NotFoundError("user not found", context={"user_id": str(user_id)})
        return user


def _str_or_none(value: uuid.UUID | None) -> str | None:
    return str(value) if value is not None else None
