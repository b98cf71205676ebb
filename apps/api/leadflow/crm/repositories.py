from __future__ import annotations

import uuid
from collections.abc import Mapping
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import Select, case, func, or_, select
from sqlalchemy.orm import Session

from leadflow.crm.lifecycle import PRIORITY_RANK, MeetingWindow
from leadflow.crm.models import (
    CRMDeal,
    CRMInteraction,
    CRMLead,
    CRMMeeting,
    CRMMeetingParticipant,
    CRMPayment,
    CRMTask,
    CRMUser,
)


class LeadRepository:
    def get(self, session: Session, lead_id: uuid.UUID) -> CRMLead | None:
        return session.get(CRMLead, lead_id)

    def find_duplicate(
        self,
        session: Session,
        identifiers: Mapping[str, str],
        exclude_id: uuid.UUID | None = None,
    ) -> CRMLead | None:
        predicates = [getattr(CRMLead, field_name) == value for field_name, value in identifiers.items()]
        if not predicates:
            return None
        stmt = select(CRMLead).where(or_(*predicates))
        if exclude_id is not None:
            stmt = stmt.where(CRMLead.id != exclude_id)
        return session.scalars(stmt.limit(1)).first()

    def list(self, session: Session, filters: Mapping[str, Any], offset: int, limit: int) -> list[CRMLead]:
        stmt: Select[tuple[CRMLead]] = select(CRMLead)
        for field_name in ("status", "source", "priority", "assigned_to"):
            if filters.get(field_name):
                stmt = stmt.where(getattr(CRMLead, field_name) == filters[field_name])
        if filters.get("q"):
            pattern = f"%{filters['q']}%"
            stmt = stmt.where(
                or_(
                    CRMLead.name.ilike(pattern),
                    CRMLead.email.ilike(pattern),
                    CRMLead.phone.ilike(pattern),
                    CRMLead.company_name.ilike(pattern),
                    CRMLead.instagram_handle.ilike(pattern),
                )
            )
        stmt = stmt.order_by(CRMLead.created_at.desc(), CRMLead.id).offset(offset).limit(limit)
        return list(session.scalars(stmt).all())

    def count_by_status(self, session: Session) -> dict[str, int]:
        rows = session.execute(select(CRMLead.status, func.count(CRMLead.id)).group_by(CRMLead.status)).all()
        return {status: int(count) for status, count in rows}

    def count_created_between(self, session: Session, start: datetime, end: datetime | None = None) -> int:
        stmt = select(func.count(CRMLead.id)).where(CRMLead.created_at >= start)
        if end is not None:
            stmt = stmt.where(CRMLead.created_at < end)
        return int(session.scalar(stmt) or 0)


class DealRepository:
    def get(self, session: Session, deal_id: uuid.UUID) -> CRMDeal | None:
        return session.get(CRMDeal, deal_id)

    def list(self, session: Session, filters: Mapping[str, Any]) -> list[CRMDeal]:
        stmt: Select[tuple[CRMDeal]] = select(CRMDeal)
        for field_name in ("stage", "owner_id", "lead_id"):
            if filters.get(field_name):
                stmt = stmt.where(getattr(CRMDeal, field_name) == filters[field_name])
        return list(session.scalars(stmt.order_by(CRMDeal.created_at.desc())).all())

    def open_pipeline_values(self, session: Session) -> list[Decimal]:
        stmt = select(CRMDeal.deal_value).where(CRMDeal.stage.not_in(("won", "lost")))
        return list(session.scalars(stmt).all())

    def won_values_since(self, session: Session, since: date) -> list[Decimal]:
        stmt = select(CRMDeal.deal_value).where(CRMDeal.stage == "won", CRMDeal.won_date >= since)
        return list(session.scalars(stmt).all())


class PaymentRepository:
    def get(self, session: Session, payment_id: uuid.UUID) -> CRMPayment | None:
        return session.get(CRMPayment, payment_id)

    def list_for_deal(self, session: Session, deal_id: uuid.UUID) -> list[CRMPayment]:
        stmt = (
            select(CRMPayment)
            .where(CRMPayment.deal_id == deal_id)
            .order_by(CRMPayment.payment_date, CRMPayment.created_at)
        )
        return list(session.scalars(stmt).all())

    def amounts_for_deal(self, session: Session, deal_id: uuid.UUID) -> list[Decimal]:
        return list(session.scalars(select(CRMPayment.amount).where(CRMPayment.deal_id == deal_id)).all())


class TaskRepository:
    priority_rank = case(PRIORITY_RANK, value=CRMTask.priority, else_=0)

    def get(self, session: Session, task_id: uuid.UUID) -> CRMTask | None:
        return session.get(CRMTask, task_id)

    def list(self, session: Session, filters: Mapping[str, Any], *, pending_only: bool = False) -> list[CRMTask]:
        stmt: Select[tuple[CRMTask]] = select(CRMTask)
        if pending_only:
            stmt = stmt.where(CRMTask.status == "pending")
        for field_name in ("status", "assigned_to", "lead_id", "priority", "type"):
            if filters.get(field_name):
                stmt = stmt.where(getattr(CRMTask, field_name) == filters[field_name])
        stmt = stmt.order_by(CRMTask.due_date.asc(), self.priority_rank.desc(), CRMTask.created_at)
        return list(session.scalars(stmt).all())

    def count_pending(
        self,
        session: Session,
        *,
        due_on: date | None = None,
        due_before: date | None = None,
        lead_id: uuid.UUID | None = None,
        assigned_to: uuid.UUID | None = None,
    ) -> int:
        stmt = select(func.count(CRMTask.id)).where(CRMTask.status == "pending")
        if due_on is not None:
            stmt = stmt.where(CRMTask.due_date == due_on)
        if due_before is not None:
            stmt = stmt.where(CRMTask.due_date < due_before)
        if lead_id is not None:
            stmt = stmt.where(CRMTask.lead_id == lead_id)
        if assigned_to is not None:
            stmt = stmt.where(CRMTask.assigned_to == assigned_to)
        return int(session.scalar(stmt) or 0)


class InteractionRepository:
    def list_for_lead(self, session: Session, lead_id: uuid.UUID) -> list[CRMInteraction]:
        stmt = (
            select(CRMInteraction)
            .where(CRMInteraction.lead_id == lead_id)
            .order_by(CRMInteraction.created_at.desc())
        )
        return list(session.scalars(stmt).all())

    def count_for_lead(self, session: Session, lead_id: uuid.UUID) -> int:
        return int(session.scalar(select(func.count(CRMInteraction.id)).where(CRMInteraction.lead_id == lead_id)) or 0)


class UserRepository:
    def get(self, session: Session, user_id: uuid.UUID) -> CRMUser | None:
        return session.get(CRMUser, user_id)

    def name_of(self, session: Session, user_id: uuid.UUID | None) -> str | None:
        if user_id is None:
            return None
        return session.scalar(select(CRMUser.name).where(CRMUser.id == user_id))

    def list(self, session: Session) -> list[CRMUser]:
        return list(session.scalars(select(CRMUser).order_by(CRMUser.created_at.desc())).all())


def _start_of(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


class MeetingRepository:
    def get(self, session: Session, meeting_id: uuid.UUID) -> CRMMeeting | None:
        return session.get(CRMMeeting, meeting_id)

    def list(self, session: Session, window: MeetingWindow, filters: Mapping[str, Any]) -> list[CRMMeeting]:
        stmt: Select[tuple[CRMMeeting]] = select(CRMMeeting)
        if window.starts_from is not None:
            stmt = stmt.where(CRMMeeting.start_time >= window.starts_from)
        if window.starts_before is not None:
            stmt = stmt.where(CRMMeeting.start_time < window.starts_before)
        if window.ends_before is not None:
            stmt = stmt.where(CRMMeeting.end_time < window.ends_before)
        if window.exclude_cancelled:
            stmt = stmt.where(CRMMeeting.status != "cancelled")
        for field_name in ("status", "organizer_id", "lead_id"):
            if filters.get(field_name):
                stmt = stmt.where(getattr(CRMMeeting, field_name) == filters[field_name])
        if filters.get("date_from"):
            stmt = stmt.where(CRMMeeting.start_time >= _start_of(filters["date_from"]))
        if filters.get("date_to"):
            stmt = stmt.where(CRMMeeting.start_time < _start_of(filters["date_to"] + timedelta(days=1)))
        return list(session.scalars(stmt.order_by(CRMMeeting.start_time.asc())).all())

    def participant(
        self,
        session: Session,
        meeting_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> CRMMeetingParticipant | None:
        stmt = select(CRMMeetingParticipant).where(
            CRMMeetingParticipant.meeting_id == meeting_id,
            CRMMeetingParticipant.user_id == user_id,
        )
        return session.scalars(stmt).first()

    def count_starting_between(self, session: Session, start: datetime, end: datetime) -> int:
        stmt = select(func.count(CRMMeeting.id)).where(
            CRMMeeting.start_time >= start,
            CRMMeeting.start_time < end,
            CRMMeeting.status != "cancelled",
        )
        return int(session.scalar(stmt) or 0)
