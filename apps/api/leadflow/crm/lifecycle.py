"""Lead/Deal lifecycle rules.

Every function in this module is pure: it reads the current state of an
entity (any object exposing the relevant attributes) plus the caller's
input and returns a write-set describing what the orchestrating service
must persist. Nothing here touches a session.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from decimal import ROUND_FLOOR, Decimal
from typing import Any, Protocol, TypeVar

from leadflow.crm.errors import LifecycleValidationError


IDENTIFIER_FIELDS = ("phone", "email", "instagram_handle", "whatsapp_number")
IDENTIFIER_LABELS = {
    "phone": "phone number",
    "email": "email",
    "instagram_handle": "Instagram handle",
    "whatsapp_number": "WhatsApp number",
}

FUNNEL_STAGES = ("new", "contacted", "interested", "negotiating", "converted")
TERMINAL_DEAL_STAGES = frozenset({"won", "lost"})
PRIORITY_RANK = {"high": 3, "medium": 2, "low": 1}
FOLLOW_UP_TASK_TYPES = frozenset({"follow_up_call", "follow_up_message"})
MEETING_VIEWS = ("today", "upcoming", "past", "all")
RSVP_STATUSES = frozenset({"accepted", "declined", "tentative"})


class LeadState(Protocol):
    status: str
    converted_at: datetime | None
    assigned_to: uuid.UUID | None
    lost_reason: str | None


class DealState(Protocol):
    stage: str
    won_date: date | None
    lost_date: date | None
    lost_reason: str | None
    lead_id: uuid.UUID | None
    deal_value: Decimal
    amount_received: Decimal


class TaskState(Protocol):
    status: str
    due_date: date
    priority: str


TaskT = TypeVar("TaskT", bound=TaskState)


@dataclass
class SecondaryWrite:
    """A cross-entity write applied after the primary write has committed."""

    operation: str
    entity_type: str
    entity_id: uuid.UUID
    values: dict[str, Any]
    from_state: str | None = None


@dataclass
class LeadWriteSet:
    values: dict[str, Any]
    from_status: str | None
    to_status: str

    @property
    def status_changed(self) -> bool:
        return self.from_status != self.to_status


@dataclass
class DealWriteSet:
    values: dict[str, Any]
    from_stage: str | None
    to_stage: str
    lead_write: SecondaryWrite | None = None

    @property
    def stage_changed(self) -> bool:
        return self.from_stage != self.to_stage


@dataclass
class InteractionWriteSet:
    interaction_values: dict[str, Any]
    lead_values: dict[str, Any]
    status_before: str
    status_after: str
    follow_up_increment: int = 1
    follow_up_task: dict[str, Any] | None = None


@dataclass
class TaskBuckets:
    overdue: list[Any] = field(default_factory=list)
    due_today: list[Any] = field(default_factory=list)
    upcoming: list[Any] = field(default_factory=list)

    def combined(self) -> list[Any]:
        return [*self.overdue, *self.due_today, *self.upcoming]


@dataclass
class FunnelRow:
    status: str
    count: int
    percentage: int


# Duplicate detection


def normalize_identifier(field_name: str, value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    if field_name == "email":
        normalized = normalized.lower()
    elif field_name == "instagram_handle" and normalized.startswith("@"):
        normalized = normalized[1:].strip()
    return normalized or None


def normalize_identifiers(values: Mapping[str, Any]) -> dict[str, str]:
    """Return only the identifiers that are supplied and non-blank after normalization."""
    normalized: dict[str, str] = {}
    for field_name in IDENTIFIER_FIELDS:
        value = normalize_identifier(field_name, values.get(field_name))
        if value is not None:
            normalized[field_name] = value
    return normalized


def find_matched_field(existing: Any, identifiers: Mapping[str, str]) -> str | None:
    for field_name in IDENTIFIER_FIELDS:
        candidate = identifiers.get(field_name)
        if candidate is None:
            continue
        if normalize_identifier(field_name, getattr(existing, field_name, None)) == candidate:
            return field_name
    return None


def duplicate_message(field_name: str, lead_name: str, assignee_name: str | None) -> str:
    message = f'A lead with this {IDENTIFIER_LABELS[field_name]} already exists: "{lead_name}"'
    if assignee_name:
        message += f" (assigned to {assignee_name})"
    return message


# Lead state machine


def _require_lost_reason(reason: str | None, entity: str) -> str:
    if reason is None or not reason.strip():
        raise LifecycleValidationError(
            f"lost_reason is required when a {entity} is marked lost",
            code="lost_reason_required",
            context={"entity": entity},
        )
    return reason.strip()


def lead_status_values(current: LeadState, new_status: str, lost_reason: str | None, now: datetime) -> dict[str, Any]:
    """Fields that must accompany ``status = new_status`` on a Lead."""
    values: dict[str, Any] = {"status": new_status}
    if new_status == "converted" and current.status != "converted" and current.converted_at is None:
        values["converted_at"] = now
    if new_status == "lost":
        values["lost_reason"] = _require_lost_reason(
            lost_reason if lost_reason is not None else current.lost_reason,
            "lead",
        )
    return values


def plan_lead_creation(fields: Mapping[str, Any], actor_user_id: uuid.UUID, now: datetime) -> LeadWriteSet:
    values = dict(fields)
    for field_name in IDENTIFIER_FIELDS:
        if field_name in values:
            values[field_name] = normalize_identifier(field_name, values[field_name])

    values["status"] = "new"
    values["created_by"] = actor_user_id
    values["follow_up_count"] = 0
    values["assigned_at"] = now if values.get("assigned_to") is not None else None
    return LeadWriteSet(values=values, from_status=None, to_status="new")


def plan_lead_update(
    current: LeadState,
    patch: Mapping[str, Any],
    now: datetime,
    *,
    contact_triggering: bool = False,
) -> LeadWriteSet:
    values = dict(patch)
    for field_name in IDENTIFIER_FIELDS:
        if field_name in values:
            values[field_name] = normalize_identifier(field_name, values[field_name])

    if values.get("status") is None:
        values.pop("status", None)
    for required in ("name", "priority", "source", "tags"):
        if required in values and values[required] is None:
            values.pop(required)

    new_status = values.get("status", current.status)
    if "status" in values or "lost_reason" in values:
        values.update(lead_status_values(current, new_status, values.get("lost_reason"), now))

    if "assigned_to" in values:
        if values["assigned_to"] == current.assigned_to:
            values.pop("assigned_to")
        else:
            values["assigned_at"] = now if values["assigned_to"] is not None else None

    if contact_triggering:
        values["last_contacted_at"] = now

    return LeadWriteSet(values=values, from_status=current.status, to_status=new_status)


# Deal state machine


def _lead_write_for_stage(
    operation: str,
    lead: LeadState | None,
    lead_id: uuid.UUID | None,
    stage: str,
    lost_reason: str | None,
    now: datetime,
) -> SecondaryWrite | None:
    if lead is None or lead_id is None:
        return None
    if stage == "won":
        values = lead_status_values(lead, "converted", None, now)
    elif stage == "lost":
        values = lead_status_values(lead, "lost", lost_reason, now)
    else:
        return None
    return SecondaryWrite(
        operation=operation,
        entity_type="lead",
        entity_id=lead_id,
        values=values,
        from_state=lead.status,
    )


def plan_deal_creation(
    fields: Mapping[str, Any],
    actor_user_id: uuid.UUID,
    today: date,
    now: datetime,
    *,
    lead: LeadState | None = None,
    default_currency: str = "USD",
) -> DealWriteSet:
    values = dict(fields)
    stage = values.get("stage") or "proposal"
    values["stage"] = stage
    values["currency"] = (values.get("currency") or default_currency).upper()
    if values.get("owner_id") is None:
        values["owner_id"] = actor_user_id

    if stage == "won":
        values["won_date"] = today
    elif stage == "lost":
        values["lost_reason"] = _require_lost_reason(values.get("lost_reason"), "deal")
        values["lost_date"] = today

    lead_id = values.get("lead_id")
    lead_write: SecondaryWrite | None = None
    if lead is not None and lead_id is not None:
        lead_values: dict[str, Any] = {"deal_value": values.get("deal_value")}
        if stage in TERMINAL_DEAL_STAGES:
            lead_status = "converted" if stage == "won" else "lost"
            lead_values.update(lead_status_values(lead, lead_status, values.get("lost_reason"), now))
        else:
            lead_values["status"] = "negotiating"
        lead_write = SecondaryWrite(
            operation="deal.create.lead_sync",
            entity_type="lead",
            entity_id=lead_id,
            values=lead_values,
            from_state=lead.status,
        )

    return DealWriteSet(values=values, from_stage=None, to_stage=stage, lead_write=lead_write)


def plan_deal_stage_change(
    current: DealState,
    new_stage: str,
    today: date,
    now: datetime,
    *,
    lost_reason: str | None = None,
    lead: LeadState | None = None,
) -> DealWriteSet:
    if current.stage in TERMINAL_DEAL_STAGES and new_stage != current.stage:
        raise LifecycleValidationError(
            f"deal is already {current.stage} and cannot move to {new_stage}",
            code="deal_stage_terminal",
            context={"from_stage": current.stage, "to_stage": new_stage},
        )

    if new_stage == current.stage:
        return DealWriteSet(values={}, from_stage=current.stage, to_stage=new_stage)

    values: dict[str, Any] = {"stage": new_stage}
    if new_stage == "won" and current.won_date is None:
        values["won_date"] = today
    elif new_stage == "lost":
        reason = _require_lost_reason(lost_reason if lost_reason is not None else current.lost_reason, "deal")
        values["lost_reason"] = reason
        if current.lost_date is None:
            values["lost_date"] = today

    lead_write = _lead_write_for_stage(
        f"deal.{new_stage}.lead_sync",
        lead,
        current.lead_id,
        new_stage,
        values.get("lost_reason"),
        now,
    )
    return DealWriteSet(values=values, from_stage=current.stage, to_stage=new_stage, lead_write=lead_write)


def plan_deal_update(
    current: DealState,
    patch: Mapping[str, Any],
    today: date,
    now: datetime,
    *,
    lead: LeadState | None = None,
) -> DealWriteSet:
    values = {key: value for key, value in patch.items() if key != "stage"}
    for required in ("title", "deal_value", "currency", "probability"):
        if required in values and values[required] is None:
            values.pop(required)
    if values.get("currency"):
        values["currency"] = str(values["currency"]).upper()
    if "deal_value" in values:
        values["payment_status"] = payment_status_for(current.amount_received, values["deal_value"])

    new_stage = patch.get("stage") or current.stage
    stage_plan = plan_deal_stage_change(
        current,
        new_stage,
        today,
        now,
        lost_reason=patch.get("lost_reason"),
        lead=lead,
    )
    values.update(stage_plan.values)
    return DealWriteSet(
        values=values,
        from_stage=current.stage,
        to_stage=new_stage,
        lead_write=stage_plan.lead_write,
    )


# Task scheduler


def task_sort_key(task: TaskState) -> tuple[date, int]:
    return task.due_date, -PRIORITY_RANK.get(task.priority, 0)


def classify_tasks(tasks: Iterable[TaskT], today: date) -> TaskBuckets:
    buckets = TaskBuckets()
    for task in sorted((item for item in tasks if item.status == "pending"), key=task_sort_key):
        if task.due_date < today:
            buckets.overdue.append(task)
        elif task.due_date == today:
            buckets.due_today.append(task)
        else:
            buckets.upcoming.append(task)
    return buckets


def task_completion_values(current_status: str, new_status: str, now: datetime) -> dict[str, Any]:
    if new_status == current_status:
        return {}
    if new_status == "completed":
        return {"status": "completed", "completed_at": now}
    return {"status": "pending", "completed_at": None}


# Interaction recorder


def follow_up_task_title(summary: str) -> str:
    return f"Follow up: {summary[:50]}..."


def plan_interaction(
    lead: LeadState,
    fields: Mapping[str, Any],
    actor_user_id: uuid.UUID,
    now: datetime,
) -> InteractionWriteSet:
    new_status = fields.get("new_status")
    status_before = lead.status
    lead_values: dict[str, Any] = {"last_contacted_at": now}
    if new_status and new_status != lead.status:
        lead_values.update(lead_status_values(lead, new_status, fields.get("lost_reason"), now))
    status_after = lead_values.get("status", lead.status)

    follow_up_task: dict[str, Any] | None = None
    if fields.get("schedule_follow_up"):
        follow_up_date = fields.get("follow_up_date")
        if follow_up_date is None:
            raise LifecycleValidationError(
                "follow_up_date is required when scheduling a follow-up",
                code="follow_up_date_required",
            )
        lead_values["next_follow_up_date"] = follow_up_date
        follow_up_task = {
            "type": "follow_up_call",
            "title": follow_up_task_title(fields["summary"]),
            "due_date": follow_up_date,
            "priority": "medium",
            "assigned_to": actor_user_id,
            "created_by": actor_user_id,
        }

    interaction_values = {
        key: fields.get(key)
        for key in (
            "type",
            "direction",
            "summary",
            "outcome",
            "call_duration",
            "meeting_location",
            "meeting_link",
        )
    }
    interaction_values["attachments"] = list(fields.get("attachments") or [])
    interaction_values["user_id"] = actor_user_id
    interaction_values["status_before"] = status_before
    interaction_values["status_after"] = status_after

    return InteractionWriteSet(
        interaction_values=interaction_values,
        lead_values=lead_values,
        status_before=status_before,
        status_after=status_after,
        follow_up_task=follow_up_task,
    )


# Funnel and stats


def percentage(part: int | Decimal, whole: int | Decimal) -> int:
    if not whole:
        return 0
    # Halves round toward positive infinity, so -87.5 becomes -87.
    ratio = Decimal(part) / Decimal(whole) * 100
    return int((ratio + Decimal("0.5")).to_integral_value(rounding=ROUND_FLOOR))


def trend_percentage(current: int, previous: int) -> int:
    if previous == 0:
        return 0
    return percentage(current - previous, previous)


def build_funnel(status_counts: Mapping[str, int], total_leads: int) -> tuple[list[FunnelRow], int]:
    rows = [
        FunnelRow(
            status=stage,
            count=status_counts.get(stage, 0),
            percentage=percentage(status_counts.get(stage, 0), total_leads),
        )
        for stage in FUNNEL_STAGES
    ]
    in_funnel = sum(row.count for row in rows)
    conversion_rate = percentage(status_counts.get("converted", 0), in_funnel)
    return rows, conversion_rate


def sum_values(values: Sequence[Decimal | None]) -> Decimal:
    return sum((Decimal(value) for value in values if value is not None), Decimal("0"))


# Payments


def payment_status_for(amount_received: Decimal, deal_value: Decimal) -> str:
    if amount_received <= 0:
        return "pending"
    if amount_received >= deal_value:
        return "complete"
    return "partial"


def payment_values(amounts: Sequence[Decimal | None], deal_value: Decimal) -> dict[str, Any]:
    """Deal totals recomputed from every recorded payment."""
    received = sum_values(amounts)
    return {"amount_received": received, "payment_status": payment_status_for(received, deal_value)}


# Meetings


class MeetingState(Protocol):
    status: str
    start_time: datetime
    end_time: datetime


@dataclass
class MeetingWindow:
    starts_from: datetime | None = None
    starts_before: datetime | None = None
    ends_before: datetime | None = None
    exclude_cancelled: bool = False


@dataclass
class MeetingWriteSet:
    values: dict[str, Any]
    rescheduled: bool = False
    cancelled: bool = False


def as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken to be UTC already.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_meeting_times(start_time: datetime, end_time: datetime) -> None:
    if as_utc(end_time) <= as_utc(start_time):
        raise LifecycleValidationError("meeting must end after it starts", code="invalid_meeting_time")


def meeting_window(view: str, now: datetime) -> MeetingWindow:
    if view not in MEETING_VIEWS:
        raise LifecycleValidationError(f"unsupported view: {view}", code="invalid_view")
    now = as_utc(now)
    if view == "today":
        midnight = datetime.combine(now.date(), time.min, tzinfo=timezone.utc)
        return MeetingWindow(starts_from=midnight, starts_before=midnight + timedelta(days=1))
    if view == "upcoming":
        return MeetingWindow(starts_from=now, exclude_cancelled=True)
    if view == "past":
        return MeetingWindow(ends_before=now)
    return MeetingWindow()


def plan_meeting_creation(
    fields: Mapping[str, Any],
    organizer_id: uuid.UUID,
    *,
    default_timezone: str,
) -> dict[str, Any]:
    validate_meeting_times(fields["start_time"], fields["end_time"])
    values = {key: value for key, value in fields.items() if key != "participants" and value is not None}
    values["start_time"] = as_utc(fields["start_time"])
    values["end_time"] = as_utc(fields["end_time"])
    values["timezone"] = fields.get("timezone") or default_timezone
    values["organizer_id"] = organizer_id
    values["status"] = "scheduled"
    return values


def plan_meeting_update(current: MeetingState, patch: Mapping[str, Any]) -> MeetingWriteSet:
    values = {key: value for key, value in patch.items() if key != "participants"}
    for required in ("title", "start_time", "end_time", "timezone", "color", "recurrence", "status"):
        if required in values and values[required] is None:
            values.pop(required)

    start_time = as_utc(values.get("start_time", current.start_time))
    end_time = as_utc(values.get("end_time", current.end_time))
    validate_meeting_times(start_time, end_time)
    if "start_time" in values:
        values["start_time"] = start_time
    if "end_time" in values:
        values["end_time"] = end_time

    rescheduled = start_time != as_utc(current.start_time) or end_time != as_utc(current.end_time)
    cancelled = values.get("status") == "cancelled" and current.status != "cancelled"
    return MeetingWriteSet(values=values, rescheduled=rescheduled, cancelled=cancelled)


def organizer_participant(organizer_id: uuid.UUID, now: datetime) -> dict[str, Any]:
    return {
        "user_id": organizer_id,
        "role": "organizer",
        "rsvp_status": "accepted",
        "invited_at": now,
        "responded_at": now,
    }


def plan_meeting_participants(
    organizer_id: uuid.UUID,
    invitees: Iterable[Mapping[str, Any]],
    now: datetime,
) -> list[dict[str, Any]]:
    """Invitee rows, skipping the organizer and collapsing repeats of one person."""
    rows: list[dict[str, Any]] = []
    seen: set[Any] = set()
    for invitee in invitees:
        user_id = invitee.get("user_id")
        email = (invitee.get("email") or "").strip().lower() or None
        if user_id == organizer_id:
            continue
        key = user_id or email
        if key is None or key in seen:
            continue
        seen.add(key)
        rows.append(
            {
                "user_id": user_id,
                "email": email,
                "name": invitee.get("name"),
                "role": invitee.get("role") or "required",
                "rsvp_status": "pending",
                "invited_at": now,
            }
        )
    return rows


def rsvp_values(rsvp_status: str, now: datetime) -> dict[str, Any]:
    if rsvp_status not in RSVP_STATUSES:
        raise LifecycleValidationError(
            f"unsupported RSVP status: {rsvp_status}",
            code="invalid_rsvp_status",
            context={"rsvp_status": rsvp_status},
        )
    return {"rsvp_status": rsvp_status, "responded_at": now}
