from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


LeadStatus = Literal[
    "new",
    "contacted",
    "interested",
    "negotiating",
    "converted",
    "lost",
    "follow_up_later",
    "no_money",
    "not_interested",
    "no_reply",
]
LeadPriority = Literal["hot", "warm", "cold"]
LeadSource = Literal["instagram", "facebook", "whatsapp", "call", "referral", "website", "linkedin", "email", "other"]
DealStage = Literal["proposal", "negotiation", "contract_sent", "won", "lost"]
TaskType = Literal[
    "follow_up_call",
    "follow_up_message",
    "send_proposal",
    "meeting",
    "demo",
    "video_call",
    "send_contract",
    "collect_payment",
    "other",
]
TaskPriority = Literal["high", "medium", "low"]
TaskStatus = Literal["pending", "completed"]
TaskView = Literal["today", "overdue", "upcoming", "all"]
InteractionType = Literal[
    "call",
    "whatsapp",
    "instagram_dm",
    "facebook_message",
    "email",
    "meeting",
    "video_call",
    "proposal_sent",
    "note",
]
InteractionDirection = Literal["inbound", "outbound"]
InteractionOutcome = Literal["positive", "negative", "neutral", "no_answer", "callback_requested", "follow_up_needed"]
UserRole = Literal["admin", "member"]
StatsPeriod = Literal["week", "month"]
MeetingStatus = Literal["scheduled", "in_progress", "completed", "cancelled"]
MeetingRecurrence = Literal["none", "daily", "weekly", "bi_weekly", "monthly"]
MeetingView = Literal["today", "upcoming", "past", "all"]
ParticipantRole = Literal["required", "optional"]
RsvpStatus = Literal["accepted", "declined", "tentative"]


class LeadCreate(BaseModel):
    name: str = Field(min_length=1)
    phone: str | None = None
    email: EmailStr | None = None
    instagram_handle: str | None = None
    whatsapp_number: str | None = None
    facebook_url: str | None = None
    linkedin_url: str | None = None
    website: str | None = None
    company_name: str | None = None
    designation: str | None = None
    priority: LeadPriority = "warm"
    source: LeadSource
    source_details: str | None = None
    assigned_to: UUID | None = None
    next_follow_up_date: date | None = None
    project_type: str | None = None
    budget_range: str | None = None
    timeline: str | None = None
    requirements: str | None = None
    tags: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name must not be blank")
        return value.strip()


class LeadUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    phone: str | None = None
    email: EmailStr | None = None
    instagram_handle: str | None = None
    whatsapp_number: str | None = None
    facebook_url: str | None = None
    linkedin_url: str | None = None
    website: str | None = None
    company_name: str | None = None
    designation: str | None = None
    status: LeadStatus | None = None
    priority: LeadPriority | None = None
    source: LeadSource | None = None
    source_details: str | None = None
    assigned_to: UUID | None = None
    next_follow_up_date: date | None = None
    lost_reason: str | None = None
    project_type: str | None = None
    budget_range: str | None = None
    timeline: str | None = None
    requirements: str | None = None
    tags: list[str] | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    phone: str | None
    email: str | None
    instagram_handle: str | None
    whatsapp_number: str | None
    facebook_url: str | None
    linkedin_url: str | None
    website: str | None
    company_name: str | None
    designation: str | None
    status: str
    priority: str
    source: str
    source_details: str | None
    assigned_to: UUID | None
    assigned_at: datetime | None
    created_by: UUID | None
    last_contacted_at: datetime | None
    next_follow_up_date: date | None
    follow_up_count: int
    converted_at: datetime | None
    lost_reason: str | None
    deal_value: Decimal | None
    project_type: str | None
    budget_range: str | None
    timeline: str | None
    requirements: str | None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    warnings: list[str] = Field(default_factory=list)


class LeadDetail(LeadRead):
    assigned_user_name: str | None = None
    interactions_count: int = 0
    pending_tasks_count: int = 0


class DuplicateCheckRequest(BaseModel):
    phone: str | None = None
    email: str | None = None
    instagram_handle: str | None = None
    whatsapp_number: str | None = None
    exclude_id: UUID | None = None


class DuplicateLeadSummary(BaseModel):
    id: UUID
    name: str
    phone: str | None
    email: str | None
    status: str
    company_name: str | None
    assigned_to: UUID | None
    assigned_user_name: str | None


class DuplicateReport(BaseModel):
    is_duplicate: bool
    matched_field: str | None = None
    existing_lead: DuplicateLeadSummary | None = None
    message: str | None = None


class DealCreate(BaseModel):
    lead_id: UUID | None = None
    title: str = Field(min_length=1)
    description: str | None = None
    deal_value: Decimal = Field(ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    stage: DealStage = "proposal"
    probability: int = Field(default=50, ge=0, le=100)
    expected_close_date: date | None = None
    owner_id: UUID | None = None
    lost_reason: str | None = None


class DealUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    deal_value: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    stage: DealStage | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    owner_id: UUID | None = None
    lost_reason: str | None = None


class DealStageChangeRequest(BaseModel):
    stage: DealStage
    lost_reason: str | None = None


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID | None
    title: str
    description: str | None
    deal_value: Decimal
    currency: str
    stage: str
    probability: int
    expected_close_date: date | None
    owner_id: UUID | None
    won_date: date | None
    lost_date: date | None
    lost_reason: str | None
    amount_received: Decimal
    payment_status: str
    created_at: datetime
    updated_at: datetime
    warnings: list[str] = Field(default_factory=list)


class PaymentCreate(BaseModel):
    amount: Decimal = Field(gt=0)
    payment_date: date
    payment_method: str | None = Field(default=None, max_length=50)
    reference_number: str | None = Field(default=None, max_length=100)
    notes: str | None = Field(default=None, max_length=500)


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    deal_id: UUID
    amount: Decimal
    payment_date: date
    payment_method: str | None
    reference_number: str | None
    notes: str | None
    recorded_by: UUID | None
    created_at: datetime


class DealDetail(DealRead):
    payments: list[PaymentRead] = Field(default_factory=list)


class TaskCreate(BaseModel):
    lead_id: UUID | None = None
    type: TaskType
    title: str = Field(min_length=1)
    description: str | None = None
    due_date: date
    due_time: time | None = None
    priority: TaskPriority = "medium"
    assigned_to: UUID


class TaskUpdate(BaseModel):
    type: TaskType | None = None
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    due_date: date | None = None
    due_time: time | None = None
    priority: TaskPriority | None = None
    assigned_to: UUID | None = None
    status: TaskStatus | None = None


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID | None
    type: str
    title: str
    description: str | None
    due_date: date
    due_time: time | None
    priority: str
    assigned_to: UUID
    created_by: UUID | None
    status: str
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    warnings: list[str] = Field(default_factory=list)


class TaskAgenda(BaseModel):
    today: date
    overdue: list[TaskRead]
    due_today: list[TaskRead]
    upcoming: list[TaskRead]


class InteractionCreate(BaseModel):
    type: InteractionType
    direction: InteractionDirection | None = None
    summary: str = Field(min_length=1)
    outcome: InteractionOutcome | None = None
    call_duration: int | None = Field(default=None, ge=0)
    meeting_location: str | None = None
    meeting_link: str | None = None
    attachments: list[str] = Field(default_factory=list)
    new_status: LeadStatus | None = None
    lost_reason: str | None = None
    schedule_follow_up: bool = False
    follow_up_date: date | None = None


class InteractionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    user_id: UUID
    type: str
    direction: str | None
    summary: str
    outcome: str | None
    status_before: str | None
    status_after: str | None
    call_duration: int | None
    meeting_location: str | None
    meeting_link: str | None
    attachments: list[str] = Field(default_factory=list)
    created_at: datetime
    warnings: list[str] = Field(default_factory=list)


class FunnelStage(BaseModel):
    status: str
    count: int
    percentage: int


class FunnelReport(BaseModel):
    total_leads: int
    stages: list[FunnelStage]
    conversion_rate: int


class StatsReport(BaseModel):
    period: StatsPeriod
    period_start: date
    new_leads: int
    previous_period_leads: int
    leads_trend: int
    tasks_due_today: int
    overdue_tasks: int
    meetings_today: int
    pipeline_value: Decimal
    revenue_won: Decimal


class UserCreate(BaseModel):
    email: EmailStr
    name: str = Field(min_length=1)
    phone: str | None = None
    role: UserRole = "member"
    daily_target: int = Field(default=10, ge=0)


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    name: str
    phone: str | None
    role: str
    is_active: bool
    daily_target: int
    created_at: datetime
    updated_at: datetime


class ParticipantInput(BaseModel):
    user_id: UUID | None = None
    email: EmailStr | None = None
    name: str | None = None
    role: ParticipantRole = "required"

    @model_validator(mode="after")
    def _needs_identity(self) -> ParticipantInput:
        if self.user_id is None and self.email is None:
            raise ValueError("participant needs a user_id or an email")
        return self


class ParticipantRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID | None
    email: str | None
    name: str | None
    role: str
    rsvp_status: str
    invited_at: datetime
    responded_at: datetime | None


class MeetingCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str | None = None
    lead_id: UUID | None = None
    start_time: datetime
    end_time: datetime
    timezone: str | None = None
    location: str | None = None
    meeting_link: str | None = None
    color: str = "#3b82f6"
    recurrence: MeetingRecurrence = "none"
    participants: list[ParticipantInput] = Field(default_factory=list)


class MeetingUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1)
    description: str | None = None
    lead_id: UUID | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    timezone: str | None = None
    location: str | None = None
    meeting_link: str | None = None
    color: str | None = None
    recurrence: MeetingRecurrence | None = None
    status: MeetingStatus | None = None
    participants: list[ParticipantInput] | None = None


class MeetingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    description: str | None
    organizer_id: UUID
    lead_id: UUID | None
    start_time: datetime
    end_time: datetime
    timezone: str
    location: str | None
    meeting_link: str | None
    color: str
    recurrence: str
    status: str
    participants: list[ParticipantRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class RsvpRequest(BaseModel):
    rsvp_status: RsvpStatus
