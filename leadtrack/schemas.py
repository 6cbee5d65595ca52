"""
Domain types shared by the gateway, the lead state model and the HTTP layer.

Leads travel as pydantic models built straight from ORM rows
(``from_attributes``); update intents are a discriminated union keyed on
``kind`` so each intent only carries the fields it is allowed to change.
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    AGENT = "agent"
    ADMIN = "admin"


class LeadStatus(str, Enum):
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"
    PROGRESSIVE = "progressive"
    SOLD = "sold"
    CLOSED = "closed"


# Tabs where future-dated follow-ups are hidden from agents
PIPELINE_STATUSES = (LeadStatus.HOT, LeadStatus.WARM, LeadStatus.COLD, LeadStatus.PROGRESSIVE)
# Statuses where the recurrence interval can be edited
RECURRENCE_STATUSES = (LeadStatus.WARM, LeadStatus.COLD, LeadStatus.PROGRESSIVE)
# A lead in these statuses is never overdue
TERMINAL_STATUSES = (LeadStatus.SOLD, LeadStatus.CLOSED)


class TodoStatus(str, Enum):
    NEW = "new"
    FOLLOWUP = "followup"
    CALLBACK = "callback"
    SALE = "sale"


class EveryFreq(str, Enum):
    FIVE_DAYS = "5"
    SIX_DAYS = "6"
    SEVEN_DAYS = "7"
    EIGHT_DAYS = "8"
    TEN_DAYS = "10"
    TWELVE_DAYS = "12"


class ColdStatus(str, Enum):
    UNREACHED = "Unreached"
    UNRESPONSIVE = "Unresponsive"


class DeletionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class ActivityAction(str, Enum):
    NOTE_ADDED = "note_added"
    DATE_CHANGED = "date_changed"
    STATUS_CHANGED = "status_changed"
    CREATED = "created"
    RULE_VIOLATION = "rule_violation"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


# --- Entities ---

class Profile(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str = ""
    name: str = ""
    role: Role = Role.AGENT
    points: int = 0
    theme_preference: Optional[str] = "dark"

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @field_validator("points", mode="before")
    @classmethod
    def _points_default(cls, v):
        return v or 0


class Note(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    lead_id: str
    text: str
    author_id: Optional[str] = None
    author_name: Optional[str] = None
    created_at: datetime


class DeletionRequest(BaseModel):
    # Stored as JSON with camelCase keys
    model_config = ConfigDict(populate_by_name=True)

    status: DeletionStatus
    requested_by: str = Field(alias="requestedBy")
    requested_at: datetime = Field(alias="requestedAt")


class Lead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    link: Optional[str] = None
    status: LeadStatus
    todo: TodoStatus
    # Kept as free text: legacy rows hold values outside EveryFreq
    every: Optional[str] = None
    follow_up_date: date
    assigned_agent_id: Optional[str] = None
    assigned_agent_name: Optional[str] = None
    close_reason: Optional[str] = None
    cold_status: Optional[ColdStatus] = None
    cold_start_date: Optional[date] = None
    cold_check_history: List[date] = Field(default_factory=list)
    notes: List[Note] = Field(default_factory=list)
    deletion_request: Optional[DeletionRequest] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("cold_check_history", "notes", mode="before")
    @classmethod
    def _none_is_empty(cls, v):
        return v or []

    @field_validator("every", mode="before")
    @classmethod
    def _blank_every(cls, v):
        if isinstance(v, Enum):
            return v.value
        return v or None


class ActivityLog(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    lead_id: Optional[str] = None
    agent_id: Optional[str] = None
    action: ActivityAction
    details: Optional[str] = None
    created_at: datetime


class PointsEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    agent_id: str
    agent_name: Optional[str] = None
    amount: int
    reason: str
    lead_id: Optional[str] = None
    created_at: datetime


class PayoutRequest(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    agent_id: str
    agent_name: str
    points_requested: int
    dollar_value: Decimal
    status: PayoutStatus = PayoutStatus.PENDING
    admin_note: Optional[str] = None
    requested_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None


class AgentTarget(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    agent_id: str
    agent_name: str
    month: date
    gp_target: Decimal = Decimal(0)
    sales_target: int = 0
    tp_target: Decimal = Decimal(0)
    tp_number_target: int = 0
    manual_new_gp: Optional[Decimal] = None
    manual_return_gp: Optional[Decimal] = None
    manual_sales_num: Optional[int] = None
    manual_tp_gp: Optional[Decimal] = None
    manual_tp_num: Optional[int] = None
    manual_created_leads: Optional[int] = None
    manual_taken_leads: Optional[int] = None
    manual_total_leads: Optional[int] = None
    manual_week1: Optional[Decimal] = None
    manual_week2: Optional[Decimal] = None
    manual_week3: Optional[Decimal] = None
    manual_week4: Optional[Decimal] = None


class PersonalTask(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    text: str
    completed: bool = False
    created_at: datetime


class NewLead(BaseModel):
    """Fields an agent supplies when creating a lead."""
    name: str = Field(min_length=1)
    link: Optional[str] = None
    status: LeadStatus = LeadStatus.HOT
    todo: TodoStatus = TodoStatus.NEW
    every: Optional[EveryFreq] = None
    follow_up_date: Optional[date] = None
    cold_status: Optional[ColdStatus] = None


# --- Update intents ---

class StatusChange(BaseModel):
    kind: Literal["status"] = "status"
    status: LeadStatus
    cold_status: Optional[ColdStatus] = None


class TodoChange(BaseModel):
    kind: Literal["todo"] = "todo"
    todo: TodoStatus


class DateChange(BaseModel):
    kind: Literal["date"] = "date"
    follow_up_date: date
    via_calendar: bool = False


class EveryChange(BaseModel):
    kind: Literal["every"] = "every"
    every: Optional[EveryFreq] = None


class ColdStatusChange(BaseModel):
    kind: Literal["cold_status"] = "cold_status"
    cold_status: ColdStatus


class ColdCheck(BaseModel):
    """Records a check-in for the local today; the day is never taken from the caller."""
    kind: Literal["cold_check"] = "cold_check"


class CloseWithReason(BaseModel):
    kind: Literal["close"] = "close"
    reason: str

    @field_validator("reason")
    @classmethod
    def _reason_required(cls, v):
        v = (v or "").strip()
        if not v:
            raise ValueError("a close reason is required")
        return v


class FieldEdit(BaseModel):
    kind: Literal["field"] = "field"
    name: Optional[str] = None
    link: Optional[str] = None


LeadUpdate = Annotated[
    Union[StatusChange, TodoChange, DateChange, EveryChange, ColdStatusChange, ColdCheck, CloseWithReason, FieldEdit],
    Field(discriminator="kind"),
]
