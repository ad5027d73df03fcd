from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Annotated, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator


def utc_now() -> datetime:
    return datetime.utcnow()


class Role(str, Enum):
    admin = "admin"
    steward = "steward"
    agent = "agent"


class SampleStatus(str, Enum):
    pending_feedback = "pending_feedback"
    overdue = "overdue"
    awaiting_client_response = "awaiting_client_response"
    closed_deal = "closed_deal"
    feedback_received = "feedback_received"


MUTABLE_SAMPLE_FIELDS = (
    "status",
    "customer_name",
    "contract_closed",
    "follow_up_date",
    "follow_up_notified",
    "client_feedback",
)


class ParticipantRecord(BaseModel):
    id: str
    name: str
    role: Role
    created_at_utc: datetime


class SampleRecord(BaseModel):
    id: str
    owner_id: str
    status: SampleStatus = SampleStatus.pending_feedback
    received_at_utc: datetime
    customer_name: Optional[str] = None
    contract_closed: Optional[bool] = None
    follow_up_date: Optional[date] = None
    follow_up_notified: bool = False
    client_feedback: Optional[str] = None


class BotConfig(BaseModel):
    oversight_contact: Optional[str] = None
    overdue_threshold_days: int = Field(default=7, ge=1, le=365)
    correction_window_seconds: int = Field(default=300, ge=1, le=86400)
    reminder_tier1_days: int = Field(default=8, ge=1, le=365)
    reminder_tier2_days: int = Field(default=14, ge=1, le=365)

    @model_validator(mode="after")
    def validate_tiers(self) -> "BotConfig":
        if self.reminder_tier1_days > self.reminder_tier2_days:
            raise ValueError("reminder_tier1_days cannot be greater than reminder_tier2_days")
        return self


# Session state: one variant per conversation step, discriminated by `awaiting`.


class AddAgentInfoStep(BaseModel):
    role: ClassVar[Role] = Role.steward
    awaiting: Literal["add_agent_info"] = "add_agent_info"


class SelectAgentForRemovalStep(BaseModel):
    role: ClassVar[Role] = Role.steward
    awaiting: Literal["select_agent_for_removal"] = "select_agent_for_removal"


class SelectAgentForDeliveryStep(BaseModel):
    role: ClassVar[Role] = Role.steward
    awaiting: Literal["select_agent_for_delivery"] = "select_agent_for_delivery"


class DeliveryQuantityStep(BaseModel):
    role: ClassVar[Role] = Role.steward
    awaiting: Literal["delivery_quantity"] = "delivery_quantity"
    agent_id: str
    agent_name: str


class SelectAgentForClearanceStep(BaseModel):
    role: ClassVar[Role] = Role.steward
    awaiting: Literal["select_agent_for_clearance"] = "select_agent_for_clearance"


class ConfirmClearanceStep(BaseModel):
    role: ClassVar[Role] = Role.steward
    awaiting: Literal["confirm_clearance"] = "confirm_clearance"
    agent_id: str
    agent_name: str
    sample_ids: list[str]


class AdminSelectAgentForReportStep(BaseModel):
    role: ClassVar[Role] = Role.admin
    awaiting: Literal["admin_select_agent_for_report"] = "admin_select_agent_for_report"


class AdminAddUserInfoStep(BaseModel):
    role: ClassVar[Role] = Role.admin
    awaiting: Literal["admin_add_user_info"] = "admin_add_user_info"


class AdminAddUserRoleStep(BaseModel):
    role: ClassVar[Role] = Role.admin
    awaiting: Literal["admin_add_user_role"] = "admin_add_user_role"
    participant_id: str
    name: str


class AdminSelectUserForRemovalStep(BaseModel):
    role: ClassVar[Role] = Role.admin
    awaiting: Literal["admin_select_user_for_removal"] = "admin_select_user_for_removal"


class AdminSelectAgentForPurgeStep(BaseModel):
    role: ClassVar[Role] = Role.admin
    awaiting: Literal["admin_select_agent_for_purge"] = "admin_select_agent_for_purge"


class SelectSampleForDevolutionStep(BaseModel):
    role: ClassVar[Role] = Role.agent
    awaiting: Literal["select_sample_for_devolution"] = "select_sample_for_devolution"


class CustomerNameStep(BaseModel):
    role: ClassVar[Role] = Role.agent
    awaiting: Literal["customer_name"] = "customer_name"
    sample_id: str


class ContractClosedStep(BaseModel):
    role: ClassVar[Role] = Role.agent
    awaiting: Literal["contract_closed"] = "contract_closed"
    sample_id: str
    customer_name: str


class NextStepStep(BaseModel):
    role: ClassVar[Role] = Role.agent
    awaiting: Literal["next_step"] = "next_step"
    sample_id: str
    customer_name: str
    contract_closed: bool = False


class ClientFeedbackStep(BaseModel):
    role: ClassVar[Role] = Role.agent
    awaiting: Literal["client_feedback"] = "client_feedback"
    sample_id: str
    customer_name: str
    contract_closed: bool


class FollowUpDateSelectionStep(BaseModel):
    role: ClassVar[Role] = Role.agent
    awaiting: Literal["follow_up_date_selection"] = "follow_up_date_selection"
    sample_id: str
    customer_name: str
    contract_closed: Optional[bool] = None
    rescheduling: bool = False


class FollowUpDateEntryStep(BaseModel):
    role: ClassVar[Role] = Role.agent
    awaiting: Literal["follow_up_date_entry"] = "follow_up_date_entry"
    sample_id: str
    customer_name: str
    contract_closed: Optional[bool] = None
    rescheduling: bool = False


class SelectSampleForFollowUpStep(BaseModel):
    role: ClassVar[Role] = Role.agent
    awaiting: Literal["select_sample_for_follow_up"] = "select_sample_for_follow_up"


class ClientReturnedStep(BaseModel):
    role: ClassVar[Role] = Role.agent
    awaiting: Literal["client_returned"] = "client_returned"
    sample_id: str
    customer_name: str


class FollowUpContractClosedStep(BaseModel):
    role: ClassVar[Role] = Role.agent
    awaiting: Literal["follow_up_contract_closed"] = "follow_up_contract_closed"
    sample_id: str
    customer_name: str


SessionState = Annotated[
    Union[
        AddAgentInfoStep,
        SelectAgentForRemovalStep,
        SelectAgentForDeliveryStep,
        DeliveryQuantityStep,
        SelectAgentForClearanceStep,
        ConfirmClearanceStep,
        AdminSelectAgentForReportStep,
        AdminAddUserInfoStep,
        AdminAddUserRoleStep,
        AdminSelectUserForRemovalStep,
        AdminSelectAgentForPurgeStep,
        SelectSampleForDevolutionStep,
        CustomerNameStep,
        ContractClosedStep,
        NextStepStep,
        ClientFeedbackStep,
        FollowUpDateSelectionStep,
        FollowUpDateEntryStep,
        SelectSampleForFollowUpStep,
        ClientReturnedStep,
        FollowUpContractClosedStep,
    ],
    Field(discriminator="awaiting"),
]

SESSION_ADAPTER: TypeAdapter[SessionState] = TypeAdapter(SessionState)


class SessionRecord(BaseModel):
    participant_id: str
    awaiting: str
    payload: dict = Field(default_factory=dict)
    updated_at_utc: datetime


# Outbound messages.


class TextMessage(BaseModel):
    body: str


class ListRow(BaseModel):
    id: str
    title: str
    description: Optional[str] = None


class ListSection(BaseModel):
    title: str
    rows: list[ListRow] = Field(min_length=1)


class ListPrompt(BaseModel):
    button_text: str
    description: str
    sections: list[ListSection] = Field(min_length=1)

    def rows(self) -> list[ListRow]:
        return [row for section in self.sections for row in section.rows]


class FileAttachment(BaseModel):
    filename: str
    caption: str
    content_type: str = "application/octet-stream"
    content: bytes


Prompt = Union[TextMessage, ListPrompt]


# Inbound chat events and HTTP payloads.


class InboundMessage(BaseModel):
    event_id: Optional[str] = Field(default=None, max_length=255)
    sender_id: str = Field(min_length=3, max_length=120)
    body: str = Field(default="", max_length=4096)
    selection_id: Optional[str] = Field(default=None, max_length=255)
    is_group: bool = False
    from_me: bool = False


class InboundMessageResponse(BaseModel):
    status: str
    detail: Optional[str] = None


class ParticipantCreateRequest(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    number: str = Field(min_length=8, max_length=20, pattern=r"^\d+$")
    role: Role


class ParticipantUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=2, max_length=120)
    role: Optional[Role] = None


class ParticipantItem(BaseModel):
    participant_id: str
    name: str
    role: Role
    sample_count: int
    open_sample_count: int


class ConfigUpdateRequest(BaseModel):
    oversight_contact: Optional[str] = Field(default=None, min_length=3, max_length=120)
    overdue_threshold_days: Optional[int] = Field(default=None, ge=1, le=365)
    correction_window_seconds: Optional[int] = Field(default=None, ge=1, le=86400)
    reminder_tier1_days: Optional[int] = Field(default=None, ge=1, le=365)
    reminder_tier2_days: Optional[int] = Field(default=None, ge=1, le=365)


class SweepResponse(BaseModel):
    today: date
    promoted: int
    overdue_reminders: int
    escalations: int
    follow_up_reminders: int


class ExportRow(BaseModel):
    agent_name: str
    sample: SampleRecord
