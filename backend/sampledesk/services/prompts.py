from __future__ import annotations

from typing import Optional
from zoneinfo import ZoneInfo

from backend.sampledesk.models import (
    AddAgentInfoStep,
    AdminAddUserInfoStep,
    AdminAddUserRoleStep,
    ClientFeedbackStep,
    ClientReturnedStep,
    ConfirmClearanceStep,
    ContractClosedStep,
    CustomerNameStep,
    DeliveryQuantityStep,
    FollowUpContractClosedStep,
    FollowUpDateEntryStep,
    FollowUpDateSelectionStep,
    ListPrompt,
    ListRow,
    ListSection,
    NextStepStep,
    ParticipantRecord,
    Prompt,
    Role,
    SampleRecord,
    SampleStatus,
    TextMessage,
)
from backend.sampledesk.services.commands import (
    CORRECTION_SELECTION_ID,
    MenuAction,
    SelectionPrefix,
    selection_id,
)
from backend.sampledesk.services.lifecycle import format_date, local_date, short_id

CONTRACT_YES = "contract_yes"
CONTRACT_NO = "contract_no"
FINAL_FEEDBACK = "get_final_feedback"
SCHEDULE_FOLLOW_UP = "schedule_follow_up"
FEEDBACK_YES = "feedback_yes"
FEEDBACK_NO = "feedback_no"
FOLLOW_UP_CONTRACT_YES = "followup_contract_yes"
FOLLOW_UP_CONTRACT_NO = "followup_contract_no"
DATE_MANUAL = "date_manual"

DATE_OPTIONS: dict[str, tuple[str, int]] = {
    "date_tomorrow": ("Tomorrow", 1),
    "date_2_days": ("In 2 days", 2),
    "date_7_days": ("In 7 days", 7),
    "date_15_days": ("In 15 days", 15),
}
RESCHEDULE_DATE_OPTIONS = ("date_tomorrow", "date_2_days", "date_7_days")


def _choice(description: str, rows: list[ListRow], *, button: str = "Select") -> ListPrompt:
    return ListPrompt(
        button_text=button,
        description=description,
        sections=[ListSection(title="Options", rows=rows)],
    )


def selection_list(
    *, button_text: str, description: str, section_title: str, rows: list[ListRow]
) -> ListPrompt:
    return ListPrompt(
        button_text=button_text,
        description=description,
        sections=[ListSection(title=section_title, rows=rows)],
    )


def steward_menu(participant: ParticipantRecord) -> ListPrompt:
    return ListPrompt(
        button_text="Options",
        description=f"Hello, *{participant.name}*! Steward main menu.",
        sections=[
            ListSection(
                title="Available actions",
                rows=[
                    ListRow(id=MenuAction.deliver_samples.value, title="Deliver samples"),
                    ListRow(id=MenuAction.add_agent.value, title="Add agent"),
                    ListRow(id=MenuAction.remove_agent.value, title="Remove agent"),
                    ListRow(id=MenuAction.clear_samples.value, title="Clear returned samples"),
                ],
            )
        ],
    )


def agent_menu(participant: ParticipantRecord) -> ListPrompt:
    return ListPrompt(
        button_text="Options",
        description=f"Hello, *{participant.name}*! Choose an action.",
        sections=[
            ListSection(
                title="Sample actions",
                rows=[
                    ListRow(id=MenuAction.start_devolution.value, title="Give sample feedback"),
                    ListRow(id=MenuAction.start_follow_up.value, title="Give follow-up feedback"),
                    ListRow(id=MenuAction.list_my_samples.value, title="My samples"),
                ],
            )
        ],
    )


def admin_menu(participant: ParticipantRecord) -> ListPrompt:
    return ListPrompt(
        button_text="Admin options",
        description=f"Hello, *{participant.name}*! Choose an action.",
        sections=[
            ListSection(
                title="Reports",
                rows=[
                    ListRow(id=MenuAction.report_all_samples.value, title="All samples report"),
                    ListRow(id=MenuAction.report_by_agent.value, title="Report by agent"),
                    ListRow(id=MenuAction.report_overdue.value, title="Overdue samples report"),
                ],
            ),
            ListSection(
                title="Management",
                rows=[
                    ListRow(id=MenuAction.add_user.value, title="Add user"),
                    ListRow(id=MenuAction.remove_user.value, title="Remove user"),
                    ListRow(id=MenuAction.purge_resolved.value, title="Purge resolved samples"),
                ],
            ),
        ],
    )


def role_menu(participant: ParticipantRecord) -> ListPrompt:
    if participant.role == Role.steward:
        return steward_menu(participant)
    if participant.role == Role.agent:
        return agent_menu(participant)
    return admin_menu(participant)


def contract_prompt() -> ListPrompt:
    return _choice(
        "Did you close a contract with this client?",
        [ListRow(id=CONTRACT_YES, title="Yes"), ListRow(id=CONTRACT_NO, title="No")],
    )


def next_step_prompt() -> ListPrompt:
    return _choice(
        "What is the next step with the client?",
        [
            ListRow(id=FINAL_FEEDBACK, title="I have the final feedback"),
            ListRow(id=SCHEDULE_FOLLOW_UP, title="Schedule a follow-up"),
        ],
    )


def follow_up_date_prompt(*, rescheduling: bool) -> ListPrompt:
    keys = RESCHEDULE_DATE_OPTIONS if rescheduling else tuple(DATE_OPTIONS)
    rows = [ListRow(id=key, title=DATE_OPTIONS[key][0]) for key in keys]
    rows.append(ListRow(id=DATE_MANUAL, title="Type a specific date"))
    description = (
        "When should the follow-up be rescheduled to?"
        if rescheduling
        else "When will you follow up with the client?"
    )
    return _choice(description, rows, button="Pick a date")


def client_returned_prompt(customer_name: str) -> ListPrompt:
    return _choice(
        f"Follow-up with *{customer_name}*.\nHas the client given the final feedback?",
        [
            ListRow(id=FEEDBACK_YES, title="Yes (gave feedback)"),
            ListRow(id=FEEDBACK_NO, title="No (reschedule)"),
        ],
    )


def follow_up_contract_prompt() -> ListPrompt:
    return _choice(
        "Was the contract closed this time?",
        [
            ListRow(id=FOLLOW_UP_CONTRACT_YES, title="Yes, contract closed"),
            ListRow(id=FOLLOW_UP_CONTRACT_NO, title="No contract"),
        ],
    )


def role_prompt(name: str) -> ListPrompt:
    return ListPrompt(
        button_text="Select role",
        description=f"Which role will *{name}* have?",
        sections=[
            ListSection(
                title="Roles",
                rows=[
                    ListRow(
                        id=selection_id(SelectionPrefix.role, Role.agent.value),
                        title="Agent",
                        description="Reports sample devolutions.",
                    ),
                    ListRow(
                        id=selection_id(SelectionPrefix.role, Role.steward.value),
                        title="Steward",
                        description="Delivers samples and manages agents.",
                    ),
                    ListRow(
                        id=selection_id(SelectionPrefix.role, Role.admin.value),
                        title="Admin",
                        description="Manages users and pulls reports.",
                    ),
                ],
            )
        ],
    )


def clearance_prompt(agent_name: str, sample_ids: list[str]) -> TextMessage:
    lines = [f"Select which samples from *{agent_name}* were returned:", ""]
    for position, sample_id in enumerate(sample_ids, start=1):
        lines.append(f"*{position}* - ID {short_id(sample_id)}")
    lines.append("")
    lines.append("Reply with the *numbers* of the samples to clear, separated by commas (e.g. 1, 3).")
    return TextMessage(body="\n".join(lines))


def step_prompt(state: object) -> Optional[Prompt]:
    """Prompt that asks for the input a step is waiting on; None for list-selection steps."""
    if isinstance(state, AddAgentInfoStep):
        return TextMessage(
            body="OK. Send the new agent's name and number as:\n\n*Agent Name, 5543988887777*"
        )
    if isinstance(state, DeliveryQuantityStep):
        return TextMessage(body=f"How many samples did you hand to *{state.agent_name}*?")
    if isinstance(state, ConfirmClearanceStep):
        return clearance_prompt(state.agent_name, state.sample_ids)
    if isinstance(state, AdminAddUserInfoStep):
        return TextMessage(
            body="What is the new user's name and number?\n\nSend as: *Full Name, 55439...*"
        )
    if isinstance(state, AdminAddUserRoleStep):
        return role_prompt(state.name)
    if isinstance(state, CustomerNameStep):
        return TextMessage(
            body=f"Great! About sample *{short_id(state.sample_id)}*:\n\nWhich client was it for?"
        )
    if isinstance(state, ContractClosedStep):
        return contract_prompt()
    if isinstance(state, NextStepStep):
        return next_step_prompt()
    if isinstance(state, ClientFeedbackStep):
        return TextMessage(body="OK. What was the client's final feedback?")
    if isinstance(state, FollowUpDateSelectionStep):
        return follow_up_date_prompt(rescheduling=state.rescheduling)
    if isinstance(state, FollowUpDateEntryStep):
        return TextMessage(body="OK. Which date? (send as DD/MM/YYYY)")
    if isinstance(state, ClientReturnedStep):
        return client_returned_prompt(state.customer_name)
    if isinstance(state, FollowUpContractClosedStep):
        return follow_up_contract_prompt()
    return None


def finalized_prompt(sample: SampleRecord, *, window_seconds: int) -> ListPrompt:
    if sample.status == SampleStatus.awaiting_client_response:
        message = (
            f"Scheduled for {format_date(sample.follow_up_date)}! "
            "I will remind you on that date. Thank you!"
        )
    elif sample.status == SampleStatus.closed_deal:
        message = "Contract closed! Feedback recorded successfully."
    else:
        message = "Feedback recorded successfully. Thank you!"
    minutes = max(1, round(window_seconds / 60))
    return ListPrompt(
        button_text="Options",
        description=message,
        sections=[
            ListSection(
                title=f"Final report goes out in {minutes} min",
                rows=[ListRow(id=CORRECTION_SELECTION_ID, title="Correct devolution")],
            )
        ],
    )


def delivery_notice(agent: ParticipantRecord, quantity: int, *, threshold_days: int) -> ListPrompt:
    return ListPrompt(
        button_text="Actions",
        description=(
            f"Hello, *{agent.name}*! You received *{quantity}* new sample(s) today.\n\n"
            f"*Heads up:* you have *{threshold_days} days* to give feedback!"
        ),
        sections=[
            ListSection(
                title="Options",
                rows=[ListRow(id=MenuAction.start_devolution.value, title="Give sample feedback")],
            )
        ],
    )


def agent_summary(
    participant: ParticipantRecord, samples: list[SampleRecord], zone: ZoneInfo
) -> TextMessage:
    overdue = [item for item in samples if item.status == SampleStatus.overdue]
    pending = [item for item in samples if item.status == SampleStatus.pending_feedback]
    waiting = [item for item in samples if item.status == SampleStatus.awaiting_client_response]
    if not (overdue or pending or waiting):
        return TextMessage(body="You have no open samples right now.")

    lines = [f"Hello, *{participant.name}*! Here is a summary of your samples:"]
    if overdue:
        lines.append(f"\n*OVERDUE ({len(overdue)})*")
        for item in overdue:
            received = format_date(local_date(item.received_at_utc, zone))
            lines.append(f" • ID {short_id(item.id)} (received {received})")
    if pending:
        lines.append(f"\n*PENDING FEEDBACK ({len(pending)})*")
        for item in pending:
            received = format_date(local_date(item.received_at_utc, zone))
            lines.append(f" • ID {short_id(item.id)} (received {received})")
    if waiting:
        lines.append(f"\n*AWAITING CLIENT ({len(waiting)})*")
        for item in waiting:
            lines.append(
                f" • ID {short_id(item.id)} (client: {item.customer_name or '-'}, "
                f"follow-up {format_date(item.follow_up_date)})"
            )
    return TextMessage(body="\n".join(lines))
