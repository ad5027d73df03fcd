from __future__ import annotations

import logging
from threading import Lock
from typing import TYPE_CHECKING, Any, Callable, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ValidationError

from backend.sampledesk.models import (
    SESSION_ADAPTER,
    AddAgentInfoStep,
    AdminAddUserInfoStep,
    AdminAddUserRoleStep,
    AdminSelectAgentForPurgeStep,
    AdminSelectAgentForReportStep,
    AdminSelectUserForRemovalStep,
    ClientFeedbackStep,
    ClientReturnedStep,
    ConfirmClearanceStep,
    ContractClosedStep,
    CustomerNameStep,
    DeliveryQuantityStep,
    FollowUpContractClosedStep,
    FollowUpDateEntryStep,
    FollowUpDateSelectionStep,
    InboundMessage,
    ListRow,
    NextStepStep,
    ParticipantRecord,
    Role,
    SampleStatus,
    SelectAgentForClearanceStep,
    SelectAgentForDeliveryStep,
    SelectAgentForRemovalStep,
    SelectSampleForDevolutionStep,
    SelectSampleForFollowUpStep,
    SessionRecord,
)
from backend.sampledesk.services.commands import (
    Command,
    CommandKind,
    MenuAction,
    SelectionPrefix,
    match_option,
    parse_global_command,
    parse_menu_command,
    parse_name_and_number,
    parse_positions,
    parse_quantity,
    selection_id,
    strip_prefix,
)
from backend.sampledesk.services.lifecycle import (
    DEVOLVABLE_STATUSES,
    FOLLOW_UP_STATUSES,
    MAX_DELIVERY_QUANTITY,
    RESOLVED_STATUSES,
    can_devolve,
    can_follow_up,
    follow_up_in,
    format_date,
    local_date,
    local_today,
    parse_follow_up_date,
    short_id,
)
from backend.sampledesk.services.prompts import (
    CONTRACT_YES,
    DATE_MANUAL,
    DATE_OPTIONS,
    FEEDBACK_YES,
    FINAL_FEEDBACK,
    FOLLOW_UP_CONTRACT_YES,
    agent_summary,
    delivery_notice,
    finalized_prompt,
    role_menu,
    role_prompt,
    selection_list,
    step_prompt,
)
from backend.sampledesk.store import IneligibleAgentError, StoreConflictError, StoreNotFoundError

if TYPE_CHECKING:
    from backend.sampledesk.observability import MetricsRegistry
    from backend.sampledesk.services.corrections import CorrectionWindowManager
    from backend.sampledesk.services.reports import ReportDispatcher
    from backend.sampledesk.services.transport import Messenger
    from backend.sampledesk.store import InMemoryStore

logger = logging.getLogger("sampledesk.engine")


class InvalidInputError(Exception):
    pass


class SelectionNotFoundError(Exception):
    pass


class SessionExpiredError(Exception):
    pass


class ConversationEngine:
    def __init__(
        self,
        *,
        store: "InMemoryStore",
        messenger: "Messenger",
        corrections: "CorrectionWindowManager",
        dispatcher: "ReportDispatcher",
        zone: ZoneInfo,
        address_suffix: str = "@c.us",
        metrics: Optional["MetricsRegistry"] = None,
    ) -> None:
        self.store = store
        self.messenger = messenger
        self.corrections = corrections
        self.dispatcher = dispatcher
        self.zone = zone
        self.address_suffix = address_suffix
        self.metrics = metrics
        self._locks_guard = Lock()
        self._locks: dict[str, Lock] = {}
        self._resolvers: dict[type, Callable[[ParticipantRecord, Any, InboundMessage], None]] = {
            AddAgentInfoStep: self._resolve_add_agent_info,
            SelectAgentForRemovalStep: self._resolve_agent_for_removal,
            SelectAgentForDeliveryStep: self._resolve_agent_for_delivery,
            DeliveryQuantityStep: self._resolve_delivery_quantity,
            SelectAgentForClearanceStep: self._resolve_agent_for_clearance,
            ConfirmClearanceStep: self._resolve_confirm_clearance,
            AdminSelectAgentForReportStep: self._resolve_agent_for_report,
            AdminAddUserInfoStep: self._resolve_add_user_info,
            AdminAddUserRoleStep: self._resolve_add_user_role,
            AdminSelectUserForRemovalStep: self._resolve_user_for_removal,
            AdminSelectAgentForPurgeStep: self._resolve_agent_for_purge,
            SelectSampleForDevolutionStep: self._resolve_sample_for_devolution,
            CustomerNameStep: self._resolve_customer_name,
            ContractClosedStep: self._resolve_contract_closed,
            NextStepStep: self._resolve_next_step,
            ClientFeedbackStep: self._resolve_client_feedback,
            FollowUpDateSelectionStep: self._resolve_follow_up_date_selection,
            FollowUpDateEntryStep: self._resolve_follow_up_date_entry,
            SelectSampleForFollowUpStep: self._resolve_sample_for_follow_up,
            ClientReturnedStep: self._resolve_client_returned,
            FollowUpContractClosedStep: self._resolve_follow_up_contract_closed,
        }
        self._menu_actions: dict[MenuAction, Callable[[ParticipantRecord], None]] = {
            MenuAction.deliver_samples: self._show_delivery_agents,
            MenuAction.add_agent: lambda p: self._advance(p, AddAgentInfoStep()),
            MenuAction.remove_agent: self._show_agents_for_removal,
            MenuAction.clear_samples: self._show_agents_for_clearance,
            MenuAction.start_devolution: self._show_devolvable_samples,
            MenuAction.start_follow_up: self._show_follow_up_samples,
            MenuAction.list_my_samples: self._send_agent_summary,
            MenuAction.report_all_samples: self._send_full_report,
            MenuAction.report_by_agent: self._show_agents_for_report,
            MenuAction.report_overdue: self._send_overdue_report,
            MenuAction.add_user: lambda p: self._advance(p, AdminAddUserInfoStep()),
            MenuAction.remove_user: self._show_users_for_removal,
            MenuAction.purge_resolved: self._show_agents_for_purge,
        }

    def address_for(self, number: str) -> str:
        return f"{number}{self.address_suffix}"

    def handle(self, participant_id: str, event: InboundMessage) -> str:
        participant = self.store.find_participant(participant_id)
        if participant is None:
            logger.info("message_ignored sender=%s reason=unregistered", participant_id)
            return "ignored_unregistered"
        with self._participant_lock(participant_id):
            outcome = self._dispatch(participant, event)
        if self.metrics:
            self.metrics.increment("messages_handled")
        logger.info(
            "message_handled participant=%s role=%s outcome=%s",
            participant_id,
            participant.role.value,
            outcome,
        )
        return outcome

    def _dispatch(self, participant: ParticipantRecord, event: InboundMessage) -> str:
        record = self.store.get_session(participant.id)
        command = parse_global_command(participant.role, event)
        if command and command.kind == CommandKind.cancel:
            self.store.clear_session(participant.id)
            self.messenger.text(participant.id, "Operation cancelled.")
            self._send_menu(participant)
            return "cancelled"
        if command and command.kind == CommandKind.correct:
            return self._correct(participant)

        if record is None:
            self._run_menu_command(participant, parse_menu_command(participant.role, event))
            return "menu"

        try:
            state = self._load_state(participant, record)
        except SessionExpiredError:
            logger.info(
                "session_expired participant=%s awaiting=%s", participant.id, record.awaiting
            )
            self.store.clear_session(participant.id)
            self.messenger.text(participant.id, "Session expired. Please start again.")
            self._send_menu(participant)
            return "session_expired"

        try:
            self._resolvers[type(state)](participant, state, event)
        except InvalidInputError as exc:
            self.messenger.text(participant.id, str(exc))
            prompt = step_prompt(state)
            if prompt is not None:
                self.messenger.prompt(participant.id, prompt)
            else:
                self._originating_list(state)(participant)
            return "invalid_input"
        except SelectionNotFoundError as exc:
            self.messenger.text(participant.id, str(exc))
            self._originating_list(state)(participant)
            return "not_found"
        return "resolved"

    def _load_state(self, participant: ParticipantRecord, record: SessionRecord) -> BaseModel:
        try:
            state = SESSION_ADAPTER.validate_python({**record.payload, "awaiting": record.awaiting})
        except ValidationError as exc:
            raise SessionExpiredError(f"unrecognized step: {record.awaiting}") from exc
        if type(state).role != participant.role:
            raise SessionExpiredError(f"step {record.awaiting} does not belong to {participant.role}")
        return state

    def _run_menu_command(self, participant: ParticipantRecord, command: Command) -> None:
        if command.kind == CommandKind.action and command.action in self._menu_actions:
            self._menu_actions[command.action](participant)
            return
        self._send_menu(participant)

    # Shared helpers

    def _participant_lock(self, participant_id: str) -> Lock:
        with self._locks_guard:
            return self._locks.setdefault(participant_id, Lock())

    def _send_menu(self, participant: ParticipantRecord) -> None:
        self.messenger.prompt(participant.id, role_menu(participant))

    def _advance(self, participant: ParticipantRecord, state: BaseModel) -> None:
        self.store.set_session(participant.id, state)
        prompt = step_prompt(state)
        if prompt is not None:
            self.messenger.prompt(participant.id, prompt)

    def _complete(self, participant: ParticipantRecord, message: str) -> None:
        self.store.clear_session(participant.id)
        self.messenger.text(participant.id, message)
        self._send_menu(participant)

    def _selected(self, prefix: SelectionPrefix, event: InboundMessage) -> str:
        value = strip_prefix(prefix, event.selection_id) or strip_prefix(prefix, event.body.strip())
        if value is None:
            raise InvalidInputError("Please pick an option from the list.")
        return value

    def _selected_agent(self, prefix: SelectionPrefix, event: InboundMessage) -> ParticipantRecord:
        agent = self.store.find_participant(self._selected(prefix, event))
        if agent is None or agent.role != Role.agent:
            raise SelectionNotFoundError("Agent not found. The list below is up to date.")
        return agent

    def _remove_participant(self, target: ParticipantRecord) -> None:
        self.store.remove_participant(target.id)
        self.corrections.discard(target.id)
        logger.info("participant_removed participant=%s role=%s", target.id, target.role.value)

    def _display_number(self, participant_id: str) -> str:
        return participant_id.split("@", 1)[0]

    def _originating_list(self, state: BaseModel) -> Callable[[ParticipantRecord], None]:
        if isinstance(state, (SelectAgentForRemovalStep,)):
            return self._show_agents_for_removal
        if isinstance(state, (SelectAgentForDeliveryStep, DeliveryQuantityStep)):
            return self._show_delivery_agents
        if isinstance(state, (SelectAgentForClearanceStep, ConfirmClearanceStep)):
            return self._show_agents_for_clearance
        if isinstance(state, AdminSelectAgentForReportStep):
            return self._show_agents_for_report
        if isinstance(state, AdminSelectUserForRemovalStep):
            return self._show_users_for_removal
        if isinstance(state, AdminSelectAgentForPurgeStep):
            return self._show_agents_for_purge
        if isinstance(
            state,
            (SelectSampleForFollowUpStep, ClientReturnedStep, FollowUpContractClosedStep),
        ):
            return self._show_follow_up_samples
        if isinstance(state, (FollowUpDateSelectionStep, FollowUpDateEntryStep)) and state.rescheduling:
            return self._show_follow_up_samples
        if isinstance(state, ClientFeedbackStep) and self._is_follow_up_sample(state.sample_id):
            return self._show_follow_up_samples
        if isinstance(
            state,
            (
                SelectSampleForDevolutionStep,
                CustomerNameStep,
                ContractClosedStep,
                NextStepStep,
                ClientFeedbackStep,
                FollowUpDateSelectionStep,
                FollowUpDateEntryStep,
            ),
        ):
            return self._show_devolvable_samples
        return self._reset_to_menu

    def _is_follow_up_sample(self, sample_id: str) -> bool:
        sample = self.store.find_sample(sample_id)
        return sample is not None and can_follow_up(sample)

    def _reset_to_menu(self, participant: ParticipantRecord) -> None:
        self.store.clear_session(participant.id)
        self._send_menu(participant)

    # Lists that open a selection step

    def _show_delivery_agents(self, participant: ParticipantRecord) -> None:
        agents = self.store.eligible_delivery_agents()
        if not agents:
            self._complete(
                participant,
                "No agents can receive samples right now "
                "(all have open samples or none are registered).",
            )
            return
        rows = [
            ListRow(
                id=selection_id(SelectionPrefix.deliver, agent.id),
                title=agent.name,
                description=f"{len(self.store.list_samples(owner_id=agent.id))} samples in total",
            )
            for agent in agents
        ]
        self.store.set_session(participant.id, SelectAgentForDeliveryStep())
        self.messenger.prompt(
            participant.id,
            selection_list(
                button_text="Select agent",
                description="Who are you delivering samples to?",
                section_title="Agents without open samples",
                rows=rows,
            ),
        )

    def _show_agents_for_removal(self, participant: ParticipantRecord) -> None:
        agents = self.store.list_participants(role=Role.agent)
        if not agents:
            self._complete(participant, "There are no agents to remove.")
            return
        rows = [
            ListRow(
                id=selection_id(SelectionPrefix.remove_agent, agent.id),
                title=agent.name,
                description=self._display_number(agent.id),
            )
            for agent in agents
        ]
        self.store.set_session(participant.id, SelectAgentForRemovalStep())
        self.messenger.prompt(
            participant.id,
            selection_list(
                button_text="Select agent",
                description="Who do you want to remove?",
                section_title="Agents",
                rows=rows,
            ),
        )

    def _show_agents_for_clearance(self, participant: ParticipantRecord) -> None:
        agents = self.store.list_participants(role=Role.agent)
        if not agents:
            self._complete(participant, "There are no agents registered.")
            return
        rows = []
        for agent in agents:
            open_count = len(self.store.list_samples(owner_id=agent.id, statuses=DEVOLVABLE_STATUSES))
            rows.append(
                ListRow(
                    id=selection_id(SelectionPrefix.clear, agent.id),
                    title=agent.name,
                    description=f"{open_count} pending/overdue sample(s)",
                )
            )
        self.store.set_session(participant.id, SelectAgentForClearanceStep())
        self.messenger.prompt(
            participant.id,
            selection_list(
                button_text="Select agent",
                description="Whose returned samples do you want to clear?",
                section_title="All agents",
                rows=rows,
            ),
        )

    def _show_agents_for_report(self, participant: ParticipantRecord) -> None:
        agents = self.store.list_participants(role=Role.agent)
        if not agents:
            self._complete(participant, "There are no agents to report on.")
            return
        rows = [
            ListRow(id=selection_id(SelectionPrefix.report_agent, agent.id), title=agent.name)
            for agent in agents
        ]
        self.store.set_session(participant.id, AdminSelectAgentForReportStep())
        self.messenger.prompt(
            participant.id,
            selection_list(
                button_text="Select",
                description="Pick the agent to build the report for:",
                section_title="Agents",
                rows=rows,
            ),
        )

    def _show_users_for_removal(self, participant: ParticipantRecord) -> None:
        users = self.store.list_participants(exclude_id=participant.id)
        if not users:
            self._complete(participant, "There are no other users to remove.")
            return
        rows = [
            ListRow(
                id=selection_id(SelectionPrefix.admin_remove, user.id),
                title=user.name,
                description=f"Role: {user.role.value} | Number: {self._display_number(user.id)}",
            )
            for user in users
        ]
        self.store.set_session(participant.id, AdminSelectUserForRemovalStep())
        self.messenger.prompt(
            participant.id,
            selection_list(
                button_text="Select",
                description="Pick the user to remove:",
                section_title="Registered users",
                rows=rows,
            ),
        )

    def _show_agents_for_purge(self, participant: ParticipantRecord) -> None:
        agents = self.store.list_participants(role=Role.agent)
        if not agents:
            self._complete(participant, "There are no agents registered.")
            return
        rows = []
        for agent in agents:
            resolved = len(self.store.list_samples(owner_id=agent.id, statuses=RESOLVED_STATUSES))
            rows.append(
                ListRow(
                    id=selection_id(SelectionPrefix.purge, agent.id),
                    title=agent.name,
                    description=f"{resolved} resolved sample(s)",
                )
            )
        self.store.set_session(participant.id, AdminSelectAgentForPurgeStep())
        self.messenger.prompt(
            participant.id,
            selection_list(
                button_text="Select",
                description="Whose resolved samples do you want to purge?",
                section_title="Agents",
                rows=rows,
            ),
        )

    def _show_devolvable_samples(self, participant: ParticipantRecord) -> None:
        samples = self.store.list_samples(owner_id=participant.id, statuses=DEVOLVABLE_STATUSES)
        if not samples:
            self._complete(participant, "You have no samples awaiting feedback right now.")
            return
        rows = []
        for sample in samples:
            received = format_date(local_date(sample.received_at_utc, self.zone))
            suffix = " - overdue" if sample.status == SampleStatus.overdue else ""
            rows.append(
                ListRow(
                    id=selection_id(SelectionPrefix.sample, sample.id),
                    title=f"Sample {short_id(sample.id)}",
                    description=f"Received {received}{suffix}",
                )
            )
        self.store.set_session(participant.id, SelectSampleForDevolutionStep())
        self.messenger.prompt(
            participant.id,
            selection_list(
                button_text="Select sample",
                description="Which sample are you giving feedback on?",
                section_title="Your pending samples",
                rows=rows,
            ),
        )

    def _show_follow_up_samples(self, participant: ParticipantRecord) -> None:
        samples = self.store.list_samples(owner_id=participant.id, statuses=FOLLOW_UP_STATUSES)
        if not samples:
            self._complete(participant, "You have no follow-ups scheduled right now.")
            return
        rows = [
            ListRow(
                id=selection_id(SelectionPrefix.follow_up, sample.id),
                title=f"Sample {short_id(sample.id)}",
                description=(
                    f"Client: {sample.customer_name or '-'} | "
                    f"Scheduled for {format_date(sample.follow_up_date)}"
                ),
            )
            for sample in samples
        ]
        self.store.set_session(participant.id, SelectSampleForFollowUpStep())
        self.messenger.prompt(
            participant.id,
            selection_list(
                button_text="Select follow-up",
                description="Which follow-up are you reporting on?",
                section_title="Your scheduled follow-ups",
                rows=rows,
            ),
        )

    # Single-shot actions

    def _send_agent_summary(self, participant: ParticipantRecord) -> None:
        samples = self.store.list_samples(owner_id=participant.id)
        self.messenger.prompt(participant.id, agent_summary(participant, samples, self.zone))
        self._send_menu(participant)

    def _send_full_report(self, participant: ParticipantRecord) -> None:
        self.messenger.text(participant.id, "Building the full samples report...")
        self.messenger.file(participant.id, self.dispatcher.export(label="all samples"))

    def _send_overdue_report(self, participant: ParticipantRecord) -> None:
        self.messenger.text(participant.id, "Building the overdue samples report...")
        self.messenger.file(
            participant.id,
            self.dispatcher.export(label="overdue samples", status=SampleStatus.overdue),
        )

    # Steward steps

    def _resolve_add_agent_info(
        self, participant: ParticipantRecord, state: AddAgentInfoStep, event: InboundMessage
    ) -> None:
        try:
            name, number = parse_name_and_number(event.body)
        except ValueError as exc:
            raise InvalidInputError("Invalid format. Send: `Agent Name, 5543988887777`") from exc
        try:
            self.store.add_participant(self.address_for(number), name, Role.agent)
        except StoreConflictError:
            self._complete(participant, "This number is already registered.")
            return
        self._complete(participant, f"Agent *{name}* added successfully!")

    def _resolve_agent_for_removal(
        self, participant: ParticipantRecord, state: SelectAgentForRemovalStep, event: InboundMessage
    ) -> None:
        agent = self._selected_agent(SelectionPrefix.remove_agent, event)
        self._remove_participant(agent)
        self._complete(participant, f"Agent *{agent.name}* removed.")

    def _resolve_agent_for_delivery(
        self, participant: ParticipantRecord, state: SelectAgentForDeliveryStep, event: InboundMessage
    ) -> None:
        agent = self._selected_agent(SelectionPrefix.deliver, event)
        if agent.id not in {item.id for item in self.store.eligible_delivery_agents()}:
            raise SelectionNotFoundError(f"*{agent.name}* still has open samples and cannot receive more.")
        self._advance(participant, DeliveryQuantityStep(agent_id=agent.id, agent_name=agent.name))

    def _resolve_delivery_quantity(
        self, participant: ParticipantRecord, state: DeliveryQuantityStep, event: InboundMessage
    ) -> None:
        try:
            quantity = parse_quantity(event.body)
        except ValueError as exc:
            raise InvalidInputError(
                f"Please send a whole number between 1 and {MAX_DELIVERY_QUANTITY}."
            ) from exc
        try:
            self.store.deliver_samples(state.agent_id, quantity, only_if_eligible=True)
        except IneligibleAgentError as exc:
            raise SelectionNotFoundError(
                f"*{state.agent_name}* still has open samples and cannot receive more."
            ) from exc
        except (StoreNotFoundError, StoreConflictError) as exc:
            raise SelectionNotFoundError("That agent is no longer registered.") from exc
        agent = self.store.get_participant(state.agent_id)
        logger.info(
            "samples_delivered steward=%s agent=%s quantity=%s", participant.id, agent.id, quantity
        )
        self._complete(participant, f"*{quantity}* sample(s) registered for *{agent.name}*.")
        threshold = self.store.get_config().overdue_threshold_days
        if not self.messenger.prompt(
            agent.id, delivery_notice(agent, quantity, threshold_days=threshold)
        ):
            self.messenger.text(participant.id, f"Could not notify *{agent.name}*.")

    def _resolve_agent_for_clearance(
        self,
        participant: ParticipantRecord,
        state: SelectAgentForClearanceStep,
        event: InboundMessage,
    ) -> None:
        agent = self._selected_agent(SelectionPrefix.clear, event)
        samples = self.store.list_samples(owner_id=agent.id, statuses=DEVOLVABLE_STATUSES)
        if not samples:
            self._complete(participant, f"*{agent.name}* has no pending samples.")
            return
        self._advance(
            participant,
            ConfirmClearanceStep(
                agent_id=agent.id,
                agent_name=agent.name,
                sample_ids=[sample.id for sample in samples],
            ),
        )

    def _resolve_confirm_clearance(
        self, participant: ParticipantRecord, state: ConfirmClearanceStep, event: InboundMessage
    ) -> None:
        chosen = [
            state.sample_ids[position - 1]
            for position in parse_positions(event.body)
            if 1 <= position <= len(state.sample_ids)
        ]
        if not chosen:
            raise InvalidInputError("No valid sample selected. Reply with numbers from the list, e.g. 1, 3.")
        if self.store.find_participant(state.agent_id) is None:
            raise SelectionNotFoundError("That agent is no longer registered.")
        cleared = self.store.delete_samples(chosen, allowed_statuses=DEVOLVABLE_STATUSES)
        logger.info(
            "samples_cleared steward=%s agent=%s count=%s", participant.id, state.agent_id, len(cleared)
        )
        if cleared:
            self._complete(participant, f"*{len(cleared)}* sample(s) from *{state.agent_name}* cleared.")
        else:
            self._complete(participant, "None of the selected samples could be cleared.")

    # Admin steps

    def _resolve_agent_for_report(
        self,
        participant: ParticipantRecord,
        state: AdminSelectAgentForReportStep,
        event: InboundMessage,
    ) -> None:
        agent = self._selected_agent(SelectionPrefix.report_agent, event)
        self.messenger.text(participant.id, f"Building the report for *{agent.name}*...")
        self.messenger.file(participant.id, self.dispatcher.export(label=agent.name, owner_id=agent.id))
        self.store.clear_session(participant.id)
        self._send_menu(participant)

    def _resolve_add_user_info(
        self, participant: ParticipantRecord, state: AdminAddUserInfoStep, event: InboundMessage
    ) -> None:
        try:
            name, number = parse_name_and_number(event.body)
        except ValueError as exc:
            raise InvalidInputError("Invalid format. Send: *Full Name, 55439...*") from exc
        participant_id = self.address_for(number)
        existing = self.store.find_participant(participant_id)
        if existing:
            self._complete(
                participant,
                f'Number {number} already belongs to "{existing.name}" ({existing.role.value}).',
            )
            return
        self._advance(participant, AdminAddUserRoleStep(participant_id=participant_id, name=name))

    def _resolve_add_user_role(
        self, participant: ParticipantRecord, state: AdminAddUserRoleStep, event: InboundMessage
    ) -> None:
        option = match_option(role_prompt(state.name), event)
        role_value = strip_prefix(SelectionPrefix.role, option)
        if role_value is None:
            raise InvalidInputError("Invalid selection. Please choose a role from the list.")
        role = Role(role_value)
        try:
            self.store.add_participant(state.participant_id, state.name, role)
        except StoreConflictError:
            self._complete(participant, "This number is already registered.")
            return
        self._complete(participant, f"User *{state.name}* added as *{role.value}*!")

    def _resolve_user_for_removal(
        self,
        participant: ParticipantRecord,
        state: AdminSelectUserForRemovalStep,
        event: InboundMessage,
    ) -> None:
        target = self.store.find_participant(self._selected(SelectionPrefix.admin_remove, event))
        if target is None or target.id == participant.id:
            raise SelectionNotFoundError("User not found. The list below is up to date.")
        self._remove_participant(target)
        self._complete(participant, f"User *{target.name}* removed.")

    def _resolve_agent_for_purge(
        self,
        participant: ParticipantRecord,
        state: AdminSelectAgentForPurgeStep,
        event: InboundMessage,
    ) -> None:
        agent = self._selected_agent(SelectionPrefix.purge, event)
        resolved = self.store.list_samples(owner_id=agent.id, statuses=RESOLVED_STATUSES)
        purged = self.store.delete_samples(
            [sample.id for sample in resolved], allowed_statuses=RESOLVED_STATUSES
        )
        self._complete(participant, f"*{len(purged)}* resolved sample(s) purged for *{agent.name}*.")

    # Agent steps

    def _resolve_sample_for_devolution(
        self,
        participant: ParticipantRecord,
        state: SelectSampleForDevolutionStep,
        event: InboundMessage,
    ) -> None:
        sample = self.store.find_sample(self._selected(SelectionPrefix.sample, event))
        if sample is None or sample.owner_id != participant.id or not can_devolve(sample):
            raise SelectionNotFoundError("Sample not found or no longer pending.")
        self._advance(participant, CustomerNameStep(sample_id=sample.id))

    def _resolve_customer_name(
        self, participant: ParticipantRecord, state: CustomerNameStep, event: InboundMessage
    ) -> None:
        name = event.body.strip()
        if not name:
            raise InvalidInputError("Please send the client's name.")
        self._advance(
            participant, ContractClosedStep(sample_id=state.sample_id, customer_name=name)
        )

    def _resolve_contract_closed(
        self, participant: ParticipantRecord, state: ContractClosedStep, event: InboundMessage
    ) -> None:
        option = match_option(step_prompt(state), event)
        if option is None:
            raise InvalidInputError("Please answer Yes or No.")
        if option == CONTRACT_YES:
            self._finalize(
                participant,
                state,
                {
                    "status": SampleStatus.closed_deal,
                    "customer_name": state.customer_name,
                    "contract_closed": True,
                },
            )
            return
        self._advance(
            participant,
            NextStepStep(sample_id=state.sample_id, customer_name=state.customer_name),
        )

    def _resolve_next_step(
        self, participant: ParticipantRecord, state: NextStepStep, event: InboundMessage
    ) -> None:
        option = match_option(step_prompt(state), event)
        if option is None:
            raise InvalidInputError("Please choose one of the options.")
        if option == FINAL_FEEDBACK:
            self._advance(
                participant,
                ClientFeedbackStep(
                    sample_id=state.sample_id,
                    customer_name=state.customer_name,
                    contract_closed=state.contract_closed,
                ),
            )
            return
        self._advance(
            participant,
            FollowUpDateSelectionStep(
                sample_id=state.sample_id,
                customer_name=state.customer_name,
                contract_closed=state.contract_closed,
            ),
        )

    def _resolve_client_feedback(
        self, participant: ParticipantRecord, state: ClientFeedbackStep, event: InboundMessage
    ) -> None:
        feedback = event.body.strip()
        if not feedback:
            raise InvalidInputError("Please send the client's feedback as text.")
        status = SampleStatus.closed_deal if state.contract_closed else SampleStatus.feedback_received
        self._finalize(
            participant,
            state,
            {
                "status": status,
                "customer_name": state.customer_name,
                "contract_closed": state.contract_closed,
                "client_feedback": feedback,
            },
        )

    def _resolve_follow_up_date_selection(
        self,
        participant: ParticipantRecord,
        state: FollowUpDateSelectionStep,
        event: InboundMessage,
    ) -> None:
        option = match_option(step_prompt(state), event)
        if option is None:
            raise InvalidInputError("Please pick a date from the list.")
        if option == DATE_MANUAL:
            self._advance(participant, FollowUpDateEntryStep(**state.model_dump(exclude={"awaiting"})))
            return
        _, days = DATE_OPTIONS[option]
        self._finalize(
            participant, state, self._follow_up_updates(state, follow_up_in(days, local_today(self.zone)))
        )

    def _resolve_follow_up_date_entry(
        self, participant: ParticipantRecord, state: FollowUpDateEntryStep, event: InboundMessage
    ) -> None:
        try:
            follow_up_date = parse_follow_up_date(event.body)
        except ValueError as exc:
            raise InvalidInputError("Invalid date. Use DD/MM/YYYY.") from exc
        if follow_up_date < local_today(self.zone):
            raise InvalidInputError("The follow-up date cannot be in the past.")
        self._finalize(participant, state, self._follow_up_updates(state, follow_up_date))

    def _resolve_sample_for_follow_up(
        self,
        participant: ParticipantRecord,
        state: SelectSampleForFollowUpStep,
        event: InboundMessage,
    ) -> None:
        sample = self.store.find_sample(self._selected(SelectionPrefix.follow_up, event))
        if sample is None or sample.owner_id != participant.id or not can_follow_up(sample):
            raise SelectionNotFoundError("Follow-up not found or already resolved.")
        self._advance(
            participant,
            ClientReturnedStep(sample_id=sample.id, customer_name=sample.customer_name or "-"),
        )

    def _resolve_client_returned(
        self, participant: ParticipantRecord, state: ClientReturnedStep, event: InboundMessage
    ) -> None:
        option = match_option(step_prompt(state), event)
        if option is None:
            raise InvalidInputError("Please choose one of the options.")
        if option == FEEDBACK_YES:
            self._advance(
                participant,
                FollowUpContractClosedStep(
                    sample_id=state.sample_id, customer_name=state.customer_name
                ),
            )
            return
        self._advance(
            participant,
            FollowUpDateSelectionStep(
                sample_id=state.sample_id,
                customer_name=state.customer_name,
                rescheduling=True,
            ),
        )

    def _resolve_follow_up_contract_closed(
        self,
        participant: ParticipantRecord,
        state: FollowUpContractClosedStep,
        event: InboundMessage,
    ) -> None:
        option = match_option(step_prompt(state), event)
        if option is None:
            raise InvalidInputError("Please answer whether the contract was closed.")
        self._advance(
            participant,
            ClientFeedbackStep(
                sample_id=state.sample_id,
                customer_name=state.customer_name,
                contract_closed=option == FOLLOW_UP_CONTRACT_YES,
            ),
        )

    # Finalization and correction

    @staticmethod
    def _follow_up_updates(state: Any, follow_up_date) -> dict[str, Any]:
        updates: dict[str, Any] = {
            "status": SampleStatus.awaiting_client_response,
            "customer_name": state.customer_name,
            "follow_up_date": follow_up_date,
            "follow_up_notified": False,
        }
        if state.contract_closed is not None:
            updates["contract_closed"] = state.contract_closed
        return updates

    def _finalize(
        self, participant: ParticipantRecord, state: BaseModel, updates: dict[str, Any]
    ) -> None:
        try:
            updated, _ = self.corrections.finalize(participant.id, state, updates)
        except StoreNotFoundError as exc:
            raise SelectionNotFoundError("That sample no longer exists.") from exc
        except StoreConflictError as exc:
            raise SelectionNotFoundError("That sample can no longer take this feedback.") from exc
        window = self.store.get_config().correction_window_seconds
        self.messenger.prompt(participant.id, finalized_prompt(updated, window_seconds=window))

    def _correct(self, participant: ParticipantRecord) -> str:
        try:
            snapshot = self.corrections.correct(participant.id)
        except StoreNotFoundError:
            self.store.clear_session(participant.id)
            self.messenger.text(participant.id, "That sample no longer exists, nothing to correct.")
            self._send_menu(participant)
            return "nothing_to_correct"
        if snapshot is None:
            self.messenger.text(
                participant.id, "The correction window has closed or there is nothing to correct."
            )
            self._send_menu(participant)
            return "nothing_to_correct"
        self.messenger.text(participant.id, "Previous devolution cancelled. Back to the previous step...")
        prompt = step_prompt(snapshot.session)
        if prompt is not None:
            self.messenger.prompt(participant.id, prompt)
        else:
            self._reset_to_menu(participant)
        return "corrected"
