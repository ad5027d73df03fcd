from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from backend.sampledesk.models import InboundMessage, ListPrompt, Role
from backend.sampledesk.services.lifecycle import MAX_DELIVERY_QUANTITY


class MenuAction(str, Enum):
    deliver_samples = "deliver_samples"
    add_agent = "add_agent"
    remove_agent = "remove_agent"
    clear_samples = "clear_samples"
    start_devolution = "start_devolution"
    start_follow_up = "start_follow_up"
    list_my_samples = "list_my_samples"
    report_all_samples = "report_all_samples"
    report_by_agent = "report_by_agent"
    report_overdue = "report_overdue"
    add_user = "add_user"
    remove_user = "remove_user"
    purge_resolved = "purge_resolved"


class CommandKind(str, Enum):
    cancel = "cancel"
    correct = "correct"
    action = "action"
    show_menu = "show_menu"


class SelectionPrefix(str, Enum):
    remove_agent = "remove_"
    deliver = "deliver_"
    clear = "clear_"
    report_agent = "report_agent_"
    admin_remove = "admin_remove_"
    purge = "purge_"
    role = "role_"
    sample = "sample_"
    follow_up = "followup_"


ROLE_ACTIONS: dict[Role, frozenset[MenuAction]] = {
    Role.steward: frozenset(
        {
            MenuAction.deliver_samples,
            MenuAction.add_agent,
            MenuAction.remove_agent,
            MenuAction.clear_samples,
        }
    ),
    Role.agent: frozenset(
        {
            MenuAction.start_devolution,
            MenuAction.start_follow_up,
            MenuAction.list_my_samples,
        }
    ),
    Role.admin: frozenset(
        {
            MenuAction.report_all_samples,
            MenuAction.report_by_agent,
            MenuAction.report_overdue,
            MenuAction.add_user,
            MenuAction.remove_user,
            MenuAction.purge_resolved,
        }
    ),
}

# Ordered: the first keyword contained in the message wins.
KEYWORDS: dict[Role, tuple[tuple[str, MenuAction], ...]] = {
    Role.steward: (
        ("deliver", MenuAction.deliver_samples),
        ("add", MenuAction.add_agent),
        ("remove", MenuAction.remove_agent),
        ("clear", MenuAction.clear_samples),
    ),
    Role.agent: (
        ("follow", MenuAction.start_follow_up),
        ("feedback", MenuAction.start_devolution),
        ("devolution", MenuAction.start_devolution),
        ("sample", MenuAction.list_my_samples),
    ),
    Role.admin: (
        ("overdue", MenuAction.report_overdue),
        ("by agent", MenuAction.report_by_agent),
        ("report", MenuAction.report_all_samples),
        ("add", MenuAction.add_user),
        ("remove", MenuAction.remove_user),
        ("purge", MenuAction.purge_resolved),
    ),
}

CANCEL_KEYWORDS = frozenset({"cancel", "exit", "quit", "cancelar", "sair"})
CORRECTION_SELECTION_ID = "correct_last_devolution"
CORRECTION_KEYWORDS = frozenset({"correct", "undo", "corrigir"})


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    action: Optional[MenuAction] = None


def normalized_text(event: InboundMessage) -> str:
    return " ".join(event.body.strip().lower().split())


def parse_global_command(role: Role, event: InboundMessage) -> Optional[Command]:
    text = normalized_text(event)
    if text in CANCEL_KEYWORDS:
        return Command(kind=CommandKind.cancel)
    if role == Role.agent and (
        event.selection_id == CORRECTION_SELECTION_ID or text in CORRECTION_KEYWORDS
    ):
        return Command(kind=CommandKind.correct)
    return None


def parse_menu_command(role: Role, event: InboundMessage) -> Command:
    global_command = parse_global_command(role, event)
    if global_command:
        return global_command

    allowed = ROLE_ACTIONS[role]
    if event.selection_id:
        try:
            action = MenuAction(event.selection_id)
        except ValueError:
            action = None
        if action in allowed:
            return Command(kind=CommandKind.action, action=action)

    text = normalized_text(event)
    if not text:
        return Command(kind=CommandKind.show_menu)
    try:
        exact = MenuAction(text)
    except ValueError:
        exact = None
    if exact in allowed:
        return Command(kind=CommandKind.action, action=exact)
    for keyword, action in KEYWORDS[role]:
        if keyword in text:
            return Command(kind=CommandKind.action, action=action)
    return Command(kind=CommandKind.show_menu)


def selection_id(prefix: SelectionPrefix, entity_id: str) -> str:
    return f"{prefix.value}{entity_id}"


def strip_prefix(prefix: SelectionPrefix, value: Optional[str]) -> Optional[str]:
    if not value or not value.startswith(prefix.value):
        return None
    remainder = value[len(prefix.value) :].strip()
    return remainder or None


def match_option(prompt: ListPrompt, event: InboundMessage) -> Optional[str]:
    """Resolve a list answer by row id, row title, or 1-based row position."""
    rows = prompt.rows()
    ids = {row.id for row in rows}
    if event.selection_id in ids:
        return event.selection_id
    text = normalized_text(event)
    if not text:
        return None
    if text in ids:
        return text
    for row in rows:
        if row.title.strip().lower() == text:
            return row.id
    if text.isdigit() and 1 <= int(text) <= len(rows):
        return rows[int(text) - 1].id
    return None


def parse_name_and_number(text: str) -> tuple[str, str]:
    parts = [part.strip() for part in text.split(",")]
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError("expected 'Name, number'")
    name, number = parts
    if not number.isdigit() or len(number) < 8:
        raise ValueError("number must contain only digits")
    return name, number


def parse_quantity(text: str) -> int:
    value = text.strip()
    if not value.isdigit() or len(value) > len(str(MAX_DELIVERY_QUANTITY)):
        raise ValueError("quantity must be a whole number within the delivery limit")
    quantity = int(value)
    if not 0 < quantity <= MAX_DELIVERY_QUANTITY:
        raise ValueError(f"quantity must be between 1 and {MAX_DELIVERY_QUANTITY}")
    return quantity


def parse_positions(text: str) -> list[int]:
    positions: list[int] = []
    for part in text.split(","):
        value = part.strip()
        if value.isdigit():
            positions.append(int(value))
    return positions
