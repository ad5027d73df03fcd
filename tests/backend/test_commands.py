from __future__ import annotations

from typing import Optional

import pytest

from backend.sampledesk.models import InboundMessage, Role
from backend.sampledesk.services.commands import (
    CommandKind,
    MenuAction,
    SelectionPrefix,
    match_option,
    parse_global_command,
    parse_menu_command,
    parse_name_and_number,
    parse_positions,
    parse_quantity,
    strip_prefix,
)
from backend.sampledesk.services.prompts import contract_prompt, follow_up_date_prompt


def _event(body: str = "", selection_id: Optional[str] = None) -> InboundMessage:
    return InboundMessage(sender_id="5511900000003@c.us", body=body, selection_id=selection_id)


def test_selection_id_beats_free_text() -> None:
    command = parse_menu_command(Role.steward, _event("remove", selection_id="deliver_samples"))

    assert command.kind == CommandKind.action
    assert command.action == MenuAction.deliver_samples


@pytest.mark.parametrize(
    ("role", "text", "expected"),
    [
        (Role.steward, "I need to deliver samples", MenuAction.deliver_samples),
        (Role.steward, "please clear returns", MenuAction.clear_samples),
        (Role.agent, "give follow-up feedback", MenuAction.start_follow_up),
        (Role.agent, "feedback", MenuAction.start_devolution),
        (Role.agent, "my samples", MenuAction.list_my_samples),
        (Role.admin, "overdue report", MenuAction.report_overdue),
        (Role.admin, "report by agent", MenuAction.report_by_agent),
        (Role.admin, "full report", MenuAction.report_all_samples),
        (Role.admin, "purge", MenuAction.purge_resolved),
    ],
)
def test_keyword_table(role: Role, text: str, expected: MenuAction) -> None:
    command = parse_menu_command(role, _event(text))

    assert command.kind == CommandKind.action
    assert command.action == expected


def test_unknown_text_and_foreign_actions_show_menu() -> None:
    assert parse_menu_command(Role.agent, _event("hello")).kind == CommandKind.show_menu
    assert parse_menu_command(Role.agent, _event(selection_id="add_user")).kind == CommandKind.show_menu


def test_cancel_is_global_and_correction_is_agent_only() -> None:
    assert parse_global_command(Role.admin, _event("  Cancelar ")).kind == CommandKind.cancel
    assert parse_global_command(Role.agent, _event(selection_id="correct_last_devolution")).kind == (
        CommandKind.correct
    )
    assert parse_global_command(Role.steward, _event("undo")) is None
    assert parse_global_command(Role.agent, _event("please cancel this")) is None


def test_strip_prefix() -> None:
    assert strip_prefix(SelectionPrefix.deliver, "deliver_5511@c.us") == "5511@c.us"
    assert strip_prefix(SelectionPrefix.remove_agent, "admin_remove_5511@c.us") is None
    assert strip_prefix(SelectionPrefix.sample, "sample_") is None
    assert strip_prefix(SelectionPrefix.sample, None) is None


def test_match_option_by_id_title_or_position() -> None:
    prompt = contract_prompt()

    assert match_option(prompt, _event(selection_id="contract_no")) == "contract_no"
    assert match_option(prompt, _event("YES")) == "contract_yes"
    assert match_option(prompt, _event("2")) == "contract_no"
    assert match_option(prompt, _event("3")) is None
    assert match_option(prompt, _event("maybe")) is None


def test_reschedule_prompt_omits_fifteen_days() -> None:
    first = [row.id for row in follow_up_date_prompt(rescheduling=False).rows()]
    again = [row.id for row in follow_up_date_prompt(rescheduling=True).rows()]

    assert "date_15_days" in first
    assert "date_15_days" not in again
    assert again[-1] == "date_manual"


def test_parse_name_and_number() -> None:
    assert parse_name_and_number(" Carla Agent , 5511988887777 ") == ("Carla Agent", "5511988887777")
    for bad in ["Carla", "Carla, 55-11", "Carla, 1234", ", 5511988887777", "a, b, c"]:
        with pytest.raises(ValueError):
            parse_name_and_number(bad)


def test_parse_quantity_and_positions() -> None:
    assert parse_quantity(" 12 ") == 12
    assert parse_quantity("100") == 100
    for bad in ["0", "-1", "1.5", "ten", "", "101", "0100", "9" * 4096]:
        with pytest.raises(ValueError):
            parse_quantity(bad)
    assert parse_positions("1, 3,x, 7 ") == [1, 3, 7]
    assert parse_positions("none") == []
