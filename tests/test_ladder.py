from __future__ import annotations

import allure
import pytest

from task_ladder.engine.ladder import ESCALATION_LADDER, MAX_LEVEL, level_of, next_level

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Escalation Ladder"),
]


def test_ladder_has_four_ordered_rungs() -> None:
    assert MAX_LEVEL == 4
    assert [(step.model, step.thinking) for step in ESCALATION_LADDER] == [
        ("low", "low"),
        ("low", "mid"),
        ("high", "mid"),
        ("high", "max"),
    ]


@pytest.mark.parametrize(
    ("model", "thinking", "expected"),
    [
        ("low", "low", 1),
        ("low", "mid", 2),
        ("high", "mid", 3),
        ("high", "max", 4),
        ("high", "low", 0),
        (None, None, 0),
        ("opus", "ultra", 0),
    ],
)
def test_level_of(model: str | None, thinking: str | None, expected: int) -> None:
    assert level_of(model, thinking) == expected


def test_next_level_from_unknown_pair_lands_on_first_rung() -> None:
    position = next_level("custom", "custom")

    assert position is not None
    assert (position.model, position.thinking, position.level) == ("low", "low", 1)


def test_next_level_moves_exactly_one_rung() -> None:
    position = next_level("low", "low")

    assert position is not None
    assert (position.model, position.thinking, position.level) == ("low", "mid", 2)


def test_next_level_at_top_is_none() -> None:
    assert next_level("high", "max") is None


def test_four_steps_from_level_zero_reach_the_top() -> None:
    model, thinking = None, None
    for expected_level in range(1, MAX_LEVEL + 1):
        position = next_level(model, thinking)
        assert position is not None
        assert position.level == expected_level
        model, thinking = position.model, position.thinking

    assert next_level(model, thinking) is None
