"""Fixed escalation ladder of (model tier, thinking tier) pairs."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class LadderStep:
    """One rung of the escalation ladder."""

    model: str
    thinking: str


@dataclass(frozen=True, slots=True)
class LadderPosition:
    """Resolved rung with its 1-based ladder level."""

    model: str
    thinking: str
    level: int


ESCALATION_LADDER: tuple[LadderStep, ...] = (
    LadderStep(model="low", thinking="low"),
    LadderStep(model="low", thinking="mid"),
    LadderStep(model="high", thinking="mid"),
    LadderStep(model="high", thinking="max"),
)
MAX_LEVEL = len(ESCALATION_LADDER)


def level_of(model: str | None, thinking: str | None) -> int:
    """Return the 1-based ladder level, or 0 when the pair is not on the ladder."""

    for index, step in enumerate(ESCALATION_LADDER, start=1):
        if step.model == model and step.thinking == thinking:
            return index
    return 0


def next_level(model: str | None, thinking: str | None) -> LadderPosition | None:
    """Return the rung one above the current pair, or None at the top."""

    current = level_of(model, thinking)
    if current >= MAX_LEVEL:
        return None
    step = ESCALATION_LADDER[current]
    return LadderPosition(model=step.model, thinking=step.thinking, level=current + 1)


def first_step() -> LadderStep:
    return ESCALATION_LADDER[0]
