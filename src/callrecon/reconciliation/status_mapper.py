"""
Map raw provider status vocabulary to the canonical call outcome.

Pure functions only: the same inputs always give the same outcome.
"""

from __future__ import annotations

from typing import Any, Iterable, Sequence

from callrecon.calls.models import CallOutcome
from callrecon.reconciliation.events import CallbackPayload
from callrecon.reconciliation.fields import parse_duration

# Sentinel meaning "run the switched-off heuristic"
_FAILED_SPLIT = None

STATUS_MAP: dict[str, CallOutcome | None] = {
    "completed": CallOutcome.COMPLETED,
    "no-answer": CallOutcome.NO_ANSWER,
    "busy": CallOutcome.BUSY,
    "failed": _FAILED_SPLIT,
    "canceled": CallOutcome.CANCELLED,
    "cancelled": CallOutcome.CANCELLED,
}

OUTCOME_MAP: dict[str, CallOutcome | None] = {
    "call was successful": CallOutcome.COMPLETED,
    "call failed": _FAILED_SPLIT,
    "busy": CallOutcome.BUSY,
    "no answer": CallOutcome.NO_ANSWER,
    "cancelled": CallOutcome.CANCELLED,
}

SWITCHED_OFF_HINTS: tuple[str, ...] = (
    "switch",
    "unreachable",
    "not reachable",
    "power off",
    "switched off",
)


def _leg_status(leg: dict[str, Any]) -> str:
    value = leg.get("Status", leg.get("status"))
    return value.strip().lower() if isinstance(value, str) else ""


def looks_switched_off(
    aux_texts: Iterable[str],
    direction: str | None,
    conversation_duration: Any,
    legs: Sequence[dict[str, Any]],
) -> bool:
    """Decide whether a failed call was really an unreachable handset.

    1. Any free-text signal mentioning switched-off vocabulary wins.
    2. Otherwise an outbound call with zero talk time whose second leg
       itself failed counts as switched off.
    """
    text = " ".join(t for t in aux_texts if t).lower()
    if any(hint in text for hint in SWITCHED_OFF_HINTS):
        return True

    outbound = (direction or "").strip().lower().startswith("outbound")
    zero_talk = parse_duration(conversation_duration) == 0
    second_leg_failed = len(legs) > 1 and _leg_status(legs[1]) == "failed"
    return outbound and zero_talk and second_leg_failed


def map_status(
    status: str | None,
    outcome: str | None = None,
    *,
    aux_texts: Iterable[str] = (),
    direction: str | None = None,
    conversation_duration: Any = None,
    legs: Sequence[dict[str, Any]] = (),
) -> CallOutcome:
    """Map one callback's raw fields to a terminal ``CallOutcome``.

    ``status`` is authoritative when present; ``outcome`` free text is the
    fallback; unknown or missing vocabulary maps to ``Failed``.
    """
    raw = (status or "").strip().lower()
    table = STATUS_MAP
    if not raw:
        raw = (outcome or "").strip().lower()
        table = OUTCOME_MAP
    if not raw:
        return CallOutcome.FAILED

    if raw not in table:
        return CallOutcome.FAILED

    mapped = table[raw]
    if mapped is not _FAILED_SPLIT:
        return mapped

    if looks_switched_off(aux_texts, direction, conversation_duration, legs):
        return CallOutcome.SWITCHED_OFF
    return CallOutcome.FAILED


def map_callback(callback: CallbackPayload) -> CallOutcome:
    """Map a parsed callback payload."""
    talk_time = (
        callback.conversation_duration
        if callback.conversation_duration is not None
        else callback.duration
    )
    return map_status(
        callback.status,
        callback.outcome,
        aux_texts=callback.aux_texts,
        direction=callback.direction,
        conversation_duration=talk_time,
        legs=callback.legs,
    )
