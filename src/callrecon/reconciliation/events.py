"""
Domain models for provider callbacks and reconciliation results.

``CallbackPayload`` normalizes the provider's StatusCallback vocabulary;
``ReconciliationEvent`` is the per-callback unit handed to the persister.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from callrecon.calls.models import CallOutcome, TerminalSource


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class CallbackPayload(BaseModel):
    """One provider status callback, with the fields the core consumes."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    call_sid: str | None = Field(
        default=None,
        validation_alias=_alias("CallSid", "callId", "call_id", "CallId"),
    )
    status: str | None = Field(default=None, validation_alias=_alias("Status", "status"))
    outcome: str | None = Field(default=None, validation_alias=_alias("Outcome", "outcome"))

    conversation_duration: str | int | float | None = Field(
        default=None,
        validation_alias=_alias("ConversationDuration", "conversationDuration"),
    )
    duration: str | int | float | None = Field(
        default=None,
        validation_alias=_alias("Duration", "duration"),
    )
    start_time: str | None = Field(default=None, validation_alias=_alias("StartTime", "startTime"))
    end_time: str | None = Field(default=None, validation_alias=_alias("EndTime", "endTime"))

    recording_url: str | None = Field(
        default=None,
        validation_alias=_alias("RecordingUrl", "recordingUrl"),
    )
    correlation_token: str | None = Field(
        default=None,
        validation_alias=_alias("CustomField", "customField", "correlationToken"),
    )
    direction: str | None = Field(default=None, validation_alias=_alias("Direction", "direction"))
    legs: list[dict[str, Any]] = Field(
        default_factory=list,
        validation_alias=_alias("Legs", "legs"),
    )

    # Free-text signals used to tell "switched off" apart from "failed"
    status_message: str | None = Field(
        default=None,
        validation_alias=_alias("StatusMessage", "statusMessage"),
    )
    message: str | None = Field(default=None, validation_alias=_alias("Message", "message"))
    error: str | None = Field(default=None, validation_alias=_alias("Error", "error"))
    reason: str | None = Field(default=None, validation_alias=_alias("Reason", "reason"))
    dial_call_status: str | None = Field(
        default=None,
        validation_alias=_alias("DialCallStatus", "dialCallStatus"),
    )

    @field_validator(
        "call_sid",
        "status",
        "outcome",
        "start_time",
        "end_time",
        "recording_url",
        "correlation_token",
        "direction",
        "status_message",
        "message",
        "error",
        "reason",
        "dial_call_status",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, v: Any) -> Any:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @field_validator("conversation_duration", "duration", mode="before")
    @classmethod
    def _blank_duration_to_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("legs", mode="before")
    @classmethod
    def _coerce_legs(cls, v: Any) -> list[dict[str, Any]]:
        # Form-encoded callbacks carry Legs as a JSON string.
        if v is None or v == "":
            return []
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except ValueError:
                return []
        if isinstance(v, dict):
            v = [v]
        if not isinstance(v, list):
            return []
        return [leg if isinstance(leg, dict) else {} for leg in v]

    @property
    def aux_texts(self) -> list[str]:
        return [
            t
            for t in (
                self.status_message,
                self.message,
                self.error,
                self.reason,
                self.dial_call_status,
            )
            if t
        ]

    def raw_signals(self) -> dict[str, Any]:
        """The raw provider fields behind the mapped outcome, for logs and audits."""
        return {
            "status": self.status,
            "outcome": self.outcome,
            "direction": self.direction,
            "conversation_duration": self.conversation_duration,
            "duration": self.duration,
            "legs": self.legs,
            "aux_texts": self.aux_texts,
        }


class ReconciliationEvent(BaseModel):
    """Normalized result of one callback, consumed by the state persister."""

    model_config = ConfigDict(frozen=True)

    provider_call_id: str
    outcome: CallOutcome
    resolved_duration: int | None = None
    duration_source: str | None = None
    recording_url: str | None = None
    raw_signals: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ContactSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    phone: str
    status: CallOutcome
    status_override: str | None = None
    provider_call_id: str | None = None
    attempts: int
    duration: int | None = None
    recording_url: str | None = None
    last_attempt: datetime | None = None


class CallAttemptSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    contact_id: int
    provider_call_id: str | None = None
    attempt_no: int
    status: CallOutcome
    duration: int | None = None
    duration_source: str | None = None
    recording_url: str | None = None
    terminal_source: TerminalSource | None = None
    user_id: int | None = None


class ReconciliationResult(BaseModel):
    """Snapshot returned to the webhook caller and to in-process collaborators."""

    provider_call_id: str
    outcome: CallOutcome
    applied: bool = Field(
        description="False when the write lost a race and left state unchanged",
    )
    retry_scheduled: bool = False
    duration_source: str | None = None
    contact: ContactSnapshot
    call_attempt: CallAttemptSnapshot
