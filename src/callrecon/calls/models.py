"""
SQLAlchemy models for call attempts, plus the canonical call outcome taxonomy.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import (
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from callrecon.shared.database import Base

if TYPE_CHECKING:
    from callrecon.contacts.models import Contact


class CallOutcome(str, Enum):
    """Canonical call status, decoupled from provider vocabulary.

    Stored by value so the database reads the same as the dashboard.
    """

    NOT_CALLED = "Not Called"  # contact-only, never produced by a callback
    INITIATED = "Initiated"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    BUSY = "Busy"
    NO_ANSWER = "No Answer"
    FAILED = "Failed"
    SWITCHED_OFF = "Switched Off"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_OUTCOMES


TERMINAL_OUTCOMES: frozenset[CallOutcome] = frozenset(
    {
        CallOutcome.COMPLETED,
        CallOutcome.BUSY,
        CallOutcome.NO_ANSWER,
        CallOutcome.FAILED,
        CallOutcome.SWITCHED_OFF,
        CallOutcome.CANCELLED,
    }
)

NON_TERMINAL_OUTCOMES: frozenset[CallOutcome] = frozenset(
    {CallOutcome.INITIATED, CallOutcome.IN_PROGRESS}
)


class TerminalSource(str, Enum):
    """Which writer moved a call attempt into a terminal status."""

    CALLBACK = "callback"
    TIMEOUT = "timeout"


def outcome_column_type(name: str) -> SQLEnum:
    return SQLEnum(
        CallOutcome,
        name=name,
        native_enum=False,
        length=32,
        values_callable=lambda enum: [member.value for member in enum],
    )


class CallAttempt(Base):
    """One row per dial attempt (the call log)."""

    __tablename__ = "call_attempts"
    __table_args__ = (
        UniqueConstraint(
            "contact_id",
            "provider_call_id",
            name="uq_call_attempts_contact_provider_call",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contact_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("contacts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider_call_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    attempt_no: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )
    status: Mapped[CallOutcome] = mapped_column(
        outcome_column_type("call_attempt_status"),
        nullable=False,
        default=CallOutcome.INITIATED,
    )
    duration: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Duration in seconds",
    )
    duration_source: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    recording_url: Mapped[str | None] = mapped_column(
        String(1024),
        nullable=True,
    )
    terminal_source: Mapped[TerminalSource | None] = mapped_column(
        SQLEnum(
            TerminalSource,
            name="call_attempt_terminal_source",
            native_enum=False,
            length=16,
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=True,
    )
    user_id: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    contact: Mapped["Contact"] = relationship(
        "Contact",
        back_populates="call_attempts",
    )

    def __repr__(self) -> str:
        return (
            f"<CallAttempt(id={self.id}, contact_id={self.contact_id}, "
            f"provider_call_id={self.provider_call_id}, status={self.status})>"
        )
