"""
SQLAlchemy models for contacts.
"""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from callrecon.calls.models import CallOutcome, outcome_column_type
from callrecon.shared.database import Base

if TYPE_CHECKING:
    from callrecon.calls.models import CallAttempt


class Contact(Base):
    """A dialing target.

    ``status``, ``duration`` and ``recording_url`` mirror the latest call
    attempt. ``status_override`` is an operator pin; the reconciliation core
    reads around it but never writes it.
    """

    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )
    phone: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )
    status: Mapped[CallOutcome] = mapped_column(
        outcome_column_type("contact_status"),
        nullable=False,
        default=CallOutcome.NOT_CALLED,
    )
    status_override: Mapped[str | None] = mapped_column(
        String(50),
        nullable=True,
    )
    provider_call_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    duration: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Duration in seconds",
    )
    recording_url: Mapped[str | None] = mapped_column(
        String(1024),
        nullable=True,
    )
    last_attempt: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
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

    # Relationships
    call_attempts: Mapped[list["CallAttempt"]] = relationship(
        "CallAttempt",
        back_populates="contact",
        order_by="CallAttempt.attempt_no",
    )

    def __repr__(self) -> str:
        return f"<Contact(id={self.id}, phone={self.phone}, status={self.status})>"
