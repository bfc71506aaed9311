"""
Webhook ingestion: validate a provider callback and find its contact.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from callrecon.contacts.models import Contact
from callrecon.contacts.repository import ContactRepository
from callrecon.reconciliation.events import CallbackPayload
from callrecon.shared.exceptions import NotFoundError, ValidationError
from callrecon.shared.logging import get_logger

logger = get_logger(__name__)

CONTACT_TOKEN_PATTERN = re.compile(r"contact_id:(\d+)")


def contact_id_from_token(token: str | None) -> int | None:
    """Extract the contact id from a ``contact_id:<id>`` correlation token."""
    if not token:
        return None
    match = CONTACT_TOKEN_PATTERN.search(token)
    return int(match.group(1)) if match else None


class WebhookIngestor:
    """Turns raw callback fields into a ``CallbackPayload`` and its Contact."""

    def parse(self, payload: Mapping[str, Any]) -> CallbackPayload:
        """Validate a callback.

        Raises:
            ValidationError: No call identifier, or neither status nor outcome.
        """
        try:
            callback = CallbackPayload.model_validate(dict(payload))
        except PydanticValidationError as e:
            raise ValidationError(
                message="Malformed callback payload",
                details={"errors": [err["msg"] for err in e.errors()]},
            ) from e

        if not callback.call_sid:
            raise ValidationError(
                message="Callback is missing the call identifier",
                details={"fields": sorted(payload.keys())},
            )
        if not callback.status and not callback.outcome:
            raise ValidationError(
                message="Callback carries neither status nor outcome",
                details={"provider_call_id": callback.call_sid},
            )
        return callback

    async def resolve_contact(
        self,
        session: AsyncSession,
        callback: CallbackPayload,
    ) -> Contact:
        """Find the owning contact by call id, then by correlation token.

        Raises:
            NotFoundError: Neither lookup matched.
        """
        contacts = ContactRepository(session)
        provider_call_id = callback.call_sid or ""

        contact = await contacts.get_by_provider_call_id(provider_call_id)
        if contact is not None:
            return contact

        contact_id = contact_id_from_token(callback.correlation_token)
        if contact_id is not None:
            contact = await contacts.get_by_id(contact_id)
            if contact is not None:
                logger.info(
                    "Contact resolved from correlation token",
                    extra={"provider_call_id": provider_call_id, "contact_id": contact_id},
                )
                return contact

        raise NotFoundError(
            message="No contact matches this callback",
            details={
                "provider_call_id": provider_call_id,
                "correlation_token": callback.correlation_token,
            },
        )
