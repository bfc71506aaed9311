"""
FastAPI router for provider status callbacks.

The provider posts either JSON or form-encoded fields; query parameters on
the callback URL are merged in the same way for both.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from callrecon.reconciliation.events import ReconciliationResult
from callrecon.reconciliation.service import ReconciliationService
from callrecon.shared.exceptions import ValidationError
from callrecon.shared.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhooks"])


def get_reconciliation_service(request: Request) -> ReconciliationService:
    service = getattr(request.app.state, "reconciliation_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Reconciliation service not ready",
        )
    return service


async def _read_payload(request: Request) -> dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    if "json" in content_type:
        try:
            body = await request.json()
        except ValueError as e:
            raise ValidationError(message="Callback body is not valid JSON") from e
        if not isinstance(body, dict):
            raise ValidationError(message="Callback body must be a JSON object")
        payload = dict(body)
    else:
        form = await request.form()
        payload = {k: v for k, v in form.items() if isinstance(v, str)}

    payload.update(dict(request.query_params))
    return payload


@router.post(
    "",
    response_model=ReconciliationResult,
    status_code=status.HTTP_200_OK,
)
async def receive_callback(
    request: Request,
    service: Annotated[ReconciliationService, Depends(get_reconciliation_service)],
) -> ReconciliationResult:
    """Reconcile one provider status callback."""
    payload = await _read_payload(request)
    return await service.reconcile(payload)


@router.get("/health")
async def webhook_health() -> dict[str, str]:
    return {"status": "ok", "service": "webhook"}
