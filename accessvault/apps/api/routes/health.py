from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from accessvault.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from accessvault.apps.api.response import SuccessEnvelope, success_response
from accessvault.services.telemetry import counters_snapshot, external_call_summary

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    # Per-provider error rate and mean latency over the last five minutes.
    integrations: dict[str, dict[str, float]]
    counters: dict[str, int]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    payload = HealthResponse(
        status="ok",
        integrations=external_call_summary(),
        counters=counters_snapshot(),
    )
    return success_response(request=request, data=payload)
