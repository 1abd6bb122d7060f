"""
Admin Reliability Endpoints - מצב circuit breakers, bulkheads ו-feature flags.

1. snapshot של כל מנגנוני האמינות + סיכום
2. איפוס circuit breaker בודד או של כולם (name=all)
3. הדלקה/כיבוי של feature flag בזמן ריצה
"""
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from fulfillment.api.dependencies.admin_auth import require_admin_api_key
from fulfillment.api.dependencies.reliability import get_reliability
from fulfillment.core.logging import get_logger
from fulfillment.core.reliability import ReliabilityRegistry

logger = get_logger(__name__)

router = APIRouter()

RESET_ALL = "all"

_AUTH_RESPONSES = {
    401: {"description": "חסר מפתח API"},
    403: {"description": "מפתח API שגוי"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class CircuitBreakerStatus(BaseModel):
    name: str
    state: str = Field(description="closed | open | half_open")
    failure_count: int
    success_count: int
    next_attempt_time: str | None = Field(
        description="ISO timestamp שבו circuit פתוח יאפשר ניסיון (null אם לא פתוח)"
    )
    failure_threshold: int
    success_threshold: int
    timeout_seconds: float


class BulkheadStatus(BaseModel):
    name: str
    max_concurrent: int
    active_count: int
    queue_size: int
    utilization_percent: float


class ReliabilitySummary(BaseModel):
    total_circuits: int
    open_circuits: int
    half_open_circuits: int
    total_bulkheads: int
    saturated_bulkheads: int
    disabled_features: list[str]


class ReliabilitySnapshot(BaseModel):
    circuit_breakers: list[CircuitBreakerStatus]
    bulkheads: list[BulkheadStatus]
    feature_flags: dict[str, bool]
    summary: ReliabilitySummary


class CircuitResetResponse(BaseModel):
    reset: list[str]


class FeatureToggleRequest(BaseModel):
    enabled: bool


class FeatureToggleResponse(BaseModel):
    name: str
    enabled: bool


# ─── Endpoints ──────────────────────────────────────────────────────────────

@router.get(
    "",
    response_model=ReliabilitySnapshot,
    summary="מצב מנגנוני האמינות",
    responses={200: {"description": "snapshot מלא"}, **_AUTH_RESPONSES},
)
async def get_reliability_snapshot(
    _: None = Depends(require_admin_api_key),
    reliability: ReliabilityRegistry = Depends(get_reliability),
) -> dict[str, Any]:
    return reliability.snapshot()


@router.post(
    "/circuit-breakers/{name}/reset",
    response_model=CircuitResetResponse,
    summary="איפוס circuit breaker",
    description="מחזיר circuit breaker למצב closed. name=all מאפס את כולם.",
    responses={
        200: {"description": "ה-circuit אופס"},
        404: {"description": "circuit breaker לא קיים"},
        **_AUTH_RESPONSES,
    },
)
async def reset_circuit_breaker(
    name: str,
    _: None = Depends(require_admin_api_key),
    reliability: ReliabilityRegistry = Depends(get_reliability),
) -> CircuitResetResponse:
    if name == RESET_ALL:
        names = reliability.breakers.names()
        reliability.breakers.reset_all()
    elif reliability.breakers.reset(name):
        names = [name]
    else:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Circuit breaker '{name}' not found",
        )

    logger.info("איפוס ידני של circuit breaker", extra_data={"reset": names})
    return CircuitResetResponse(reset=names)


@router.post(
    "/feature-flags/{name}",
    response_model=FeatureToggleResponse,
    summary="הדלקה/כיבוי של feature flag",
    responses={
        200: {"description": "הדגל עודכן"},
        404: {"description": "feature flag לא קיים"},
        **_AUTH_RESPONSES,
    },
)
async def toggle_feature_flag(
    name: str,
    body: FeatureToggleRequest,
    _: None = Depends(require_admin_api_key),
    reliability: ReliabilityRegistry = Depends(get_reliability),
) -> FeatureToggleResponse:
    if not reliability.flags.is_known(name):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Feature flag '{name}' not found",
        )

    reliability.flags.set(name, body.enabled)
    logger.info(
        "שינוי ידני של feature flag",
        extra_data={"flag": name, "enabled": body.enabled},
    )
    return FeatureToggleResponse(name=name, enabled=body.enabled)
