"""
Reliability registry.

Bundles the circuit breakers, bulkheads and feature flags of one process. The
FastAPI app and the Celery worker each build one at startup; tests build a
fresh one per test.
"""
from dataclasses import dataclass
from typing import Any

from fulfillment.core.bulkhead import BulkheadRegistry
from fulfillment.core.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from fulfillment.core.exceptions import BusinessRuleError
from fulfillment.core.feature_flags import FeatureFlags, PURCHASE_EMAILS, REFUND_EMAILS
from fulfillment.core.retry import RetryPolicy

# שמות התלויות המוגנות
DB_BREAKER = "db"
EMAIL_BREAKER = "email"
FULFILLMENT_BULKHEAD = "fulfillment"


@dataclass
class ReliabilityRegistry:
    breakers: CircuitBreakerRegistry
    bulkheads: BulkheadRegistry
    flags: FeatureFlags
    retry_policy: RetryPolicy

    def snapshot(self) -> dict[str, Any]:
        breakers = self.breakers.snapshot()
        bulkheads = self.bulkheads.all_stats()
        flags = self.flags.all()
        return {
            "circuit_breakers": breakers,
            "bulkheads": bulkheads,
            "feature_flags": flags,
            "summary": {
                "total_circuits": len(breakers),
                "open_circuits": sum(
                    1 for b in breakers if b["state"] == CircuitState.OPEN.value
                ),
                "half_open_circuits": sum(
                    1 for b in breakers if b["state"] == CircuitState.HALF_OPEN.value
                ),
                "total_bulkheads": len(bulkheads),
                "saturated_bulkheads": sum(
                    1 for b in bulkheads if b["active_count"] >= b["max_concurrent"]
                ),
                "disabled_features": sorted(name for name, on in flags.items() if not on),
            },
        }


def build_reliability_registry(settings: Any) -> ReliabilityRegistry:
    """Create the registry and its well-known breakers/bulkheads from settings"""
    default_config = CircuitBreakerConfig(
        failure_threshold=settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
        success_threshold=settings.CIRCUIT_BREAKER_SUCCESS_THRESHOLD,
        timeout_seconds=settings.CIRCUIT_BREAKER_TIMEOUT_SECONDS,
    )
    breakers = CircuitBreakerRegistry(default_config)
    # שגיאות עסקיות מה-DB (הזמנה לא קיימת וכו') אינן סימן לתקלה במסד
    breakers.get_or_create(
        DB_BREAKER,
        CircuitBreakerConfig(
            failure_threshold=default_config.failure_threshold,
            success_threshold=default_config.success_threshold,
            timeout_seconds=default_config.timeout_seconds,
            ignored_exceptions=(BusinessRuleError,),
        ),
    )
    breakers.get_or_create(EMAIL_BREAKER)

    bulkheads = BulkheadRegistry(settings.FULFILLMENT_MAX_CONCURRENCY)
    bulkheads.get_or_create(FULFILLMENT_BULKHEAD)

    flags = FeatureFlags({
        PURCHASE_EMAILS: settings.FEATURE_PURCHASE_EMAILS,
        REFUND_EMAILS: settings.FEATURE_REFUND_EMAILS,
    })

    return ReliabilityRegistry(
        breakers=breakers,
        bulkheads=bulkheads,
        flags=flags,
        retry_policy=RetryPolicy.from_settings(settings),
    )
