"""
Runtime feature flags.

Flags are registered with an initial value from settings and can be switched
by an operator without a restart. Unknown flags read as disabled.
"""
import threading

from fulfillment.core.logging import get_logger

logger = get_logger(__name__)

PURCHASE_EMAILS = "purchase_emails"
REFUND_EMAILS = "refund_emails"


class FeatureFlags:
    def __init__(self, defaults: dict[str, bool] | None = None):
        self._flags: dict[str, bool] = dict(defaults or {})
        self._lock = threading.Lock()

    def is_enabled(self, name: str) -> bool:
        return self._flags.get(name, False)

    def is_known(self, name: str) -> bool:
        return name in self._flags

    def set(self, name: str, enabled: bool) -> None:
        with self._lock:
            previous = self._flags.get(name)
            self._flags[name] = enabled

        if previous != enabled:
            logger.info(
                f"Feature flag '{name}' {'enabled' if enabled else 'disabled'}",
                extra_data={"flag": name, "enabled": enabled, "previous": previous}
            )

    def enable(self, name: str) -> None:
        self.set(name, True)

    def disable(self, name: str) -> None:
        self.set(name, False)

    def all(self) -> dict[str, bool]:
        with self._lock:
            return dict(sorted(self._flags.items()))
