"""MFA metrics for Prometheus.

Usage:
    ```python
    from ibimina_mfa.observability import MfaMetrics

    with MfaMetrics.operation("verify", factor="totp") as outcome:
        verdict = await strategy.verify(request)
        outcome(verdict.audit_action.value)
    ```
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Callable

from prometheus_client import Counter, Histogram

_logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from collections.abc import Generator


class _MfaMetricsRegistry:
    """Registry for MFA Prometheus metrics.

    Lazily creates the collectors on first use so importing the package never
    touches the default registry.
    """

    def __init__(self) -> None:
        self._histogram: Any = None
        self._decisions: Any = None
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        self._histogram = Histogram(
            "mfa_operation_duration_seconds",
            "MFA operation duration",
            ["operation", "factor"],
        )
        self._decisions = Counter(
            "mfa_decisions_total",
            "MFA decisions by outcome",
            ["operation", "factor", "outcome"],
        )
        self._initialized = True

    @property
    def histogram(self) -> Any:
        self._ensure_initialized()
        return self._histogram

    @property
    def decisions(self) -> Any:
        self._ensure_initialized()
        return self._decisions


# Global registry instance
_registry = _MfaMetricsRegistry()


class MfaMetrics:
    """Helpers for recording MFA initiate/verify metrics.

    Metric failures are logged at debug level and never affect a decision.
    """

    @staticmethod
    @contextmanager
    def operation(
        operation: str, *, factor: str = "unknown"
    ) -> Generator[Callable[[str], None], None, None]:
        """Time an operation and count its outcome.

        Args:
            operation: ``initiate`` or ``verify``.
            factor: Factor kind value.

        Yields:
            A callback that sets the outcome label (defaults to ``error`` if
            the block raises, ``unknown`` if never called).
        """
        outcome = ["unknown"]
        start = time.monotonic()

        def _set(value: str) -> None:
            outcome[0] = value

        try:
            yield _set
        except BaseException:
            outcome[0] = "error"
            raise
        finally:
            duration = time.monotonic() - start
            try:
                _registry.histogram.labels(
                    operation=operation, factor=factor
                ).observe(duration)
                _registry.decisions.labels(
                    operation=operation, factor=factor, outcome=outcome[0]
                ).inc()
            except Exception:  # noqa: BLE001
                _logger.debug("Failed to record MFA metrics", exc_info=True)


__all__: list[str] = ["MfaMetrics"]
