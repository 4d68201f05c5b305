"""Registry of decision sources and their health.

The registry is an explicitly owned object passed into the merger and the
engine, never module-level state, so tests can build isolated registries.
Health counters and registration order survive across cycles; everything
else a cycle produces is thrown away.

Handle lifecycle:
    ENABLED -> DEGRADED (a failed call) -> DISABLED (max_failures in a row)
    DISABLED/UNREGISTERED -> ENABLED (manual enable, re-registration or a
    successful probe)
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from threading import Lock

from .exceptions import PluginRegistrationError
from .models import StrategyDecision
from .settings import PLUGIN_MAX_FAILURES
from .strategies.base import Strategy
from .time_utils import now_utc

logger = logging.getLogger(__name__)


class HandleKind(Enum):
    BUILTIN = "builtin"
    EXTERNAL = "external"


class HandleStatus(Enum):
    ENABLED = "enabled"
    DEGRADED = "degraded"
    DISABLED = "disabled"
    UNREGISTERED = "unregistered"


@dataclass
class StrategyHandle:
    """One decision source plus its health."""

    name: str
    kind: HandleKind
    strategy: Strategy
    priority: int
    registered_seq: int
    version: str = "1.0.0"
    callback_url: str | None = None
    description: str = ""
    enabled: bool = True
    status: HandleStatus = HandleStatus.ENABLED
    consecutive_failures: int = 0
    total_failures: int = 0
    total_calls: int = 0
    last_result: StrategyDecision | None = None
    last_error: str | None = None
    last_failure_at: datetime | None = None

    @property
    def plugin_type(self) -> str:
        return self.kind.value


def _check_priority(name: str, priority: int) -> int:
    if not isinstance(priority, int) or isinstance(priority, bool) or not 0 <= priority <= 100:
        raise PluginRegistrationError(name, f"Priority must be an integer 0-100, got {priority!r}")
    return priority


class StrategyRegistry:
    """Thread-safe, ordered map of strategy name to handle."""

    def __init__(self, max_failures: int = PLUGIN_MAX_FAILURES):
        self.max_failures = max_failures
        self._handles: dict[str, StrategyHandle] = {}
        self._next_seq = 0
        self._lock = Lock()

    def _add(self, handle_kwargs: dict) -> StrategyHandle:
        handle = StrategyHandle(registered_seq=self._next_seq, **handle_kwargs)
        self._next_seq += 1
        self._handles[handle.name] = handle
        return handle

    def register_builtin(
        self, strategy: Strategy, priority: int | None = None
    ) -> StrategyHandle:
        """Register an in-process strategy under its own name."""
        priority = _check_priority(
            strategy.name, strategy.default_priority if priority is None else priority
        )
        with self._lock:
            existing = self._handles.get(strategy.name)
            if existing is not None and existing.kind != HandleKind.BUILTIN:
                raise PluginRegistrationError(
                    strategy.name, f"Name {strategy.name!r} is taken by an external plugin"
                )
            if existing is not None:
                existing.strategy = strategy
                existing.priority = priority
                existing.version = strategy.version
                handle = existing
            else:
                handle = self._add(
                    {
                        "name": strategy.name,
                        "kind": HandleKind.BUILTIN,
                        "strategy": strategy,
                        "priority": priority,
                        "version": strategy.version,
                    }
                )
        logger.info(
            f"Registered built-in strategy {strategy.name} v{strategy.version} "
            f"at priority {priority}"
        )
        return handle

    def register_external(
        self,
        name: str,
        strategy: Strategy,
        callback_url: str,
        priority: int,
        version: str = "1.0.0",
        description: str = "",
    ) -> StrategyHandle:
        """Register or re-register an external plugin.

        Re-registration updates callback, priority and version and re-enables
        the handle while keeping its health history and registration order.
        """
        priority = _check_priority(name, priority)
        with self._lock:
            existing = self._handles.get(name)
            if existing is not None and existing.kind != HandleKind.EXTERNAL:
                raise PluginRegistrationError(
                    name, f"Name {name!r} is taken by a built-in strategy"
                )
            if existing is not None:
                existing.strategy = strategy
                existing.callback_url = callback_url
                existing.priority = priority
                existing.version = version
                existing.description = description
                existing.enabled = True
                existing.status = HandleStatus.ENABLED
                existing.consecutive_failures = 0
                handle = existing
                action = "Re-registered"
            else:
                handle = self._add(
                    {
                        "name": name,
                        "kind": HandleKind.EXTERNAL,
                        "strategy": strategy,
                        "priority": priority,
                        "version": version,
                        "callback_url": callback_url,
                        "description": description,
                    }
                )
                action = "Registered"
        logger.info(f"{action} external plugin {name} v{version} at {callback_url} (priority {priority})")
        return handle

    def get(self, name: str) -> StrategyHandle:
        """Get a handle by name.

        Raises:
            KeyError: If no strategy with that name was ever registered
        """
        with self._lock:
            if name not in self._handles:
                raise KeyError(f"Unknown strategy: {name}")
            return self._handles[name]

    def list_handles(self) -> list[StrategyHandle]:
        """Snapshot of all handles in registration order."""
        with self._lock:
            return [replace(h) for h in self._handles.values()]

    def enabled_handles(self) -> list[StrategyHandle]:
        """Snapshot of the handles that take part in the next cycle."""
        with self._lock:
            return [replace(h) for h in self._handles.values() if h.enabled]

    def is_enabled(self, name: str) -> bool:
        """Live enabled flag; False for unknown names."""
        with self._lock:
            handle = self._handles.get(name)
            return handle is not None and handle.enabled

    def unregister(self, name: str) -> None:
        """Disable a handle but keep its health history for audit."""
        handle = self.get(name)
        with self._lock:
            handle.enabled = False
            handle.status = HandleStatus.UNREGISTERED
        logger.info(f"Unregistered strategy {name} (history kept)")

    def enable(self, name: str) -> None:
        handle = self.get(name)
        with self._lock:
            handle.enabled = True
            handle.status = HandleStatus.ENABLED
            handle.consecutive_failures = 0
        logger.info(f"Enabled strategy {name}")

    def disable(self, name: str) -> None:
        handle = self.get(name)
        with self._lock:
            handle.enabled = False
            handle.status = HandleStatus.DISABLED
        logger.info(f"Disabled strategy {name}")

    def set_priority(self, name: str, priority: int) -> None:
        priority = _check_priority(name, priority)
        handle = self.get(name)
        with self._lock:
            handle.priority = priority
        logger.info(f"Priority of {name} set to {priority}")

    def record_success(self, name: str, decision: StrategyDecision) -> None:
        with self._lock:
            handle = self._handles.get(name)
            if handle is None:
                return
            handle.total_calls += 1
            handle.consecutive_failures = 0
            handle.last_result = decision
            if handle.status == HandleStatus.DEGRADED:
                handle.status = HandleStatus.ENABLED

    def record_failure(self, name: str, error: Exception) -> bool:
        """Count a failed call.

        Returns:
            True if this failure disabled the handle
        """
        with self._lock:
            handle = self._handles.get(name)
            if handle is None:
                return False
            handle.total_calls += 1
            handle.total_failures += 1
            handle.consecutive_failures += 1
            handle.last_error = str(error)
            handle.last_failure_at = now_utc()

            if not handle.enabled:
                return False
            if handle.consecutive_failures >= self.max_failures:
                handle.enabled = False
                handle.status = HandleStatus.DISABLED
                disabled = True
            else:
                handle.status = HandleStatus.DEGRADED
                disabled = False

        if disabled:
            logger.error(
                f"Strategy {name} disabled after {self.max_failures} consecutive failures"
            )
        return disabled
