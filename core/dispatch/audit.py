"""Audit trail of fallbacks, plugin failures and safety decisions.

Every substituted decision and every rejected or deferred mode change is
recorded with enough strategy, block and constraint context to reconstruct
why a mode was or was not applied.

Design:
- In-memory only (cleared on restart)
- Bounded to MAX_RECORDS, oldest records evicted first
- Thread-safe, plugin tasks record from worker threads
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock

from .time_utils import now_utc

logger = logging.getLogger(__name__)


class AuditCategory(Enum):
    STRATEGY_FALLBACK = "STRATEGY_FALLBACK"
    PLUGIN_FAILURE = "PLUGIN_FAILURE"
    PLUGIN_DISABLED = "PLUGIN_DISABLED"
    DEBOUNCE = "DEBOUNCE"
    SIMULATION_VIOLATION = "SIMULATION_VIOLATION"
    SAFETY_REJECTED = "SAFETY_REJECTED"
    DWELL_DEFERRED = "DWELL_DEFERRED"
    INPUT_ERROR = "INPUT_ERROR"
    COMMAND_FAILED = "COMMAND_FAILED"


@dataclass
class AuditRecord:
    """One audit entry.

    Attributes:
        id: Unique identifier (UUID)
        timestamp: When the event was recorded
        category: Event category
        message: Human-readable description
        strategy_name: Strategy involved, if any
        block_start: Block the event concerns, if any
        inverter_id: Inverter the event concerns, if any
        constraint: Name of the violated constraint, if any
        context: Additional structured data
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=now_utc)
    category: AuditCategory = AuditCategory.STRATEGY_FALLBACK
    message: str = ""
    strategy_name: str | None = None
    block_start: datetime | None = None
    inverter_id: str | None = None
    constraint: str | None = None
    context: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "category": self.category.value,
            "message": self.message,
            "strategy_name": self.strategy_name,
            "block_start": self.block_start.isoformat() if self.block_start else None,
            "inverter_id": self.inverter_id,
            "constraint": self.constraint,
            "context": self.context,
        }


class AuditTrail:
    """Thread-safe bounded in-memory audit log."""

    MAX_RECORDS = 2000

    def __init__(self, max_records: int | None = None):
        self._records: list[AuditRecord] = []
        self._lock = Lock()
        self.max_records = max_records or self.MAX_RECORDS

    def record(
        self,
        category: AuditCategory,
        message: str,
        strategy_name: str | None = None,
        block_start: datetime | None = None,
        inverter_id: str | None = None,
        constraint: str | None = None,
        context: dict | None = None,
    ) -> AuditRecord:
        """Record an event and log it at warning level."""
        entry = AuditRecord(
            category=category,
            message=message,
            strategy_name=strategy_name,
            block_start=block_start,
            inverter_id=inverter_id,
            constraint=constraint,
            context=context or {},
        )

        with self._lock:
            self._records.append(entry)
            if len(self._records) > self.max_records:
                del self._records[: len(self._records) - self.max_records]

        if category == AuditCategory.DEBOUNCE:
            logger.debug(f"[{category.value}] {message}")
        else:
            logger.warning(f"[{category.value}] {message}")
        return entry

    def records(
        self, category: AuditCategory | None = None, limit: int | None = None
    ) -> list[AuditRecord]:
        """Get records, newest first, optionally filtered by category."""
        with self._lock:
            selected = [
                r for r in self._records if category is None or r.category == category
            ]
        selected.reverse()
        return selected[:limit] if limit is not None else selected

    def count(self, category: AuditCategory | None = None) -> int:
        with self._lock:
            if category is None:
                return len(self._records)
            return sum(1 for r in self._records if r.category == category)

    def clear(self) -> int:
        """Remove all records.

        Returns:
            Number of records removed
        """
        with self._lock:
            removed = len(self._records)
            self._records.clear()
        if removed:
            logger.info(f"Cleared {removed} audit records")
        return removed
