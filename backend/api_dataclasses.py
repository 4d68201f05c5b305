"""API DataClasses with canonical camelCase field names."""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


def _iso(value) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class APIPluginRegistration:
    """Plugin registration request body."""

    name: str
    callbackUrl: str
    priority: int | None = None
    version: str = "1.0.0"
    description: str = ""

    def to_internal(self) -> dict:
        """Convert API request to PluginGateway.register keyword arguments."""
        return {
            "name": self.name,
            "callback_url": self.callbackUrl,
            "priority": self.priority,
            "version": self.version,
            "description": self.description,
        }


@dataclass
class APIStrategyHandle:
    """Registered decision source with its health counters."""

    name: str
    pluginId: str
    pluginType: str
    version: str
    priority: int
    enabled: bool
    status: str
    callbackUrl: str | None
    description: str
    registeredSeq: int
    consecutiveFailures: int
    totalFailures: int
    totalCalls: int
    lastError: str | None
    lastFailureAt: str | None
    lastMode: str | None

    @classmethod
    def from_internal(cls, handle) -> APIStrategyHandle:
        """Convert from internal StrategyHandle to canonical camelCase."""
        return cls(
            name=handle.name,
            pluginId=(
                f"http:{handle.name}"
                if handle.plugin_type == "external"
                else f"builtin:{handle.name}"
            ),
            pluginType=handle.plugin_type,
            version=handle.version,
            priority=handle.priority,
            enabled=handle.enabled,
            status=handle.status.value,
            callbackUrl=handle.callback_url,
            description=handle.description,
            registeredSeq=handle.registered_seq,
            consecutiveFailures=handle.consecutive_failures,
            totalFailures=handle.total_failures,
            totalCalls=handle.total_calls,
            lastError=handle.last_error,
            lastFailureAt=_iso(handle.last_failure_at),
            lastMode=handle.last_result.mode.value if handle.last_result else None,
        )


@dataclass
class APIScheduleEntry:
    """One block of the published schedule."""

    blockStart: str
    blockEnd: str
    durationMinutes: int
    mode: str
    reason: str
    priority: int
    strategyName: str | None
    decisionId: str | None
    confidence: float | None
    expectedProfit: float | None

    @classmethod
    def from_internal(cls, entry) -> APIScheduleEntry:
        return cls(
            blockStart=entry.block_start.isoformat(),
            blockEnd=entry.block_end.isoformat(),
            durationMinutes=entry.duration_minutes,
            mode=entry.mode.value,
            reason=entry.reason,
            priority=entry.priority,
            strategyName=entry.strategy_name,
            decisionId=entry.decision_id,
            confidence=entry.confidence,
            expectedProfit=entry.expected_profit,
        )


@dataclass
class APISchedule:
    """Published schedule with summary counts."""

    cycleId: int
    createdAt: str
    health: str
    priceVersion: str | None
    horizonEnd: str | None
    modeCounts: dict[str, int]
    entries: list[dict]

    @classmethod
    def from_internal(cls, schedule) -> APISchedule:
        return cls(
            cycleId=schedule.cycle_id,
            createdAt=schedule.created_at.isoformat(),
            health=schedule.health.value,
            priceVersion=schedule.price_version,
            horizonEnd=_iso(schedule.horizon_end),
            modeCounts=schedule.mode_counts(),
            entries=[APIScheduleEntry.from_internal(e).__dict__ for e in schedule.entries],
        )


@dataclass
class APIInverterState:
    inverterId: str
    currentMode: str
    lastChangeAt: str | None
    pendingMode: str | None
    commandsIssued: int
    socRejections: int
    dwellDeferrals: int

    @classmethod
    def from_internal(cls, state) -> APIInverterState:
        return cls(
            inverterId=state.inverter_id,
            currentMode=state.current_mode.value,
            lastChangeAt=_iso(state.last_change_at),
            pendingMode=state.pending_mode.value if state.pending_mode else None,
            commandsIssued=state.commands_issued,
            socRejections=state.soc_rejections,
            dwellDeferrals=state.dwell_deferrals,
        )


@dataclass
class APIHealth:
    """Engine health snapshot: last cycle, inverters and audit totals."""

    health: str
    lastCycleId: int | None
    lastCycleAt: str | None
    lastCycleAborted: bool
    lastError: str | None
    scheduleCycleId: int | None
    enabledStrategies: int
    disabledStrategies: int
    auditRecords: int
    inverters: list[dict]

    @classmethod
    def from_internal(cls, engine) -> APIHealth:
        report = engine.last_report
        schedule = engine.current_schedule
        handles = engine.registry.list_handles()
        return cls(
            health=report.health.value if report else "Unknown",
            lastCycleId=report.cycle_id if report else None,
            lastCycleAt=_iso(report.started_at) if report else None,
            lastCycleAborted=report.aborted if report else False,
            lastError=report.error if report else None,
            scheduleCycleId=schedule.cycle_id if schedule else None,
            enabledStrategies=sum(1 for h in handles if h.enabled),
            disabledStrategies=sum(1 for h in handles if not h.enabled),
            auditRecords=engine.audit.count(),
            inverters=[
                APIInverterState.from_internal(s).__dict__
                for s in engine.governor.states()
            ],
        )


@dataclass
class APIAuditRecord:
    id: str
    timestamp: str
    category: str
    message: str
    strategyName: str | None
    blockStart: str | None
    inverterId: str | None
    constraint: str | None
    context: dict

    @classmethod
    def from_internal(cls, record) -> APIAuditRecord:
        return cls(
            id=record.id,
            timestamp=record.timestamp.isoformat(),
            category=record.category.value,
            message=record.message,
            strategyName=record.strategy_name,
            blockStart=_iso(record.block_start),
            inverterId=record.inverter_id,
            constraint=record.constraint,
            context=record.context,
        )


@dataclass
class APICycleReport:
    """Summary of a manually triggered planning cycle."""

    cycleId: int
    startedAt: str
    health: str
    published: bool
    error: str | None
    commands: list[dict]

    @classmethod
    def from_internal(cls, report) -> APICycleReport:
        return cls(
            cycleId=report.cycle_id,
            startedAt=report.started_at.isoformat(),
            health=report.health.value,
            published=report.published,
            error=report.error,
            commands=[
                {
                    "inverterId": c.inverter_id,
                    "mode": c.mode.value,
                    "issuedAt": c.issued_at.isoformat(),
                    "reason": c.reason,
                    "strategyName": c.strategy_name,
                }
                for c in report.commands
            ],
        )
