"""Safety & debounce governor.

Turns merged decisions into hardware-safe inverter commands. The governor is
the only writer of the per-inverter "last executed mode"; strategies and the
merger never touch it.

Plan level (``debounce``):
    Runs of identical modes shorter than ``min_consecutive_blocks`` are
    coalesced with their neighbours by majority vote, so the inverter is not
    flipped for a single block.

Execution level (``apply``), per inverter:
    1. Requested mode equals current mode: no-op.
    2. SOC safety: ForceCharge is refused near max SOC and ForceDischarge at
       or below the configured minimum (the hardware floor always wins).
       The current mode is held.
    3. Dwell time: a change within ``min_mode_change_interval_secs`` of the
       last real change is deferred, never dropped, and re-attempted on the
       next cycle.
    4. Otherwise the state transitions and exactly one command is emitted.

Violations are logged, counted and written to the audit trail. They never
raise out of the governor.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from threading import Lock

from .audit import AuditCategory, AuditTrail
from .exceptions import SafetyViolation
from .models import InverterCommand, OperationMode, StrategyDecision
from .settings import BatterySettings, GovernorSettings

logger = logging.getLogger(__name__)


class GovernorStatus(Enum):
    UNCHANGED = "unchanged"
    CHANGED = "changed"
    REJECTED_SOC = "rejected_soc"
    DEFERRED_DWELL = "deferred_dwell"


@dataclass
class InverterState:
    """Authoritative execution state of one inverter."""

    inverter_id: str
    current_mode: OperationMode = OperationMode.SELF_USE
    last_change_at: datetime | None = None
    pending_mode: OperationMode | None = None
    pending_decision: StrategyDecision | None = None
    commands_issued: int = 0
    soc_rejections: int = 0
    dwell_deferrals: int = 0


@dataclass(frozen=True)
class GovernorOutcome:
    """Result of offering one decision to one inverter."""

    inverter_id: str
    status: GovernorStatus
    held_mode: OperationMode
    command: InverterCommand | None = None
    violation: SafetyViolation | None = None


def _runs(decisions: list[StrategyDecision]) -> list[list[int]]:
    """Group indices of consecutive decisions with the same mode."""
    runs: list[list[int]] = []
    for i, decision in enumerate(decisions):
        if runs and decisions[runs[-1][0]].mode == decision.mode:
            runs[-1].append(i)
        else:
            runs.append([i])
    return runs


class SafetyGovernor:
    """Debounces plans and guards mode changes for every inverter."""

    def __init__(
        self,
        settings: GovernorSettings,
        battery: BatterySettings,
        audit: AuditTrail,
    ):
        self.settings = settings
        self.battery = battery
        self.audit = audit
        self._states: dict[str, InverterState] = {}
        self._lock = Lock()

    def state(self, inverter_id: str) -> InverterState:
        with self._lock:
            if inverter_id not in self._states:
                self._states[inverter_id] = InverterState(inverter_id=inverter_id)
            return self._states[inverter_id]

    def states(self) -> list[InverterState]:
        with self._lock:
            return [replace(s) for s in self._states.values()]

    # Plan level

    def debounce(self, decisions: list[StrategyDecision]) -> list[StrategyDecision]:
        """Coalesce runs shorter than min_consecutive_blocks with a neighbour.

        The short run adopts the mode of the longer neighbouring run, the
        preceding run on a tie, or its only neighbour at the schedule edges.
        Repeats until no short run with a neighbour remains.
        """
        minimum = self.settings.min_consecutive_blocks
        result = list(decisions)
        if minimum <= 1 or len(result) < 2:
            return result

        while True:
            runs = _runs(result)
            if len(runs) < 2:
                return result

            short = next((n for n, run in enumerate(runs) if len(run) < minimum), None)
            if short is None:
                return result

            before = runs[short - 1] if short > 0 else None
            after = runs[short + 1] if short + 1 < len(runs) else None
            if before is None:
                donor_index = after[0]
            elif after is None:
                donor_index = before[-1]
            else:
                donor_index = before[-1] if len(before) >= len(after) else after[0]
            donor = result[donor_index]
            first = result[runs[short][0]]

            for i in runs[short]:
                original = result[i]
                result[i] = replace(
                    original,
                    mode=donor.mode,
                    priority=donor.priority,
                    reason=(
                        f"Debounced: {original.mode.value} run of {len(runs[short])} "
                        f"block(s) merged into {donor.mode.value} ({donor.reason})"
                    ),
                    strategy_name=donor.strategy_name,
                    decision_id=f"debounce:{original.decision_id or original.strategy_name}",
                )
            self.audit.record(
                AuditCategory.DEBOUNCE,
                f"Coalesced {len(runs[short])} block(s) starting "
                f"{first.block_start.isoformat()}: {first.mode.value} -> {donor.mode.value}",
                strategy_name=first.strategy_name,
                block_start=first.block_start,
                constraint="min_consecutive_blocks",
                context={"run_length": len(runs[short]), "minimum": minimum},
            )

    # Execution level

    def _soc_violation(
        self, inverter_id: str, mode: OperationMode, soc_percent: float
    ) -> SafetyViolation | None:
        if mode == OperationMode.FORCE_CHARGE:
            ceiling = self.battery.max_soc - self.settings.charge_headroom_percent
            if soc_percent >= ceiling:
                return SafetyViolation(
                    inverter_id,
                    mode,
                    "max_soc",
                    f"ForceCharge rejected on {inverter_id}: SOC {soc_percent:.1f}% >= "
                    f"{ceiling:.1f}% (max {self.battery.max_soc:.0f}% - "
                    f"{self.settings.charge_headroom_percent:.0f}% headroom)",
                )
        elif mode == OperationMode.FORCE_DISCHARGE:
            floor = max(self.battery.min_soc, self.battery.hardware_min_soc)
            if soc_percent <= floor:
                return SafetyViolation(
                    inverter_id,
                    mode,
                    "min_soc",
                    f"ForceDischarge rejected on {inverter_id}: SOC {soc_percent:.1f}% <= "
                    f"{floor:.1f}%",
                )
        return None

    def apply(
        self,
        inverter_id: str,
        decision: StrategyDecision,
        soc_percent: float,
        now: datetime,
    ) -> GovernorOutcome:
        """Offer a merged decision to one inverter."""
        with self._lock:
            state = self._states.setdefault(
                inverter_id, InverterState(inverter_id=inverter_id)
            )
            requested = decision.mode

            if requested == state.current_mode:
                state.pending_mode = None
                state.pending_decision = None
                return GovernorOutcome(
                    inverter_id, GovernorStatus.UNCHANGED, state.current_mode
                )

            violation = self._soc_violation(inverter_id, requested, soc_percent)
            if violation is not None:
                state.soc_rejections += 1
                state.pending_mode = None
                state.pending_decision = None
                held = state.current_mode
            else:
                dwell = timedelta(seconds=self.settings.min_mode_change_interval_secs)
                if state.last_change_at is not None and now - state.last_change_at < dwell:
                    state.dwell_deferrals += 1
                    state.pending_mode = requested
                    state.pending_decision = decision
                    remaining = dwell - (now - state.last_change_at)
                    held = state.current_mode
                    deferred = True
                else:
                    deferred = False
                    previous = state.current_mode
                    state.current_mode = requested
                    state.last_change_at = now
                    state.pending_mode = None
                    state.pending_decision = None
                    state.commands_issued += 1
                    command = InverterCommand(
                        inverter_id=inverter_id,
                        mode=requested,
                        issued_at=now,
                        reason=decision.reason,
                        decision_id=decision.decision_id,
                        strategy_name=decision.strategy_name,
                    )

        if violation is not None:
            self.audit.record(
                AuditCategory.SAFETY_REJECTED,
                f"{violation}; holding {held.value}",
                strategy_name=decision.strategy_name,
                block_start=decision.block_start,
                inverter_id=inverter_id,
                constraint=violation.constraint,
                context={
                    "soc_percent": soc_percent,
                    "requested_mode": requested.value,
                    "priority": decision.priority,
                    "decision_id": decision.decision_id,
                },
            )
            return GovernorOutcome(
                inverter_id, GovernorStatus.REJECTED_SOC, held, violation=violation
            )

        if deferred:
            self.audit.record(
                AuditCategory.DWELL_DEFERRED,
                f"{requested.value} on {inverter_id} deferred: last change "
                f"{self.settings.min_mode_change_interval_secs}s dwell not elapsed "
                f"({remaining.total_seconds():.0f}s left), holding {held.value}",
                strategy_name=decision.strategy_name,
                block_start=decision.block_start,
                inverter_id=inverter_id,
                constraint="min_mode_change_interval",
                context={"remaining_seconds": remaining.total_seconds()},
            )
            return GovernorOutcome(inverter_id, GovernorStatus.DEFERRED_DWELL, held)

        logger.info(
            f"Inverter {inverter_id}: {previous.value} -> {requested.value} "
            f"({decision.strategy_name}: {decision.reason})"
        )
        return GovernorOutcome(
            inverter_id, GovernorStatus.CHANGED, requested, command=command
        )

    def retry_pending(
        self, inverter_id: str, soc_percent: float, now: datetime
    ) -> GovernorOutcome | None:
        """Re-attempt a deferred change when a cycle brings no new decision."""
        with self._lock:
            state = self._states.get(inverter_id)
            pending = state.pending_decision if state else None
        if pending is None:
            return None
        return self.apply(inverter_id, pending, soc_percent, now)

    def revert(self, inverter_id: str, mode: OperationMode, changed_at: datetime | None) -> None:
        """Restore the previous mode after a command could not be delivered."""
        with self._lock:
            state = self._states.get(inverter_id)
            if state is None:
                return
            state.current_mode = mode
            state.last_change_at = changed_at
            state.commands_issued = max(0, state.commands_issued - 1)
