"""Decision merger: one winning decision per block.

Winner selection contract, applied per block:
    1. highest priority
    2. highest confidence (missing counts as 0)
    3. highest expected profit (missing counts as 0)
    4. earliest registered strategy

Because the last key is unique per strategy, the winner does not depend on
the order in which decisions were collected.

Built-in strategies run synchronously. External plugins are blocking HTTP
calls, so one task per (plugin, block) is submitted to a thread pool and all
tasks are joined before selection. Each task is bounded by its own HTTP
timeout. A failed or timed-out call becomes a SelfUse/priority-0 fallback for
that block only.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace

from .audit import AuditCategory, AuditTrail
from .day_profile import DayProfile
from .exceptions import StrategyError
from .models import BatteryState, ScheduleBlock, StrategyDecision
from .settings import BatterySettings, PluginSettings
from .strategy_registry import HandleKind, StrategyHandle, StrategyRegistry

logger = logging.getLogger(__name__)

NO_STRATEGIES_NAME = "Fallback"
NO_STRATEGIES_ID = "fallback:no_strategies"


@dataclass(frozen=True)
class EvaluationContext:
    """Read-only inputs shared by every strategy call in a cycle."""

    all_blocks: list[ScheduleBlock]
    battery_state: BatteryState
    battery: BatterySettings
    day_profile: DayProfile


def _ranking_key(seq: int, decision: StrategyDecision) -> tuple:
    return (
        -decision.priority,
        -(decision.confidence or 0.0),
        -(decision.expected_profit or 0.0),
        seq,
    )


def select_winner(candidates: list[tuple[int, StrategyDecision]]) -> StrategyDecision:
    """Pick the winning decision from (registration seq, decision) pairs.

    Raises:
        ValueError: If there are no candidates
    """
    if not candidates:
        raise ValueError("No candidate decisions to select from")
    return min(candidates, key=lambda c: _ranking_key(c[0], c[1]))[1]


class DecisionMerger:
    """Collects decisions from every enabled handle and merges them per block."""

    def __init__(
        self,
        registry: StrategyRegistry,
        audit: AuditTrail,
        settings: PluginSettings | None = None,
    ):
        self.registry = registry
        self.audit = audit
        self.settings = settings or PluginSettings()

    def _fallback(
        self, handle: StrategyHandle, block: ScheduleBlock, error: Exception
    ) -> StrategyDecision:
        disabled = self.registry.record_failure(handle.name, error)
        category = (
            AuditCategory.PLUGIN_FAILURE
            if handle.kind == HandleKind.EXTERNAL
            else AuditCategory.STRATEGY_FALLBACK
        )
        self.audit.record(
            category,
            f"{handle.name} failed for block {block.start_time.isoformat()}, "
            f"using SelfUse fallback: {error}",
            strategy_name=handle.name,
            block_start=block.start_time,
            context={"error_type": type(error).__name__},
        )
        if disabled:
            self.audit.record(
                AuditCategory.PLUGIN_DISABLED,
                f"{handle.name} disabled after {self.registry.max_failures} "
                "consecutive failures",
                strategy_name=handle.name,
                block_start=block.start_time,
                constraint="max_failures",
                context={"max_failures": self.registry.max_failures},
            )
        return StrategyDecision.fallback(
            block,
            handle.name,
            f"Fallback after {type(error).__name__}: {error}",
            decision_id=f"fallback:{handle.name}:{block.start_time.isoformat()}",
        )

    def evaluate_one(
        self, handle: StrategyHandle, block: ScheduleBlock, context: EvaluationContext
    ) -> StrategyDecision:
        """Evaluate one handle for one block. Never raises.

        A handle disabled earlier in the same cycle is not called again; the
        block gets a SelfUse fallback without counting another failure.
        """
        if not self.registry.is_enabled(handle.name):
            return StrategyDecision.fallback(
                block,
                handle.name,
                f"{handle.name} is disabled",
                decision_id=f"fallback:{handle.name}:{block.start_time.isoformat()}",
            )

        try:
            decision = handle.strategy.evaluate(
                block,
                context.all_blocks,
                context.battery_state,
                context.battery,
                context.day_profile,
            )
            if not isinstance(decision, StrategyDecision):
                raise StrategyError(
                    handle.name, block.start_time, f"{handle.name} returned {decision!r}"
                )
            if not decision.matches(block):
                raise StrategyError(
                    handle.name,
                    block.start_time,
                    f"{handle.name} answered for block {decision.block_start.isoformat()}",
                )
        except StrategyError as e:
            return self._fallback(handle, block, e)
        except Exception as e:
            logger.error(
                f"Unexpected error in strategy {handle.name}: {e}", exc_info=True
            )
            return self._fallback(handle, block, e)

        self.registry.record_success(handle.name, decision)
        if decision.priority > 0 and decision.priority != handle.priority:
            # The registered priority is authoritative
            decision = replace(decision, priority=handle.priority)
        return decision

    def collect(
        self, blocks: list[ScheduleBlock], context: EvaluationContext
    ) -> list[list[tuple[int, StrategyDecision]]]:
        """Gather one decision per enabled handle for every block."""
        handles = self.registry.enabled_handles()
        candidates: list[list[tuple[int, StrategyDecision]]] = [[] for _ in blocks]

        builtins = [h for h in handles if h.kind == HandleKind.BUILTIN]
        externals = [h for h in handles if h.kind == HandleKind.EXTERNAL]

        for handle in builtins:
            for i, block in enumerate(blocks):
                candidates[i].append(
                    (handle.registered_seq, self.evaluate_one(handle, block, context))
                )

        if externals:
            tasks = len(externals) * len(blocks)
            workers = max(1, min(self.settings.max_workers, tasks))
            # Block-major order so a slow plugin does not queue ahead of the others
            with ThreadPoolExecutor(
                max_workers=workers, thread_name_prefix="plugin"
            ) as pool:
                futures = [
                    (
                        i,
                        handle.registered_seq,
                        pool.submit(self.evaluate_one, handle, block, context),
                    )
                    for i, block in enumerate(blocks)
                    for handle in externals
                ]
                for i, seq, future in futures:
                    candidates[i].append((seq, future.result()))

        return candidates

    def merge(
        self, blocks: list[ScheduleBlock], context: EvaluationContext
    ) -> list[StrategyDecision]:
        """Return exactly one winning decision per block, in block order."""
        candidates = self.collect(blocks, context)

        merged = []
        for block, block_candidates in zip(blocks, candidates, strict=True):
            if not block_candidates:
                merged.append(
                    StrategyDecision.fallback(
                        block,
                        NO_STRATEGIES_NAME,
                        "No strategies available",
                        decision_id=NO_STRATEGIES_ID,
                    )
                )
                continue
            merged.append(select_winner(block_candidates))

        if merged and not any(c for c in candidates):
            logger.warning("No enabled strategies, all blocks fall back to SelfUse")

        logger.debug(
            f"Merged {len(blocks)} blocks from "
            f"{max((len(c) for c in candidates), default=0)} strategies"
        )
        return merged
