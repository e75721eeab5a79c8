"""Automation engine — the top-level control loop.

States are STOPPED and RUNNING. ``start`` needs at least one registered
strategy and an inactive kill switch; it runs one cycle immediately and then
one per interval on an APScheduler ``AsyncIOScheduler``. Activating the kill
switch stops the engine and blocks ``start`` until it is deactivated.

Each cycle:

1. Stop if the kill switch is active.
2. Drop rate-limit history older than an hour.
3. For each enabled strategy that can execute, apply the safety gate
   (hourly execution cap, manual approval threshold). In dry-run mode log
   and count; otherwise execute and track the positions it opened.
4. For each tracked position, ask its strategy whether to close. In dry-run
   mode log; otherwise close through the hedge engine and untrack.

Cycles never overlap: a tick that fires while a cycle is in progress is
dropped. Errors inside one strategy are logged and do not affect the others.
"""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import BaseModel, Field

from hedger.automation.strategies import Strategy
from hedger.config import AUTOMATION_INTERVAL, SafetyConfig
from hedger.execution.hedge_engine import HedgeEngine
from hedger.types import PositionStatus, utcnow

logger = logging.getLogger(__name__)

RATE_WINDOW = timedelta(hours=1)
CYCLE_JOB_ID = "automation_cycle"


class EngineState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"


class AutomationError(RuntimeError):
    """Raised when the engine cannot start."""


class AutomationStatus(BaseModel):
    state: EngineState
    strategies: list[str] = Field(default_factory=list)
    positions_opened: int = Field(default=0, description="Executions, dry-run included.")
    signals_detected: int = 0
    positions_closed: int = 0
    started_at: Optional[datetime] = None
    uptime_seconds: float = 0.0
    mode: str = Field(default="live", description="live or dry-run.")
    kill_switch: bool = False


class AutomationEngine:
    """Runs registered strategies on a fixed cadence behind safety gates.

    Attributes:
        safety: Rate cap, approval threshold, dry-run and kill-switch flags.
        interval: Seconds between scheduled cycles.
    """

    def __init__(
        self,
        hedge_engine: HedgeEngine,
        safety: Optional[SafetyConfig] = None,
        interval: float = AUTOMATION_INTERVAL,
    ) -> None:
        self._hedge_engine = hedge_engine
        self.safety = safety or SafetyConfig()
        self.interval = interval

        self._strategies: dict[str, Strategy] = {}
        self._state = EngineState.STOPPED
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._cycle_in_progress = False
        self._history: deque[datetime] = deque()

        self._started_at: Optional[datetime] = None
        self._execution_count = 0
        self._signal_count = 0
        self._closed_count = 0
        self._cycle_count = 0
        self._skipped_cycles = 0

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == EngineState.RUNNING

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def register_strategy(self, strategy: Strategy) -> None:
        if strategy.id in self._strategies:
            logger.warning("strategy_replaced", extra={"strategy_id": strategy.id})
        self._strategies[strategy.id] = strategy
        logger.info("strategy_registered", extra={"strategy_id": strategy.id, "strategy": strategy.name})

    def unregister_strategy(self, strategy_id: str) -> bool:
        if self._strategies.pop(strategy_id, None) is None:
            return False
        logger.info("strategy_unregistered", extra={"strategy_id": strategy_id})
        return True

    def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        return self._strategies.get(strategy_id)

    @property
    def strategies(self) -> list[Strategy]:
        return list(self._strategies.values())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.is_running:
            logger.info("automation_already_running")
            return
        if not self._strategies:
            raise AutomationError("No strategies registered. Register at least one strategy first.")
        if self.safety.kill_switch:
            raise AutomationError("Kill switch is active. Deactivate it before starting.")

        logger.info(
            "automation_starting",
            extra={"strategies": len(self._strategies), "mode": self._mode()},
        )
        initialized: list[Strategy] = []
        try:
            for strategy in self._strategies.values():
                await strategy.initialize()
                initialized.append(strategy)
        except Exception:
            logger.error("automation_start_failed", exc_info=True)
            for strategy in initialized:
                try:
                    await strategy.cleanup()
                except Exception:
                    logger.error("strategy_cleanup_failed", extra={"strategy_id": strategy.id}, exc_info=True)
            raise

        self._state = EngineState.RUNNING
        self._started_at = utcnow()

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_cycle,
            "interval",
            seconds=self.interval,
            id=CYCLE_JOB_ID,
            name="Automation Cycle",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()

        await self.run_cycle()
        logger.info("automation_started")

    async def stop(self) -> None:
        if not self.is_running:
            logger.info("automation_not_running")
            return

        logger.info("automation_stopping")
        self._state = EngineState.STOPPED
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        for strategy in self._strategies.values():
            try:
                await strategy.cleanup()
            except Exception:
                logger.error("strategy_cleanup_failed", extra={"strategy_id": strategy.id}, exc_info=True)
        logger.info("automation_stopped")

    async def activate_kill_switch(self) -> None:
        logger.warning("kill_switch_activated")
        self.safety.kill_switch = True
        if self.is_running:
            await self.stop()

    def deactivate_kill_switch(self) -> None:
        logger.info("kill_switch_deactivated")
        self.safety.kill_switch = False

    def set_dry_run(self, enabled: bool) -> None:
        self.safety.dry_run = enabled
        logger.info("dry_run_updated", extra={"dry_run": enabled})

    def update_safety_config(self, **changes: Any) -> SafetyConfig:
        self.safety = self.safety.model_copy(update=changes)
        logger.info("safety_config_updated", extra={"changes": changes})
        return self.safety

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> None:
        """One control-loop pass. Never raises."""
        if not self.is_running:
            return
        if self._cycle_in_progress:
            self._skipped_cycles += 1
            logger.warning("cycle_skipped", extra={"reason": "previous cycle still running"})
            return

        self._cycle_in_progress = True
        try:
            self._cycle_count += 1
            if self.safety.kill_switch:
                logger.warning("kill_switch_stopping_engine")
                await self.stop()
                return

            self._prune_history()

            for strategy in list(self._strategies.values()):
                if not strategy.enabled:
                    continue
                try:
                    await self._run_strategy(strategy)
                except Exception:
                    logger.error("strategy_execution_error", extra={"strategy_id": strategy.id}, exc_info=True)

            await self._check_exit_conditions()
        except Exception:
            logger.error("automation_cycle_error", exc_info=True)
        finally:
            self._cycle_in_progress = False

    async def _run_strategy(self, strategy: Strategy) -> None:
        if not await strategy.can_execute():
            return
        self._signal_count += 1

        if not self._safety_gate(strategy):
            return

        if self.safety.dry_run:
            logger.info(
                "dry_run_execute",
                extra={"strategy_id": strategy.id, "position_size": strategy.position_size()},
            )
            self._execution_count += 1
            return

        logger.info("strategy_executing", extra={"strategy_id": strategy.id})
        events = await strategy.execute()
        for event in events:
            strategy.track(event.hedge_group_id)
        self._execution_count += 1
        self._history.append(utcnow())

    def _safety_gate(self, strategy: Strategy) -> bool:
        recent = self.get_position_rate()
        if recent >= self.safety.max_positions_per_hour:
            logger.warning(
                "rate_limit_reached",
                extra={"strategy_id": strategy.id, "limit": self.safety.max_positions_per_hour},
            )
            return False

        size = strategy.position_size()
        if size > self.safety.manual_approval_threshold:
            logger.warning(
                "manual_approval_required",
                extra={
                    "strategy_id": strategy.id,
                    "position_size": size,
                    "threshold": self.safety.manual_approval_threshold,
                },
            )
            return False
        return True

    async def _check_exit_conditions(self) -> None:
        positions = self._hedge_engine.positions
        for strategy in list(self._strategies.values()):
            if not strategy.enabled:
                continue
            for group_id in strategy.active_positions:
                try:
                    if not await positions.get_hedge_legs(group_id, PositionStatus.OPEN):
                        strategy.untrack(group_id)
                        logger.info("tracked_position_gone", extra={"hedge_group_id": group_id})
                        continue

                    if not await strategy.should_close(group_id):
                        continue

                    if self.safety.dry_run:
                        logger.info("dry_run_close", extra={"strategy_id": strategy.id, "hedge_group_id": group_id})
                        continue

                    event = await self._hedge_engine.close_hedge_position(group_id, reason=f"strategy:{strategy.id}")
                    strategy.untrack(event.hedge_group_id)
                    self._closed_count += 1
                except Exception:
                    logger.error(
                        "exit_check_error",
                        extra={"strategy_id": strategy.id, "hedge_group_id": group_id},
                        exc_info=True,
                    )

    def _prune_history(self) -> None:
        cutoff = utcnow() - RATE_WINDOW
        while self._history and self._history[0] <= cutoff:
            self._history.popleft()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _mode(self) -> str:
        return "dry-run" if self.safety.dry_run else "live"

    def _uptime(self) -> float:
        if self._started_at is None:
            return 0.0
        return (utcnow() - self._started_at).total_seconds()

    def get_position_rate(self) -> int:
        """Live executions within the trailing hour."""
        cutoff = utcnow() - RATE_WINDOW
        return sum(1 for ts in self._history if ts > cutoff)

    def get_status(self) -> AutomationStatus:
        return AutomationStatus(
            state=self._state,
            strategies=[s.name for s in self._strategies.values()],
            positions_opened=self._execution_count,
            signals_detected=self._signal_count,
            positions_closed=self._closed_count,
            started_at=self._started_at,
            uptime_seconds=self._uptime(),
            mode=self._mode(),
            kill_switch=self.safety.kill_switch,
        )

    def get_stats(self) -> dict:
        return {
            "total_executions": self._execution_count,
            "total_signals": self._signal_count,
            "total_closed": self._closed_count,
            "cycles": self._cycle_count,
            "skipped_cycles": self._skipped_cycles,
            "uptime_seconds": self._uptime(),
            "position_rate": self.get_position_rate(),
            "strategies_active": sum(1 for s in self._strategies.values() if s.enabled),
        }
