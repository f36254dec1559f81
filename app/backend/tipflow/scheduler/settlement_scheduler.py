"""
Periodic settlement scheduler.

Every ``settlement_interval_seconds`` the scheduler runs one settlement cycle
over all tokens. When the backend wallet is not an authorized executor it
pauses, logs the problem and re-checks authorization every
``settlement_auth_recheck_seconds`` without touching the ledger.
"""

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from tipflow.core.config import settings
from tipflow.core.exceptions import ExecutorNotAuthorizedError
from tipflow.services.settlement import (
    SettlementOutcome, SettlementResult, SettlementService, get_settlement_service
)


logger = structlog.get_logger(__name__)


class SchedulerStatus(Enum):
    STOPPED = "stopped"
    WAITING = "waiting"
    PROCESSING = "processing"
    PAUSED = "paused"
    ERROR = "error"


@dataclass
class SchedulerStats:
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    batches_confirmed: int = 0
    batches_reverted: int = 0
    entries_settled: int = 0
    uptime_start: Optional[datetime] = None
    last_error: Optional[str] = None


class SettlementScheduler:
    """Runs SettlementService.settle_all on a fixed interval."""

    def __init__(
        self,
        service: Optional[SettlementService] = None,
        interval: Optional[float] = None,
        auth_recheck_interval: Optional[float] = None,
        enabled: Optional[bool] = None
    ):
        self.logger = logger.bind(service="settlement_scheduler")
        self._service = service
        self.enabled = settings.settlement_enabled if enabled is None else enabled
        self.interval = interval or settings.settlement_interval_seconds
        self.auth_recheck_interval = auth_recheck_interval or settings.settlement_auth_recheck_seconds

        self.status = SchedulerStatus.STOPPED
        self.stats = SchedulerStats(uptime_start=datetime.utcnow())
        self._should_stop = False
        self._scheduler_task: Optional[asyncio.Task] = None

    @property
    def service(self) -> SettlementService:
        if self._service is None:
            self._service = get_settlement_service()
        return self._service

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def start(self) -> None:
        if not self.enabled:
            self.logger.info("Settlement scheduler is disabled")
            return

        if self.status != SchedulerStatus.STOPPED:
            self.logger.warning("Scheduler already running", current_status=self.status.value)
            return

        self._should_stop = False
        self.status = SchedulerStatus.WAITING
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())
        self.logger.info("Settlement scheduler started", interval=self.interval)

    async def stop(self) -> None:
        if self.status == SchedulerStatus.STOPPED:
            return

        self.logger.info("Stopping settlement scheduler")
        self._should_stop = True

        if self._scheduler_task and not self._scheduler_task.done():
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass

        self.status = SchedulerStatus.STOPPED
        self.logger.info("Settlement scheduler stopped")

    async def _scheduler_loop(self) -> None:
        while not self._should_stop:
            try:
                await self.run_once()
                delay = (
                    self.auth_recheck_interval
                    if self.status == SchedulerStatus.PAUSED
                    else self.interval
                )
                self.stats.next_run = datetime.utcnow() + timedelta(seconds=delay)
                await asyncio.sleep(delay)

            except asyncio.CancelledError:
                break

            except Exception as e:
                self.logger.error("Error in scheduler loop", error=str(e))
                self.status = SchedulerStatus.ERROR
                await asyncio.sleep(self.interval)
                self.status = SchedulerStatus.WAITING

    async def run_once(self) -> List[SettlementResult]:
        """Run one settlement cycle and fold its results into the stats."""
        self.status = SchedulerStatus.PROCESSING
        self.stats.total_runs += 1
        self.stats.last_run = datetime.utcnow()

        try:
            results = await self.service.settle_all()
        except ExecutorNotAuthorizedError as e:
            self.stats.failed_runs += 1
            self.stats.last_error = e.message
            self.status = SchedulerStatus.PAUSED
            self.logger.warning(
                "⏸️ Settlement paused: executor not authorized",
                executor=e.details.get("executor"),
                recheck_in=self.auth_recheck_interval
            )
            return []
        except Exception as e:
            self.stats.failed_runs += 1
            self.stats.last_error = str(e)
            self.status = SchedulerStatus.ERROR
            self.logger.error("Settlement cycle failed", error=str(e))
            raise

        for result in results:
            if result.outcome == SettlementOutcome.CONFIRMED:
                self.stats.batches_confirmed += 1
                self.stats.entries_settled += result.entry_count
            elif result.outcome == SettlementOutcome.REVERTED:
                self.stats.batches_reverted += 1

        self.stats.successful_runs += 1
        self.stats.last_error = None
        self.status = SchedulerStatus.WAITING

        if results:
            self.logger.info(
                "Settlement cycle completed",
                tokens=len(results),
                outcomes=[r.outcome.value for r in results]
            )
        return results

    def get_status(self) -> Dict[str, Any]:
        stats = asdict(self.stats)
        for key, value in stats.items():
            if isinstance(value, datetime):
                stats[key] = value.isoformat()
        return {
            "status": self.status.value,
            "enabled": self.enabled,
            "interval": self.interval,
            "stats": stats,
        }


_settlement_scheduler: Optional[SettlementScheduler] = None


def get_settlement_scheduler() -> SettlementScheduler:
    global _settlement_scheduler
    if _settlement_scheduler is None:
        _settlement_scheduler = SettlementScheduler()
    return _settlement_scheduler


async def start_settlement_scheduler() -> SettlementScheduler:
    scheduler = get_settlement_scheduler()
    await scheduler.start()
    return scheduler


async def shutdown_settlement_scheduler() -> None:
    global _settlement_scheduler
    if _settlement_scheduler:
        await _settlement_scheduler.stop()
        _settlement_scheduler = None
