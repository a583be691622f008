"""
Idle agent reaper.

Pauses agents that have been inactive for too long so the gateway stops
serving them. Paused agents keep their workspace and sandbox and come back
through ``LifecycleManager.wake`` or ``provision``.

Policy:
- free tier inactive for 7+ days -> pause
- paid tier inactive for 30+ days -> pause
- never active counts as inactive
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from .config import Settings, get_settings
from .lifecycle import LifecycleManager
from .metrics import reaper_agents_total
from .models import AgentStatus, ReapCandidate, ReapReport, Tier
from .stores import AgentRecordStore, ReapCandidateSource, utcnow

logger = structlog.get_logger(__name__)


class Reaper:
    """Periodic sweep pausing inactive agents."""

    def __init__(
        self,
        lifecycle: LifecycleManager,
        records: AgentRecordStore,
        candidates: ReapCandidateSource,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.lifecycle = lifecycle
        self.registry = lifecycle.registry
        self.records = records
        self.candidates = candidates
        self.settings = settings or get_settings()
        self._clock = clock
        self.running = False
        self._task: asyncio.Task | None = None

    @property
    def thresholds(self) -> dict[Tier, int]:
        return {
            Tier.FREE: self.settings.free_inactive_days,
            Tier.PAID: self.settings.paid_inactive_days,
        }

    def is_inactive(self, candidate: ReapCandidate, threshold_days: int) -> bool:
        if candidate.last_active_at is None:
            return True
        return self._clock() - candidate.last_active_at >= timedelta(days=threshold_days)

    async def sweep(self) -> ReapReport:
        """
        Pause every eligible agent.

        Per-agent failures are collected in the report and never stop the
        sweep. Failing to list candidates propagates.
        """
        report = ReapReport()
        logger.info("reaper_sweep_started")

        for tier, days in self.thresholds.items():
            for candidate in await self.candidates.list_inactive(tier, days):
                if not self.is_inactive(candidate, days):
                    continue
                await self._reap_one(candidate, report)

        logger.info(
            "reaper_sweep_completed",
            paused=len(report.paused),
            errors=len(report.errors),
        )
        return report

    async def _reap_one(self, candidate: ReapCandidate, report: ReapReport) -> None:
        agent_id = candidate.agent_id
        try:
            if not await self.registry.exists(agent_id):
                reaper_agents_total.labels(outcome="skipped").inc()
                return
            await self.lifecycle.pause(agent_id)
            await self.records.set_agent_record(
                candidate.user_id, status=AgentStatus.SLEEPING
            )
        except Exception as e:
            report.errors.append(f"{agent_id}: {e}")
            reaper_agents_total.labels(outcome="error").inc()
            logger.error("reaper_pause_failed", agent_id=agent_id, error=str(e))
            return

        report.paused.append(agent_id)
        reaper_agents_total.labels(outcome="paused").inc()
        logger.info(
            "reaper_agent_paused",
            agent_id=agent_id,
            user_id=candidate.user_id,
            tier=candidate.tier.value,
        )

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self.running:
            logger.warning("reaper_already_running")
            return

        self.running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "reaper_started", interval_seconds=self.settings.reap_interval_seconds
        )

    async def stop(self) -> None:
        if not self.running:
            return

        self.running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("reaper_stopped")

    async def _loop(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self.settings.reap_interval_seconds)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("reaper_sweep_error", error=str(e), exc_info=True)
