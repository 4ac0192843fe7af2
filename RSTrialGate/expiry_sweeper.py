from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from discord.ext import tasks

from RSTrialGate.entitlement_store import EntitlementStore
from RSTrialGate.entitlements import EntitlementEngine, Outcome

log = logging.getLogger("rs-trialgate.sweeper")

RESTART_DELAY_SECONDS = 5


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SweepReport:
    started_at: datetime
    found: int = 0
    errors: int = 0
    outcomes: Counter = field(default_factory=Counter)

    def summary(self) -> str:
        parts = [f"{self.found} expired"]
        for outcome, n in sorted(self.outcomes.items(), key=lambda kv: kv[0].value):
            parts.append(f"{outcome.value}={n}")
        if self.errors:
            parts.append(f"errors={self.errors}")
        return ", ".join(parts)


class ExpirySweeper:
    """Periodically closes trials whose expiry timestamp has passed.

    Records are processed one at a time. A tick that fires while the previous one is
    still running is skipped.
    """

    def __init__(
        self,
        engine: EntitlementEngine,
        store: EntitlementStore,
        interval_seconds: float = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.engine = engine
        self.store = store
        self.interval_seconds = float(interval_seconds)
        self.clock = clock or engine.clock or _now_utc
        self.last_report: Optional[SweepReport] = None
        self._running = asyncio.Lock()
        self._loop: Optional[tasks.Loop] = None
        self._restart_task: Optional[asyncio.Task] = None

    async def run_once(self) -> Optional[SweepReport]:
        if self._running.locked():
            log.warning("[Sweep] Previous sweep still running — skipping this tick")
            return None

        async with self._running:
            now = self.clock()
            expired = self.store.list_expired_trials(now)
            report = SweepReport(started_at=now, found=len(expired))
            for member_id, gate_role_id in expired:
                try:
                    outcome: Outcome = await self.engine.handle_trial_expired(member_id, gate_role_id)
                    report.outcomes[outcome] += 1
                except Exception as e:
                    report.errors += 1
                    log.error(f"[Sweep] Error expiring trial for {member_id}: {e}")
            if report.found:
                log.info(f"[Sweep] {report.summary()}")
            self.last_report = report
            return report

    # -----------------------------
    # Scheduling
    # -----------------------------
    async def _tick(self) -> None:
        await self.run_once()

    async def _on_loop_error(self, error: BaseException) -> None:
        log.error(f"[Sweep] sweep loop crashed: {error} — restarting in {RESTART_DELAY_SECONDS}s")
        if self._restart_task is None or self._restart_task.done():
            self._restart_task = asyncio.create_task(self._restart_later())

    async def _restart_later(self) -> None:
        await asyncio.sleep(RESTART_DELAY_SECONDS)
        if self._loop is not None and not self._loop.is_running():
            self._loop.start()
            log.info("[Sweep] Expiry sweep restarted")

    def start(self) -> None:
        if self._loop is not None and self._loop.is_running():
            return
        if self._loop is None:
            self._loop = tasks.loop(seconds=self.interval_seconds)(self._tick)
            self._loop.error(self._on_loop_error)
        self._loop.start()
        log.info(f"[Sweep] Expiry sweep running every {self.interval_seconds:g}s")

    def stop(self) -> None:
        if self._restart_task is not None and not self._restart_task.done():
            self._restart_task.cancel()
        if self._loop is not None:
            self._loop.cancel()

    @property
    def is_running(self) -> bool:
        return self._loop is not None and self._loop.is_running()
