"""
Recovery poller — periodically reconciles every active bridge order.

Ticks on a fixed cadence. A tick that fires while the previous pass is still
in flight is skipped rather than stacked, so a slow gateway never causes two
passes to hit the same orders at once.
"""

import asyncio
import time
from typing import Optional

DEFAULT_POLL_INTERVAL = 30.0    # seconds
METRICS_LOG_INTERVAL = 300.0    # log aggregate metrics every 5 min


class RecoveryPoller:
    """Background loop around service.reconcile_active_orders()."""

    def __init__(self, service, interval: float = DEFAULT_POLL_INTERVAL):
        self.service = service
        self.interval = interval
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._pass_task: Optional[asyncio.Task] = None
        # Metrics
        self._tick_count = 0
        self._pass_count = 0
        self._skipped = 0
        self._errors = 0
        self._last_pass_ms = 0.0
        self._last_summary: Optional[dict] = None
        self._last_metrics_log = time.monotonic()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> asyncio.Task:
        """Schedule the loop on the running event loop. Idempotent."""
        if self._loop_task and not self._loop_task.done():
            return self._loop_task
        self._running = True
        self._loop_task = asyncio.create_task(self.run())
        return self._loop_task

    async def run(self):
        """Main loop: sleep interval, then launch a pass unless one is in flight."""
        self._running = True
        print(f"[POLLER] Recovery poller started — every {self.interval:.0f}s")

        while self._running:
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                self._running = False
                return

            self._tick_count += 1
            if self._pass_task and not self._pass_task.done():
                self._skipped += 1
                print("[POLLER] Previous pass still running — skipping tick")
                continue
            self._pass_task = asyncio.create_task(self._run_pass())

    async def run_once(self) -> Optional[dict]:
        """Run a single pass now (startup recovery, --once, tests)."""
        return await self._run_pass()

    async def _run_pass(self) -> Optional[dict]:
        t0 = time.monotonic()
        try:
            summary = await self.service.reconcile_active_orders()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._errors += 1
            print(f"[POLLER] Recovery pass error: {e}")
            return None
        finally:
            self._last_pass_ms = (time.monotonic() - t0) * 1000
        self._pass_count += 1
        self._last_summary = summary

        now = time.monotonic()
        if now - self._last_metrics_log >= METRICS_LOG_INTERVAL:
            self._last_metrics_log = now
            print(f"[POLLER] Metrics: {self.service.metrics()}")
        return summary

    async def stop(self):
        """Stop the loop and cancel any in-flight pass. Safe to call twice."""
        self._running = False
        for task in (self._loop_task, self._pass_task):
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        if self._loop_task:
            print("[POLLER] Recovery poller stopped")
        self._loop_task = None
        self._pass_task = None

    def metrics(self) -> dict:
        return {
            "running": self._running,
            "interval_sec": self.interval,
            "ticks": self._tick_count,
            "passes": self._pass_count,
            "skipped": self._skipped,
            "errors": self._errors,
            "last_pass_ms": round(self._last_pass_ms, 1),
            "last_summary": self._last_summary,
        }
