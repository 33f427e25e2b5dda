"""
Locate Engine Sweep Worker

One asyncio loop per sweep kind, each at its own interval:
- expiry      (at least hourly)
- alerts      (every few minutes)
- escalation  (every minute)
- digest      (every 15 minutes; sends once per user per local day)

No run state is kept between iterations. Idempotency comes from the
alert and escalation rows already in the store.

Run with:
    python -m locate_engine.worker
"""

import asyncio
import logging
from typing import Dict, Optional

from .config import Settings, configure_logging, get_settings
from .engine import SWEEP_KINDS, LocateEngine, build_engine


logger = logging.getLogger(__name__)


def sweep_intervals(settings: Settings) -> Dict[str, int]:
    return {
        "expiry": settings.expiry_sweep_interval_seconds,
        "alerts": settings.alert_sweep_interval_seconds,
        "escalation": settings.escalation_sweep_interval_seconds,
        "digest": settings.digest_sweep_interval_seconds,
    }


class SweepRunner:
    """Runs every sweep kind on its own timer until stopped."""

    def __init__(self, engine: LocateEngine, intervals: Optional[Dict[str, int]] = None):
        self.engine = engine
        self.intervals = intervals or sweep_intervals(engine.settings)
        self._stopping = asyncio.Event()

    async def run_once(self, kind: str) -> None:
        for report in await self.engine.run_sweep(kind):
            if report.aborted:
                logger.warning("%s sweep will retry next interval", report.kind)

    async def run(self) -> None:
        logger.info(
            "Sweep worker started (%s)",
            ", ".join(f"{kind} every {self.intervals[kind]}s" for kind in SWEEP_KINDS),
        )
        await asyncio.gather(*(self._loop(kind) for kind in SWEEP_KINDS))
        logger.info("Sweep worker stopped")

    def stop(self) -> None:
        self._stopping.set()

    async def _loop(self, kind: str) -> None:
        interval = self.intervals[kind]
        while not self._stopping.is_set():
            try:
                await self.run_once(kind)
            except Exception:
                logger.exception("%s sweep crashed; retrying in %ss", kind, interval)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass


def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    runner = SweepRunner(build_engine(settings))
    try:
        asyncio.run(runner.run())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
