"""
Locate Engine Sweep Helpers

Sweeps are stateless functions of (now, store):
- Fan-out bounded by an asyncio.Semaphore
- A failure on one ticket is logged and recorded, the rest continue
- SystemicError (store or calendar gone) aborts the whole sweep
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, List, Optional

from ..repositories import SystemicError


logger = logging.getLogger(__name__)


@dataclass
class SweepError:
    subject_id: str
    error: str


@dataclass
class SweepReport:
    """Counts for one sweep run."""
    kind: str
    started_at: datetime
    examined: int = 0
    changed: int = 0
    emitted: int = 0
    suppressed: int = 0
    failed_dispatches: int = 0
    errors: List[SweepError] = field(default_factory=list)
    aborted: bool = False
    abort_reason: Optional[str] = None

    def summary(self) -> str:
        text = (
            f"{self.kind} sweep: examined={self.examined} changed={self.changed} "
            f"emitted={self.emitted} suppressed={self.suppressed} "
            f"failed_dispatches={self.failed_dispatches} errors={len(self.errors)}"
        )
        if self.aborted:
            text = f"{text} ABORTED ({self.abort_reason})"
        return text


async def fan_out(
    items: Iterable[Any],
    worker: Callable[[Any], Awaitable[Any]],
    concurrency: int,
    report: SweepReport,
    describe: Callable[[Any], str] = lambda item: str(getattr(item, "id", item)),
    on_error: Optional[Callable[[Any, Exception], Awaitable[None]]] = None
) -> List[Any]:
    """
    Run worker over items with at most `concurrency` in flight.

    Returns worker results in input order (None where the worker failed).
    Raises the first SystemicError seen, after in-flight work settles.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))
    items = list(items)
    report.examined += len(items)

    async def run_one(item):
        async with semaphore:
            try:
                return await worker(item)
            except SystemicError:
                raise
            except Exception as exc:
                subject = describe(item)
                logger.exception("%s sweep failed for %s", report.kind, subject)
                report.errors.append(SweepError(subject_id=subject, error=str(exc)))
                if on_error is not None:
                    try:
                        await on_error(item, exc)
                    except SystemicError:
                        raise
                    except Exception:
                        logger.exception("Could not record failure for %s", subject)
                return None

    results = await asyncio.gather(*(run_one(item) for item in items), return_exceptions=True)

    # Only SystemicError (or cancellation) escapes run_one
    for result in results:
        if isinstance(result, BaseException):
            raise result
    return results
