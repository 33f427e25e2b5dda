import asyncio
import logging

import pytest

from locate_engine.engine import SWEEP_KINDS
from locate_engine.models.ticket import TicketStatus
from locate_engine.repositories import StoreUnavailableError
from locate_engine.worker import SweepRunner, sweep_intervals

from .conftest import MONDAY_9AM


@pytest.mark.asyncio
async def test_full_sweep_runs_every_kind_in_order(engine):
    reports = await engine.run_sweep(now=MONDAY_9AM)

    assert [r.kind for r in reports] == ["expiry", "response_window", "alerts", "escalation", "digest"]
    assert not any(r.aborted for r in reports)


@pytest.mark.asyncio
async def test_unknown_sweep_kind_rejected(engine):
    with pytest.raises(ValueError):
        await engine.run_sweep("payroll", now=MONDAY_9AM)


@pytest.mark.asyncio
async def test_expiry_sweep_expires_due_tickets(engine, new_ticket):
    ticket = await new_ticket()

    reports = await engine.run_sweep("expiry", now=ticket.expires_at)

    assert reports[0].kind == "expiry"
    assert reports[0].changed == 1
    assert (await engine.store.tickets.get(ticket.id)).status == TicketStatus.EXPIRED


@pytest.mark.asyncio
async def test_store_outage_aborts_every_sweep(engine, new_ticket):
    await new_ticket()
    engine.store.set_available(False)

    reports = await engine.run_sweep(now=MONDAY_9AM)

    assert all(r.aborted for r in reports)
    assert all(r.emitted == 0 for r in reports)

    engine.store.set_available(True)
    recovered = await engine.run_sweep("alerts", now=MONDAY_9AM)
    assert not recovered[0].aborted


@pytest.mark.asyncio
async def test_store_outage_surfaces_on_direct_calls(engine, new_ticket):
    ticket = await new_ticket()
    engine.store.set_available(False)

    with pytest.raises(StoreUnavailableError):
        await engine.get_ticket_status(ticket.id, now=MONDAY_9AM)


# =============================================================================
# Worker
# =============================================================================

def test_intervals_come_from_settings(settings):
    intervals = sweep_intervals(settings)

    assert set(intervals) == set(SWEEP_KINDS)
    assert intervals["escalation"] == settings.escalation_sweep_interval_seconds


@pytest.mark.asyncio
async def test_run_once_logs_aborted_sweeps(engine, caplog):
    engine.store.set_available(False)
    runner = SweepRunner(engine)

    with caplog.at_level(logging.WARNING, logger="locate_engine.worker"):
        await runner.run_once("alerts")

    assert "alerts sweep will retry next interval" in caplog.text


@pytest.mark.asyncio
async def test_runner_loops_until_stopped(engine):
    runner = SweepRunner(engine, intervals={kind: 0.01 for kind in SWEEP_KINDS})

    task = asyncio.create_task(runner.run())
    await asyncio.sleep(0.05)
    runner.stop()
    await asyncio.wait_for(task, timeout=1)

    assert task.done()
    assert task.exception() is None
