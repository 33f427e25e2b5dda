from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from pydantic import ValidationError

from locate_engine.engine import build_engine
from locate_engine.models.ticket import (
    AuditEventType,
    DigSite,
    ResponseStatus,
    ResponseType,
    TicketStatus,
    UtilityType,
)
from locate_engine.services.calendar import DeadlineComputationError
from locate_engine.services.readiness import DigVerdict
from locate_engine.services.state_machine import InvalidTransition
from locate_engine.services.tickets import CreateTicket, UtilityListing

from .conftest import MONDAY_9AM, NEW_YORK, gas_and_electric


@pytest.mark.asyncio
async def test_create_stamps_deadlines_and_audits(engine, new_ticket):
    ticket = await new_ticket(requires_update_by=True)

    assert ticket.legal_dig_date == datetime(2024, 3, 6, 9, 0, tzinfo=NEW_YORK)
    assert ticket.update_by_date == datetime(2024, 3, 14, 9, 0, tzinfo=NEW_YORK)
    assert ticket.risk_score == 41

    events = await engine.get_timeline(ticket.id)
    assert [e.type for e in events[:2]] == [AuditEventType.TICKET_CREATED, AuditEventType.DEADLINES_STAMPED]
    assert events[0].actor == "intake"


@pytest.mark.asyncio
async def test_ticket_without_utilities_flagged_for_review(engine, new_ticket):
    ticket = await new_ticket(utilities=[])

    assert ticket.status == TicketStatus.RECEIVED
    assert ticket.needs_review
    assert ticket.review_reason == "No utilities listed on ticket"


@pytest.mark.asyncio
async def test_deadline_failure_holds_intake_for_review(settings, calendar, org_id):
    engine = build_engine(settings.model_copy(update={"notice_business_days": 0}), calendar=calendar)

    with pytest.raises(DeadlineComputationError) as failure:
        await engine.create_ticket(
            CreateTicket(
                ticket_number="2410000009",
                organization_id=org_id,
                dig_site=DigSite(address="x"),
                utilities=gas_and_electric(),
            ),
            now=MONDAY_9AM,
        )

    held = await engine.store.tickets.get(failure.value.ticket_id)
    assert held.ticket_number == "2410000009"
    assert held.status == TicketStatus.RECEIVED
    assert held.needs_review
    assert held.review_reason.startswith("Deadline computation failed: Notice period")
    assert held.legal_dig_date is None and held.expires_at is None
    assert await engine.store.responses.list_for_ticket(held.id) == []

    assert [t.id for t in await engine.list_tickets_for_review()] == [held.id]
    assert await engine.store.tickets.list_active() == []
    events = await engine.get_timeline(held.id)
    assert {e.type for e in events} >= {AuditEventType.TICKET_CREATED, AuditEventType.REVIEW_FLAGGED}

    status = await engine.get_ticket_status(held.id, now=MONDAY_9AM)
    assert status.needs_review
    assert status.readiness.verdict == DigVerdict.STOP
    assert status.expires_at is None


@pytest.mark.asyncio
async def test_held_intake_is_ignored_by_sweeps(settings, calendar, org_id):
    engine = build_engine(settings.model_copy(update={"notice_business_days": 0}), calendar=calendar)
    with pytest.raises(DeadlineComputationError):
        await engine.create_ticket(
            CreateTicket(ticket_number="1", organization_id=org_id, dig_site=DigSite(address="x")),
            now=MONDAY_9AM,
        )

    reports = await engine.run_sweep(now=MONDAY_9AM)

    assert not any(r.aborted or r.errors for r in reports)
    assert await engine.store.alerts.list_all() == []


def test_duplicate_utility_codes_rejected(org_id):
    with pytest.raises(ValidationError):
        CreateTicket(
            ticket_number="1",
            organization_id=org_id,
            dig_site=DigSite(address="x"),
            utilities=[UtilityListing(code="MNG", name="Gas"), UtilityListing(code="MNG", name="Gas again")],
        )


# =============================================================================
# "Can I dig?"
# =============================================================================

@pytest.mark.asyncio
async def test_stop_before_legal_dig_date(engine, new_ticket):
    ticket = await new_ticket()
    await engine.record_utility_response(ticket.id, "MNG", ResponseType.CLEAR, now=MONDAY_9AM)
    await engine.record_utility_response(ticket.id, "APCO", ResponseType.CLEAR, now=MONDAY_9AM)

    status = await engine.get_ticket_status(ticket.id, now=MONDAY_9AM + timedelta(hours=1))

    assert status.status == TicketStatus.CLEAR
    assert status.readiness.verdict == DigVerdict.STOP


@pytest.mark.asyncio
async def test_warning_while_utilities_outstanding(engine, new_ticket):
    ticket = await new_ticket()
    await engine.record_utility_response(ticket.id, "APCO", ResponseType.CLEAR, now=MONDAY_9AM)

    status = await engine.get_ticket_status(ticket.id, now=ticket.legal_dig_date + timedelta(hours=1))

    assert status.readiness.verdict == DigVerdict.WARNING
    assert status.readiness.issues == ["Mountaineer Gas (PENDING)"]


@pytest.mark.asyncio
async def test_caution_until_gas_marks_verified(engine, new_ticket):
    ticket = await new_ticket()
    await engine.record_utility_response(ticket.id, "MNG", ResponseType.MARKED, now=MONDAY_9AM)
    await engine.record_utility_response(ticket.id, "APCO", ResponseType.CLEAR, now=MONDAY_9AM)
    dig_time = ticket.legal_dig_date + timedelta(hours=1)

    before = await engine.get_ticket_status(ticket.id, now=dig_time)
    await engine.record_field_verification(ticket.id, "MNG", uuid4(), marks_match=True, now=dig_time)
    after = await engine.get_ticket_status(ticket.id, now=dig_time)

    assert before.readiness.verdict == DigVerdict.CAUTION
    assert after.readiness.verdict == DigVerdict.CLEAR
    gas = next(r for r in after.responses if r.utility_code == "MNG")
    assert gas.response_status == ResponseStatus.VERIFIED_ON_SITE


@pytest.mark.asyncio
async def test_stop_after_expiry(engine, new_ticket):
    ticket = await new_ticket()

    status = await engine.get_ticket_status(ticket.id, now=ticket.expires_at)

    assert status.readiness.verdict == DigVerdict.STOP
    assert "expired" in status.readiness.reason


@pytest.mark.asyncio
async def test_live_risk_in_status_view(engine, new_ticket):
    ticket = await new_ticket()

    status = await engine.get_ticket_status(ticket.id, now=ticket.expires_at - timedelta(hours=3))

    # 25 utility + 16 excavation + 18 expiry + 5 dig pressure + 15 unanswered
    assert status.risk_score == 79
    assert ticket.risk_score == 41


# =============================================================================
# Renewal and cancellation
# =============================================================================

@pytest.mark.asyncio
async def test_renewal_is_a_new_linked_ticket(engine, new_ticket):
    parent = await new_ticket(ticket_number="2410040001")
    renew_at = datetime(2024, 3, 19, 10, 0, tzinfo=NEW_YORK)

    renewal = await engine.renew_ticket(parent.id, actor="office", now=renew_at)

    assert renewal.id != parent.id
    assert renewal.ticket_number == "2410040001-R1"
    assert renewal.parent_ticket_id == parent.id
    assert renewal.renewal_number == 1
    assert renewal.status == TicketStatus.PENDING
    assert renewal.legal_dig_date == datetime(2024, 3, 21, 10, 0, tzinfo=NEW_YORK)

    responses = await engine.store.responses.list_for_ticket(renewal.id)
    assert {(r.utility_code, r.utility_type) for r in responses} == {
        ("MNG", UtilityType.GAS), ("APCO", UtilityType.ELECTRIC),
    }
    assert {r.response_status for r in responses} == {ResponseStatus.PENDING}

    # Parent keeps its own lifecycle
    assert (await engine.store.tickets.get(parent.id)).status == TicketStatus.PENDING
    renewed = await engine.get_timeline(parent.id, [AuditEventType.RENEWED])
    assert renewed[0].data["renewal_ticket_id"] == str(renewal.id)


@pytest.mark.asyncio
async def test_second_renewal_numbering(engine, new_ticket):
    parent = await new_ticket(ticket_number="2410040002")
    first = await engine.renew_ticket(parent.id, actor="office", now=MONDAY_9AM)

    second = await engine.renew_ticket(first.id, actor="office", now=MONDAY_9AM)

    assert second.ticket_number == "2410040002-R1-R2"
    assert second.renewal_number == 2


@pytest.mark.asyncio
async def test_cancelled_ticket_cannot_be_renewed(engine, new_ticket):
    ticket = await new_ticket()
    await engine.cancel_ticket(ticket.id, actor="office", now=MONDAY_9AM)

    with pytest.raises(InvalidTransition):
        await engine.renew_ticket(ticket.id, actor="office", now=MONDAY_9AM)


@pytest.mark.asyncio
async def test_cancel_is_terminal(engine, new_ticket):
    ticket = await new_ticket()

    cancelled = await engine.cancel_ticket(ticket.id, actor="office", reason="Duplicate", now=MONDAY_9AM)

    assert cancelled.status == TicketStatus.CANCELLED
    with pytest.raises(InvalidTransition):
        await engine.cancel_ticket(ticket.id, actor="office", now=MONDAY_9AM)
