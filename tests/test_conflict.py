import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from locate_engine.models.ticket import (
    AuditEventType,
    ConflictReason,
    ConflictResolutionType,
    ResponseEvidence,
    ResponseStatus,
    ResponseType,
    TicketStatus,
    UtilityType,
)
from locate_engine.repositories import ConcurrentUpdateError
from locate_engine.services.conflict import conflict_fingerprint
from locate_engine.services.state_machine import InvalidTransition

from .conftest import MONDAY_9AM


@pytest.mark.asyncio
async def test_utility_reported_conflict(engine, new_ticket):
    ticket = await new_ticket()

    await engine.record_utility_response(
        ticket.id, "MNG", ResponseType.CONFLICT,
        evidence=ResponseEvidence(notes="Main runs under the bore path"),
        now=MONDAY_9AM,
    )

    conflicts = await engine.resolver.open_conflicts(ticket.id)
    assert len(conflicts) == 1
    assert conflicts[0].reason == ConflictReason.UTILITY_REPORTED
    assert "bore path" in conflicts[0].detail
    assert (await engine.store.tickets.get(ticket.id)).status == TicketStatus.CONFLICT

    detected = await engine.get_timeline(ticket.id, [AuditEventType.CONFLICT_DETECTED])
    assert len(detected) == 1


@pytest.mark.asyncio
async def test_detection_does_not_duplicate(engine, new_ticket):
    ticket = await new_ticket()
    await engine.record_utility_response(ticket.id, "MNG", ResponseType.CONFLICT, now=MONDAY_9AM)

    assert await engine.resolver.detect(ticket.id, MONDAY_9AM) == []
    assert len(await engine.resolver.open_conflicts(ticket.id)) == 1


@pytest.mark.asyncio
async def test_clear_contradicted_by_observed_facilities(engine, new_ticket):
    ticket = await new_ticket()
    await engine.record_utility_response(ticket.id, "APCO", ResponseType.CLEAR, now=MONDAY_9AM)

    await engine.record_utility_response(
        ticket.id, "MNG", ResponseType.MARKED,
        evidence=ResponseEvidence(
            marking_colors=["yellow"],
            observed_facility_types=[UtilityType.ELECTRIC],
            photo_refs=["photo-1"],
        ),
        now=MONDAY_9AM,
    )

    conflicts = await engine.resolver.open_conflicts(ticket.id)
    assert [c.reason for c in conflicts] == [ConflictReason.CONTRADICTORY_MARKS]
    assert conflicts[0].evidence_refs == ["photo-1"]
    assert (await engine.store.tickets.get(ticket.id)).status == TicketStatus.CONFLICT


@pytest.mark.asyncio
async def test_resolution_returns_ticket_to_derived_status(engine, new_ticket):
    ticket = await new_ticket()
    await engine.record_utility_response(ticket.id, "MNG", ResponseType.CONFLICT, now=MONDAY_9AM)
    conflict = (await engine.resolver.open_conflicts(ticket.id))[0]

    await engine.resolve_conflict(
        conflict.id, uuid4(), ConflictResolutionType.CLEARED, notes="Relocated bore", now=MONDAY_9AM
    )

    status = await engine.get_ticket_status(ticket.id, now=MONDAY_9AM)
    assert status.status == TicketStatus.IN_PROGRESS
    assert status.open_conflicts == 0
    gas = next(r for r in status.responses if r.utility_code == "MNG")
    assert gas.response_status == ResponseStatus.CLEAR


@pytest.mark.asyncio
async def test_marks_verified_resolution_clears_ticket(engine, new_ticket):
    ticket = await new_ticket()
    await engine.record_utility_response(ticket.id, "APCO", ResponseType.CLEAR, now=MONDAY_9AM)
    await engine.record_utility_response(
        ticket.id, "MNG", ResponseType.MARKED,
        evidence=ResponseEvidence(observed_facility_types=[UtilityType.ELECTRIC]),
        now=MONDAY_9AM,
    )
    conflict = (await engine.resolver.open_conflicts(ticket.id))[0]

    result = await engine.resolve_conflict(
        conflict.id, uuid4(), ConflictResolutionType.MARKS_VERIFIED, now=MONDAY_9AM
    )

    assert result.ticket.status == TicketStatus.CLEAR
    responses = await engine.store.responses.list_for_ticket(ticket.id)
    assert {r.response_status for r in responses} == {ResponseStatus.VERIFIED_ON_SITE}
    assert await engine.resolver.open_conflicts(ticket.id) == []


@pytest.mark.asyncio
async def test_field_mismatch_on_closed_ticket_rejected(engine, new_ticket):
    ticket = await new_ticket()
    await engine.cancel_ticket(ticket.id, actor="office", now=MONDAY_9AM)

    with pytest.raises(InvalidTransition):
        await engine.record_field_verification(
            ticket.id, "MNG", uuid4(), marks_match=False, now=MONDAY_9AM
        )


@pytest.mark.asyncio
async def test_fingerprint_depends_on_reason_and_material(engine, new_ticket):
    ticket = await new_ticket()
    responses = await engine.store.responses.list_for_ticket(ticket.id)

    reported = conflict_fingerprint(ConflictReason.UTILITY_REPORTED, responses)

    assert reported == conflict_fingerprint(ConflictReason.UTILITY_REPORTED, list(reversed(responses)))
    assert reported != conflict_fingerprint(ConflictReason.CONTRADICTORY_MARKS, responses)
    assert reported != conflict_fingerprint(ConflictReason.UTILITY_REPORTED, responses, {"notes": "x"})
    assert reported == conflict_fingerprint(
        ConflictReason.UTILITY_REPORTED,
        [r.model_copy(update={"responded_at": MONDAY_9AM}) for r in responses],
    )


@pytest.mark.asyncio
async def test_remark_with_same_evidence_keeps_one_conflict(engine, new_ticket):
    ticket = await new_ticket()
    evidence = ResponseEvidence(
        marking_colors=["red"],
        observed_facility_types=[UtilityType.GAS],
        photo_refs=["photo-7"],
    )
    await engine.record_utility_response(ticket.id, "MNG", ResponseType.CLEAR, now=MONDAY_9AM)
    await engine.record_utility_response(ticket.id, "APCO", ResponseType.MARKED, evidence=evidence, now=MONDAY_9AM)
    assert len(await engine.resolver.open_conflicts(ticket.id)) == 1

    await engine.record_utility_response(
        ticket.id, "APCO", ResponseType.MARKED,
        evidence=evidence,
        now=MONDAY_9AM + timedelta(hours=1),
    )

    conflicts = await engine.resolver.open_conflicts(ticket.id)
    assert [c.reason for c in conflicts] == [ConflictReason.CONTRADICTORY_MARKS]
    detected = await engine.get_timeline(ticket.id, [AuditEventType.CONFLICT_DETECTED])
    assert len(detected) == 1


@pytest.mark.asyncio
async def test_remark_with_new_photos_keeps_one_conflict(engine, new_ticket):
    ticket = await new_ticket()
    await engine.record_utility_response(ticket.id, "MNG", ResponseType.CLEAR, now=MONDAY_9AM)
    await engine.record_utility_response(
        ticket.id, "APCO", ResponseType.MARKED,
        evidence=ResponseEvidence(observed_facility_types=[UtilityType.GAS], photo_refs=["photo-1"]),
        now=MONDAY_9AM,
    )

    await engine.record_utility_response(
        ticket.id, "APCO", ResponseType.MARKED,
        evidence=ResponseEvidence(observed_facility_types=[UtilityType.GAS], photo_refs=["photo-2"]),
        now=MONDAY_9AM + timedelta(hours=2),
    )

    assert len(await engine.resolver.open_conflicts(ticket.id)) == 1


@pytest.mark.asyncio
async def test_conflict_reply_after_resolution_is_a_new_conflict(engine, new_ticket):
    ticket = await new_ticket()
    await engine.record_utility_response(ticket.id, "MNG", ResponseType.CONFLICT, now=MONDAY_9AM)
    first = (await engine.resolver.open_conflicts(ticket.id))[0]
    await engine.resolve_conflict(first.id, uuid4(), ConflictResolutionType.CLEARED, now=MONDAY_9AM)

    await engine.record_utility_response(
        ticket.id, "MNG", ResponseType.CONFLICT,
        evidence=ResponseEvidence(notes="Second main found"),
        now=MONDAY_9AM + timedelta(hours=3),
    )

    reopened = await engine.resolver.open_conflicts(ticket.id)
    assert len(reopened) == 1
    assert reopened[0].id != first.id
    assert len(await engine.store.conflicts.list_for_ticket(ticket.id)) == 2


# =============================================================================
# Concurrent resolution
# =============================================================================

@pytest.mark.asyncio
async def test_stale_conflict_save_rejected(engine, new_ticket):
    ticket = await new_ticket()
    await engine.record_utility_response(ticket.id, "MNG", ResponseType.CONFLICT, now=MONDAY_9AM)
    conflict = (await engine.resolver.open_conflicts(ticket.id))[0]
    stale = await engine.store.conflicts.get(conflict.id)

    await engine.resolve_conflict(conflict.id, uuid4(), ConflictResolutionType.CLEARED, now=MONDAY_9AM)

    stale.resolution_notes = "late write"
    with pytest.raises(ConcurrentUpdateError):
        await engine.store.conflicts.save(stale)


@pytest.mark.asyncio
async def test_resolver_that_loses_the_race_writes_nothing(engine, new_ticket, monkeypatch):
    ticket = await new_ticket()
    await engine.record_utility_response(ticket.id, "MNG", ResponseType.CONFLICT, now=MONDAY_9AM)
    conflict = (await engine.resolver.open_conflicts(ticket.id))[0]
    stale = await engine.store.conflicts.get(conflict.id)
    await engine.resolve_conflict(conflict.id, uuid4(), ConflictResolutionType.CLEARED, now=MONDAY_9AM)

    async def stale_get(conflict_id):
        return stale.model_copy(deep=True)

    monkeypatch.setattr(engine.resolver.conflicts, "get", stale_get)
    result = await engine.resolve_conflict(
        conflict.id, uuid4(), ConflictResolutionType.MARKS_VERIFIED, now=MONDAY_9AM
    )

    assert result.ticket.status == TicketStatus.IN_PROGRESS
    resolved = await engine.get_timeline(ticket.id, [AuditEventType.CONFLICT_RESOLVED])
    assert len(resolved) == 1
    stored = await engine.store.conflicts.get(conflict.id)
    assert stored.resolution_type == ConflictResolutionType.CLEARED


@pytest.mark.asyncio
async def test_concurrent_resolutions_record_one_resolution(engine, new_ticket):
    ticket = await new_ticket()
    await engine.record_utility_response(ticket.id, "MNG", ResponseType.CONFLICT, now=MONDAY_9AM)
    conflict = (await engine.resolver.open_conflicts(ticket.id))[0]

    await asyncio.gather(
        engine.resolve_conflict(conflict.id, uuid4(), ConflictResolutionType.CLEARED, now=MONDAY_9AM),
        engine.resolve_conflict(conflict.id, uuid4(), ConflictResolutionType.CLEARED, now=MONDAY_9AM),
    )

    resolved = await engine.get_timeline(ticket.id, [AuditEventType.CONFLICT_RESOLVED])
    assert len(resolved) == 1
    assert await engine.resolver.open_conflicts(ticket.id) == []
