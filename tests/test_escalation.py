from datetime import timedelta
from uuid import uuid4

import logging

import pytest

from locate_engine.models.alert import AckAction, AckOutcome, AckStatus, AlertChannel, AlertStatus, AlertType
from locate_engine.models.ticket import AuditEventType, ResponseType

from .conftest import MONDAY_9AM


AFTER_DEADLINE = MONDAY_9AM + timedelta(minutes=16)


@pytest.fixture
def conflict_alert(engine, new_ticket):
    """Factory: ticket whose gas utility reports a conflict at Monday 09:00."""

    async def create():
        ticket = await new_ticket()
        alert = await engine.record_utility_response(ticket.id, "MNG", ResponseType.CONFLICT, now=MONDAY_9AM)
        assert alert.alert_type == AlertType.CONFLICT
        return ticket, alert

    return create


@pytest.mark.asyncio
async def test_unacknowledged_alert_escalates_once(engine, subscribe, conflict_alert):
    supervisor_id = uuid4()
    crew = await subscribe(prefs={"supervisor_id": supervisor_id})
    ticket, alert = await conflict_alert()

    first = await engine.run_sweep("escalation", now=AFTER_DEADLINE)
    second = await engine.run_sweep("escalation", now=AFTER_DEADLINE + timedelta(minutes=5))

    assert (first[0].changed, first[0].emitted) == (1, 1)
    assert (second[0].changed, second[0].emitted) == (0, 0)

    escalations = [
        a for a in await engine.store.alerts.list_for_ticket(ticket.id)
        if a.alert_type == AlertType.ESCALATION
    ]
    assert len(escalations) == 1
    assert escalations[0].escalated_from_alert_id == alert.id
    assert escalations[0].recipient_ids == [supervisor_id]

    row = await engine.store.acks.find(alert.id, crew.user_id)
    assert row.status == AckStatus.ESCALATED
    assert row.escalated_to == [supervisor_id]
    assert row.escalation_alert_id == escalations[0].id
    assert len(await engine.get_timeline(ticket.id, [AuditEventType.ESCALATED])) == 1


@pytest.mark.asyncio
async def test_escalation_contact_used_without_supervisor(engine, subscribe, conflict_alert, sink):
    await subscribe()
    manager = await subscribe(escalation_contact=True, alert_conflict=False)
    ticket, alert = await conflict_alert()

    await engine.run_sweep("escalation", now=AFTER_DEADLINE)

    escalation = next(
        a for a in await engine.store.alerts.list_for_ticket(ticket.id)
        if a.alert_type == AlertType.ESCALATION
    )
    assert escalation.recipient_ids == [manager.user_id]
    assert any(
        c.alert_type == AlertType.ESCALATION and c.destination == manager.email_address
        for c in sink.contracts
    )


@pytest.mark.asyncio
async def test_no_escalation_before_deadline(engine, subscribe, conflict_alert):
    await subscribe(prefs={"supervisor_id": uuid4()})
    await conflict_alert()

    reports = await engine.run_sweep("escalation", now=MONDAY_9AM + timedelta(minutes=14))

    assert reports[0].emitted == 0


@pytest.mark.asyncio
async def test_acknowledged_alert_does_not_escalate(engine, subscribe, conflict_alert):
    crew = await subscribe(prefs={"supervisor_id": uuid4()})
    _, alert = await conflict_alert()

    first = await engine.acknowledge_alert(
        alert.id, crew.user_id, action=AckAction.STOP_WORK, now=MONDAY_9AM + timedelta(minutes=5)
    )
    repeat = await engine.acknowledge_alert(alert.id, crew.user_id, now=MONDAY_9AM + timedelta(minutes=6))
    reports = await engine.run_sweep("escalation", now=AFTER_DEADLINE)

    assert first == AckOutcome.OK
    assert repeat == AckOutcome.ALREADY_ACKNOWLEDGED
    assert reports[0].emitted == 0
    row = await engine.store.acks.find(alert.id, crew.user_id)
    assert row.acknowledged_action == AckAction.STOP_WORK


@pytest.mark.asyncio
async def test_late_acknowledgement_still_recorded(engine, subscribe, conflict_alert):
    crew = await subscribe(prefs={"supervisor_id": uuid4()})
    ticket, alert = await conflict_alert()
    await engine.run_sweep("escalation", now=AFTER_DEADLINE)

    outcome = await engine.acknowledge_alert(alert.id, crew.user_id, now=AFTER_DEADLINE + timedelta(minutes=1))

    assert outcome == AckOutcome.OK
    assert (await engine.store.acks.find(alert.id, crew.user_id)).status == AckStatus.ACKNOWLEDGED
    acked = await engine.get_timeline(ticket.id, [AuditEventType.ACKNOWLEDGED])
    assert acked[-1].data["after_escalation"] is True


@pytest.mark.asyncio
async def test_cancelling_ticket_supersedes_pending_acknowledgements(engine, subscribe, conflict_alert):
    crew = await subscribe(prefs={"supervisor_id": uuid4()})
    ticket, alert = await conflict_alert()

    await engine.cancel_ticket(ticket.id, actor="office", reason="Job lost", now=MONDAY_9AM + timedelta(minutes=2))
    reports = await engine.run_sweep("escalation", now=AFTER_DEADLINE)
    outcome = await engine.acknowledge_alert(alert.id, crew.user_id, now=AFTER_DEADLINE)

    assert reports[0].emitted == 0
    assert outcome == AckOutcome.EXPIRED
    assert (await engine.store.acks.find(alert.id, crew.user_id)).status == AckStatus.SUPERSEDED


@pytest.mark.asyncio
async def test_opened_and_delivered_do_not_count_as_acknowledged(engine, subscribe, conflict_alert):
    crew = await subscribe(prefs={"supervisor_id": uuid4()})
    _, alert = await conflict_alert()

    row = await engine.mark_alert_opened(alert.id, crew.user_id, now=MONDAY_9AM + timedelta(minutes=1))
    reports = await engine.run_sweep("escalation", now=AFTER_DEADLINE)

    assert row.status == AckStatus.OPENED
    assert reports[0].emitted == 1


@pytest.mark.asyncio
async def test_acknowledgement_from_non_recipient(engine, new_ticket):
    ticket = await new_ticket()
    alert = await engine.record_utility_response(ticket.id, "MNG", ResponseType.CONFLICT, now=MONDAY_9AM)
    onlooker = uuid4()

    outcome = await engine.acknowledge_alert(alert.id, onlooker, now=MONDAY_9AM)

    assert outcome == AckOutcome.OK
    row = await engine.store.acks.find(alert.id, onlooker)
    assert row.requires_explicit_ack is False
    assert AlertChannel.EMAIL in row.sent_via


# =============================================================================
# Alerts that reach nobody
# =============================================================================

async def escalations_for(engine, ticket_id):
    return [
        a for a in await engine.store.alerts.list_for_ticket(ticket_id)
        if a.alert_type == AlertType.ESCALATION
    ]


@pytest.mark.asyncio
async def test_conflict_with_no_recipients_escalates_at_once(engine, subscribe, conflict_alert):
    manager = await subscribe(escalation_contact=True, alert_conflict=False)

    ticket, alert = await conflict_alert()

    assert alert.status == AlertStatus.FAILED
    assert alert.recipient_ids == []
    escalations = await escalations_for(engine, ticket.id)
    assert len(escalations) == 1
    assert escalations[0].escalated_from_alert_id == alert.id
    assert escalations[0].recipient_ids == [manager.user_id]
    escalated = await engine.get_timeline(ticket.id, [AuditEventType.ESCALATED])
    assert escalated[0].data["escalated_to"] == [str(manager.user_id)]

    later = await engine.run_sweep("escalation", now=MONDAY_9AM + timedelta(hours=2))
    assert later[0].emitted == 0
    assert len(await escalations_for(engine, ticket.id)) == 1


@pytest.mark.asyncio
async def test_conflict_whose_deliveries_all_fail_escalates_at_once(engine, subscribe, conflict_alert, sink):
    crew = await subscribe(channel_in_app=False)
    manager = await subscribe(escalation_contact=True, alert_conflict=False)
    sink.failures = 100

    ticket, alert = await conflict_alert()

    assert alert.recipient_ids == [crew.user_id]
    assert alert.status == AlertStatus.FAILED
    escalations = await escalations_for(engine, ticket.id)
    assert [e.recipient_ids for e in escalations] == [[manager.user_id]]
    row = await engine.store.acks.find(alert.id, crew.user_id)
    assert row.status == AckStatus.ESCALATED
    assert row.escalation_reason == "Delivery failed to every recipient"
    assert row.escalation_alert_id == escalations[0].id

    reports = await engine.run_sweep("escalation", now=AFTER_DEADLINE)
    assert reports[0].emitted == 0


@pytest.mark.asyncio
async def test_unreachable_alert_without_escalation_contact_is_logged(engine, conflict_alert, caplog):
    with caplog.at_level(logging.ERROR, logger="locate_engine.services.escalation"):
        ticket, alert = await conflict_alert()

    assert await escalations_for(engine, ticket.id) == []
    assert "no escalation contact is configured" in caplog.text
    assert str(alert.id) in caplog.text


@pytest.mark.asyncio
async def test_delivered_conflict_waits_for_the_deadline(engine, subscribe, conflict_alert):
    await subscribe()
    await subscribe(escalation_contact=True, alert_conflict=False)

    ticket, _ = await conflict_alert()

    assert await escalations_for(engine, ticket.id) == []
