import asyncio
from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from pydantic import ValidationError

from locate_engine.engine import build_engine
from locate_engine.models.alert import (
    AlertChannel,
    AlertPriority,
    AlertRule,
    AlertRuleTable,
    AlertType,
    RuleTrigger,
    SubscriptionScope,
    UserAlertPreferences,
    UserAlertRole,
)
from locate_engine.models.ticket import DigSite, ResponseType
from locate_engine.services.alert import (
    default_rule_table,
    load_rule_table,
    should_user_receive_alert,
)
from locate_engine.services.tickets import CreateTicket

from .conftest import MONDAY_9AM, NEW_YORK, gas_and_electric


async def alert_types(engine):
    return [a.alert_type for a in await engine.store.alerts.list_all()]


# =============================================================================
# Rule table
# =============================================================================

def test_default_table_puts_conflicts_first():
    table = default_rule_table()

    assert table.rules[0].alert_type == AlertType.CONFLICT
    assert table.rank(AlertType.HOURS_2) < table.rank(AlertType.HOURS_4) < table.rank(AlertType.HOURS_48)
    assert table.rank(AlertType.HOURS_2_EXPIRATION) < table.rank(AlertType.EXPIRING_SOON)
    assert {d.alert_type for d in table.digests} == {AlertType.DAILY_RADAR, AlertType.RENEWAL_REMINDER}


def test_rule_table_loaded_from_file(settings, tmp_path):
    table = AlertRuleTable(
        version="custom-1",
        rules=[
            AlertRule(
                alert_type=AlertType.HOURS_48,
                priority=AlertPriority.INFO,
                trigger=RuleTrigger.BEFORE_LEGAL_DIG,
                window_hours=72,
                floor_hours=24,
            ),
        ],
    )
    path = tmp_path / "rules.json"
    path.write_text(table.model_dump_json())

    loaded = load_rule_table(settings.model_copy(update={"alert_rules_path": path}))

    assert loaded.version == "custom-1"
    assert loaded.rules[0].window_hours == 72


def test_built_in_table_when_no_file(settings):
    assert load_rule_table(settings).version == default_rule_table().version


def test_windowed_rule_needs_a_window():
    with pytest.raises(ValidationError):
        AlertRule(
            alert_type=AlertType.HOURS_4,
            priority=AlertPriority.WARNING,
            trigger=RuleTrigger.BEFORE_LEGAL_DIG,
        )


def test_duplicate_alert_types_rejected():
    rule = AlertRule(
        alert_type=AlertType.SAME_DAY,
        priority=AlertPriority.WARNING,
        trigger=RuleTrigger.LEGAL_DIG_TODAY,
    )

    with pytest.raises(ValidationError):
        AlertRuleTable(version="bad", rules=[rule, rule])


# =============================================================================
# Recipient filtering
# =============================================================================

def test_quiet_mode_only_passes_critical():
    prefs = UserAlertPreferences(user_id=uuid4(), quiet_mode_enabled=True)

    assert should_user_receive_alert(prefs, AlertPriority.CRITICAL, AlertType.HOURS_2, MONDAY_9AM)
    assert not should_user_receive_alert(prefs, AlertPriority.WARNING, AlertType.SAME_DAY, MONDAY_9AM)
    assert not should_user_receive_alert(prefs, AlertPriority.INFO, AlertType.HOURS_48, MONDAY_9AM)


def test_quiet_mode_ends_at_quiet_mode_until():
    prefs = UserAlertPreferences(
        user_id=uuid4(),
        quiet_mode_enabled=True,
        quiet_mode_until=MONDAY_9AM - timedelta(minutes=1),
    )

    assert should_user_receive_alert(prefs, AlertPriority.INFO, AlertType.HOURS_48, MONDAY_9AM)


def test_always_alert_flags_pierce_quiet_mode():
    prefs = UserAlertPreferences(user_id=uuid4(), quiet_mode_enabled=True)

    assert should_user_receive_alert(prefs, AlertPriority.WARNING, AlertType.HOURS_4_EXPIRATION, MONDAY_9AM)

    prefs.always_alert_on_expired = False
    assert not should_user_receive_alert(prefs, AlertPriority.WARNING, AlertType.HOURS_4_EXPIRATION, MONDAY_9AM)


def test_every_expiry_alert_type_honours_always_alert_on_expired():
    prefs = UserAlertPreferences(user_id=uuid4(), quiet_mode_enabled=True)

    for alert_type in (AlertType.EXPIRING_SOON, AlertType.HOURS_2_EXPIRATION, AlertType.OVERDUE):
        assert should_user_receive_alert(prefs, AlertPriority.WARNING, alert_type, MONDAY_9AM)
    assert not should_user_receive_alert(prefs, AlertPriority.WARNING, AlertType.HOURS_4_UPDATE_BY, MONDAY_9AM)

    prefs.always_alert_on_expired = False
    assert not should_user_receive_alert(prefs, AlertPriority.WARNING, AlertType.EXPIRING_SOON, MONDAY_9AM)


def test_field_role_skips_info():
    prefs = UserAlertPreferences(user_id=uuid4(), alert_role=UserAlertRole.FIELD)

    assert should_user_receive_alert(prefs, AlertPriority.WARNING, AlertType.SAME_DAY, MONDAY_9AM)
    assert not should_user_receive_alert(prefs, AlertPriority.INFO, AlertType.HOURS_48, MONDAY_9AM)


def test_supervisor_override_wins():
    prefs = UserAlertPreferences(
        user_id=uuid4(),
        alert_role=UserAlertRole.FIELD,
        quiet_mode_enabled=True,
        override_expires_at=MONDAY_9AM + timedelta(hours=1),
    )

    assert should_user_receive_alert(prefs, AlertPriority.INFO, AlertType.ALL_CLEAR, MONDAY_9AM)


# =============================================================================
# Periodic sweep
# =============================================================================

@pytest.mark.asyncio
async def test_48_hour_alert_due_at_creation(engine, new_ticket):
    ticket = await new_ticket()

    due = await engine.list_due_alerts(MONDAY_9AM)

    assert [(d.ticket.id, d.alert_type) for d in due] == [(ticket.id, AlertType.HOURS_48)]
    assert due[0].occurrence_key == ticket.legal_dig_date.isoformat()


@pytest.mark.asyncio
async def test_24_hour_alert_the_day_before(engine, new_ticket):
    await new_ticket()
    await engine.run_sweep("alerts", now=MONDAY_9AM)

    due = await engine.list_due_alerts(datetime(2024, 3, 5, 10, 0, tzinfo=NEW_YORK))

    assert [d.alert_type for d in due] == [AlertType.HOURS_24]


@pytest.mark.asyncio
async def test_role_and_flags_filter_recipients(engine, new_ticket, subscribe, sink):
    office = await subscribe()
    await subscribe(prefs={"alert_role": UserAlertRole.FIELD})
    await subscribe(alert_48_hour=False)
    ticket = await new_ticket()

    await engine.run_sweep("alerts", now=MONDAY_9AM)

    alerts = await engine.store.alerts.list_for_ticket(ticket.id)
    assert len(alerts) == 1
    assert alerts[0].recipient_ids == [office.user_id]
    # 48_HOUR goes out by email only
    assert sink.channels() == [AlertChannel.EMAIL]
    assert sink.contracts[0].destination == office.email_address


@pytest.mark.asyncio
async def test_scope_and_county_filter_recipients(engine, new_ticket, subscribe):
    project_id = uuid4()
    in_project = await subscribe(scope=SubscriptionScope.PROJECT, project_id=project_id)
    await subscribe(scope=SubscriptionScope.PROJECT, project_id=uuid4())
    in_county = await subscribe(county="kanawha ")
    await subscribe(county="Boone")
    ticket = await new_ticket(project_id=project_id)

    await engine.run_sweep("alerts", now=MONDAY_9AM)

    alert = (await engine.store.alerts.list_for_ticket(ticket.id))[0]
    assert set(alert.recipient_ids) == {in_project.user_id, in_county.user_id}


@pytest.mark.asyncio
async def test_dispatch_budget_sends_most_urgent_first(settings, calendar, org_id):
    engine = build_engine(settings.model_copy(update={"max_dispatches_per_sweep": 1}), calendar=calendar)
    first, second = [
        await engine.create_ticket(
            CreateTicket(
                ticket_number=number,
                organization_id=org_id,
                dig_site=DigSite(address="1 Depot Rd"),
                utilities=gas_and_electric(),
            ),
            now=MONDAY_9AM,
        )
        for number in ("2410000001", "2410000002")
    ]
    hour_before_dig = first.legal_dig_date - timedelta(hours=1)

    await engine.run_sweep("alerts", now=hour_before_dig)
    assert await alert_types(engine) == [AlertType.HOURS_2]

    await engine.run_sweep("alerts", now=hour_before_dig)
    assert await alert_types(engine) == [AlertType.HOURS_2, AlertType.HOURS_2]

    await engine.run_sweep("alerts", now=hour_before_dig)
    assert (await alert_types(engine))[-1] == AlertType.SAME_DAY
    assert {a.ticket_id for a in await engine.store.alerts.list_all()} <= {first.id, second.id}


@pytest.mark.asyncio
async def test_cancelled_tickets_get_no_alerts(engine, new_ticket):
    ticket = await new_ticket()
    await engine.cancel_ticket(ticket.id, actor="office", now=MONDAY_9AM)

    assert await engine.list_due_alerts(MONDAY_9AM) == []


@pytest.mark.asyncio
async def test_high_risk_after_conflict(engine, new_ticket):
    ticket = await new_ticket()
    await engine.record_utility_response(ticket.id, "MNG", ResponseType.CONFLICT, now=MONDAY_9AM)

    due = await engine.list_due_alerts(MONDAY_9AM)

    high_risk = [d for d in due if d.alert_type == AlertType.HIGH_RISK]
    assert len(high_risk) == 1
    assert high_risk[0].occurrence_key == "score>=70"


@pytest.mark.asyncio
async def test_unverified_alert_after_window_lapses(engine, new_ticket):
    ticket = await new_ticket()

    await engine.run_sweep(now=ticket.response_window_closes_at + timedelta(hours=1))

    types = await alert_types(engine)
    assert AlertType.UNVERIFIED_RESPONSE in types
    assert AlertType.SAME_DAY in types


@pytest.mark.asyncio
async def test_overdue_for_clear_ticket_past_expiry(engine, new_ticket):
    ticket = await new_ticket()
    await engine.record_utility_response(ticket.id, "MNG", ResponseType.CLEAR, now=MONDAY_9AM)
    await engine.record_utility_response(ticket.id, "APCO", ResponseType.CLEAR, now=MONDAY_9AM)

    await engine.run_sweep(now=ticket.expires_at + timedelta(hours=1))

    assert AlertType.OVERDUE in await alert_types(engine)


@pytest.mark.asyncio
async def test_overdue_for_recently_expired_ticket(engine, new_ticket):
    ticket = await new_ticket()

    await engine.run_sweep(now=ticket.expires_at + timedelta(hours=1))

    overdue = [
        a for a in await engine.store.alerts.list_for_ticket(ticket.id)
        if a.alert_type == AlertType.OVERDUE
    ]
    assert len(overdue) == 1
    assert overdue[0].requires_explicit_ack


@pytest.mark.asyncio
async def test_no_overdue_outside_lookback(engine, new_ticket):
    ticket = await new_ticket()
    await engine.run_sweep("expiry", now=ticket.expires_at + timedelta(hours=1))

    due = await engine.list_due_alerts(ticket.expires_at + timedelta(hours=30))

    assert due == []


@pytest.mark.asyncio
async def test_overlapping_sweeps_send_each_alert_once(engine, new_ticket, subscribe, sink):
    await subscribe()
    tickets = [await new_ticket() for _ in range(3)]

    first, second = await asyncio.gather(
        engine.run_sweep("alerts", now=MONDAY_9AM),
        engine.run_sweep("alerts", now=MONDAY_9AM),
    )

    alerts = await engine.store.alerts.list_all()
    keys = [a.dedup_key for a in alerts]
    assert len(keys) == len(set(keys)) == len(tickets)
    assert first[0].emitted + second[0].emitted == len(tickets)
    assert len(sink.contracts) == len(tickets)

# =============================================================================
# Event rules
# =============================================================================

@pytest.mark.asyncio
async def test_conflict_alert_requires_acknowledgement(engine, new_ticket, subscribe):
    sub = await subscribe()
    ticket = await new_ticket()

    alert = await engine.record_utility_response(ticket.id, "MNG", ResponseType.CONFLICT, now=MONDAY_9AM)

    assert alert.alert_type == AlertType.CONFLICT
    assert alert.priority == AlertPriority.CRITICAL
    assert alert.requires_explicit_ack
    rows = await engine.store.acks.list_for_alert(alert.id)
    assert [r.user_id for r in rows] == [sub.user_id]


@pytest.mark.asyncio
async def test_all_clear_returned_after_last_response(engine, new_ticket, subscribe):
    await subscribe()
    ticket = await new_ticket()

    first = await engine.record_utility_response(ticket.id, "MNG", ResponseType.CLEAR, now=MONDAY_9AM)
    last = await engine.record_utility_response(ticket.id, "APCO", ResponseType.MARKED, now=MONDAY_9AM)

    assert first.alert_type == AlertType.RESPONSE_RECEIVED
    assert last.alert_type == AlertType.ALL_CLEAR


@pytest.mark.asyncio
async def test_remark_raises_another_response_alert(engine, new_ticket, subscribe):
    await subscribe()
    ticket = await new_ticket()

    first = await engine.record_utility_response(ticket.id, "MNG", ResponseType.MARKED, now=MONDAY_9AM)
    again = await engine.record_utility_response(
        ticket.id, "MNG", ResponseType.MARKED, now=MONDAY_9AM + timedelta(hours=2)
    )

    assert first.alert_type == again.alert_type == AlertType.RESPONSE_RECEIVED
    assert first.id != again.id
    assert (await alert_types(engine)).count(AlertType.RESPONSE_RECEIVED) == 2


@pytest.mark.asyncio
async def test_emergency_reaches_whole_organization(engine, new_ticket, subscribe, sink):
    other_project = await subscribe(scope=SubscriptionScope.PROJECT, project_id=uuid4())
    ticket = await new_ticket()

    alert = await engine.report_emergency(ticket.id, "foreman", "Struck a gas service line", now=MONDAY_9AM)

    assert alert.alert_type == AlertType.EMERGENCY
    assert alert.priority == AlertPriority.CRITICAL
    assert alert.recipient_ids == [other_project.user_id]
    assert len(await engine.store.acks.list_for_alert(alert.id)) == 1
    assert AlertChannel.EMAIL in sink.channels()


# =============================================================================
# Digests
# =============================================================================

@pytest.mark.asyncio
async def test_daily_radar_once_per_local_day(engine, new_ticket, subscribe):
    sub = await subscribe(daily_radar=True)
    await new_ticket()
    dig_day_7am = datetime(2024, 3, 6, 7, 0, tzinfo=NEW_YORK)

    first = await engine.run_sweep("digest", now=dig_day_7am)
    again = await engine.run_sweep("digest", now=dig_day_7am + timedelta(hours=1))

    assert first[0].emitted == 1
    assert again[0].emitted == 0
    radar = [a for a in await engine.store.alerts.list_all() if a.alert_type == AlertType.DAILY_RADAR]
    assert len(radar) == 1
    assert radar[0].user_id == sub.user_id
    assert radar[0].ticket_id is None
    assert "Working today" in radar[0].body


@pytest.mark.asyncio
async def test_daily_radar_waits_for_local_hour(engine, new_ticket, subscribe):
    await subscribe(daily_radar=True)
    await new_ticket()

    reports = await engine.run_sweep("digest", now=datetime(2024, 3, 6, 5, 0, tzinfo=NEW_YORK))

    assert reports[0].emitted == 0


@pytest.mark.asyncio
async def test_renewal_reminder_for_tickets_expiring_soon(engine, new_ticket, subscribe):
    await subscribe(renewal_reminder=True)
    ticket = await new_ticket()

    reports = await engine.run_sweep("digest", now=datetime(2024, 3, 18, 7, 30, tzinfo=NEW_YORK))

    assert reports[0].emitted == 1
    reminder = (await engine.store.alerts.list_all())[0]
    assert reminder.alert_type == AlertType.RENEWAL_REMINDER
    assert ticket.ticket_number in reminder.body
