"""Pytest configuration and shared fixtures."""

from datetime import datetime
from typing import List, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo

import pytest

from locate_engine.config import Settings
from locate_engine.engine import build_engine
from locate_engine.models.alert import AlertChannel, AlertSubscription, UserAlertPreferences
from locate_engine.models.ticket import DigSite, UtilityType, WorkType
from locate_engine.services.calendar import BusinessCalendar
from locate_engine.services.dispatch import AlertContract, DeliveryReceipt, ReceiptStatus, TransportError
from locate_engine.services.tickets import CreateTicket, UtilityListing


NEW_YORK = ZoneInfo("America/New_York")

# No holidays that week; keeps the arithmetic readable
MONDAY_9AM = datetime(2024, 3, 4, 9, 0, tzinfo=NEW_YORK)


class RecordingSink:
    """Transport double that records every contract it is handed."""

    def __init__(self, failures: int = 0, receipt_status: ReceiptStatus = ReceiptStatus.DELIVERED):
        self.contracts: List[AlertContract] = []
        self.failures = failures
        self.receipt_status = receipt_status
        self.calls = 0

    async def send(self, contract: AlertContract) -> DeliveryReceipt:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransportError("provider unavailable")
        self.contracts.append(contract)
        return DeliveryReceipt(status=self.receipt_status, provider_message_id=f"msg-{self.calls}")

    def channels(self) -> List[AlertChannel]:
        return [c.channel for c in self.contracts]


def gas_and_electric() -> List[UtilityListing]:
    return [
        UtilityListing(code="MNG", name="Mountaineer Gas", utility_type=UtilityType.GAS),
        UtilityListing(code="APCO", name="Appalachian Power", utility_type=UtilityType.ELECTRIC),
    ]


@pytest.fixture
def settings() -> Settings:
    """Settings with no holiday data, business-day validity and instant retries.

    Returns:
        Settings: Isolated from the process environment file
    """
    return Settings(
        _env_file=None,
        holiday_country=None,
        holiday_subdivision=None,
        validity_in_business_days=True,
        dispatch_backoff_seconds=0,
        dispatch_backoff_max_seconds=0,
        dispatch_timeout_seconds=1,
    )


@pytest.fixture
def calendar() -> BusinessCalendar:
    return BusinessCalendar("America/New_York", country=None)


@pytest.fixture
def monday_9am() -> datetime:
    return MONDAY_9AM


@pytest.fixture
def org_id():
    return uuid4()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def engine(settings, calendar, sink):
    """Engine over an in-memory store with one recording sink per channel."""
    return build_engine(
        settings,
        sinks={
            AlertChannel.EMAIL: sink,
            AlertChannel.SMS: sink,
            AlertChannel.PUSH: sink,
        },
        calendar=calendar,
    )


@pytest.fixture
def new_ticket(engine, org_id):
    """Factory creating a gas + electric ticket at Monday 09:00 by default."""

    async def create(
        ticket_number: Optional[str] = None,
        utilities: Optional[List[UtilityListing]] = None,
        now: datetime = MONDAY_9AM,
        **fields
    ):
        request = CreateTicket(
            ticket_number=ticket_number or f"2410{uuid4().hex[:6]}",
            organization_id=fields.pop("organization_id", org_id),
            dig_site=fields.pop("dig_site", DigSite(address="12 Main St", city="Charleston", county="Kanawha")),
            work_type=fields.pop("work_type", WorkType.EXCAVATION),
            utilities=gas_and_electric() if utilities is None else utilities,
            **fields,
        )
        return await engine.create_ticket(request, actor="intake", now=now)

    return create


@pytest.fixture
def subscribe(engine, org_id):
    """Factory for an email + in-app subscriber, with optional preferences."""

    async def create(prefs: Optional[dict] = None, **fields) -> AlertSubscription:
        user_id = fields.pop("user_id", uuid4())
        subscription = AlertSubscription(
            user_id=user_id,
            organization_id=fields.pop("organization_id", org_id),
            email_address=fields.pop("email_address", f"{user_id.hex[:8]}@example.com"),
            **fields,
        )
        subscription = await engine.subscribe(subscription)
        if prefs is not None:
            await engine.set_preferences(UserAlertPreferences(user_id=user_id, **prefs))
        return subscription

    return create
