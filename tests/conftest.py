"""
Shared fixtures: a temporary SQLite database per test, hand-written fakes for
the payment gateway and the Redis cache, and builders for the common
booking states.
"""

import fnmatch
import json
import uuid
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import pytest
from sqlalchemy import select

from guideway_booking_platform.config import Settings
from guideway_booking_platform.database import DatabaseManager
from guideway_booking_platform.models.booking import Booking, BookingStatus
from guideway_booking_platform.models.listing import Listing, ListingStatus
from guideway_booking_platform.models.payment import Payment, PaymentStatus
from guideway_booking_platform.models.user import Actor, User, UserRole
from guideway_booking_platform.services.booking_service import BookingService
from guideway_booking_platform.services.payment_gateway import (
    GatewayIntent,
    GatewayRefund,
    PaymentGateway,
    to_minor_units,
)
from guideway_booking_platform.services.payment_service import PaymentService
from guideway_booking_platform.utils.auth import get_password_hash
from guideway_booking_platform.utils.exceptions import PaymentServiceError, WebhookSignatureError

PASSWORD = "password123"
VALID_SIGNATURE = "t=1,v1=valid"

_password_hash: Optional[str] = None


def password_hash() -> str:
    global _password_hash
    if _password_hash is None:
        _password_hash = get_password_hash(PASSWORD)
    return _password_hash


class FakeGateway(PaymentGateway):
    """In-memory gateway that records calls and honours idempotency keys.

    ``fail`` and ``timeout`` hold operation names that should raise; ``hooks``
    maps an operation name to a coroutine function run once before it.
    """

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.intents: Dict[str, GatewayIntent] = {}
        self.refunds: Dict[str, GatewayRefund] = {}
        self.fail: set = set()
        self.timeout: set = set()
        self.hooks: Dict[str, Callable[[], Awaitable[None]]] = {}
        self._by_key: Dict[str, Any] = {}
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter}"

    async def _enter(self, operation: str, **kwargs) -> None:
        self.calls.append((operation, kwargs))
        hook = self.hooks.pop(operation, None)
        if hook is not None:
            await hook()
        if operation in self.timeout:
            raise PaymentServiceError(f"{operation} failed: Request timeout", details={"outcome": "unknown"})
        if operation in self.fail:
            raise PaymentServiceError(f"{operation} failed: card_declined")

    def calls_to(self, operation: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def set_status(self, intent_id: str, status: str, last_error: Optional[str] = None) -> None:
        self.intents[intent_id].status = status
        self.intents[intent_id].last_error = last_error

    async def create_customer(self, email: str, name: str, metadata: Dict[str, str]) -> str:
        await self._enter("create_customer", email=email, name=name, metadata=metadata)
        return self._next_id("cus")

    async def create_intent(self, amount, currency, metadata, idempotency_key, customer_id=None) -> GatewayIntent:
        await self._enter(
            "create_intent",
            amount=amount,
            currency=currency,
            metadata=metadata,
            idempotency_key=idempotency_key,
            customer_id=customer_id,
        )
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        intent_id = self._next_id("pi")
        intent = GatewayIntent(
            id=intent_id,
            status="requires_payment_method",
            amount=to_minor_units(amount),
            client_secret=f"{intent_id}_secret",
        )
        self.intents[intent_id] = intent
        self._by_key[idempotency_key] = intent
        return intent

    async def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        await self._enter("retrieve_intent", intent_id=intent_id)
        return self.intents[intent_id]

    async def cancel_intent(self, intent_id: str, idempotency_key: str) -> GatewayIntent:
        await self._enter("cancel_intent", intent_id=intent_id, idempotency_key=idempotency_key)
        self.intents[intent_id].status = "canceled"
        return self.intents[intent_id]

    async def refund(self, intent_id, amount, idempotency_key, metadata=None) -> GatewayRefund:
        await self._enter(
            "refund",
            intent_id=intent_id,
            amount=amount,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        refund = GatewayRefund(id=self._next_id("re"), status="succeeded", amount=to_minor_units(amount))
        self.refunds[refund.id] = refund
        self._by_key[idempotency_key] = refund
        return refund

    def construct_webhook_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError()
        return json.loads(payload)


class FakeCache:
    """Dict-backed stand-in for ``RedisCache``."""

    def __init__(self) -> None:
        self.store: Dict[str, Any] = {}
        self.deleted: List[str] = []

    async def get(self, key: str):
        return self.store.get(key)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        self.store[key] = json.loads(json.dumps(value, default=str))
        return True

    async def exists(self, key: str) -> bool:
        return key in self.store

    async def delete_pattern(self, pattern: str) -> int:
        self.deleted.append(pattern)
        keys = [key for key in self.store if fnmatch.fnmatch(key, pattern)]
        for key in keys:
            del self.store[key]
        return len(keys)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'guideway_test.db'}",
        cache_enabled=False,
        stripe_webhook_secret="whsec_test",
        debug=False,
    )


@pytest.fixture
async def db(settings):
    manager = DatabaseManager(settings=settings)
    await manager.initialize(create_tables=True)
    yield manager
    await manager.close()


@pytest.fixture
async def session(db):
    async with db.session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def cache():
    return FakeCache()


async def create_user(session, role: UserRole = UserRole.TOURIST, **overrides) -> User:
    values = {
        "email": f"{role.value}-{uuid.uuid4().hex[:12]}@example.com",
        "password_hash": password_hash(),
        "first_name": role.value.title(),
        "last_name": "Tester",
        "role": role,
        "is_active": True,
    }
    values.update(overrides)
    user = User(**values)
    session.add(user)
    await session.commit()
    return user


async def create_listing(session, guide_id, **overrides) -> Listing:
    values = {
        "guide_id": guide_id,
        "title": "Old Town Walking Tour",
        "city": "Lisbon",
        "country": "Portugal",
        "tour_fee": Decimal("50.00"),
        "duration_hours": 3,
        "max_group_size": 10,
        "status": ListingStatus.ACTIVE,
        "is_active": True,
    }
    values.update(overrides)
    listing = Listing(**values)
    session.add(listing)
    await session.commit()
    return listing


async def reload(session, model, row_id):
    """Fresh copy of a row, bypassing whatever the identity map holds."""
    return (await session.execute(
        select(model).where(model.id == row_id).execution_options(populate_existing=True)
    )).scalar_one_or_none()


class Market:
    """A guide with one listing, a tourist and an admin, plus builders that
    drive bookings into the usual states through the services.

    Only ids are kept: a service rollback expires every loaded row.
    """

    def __init__(self, session, gateway: FakeGateway, settings: Settings):
        self.session = session
        self.gateway = gateway
        self.settings = settings

    async def setup(self) -> "Market":
        tourist = await create_user(self.session, UserRole.TOURIST, email="tourist@example.com")
        guide = await create_user(self.session, UserRole.GUIDE, email="guide@example.com")
        admin = await create_user(self.session, UserRole.ADMIN, email="admin@example.com")
        listing = await create_listing(self.session, guide.id)

        self.tourist = Actor.from_user(tourist)
        self.guide = Actor.from_user(guide)
        self.admin = Actor.from_user(admin)
        self.listing_id = listing.id
        return self

    @property
    def bookings(self) -> BookingService:
        return BookingService(self.session, settings=self.settings)

    @property
    def payments(self) -> PaymentService:
        return PaymentService(self.session, self.gateway, settings=self.settings)

    async def pending_booking(self, people: int = 2, days_ahead: int = 7) -> Booking:
        return await self.bookings.create_booking(
            tourist_id=self.tourist.id,
            listing_id=self.listing_id,
            booking_date=date.today() + timedelta(days=days_ahead),
            start_time="09:00",
            number_of_people=people,
        )

    async def confirmed_booking(self, people: int = 2) -> Booking:
        booking = await self.pending_booking(people)
        return await self.bookings.transition_status(booking.id, self.guide, BookingStatus.CONFIRMED)

    async def intent_for(self, booking_id) -> Payment:
        payment, _ = await self.payments.create_payment_intent(self.tourist, booking_id)
        return payment

    async def paid_booking(self, people: int = 2) -> Tuple[Booking, Payment]:
        booking = await self.confirmed_booking(people)
        payment = await self.intent_for(booking.id)
        payment = await self.payments.reconcile_payment_outcome(payment.payment_intent_id, PaymentStatus.COMPLETED)
        return await self.reload(Booking, booking.id), payment

    async def completed_booking(self, people: int = 2) -> Tuple[Booking, Payment]:
        booking, payment = await self.paid_booking(people)
        booking = await self.bookings.complete_booking(booking.id, self.guide)
        return booking, payment

    async def reload(self, model, row_id):
        return await reload(self.session, model, row_id)

    async def listing(self) -> Listing:
        return await self.reload(Listing, self.listing_id)


@pytest.fixture
async def market(session, gateway, settings):
    return await Market(session, gateway, settings).setup()
