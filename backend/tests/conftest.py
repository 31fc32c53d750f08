import copy
import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
from fastapi.testclient import TestClient

from core.security import create_access_token
from database import DocumentNotFound, Increment, WriteConflict
from services.billing_service import PaymentSynchronizer
from services.delivery_service import DeliveryLifecycleCoordinator
from services.notification_service import NotificationService
from services.payment_service import GatewayError


# ── In-memory document store ─────────────────────────────────────────────────
_COMPARE = {
    "==":     lambda a, b: a == b,
    "!=":     lambda a, b: a != b,
    "<":      lambda a, b: a is not None and a < b,
    "<=":     lambda a, b: a is not None and a <= b,
    ">":      lambda a, b: a is not None and a > b,
    ">=":     lambda a, b: a is not None and a >= b,
    "in":     lambda a, b: a in b,
    "not-in": lambda a, b: a not in b,
}


def _apply(doc: dict, fields: dict) -> None:
    for key, value in fields.items():
        if isinstance(value, Increment):
            doc[key] = (doc.get(key) or 0) + value.amount
        else:
            doc[key] = copy.deepcopy(value)


class MemoryBatch:
    def __init__(self, store: "MemoryStore"):
        self._store = store
        self._ops: list[tuple[str, Any, dict, bool]] = []

    def update(self, collection, doc_id, fields):
        self._ops.append((collection, doc_id, fields, False))
        return self

    def set(self, collection, doc_id, fields):
        self._ops.append((collection, doc_id, fields, True))
        return self

    def __len__(self):
        return len(self._ops)

    async def commit(self):
        self._store.check_failure("batch", None)
        for collection, doc_id, fields, upsert in self._ops:
            docs = self._store.docs.setdefault(collection, {})
            if doc_id not in docs:
                if not upsert:
                    continue
                docs[doc_id] = {}
            _apply(docs[doc_id], fields)
        self._store.commits += 1


class MemoryStore:
    """Same surface as database.DocumentStore, with failure injection."""

    def __init__(self):
        self.docs: dict[str, dict[Any, dict]] = {}
        self.failures: set[tuple[str, Any]] = set()
        self.writes: list[tuple[str, Any]] = []
        self.commits = 0

    def seed(self, collection: str, doc_id: Any, **fields) -> dict:
        self.docs.setdefault(collection, {})[doc_id] = fields
        return fields

    def doc(self, collection: str, doc_id: Any) -> Optional[dict]:
        return self.docs.get(collection, {}).get(doc_id)

    def fail_on(self, collection: str, doc_id: Any = None) -> None:
        self.failures.add((collection, doc_id))

    def check_failure(self, collection: str, doc_id: Any) -> None:
        if (collection, doc_id) in self.failures or (collection, None) in self.failures:
            raise RuntimeError(f"injected failure on {collection}/{doc_id}")

    async def get(self, collection, doc_id):
        doc = self.doc(collection, doc_id)
        return {**copy.deepcopy(doc), "id": doc_id} if doc is not None else None

    async def query(self, collection, *where, order_by=None, descending=False, limit=None):
        rows = [
            {**copy.deepcopy(doc), "id": doc_id}
            for doc_id, doc in self.docs.get(collection, {}).items()
            if all(_COMPARE[op](doc_id if f == "id" else doc.get(f), v) for f, op, v in where)
        ]
        if order_by:
            rows.sort(key=lambda r: (r.get(order_by) is not None, r.get(order_by)), reverse=descending)
        return rows[:limit] if limit else rows

    async def add(self, collection, data, doc_id=None):
        self.check_failure(collection, doc_id)
        doc_id = doc_id or uuid.uuid4().hex
        self.docs.setdefault(collection, {})[doc_id] = copy.deepcopy({k: v for k, v in data.items() if k != "id"})
        self.writes.append((collection, doc_id))
        return doc_id

    async def update(self, collection, doc_id, fields, expect=None):
        self.check_failure(collection, doc_id)
        doc = self.doc(collection, doc_id)
        if doc is None:
            raise DocumentNotFound(f"{collection}/{doc_id}")
        if expect and any(doc.get(k) != v for k, v in expect.items()):
            raise WriteConflict(f"{collection}/{doc_id} changed concurrently")
        _apply(doc, fields)
        self.writes.append((collection, doc_id))

    async def set(self, collection, doc_id, fields):
        self.check_failure(collection, doc_id)
        _apply(self.docs.setdefault(collection, {}).setdefault(doc_id, {}), fields)
        self.writes.append((collection, doc_id))

    def batch(self):
        return MemoryBatch(self)


# ── Fake PayMongo ────────────────────────────────────────────────────────────
class FakeGateway:
    def __init__(self):
        self.intents: dict[str, dict] = {}
        self.calls: list[tuple[str, Any]] = []
        self.fail_create = False
        self.fail_cancel = False

    async def create_payment_intent(self, amount, currency="PHP", metadata=None):
        self.calls.append(("create_payment_intent", amount))
        if self.fail_create:
            raise GatewayError("gateway down", status_code=503)
        intent_id = f"pi_{uuid.uuid4().hex[:10]}"
        self.intents[intent_id] = {"status": "awaiting_payment_method", "client_key": f"{intent_id}_key"}
        return {"id": intent_id, "attributes": dict(self.intents[intent_id])}

    async def get_payment_intent(self, intent_id):
        self.calls.append(("get_payment_intent", intent_id))
        return {"id": intent_id, "attributes": dict(self.intents.get(intent_id, {}))}

    async def cancel_payment_intent(self, intent_id):
        self.calls.append(("cancel_payment_intent", intent_id))
        if self.fail_cancel:
            raise GatewayError("cannot cancel")
        return {"id": intent_id, "cancelled": True}

    async def create_source(self, amount, source_type, redirect, currency="PHP"):
        self.calls.append(("create_source", source_type))
        source_id = f"src_{uuid.uuid4().hex[:10]}"
        return {
            "id": source_id,
            "attributes": {
                "status": "pending",
                "type": source_type,
                "redirect": {**redirect, "checkout_url": f"https://checkout.test/{source_id}"},
            },
        }

    async def get_source(self, source_id):
        self.calls.append(("get_source", source_id))
        return {"id": source_id, "attributes": {"status": "chargeable"}}

    async def create_payment_from_source(self, source_id, amount, currency="PHP", description=""):
        self.calls.append(("create_payment_from_source", source_id))
        return {"id": f"pay_gw_{source_id}", "attributes": {"status": "paid", "amount": int(amount * 100)}}

    async def create_link(self, amount, description, remarks=""):
        self.calls.append(("create_link", amount))
        return {"id": "link_1", "attributes": {"checkout_url": "https://checkout.test/link_1"}}

    def succeed(self, intent_id, method="card"):
        self.intents[intent_id] = {
            "status": "succeeded",
            "payments": [{"id": f"pay_gw_{intent_id}", "attributes": {"source": {"type": method}}}],
        }

    def fail(self, intent_id, message="Card declined"):
        self.intents[intent_id] = {
            "status": "awaiting_payment_method",
            "last_payment_error": {"failed_message": message},
        }


# ── Fixtures ─────────────────────────────────────────────────────────────────
@pytest.fixture()
def now() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture()
def notifier(store) -> NotificationService:
    return NotificationService(store, push_enabled=False)


@pytest.fixture()
def billing(store, gateway) -> PaymentSynchronizer:
    return PaymentSynchronizer(store, gateway)


@pytest.fixture()
def coordinator(store, notifier, billing) -> DeliveryLifecycleCoordinator:
    return DeliveryLifecycleCoordinator(store, notifier, billing, rng=random.Random(7))


@pytest.fixture()
def fleet(store, now) -> MemoryStore:
    """One client, truck T1 (no allocation), driver1, helper1 and a pending delivery D1."""
    store.seed("clients", "client1", name="Acme Hauling", payment_status="current", can_book_trucks=True)
    store.seed("trucks", "T1", status="on-delivery", total_deliveries=3, total_kilometers=120.0,
               active_delivery=True, current_delivery_id="D1")
    store.seed("drivers", "driver1", name="Juan Dela Cruz", status="in_progress")
    store.seed("helpers", "helper1", name="Pedro Santos", status="in_progress")
    store.seed("deliveries", "D1", client_id="client1", truck_id="T1", driver_id="driver1",
               driver_name="Juan Dela Cruz", helper_id="helper1", status="pending",
               payment_status="pending", rate=1500.0, estimated_distance=50.0,
               delivery_date=now - timedelta(days=2), created_at=now - timedelta(days=3))
    return store


def auth_header(user_id: str, role: str) -> dict:
    token = create_access_token({"sub": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def api_client(store, gateway):
    """TestClient without lifespan: the database is never connected."""
    from core.dependencies import get_document_store, get_gateway, get_notifier
    from main import app

    app.dependency_overrides[get_document_store] = lambda: store
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: NotificationService(store, push_enabled=False)
    app.state.limiter.reset()
    client = TestClient(app, raise_server_exceptions=False)
    yield client
    app.dependency_overrides.clear()
