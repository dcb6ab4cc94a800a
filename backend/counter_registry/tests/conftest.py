import copy
import os

os.environ.setdefault("ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from counter_registry.core.database import get_db, init_db
from counter_registry.core.exceptions import PersistenceError
from counter_registry.core.metrics import AddonConfig, Catalog, ChannelConfig, MetricCell
from counter_registry.core.security import create_token
from counter_registry.main import app
from counter_registry.models.user import User
from counter_registry.services.gateway import CounterGateway
from counter_registry.services.seed import seed_demo


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    seed_demo(session)
    yield session
    session.close()


@pytest.fixture
def api_app(db, session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(api_app):
    return TestClient(api_app)


@pytest.fixture
def users(db):
    return {user.email: user for user in db.query(User).all()}


@pytest.fixture
def manager(users):
    return users["manager@demo.com"]


@pytest.fixture
def manager_headers(manager):
    return {"Authorization": f"Bearer {create_token(str(manager.id))}"}


@pytest.fixture
def guide_headers(users):
    guide = users["guide@demo.com"]
    return {"Authorization": f"Bearer {create_token(str(guide.id))}"}


@pytest.fixture
def catalog():
    # 1 Fareharbor (online), 2 Walk-In (cash, after cut-off), 3 Ecwid (online, after cut-off),
    # 4 Hostel Atlantis (cash @ 40), 5 TopDeck (cash @ 50, EUR 17)
    return Catalog(
        channels=[
            ChannelConfig(id=1, name="Fareharbor", sort_order=0, payment_method_name="Online"),
            ChannelConfig(id=2, name="Walk-In", sort_order=4, payment_method_name="Cash", cash_payment_eligible=True),
            ChannelConfig(id=3, name="Ecwid", sort_order=5, payment_method_name="Online"),
            ChannelConfig(id=4, name="Hostel Atlantis", sort_order=7, payment_method_name="cash", cash_price=40.0),
            ChannelConfig(
                id=5, name="TopDeck", sort_order=9, payment_method_name="Cash",
                cash_price=50.0, cash_payment_eligible=True,
            ),
        ],
        addons=[
            AddonConfig(addon_id=10, name="Cocktails", sort_order=0),
            AddonConfig(addon_id=11, name="T-Shirts", max_per_attendee=1, sort_order=1),
            AddonConfig(addon_id=12, name="Photos", max_per_attendee=2, sort_order=2),
        ],
        managers=[{"id": 1, "fullName": "Maria Manager"}],
    )


class FakeGateway(CounterGateway):
    """In-memory gateway; add an operation name to ``fail_on`` to make it fail"""

    def __init__(self, catalog):
        self.catalog = catalog
        self.counters = {}
        self.calls = []
        self.fail_on = set()
        self._next_counter_id = 1
        self._next_metric_id = 1

    def _record(self, name):
        self.calls.append(name)
        if name in self.fail_on:
            raise PersistenceError(f"{name} failed", ConnectionError("network down"))

    def _find(self, counter_id):
        for payload in self.counters.values():
            if payload["counter"]["id"] == counter_id:
                return payload
        raise PersistenceError(f"Counter {counter_id} not found")

    async def fetch_catalog(self):
        self._record("fetch_catalog")
        return copy.deepcopy(self.catalog)

    async def fetch_counter_by_date(self, counter_date):
        self._record("fetch_counter_by_date")
        payload = self.counters.get(counter_date)
        return copy.deepcopy(payload) if payload else None

    async def ensure_counter_for_date(self, counter_date, manager_id, product_id=None, staff_ids=(), notes=None):
        self._record("ensure_counter_for_date")
        if counter_date not in self.counters:
            self.counters[counter_date] = {
                "counter": {
                    "id": self._next_counter_id,
                    "date": counter_date.isoformat(),
                    "userId": manager_id,
                    "productId": product_id,
                    "status": "draft",
                    "notes": notes,
                },
                "staff": [{"userId": user_id} for user_id in staff_ids],
                "metrics": [],
            }
            self._next_counter_id += 1
        return copy.deepcopy(self.counters[counter_date])

    async def _update(self, name, counter_id, field, value):
        self._record(name)
        payload = self._find(counter_id)
        payload["counter"][field] = value
        return copy.deepcopy(payload)

    async def update_counter_status(self, counter_id, status):
        return await self._update("update_counter_status", counter_id, "status", status)

    async def update_counter_product(self, counter_id, product_id):
        return await self._update("update_counter_product", counter_id, "productId", product_id)

    async def update_counter_manager(self, counter_id, manager_id):
        return await self._update("update_counter_manager", counter_id, "userId", manager_id)

    async def update_counter_notes(self, counter_id, notes):
        return await self._update("update_counter_notes", counter_id, "notes", notes)

    async def update_counter_staff(self, counter_id, staff_ids):
        self._record("update_counter_staff")
        payload = self._find(counter_id)
        payload["staff"] = [{"userId": user_id} for user_id in staff_ids]
        return copy.deepcopy(payload)

    async def flush_dirty_metrics(self, counter_id, cells):
        self._record("flush_dirty_metrics")
        payload = self._find(counter_id)
        stored = {MetricCell.from_dict(item).key: item for item in payload["metrics"]}
        for cell in cells:
            item = cell.to_dict()
            item["counterId"] = counter_id
            existing = stored.get(cell.key)
            item["id"] = existing["id"] if existing else self._next_metric_id
            if not existing:
                self._next_metric_id += 1
            if cell.qty > 0:
                stored[cell.key] = item
            else:
                stored.pop(cell.key, None)
        payload["metrics"] = list(stored.values())
        return [MetricCell.from_dict(item) for item in payload["metrics"]]

    async def delete_counter(self, counter_id):
        self._record("delete_counter")
        for counter_date, payload in list(self.counters.items()):
            if payload["counter"]["id"] == counter_id:
                del self.counters[counter_date]


@pytest.fixture
def gateway(catalog):
    return FakeGateway(catalog)
