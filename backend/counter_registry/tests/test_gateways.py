import asyncio
from datetime import date

import httpx
import pytest

from counter_registry.core.exceptions import PersistenceError
from counter_registry.core.security import create_token
from counter_registry.models.counter import Counter, CounterChannelMetric
from counter_registry.services.editing_session import CounterEditingSession
from counter_registry.services.gateway import HttpCounterGateway, ServiceCounterGateway

MAY_DAY = date(2024, 5, 1)


def channel_id(catalog, name):
    return next(channel.id for channel in catalog.channels if channel.name == name)


async def walk_in_evening(gateway, manager_id, guide_id):
    session = await CounterEditingSession.start(gateway, MAY_DAY, manager_id=manager_id)
    walk_in = channel_id(session.catalog, "Walk-In")
    session.set_staff([guide_id])
    session.set_metric(walk_in, "people", "attended", 12)
    session.set_walk_in_cash(walk_in, 250)
    session.set_discounts(["Students"])
    await session.transition("platforms")

    reopened = await CounterEditingSession.start(gateway, MAY_DAY)
    return session, reopened, walk_in


def assert_round_trip(session, reopened, walk_in, guide_id):
    assert reopened.counter_id == session.counter_id
    assert reopened.status.value == "platforms"
    assert reopened.staff_ids == {guide_id}
    assert reopened.metric(walk_in, "people", "booked", period="after_cutoff") == 12
    assert reopened.walk_in_cash == {walk_in: 250}
    assert reopened.discounts == ["Students"]
    assert "Cash Collected: PLN 250.00" in reopened.stored_notes.splitlines()
    assert not reopened.has_unsaved_changes


def test_service_gateway_session_round_trip(session_factory, db, users, manager):
    guide = users["guide@demo.com"]
    gateway = ServiceCounterGateway(session_factory, actor_user_id=manager.id)

    session, reopened, walk_in = asyncio.run(walk_in_evening(gateway, manager.id, guide.id))

    assert_round_trip(session, reopened, walk_in, guide.id)
    db.expire_all()
    counter = db.query(Counter).filter(Counter.date == MAY_DAY).one()
    assert counter.status == "platforms"
    stored = {
        (row.kind, row.tally_type, row.period): float(row.qty)
        for row in db.query(CounterChannelMetric).filter(CounterChannelMetric.channel_id == walk_in)
    }
    assert stored == {
        ("people", "attended", None): 12.0,
        ("people", "booked", "after_cutoff"): 12.0,
        ("cash_payment", "attended", None): 250.0,
    }


def test_service_gateway_missing_counter_is_none(session_factory, db, manager):
    gateway = ServiceCounterGateway(session_factory, actor_user_id=manager.id)
    assert asyncio.run(gateway.fetch_counter_by_date(MAY_DAY)) is None


def test_service_gateway_wraps_failures(session_factory, db, manager):
    gateway = ServiceCounterGateway(session_factory, actor_user_id=manager.id)

    async def scenario():
        payload = await gateway.ensure_counter_for_date(MAY_DAY, manager.id)
        counter_id = payload["counter"]["id"]
        with pytest.raises(PersistenceError):
            await gateway.update_counter_status(counter_id, "archived")
        with pytest.raises(PersistenceError):
            await gateway.update_counter_status(counter_id + 100, "platforms")
        await gateway.delete_counter(counter_id)
        return await gateway.fetch_counter_by_date(MAY_DAY)

    assert asyncio.run(scenario()) is None


def http_gateway(api_app, token=None):
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=api_app), base_url="http://test")
    return client, HttpCounterGateway(client, token=token)


def test_http_gateway_session_round_trip(api_app, users, manager):
    guide = users["guide@demo.com"]

    async def scenario():
        client, gateway = http_gateway(api_app, token=create_token(str(manager.id)))
        async with client:
            return await walk_in_evening(gateway, manager.id, guide.id)

    session, reopened, walk_in = asyncio.run(scenario())
    assert_round_trip(session, reopened, walk_in, guide.id)


def test_http_gateway_missing_counter_is_none(api_app, manager):
    async def scenario():
        client, gateway = http_gateway(api_app, token=create_token(str(manager.id)))
        async with client:
            return await gateway.fetch_counter_by_date(MAY_DAY)

    assert asyncio.run(scenario()) is None


def test_http_gateway_reports_rejections_as_persistence_errors(api_app, manager):
    async def scenario():
        client, gateway = http_gateway(api_app)
        async with client:
            await gateway.fetch_catalog()

    with pytest.raises(PersistenceError) as excinfo:
        asyncio.run(scenario())
    assert isinstance(excinfo.value.cause, httpx.HTTPStatusError)
