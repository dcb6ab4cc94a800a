"""
Gateways between the editing session and the persistence service.

The session only ever talks to a ``CounterGateway``. ``ServiceCounterGateway``
runs the service in-process on its own SQLAlchemy sessions;
``HttpCounterGateway`` goes through the HTTP API with httpx. Both report
failures as ``PersistenceError`` and a missing counter as ``None``.
"""
import logging
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx
from fastapi.concurrency import run_in_threadpool

from counter_registry.core.exceptions import CounterNotFoundError, PersistenceError
from counter_registry.core.metrics import Catalog, MetricCell
from counter_registry.core.serialization_helpers import serialize_date
from counter_registry.services import counter_registry_service

logger = logging.getLogger(__name__)

Payload = Dict[str, Any]


class CounterGateway:
    async def fetch_catalog(self) -> Catalog:
        raise NotImplementedError

    async def fetch_counter_by_date(self, counter_date: date) -> Optional[Payload]:
        """Registry payload for the date, or None when no counter exists yet"""
        raise NotImplementedError

    async def ensure_counter_for_date(
        self,
        counter_date: date,
        manager_id: int,
        product_id: Optional[int] = None,
        staff_ids: Iterable[int] = (),
        notes: Optional[str] = None,
    ) -> Payload:
        raise NotImplementedError

    async def update_counter_status(self, counter_id: int, status: str) -> Payload:
        raise NotImplementedError

    async def update_counter_product(self, counter_id: int, product_id: Optional[int]) -> Payload:
        raise NotImplementedError

    async def update_counter_manager(self, counter_id: int, manager_id: int) -> Payload:
        raise NotImplementedError

    async def update_counter_staff(self, counter_id: int, staff_ids: Iterable[int]) -> Payload:
        raise NotImplementedError

    async def update_counter_notes(self, counter_id: int, notes: Optional[str]) -> Payload:
        raise NotImplementedError

    async def flush_dirty_metrics(self, counter_id: int, cells: List[MetricCell]) -> List[MetricCell]:
        """Persist a batch of cells; returns the counter's committed metrics"""
        raise NotImplementedError

    async def delete_counter(self, counter_id: int) -> None:
        raise NotImplementedError


def metrics_from_payload(payload: Payload) -> List[MetricCell]:
    counter_id = (payload.get("counter") or {}).get("id")
    return [MetricCell.from_dict(item, counter_id) for item in payload.get("metrics") or []]


class ServiceCounterGateway(CounterGateway):
    def __init__(self, session_factory: Callable, actor_user_id: int):
        self._session_factory = session_factory
        self._actor_user_id = actor_user_id

    def _run(self, operation: Callable, *args, **kwargs):
        db = self._session_factory()
        try:
            return operation(db, *args, **kwargs)
        finally:
            db.close()

    async def _call(self, operation: Callable, *args, allow_not_found: bool = False, **kwargs):
        try:
            return await run_in_threadpool(self._run, operation, *args, **kwargs)
        except PersistenceError:
            raise
        except CounterNotFoundError as exc:
            if allow_not_found:
                return None
            logger.warning("%s failed: %s", operation.__name__, exc)
            raise PersistenceError(str(exc), exc) from exc
        except Exception as exc:
            logger.warning("%s failed: %s", operation.__name__, exc)
            raise PersistenceError(str(exc) or operation.__name__, exc) from exc

    async def fetch_catalog(self) -> Catalog:
        return Catalog.from_dict(await self._call(counter_registry_service.get_catalog))

    async def fetch_counter_by_date(self, counter_date):
        return await self._call(counter_registry_service.get_counter_by_date, counter_date, allow_not_found=True)

    async def ensure_counter_for_date(self, counter_date, manager_id, product_id=None, staff_ids=(), notes=None):
        payload = await self._call(
            counter_registry_service.find_or_create_counter,
            counter_date,
            manager_id,
            self._actor_user_id,
            product_id=product_id,
            notes=notes,
        )
        staff_ids = list(staff_ids)
        if staff_ids:
            payload = await self.update_counter_staff(payload["counter"]["id"], staff_ids)
        return payload

    async def _update(self, counter_id: int, **fields) -> Payload:
        return await self._call(
            counter_registry_service.update_counter_metadata,
            counter_id,
            self._actor_user_id,
            **fields,
        )

    async def update_counter_status(self, counter_id, status):
        return await self._update(counter_id, status=status)

    async def update_counter_product(self, counter_id, product_id):
        return await self._update(counter_id, product_id=product_id)

    async def update_counter_manager(self, counter_id, manager_id):
        return await self._update(counter_id, user_id=manager_id)

    async def update_counter_notes(self, counter_id, notes):
        return await self._update(counter_id, notes=notes)

    async def update_counter_staff(self, counter_id, staff_ids):
        return await self._call(
            counter_registry_service.update_counter_staff,
            counter_id,
            list(staff_ids),
            self._actor_user_id,
        )

    async def flush_dirty_metrics(self, counter_id, cells):
        grid, _summary = await self._call(
            counter_registry_service.upsert_metrics,
            counter_id,
            list(cells),
            self._actor_user_id,
        )
        return grid

    async def delete_counter(self, counter_id):
        await self._call(counter_registry_service.delete_counter, counter_id)


class HttpCounterGateway(CounterGateway):
    """
    Gateway over the counter registry HTTP API.

    The caller owns ``client`` (base URL, timeouts, transport) and closes it.
    """

    def __init__(self, client: httpx.AsyncClient, token: Optional[str] = None):
        self._client = client
        self._token = token

    def _headers(self) -> Dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    async def _request(self, method: str, path: str, allow_not_found: bool = False, **kwargs):
        try:
            response = await self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise PersistenceError(f"{method} {path} failed", exc) from exc

        if allow_not_found and response.status_code == 404:
            return None
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = _error_detail(response)
            logger.warning("%s %s returned %s: %s", method, path, response.status_code, detail)
            raise PersistenceError(detail, exc) from exc
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def fetch_catalog(self) -> Catalog:
        return Catalog.from_dict(await self._request("GET", "/catalog"))

    async def fetch_counter_by_date(self, counter_date):
        return await self._request(
            "GET",
            "/counters",
            allow_not_found=True,
            params={"date": serialize_date(counter_date)},
        )

    async def ensure_counter_for_date(self, counter_date, manager_id, product_id=None, staff_ids=(), notes=None):
        body: Dict[str, Any] = {"date": serialize_date(counter_date), "userId": manager_id}
        if product_id is not None:
            body["productId"] = product_id
        if notes is not None:
            body["notes"] = notes
        payload = await self._request("POST", "/counters", json=body)
        staff_ids = list(staff_ids)
        if staff_ids:
            payload = await self.update_counter_staff(payload["counter"]["id"], staff_ids)
        return payload

    async def _patch(self, counter_id: int, body: Dict[str, Any]) -> Payload:
        return await self._request("PATCH", f"/counters/{counter_id}", json=body)

    async def update_counter_status(self, counter_id, status):
        return await self._patch(counter_id, {"status": status})

    async def update_counter_product(self, counter_id, product_id):
        return await self._patch(counter_id, {"productId": product_id})

    async def update_counter_manager(self, counter_id, manager_id):
        return await self._patch(counter_id, {"userId": manager_id})

    async def update_counter_notes(self, counter_id, notes):
        return await self._patch(counter_id, {"notes": notes})

    async def update_counter_staff(self, counter_id, staff_ids):
        return await self._request("PUT", f"/counters/{counter_id}/staff", json={"userIds": list(staff_ids)})

    async def flush_dirty_metrics(self, counter_id, cells):
        response = await self._request(
            "PUT",
            f"/counters/{counter_id}/metrics",
            json={"metrics": [cell.to_dict() for cell in cells]},
        )
        return [MetricCell.from_dict(item, counter_id) for item in response.get("metrics") or []]

    async def delete_counter(self, counter_id):
        await self._request("DELETE", f"/counters/{counter_id}")


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("detail"):
        return str(body["detail"])
    return f"HTTP {response.status_code}"
