"""
Write-behind cache for the metric cells of the counter being edited.

Reads go through a merged view: unflushed local edits (the dirty overlay)
on top of the last state fetched from the server. ``flush`` is the only
suspending operation and sends every dirty cell in a single batch.
"""
import asyncio
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional

from counter_registry.core.exceptions import MetricValidationError, PersistenceError
from counter_registry.core.metrics import MetricCell, MetricKey

logger = logging.getLogger(__name__)


@dataclass
class FlushResult:
    """Outcome of a flush. ``flushed`` is False when there was nothing to send."""

    flushed: bool
    committed_keys: List[MetricKey] = field(default_factory=list)

    @property
    def noop(self) -> bool:
        return not self.flushed


class MetricStore:
    def __init__(self, gateway, counter_id: Optional[int] = None, metrics: Iterable[MetricCell] = ()):
        self._gateway = gateway
        self.counter_id = counter_id
        self._server: Dict[MetricKey, MetricCell] = {}
        self._dirty: Dict[MetricKey, MetricCell] = {}
        self._flush_lock: Optional[asyncio.Lock] = None
        self._lock_loop = None
        self.load(metrics)

    def load(self, metrics: Iterable[MetricCell], counter_id: Optional[int] = None) -> None:
        """Replace the server state (after a fetch) and drop every local edit"""
        if counter_id is not None:
            self.counter_id = counter_id
        self._server = {cell.key: replace(cell) for cell in metrics}
        self._dirty = {}

    def get(self, key: MetricKey) -> Optional[MetricCell]:
        cell = self._dirty.get(key)
        if cell is None:
            cell = self._server.get(key)
        return cell

    def qty(self, key: MetricKey) -> float:
        cell = self.get(key)
        return cell.qty if cell is not None else 0.0

    def set(self, cell: MetricCell) -> MetricCell:
        if cell.qty is None or not math.isfinite(cell.qty) or cell.qty < 0:
            raise MetricValidationError(f"Quantity must be a non-negative number, got {cell.qty!r}")
        stored = replace(cell)
        if stored.counter_id is None:
            stored.counter_id = self.counter_id
        current = self.get(stored.key)
        if stored.id is None and current is not None:
            stored.id = current.id
        self._dirty[stored.key] = stored
        return stored

    def merged(self) -> Dict[MetricKey, MetricCell]:
        view = dict(self._server)
        view.update(self._dirty)
        return view

    def cells(self) -> List[MetricCell]:
        return list(self.merged().values())

    def dirty_cells(self) -> List[MetricCell]:
        return list(self._dirty.values())

    def is_dirty(self, key: MetricKey) -> bool:
        return key in self._dirty

    @property
    def dirty_count(self) -> int:
        return len(self._dirty)

    @property
    def has_dirty(self) -> bool:
        return bool(self._dirty)

    def clear_dirty(self) -> None:
        self._dirty = {}

    def discard(self) -> int:
        """Drop unsaved edits; returns how many were dropped"""
        dropped = len(self._dirty)
        if dropped:
            logger.info("Discarding %s unsaved metric edits for counter %s", dropped, self.counter_id)
        self._dirty = {}
        return dropped

    def _lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._flush_lock is None or self._lock_loop is not loop:
            self._flush_lock = asyncio.Lock()
            self._lock_loop = loop
        return self._flush_lock

    @property
    def flushing(self) -> bool:
        return self._flush_lock is not None and self._flush_lock.locked()

    async def flush(self) -> FlushResult:
        # One outstanding flush per counter; a concurrent caller waits and sends what is still dirty
        async with self._lock():
            if not self._dirty:
                return FlushResult(flushed=False)
            if self.counter_id is None:
                raise PersistenceError("Cannot flush metrics before the counter exists")

            batch = dict(self._dirty)
            logger.info("Flushing %s metric cells for counter %s", len(batch), self.counter_id)
            try:
                committed = await self._gateway.flush_dirty_metrics(self.counter_id, list(batch.values()))
            except PersistenceError:
                logger.warning("Metric flush failed for counter %s; %s cells kept dirty", self.counter_id, len(batch))
                raise
            except Exception as exc:
                logger.warning("Metric flush failed for counter %s: %s", self.counter_id, exc)
                raise PersistenceError("Failed to flush counter metrics", exc) from exc

            for key, cell in batch.items():
                # Edits made while the request was in flight stay dirty
                if self._dirty.get(key) is cell:
                    del self._dirty[key]

            if committed is not None:
                self._server = {cell.key: replace(cell) for cell in committed}
            else:
                self._server.update(batch)
            return FlushResult(flushed=True, committed_keys=list(batch.keys()))
