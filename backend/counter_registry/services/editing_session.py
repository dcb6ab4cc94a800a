"""
Editing session for one counter (one operating date).

The session is owned by the caller and composes the metric store, the
derivation rules, the workflow state machine and the notes codec around a
gateway. Edits are synchronous; ``save``, ``transition`` and ``open_date``
are the coroutines that talk to the gateway.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Set

from counter_registry.core.exceptions import (
    InvalidTransitionError,
    MetricValidationError,
    PersistenceError,
)
from counter_registry.core.metrics import (
    CASH_CURRENCIES,
    CURRENCY_PLN,
    KIND_CASH,
    KIND_PEOPLE,
    PERIODS,
    TALLY_ATTENDED,
    AddonConfig,
    Catalog,
    ChannelConfig,
    MetricCell,
    MetricKey,
    round_amount,
    values_are_close,
    walk_in_addon_unit_price,
    walk_in_ticket_unit_price,
)
from counter_registry.services import snapshot_codec
from counter_registry.services.derivation import (
    DerivationContext,
    derive,
    expected_cash_amount,
    validate_edit,
)
from counter_registry.services.gateway import CounterGateway, metrics_from_payload
from counter_registry.services.metric_store import FlushResult, MetricStore
from counter_registry.services.snapshot_codec import (
    CashSnapshotEntry,
    FreeEntry,
    FreeSnapshotEntry,
    TicketCurrency,
    WalkInTicket,
)
from counter_registry.services.summary import CounterSummary, build_summary
from counter_registry.services.workflow import CounterStatus, WorkflowStateMachine

logger = logging.getLogger(__name__)


@dataclass
class SaveResult:
    """What a save actually did; ``noop`` means there was nothing to persist"""

    flush: FlushResult = field(default_factory=lambda: FlushResult(flushed=False))
    notes_saved: bool = False
    fields_saved: List[str] = field(default_factory=list)
    counter_created: bool = False

    @property
    def noop(self) -> bool:
        return self.flush.noop and not self.notes_saved and not self.fields_saved and not self.counter_created


def _to_quantity(value) -> float:
    if isinstance(value, bool):
        raise MetricValidationError("Quantity must be a number")
    try:
        qty = float(value)
    except (TypeError, ValueError):
        raise MetricValidationError(f"Quantity must be a number, got {value!r}") from None
    if not math.isfinite(qty):
        raise MetricValidationError("Quantity must be a finite number")
    if qty < 0:
        raise MetricValidationError("Quantity cannot be negative")
    return qty


class CounterEditingSession:
    def __init__(
        self,
        gateway: CounterGateway,
        catalog: Catalog,
        store: Optional[MetricStore] = None,
        workflow: Optional[WorkflowStateMachine] = None,
        manager_id: Optional[int] = None,
        product_id: Optional[int] = None,
    ):
        self.gateway = gateway
        self.catalog = catalog
        self.store = store if store is not None else MetricStore(gateway)
        self.workflow = workflow if workflow is not None else WorkflowStateMachine()
        self.context = DerivationContext(catalog)

        self.counter_date: Optional[date] = None
        self.counter: Optional[Dict[str, Any]] = None
        self.manager_id = manager_id
        self.product_id = product_id
        self.staff_ids: Set[int] = set()
        self._pending_fields: Set[str] = set()

        self.stored_notes: Optional[str] = None
        self.manual_notes = ""
        self.discounts: List[str] = []
        self.walk_in_cash: Dict[int, float] = {}
        self.walk_in_tickets: Dict[int, List[WalkInTicket]] = {}
        self.free_entries: Dict[int, FreeSnapshotEntry] = {}
        self.selected_channel_ids: Set[int] = set()
        self.after_cutoff_channel_ids: Set[int] = set()

    @classmethod
    async def start(cls, gateway: CounterGateway, counter_date: date, **kwargs) -> "CounterEditingSession":
        """Fetch the catalog once and open the counter for ``counter_date``"""
        catalog = await gateway.fetch_catalog()
        session = cls(gateway, catalog, **kwargs)
        await session.open_date(counter_date)
        return session

    # -- state -----------------------------------------------------------

    @property
    def counter_id(self) -> Optional[int]:
        return self.counter["id"] if self.counter else None

    @property
    def status(self) -> CounterStatus:
        return self.workflow.status

    @property
    def dirty_count(self) -> int:
        return self.store.dirty_count

    @property
    def notes_dirty(self) -> bool:
        return self.computed_notes() != (self.stored_notes or "")

    @property
    def has_unsaved_changes(self) -> bool:
        return self.store.has_dirty or bool(self._pending_fields) or self.notes_dirty

    def summary_channel_ids(self) -> Set[int]:
        return set(self.selected_channel_ids) | set(self.after_cutoff_channel_ids)

    def metric(self, channel_id: int, kind: str, tally_type: str, addon_id=None, period=None) -> float:
        return self.store.qty(MetricKey.build(channel_id, kind, addon_id, tally_type, period))

    def _reset(self, counter_date: Optional[date]) -> None:
        self.counter_date = counter_date
        self.counter = None
        self.staff_ids = set()
        self._pending_fields = set()
        self.stored_notes = None
        self.manual_notes = ""
        self.discounts = []
        self.walk_in_cash = {}
        self.walk_in_tickets = {}
        self.free_entries = {}
        self.selected_channel_ids = set()
        self.after_cutoff_channel_ids = set()
        self.context.cash_currency_by_channel.clear()
        self.context.cash_overrides_by_channel.clear()
        self.store.load([], counter_id=None)
        self.store.counter_id = None
        self.workflow.reset()

    def _adopt_counter(self, payload: Dict[str, Any]) -> None:
        counter = payload["counter"]
        self.counter = counter
        self.store.counter_id = counter["id"]
        self.stored_notes = counter.get("notes")
        self.manager_id = counter.get("userId")
        self.product_id = counter.get("productId")
        self.staff_ids = {entry["userId"] for entry in payload.get("staff") or []}
        if payload.get("channels"):
            self.catalog.channels = [ChannelConfig.from_dict(item) for item in payload["channels"]]
        if payload.get("addons"):
            self.catalog.addons = [AddonConfig.from_dict(item) for item in payload["addons"]]

    def _load_payload(self, payload: Dict[str, Any]) -> None:
        self._adopt_counter(payload)
        self.store.load(metrics_from_payload(payload), counter_id=self.counter_id)
        self.workflow.reset(self.counter.get("status") or CounterStatus.draft)

        notes = self.stored_notes
        self.manual_notes = snapshot_codec.strip_snapshots(notes)
        self.discounts = snapshot_codec.parse_discounts(notes)
        self.free_entries = snapshot_codec.decode_free(notes)
        self._restore_cash_state(snapshot_codec.decode(notes))
        self._restore_selection()

    def _restore_cash_state(self, snapshot: Dict[int, CashSnapshotEntry]) -> None:
        for channel in self.catalog.channels:
            cash_cell = self.store.get(MetricKey.build(channel.id, KIND_CASH, None, TALLY_ATTENDED))
            entry = snapshot.get(channel.id)
            if channel.is_walk_in:
                if cash_cell is not None and cash_cell.qty > 0:
                    self.walk_in_cash[channel.id] = cash_cell.qty
                elif entry is not None and entry.amount > 0:
                    self.walk_in_cash[channel.id] = entry.amount
                if entry is not None and entry.tickets:
                    self.walk_in_tickets[channel.id] = list(entry.tickets)
                continue
            if not channel.is_cash_payment:
                continue

            currency = entry.currency if entry is not None else CURRENCY_PLN
            if currency != CURRENCY_PLN:
                self.context.cash_currency_by_channel[channel.id] = currency
            if cash_cell is not None:
                stored_amount = cash_cell.qty
            elif entry is not None:
                stored_amount = entry.amount
            else:
                continue
            price = channel.cash_price_for(currency)
            attended = self.metric(channel.id, KIND_PEOPLE, TALLY_ATTENDED)
            if price is None:
                is_override = stored_amount > 0
            else:
                is_override = not values_are_close(round_amount(price * attended), stored_amount)
            if is_override:
                self.context.cash_overrides_by_channel[channel.id] = round_amount(stored_amount)

    def _restore_selection(self) -> None:
        for cell in self.store.cells():
            if cell.kind == KIND_CASH or cell.qty <= 0:
                continue
            channel = self.catalog.channel(cell.channel_id)
            if channel is None:
                continue
            self.selected_channel_ids.add(channel.id)
            if channel.is_after_cutoff:
                self.after_cutoff_channel_ids.add(channel.id)

    # -- edits -----------------------------------------------------------

    def set_metric(
        self,
        channel_id: int,
        kind: str,
        tally_type: str,
        qty,
        addon_id: Optional[int] = None,
        period: Optional[str] = None,
    ) -> List[MetricCell]:
        """
        Apply one edit and the cells derived from it.

        Returns:
            Every cell written, the edit first

        Raises:
            MetricValidationError: If the edit is rejected; nothing is marked dirty
        """
        if period not in PERIODS:
            raise MetricValidationError(f"Invalid period: {period}")
        edit = MetricCell(
            counter_id=self.counter_id,
            channel_id=channel_id,
            kind=kind,
            addon_id=addon_id,
            tally_type=tally_type,
            period=period,
            qty=_to_quantity(qty),
        )
        merged = self.store.merged()
        validate_edit(merged, edit, self.catalog)
        previous = merged.get(edit.key)
        previous_qty = previous.qty if previous is not None else 0.0

        written = [self.store.set(edit)]
        for cell in derive(self.store.merged(), edit, previous_qty, self.context):
            written.append(self.store.set(cell))
        return written

    def _write_cash(self, channel_id: int, amount: float) -> None:
        key = MetricKey.build(channel_id, KIND_CASH, None, TALLY_ATTENDED)
        existing = self.store.get(key)
        if existing is None and amount <= 0:
            return
        if existing is not None and values_are_close(existing.qty, amount):
            return
        self.store.set(MetricCell.from_key(self.counter_id, key, amount))

    def _require_cash_channel(self, channel_id: int) -> ChannelConfig:
        channel = self.catalog.channel(channel_id)
        if channel is None:
            raise MetricValidationError(f"Unknown channel {channel_id}")
        if not channel.is_cash_payment or channel.is_walk_in:
            raise MetricValidationError(f"{channel.name} does not derive cash from attendance")
        return channel

    def recompute_cash(self, channel_id: int) -> None:
        channel = self._require_cash_channel(channel_id)
        attended = self.metric(channel_id, KIND_PEOPLE, TALLY_ATTENDED)
        self._write_cash(channel_id, expected_cash_amount(channel, attended, self.context))

    def set_cash_currency(self, channel_id: int, currency: str) -> None:
        if currency not in CASH_CURRENCIES:
            raise MetricValidationError(f"Unsupported cash currency: {currency}")
        self._require_cash_channel(channel_id)
        if currency == CURRENCY_PLN:
            self.context.cash_currency_by_channel.pop(channel_id, None)
        else:
            self.context.cash_currency_by_channel[channel_id] = currency
        self.recompute_cash(channel_id)

    def set_cash_override(self, channel_id: int, amount) -> None:
        """Freeze the channel's cash amount; ``None`` clears the override"""
        if amount is None:
            self.clear_cash_override(channel_id)
            return
        self._require_cash_channel(channel_id)
        value = round_amount(_to_quantity(amount))
        self.context.cash_overrides_by_channel[channel_id] = value
        self._write_cash(channel_id, value)

    def clear_cash_override(self, channel_id: int) -> None:
        self._require_cash_channel(channel_id)
        self.context.cash_overrides_by_channel.pop(channel_id, None)
        self.recompute_cash(channel_id)

    def set_walk_in_cash(self, channel_id: int, amount) -> None:
        channel = self.catalog.channel(channel_id)
        if channel is None or not channel.is_walk_in:
            raise MetricValidationError(f"Channel {channel_id} is not a walk-in channel")
        value = round_amount(_to_quantity(amount or 0))
        if value > 0:
            self.walk_in_cash[channel_id] = value
        else:
            self.walk_in_cash.pop(channel_id, None)
        self._write_cash(channel_id, value)

    def _require_walk_in(self, channel_id: int) -> ChannelConfig:
        channel = self.catalog.channel(channel_id)
        if channel is None or not channel.is_walk_in:
            raise MetricValidationError(f"Channel {channel_id} is not a walk-in channel")
        return channel

    def ticket_cash(self, channel_id: int, ticket: str, currency: str, people, addons=None) -> Optional[float]:
        """Price of a ticket line from the unit price lists; None when the ticket has no list price"""
        channel = self._require_walk_in(channel_id)
        unit_price = walk_in_ticket_unit_price(channel, ticket, currency)
        if unit_price is None:
            return None
        total = unit_price * _to_quantity(people)
        for addon_id, qty in (addons or {}).items():
            addon_price = walk_in_addon_unit_price(self.catalog.addon(addon_id), currency)
            if addon_price is not None:
                total += addon_price * _to_quantity(qty)
        return round_amount(total)

    def set_walk_in_ticket(
        self,
        channel_id: int,
        ticket: str,
        currency: str,
        people,
        addons: Optional[Dict[int, int]] = None,
        cash=None,
    ) -> TicketCurrency:
        """
        Record what one walk-in ticket sold in one currency.

        Cash is priced from the ticket and addon price lists unless ``cash``
        is given; Custom tickets have no list price and need it. The ticket
        label joins the discounts, and the walk-in attended count and PLN
        cash follow the ticket totals.

        Raises:
            MetricValidationError: If the channel, ticket, currency or an addon is unknown
        """
        self._require_walk_in(channel_id)
        labels = snapshot_codec.normalize_discounts([ticket])
        if not labels:
            raise MetricValidationError(f"Unknown walk-in ticket: {ticket}")
        label = labels[0]
        if currency not in CASH_CURRENCIES:
            raise MetricValidationError(f"Unsupported cash currency: {currency}")

        addon_counts: Dict[int, int] = {}
        for addon_id, qty in (addons or {}).items():
            if self.catalog.addon(addon_id) is None:
                raise MetricValidationError(f"Unknown addon: {addon_id}")
            count = int(round(_to_quantity(qty)))
            if count > 0:
                addon_counts[addon_id] = count

        head_count = int(round(_to_quantity(people)))
        if cash is None:
            amount = self.ticket_cash(channel_id, label, currency, head_count, addon_counts)
            if amount is None:
                raise MetricValidationError(f"{label} tickets in {currency} need a cash amount")
        else:
            amount = round_amount(_to_quantity(cash))

        sold = TicketCurrency(currency=currency, people=head_count, cash=amount, addons=addon_counts)
        tickets = self.walk_in_tickets.setdefault(channel_id, [])
        entry = next((item for item in tickets if item.name == label), None)
        if entry is None:
            entry = WalkInTicket(name=label)
            tickets.append(entry)
        entry.currencies = [item for item in entry.currencies if item.currency != currency]
        if sold.people > 0 or sold.cash > 0 or sold.addons:
            entry.currencies.append(sold)
        if not entry.currencies:
            tickets.remove(entry)
        self._sync_walk_in_tickets(channel_id)
        return sold

    def remove_walk_in_ticket(self, channel_id: int, ticket: str) -> None:
        self._require_walk_in(channel_id)
        labels = snapshot_codec.normalize_discounts([ticket])
        ticket = labels[0] if labels else ticket
        tickets = self.walk_in_tickets.get(channel_id, [])
        self.walk_in_tickets[channel_id] = [item for item in tickets if item.name != ticket]
        self.discounts = [label for label in self.discounts if label != ticket]
        self._sync_walk_in_tickets(channel_id)

    def _sync_walk_in_tickets(self, channel_id: int) -> None:
        tickets = self.walk_in_tickets.get(channel_id) or []
        if not tickets:
            self.walk_in_tickets.pop(channel_id, None)
        self.discounts = snapshot_codec.normalize_discounts(self.discounts + [item.name for item in tickets])

        # The cash cell is PLN only; EUR ticket cash lives in the snapshot
        people = sum(sold.people for item in tickets for sold in item.currencies)
        pln_cash = sum(sold.cash for item in tickets for sold in item.currencies if sold.currency == CURRENCY_PLN)
        self.set_metric(channel_id, KIND_PEOPLE, TALLY_ATTENDED, people)
        self.set_walk_in_cash(channel_id, pln_cash)

    def set_discounts(self, discounts: Iterable[str]) -> None:
        self.discounts = snapshot_codec.normalize_discounts(discounts)

    def set_notes(self, text: Optional[str]) -> None:
        self.manual_notes = snapshot_codec.strip_snapshots(text)

    def set_free_people(self, channel_id: int, qty: int, note: str = "") -> None:
        entry = self.free_entries.setdefault(channel_id, FreeSnapshotEntry())
        people = FreeEntry(qty=max(0, int(round(_to_quantity(qty)))), note=(note or "").strip())
        entry.people = None if people.is_empty else people
        if entry.is_empty:
            self.free_entries.pop(channel_id, None)

    def set_free_addon(self, channel_id: int, addon_id: int, qty: int, note: str = "") -> None:
        entry = self.free_entries.setdefault(channel_id, FreeSnapshotEntry())
        addon = FreeEntry(qty=max(0, int(round(_to_quantity(qty)))), note=(note or "").strip())
        if addon.is_empty:
            entry.addons.pop(addon_id, None)
        else:
            entry.addons[addon_id] = addon
        if entry.is_empty:
            self.free_entries.pop(channel_id, None)

    def select_channels(self, channel_ids: Iterable[int]) -> None:
        self.selected_channel_ids = {cid for cid in channel_ids if self.catalog.channel(cid) is not None}

    def select_after_cutoff_channels(self, channel_ids: Iterable[int]) -> None:
        eligible = set(self.catalog.after_cutoff_channel_ids())
        self.after_cutoff_channel_ids = {cid for cid in channel_ids if cid in eligible}

    def set_manager(self, manager_id: int) -> None:
        if manager_id != self.manager_id:
            self.manager_id = manager_id
            self._pending_fields.add("manager")

    def set_product(self, product_id: Optional[int]) -> None:
        if product_id != self.product_id:
            self.product_id = product_id
            self._pending_fields.add("product")

    def set_staff(self, staff_ids: Iterable[int]) -> None:
        next_ids = set(staff_ids)
        if next_ids != self.staff_ids:
            self.staff_ids = next_ids
            self._pending_fields.add("staff")

    # -- notes -----------------------------------------------------------

    def _snapshot_entries(self) -> Dict[int, CashSnapshotEntry]:
        active = self.summary_channel_ids() | set(self.catalog.walk_in_channel_ids())
        entries: Dict[int, CashSnapshotEntry] = {}
        for channel in self.catalog.channels:
            if channel.id not in active or not (channel.is_walk_in or channel.is_cash_payment):
                continue
            qty = max(0, int(round(self.metric(channel.id, KIND_PEOPLE, TALLY_ATTENDED))))
            if channel.is_walk_in:
                entry = CashSnapshotEntry(
                    CURRENCY_PLN,
                    self.walk_in_cash.get(channel.id, 0.0),
                    qty,
                    tickets=list(self.walk_in_tickets.get(channel.id, [])),
                )
            else:
                attended = self.metric(channel.id, KIND_PEOPLE, TALLY_ATTENDED)
                entry = CashSnapshotEntry(
                    self.context.currency_for(channel.id),
                    expected_cash_amount(channel, attended, self.context),
                    qty,
                )
            if not entry.is_empty:
                entries[channel.id] = entry
        return entries

    def computed_notes(self) -> str:
        snapshot = self._snapshot_entries()
        return snapshot_codec.rebuild(
            self.manual_notes,
            self.discounts,
            snapshot_codec.cash_totals(snapshot).items(),
            snapshot,
            self.free_entries,
        )

    def notes_preview(self) -> str:
        names = {channel.id: channel.name for channel in self.catalog.channels}
        return snapshot_codec.notes_preview(self.computed_notes(), names)

    # -- persistence -----------------------------------------------------

    async def _ensure_counter(self) -> None:
        if self.counter_date is None:
            raise PersistenceError("No date is open")
        if self.manager_id is None:
            raise PersistenceError("A manager is required before the counter can be created")
        payload = await self.gateway.ensure_counter_for_date(
            self.counter_date,
            self.manager_id,
            product_id=self.product_id,
            staff_ids=sorted(self.staff_ids),
        )
        self._adopt_counter(payload)
        self._pending_fields.clear()
        logger.info("Counter %s ensured for %s", self.counter_id, self.counter_date)

    async def _persist_fields(self) -> List[str]:
        saved = []
        for name in ("manager", "product", "staff"):
            if name not in self._pending_fields:
                continue
            if name == "manager":
                payload = await self.gateway.update_counter_manager(self.counter_id, self.manager_id)
            elif name == "product":
                payload = await self.gateway.update_counter_product(self.counter_id, self.product_id)
            else:
                payload = await self.gateway.update_counter_staff(self.counter_id, sorted(self.staff_ids))
            self._pending_fields.discard(name)
            self.counter = payload["counter"]
            saved.append(name)
        return saved

    async def _persist_notes(self) -> bool:
        notes = self.computed_notes()
        if notes == (self.stored_notes or ""):
            return False
        payload = await self.gateway.update_counter_notes(self.counter_id, notes or None)
        self.counter = payload["counter"]
        self.stored_notes = self.counter.get("notes")
        return True

    async def save(self) -> SaveResult:
        """
        Persist pending fields, dirty metrics and notes without changing the stage.

        Raises:
            PersistenceError: If any write fails; unsaved state is kept
        """
        result = SaveResult()
        if self.counter_id is None:
            if not self.has_unsaved_changes:
                return result
            await self._ensure_counter()
            result.counter_created = True
        result.fields_saved = await self._persist_fields()
        result.flush = await self.store.flush()
        result.notes_saved = await self._persist_notes()
        return result

    async def transition(self, target) -> CounterStatus:
        """
        Move the counter to ``target`` once everything pending is persisted.

        Raises:
            InvalidTransitionError: If the move skips a stage
            PersistenceError: If any write fails; the stage is left unchanged
        """
        target_status = self.workflow.validate(target)
        current = self.workflow.status
        if self.counter_id is None and target_status is CounterStatus.draft:
            self.workflow.apply(target_status)
            return target_status

        try:
            if self.counter_id is None:
                await self._ensure_counter()
            await self._persist_fields()
            await self.store.flush()
            await self._persist_notes()
            payload = await self.gateway.update_counter_status(self.counter_id, target_status.value)
        except PersistenceError:
            logger.warning(
                "Transition %s -> %s failed for %s; stage kept",
                current.value, target_status.value, self.counter_date,
            )
            raise

        self.counter = payload["counter"]
        self.workflow.apply(target_status)
        logger.info("Counter %s moved %s -> %s", self.counter_id, current.value, target_status.value)
        return target_status

    async def next(self) -> CounterStatus:
        target = self.workflow.next_status()
        if target is None:
            raise InvalidTransitionError("Counter is already final")
        return await self.transition(target)

    async def previous(self) -> CounterStatus:
        target = self.workflow.previous_status()
        if target is None:
            raise InvalidTransitionError("Counter is already a draft")
        return await self.transition(target)

    async def open_date(self, counter_date: date, save_first: bool = False) -> bool:
        """
        Switch the session to another date.

        Unsaved edits are discarded unless ``save_first`` is set; a failed
        save aborts the switch. Returns False when no counter exists yet for
        the date (the session is then empty and ready to create one).
        """
        if self.counter_date is not None and self.has_unsaved_changes:
            if save_first:
                await self.save()
            else:
                logger.info("Discarding unsaved changes for %s", self.counter_date)
                self.store.discard()

        payload = await self.gateway.fetch_counter_by_date(counter_date)
        self._reset(counter_date)
        if payload is None:
            return False
        self._load_payload(payload)
        return True

    async def reload(self) -> bool:
        if self.counter_date is None:
            return False
        return await self.open_date(self.counter_date)

    async def delete(self) -> None:
        if self.counter_id is not None:
            await self.gateway.delete_counter(self.counter_id)
            logger.info("Counter %s deleted", self.counter_id)
        self._reset(self.counter_date)

    def summary(self) -> Optional[CounterSummary]:
        return build_summary(
            self.store.merged(),
            self.catalog.channels,
            self.catalog.addons,
            self.summary_channel_ids(),
        )
