"""
Derived metric rules for counter edits.

Every accepted edit to a people or addon cell runs the same fixed pipeline:

    1. cash derivation          (attended people -> cash_payment amount)
    2. after-cutoff sync        (after = max(0, attended - before))
    3. cocktail co-movement     (cocktail addon delta -> people cell)
    4. after-cutoff attendance  (direct after-cutoff entry -> attended)

Rules are plain functions over a read-only snapshot of the merged metrics.
Their writes land in an overlay so later rules see earlier results. Cells
written by rules 3 and 4 get one fixed second pass: people cells from the
cocktail rule go through cash derivation and (unless the edit is after
cut-off) after-cutoff sync, the attended cell from rule 4 through cash
derivation only. The second pass does not recurse.
"""
import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from counter_registry.core.exceptions import MetricValidationError
from counter_registry.core.metrics import (
    AFTER_CUTOFF,
    BEFORE_CUTOFF,
    CASH_CURRENCIES,
    CURRENCY_PLN,
    KIND_ADDON,
    KIND_CASH,
    KIND_PEOPLE,
    METRIC_KINDS,
    PERIODS,
    TALLY_ATTENDED,
    TALLY_BOOKED,
    TALLY_TYPES,
    Catalog,
    ChannelConfig,
    MetricCell,
    MetricKey,
    round_amount,
    values_are_close,
)


@dataclass
class DerivationContext:
    catalog: Catalog
    counter_id: Optional[int] = None
    cash_currency_by_channel: Dict[int, str] = field(default_factory=dict)
    cash_overrides_by_channel: Dict[int, float] = field(default_factory=dict)

    def currency_for(self, channel_id: int) -> str:
        currency = self.cash_currency_by_channel.get(channel_id, CURRENCY_PLN)
        return currency if currency in CASH_CURRENCIES else CURRENCY_PLN

    def override_for(self, channel_id: int) -> Optional[float]:
        return self.cash_overrides_by_channel.get(channel_id)


class _Overlay:
    def __init__(self, base: Mapping[MetricKey, MetricCell], counter_id: Optional[int]):
        self._base = base
        self._counter_id = counter_id
        self.writes: Dict[MetricKey, MetricCell] = {}

    def get(self, key: MetricKey) -> Optional[MetricCell]:
        if key in self.writes:
            return self.writes[key]
        return self._base.get(key)

    def qty(self, key: MetricKey) -> float:
        cell = self.get(key)
        return cell.qty if cell is not None else 0.0

    def put(self, key: MetricKey, qty: float) -> MetricCell:
        existing = self.get(key)
        if existing is not None:
            cell = existing.with_qty(qty)
        else:
            cell = MetricCell.from_key(self._counter_id, key, qty)
        self.writes[key] = cell
        return cell


def expected_cash_amount(channel: ChannelConfig, attended_qty: float, context: DerivationContext) -> float:
    """Cash a cash-paying channel should have collected for ``attended_qty`` people"""
    override = context.override_for(channel.id)
    if override is not None:
        return round_amount(override)
    price = channel.cash_price_for(context.currency_for(channel.id))
    if price is None:
        return 0.0
    return round_amount(price * attended_qty)


def derive_cash_payment(state: _Overlay, edit: MetricCell, context: DerivationContext) -> None:
    if edit.kind != KIND_PEOPLE or edit.tally_type != TALLY_ATTENDED or edit.period is not None:
        return
    channel = context.catalog.channel(edit.channel_id)
    if channel is None or not channel.is_cash_payment or channel.is_walk_in:
        return

    desired = expected_cash_amount(channel, edit.qty, context)
    cash_key = MetricKey.build(edit.channel_id, KIND_CASH, None, TALLY_ATTENDED)
    existing = state.get(cash_key)
    if desired <= 0 and existing is None:
        return
    existing_amount = existing.qty if existing is not None else 0.0
    if not values_are_close(existing_amount, desired):
        state.put(cash_key, desired)


def sync_after_cutoff(state: _Overlay, edit: MetricCell, context: DerivationContext) -> None:
    if edit.kind not in (KIND_PEOPLE, KIND_ADDON):
        return
    touches_inputs = (edit.tally_type == TALLY_ATTENDED and edit.period is None) or (
        edit.tally_type == TALLY_BOOKED and edit.period == BEFORE_CUTOFF
    )
    if not touches_inputs:
        return
    channel = context.catalog.channel(edit.channel_id)
    if channel is None or not channel.is_after_cutoff:
        return

    base = MetricKey.build(edit.channel_id, edit.kind, edit.addon_id, TALLY_BOOKED, BEFORE_CUTOFF)
    before_qty = state.qty(base)
    attended_qty = state.qty(base.with_changes(tally_type=TALLY_ATTENDED, period=None))
    after_key = base.with_changes(period=AFTER_CUTOFF)
    diff = max(0.0, attended_qty - before_qty)

    after_cell = state.get(after_key)
    if after_cell is None:
        if diff > 0:
            state.put(after_key, diff)
    elif after_cell.qty != diff:
        state.put(after_key, diff)


def derive_cocktail_people(
    state: _Overlay,
    edit: MetricCell,
    previous_qty: float,
    context: DerivationContext,
) -> List[MetricCell]:
    if edit.kind != KIND_ADDON or edit.addon_id is None:
        return []
    addon = context.catalog.addon(edit.addon_id)
    if addon is None or not addon.is_cocktail:
        return []
    delta = edit.qty - previous_qty
    if delta == 0:
        return []

    people_key = MetricKey.build(edit.channel_id, KIND_PEOPLE, None, edit.tally_type, edit.period)
    current = state.get(people_key)
    next_qty = max(0.0, (current.qty if current is not None else 0.0) + delta)
    if current is None and next_qty <= 0:
        return []

    writes = [state.put(people_key, next_qty)]
    if edit.period == AFTER_CUTOFF:
        attended_key = people_key.with_changes(tally_type=TALLY_ATTENDED, period=None)
        attended = state.get(attended_key)
        if attended is None or attended.qty != next_qty:
            writes.append(state.put(attended_key, next_qty))
    return writes


def derive_after_cutoff_attendance(state: _Overlay, edit: MetricCell) -> Optional[MetricCell]:
    if edit.tally_type != TALLY_BOOKED or edit.period != AFTER_CUTOFF:
        return None
    attended_key = MetricKey.build(edit.channel_id, edit.kind, edit.addon_id, TALLY_ATTENDED, None)
    attended = state.get(attended_key)
    if attended is not None:
        if attended.qty == edit.qty:
            return None
        return state.put(attended_key, edit.qty)
    if edit.qty > 0:
        return state.put(attended_key, edit.qty)
    return None


def derive(
    metrics: Mapping[MetricKey, MetricCell],
    edit: MetricCell,
    previous_qty: float,
    context: DerivationContext,
) -> List[MetricCell]:
    """Return the cells that must change alongside ``edit`` (``edit`` itself excluded)."""
    if edit.kind == KIND_CASH:
        return []

    snapshot = dict(metrics)
    snapshot[edit.key] = edit
    state = _Overlay(snapshot, edit.counter_id if edit.counter_id is not None else context.counter_id)

    derive_cash_payment(state, edit, context)
    sync_after_cutoff(state, edit, context)

    for cell in derive_cocktail_people(state, edit, previous_qty, context):
        derive_cash_payment(state, cell, context)
        if edit.period != AFTER_CUTOFF:
            sync_after_cutoff(state, cell, context)

    attended = derive_after_cutoff_attendance(state, edit)
    if attended is not None:
        derive_cash_payment(state, attended, context)

    state.writes.pop(edit.key, None)
    return list(state.writes.values())


def validate_edit(
    metrics: Mapping[MetricKey, MetricCell],
    edit: MetricCell,
    catalog: Catalog,
) -> None:
    """Reject an edit before it reaches the store"""
    if edit.kind not in METRIC_KINDS:
        raise MetricValidationError(f"Invalid metric kind: {edit.kind}")
    if edit.tally_type not in TALLY_TYPES:
        raise MetricValidationError(f"Invalid tally type: {edit.tally_type}")
    if edit.period not in PERIODS:
        raise MetricValidationError(f"Invalid period: {edit.period}")
    if catalog.channel(edit.channel_id) is None:
        raise MetricValidationError(f"Unknown channel: {edit.channel_id}")
    if edit.kind == KIND_ADDON:
        if catalog.addon(edit.addon_id) is None:
            raise MetricValidationError(f"Unknown addon: {edit.addon_id}")
    elif edit.addon_id is not None:
        raise MetricValidationError(f"{edit.kind} cells cannot reference an addon")

    qty = edit.qty
    if qty is None or not math.isfinite(qty):
        raise MetricValidationError("Quantity must be a number")
    if qty < 0:
        raise MetricValidationError("Quantity cannot be negative")
    if edit.kind != KIND_ADDON:
        return

    addon = catalog.addon(edit.addon_id)
    if addon.max_per_attendee is None or addon.is_cocktail:
        return
    people_key = MetricKey.build(edit.channel_id, KIND_PEOPLE, None, edit.tally_type, edit.period)
    people_cell = metrics.get(people_key)
    people_qty = people_cell.qty if people_cell is not None else 0.0
    if people_qty <= 0:
        return
    cap = addon.max_per_attendee * people_qty
    if qty > cap:
        raise MetricValidationError(
            f"{addon.name} cannot exceed {addon.max_per_attendee} per attendee (cap {cap:g})"
        )
