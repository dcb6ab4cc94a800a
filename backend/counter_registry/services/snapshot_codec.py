"""
Codec for the structured data kept inside ``Counter.notes``.

There is no cash ledger table, so the per-channel cash snapshot travels as a
JSON block between two marker lines inside the free-text notes. The notes
can also hold one auto-generated discount line, one auto-generated cash line
and a complimentary ("free") entries block. Everything else is user text and
is passed through untouched.

Business code must go through ``decode`` / ``rebuild`` (and the helpers
below); the marker strings and JSON shape are persisted and must stay stable.
"""
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from counter_registry.core.metrics import CASH_CURRENCIES, CURRENCY_PLN, round_amount

logger = logging.getLogger(__name__)

CASH_SNAPSHOT_START = "-- CASH-SNAPSHOT START --"
CASH_SNAPSHOT_END = "-- CASH-SNAPSHOT END --"
CASH_SNAPSHOT_VERSION = 2

FREE_SNAPSHOT_START = "-- FREE-SNAPSHOT START --"
FREE_SNAPSHOT_END = "-- FREE-SNAPSHOT END --"
FREE_SNAPSHOT_VERSION = 1

DISCOUNT_NOTE_PREFIX = "Walk-In Discounts applied:"
CASH_NOTE_PREFIX = "Cash Collected:"

WALK_IN_DISCOUNT_OPTIONS = [
    "Normal",
    "Custom",
    "Second Timers",
    "Third Timers",
    "Half Price",
    "Students",
    "Group",
]
_DISCOUNT_LOOKUP = {label.lower(): label for label in WALK_IN_DISCOUNT_OPTIONS}

_BLOCK_MARKERS = {
    CASH_SNAPSHOT_START: CASH_SNAPSHOT_END,
    FREE_SNAPSHOT_START: FREE_SNAPSHOT_END,
}


@dataclass
class TicketCurrency:
    """People, cash and addon counts sold under one walk-in ticket in one currency"""

    currency: str = CURRENCY_PLN
    people: int = 0
    cash: float = 0.0
    addons: Dict[int, int] = field(default_factory=dict)

    def to_json(self) -> dict:
        return {
            "currency": self.currency,
            "people": int(self.people),
            "cash": _json_number(self.cash),
            "addons": {str(addon_id): int(qty) for addon_id, qty in self.addons.items()},
        }


@dataclass
class WalkInTicket:
    name: str
    currencies: List[TicketCurrency] = field(default_factory=list)

    def to_json(self) -> dict:
        return {"name": self.name, "currencies": [currency.to_json() for currency in self.currencies]}


@dataclass
class CashSnapshotEntry:
    currency: str = CURRENCY_PLN
    amount: float = 0.0
    qty: int = 0
    tickets: List[WalkInTicket] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.amount <= 0 and self.qty <= 0 and self.currency == CURRENCY_PLN and not self.tickets

    def cash_by_currency(self) -> Dict[str, float]:
        """Cash per currency; ticket cash wins over the entry amount when tickets exist"""
        totals: Dict[str, float] = {}
        if self.tickets:
            for ticket in self.tickets:
                for sold in ticket.currencies:
                    if sold.cash > 0:
                        totals[sold.currency] = round_amount(totals.get(sold.currency, 0.0) + sold.cash)
        elif self.amount > 0:
            totals[self.currency] = round_amount(self.amount)
        return totals

    def to_json(self) -> dict:
        payload = {"currency": self.currency, "amount": _json_number(self.amount), "qty": int(self.qty)}
        if self.tickets:
            payload["tickets"] = [ticket.to_json() for ticket in self.tickets]
        return payload


@dataclass
class FreeEntry:
    qty: int = 0
    note: str = ""

    @property
    def is_empty(self) -> bool:
        return self.qty <= 0 and not self.note

    def to_json(self) -> dict:
        return {"qty": int(self.qty), "note": self.note}


@dataclass
class FreeSnapshotEntry:
    people: Optional[FreeEntry] = None
    addons: Dict[int, FreeEntry] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.people is None and not self.addons

    def to_json(self) -> dict:
        payload: dict = {}
        if self.people is not None:
            payload["people"] = self.people.to_json()
        if self.addons:
            payload["addons"] = {str(addon_id): entry.to_json() for addon_id, entry in self.addons.items()}
        return payload


def _json_number(value: float):
    number = float(value)
    return int(number) if number.is_integer() else number


def _to_number(value) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _to_channel_id(value) -> Optional[int]:
    number = _to_number(value)
    if number is None or not number.is_integer():
        return None
    return int(number)


def _extract_block(notes: Optional[str], start: str, end: str) -> Optional[dict]:
    if not notes:
        return None
    # The block is the last START before the first END; earlier stray STARTs are user text
    end_index = notes.find(end)
    if end_index == -1:
        return None
    start_index = notes.rfind(start, 0, end_index)
    if start_index == -1:
        return None
    raw = notes[start_index + len(start):end_index].strip()
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        logger.debug("Ignoring unreadable snapshot block %s: %s", start, exc)
        return None
    if not isinstance(parsed, dict):
        return None
    channels = parsed.get("channels")
    if not isinstance(channels, dict):
        return None
    return channels


def decode(notes: Optional[str]) -> Dict[int, CashSnapshotEntry]:
    """Read the cash snapshot out of ``notes``; malformed or missing blocks give ``{}``"""
    entries: Dict[int, CashSnapshotEntry] = {}
    channels = _extract_block(notes, CASH_SNAPSHOT_START, CASH_SNAPSHOT_END)
    if not channels:
        return entries

    for channel_key, value in channels.items():
        if not isinstance(value, dict):
            continue
        channel_id = _to_channel_id(channel_key)
        amount = _to_number(value.get("amount"))
        if channel_id is None or amount is None:
            continue
        currency = value.get("currency")
        if currency not in CASH_CURRENCIES:
            currency = CURRENCY_PLN
        qty_raw = _to_number(value.get("qty"))
        qty = int(round(qty_raw)) if qty_raw is not None and qty_raw > 0 else 0
        entries[channel_id] = CashSnapshotEntry(
            currency=currency,
            amount=round_amount(amount),
            qty=qty,
            tickets=_decode_tickets(value.get("tickets")),
        )
    return entries


def _decode_ticket_currency(value) -> Optional[TicketCurrency]:
    if not isinstance(value, dict) or value.get("currency") not in CASH_CURRENCIES:
        return None
    people = _to_number(value.get("people"))
    cash = _to_number(value.get("cash"))
    addons: Dict[int, int] = {}
    addons_raw = value.get("addons")
    if isinstance(addons_raw, dict):
        for addon_key, qty_raw in addons_raw.items():
            addon_id = _to_channel_id(addon_key)
            qty = _to_number(qty_raw)
            if addon_id is None or qty is None:
                continue
            if int(round(qty)) > 0:
                addons[addon_id] = int(round(qty))
    return TicketCurrency(
        currency=value["currency"],
        people=max(0, int(round(people))) if people is not None else 0,
        cash=round_amount(cash) if cash is not None else 0.0,
        addons=addons,
    )


def _decode_tickets(value) -> List[WalkInTicket]:
    tickets: List[WalkInTicket] = []
    if not isinstance(value, list):
        return tickets
    for candidate in value:
        if not isinstance(candidate, dict):
            continue
        name = candidate.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        currencies_raw = candidate.get("currencies")
        if not isinstance(currencies_raw, list):
            continue
        currencies = [c for c in (_decode_ticket_currency(item) for item in currencies_raw) if c is not None]
        if currencies:
            tickets.append(WalkInTicket(name=name, currencies=currencies))
    return tickets


def encode(channels: Mapping[int, CashSnapshotEntry]) -> str:
    payload = {
        "version": CASH_SNAPSHOT_VERSION,
        "channels": {str(channel_id): entry.to_json() for channel_id, entry in channels.items()},
    }
    body = json.dumps(payload, separators=(",", ":"))
    return f"{CASH_SNAPSHOT_START}\n{body}\n{CASH_SNAPSHOT_END}"


def _decode_free_entry(value) -> Optional[FreeEntry]:
    if not isinstance(value, dict):
        return None
    qty_raw = _to_number(value.get("qty")) or 0.0
    qty = max(0, int(round(qty_raw)))
    note_raw = value.get("note")
    note = note_raw.strip() if isinstance(note_raw, str) else ("" if note_raw is None else str(note_raw))
    entry = FreeEntry(qty=qty, note=note)
    return None if entry.is_empty else entry


def decode_free(notes: Optional[str]) -> Dict[int, FreeSnapshotEntry]:
    entries: Dict[int, FreeSnapshotEntry] = {}
    channels = _extract_block(notes, FREE_SNAPSHOT_START, FREE_SNAPSHOT_END)
    if not channels:
        return entries

    for channel_key, value in channels.items():
        channel_id = _to_channel_id(channel_key)
        if channel_id is None or not isinstance(value, dict):
            continue
        entry = FreeSnapshotEntry(people=_decode_free_entry(value.get("people")))
        addons_raw = value.get("addons")
        if isinstance(addons_raw, dict):
            for addon_key, addon_value in addons_raw.items():
                addon_id = _to_channel_id(addon_key)
                addon_entry = _decode_free_entry(addon_value)
                if addon_id is not None and addon_entry is not None:
                    entry.addons[addon_id] = addon_entry
        if not entry.is_empty:
            entries[channel_id] = entry
    return entries


def encode_free(channels: Mapping[int, FreeSnapshotEntry]) -> str:
    payload = {
        "version": FREE_SNAPSHOT_VERSION,
        "channels": {str(channel_id): entry.to_json() for channel_id, entry in channels.items()},
    }
    body = json.dumps(payload, separators=(",", ":"))
    return f"{FREE_SNAPSHOT_START}\n{body}\n{FREE_SNAPSHOT_END}"


def _is_auto_line(line: str) -> bool:
    lower = line.strip().lower()
    return lower.startswith(DISCOUNT_NOTE_PREFIX.lower()) or lower.startswith(CASH_NOTE_PREFIX.lower())


def _block_end(lines: List[str], start_index: int) -> Optional[int]:
    """Index of the END line closing the block opened at ``start_index``, None if unmatched"""
    start = lines[start_index].strip()
    end = _BLOCK_MARKERS[start]
    for index in range(start_index + 1, len(lines)):
        trimmed = lines[index].strip()
        if trimmed == end:
            return index
        if trimmed == start:
            return None
    return None


def _user_lines(notes: Optional[str]) -> List[str]:
    source = (notes or "").splitlines()
    lines: List[str] = []
    index = 0
    while index < len(source):
        line = source[index]
        if line.strip() in _BLOCK_MARKERS:
            end_index = _block_end(source, index)
            if end_index is not None:
                index = end_index + 1
                continue
        elif _is_auto_line(line):
            index += 1
            continue
        lines.append(line.rstrip())
        index += 1

    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return lines


def strip_snapshots(notes: Optional[str]) -> str:
    """The user-editable part of the notes: no snapshot blocks, no auto lines"""
    return "\n".join(_user_lines(notes))


def normalize_discounts(values: Iterable[str]) -> List[str]:
    selected = {_DISCOUNT_LOOKUP[v.strip().lower()] for v in values if v and v.strip().lower() in _DISCOUNT_LOOKUP}
    return [option for option in WALK_IN_DISCOUNT_OPTIONS if option in selected]


def parse_discounts(notes: Optional[str]) -> List[str]:
    for line in (notes or "").splitlines():
        trimmed = line.strip()
        if not trimmed.lower().startswith(DISCOUNT_NOTE_PREFIX.lower()):
            continue
        remainder = trimmed[len(DISCOUNT_NOTE_PREFIX):].split("|")[0]
        return normalize_discounts(token for token in remainder.split(","))
    return []


def format_cash_totals(cash_totals_by_currency: Iterable[Tuple[str, float]]) -> str:
    return ", ".join(f"{currency} {amount:.2f}" for currency, amount in cash_totals_by_currency)


def rebuild(
    existing_notes: Optional[str],
    discounts: Iterable[str],
    cash_totals_by_currency: Iterable[Tuple[str, float]],
    snapshot_channels: Mapping[int, CashSnapshotEntry],
    free_channels: Optional[Mapping[int, FreeSnapshotEntry]] = None,
) -> str:
    """
    Recompute the notes string.

    User lines are kept in order; prior auto lines and snapshot blocks are
    replaced by the ones derived from the arguments. Running it again on its
    own output with the same arguments returns the same string.
    """
    lines = _user_lines(existing_notes)

    discount_labels = [d.strip() for d in discounts if d and d.strip()]
    if discount_labels:
        lines.append(f"{DISCOUNT_NOTE_PREFIX} {', '.join(discount_labels)}")

    totals = [(currency, amount) for currency, amount in cash_totals_by_currency if amount and amount > 0]
    if totals:
        lines.append(f"{CASH_NOTE_PREFIX} {format_cash_totals(totals)}")

    blocks: List[str] = []
    cash_channels = {
        channel_id: entry for channel_id, entry in snapshot_channels.items() if not entry.is_empty
    }
    if cash_channels:
        blocks.append(encode(cash_channels))
    free = {channel_id: entry for channel_id, entry in (free_channels or {}).items() if not entry.is_empty}
    if free:
        blocks.append(encode_free(free))

    for block in blocks:
        if lines:
            lines.append("")
        lines.append(block)
    return "\n".join(lines)


def cash_totals(entries: Mapping[int, CashSnapshotEntry]) -> Dict[str, float]:
    totals: Dict[str, float] = {}
    for entry in entries.values():
        for currency, amount in entry.cash_by_currency().items():
            totals[currency] = round_amount(totals.get(currency, 0.0) + amount)
    return totals


def notes_preview(notes: Optional[str], channel_names: Optional[Mapping[int, str]] = None) -> str:
    """Human readable notes: user text followed by one cash line per snapshot channel"""
    names = channel_names or {}
    lines = []
    manual = strip_snapshots(notes)
    if manual:
        lines.append(manual)
    discounts = parse_discounts(notes)
    if discounts:
        lines.append(f"{DISCOUNT_NOTE_PREFIX} {', '.join(discounts)}")
    for channel_id, entry in decode(notes).items():
        name = names.get(channel_id, f"Channel {channel_id}")
        totals = entry.cash_by_currency()
        if totals:
            lines.append(f"Cash Collected ({name}): {format_cash_totals(totals.items())}")
        ticket_names = list(dict.fromkeys(ticket.name for ticket in entry.tickets))
        if ticket_names:
            lines.append(f"Tickets ({name}): {', '.join(ticket_names)}")
    return "\n".join(lines)
