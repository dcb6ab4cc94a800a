"""
Metric cell types and catalog configs shared by the counter registry.

A metric cell is addressed by (counter, channel, kind, addon, tally type,
period). Periods are normalized before a key is built so that a booked cell
without a period and a booked/before_cutoff cell are the same cell.
"""
import math
import re
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional

from counter_registry.core.config import settings

KIND_PEOPLE = "people"
KIND_ADDON = "addon"
KIND_CASH = "cash_payment"
METRIC_KINDS = (KIND_PEOPLE, KIND_ADDON, KIND_CASH)

TALLY_BOOKED = "booked"
TALLY_ATTENDED = "attended"
TALLY_TYPES = (TALLY_BOOKED, TALLY_ATTENDED)

BEFORE_CUTOFF = "before_cutoff"
AFTER_CUTOFF = "after_cutoff"
PERIODS = (BEFORE_CUTOFF, AFTER_CUTOFF, None)

CURRENCY_PLN = "PLN"
CURRENCY_EUR = "EUR"
CASH_CURRENCIES = (CURRENCY_PLN, CURRENCY_EUR)

# Per-channel cash prices that win over the price list, keyed by normalized channel name
CASH_CURRENCY_PRICE_OVERRIDES: Dict[str, Dict[str, float]] = {
    "topdeck": {CURRENCY_EUR: 17.0},
}

CUSTOM_TICKET_LABEL = "Custom"
NORMAL_TICKET_LABEL = "Normal"

# Walk-in ticket prices per person; Normal in PLN comes from the channel's cash price
WALK_IN_TICKET_UNIT_PRICES: Dict[str, Dict[str, float]] = {
    NORMAL_TICKET_LABEL: {CURRENCY_EUR: 25.0},
    "Second Timers": {CURRENCY_PLN: 85.0, CURRENCY_EUR: 20.0},
    "Third Timers": {CURRENCY_PLN: 75.0, CURRENCY_EUR: 17.0},
    "Half Price": {CURRENCY_PLN: 50.0, CURRENCY_EUR: 12.0},
    "Students": {CURRENCY_PLN: 80.0, CURRENCY_EUR: 19.0},
    "Group": {CURRENCY_PLN: 85.0, CURRENCY_EUR: 20.0},
}

# Walk-in addon prices, keyed by normalized addon key
WALK_IN_ADDON_UNIT_PRICES: Dict[str, Dict[str, float]] = {
    "cocktails": {CURRENCY_EUR: 7.0},
    "tshirts": {CURRENCY_EUR: 10.0},
    "photos": {CURRENCY_EUR: 3.0},
}


def normalize_period(tally_type: str, kind: str, period: Optional[str]) -> Optional[str]:
    if kind == KIND_CASH or tally_type == TALLY_ATTENDED:
        return None
    if tally_type == TALLY_BOOKED:
        return period or BEFORE_CUTOFF
    return period


def round_amount(value: float) -> float:
    return max(0.0, round(float(value) * 100) / 100)


def values_are_close(a: Optional[float], b: Optional[float], epsilon: Optional[float] = None) -> bool:
    tolerance = settings.cash_tolerance if epsilon is None else epsilon
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    return abs(a - b) <= tolerance + 1e-9


@dataclass(frozen=True)
class MetricKey:
    channel_id: int
    kind: str
    addon_id: Optional[int]
    tally_type: str
    period: Optional[str]

    @classmethod
    def build(
        cls,
        channel_id: int,
        kind: str,
        addon_id: Optional[int],
        tally_type: str,
        period: Optional[str] = None,
    ) -> "MetricKey":
        return cls(
            channel_id=int(channel_id),
            kind=kind,
            addon_id=int(addon_id) if addon_id is not None else None,
            tally_type=tally_type,
            period=normalize_period(tally_type, kind, period),
        )

    def as_string(self) -> str:
        addon = "null" if self.addon_id is None else str(self.addon_id)
        return "|".join([str(self.channel_id), self.kind, addon, self.tally_type, self.period or "attended"])

    def with_changes(self, **changes) -> "MetricKey":
        merged = {
            "channel_id": self.channel_id,
            "kind": self.kind,
            "addon_id": self.addon_id,
            "tally_type": self.tally_type,
            "period": self.period,
        }
        merged.update(changes)
        return MetricKey.build(**merged)


@dataclass
class MetricCell:
    counter_id: int
    channel_id: int
    kind: str
    addon_id: Optional[int]
    tally_type: str
    period: Optional[str]
    qty: float = 0.0
    id: Optional[int] = None

    def __post_init__(self):
        self.period = normalize_period(self.tally_type, self.kind, self.period)
        self.qty = float(self.qty or 0)

    @property
    def key(self) -> MetricKey:
        return MetricKey.build(self.channel_id, self.kind, self.addon_id, self.tally_type, self.period)

    @classmethod
    def from_key(cls, counter_id: int, key: MetricKey, qty: float = 0.0) -> "MetricCell":
        return cls(
            counter_id=counter_id,
            channel_id=key.channel_id,
            kind=key.kind,
            addon_id=key.addon_id,
            tally_type=key.tally_type,
            period=key.period,
            qty=qty,
        )

    def with_qty(self, qty: float) -> "MetricCell":
        return replace(self, qty=qty)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "counterId": self.counter_id,
            "channelId": self.channel_id,
            "kind": self.kind,
            "addonId": self.addon_id,
            "tallyType": self.tally_type,
            "period": self.period,
            "qty": self.qty,
        }

    @classmethod
    def from_dict(cls, data: dict, counter_id: Optional[int] = None) -> "MetricCell":
        return cls(
            id=data.get("id"),
            counter_id=data.get("counterId", counter_id),
            channel_id=data["channelId"],
            kind=data["kind"],
            addon_id=data.get("addonId"),
            tally_type=data["tallyType"],
            period=data.get("period"),
            qty=data.get("qty", 0),
        )


def normalize_channel_key(name: Optional[str]) -> str:
    return re.sub(r"[^a-z0-9]", "", (name or "").lower())


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")
    return slug


@dataclass
class ChannelConfig:
    id: int
    name: str
    sort_order: int = 0
    payment_method_name: Optional[str] = None
    cash_price: Optional[float] = None
    cash_payment_eligible: bool = False

    @property
    def normalized_name(self) -> str:
        return (self.name or "").lower()

    @property
    def is_cash_payment(self) -> bool:
        return bool(self.cash_payment_eligible) or (self.payment_method_name or "").lower() == "cash"

    @property
    def is_walk_in(self) -> bool:
        return self.normalized_name == settings.walk_in_channel_name.lower()

    @property
    def is_after_cutoff(self) -> bool:
        return self.normalized_name in settings.after_cutoff_channel_names

    def cash_price_for(self, currency: str) -> Optional[float]:
        overrides = CASH_CURRENCY_PRICE_OVERRIDES.get(normalize_channel_key(self.name), {})
        resolved = overrides.get(currency)
        if resolved is None:
            resolved = self.cash_price
        if resolved is None or not math.isfinite(float(resolved)):
            return None
        return round_amount(resolved)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "sortOrder": self.sort_order,
            "paymentMethodName": self.payment_method_name,
            "cashPrice": self.cash_price,
            "cashPaymentEligible": self.is_cash_payment,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChannelConfig":
        return cls(
            id=data["id"],
            name=data["name"],
            sort_order=data.get("sortOrder", 0),
            payment_method_name=data.get("paymentMethodName"),
            cash_price=data.get("cashPrice"),
            cash_payment_eligible=bool(data.get("cashPaymentEligible", False)),
        )


@dataclass
class AddonConfig:
    addon_id: int
    name: str
    key: str = ""
    max_per_attendee: Optional[int] = None
    sort_order: int = 0

    def __post_init__(self):
        if not self.key:
            self.key = slugify(self.name) or f"addon-{self.addon_id}"

    @property
    def is_cocktail(self) -> bool:
        # Substring heuristic on key or name; there is no catalog flag for it
        return "cocktail" in (self.key or "").lower() or "cocktail" in (self.name or "").lower()

    def to_dict(self) -> dict:
        return {
            "addonId": self.addon_id,
            "name": self.name,
            "key": self.key,
            "maxPerAttendee": self.max_per_attendee,
            "sortOrder": self.sort_order,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AddonConfig":
        return cls(
            addon_id=data["addonId"],
            name=data["name"],
            key=data.get("key") or "",
            max_per_attendee=data.get("maxPerAttendee"),
            sort_order=data.get("sortOrder", 0),
        )


@dataclass
class Catalog:
    """Read-only reference data handed to the editing core"""

    channels: List[ChannelConfig] = field(default_factory=list)
    addons: List[AddonConfig] = field(default_factory=list)
    staff: List[dict] = field(default_factory=list)
    managers: List[dict] = field(default_factory=list)
    products: List[dict] = field(default_factory=list)

    def channel(self, channel_id: int) -> Optional[ChannelConfig]:
        for channel in self.channels:
            if channel.id == channel_id:
                return channel
        return None

    def addon(self, addon_id: Optional[int]) -> Optional[AddonConfig]:
        if addon_id is None:
            return None
        for addon in self.addons:
            if addon.addon_id == addon_id:
                return addon
        return None

    @classmethod
    def from_dict(cls, data: dict) -> "Catalog":
        return cls(
            channels=[ChannelConfig.from_dict(item) for item in data.get("channels") or []],
            addons=[AddonConfig.from_dict(item) for item in data.get("addons") or []],
            staff=list(data.get("staff") or []),
            managers=list(data.get("managers") or []),
            products=list(data.get("products") or []),
        )

    def walk_in_channel_ids(self) -> List[int]:
        return [channel.id for channel in self.channels if channel.is_walk_in]

    def after_cutoff_channel_ids(self) -> List[int]:
        return [channel.id for channel in self.channels if channel.is_after_cutoff]


def sort_channels(channels: Iterable[ChannelConfig]) -> List[ChannelConfig]:
    return sorted(channels, key=lambda c: (c.sort_order, c.name))


def sort_addons(addons: Iterable[AddonConfig]) -> List[AddonConfig]:
    return sorted(addons, key=lambda a: (a.sort_order, a.name))


def walk_in_ticket_unit_price(channel: Optional[ChannelConfig], ticket: str, currency: str) -> Optional[float]:
    """Per-person price of a walk-in ticket; None for Custom and unpriced combinations"""
    if ticket == CUSTOM_TICKET_LABEL:
        return None
    if ticket == NORMAL_TICKET_LABEL and currency == CURRENCY_PLN:
        return channel.cash_price_for(CURRENCY_PLN) if channel is not None else None
    price = WALK_IN_TICKET_UNIT_PRICES.get(ticket, {}).get(currency)
    return round_amount(price) if price is not None else None


def walk_in_addon_unit_price(addon: Optional[AddonConfig], currency: str) -> Optional[float]:
    if addon is None:
        return None
    price = WALK_IN_ADDON_UNIT_PRICES.get(normalize_channel_key(addon.key or addon.name), {}).get(currency)
    return round_amount(price) if price is not None else None
