"""
Service for the counter registry (persistence side).

Loads and stores counters, their staff and their metric cells, and builds
the registry payload the editing core consumes.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from counter_registry.core.config import settings
from counter_registry.core.exceptions import CounterNotFoundError
from counter_registry.core.metrics import (
    AFTER_CUTOFF,
    BEFORE_CUTOFF,
    KIND_CASH,
    METRIC_KINDS,
    TALLY_ATTENDED,
    TALLY_BOOKED,
    TALLY_TYPES,
    AddonConfig,
    ChannelConfig,
    MetricCell,
    MetricKey,
    sort_channels,
)
from counter_registry.core.roles import is_manager_slug, resolve_staff_role
from counter_registry.core.serialization_helpers import (
    serialize_date,
    serialize_datetime,
    serialize_decimal,
)
from counter_registry.models.addon import Addon
from counter_registry.models.channel import Channel, ChannelProductPrice
from counter_registry.models.counter import Counter, CounterChannelMetric, CounterUser
from counter_registry.models.product import Product, ProductAddon
from counter_registry.models.user import User
from counter_registry.services.summary import build_summary, create_metric_grid
from counter_registry.services.workflow import CounterStatus, WorkflowStateMachine

logger = logging.getLogger(__name__)

COUNTER_DATE_FORMAT = "%Y-%m-%d"

DEFAULT_CHANNEL_ORDER = [
    "Fareharbor",
    "Viator",
    "GetYourGuide",
    "FreeTour",
    "Walk-In",
    "Ecwid",
    "Email",
    "Hostel Atlantis",
    "XperiencePoland",
    "TopDeck",
]

_UNSET: Any = object()


def normalize_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), COUNTER_DATE_FORMAT).date()
    except ValueError:
        raise ValueError("date must be in YYYY-MM-DD format") from None


def load_counter(db: Session, counter_id: int) -> Counter:
    counter = db.query(Counter).filter(Counter.id == counter_id).first()
    if not counter:
        raise CounterNotFoundError(f"Counter {counter_id} not found")
    return counter


def resolve_product_id(db: Session, product_id: Optional[int]) -> Optional[int]:
    """
    Validate an explicit product, or fall back to the default product.

    Raises:
        ValueError: If the product does not exist or is disabled
    """
    if product_id is not None:
        product = db.query(Product).filter(Product.id == product_id).first()
        if not product or product.status is False:
            raise ValueError("Invalid product")
        return product.id
    default_product = db.query(Product).filter(
        Product.name == settings.default_product_name,
        Product.status == True,  # noqa: E712
    ).order_by(Product.id.asc()).first()
    return default_product.id if default_product else None


def _load_manager(db: Session, user_id: int) -> User:
    if not isinstance(user_id, int) or user_id <= 0:
        raise ValueError("Invalid manager id")
    manager = db.query(User).filter(User.id == user_id).first()
    if not manager:
        raise ValueError("Manager not found")
    if not is_manager_slug(manager.role_slug):
        raise ValueError("Manager must have manager or assistant-manager role")
    return manager


def _price_by_channel(db: Session, product_id: Optional[int], counter_date: Optional[date]) -> Dict[int, float]:
    prices: Dict[int, float] = {}
    if product_id is None or counter_date is None:
        return prices
    records = db.query(ChannelProductPrice).filter(
        ChannelProductPrice.product_id == product_id,
    ).order_by(ChannelProductPrice.valid_from.desc()).all()
    for record in records:
        if record.channel_id in prices:
            continue
        if record.valid_from > counter_date:
            continue
        if record.valid_to is not None and counter_date > record.valid_to:
            continue
        prices[record.channel_id] = float(record.price)
    return prices


def build_channel_configs(
    db: Session,
    product_id: Optional[int] = None,
    counter_date: Optional[date] = None,
) -> List[ChannelConfig]:
    order_map = {name.lower(): index for index, name in enumerate(DEFAULT_CHANNEL_ORDER)}
    prices = _price_by_channel(db, product_id, counter_date)
    configs = []
    for channel in db.query(Channel).order_by(Channel.name.asc()).all():
        is_cash = bool(channel.cash_payment_eligible) or (channel.payment_method_name or "").lower() == "cash"
        explicit_order = order_map.get(channel.name.lower())
        configs.append(ChannelConfig(
            id=channel.id,
            name=channel.name,
            sort_order=explicit_order if explicit_order is not None else len(DEFAULT_CHANNEL_ORDER),
            payment_method_name=channel.payment_method_name,
            cash_price=prices.get(channel.id) if is_cash else None,
            cash_payment_eligible=is_cash,
        ))
    return sort_channels(configs)


def build_addon_configs(db: Session, product_id: Optional[int] = None) -> List[AddonConfig]:
    if product_id is not None:
        records = db.query(ProductAddon).filter(
            ProductAddon.product_id == product_id,
        ).order_by(ProductAddon.sort_order.asc()).all()
        return [
            AddonConfig(
                addon_id=record.addon_id,
                name=record.addon.name if record.addon else f"Addon {record.addon_id}",
                max_per_attendee=record.max_per_attendee,
                sort_order=record.sort_order if record.sort_order is not None else index,
            )
            for index, record in enumerate(records)
            if record.addon is None or record.addon.is_active is not False
        ]
    addons = db.query(Addon).filter(Addon.is_active == True).order_by(Addon.name.asc()).all()  # noqa: E712
    return [
        AddonConfig(addon_id=addon.id, name=addon.name, sort_order=index)
        for index, addon in enumerate(addons)
    ]


def _cell_from_row(row: CounterChannelMetric) -> MetricCell:
    return MetricCell(
        id=row.id,
        counter_id=row.counter_id,
        channel_id=row.channel_id,
        kind=row.kind,
        addon_id=row.addon_id,
        tally_type=row.tally_type,
        period=row.period,
        qty=serialize_decimal(row.qty) or 0.0,
    )


def _staff_entry(record: CounterUser) -> Dict[str, Any]:
    user = record.user
    return {
        "userId": record.user_id,
        "role": record.role,
        "name": user.full_name if user else "",
        "userTypeSlug": user.role_slug if user else None,
        "userTypeName": user.role_name if user else None,
    }


def _user_option(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "fullName": user.full_name,
        "userTypeSlug": user.role_slug,
        "userTypeName": user.role_name,
    }


def build_payload(db: Session, counter: Counter) -> Dict[str, Any]:
    channels = build_channel_configs(db, counter.product_id, counter.date)
    addons = build_addon_configs(db, counter.product_id)
    rows = db.query(CounterChannelMetric).filter(CounterChannelMetric.counter_id == counter.id).all()
    grid = create_metric_grid(counter.id, channels, addons, [_cell_from_row(row) for row in rows])
    summary = build_summary(grid, channels, addons)
    staff = sorted(
        (_staff_entry(record) for record in counter.staff),
        key=lambda entry: entry["name"],
    )
    manager = counter.manager

    return {
        "counter": {
            "id": counter.id,
            "date": serialize_date(counter.date),
            "userId": counter.user_id,
            "status": counter.status,
            "notes": counter.notes,
            "productId": counter.product_id,
            "createdAt": serialize_datetime(counter.created_at),
            "updatedAt": serialize_datetime(counter.updated_at),
            "manager": {
                "id": manager.id,
                "firstName": manager.first_name,
                "lastName": manager.last_name,
                "fullName": manager.full_name,
            } if manager else None,
            "product": {"id": counter.product.id, "name": counter.product.name} if counter.product else None,
        },
        "staff": staff,
        "metrics": [cell.to_dict() for cell in grid],
        "derivedSummary": summary.to_dict() if summary else None,
        "addons": [addon.to_dict() for addon in addons],
        "channels": [channel.to_dict() for channel in channels],
    }


def get_catalog(db: Session) -> Dict[str, Any]:
    """Reference data for the editing session: channels, addons, people and products"""
    default_product_id = resolve_product_id(db, None)
    users = db.query(User).filter(User.is_active == True).order_by(User.first_name.asc()).all()  # noqa: E712
    products = db.query(Product).filter(Product.status == True).order_by(Product.name.asc()).all()  # noqa: E712
    return {
        "channels": [c.to_dict() for c in build_channel_configs(db, default_product_id, date.today())],
        "addons": [a.to_dict() for a in build_addon_configs(db, default_product_id)],
        "staff": [_user_option(u) for u in users if resolve_staff_role(u.role_slug) is not None],
        "managers": [_user_option(u) for u in users if is_manager_slug(u.role_slug)],
        "products": [{"id": p.id, "name": p.name, "price": serialize_decimal(p.price)} for p in products],
    }


def get_counter_by_date(db: Session, counter_date) -> Dict[str, Any]:
    normalized = normalize_date(counter_date)
    counter = db.query(Counter).filter(Counter.date == normalized).first()
    if not counter:
        raise CounterNotFoundError(f"No counter for {serialize_date(normalized)}")
    return build_payload(db, counter)


def get_counter_by_id(db: Session, counter_id: int) -> Dict[str, Any]:
    return build_payload(db, load_counter(db, counter_id))


def find_or_create_counter(
    db: Session,
    counter_date,
    user_id: int,
    actor_user_id: int,
    product_id: Optional[int] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Ensure a counter exists for the date and reflects the given manager / product.

    Returns:
        The registry payload of the (possibly new) counter

    Raises:
        ValueError: If the date, manager or product are invalid
    """
    normalized = normalize_date(counter_date)
    _load_manager(db, user_id)
    resolved_product_id = resolve_product_id(db, product_id)

    counter = db.query(Counter).filter(Counter.date == normalized).first()
    if not counter:
        counter = Counter(
            date=normalized,
            user_id=user_id,
            product_id=resolved_product_id,
            notes=notes,
            status=CounterStatus.draft.value,
            created_by=actor_user_id,
            updated_by=actor_user_id,
        )
        db.add(counter)
        db.commit()
        db.refresh(counter)
        logger.info("Created counter %s for %s (manager %s)", counter.id, normalized, user_id)
        return build_payload(db, counter)

    changed = False
    if counter.user_id != user_id:
        counter.user_id = user_id
        changed = True
    if notes is not None and notes != counter.notes:
        counter.notes = notes
        changed = True
    if resolved_product_id != counter.product_id:
        counter.product_id = resolved_product_id
        changed = True
    if changed:
        counter.updated_by = actor_user_id
        db.commit()
        db.refresh(counter)
    return build_payload(db, counter)


def update_counter_metadata(
    db: Session,
    counter_id: int,
    actor_user_id: int,
    status: Any = _UNSET,
    notes: Any = _UNSET,
    user_id: Any = _UNSET,
    product_id: Any = _UNSET,
) -> Dict[str, Any]:
    counter = load_counter(db, counter_id)
    changed = False

    if status is not _UNSET:
        target = WorkflowStateMachine(counter.status).validate(status)
        if target is CounterStatus.final and not counter.staff:
            raise ValueError("Cannot finalize counter without staff assigned")
        if counter.status != target.value:
            logger.info("Counter %s status %s -> %s", counter.id, counter.status, target.value)
            counter.status = target.value
            changed = True

    if notes is not _UNSET and notes != counter.notes:
        counter.notes = notes
        changed = True

    if user_id is not _UNSET:
        _load_manager(db, user_id)
        if counter.user_id != user_id:
            counter.user_id = user_id
            changed = True

    if product_id is not _UNSET:
        resolved = None if product_id is None else resolve_product_id(db, int(product_id))
        if counter.product_id != resolved:
            counter.product_id = resolved
            changed = True

    if changed:
        counter.updated_by = actor_user_id
        db.commit()
        db.refresh(counter)
    return build_payload(db, counter)


def update_counter_staff(
    db: Session,
    counter_id: int,
    user_ids: Iterable[int],
    actor_user_id: int,
) -> Dict[str, Any]:
    counter = load_counter(db, counter_id)
    unique_ids = list(dict.fromkeys(int(user_id) for user_id in user_ids))
    users = db.query(User).filter(User.id.in_(unique_ids)).all() if unique_ids else []
    if len(users) != len(unique_ids):
        raise ValueError("One or more users not found")

    assignments = {}
    for user in users:
        role = resolve_staff_role(user.role_slug)
        if role is None:
            raise ValueError(f"User {user.id} is not eligible for staff assignment")
        assignments[user.id] = role.value

    existing = {record.user_id: record for record in counter.staff}
    for user_id, role in assignments.items():
        record = existing.get(user_id)
        if record is None:
            counter.staff.append(CounterUser(
                user_id=user_id,
                role=role,
                created_by=actor_user_id,
                updated_by=actor_user_id,
            ))
        elif record.role != role:
            record.role = role
            record.updated_by = actor_user_id
    for user_id, record in existing.items():
        if user_id not in assignments:
            counter.staff.remove(record)

    db.commit()
    db.refresh(counter)
    return build_payload(db, counter)


def _validate_metric(cell: MetricCell, channel_ids: set) -> None:
    if cell.kind not in METRIC_KINDS:
        raise ValueError(f"Invalid metric kind: {cell.kind}")
    if cell.tally_type not in TALLY_TYPES:
        raise ValueError(f"Invalid tally type: {cell.tally_type}")
    if cell.period not in (BEFORE_CUTOFF, AFTER_CUTOFF, None):
        raise ValueError(f"Invalid period: {cell.period}")
    if cell.channel_id not in channel_ids:
        raise ValueError(f"Unknown channel: {cell.channel_id}")
    if cell.qty < 0:
        raise ValueError("Metric quantity cannot be negative")


def _recompute_after_cutoff(
    rows: Dict[MetricKey, float],
    incoming: Dict[MetricKey, MetricCell],
    counter_id: int,
    after_cutoff_channels: set,
) -> None:
    """after_cutoff = max(0, attended - before_cutoff) for allow-listed channels"""
    groups = {
        (key.channel_id, key.kind, key.addon_id)
        for key in rows
        if key.kind != KIND_CASH and key.channel_id in after_cutoff_channels
    }
    for channel_id, kind, addon_id in groups:
        before = rows.get(MetricKey.build(channel_id, kind, addon_id, TALLY_BOOKED, BEFORE_CUTOFF), 0.0)
        attended = rows.get(MetricKey.build(channel_id, kind, addon_id, TALLY_ATTENDED, None), 0.0)
        after_key = MetricKey.build(channel_id, kind, addon_id, TALLY_BOOKED, AFTER_CUTOFF)
        diff = max(0.0, attended - before)
        if diff > 0 or after_key in rows:
            incoming[after_key] = MetricCell.from_key(counter_id, after_key, diff)


def upsert_metrics(
    db: Session,
    counter_id: int,
    cells: Iterable[MetricCell],
    actor_user_id: int,
) -> Tuple[List[MetricCell], Optional[Dict[str, Any]]]:
    """
    Apply a batch of metric edits in one transaction.

    Duplicate keys in the batch resolve last-write-wins. Cells that end at 0
    are deleted. Returns the refreshed grid and summary.
    """
    counter = load_counter(db, counter_id)
    channels = build_channel_configs(db, counter.product_id, counter.date)
    addons = build_addon_configs(db, counter.product_id)
    channel_ids = {channel.id for channel in channels}
    after_cutoff_channels = {channel.id for channel in channels if channel.is_after_cutoff}

    existing_rows = db.query(CounterChannelMetric).filter(CounterChannelMetric.counter_id == counter_id).all()
    existing_by_key = {_cell_from_row(row).key: row for row in existing_rows}

    incoming: Dict[MetricKey, MetricCell] = {}
    for cell in cells:
        _validate_metric(cell, channel_ids)
        incoming[cell.key] = cell

    merged_qty = {key: serialize_decimal(row.qty) or 0.0 for key, row in existing_by_key.items()}
    merged_qty.update({key: cell.qty for key, cell in incoming.items()})
    _recompute_after_cutoff(merged_qty, incoming, counter_id, after_cutoff_channels)

    created = updated = deleted = 0
    try:
        for key, cell in incoming.items():
            next_qty = max(0.0, cell.qty)
            row = existing_by_key.get(key)
            if row is None:
                if next_qty <= 0:
                    continue
                db.add(CounterChannelMetric(
                    counter_id=counter_id,
                    channel_id=key.channel_id,
                    kind=key.kind,
                    addon_id=key.addon_id,
                    tally_type=key.tally_type,
                    period=key.period,
                    qty=next_qty,
                    created_by=actor_user_id,
                    updated_by=actor_user_id,
                ))
                created += 1
            elif next_qty <= 0:
                db.delete(row)
                deleted += 1
            elif (serialize_decimal(row.qty) or 0.0) != next_qty:
                row.qty = next_qty
                row.updated_by = actor_user_id
                updated += 1
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(
        "Counter %s metrics upserted: %s created, %s updated, %s deleted",
        counter_id, created, updated, deleted,
    )
    rows = db.query(CounterChannelMetric).filter(CounterChannelMetric.counter_id == counter_id).all()
    grid = create_metric_grid(counter_id, channels, addons, [_cell_from_row(row) for row in rows])
    summary = build_summary(grid, channels, addons)
    return grid, summary.to_dict() if summary else None


def delete_counter(db: Session, counter_id: int) -> None:
    counter = load_counter(db, counter_id)
    db.delete(counter)
    db.commit()
    logger.info("Deleted counter %s", counter_id)
