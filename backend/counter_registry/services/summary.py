"""
Per-channel and totals views of a counter's metrics, and the dense metric
grid the API returns.
"""
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Union

from counter_registry.core.metrics import (
    AFTER_CUTOFF,
    BEFORE_CUTOFF,
    KIND_ADDON,
    KIND_CASH,
    KIND_PEOPLE,
    TALLY_ATTENDED,
    TALLY_BOOKED,
    AddonConfig,
    ChannelConfig,
    MetricCell,
    MetricKey,
    sort_addons,
    sort_channels,
)

# (tally type, period) combinations every channel carries for people and each addon
METRIC_BLUEPRINT = [
    (TALLY_BOOKED, BEFORE_CUTOFF),
    (TALLY_BOOKED, AFTER_CUTOFF),
    (TALLY_ATTENDED, None),
]


@dataclass
class SummaryBucket:
    booked_before: float = 0.0
    booked_after: float = 0.0
    attended: float = 0.0
    # None means "not applicable" (after-cutoff channels)
    non_show: Optional[float] = 0.0

    def add(self, cell: MetricCell) -> None:
        if cell.tally_type == TALLY_BOOKED:
            if cell.period == BEFORE_CUTOFF:
                self.booked_before += cell.qty
            elif cell.period == AFTER_CUTOFF:
                self.booked_after += cell.qty
        elif cell.tally_type == TALLY_ATTENDED:
            self.attended += cell.qty

    def finalize(self, after_cutoff: bool) -> None:
        if after_cutoff:
            # Stored after-cutoff cells may be stale; they are derived from attended
            self.booked_after = max(0.0, self.attended - self.booked_before)
            self.non_show = None
        else:
            self.non_show = max(0.0, self.booked_before + self.booked_after - self.attended)

    def accumulate(self, other: "SummaryBucket") -> None:
        self.booked_before += other.booked_before
        self.booked_after += other.booked_after
        self.attended += other.attended
        if other.non_show is not None:
            self.non_show = (self.non_show or 0.0) + other.non_show

    def to_dict(self) -> dict:
        return {
            "bookedBefore": self.booked_before,
            "bookedAfter": self.booked_after,
            "attended": self.attended,
            "nonShow": self.non_show,
        }


@dataclass
class AddonSummaryBucket(SummaryBucket):
    addon_id: int = 0
    name: str = ""
    key: str = ""

    @classmethod
    def for_addon(cls, addon: AddonConfig, **kwargs) -> "AddonSummaryBucket":
        return cls(addon_id=addon.addon_id, name=addon.name, key=addon.key, **kwargs)

    def to_dict(self) -> dict:
        data = {"addonId": self.addon_id, "name": self.name, "key": self.key}
        data.update(super().to_dict())
        return data


@dataclass
class ChannelSummary:
    channel_id: int
    channel_name: str
    after_cutoff: bool
    people: SummaryBucket = field(default_factory=SummaryBucket)
    addons: Dict[str, AddonSummaryBucket] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "channelId": self.channel_id,
            "channelName": self.channel_name,
            "afterCutoff": self.after_cutoff,
            "people": self.people.to_dict(),
            "addons": {key: bucket.to_dict() for key, bucket in self.addons.items()},
        }


@dataclass
class CounterSummary:
    by_channel: List[ChannelSummary]
    people: SummaryBucket
    addons: Dict[str, AddonSummaryBucket]

    def channel(self, channel_id: int) -> Optional[ChannelSummary]:
        for summary in self.by_channel:
            if summary.channel_id == channel_id:
                return summary
        return None

    def to_dict(self) -> dict:
        return {
            "byChannel": [summary.to_dict() for summary in self.by_channel],
            "totals": {
                "people": self.people.to_dict(),
                "addons": {key: bucket.to_dict() for key, bucket in self.addons.items()},
            },
        }


def build_summary(
    metrics: Union[Iterable[MetricCell], Mapping[MetricKey, MetricCell]],
    channels: Iterable[ChannelConfig],
    addons: Iterable[AddonConfig],
    channel_ids: Optional[Iterable[int]] = None,
) -> Optional[CounterSummary]:
    """
    Fold metrics into per-channel buckets and totals.

    ``channel_ids`` restricts the view to the selected channels; an empty
    selection (or no channels at all) returns None rather than zero totals.
    """
    cells = list(metrics.values()) if isinstance(metrics, Mapping) else list(metrics)
    addon_list = sort_addons(addons)
    addon_by_id = {addon.addon_id: addon for addon in addon_list}

    included = sort_channels(channels)
    if channel_ids is not None:
        selected = set(channel_ids)
        included = [channel for channel in included if channel.id in selected]
    if not included:
        return None

    by_id: Dict[int, ChannelSummary] = {}
    for channel in included:
        by_id[channel.id] = ChannelSummary(
            channel_id=channel.id,
            channel_name=channel.name,
            after_cutoff=channel.is_after_cutoff,
            addons={addon.key: AddonSummaryBucket.for_addon(addon) for addon in addon_list},
        )

    for cell in cells:
        summary = by_id.get(cell.channel_id)
        if summary is None or cell.kind == KIND_CASH:
            continue
        if cell.kind == KIND_PEOPLE:
            summary.people.add(cell)
        elif cell.kind == KIND_ADDON:
            addon = addon_by_id.get(cell.addon_id)
            if addon is not None:
                summary.addons[addon.key].add(cell)

    # Totals non_show stays None unless some included channel reports one
    totals_people = SummaryBucket(non_show=None)
    totals_addons = {addon.key: AddonSummaryBucket.for_addon(addon, non_show=None) for addon in addon_list}
    by_channel = []
    for channel in included:
        summary = by_id[channel.id]
        summary.people.finalize(summary.after_cutoff)
        totals_people.accumulate(summary.people)
        for key, bucket in summary.addons.items():
            bucket.finalize(summary.after_cutoff)
            totals_addons[key].accumulate(bucket)
        by_channel.append(summary)

    return CounterSummary(by_channel=by_channel, people=totals_people, addons=totals_addons)


def create_metric_grid(
    counter_id: int,
    channels: Iterable[ChannelConfig],
    addons: Iterable[AddonConfig],
    existing: Iterable[MetricCell],
) -> List[MetricCell]:
    """Dense list of cells for every channel, filling gaps with zero-qty cells"""
    existing_by_key = {cell.key: cell for cell in existing}
    addon_list = sort_addons(addons)
    grid: List[MetricCell] = []

    def take(key: MetricKey) -> MetricCell:
        found = existing_by_key.get(key)
        cell = MetricCell.from_key(counter_id, key, found.qty if found is not None else 0.0)
        cell.id = found.id if found is not None else None
        return cell

    for channel in sort_channels(channels):
        for tally_type, period in METRIC_BLUEPRINT:
            grid.append(take(MetricKey.build(channel.id, KIND_PEOPLE, None, tally_type, period)))
        for addon in addon_list:
            for tally_type, period in METRIC_BLUEPRINT:
                grid.append(take(MetricKey.build(channel.id, KIND_ADDON, addon.addon_id, tally_type, period)))
        cash_key = MetricKey.build(channel.id, KIND_CASH, None, TALLY_ATTENDED)
        if cash_key in existing_by_key or channel.is_walk_in:
            grid.append(take(cash_key))
    return grid
