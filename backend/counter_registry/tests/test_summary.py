from counter_registry.core.metrics import MetricCell
from counter_registry.services.summary import build_summary, create_metric_grid

FAREHARBOR, WALK_IN, ECWID = 1, 2, 3
TSHIRTS = 11


def cell(channel, kind, tally, qty, addon=None, period=None, id=None):
    return MetricCell(counter_id=1, channel_id=channel, kind=kind, addon_id=addon,
                      tally_type=tally, period=period, qty=qty, id=id)


def test_ecwid_after_cutoff_scenario(catalog):
    metrics = [
        cell(ECWID, "people", "booked", 10),
        cell(ECWID, "people", "attended", 14),
        cell(FAREHARBOR, "people", "booked", 5),
        cell(FAREHARBOR, "people", "attended", 4),
    ]
    summary = build_summary(metrics, catalog.channels, catalog.addons, {FAREHARBOR, ECWID})

    ecwid = summary.channel(ECWID).people
    assert ecwid.booked_after == 4
    assert ecwid.non_show is None
    assert summary.channel(FAREHARBOR).people.non_show == 1

    assert summary.people.attended == 18
    assert summary.people.booked_before == 15
    assert summary.people.booked_after == 4
    assert summary.people.non_show == 1


def test_stale_after_cutoff_cell_is_recomputed(catalog):
    metrics = [
        cell(ECWID, "people", "booked", 10),
        cell(ECWID, "people", "booked", 9, period="after_cutoff"),
        cell(ECWID, "people", "attended", 14),
    ]
    summary = build_summary(metrics, catalog.channels, catalog.addons, [ECWID])
    assert summary.channel(ECWID).people.booked_after == 4


def test_empty_selection_is_not_zero_totals(catalog):
    metrics = [cell(FAREHARBOR, "people", "attended", 4)]
    assert build_summary(metrics, catalog.channels, catalog.addons, []) is None
    assert build_summary(metrics, [], catalog.addons) is None


def test_only_selected_channels_are_counted(catalog):
    metrics = [
        cell(FAREHARBOR, "people", "attended", 4),
        cell(ECWID, "people", "attended", 6),
        cell(FAREHARBOR, "cash_payment", "attended", 300),
    ]
    summary = build_summary(metrics, catalog.channels, catalog.addons, [FAREHARBOR])
    assert [c.channel_id for c in summary.by_channel] == [FAREHARBOR]
    assert summary.people.attended == 4


def test_addon_buckets_keyed_by_addon_key(catalog):
    metrics = [
        cell(FAREHARBOR, "addon", "booked", 3, addon=TSHIRTS),
        cell(FAREHARBOR, "addon", "attended", 2, addon=TSHIRTS),
    ]
    summary = build_summary(metrics, catalog.channels, catalog.addons, [FAREHARBOR])
    bucket = summary.addons["t-shirts"]
    assert bucket.booked_before == 3
    assert bucket.attended == 2
    assert bucket.non_show == 1

    data = summary.to_dict()
    assert data["totals"]["addons"]["t-shirts"]["nonShow"] == 1
    assert data["byChannel"][0]["channelName"] == "Fareharbor"


def test_metric_grid_is_dense(catalog):
    channels = [catalog.channel(FAREHARBOR), catalog.channel(WALK_IN)]
    existing = [cell(FAREHARBOR, "people", "attended", 4, id=31)]

    grid = create_metric_grid(1, channels, catalog.addons, existing)

    # 3 people cells + 3 addons x 3 cells per channel, plus the walk-in cash cell
    assert len(grid) == 2 * 12 + 1
    stored = [c for c in grid if c.qty]
    assert len(stored) == 1
    assert stored[0].id == 31
    assert sum(1 for c in grid if c.kind == "cash_payment") == 1


def test_totals_non_show_stays_none_for_after_cutoff_only_selection(catalog):
    metrics = [
        cell(ECWID, "people", "booked", 10),
        cell(ECWID, "people", "attended", 14),
        cell(ECWID, "addon", "attended", 2, addon=TSHIRTS),
    ]
    summary = build_summary(metrics, catalog.channels, catalog.addons, [ECWID])

    assert summary.people.attended == 14
    assert summary.people.non_show is None
    assert all(bucket.non_show is None for bucket in summary.addons.values())
    assert summary.to_dict()["totals"]["people"]["nonShow"] is None
