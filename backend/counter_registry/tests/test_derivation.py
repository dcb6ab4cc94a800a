import math

import pytest

from counter_registry.core.exceptions import MetricValidationError
from counter_registry.core.metrics import MetricCell, MetricKey
from counter_registry.services.derivation import DerivationContext, derive, validate_edit

FAREHARBOR, WALK_IN, ECWID, HOSTEL, TOPDECK = 1, 2, 3, 4, 5
COCKTAILS, TSHIRTS, PHOTOS = 10, 11, 12


def cell(channel, kind, tally, qty, addon=None, period=None):
    return MetricCell(counter_id=1, channel_id=channel, kind=kind, addon_id=addon,
                      tally_type=tally, period=period, qty=qty)


def qty(metrics, channel, kind, tally, addon=None, period=None):
    found = metrics.get(MetricKey.build(channel, kind, addon, tally, period))
    return found.qty if found is not None else 0.0


def apply(metrics, catalog, edit, context=None):
    context = context or DerivationContext(catalog, counter_id=1)
    validate_edit(metrics, edit, catalog)
    previous = metrics.get(edit.key)
    previous_qty = previous.qty if previous is not None else 0.0
    metrics[edit.key] = edit
    derived = derive(metrics, edit, previous_qty, context)
    for derived_cell in derived:
        metrics[derived_cell.key] = derived_cell
    return derived


def test_after_cutoff_follows_attended_minus_before(catalog):
    metrics = {}
    apply(metrics, catalog, cell(ECWID, "people", "booked", 10))
    apply(metrics, catalog, cell(ECWID, "people", "attended", 14))
    assert qty(metrics, ECWID, "people", "booked", period="after_cutoff") == 4

    apply(metrics, catalog, cell(ECWID, "people", "booked", 12, period="before_cutoff"))
    assert qty(metrics, ECWID, "people", "booked", period="after_cutoff") == 2

    apply(metrics, catalog, cell(ECWID, "people", "attended", 5))
    assert qty(metrics, ECWID, "people", "booked", period="after_cutoff") == 0


def test_after_cutoff_invariant_holds_for_any_edit_sequence(catalog):
    metrics = {}
    edits = [
        ("booked", 3), ("attended", 7), ("attended", 2), ("booked", 0),
        ("attended", 11), ("booked", 11), ("booked", 4), ("attended", 4),
    ]
    for tally, value in edits:
        apply(metrics, catalog, cell(ECWID, "people", tally, value))
        before = qty(metrics, ECWID, "people", "booked", period="before_cutoff")
        attended = qty(metrics, ECWID, "people", "attended")
        after = qty(metrics, ECWID, "people", "booked", period="after_cutoff")
        assert after == max(0, attended - before)


def test_after_cutoff_applies_to_addons(catalog):
    metrics = {}
    apply(metrics, catalog, cell(ECWID, "addon", "booked", 2, addon=PHOTOS))
    apply(metrics, catalog, cell(ECWID, "addon", "attended", 3, addon=PHOTOS))
    assert qty(metrics, ECWID, "addon", "booked", addon=PHOTOS, period="after_cutoff") == 1


def test_after_cutoff_ignored_for_channels_outside_allow_list(catalog):
    metrics = {}
    apply(metrics, catalog, cell(FAREHARBOR, "people", "booked", 10))
    apply(metrics, catalog, cell(FAREHARBOR, "people", "attended", 14))
    assert MetricKey.build(FAREHARBOR, "people", None, "booked", "after_cutoff") not in metrics


def test_cocktail_delta_moves_people(catalog):
    metrics = {}
    apply(metrics, catalog, cell(FAREHARBOR, "people", "booked", 5))
    apply(metrics, catalog, cell(FAREHARBOR, "addon", "booked", 3, addon=COCKTAILS))
    assert qty(metrics, FAREHARBOR, "people", "booked") == 8

    apply(metrics, catalog, cell(FAREHARBOR, "addon", "booked", 1, addon=COCKTAILS))
    assert qty(metrics, FAREHARBOR, "people", "booked") == 6


def test_cocktail_people_clamped_at_zero(catalog):
    metrics = {}
    apply(metrics, catalog, cell(FAREHARBOR, "addon", "attended", 4, addon=COCKTAILS))
    assert qty(metrics, FAREHARBOR, "people", "attended") == 4
    apply(metrics, catalog, cell(FAREHARBOR, "people", "attended", 1))
    apply(metrics, catalog, cell(FAREHARBOR, "addon", "attended", 0, addon=COCKTAILS))
    assert qty(metrics, FAREHARBOR, "people", "attended") == 0


def test_after_cutoff_cocktail_counts_as_attendance(catalog):
    metrics = {}
    apply(metrics, catalog, cell(ECWID, "addon", "booked", 3, addon=COCKTAILS, period="after_cutoff"))
    assert qty(metrics, ECWID, "people", "booked", period="after_cutoff") == 3
    assert qty(metrics, ECWID, "people", "attended") == 3
    assert qty(metrics, ECWID, "addon", "attended", addon=COCKTAILS) == 3


def test_non_cocktail_addon_leaves_people_alone(catalog):
    metrics = {}
    apply(metrics, catalog, cell(FAREHARBOR, "people", "booked", 5))
    apply(metrics, catalog, cell(FAREHARBOR, "addon", "booked", 4, addon=PHOTOS))
    assert qty(metrics, FAREHARBOR, "people", "booked") == 5


def test_booked_after_cutoff_entry_sets_attended(catalog):
    metrics = {}
    apply(metrics, catalog, cell(FAREHARBOR, "people", "booked", 6, period="after_cutoff"))
    assert qty(metrics, FAREHARBOR, "people", "attended") == 6
    apply(metrics, catalog, cell(FAREHARBOR, "people", "booked", 2, period="after_cutoff"))
    assert qty(metrics, FAREHARBOR, "people", "attended") == 2


def test_cash_amount_follows_attendance(catalog):
    metrics = {}
    apply(metrics, catalog, cell(HOSTEL, "people", "attended", 3))
    assert qty(metrics, HOSTEL, "cash_payment", "attended") == 120
    apply(metrics, catalog, cell(HOSTEL, "people", "attended", 5))
    assert qty(metrics, HOSTEL, "cash_payment", "attended") == 200


def test_cash_override_freezes_amount(catalog):
    context = DerivationContext(catalog, counter_id=1, cash_overrides_by_channel={HOSTEL: 150.0})
    metrics = {}
    apply(metrics, catalog, cell(HOSTEL, "people", "attended", 7), context)
    assert qty(metrics, HOSTEL, "cash_payment", "attended") == 150
    derived = apply(metrics, catalog, cell(HOSTEL, "people", "attended", 9), context)
    assert derived == []
    assert qty(metrics, HOSTEL, "cash_payment", "attended") == 150


def test_cash_uses_currency_price_override(catalog):
    context = DerivationContext(catalog, counter_id=1, cash_currency_by_channel={TOPDECK: "EUR"})
    metrics = {}
    apply(metrics, catalog, cell(TOPDECK, "people", "attended", 2), context)
    assert qty(metrics, TOPDECK, "cash_payment", "attended") == 34


def test_cash_write_skipped_within_tolerance(catalog):
    metrics = {}
    stored = cell(HOSTEL, "cash_payment", "attended", 120.004)
    metrics[stored.key] = stored
    derived = apply(metrics, catalog, cell(HOSTEL, "people", "attended", 3))
    assert derived == []


def test_walk_in_cash_is_not_derived(catalog):
    metrics = {}
    apply(metrics, catalog, cell(WALK_IN, "people", "attended", 5))
    assert MetricKey.build(WALK_IN, "cash_payment", None, "attended") not in metrics


def test_cash_edit_derives_nothing(catalog):
    metrics = {}
    assert apply(metrics, catalog, cell(HOSTEL, "cash_payment", "attended", 80)) == []


def test_derive_never_returns_the_edit_itself(catalog):
    metrics = {}
    edit = cell(ECWID, "people", "attended", 4)
    derived = apply(metrics, catalog, edit)
    assert edit.key not in {c.key for c in derived}


@pytest.mark.parametrize("value", [-1, math.nan, math.inf])
def test_rejects_invalid_quantities(catalog, value):
    with pytest.raises(MetricValidationError):
        validate_edit({}, cell(FAREHARBOR, "people", "attended", value), catalog)


def test_addon_cap_per_attendee(catalog):
    metrics = {}
    apply(metrics, catalog, cell(FAREHARBOR, "people", "booked", 2))
    with pytest.raises(MetricValidationError):
        apply(metrics, catalog, cell(FAREHARBOR, "addon", "booked", 3, addon=TSHIRTS))
    apply(metrics, catalog, cell(FAREHARBOR, "addon", "booked", 2, addon=TSHIRTS))
    apply(metrics, catalog, cell(FAREHARBOR, "addon", "booked", 4, addon=PHOTOS))
    with pytest.raises(MetricValidationError):
        apply(metrics, catalog, cell(FAREHARBOR, "addon", "booked", 5, addon=PHOTOS))


def test_addon_cap_needs_people(catalog):
    apply({}, catalog, cell(ECWID, "addon", "booked", 10, addon=TSHIRTS))


@pytest.mark.parametrize("edit", [
    cell(9999, "people", "attended", 1),
    cell(FAREHARBOR, "guests", "attended", 1),
    cell(FAREHARBOR, "people", "seen", 1),
    cell(FAREHARBOR, "people", "booked", 1, period="later"),
    cell(FAREHARBOR, "addon", "attended", 1),
    cell(FAREHARBOR, "addon", "attended", 1, addon=99),
    cell(FAREHARBOR, "people", "attended", 1, addon=COCKTAILS),
])
def test_rejects_unknown_references(catalog, edit):
    with pytest.raises(MetricValidationError):
        validate_edit({}, edit, catalog)


def test_cocktail_attendance_gets_a_second_cash_pass(catalog):
    metrics = {}
    derived = apply(metrics, catalog, cell(HOSTEL, "addon", "attended", 2, addon=COCKTAILS))
    assert qty(metrics, HOSTEL, "people", "attended") == 2
    assert qty(metrics, HOSTEL, "cash_payment", "attended") == 80
    assert [c.kind for c in derived].count("cash_payment") == 1
