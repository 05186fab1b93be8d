import pytest

from order_engine.core.errors import ValidationFailed
from order_engine.db.models import Region, ShipClass, ShippingMethod
from order_engine.services.fees import (
    FeeOptions, PricedLine, compute_fees, recommend_lbc_package, recommend_pouch, ship_counts,
    suggested_insurance_fee,
)


def line(price=500, qty=1, ship_class=ShipClass.MINI_GT, variant_id=1):
    return PricedLine(variant_id=variant_id, qty=qty, unit_price_cents=price * 100, ship_class=ship_class)


def test_jnt_single_car_metro_manila():
    fb = compute_fees([line()], ShippingMethod.JNT, Region.METRO_MANILA)
    assert fb.package == "SMALL"
    assert fb.shipping_fee_cents == 6500
    assert fb.total_cents == 50000 + 6500


def test_jnt_upgrades_to_medium_pouch_and_rejects_overflow():
    fb = compute_fees([line(qty=3)], ShippingMethod.JNT, Region.VISAYAS)
    assert fb.package == "MEDIUM"
    assert fb.shipping_fee_cents == 15500

    with pytest.raises(ValidationFailed) as exc:
        compute_fees([line(qty=9)], ShippingMethod.JNT, Region.VISAYAS)
    assert exc.value.code == "CAPACITY_EXCEEDED"


def test_lbc_cop_excludes_courier_fee_from_total():
    fb = compute_fees([line()], ShippingMethod.LBC, Region.LUZON, FeeOptions(cop=True))
    assert fb.package == "N_SAKTO"
    assert fb.shipping_fee_cents == 0
    assert fb.cop_shipping_fee_due_cents == 7000
    assert fb.cop_fee_cents == 2000
    assert fb.total_cents == 50000 + 2000


def test_lbc_without_cop_charges_courier_fee():
    fb = compute_fees([line()], ShippingMethod.LBC, Region.LUZON)
    assert fb.shipping_fee_cents == 7000
    assert fb.cop_fee_cents == 0
    assert fb.total_cents == 57000


def test_lbc_too_big_falls_back_to_medium_box_with_warning():
    fb = compute_fees([line(qty=20, ship_class=ShipClass.KAIDO)], ShippingMethod.LBC, Region.MINDANAO)
    assert fb.package == "MEDIUM_APPROVAL"
    assert fb.warning
    assert fb.shipping_fee_cents == 0


def test_lbc_explicit_package_used_only_if_it_fits():
    fb = compute_fees([line()], ShippingMethod.LBC, Region.LUZON, FeeOptions(lbc_package="MINIBOX"))
    assert fb.package == "MINIBOX"
    fb = compute_fees([line(qty=5)], ShippingMethod.LBC, Region.LUZON, FeeOptions(lbc_package="N_SAKTO"))
    assert fb.package == "MINIBOX"


def test_lalamove_only_items_reject_other_methods():
    diorama = line(price=2500, ship_class=ShipClass.DIORAMA)
    with pytest.raises(ValidationFailed) as exc:
        compute_fees([diorama], ShippingMethod.JNT, Region.METRO_MANILA)
    assert exc.value.code == "UNSUPPORTED_METHOD_FOR_ITEM"

    fb = compute_fees([diorama], ShippingMethod.LALAMOVE, None)
    assert fb.lalamove_fee_cents == 5000
    assert fb.shipping_fee_cents == 0
    assert fb.insurance_fee_cents == 0
    assert fb.total_cents == 250000 + 5000


def test_courier_requires_region():
    with pytest.raises(ValidationFailed) as exc:
        compute_fees([line()], ShippingMethod.JNT, None)
    assert exc.value.code == "INVALID_REGION"


def test_priority_and_insurance():
    fb = compute_fees(
        [line(price=1200)], ShippingMethod.JNT, Region.METRO_MANILA,
        FeeOptions(priority_requested=True, insurance_selected=True),
    )
    assert fb.priority_fee_cents == 5000
    # 1,200 declared -> three started 500 blocks
    assert fb.insurance_fee_cents == 1500
    assert fb.total_cents == 120000 + 6500 + 5000 + 1500


def test_priority_unavailable():
    with pytest.raises(ValidationFailed) as exc:
        compute_fees([line()], ShippingMethod.JNT, Region.METRO_MANILA,
                     FeeOptions(priority_requested=True, priority_available=False))
    assert exc.value.code == "PRIORITY_UNAVAILABLE"


def test_unselected_insurance_is_shown_but_not_charged():
    fb = compute_fees([line()], ShippingMethod.PICKUP, None)
    assert fb.insurance_fee_cents == 0
    assert fb.suggested_insurance_cents == 500
    muted = [l for l in fb.lines if l.muted]
    assert any(l.amount_cents == 500 for l in muted)
    assert fb.total_cents == 50000


def test_total_is_sum_of_charged_lines_and_deterministic():
    args = ([line(qty=2), line(price=950, ship_class=ShipClass.KAIDO, variant_id=2)],
            ShippingMethod.LBC, Region.VISAYAS, FeeOptions(insurance_selected=True, priority_requested=True))
    first, second = compute_fees(*args), compute_fees(*args)
    assert first == second
    assert first.total_cents == sum(l.amount_cents for l in first.lines if not l.muted)


def test_packing_helpers():
    counts = ship_counts([line(ship_class=None), line(ship_class=ShipClass.DIORAMA, variant_id=2)])
    assert counts == {ShipClass.MINI_GT: 1, ShipClass.LALAMOVE: 1}
    assert recommend_pouch({ShipClass.MINI_GT: 2}) == "SMALL"
    assert recommend_pouch({ShipClass.ACRYLIC_TRUE_SCALE: 2}) == "MEDIUM"
    assert recommend_lbc_package({ShipClass.MINI_GT: 31}) == "SMALL_BOX"
    assert recommend_lbc_package({ShipClass.KAIDO: 15}) is None
    assert suggested_insurance_fee(0) == 0
    assert suggested_insurance_fee(50000) == 500
    assert suggested_insurance_fee(50100) == 1000
