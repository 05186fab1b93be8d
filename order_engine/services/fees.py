"""Fee & shipping calculator.

Pure functions only: no database, no settings lookups. Rates are whole
pesos as published by the couriers; everything returned is in centavos.
"""
from math import ceil
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from order_engine.core.errors import ValidationFailed
from order_engine.db.models import Region, ShipClass, ShippingMethod

PESO = 100

JNT_POUCHES = ("SMALL", "MEDIUM")
LBC_PACKAGES = ("N_SAKTO", "MINIBOX", "SMALL_BOX")
LBC_MEDIUM_APPROVAL = "MEDIUM_APPROVAL"

JNT_RATES = {
    "SMALL": {Region.METRO_MANILA: 65, Region.LUZON: 75, Region.VISAYAS: 95, Region.MINDANAO: 100},
    "MEDIUM": {Region.METRO_MANILA: 85, Region.LUZON: 125, Region.VISAYAS: 155, Region.MINDANAO: 165},
}

LBC_RATES = {
    "N_SAKTO": {Region.METRO_MANILA: 60, Region.LUZON: 70, Region.VISAYAS: 90, Region.MINDANAO: 90},
    "MINIBOX": {Region.METRO_MANILA: 110, Region.LUZON: 125, Region.VISAYAS: 125, Region.MINDANAO: 125},
    "SMALL_BOX": {Region.METRO_MANILA: 140, Region.LUZON: 140, Region.VISAYAS: 140, Region.MINDANAO: 140},
}

REGION_LABEL = {
    Region.METRO_MANILA: "Metro Manila",
    Region.LUZON: "Luzon",
    Region.VISAYAS: "Visayas",
    Region.MINDANAO: "Mindanao",
}

LBC_COP_CONVENIENCE = 20
LALAMOVE_CONVENIENCE = 50
PRIORITY_SHIPPING = 50

# Per-package piece limits, by size family. A package fits when every class
# count is within its own limit.
_SMALL_CAR = {"SMALL": 2, "MEDIUM": 8, "N_SAKTO": 2, "MINIBOX": 9, "SMALL_BOX": 31}
_BOXED_CAR = {"SMALL": 2, "MEDIUM": 8, "N_SAKTO": 1, "MINIBOX": 4, "SMALL_BOX": 14}
_ACRYLIC = {"SMALL": 1, "MEDIUM": 4, "N_SAKTO": 1, "MINIBOX": 4, "SMALL_BOX": 14}
_COURIER_ONLY = {"SMALL": 0, "MEDIUM": 0, "N_SAKTO": 0, "MINIBOX": 0, "SMALL_BOX": 0}

CAPACITY: dict[ShipClass, dict[str, int]] = {
    ShipClass.MINI_GT: _SMALL_CAR,
    ShipClass.POPRACE: _SMALL_CAR,
    ShipClass.TOMICA: _SMALL_CAR,
    ShipClass.HOT_WHEELS_MAINLINE: _SMALL_CAR,
    ShipClass.HOT_WHEELS_PREMIUM: _SMALL_CAR,
    ShipClass.LOOSE_NO_BOX: _SMALL_CAR,
    ShipClass.KAIDO: _BOXED_CAR,
    ShipClass.BLISTER: _BOXED_CAR,
    ShipClass.ACRYLIC_TRUE_SCALE: _ACRYLIC,
    ShipClass.LALAMOVE: _COURIER_ONLY,
}

LALAMOVE_ONLY = {ShipClass.LALAMOVE, ShipClass.DIORAMA}


class PricedLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    variant_id: int
    qty: int = Field(ge=1)
    unit_price_cents: int = Field(ge=0)
    ship_class: Optional[ShipClass] = None


class FeeOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    cop: bool = False
    lbc_package: Optional[str] = None
    priority_requested: bool = False
    priority_available: bool = True
    insurance_selected: bool = False
    insurance_fee_cents: Optional[int] = None


class FeeLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    amount_cents: int
    muted: bool = False


class FeeBreakdown(BaseModel):
    model_config = ConfigDict(frozen=True)

    subtotal_cents: int
    shipping_fee_cents: int = 0
    cop_fee_cents: int = 0
    lalamove_fee_cents: int = 0
    priority_fee_cents: int = 0
    insurance_fee_cents: int = 0
    cop_shipping_fee_due_cents: int = 0
    suggested_insurance_cents: int = 0
    package: Optional[str] = None
    warning: Optional[str] = None
    lines: tuple[FeeLine, ...] = ()
    total_cents: int


def bucket(ship_class: Optional[ShipClass]) -> ShipClass:
    cls = ship_class or ShipClass.MINI_GT
    return ShipClass.LALAMOVE if cls == ShipClass.DIORAMA else cls


def ship_counts(lines: Iterable[PricedLine]) -> dict[ShipClass, int]:
    counts: dict[ShipClass, int] = {}
    for line in lines:
        b = bucket(line.ship_class)
        counts[b] = counts.get(b, 0) + max(0, line.qty)
    return counts


def is_lalamove_only(ship_class: Optional[ShipClass]) -> bool:
    return ship_class in LALAMOVE_ONLY


def fits(counts: dict[ShipClass, int], package: str) -> bool:
    return all(n <= CAPACITY[cls][package] for cls, n in counts.items() if n > 0)


def recommend_pouch(counts: dict[ShipClass, int]) -> Optional[str]:
    """Smallest J&T pouch that holds the cart, or None."""
    return next((p for p in JNT_POUCHES if fits(counts, p)), None)


def recommend_lbc_package(counts: dict[ShipClass, int]) -> Optional[str]:
    return next((p for p in LBC_PACKAGES if fits(counts, p)), None)


def suggested_insurance_fee(subtotal_cents: int) -> int:
    """₱5 for every started ₱500 of declared value."""
    declared = max(0, subtotal_cents)
    return ceil(declared / (500 * PESO)) * 5 * PESO


def _require_region(region: Optional[Region]) -> Region:
    if region is None:
        raise ValidationFailed("INVALID_REGION", "Shipping region is required for courier delivery")
    return Region(region)


def compute_fees(lines: Iterable[PricedLine], method: ShippingMethod, region: Optional[Region],
                 options: FeeOptions = FeeOptions()) -> FeeBreakdown:
    lines = list(lines)
    method = ShippingMethod(method)
    subtotal = sum(l.unit_price_cents * l.qty for l in lines)
    counts = ship_counts(lines)

    if method != ShippingMethod.LALAMOVE and any(is_lalamove_only(l.ship_class) for l in lines):
        raise ValidationFailed("UNSUPPORTED_METHOD_FOR_ITEM", "Some items can only be delivered by Lalamove")
    if options.priority_requested and not options.priority_available:
        raise ValidationFailed("PRIORITY_UNAVAILABLE", "Priority shipping is currently unavailable")

    shipping = cop = lalamove = cop_due = 0
    package = warning = None
    out = [FeeLine(label="Items subtotal", amount_cents=subtotal)]

    if method == ShippingMethod.JNT:
        region = _require_region(region)
        package = recommend_pouch(counts)
        if package is None:
            raise ValidationFailed("CAPACITY_EXCEEDED", "Cart exceeds J&T medium pouch capacity")
        shipping = JNT_RATES[package][region] * PESO
        out.append(FeeLine(label=f"Shipping fee ({REGION_LABEL[region]}, {package.lower()} pouch)", amount_cents=shipping))

    elif method == ShippingMethod.LBC:
        region = _require_region(region)
        if options.lbc_package in LBC_PACKAGES and fits(counts, options.lbc_package):
            package = options.lbc_package
        else:
            package = recommend_lbc_package(counts)
        if package is None:
            package = LBC_MEDIUM_APPROVAL
            warning = "Cart requires LBC Medium Box (subject to admin approval)."
            out.append(FeeLine(label="LBC Medium Box (subject to approval)", amount_cents=0))
        else:
            rate = LBC_RATES[package][region] * PESO
            label = f"LBC {package.replace('_', ' ')} ({REGION_LABEL[region]})"
            if options.cop:
                cop_due = rate
                out.append(FeeLine(label=f"{label} - pay at branch", amount_cents=rate, muted=True))
            else:
                shipping = rate
                out.append(FeeLine(label=label, amount_cents=rate))
        if options.cop:
            cop = LBC_COP_CONVENIENCE * PESO
            out.append(FeeLine(label="LBC COP convenience fee", amount_cents=cop))

    elif method == ShippingMethod.LALAMOVE:
        lalamove = LALAMOVE_CONVENIENCE * PESO
        out.append(FeeLine(label="Lalamove delivery - pay rider directly", amount_cents=0, muted=True))
        out.append(FeeLine(label="Lalamove convenience fee", amount_cents=lalamove))

    else:
        out.append(FeeLine(label="Pickup (store)", amount_cents=0))

    priority = PRIORITY_SHIPPING * PESO if options.priority_requested else 0
    if priority:
        out.append(FeeLine(label="Priority shipping", amount_cents=priority))

    suggested = suggested_insurance_fee(subtotal)
    insurance = 0
    if method != ShippingMethod.LALAMOVE:
        if options.insurance_selected:
            chosen = suggested if options.insurance_fee_cents is None else options.insurance_fee_cents
            insurance = max(0, chosen)
            out.append(FeeLine(label="Shipping insurance", amount_cents=insurance))
        else:
            out.append(FeeLine(label="Shipping insurance (optional)", amount_cents=suggested, muted=True))

    total = sum(l.amount_cents for l in out if not l.muted)
    return FeeBreakdown(
        subtotal_cents=subtotal,
        shipping_fee_cents=shipping,
        cop_fee_cents=cop,
        lalamove_fee_cents=lalamove,
        priority_fee_cents=priority,
        insurance_fee_cents=insurance,
        cop_shipping_fee_due_cents=cop_due,
        suggested_insurance_cents=suggested,
        package=package,
        warning=warning,
        lines=tuple(out),
        total_cents=total,
    )
