"""Per-method shipping details, as a union tagged by ``method``.

Each variant carries only the fields its courier needs. ``parse`` turns the
raw checkout payload into the right model and raises ``ValidationFailed``
with a specific code for anything the customer has to fix.
"""
import re
from typing import Annotated, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from order_engine.core.errors import ValidationFailed
from order_engine.db.models import ShippingMethod

PHONE_LENGTH = 11
_PHONE_RE = re.compile(r"^09\d{9}$")

PICKUP_DAYS = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")
LALAMOVE_WINDOWS = {
    "08_12": "8:00 AM - 12:00 PM",
    "12_15": "12:00 PM - 3:00 PM",
    "15_18": "3:00 PM - 6:00 PM",
    "18_21": "6:00 PM - 9:00 PM",
    "BUSINESS_HOURS": "Business hours",
    "ANYTIME": "Anytime",
    "CUSTOM": "Custom time",
}


def normalize_phone(raw: Optional[str]) -> str:
    digits = re.sub(r"\D", "", raw or "")
    if digits.startswith("63") and len(digits) == 12:
        digits = "0" + digits[2:]
    return digits[:PHONE_LENGTH]


def is_valid_phone(phone: str) -> bool:
    return bool(_PHONE_RE.match(phone))


class _Details(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    receiver_phone: str = ""
    notes: Optional[str] = None

    @field_validator("receiver_phone")
    @classmethod
    def _phone(cls, v):
        return normalize_phone(v)


class JntDetails(_Details):
    method: Literal["JNT"] = "JNT"
    receiver_name: str = ""
    house_street_unit: str = ""
    barangay: Optional[str] = None
    city: str = ""
    province: str = ""
    postal_code: Optional[str] = None

    required: ClassVar[tuple[str, ...]] = ("receiver_name", "house_street_unit", "city", "province")

    @property
    def full_address(self) -> str:
        parts = [self.house_street_unit, self.barangay, self.city, self.province, self.postal_code]
        return ", ".join(p for p in parts if p)


class LbcDetails(_Details):
    method: Literal["LBC"] = "LBC"
    first_name: str = ""
    last_name: str = ""
    branch_name: str = ""
    branch_city: str = ""
    cop: bool = False

    required: ClassVar[tuple[str, ...]] = ("first_name", "last_name", "branch_name", "branch_city")


class LalamoveSlot(BaseModel):
    date: str
    window_key: str

    @property
    def window_label(self) -> str:
        return LALAMOVE_WINDOWS.get(self.window_key, self.window_key)


class LalamoveDetails(_Details):
    method: Literal["LALAMOVE"] = "LALAMOVE"
    receiver_name: str = ""
    dropoff_address: str = ""
    map_url: Optional[str] = None
    slots: list[LalamoveSlot] = []

    required: ClassVar[tuple[str, ...]] = ("receiver_name", "dropoff_address")


class PickupDetails(_Details):
    method: Literal["PICKUP"] = "PICKUP"
    receiver_name: str = ""
    pickup_day: str = ""
    pickup_slot: str = ""

    required: ClassVar[tuple[str, ...]] = ("receiver_name",)


ShippingDetails = Annotated[
    Union[JntDetails, LbcDetails, LalamoveDetails, PickupDetails],
    Field(discriminator="method"),
]
_adapter = TypeAdapter(ShippingDetails)


def parse(method: ShippingMethod, raw: dict, *, pickup_schedule: dict[str, list[str]],
          pickup_unavailable: bool = False):
    method = ShippingMethod(method)
    try:
        details = _adapter.validate_python({**(raw or {}), "method": method.value})
    except ValidationError as exc:
        raise ValidationFailed("INVALID_SHIPPING_DETAILS", str(exc.errors()[0].get("msg"))) from exc

    for name in details.required:
        if not getattr(details, name):
            raise ValidationFailed("MISSING_SHIPPING_FIELD", f"{name} is required for {method.value}")

    if not details.receiver_phone:
        raise ValidationFailed("MISSING_SHIPPING_FIELD", "receiver_phone is required")
    if not is_valid_phone(details.receiver_phone):
        raise ValidationFailed("INVALID_PHONE", "Use an 11-digit PH mobile number (09XXXXXXXXX)")

    if isinstance(details, LalamoveDetails):
        if not details.slots:
            raise ValidationFailed("MISSING_SHIPPING_FIELD", "slots: select at least one Lalamove time slot")
        bad = [s.window_key for s in details.slots if s.window_key not in LALAMOVE_WINDOWS or not s.date]
        if bad:
            raise ValidationFailed("MISSING_SHIPPING_FIELD", f"slots: unknown Lalamove time slot {bad[0]}")

    if isinstance(details, PickupDetails):
        if pickup_unavailable:
            raise ValidationFailed("PICKUP_UNAVAILABLE", "Pickup is currently unavailable")
        day = details.pickup_day.upper()
        if day not in PICKUP_DAYS or details.pickup_slot not in pickup_schedule.get(day, []):
            raise ValidationFailed("INVALID_PICKUP_SLOT", "Choose a pickup day and slot from the schedule")
        details = details.model_copy(update={"pickup_day": day})

    return details
