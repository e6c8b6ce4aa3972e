"""Canonical data models shared by every feed source and the reconciliation engine."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple


class Available(str, Enum):
    """Vaccine availability at a location or slot."""

    yes = "YES"
    no = "NO"
    # We got good data, but can't tell availability from it.
    unknown = "UNKNOWN"


class LocationType(str, Enum):
    pharmacy = "PHARMACY"
    mass_vax = "MASS_VAX"
    clinic = "CLINIC"


class Dose(str, Enum):
    first_dose_only = "first_dose_only"
    second_dose_only = "second_dose_only"
    all_doses = "all_doses"


class VaccineProduct(str, Enum):
    astra_zeneca = "astra_zeneca"
    janssen = "jj"
    moderna = "moderna"
    moderna_age_0_5 = "moderna_age_0_5"
    moderna_age_6_11 = "moderna_age_6_11"
    moderna_ba4_ba5 = "moderna_ba4_ba5"
    moderna_ba4_ba5_age_0_5 = "moderna_ba4_ba5_age_0_5"
    novavax = "novavax"
    pfizer = "pfizer"
    pfizer_age_0_4 = "pfizer_age_0_4"
    pfizer_age_5_11 = "pfizer_age_5_11"
    pfizer_ba4_ba5 = "pfizer_ba4_ba5"
    pfizer_ba4_ba5_age_0_4 = "pfizer_ba4_ba5_age_0_4"
    pfizer_ba4_ba5_age_5_11 = "pfizer_ba4_ba5_age_5_11"


class ExternalId(NamedTuple):
    """A location's id inside some third party's namespace."""

    system: str
    value: str

    def key(self) -> str:
        return f"{self.system}:{self.value}"


def unique_external_ids(ids: Iterable[Sequence[str]]) -> List[ExternalId]:
    """Remove duplicate (system, value) pairs, keeping the first occurrence."""
    seen = set()
    result: List[ExternalId] = []
    for system, value in ids:
        external_id = ExternalId(str(system), str(value))
        if external_id.key() in seen:
            continue
        seen.add(external_id.key())
        result.append(external_id)
    return result


def parse_external_ids(raw: Any) -> List[ExternalId]:
    """Accept either ``{system: value}`` or ``[[system, value], ...]``."""
    if not raw:
        return []
    if isinstance(raw, dict):
        return unique_external_ids(raw.items())
    return unique_external_ids(tuple(pair) for pair in raw)


def parse_available(value: Any) -> Available:
    """Coerce "yes", "YES" or an Available member into an Available member."""
    if isinstance(value, Available):
        return value
    return Available(str(value).upper())


def _value(item: Any) -> Any:
    return item.value if isinstance(item, Enum) else item


def _compact(data: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


@dataclass(slots=True)
class Position:
    latitude: float
    longitude: float

    def to_dict(self) -> Dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Position"]:
        if not data:
            return None
        return cls(latitude=float(data["latitude"]), longitude=float(data["longitude"]))


@dataclass(slots=True)
class Slot:
    start: str
    end: Optional[str] = None
    available: Available = Available.unknown
    available_count: Optional[int] = None
    products: List[VaccineProduct] = field(default_factory=list)
    dose: Optional[Dose] = None
    booking_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "start": self.start,
                "end": self.end,
                "available": _value(self.available),
                "available_count": self.available_count if (self.available_count or 0) > 1 else None,
                "products": [_value(p) for p in self.products] or None,
                "dose": _value(self.dose) if self.dose else None,
                "booking_url": self.booking_url,
            }
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Slot":
        return cls(
            start=data["start"],
            end=data.get("end"),
            available=parse_available(data.get("available", Available.unknown)),
            available_count=data.get("available_count"),
            products=[VaccineProduct(p) for p in data.get("products") or []],
            dose=Dose(data["dose"]) if data.get("dose") else None,
            booking_url=data.get("booking_url"),
        )


@dataclass(slots=True)
class Availability:
    """A point-in-time observation of a location's availability."""

    source: str
    checked_at: str
    available: Available = Available.unknown
    valid_at: Optional[str] = None
    available_count: Optional[int] = None
    products: List[VaccineProduct] = field(default_factory=list)
    slots: List[Slot] = field(default_factory=list)
    is_public: bool = True
    meta: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "source": self.source,
                "valid_at": self.valid_at,
                "checked_at": self.checked_at,
                "available": _value(self.available),
                "available_count": self.available_count if (self.available_count or 0) > 1 else None,
                "products": [_value(p) for p in self.products] or None,
                "slots": [slot.to_dict() for slot in self.slots] or None,
                "is_public": self.is_public,
                "meta": self.meta or None,
            }
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Availability":
        count = data.get("available_count")
        return cls(
            source=data["source"],
            checked_at=data["checked_at"],
            valid_at=data.get("valid_at"),
            available=parse_available(data.get("available", Available.unknown)),
            available_count=int(count) if count is not None else None,
            products=[VaccineProduct(p) for p in data.get("products") or []],
            slots=[Slot.from_dict(s) for s in data.get("slots") or []],
            is_public=data.get("is_public", True),
            meta=dict(data.get("meta") or {}),
        )


# Location fields that a metadata update may overwrite.
LOCATION_SCALAR_FIELDS: Tuple[str, ...] = (
    "name",
    "provider",
    "location_type",
    "address_lines",
    "city",
    "state",
    "postal_code",
    "county",
    "position",
    "info_phone",
    "info_url",
    "booking_phone",
    "booking_url",
    "description",
    "is_public",
)


@dataclass(slots=True)
class Location:
    """Canonical record for a physical place that offers vaccinations."""

    name: str
    external_ids: List[ExternalId] = field(default_factory=list)
    id: Optional[str] = None
    provider: Optional[str] = None
    location_type: Optional[LocationType] = None
    address_lines: List[str] = field(default_factory=list)
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    county: Optional[str] = None
    position: Optional[Position] = None
    info_phone: Optional[str] = None
    info_url: Optional[str] = None
    booking_phone: Optional[str] = None
    booking_url: Optional[str] = None
    description: Optional[str] = None
    is_public: bool = True
    meta: Dict[str, Any] = field(default_factory=dict)
    availability: Optional[Availability] = None

    def __post_init__(self) -> None:
        self.external_ids = unique_external_ids(self.external_ids)
        self.address_lines = [line for line in self.address_lines if line and line.strip()]

    def hidden(self) -> "Location":
        """Copy of this location marked private, without availability."""
        return replace(self, is_public=False, availability=None, meta=dict(self.meta))

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "id": self.id,
                "name": self.name,
                "external_ids": [list(external_id) for external_id in self.external_ids],
                "provider": self.provider,
                "location_type": _value(self.location_type) if self.location_type else None,
                "address_lines": list(self.address_lines) or None,
                "city": self.city,
                "state": self.state,
                "postal_code": self.postal_code,
                "county": self.county,
                "position": self.position.to_dict() if self.position else None,
                "info_phone": self.info_phone,
                "info_url": self.info_url,
                "booking_phone": self.booking_phone,
                "booking_url": self.booking_url,
                "description": self.description,
                "is_public": self.is_public,
                "meta": dict(self.meta) if self.meta else None,
                "availability": self.availability.to_dict() if self.availability else None,
            }
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Location":
        location_type = data.get("location_type")
        if location_type and not isinstance(location_type, LocationType):
            location_type = LocationType(str(location_type).upper())
        availability = data.get("availability")
        return cls(
            id=data.get("id"),
            name=data.get("name") or "",
            external_ids=parse_external_ids(data.get("external_ids")),
            provider=data.get("provider"),
            location_type=location_type or None,
            address_lines=list(data.get("address_lines") or []),
            city=data.get("city"),
            state=data.get("state"),
            postal_code=data.get("postal_code"),
            county=data.get("county"),
            position=Position.from_dict(data.get("position")),
            info_phone=data.get("info_phone"),
            info_url=data.get("info_url"),
            booking_phone=data.get("booking_phone"),
            booking_url=data.get("booking_url"),
            description=data.get("description"),
            is_public=data.get("is_public", True),
            meta=dict(data.get("meta") or {}),
            availability=Availability.from_dict(availability) if availability else None,
        )
