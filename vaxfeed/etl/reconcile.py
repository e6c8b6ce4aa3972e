"""Reconcile freshly observed records with the registry of known locations.

Records are matched to registry rows by external id, using an index built once
per run. Matched rows get their metadata overwritten and their external ids
unioned; unmatched records become new rows. Availability is always stored as a
new observation, never merged into an earlier one.
"""

import logging
import math
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from numbers import Number
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from vaxfeed.core.errors import IdentityConflictError, ValidationError
from vaxfeed.core.registry import LocationRegistry, is_uuid, matches_scope
from vaxfeed.models import (
    LOCATION_SCALAR_FIELDS,
    Availability,
    Available,
    ExternalId,
    Location,
    LocationType,
    VaccineProduct,
    parse_external_ids,
    unique_external_ids,
)

logger = logging.getLogger(__name__)

# Id systems too unreliable to match on. VTrckS pins are frequently shared by
# unrelated locations, e.g. every clinic run by one county health department.
UNRELIABLE_ID_SYSTEMS = frozenset({"vtrcks"})

PRODUCT_VALUES = frozenset(product.value for product in VaccineProduct)


class LocationSink(Protocol):
    """Where the ingestion job sends records."""

    def known_locations(self, provider: str, state: str) -> List[Location]:
        ...

    def send(self, record: Location, update_location: bool = True) -> Any:
        ...


class ExternalIdIndex:
    """Lookup from ``"system:value"`` to a location."""

    def __init__(
        self,
        locations: Iterable[Location] = (),
        unreliable_systems: Iterable[str] = UNRELIABLE_ID_SYSTEMS,
    ) -> None:
        self.unreliable_systems = frozenset(unreliable_systems)
        self._by_key: Dict[str, Location] = {}
        for location in locations:
            self.add(location)

    def __len__(self) -> int:
        return len(self._by_key)

    def _usable(self, external_id: ExternalId) -> bool:
        return external_id.system not in self.unreliable_systems

    def add(self, location: Location) -> None:
        for external_id in location.external_ids:
            if self._usable(external_id):
                self._by_key[external_id.key()] = location

    def lookup(self, external_ids: Sequence[ExternalId]) -> Optional[Location]:
        """The location for the first of ``external_ids`` that we know about."""
        for external_id in external_ids:
            if self._usable(external_id):
                location = self._by_key.get(external_id.key())
                if location is not None:
                    return location
        return None

    def matches(self, external_ids: Sequence[ExternalId]) -> List[Location]:
        """Every distinct location that any of ``external_ids`` points at."""
        result: Dict[Any, Location] = {}
        for external_id in external_ids:
            if not self._usable(external_id):
                continue
            location = self._by_key.get(external_id.key())
            if location is not None:
                result.setdefault(location.id or id(location), location)
        return list(result.values())


def merge_location(existing: Location, update: Dict[str, Any]) -> Location:
    """Apply the fields present in ``update`` on top of ``existing``.

    Scalar fields are overwritten, external ids are unioned (existing order
    first) and ``meta`` is merged one level deep.
    """
    data = existing.to_dict()
    data.pop("availability", None)
    for name in LOCATION_SCALAR_FIELDS:
        if name in update and update[name] is not None:
            data[name] = update[name]

    external_ids = unique_external_ids(list(existing.external_ids) + parse_external_ids(update.get("external_ids")))
    data["external_ids"] = [list(external_id) for external_id in external_ids]
    data["meta"] = {**existing.meta, **(update.get("meta") or {})}
    data["id"] = existing.id
    return Location.from_dict(data)


def _is_number(value: Any) -> bool:
    # JSON parsers accept NaN and Infinity, which can't be stored as counts.
    return isinstance(value, Number) and not isinstance(value, bool) and math.isfinite(value)


def _check_timestamp(value: Any, field_name: str) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be an ISO 8601 timestamp string")
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(f"{field_name} is not a valid ISO 8601 timestamp: {value!r}") from exc


def _check_enum(value: Any, enum_type, field_name: str) -> None:
    allowed = [member.value for member in enum_type]
    if isinstance(value, enum_type):
        return
    if not isinstance(value, str) or value.upper() not in [item.upper() for item in allowed]:
        raise ValidationError(f"{field_name} must be one of {', '.join(allowed)}; got {value!r}")


def _check_products(value: Any, field_name: str) -> None:
    if value is None:
        return
    if not isinstance(value, list):
        raise ValidationError(f"{field_name} must be a list")
    for product in value:
        if isinstance(product, VaccineProduct):
            product = product.value
        if not isinstance(product, str) or product not in PRODUCT_VALUES:
            raise ValidationError(f"{field_name} contains an unknown product: {product!r}")


def _check_count(value: Any, field_name: str) -> None:
    if value is not None and not _is_number(value):
        raise ValidationError(f"{field_name} must be a number; got {value!r}")


def _check_external_ids(value: Any) -> None:
    if value is None or isinstance(value, dict):
        return
    if not isinstance(value, list):
        raise ValidationError("external_ids must be an object or a list of [system, value] pairs")
    for pair in value:
        if not isinstance(pair, (list, tuple)) or len(pair) != 2:
            raise ValidationError(f"external_ids entries must be [system, value] pairs; got {pair!r}")


def validate_availability(availability: Any) -> None:
    if not isinstance(availability, dict):
        raise ValidationError("availability must be an object")
    if not availability.get("source") or not isinstance(availability["source"], str):
        raise ValidationError("availability.source is required")
    if "available" not in availability:
        raise ValidationError("availability.available is required")
    _check_enum(availability["available"], Available, "availability.available")
    _check_count(availability.get("available_count"), "availability.available_count")
    _check_timestamp(availability.get("valid_at"), "availability.valid_at")
    _check_timestamp(availability.get("checked_at"), "availability.checked_at")
    _check_products(availability.get("products"), "availability.products")
    if availability.get("meta") is not None and not isinstance(availability["meta"], dict):
        raise ValidationError("availability.meta must be an object")

    slots = availability.get("slots")
    if slots is None:
        return
    if not isinstance(slots, list):
        raise ValidationError("availability.slots must be a list")
    for index, slot in enumerate(slots):
        prefix = f"availability.slots[{index}]"
        if not isinstance(slot, dict) or not slot.get("start"):
            raise ValidationError(f"{prefix} must be an object with a start time")
        _check_timestamp(slot["start"], f"{prefix}.start")
        _check_timestamp(slot.get("end"), f"{prefix}.end")
        if "available" in slot:
            _check_enum(slot["available"], Available, f"{prefix}.available")
        _check_count(slot.get("available_count"), f"{prefix}.available_count")
        _check_products(slot.get("products"), f"{prefix}.products")


def validate_update(payload: Any) -> None:
    """Raise :class:`ValidationError` if ``payload`` can't be applied."""
    if not isinstance(payload, dict):
        raise ValidationError("Update body must be a JSON object")
    if payload.get("id") is not None and not isinstance(payload["id"], str):
        raise ValidationError("id must be a string")
    if payload.get("name") is not None and not isinstance(payload["name"], str):
        raise ValidationError("name must be a string")
    _check_external_ids(payload.get("external_ids"))
    if payload.get("meta") is not None and not isinstance(payload["meta"], dict):
        raise ValidationError("meta must be an object")
    if payload.get("location_type") is not None:
        _check_enum(payload["location_type"], LocationType, "location_type")
    address_lines = payload.get("address_lines")
    if address_lines is not None and not (
        isinstance(address_lines, list) and all(isinstance(line, str) for line in address_lines)
    ):
        raise ValidationError("address_lines must be a list of strings")
    position = payload.get("position")
    if position is not None and not (
        isinstance(position, dict) and _is_number(position.get("latitude")) and _is_number(position.get("longitude"))
    ):
        raise ValidationError("position must have numeric latitude and longitude")
    if payload.get("availability") is not None:
        validate_availability(payload["availability"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class UpdateResult:
    action: str
    location: Location
    availability: Optional[Availability] = None

    @property
    def created(self) -> bool:
        return self.action == "created"

    def to_dict(self) -> Dict[str, Any]:
        return replace(self.location, availability=self.availability).to_dict()


class Reconciler:
    """Apply update payloads to a registry.

    With ``cache_index`` (the default, for batch runs) external-id indexes are
    built on first use for each provider/state scope and kept up to date as
    rows are written, so one instance should live for one run. Without it each
    update asks the registry for just the rows its external ids point at.

    Matching and writing happen under one lock, so threads sharing an instance
    never both create the same location.
    """

    def __init__(
        self,
        registry: LocationRegistry,
        unreliable_systems: Iterable[str] = UNRELIABLE_ID_SYSTEMS,
        cache_index: bool = True,
    ) -> None:
        self.registry = registry
        self.unreliable_systems = frozenset(unreliable_systems)
        self.cache_index = cache_index
        self._indexes: Dict[Tuple[Optional[str], Optional[str]], ExternalIdIndex] = {}
        self._lock = threading.RLock()

    def _index(
        self,
        provider: Optional[str],
        state: Optional[str],
        external_ids: Sequence[ExternalId] = (),
    ) -> ExternalIdIndex:
        scope = (provider or None, (state or "").upper() or None)
        if not self.cache_index:
            keys = [
                external_id.key()
                for external_id in external_ids
                if external_id.system not in self.unreliable_systems
            ]
            found = self.registry.find_by_external_ids(keys, provider=scope[0], state=scope[1]) if keys else []
            return ExternalIdIndex(found, self.unreliable_systems)
        with self._lock:
            if scope not in self._indexes:
                self._indexes[scope] = ExternalIdIndex(
                    self.registry.list_locations(provider=scope[0], state=scope[1]),
                    self.unreliable_systems,
                )
            return self._indexes[scope]

    def _remember(self, location: Location) -> None:
        with self._lock:
            for (provider, state), index in list(self._indexes.items()):
                if matches_scope(location, provider, state):
                    index.add(location)

    def resolve(self, payload: Dict[str, Any]) -> Optional[Location]:
        """Find the registry row an update is for, or ``None`` if it's a new location."""
        location_id = payload.get("id")
        if location_id and is_uuid(location_id):
            location = self.registry.get_location(location_id)
            if location is not None:
                return location
            logger.info("Location id %s is unknown; matching on external ids instead", location_id)

        external_ids = parse_external_ids(payload.get("external_ids"))
        if not external_ids:
            return None

        index = self._index(payload.get("provider"), payload.get("state"), external_ids)
        matches = index.matches(external_ids)
        if len(matches) > 1:
            ids = [location.id for location in matches]
            raise IdentityConflictError(
                f"External ids match {len(matches)} different locations: {', '.join(map(str, ids))}",
                location_ids=ids,
            )
        return index.lookup(external_ids)

    def apply_update(self, payload: Dict[str, Any], update_location: bool = False) -> UpdateResult:
        """Validate and apply one update. Nothing is written if validation fails."""
        validate_update(payload)
        with self._lock:
            return self._apply(payload, update_location)

    def _apply(self, payload: Dict[str, Any], update_location: bool) -> UpdateResult:
        existing = self.resolve(payload)

        if existing is None:
            if not payload.get("name"):
                raise ValidationError("Cannot create a location without a name", code="missing_name")
            data = {key: value for key, value in payload.items() if key != "availability"}
            if not is_uuid(data.get("id")):
                data.pop("id", None)
            location = self.registry.upsert_location(Location.from_dict(data))
            action = "created"
            logger.info("Created location %s (%s)", location.id, location.name)
        elif update_location:
            location = self.registry.upsert_location(merge_location(existing, payload))
            action = "updated"
        else:
            location = existing
            action = "updated"
        self._remember(location)

        availability = None
        if payload.get("availability") is not None:
            raw = dict(payload["availability"])
            raw.setdefault("checked_at", _now())
            raw.setdefault("valid_at", raw["checked_at"])
            availability = Availability.from_dict(raw)
            self.registry.add_availability(location.id, availability)

        return UpdateResult(action=action, location=location, availability=availability)


class MissingLocationSweep:
    """Track which known locations a run saw, so the rest can be hidden."""

    def __init__(self, known: Iterable[Location], unreliable_systems: Iterable[str] = UNRELIABLE_ID_SYSTEMS) -> None:
        self.known = list(known)
        self._index = ExternalIdIndex(self.known, unreliable_systems)
        self._found = set()

    def mark_found(self, record: Location) -> None:
        if record.id:
            self._found.add(record.id)
        for location in self._index.matches(record.external_ids):
            self._found.add(location.id)

    def missing(self) -> List[Location]:
        """Hidden copies of public known locations that weren't seen."""
        return [
            location.hidden()
            for location in self.known
            if location.is_public and location.id not in self._found
        ]


class ReconcilingSink:
    """Sink that reconciles records straight into a registry."""

    def __init__(self, registry: LocationRegistry) -> None:
        self.registry = registry
        self.reconciler = Reconciler(registry)

    def known_locations(self, provider: str, state: str) -> List[Location]:
        return self.registry.list_locations(provider=provider, state=state)

    def send(self, record: Location, update_location: bool = True) -> UpdateResult:
        return self.reconciler.apply_update(record.to_dict(), update_location=update_location)
