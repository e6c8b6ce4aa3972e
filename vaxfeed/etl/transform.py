"""Transform joined bulk-feed records into canonical :class:`Location` records.

This is the generic adapter shared by every provider that publishes a SMART
Scheduling Links feed. Provider differences are expressed as data on
:class:`FeedSource` (hosts, id formatting, manual corrections) rather than as
separate code paths.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from vaxfeed.core.config import DEFAULT_API_PATH
from vaxfeed.core.errors import ParseError
from vaxfeed.etl.addresses import split_address_lines, valid_zip
from vaxfeed.etl.products import PRODUCTS_BY_CVX_CODE, is_non_covid_product, match_vaccine_product
from vaxfeed.etl.text import clean_url, parse_us_phone_number
from vaxfeed.models import (
    Availability,
    Available,
    Dose,
    ExternalId,
    Location,
    LocationType,
    Position,
    Slot,
    VaccineProduct,
)
from vaxfeed.vendors.smart_scheduling import (
    BookingLinkExtension,
    CapacityExtension,
    DoseExtension,
    FeedLocation,
    ProductExtension,
    Schedule,
    UnrecognizedExtension,
)
from vaxfeed.vendors.smart_scheduling import Slot as FeedSlot

logger = logging.getLogger(__name__)

# Identifier systems with a well known short name.
KNOWN_ID_SYSTEMS: Dict[str, str] = {
    "https://cdc.gov/vaccines/programs/vtrcks": "vtrcks",
    "http://hl7.org/fhir/sid/us-npi": "npi_usa",
    "urn:oid:2.16.840.1.113883.4.6": "npi_usa",
}

UnknownIdFormatter = Callable[[str, str, str], Optional[Tuple[str, str]]]


@dataclass
class FeedSource:
    """Everything that distinguishes one bulk-feed provider from another."""

    provider: str
    hosts_by_state: Dict[str, List[str]] = field(default_factory=dict)
    api_path: str = DEFAULT_API_PATH
    location_type: LocationType = LocationType.clinic
    source_name: Optional[str] = None
    # Manual fixes keyed by the feed's location id, merged over the raw record.
    corrections: Mapping[str, Dict[str, Any]] = field(default_factory=dict)
    # Called with (id_prefix, system, value) for identifiers we don't know.
    format_unknown_id: Optional[UnknownIdFormatter] = None
    booking_url: Optional[Callable[[str, Dict[str, Any]], Optional[str]]] = None

    @property
    def availability_source(self) -> str:
        return self.source_name or f"vaxfeed-{self.provider}"

    def manifest_url(self, host: str) -> str:
        return f"{host.rstrip('/')}{self.api_path}"

    def id_prefix(self, host: str) -> str:
        clean_host = host.split("://", 1)[-1].rstrip("/").lower()
        return f"{self.provider}-{clean_host}"


@dataclass(slots=True)
class ScheduleInfo:
    is_covid: bool = True
    has_non_covid_products: bool = False
    products: List[VaccineProduct] = field(default_factory=list)
    dose: Optional[Dose] = None


def _warn_extension(kind: str, resource_id: str, extension: UnrecognizedExtension) -> None:
    logger.warning(
        "Ignoring %s extension (%s) on %s: url=%s raw=%r",
        kind,
        extension.reason,
        resource_id,
        extension.url,
        extension.raw,
    )


def parse_schedule(schedule: Optional[Schedule]) -> ScheduleInfo:
    """Work out the products and dose a schedule is for, and whether it's for COVID at all."""
    info = ScheduleInfo()
    if schedule is None:
        return info

    doses = set()
    for extension in schedule.extensions:
        if isinstance(extension, ProductExtension):
            product = None
            if extension.code:
                product = PRODUCTS_BY_CVX_CODE.get(extension.code)
            if product is None and extension.display:
                product = match_vaccine_product(extension.display)

            if product:
                if product not in info.products:
                    info.products.append(product)
            elif is_non_covid_product(extension.display):
                info.has_non_covid_products = True
            else:
                logger.warning(
                    "Unparseable product %r (code=%s) on schedule %s",
                    extension.display,
                    extension.code,
                    schedule.id,
                )
        elif isinstance(extension, DoseExtension):
            doses.add(extension.dose)
        elif isinstance(extension, UnrecognizedExtension):
            _warn_extension("schedule", schedule.id, extension)
        else:
            logger.warning("Unexpected %s extension on schedule %s", type(extension).__name__, schedule.id)

    if len(doses) > 1:
        info.dose = Dose.all_doses
    elif 1 in doses:
        info.dose = Dose.first_dose_only
    elif 2 in doses:
        info.dose = Dose.second_dose_only

    # Some feeds list non-COVID products on COVID schedules. A schedule with
    # *only* non-COVID products is really a non-COVID schedule.
    if not info.products and info.has_non_covid_products:
        info.is_covid = False

    return info


def format_slots(feed_slots: Iterable[FeedSlot]) -> Tuple[Available, List[Slot]]:
    available = Available.no
    slots: List[Slot] = []
    schedule_info: Dict[str, ScheduleInfo] = {}

    for feed_slot in feed_slots:
        schedule = feed_slot.schedule
        if schedule is not None and schedule.id not in schedule_info:
            schedule_info[schedule.id] = parse_schedule(schedule)
        info = schedule_info[schedule.id] if schedule is not None else ScheduleInfo()
        if not info.is_covid:
            continue
        if not feed_slot.start:
            logger.warning("Skipping slot %s without a start time", feed_slot.id)
            continue

        slot_available = Available.yes if feed_slot.status == "free" else Available.no
        if available == Available.no:
            available = slot_available

        capacity = 1
        booking_url = None
        for extension in feed_slot.extensions:
            if isinstance(extension, CapacityExtension):
                capacity = extension.capacity
            elif isinstance(extension, BookingLinkExtension):
                booking_url = extension.url
            elif isinstance(extension, UnrecognizedExtension):
                _warn_extension("slot", feed_slot.id, extension)
            else:
                logger.warning("Unexpected %s extension on slot %s", type(extension).__name__, feed_slot.id)

        slots.append(
            Slot(
                start=feed_slot.start,
                end=feed_slot.end,
                available=slot_available,
                available_count=capacity if capacity > 1 else None,
                products=list(info.products),
                dose=info.dose,
                booking_url=booking_url,
            )
        )

    return available, slots


def format_address(raw_address: Optional[Dict[str, Any]], context: str = "") -> Dict[str, Any]:
    if not isinstance(raw_address, dict):
        raw_address = {}
    lines = raw_address.get("line") or []
    if isinstance(lines, str):
        lines = [lines]
    lines = [line for line in lines if isinstance(line, str)] if isinstance(lines, list) else []
    return {
        "address_lines": split_address_lines(lines),
        "city": raw_address.get("city") or None,
        "state": str(raw_address.get("state") or "").upper() or None,
        "postal_code": valid_zip(raw_address.get("postalCode"), context),
        "county": raw_address.get("district") or None,
    }


def values_as_object(telecom: Optional[Iterable[Dict[str, Any]]]) -> Dict[str, str]:
    """Map ``[{system, value}, ...]`` to ``{system: value}``, keeping the first of each system."""
    result: Dict[str, str] = {}
    for item in telecom or []:
        if isinstance(item, dict) and item.get("system") and item.get("value"):
            result.setdefault(item["system"], item["value"])
    return result


def format_external_ids(source: FeedSource, host: str, location: Dict[str, Any]) -> List[ExternalId]:
    id_prefix = source.id_prefix(host)
    external_ids = [ExternalId(f"{id_prefix}-location", str(location["id"]))]
    identifiers = location.get("identifier")
    for identifier in identifiers if isinstance(identifiers, list) else []:
        if not isinstance(identifier, dict):
            logger.warning("Ignoring malformed identifier %r on location %s", identifier, location["id"])
            continue
        system = identifier.get("system")
        value = identifier.get("value")
        if not isinstance(system, str) or not system or value in (None, ""):
            continue
        value = str(value)
        if system in KNOWN_ID_SYSTEMS:
            external_ids.append(ExternalId(KNOWN_ID_SYSTEMS[system], value))
            continue
        formatted = source.format_unknown_id(id_prefix, system, value) if source.format_unknown_id else None
        external_ids.append(ExternalId(*formatted) if formatted else ExternalId(system, value))
    return external_ids


def _format_position(raw: Any, location_id: str) -> Optional[Position]:
    if not raw:
        return None
    # Feed positions may carry an altitude, which we don't keep.
    try:
        return Position(latitude=float(raw["latitude"]), longitude=float(raw["longitude"]))
    except (KeyError, TypeError, ValueError):
        logger.warning("Ignoring invalid position %r for location %s", raw, location_id)
        return None


def _format_phone(raw: Optional[str], location_id: str) -> Optional[str]:
    if not raw:
        return None
    try:
        return parse_us_phone_number(raw)
    except ParseError as exc:
        logger.warning("Keeping unparsed phone number for location %s: %s", location_id, exc)
        return raw.strip()


def _format_url(raw: Optional[str], location_id: str) -> Optional[str]:
    try:
        return clean_url(raw)
    except ParseError as exc:
        logger.warning("Dropping info URL for location %s: %s", location_id, exc)
        return None


def apply_correction(location: Dict[str, Any], corrections: Mapping[str, Dict[str, Any]]) -> Dict[str, Any]:
    patch = corrections.get(str(location.get("id"))) if corrections else None
    if not patch:
        return location
    corrected = copy.deepcopy(location)
    corrected.update(copy.deepcopy(patch))
    return corrected


def format_location(
    source: FeedSource,
    host: str,
    valid_at: Optional[str],
    entry: FeedLocation,
    checked_at: Optional[str] = None,
    corrections: Optional[Mapping[str, Dict[str, Any]]] = None,
) -> Optional[Location]:
    """Build a canonical record, or return ``None`` for locations that aren't for COVID vaccines.

    ``corrections`` overrides the source's own correction table when given.
    Raises :class:`ParseError` when the record is too broken to use.
    """
    # Some feeds mark every schedule as COVID. Skip locations where no
    # schedule actually looks like a COVID schedule.
    if not any(parse_schedule(schedule).is_covid for schedule in entry.schedules):
        return None

    raw = apply_correction(entry.location, source.corrections if corrections is None else corrections)
    location_id = str(raw.get("id"))
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ParseError(f"Location {location_id} has no usable name: {name!r}")
    name = name.strip()

    telecom = values_as_object(raw.get("telecom"))
    available, slots = format_slots(entry.slots)

    products: List[VaccineProduct] = []
    for slot in slots:
        for product in slot.products:
            if product not in products:
                products.append(product)
    open_count = sum(slot.available_count or 1 for slot in slots if slot.available == Available.yes)

    checked_at = checked_at or datetime.now(timezone.utc).isoformat()
    return Location(
        name=name,
        external_ids=format_external_ids(source, host, raw),
        provider=source.provider,
        location_type=source.location_type,
        position=_format_position(raw.get("position"), location_id),
        info_phone=_format_phone(telecom.get("phone"), location_id),
        info_url=_format_url(telecom.get("url"), location_id),
        booking_url=source.booking_url(host, raw) if source.booking_url else None,
        is_public=True,
        availability=Availability(
            source=source.availability_source,
            valid_at=valid_at,
            checked_at=checked_at,
            available=available,
            available_count=open_count if open_count > 1 else None,
            products=products,
            slots=slots,
            is_public=True,
        ),
        **format_address(raw.get("address"), location_id),
    )
