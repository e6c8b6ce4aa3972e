"""Client for SMART Scheduling Links style bulk-publish feeds.

https://github.com/smart-on-fhir/smart-scheduling-links/

A feed is a manifest listing NDJSON files of ``Location``, ``Schedule`` and
``Slot`` resources. Schedules point at locations through ``actor`` references
and slots point at schedules through ``schedule.reference``.
"""

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urljoin

import requests

from vaxfeed.core.errors import ApiError
from vaxfeed.core.rate_limit import RateLimit

logger = logging.getLogger(__name__)
_SESSION = requests.Session()
DEFAULT_TIMEOUT = 150

EXTENSION_BASE = "http://fhir-registry.smarthealthit.org/StructureDefinition"


class Extensions:
    PRODUCT = f"{EXTENSION_BASE}/vaccine-product"
    DOSE = f"{EXTENSION_BASE}/vaccine-dose"
    CAPACITY = f"{EXTENSION_BASE}/slot-capacity"
    BOOKING_DEEP_LINK = f"{EXTENSION_BASE}/booking-deep-link"


@dataclass(frozen=True)
class ProductExtension:
    code: Optional[str]
    display: Optional[str]


@dataclass(frozen=True)
class DoseExtension:
    dose: int


@dataclass(frozen=True)
class CapacityExtension:
    capacity: int


@dataclass(frozen=True)
class BookingLinkExtension:
    url: str


@dataclass(frozen=True)
class UnrecognizedExtension:
    """An extension we don't understand, or one whose value has the wrong type."""

    url: Optional[str]
    raw: Dict[str, Any]
    reason: str = "unknown extension url"


Extension = Union[ProductExtension, DoseExtension, CapacityExtension, BookingLinkExtension, UnrecognizedExtension]


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def parse_extension(raw: Any) -> Extension:
    """Turn a raw ``{url, value*}`` extension into one of the typed variants. Never raises."""
    if not isinstance(raw, dict):
        return UnrecognizedExtension(None, {"value": raw}, "extension is not an object")

    url = raw.get("url")
    if url == Extensions.PRODUCT:
        coding = raw.get("valueCoding")
        if not isinstance(coding, dict) or not (coding.get("code") or coding.get("display")):
            return UnrecognizedExtension(url, raw, "product extension without a code or display name")
        code = coding.get("code")
        return ProductExtension(code=str(code) if code else None, display=coding.get("display"))
    if url == Extensions.DOSE:
        dose = _as_int(raw.get("valueInteger"))
        if dose not in (1, 2):
            return UnrecognizedExtension(url, raw, "dose must be 1 or 2")
        return DoseExtension(dose)
    if url == Extensions.CAPACITY:
        capacity = _as_int(raw.get("valueInteger"))
        if capacity is None:
            return UnrecognizedExtension(url, raw, "non-integer slot capacity")
        return CapacityExtension(capacity)
    if url == Extensions.BOOKING_DEEP_LINK:
        link = raw.get("valueUrl")
        if not isinstance(link, str) or not link.strip():
            return UnrecognizedExtension(url, raw, "booking link without a URL")
        return BookingLinkExtension(link.strip())
    return UnrecognizedExtension(url, raw)


def parse_extensions(resource: Dict[str, Any]) -> List[Extension]:
    return [parse_extension(raw) for raw in resource.get("extension") or []]


def reference_id(reference: Any, resource_type: str) -> Optional[str]:
    """Get the id from a reference like ``{"reference": "Location/123"}``."""
    if isinstance(reference, dict):
        reference = reference.get("reference")
    if not isinstance(reference, str):
        return None
    prefix = f"{resource_type}/"
    return reference[len(prefix):] if reference.startswith(prefix) else None


@dataclass(slots=True)
class ManifestOutput:
    type: str
    url: str


@dataclass(slots=True)
class Manifest:
    transaction_time: Optional[str]
    outputs: Dict[str, List[ManifestOutput]] = field(default_factory=dict)

    def urls(self, resource_type: str) -> List[str]:
        return [output.url for output in self.outputs.get(resource_type, [])]


@dataclass(slots=True)
class Schedule:
    id: str
    location_ids: List[str]
    extensions: List[Extension]
    raw: Dict[str, Any] = field(repr=False)


@dataclass(slots=True)
class Slot:
    id: str
    schedule_id: Optional[str]
    status: Optional[str]
    start: Optional[str]
    end: Optional[str]
    extensions: List[Extension]
    raw: Dict[str, Any] = field(repr=False)
    schedule: Optional[Schedule] = None


@dataclass(slots=True)
class FeedLocation:
    """A location with every schedule and slot that refers to it."""

    location: Dict[str, Any]
    schedules: List[Schedule] = field(default_factory=list)
    slots: List[Slot] = field(default_factory=list)


def parse_ndjson(text: str, url: str = "") -> List[Dict[str, Any]]:
    records = []
    for number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.warning("Skipping malformed NDJSON line %d in %s: %s", number, url, exc)
            continue
        if isinstance(record, dict):
            records.append(record)
        else:
            logger.warning("Skipping non-object NDJSON line %d in %s", number, url)
    return records


class SmartSchedulingLinksApi:
    """Read a bulk-publish feed, starting from its manifest URL."""

    def __init__(
        self,
        manifest_url: str,
        *,
        session: Optional[requests.Session] = None,
        rate_limit: Optional[RateLimit] = None,
        timeout: float = DEFAULT_TIMEOUT,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self.manifest_url = manifest_url
        self._session = session
        self._rate_limit = rate_limit
        self._timeout = timeout
        self._headers = headers or {}

    async def _get(self, url: str) -> requests.Response:
        if self._rate_limit is not None:
            await self._rate_limit.ready()
        session = self._session or _SESSION
        response = await asyncio.to_thread(session.get, url, headers=self._headers, timeout=self._timeout)
        if response.status_code >= 400:
            logger.error("Feed request failed: status=%s url=%s", response.status_code, url)
            raise ApiError(
                f"{response.status_code} error from {url}",
                status_code=response.status_code,
                url=url,
                body=(response.text or "")[:500],
            )
        return response

    async def get_manifest(self) -> Manifest:
        response = await self._get(self.manifest_url)
        payload = response.json()
        if not isinstance(payload, dict):
            raise ApiError(f"Manifest at {self.manifest_url} is not an object", url=self.manifest_url)
        if payload.get("error"):
            logger.warning("Manifest at %s reported errors: %s", self.manifest_url, payload["error"])

        outputs: Dict[str, List[ManifestOutput]] = defaultdict(list)
        for item in payload.get("output") or []:
            if not isinstance(item, dict) or not item.get("url"):
                logger.warning("Skipping malformed manifest output in %s: %r", self.manifest_url, item)
                continue
            url = urljoin(self.manifest_url, item["url"])
            outputs[item.get("type")].append(ManifestOutput(type=item.get("type"), url=url))

        return Manifest(transaction_time=payload.get("transactionTime"), outputs=dict(outputs))

    async def list_resources(self, resource_type: str, manifest: Optional[Manifest] = None) -> List[Dict[str, Any]]:
        """Fetch every file of one resource type, following ``rel="next"`` links."""
        manifest = manifest or await self.get_manifest()
        records: List[Dict[str, Any]] = []
        for url in manifest.urls(resource_type):
            seen = set()
            next_url: Optional[str] = url
            while next_url and next_url not in seen:
                seen.add(next_url)
                response = await self._get(next_url)
                records.extend(parse_ndjson(response.text, next_url))
                link = (response.links or {}).get("next", {}).get("url")
                next_url = urljoin(next_url, link) if link else None
        return records


def _parse_schedule(raw: Dict[str, Any]) -> Optional[Schedule]:
    if not raw.get("id"):
        logger.warning("Skipping schedule without an id: %r", raw)
        return None
    location_ids = [
        location_id
        for location_id in (reference_id(actor, "Location") for actor in raw.get("actor") or [])
        if location_id
    ]
    return Schedule(id=str(raw["id"]), location_ids=location_ids, extensions=parse_extensions(raw), raw=raw)


def _parse_slot(raw: Dict[str, Any]) -> Optional[Slot]:
    if not raw.get("id"):
        logger.warning("Skipping slot without an id: %r", raw)
        return None
    return Slot(
        id=str(raw["id"]),
        schedule_id=reference_id(raw.get("schedule"), "Schedule"),
        status=raw.get("status"),
        start=raw.get("start"),
        end=raw.get("end"),
        extensions=parse_extensions(raw),
        raw=raw,
    )


async def get_locations(api: SmartSchedulingLinksApi, manifest: Optional[Manifest] = None) -> Dict[str, FeedLocation]:
    """Load all locations, schedules and slots from a feed and join them by location id."""
    manifest = manifest or await api.get_manifest()
    raw_locations = await api.list_resources("Location", manifest)
    raw_schedules = await api.list_resources("Schedule", manifest)
    raw_slots = await api.list_resources("Slot", manifest)

    result: Dict[str, FeedLocation] = {}
    for raw in raw_locations:
        if not raw.get("id"):
            logger.warning("Skipping location without an id: %r", raw)
            continue
        result[str(raw["id"])] = FeedLocation(location=raw)

    schedules: Dict[str, Schedule] = {}
    for raw in raw_schedules:
        schedule = _parse_schedule(raw)
        if schedule is None:
            continue
        schedules[schedule.id] = schedule
        for location_id in schedule.location_ids:
            entry = result.get(location_id)
            if entry is None:
                logger.warning("Schedule %s refers to unknown location %s", schedule.id, location_id)
                continue
            entry.schedules.append(schedule)

    for raw in raw_slots:
        slot = _parse_slot(raw)
        if slot is None:
            continue
        slot.schedule = schedules.get(slot.schedule_id) if slot.schedule_id else None
        if slot.schedule is None:
            logger.warning("Slot %s refers to unknown schedule %s", slot.id, slot.schedule_id)
            continue
        for location_id in slot.schedule.location_ids:
            entry = result.get(location_id)
            if entry is not None:
                entry.slots.append(slot)

    logger.info(
        "Loaded %d locations, %d schedules, %d slots from %s",
        len(result),
        len(schedules),
        len(raw_slots),
        api.manifest_url,
    )
    return result
