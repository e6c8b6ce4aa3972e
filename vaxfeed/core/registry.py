"""Storage interface for known locations and their availability history."""

import logging
import threading
import uuid
from typing import Dict, List, Optional, Protocol, Sequence

from vaxfeed.models import Availability, Location

logger = logging.getLogger(__name__)


class LocationRegistry(Protocol):
    def get_location(self, location_id: str) -> Optional[Location]:
        ...

    def list_locations(self, provider: Optional[str] = None, state: Optional[str] = None) -> List[Location]:
        ...

    def find_by_external_ids(
        self, keys: Sequence[str], provider: Optional[str] = None, state: Optional[str] = None
    ) -> List[Location]:
        """Rows holding any of ``keys`` (``"system:value"``)."""
        ...

    def upsert_location(self, location: Location) -> Location:
        ...

    def add_availability(self, location_id: str, availability: Availability) -> None:
        ...

    def latest_availability(self, location_id: str) -> Optional[Availability]:
        ...


def is_uuid(value) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def matches_scope(location: Location, provider: Optional[str], state: Optional[str]) -> bool:
    if provider and location.provider != provider:
        return False
    if state and (location.state or "").upper() != state.upper():
        return False
    return True


class InMemoryRegistry:
    """Registry kept in a dict. Used by tests and by one-off local runs."""

    def __init__(self, locations: Optional[List[Location]] = None) -> None:
        self._lock = threading.Lock()
        self._locations: Dict[str, Location] = {}
        self._availability: Dict[str, List[Availability]] = {}
        for location in locations or []:
            self.upsert_location(location)

    def get_location(self, location_id: str) -> Optional[Location]:
        with self._lock:
            return self._locations.get(location_id)

    def list_locations(self, provider: Optional[str] = None, state: Optional[str] = None) -> List[Location]:
        with self._lock:
            return [loc for loc in self._locations.values() if matches_scope(loc, provider, state)]

    def find_by_external_ids(
        self, keys: Sequence[str], provider: Optional[str] = None, state: Optional[str] = None
    ) -> List[Location]:
        wanted = set(keys)
        with self._lock:
            return [
                loc
                for loc in self._locations.values()
                if matches_scope(loc, provider, state) and any(eid.key() in wanted for eid in loc.external_ids)
            ]

    def upsert_location(self, location: Location) -> Location:
        with self._lock:
            if not location.id:
                location.id = str(uuid.uuid4())
            self._locations[location.id] = location
            logger.debug("Upserted location %s (%s)", location.id, location.name)
            return location

    def add_availability(self, location_id: str, availability: Availability) -> None:
        with self._lock:
            if location_id not in self._locations:
                raise KeyError(location_id)
            self._availability.setdefault(location_id, []).append(availability)

    def latest_availability(self, location_id: str) -> Optional[Availability]:
        with self._lock:
            history = self._availability.get(location_id)
            return history[-1] if history else None

    def availability_history(self, location_id: str) -> List[Availability]:
        with self._lock:
            return list(self._availability.get(location_id, []))
