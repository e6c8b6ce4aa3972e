import json
import sys
from pathlib import Path

import pytest

# Ensure the `vaxfeed` package is importable when running pytest from the repo root.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

FEED_HOST = "https://feed.example"
MANIFEST_URL = f"{FEED_HOST}/api/smart-scheduling-links/$bulk-publish"
EXTENSION_BASE = "http://fhir-registry.smarthealthit.org/StructureDefinition"


class DummyResponse:
    def __init__(self, status_code=200, text="", json_data=None, links=None):
        self.status_code = status_code
        self.text = text if json_data is None else json.dumps(json_data)
        self._json = json_data
        self.links = links or {}

    def json(self):
        if self._json is None:
            return json.loads(self.text)
        return self._json


class DummySession:
    """Serve canned responses by URL and remember what was requested."""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def get(self, url, headers=None, timeout=None, params=None):
        self.calls.append(url)
        if url not in self.responses:
            return DummyResponse(404, text="not found")
        return self.responses[url]


def ndjson(*records):
    return "\n".join(json.dumps(record) for record in records) + "\n"


def feed_responses(host=FEED_HOST):
    """A small feed: one COVID clinic, one flu-only clinic, split over two location files."""
    manifest_url = f"{host}/api/smart-scheduling-links/$bulk-publish"
    locations_1 = {
        "resourceType": "Location",
        "id": "loc-1",
        "name": "Fairbanks Clinic",
        "telecom": [
            {"system": "phone", "value": "907.555.0123"},
            {"system": "url", "value": "www.example.com"},
        ],
        "address": {
            "line": ["123 Main St, Suite 4"],
            "city": "Fairbanks",
            "state": "ak",
            "postalCode": "99701",
            "district": "Fairbanks North Star",
        },
        "position": {"latitude": 64.8, "longitude": -147.7, "altitude": 10},
        "identifier": [{"system": "https://cdc.gov/vaccines/programs/vtrcks", "value": "AK123"}],
    }
    locations_2 = {
        "resourceType": "Location",
        "id": "loc-2",
        "name": "Flu Only Clinic",
        "address": {"line": ["9 Birch Rd"], "city": "Nome", "state": "AK", "postalCode": "997"},
    }
    schedules = [
        {
            "resourceType": "Schedule",
            "id": "sched-1",
            "actor": [{"reference": "Location/loc-1"}],
            "extension": [
                {"url": f"{EXTENSION_BASE}/vaccine-product", "valueCoding": {"code": "208", "display": "Pfizer"}},
                {"url": f"{EXTENSION_BASE}/vaccine-dose", "valueInteger": 1},
            ],
        },
        {
            "resourceType": "Schedule",
            "id": "sched-2",
            "actor": [{"reference": "Location/loc-2"}],
            "extension": [
                {"url": f"{EXTENSION_BASE}/vaccine-product", "valueCoding": {"display": "Influenza"}},
            ],
        },
    ]
    slots = [
        {
            "resourceType": "Slot",
            "id": "slot-1",
            "schedule": {"reference": "Schedule/sched-1"},
            "status": "free",
            "start": "2021-05-02T09:00:00-08:00",
            "end": "2021-05-02T09:15:00-08:00",
            "extension": [
                {"url": f"{EXTENSION_BASE}/slot-capacity", "valueInteger": 3},
                {"url": f"{EXTENSION_BASE}/booking-deep-link", "valueUrl": "https://book.example/1"},
            ],
        },
        {
            "resourceType": "Slot",
            "id": "slot-2",
            "schedule": {"reference": "Schedule/sched-1"},
            "status": "busy",
            "start": "2021-05-02T09:15:00-08:00",
            "end": "2021-05-02T09:30:00-08:00",
        },
        {
            "resourceType": "Slot",
            "id": "slot-3",
            "schedule": {"reference": "Schedule/sched-2"},
            "status": "free",
            "start": "2021-05-02T10:00:00-08:00",
        },
    ]
    manifest = {
        "transactionTime": "2021-05-01T00:00:00Z",
        "request": manifest_url,
        "output": [
            {"type": "Location", "url": f"{host}/data/locations-1.ndjson"},
            {"type": "Location", "url": "/data/locations-2.ndjson"},
            {"type": "Schedule", "url": f"{host}/data/schedules.ndjson"},
            {"type": "Slot", "url": f"{host}/data/slots.ndjson"},
        ],
        "error": [],
    }
    return {
        manifest_url: DummyResponse(json_data=manifest),
        f"{host}/data/locations-1.ndjson": DummyResponse(text=ndjson(locations_1)),
        f"{host}/data/locations-2.ndjson": DummyResponse(text=ndjson(locations_2)),
        f"{host}/data/schedules.ndjson": DummyResponse(text=ndjson(*schedules)),
        f"{host}/data/slots.ndjson": DummyResponse(text=ndjson(*slots)),
    }


@pytest.fixture
def feed_session(monkeypatch):
    from vaxfeed.vendors import smart_scheduling

    session = DummySession(feed_responses())
    monkeypatch.setattr(smart_scheduling, "_SESSION", session)
    return session
