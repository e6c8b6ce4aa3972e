import asyncio
import json

import pytest

from conftest import FEED_HOST, DummyResponse, DummySession, feed_responses, ndjson
from vaxfeed.core.config import Settings
from vaxfeed.core.errors import ApiError, ParseError
from vaxfeed.core.registry import InMemoryRegistry
from vaxfeed.etl.reconcile import ReconcilingSink
from vaxfeed.etl.transform import FeedSource
from vaxfeed.jobs import run_feed
from vaxfeed.models import ExternalId, Location
from vaxfeed.vendors import smart_scheduling

BROKEN_HOST = "https://broken.example"


class RecordingSink:
    def __init__(self, known=()):
        self.known = list(known)
        self.sent = []

    def known_locations(self, provider, state):
        return list(self.known)

    def send(self, record, update_location=True):
        self.sent.append((record, update_location))


@pytest.fixture
def broken_session(monkeypatch):
    responses = feed_responses()
    responses[f"{BROKEN_HOST}/api/smart-scheduling-links/$bulk-publish"] = DummyResponse(500, text="oops")
    session = DummySession(responses)
    monkeypatch.setattr(smart_scheduling, "_SESSION", session)
    return session


def test_get_data_for_host_formats_covid_locations(feed_session):
    source = FeedSource(provider="prepmod")
    locations = asyncio.run(run_feed.get_data_for_host(source, FEED_HOST))

    assert [location.name for location in locations] == ["Fairbanks Clinic"]
    assert locations[0].availability.valid_at == "2021-05-01T00:00:00Z"


def test_get_data_for_host_skips_records_that_fail_to_parse(feed_session, monkeypatch, caplog):
    def broken_format(source, host, valid_at, entry, checked_at=None):
        raise ParseError("bad address")

    monkeypatch.setattr(run_feed, "format_location", broken_format)

    with caplog.at_level("WARNING"):
        locations = asyncio.run(run_feed.get_data_for_host(FeedSource(provider="prepmod"), FEED_HOST))

    assert locations == []
    assert "Skipping location loc-1" in caplog.text


def test_check_availability_treats_404_as_no_data(feed_session, caplog):
    source = FeedSource(provider="prepmod", hosts_by_state={"AK": ["https://missing.example", FEED_HOST]})
    sink = RecordingSink()

    with caplog.at_level("WARNING"):
        results = asyncio.run(run_feed.check_availability(source, sink, ["AK", "WA"]))

    assert [location.name for location in results] == ["Fairbanks Clinic"]
    assert [update_location for _, update_location in sink.sent] == [True]
    assert "feed not enabled at https://missing.example" in caplog.text


def test_check_availability_propagates_other_errors(broken_session):
    source = FeedSource(provider="prepmod", hosts_by_state={"AK": [BROKEN_HOST]})

    with pytest.raises(ApiError) as excinfo:
        asyncio.run(run_feed.check_availability(source, RecordingSink(), ["AK"]))

    assert excinfo.value.status_code == 500


def test_check_availability_hides_missing_locations(feed_session):
    stale = Location(
        name="Closed Clinic",
        external_ids=[ExternalId("prepmod-feed.example-location", "old")],
        provider="prepmod",
        state="AK",
    )
    current = Location(
        name="Fairbanks Clinic",
        external_ids=[ExternalId("prepmod-feed.example-location", "loc-1")],
        provider="prepmod",
        state="AK",
    )
    registry = InMemoryRegistry([stale, current])
    source = FeedSource(provider="prepmod", hosts_by_state={"AK": [FEED_HOST]})

    asyncio.run(run_feed.check_availability(source, ReconcilingSink(registry), ["AK"], hide_missing_locations=True))

    assert registry.get_location(stale.id).is_public is False
    assert registry.get_location(stale.id).external_ids == stale.external_ids
    assert registry.get_location(current.id).is_public is True
    assert registry.latest_availability(current.id) is not None
    assert len(registry.list_locations()) == 2


def test_run_sources_isolates_failing_providers(broken_session):
    good = FeedSource(provider="prepmod", hosts_by_state={"AK": [FEED_HOST]})
    bad = FeedSource(provider="broken", hosts_by_state={"AK": [BROKEN_HOST]})
    sink = RecordingSink()

    results = asyncio.run(run_feed.run_sources([bad, good], sink, ["AK"], rate_limit=100))

    assert not results["broken"].ok
    assert isinstance(results["broken"].error, ApiError)
    assert results["prepmod"].ok
    assert [location.name for location in results["prepmod"].locations] == ["Fairbanks Clinic"]


def test_main_writes_ndjson_to_stdout(feed_session, monkeypatch, capsys):
    settings = Settings(database_url="", hosts={"prepmod": {"AK": [FEED_HOST]}}, states=("AK",), rate_limit=0)
    monkeypatch.setattr(run_feed, "get_settings", lambda: settings)

    assert run_feed.main([]) == 0

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert [line["name"] for line in lines] == ["Fairbanks Clinic"]
    assert lines[0]["availability"]["slots"][0]["dose"] == "first_dose_only"


def test_main_exit_codes(broken_session, monkeypatch):
    settings = Settings(database_url="", hosts={"broken": {"AK": [BROKEN_HOST]}}, states=("AK",), rate_limit=0)
    monkeypatch.setattr(run_feed, "get_settings", lambda: settings)

    assert run_feed.main([]) == 1
    assert run_feed.main(["--provider", "unknown"]) == 2
    assert run_feed.main(["--db"]) == 2
    assert run_feed.main(["--send"]) == 2


def _session_with_location(monkeypatch, **changes):
    responses = feed_responses()
    url = f"{FEED_HOST}/data/locations-1.ndjson"
    location = {**json.loads(responses[url].text), **changes}
    responses[url] = DummyResponse(text=ndjson(location))
    session = DummySession(responses)
    monkeypatch.setattr(smart_scheduling, "_SESSION", session)
    return session


def test_numeric_postal_code_is_kept_as_text(monkeypatch):
    _session_with_location(
        monkeypatch, address={"line": ["123 Main St"], "city": "Fairbanks", "state": "AK", "postalCode": 99701}
    )

    locations = asyncio.run(run_feed.get_data_for_host(FeedSource(provider="prepmod"), FEED_HOST))

    assert [location.postal_code for location in locations] == ["99701"]


def test_non_text_name_skips_only_that_location(monkeypatch, caplog):
    _session_with_location(monkeypatch, name=12345)

    with caplog.at_level("WARNING"):
        locations = asyncio.run(run_feed.get_data_for_host(FeedSource(provider="prepmod"), FEED_HOST))

    assert locations == []
    assert "Skipping location loc-1" in caplog.text


def test_malformed_identifiers_are_ignored(monkeypatch):
    _session_with_location(monkeypatch, identifier=["junk", {"system": ["x"], "value": "1"}])

    locations = asyncio.run(run_feed.get_data_for_host(FeedSource(provider="prepmod"), FEED_HOST))

    assert [location.external_ids for location in locations] == [
        [ExternalId("prepmod-feed.example-location", "loc-1")]
    ]


def test_unexpected_formatting_errors_skip_the_record(feed_session, monkeypatch, caplog):
    def broken_format(source, host, valid_at, entry, checked_at=None):
        raise TypeError("unexpected shape")

    monkeypatch.setattr(run_feed, "format_location", broken_format)

    with caplog.at_level("WARNING"):
        locations = asyncio.run(run_feed.get_data_for_host(FeedSource(provider="prepmod"), FEED_HOST))

    assert locations == []
    assert "Skipping malformed location loc-1" in caplog.text


class RejectingSink(RecordingSink):
    def __init__(self, status_code):
        super().__init__()
        self.status_code = status_code

    def send(self, record, update_location=True):
        raise ApiError(f"{self.status_code} error", status_code=self.status_code, body="conflict")


def test_rejected_records_do_not_stop_the_run(feed_session, caplog):
    source = FeedSource(provider="prepmod", hosts_by_state={"AK": [FEED_HOST]})

    with caplog.at_level("ERROR"):
        results = asyncio.run(run_feed.check_availability(source, RejectingSink(409), ["AK"]))

    assert results == []
    assert "Update API rejected Fairbanks Clinic (409)" in caplog.text


def test_server_errors_from_the_sink_stop_the_provider(feed_session):
    source = FeedSource(provider="prepmod", hosts_by_state={"AK": [FEED_HOST]})

    with pytest.raises(ApiError):
        asyncio.run(run_feed.check_availability(source, RejectingSink(503), ["AK"]))
