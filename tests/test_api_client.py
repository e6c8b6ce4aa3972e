import json

import pytest
import requests

from conftest import DummyResponse
from vaxfeed.api_client import ApiSink, build_session
from vaxfeed.core.errors import ApiError
from vaxfeed.models import ExternalId, Location


class RecordingSession:
    def __init__(self, post_response=None, get_responses=None, post_error=None):
        self.post_response = post_response
        self.get_responses = list(get_responses or [])
        self.post_error = post_error
        self.posts = []
        self.gets = []

    def post(self, url, json=None, params=None, headers=None, timeout=None):
        self.posts.append({"url": url, "json": json, "params": params, "headers": headers})
        if self.post_error:
            raise self.post_error
        return self.post_response

    def get(self, url, params=None, headers=None, timeout=None):
        self.gets.append({"url": url, "params": params})
        return self.get_responses.pop(0)


def _record():
    return Location(name="Clinic", external_ids=[ExternalId("a", "1")], provider="prepmod", state="AK")


def test_build_session_mounts_retries():
    session = build_session("vaxfeed-test")
    adapter = session.get_adapter("https://api.example.com")
    assert adapter.max_retries.total == 3
    assert 503 in adapter.max_retries.status_forcelist
    assert session.headers["User-Agent"] == "vaxfeed-test"


def test_send_posts_record_with_api_key():
    session = RecordingSession(post_response=DummyResponse(201, json_data={"data": {"id": "abc"}}))
    sink = ApiSink("https://api.example.com/", "secret", session=session)

    result = sink.send(_record())

    assert result == {"id": "abc"}
    call = session.posts[0]
    assert call["url"] == "https://api.example.com/api/edge/update"
    assert call["params"] == {"update_location": "1"}
    assert call["headers"]["x-api-key"] == "secret"
    assert call["json"]["external_ids"] == [["a", "1"]]


def test_send_without_update_location():
    session = RecordingSession(post_response=DummyResponse(200, json_data={"data": {}}))
    ApiSink("https://api.example.com", session=session).send(_record(), update_location=False)
    assert session.posts[0]["params"] == {}
    assert "x-api-key" not in session.posts[0]["headers"]


def test_error_status_raises_and_saves_payload(tmp_path):
    session = RecordingSession(post_response=DummyResponse(422, text='{"error": {"code": "validation_error"}}'))
    sink = ApiSink("https://api.example.com", "secret", session=session, failed_dir=str(tmp_path))

    with pytest.raises(ApiError) as excinfo:
        sink.send(_record())

    assert excinfo.value.status_code == 422
    saved = [json.loads(path.read_text()) for path in tmp_path.glob("failed-*.json")]
    assert len(saved) == 1
    assert saved[0]["status"] == 422
    assert saved[0]["payload"]["name"] == "Clinic"


def test_network_error_raises_api_error(tmp_path):
    session = RecordingSession(post_error=requests.ConnectionError("boom"))
    sink = ApiSink("https://api.example.com", session=session, failed_dir=str(tmp_path))

    with pytest.raises(ApiError):
        sink.send(_record())

    assert len(list(tmp_path.glob("failed-*.json"))) == 1


def test_known_locations_follows_pagination():
    session = RecordingSession(
        get_responses=[
            DummyResponse(
                json_data={
                    "data": [{"id": "1", "name": "One", "external_ids": [["a", "1"]]}],
                    "links": {"next": "/api/edge/locations?provider=prepmod&state=AK&offset=1"},
                }
            ),
            DummyResponse(json_data={"data": [{"id": "2", "name": "Two"}], "links": {"next": None}}),
        ]
    )
    sink = ApiSink("https://api.example.com", session=session)

    locations = sink.known_locations("prepmod", "AK")

    assert [location.name for location in locations] == ["One", "Two"]
    assert session.gets[0]["params"] == {"provider": "prepmod", "state": "AK"}
    assert session.gets[1] == {
        "url": "https://api.example.com/api/edge/locations?provider=prepmod&state=AK&offset=1",
        "params": None,
    }


def test_api_url_is_required():
    with pytest.raises(ValueError):
        ApiSink("")
