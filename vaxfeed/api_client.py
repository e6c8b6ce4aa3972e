"""Client for the update API, used as a sink by the ingestion job."""

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from vaxfeed.core.config import DEFAULT_USER_AGENT
from vaxfeed.core.errors import ApiError
from vaxfeed.models import Location

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


def build_session(user_agent: str = DEFAULT_USER_AGENT) -> requests.Session:
    """Session that retries connection problems and 5xx responses."""
    session = requests.Session()
    retries = Retry(
        total=3,
        backoff_factor=1,
        status_forcelist=(500, 502, 503, 504),
        allowed_methods=("POST", "GET"),
    )
    session.mount("http://", HTTPAdapter(max_retries=retries))
    session.mount("https://", HTTPAdapter(max_retries=retries))
    session.headers["User-Agent"] = user_agent
    return session


class ApiSink:
    """Send records to a remote ``/api/edge/update`` endpoint.

    Payloads that can't be delivered are written to ``failed_dir`` so they can
    be replayed later with ``vaxfeed-replay``.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str = "",
        *,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
        failed_dir: Optional[str] = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        if not api_url:
            raise ValueError("api_url is required to send updates")
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.failed_dir = Path(failed_dir) if failed_dir else None
        self._session = session or build_session(user_agent)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        return headers

    def save_failed(self, payload: Dict[str, Any], status: Optional[int] = None, text: str = "") -> Optional[Path]:
        if self.failed_dir is None:
            return None
        try:
            self.failed_dir.mkdir(parents=True, exist_ok=True)
            path = self.failed_dir.joinpath(f"failed-{time.time_ns()}.json")
            with path.open("w", encoding="utf-8") as fh:
                json.dump({"status": status, "text": text, "payload": payload}, fh, ensure_ascii=False, indent=2)
        except OSError as exc:
            logger.error("Failed to save undelivered payload: %s", exc)
            return None
        logger.info("Saved undelivered payload to %s", path)
        return path

    def post_update(self, payload: Dict[str, Any], update_location: bool = True) -> Dict[str, Any]:
        url = f"{self.api_url}/api/edge/update"
        params = {"update_location": "1"} if update_location else {}
        try:
            response = self._session.post(url, json=payload, params=params, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("Failed to call update API: %s", exc)
            self.save_failed(payload)
            raise ApiError(f"Could not reach {url}: {exc}", url=url) from exc

        if not (200 <= response.status_code < 300):
            logger.error("Update API returned non-2xx status (%s): %s", response.status_code, response.text[:500])
            self.save_failed(payload, response.status_code, response.text)
            raise ApiError(
                f"{response.status_code} error from {url}",
                status_code=response.status_code,
                url=url,
                body=response.text[:500],
            )
        return response.json().get("data") or {}

    def send(self, record: Location, update_location: bool = True) -> Dict[str, Any]:
        return self.post_update(record.to_dict(), update_location=update_location)

    def known_locations(self, provider: str, state: str) -> List[Location]:
        """All locations the API knows for a provider and state, following pagination."""
        url: Optional[str] = f"{self.api_url}/api/edge/locations"
        params: Optional[Dict[str, str]] = {"provider": provider, "state": state}
        locations: List[Location] = []
        while url:
            response = self._session.get(url, params=params, headers=self._headers(), timeout=self.timeout)
            if response.status_code >= 400:
                raise ApiError(
                    f"{response.status_code} error from {url}",
                    status_code=response.status_code,
                    url=url,
                    body=response.text[:500],
                )
            body = response.json()
            locations.extend(Location.from_dict(item) for item in body.get("data") or [])
            next_url = (body.get("links") or {}).get("next")
            url = urljoin(url, next_url) if next_url else None
            # The next link carries its own query string.
            params = None
        logger.info("Loaded %d known %s locations in %s", len(locations), provider, state)
        return locations
