"""Application configuration helpers.

Everything is read from the environment (optionally via a ``.env`` file).
The feed host registry maps provider -> state -> list of base URLs and can be
given inline as ``FEED_HOSTS`` or as a JSON file at ``FEED_HOSTS_FILE``.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_STATES: Tuple[str, ...] = (
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "DC", "FL", "GA", "HI",
    "ID", "IL", "IN", "IA", "KS", "KY", "LA", "ME", "MD", "MA", "MI", "MN",
    "MS", "MO", "MT", "NE", "NV", "NH", "NJ", "NM", "NY", "NC", "ND", "OH",
    "OK", "OR", "PA", "RI", "SC", "SD", "TN", "TX", "UT", "VT", "VA", "WA",
    "WV", "WI", "WY", "MH", "PR", "VI",
)
DEFAULT_API_PATH = "/api/smart-scheduling-links/$bulk-publish"
DEFAULT_USER_AGENT = "vaxfeed/1.0 (+https://github.com/vaxfeed/vaxfeed)"
DEFAULT_FAILED_DIR = "data/failed"

HostRegistry = Dict[str, Dict[str, List[str]]]


class ConfigError(RuntimeError):
    """Raised when configuration is present but malformed."""


@dataclass(frozen=True)
class Settings:
    database_url: str
    api_url: str = ""
    api_key: str = ""
    states: Tuple[str, ...] = DEFAULT_STATES
    hosts: HostRegistry = field(default_factory=dict)
    api_path: str = DEFAULT_API_PATH
    rate_limit: float = 5.0
    request_timeout: float = 150.0
    worker_port: int = 9000
    user_agent: str = DEFAULT_USER_AGENT
    failed_dir: str = DEFAULT_FAILED_DIR


def parse_states(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw or not raw.strip():
        return DEFAULT_STATES
    return tuple(part.strip().upper() for part in raw.split(",") if part.strip())


def parse_hosts(raw: Optional[str]) -> HostRegistry:
    """Parse the provider -> state -> hosts registry from JSON text."""
    if not raw or not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"FEED_HOSTS is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("FEED_HOSTS must be an object of provider -> state -> hosts")

    hosts: HostRegistry = {}
    for provider, by_state in data.items():
        if not isinstance(by_state, dict):
            raise ConfigError(f"Hosts for provider {provider!r} must be an object keyed by state")
        hosts[provider] = {}
        for state, urls in by_state.items():
            if isinstance(urls, str):
                urls = [urls]
            hosts[provider][state.upper()] = [url.rstrip("/") for url in urls]
    return hosts


def _read_hosts() -> HostRegistry:
    hosts_file = os.getenv("FEED_HOSTS_FILE")
    if hosts_file:
        path = Path(hosts_file)
        if not path.is_file():
            raise ConfigError(f"FEED_HOSTS_FILE does not exist: {hosts_file}")
        return parse_hosts(path.read_text(encoding="utf-8"))
    return parse_hosts(os.getenv("FEED_HOSTS"))


def _get_float(name: str, default: str) -> float:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be numeric, got {raw!r}") from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables with sensible defaults."""
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    api_url = os.getenv("API_URL", "").rstrip("/")
    api_key = os.getenv("API_KEY", "")
    hosts = _read_hosts()

    if not database_url:
        logger.warning("DATABASE_URL is not set; the Postgres registry is unavailable.")
    if not api_url:
        logger.warning("API_URL is not configured; results cannot be sent to the update endpoint.")
    elif not api_key:
        logger.warning("API_KEY is not configured; update requests will be unauthenticated.")
    if not hosts:
        logger.warning("No feed hosts configured (FEED_HOSTS / FEED_HOSTS_FILE); nothing to load.")

    return Settings(
        database_url=database_url,
        api_url=api_url,
        api_key=api_key,
        states=parse_states(os.getenv("FEED_STATES")),
        hosts=hosts,
        api_path=os.getenv("FEED_API_PATH") or DEFAULT_API_PATH,
        rate_limit=_get_float("FEED_RATE_LIMIT", "5"),
        request_timeout=_get_float("FEED_REQUEST_TIMEOUT", "150"),
        worker_port=int(os.getenv("WORKER_PORT", "9000")),
        user_agent=os.getenv("USER_AGENT") or DEFAULT_USER_AGENT,
        failed_dir=os.getenv("FAILED_DIR") or DEFAULT_FAILED_DIR,
    )
