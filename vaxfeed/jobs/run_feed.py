"""CLI job that loads bulk scheduling feeds and sends the results to a sink."""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, TextIO

from vaxfeed.api_client import ApiSink
from vaxfeed.core.config import ConfigError, Settings, get_settings, parse_states
from vaxfeed.core.db import PostgresRegistry
from vaxfeed.core.errors import ApiError, ValidationError
from vaxfeed.core.rate_limit import RateLimit
from vaxfeed.etl.reconcile import LocationSink, MissingLocationSweep, ReconcilingSink
from vaxfeed.etl.transform import FeedSource, format_location
from vaxfeed.models import Location
from vaxfeed.vendors.smart_scheduling import SmartSchedulingLinksApi, get_locations

logger = logging.getLogger(__name__)


class StdoutSink:
    """Write each record as one line of JSON. Knows no existing locations."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream or sys.stdout

    def known_locations(self, provider: str, state: str) -> List[Location]:
        return []

    def send(self, record: Location, update_location: bool = True) -> None:
        self.stream.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
        self.stream.flush()


@dataclass
class ProviderResult:
    provider: str
    locations: List[Location] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def get_data_for_host(
    source: FeedSource,
    host: str,
    rate_limit: Optional[RateLimit] = None,
    *,
    timeout: Optional[float] = None,
    headers: Optional[Dict[str, str]] = None,
) -> List[Location]:
    """Load one host's feed and format every usable location in it."""
    kwargs = {"rate_limit": rate_limit, "headers": headers}
    if timeout is not None:
        kwargs["timeout"] = timeout
    api = SmartSchedulingLinksApi(source.manifest_url(host), **kwargs)
    manifest = await api.get_manifest()
    entries = await get_locations(api, manifest)

    checked_at = datetime.now(timezone.utc).isoformat()
    results: List[Location] = []
    for location_id, entry in entries.items():
        try:
            location = format_location(source, host, manifest.transaction_time, entry, checked_at)
        except ValueError as exc:
            logger.warning("Skipping location %s from %s: %s", location_id, host, exc)
            continue
        except Exception as exc:  # noqa: BLE001
            logger.warning("Skipping malformed location %s from %s: %r", location_id, host, exc)
            continue
        if location is not None:
            results.append(location)

    logger.info("Formatted %d of %d locations from %s", len(results), len(entries), host)
    return results


async def _send(sink: LocationSink, record: Location) -> bool:
    try:
        await asyncio.to_thread(sink.send, record, True)
    except ValidationError as exc:
        logger.error("Rejected %s (%s): %s", record.name, exc.code, exc)
        return False
    except ApiError as exc:
        # A 4xx rejects only this record. ApiSink has already saved the payload.
        if exc.status_code is None or not 400 <= exc.status_code < 500:
            raise
        logger.error("Update API rejected %s (%s): %s", record.name, exc.status_code, exc.body or exc)
        return False
    return True


async def check_availability(
    source: FeedSource,
    sink: LocationSink,
    states: Sequence[str],
    hide_missing_locations: bool = False,
    rate_limit: Optional[RateLimit] = None,
    *,
    timeout: Optional[float] = None,
    headers: Optional[Dict[str, str]] = None,
) -> List[Location]:
    """Load every host for ``source`` in ``states`` and send the results to ``sink``.

    A host answering 404 doesn't have the feed enabled and is skipped. Any
    other API error stops this provider's run.
    """
    results: List[Location] = []
    for state in states:
        hosts = source.hosts_by_state.get(state.upper()) or []
        if not hosts:
            continue

        sweep = None
        if hide_missing_locations:
            known = await asyncio.to_thread(sink.known_locations, source.provider, state)
            sweep = MissingLocationSweep(known)

        for host in hosts:
            try:
                locations = await get_data_for_host(source, host, rate_limit, timeout=timeout, headers=headers)
            except ApiError as exc:
                if exc.status_code == 404:
                    logger.warning("%s feed not enabled at %s (%s)", source.provider, host, state)
                    continue
                raise

            for location in locations:
                if await _send(sink, location):
                    results.append(location)
                if sweep is not None:
                    sweep.mark_found(location)

        if sweep is not None:
            for hidden in sweep.missing():
                logger.info("Hiding %s location %s (%s) missing from %s", source.provider, hidden.id, hidden.name, state)
                if await _send(sink, hidden):
                    results.append(hidden)

    logger.info("Sent %d %s locations", len(results), source.provider)
    return results


async def run_sources(
    sources: Sequence[FeedSource],
    sink: LocationSink,
    states: Sequence[str],
    hide_missing_locations: bool = False,
    rate_limit: float = 0,
    *,
    timeout: Optional[float] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Dict[str, ProviderResult]:
    """Run every source concurrently. One provider failing doesn't stop the others."""

    async def run_one(source: FeedSource) -> List[Location]:
        limit = RateLimit(rate_limit) if rate_limit > 0 else None
        return await check_availability(
            source, sink, states, hide_missing_locations, limit, timeout=timeout, headers=headers
        )

    outcomes = await asyncio.gather(*(run_one(source) for source in sources), return_exceptions=True)

    results: Dict[str, ProviderResult] = {}
    for source, outcome in zip(sources, outcomes):
        if isinstance(outcome, BaseException):
            logger.error("Provider %s failed: %s", source.provider, outcome, exc_info=outcome)
            results[source.provider] = ProviderResult(source.provider, error=outcome)
        else:
            results[source.provider] = ProviderResult(source.provider, locations=outcome)
    return results


def sources_from_settings(settings: Settings, providers: Optional[Sequence[str]] = None) -> List[FeedSource]:
    names = list(providers) if providers else sorted(settings.hosts)
    unknown = [name for name in names if name not in settings.hosts]
    if unknown:
        raise ConfigError(f"No hosts configured for provider(s): {', '.join(unknown)}")
    return [
        FeedSource(provider=name, hosts_by_state=settings.hosts[name], api_path=settings.api_path)
        for name in names
    ]


def build_sink(args: argparse.Namespace, settings: Settings) -> LocationSink:
    if args.send:
        if not settings.api_url:
            raise ConfigError("API_URL is required with --send")
        return ApiSink(
            settings.api_url,
            settings.api_key,
            failed_dir=settings.failed_dir,
            user_agent=settings.user_agent,
        )
    if args.db:
        if not settings.database_url:
            raise ConfigError("DATABASE_URL is required with --db")
        return ReconcilingSink(PostgresRegistry())
    return StdoutSink()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Load vaccine availability from bulk scheduling feeds")
    parser.add_argument(
        "--provider",
        dest="providers",
        action="append",
        help="Provider to load (repeatable). Defaults to every configured provider.",
    )
    parser.add_argument("--states", help="Comma-separated state codes. Defaults to FEED_STATES.")
    parser.add_argument(
        "--hide-missing",
        dest="hide_missing",
        action="store_true",
        help="Hide known locations that are missing from the feeds",
    )
    parser.add_argument("--rate-limit", dest="rate_limit", type=float, help="Max feed requests per second")
    output = parser.add_mutually_exclusive_group()
    output.add_argument("--send", action="store_true", help="Send results to the update API")
    output.add_argument("--db", action="store_true", help="Reconcile results into the Postgres registry")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
        sources = sources_from_settings(settings, args.providers)
        sink = build_sink(args, settings)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        return 2

    states = parse_states(args.states) if args.states else settings.states
    rate_limit = args.rate_limit if args.rate_limit is not None else settings.rate_limit

    results = asyncio.run(
        run_sources(
            sources,
            sink,
            states,
            hide_missing_locations=args.hide_missing,
            rate_limit=rate_limit,
            timeout=settings.request_timeout,
            headers={"User-Agent": settings.user_agent},
        )
    )

    failed = [result.provider for result in results.values() if not result.ok]
    logger.info(
        "Completed run: providers=%d failed=%d locations=%d",
        len(results),
        len(failed),
        sum(len(result.locations) for result in results.values()),
    )
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
