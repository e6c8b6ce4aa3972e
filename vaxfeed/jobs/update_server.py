"""HTTP surface for the reconciliation engine: the update endpoint and a small read side."""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from flask import Flask, jsonify, request

from vaxfeed.core.config import get_settings
from vaxfeed.core.db import PostgresRegistry
from vaxfeed.core.errors import ValidationError
from vaxfeed.core.registry import InMemoryRegistry, LocationRegistry
from vaxfeed.etl.reconcile import Reconciler

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 500
MAX_PAGE_SIZE = 2000

# ---------- App & registry ----------
app = Flask(__name__)
_registry: Optional[LocationRegistry] = None
_reconciler: Optional[Reconciler] = None


def get_registry() -> LocationRegistry:
    global _registry
    if _registry is None:
        if get_settings().database_url:
            _registry = PostgresRegistry()
        else:
            logger.warning("DATABASE_URL is not set; keeping locations in memory only.")
            _registry = InMemoryRegistry()
    return _registry


def get_reconciler() -> Reconciler:
    """One reconciler per process, so concurrent requests share its lock.

    Other writers share the registry, so matches are looked up in it on each
    request instead of being cached.
    """
    global _reconciler
    registry = get_registry()
    if _reconciler is None or _reconciler.registry is not registry:
        _reconciler = Reconciler(registry, cache_index=False)
    return _reconciler


def _error(message: str, code: str, status: int) -> Any:
    return jsonify({"error": {"message": message, "code": code}}), status


def _flag(name: str) -> bool:
    return (request.args.get(name) or "").strip().lower() in ("1", "true", "yes")


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    value = int(raw)
    if value < 0:
        raise ValueError(f"{name} must not be negative")
    return value


# ---------- Routes ----------


@app.get("/healthz")
def healthcheck() -> Any:
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "worker_port_config": settings.worker_port,
                "registry": "postgres" if settings.database_url else "memory",
                "revision": os.getenv("K_REVISION", "unknown"),
            }
        ),
        200,
    )


@app.post("/api/edge/update")
@app.post("/update")
def update_location() -> Any:
    """Apply one update. ``?update_location=1`` also applies non-availability fields.

    Returns 201 when a new location was created and 200 when an existing one
    was updated.
    """
    payload = request.get_json(silent=True)
    try:
        result = get_reconciler().apply_update(payload, update_location=_flag("update_location"))
    except ValidationError as exc:
        logger.info("Rejected update (%s): %s", exc.code, exc)
        return _error(str(exc), exc.code, exc.http_status)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Update failed: %s", exc)
        return _error("Internal server error", "internal_error", 500)

    return jsonify({"data": result.to_dict()}), 201 if result.created else 200


@app.get("/api/edge/locations")
def list_locations() -> Any:
    provider = request.args.get("provider") or None
    state = request.args.get("state") or None
    try:
        limit = min(_int_arg("limit", DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE) or DEFAULT_PAGE_SIZE
        offset = _int_arg("offset", 0)
    except ValueError:
        return _error("limit and offset must be non-negative integers", "validation_error", 422)

    try:
        locations = get_registry().list_locations(provider=provider, state=state)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Listing locations failed: %s", exc)
        return _error("Internal server error", "internal_error", 500)

    page = locations[offset : offset + limit]
    links: Dict[str, Optional[str]] = {"next": None}
    if offset + limit < len(locations):
        query = {key: value for key, value in (("provider", provider), ("state", state)) if value}
        query.update({"limit": limit, "offset": offset + limit})
        links["next"] = f"{request.path}?{urlencode(query)}"

    return jsonify({"data": [location.to_dict() for location in page], "links": links}), 200


@app.get("/api/edge/locations/<location_id>")
def get_location(location_id: str) -> Any:
    try:
        registry = get_registry()
        location = registry.get_location(location_id)
        availability = registry.latest_availability(location_id) if location else None
    except Exception as exc:  # noqa: BLE001
        logger.exception("Loading location %s failed: %s", location_id, exc)
        return _error("Internal server error", "internal_error", 500)

    if location is None:
        return _error(f"No location with id {location_id}", "not_found", 404)

    data = location.to_dict()
    if availability is not None:
        data["availability"] = availability.to_dict()
    return jsonify({"data": data}), 200


def main() -> None:
    port = int(os.getenv("PORT") or get_settings().worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
