"""Re-send update payloads that were saved after a failed delivery."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from vaxfeed.api_client import ApiSink
from vaxfeed.core.config import get_settings
from vaxfeed.core.errors import ApiError

logger = logging.getLogger(__name__)


def replay_failed(sink: ApiSink, folder: Path) -> int:
    """Replay each saved payload, deleting the file once it's delivered. Returns the number of failures."""
    if not folder.is_dir():
        logger.info("No failed folder at %s", folder)
        return 0

    failures = 0
    for path in sorted(folder.glob("failed-*.json")):
        try:
            with path.open("r", encoding="utf-8") as fh:
                saved = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Could not read %s: %s", path.name, exc)
            failures += 1
            continue

        try:
            sink.post_update(saved["payload"], update_location=True)
        except (ApiError, KeyError) as exc:
            logger.error("Failed to replay %s: %s", path.name, exc)
            failures += 1
            continue

        logger.info("Replayed %s", path.name)
        path.unlink()
    return failures


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Replay undelivered update payloads")
    parser.add_argument("--folder", default=settings.failed_dir, help="Folder of saved payloads")
    args = parser.parse_args(argv)

    if not settings.api_url:
        logger.error("API_URL is required to replay payloads")
        return 2

    # Don't save again on failure; the original file stays in place.
    sink = ApiSink(settings.api_url, settings.api_key, user_agent=settings.user_agent)
    return 1 if replay_failed(sink, Path(args.folder)) else 0


if __name__ == "__main__":
    sys.exit(main())
