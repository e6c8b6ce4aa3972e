"""Free-text normalization helpers used when comparing data from different sources."""

import logging
import re
from typing import Optional

from vaxfeed.core.errors import ParseError

logger = logging.getLogger(__name__)

MULTIPLE_SPACE_PATTERN = re.compile(r"[\n\s]+")
PUNCTUATION_PATTERN = re.compile(r"[.,;\-–—'\"“”‘’`!()/\\]+")
POSSESSIVE_PATTERN = re.compile(r"['’]s ")

# Possible separators between digits in a phone number.
_PHONE_SEPARATOR = r"[\s.-]"
PHONE_NUMBER_PATTERN = re.compile(
    r"^"
    rf"(?:\+?1{_PHONE_SEPARATOR})?"  # country code
    r"(\([2-9]\d\d\)|[2-9]\d\d)"  # area code, maybe in parentheses
    rf"{_PHONE_SEPARATOR}"
    r"([2-9]\d\d)"  # central office
    rf"{_PHONE_SEPARATOR}"
    r"(\d{1,4})"  # line number
    r"$"
)

URL_PATTERN = re.compile(r"^(https?://)?[^/\s]+\.[^/\s]{2,}(?:/\S*)?$", re.IGNORECASE)


def matchable(text: str) -> str:
    """Simplify text as much as possible so it can match similar text from another source."""
    result = POSSESSIVE_PATTERN.sub(" ", text.lower())
    result = PUNCTUATION_PATTERN.sub(" ", result)
    result = MULTIPLE_SPACE_PATTERN.sub(" ", result)
    return result.strip()


def parse_us_phone_number(text: str) -> str:
    """Return a US phone number formatted as ``(nnn) nnn-nnnn``.

    Components missing leading zeroes (e.g. a line number of ``123``) are
    padded. Raises :class:`ParseError` if ``text`` has no area code or is not
    a phone number at all.
    """
    match = PHONE_NUMBER_PATTERN.match(text.strip())
    if not match:
        raise ParseError(f'Invalid U.S. phone number: "{text}"')

    area = match.group(1).replace("(", "").replace(")", "").zfill(3)
    exchange = match.group(2).zfill(3)
    line = match.group(3).zfill(4)
    return f"({area}) {exchange}-{line}"


def clean_url(text: Optional[str]) -> Optional[str]:
    """Ensure a string is a complete URL, adding a scheme if it is missing.

    ``None`` and blank strings give ``None``. Text that doesn't look like a
    URL at all raises :class:`ParseError`.
    """
    result = (text or "").strip()
    if not result:
        return None

    match = URL_PATTERN.match(result)
    if not match:
        raise ParseError(f'Text is not a URL: "{text}"')
    if not match.group(1):
        result = f"http://{result}"
    return result


def unpad_number(number: str) -> str:
    """Strip leading zeroes from a purely numeric string; leave anything else alone."""
    return re.sub(r"^0+(\d+)$", r"\1", number)
