"""Separate combined "<name> - <address>" strings and find store brands/numbers in them.

Some scheduling systems only give us one free-text field per location, such
as ``"Safeway 3410 - 30 College Rd, Fairbanks, AK, 99701"``. The name part
may repeat itself, carry one-off event dates ("Simi Valley Jun 3"), or mention
age bands that look like store numbers ("Pfizer Age 5 to 11 Albertsons 3592").
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Sequence

from vaxfeed.core.errors import ParseError
from vaxfeed.etl.addresses import Address, parse_us_address
from vaxfeed.etl.text import matchable, unpad_number

logger = logging.getLogger(__name__)

NAME_SECTION_SEPARATOR = re.compile(r"\s+-\s+|\s{2,}-\s*")
URL_LIKE = re.compile(r"^\s*(https?://|www\.)\S+", re.IGNORECASE)
EVENT_DATE = re.compile(
    r"\b(jan(uary)?|feb(ruary)?|mar(ch)?|apr(il)?|may|june?|july?|aug(ust)?|sept?(ember)?|oct(ober)?"
    r"|nov(ember)?|dec(ember)?)\.?\s+\d{1,2}(st|nd|rd|th)?\b",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class StoreBrand:
    """A store brand we can recognize by name, e.g. ``StoreBrand("safeway", "Safeway", ...)``."""

    key: str
    name: str
    pattern: Pattern
    location_name: Optional[str] = None

    def format_name(self, store_number: str) -> str:
        return f"{self.location_name or self.name} #{store_number}"


@dataclass(slots=True)
class NameAndAddress:
    name: str
    address: Address
    store_brand: Optional[StoreBrand] = None
    store_number: Optional[str] = None


def _contains_words(haystack: str, needle: str) -> bool:
    return re.search(rf"(^|\s){re.escape(needle)}(\s|$)", haystack) is not None


def _dedupe_sections(sections: Sequence[str]) -> List[str]:
    """Drop name sections that repeat, or that are already part of a longer section."""
    keyed = [(section, matchable(section)) for section in sections]
    result: List[str] = []
    for index, (section, key) in enumerate(keyed):
        if not key:
            continue
        if any(key == other for _, other in keyed[:index]):
            continue
        if any(len(other) > len(key) and _contains_words(other, key) for _, other in keyed):
            continue
        result.append(section)
    return result


def find_store_brand(text: str, brands: Sequence[StoreBrand]):
    """Return ``(brand, store_number)`` for the right-most "<brand> <number>" in ``text``."""
    best = None
    for brand in brands:
        for match in re.finditer(rf"(?:{brand.pattern.pattern})\s+#?(?P<number>\d+)\b", text, brand.pattern.flags):
            if best is None or match.start() > best[0]:
                best = (match.start(), brand, unpad_number(match.group("number")))
    if best is None:
        return None, None
    return best[1], best[2]


def parse_name_and_address(text: str, brands: Sequence[StoreBrand] = ()) -> NameAndAddress:
    """Split ``text`` into a location name and a parsed US address.

    Raises :class:`ParseError` if the name and address can't be separated or a
    name section is actually a URL.
    """
    sections = [section.strip() for section in NAME_SECTION_SEPARATOR.split(text.strip())]
    if len(sections) < 2:
        raise ParseError(f'Could not separate name and address: "{text}"')

    address = parse_us_address(sections[-1])
    name_sections = sections[:-1]

    for section in name_sections:
        if URL_LIKE.match(section):
            raise ParseError(f'Location name looks like a URL: "{text}"')

    cleaned = [re.sub(r"\s+", " ", EVENT_DATE.sub("", section)).strip() for section in name_sections]
    store_brand, store_number = find_store_brand(" ".join(cleaned), brands)

    if store_brand and store_number:
        name = store_brand.format_name(store_number)
    else:
        name = " - ".join(_dedupe_sections(cleaned))

    if not name:
        raise ParseError(f'Could not find a location name in: "{text}"')

    return NameAndAddress(name=name, address=address, store_brand=store_brand, store_number=store_number)
