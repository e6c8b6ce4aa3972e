"""Address parsing, matching and line clean-up."""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Pattern, Sequence, Tuple, Union

from vaxfeed.core.errors import ParseError
from vaxfeed.etl.text import PUNCTUATION_PATTERN, matchable

logger = logging.getLogger(__name__)

ADDRESS_LINE_DELIMITER_PATTERN = re.compile(r",|\n|\s-\s")

ADDRESS_PATTERN = re.compile(r"^(.*),\s+([^,]+),\s+([A-Z]{2}),?\s+(\d+(-\d{4})?)\s*$", re.IGNORECASE)


def _rule(pattern: str, replacement: str) -> Tuple[Pattern, str]:
    return re.compile(pattern), replacement


# Abbreviations in addresses and their expanded forms, e.g. "600 Ocean Hwy"
# and "600 Ocean Highway". Applied in order to lower-case, punctuation-free
# text padded with spaces. Road-type words are removed entirely so "road"
# and "street" variants still match loosely.
ADDRESS_EXPANSIONS: Tuple[Tuple[Pattern, str], ...] = (
    _rule(r" i ", " interstate "),
    _rule(r" i-(\d+) ", r" interstate \1 "),
    _rule(r" expy ", " expressway "),
    _rule(r" fwy ", " freeway "),
    _rule(r" hwy ", " highway "),
    _rule(r" (u s|us) ", " "),  # "U.S. Highway" / "US Highway"
    _rule(r" (s r|sr|st rt|state route|state road) ", " route "),
    _rule(r" rt ", " route "),
    _rule(r" (tpke?|pike) ", " turnpike "),
    _rule(r" ft ", " fort "),
    _rule(r" mt ", " mount "),
    _rule(r" mtn ", " mountain "),
    _rule(r" (is|isl|island) ", " "),
    _rule(r" n\s?w ", " northwest "),
    _rule(r" s\s?w ", " southwest "),
    _rule(r" n\s?e ", " northeast "),
    _rule(r" s\s?e ", " southeast "),
    _rule(r" n ", " north "),
    _rule(r" s ", " south "),
    _rule(r" e ", " east "),
    _rule(r" w ", " west "),
    _rule(r" ave? ", " "),
    _rule(r" avenue? ", " "),
    _rule(r" dr ", " "),
    _rule(r" drive ", " "),
    _rule(r" rd ", " "),
    _rule(r" road ", " "),
    _rule(r" st ", " "),
    _rule(r" street ", " "),
    _rule(r" saint ", " "),  # collides with "st" for street
    _rule(r" blvd ", " "),
    _rule(r" boulevard ", " "),
    _rule(r" ln ", " "),
    _rule(r" lane ", " "),
    _rule(r" cir ", " "),
    _rule(r" circle ", " "),
    _rule(r" ct ", " "),
    _rule(r" court ", " "),
    _rule(r" cor ", " "),
    _rule(r" corner ", " "),
    _rule(r" (cmn|common|commons) ", " "),
    _rule(r" ctr ", " "),
    _rule(r" center ", " "),
    _rule(r" pl ", " "),
    _rule(r" place ", " "),
    _rule(r" plz ", " "),
    _rule(r" plaza ", " "),
    _rule(r" pkw?y ", " "),
    _rule(r" parkway ", " "),
    _rule(r" cswy ", " "),
    _rule(r" causeway ", " "),
    _rule(r" byp ", " "),
    _rule(r" bypass ", " "),
    _rule(r" mall ", " "),
    _rule(r" (xing|crssng) ", " "),
    _rule(r" crossing ", " "),
    _rule(r" sq ", " "),
    _rule(r" square ", " "),
    _rule(r" trl? ", " "),
    _rule(r" trail ", " "),
    _rule(r" (twp|twsp|townsh(ip)?) ", " "),
    _rule(r" est(ate)? ", " estates "),
    _rule(r" vlg ", " "),
    _rule(r" village ", " "),
    _rule(r" (ste|suite|unit|apt|apartment) #?(\d+) ", r" \2 "),
    _rule(r" (bld|bldg) #?(\d+) ", r" \2 "),
    _rule(r" #?(\d+) ", r" \1 "),
    _rule(r" (&|and) ", " "),
    _rule(r" first ", " 1st "),
    _rule(r" second ", " 2nd "),
    _rule(r" third ", " 3rd "),
    _rule(r" fourth ", " 4th "),
    _rule(r" fifth ", " 5th "),
    _rule(r" sixth ", " 6th "),
    _rule(r" seventh ", " 7th "),
    _rule(r" eighth ", " 8th "),
    _rule(r" ninth ", " 9th "),
    _rule(r" tenth ", " 10th "),
)


@dataclass(slots=True)
class Address:
    lines: List[str] = field(default_factory=list)
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None


def _expand(text: str, expansions: Sequence[Tuple[Pattern, str]]) -> str:
    # Pad so every word is surrounded by spaces. Each rule runs twice because
    # adjacent matches share a space (" n s " only matches " n " once).
    result = f" {text} "
    for pattern, replacement in expansions:
        result = pattern.sub(replacement, result)
        result = pattern.sub(replacement, result)
    return re.sub(r"\s+", " ", result).strip()


def matchable_address(
    text: Union[str, Sequence[str]],
    line: Optional[int] = None,
    expansions: Sequence[Tuple[Pattern, str]] = ADDRESS_EXPANSIONS,
) -> str:
    """Normalize an address so equivalent addresses from different vendors compare equal."""
    if isinstance(text, str):
        lines = ADDRESS_LINE_DELIMITER_PATTERN.split(text)
    else:
        lines = list(text)

    # A leading line without any digits is most likely the name of a venue.
    if len(lines) > 1 and not re.search(r"\d", lines[0]):
        lines = lines[1:]

    if line is not None:
        lines = lines[line : line + 1]

    return _expand(matchable(" ".join(lines)), expansions)


def valid_zip(zip_code: Any, context: str = "") -> Optional[str]:
    """Return ``zip_code`` as text unless its leading segment is shorter than 5 digits."""
    if zip_code is None or zip_code == "":
        return None
    # Some feeds send ZIPs as JSON numbers.
    text = str(zip_code).strip()
    if len(text.split("-")[0]) < 5:
        logger.warning("Invalid ZIP code %r in address %r; dropping it", zip_code, context)
        return None
    return text


def parse_us_address(text: str) -> Address:
    """Parse ``"<street>, <city>, <ST> <zip>"`` into an :class:`Address`."""
    match = ADDRESS_PATTERN.match(text)

    # Something formatted like an address, but with obviously wrong parts,
    # e.g. "., ., CA 90210".
    if not match or not all(PUNCTUATION_PATTERN.sub("", match.group(i)).strip() for i in (1, 2, 4)):
        raise ParseError(f'Could not parse address: "{text}"')

    return Address(
        lines=[match.group(1).strip()],
        city=match.group(2).strip(),
        state=match.group(3).upper(),
        zip=valid_zip(match.group(4), text),
    )


STREET_TYPES = "|".join(
    (
        "ave", "avenue", "dr", "drive", "rd", "road", "st", "street", "blvd",
        "boulevard", "ln", "lane", "cir", "circle", "ct", "court", "cor",
        "corner", "pl", "place", "plz", "plaza", "way", "pkw?y", "parkway",
        "cswy", "causeway", "xing", "crssng", "crossing", "sq", "square",
        "trl?", "trail",
    )
)

# "<city>, <ST> <zip>" squeezed into an address line.
CITY_STATE_ZIP_TRAILER = re.compile(r"(^\s*|,\s+)[A-Za-z\s]+,\s+[A-Z]{2}\s*,?\s+(\d{5}(-\d{4})?|USA)\s*$")

MISSING_SUITE_SPACE = re.compile(r"\b(suite|ste\.?|unit)(#?)(\d+)", re.IGNORECASE)

# ", " and " - " are only line breaks when followed by an unambiguous line.
_MAYBE_BREAK = r"\s*,\s+|\s+-\s+"
ADDRESS_LINE_BREAKS = re.compile(
    "|".join(
        (
            r"\s*\n\s*",
            # The spaces on both sides matter; without them these aren't breaks.
            r"\s+[|/]\s+",
            rf"(?:{_MAYBE_BREAK})(?=(?:suite|ste\.?|unit|bldg|building)\s+#?\d+)",
            rf"(?:{_MAYBE_BREAK})(?=p\.?o\.? box #?\d+)",
            rf"(?:{_MAYBE_BREAK})(?=\d+\s+\w+[\w\s]+\s+(?:{STREET_TYPES})\b)",
        )
    ),
    re.IGNORECASE,
)


def split_address_lines(raw_lines: Sequence[str]) -> List[str]:
    """Clean up address lines that have city/state info or several lines squeezed together."""
    result: List[str] = []
    for line in raw_lines or []:
        if not line:
            continue
        line = MISSING_SUITE_SPACE.sub(r"\1 \2\3", line)
        line = CITY_STATE_ZIP_TRAILER.sub("", line)
        result.extend(part.strip() for part in ADDRESS_LINE_BREAKS.split(line))
    return [line for line in result if line]
