"""Fuzzy matching of free-text vaccine names to :class:`VaccineProduct` values.

Matching is driven by ``PRODUCT_RULES``, an ordered table of brands. Each
brand has ordered variant rules that pick an age band; the first variant whose
pattern matches wins. Each variant names the plain product and the updated
(bivalent) product, and either may be ``None`` when no such product exists. A
pediatric catch-all variant with no products deliberately returns no match,
so callers can log the name for review instead of tagging it wrongly.
"""

import re
from dataclasses import dataclass
from typing import Dict, Optional, Pattern, Sequence

from vaxfeed.models import VaccineProduct

UPDATED_PRODUCT_PATTERN = re.compile(r"bivalent|omicron|ba\.\s?4|ba\.\s?5|updated", re.IGNORECASE)

# Vaccines that public health clinics schedule alongside COVID vaccines. Seeing
# these tells us a schedule is not for COVID, rather than that parsing failed.
NON_COVID_PRODUCT_PATTERN = re.compile(
    "|".join(
        (
            r"^influenza",
            r"flu",
            r"zoster",
            # Only the adenovirus vaccine itself, not adenovirus-vector COVID vaccines.
            r"^\s*adenovirus\s*$",
            r"^child and adolescent immunization",
            r"monkeypox",
            r"jynneos",
            r"\btdap\b",
            r"\bPCV(\d+)?\b",
            r"\bPPSV(\d+)?\b",
            r"\bMMRV?\b",
            # Shows up on schedules that also list the real products.
            r"multi\s*-\s*vaccine",
        )
    ),
    re.IGNORECASE,
)

# https://www2.cdc.gov/vaccines/iis/iisstandards/vaccines.asp?rpt=cvx
PRODUCTS_BY_CVX_CODE: Dict[str, VaccineProduct] = {
    "207": VaccineProduct.moderna,
    "208": VaccineProduct.pfizer,
    "210": VaccineProduct.astra_zeneca,
    "211": VaccineProduct.novavax,
    "212": VaccineProduct.janssen,
    "217": VaccineProduct.pfizer,
    "218": VaccineProduct.pfizer_age_5_11,
    "219": VaccineProduct.pfizer_age_0_4,
    "221": VaccineProduct.moderna,
    "227": VaccineProduct.moderna_age_6_11,
    "228": VaccineProduct.moderna_age_0_5,
    "229": VaccineProduct.moderna_ba4_ba5,
    "230": VaccineProduct.moderna_ba4_ba5_age_0_5,
    "300": VaccineProduct.pfizer_ba4_ba5,
    "301": VaccineProduct.pfizer_ba4_ba5_age_5_11,
    "302": VaccineProduct.pfizer_ba4_ba5_age_0_4,
}


@dataclass(frozen=True)
class VariantRule:
    """Pick a product within a brand. ``pattern=None`` matches anything."""

    pattern: Optional[Pattern]
    product: Optional[VaccineProduct]
    updated: Optional[VaccineProduct] = None

    def matches(self, text: str) -> bool:
        return self.pattern is None or self.pattern.search(text) is not None


@dataclass(frozen=True)
class BrandRule:
    name: str
    pattern: Pattern
    variants: Sequence[VariantRule]


def _p(pattern: str) -> Pattern:
    return re.compile(pattern, re.IGNORECASE)


# Possibly a pediatric variation we haven't seen yet.
_UNKNOWN_PEDIATRIC = VariantRule(_p(r"ped|child|age"), None, None)

PRODUCT_RULES: Sequence[BrandRule] = (
    BrandRule(
        "astrazeneca",
        _p(r"astra\s*zeneca"),
        (VariantRule(None, VaccineProduct.astra_zeneca),),
    ),
    BrandRule(
        "moderna",
        _p(r"moderna"),
        (
            VariantRule(
                _p(r"ages?\s+(6|12|18)( (years )?and up|\s*\+)"),
                VaccineProduct.moderna,
                VaccineProduct.moderna_ba4_ba5,
            ),
            VariantRule(
                _p(r"ages?\s+6\s*(m|months)\b"),
                VaccineProduct.moderna_age_0_5,
                VaccineProduct.moderna_ba4_ba5_age_0_5,
            ),
            VariantRule(_p(r"ages? 6\s?(-|through)\s?11"), VaccineProduct.moderna_age_6_11),
            _UNKNOWN_PEDIATRIC,
            VariantRule(None, VaccineProduct.moderna, VaccineProduct.moderna_ba4_ba5),
        ),
    ),
    BrandRule(
        "novavax",
        _p(r"nova\s*vax"),
        (VariantRule(None, VaccineProduct.novavax),),
    ),
    BrandRule(
        "pfizer",
        _p(r"comirnaty|pfizer"),
        (
            VariantRule(
                _p(r"ages?\s+12( (years )?and up|\s*\+)"),
                VaccineProduct.pfizer,
                VaccineProduct.pfizer_ba4_ba5,
            ),
            VariantRule(
                _p(r"ages?\s+5|\b5\s?(-|through)\s?11\b"),
                VaccineProduct.pfizer_age_5_11,
                VaccineProduct.pfizer_ba4_ba5_age_5_11,
            ),
            VariantRule(
                _p(r"ages?\s+6\s*(m|months)\b"),
                VaccineProduct.pfizer_age_0_4,
                VaccineProduct.pfizer_ba4_ba5_age_0_4,
            ),
            _UNKNOWN_PEDIATRIC,
            VariantRule(None, VaccineProduct.pfizer, VaccineProduct.pfizer_ba4_ba5),
        ),
    ),
    BrandRule(
        "janssen",
        _p(r"janssen|johnson"),
        (VariantRule(None, VaccineProduct.janssen),),
    ),
)


def match_vaccine_product(name: str, rules: Sequence[BrandRule] = PRODUCT_RULES) -> Optional[VaccineProduct]:
    """Match a vaccine name to a product, or ``None`` if there's no confident match."""
    if not name:
        return None

    is_updated = UPDATED_PRODUCT_PATTERN.search(name) is not None
    for brand in rules:
        if not brand.pattern.search(name):
            continue
        for variant in brand.variants:
            if variant.matches(name):
                return variant.updated if is_updated else variant.product
        return None
    return None


def is_non_covid_product(name: Optional[str]) -> bool:
    return bool(name) and NON_COVID_PRODUCT_PATTERN.search(name) is not None
