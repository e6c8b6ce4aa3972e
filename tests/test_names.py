import re

import pytest

from vaxfeed.core.errors import ParseError
from vaxfeed.etl.names import StoreBrand, find_store_brand, parse_name_and_address

BRANDS = (
    StoreBrand("albertsons", "Albertsons", re.compile(r"albertsons", re.IGNORECASE), "Albertsons Pharmacy"),
    StoreBrand("safeway", "Safeway", re.compile(r"safeway", re.IGNORECASE), "Safeway Pharmacy"),
    StoreBrand("carrs", "Carrs", re.compile(r"carrs", re.IGNORECASE), "Carrs Pharmacy"),
)


def test_parses_store_brand_and_number():
    result = parse_name_and_address("Safeway 3410 - 30 College Rd, Fairbanks, AK, 99701", BRANDS)

    assert result.name == "Safeway Pharmacy #3410"
    assert result.store_brand.key == "safeway"
    assert result.store_number == "3410"
    assert result.address.lines == ["30 College Rd"]
    assert result.address.city == "Fairbanks"
    assert result.address.state == "AK"
    assert result.address.zip == "99701"


def test_fixes_names_that_repeat_after_the_store_number():
    result = parse_name_and_address("Safeway 3410 Safeway - 30 College Rd, Fairbanks, AK, 99701", BRANDS)
    assert result.name == "Safeway Pharmacy #3410"


def test_age_bands_are_not_store_numbers():
    result = parse_name_and_address(
        "Pfizer Age 5 to 11 Albertsons 3592  - 15970 Los Serranos City Club Dr, Chino Hills, CA, 91709",
        BRANDS,
    )
    assert result.store_brand.key == "albertsons"
    assert result.store_number == "3592"
    assert result.address.lines == ["15970 Los Serranos City Club Dr"]
    assert result.address.city == "Chino Hills"


def test_dates_are_not_store_numbers():
    result = parse_name_and_address(
        "Albertsons July 10 Albertsons 3592 - 15970 Los Serranos City Club Dr, Chino Hills, CA, 91709",
        BRANDS,
    )
    assert result.store_brand.key == "albertsons"
    assert result.store_number == "3592"


def test_store_numbers_lose_leading_zeroes():
    brand, number = find_store_brand("Albertsons 0393", BRANDS)
    assert brand.key == "albertsons"
    assert number == "393"
    assert find_store_brand("Corner Clinic", BRANDS) == (None, None)


def test_names_without_a_brand_are_deduplicated():
    result = parse_name_and_address(
        "Simi Valley Clinic - Simi Valley Jun 3 - 2929 Tapo Canyon Rd, Simi Valley, CA, 93063", BRANDS
    )
    assert result.name == "Simi Valley Clinic"
    assert result.store_brand is None


def test_rejects_urls_and_unseparated_text():
    with pytest.raises(ParseError):
        parse_name_and_address("https://example.com/clinic - 1 Main St, Nome, AK, 99762", BRANDS)
    with pytest.raises(ParseError):
        parse_name_and_address("Safeway 3410 30 College Rd, Fairbanks, AK, 99701", BRANDS)
    with pytest.raises(ParseError):
        parse_name_and_address("Safeway 3410 - somewhere in Fairbanks", BRANDS)
