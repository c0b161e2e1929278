"""
Tests for Input Validation Utilities
"""
import math

import pytest
from hypothesis import given, settings as h_settings
from hypothesis.strategies import floats, from_regex, integers, sampled_from, text

from grievance_bot.core.validation import (
    CATEGORIES,
    CategoryValidator,
    CoordinateValidator,
    EmailValidator,
    NameValidator,
    PhoneNumberValidator,
    TitleValidator,
    validate_field,
)


class TestPhoneNumberValidator:
    """Tests for Indian mobile number validation"""

    @pytest.mark.unit
    @pytest.mark.parametrize("phone,expected", [
        ("9876543210", True),
        ("6123456789", True),
        ("+91 98765 43210", True),
        ("919876543210", True),
        ("98765-43210", True),
        # Invalid numbers
        ("5876543210", False),  # must start with 6-9
        ("987654321", False),  # too short
        ("98765432101", False),  # too long
        ("abcdefghij", False),
        ("", False),
    ])
    def test_validate(self, phone: str, expected: bool):
        is_valid, error = PhoneNumberValidator.validate(phone)
        assert is_valid == expected
        assert (error is None) == expected

    @pytest.mark.unit
    def test_normalize_adds_country_code(self):
        assert PhoneNumberValidator.normalize("9876543210") == "+919876543210"
        assert PhoneNumberValidator.normalize("+91 98765 43210") == "+919876543210"
        assert PhoneNumberValidator.normalize("919876543210") == "+919876543210"

    @pytest.mark.unit
    def test_mask_hides_last_digits(self):
        assert PhoneNumberValidator.mask("919876543210") == "91987654****"
        assert PhoneNumberValidator.mask("12") == "****"

    @pytest.mark.unit
    @given(digits=from_regex(r"\A[6-9][0-9]{9}\Z"))
    def test_any_valid_mobile_round_trips(self, digits: str):
        normalized = PhoneNumberValidator.normalize(digits)
        assert normalized == f"+91{digits}"
        assert PhoneNumberValidator.validate(normalized) == (True, None)


class TestNameAndEmail:

    @pytest.mark.unit
    @pytest.mark.parametrize("name,expected", [
        ("Asha Verma", True),
        ("Al", True),
        ("A", False),
        ("Asha123", False),
        ("Asha-Verma", False),
        ("x" * 101, False),
    ])
    def test_name(self, name: str, expected: bool):
        assert NameValidator.validate(name)[0] == expected

    @pytest.mark.unit
    def test_name_normalize_collapses_spaces(self):
        assert NameValidator.normalize("  Asha    Verma ") == "Asha Verma"

    @pytest.mark.unit
    @pytest.mark.parametrize("email,expected", [
        ("asha@example.com", True),
        ("ASHA@Example.COM", True),
        ("asha@example", False),
        ("asha example.com", False),
        ("", False),
    ])
    def test_email(self, email: str, expected: bool):
        assert EmailValidator.validate(email)[0] == expected

    @pytest.mark.unit
    def test_email_normalized_to_lowercase(self):
        assert EmailValidator.normalize(" ASHA@Example.COM ") == "asha@example.com"


class TestCategoryValidator:

    @pytest.mark.unit
    @given(category=sampled_from(CATEGORIES), upper=sampled_from([True, False]))
    def test_known_categories_any_case(self, category: str, upper: bool):
        value = category.upper() if upper else category
        assert CategoryValidator.validate(f" {value} ") == (True, None)
        assert CategoryValidator.normalize(value) == category

    @pytest.mark.unit
    def test_unknown_category_lists_choices(self):
        is_valid, error = CategoryValidator.validate("sanitation")
        assert not is_valid
        for category in CATEGORIES:
            assert category in error


class TestCoordinateValidator:

    @pytest.mark.unit
    @h_settings(max_examples=100)
    @given(value=floats(allow_nan=False, allow_infinity=False))
    def test_latitude_range(self, value: float):
        """Accepted exactly when -90 <= value <= 90"""
        assert CoordinateValidator.validate_latitude(value)[0] == (-90 <= value <= 90)

    @pytest.mark.unit
    @h_settings(max_examples=100)
    @given(value=floats(allow_nan=False, allow_infinity=False))
    def test_longitude_range(self, value: float):
        assert CoordinateValidator.validate_longitude(value)[0] == (-180 <= value <= 180)

    @pytest.mark.unit
    @pytest.mark.parametrize("value", [math.nan, "north", None, True, [], {}])
    def test_non_numeric_rejected(self, value):
        assert CoordinateValidator.validate_latitude(value)[0] is False
        assert CoordinateValidator.validate_longitude(value)[0] is False

    @pytest.mark.unit
    def test_numeric_strings_accepted(self):
        assert CoordinateValidator.validate_latitude("28.6139") == (True, None)
        assert CoordinateValidator.validate_longitude("-77.2") == (True, None)

    @pytest.mark.unit
    @pytest.mark.parametrize("raw,expected", [
        ("28.6139, 77.2090", (28.6139, 77.209)),
        ("28.6139 77.2090", (28.6139, 77.209)),
        ("-33.9,18.4", (-33.9, 18.4)),
        ("  26.85 ,  80.95 ", (26.85, 80.95)),
    ])
    def test_parse(self, raw: str, expected):
        coords, error = CoordinateValidator.parse(raw)
        assert error is None
        assert coords == pytest.approx(expected)

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["near the temple", "95, 77", "28.6, 190", "", "28.6"])
    def test_parse_rejects(self, raw: str):
        coords, error = CoordinateValidator.parse(raw)
        assert coords is None
        assert error

    @pytest.mark.unit
    def test_extract_from_text(self):
        assert CoordinateValidator.extract_from_text(
            "Main road, near school, 26.85, 80.95"
        ) == pytest.approx((26.85, 80.95))
        assert CoordinateValidator.extract_from_text("Main road near school") is None
        assert CoordinateValidator.extract_from_text("at 120.5, 80.95") is None

    @pytest.mark.unit
    @given(
        lat=integers(min_value=-90, max_value=90),
        lng=integers(min_value=-180, max_value=180),
    )
    def test_parse_accepts_every_in_range_pair(self, lat: int, lng: int):
        coords, error = CoordinateValidator.parse(f"{lat}, {lng}")
        assert error is None
        assert coords == (float(lat), float(lng))


class TestValidateField:

    @pytest.mark.unit
    @pytest.mark.parametrize("field,raw,expected", [
        ("contact_name", " Asha  Verma ", "Asha Verma"),
        ("contact_email", "Asha@Example.com", "asha@example.com"),
        ("contact_phone", "98765 43210", "+919876543210"),
        ("title", "  Broken streetlight ", "Broken streetlight"),
        ("category", "Roads", "roads"),
        ("district_name", "Lucknow", "Lucknow"),
        ("subdistrict_name", "Sadar", "Sadar"),
        ("area", "Hazratganj", "Hazratganj"),
        ("latitude", "26.85, 80.95", (26.85, 80.95)),
    ])
    def test_valid_values_normalized(self, field: str, raw: str, expected):
        value, error = validate_field(field, raw)
        assert error is None
        assert value == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("field,raw", [
        ("contact_name", "R2D2"),
        ("contact_email", "nope"),
        ("contact_phone", "12345"),
        ("title", "Hole"),
        ("category", "parks"),
        ("district_name", "L"),
        ("description", "too short"),
        ("latitude", "somewhere"),
    ])
    def test_invalid_values_return_error(self, field: str, raw: str):
        value, error = validate_field(field, raw)
        assert value is None
        assert error

    @pytest.mark.unit
    def test_unknown_field_raises(self):
        with pytest.raises(KeyError):
            validate_field("favourite_colour", "blue")

    @pytest.mark.unit
    @given(raw=text(max_size=300))
    def test_title_bounds_hold_for_any_text(self, raw: str):
        value, error = validate_field("title", raw)
        stripped = raw.strip()
        if TitleValidator.min_length <= len(stripped) <= TitleValidator.max_length:
            assert value == stripped and error is None
        else:
            assert value is None and error
