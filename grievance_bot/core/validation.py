"""
Input Validation Utilities

Per-field validation for the grievance intake dialogue:
- Contact name, email and Indian mobile numbers
- Title, category, district/sub-district, area and description bounds
- Latitude/longitude parsing and range checks

Every validator returns ``(is_valid, error_message)`` and has a matching
``normalize``. ``validate_field`` is the single entry point used by the
conversation state machine and the AI parse service, so both paths accept
exactly the same values.
"""
import math
import re
from typing import Any, Callable


CATEGORIES = ("roads", "water", "electricity", "documents", "health", "education")


class ValidationPatterns:
    """Regex patterns for validation"""

    # Indian mobile: 10 digits starting with 6-9
    PHONE_INDIA = re.compile(r"^[6-9]\d{9}$")

    # English letters and spaces only
    NAME = re.compile(r"^[a-zA-Z\s]+$")

    # Same shape as the complaint model's email check
    EMAIL = re.compile(r"^\S+@\S+\.\S+$")

    # "28.6139, 77.2090" or "28.6139 77.2090"
    COORDINATES = re.compile(
        r"^\s*([-+]?\d+(?:\.\d+)?)\s*(?:,\s*|\s+)([-+]?\d+(?:\.\d+)?)\s*$"
    )

    # Coordinates embedded in longer location text
    COORDINATES_IN_TEXT = re.compile(
        r"([-+]?\d{1,3}(?:\.\d+)?)\s*,\s*([-+]?\d{1,3}(?:\.\d+)?)"
    )


class PhoneNumberValidator:
    """Indian mobile number validation and normalization"""

    @staticmethod
    def digits(phone: str) -> str:
        """Strip everything but digits, then an optional 91 country prefix"""
        cleaned = re.sub(r"\D", "", phone or "")
        if len(cleaned) == 12 and cleaned.startswith("91"):
            cleaned = cleaned[2:]
        return cleaned

    @staticmethod
    def validate(phone: str) -> tuple[bool, str | None]:
        """
        Validate an Indian mobile number.

        Accepts ``9876543210``, ``+91 98765 43210`` and ``919876543210``.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if not phone or not phone.strip():
            return False, "Phone number is required."
        digits = PhoneNumberValidator.digits(phone)
        if len(digits) != 10:
            return False, "Phone number must be exactly 10 digits."
        if not ValidationPatterns.PHONE_INDIA.match(digits):
            return False, "Phone number must start with 6, 7, 8, or 9."
        return True, None

    @staticmethod
    def normalize(phone: str) -> str:
        """Normalize to ``+91XXXXXXXXXX``"""
        return f"+91{PhoneNumberValidator.digits(phone)}"

    @staticmethod
    def mask(phone: str) -> str:
        """
        Mask phone number in values returned outside the process (task results).

        Returns:
            Masked phone number (e.g., 9198765****)
        """
        if not phone or len(phone) < 4:
            return "****"
        return phone[:-4] + "****"


class NameValidator:
    """Contact name validation"""

    MIN_LENGTH = 2
    MAX_LENGTH = 100

    @staticmethod
    def validate(name: str) -> tuple[bool, str | None]:
        name = (name or "").strip()

        if len(name) < NameValidator.MIN_LENGTH:
            return False, f"Name must be at least {NameValidator.MIN_LENGTH} characters."

        if len(name) > NameValidator.MAX_LENGTH:
            return False, f"Name cannot exceed {NameValidator.MAX_LENGTH} characters."

        if not ValidationPatterns.NAME.match(name):
            return False, (
                "Please enter a valid name (only English letters and spaces, "
                "no numbers or special characters)."
            )

        return True, None

    @staticmethod
    def normalize(name: str) -> str:
        return re.sub(r"\s+", " ", name.strip())


class EmailValidator:
    """Email validation"""

    @staticmethod
    def validate(email: str) -> tuple[bool, str | None]:
        email = (email or "").strip()
        if not email:
            return False, "Email is required."
        if not ValidationPatterns.EMAIL.match(email):
            return False, "Please enter a valid email address (e.g. name@example.com)."
        return True, None

    @staticmethod
    def normalize(email: str) -> str:
        return email.strip().lower()


class LengthValidator:
    """Trimmed-length bound shared by free-text fields"""

    def __init__(self, label: str, min_length: int, max_length: int):
        self.label = label
        self.min_length = min_length
        self.max_length = max_length

    def validate(self, text: str) -> tuple[bool, str | None]:
        text = (text or "").strip()
        if len(text) < self.min_length:
            return False, f"{self.label} must be at least {self.min_length} characters."
        if len(text) > self.max_length:
            return False, f"{self.label} cannot exceed {self.max_length} characters."
        return True, None

    @staticmethod
    def normalize(text: str) -> str:
        return text.strip()


TitleValidator = LengthValidator("Title", 5, 255)
DistrictValidator = LengthValidator("District", 2, 100)
SubdistrictValidator = LengthValidator("Sub-district", 2, 100)
AreaValidator = LengthValidator("Area", 2, 200)
DescriptionValidator = LengthValidator("Description", 20, 5000)
LocationTextValidator = LengthValidator("Location", 1, 500)


class CategoryValidator:
    """Closed category set, case-insensitive"""

    ERROR = (
        "That category is not valid. Please choose: "
        + ", ".join(CATEGORIES) + "."
    )

    @staticmethod
    def validate(category: str) -> tuple[bool, str | None]:
        if CategoryValidator.normalize(category or "") not in CATEGORIES:
            return False, CategoryValidator.ERROR
        return True, None

    @staticmethod
    def normalize(category: str) -> str:
        return category.strip().lower()


class CoordinateValidator:
    """Latitude/longitude range checks and text parsing"""

    @staticmethod
    def _to_float(value: Any) -> float:
        if isinstance(value, bool):
            return math.nan
        try:
            return float(value)
        except (TypeError, ValueError):
            return math.nan

    @staticmethod
    def validate_latitude(value: Any) -> tuple[bool, str | None]:
        lat = CoordinateValidator._to_float(value)
        if math.isnan(lat):
            return False, "Please provide a numeric latitude (e.g. 28.6139)."
        if lat < -90 or lat > 90:
            return False, "Latitude must be between -90 and 90."
        return True, None

    @staticmethod
    def validate_longitude(value: Any) -> tuple[bool, str | None]:
        lng = CoordinateValidator._to_float(value)
        if math.isnan(lng):
            return False, "Please provide a numeric longitude (e.g. 77.2090)."
        if lng < -180 or lng > 180:
            return False, "Longitude must be between -180 and 180."
        return True, None

    @staticmethod
    def parse(text: str) -> tuple[tuple[float, float] | None, str | None]:
        """
        Parse ``"lat, long"`` / ``"lat long"`` free text.

        Returns:
            Tuple of ((latitude, longitude) or None, error_message)
        """
        match = ValidationPatterns.COORDINATES.match(text or "")
        if not match:
            return None, (
                "Please send coordinates as: latitude, longitude "
                "(e.g. 28.6139, 77.2090)."
            )
        lat, lng = float(match.group(1)), float(match.group(2))
        for check, value in (
            (CoordinateValidator.validate_latitude, lat),
            (CoordinateValidator.validate_longitude, lng),
        ):
            is_valid, error = check(value)
            if not is_valid:
                return None, error
        return (lat, lng), None

    @staticmethod
    def extract_from_text(text: str) -> tuple[float, float] | None:
        """Find an explicit ``lat, long`` pair inside longer text, if any"""
        match = ValidationPatterns.COORDINATES_IN_TEXT.search(text or "")
        if not match:
            return None
        lat, lng = float(match.group(1)), float(match.group(2))
        if not CoordinateValidator.validate_latitude(lat)[0]:
            return None
        if not CoordinateValidator.validate_longitude(lng)[0]:
            return None
        return lat, lng


_TEXT_FIELD_VALIDATORS: dict[str, tuple[Callable[[str], tuple[bool, str | None]], Callable[[str], Any]]] = {
    "contact_name": (NameValidator.validate, NameValidator.normalize),
    "contact_email": (EmailValidator.validate, EmailValidator.normalize),
    "title": (TitleValidator.validate, TitleValidator.normalize),
    "category": (CategoryValidator.validate, CategoryValidator.normalize),
    "district_name": (DistrictValidator.validate, DistrictValidator.normalize),
    "subdistrict_name": (SubdistrictValidator.validate, SubdistrictValidator.normalize),
    "area": (AreaValidator.validate, AreaValidator.normalize),
    "description": (DescriptionValidator.validate, DescriptionValidator.normalize),
    "contact_phone": (PhoneNumberValidator.validate, PhoneNumberValidator.normalize),
}


def validate_field(field: str, raw: str) -> tuple[Any, str | None]:
    """
    Validate and normalize one grievance field from user text.

    ``latitude`` is the combined coordinates slot and yields a
    ``(latitude, longitude)`` tuple.

    Returns:
        Tuple of (normalized_value or None, error_message)
    """
    if field == "latitude":
        return CoordinateValidator.parse(raw)

    entry = _TEXT_FIELD_VALIDATORS.get(field)
    if entry is None:
        raise KeyError(f"No validator for field: {field}")
    check, normalize = entry
    is_valid, error = check(raw)
    if not is_valid:
        return None, error
    return normalize(raw), None


# Pydantic field validators for reuse
def phone_validator(v: str | None) -> str | None:
    """Pydantic field validator for Indian mobile numbers"""
    if v is None or v == "":
        return None
    is_valid, error = PhoneNumberValidator.validate(v)
    if not is_valid:
        raise ValueError(error)
    return PhoneNumberValidator.normalize(v)


def email_validator(v: str) -> str:
    """Pydantic field validator for emails"""
    is_valid, error = EmailValidator.validate(v)
    if not is_valid:
        raise ValueError(error)
    return EmailValidator.normalize(v)
