"""
Grievance schemas

``GrievanceCreate`` is the full validation gate in front of grievance
persistence: both the chat CONFIRM step and flow submissions go through it.
"""
from typing import Literal, Optional

from pydantic import BaseModel, Field, HttpUrl, ValidationError, field_validator, model_validator

from grievance_bot.core.validation import email_validator, phone_validator
from grievance_bot.state_machine.session import GrievanceData

GrievanceCategory = Literal["roads", "water", "electricity", "documents", "health", "education"]


class AttachmentIn(BaseModel):
    url: HttpUrl
    file_name: Optional[str] = None
    mime_type: Optional[str] = None


class GrievanceCreate(BaseModel):
    """Schema for creating a grievance from WhatsApp"""

    contact_name: str = Field(min_length=2, max_length=100)
    contact_email: str
    contact_phone: Optional[str] = None
    title: str = Field(min_length=5, max_length=255)
    description: str = Field(min_length=20, max_length=5000)
    category: GrievanceCategory
    district_name: str = Field(min_length=2, max_length=100)
    subdistrict_name: str = Field(min_length=2, max_length=100)
    area: str = Field(min_length=2, max_length=200)
    location: Optional[str] = Field(default=None, max_length=500)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    images: list[AttachmentIn] = Field(default_factory=list)
    documents: list[AttachmentIn] = Field(default_factory=list)

    @field_validator(
        "contact_name", "title", "description", "district_name",
        "subdistrict_name", "area", "location",
        mode="before",
    )
    @classmethod
    def strip_text(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v

    @field_validator("category", mode="before")
    @classmethod
    def lower_category(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("contact_email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        return email_validator(v)

    @field_validator("contact_phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        return phone_validator(v)

    @model_validator(mode="after")
    def validate_coordinates(self) -> "GrievanceCreate":
        """Coordinates are mandatory for filing and come as a pair"""
        if (self.latitude is None) != (self.longitude is None):
            raise ValueError("Both latitude and longitude are required together.")
        if self.latitude is None:
            raise ValueError("Location (latitude, longitude) is required.")
        return self

    @property
    def attachment_urls(self) -> list[str]:
        """Images first, then documents"""
        return [str(a.url) for a in self.images] + [str(a.url) for a in self.documents]


def submittable_payload(data: GrievanceData) -> dict:
    """Session data as a create payload, without attachments that were never stored"""
    payload = data.model_dump(mode="python")
    payload["images"] = [a.model_dump() for a in data.images if a.is_stored]
    payload["documents"] = [a.model_dump() for a in data.documents if a.is_stored]
    return payload


def validation_issues(exc: ValidationError, with_messages: bool = False) -> list[str]:
    """Field paths (or messages) of a failed GrievanceCreate validation"""
    issues = []
    for error in exc.errors():
        path = ".".join(str(p) for p in error.get("loc", ()))
        if with_messages:
            msg = error.get("msg", "invalid")
            issues.append(f"{path}: {msg}" if path else msg)
        else:
            issues.append(path or error.get("msg", "invalid"))
    return issues
