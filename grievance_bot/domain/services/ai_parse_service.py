"""
AI Parse Service - structured fields from free-form complaint text.

The model output is never trusted: each value goes through the same
per-field validators as the step-by-step dialogue, and anything invalid is
dropped rather than defaulted.
"""
import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from grievance_bot.core.config import settings
from grievance_bot.core.exceptions import AIParseError, LLMError
from grievance_bot.core.logging import get_logger, log_async_operation
from grievance_bot.core.validation import (
    CoordinateValidator,
    LocationTextValidator,
    validate_field,
)
from grievance_bot.domain.services.llm_client import LLMClient
from grievance_bot.state_machine.session import GrievanceData
from grievance_bot.state_machine.states import REQUIRED_FIELDS_ORDER

logger = get_logger(__name__)

# Keys the model may return; coordinates only ever come from "location"
EXTRACTED_TEXT_FIELDS = (
    "contact_name",
    "contact_email",
    "contact_phone",
    "title",
    "description",
    "category",
    "district_name",
    "subdistrict_name",
    "area",
)

SYSTEM_PROMPT = """You are a complaint intake assistant for Uttar Pradesh government grievances. Extract structured fields from the citizen's message and any document summaries. Output ONLY valid JSON. Do not invent data; if something is not stated or not visible, omit that field or use null.

Output a single JSON object with these optional keys (use null or omit if not found):
- contact_name (string, 2-100 chars, English letters and spaces only)
- contact_email (string, valid email)
- contact_phone (string, 10 digits starting with 6/7/8/9, or with +91)
- title (string, 5-255 chars, complaint title)
- description (string, 20-5000 chars, issue description)
- category (one of: roads, water, electricity, documents, health, education)
- district_name (string, 2-100 chars)
- subdistrict_name (string, 2-100 chars)
- area (string, 2-200 chars, locality/area)
- location (string, optional address or place name, max 500 chars)

Do NOT output latitude, longitude, or images. If the user writes coordinates like "28.6139, 77.2090" you may put them in location as-is."""

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass
class ParseResult:
    """Validated partial data plus the ordered required slots still missing"""

    partial: dict[str, Any] = field(default_factory=dict)
    missing_fields: list[str] = field(default_factory=list)


def build_user_prompt(text: str, document_summaries: Optional[list[str]] = None) -> str:
    prompt = "Extract complaint fields from the following message(s).\n\nTEXT:\n"
    prompt += text or "(no text)"
    if document_summaries:
        prompt += "\n\nATTACHMENT SUMMARIES:\n"
        for i, summary in enumerate(document_summaries, start=1):
            prompt += f"[{i}]\n{summary}\n"
    prompt += "\n\nRespond with a single JSON object only. Use null for missing fields."
    return prompt


def missing_required_fields(data: GrievanceData) -> list[str]:
    """Required slots not yet filled, latitude/longitude counted as one"""
    return [key for key in REQUIRED_FIELDS_ORDER if not data.has_field(key)]


def validate_extracted(raw: dict[str, Any]) -> dict[str, Any]:
    """Keep only extracted values that pass the per-field validators"""
    partial: dict[str, Any] = {}

    for key in EXTRACTED_TEXT_FIELDS:
        value = raw.get(key)
        if value is None or isinstance(value, (dict, list, bool)):
            continue
        value = str(value).strip()
        if not value:
            continue
        normalized, error = validate_field(key, value)
        if error is None:
            partial[key] = normalized

    location = raw.get("location")
    if isinstance(location, str) and location.strip():
        location = location.strip()
        if LocationTextValidator.validate(location)[0]:
            partial["location"] = location
        coords = CoordinateValidator.extract_from_text(location)
        if coords is not None:
            partial["latitude"], partial["longitude"] = coords

    return partial


def _loads(content: str) -> dict[str, Any]:
    cleaned = _CODE_FENCE.sub("", content.strip())
    parsed = json.loads(cleaned)
    if not isinstance(parsed, dict):
        raise ValueError("top-level JSON value is not an object")
    return parsed


class AIParseService:
    """Free text (+ optional attachment summaries) -> validated partial grievance"""

    def __init__(self, llm: LLMClient | None = None, model: str | None = None):
        self.llm = llm or LLMClient()
        self.model = model or settings.WHATSAPP_CONVERSATION_MODEL

    @log_async_operation("ai_parse")
    async def parse(
        self,
        text: str,
        document_summaries: Optional[list[str]] = None,
    ) -> ParseResult:
        """
        Extract grievance fields.

        Malformed model output yields an empty partial and every required
        slot as missing.

        Raises:
            AIParseError: the LLM call itself failed.
        """
        user_prompt = build_user_prompt((text or "").strip(), document_summaries)

        try:
            content = await self.llm.complete(
                user_prompt,
                SYSTEM_PROMPT,
                model=self.model,
                max_tokens=settings.LLM_MAX_TOKENS,
                temperature=settings.LLM_TEMPERATURE,
                json_mode=True,
            )
        except LLMError as e:
            logger.error(
                "AI parse: LLM call failed",
                extra_data={"model": self.model, "error": e.message},
            )
            raise AIParseError("LLM call failed", details={"model": self.model}) from e

        try:
            raw = _loads(content)
        except ValueError:
            logger.warning(
                "AI parse: invalid JSON response",
                extra_data={"model": self.model, "preview": content[:200]},
            )
            return ParseResult(partial={}, missing_fields=list(REQUIRED_FIELDS_ORDER))

        partial = validate_extracted(raw)
        merged = GrievanceData(**partial)
        result = ParseResult(partial=partial, missing_fields=missing_required_fields(merged))
        logger.info(
            "AI parse completed",
            extra_data={
                "model": self.model,
                "extracted": sorted(partial),
                "missing": result.missing_fields,
            },
        )
        return result
