"""
Flow Processor - structured WhatsApp Flow (form) submissions

A completed form goes straight to validation and creation; the chat session
is neither read nor written.
"""
import json
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import ValidationError

from grievance_bot.core.logging import get_logger
from grievance_bot.domain.schemas import GrievanceCreate, validation_issues
from grievance_bot.domain.services.grievance_service import GrievanceService
from grievance_bot.state_machine import templates

logger = get_logger(__name__)


@dataclass(frozen=True)
class FlowResult:
    ok: bool
    message: str
    grievance_id: Optional[str] = None


def _to_float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _stored_attachments(items: Any) -> list[dict[str, Any]]:
    """Keep attachment entries that carry an http(s) URL"""
    if not isinstance(items, list):
        return []
    kept = []
    for item in items:
        if isinstance(item, str):
            item = {"url": item}
        if isinstance(item, dict) and str(item.get("url", "")).startswith(("http://", "https://")):
            kept.append(item)
    return kept


def map_flow_payload(raw: dict[str, Any]) -> dict[str, Any]:
    """Form field names -> grievance fields (the form may say name/email)"""
    return {
        "contact_name": raw.get("contact_name") or raw.get("name"),
        "contact_email": raw.get("contact_email") or raw.get("email"),
        "contact_phone": raw.get("contact_phone") or None,
        "title": raw.get("title"),
        "description": raw.get("description"),
        "category": raw.get("category"),
        "district_name": raw.get("district_name"),
        "subdistrict_name": raw.get("subdistrict_name"),
        "area": raw.get("area"),
        "location": raw.get("location") or None,
        "latitude": _to_float(raw.get("latitude")),
        "longitude": _to_float(raw.get("longitude")),
        "images": _stored_attachments(raw.get("images")),
        "documents": _stored_attachments(raw.get("documents")),
    }


def parse_flow_response(response_json: str) -> dict[str, Any]:
    """Decode an nfm_reply ``response_json`` string"""
    parsed = json.loads(response_json)
    if not isinstance(parsed, dict):
        raise ValueError("Flow response is not a JSON object")
    return parsed


class FlowProcessor:
    def __init__(self, grievance_service: GrievanceService):
        self.grievance_service = grievance_service

    async def process(self, sender: str, raw: dict[str, Any]) -> FlowResult:
        """
        Validate and create a grievance from one form submission.

        Raises:
            GrievanceException: persistence failed.
        """
        try:
            grievance = GrievanceCreate.model_validate(map_flow_payload(raw))
        except ValidationError as e:
            issues = validation_issues(e, with_messages=True)
            logger.warning(
                "Flow submission invalid",
                extra_data={"from": sender, "issues": issues},
            )
            return FlowResult(ok=False, message=templates.flow_invalid(issues))

        created = await self.grievance_service.create(grievance)
        logger.info(
            "Flow submission created grievance",
            extra_data={
                "from": sender,
                "grievance_id": created.grievance_id,
            },
        )
        return FlowResult(
            ok=True,
            message=templates.submitted(created.grievance_id),
            grievance_id=created.grievance_id,
        )
