"""
Track Handler - read-only grievance status lookup
"""
import re
from dataclasses import dataclass, field
from typing import Optional

from grievance_bot.core.logging import get_logger
from grievance_bot.domain.services.grievance_service import GrievanceService
from grievance_bot.state_machine import templates

logger = get_logger(__name__)

_ID_TOKEN = re.compile(r"[A-Za-z0-9]{6,}")


@dataclass
class TrackResult:
    replies: list[str] = field(default_factory=list)
    # True once a status (or not-found) was returned; the session can end
    resolved: bool = False


def extract_reference(text: Optional[str]) -> Optional[str]:
    """First alphanumeric token of 6+ chars containing a digit"""
    for token in _ID_TOKEN.findall(text or ""):
        if any(ch.isdigit() for ch in token):
            return token
    return None


def _enum_value(value) -> str:
    return getattr(value, "value", value)


class TrackHandler:
    def __init__(self, grievance_service: GrievanceService):
        self.grievance_service = grievance_service

    async def get_tracking_replies(self, text: Optional[str]) -> TrackResult:
        reference = extract_reference(text)
        if reference is None:
            return TrackResult([templates.TRACK_ASK_ID], resolved=False)

        grievance = await self.grievance_service.find_by_reference(reference)
        if grievance is None:
            logger.info("Track lookup: not found", extra_data={"reference": reference})
            return TrackResult([templates.TRACK_NOT_FOUND], resolved=True)

        updated = grievance.updated_at or grievance.created_at
        reply = templates.track_status(
            grievance_id=grievance.grievance_id or reference,
            status=_enum_value(grievance.status),
            district=grievance.district_name,
            subdistrict=grievance.subdistrict_name,
            priority=_enum_value(grievance.priority),
            updated_at=updated.isoformat() if updated else "unknown",
        )
        return TrackResult([reply], resolved=True)
