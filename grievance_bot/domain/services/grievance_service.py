"""
Grievance Service - persistence of validated grievances and status lookup
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from grievance_bot.core.config import settings
from grievance_bot.core.exceptions import GrievanceException
from grievance_bot.core.logging import get_logger
from grievance_bot.db.database import AsyncSessionLocal
from grievance_bot.db.models.grievance import Grievance, GrievancePriority, GrievanceStatus
from grievance_bot.domain.schemas import GrievanceCreate

logger = get_logger(__name__)

# Reference ids follow the Indian calendar day
IST = timezone(timedelta(hours=5, minutes=30))

# Concurrent creates on the same day can race for the same sequence number
_MAX_ID_ATTEMPTS = 3


@dataclass(frozen=True)
class GrievanceCreateResult:
    id: int
    grievance_id: str


def grievance_id_prefix(now: Optional[datetime] = None) -> str:
    """DDMMYYYY + suffix, e.g. 31012026MLA"""
    now = (now or datetime.now(timezone.utc)).astimezone(IST)
    return f"{now:%d%m%Y}{settings.GRIEVANCE_ID_SUFFIX}"


class GrievanceService:
    """Creates grievances and looks them up by reference.

    ``session_factory`` is any zero-argument callable returning an async
    context manager that yields an ``AsyncSession`` (``AsyncSessionLocal`` by
    default, an aiosqlite-bound sessionmaker in tests).
    """

    def __init__(self, session_factory: Callable = AsyncSessionLocal):
        self._session_factory = session_factory

    async def create(self, grievance: GrievanceCreate) -> GrievanceCreateResult:
        """Persist a validated grievance and assign its reference id"""
        last_error: Exception | None = None
        for attempt in range(1, _MAX_ID_ATTEMPTS + 1):
            try:
                async with self._session_factory() as db:
                    prefix = grievance_id_prefix()
                    count = await db.scalar(
                        select(func.count(Grievance.id)).where(
                            Grievance.grievance_id.like(f"{prefix}%")
                        )
                    )
                    record = Grievance(
                        grievance_id=f"{prefix}{(count or 0) + attempt:03d}",
                        title=grievance.title,
                        description=grievance.description,
                        category=grievance.category,
                        district_name=grievance.district_name,
                        subdistrict_name=grievance.subdistrict_name,
                        area=grievance.area,
                        location=grievance.location,
                        latitude=grievance.latitude,
                        longitude=grievance.longitude,
                        contact_name=grievance.contact_name,
                        contact_email=grievance.contact_email,
                        contact_phone=grievance.contact_phone,
                        status=GrievanceStatus.PENDING,
                        priority=GrievancePriority.MEDIUM,
                        attachments=grievance.attachment_urls,
                        created_via_whatsapp=True,
                    )
                    db.add(record)
                    await db.commit()
                    await db.refresh(record)
            except IntegrityError as e:
                last_error = e
                logger.warning(
                    "Grievance id collision, retrying",
                    extra_data={"attempt": attempt},
                )
                continue
            except SQLAlchemyError as e:
                raise GrievanceException(
                    "Failed to persist grievance", details={"error": str(e)}
                ) from e

            logger.info(
                "Grievance created",
                extra_data={
                    "id": record.id,
                    "grievance_id": record.grievance_id,
                    "category": record.category,
                    "attachments": len(record.attachments or []),
                },
            )
            return GrievanceCreateResult(id=record.id, grievance_id=record.grievance_id)

        raise GrievanceException(
            "Could not allocate a grievance id",
            details={"error": str(last_error)},
        )

    async def find_by_reference(self, reference: str) -> Optional[Grievance]:
        """Lookup by human-readable id, or by numeric primary key"""
        reference = reference.strip()
        conditions = [Grievance.grievance_id == reference.upper()]
        if reference.isdigit():
            conditions.append(Grievance.id == int(reference))

        async with self._session_factory() as db:
            result = await db.execute(select(Grievance).where(or_(*conditions)).limit(1))
            return result.scalar_one_or_none()
