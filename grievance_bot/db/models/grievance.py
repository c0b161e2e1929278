"""
Grievance Model - Citizen Complaints filed over WhatsApp
"""
import enum
from datetime import datetime, timezone
from sqlalchemy import (
    Boolean, Column, DateTime, Enum as SQLEnum, Float, Index, Integer, JSON, String, Text,
)

from grievance_bot.db.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GrievanceStatus(str, enum.Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class GrievancePriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Grievance(Base):
    """Grievance record"""

    __tablename__ = "grievances"

    id = Column(Integer, primary_key=True, index=True)
    # Human-readable reference: DDMMYYYY + suffix + per-day sequence (e.g. 31012026MLA002)
    grievance_id = Column(String(32), unique=True, nullable=False, index=True)

    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    category = Column(String(30), nullable=False, index=True)

    district_name = Column(String(100), nullable=False)
    subdistrict_name = Column(String(100), nullable=False)
    area = Column(String(200), nullable=False)
    # Pin address or free-text location, when the citizen gave one
    location = Column(String(500), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    contact_name = Column(String(100), nullable=False)
    contact_email = Column(String(255), nullable=False)
    contact_phone = Column(String(20), nullable=True)

    status = Column(SQLEnum(GrievanceStatus), default=GrievanceStatus.PENDING, nullable=False)
    priority = Column(SQLEnum(GrievancePriority), default=GrievancePriority.MEDIUM, nullable=False)

    # Image URLs first, then document URLs
    attachments = Column(JSON, default=list)
    created_via_whatsapp = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_grievances_created_at", "created_at"),
    )
