"""
Database Models
"""
from grievance_bot.db.models.grievance import Grievance, GrievancePriority, GrievanceStatus

__all__ = [
    "Grievance",
    "GrievancePriority",
    "GrievanceStatus",
]
