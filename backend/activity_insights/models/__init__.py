"""SQLAlchemy ORM models."""

from activity_insights.models.activity import CourseActivity
from activity_insights.models.activity_analysis import ActivityAnalysis

__all__ = [
    "CourseActivity",
    "ActivityAnalysis",
]
