"""An assignment, forum or other module synced from a classroom."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint

from activity_insights.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class CourseActivity(Base):
    __tablename__ = "course_activities"
    __table_args__ = (
        UniqueConstraint("classroom_id", "course_id", "activity_id", "type", name="uq_activity_identity"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    classroom_id = Column(String(50), nullable=False, index=True)
    course_id = Column(Integer, nullable=False, index=True)
    activity_id = Column(Integer, nullable=False)
    type = Column(String(30), nullable=False)  # assign | forum | quiz | ...

    course_name = Column(String(255), nullable=True)
    name = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    url = Column(String(500), nullable=True)

    due_date = Column(DateTime, nullable=True)
    open_date = Column(DateTime, nullable=True)
    close_date = Column(DateTime, nullable=True)
    visible = Column(Boolean, nullable=False, default=True)

    raw_data = Column(JSON, nullable=True)         # module payload as synced
    assignment_data = Column(JSON, nullable=True)  # {"submissions": [...]}
    forum_data = Column(JSON, nullable=True)       # {"discussions": [...], "instructor_ids": [...]}

    needs_analysis = Column(Boolean, nullable=False, default=True, index=True)
    analysis_count = Column(Integer, nullable=False, default=0)
    last_data_sync = Column(DateTime, nullable=False, default=utcnow)
