"""Structured result of one model run, upserted per activity."""

import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint

from activity_insights.database import Base
from activity_insights.models.activity import utcnow


class ActivityAnalysis(Base):
    __tablename__ = "activity_analyses"
    __table_args__ = (
        UniqueConstraint("course_id", "activity_id", "activity_type", name="uq_analysis_identity"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    course_id = Column(String(100), nullable=False, index=True)  # "{classroom_id}-{course_id}"
    activity_id = Column(String(100), nullable=False)            # "{activity_id}" or "{activity_id}:group:{group_id}"
    activity_type = Column(String(30), nullable=False)

    classroom_id = Column(String(50), nullable=False)
    moodle_course_id = Column(String(50), nullable=False)
    group_id = Column(Integer, nullable=True)
    activity_name = Column(String(500), nullable=True)

    summary = Column(Text, nullable=True)
    positives = Column(JSON, nullable=False, default=list)
    alerts = Column(JSON, nullable=False, default=list)
    recommendations = Column(JSON, nullable=False, default=list)
    sections = Column(JSON, nullable=False, default=list)  # [{id, title, content, format}]
    full_analysis = Column(Text, nullable=True)

    activity_data = Column(JSON, nullable=True)  # optimized payload sent to the model
    llm_response = Column(JSON, nullable=True)   # model metadata

    generated_at = Column(DateTime, nullable=False, default=utcnow)
    last_updated = Column(DateTime, nullable=False, default=utcnow)
    is_valid = Column(Boolean, nullable=False, default=True)
