"""Detached activity snapshots passed through the pipeline."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


class ActivityKind(str, Enum):
    """Payload tag selecting enrichment and prompt template."""
    ASSIGNMENT = "assignment"
    FORUM = "forum"
    OTHER = "other"


ASSIGNMENT_TYPES = {"assign", "assignment"}
FORUM_TYPES = {"forum"}


def activity_kind(activity_type: str) -> ActivityKind:
    t = (activity_type or "").strip().lower()
    if t in ASSIGNMENT_TYPES:
        return ActivityKind.ASSIGNMENT
    if t in FORUM_TYPES:
        return ActivityKind.FORUM
    return ActivityKind.OTHER


class ActivityRecord(BaseModel):
    """Read-only copy of a CourseActivity row, safe to use outside its session."""
    id: str
    classroom_id: str
    course_id: int
    activity_id: int
    type: str
    name: str
    course_name: Optional[str] = None
    description: Optional[str] = None
    url: Optional[str] = None
    due_date: Optional[datetime] = None
    open_date: Optional[datetime] = None
    close_date: Optional[datetime] = None
    visible: bool = True
    raw_data: Optional[Any] = None
    assignment_data: Optional[Any] = None
    forum_data: Optional[Any] = None
    needs_analysis: bool = True
    analysis_count: int = 0
    last_data_sync: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def kind(self) -> ActivityKind:
        return activity_kind(self.type)

    @property
    def scoped_course_id(self) -> str:
        """Classroom-scoped course id used as the analysis key."""
        return f"{self.classroom_id}-{self.course_id}"

    def describe(self) -> str:
        return f"{self.type} {self.activity_id} of course {self.course_id} (classroom {self.classroom_id})"
