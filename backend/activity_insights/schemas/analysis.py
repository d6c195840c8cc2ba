"""Analysis pipeline request/response schemas."""

from typing import Optional

from pydantic import BaseModel


class AnalysisSection(BaseModel):
    id: str
    title: str
    content: str
    format: str  # table | numbered-list | bullet-list | text


class ParsedAnalysis(BaseModel):
    """Structured view of one markdown analysis."""
    full_text: str
    summary: str
    sections: list[AnalysisSection] = []
    insights: list[str] = []  # positive findings
    alerts: list[str] = []
    recommendations: list[str] = []


class AnalysisFilters(BaseModel):
    classroom_id: Optional[str] = None
    course_id: Optional[int] = None
    activity_type: Optional[str] = None
    activity_ids: Optional[list[int]] = None
    force_reanalysis: bool = False
    partition_by_group: bool = False


class BatchAnalysisResult(BaseModel):
    success: bool = True
    processed_activities: int = 0
    generated_analyses: int = 0
    errors: list[str] = []
    duration_ms: int = 0


class ActivityListFilters(BaseModel):
    classroom_id: Optional[str] = None
    course_id: Optional[int] = None
    activity_type: Optional[str] = None
    active_only: bool = False


class ClassroomActivityCount(BaseModel):
    classroom_id: str
    courses: int
    activities: int
    active: int


class ActivityListStats(BaseModel):
    total: int = 0
    active: int = 0
    inactive: int = 0
    analyzed: int = 0
    by_classroom: list[ClassroomActivityCount] = []


class ActivitySummary(BaseModel):
    id: str
    classroom_id: str
    course_id: int
    activity_id: int
    type: str
    name: str
    due_date: Optional[str] = None
    visible: bool
    needs_analysis: bool
    analysis_count: int
    last_data_sync: Optional[str] = None


class ActivityListResponse(BaseModel):
    success: bool = True
    error: Optional[str] = None
    filters: ActivityListFilters = ActivityListFilters()
    stats: ActivityListStats = ActivityListStats()
    activities: list[ActivitySummary] = []


class AnalysisStats(BaseModel):
    success: bool = True
    error: Optional[str] = None
    total_analyses: int = 0
    recent_analyses: int = 0  # last 24 hours
    by_activity_type: dict[str, int] = {}
    by_classroom: dict[str, int] = {}


class MarkingResult(BaseModel):
    success: bool = True
    marked_activities: int = 0
    errors: list[str] = []
    duration_ms: int = 0
