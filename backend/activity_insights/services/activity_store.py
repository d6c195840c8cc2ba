"""Candidate selection, listing and re-marking of course activities.

``needs_analysis`` is the single source of truth for eligibility: a failed
activity keeps it and is picked up again by the next run.
"""

import logging
import time
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from activity_insights.database import session_scope
from activity_insights.models.activity import CourseActivity, utcnow
from activity_insights.schemas.activity import ActivityRecord
from activity_insights.schemas.analysis import (
    ActivityListFilters,
    ActivityListResponse,
    ActivityListStats,
    ActivitySummary,
    AnalysisFilters,
    ClassroomActivityCount,
    MarkingResult,
)

logger = logging.getLogger(__name__)


def in_window(now: datetime):
    """Visible and inside the open/close window (an unset bound is open)."""
    return and_(
        CourseActivity.visible.is_(True),
        or_(CourseActivity.open_date.is_(None), CourseActivity.open_date <= now),
        or_(CourseActivity.close_date.is_(None), CourseActivity.close_date > now),
    )


def _type_values(activity_type: str) -> list[str]:
    if activity_type in ("assign", "assignment"):
        return ["assign", "assignment"]
    return [activity_type]


class ActivityStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    # ── Selection ─────────────────────────────────────────────────────────────

    def fetch_page(
        self,
        filters: AnalysisFilters,
        offset: int,
        limit: int,
        now: Optional[datetime] = None,
    ) -> list[ActivityRecord]:
        """One page of eligible activities, earliest due date first."""
        now = now or utcnow()
        stmt = select(CourseActivity).where(in_window(now))

        if not filters.force_reanalysis:
            stmt = stmt.where(CourseActivity.needs_analysis.is_(True))
        if filters.classroom_id:
            stmt = stmt.where(CourseActivity.classroom_id == filters.classroom_id)
        if filters.course_id is not None:
            stmt = stmt.where(CourseActivity.course_id == filters.course_id)
        if filters.activity_type:
            stmt = stmt.where(CourseActivity.type.in_(_type_values(filters.activity_type)))
        if filters.activity_ids:
            stmt = stmt.where(CourseActivity.activity_id.in_(filters.activity_ids))

        stmt = (
            stmt.order_by(
                CourseActivity.due_date.asc().nulls_last(),
                CourseActivity.last_data_sync.desc(),
                CourseActivity.id.asc(),
            )
            .offset(offset)
            .limit(limit)
        )

        with session_scope(self.session_factory) as session:
            rows = session.execute(stmt).scalars().all()
            return [ActivityRecord.model_validate(row) for row in rows]

    # ── Listing ───────────────────────────────────────────────────────────────

    def list_activities(self, filters: ActivityListFilters) -> ActivityListResponse:
        stmt = select(CourseActivity)
        if filters.classroom_id:
            stmt = stmt.where(CourseActivity.classroom_id == filters.classroom_id)
        if filters.course_id is not None:
            stmt = stmt.where(CourseActivity.course_id == filters.course_id)
        if filters.activity_type:
            stmt = stmt.where(CourseActivity.type.in_(_type_values(filters.activity_type)))
        if filters.active_only:
            stmt = stmt.where(CourseActivity.visible.is_(True), CourseActivity.needs_analysis.is_(True))
        stmt = stmt.order_by(
            CourseActivity.classroom_id.asc(),
            CourseActivity.course_id.asc(),
            CourseActivity.due_date.asc().nulls_last(),
        )

        with session_scope(self.session_factory) as session:
            rows = session.execute(stmt).scalars().all()

        activities = [
            ActivitySummary(
                id=row.id,
                classroom_id=row.classroom_id,
                course_id=row.course_id,
                activity_id=row.activity_id,
                type=row.type,
                name=row.name,
                due_date=row.due_date.isoformat() if row.due_date else None,
                visible=row.visible,
                needs_analysis=row.needs_analysis,
                analysis_count=row.analysis_count,
                last_data_sync=row.last_data_sync.isoformat() if row.last_data_sync else None,
            )
            for row in rows
        ]

        by_classroom: dict[str, dict] = {}
        for a in activities:
            entry = by_classroom.setdefault(a.classroom_id, {"courses": set(), "activities": 0, "active": 0})
            entry["courses"].add(a.course_id)
            entry["activities"] += 1
            if a.visible and a.needs_analysis:
                entry["active"] += 1

        active = sum(1 for a in activities if a.visible and a.needs_analysis)
        stats = ActivityListStats(
            total=len(activities),
            active=active,
            inactive=len(activities) - active,
            analyzed=sum(1 for a in activities if a.analysis_count > 0),
            by_classroom=[
                ClassroomActivityCount(
                    classroom_id=classroom_id,
                    courses=len(entry["courses"]),
                    activities=entry["activities"],
                    active=entry["active"],
                )
                for classroom_id, entry in by_classroom.items()
            ],
        )
        return ActivityListResponse(filters=filters, stats=stats, activities=activities)

    # ── Marking ───────────────────────────────────────────────────────────────

    def mark_valid_activities(self, classroom_id: Optional[str] = None) -> MarkingResult:
        """Flag every visible, in-window, already-analyzed activity for a fresh analysis."""
        start = time.monotonic()
        result = MarkingResult()
        now = utcnow()

        stmt = (
            update(CourseActivity)
            .where(CourseActivity.needs_analysis.is_(False), in_window(now))
            .values(needs_analysis=True)
        )
        if classroom_id:
            stmt = stmt.where(CourseActivity.classroom_id == classroom_id)

        try:
            with session_scope(self.session_factory) as session:
                result.marked_activities = session.execute(stmt).rowcount or 0
            logger.info("Marked %d activities for analysis", result.marked_activities)
        except SQLAlchemyError as e:
            logger.error("Error marking activities: %s", e)
            result.errors.append(f"Error marking activities{f' of classroom {classroom_id}' if classroom_id else ''}: {e}")
            result.success = False

        result.duration_ms = int((time.monotonic() - start) * 1000)
        return result

    def activity_stats(self) -> dict[str, dict[str, int]]:
        """Pending/analyzed counts of eligible activities per classroom."""
        now = utcnow()
        stmt = (
            select(CourseActivity.classroom_id, CourseActivity.needs_analysis, func.count(CourseActivity.id))
            .where(in_window(now))
            .group_by(CourseActivity.classroom_id, CourseActivity.needs_analysis)
        )
        out: dict[str, dict[str, int]] = {}
        with session_scope(self.session_factory) as session:
            for classroom_id, needs_analysis, count in session.execute(stmt):
                entry = out.setdefault(classroom_id, {"pending": 0, "analyzed": 0})
                entry["pending" if needs_analysis else "analyzed"] = count
        return out
