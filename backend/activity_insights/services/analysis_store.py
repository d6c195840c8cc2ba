"""Idempotent storage of analysis results, plus analysis stats.

Rows are keyed by (classroom-scoped course id, activity id, activity type);
repeated runs overwrite the same row. Group-partitioned forum analyses use
the synthetic activity id ``"{activity_id}:group:{group_id}"``.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from activity_insights.database import session_scope
from activity_insights.models.activity import CourseActivity, utcnow
from activity_insights.models.activity_analysis import ActivityAnalysis
from activity_insights.schemas.activity import ActivityRecord
from activity_insights.schemas.analysis import AnalysisStats, ParsedAnalysis

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(hours=24)


def analysis_key(activity: ActivityRecord, group_id: Optional[int] = None) -> tuple[str, str, str]:
    activity_id = str(activity.activity_id)
    if group_id is not None:
        activity_id = f"{activity_id}:group:{group_id}"
    return activity.scoped_course_id, activity_id, activity.type


class AnalysisStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def save(
        self,
        activity: ActivityRecord,
        parsed: ParsedAnalysis,
        optimized_payload: dict,
        model_meta: Optional[dict] = None,
        group_id: Optional[int] = None,
    ) -> None:
        """Upsert the analysis; for activity-level rows also clear the analysis flag.

        Both writes share one transaction, so the flag only flips once the
        analysis is stored.
        """
        try:
            self._save_once(activity, parsed, optimized_payload, model_meta, group_id)
        except IntegrityError:
            # A concurrent writer inserted the same key first; retry as an update
            logger.info("Concurrent insert for %s, retrying as update", analysis_key(activity, group_id))
            self._save_once(activity, parsed, optimized_payload, model_meta, group_id)

    def _save_once(self, activity, parsed, optimized_payload, model_meta, group_id) -> None:
        course_id, activity_id, activity_type = analysis_key(activity, group_id)
        now = utcnow()
        fields = {
            "classroom_id": activity.classroom_id,
            "moodle_course_id": str(activity.course_id),
            "group_id": group_id,
            "activity_name": activity.name,
            "summary": parsed.summary,
            "positives": parsed.insights,
            "alerts": parsed.alerts,
            "recommendations": parsed.recommendations,
            "sections": [s.model_dump() for s in parsed.sections],
            "full_analysis": parsed.full_text,
            "activity_data": optimized_payload,
            "llm_response": model_meta or {},
            "last_updated": now,
            "is_valid": True,
        }

        with session_scope(self.session_factory) as session:
            row = self._find(session, course_id, activity_id, activity_type)
            if row is None:
                session.add(ActivityAnalysis(
                    course_id=course_id,
                    activity_id=activity_id,
                    activity_type=activity_type,
                    generated_at=now,
                    **fields,
                ))
            else:
                for key, value in fields.items():
                    setattr(row, key, value)

            if group_id is None:
                session.execute(
                    update(CourseActivity)
                    .where(CourseActivity.id == activity.id)
                    .values(
                        needs_analysis=False,
                        analysis_count=CourseActivity.analysis_count + 1,
                    )
                )

    @staticmethod
    def _find(session: Session, course_id: str, activity_id: str, activity_type: str) -> Optional[ActivityAnalysis]:
        return session.execute(
            select(ActivityAnalysis).where(
                ActivityAnalysis.course_id == course_id,
                ActivityAnalysis.activity_id == activity_id,
                ActivityAnalysis.activity_type == activity_type,
            )
        ).scalars().first()

    def get(self, activity: ActivityRecord, group_id: Optional[int] = None) -> Optional[ActivityAnalysis]:
        with session_scope(self.session_factory) as session:
            return self._find(session, *analysis_key(activity, group_id))

    def stats(self) -> AnalysisStats:
        since = utcnow() - RECENT_WINDOW
        with session_scope(self.session_factory) as session:
            total = session.execute(select(func.count(ActivityAnalysis.id))).scalar_one()
            recent = session.execute(
                select(func.count(ActivityAnalysis.id)).where(ActivityAnalysis.generated_at >= since)
            ).scalar_one()
            by_type = session.execute(
                select(ActivityAnalysis.activity_type, func.count(ActivityAnalysis.id))
                .group_by(ActivityAnalysis.activity_type)
            ).all()
            course_ids = session.execute(select(ActivityAnalysis.course_id)).scalars().all()

        by_classroom: dict[str, int] = {}
        for course_id in course_ids:
            classroom_id = course_id.rsplit("-", 1)[0]
            by_classroom[classroom_id] = by_classroom.get(classroom_id, 0) + 1

        return AnalysisStats(
            total_analyses=total,
            recent_analyses=recent,
            by_activity_type={activity_type: count for activity_type, count in by_type if activity_type},
            by_classroom=by_classroom,
        )
