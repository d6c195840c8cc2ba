"""Tests for the activity and analysis stores (temporary SQLite database)."""

import sys
import os
from datetime import timedelta

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from sqlalchemy import func, select

from activity_insights.database import create_db_engine, create_session_factory, init_db, session_scope
from activity_insights.models import ActivityAnalysis, CourseActivity
from activity_insights.models.activity import utcnow
from activity_insights.schemas.activity import ActivityRecord
from activity_insights.schemas.analysis import ActivityListFilters, AnalysisFilters, AnalysisSection, ParsedAnalysis
from activity_insights.services.activity_store import ActivityStore
from activity_insights.services.analysis_store import AnalysisStore, analysis_key


def _session_factory(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'insights.db'}")
    init_db(engine)
    return create_session_factory(engine)


def _add_activity(session_factory, **overrides) -> ActivityRecord:
    data = dict(
        classroom_id="101", course_id=7, activity_id=55, type="forum", name="Week 1 forum",
        needs_analysis=True, visible=True,
    )
    data.update(overrides)
    with session_scope(session_factory) as session:
        row = CourseActivity(**data)
        session.add(row)
        session.flush()
        return ActivityRecord.model_validate(row)


def _parsed(summary="Participation is steady.") -> ParsedAnalysis:
    return ParsedAnalysis(
        full_text="#### Participation\n- **Active** group",
        summary=summary,
        sections=[AnalysisSection(id="participation", title="Participation", content="- **Active** group",
                                  format="bullet-list")],
        insights=["Active group"],
        alerts=[],
        recommendations=["Keep the weekly prompt."],
    )


def _analysis_count(session_factory) -> int:
    with session_scope(session_factory) as session:
        return session.execute(select(func.count(ActivityAnalysis.id))).scalar_one()


def _activity_row(session_factory, activity_id: str) -> CourseActivity:
    with session_scope(session_factory) as session:
        return session.get(CourseActivity, activity_id)


class TestAnalysisStore:
    """Idempotent upsert keyed by (scoped course, activity, type)."""

    def test_save_creates_row_and_clears_flag(self, tmp_path):
        factory = _session_factory(tmp_path)
        activity = _add_activity(factory)
        AnalysisStore(factory).save(activity, _parsed(), {"details": {}}, {"provider": "fake"})

        assert _analysis_count(factory) == 1
        row = _activity_row(factory, activity.id)
        assert row.needs_analysis is False
        assert row.analysis_count == 1

        saved = AnalysisStore(factory).get(activity)
        assert saved.course_id == "101-7"
        assert saved.activity_id == "55"
        assert saved.moodle_course_id == "7"
        assert saved.summary == "Participation is steady."
        assert saved.sections[0]["id"] == "participation"
        assert saved.llm_response == {"provider": "fake"}
        assert saved.is_valid is True

    def test_repeat_save_updates_in_place(self, tmp_path):
        factory = _session_factory(tmp_path)
        activity = _add_activity(factory)
        store = AnalysisStore(factory)
        store.save(activity, _parsed("first"), {})
        first = store.get(activity)
        store.save(activity, _parsed("second"), {})
        second = store.get(activity)

        assert _analysis_count(factory) == 1
        assert second.id == first.id
        assert second.summary == "second"
        assert second.generated_at == first.generated_at
        assert second.last_updated >= first.last_updated
        assert _activity_row(factory, activity.id).analysis_count == 2

    def test_same_activity_id_in_other_classroom_is_distinct(self, tmp_path):
        factory = _session_factory(tmp_path)
        a = _add_activity(factory, classroom_id="101")
        b = _add_activity(factory, classroom_id="102")
        store = AnalysisStore(factory)
        store.save(a, _parsed(), {})
        store.save(b, _parsed(), {})
        assert _analysis_count(factory) == 2

    def test_group_rows_use_synthetic_key(self, tmp_path):
        factory = _session_factory(tmp_path)
        activity = _add_activity(factory)
        store = AnalysisStore(factory)
        store.save(activity, _parsed(), {}, group_id=12)

        assert analysis_key(activity, 12) == ("101-7", "55:group:12", "forum")
        assert store.get(activity, group_id=12).group_id == 12
        assert store.get(activity) is None
        row = _activity_row(factory, activity.id)
        assert row.needs_analysis is True
        assert row.analysis_count == 0

    def test_stats(self, tmp_path):
        factory = _session_factory(tmp_path)
        store = AnalysisStore(factory)
        store.save(_add_activity(factory, activity_id=1), _parsed(), {})
        store.save(_add_activity(factory, activity_id=2, type="assign"), _parsed(), {})
        store.save(_add_activity(factory, activity_id=3, classroom_id="my-classroom"), _parsed(), {})

        stats = store.stats()
        assert stats.success is True
        assert stats.total_analyses == 3
        assert stats.recent_analyses == 3
        assert stats.by_activity_type == {"forum": 2, "assign": 1}
        assert stats.by_classroom == {"101": 2, "my-classroom": 1}


class TestActivityStore:
    """Candidate selection, listing and re-marking."""

    def test_fetch_page_filters_and_order(self, tmp_path):
        factory = _session_factory(tmp_path)
        now = utcnow()
        _add_activity(factory, activity_id=1, due_date=None)
        _add_activity(factory, activity_id=2, due_date=now + timedelta(days=3))
        _add_activity(factory, activity_id=3, due_date=now + timedelta(days=1))
        _add_activity(factory, activity_id=4, needs_analysis=False)
        _add_activity(factory, activity_id=5, visible=False)
        _add_activity(factory, activity_id=6, close_date=now - timedelta(days=1))
        _add_activity(factory, activity_id=7, open_date=now + timedelta(days=1))
        _add_activity(factory, activity_id=8, classroom_id="102")

        store = ActivityStore(factory)
        page = store.fetch_page(AnalysisFilters(classroom_id="101"), offset=0, limit=50)
        assert [a.activity_id for a in page] == [3, 2, 1]

        forced = store.fetch_page(AnalysisFilters(classroom_id="101", force_reanalysis=True), offset=0, limit=50)
        assert {a.activity_id for a in forced} == {1, 2, 3, 4}

    def test_fetch_page_limit_and_offset(self, tmp_path):
        factory = _session_factory(tmp_path)
        for i in range(1, 6):
            _add_activity(factory, activity_id=i, due_date=utcnow() + timedelta(days=i))
        store = ActivityStore(factory)
        assert [a.activity_id for a in store.fetch_page(AnalysisFilters(), 0, 2)] == [1, 2]
        assert [a.activity_id for a in store.fetch_page(AnalysisFilters(), 2, 2)] == [3, 4]
        assert [a.activity_id for a in store.fetch_page(AnalysisFilters(), 4, 2)] == [5]

    def test_type_and_id_filters(self, tmp_path):
        factory = _session_factory(tmp_path)
        _add_activity(factory, activity_id=1, type="assign")
        _add_activity(factory, activity_id=2, type="forum")
        _add_activity(factory, activity_id=3, type="forum")
        store = ActivityStore(factory)
        assignments = store.fetch_page(AnalysisFilters(activity_type="assignment"), 0, 50)
        assert [a.activity_id for a in assignments] == [1]
        picked = store.fetch_page(AnalysisFilters(activity_ids=[3]), 0, 50)
        assert [a.activity_id for a in picked] == [3]

    def test_mark_valid_activities(self, tmp_path):
        factory = _session_factory(tmp_path)
        done = _add_activity(factory, activity_id=1, needs_analysis=False)
        _add_activity(factory, activity_id=2, needs_analysis=False, visible=False)
        _add_activity(factory, activity_id=3, needs_analysis=False, classroom_id="102")

        result = ActivityStore(factory).mark_valid_activities(classroom_id="101")
        assert result.success is True
        assert result.marked_activities == 1
        assert _activity_row(factory, done.id).needs_analysis is True

    def test_list_activities(self, tmp_path):
        factory = _session_factory(tmp_path)
        _add_activity(factory, activity_id=1)
        _add_activity(factory, activity_id=2, needs_analysis=False, analysis_count=1)
        _add_activity(factory, activity_id=3, classroom_id="102", course_id=9)

        response = ActivityStore(factory).list_activities(ActivityListFilters())
        assert response.success is True
        assert response.stats.total == 3
        assert response.stats.active == 2
        assert response.stats.inactive == 1
        assert response.stats.analyzed == 1
        by_classroom = {c.classroom_id: c for c in response.stats.by_classroom}
        assert by_classroom["101"].activities == 2
        assert by_classroom["101"].courses == 1
        assert by_classroom["102"].active == 1

        active_only = ActivityStore(factory).list_activities(ActivityListFilters(active_only=True))
        assert {a.activity_id for a in active_only.activities} == {1, 3}

    def test_activity_stats(self, tmp_path):
        factory = _session_factory(tmp_path)
        _add_activity(factory, activity_id=1)
        _add_activity(factory, activity_id=2, needs_analysis=False)
        _add_activity(factory, activity_id=3, needs_analysis=False)
        assert ActivityStore(factory).activity_stats() == {"101": {"pending": 1, "analyzed": 2}}
