"""Tests for content enrichment.

Verifies:
1. Thread depth terminates on cyclic and dangling parent links
2. Discussion and forum statistics come from the enriched posts
3. Assignment stats are computed in one pass (late, graded, average)
4. LMS failures degrade to a raw payload
"""

import asyncio
import pytest
import sys
import os
from datetime import datetime

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from activity_insights.analysis.enrichment import (
    ContentEnricher,
    build_analysis_payload,
    build_discussion,
    compute_thread_depth,
    enrich_assignment,
    forum_stats,
    html_to_text,
    normalize_post,
    partition_forum_by_group,
)
from activity_insights.schemas.activity import ActivityRecord
from activity_insights.schemas.payload import ForumPost
from activity_insights.services.lms_client import LMSError


def _post(post_id, parent_id=0, author_id=1, message="hello"):
    return ForumPost(post_id=post_id, parent_id=parent_id, author_id=author_id, message=message)


def _activity(**overrides) -> ActivityRecord:
    data = dict(
        id="a-1", classroom_id="101", course_id=7, activity_id=55,
        type="forum", name="Week 1 forum",
    )
    data.update(overrides)
    return ActivityRecord(**data)


class FakeLMS:
    def __init__(self, discussions=None, posts=None, submissions=None, fail=False):
        self.discussions = discussions or []
        self.posts = posts or {}
        self.submissions = submissions or []
        self.fail = fail
        self.discussion_calls = 0

    async def get_forum_discussions(self, forum_id):
        self.discussion_calls += 1
        if self.fail:
            raise LMSError("connection refused")
        return self.discussions

    async def get_discussion_posts(self, discussion_id):
        if self.fail:
            raise LMSError("connection refused")
        return self.posts.get(discussion_id, [])

    async def get_assignment_submissions(self, assignment_id):
        if self.fail:
            raise LMSError("connection refused")
        return self.submissions


class TestThreadDepth:
    """Parent-chain walk used for discussion depth."""

    def test_flat_discussion(self):
        posts = [_post(1), _post(2, parent_id=1), _post(3, parent_id=1)]
        assert compute_thread_depth(posts) == 1

    def test_nested_chain(self):
        posts = [_post(1), _post(2, 1), _post(3, 2), _post(4, 3)]
        assert compute_thread_depth(posts) == 3

    def test_cycle_terminates(self):
        """A→B→A must stop at the already-visited node."""
        posts = [_post(1, parent_id=2), _post(2, parent_id=1)]
        assert compute_thread_depth(posts) == 1

    def test_self_parent(self):
        assert compute_thread_depth([_post(1, parent_id=1)]) == 0

    def test_unknown_parent_stops(self):
        posts = [_post(1, parent_id=999)]
        assert compute_thread_depth(posts) == 0

    def test_hop_cap(self):
        """A chain deeper than the cap is reported at the cap."""
        posts = [_post(1)] + [_post(i, parent_id=i - 1) for i in range(2, 80)]
        assert compute_thread_depth(posts, max_hops=50) == 50

    def test_empty(self):
        assert compute_thread_depth([]) == 0


class TestForumEnrichment:
    """Post normalization and discussion/forum statistics."""

    def test_normalize_current_shape(self):
        raw = {
            "id": 10, "parentid": 9, "author": {"id": 4, "fullname": "Ana"},
            "message": "<p>Hello <b>class</b></p>", "timecreated": 1700000000,
        }
        post = normalize_post(raw, instructor_ids={4})
        assert post.post_id == 10
        assert post.parent_id == 9
        assert post.author_id == 4
        assert post.author_name == "Ana"
        assert post.is_instructor is True
        assert post.message == "Hello class"
        assert post.word_count == 2
        assert post.created_at.startswith("2023-11-14")

    def test_normalize_legacy_shape(self):
        raw = {"id": 3, "parent": 1, "userid": 8, "message": "plain text", "created": 1700000000}
        post = normalize_post(raw, instructor_ids=set())
        assert post.parent_id == 1
        assert post.author_id == 8
        assert post.is_instructor is False

    def test_discussion_stats(self):
        raw_posts = [
            {"id": 1, "parentid": 0, "author": {"id": 1}, "message": "a" * 10},
            {"id": 2, "parentid": 1, "author": {"id": 2}, "message": "b" * 20,
             "attachments": [{"filename": "notes.pdf", "filesize": 100}]},
            {"id": 3, "parentid": 2, "author": {"id": 1}, "message": "c" * 30},
        ]
        discussion = build_discussion({"discussion": 5, "name": "Intro", "groupid": 0}, raw_posts, {2})
        assert discussion.discussion_id == 5
        assert discussion.stats.total_posts == 3
        assert discussion.stats.unique_participants == 2
        assert discussion.stats.average_post_length == 20.0
        assert discussion.stats.posts_with_attachments == 1
        assert discussion.stats.thread_depth == 2
        assert discussion.stats.instructor_posts == 1
        assert discussion.stats.student_posts == 2

    def test_forum_stats_from_discussions(self):
        d1 = build_discussion({"discussion": 1}, [
            {"id": 1, "author": {"id": 1}, "message": "x"},
            {"id": 2, "parentid": 1, "author": {"id": 2}, "message": "y"},
        ], set())
        d2 = build_discussion({"discussion": 2}, [{"id": 3, "author": {"id": 1}, "message": "z"}], set())
        stats = forum_stats([d1, d2])
        assert stats.total_discussions == 2
        assert stats.total_posts == 3
        assert stats.unique_participants == 2
        assert stats.average_posts_per_discussion == 1.5
        assert stats.discussions_with_interaction == 1
        assert stats.max_thread_depth == 1

    def test_fetches_discussions_when_not_cached(self):
        lms = FakeLMS(
            discussions=[{"discussion": 1, "name": "Intro"}],
            posts={1: [{"id": 1, "author": {"id": 3}, "message": "hi"}]},
        )
        payload = asyncio.run(ContentEnricher({"101": lms}).enrich(_activity()))
        assert payload.kind == "forum"
        assert lms.discussion_calls == 1
        assert payload.stats.total_posts == 1

    def test_uses_cached_discussions(self):
        lms = FakeLMS(posts={7: [{"id": 1, "author": {"id": 3}, "message": "hi"}]})
        activity = _activity(forum_data={"discussions": [{"discussion": 7}], "instructor_ids": [3]})
        payload = asyncio.run(ContentEnricher({"101": lms}).enrich(activity))
        assert lms.discussion_calls == 0
        assert payload.discussions[0].posts[0].is_instructor is True

    def test_lms_failure_degrades_to_raw(self):
        activity = _activity(raw_data={"modname": "forum"})
        payload = asyncio.run(ContentEnricher({"101": FakeLMS(fail=True)}).enrich(activity))
        assert payload.kind == "raw"
        assert payload.data == {"modname": "forum"}
        assert "connection refused" in payload.reason

    def test_missing_classroom_client_degrades(self):
        payload = asyncio.run(ContentEnricher({}).enrich(_activity(raw_data={"modname": "forum"})))
        assert payload.kind == "raw"

    def test_lms_failure_without_raw_data_propagates(self):
        """Nothing to fall back on: the error reaches the caller."""
        with pytest.raises(LMSError):
            asyncio.run(ContentEnricher({"101": FakeLMS(fail=True)}).enrich(_activity()))

    def test_unknown_type_passes_through(self):
        payload = asyncio.run(ContentEnricher({}).enrich(_activity(type="quiz", raw_data={"q": 1})))
        assert payload.kind == "raw"
        assert payload.data == {"q": 1}

    def test_partition_by_group(self):
        lms = FakeLMS(posts={
            1: [{"id": 1, "author": {"id": 1}, "message": "a"}],
            2: [{"id": 2, "author": {"id": 2}, "message": "b"}],
            3: [{"id": 3, "author": {"id": 3}, "message": "c"}],
        })
        activity = _activity(forum_data={"discussions": [
            {"discussion": 1, "groupid": -1},
            {"discussion": 2, "groupid": 12},
            {"discussion": 3, "groupid": 12},
        ]})
        payload = asyncio.run(ContentEnricher({"101": lms}).enrich(activity))
        groups = partition_forum_by_group(payload)
        assert list(groups) == [12]
        assert groups[12].stats.total_discussions == 2
        assert groups[12].stats.total_posts == 2


class TestAssignmentEnrichment:
    """Submission normalization and single-pass stats."""

    def test_stats(self):
        due = datetime(2024, 3, 1, 12, 0, 0)
        due_ts = 1709294400  # 2024-03-01 12:00 UTC
        raw = [
            {"id": 1, "userid": 10, "status": "submitted", "timemodified": due_ts - 60, "grade": "8.5",
             "plugins": [{"type": "comments", "comments": [{"userid": 2, "content": "Nice"}]}]},
            {"id": 2, "userid": 11, "status": "submitted", "timemodified": due_ts + 3600, "grade": "6.5",
             "plugins": [{"type": "file", "fileareas": [{"files": [{"filename": "essay.docx"}]}]}]},
            {"id": 3, "userid": 12, "status": "new", "grade": "-1"},
        ]
        payload = enrich_assignment(raw, due)
        stats = payload.stats
        assert stats.total_submissions == 3
        assert stats.submitted == 2
        assert stats.late == 1
        assert stats.graded == 2
        assert stats.average_grade == 7.5
        assert stats.with_comments == 1
        assert stats.with_attachments == 1
        assert payload.submissions[1].is_late is True
        assert payload.submissions[2].grade is None

    def test_online_text_and_feedback(self):
        raw = [{
            "id": 1, "status": "submitted", "feedback": {"text": "<p>Good work</p>"},
            "plugins": [{"type": "onlinetext", "editorfields": [{"text": "<p>My answer</p>"}]}],
        }]
        submission = enrich_assignment(raw).submissions[0]
        assert submission.online_text == "My answer"
        assert submission.feedback == "Good work"

    def test_empty(self):
        payload = enrich_assignment([])
        assert payload.stats.total_submissions == 0
        assert payload.stats.average_grade is None

    def test_fetches_submissions_when_not_cached(self):
        lms = FakeLMS(submissions=[{"id": 1, "status": "submitted"}])
        activity = _activity(type="assign")
        payload = asyncio.run(ContentEnricher({"101": lms}).enrich(activity))
        assert payload.kind == "assignment"
        assert payload.stats.submitted == 1

    def test_cached_submissions_need_no_client(self):
        activity = _activity(type="assign", assignment_data={"submissions": [{"id": 1, "status": "new"}]})
        payload = asyncio.run(ContentEnricher({}).enrich(activity))
        assert payload.kind == "assignment"
        assert payload.stats.total_submissions == 1


class TestAnalysisPayload:
    """Payload assembly and HTML cleanup."""

    def test_html_to_text(self):
        assert html_to_text("<p>One&nbsp;<i>two</i></p>\n<p>three</p>") == "One two three"
        assert html_to_text(None) == ""

    def test_build_payload(self):
        activity = _activity(description="<p>Discuss</p>", course_name="Biology", raw_data={"id": 55})
        payload = build_analysis_payload(activity, enrich_assignment([]))
        assert payload["activity_info"]["description"] == "Discuss"
        assert payload["activity_info"]["course"] == {"id": 7, "name": "Biology"}
        assert payload["raw_data"] == {"id": 55}
        assert payload["details"]["kind"] == "assignment"
