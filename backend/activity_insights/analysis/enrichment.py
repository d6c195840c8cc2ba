"""
Content enrichment — turns the synced summary of an activity into an
analysis-ready payload.

Assignments: submissions normalized and aggregated in one pass.
Forums: every discussion gets its full post list plus participation and
thread-depth statistics.
Anything else passes through as a RawPayload.

Enrichment is best-effort: an LMS failure returns the original payload
instead of failing the activity. Only an activity with no synced payload
at all has nothing to fall back on; its LMS error propagates.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Protocol

import requests
from bs4 import BeautifulSoup

from activity_insights.schemas.activity import ActivityKind, ActivityRecord
from activity_insights.schemas.payload import (
    AssignmentPayload,
    AssignmentStats,
    AssignmentSubmission,
    Attachment,
    DiscussionStats,
    EnrichedPayload,
    ForumDiscussion,
    ForumPayload,
    ForumPost,
    ForumStats,
    RawPayload,
    SubmissionComment,
)
from activity_insights.services.lms_client import LMSError

logger = logging.getLogger(__name__)

MAX_THREAD_HOPS = 50

_WS_RE = re.compile(r"\s+")


class ContentClient(Protocol):
    async def get_forum_discussions(self, forum_id: int) -> list[dict]: ...

    async def get_discussion_posts(self, discussion_id: int) -> list[dict]: ...

    async def get_assignment_submissions(self, assignment_id: int) -> list[dict]: ...


# ─────────────────────────────────────────────────────────────────────────────
# Small converters
# ─────────────────────────────────────────────────────────────────────────────

def html_to_text(value: Optional[str]) -> str:
    """Strip LMS HTML down to plain, single-spaced text."""
    if not value:
        return ""
    if "<" in value or "&" in value:
        value = BeautifulSoup(value, "html.parser").get_text(" ")
    return _WS_RE.sub(" ", value).strip()


def _to_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _to_float(value: Any) -> Optional[float]:
    try:
        grade = float(value)
    except (TypeError, ValueError):
        return None
    # Moodle reports "no grade" as -1
    return grade if grade >= 0 else None


def _iso_from_epoch(value: Any) -> Optional[str]:
    ts = _to_int(value)
    if not ts:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None).isoformat()


def _attachments(files: Any) -> list[Attachment]:
    out = []
    for f in files or []:
        if not isinstance(f, dict) or not f.get("filename"):
            continue
        out.append(Attachment(
            filename=f["filename"],
            filesize=_to_int(f.get("filesize"), 0),
            mimetype=f.get("mimetype"),
        ))
    return out


# ─────────────────────────────────────────────────────────────────────────────
# Assignments
# ─────────────────────────────────────────────────────────────────────────────

def _submission_plugins(raw: dict) -> tuple[Optional[str], list[SubmissionComment], list[Attachment]]:
    """Read online text, comments and files out of Moodle submission plugins."""
    online_text = None
    comments: list[SubmissionComment] = []
    attachments: list[Attachment] = []

    for plugin in raw.get("plugins") or []:
        ptype = plugin.get("type")
        if ptype == "onlinetext":
            for field in plugin.get("editorfields") or []:
                text = html_to_text(field.get("text"))
                if text:
                    online_text = text
        elif ptype == "file":
            for area in plugin.get("fileareas") or []:
                attachments.extend(_attachments(area.get("files")))
        elif ptype == "comments":
            for c in plugin.get("comments") or []:
                comments.append(SubmissionComment(
                    author_id=_to_int(c.get("userid")),
                    content=html_to_text(c.get("content")),
                    created_at=_iso_from_epoch(c.get("timecreated")),
                ))

    # Already-normalized payloads (e.g. cached by the sync job)
    for c in raw.get("comments") or []:
        if isinstance(c, dict):
            comments.append(SubmissionComment(
                author_id=_to_int(c.get("author_id", c.get("userid"))),
                content=html_to_text(c.get("content")),
                created_at=c.get("created_at"),
            ))
    attachments.extend(_attachments(raw.get("attachments")))
    return online_text, comments, attachments


def enrich_assignment(raw_submissions: list[dict], due_date: Optional[datetime] = None) -> AssignmentPayload:
    """Normalize submissions and compute aggregate stats in a single traversal."""
    submissions: list[AssignmentSubmission] = []
    stats = AssignmentStats()
    grade_total = 0.0
    due_ts = due_date.replace(tzinfo=timezone.utc).timestamp() if due_date else None

    for raw in raw_submissions:
        if not isinstance(raw, dict):
            continue
        online_text, comments, attachments = _submission_plugins(raw)

        status = str(raw.get("status") or "new")
        modified = _to_int(raw.get("timemodified"))
        is_submitted = status == "submitted"
        is_late = bool(is_submitted and due_ts and modified and modified > due_ts)

        grade_value = raw.get("grade")
        if isinstance(grade_value, dict):
            grade_value = grade_value.get("grade")
        grade = _to_float(grade_value)

        feedback = raw.get("feedback") or raw.get("feedbackcomments")
        if isinstance(feedback, dict):
            feedback = feedback.get("text")

        submission = AssignmentSubmission(
            submission_id=_to_int(raw.get("id")),
            user_id=_to_int(raw.get("userid")),
            status=status,
            submitted_at=_iso_from_epoch(modified) if is_submitted else None,
            is_late=is_late,
            grade=grade,
            feedback=html_to_text(feedback) or None,
            online_text=online_text,
            comments=comments,
            attachments=attachments,
        )
        submissions.append(submission)

        stats.total_submissions += 1
        if is_submitted:
            stats.submitted += 1
        if is_late:
            stats.late += 1
        if comments:
            stats.with_comments += 1
        if attachments:
            stats.with_attachments += 1
        if grade is not None:
            stats.graded += 1
            grade_total += grade

    if stats.graded:
        stats.average_grade = round(grade_total / stats.graded, 2)

    return AssignmentPayload(submissions=submissions, stats=stats)


# ─────────────────────────────────────────────────────────────────────────────
# Forums
# ─────────────────────────────────────────────────────────────────────────────

def normalize_post(raw: dict, instructor_ids: set[int]) -> ForumPost:
    """Accept both the current (author/parentid) and legacy (userid/parent) post shapes."""
    author = raw.get("author") if isinstance(raw.get("author"), dict) else {}
    author_id = _to_int(author.get("id", raw.get("userid")))
    message = html_to_text(raw.get("message"))
    parent = raw.get("parentid", raw.get("parent"))

    return ForumPost(
        post_id=_to_int(raw.get("id"), 0),
        parent_id=_to_int(parent, 0) or 0,
        author_id=author_id,
        author_name=author.get("fullname") or raw.get("userfullname"),
        is_instructor=author_id in instructor_ids,
        subject=html_to_text(raw.get("subject")) or None,
        message=message,
        word_count=len(message.split()),
        created_at=_iso_from_epoch(raw.get("timecreated", raw.get("created"))),
        attachments=_attachments(raw.get("attachments")),
    )


def compute_thread_depth(posts: list[ForumPost], max_hops: int = MAX_THREAD_HOPS) -> int:
    """Longest parent chain among posts.

    Each walk stops at a root, at an unknown parent, at a node already
    visited in the same walk, or after ``max_hops`` hops, so cyclic parent
    references still terminate.
    """
    parents = {p.post_id: p.parent_id for p in posts}
    depth = 0
    for post in posts:
        hops = 0
        visited = {post.post_id}
        current = post.parent_id
        while current and current in parents and current not in visited and hops < max_hops:
            hops += 1
            visited.add(current)
            current = parents[current]
        depth = max(depth, hops)
    return depth


def discussion_stats(posts: list[ForumPost]) -> DiscussionStats:
    if not posts:
        return DiscussionStats()
    authors = {p.author_id for p in posts if p.author_id is not None}
    instructor_posts = sum(1 for p in posts if p.is_instructor)
    return DiscussionStats(
        total_posts=len(posts),
        unique_participants=len(authors),
        average_post_length=round(sum(len(p.message) for p in posts) / len(posts), 1),
        posts_with_attachments=sum(1 for p in posts if p.attachments),
        thread_depth=compute_thread_depth(posts),
        instructor_posts=instructor_posts,
        student_posts=len(posts) - instructor_posts,
    )


def forum_stats(discussions: list[ForumDiscussion]) -> ForumStats:
    """Forum-wide stats derived from enriched discussions."""
    if not discussions:
        return ForumStats()
    participants = {
        p.author_id
        for d in discussions
        for p in d.posts
        if p.author_id is not None
    }
    total_posts = sum(len(d.posts) for d in discussions)
    return ForumStats(
        total_discussions=len(discussions),
        total_posts=total_posts,
        unique_participants=len(participants),
        average_posts_per_discussion=round(total_posts / len(discussions), 1),
        discussions_with_interaction=sum(1 for d in discussions if d.stats.unique_participants > 1),
        max_thread_depth=max(d.stats.thread_depth for d in discussions),
    )


def build_discussion(raw_discussion: dict, raw_posts: list[dict], instructor_ids: set[int]) -> ForumDiscussion:
    posts = [normalize_post(p, instructor_ids) for p in raw_posts if isinstance(p, dict)]
    posts.sort(key=lambda p: (p.created_at or "", p.post_id))
    return ForumDiscussion(
        discussion_id=_discussion_id(raw_discussion),
        name=html_to_text(raw_discussion.get("name") or raw_discussion.get("subject")),
        group_id=_to_int(raw_discussion.get("groupid"), -1),
        posts=posts,
        stats=discussion_stats(posts),
    )


def _discussion_id(raw_discussion: dict) -> int:
    # "discussion" is the discussion id; "id" is the first post's id
    return _to_int(raw_discussion.get("discussion", raw_discussion.get("id")), 0)


def partition_forum_by_group(payload: ForumPayload) -> dict[int, ForumPayload]:
    """Split a forum payload into one payload per discussion group (group id > 0)."""
    groups: dict[int, list[ForumDiscussion]] = {}
    for discussion in payload.discussions:
        if discussion.group_id > 0:
            groups.setdefault(discussion.group_id, []).append(discussion)
    return {
        group_id: ForumPayload(discussions=discussions, stats=forum_stats(discussions))
        for group_id, discussions in sorted(groups.items())
    }


# ─────────────────────────────────────────────────────────────────────────────
# Enricher
# ─────────────────────────────────────────────────────────────────────────────

class ContentEnricher:
    """Type-specific enrichment with a per-classroom LMS client lookup."""

    def __init__(self, clients: Mapping[str, ContentClient]):
        self.clients = clients

    async def enrich(self, activity: ActivityRecord) -> EnrichedPayload:
        kind = activity.kind
        try:
            if kind == ActivityKind.ASSIGNMENT:
                return await self._enrich_assignment(activity)
            if kind == ActivityKind.FORUM:
                return await self._enrich_forum(activity)
        except (LMSError, requests.RequestException) as e:
            if activity.raw_data is None:
                raise
            logger.warning("Enrichment failed for %s, using raw payload: %s", activity.describe(), e)
            return RawPayload(data=activity.raw_data, reason=f"enrichment failed: {e}")

        logger.info("No enrichment for activity type %r, forwarding raw payload", activity.type)
        return RawPayload(data=activity.raw_data, reason=f"unsupported type {activity.type}")

    async def _enrich_assignment(self, activity: ActivityRecord) -> AssignmentPayload:
        data = activity.assignment_data if isinstance(activity.assignment_data, dict) else {}
        submissions = data.get("submissions")
        if submissions is None:
            client = self.clients.get(activity.classroom_id)
            if client is None:
                raise LMSError(f"No LMS client configured for classroom {activity.classroom_id}")
            logger.info("No cached submissions for %s, fetching from LMS", activity.describe())
            submissions = await client.get_assignment_submissions(activity.activity_id)
        return enrich_assignment(submissions or [], activity.due_date)

    async def _enrich_forum(self, activity: ActivityRecord) -> ForumPayload:
        cached = activity.forum_data if isinstance(activity.forum_data, dict) else {}
        instructor_ids = {i for i in (_to_int(x) for x in cached.get("instructor_ids", [])) if i is not None}
        client = self.clients.get(activity.classroom_id)
        if client is None:
            raise LMSError(f"No LMS client configured for classroom {activity.classroom_id}")

        raw_discussions = cached.get("discussions") or []
        if not raw_discussions:
            logger.info("No cached discussions for %s, fetching from LMS", activity.describe())
            raw_discussions = await client.get_forum_discussions(activity.activity_id)

        discussions = []
        for raw_discussion in raw_discussions:
            posts = await client.get_discussion_posts(_discussion_id(raw_discussion))
            discussions.append(build_discussion(raw_discussion, posts, instructor_ids))

        return ForumPayload(discussions=discussions, stats=forum_stats(discussions))


def build_analysis_payload(activity: ActivityRecord, enriched: EnrichedPayload) -> dict:
    """Assemble the JSON-shaped payload handed to the optimizer and prompt."""
    return {
        "activity_info": {
            "id": activity.activity_id,
            "name": activity.name,
            "type": activity.type,
            "description": html_to_text(activity.description),
            "due_date": activity.due_date.isoformat() if activity.due_date else None,
            "course": {"id": activity.course_id, "name": activity.course_name},
            "classroom": {"id": activity.classroom_id},
        },
        "raw_data": activity.raw_data,
        "details": enriched.model_dump(mode="json"),
        "data_timestamp": activity.last_data_sync.isoformat() if activity.last_data_sync else None,
    }
