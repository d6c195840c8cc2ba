"""Enriched payloads, a tagged union over activity kind.

Assignment and forum payloads are produced by the enrichment step; anything
that could not be enriched travels as a ``RawPayload`` carrying the source
data untouched.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


# ── Assignments ───────────────────────────────────────────────────────────────

class Attachment(BaseModel):
    filename: str
    filesize: int = 0
    mimetype: Optional[str] = None


class SubmissionComment(BaseModel):
    author_id: Optional[int] = None
    content: str
    created_at: Optional[str] = None


class AssignmentSubmission(BaseModel):
    submission_id: Optional[int] = None
    user_id: Optional[int] = None
    status: str = "new"
    submitted_at: Optional[str] = None
    is_late: bool = False
    grade: Optional[float] = None
    feedback: Optional[str] = None
    online_text: Optional[str] = None
    comments: list[SubmissionComment] = []
    attachments: list[Attachment] = []


class AssignmentStats(BaseModel):
    total_submissions: int = 0
    submitted: int = 0
    graded: int = 0
    late: int = 0
    with_comments: int = 0
    with_attachments: int = 0
    average_grade: Optional[float] = None


class AssignmentPayload(BaseModel):
    kind: Literal["assignment"] = "assignment"
    submissions: list[AssignmentSubmission] = []
    stats: AssignmentStats = AssignmentStats()


# ── Forums ────────────────────────────────────────────────────────────────────

class ForumPost(BaseModel):
    post_id: int
    parent_id: int = 0  # 0 = discussion root
    author_id: Optional[int] = None
    author_name: Optional[str] = None
    is_instructor: bool = False
    subject: Optional[str] = None
    message: str = ""
    word_count: int = 0
    created_at: Optional[str] = None
    attachments: list[Attachment] = []


class DiscussionStats(BaseModel):
    total_posts: int = 0
    unique_participants: int = 0
    average_post_length: float = 0.0
    posts_with_attachments: int = 0
    thread_depth: int = 0
    instructor_posts: int = 0
    student_posts: int = 0


class ForumDiscussion(BaseModel):
    discussion_id: int
    name: str = ""
    group_id: int = -1  # <= 0: visible to all participants
    posts: list[ForumPost] = []
    stats: DiscussionStats = DiscussionStats()


class ForumStats(BaseModel):
    total_discussions: int = 0
    total_posts: int = 0
    unique_participants: int = 0
    average_posts_per_discussion: float = 0.0
    discussions_with_interaction: int = 0
    max_thread_depth: int = 0


class ForumPayload(BaseModel):
    kind: Literal["forum"] = "forum"
    discussions: list[ForumDiscussion] = []
    stats: ForumStats = ForumStats()


# ── Fallback ──────────────────────────────────────────────────────────────────

class RawPayload(BaseModel):
    kind: Literal["raw"] = "raw"
    data: Any = None
    reason: Optional[str] = None  # why enrichment did not apply


EnrichedPayload = Annotated[
    Union[AssignmentPayload, ForumPayload, RawPayload],
    Field(discriminator="kind"),
]
