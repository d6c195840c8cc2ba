"""Prompt = activity header + optimized payload + type-specific instructions."""

import json
import re
import unicodedata

from activity_insights.analysis.enrichment import html_to_text
from activity_insights.analysis.prompts import (
    ACTIVITY_TYPE_LABELS,
    ASSIGNMENT_INSTRUCTIONS,
    FORUM_INSTRUCTIONS,
    GENERIC_INSTRUCTIONS,
)
from activity_insights.schemas.activity import ActivityKind, ActivityRecord

# C0/C1 controls except tab, newline and carriage return
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]")
_SURROGATE_RE = re.compile(r"[\ud800-\udfff]")
_INLINE_WS_RE = re.compile(r"[ \t\u00a0]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")


def sanitize_text(text: str) -> str:
    """Make text safe for the model transport.

    Controls are dropped, lone surrogates become U+FFFD, runs of spaces
    collapse to one and runs of blank lines to one, then NFC normalization.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_RE.sub("", text)
    text = _SURROGATE_RE.sub("\ufffd", text)
    text = _INLINE_WS_RE.sub(" ", text)
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return unicodedata.normalize("NFC", text).strip()


def truncate_text(text: str, max_length: int) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."


def activity_type_label(activity_type: str) -> str:
    return ACTIVITY_TYPE_LABELS.get(activity_type, activity_type)


def instructions_for(kind: ActivityKind) -> str:
    if kind == ActivityKind.FORUM:
        return FORUM_INSTRUCTIONS
    if kind == ActivityKind.ASSIGNMENT:
        return ASSIGNMENT_INSTRUCTIONS
    return GENERIC_INSTRUCTIONS


class PromptBuilder:
    def __init__(self, description_max_chars: int = 1500):
        self.description_max_chars = description_max_chars

    def header(self, activity: ActivityRecord) -> str:
        description = html_to_text(activity.description)
        course = f"Course {activity.course_id}"
        if activity.course_name:
            course += f" - {activity.course_name}"
        return (
            "Activity information:\n"
            f"- Name: {activity.name}\n"
            f"- Type: {activity_type_label(activity.type)}\n"
            f"- Course: {course} (classroom {activity.classroom_id})\n"
            f"- Due date: {activity.due_date.strftime('%Y-%m-%d') if activity.due_date else 'No due date'}\n"
            f"- Description: {truncate_text(description, self.description_max_chars) or 'No description available'}\n"
        )

    def build(self, activity: ActivityRecord, payload: dict) -> str:
        body = json.dumps(payload, ensure_ascii=False, indent=2, default=str)
        prompt = (
            f"{self.header(activity)}\n"
            "Activity data for the analysis:\n"
            f"{body}\n\n"
            "---\n\n"
            f"{instructions_for(activity.kind)}"
        )
        return sanitize_text(prompt)
