"""Keeps the analysis payload under the model's input size budget.

Below budget the payload is returned as-is. Above it, every tier applies:
the duplicated raw source data is replaced by a placeholder, forum threads
are capped and long post bodies truncated, assignment submissions are
capped. The result is best-effort; it may still exceed the budget.
"""

import copy
import json
import logging
from typing import Any

from activity_insights.schemas.activity import ActivityKind, activity_kind

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "... [truncated]"
RAW_DATA_NOTE = "Raw source data omitted to fit the payload budget"


def payload_size(payload: Any) -> int:
    """Serialized size in bytes (UTF-8 JSON)."""
    return len(json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8"))


class PayloadOptimizer:
    def __init__(
        self,
        budget_bytes: int = 500_000,
        max_posts_per_discussion: int = 50,
        max_post_chars: int = 5000,
        max_submissions: int = 10,
    ):
        self.budget_bytes = budget_bytes
        self.max_posts_per_discussion = max_posts_per_discussion
        self.max_post_chars = max_post_chars
        self.max_submissions = max_submissions

    def optimize(self, payload: dict, activity_type: str) -> dict:
        original_size = payload_size(payload)
        if original_size <= self.budget_bytes:
            return payload

        optimized = copy.deepcopy(payload)
        applied = []

        if optimized.get("raw_data") is not None:
            optimized["raw_data"] = {
                "note": RAW_DATA_NOTE,
                "original_size": payload_size(payload.get("raw_data")),
            }
            applied.append("raw_data_omitted")

        details = optimized.get("details")
        kind = activity_kind(activity_type)
        if isinstance(details, dict):
            if kind == ActivityKind.FORUM:
                applied.extend(self._trim_forum(details))
            elif kind == ActivityKind.ASSIGNMENT:
                applied.extend(self._trim_assignment(details))

        optimized_size = payload_size(optimized)
        optimized["optimization"] = {
            "original_size": original_size,
            "optimized_size": optimized_size,
            "applied": applied,
        }

        if optimized_size > self.budget_bytes:
            logger.warning(
                "Payload still over budget after optimization: %d > %d bytes",
                optimized_size, self.budget_bytes,
            )
        else:
            logger.info("Payload optimized: %d -> %d bytes (%s)", original_size, optimized_size, ", ".join(applied))
        return optimized

    def _trim_forum(self, details: dict) -> list[str]:
        applied = []
        capped = truncated = 0
        for discussion in details.get("discussions") or []:
            posts = discussion.get("posts") or []
            if len(posts) > self.max_posts_per_discussion:
                discussion["posts"] = posts[: self.max_posts_per_discussion]
                capped += 1
            for post in discussion.get("posts") or []:
                message = post.get("message") or ""
                if len(message) > self.max_post_chars:
                    post["message"] = message[: self.max_post_chars] + TRUNCATION_MARKER
                    truncated += 1
        if capped:
            applied.append(f"posts_capped:{capped}")
        if truncated:
            applied.append(f"posts_truncated:{truncated}")
        return applied

    def _trim_assignment(self, details: dict) -> list[str]:
        submissions = details.get("submissions") or []
        if len(submissions) <= self.max_submissions:
            return []
        details["submissions"] = submissions[: self.max_submissions]
        return [f"submissions_capped:{len(submissions)}->{self.max_submissions}"]
