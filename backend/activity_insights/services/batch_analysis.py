"""
Batch analysis orchestrator.

Pipeline per activity: enrich → optimize → build prompt → model → parse → upsert.

Candidates are read page by page and processed in small concurrent batches,
with a pause between batches and a longer one between pages to stay under
the model API's rate limits. A failed activity is only recorded in the run's
error list; it keeps ``needs_analysis`` and is retried by the next run.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Mapping, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError

from activity_insights.analysis.enrichment import (
    ContentClient,
    ContentEnricher,
    build_analysis_payload,
    partition_forum_by_group,
)
from activity_insights.analysis.optimizer import PayloadOptimizer
from activity_insights.analysis.parser import parse_analysis
from activity_insights.analysis.prompt_builder import PromptBuilder
from activity_insights.config import Settings
from activity_insights.schemas.activity import ActivityRecord
from activity_insights.schemas.analysis import (
    ActivityListFilters,
    ActivityListResponse,
    AnalysisFilters,
    AnalysisStats,
    BatchAnalysisResult,
    MarkingResult,
    ParsedAnalysis,
)
from activity_insights.schemas.payload import ForumPayload
from activity_insights.services.activity_store import ActivityStore
from activity_insights.services.analysis_store import AnalysisStore

logger = logging.getLogger(__name__)


class ModelClient(Protocol):
    provider_name: str
    model_name: str

    async def generate(self, prompt: str, max_tokens: int) -> str: ...


class BatchAnalysisService:
    """Drives the analysis pipeline over every eligible activity."""

    def __init__(
        self,
        activity_store: ActivityStore,
        analysis_store: AnalysisStore,
        lms_clients: Mapping[str, ContentClient],
        model_client: ModelClient,
        settings: Settings,
    ):
        self.activities = activity_store
        self.analyses = analysis_store
        self.model = model_client
        self.enricher = ContentEnricher(lms_clients)
        self.optimizer = PayloadOptimizer(
            budget_bytes=settings.PAYLOAD_BUDGET_BYTES,
            max_posts_per_discussion=settings.MAX_POSTS_PER_DISCUSSION,
            max_post_chars=settings.MAX_POST_CHARS,
            max_submissions=settings.MAX_SUBMISSIONS,
        )
        self.prompts = PromptBuilder(description_max_chars=settings.DESCRIPTION_MAX_CHARS)
        self.page_size = settings.ANALYSIS_PAGE_SIZE
        self.batch_size = settings.ANALYSIS_BATCH_SIZE
        self.batch_pause = settings.BATCH_PAUSE_SECONDS
        self.page_pause = settings.PAGE_PAUSE_SECONDS
        self.max_tokens = settings.ANALYSIS_MAX_TOKENS

    # ─────────────────────────────────────────────────────────────────────────
    # Entry points
    # ─────────────────────────────────────────────────────────────────────────

    async def run_pending_analyses(self) -> BatchAnalysisResult:
        return await self.run_for_filters(AnalysisFilters())

    async def run_for_classroom(self, classroom_id: str, course_id: Optional[int] = None) -> BatchAnalysisResult:
        return await self.run_for_filters(AnalysisFilters(classroom_id=classroom_id, course_id=course_id))

    async def run_for_filters(self, filters: AnalysisFilters) -> BatchAnalysisResult:
        start = time.monotonic()
        result = BatchAnalysisResult()
        logger.info("Starting batch analysis with filters %s", filters.model_dump(exclude_defaults=True))

        # Successful activities leave the pending filter, failed ones stay in
        # it, so the next page starts after the rows that still match.
        offset = 0
        page_number = 0
        while True:
            try:
                page = await asyncio.to_thread(self.activities.fetch_page, filters, offset, self.page_size)
            except SQLAlchemyError as e:
                logger.error("Run aborted, could not read activities: %s", e)
                result.errors.append(f"Run aborted while reading activities: {e}")
                result.success = False
                break

            if not page:
                break
            page_number += 1
            logger.info("Page %d: %d activities", page_number, len(page))

            failed = await self._process_page(page, filters, result)
            offset += len(page) if filters.force_reanalysis else failed

            if len(page) < self.page_size:
                break
            await asyncio.sleep(self.page_pause)

        result.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "Batch analysis finished in %dms: %d/%d analyses generated, %d errors",
            result.duration_ms, result.generated_analyses, result.processed_activities, len(result.errors),
        )
        return result

    def list_available_activities(self, filters: Optional[ActivityListFilters] = None) -> ActivityListResponse:
        filters = filters or ActivityListFilters()
        try:
            return self.activities.list_activities(filters)
        except SQLAlchemyError as e:
            logger.error("Error listing activities: %s", e)
            return ActivityListResponse(success=False, error=str(e), filters=filters)

    def get_analysis_stats(self) -> AnalysisStats:
        try:
            return self.analyses.stats()
        except SQLAlchemyError as e:
            logger.error("Error reading analysis stats: %s", e)
            return AnalysisStats(success=False, error=str(e))

    def get_activity_stats(self) -> dict:
        try:
            return {"success": True, "classrooms": self.activities.activity_stats()}
        except SQLAlchemyError as e:
            logger.error("Error reading activity stats: %s", e)
            return {"success": False, "error": str(e)}

    def mark_valid_activities(self, classroom_id: Optional[str] = None) -> MarkingResult:
        return self.activities.mark_valid_activities(classroom_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Batching
    # ─────────────────────────────────────────────────────────────────────────

    async def _process_page(
        self,
        page: list[ActivityRecord],
        filters: AnalysisFilters,
        result: BatchAnalysisResult,
    ) -> int:
        """Run the page batch by batch; returns the number of failed activities."""
        failed = 0
        total_batches = (len(page) + self.batch_size - 1) // self.batch_size
        for i in range(0, len(page), self.batch_size):
            batch = page[i:i + self.batch_size]
            logger.info("Processing batch %d/%d (%d activities)", i // self.batch_size + 1, total_batches, len(batch))

            outcomes = await asyncio.gather(
                *(self._analyze_activity(activity, filters.partition_by_group) for activity in batch),
                return_exceptions=True,
            )
            for activity, outcome in zip(batch, outcomes):
                result.processed_activities += 1
                if isinstance(outcome, BaseException):
                    failed += 1
                    message = f"Error analyzing {activity.describe()}: {outcome}"
                    logger.error(message)
                    result.errors.append(message)
                else:
                    result.generated_analyses += 1

            if i + self.batch_size < len(page):
                await asyncio.sleep(self.batch_pause)
        return failed

    # ─────────────────────────────────────────────────────────────────────────
    # Single activity
    # ─────────────────────────────────────────────────────────────────────────

    async def _analyze_activity(self, activity: ActivityRecord, partition_by_group: bool = False) -> None:
        logger.info("Analyzing %s %r", activity.describe(), activity.name)

        enriched = await self.enricher.enrich(activity)

        # Group rows first: the activity-level save clears the retry flag
        if partition_by_group and isinstance(enriched, ForumPayload):
            for group_id, group_payload in partition_forum_by_group(enriched).items():
                payload = self.optimizer.optimize(build_analysis_payload(activity, group_payload), activity.type)
                payload["group_id"] = group_id
                parsed, meta = await self._run_model(activity, payload)
                await asyncio.to_thread(self.analyses.save, activity, parsed, payload, meta, group_id)
                logger.info("Saved group %d analysis for %s", group_id, activity.describe())

        payload = self.optimizer.optimize(build_analysis_payload(activity, enriched), activity.type)
        parsed, meta = await self._run_model(activity, payload)
        await asyncio.to_thread(self.analyses.save, activity, parsed, payload, meta)
        logger.info("Analysis saved for %s", activity.describe())

    async def _run_model(self, activity: ActivityRecord, payload: dict) -> tuple[ParsedAnalysis, dict]:
        prompt = self.prompts.build(activity, payload)
        markdown = await self.model.generate(prompt, self.max_tokens)
        parsed = parse_analysis(markdown)
        meta = {
            "provider": self.model.provider_name,
            "model": self.model.model_name,
            "processed_at": datetime.now(timezone.utc).isoformat(),
            "prompt_chars": len(prompt),
            "response_chars": len(markdown),
            "sections": len(parsed.sections),
        }
        return parsed, meta
