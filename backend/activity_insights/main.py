"""Activity insights — command-line entry point.

Builds the engine, LMS clients and model client, hands them to the batch
service, prints the JSON result and releases everything on exit.

    python -m activity_insights.main run-pending
    python -m activity_insights.main run-classroom 101 --course 42
    python -m activity_insights.main run-filtered --type forum --force --by-group
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from activity_insights.config import Settings, get_settings
from activity_insights.database import create_db_engine, create_session_factory, init_db
from activity_insights.schemas.analysis import ActivityListFilters, AnalysisFilters
from activity_insights.services.activity_store import ActivityStore
from activity_insights.services.ai_client import AnalysisModelClient
from activity_insights.services.analysis_store import AnalysisStore
from activity_insights.services.batch_analysis import BatchAnalysisService
from activity_insights.services.lms_client import build_lms_clients

logger = logging.getLogger("activity_insights")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="activity-insights", description="Batch analysis of LMS course activities.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run-pending", help="Analyze every activity flagged for analysis")

    classroom = sub.add_parser("run-classroom", help="Analyze the pending activities of one classroom")
    classroom.add_argument("classroom_id")
    classroom.add_argument("--course", type=int, dest="course_id")

    filtered = sub.add_parser("run-filtered", help="Analyze activities matching the given filters")
    filtered.add_argument("--classroom", dest="classroom_id")
    filtered.add_argument("--course", type=int, dest="course_id")
    filtered.add_argument("--type", dest="activity_type")
    filtered.add_argument("--activity", type=int, action="append", dest="activity_ids")
    filtered.add_argument("--force", action="store_true", dest="force_reanalysis",
                          help="Include activities that are already analyzed")
    filtered.add_argument("--by-group", action="store_true", dest="partition_by_group",
                          help="Also analyze each forum discussion group separately")

    listing = sub.add_parser("list", help="List synced activities")
    listing.add_argument("--classroom", dest="classroom_id")
    listing.add_argument("--course", type=int, dest="course_id")
    listing.add_argument("--type", dest="activity_type")
    listing.add_argument("--active-only", action="store_true")

    sub.add_parser("stats", help="Analysis and activity statistics")

    mark = sub.add_parser("mark", help="Flag analyzed, still-open activities for a fresh analysis")
    mark.add_argument("--classroom", dest="classroom_id")

    sub.add_parser("health", help="Check the model provider and LMS connections")
    return parser


async def _health(service: BatchAnalysisService, model_client: AnalysisModelClient, lms_clients: dict) -> dict:
    lms = {}
    for classroom_id, client in lms_clients.items():
        lms[classroom_id] = "ok" if await client.test_connection() else "error"
    return {"model": await model_client.health_check(), "lms": lms}


async def run_command(args: argparse.Namespace, service: BatchAnalysisService,
                      model_client: AnalysisModelClient, lms_clients: dict) -> dict:
    if args.command == "run-pending":
        result = await service.run_pending_analyses()
    elif args.command == "run-classroom":
        result = await service.run_for_classroom(args.classroom_id, args.course_id)
    elif args.command == "run-filtered":
        result = await service.run_for_filters(AnalysisFilters(
            classroom_id=args.classroom_id,
            course_id=args.course_id,
            activity_type=args.activity_type,
            activity_ids=args.activity_ids,
            force_reanalysis=args.force_reanalysis,
            partition_by_group=args.partition_by_group,
        ))
    elif args.command == "list":
        result = service.list_available_activities(ActivityListFilters(
            classroom_id=args.classroom_id,
            course_id=args.course_id,
            activity_type=args.activity_type,
            active_only=args.active_only,
        ))
    elif args.command == "stats":
        return {
            "analyses": service.get_analysis_stats().model_dump(),
            "activities": service.get_activity_stats(),
        }
    elif args.command == "mark":
        result = service.mark_valid_activities(args.classroom_id)
    else:
        return await _health(service, model_client, lms_clients)
    return result.model_dump()


def main(argv: Optional[list[str]] = None, settings: Optional[Settings] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = create_db_engine(settings.DATABASE_URL)
    lms_clients = build_lms_clients(settings)
    try:
        init_db(engine)
        session_factory = create_session_factory(engine)
        model_client = AnalysisModelClient(settings)
        logger.info("Model provider: %s (%s)", model_client.provider_name, model_client.model_name)
        service = BatchAnalysisService(
            activity_store=ActivityStore(session_factory),
            analysis_store=AnalysisStore(session_factory),
            lms_clients=lms_clients,
            model_client=model_client,
            settings=settings,
        )
        output = asyncio.run(run_command(args, service, model_client, lms_clients))
    finally:
        for client in lms_clients.values():
            client.close()
        engine.dispose()

    print(json.dumps(output, indent=2, ensure_ascii=False, default=str))
    return 0 if output.get("success", True) else 1


if __name__ == "__main__":
    sys.exit(main())
