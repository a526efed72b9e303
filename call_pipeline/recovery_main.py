"""Operator CLI for inspecting and repairing the call job queue."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import timedelta
from uuid import UUID

from call_pipeline.config import ENV_SETTINGS, PipelineConfig
from call_pipeline.ddl import JOBS_TABLE_DDL
from call_pipeline.errors import CallPipelineError
from call_pipeline.lifecycle import create_db_pool
from call_pipeline.service import JobService
from call_pipeline.worker_main import setup_logging


async def run_command(args: argparse.Namespace, job_service: JobService, db_pool) -> object:
    """Run one subcommand and return its JSON-serializable result."""
    if args.command == "init-db":
        async with db_pool.acquire() as conn:
            await conn.execute(JOBS_TABLE_DDL)
        return {"initialized": True}

    if args.command == "stats":
        return await job_service.get_queue_stats()

    if args.command == "list-stalled":
        return [job.to_dict() for job in await job_service.find_stalled()]

    if args.command == "recover":
        return {"recovered": await job_service.recover_stalled()}

    if args.command == "resubmit":
        job = await job_service.resubmit(UUID(args.job_id))
        return job.to_dict()

    if args.command == "requeue":
        handle = await job_service.requeue_failed(UUID(args.job_id))
        return handle.to_dict()

    if args.command == "retry-failed":
        return {"retried": await job_service.retry_failed_jobs(limit=args.limit)}

    if args.command == "clean-completed":
        older_than = timedelta(seconds=args.older_than) if args.older_than is not None else None
        return {"removed": await job_service.clean_completed(older_than=older_than)}

    if args.command == "pause":
        await job_service.pause_queue()
        return {"is_paused": True}

    if args.command == "resume":
        await job_service.resume_queue()
        return {"is_paused": False}

    raise ValueError(f"Unknown command {args.command}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Call Pipeline queue administration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="environment:\n"
        + "\n".join(f"  {name:<44} {effect}" for name, effect in ENV_SETTINGS.items()),
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the call_jobs table and indexes")
    subparsers.add_parser("stats", help="Job counts per status")
    subparsers.add_parser("list-stalled", help="List stalled jobs")
    subparsers.add_parser("recover", help="Run one stalled job recovery pass")

    resubmit = subparsers.add_parser("resubmit", help="Resubmit a stalled job")
    resubmit.add_argument("job_id")

    requeue = subparsers.add_parser("requeue", help="Create a new job for a failed one")
    requeue.add_argument("job_id")

    retry = subparsers.add_parser("retry-failed", help="Requeue failed jobs")
    retry.add_argument("--limit", type=int, default=100)

    clean = subparsers.add_parser("clean-completed", help="Delete old completed jobs")
    clean.add_argument(
        "--older-than",
        type=int,
        default=None,
        help="Age in seconds (default: CALL_PIPELINE_COMPLETED_RETENTION_SECONDS)",
    )

    subparsers.add_parser("pause", help="Stop workers from claiming new jobs")
    subparsers.add_parser("resume", help="Let workers claim jobs again")
    return parser


def main():
    """Main entrypoint for the operator CLI."""
    setup_logging()
    logger = logging.getLogger(__name__)

    args = build_parser().parse_args()

    try:
        config = PipelineConfig.from_env()
    except ValueError as e:
        logger.error(f"Failed to load config: {e}")
        sys.exit(1)

    async def run():
        """Async main function."""
        db_pool = None
        try:
            db_pool = await create_db_pool(config, logger)
            job_service = JobService(config, db_pool, logger)
            result = await run_command(args, job_service, db_pool)
            print(json.dumps(result, indent=2, default=str))
        except (CallPipelineError, ValueError) as e:
            logger.error(f"{args.command} failed: {e}")
            sys.exit(1)
        finally:
            if db_pool is not None:
                await db_pool.close()

    asyncio.run(run())


if __name__ == "__main__":
    main()
