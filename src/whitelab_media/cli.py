import argparse
import asyncio
import logging
import sys

from . import config as config_lib
from .runtime import build_runtime


def _config_overrides(args) -> dict:
    overrides = {}
    if getattr(args, "db", None):
        overrides["storage.db_path"] = args.db
    for item in getattr(args, "set", None) or []:
        if "=" not in item:
            raise SystemExit(f"--set expects key=value, got {item!r}")
        key, value = item.split("=", 1)
        overrides[key.strip()] = value.strip()
    return overrides


def _print_jobs(jobs) -> None:
    print(f"{'ID':>5}  {'TYPE':<12} {'STATUS':<11} {'TRIES':>5}  {'CREATED':<29} ERROR")
    for job in jobs:
        error = (job.last_error or "").replace("\n", " ")[:60]
        print(
            f"{job.id:>5}  {job.job_type.value:<12} {job.status.value:<11} "
            f"{job.attempts:>5}  {job.created_at.isoformat():<29} {error}"
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="whitelab-media", description="White Lab media ingestion queue"
    )
    parser.add_argument("--db", type=str, help="Override storage.db_path")
    parser.add_argument(
        "--set",
        action="append",
        metavar="KEY=VALUE",
        help="Config override with a dotted key, e.g. media.webp_quality=90",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # ENQUEUE
    url_parser = subparsers.add_parser("enqueue-url", help="Queue an import from a URL")
    url_parser.add_argument("url", type=str, help="Image or video URL")
    url_parser.add_argument("--title", type=str, default="", help="Display title")

    upload_parser = subparsers.add_parser("enqueue-upload", help="Queue a staged upload")
    upload_parser.add_argument("path", type=str, help="Path of the staged file")
    upload_parser.add_argument("--mimetype", required=True, help="MIME type, e.g. image/jpeg")
    upload_parser.add_argument("--original-name", type=str, help="Original filename")
    upload_parser.add_argument("--title", type=str, default="", help="Display title")

    # INSPECT
    jobs_parser = subparsers.add_parser("jobs", help="List recent jobs")
    jobs_parser.add_argument("--limit", type=int, default=20, help="Number of jobs (1-200)")

    subparsers.add_parser("status", help="Show job counts by status")

    recycle_parser = subparsers.add_parser("recycle", help="Re-offer stalled processing jobs")
    recycle_parser.add_argument("--minutes", type=int, default=20, help="Stall threshold")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run the media worker")
    worker_parser.add_argument(
        "--once", action="store_true", help="Process pending jobs, then exit"
    )
    worker_parser.add_argument("--max-jobs", type=int, help="Stop after this many jobs (--once)")

    return parser


async def _run_worker(runtime, once: bool, max_jobs=None) -> int:
    if once:
        return await runtime.worker.drain(max_jobs=max_jobs)
    await runtime.worker.run_forever()
    return 0


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg = config_lib.resolve_config(_config_overrides(args))
    runtime = build_runtime(cfg)

    try:
        if args.command == "enqueue-url":
            job_id = runtime.queue.enqueue("import_url", {"url": args.url, "title": args.title})
            print(f"Queued import job #{job_id}")

        elif args.command == "enqueue-upload":
            payload = {
                "path": args.path,
                "originalname": args.original_name or args.path.rsplit("/", 1)[-1],
                "mimetype": args.mimetype,
                "title": args.title,
            }
            job_id = runtime.queue.enqueue("upload_file", payload)
            print(f"Queued upload job #{job_id}")

        elif args.command == "jobs":
            _print_jobs(runtime.queue.list(args.limit))

        elif args.command == "status":
            counts = runtime.queue.count_by_status()
            print("\n" + "=" * 40)
            print("MEDIA QUEUE STATUS")
            print("=" * 40)
            print(f"Pending:      {counts['pending']}")
            print(f"Processing:   {counts['processing']}")
            print(f"Done:         {counts['done']}")
            print(f"Failed:       {counts['failed']}")
            print(f"Total:        {sum(counts.values())}")
            print("=" * 40)

        elif args.command == "recycle":
            recycled = runtime.queue.recycle_stalled(args.minutes)
            print(f"Recycled {recycled} stalled job(s)")

        elif args.command == "worker":
            try:
                processed = asyncio.run(_run_worker(runtime, args.once, args.max_jobs))
            except KeyboardInterrupt:
                print("Worker stopped")
                sys.exit(0)
            if args.once:
                print(f"Processed {processed} job(s)")

    finally:
        runtime.close()


if __name__ == "__main__":
    main()
