import argparse
import logging
import signal
import sys
import threading

from .config import resolve_config
from .extractor import FrameExtractor
from .queue import SQLiteQueue, Topic
from .service import JobService

TOPICS = [topic.value for topic in Topic]


def _cli_overrides(args) -> dict:
    return {k: v for k, v in vars(args).items() if v is not None}


def run_worker(args) -> int:
    """Run worker pools until SIGINT/SIGTERM."""
    config = resolve_config(_cli_overrides(args))
    service = JobService.from_config(config)
    if not service.available:
        print(f"❌ Job service unavailable: {service.unavailable_reason}")
        return 1

    topics = [Topic(t) for t in args.topic] if args.topic else list(Topic)
    stop_event = threading.Event()

    def handle_signal(signum, frame):
        print(f"\n{signal.Signals(signum).name} received, shutting down workers...")
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    pools = service.start_workers(topics)
    print("Background workers started")
    for pool in pools:
        print(f"- {pool.topic.value}: {pool.concurrency} worker(s)")

    while not stop_event.wait(1.0):
        pass

    for pool in pools:
        pool.stop(wait=True)
    print("Workers stopped")
    return 0


def print_status(queue: SQLiteQueue, topics) -> None:
    for topic in topics:
        counts = queue.counts(topic)
        print("\n" + "=" * 60)
        print(f"QUEUE STATUS: {topic.value}")
        print("=" * 60)
        print(f"Waiting:              {counts.waiting}")
        print(f"Active:               {counts.active}")
        print(f"Completed:            {counts.completed}")
        print(f"Failed:               {counts.failed}")
        print(f"Total:                {counts.total}")
        recent = queue.recent(topic, 10)
        if recent:
            print("-" * 60)
            for job in recent:
                reason = (job.failure_reason or "").splitlines()[0:1]
                suffix = f"  {reason[0][:60]}" if reason else ""
                print(f"{job.job_id}  {job.status.value:<9}  attempts={job.attempt_count}{suffix}")
        print("=" * 60)


def main():
    parser = argparse.ArgumentParser(
        prog="vidcore", description="Background job core for video uploads"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run background workers")
    worker_parser.add_argument(
        "--topic", "-t", action="append", choices=TOPICS, help="Topic to serve (repeatable, default all)"
    )
    worker_parser.add_argument(
        "--email-concurrency", type=int, help="Parallel email workers"
    )
    worker_parser.add_argument("--db", type=str, help="Queue database path")
    worker_parser.add_argument("--records-db", type=str, help="Record database path")
    worker_parser.add_argument("--ffmpeg", type=str, help="ffmpeg executable")
    worker_parser.add_argument("--bucket", type=str, help="S3 bucket")

    # CHECK FFMPEG
    check_parser = subparsers.add_parser("check", help="Verify dependencies")
    check_parser.add_argument("--ffmpeg", type=str, help="ffmpeg executable")

    # QUEUE subcommands (status, process, retry, clear)
    queue_parser = subparsers.add_parser("queue", help="Manage job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")

    # queue status
    status_parser = queue_subparsers.add_parser("status", help="Show queue status")
    status_parser.add_argument("--db", type=str, help="Queue database path")
    status_parser.add_argument("--topic", "-t", choices=TOPICS, help="Only this topic")

    # queue process (run waiting jobs in the foreground)
    queue_process_parser = queue_subparsers.add_parser("process", help="Process existing queue")
    queue_process_parser.add_argument("--db", type=str, help="Queue database path")
    queue_process_parser.add_argument("--records-db", type=str, help="Record database path")
    queue_process_parser.add_argument("--ffmpeg", type=str, help="ffmpeg executable")
    queue_process_parser.add_argument("--bucket", type=str, help="S3 bucket")
    queue_process_parser.add_argument("--topic", "-t", required=True, choices=TOPICS, help="Topic")
    queue_process_parser.add_argument(
        "--max-jobs", type=int, help="Maximum number of jobs to process"
    )

    # queue retry
    retry_parser = queue_subparsers.add_parser("retry", help="Retry failed jobs")
    retry_parser.add_argument("--db", type=str, help="Queue database path")
    retry_parser.add_argument("--topic", "-t", required=True, choices=TOPICS, help="Topic")

    # queue clear
    clear_parser = queue_subparsers.add_parser("clear", help="Clear queue")
    clear_parser.add_argument("--db", type=str, help="Queue database path")
    clear_parser.add_argument("--topic", "-t", choices=TOPICS, help="Only this topic")

    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "worker":
        sys.exit(run_worker(args))

    elif args.command == "check":
        config = resolve_config(_cli_overrides(args))
        print("Checking dependencies...")
        if FrameExtractor.from_config(config.extractor).check_ffmpeg():
            print("✅ ffmpeg found.")
        else:
            print("❌ ffmpeg NOT found.")
            sys.exit(1)

    elif args.command == "queue":
        config = resolve_config(_cli_overrides(args))

        if args.queue_command == "status":
            queue = SQLiteQueue.from_config(config.queue)
            topics = [Topic(args.topic)] if args.topic else list(Topic)
            print_status(queue, topics)

        elif args.queue_command == "process":
            service = JobService.from_config(config)
            if not service.available:
                print(f"❌ Job service unavailable: {service.unavailable_reason}")
                sys.exit(1)
            stats = service.worker_pool(Topic(args.topic)).drain(
                max_jobs=args.max_jobs, show_progress=True
            )
            print("\n" + "=" * 60)
            print("PROCESSING SUMMARY")
            print("=" * 60)
            print(f"Completed:            {stats['completed']}")
            print(f"Failed:               {stats['failed']}")
            print(f"Requeued:             {stats['requeued']}")
            print(f"Total duration:       {stats['total_duration']:.2f}s")
            print("=" * 60)

        elif args.queue_command == "retry":
            queue = SQLiteQueue.from_config(config.queue)
            count = queue.retry_failed(Topic(args.topic))
            print(f"Reset {count} failed job(s) to waiting")

        elif args.queue_command == "clear":
            queue = SQLiteQueue.from_config(config.queue)
            count = queue.clear(Topic(args.topic) if args.topic else None)
            print(f"Deleted {count} job(s)")

        else:
            queue_parser.print_help()

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
