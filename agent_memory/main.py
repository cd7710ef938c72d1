"""
Command-line entry point for the memory engine.

    agent-memory status
    agent-memory test "how did we fix the flaky upload test?"
    agent-memory run-worker
    agent-memory clear exchange_summary
    agent-memory reset
    agent-memory failed
    agent-memory retry-failed 12
    agent-memory purge-failed --days 30
"""

import argparse
import json
import signal
import sys
import threading

from .config import config
from .errors import AgentMemoryError
from .memory.base import EmbeddingKind
from .memory_manager import MemoryManager, create_memory_manager


def cmd_status(memory: MemoryManager, args: argparse.Namespace) -> int:
    print(json.dumps(memory.status(), indent=2, default=str))
    return 0


def cmd_test(memory: MemoryManager, args: argparse.Namespace) -> int:
    result = memory.test_retrieval(args.query)
    metadata = result["metadata"]
    print(f"Duration: {metadata['duration_ms']}ms")
    print(f"Conversations: {metadata['conversation_count']}, Exchanges: {metadata['exchange_count']}")
    print(f"Tokens (est.): {metadata['total_tokens_estimate']}")
    if metadata["error"]:
        print(f"Error: {metadata['error']}")
    for stage, error in metadata["stage_errors"].items():
        print(f"Stage {stage} failed: {error}")
    print("-" * 60)
    print(result["context"] or "(no relevant context found)")
    return 0 if not metadata["error"] else 1


def cmd_run_worker(memory: MemoryManager, args: argparse.Namespace) -> int:
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    overrides = {
        key: value
        for key, value in (("batch_size", args.batch_size), ("rate_limit_ms", args.rate_limit_ms))
        if value is not None
    }
    if overrides:
        memory.update_worker_settings(**overrides)

    memory.start()
    try:
        while not stop.wait(1.0):
            status = memory.worker.snapshot()
            # Items that failed this session stay in the backlog
            if args.once and status.total and memory.backlog.count() <= status.failed:
                break
    except KeyboardInterrupt:
        print("\nStopping worker...")
    finally:
        memory.close()

    status = memory.worker.snapshot()
    print(
        f"Embedded {status.completed}, failed {status.failed}, "
        f"tokens {status.tokens}, spend ${status.spend:.6f}"
    )
    return 0


def cmd_clear(memory: MemoryManager, args: argparse.Namespace) -> int:
    removed = memory.clear(EmbeddingKind(args.kind))
    print(f"Removed {removed} {args.kind} embeddings")
    return 0


def cmd_reset(memory: MemoryManager, args: argparse.Namespace) -> int:
    removed = memory.reset()
    print(f"Removed {sum(removed.values())} embeddings")
    return 0


def cmd_failed(memory: MemoryManager, args: argparse.Namespace) -> int:
    jobs = memory.list_failed_jobs(limit=args.limit)
    if not jobs:
        print("No failed embedding jobs")
        return 0
    for job in jobs:
        kind = (job.payload or {}).get("kind", "?")
        print(
            f"#{job.id} {kind}:{job.ref_id} retries={job.retry_count} "
            f"at {job.failed_at:%Y-%m-%d %H:%M:%S}: {job.error}"
        )
    return 0


def cmd_retry_failed(memory: MemoryManager, args: argparse.Namespace) -> int:
    if not memory.retry_failed_job(args.job_id):
        print(f"No failed embedding job #{args.job_id}")
        return 1
    print(f"Job #{args.job_id} will be retried by the worker")
    return 0


def cmd_purge_failed(memory: MemoryManager, args: argparse.Namespace) -> int:
    removed = memory.purge_failed_jobs(older_than_days=args.days)
    print(f"Removed {removed} failed embedding jobs")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-memory",
        description="Conversational memory: embeddings and retrieval over past conversations",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show worker, store and cache status").set_defaults(func=cmd_status)

    test = sub.add_parser("test", help="Run a test retrieval")
    test.add_argument("query")
    test.set_defaults(func=cmd_test)

    worker = sub.add_parser("run-worker", help="Generate missing embeddings")
    worker.add_argument("--once", action="store_true", help="Exit when the backlog is empty")
    worker.add_argument("--batch-size", type=int, help="Summaries per provider call")
    worker.add_argument("--rate-limit-ms", type=int, help="Pause between batches")
    worker.set_defaults(func=cmd_run_worker)

    clear = sub.add_parser("clear", help="Delete all embeddings of one kind")
    clear.add_argument("kind", choices=[k.value for k in EmbeddingKind])
    clear.set_defaults(func=cmd_clear)

    sub.add_parser("reset", help="Delete all embeddings").set_defaults(func=cmd_reset)

    failed = sub.add_parser("failed", help="List failed embedding jobs")
    failed.add_argument("--limit", type=int, default=20)
    failed.set_defaults(func=cmd_failed)

    retry = sub.add_parser("retry-failed", help="Retry one failed embedding job")
    retry.add_argument("job_id", type=int)
    retry.set_defaults(func=cmd_retry_failed)

    purge = sub.add_parser("purge-failed", help="Delete failed embedding jobs")
    purge.add_argument("--days", type=int, default=None, help="Only jobs older than N days")
    purge.set_defaults(func=cmd_purge_failed)
    return parser


def main(argv=None):
    """Entry point for the application."""
    args = build_parser().parse_args(argv)
    logger = config.setup_logging()

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        sys.exit(1)

    try:
        memory = create_memory_manager(config)
        memory.initialize()
        sys.exit(args.func(memory, args))
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        sys.exit(130)
    except AgentMemoryError as e:
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
