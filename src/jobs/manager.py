"""CLI entrypoint for the job worker: one cycle, a reclaim pass, or a polling loop."""

from __future__ import annotations

from dataclasses import asdict
import argparse
import json
import signal
from threading import Event
from typing import Any, Dict, Optional

from src.core.config import get_settings
from src.core.logger import configure_logging, get_logger
from src.core.observability import init_sentry
from src.jobs import queue
from src.jobs.locks import AccountSlotLockManager
from src.jobs.worker import JobWorker, WorkerRunResult
from src.storage.db import get_session_factory, load_models, session_scope
from src.storage.redis_client import get_client as get_redis_client


logger = get_logger("eden.jobs.manager")


def build_worker(*, worker_id: Optional[str] = None) -> JobWorker:
    settings = get_settings()
    load_models()
    return JobWorker(
        session_factory=get_session_factory(),
        lock_manager=AccountSlotLockManager(
            get_redis_client(),
            ttl_seconds=settings.worker_lock_ttl_seconds,
            slots=settings.job_account_concurrency,
        ),
        worker_id=worker_id,
    )


def run_worker_once(*, limit: Optional[int] = None) -> WorkerRunResult:
    return build_worker().run_once(limit=limit)


def run_reclaim(*, dry_run: bool = False) -> queue.ReclaimResult:
    load_models()
    with session_scope() as session:
        return queue.reclaim_stalled_jobs(session, dry_run=dry_run)


def run_cleanup(*, days_old: Optional[int] = None) -> int:
    settings = get_settings()
    load_models()
    with session_scope() as session:
        return queue.cleanup_old_jobs(session, days_old=days_old or settings.job_cleanup_days)


def _result_to_dict(result: WorkerRunResult) -> Dict[str, Any]:
    payload = asdict(result)
    payload["runs"] = [asdict(run) for run in result.runs]
    return payload


def _print(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, ensure_ascii=True, separators=(",", ":"), sort_keys=True, default=str))


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the Eden content job worker.")
    parser.add_argument("--once", action="store_true", help="Run a single claim cycle and exit.")
    parser.add_argument("--reclaim-only", action="store_true", help="Only requeue stalled jobs and exit.")
    parser.add_argument("--dry-run", action="store_true", help="With --reclaim-only, list stalled jobs without changing them.")
    parser.add_argument("--cleanup", action="store_true", help="Delete terminal jobs older than --days-old and exit.")
    parser.add_argument("--days-old", type=int, default=None, help="Age threshold for --cleanup.")
    parser.add_argument("--limit", type=int, default=None, help="Max accounts to process per cycle.")
    args = parser.parse_args()

    configure_logging()
    init_sentry()

    if args.reclaim_only:
        _print(asdict(run_reclaim(dry_run=args.dry_run)))
        return
    if args.cleanup:
        _print({"deleted": run_cleanup(days_old=args.days_old)})
        return
    if args.once:
        _print(_result_to_dict(run_worker_once(limit=args.limit)))
        return

    stop = Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
    signal.signal(signal.SIGINT, lambda signum, frame: stop.set())
    build_worker().run_forever(stop_event=stop)


if __name__ == "__main__":
    main()
