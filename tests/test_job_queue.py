from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from src.core.errors import Forbidden, InvalidRequest, InvalidTransition
from src.jobs.queue import (
    cancel_job,
    cancel_requested,
    claim_next_job,
    cleanup_old_jobs,
    complete_job,
    enqueue_job,
    fail_job,
    get_job,
    heartbeat,
    job_payload,
    job_results,
    list_jobs,
    queue_stats,
    reclaim_stalled_jobs,
    requeue_for_retry,
    retry_job,
    update_progress,
)
from src.jobs.states import validate_job_request
from src.storage.models import Job
from tests.support import add_member, context_for


WORKER = "worker-a"


def _reload(session, job_id: str) -> Job:
    return session.get(Job, job_id, populate_existing=True)


def _enqueue(session, ctx, *, tag: str, now=None, max_retries=None) -> Job:
    return enqueue_job(
        session,
        ctx,
        job_type="full_cycle",
        payload={"tag": tag},
        max_retries=max_retries,
        now=now,
    ).job


def test_validate_job_request_checks_required_payload_keys() -> None:
    assert validate_job_request("Workflow", {"workflow_id": "wf-1"}) == ("workflow", {"workflow_id": "wf-1"})

    with pytest.raises(InvalidRequest, match="unknown_job_type"):
        validate_job_request("publish", {})
    with pytest.raises(InvalidRequest, match="job_payload_missing story_id"):
        validate_job_request("generate_for_story", {})
    with pytest.raises(InvalidRequest, match="urls_must_be_list_of_strings"):
        validate_job_request("submit_urls", {"urls": "https://example.org"})


def test_enqueue_deduplicates_identical_jobs_inside_window(session, owner_ctx) -> None:
    now = datetime.now(timezone.utc)
    first = enqueue_job(session, owner_ctx, job_type="generate_for_story", payload={"story_id": "s-1"}, now=now)
    repeat = enqueue_job(
        session,
        owner_ctx,
        job_type="generate_for_story",
        payload={"story_id": "s-1"},
        now=now + timedelta(seconds=2),
    )
    later = enqueue_job(
        session,
        owner_ctx,
        job_type="generate_for_story",
        payload={"story_id": "s-1"},
        now=now + timedelta(seconds=30),
    )

    assert first.deduplicated is False
    assert repeat.deduplicated is True
    assert repeat.job.id == first.job.id
    assert later.deduplicated is False
    assert later.job.id != first.job.id
    assert job_payload(first.job) == {"story_id": "s-1"}


def test_viewer_cannot_enqueue(session_factory, session, owner) -> None:
    add_member(session_factory, owner.account_id, user_id="user-viewer", role="viewer")
    viewer_ctx = context_for(session_factory, owner, user_id="user-viewer")

    with pytest.raises(Forbidden):
        enqueue_job(session, viewer_ctx, job_type="full_cycle")
    assert list_jobs(session, viewer_ctx) == []


def test_claim_is_fifo_and_respects_account_concurrency(session, owner_ctx) -> None:
    now = datetime.now(timezone.utc)
    older = _enqueue(session, owner_ctx, tag="a", now=now - timedelta(seconds=10))
    newer = _enqueue(session, owner_ctx, tag="b", now=now - timedelta(seconds=5))

    claimed = claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER, now=now)
    assert claimed.id == older.id
    assert claimed.status == "processing"
    assert claimed.worker_id == WORKER

    assert claim_next_job(session, account_id=owner_ctx.account_id, worker_id="worker-b", now=now) is None

    second = claim_next_job(session, account_id=owner_ctx.account_id, worker_id="worker-b", max_active=2, now=now)
    assert second.id == newer.id


def test_heartbeat_and_progress_require_ownership(session, owner_ctx) -> None:
    job = _enqueue(session, owner_ctx, tag="a")
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER)

    assert heartbeat(session, job.id, worker_id=WORKER) is True
    assert heartbeat(session, job.id, worker_id="intruder") is False
    assert update_progress(session, job.id, worker_id=WORKER, percentage=140, details="Step 1/2") is True

    refreshed = _reload(session, job.id)
    assert refreshed.progress_percentage == 100
    assert refreshed.progress_details == "Step 1/2"


def test_complete_job_stores_results(session, owner_ctx) -> None:
    job = _enqueue(session, owner_ctx, tag="a")
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER)

    assert complete_job(session, job.id, worker_id=WORKER, results={"contentGenerated": 2}) is True
    assert complete_job(session, job.id, worker_id=WORKER, results={}) is False

    refreshed = _reload(session, job.id)
    assert refreshed.status == "completed"
    assert refreshed.progress_percentage == 100
    assert job_results(refreshed) == {"contentGenerated": 2}
    assert refreshed.completed_at is not None


def test_requeue_for_retry_until_retries_are_spent(session, owner_ctx) -> None:
    job = _enqueue(session, owner_ctx, tag="a", max_retries=1)
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER)

    assert requeue_for_retry(session, job.id, worker_id=WORKER, error_message="rate_limited") == "queued"
    refreshed = _reload(session, job.id)
    assert refreshed.retry_count == 1
    assert refreshed.worker_id is None
    assert refreshed.available_at is not None

    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER)
    assert requeue_for_retry(session, job.id, worker_id=WORKER, error_message="rate_limited") == "failed"
    refreshed = _reload(session, job.id)
    assert refreshed.status == "failed"
    assert refreshed.error_message == "rate_limited (retries exhausted after 1)"

    assert requeue_for_retry(session, job.id, worker_id=WORKER, error_message="late") == ""


def test_cancel_queued_job_is_immediate(session, owner_ctx) -> None:
    job = _enqueue(session, owner_ctx, tag="a")

    result = cancel_job(session, owner_ctx, job.id)

    assert result.immediate is True
    assert result.job.status == "cancelled"
    assert result.job.error_message == "cancelled_by_user"
    assert claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER) is None


def test_cancel_processing_job_sets_flag_only(session, owner_ctx) -> None:
    job = _enqueue(session, owner_ctx, tag="a")
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER)

    result = cancel_job(session, owner_ctx, job.id)

    assert result.immediate is False
    assert result.job.status == "processing"
    assert cancel_requested(session, job.id) is True


def test_cancel_terminal_job_is_an_invalid_transition(session, owner_ctx) -> None:
    job = _enqueue(session, owner_ctx, tag="a")
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER)
    complete_job(session, job.id, worker_id=WORKER, results={})

    with pytest.raises(InvalidTransition):
        cancel_job(session, owner_ctx, job.id)


def test_retry_job_creates_linked_copy(session, owner_ctx) -> None:
    job = _enqueue(session, owner_ctx, tag="a")
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER)

    with pytest.raises(InvalidTransition):
        retry_job(session, owner_ctx, job.id)

    fail_job(session, job.id, worker_id=WORKER, error_message="provider_unavailable")
    copy = retry_job(session, owner_ctx, job.id)

    assert copy.id != job.id
    assert copy.status == "queued"
    assert copy.retry_of_job_id == job.id
    assert copy.retry_count == 0
    assert copy.payload_json == job.payload_json
    assert _reload(session, job.id).status == "failed"


def test_retried_job_gets_a_fresh_retry_budget(session, owner_ctx) -> None:
    job = _enqueue(session, owner_ctx, tag="a", max_retries=1)
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER)
    requeue_for_retry(session, job.id, worker_id=WORKER, error_message="rate_limited")
    session.execute(update(Job).where(Job.id == job.id).values(available_at=None))
    session.commit()
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER)
    assert requeue_for_retry(session, job.id, worker_id=WORKER, error_message="rate_limited") == "failed"

    copy = retry_job(session, owner_ctx, job.id)
    claimed = claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER)

    assert claimed.id == copy.id
    assert claimed.retry_count == 0
    assert requeue_for_retry(session, copy.id, worker_id=WORKER, error_message="rate_limited") == "queued"


def test_cancel_sees_completion_made_by_another_session(session_factory, session, owner_ctx) -> None:
    job = _enqueue(session, owner_ctx, tag="a")
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER)
    assert get_job(session, owner_ctx, job.id).status == "processing"

    with session_factory() as worker_session:
        complete_job(worker_session, job.id, worker_id=WORKER, results={"contentGenerated": 1})

    assert get_job(session, owner_ctx, job.id).status == "completed"
    with pytest.raises(InvalidTransition):
        cancel_job(session, owner_ctx, job.id)


class InterleavedSession:
    """Runs ``before_update`` once, between this session's read and its first write."""

    def __init__(self, inner, before_update) -> None:
        self._inner = inner
        self._before_update = before_update

    def execute(self, statement, *args, **kwargs):
        if self._before_update is not None and statement.is_dml:
            hook, self._before_update = self._before_update, None
            hook()
        return self._inner.execute(statement, *args, **kwargs)

    def commit(self) -> None:
        self._inner.commit()

    def __getattr__(self, name):
        return getattr(self._inner, name)


def test_concurrent_reclaimers_requeue_a_stall_once(session_factory, session, owner_ctx) -> None:
    started = datetime.now(timezone.utc) - timedelta(minutes=30)
    job = _enqueue(session, owner_ctx, tag="a", now=started - timedelta(seconds=1))
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER, now=started)
    now = started + timedelta(seconds=301)
    outcomes = []

    def other_reclaimer() -> None:
        with session_factory() as other:
            outcomes.append(reclaim_stalled_jobs(other, now=now, stall_timeout_seconds=300))

    with session_factory() as first:
        outcomes.append(reclaim_stalled_jobs(InterleavedSession(first, other_reclaimer), now=now, stall_timeout_seconds=300))

    other_result, first_result = outcomes
    assert other_result.requeued == [job.id]
    assert first_result.candidates == [job.id]
    assert first_result.requeued == []
    reclaimed = _reload(session, job.id)
    assert reclaimed.status == "queued"
    assert reclaimed.retry_count == 1


def test_cancel_refuses_a_job_that_finishes_before_the_flag_is_set(session_factory, session, owner_ctx) -> None:
    job = _enqueue(session, owner_ctx, tag="a")
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER)

    def worker_finishes() -> None:
        with session_factory() as worker_session:
            complete_job(worker_session, job.id, worker_id=WORKER, results={})

    with session_factory() as api_session:
        with pytest.raises(InvalidTransition, match="completed"):
            cancel_job(InterleavedSession(api_session, worker_finishes), owner_ctx, job.id)

    finished = _reload(session, job.id)
    assert finished.status == "completed"
    assert finished.cancel_requested is False


def test_reclaim_stalled_jobs_requeues_or_fails(session, owner_ctx) -> None:
    started = datetime.now(timezone.utc) - timedelta(minutes=30)
    retryable = _enqueue(session, owner_ctx, tag="a", now=started - timedelta(seconds=2))
    exhausted = _enqueue(session, owner_ctx, tag="b", now=started - timedelta(seconds=1), max_retries=0)
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER, max_active=2, now=started)
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER, max_active=2, now=started)
    now = started + timedelta(seconds=301)

    preview = reclaim_stalled_jobs(session, now=now, stall_timeout_seconds=300, dry_run=True)
    assert preview.dry_run is True
    assert sorted(preview.candidates) == sorted([retryable.id, exhausted.id])
    assert _reload(session, retryable.id).status == "processing"

    result = reclaim_stalled_jobs(session, now=now, stall_timeout_seconds=300)
    assert result.requeued == [retryable.id]
    assert result.failed == [exhausted.id]

    requeued = _reload(session, retryable.id)
    assert requeued.status == "queued"
    assert requeued.retry_count == 1
    assert requeued.error_message == "stall_reclaim: heartbeat lost"
    failed = _reload(session, exhausted.id)
    assert failed.status == "failed"
    assert failed.error_message == "stall_reclaim: heartbeat lost and retries exhausted"

    again = reclaim_stalled_jobs(session, now=now, stall_timeout_seconds=300)
    assert again.requeued == [] and again.failed == []


def test_fresh_heartbeat_is_not_reclaimed(session, owner_ctx) -> None:
    now = datetime.now(timezone.utc)
    job = _enqueue(session, owner_ctx, tag="a", now=now - timedelta(seconds=1))
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER, now=now)

    result = reclaim_stalled_jobs(session, now=now + timedelta(seconds=60), stall_timeout_seconds=300)

    assert result.requeued == []
    assert _reload(session, job.id).status == "processing"


def test_list_jobs_filters_by_status_list(session, owner_ctx) -> None:
    done = _enqueue(session, owner_ctx, tag="a")
    waiting = _enqueue(session, owner_ctx, tag="b")
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER)
    complete_job(session, done.id, worker_id=WORKER, results={})

    assert [job.id for job in list_jobs(session, owner_ctx, status="queued")] == [waiting.id]
    assert {job.id for job in list_jobs(session, owner_ctx, status="queued, completed")} == {done.id, waiting.id}
    with pytest.raises(InvalidRequest, match="unknown_job_status"):
        list_jobs(session, owner_ctx, status="stuck")


def test_cleanup_old_jobs_deletes_only_old_terminal_rows(session, owner_ctx) -> None:
    old = _enqueue(session, owner_ctx, tag="old")
    recent = _enqueue(session, owner_ctx, tag="recent")
    for job in (old, recent):
        claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER)
        complete_job(session, job.id, worker_id=WORKER, results={})
    session.execute(
        update(Job)
        .where(Job.id == old.id)
        .values(completed_at=datetime.now(timezone.utc) - timedelta(days=10))
    )
    session.commit()

    assert cleanup_old_jobs(session, owner_ctx, days_old=7) == 1
    assert [job.id for job in list_jobs(session, owner_ctx)] == [recent.id]
    with pytest.raises(InvalidRequest):
        cleanup_old_jobs(session, owner_ctx, days_old=-1)


def test_queue_stats_counts_by_status(session, owner_ctx) -> None:
    job = _enqueue(session, owner_ctx, tag="a")
    _enqueue(session, owner_ctx, tag="b")
    _enqueue(session, owner_ctx, tag="c")
    claim_next_job(session, account_id=owner_ctx.account_id, worker_id=WORKER)
    cancel_job(session, owner_ctx, job.id)

    stats = queue_stats(session, owner_ctx, window_hours=24)

    assert stats["window_hours"] == 24
    assert stats["total"] == 3
    assert stats["by_status"]["queued"] == 2
    assert stats["by_status"]["processing"] == 1
    assert stats["queued_now"] == 2
    assert stats["processing_now"] == 1
