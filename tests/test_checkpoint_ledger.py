from __future__ import annotations

import allure

from novel_pipeline.queue.checkpoint import CheckpointLedger
from novel_pipeline.queue.models import JobType
from novel_pipeline.queue.repository import JobRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Checkpoints"),
]


def test_ledger_records_steps_in_order(jobs: JobRepository, ledger: CheckpointLedger) -> None:
    job = jobs.create_job(JobType.GENERATE, "chapter-1")
    ledger.save(job.id, "started", {"chapter_number": 1})
    ledger.save(job.id, "content_generated", {"chars": 1200})
    ledger.save(job.id, "content_saved")

    assert ledger.steps(job.id) == ["started", "content_generated", "content_saved"]
    latest = ledger.get(job.id)
    assert latest is not None
    assert latest.step == "content_saved"
    assert latest.data == {}


def test_ledger_is_scoped_per_job(jobs: JobRepository, ledger: CheckpointLedger) -> None:
    first = jobs.create_job(JobType.GENERATE, "chapter-1")
    second = jobs.create_job(JobType.GENERATE, "chapter-2")
    ledger.save(first.id, "started")

    assert ledger.get(second.id) is None
    assert ledger.steps(second.id) == []
    assert ledger.restore(second.id) is None


def test_restore_summarizes_interrupted_attempt(
    jobs: JobRepository,
    ledger: CheckpointLedger,
) -> None:
    job = jobs.create_job(JobType.GENERATE, "chapter-1")
    ledger.save(job.id, "started")
    ledger.save(job.id, "content_saved", {"word_count": 2150})

    restore = ledger.restore(job.id)
    assert restore is not None
    assert restore.resume_from_step == "content_saved"
    assert restore.data == {"word_count": 2150}
    assert restore.has_step("started") is True
    assert restore.has_step("completed") is False


def test_clear_removes_entries(jobs: JobRepository, ledger: CheckpointLedger) -> None:
    job = jobs.create_job(JobType.GENERATE, "chapter-1")
    ledger.save(job.id, "started")
    ledger.save(job.id, "status_updated")

    assert ledger.clear(job.id) == 2
    assert ledger.steps(job.id) == []
    assert ledger.clear(job.id) == 0


def test_completing_job_drops_its_checkpoints(
    jobs: JobRepository,
    ledger: CheckpointLedger,
) -> None:
    job = jobs.create_job(JobType.SUMMARY, "chapter-1")
    other = jobs.create_job(JobType.SUMMARY, "chapter-2")
    jobs.claim_next()
    ledger.save(job.id, "started")
    ledger.save(other.id, "started")

    assert jobs.complete_job(job.id) is True
    assert ledger.get(job.id) is None
    assert ledger.steps(other.id) == ["started"]
