from __future__ import annotations

import allure
import pytest

from taskgate.jobs.checkpoints import CheckpointManager
from taskgate.jobs.models import CheckpointStatus, CheckpointType, JobCreate, JobKind, JobStatus
from taskgate.jobs.repository import JobRepository
from taskgate.observability.metrics import (
    DurationHistogram,
    build_metrics_snapshot,
    render_prometheus,
    render_stats_lines,
)

pytestmark = [
    allure.epic("Observability"),
    allure.feature("Metrics"),
]


def _finish_one_job(repository: JobRepository) -> str:
    job = repository.submit_job(JobCreate(job_type=JobKind.SIMPLE_TASK))
    repository.claim_next_job(worker_id="w1")
    repository.complete_job(job_id=job.job_id, output_data={"success": True})
    return job.job_id


def test_histogram_buckets_are_cumulative() -> None:
    histogram = DurationHistogram()

    histogram.observe(0.5)
    histogram.observe(7)
    histogram.observe(1200)

    assert histogram.buckets == [1, 1, 2, 2, 2, 2, 2]
    assert histogram.count == 3
    assert histogram.total_seconds == pytest.approx(1207.5)


def test_snapshot_counts_jobs_checkpoints_and_durations(
    repository: JobRepository,
    checkpoints: CheckpointManager,
) -> None:
    _finish_one_job(repository)
    waiting = repository.submit_job(JobCreate(job_type=JobKind.CODE_GENERATION))
    checkpoints.create(
        job_id=waiting.job_id,
        checkpoint_type=CheckpointType.APPROVAL_REQUIRED,
        message="Review",
    )

    snapshot = build_metrics_snapshot(repository=repository, active_jobs=2)

    assert snapshot.jobs_by_status[JobStatus.COMPLETED] == 1
    assert snapshot.jobs_by_status[JobStatus.PENDING] == 1
    assert snapshot.checkpoints_by_status[CheckpointStatus.PENDING] == 1
    assert snapshot.pending_checkpoints == 1
    assert snapshot.durations[JobStatus.COMPLETED].count == 1
    assert snapshot.durations[JobStatus.FAILED].count == 0
    assert snapshot.active_jobs == 2


def test_prometheus_exposition_contains_every_family(repository: JobRepository) -> None:
    _finish_one_job(repository)

    text = render_prometheus(build_metrics_snapshot(repository=repository, active_jobs=0))
    lines = text.splitlines()

    assert text.endswith("\n")
    assert "# TYPE taskgate_jobs_total counter" in lines
    assert 'taskgate_jobs_total{status="COMPLETED"} 1' in lines
    assert 'taskgate_jobs_total{status="RETRY"} 0' in lines
    assert "# TYPE taskgate_job_duration_seconds histogram" in lines
    assert 'taskgate_job_duration_seconds_bucket{status="COMPLETED",le="+Inf"} 1' in lines
    assert 'taskgate_job_duration_seconds_count{status="COMPLETED"} 1' in lines
    assert 'taskgate_job_duration_seconds_bucket{status="FAILED",le="600"} 0' in lines
    assert 'taskgate_checkpoints_total{status="PENDING"} 0' in lines
    assert "taskgate_checkpoints_pending 0" in lines
    assert "taskgate_jobs_active 0" in lines


def test_stats_lines_summarize_snapshot(repository: JobRepository) -> None:
    _finish_one_job(repository)

    lines = render_stats_lines(
        snapshot=build_metrics_snapshot(repository=repository, active_jobs=1),
    )

    assert lines[0].startswith("Jobs: PENDING=0")
    assert "COMPLETED=1" in lines[0]
    assert "Active jobs: 1" in lines
    assert any(line.startswith("Duration completed: count=1") for line in lines)
