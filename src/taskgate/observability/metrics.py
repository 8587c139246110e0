"""Job and checkpoint metrics in the Prometheus text exposition format."""

from __future__ import annotations

from dataclasses import dataclass, field

from taskgate.jobs.models import CheckpointStatus, JobStatus
from taskgate.jobs.repository import JobRepository

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
DURATION_BUCKETS_SECONDS: tuple[float, ...] = (1, 5, 10, 30, 60, 300, 600)
_DURATION_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass(slots=True)
class DurationHistogram:
    """Cumulative bucket counts for one terminal status."""

    buckets: list[int] = field(default_factory=lambda: [0] * len(DURATION_BUCKETS_SECONDS))
    count: int = 0
    total_seconds: float = 0.0

    def observe(self, seconds: float) -> None:
        self.count += 1
        self.total_seconds += seconds
        for index, bound in enumerate(DURATION_BUCKETS_SECONDS):
            if seconds <= bound:
                self.buckets[index] += 1


@dataclass(slots=True)
class MetricsSnapshot:
    """Point-in-time counters used by the HTTP exposition and the CLI."""

    jobs_by_status: dict[JobStatus, int]
    checkpoints_by_status: dict[CheckpointStatus, int]
    durations: dict[JobStatus, DurationHistogram]
    active_jobs: int

    @property
    def pending_checkpoints(self) -> int:
        return self.checkpoints_by_status.get(CheckpointStatus.PENDING, 0)


def build_metrics_snapshot(*, repository: JobRepository, active_jobs: int) -> MetricsSnapshot:
    durations = {status: DurationHistogram() for status in _DURATION_STATUSES}
    for status, seconds in repository.list_job_durations():
        histogram = durations.get(status)
        if histogram is not None:
            histogram.observe(seconds)
    return MetricsSnapshot(
        jobs_by_status=repository.count_jobs_by_status(),
        checkpoints_by_status=repository.count_checkpoints_by_status(),
        durations=durations,
        active_jobs=active_jobs,
    )


def render_prometheus(snapshot: MetricsSnapshot) -> str:
    lines = [
        "# HELP taskgate_jobs_total Jobs by current status.",
        "# TYPE taskgate_jobs_total counter",
    ]
    for status in JobStatus:
        count = snapshot.jobs_by_status.get(status, 0)
        lines.append(f'taskgate_jobs_total{{status="{status.value}"}} {count}')

    lines.extend(
        [
            "# HELP taskgate_job_duration_seconds Run time of finished jobs.",
            "# TYPE taskgate_job_duration_seconds histogram",
        ],
    )
    for status, histogram in snapshot.durations.items():
        label = f'status="{status.value}"'
        for bound, bucket_count in zip(DURATION_BUCKETS_SECONDS, histogram.buckets, strict=True):
            lines.append(
                f'taskgate_job_duration_seconds_bucket{{{label},le="{_fmt_bound(bound)}"}} '
                f"{bucket_count}",
            )
        lines.append(
            f'taskgate_job_duration_seconds_bucket{{{label},le="+Inf"}} {histogram.count}',
        )
        lines.append(
            f"taskgate_job_duration_seconds_sum{{{label}}} {_fmt_float(histogram.total_seconds)}",
        )
        lines.append(f"taskgate_job_duration_seconds_count{{{label}}} {histogram.count}")

    lines.extend(
        [
            "# HELP taskgate_checkpoints_total Checkpoints by status.",
            "# TYPE taskgate_checkpoints_total counter",
        ],
    )
    for checkpoint_status in CheckpointStatus:
        count = snapshot.checkpoints_by_status.get(checkpoint_status, 0)
        lines.append(f'taskgate_checkpoints_total{{status="{checkpoint_status.value}"}} {count}')

    lines.extend(
        [
            "# HELP taskgate_checkpoints_pending Checkpoints awaiting a decision.",
            "# TYPE taskgate_checkpoints_pending gauge",
            f"taskgate_checkpoints_pending {snapshot.pending_checkpoints}",
            "# HELP taskgate_jobs_active Jobs currently held by this worker.",
            "# TYPE taskgate_jobs_active gauge",
            f"taskgate_jobs_active {snapshot.active_jobs}",
        ],
    )
    return "\n".join(lines) + "\n"


def render_stats_lines(*, snapshot: MetricsSnapshot) -> list[str]:
    """Human-readable summary for the CLI."""

    lines = [
        f"Jobs: {_fmt_counts(snapshot.jobs_by_status)}",
        f"Checkpoints: {_fmt_counts(snapshot.checkpoints_by_status)}",
        f"Pending checkpoints: {snapshot.pending_checkpoints}",
        f"Active jobs: {snapshot.active_jobs}",
    ]
    for status, histogram in snapshot.durations.items():
        mean = histogram.total_seconds / histogram.count if histogram.count else 0.0
        lines.append(
            f"Duration {status.value.lower()}: count={histogram.count} mean={mean:.2f}s",
        )
    return lines


def _fmt_counts(counts: dict[JobStatus, int] | dict[CheckpointStatus, int]) -> str:
    if not counts:
        return "-"
    return ", ".join(f"{status.value}={count}" for status, count in counts.items())


def _fmt_bound(bound: float) -> str:
    return f"{bound:g}"


def _fmt_float(value: float) -> str:
    return f"{value:.6f}".rstrip("0").rstrip(".") or "0"
