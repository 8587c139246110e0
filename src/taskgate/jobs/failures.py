"""Deterministic handler failure classification for worker retry policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from taskgate.errors import (
    CheckpointExpiredError,
    CheckpointRejectedError,
    JobInputError,
    UnknownJobTypeError,
    WorkerShutdownError,
)
from taskgate.jobs.models import FailureClass

MAX_FAILURE_REASON_CHARS = 1_000
SECRET_MASK = "***"

# Approval outcomes are recorded on the job but never captured as errors.
_GATING_CLASSES = frozenset({FailureClass.CHECKPOINT_REJECTED, FailureClass.CHECKPOINT_EXPIRED})

# Credentials that end up in exception text: auth headers, provider keys,
# `name=value` settings and signed URL parameters. Approver ids are kept.
_BEARER_RE = re.compile(r"(?i)\b(bearer)\s+[\w.~+/=-]{8,}")
_PROVIDER_KEY_RE = re.compile(r"\bsk-[\w-]{8,}")
_ASSIGNMENT_RE = re.compile(
    r"(?i)\b([\w-]*(?:api[_-]?key|secret|password|passwd|token))"
    r"(\s*[:=]\s*)(['\"]?)[^\s'\",;&]+\3",
)
_QUERY_PARAM_RE = re.compile(r"(?i)([?&](?:key|sig|signature|auth|access_token)=)[^&\s#]+")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(slots=True)
class JobFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    failure_reason: str

    @property
    def should_capture(self) -> bool:
        return self.failure_class not in _GATING_CLASSES | {FailureClass.WORKER_SHUTDOWN}


def classify_job_failure(error: BaseException) -> JobFailureClassification:
    """Map an exception raised while running a job to a failure class and reason."""

    if isinstance(error, UnknownJobTypeError):
        failure_class = FailureClass.UNKNOWN_JOB_TYPE
    elif isinstance(error, JobInputError):
        failure_class = FailureClass.INVALID_INPUT
    elif isinstance(error, CheckpointRejectedError):
        failure_class = FailureClass.CHECKPOINT_REJECTED
    elif isinstance(error, CheckpointExpiredError):
        failure_class = FailureClass.CHECKPOINT_EXPIRED
    elif isinstance(error, WorkerShutdownError):
        failure_class = FailureClass.WORKER_SHUTDOWN
    else:
        failure_class = FailureClass.HANDLER_ERROR

    message = format_failure_reason(str(error)) or type(error).__name__
    return JobFailureClassification(failure_class=failure_class, failure_reason=message)


def format_failure_reason(text: str, *, max_chars: int = MAX_FAILURE_REASON_CHARS) -> str:
    """Single-line failure reason with credentials masked, shortened to `max_chars`.

    Multi-line messages (tracebacks, API error bodies) are folded onto one line so
    `jobs list` and the HTTP job view stay readable. Approver ids and e-mail
    addresses are left untouched: operators need them to follow up on a rejection.
    """

    reason = _WHITESPACE_RE.sub(" ", text).strip()
    if not reason:
        return ""

    reason = _BEARER_RE.sub(lambda match: f"{match.group(1)} {SECRET_MASK}", reason)
    reason = _PROVIDER_KEY_RE.sub(SECRET_MASK, reason)
    reason = _ASSIGNMENT_RE.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{SECRET_MASK}",
        reason,
    )
    reason = _QUERY_PARAM_RE.sub(lambda match: f"{match.group(1)}{SECRET_MASK}", reason)

    if len(reason) <= max_chars:
        return reason
    return reason[: max(max_chars - 3, 0)].rstrip() + "..."
