from __future__ import annotations

import allure
import pytest

from taskgate.errors import (
    CheckpointExpiredError,
    CheckpointRejectedError,
    CompletionError,
    JobInputError,
    UnknownJobTypeError,
    WorkerShutdownError,
)
from taskgate.jobs.failures import SECRET_MASK, classify_job_failure, format_failure_reason
from taskgate.jobs.models import FailureClass

pytestmark = [
    allure.epic("Job Runtime"),
    allure.feature("Failure Handling"),
]


@pytest.mark.parametrize(
    ("error", "failure_class", "captured"),
    [
        (UnknownJobTypeError("video"), FailureClass.UNKNOWN_JOB_TYPE, True),
        (JobInputError("bad input"), FailureClass.INVALID_INPUT, True),
        (
            CheckpointRejectedError("rejected", checkpoint_id="cp1"),
            FailureClass.CHECKPOINT_REJECTED,
            False,
        ),
        (
            CheckpointExpiredError("expired", checkpoint_id="cp1"),
            FailureClass.CHECKPOINT_EXPIRED,
            False,
        ),
        (WorkerShutdownError("stopping"), FailureClass.WORKER_SHUTDOWN, False),
        (CompletionError("backend down"), FailureClass.HANDLER_ERROR, True),
        (RuntimeError("boom"), FailureClass.HANDLER_ERROR, True),
    ],
)
def test_classifier_maps_errors_to_failure_classes(
    error: Exception,
    failure_class: FailureClass,
    captured: bool,
) -> None:
    classified = classify_job_failure(error)

    assert classified.failure_class == failure_class
    assert classified.should_capture is captured


def test_classifier_falls_back_to_exception_name_for_empty_message() -> None:
    classified = classify_job_failure(KeyError())

    assert classified.failure_reason == "KeyError"


def test_classifier_masks_credentials_but_keeps_approver() -> None:
    classified = classify_job_failure(
        RuntimeError("request failed: Authorization: Bearer abcdef123456789 for ops@example.com"),
    )

    assert "abcdef123456789" not in classified.failure_reason
    assert f"Bearer {SECRET_MASK}" in classified.failure_reason
    assert classified.failure_reason.endswith("for ops@example.com")


def test_rejection_reason_names_the_approver() -> None:
    error = CheckpointRejectedError(
        "File writes was rejected by approver alice@example.com: Deploy freeze",
        checkpoint_id="cp1",
    )

    classified = classify_job_failure(error)

    assert classified.failure_reason == (
        "File writes was rejected by approver alice@example.com: Deploy freeze"
    )


@pytest.mark.parametrize(
    ("text", "hidden", "expected"),
    [
        (
            "ANTHROPIC_API_KEY=sk-ant-abcdefghijkl rejected",
            "abcdefghijkl",
            f"ANTHROPIC_API_KEY={SECRET_MASK} rejected",
        ),
        (
            "GET https://api.example.com/v1?token=secret123&page=2 failed",
            "secret123",
            f"GET https://api.example.com/v1?token={SECRET_MASK}&page=2 failed",
        ),
        (
            "GET https://bucket.example.com/a.txt?sig=abc123XYZ&expires=60",
            "abc123XYZ",
            f"GET https://bucket.example.com/a.txt?sig={SECRET_MASK}&expires=60",
        ),
        (
            "config error: db_password: 'hunter2', retry later",
            "hunter2",
            f"config error: db_password: {SECRET_MASK}, retry later",
        ),
    ],
)
def test_format_failure_reason_masks_credentials(text: str, hidden: str, expected: str) -> None:
    formatted = format_failure_reason(text)

    assert hidden not in formatted
    assert formatted == expected


def test_format_failure_reason_folds_lines_and_shortens() -> None:
    assert format_failure_reason("   ") == ""
    assert format_failure_reason("Traceback:\n  step 1\n\tboom  ") == "Traceback: step 1 boom"
    shortened = format_failure_reason("x" * 5000)
    assert len(shortened) == 1000
    assert shortened.endswith("...")
    assert format_failure_reason("abcdefgh", max_chars=6) == "abc..."
