"""Handler registry and built-in job handlers."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from taskgate.completion.base import CompletionRequest
from taskgate.errors import JobInputError, UnknownJobTypeError
from taskgate.jobs.context import JobHandlerContext
from taskgate.jobs.models import CheckpointType, JobKind

JobHandler = Callable[[JobHandlerContext], dict[str, Any]]

CONTENT_PREVIEW_CHARS = 200
RESULT_PREVIEW_CHARS = 500
SAMPLE_ITEMS = 5
AI_TASK_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Process the user's task carefully "
    "and provide a detailed response."
)


class HandlerRegistry:
    """Dispatch table from job kind to handler, built once at startup."""

    def __init__(self) -> None:
        self._handlers: dict[JobKind, JobHandler] = {}

    def register(self, kind: JobKind | str, handler: JobHandler) -> None:
        job_kind = JobKind.parse(kind)
        if job_kind in self._handlers:
            raise ValueError(f"Handler already registered for job type: {job_kind.value}")
        self._handlers[job_kind] = handler

    def resolve(self, job_type: str) -> JobHandler:
        try:
            job_kind = JobKind.parse(job_type)
        except ValueError as error:
            raise UnknownJobTypeError(job_type) from error
        handler = self._handlers.get(job_kind)
        if handler is None:
            raise UnknownJobTypeError(job_type)
        return handler

    def kinds(self) -> tuple[JobKind, ...]:
        return tuple(self._handlers)


def build_default_registry() -> HandlerRegistry:
    registry = HandlerRegistry()
    registry.register(JobKind.CODE_GENERATION, handle_code_generation)
    registry.register(JobKind.DATA_PROCESSING, handle_data_processing)
    registry.register(JobKind.SIMPLE_TASK, handle_simple_task)
    registry.register(JobKind.AI_TASK, handle_ai_task)
    return registry


def handle_code_generation(context: JobHandlerContext) -> dict[str, Any]:
    """Gate file writes behind one approval checkpoint listing every file."""

    context.create_log("thinking", "Analyzing code generation request", dict(context.input_data))
    files = _parse_files(context.input_data)

    checkpoint_id = context.create_checkpoint(
        CheckpointType.APPROVAL_REQUIRED,
        f"Ready to create/modify {len(files)} file(s). Review the changes before proceeding.",
        {
            "files": [
                {
                    "path": item["path"],
                    "contentPreview": item["content"][:CONTENT_PREVIEW_CHARS],
                    "size": len(item["content"]),
                }
                for item in files
            ],
            "totalFiles": len(files),
        },
        {"handler": JobKind.CODE_GENERATION.value, "requiresApproval": True},
    )
    context.create_log("checkpoint", f"Created checkpoint {checkpoint_id} for file review")
    context.require_approval(checkpoint_id, subject="Code generation checkpoint")

    context.create_log("executing", f"Creating {len(files)} file(s)")
    created = [
        {"path": item["path"], "status": "created", "size": len(item["content"])}
        for item in files
    ]
    context.create_log("completed", f"Successfully created {len(created)} file(s)")
    return {"success": True, "filesCreated": created, "checkpointId": checkpoint_id}


def handle_data_processing(context: JobHandlerContext) -> dict[str, Any]:
    """Review input, process items, then review output: two approval gates."""

    context.create_log("thinking", "Starting data processing", dict(context.input_data))
    items = context.input_data.get("data", [])
    if not isinstance(items, list):
        raise JobInputError("Data processing input 'data' must be a list")
    operation = context.input_data.get("operation")

    input_checkpoint = context.create_checkpoint(
        CheckpointType.APPROVAL_REQUIRED,
        f"Review input data before processing. {len(items)} items to process.",
        {"itemCount": len(items), "operation": operation},
        {"handler": JobKind.DATA_PROCESSING.value, "stage": "input_review"},
    )
    context.require_approval(input_checkpoint, subject="Data processing checkpoint 1/2")

    context.create_log("processing", "Processing data items")
    processed = [{"index": index, "processed": True} for index, _ in enumerate(items)]

    output_checkpoint = context.create_checkpoint(
        CheckpointType.APPROVAL_REQUIRED,
        f"Review processed results. {len(processed)} items processed.",
        {"processedCount": len(processed), "sample": processed[:SAMPLE_ITEMS]},
        {"handler": JobKind.DATA_PROCESSING.value, "stage": "output_review"},
    )
    context.require_approval(output_checkpoint, subject="Data processing checkpoint 2/2")

    context.create_log("completed", f"Successfully processed {len(processed)} items")
    return {
        "success": True,
        "processedCount": len(processed),
        "checkpoints": [input_checkpoint, output_checkpoint],
    }


def handle_simple_task(context: JobHandlerContext) -> dict[str, Any]:
    """Advisory checkpoint only; never waits for a reviewer."""

    context.create_log("thinking", "Executing simple task", dict(context.input_data))
    context.create_checkpoint(
        CheckpointType.INFO,
        "Task execution started",
        {"input": dict(context.input_data)},
        {"handler": JobKind.SIMPLE_TASK.value},
    )
    context.create_log("executing", "Processing task")
    context.sleep(_float_input(context.input_data, "simulateSeconds", default=1.0))
    context.create_log("completed", "Task completed successfully")
    return {"success": True, "result": "Task completed"}


def handle_ai_task(context: JobHandlerContext) -> dict[str, Any]:
    context.create_log("thinking", "Starting AI-powered task", dict(context.input_data))
    prompt = context.input_data.get("task") or context.input_data.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise JobInputError("AI task requires a non-empty 'prompt' or 'task'")
    system_prompt = context.input_data.get("systemPrompt") or AI_TASK_SYSTEM_PROMPT
    model = getattr(context.completion, "model", None)

    checkpoint_id = context.create_checkpoint(
        CheckpointType.APPROVAL_REQUIRED,
        "AI task ready for processing. Review the task before the model processes it.",
        {
            "task": prompt,
            "context": context.input_data.get("context", {}),
            "aiModel": model,
        },
        {"handler": JobKind.AI_TASK.value, "requiresApproval": True},
    )
    context.create_log("checkpoint", f"Created checkpoint {checkpoint_id} for AI task review")
    context.require_approval(checkpoint_id, subject="AI task checkpoint")

    context.create_log("ai-processing", "Calling completion service")
    completion = context.complete(
        CompletionRequest(
            system_prompt=str(system_prompt),
            user_prompt=prompt,
            max_tokens=int(context.input_data.get("maxTokens", 4096)),
            temperature=_float_input(context.input_data, "temperature", default=0.7),
        ),
    )
    context.create_log(
        "ai-completed",
        f"Model processed task ({completion.input_tokens} input, "
        f"{completion.output_tokens} output tokens)",
    )
    tokens = {"input": completion.input_tokens, "output": completion.output_tokens}
    context.create_checkpoint(
        CheckpointType.INFO,
        "AI task completed successfully",
        {"response": completion.content[:RESULT_PREVIEW_CHARS], "tokens": tokens},
        {"handler": JobKind.AI_TASK.value, "stage": "completed", "mock": completion.is_mock},
    )
    return {
        "success": True,
        "result": completion.content,
        "tokens": tokens,
        "checkpointId": checkpoint_id,
    }


def _parse_files(input_data: Mapping[str, Any]) -> list[dict[str, str]]:
    raw_files = input_data.get("files")
    if not isinstance(raw_files, list) or not raw_files:
        raise JobInputError("No files specified for code generation")
    files: list[dict[str, str]] = []
    for index, item in enumerate(raw_files):
        if not isinstance(item, Mapping) or not isinstance(item.get("path"), str):
            raise JobInputError(f"File entry #{index} must be an object with a 'path'")
        content = item.get("content", "")
        if not isinstance(content, str):
            raise JobInputError(f"File entry #{index} content must be a string")
        files.append({"path": item["path"], "content": content})
    return files


def _float_input(input_data: Mapping[str, Any], key: str, *, default: float) -> float:
    value = input_data.get(key, default)
    try:
        return float(value)
    except (TypeError, ValueError) as error:
        raise JobInputError(f"Input {key!r} must be a number, got {value!r}") from error
