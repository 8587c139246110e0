"""Request-scoped access to the application context."""

from __future__ import annotations

from fastapi import Request

from taskgate.app import AppContext


def get_app_context(request: Request) -> AppContext:
    return request.app.state.context
