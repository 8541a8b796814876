# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from threadloom.errors import (
    MissingParametersError,
    NotFoundError,
    SessionsClosedError,
    ThreadloomError,
    ThreadMutationError,
    ValidationError,
    WebhookDisabledError,
)
from threadloom.sessions.manager import SessionManager
from threadloom.threads.store import SQLiteThreadStore
from threadloom.triggers.coordinator import ExecutionCoordinator
from threadloom.triggers.store import TriggerStore

from .context import AppContext

logger = logging.getLogger(__name__)

INTERNAL_SERVER_ERROR_DETAIL = "Internal Server Error"
# Starlette renamed its 422 constant across releases.
HTTP_422_UNPROCESSABLE = 422


def get_context(request: Request) -> AppContext:
    context = getattr(request.app.state, "context", None)
    if context is None:
        raise RuntimeError("Application context has not been initialised")
    return context


def get_sessions(context: AppContext = Depends(get_context)) -> SessionManager:
    return context.sessions


def get_thread_store(context: AppContext = Depends(get_context)) -> SQLiteThreadStore:
    return context.store


def get_trigger_store(context: AppContext = Depends(get_context)) -> TriggerStore:
    return context.triggers


def get_coordinator(context: AppContext = Depends(get_context)) -> ExecutionCoordinator:
    return context.coordinator


def get_username(
    x_username: Optional[str] = Header(default=None),
    context: AppContext = Depends(get_context),
) -> str:
    username = (x_username or "").strip()
    return username or context.settings.default_username


def to_http_exception(exc: ThreadloomError) -> HTTPException:
    """Map a domain error to the HTTP status the API reports it with."""
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, WebhookDisabledError):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(exc, ThreadMutationError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, MissingParametersError):
        code = HTTP_422_UNPROCESSABLE
    elif isinstance(exc, ValidationError):
        code = status.HTTP_400_BAD_REQUEST
    elif isinstance(exc, SessionsClosedError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        logger.exception("Unhandled error: %s", exc)
        return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=INTERNAL_SERVER_ERROR_DETAIL)
    return HTTPException(status_code=code, detail=str(exc))
