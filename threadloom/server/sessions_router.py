# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from threadloom.errors import ThreadloomError
from threadloom.sessions.manager import Session, SessionManager
from threadloom.sessions.transport import SSETransport
from threadloom.threads.store import SQLiteThreadStore

from .dependencies import get_sessions, get_thread_store, get_username, to_http_exception
from .schemas import (
    DeleteResponse,
    PromptRequest,
    PromptResponse,
    SessionInfo,
    SessionOpenRequest,
    SessionState,
)
from .threads_router import to_thread_summary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SessionInfo)
async def open_session(
    payload: SessionOpenRequest,
    sessions: SessionManager = Depends(get_sessions),
    username: str = Depends(get_username),
) -> SessionInfo:
    try:
        session = await sessions.get_or_create(
            payload.client_id or uuid4().hex,
            project_id=payload.project,
            username=username,
            thread_id=payload.thread_id,
        )
    except ThreadloomError as exc:
        raise to_http_exception(exc) from exc
    return _to_info(session)


@router.get("/{client_id}", response_model=SessionInfo)
async def get_session(client_id: str, sessions: SessionManager = Depends(get_sessions)) -> SessionInfo:
    return _to_info(_require(sessions, client_id))


@router.post("/{client_id}/stop", response_model=SessionInfo)
async def stop_session(client_id: str, sessions: SessionManager = Depends(get_sessions)) -> SessionInfo:
    session = _require(sessions, client_id)
    session.runner.stop()
    return _to_info(session)


@router.delete("/{client_id}", response_model=DeleteResponse)
async def terminate_session(client_id: str, sessions: SessionManager = Depends(get_sessions)) -> DeleteResponse:
    if not await sessions.terminate(client_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return DeleteResponse(success=True)


@router.post("/{client_id}/messages", status_code=status.HTTP_202_ACCEPTED, response_model=PromptResponse)
async def post_message(
    client_id: str,
    payload: PromptRequest,
    sessions: SessionManager = Depends(get_sessions),
) -> PromptResponse:
    try:
        answered = sessions.submit(client_id, payload.content, payload.parent_key)
    except ThreadloomError as exc:
        raise to_http_exception(exc) from exc
    return PromptResponse(accepted_as="answer" if answered else "prompt")


@router.get("/{client_id}/events/{event_id}")
async def get_event(
    client_id: str,
    event_id: str,
    sessions: SessionManager = Depends(get_sessions),
) -> dict[str, Any]:
    thread = _require(sessions, client_id).runner.thread
    event = thread.get_event_by_id(event_id) if thread is not None else None
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    return event.to_payload()


@router.get("/{client_id}/state", response_model=SessionState)
async def get_state(
    client_id: str,
    sessions: SessionManager = Depends(get_sessions),
    store: SQLiteThreadStore = Depends(get_thread_store),
) -> SessionState:
    session = _require(sessions, client_id)
    thread = session.runner.thread
    summaries = await store.list_by_project(session.project_id, session.username)
    return SessionState(
        project=session.project_id,
        thread_id=thread.id if thread else None,
        thread_name=thread.name if thread else None,
        threads=[to_thread_summary(summary, session.username) for summary in summaries],
    )


@router.get("/{client_id}/stream")
async def stream_session(
    client_id: str,
    project: Optional[str] = Query(default=None, description="Project of a new session."),
    thread_id: Optional[str] = Query(default=None, description="Thread of a new session."),
    sessions: SessionManager = Depends(get_sessions),
    username: str = Depends(get_username),
) -> StreamingResponse:
    transport = SSETransport()
    try:
        if client_id in sessions:
            await sessions.attach(client_id, transport)
        elif project:
            await sessions.get_or_create(
                client_id, transport, project_id=project, username=username, thread_id=thread_id
            )
        else:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Query parameter 'project' is required to open a new session",
            )
    except ThreadloomError as exc:
        raise to_http_exception(exc) from exc

    async def event_stream() -> AsyncIterator[str]:
        try:
            async for chunk in transport.stream():
                yield chunk
        finally:
            await sessions.disconnect(client_id, transport)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


def _require(sessions: SessionManager, client_id: str) -> Session:
    session = sessions.find(client_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return session


def _to_info(session: Session) -> SessionInfo:
    runner = session.runner
    return SessionInfo(
        client_id=session.client_id,
        project=session.project_id,
        username=session.username,
        thread_id=runner.thread_id,
        thread_name=runner.thread.name if runner.thread else None,
        run_status=runner.run_status.value,
        connected=session.connected,
        one_shot=session.one_shot,
        busy=runner.busy,
        awaiting_answer=runner.awaiting_answer,
    )
