# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from threadloom.errors import ThreadloomError, ThreadNotFoundError
from threadloom.sessions.manager import SessionManager
from threadloom.threads.models import ThreadSummary
from threadloom.threads.store import SQLiteThreadStore
from threadloom.threads.thread import ConversationThread

from .dependencies import get_sessions, get_thread_store, get_username, to_http_exception
from .schemas import DeleteResponse, ThreadDetail, ThreadListResponse, ThreadSummaryModel, ThreadUpdateRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects/{project}/threads", tags=["threads"])


@router.get("", response_model=ThreadListResponse)
async def list_threads(
    project: str,
    all_users: bool = Query(default=False, alias="all", description="Include threads of every user."),
    store: SQLiteThreadStore = Depends(get_thread_store),
    username: str = Depends(get_username),
) -> ThreadListResponse:
    summaries = await store.list_by_project(project, None if all_users else username)
    return ThreadListResponse(threads=[to_thread_summary(summary, username) for summary in summaries])


@router.get("/{thread_id}", response_model=ThreadDetail)
async def get_thread(
    project: str,
    thread_id: str,
    sessions: SessionManager = Depends(get_sessions),
    store: SQLiteThreadStore = Depends(get_thread_store),
    username: str = Depends(get_username),
) -> ThreadDetail:
    thread = await _load(project, thread_id, sessions, store)
    return _to_detail(thread, username)


@router.patch("/{thread_id}", response_model=ThreadSummaryModel)
async def update_thread(
    project: str,
    thread_id: str,
    payload: ThreadUpdateRequest,
    sessions: SessionManager = Depends(get_sessions),
    store: SQLiteThreadStore = Depends(get_thread_store),
    username: str = Depends(get_username),
) -> ThreadSummaryModel:
    thread = await _load(project, thread_id, sessions, store)
    starring = None
    if payload.starred is not None:
        starring = set(thread.starring)
        if payload.starred:
            starring.add(username)
        else:
            starring.discard(username)

    summary = await store.update_metadata(project, thread_id, name=payload.name, starring=starring)
    if summary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found")
    # The runner of a live session saves its own copy; keep it in step.
    live = sessions.find_by_thread(project, thread_id)
    if live is not None and live.runner.thread is not None:
        if payload.name is not None:
            live.runner.thread.name = payload.name
        if starring is not None:
            live.runner.thread.starring = starring
    return to_thread_summary(summary, username)


@router.delete("/{thread_id}", response_model=DeleteResponse)
async def delete_thread(
    project: str,
    thread_id: str,
    sessions: SessionManager = Depends(get_sessions),
    store: SQLiteThreadStore = Depends(get_thread_store),
) -> DeleteResponse:
    live = sessions.find_by_thread(project, thread_id)
    if live is not None:
        await sessions.terminate(live.client_id)
    if not await store.delete(project, thread_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Thread not found")
    return DeleteResponse(success=True)


@router.delete("/{thread_id}/messages/{message_id}", response_model=ThreadDetail)
async def truncate_thread(
    project: str,
    thread_id: str,
    message_id: str,
    sessions: SessionManager = Depends(get_sessions),
    store: SQLiteThreadStore = Depends(get_thread_store),
    username: str = Depends(get_username),
) -> ThreadDetail:
    """Delete a user message together with everything that followed it."""
    thread = await _load(project, thread_id, sessions, store)
    try:
        thread.truncate_at_message(message_id)
        await store.save(thread)
    except ThreadloomError as exc:
        raise to_http_exception(exc) from exc
    logger.info("Truncated thread %s at message %s", thread_id, message_id)
    return _to_detail(thread, username)


async def _load(
    project: str,
    thread_id: str,
    sessions: SessionManager,
    store: SQLiteThreadStore,
) -> ConversationThread:
    live = sessions.find_by_thread(project, thread_id)
    if live is not None and live.runner.thread is not None:
        return live.runner.thread
    thread = await store.get_by_id(project, thread_id)
    if thread is None:
        raise to_http_exception(ThreadNotFoundError(project, thread_id))
    return thread


def to_thread_summary(summary: ThreadSummary, username: str) -> ThreadSummaryModel:
    return ThreadSummaryModel(
        id=summary.id,
        project_id=summary.project_id,
        username=summary.username,
        name=summary.name,
        summary=summary.summary,
        created_date=summary.created_date,
        modified_date=summary.modified_date,
        price=summary.price,
        starred=username in summary.starring,
    )


def _to_detail(thread: ConversationThread, username: str) -> ThreadDetail:
    return ThreadDetail(
        id=thread.id,
        project_id=thread.project_id,
        username=thread.username,
        name=thread.name,
        summary=thread.summary,
        created_date=thread.created_date,
        modified_date=thread.modified_date,
        price=thread.price,
        starred=username in thread.starring,
        messages=[message.to_payload() for message in thread.messages],
    )
