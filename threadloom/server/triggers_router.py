# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from threadloom.errors import ThreadloomError
from threadloom.triggers.coordinator import ExecutionCoordinator, ExecutionMode, ExecutionOptions, ExecutionResult
from threadloom.triggers.models import Trigger
from threadloom.triggers.schedule import calculate_next_run
from threadloom.triggers.store import TriggerStore

from .dependencies import (
    HTTP_422_UNPROCESSABLE,
    get_coordinator,
    get_trigger_store,
    get_username,
    to_http_exception,
)
from .schemas import (
    DeleteResponse,
    ExecutionResponse,
    TriggerCreateRequest,
    TriggerListResponse,
    TriggerRunRequest,
    TriggerUpdateRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/projects/{project}/triggers", tags=["triggers"])


@router.get("", response_model=TriggerListResponse)
async def list_triggers(project: str, triggers: TriggerStore = Depends(get_trigger_store)) -> TriggerListResponse:
    try:
        items = await triggers.list_by_project(project)
    except ThreadloomError as exc:
        raise to_http_exception(exc) from exc
    return TriggerListResponse(triggers=[to_payload(trigger) for trigger in items])


@router.get("/{trigger_id}")
async def get_trigger(
    project: str,
    trigger_id: str,
    triggers: TriggerStore = Depends(get_trigger_store),
) -> dict[str, Any]:
    return to_payload(await _require(triggers, project, trigger_id))


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_trigger(
    project: str,
    payload: TriggerCreateRequest,
    triggers: TriggerStore = Depends(get_trigger_store),
    username: str = Depends(get_username),
) -> dict[str, Any]:
    trigger = _build(project=project, created_by=username, **payload.model_dump())
    trigger.next_run = _first_run(trigger)
    await triggers.save(trigger)
    logger.info("Trigger %s (%s) created in project %s by %s", trigger.id, trigger.name, project, username)
    return to_payload(trigger)


@router.put("/{trigger_id}")
async def update_trigger(
    project: str,
    trigger_id: str,
    payload: TriggerUpdateRequest,
    triggers: TriggerStore = Depends(get_trigger_store),
) -> dict[str, Any]:
    current = await _require(triggers, project, trigger_id)
    changes = payload.model_dump(exclude_unset=True)
    updated = _build(**{**current.model_dump(), **changes})
    if "schedule" in changes or "enabled" in changes:
        updated.next_run = _first_run(updated)
    await triggers.save(updated)
    logger.info("Trigger %s updated (%s)", trigger_id, ", ".join(sorted(changes)) or "no changes")
    return to_payload(updated)


@router.delete("/{trigger_id}", response_model=DeleteResponse)
async def delete_trigger(
    project: str,
    trigger_id: str,
    triggers: TriggerStore = Depends(get_trigger_store),
) -> DeleteResponse:
    try:
        deleted = await triggers.delete(project, trigger_id)
    except ThreadloomError as exc:
        raise to_http_exception(exc) from exc
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trigger not found")
    return DeleteResponse(success=True)


@router.post("/{trigger_id}/run", status_code=status.HTTP_201_CREATED, response_model=ExecutionResponse)
async def run_trigger(
    project: str,
    trigger_id: str,
    payload: TriggerRunRequest,
    triggers: TriggerStore = Depends(get_trigger_store),
    coordinator: ExecutionCoordinator = Depends(get_coordinator),
    username: str = Depends(get_username),
) -> JSONResponse:
    await _require(triggers, project, trigger_id)
    try:
        result = await coordinator.execute_prompt(
            trigger_id,
            payload.parameters,
            username,
            ExecutionMode.DIRECT,
            ExecutionOptions(title=payload.title, await_final_answer=payload.await_final_answer),
        )
    except ThreadloomError as exc:
        raise to_http_exception(exc) from exc
    return to_execution_response(result, awaited=payload.await_final_answer)


def to_payload(trigger: Trigger) -> dict[str, Any]:
    return trigger.model_dump(mode="json")


def to_execution_response(result: ExecutionResult, *, awaited: bool) -> JSONResponse:
    """201 with the thread id, or 200 with the thread id and the final answer (possibly null)."""
    body = ExecutionResponse(
        thread_id=result.thread_id,
        last_event=result.last_event.to_payload() if result.last_event is not None else None,
    )
    if awaited:
        return JSONResponse(body.model_dump(by_alias=True), status_code=status.HTTP_200_OK)
    return JSONResponse(body.model_dump(by_alias=True, exclude={"last_event"}), status_code=status.HTTP_201_CREATED)


async def _require(triggers: TriggerStore, project: str, trigger_id: str) -> Trigger:
    try:
        trigger = await triggers.get(project, trigger_id)
    except ThreadloomError as exc:
        raise to_http_exception(exc) from exc
    if trigger is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Trigger not found")
    return trigger


def _build(**fields: Any) -> Trigger:
    try:
        return Trigger.model_validate(fields)
    except PydanticValidationError as exc:
        raise HTTPException(
            status_code=HTTP_422_UNPROCESSABLE,
            detail=exc.errors(include_url=False, include_context=False),
        ) from exc


def _first_run(trigger: Trigger) -> Optional[datetime]:
    if trigger.schedule is None or not trigger.enabled:
        return None
    return calculate_next_run(trigger.schedule, datetime.now(timezone.utc), trigger.occurrence_count)
