# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, status
from fastapi.responses import JSONResponse

from threadloom.errors import ThreadloomError
from threadloom.triggers.coordinator import ExecutionCoordinator, ExecutionMode, ExecutionOptions

from .dependencies import get_coordinator, to_http_exception
from .schemas import ExecutionResponse, WebhookRequest
from .triggers_router import to_execution_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/{trigger_id}/execute", status_code=status.HTTP_201_CREATED, response_model=ExecutionResponse)
async def execute_webhook(
    trigger_id: str,
    payload: WebhookRequest,
    x_username: Optional[str] = Header(default=None),
    coordinator: ExecutionCoordinator = Depends(get_coordinator),
) -> JSONResponse:
    """Run a webhook-enabled trigger.

    Answers 201 with the thread id as soon as the run is started, or 200 with the
    final assistant message when ``awaitFinalAnswer`` is set.
    """
    try:
        result = await coordinator.execute_prompt(
            trigger_id,
            payload.template_parameters(),
            (x_username or "").strip() or None,
            ExecutionMode.WEBHOOK,
            ExecutionOptions(
                title=payload.title,
                await_final_answer=payload.await_final_answer,
                prompts=payload.prompts,
            ),
        )
    except ThreadloomError as exc:
        raise to_http_exception(exc) from exc
    logger.info("Webhook %s started thread %s", trigger_id, result.thread_id)
    return to_execution_response(result, awaited=payload.await_final_answer)
