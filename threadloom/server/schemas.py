# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from threadloom.triggers.models import IntervalSchedule

_MAX_NAME_LENGTH = 120


class SessionOpenRequest(BaseModel):
    client_id: Optional[str] = Field(default=None, description="Reconnects to this session when it is still alive.")
    project: str
    thread_id: Optional[str] = Field(default=None, description="Existing thread to open; a new one when omitted.")


class SessionInfo(BaseModel):
    client_id: str
    project: str
    username: str
    thread_id: Optional[str] = None
    thread_name: Optional[str] = None
    run_status: str
    connected: bool
    one_shot: bool
    busy: bool
    awaiting_answer: bool


class PromptRequest(BaseModel):
    content: str
    parent_key: Optional[str] = Field(default=None, description="Timestamp of the choice this message answers.")

    @field_validator("content")
    @classmethod
    def validate_content(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message content must not be empty")
        return value


class PromptResponse(BaseModel):
    accepted_as: Literal["answer", "prompt"]


class ThreadSummaryModel(BaseModel):
    id: str
    project_id: str
    username: str
    name: str
    summary: Optional[str] = None
    created_date: datetime
    modified_date: datetime
    price: float
    starred: bool = False


class ThreadDetail(ThreadSummaryModel):
    messages: list[dict[str, Any]] = Field(default_factory=list)


class ThreadListResponse(BaseModel):
    threads: list[ThreadSummaryModel]


class SessionState(BaseModel):
    project: str
    thread_id: Optional[str] = None
    thread_name: Optional[str] = None
    threads: list[ThreadSummaryModel] = Field(default_factory=list)


class ThreadUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, description="Manual thread name override.")
    starred: Optional[bool] = Field(default=None, description="Star or unstar the thread for the caller.")

    @field_validator("name")
    @classmethod
    def validate_name_length(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip()
        if not value:
            return None
        if len(value) > _MAX_NAME_LENGTH:
            raise ValueError(f"Name must be {_MAX_NAME_LENGTH} characters or fewer")
        return value


class DeleteResponse(BaseModel):
    success: bool


class TriggerCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    description: Optional[str] = None
    commands: list[str] = Field(default_factory=list)
    parameters: Optional[Union[str, dict[str, str]]] = None
    schedule: Optional[IntervalSchedule] = None
    thread_lifetime: Optional[str] = None
    webhook_enabled: bool = False
    enabled: bool = True

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Trigger name must not be empty")
        return value


class TriggerUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    description: Optional[str] = None
    commands: Optional[list[str]] = None
    parameters: Optional[Union[str, dict[str, str]]] = None
    schedule: Optional[IntervalSchedule] = None
    thread_lifetime: Optional[str] = None
    webhook_enabled: Optional[bool] = None
    enabled: Optional[bool] = None


class TriggerListResponse(BaseModel):
    triggers: list[dict[str, Any]]


class TriggerRunRequest(BaseModel):
    parameters: Optional[Union[str, dict[str, str]]] = None
    title: Optional[str] = None
    await_final_answer: bool = False


class WebhookRequest(BaseModel):
    """Webhook body. Keys other than the known ones are taken as template parameters."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    title: Optional[str] = None
    prompts: Optional[list[str]] = None
    parameters: Optional[Union[str, dict[str, str]]] = None
    await_final_answer: bool = Field(default=False, alias="awaitFinalAnswer")

    def template_parameters(self) -> Optional[Union[str, dict[str, str]]]:
        if self.parameters is not None:
            return self.parameters
        extra = {key: str(value) for key, value in (self.model_extra or {}).items()}
        return extra or None


class ExecutionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    thread_id: str = Field(alias="threadId")
    last_event: Optional[dict[str, Any]] = Field(default=None, alias="lastEvent")
