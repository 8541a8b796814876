# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

from typing import Iterable


class ThreadloomError(Exception):
    """Base class for every error raised by threadloom."""


class ValidationError(ThreadloomError):
    """Client-fault error: surfaced as a descriptive 4xx response, never retried."""


class NotFoundError(ValidationError):
    pass


class ThreadNotFoundError(NotFoundError):
    def __init__(self, project_id: str, thread_id: str) -> None:
        super().__init__(f"Thread {thread_id} not found in project {project_id}")
        self.project_id = project_id
        self.thread_id = thread_id


class SessionNotFoundError(NotFoundError):
    def __init__(self, client_id: str) -> None:
        super().__init__(f"No session for client {client_id}")
        self.client_id = client_id


class TriggerNotFoundError(NotFoundError):
    def __init__(self, trigger_id: str) -> None:
        super().__init__(f"Trigger not found: {trigger_id}")
        self.trigger_id = trigger_id


class AgentNotFoundError(NotFoundError):
    pass


class ThreadMutationError(ValidationError):
    """Raised when a thread edit is not allowed in the thread's current state."""


class WebhookDisabledError(ValidationError):
    def __init__(self, trigger_id: str) -> None:
        super().__init__(f"Trigger {trigger_id} is not enabled for webhook execution")
        self.trigger_id = trigger_id


class MissingParametersError(ValidationError):
    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = sorted(set(missing))
        super().__init__(f"Missing required parameters: {', '.join(self.missing)}")


class InvalidScheduleError(ValidationError):
    pass


class ExecutionError(ValidationError):
    """The trigger cannot be executed as configured."""


class PersistenceError(ThreadloomError):
    """Raised when the thread store fails; the triggering operation is aborted."""


class SessionsClosedError(ThreadloomError):
    """The session manager is shutting down and accepts no new sessions."""
