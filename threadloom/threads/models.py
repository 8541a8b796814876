# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(slots=True)
class ThreadSummary:
    id: str
    project_id: str
    username: str
    name: str
    summary: Optional[str]
    created_date: datetime
    modified_date: datetime
    price: float
    starring: list[str] = field(default_factory=list)


@dataclass(slots=True)
class StoredMessage:
    """A single message row as returned by type queries across a project."""

    thread_id: str
    timestamp: str
    type: str
    role: Optional[str]
    name: Optional[str]
    content: str
    length: int
