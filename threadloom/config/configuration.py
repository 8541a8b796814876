# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .loader import get_float_env, get_int_env, get_str_env


@dataclass(slots=True)
class Settings:
    """Process-wide settings; every timeout is expressed in seconds."""

    home: Path = field(default_factory=lambda: Path.cwd() / ".threadloom")
    heartbeat_interval: float = 10.0
    idle_timeout: float = 8 * 60 * 60
    oneshot_cleanup_delay: float = 5 * 60
    sync_wait_timeout: float = 10 * 60
    resolve_timeout: float = 10.0
    thinking_interval: float = 1.0
    scheduler_interval: float = 30.0
    sqlite_busy_timeout_ms: int = 5000
    thread_ttl_days: int = 30
    cleanup_interval: float = 24 * 60 * 60
    cleanup_initial_delay: float = 5 * 60
    default_username: str = "anonymous"
    allowed_origins: list[str] = field(default_factory=lambda: ["http://localhost:3000"])

    @property
    def projects_dir(self) -> Path:
        return self.home / "projects"

    @property
    def db_path(self) -> Path:
        return self.home / "threadloom.db"

    @classmethod
    def from_env(cls) -> "Settings":
        home = get_str_env("THREADLOOM_HOME", "")
        origins = get_str_env("ALLOWED_ORIGINS", "http://localhost:3000")
        return cls(
            home=Path(home).expanduser() if home else Path.cwd() / ".threadloom",
            heartbeat_interval=get_float_env("HEARTBEAT_INTERVAL_SECONDS", 10.0),
            idle_timeout=get_float_env("SESSION_IDLE_TIMEOUT_SECONDS", 8 * 60 * 60),
            oneshot_cleanup_delay=get_float_env("ONESHOT_CLEANUP_DELAY_SECONDS", 5 * 60),
            sync_wait_timeout=get_float_env("SYNC_WAIT_TIMEOUT_SECONDS", 10 * 60),
            resolve_timeout=get_float_env("THREAD_RESOLVE_TIMEOUT_SECONDS", 10.0),
            thinking_interval=get_float_env("THINKING_INTERVAL_SECONDS", 1.0),
            scheduler_interval=get_float_env("SCHEDULER_INTERVAL_SECONDS", 30.0),
            sqlite_busy_timeout_ms=get_int_env("SQLITE_BUSY_TIMEOUT_MS", 5000),
            thread_ttl_days=get_int_env("THREAD_TTL_DAYS", 30),
            default_username=get_str_env("DEFAULT_USERNAME", "anonymous"),
            allowed_origins=[origin.strip() for origin in origins.split(",") if origin.strip()],
        )
