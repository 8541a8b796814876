# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from threadloom.errors import ValidationError

from .models import Trigger, is_safe_identifier

logger = logging.getLogger(__name__)

TRIGGERS_DIR = "triggers"
FILE_SUFFIX = ".yml"


class TriggerStore:
    """Triggers kept as one YAML file each under ``<projects_dir>/<project>/triggers/``."""

    def __init__(self, projects_dir: str | Path) -> None:
        self._projects_dir = Path(projects_dir)
        self._write_lock = asyncio.Lock()

    def _dir(self, project: str) -> Path:
        if not is_safe_identifier(project):
            raise ValidationError(f"Invalid project name: {project}")
        return self._projects_dir / project / TRIGGERS_DIR

    def _path(self, project: str, trigger_id: str) -> Path:
        if not is_safe_identifier(trigger_id):
            raise ValidationError(f"Invalid trigger id: {trigger_id}")
        return self._dir(project) / f"{trigger_id}{FILE_SUFFIX}"

    async def list_by_project(self, project: str) -> list[Trigger]:
        directory = self._dir(project)
        return await asyncio.to_thread(self._read_dir, directory)

    async def list_all(self) -> list[Trigger]:
        def _read_all() -> list[Trigger]:
            if not self._projects_dir.is_dir():
                return []
            triggers: list[Trigger] = []
            for project_dir in sorted(self._projects_dir.iterdir()):
                if project_dir.is_dir():
                    triggers.extend(self._read_dir(project_dir / TRIGGERS_DIR))
            return triggers

        return await asyncio.to_thread(_read_all)

    async def get(self, project: str, trigger_id: str) -> Optional[Trigger]:
        path = self._path(project, trigger_id)
        return await asyncio.to_thread(self._read_file, path)

    async def find(self, trigger_id: str) -> Optional[Trigger]:
        """Look a trigger up by id alone, across every project."""
        if not is_safe_identifier(trigger_id):
            return None

        def _find() -> Optional[Trigger]:
            if not self._projects_dir.is_dir():
                return None
            for project_dir in sorted(self._projects_dir.iterdir()):
                path = project_dir / TRIGGERS_DIR / f"{trigger_id}{FILE_SUFFIX}"
                if path.is_file():
                    return self._read_file(path)
            return None

        return await asyncio.to_thread(_find)

    async def save(self, trigger: Trigger) -> Trigger:
        path = self._path(trigger.project, trigger.id)
        payload = trigger.model_dump(mode="json", exclude_none=True)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False, allow_unicode=True)
            tmp_path.replace(path)

        async with self._write_lock:
            await asyncio.to_thread(_write)
        logger.debug("Saved trigger %s in project %s", trigger.id, trigger.project)
        return trigger

    async def delete(self, project: str, trigger_id: str) -> bool:
        path = self._path(project, trigger_id)

        def _delete() -> bool:
            if not path.is_file():
                return False
            path.unlink()
            return True

        async with self._write_lock:
            removed = await asyncio.to_thread(_delete)
        if removed:
            logger.info("Deleted trigger %s from project %s", trigger_id, project)
        return removed

    def _read_dir(self, directory: Path) -> list[Trigger]:
        if not directory.is_dir():
            return []
        triggers = []
        for path in sorted(directory.glob(f"*{FILE_SUFFIX}")):
            trigger = self._read_file(path)
            if trigger is not None:
                triggers.append(trigger)
        return triggers

    @staticmethod
    def _read_file(path: Path) -> Optional[Trigger]:
        if not path.is_file():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return Trigger.model_validate(data)
        except (OSError, yaml.YAMLError, PydanticValidationError) as exc:
            logger.warning("Skipping unreadable trigger file %s: %s", path, exc)
            return None
