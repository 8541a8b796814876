# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from threadloom.errors import AgentNotFoundError

from .loader import load_yaml_config

logger = logging.getLogger(__name__)


class ModelPrice(BaseModel):
    """Prices in currency units per million tokens."""

    input: float = 0.0
    output: float = 0.0
    cache_read: float = 0.0
    cache_write: float = 0.0


class ModelSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    name: str
    alias: Optional[str] = None
    context_window: int = 128_000
    price: ModelPrice = Field(default_factory=ModelPrice)
    api_key: Optional[str] = None
    base_url: Optional[str] = None

    def matches(self, name_or_alias: str) -> bool:
        wanted = name_or_alias.lower()
        return self.name.lower() == wanted or (self.alias or "").lower() == wanted


class AgentDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ""
    instructions: str = ""
    tools: tuple[str, ...] = ()
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        value = value.strip()
        if not value or any(ch.isspace() for ch in value):
            raise ValueError("Agent name must be a single non-empty word")
        return value

    @property
    def allowed_tools(self) -> frozenset[str]:
        return frozenset(self.tools)


class ProjectConfig(BaseModel):
    default_agent: Optional[str] = None
    agents: list[AgentDefinition] = Field(default_factory=list)
    models: list[ModelSpec] = Field(default_factory=list)


class ConfigResolver(Protocol):
    """Read-only view of the agents and models available to a project."""

    def get_agents(self, project_id: str, username: Optional[str] = None) -> list[AgentDefinition]: ...

    def get_model(self, project_id: str, name_or_alias: Optional[str]) -> Optional[ModelSpec]: ...

    def find_agent(self, project_id: str, name: str) -> Optional[AgentDefinition]: ...

    def get_default_agent(self, project_id: str) -> AgentDefinition: ...


class YamlConfigResolver:
    """Resolves project configuration from `<projects_dir>/<project>/project.yaml`."""

    FILE_NAME = "project.yaml"

    def __init__(self, projects_dir: Path | str, default_models: Optional[list[ModelSpec]] = None) -> None:
        self._projects_dir = Path(projects_dir)
        self._default_models = list(default_models or [])

    def load(self, project_id: str) -> ProjectConfig:
        path = self._projects_dir / project_id / self.FILE_NAME
        raw = load_yaml_config(str(path))
        try:
            return ProjectConfig.model_validate(raw)
        except ValidationError:
            logger.exception("Invalid project configuration at %s", path)
            return ProjectConfig()

    def get_agents(self, project_id: str, username: Optional[str] = None) -> list[AgentDefinition]:
        return list(self.load(project_id).agents)

    def get_agent(self, project_id: str, name: str) -> AgentDefinition:
        for agent in self.get_agents(project_id):
            if agent.name.lower() == name.lower():
                return agent
        raise AgentNotFoundError(f"Agent {name} not found in project {project_id}")

    def find_agent(self, project_id: str, name: str) -> Optional[AgentDefinition]:
        try:
            return self.get_agent(project_id, name)
        except AgentNotFoundError:
            return None

    def get_default_agent(self, project_id: str) -> AgentDefinition:
        config = self.load(project_id)
        if config.default_agent:
            return self.get_agent(project_id, config.default_agent)
        if not config.agents:
            raise AgentNotFoundError(f"No agent configured for project {project_id}")
        return config.agents[0]

    def get_model(self, project_id: str, name_or_alias: Optional[str]) -> Optional[ModelSpec]:
        models = [*self.load(project_id).models, *self._default_models]
        if not models:
            return None
        if not name_or_alias:
            return models[0]
        for model in models:
            if model.alias and model.alias.lower() == name_or_alias.lower():
                return model
        return next((model for model in models if model.matches(name_or_alias)), None)
