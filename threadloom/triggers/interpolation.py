# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from __future__ import annotations

import re
from typing import Any, Mapping, Optional, Sequence, Union

from threadloom.errors import MissingParametersError

PARAMETERS_KEY = "PARAMETERS"
_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")

Parameters = Union[str, Mapping[str, Any], None]


def normalize_parameters(parameters: Parameters) -> Union[str, dict[str, str], None]:
    """Collapse ``{"PARAMETERS": "x"}`` into ``"x"`` and empty values into None."""
    if parameters is None:
        return None
    if isinstance(parameters, str):
        return parameters if parameters.strip() else None
    if not parameters:
        return None
    if set(parameters) == {PARAMETERS_KEY} and isinstance(parameters[PARAMETERS_KEY], str):
        return normalize_parameters(parameters[PARAMETERS_KEY])
    return {str(key): "" if value is None else str(value) for key, value in parameters.items()}


def find_placeholders(commands: Sequence[str]) -> set[str]:
    return {match for command in commands for match in _PLACEHOLDER.findall(command)}


def interpolate_commands(commands: Sequence[str], parameters: Parameters = None) -> list[str]:
    """Substitute parameters into a command template list.

    A string fills every ``{{PARAMETERS}}``; without any placeholder it is appended to
    the first command only. A mapping fills each ``{{key}}``. Any placeholder left
    afterwards raises ``MissingParametersError`` naming the keys.
    """
    normalized: Optional[Union[str, dict[str, str]]] = normalize_parameters(parameters)
    if isinstance(normalized, str):
        placeholder = "{{" + PARAMETERS_KEY + "}}"
        if any(placeholder in command for command in commands):
            processed = [command.replace(placeholder, normalized) for command in commands]
        elif not find_placeholders(commands) and commands:
            processed = [f"{commands[0]} {normalized}".strip(), *commands[1:]]
        else:
            processed = list(commands)
    elif isinstance(normalized, dict):
        processed = []
        for command in commands:
            for key, value in normalized.items():
                command = command.replace("{{" + key + "}}", value)
            processed.append(command)
    else:
        processed = list(commands)

    missing = find_placeholders(processed)
    if missing:
        raise MissingParametersError(missing)
    return processed
