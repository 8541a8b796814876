# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

from .configuration import Settings
from .loader import get_bool_env, get_float_env, get_int_env, get_str_env, load_yaml_config

__all__ = [
    "Settings",
    "get_bool_env",
    "get_float_env",
    "get_int_env",
    "get_str_env",
    "load_yaml_config",
]
