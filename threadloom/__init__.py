# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Conversation orchestration engine: threads, completions, sessions and triggers."""

__version__ = "0.1.0"
