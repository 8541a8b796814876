# Copyright (c) 2025 Bytedance Ltd. and/or its affiliates
# SPDX-License-Identifier: MIT

"""Summarises the older part of a thread when it no longer fits a context window."""

from __future__ import annotations

import logging
import re
from typing import Callable, Optional, Sequence

from threadloom.config.agents import ModelSpec
from threadloom.events import MessageEvent, SummaryEvent
from threadloom.llms.llm import ProviderAdapter
from threadloom.threads.thread import TRUNCATION_MARKER, Compactor, HistoryMessage

logger = logging.getLogger(__name__)

MIN_COMPACTION_BUDGET = 500
PROMPT_OVERHEAD = 150
SAFETY_MARGIN = 0.2
FAILED_MARKER = "[Previous conversation - compaction failed, recent messages available]"
EMPTY_SUMMARY = "...previous conversation truncated"

_SUMMARY_PATTERN = re.compile(r"<summary>(.*?)</summary>", re.DOTALL)


def build_transcript(messages: Sequence[HistoryMessage]) -> str:
    return "\n".join(
        f" - {message.role}: {message.content}" for message in messages if isinstance(message, MessageEvent)
    )


def summary_budget(max_chars: int) -> int:
    return max(100, max_chars // 20)


def max_transcript_chars(max_chars: int) -> int:
    return max(0, int((max_chars - PROMPT_OVERHEAD - summary_budget(max_chars)) * (1 - SAFETY_MARGIN)))


def clip_transcript(transcript: str, limit: int) -> str:
    """Keep the most recent part of the transcript, marking the cut with ``...``."""
    if len(transcript) <= limit:
        return transcript
    if limit <= 3:
        return "..."[:limit]
    return "..." + transcript[-(limit - 3) :]


def build_prompt(transcript: str) -> str:
    return (
        "Here is a transcript of a conversation:\n"
        f"<transcript>{transcript}</transcript>\n\n"
        "It can be summarized as:\n"
        "<summary>\n"
    )


def parse_summary(response: str) -> str:
    match = _SUMMARY_PATTERN.search(response)
    if match and match.group(1).strip():
        return match.group(1).strip()
    # The prompt opens the tag, so replies usually only close it.
    head = response.split("</summary>", 1)[0]
    return head.strip() or EMPTY_SUMMARY


def make_compactor(
    provider: ProviderAdapter,
    model: ModelSpec,
    warn: Optional[Callable[[str], None]] = None,
) -> Compactor:
    def _warn(message: str) -> None:
        logger.warning(message)
        if warn is not None:
            warn(message)

    async def compact(messages: list[HistoryMessage], max_chars: int) -> SummaryEvent:
        if max_chars < MIN_COMPACTION_BUDGET:
            _warn(f"Budget too small for compaction ({max_chars} chars). Using truncation marker.")
            return SummaryEvent(summary=TRUNCATION_MARKER)

        full_transcript = build_transcript(messages)
        transcript = clip_transcript(full_transcript, max_transcript_chars(max_chars))
        logger.debug(
            "Compacting %d messages: transcript %d -> %d chars, summary budget %d",
            len(messages),
            len(full_transcript),
            len(transcript),
            summary_budget(max_chars),
        )
        try:
            response = await provider.complete(
                build_prompt(transcript),
                model=model,
                max_tokens=summary_budget(max_chars),
            )
        except Exception as exc:
            _warn(
                f"Compaction failed ({exc}). Transcript: {len(transcript)} chars, "
                f"Budget: {max_chars} chars. Using truncation marker."
            )
            return SummaryEvent(summary=FAILED_MARKER)
        return SummaryEvent(summary=parse_summary(response))

    return compact
