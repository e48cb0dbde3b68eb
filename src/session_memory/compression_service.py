"""Compression service abstraction -- the external summariser boundary."""

from __future__ import annotations

import asyncio
import math
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from .models import Message
from .settings import (
    CompressionLevel,
    CompressionSettings,
    ModelName,
    Tier,
    base_settings,
    resolve_tiers,
)
from .transcript import estimate_tokens

# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


class PreservationInstruction(BaseModel):
    """A marker the compressor must keep verbatim, or may condense."""

    marker_id: str
    content: str
    weight: float
    verbatim: bool


class CompressionRequest(BaseModel):
    session_id: str
    messages: list[Message]
    settings: CompressionSettings
    level: CompressionLevel
    compaction_ratio: float
    model: ModelName
    tiers: list[Tier] = Field(default_factory=list)
    preservation: list[PreservationInstruction] = Field(default_factory=list)
    preservation_instructions: str = ""

    @property
    def verbatim_markers(self) -> list[PreservationInstruction]:
        return [p for p in self.preservation if p.verbatim]


class CompressionResult(BaseModel):
    text: str
    output_tokens: int
    output_messages: int
    messages: list[Message] = Field(default_factory=list)
    tier_results: list[dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# CompressionService ABC
# ---------------------------------------------------------------------------


class CompressionService(ABC):
    """Compresses a message list according to settings."""

    @abstractmethod
    async def compress(self, request: CompressionRequest) -> CompressionResult:
        """Return compressed text, token count and structured messages."""


# ---------------------------------------------------------------------------
# Stub implementation (for testing / offline development)
# ---------------------------------------------------------------------------


class StubCompressionService(CompressionService):
    """Deterministic truncating compressor; no model calls.

    Each message is cut to ``len / ratio`` characters of its tier's ratio and
    every verbatim marker is appended unchanged, so preservation checks pass.
    """

    def __init__(self, drop_markers: bool = False) -> None:
        self._drop_markers = drop_markers
        self.calls: list[CompressionRequest] = []

    async def compress(self, request: CompressionRequest) -> CompressionResult:
        self.calls.append(request)
        # suspend like a real network call
        await asyncio.sleep(0)
        tiers = request.tiers or resolve_tiers(request.settings)
        total = len(request.messages)
        out: list[Message] = []
        tier_counts = [0] * len(tiers)
        for i, msg in enumerate(request.messages):
            position = (i + 1) * 100 / max(total, 1)
            tier_idx = next(
                (t for t, tier in enumerate(tiers) if position <= tier.end_percent),
                len(tiers) - 1,
            )
            tier_counts[tier_idx] += 1
            ratio = tiers[tier_idx].compaction_ratio
            keep = max(1, math.ceil(len(msg.content) / ratio))
            out.append(msg.model_copy(update={"content": msg.content[:keep]}))
        if not self._drop_markers:
            for marker in request.verbatim_markers:
                out.append(Message(role="assistant", content=marker.content))
        text = "\n\n".join(
            f"## {m.role.capitalize()} [SUMMARIZED]\n\n{m.content}" for m in out
        )
        return CompressionResult(
            text=text,
            output_tokens=estimate_tokens(text),
            output_messages=len(out),
            messages=out,
            tier_results=[
                {"end_percent": t.end_percent, "compaction_ratio": t.compaction_ratio,
                 "messages": c}
                for t, c in zip(tiers, tier_counts)
            ],
        )


def describe_request(request: CompressionRequest) -> dict[str, Any]:
    base = base_settings(request.settings)
    return {
        "session_id": request.session_id,
        "mode": base.mode,
        "level": str(request.level),
        "messages": len(request.messages),
        "verbatim_markers": len(request.verbatim_markers),
    }
