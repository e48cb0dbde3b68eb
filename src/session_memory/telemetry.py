"""OpenTelemetry tracing for session memory operations.

Tracing is a no-op unless a ``MemoryTracer`` is initialised with a real
exporter (``stdout`` or ``otlp``).
"""

from __future__ import annotations

import contextlib
import os
from collections.abc import Generator
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.trace import NoOpTracer, Span, Tracer

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class TelemetryConfig:
    service_name: str = "session-memory"
    enabled: bool = True
    exporter: str = "none"  # "stdout" | "otlp" | "none"
    otlp_endpoint: str = "http://localhost:4317"

    @classmethod
    def from_env(cls) -> TelemetryConfig:
        """``SESSION_MEMORY_TRACE_EXPORTER`` and ``SESSION_MEMORY_OTLP_ENDPOINT``."""
        return cls(
            exporter=os.environ.get("SESSION_MEMORY_TRACE_EXPORTER", "none").lower(),
            otlp_endpoint=os.environ.get("SESSION_MEMORY_OTLP_ENDPOINT", cls.otlp_endpoint),
        )


def _span_processor(cfg: TelemetryConfig) -> SpanProcessor | None:
    """Processor for the configured exporter; ``None`` keeps tracing off."""
    from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

    if cfg.exporter == "stdout":
        return SimpleSpanProcessor(ConsoleSpanExporter())
    if cfg.exporter == "otlp":
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:  # pragma: no cover
            # OTLP exporter is an optional extra; stay on the no-op tracer.
            return None
        return SimpleSpanProcessor(OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True))
    msg = f"Unknown telemetry exporter: {cfg.exporter}"
    raise ValueError(msg)


# ---------------------------------------------------------------------------
# MemoryTracer
# ---------------------------------------------------------------------------


class MemoryTracer:
    """Owns the tracer provider and hands out spans."""

    def __init__(self, config: TelemetryConfig | None = None) -> None:
        self._config = config or TelemetryConfig()
        self._provider: TracerProvider | None = None
        self._tracer: Tracer = NoOpTracer()

    @property
    def active(self) -> bool:
        return self._provider is not None

    def init(self) -> None:
        cfg = self._config
        if not cfg.enabled or cfg.exporter == "none":
            return
        processor = _span_processor(cfg)
        if processor is None:
            return
        provider = TracerProvider(resource=Resource.create({"service.name": cfg.service_name}))
        provider.add_span_processor(processor)
        self._provider = provider
        self._tracer = provider.get_tracer(cfg.service_name)

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[Span, None, None]:
        with self._tracer.start_as_current_span(name) as s:
            for k, v in (attributes or {}).items():
                if v is not None:
                    s.set_attribute(k, v)
            yield s

    def record_event(self, name: str, attributes: dict[str, Any] | None = None) -> None:
        """Attach an event to the active span, if one is recording."""
        current = trace.get_current_span()
        if current.is_recording():
            current.add_event(name, dict(attributes or {}))

    def shutdown(self) -> None:
        if self._provider is not None:
            self._provider.shutdown()
            self._provider = None
            self._tracer = NoOpTracer()


_DEFAULT_TRACER: MemoryTracer | None = None


def get_tracer() -> MemoryTracer:
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is None:
        _DEFAULT_TRACER = MemoryTracer()
    return _DEFAULT_TRACER


def configure_tracing(config: TelemetryConfig) -> MemoryTracer:
    """Replace the module-level tracer with an initialised one."""
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is not None:
        _DEFAULT_TRACER.shutdown()
    _DEFAULT_TRACER = MemoryTracer(config)
    _DEFAULT_TRACER.init()
    return _DEFAULT_TRACER


# ---------------------------------------------------------------------------
# Convenience context managers
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def trace_create_version(project_id: str, session_id: str, mode: str) -> Generator[Span, None, None]:
    attrs = {"project.id": project_id, "session.id": session_id, "compression.mode": mode}
    with get_tracer().span("versions/create", attrs) as s:
        yield s


@contextlib.contextmanager
def trace_compose(project_id: str, name: str, components: int) -> Generator[Span, None, None]:
    attrs = {"project.id": project_id, "composition.name": name, "composition.components": components}
    with get_tracer().span("composition/compose", attrs) as s:
        yield s


@contextlib.contextmanager
def trace_lock_wait(key: str) -> Generator[Span, None, None]:
    with get_tracer().span("lock/wait", {"lock.key": key}) as s:
        yield s
