# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

"""
provkit.observability.tracing
=============================

OpenTelemetry instrumentation bootstrap.

- `setup_tracing()` configures a service-wide tracer provider (optionally exporting over OTLP).
- `trace()` decorator annotates sync/async callables with spans.

Without `setup_tracing()` the OpenTelemetry API hands out no-op tracers, so
instrumented code costs next to nothing in tests.

Usage:
    setup_tracing(service_name="provkit", otlp_endpoint="http://otelcol:4317")

    @trace("coordinator.ensure")
    async def ensure(...): ...
"""

import asyncio
import inspect
import functools
import logging
from collections.abc import Callable
from typing import Any, TypeVar, cast

from opentelemetry import trace as otel_trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from ..core.log import get_logger, warn_once

__all__ = ["setup_tracing", "trace"]

_log = get_logger("observability.tracing")
_F = TypeVar("_F", bound=Callable[..., Any])
_TRACER_NAME = "provkit"


def setup_tracing(
    *,
    service_name: str,
    otlp_endpoint: str | None = None,
    console: bool = False,
    ratio: float = 1.0,
) -> TracerProvider:
    """
    Configure the global tracer provider.

    Args:
        service_name: logical service name for resources.
        otlp_endpoint: OTLP gRPC endpoint; requires opentelemetry-exporter-otlp.
        console: also print finished spans to stdout (local debugging).
        ratio: sampling ratio in [0.0..1.0].
    """
    provider = TracerProvider(
        resource=Resource.create({"service.name": service_name}),
        sampler=TraceIdRatioBased(max(0.0, min(1.0, ratio))),
    )
    if otlp_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        except ImportError:
            warn_once(
                _log,
                "tracing.no_otlp",
                "opentelemetry-exporter-otlp is not installed; OTLP export disabled",
                level=logging.ERROR,
            )
        else:
            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint, insecure=True)))
            _log.info("otel tracing configured (otlp)", endpoint=otlp_endpoint)
    if console:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    otel_trace.set_tracer_provider(provider)
    return provider


def trace(name: str) -> Callable[[_F], _F]:
    """Decorator to trace function execution with a span named `name`."""

    def _decorator(func: _F) -> _F:
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def _aw(*args: Any, **kwargs: Any):
                with otel_trace.get_tracer(_TRACER_NAME).start_as_current_span(name):
                    return await func(*args, **kwargs)

            return cast(_F, _aw)

        @functools.wraps(func)
        def _sw(*args: Any, **kwargs: Any):
            with otel_trace.get_tracer(_TRACER_NAME).start_as_current_span(name):
                return func(*args, **kwargs)

        return cast(_F, _sw)

    return _decorator
