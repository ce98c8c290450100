import io
import json
import logging

import pytest
from prometheus_client import CollectorRegistry

from provkit.core.log import (
    JsonFormatter,
    configure_from_env,
    enable_stdout_logging,
    get_logger,
    log_context,
    swallow,
)
from provkit.observability.tracing import trace
from provkit.runtime.metrics import CoordinatorMetrics

pytestmark = [pytest.mark.unit]


def test_json_formatter_merges_context_and_extra():
    rec = logging.LogRecord("provkit.test", logging.INFO, __file__, 1, "mutex.acquired", None, None)
    rec.event = "mutex.acquired"
    rec.waited_ms = 12
    with log_context(run_id="r1", fingerprint="abc123-2025-11-07"):
        out = json.loads(JsonFormatter().format(rec))
    assert out["message"] == "mutex.acquired"
    assert out["run_id"] == "r1"
    assert out["fingerprint"] == "abc123-2025-11-07"
    assert out["waited_ms"] == 12
    assert out["level"] == "INFO"


def test_swallow_logs_and_suppresses(caplog):
    log = get_logger("test.swallow")
    caplog.set_level(logging.DEBUG, logger="provkit")
    with swallow(logger=log, code="unit.swallow", msg="ignored failure", level=logging.WARNING):
        raise RuntimeError("nope")
    rec = next(r for r in caplog.records if getattr(r, "code", "") == "unit.swallow")
    assert rec.levelno == logging.WARNING
    assert rec.exc_info[0] is RuntimeError


def test_swallow_reraise():
    with pytest.raises(ValueError):
        with swallow(code="unit.reraise", reraise=True):
            raise ValueError("x")


def test_kw_adapter_moves_fields_to_extra(caplog):
    caplog.set_level(logging.INFO, logger="provkit")
    get_logger("test.kw").info("run.transition", event="run.transition", frm="pending", to="fingerprint_derived")
    rec = next(r for r in caplog.records if getattr(r, "event", "") == "run.transition")
    assert rec.frm == "pending" and rec.to == "fingerprint_derived"


@pytest.mark.asyncio
async def test_trace_decorator_preserves_results():
    @trace("unit.async")
    async def a(x):
        return x + 1

    @trace("unit.sync")
    def s(x):
        return x * 2

    assert await a(1) == 2
    assert s(3) == 6
    assert a.__name__ == "a"


def test_metrics_default_instance_is_shared_and_custom_registries_are_isolated():
    assert CoordinatorMetrics.create() is CoordinatorMetrics.create()
    reg = CollectorRegistry()
    m = CoordinatorMetrics.create(reg)
    m.runs_total.labels("succeeded", "none").inc()
    assert reg.get_sample_value("provkit_runs_total", {"outcome": "succeeded", "reason": "none"}) == 1


@pytest.fixture
def restore_log_handlers():
    level = logging.getLogger("provkit").level
    yield
    logging.getLogger("provkit").setLevel(level)
    enable_stdout_logging(level="DEBUG", pretty=True, route_errors_to_stderr=True)


def test_configure_from_env_writes_to_the_given_stream(monkeypatch, capsys, restore_log_handlers):
    buf = io.StringIO()
    monkeypatch.setenv("PROVKIT_LOG_STDOUT", "1")
    monkeypatch.setenv("PROVKIT_LOG_LEVEL", "INFO")
    monkeypatch.delenv("PROVKIT_LOG_PRETTY", raising=False)
    configure_from_env(stream=buf)
    get_logger("test.stream").info("log.stream_check", event="log.stream_check")
    line = json.loads(buf.getvalue().strip().splitlines()[-1])
    assert line["message"] == "log.stream_check"
    assert "log.stream_check" not in capsys.readouterr().out
