# conftest.py
from __future__ import annotations

import os
import uuid

import pytest
from prometheus_client import CollectorRegistry

from provkit.core.config import CoordinatorConfig
from provkit.core.log import (
    bind_context,
    configure_from_env,
    enable_stdout_logging,
    get_logger,
    log_context,
)
from provkit.runtime.metrics import CoordinatorMetrics


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: fast tests with fakes and a manual clock")
    config.addinivalue_line("markers", "scenario: multi-attempt runs on the real event loop with scaled-down timings")
    config.addinivalue_line("markers", "cfg(**overrides): per-test CoordinatorConfig overrides")


def pytest_addoption(parser):
    parser.addoption(
        "--log-json",
        action="store_true",
        default=False,
        help="Emit provkit logs in JSON format during tests",
    )


@pytest.fixture(scope="session", autouse=True)
def _configure_provkit_logging(request):
    configure_from_env()
    prefer_json = request.config.getoption("--log-json")
    if os.getenv("PROVKIT_LOG_STDOUT", "").lower() not in ("1", "true", "yes", "on"):
        enable_stdout_logging(
            level="DEBUG",
            json_output=prefer_json,
            pretty=not prefer_json,
            route_errors_to_stderr=True,
        )
    bind_context(role="pytest")


@pytest.fixture(scope="session")
def session_run_id():
    return uuid.uuid4().hex[:8]


@pytest.fixture(autouse=True)
def _test_log_context(request, session_run_id):
    log = get_logger("test")
    with log_context(pytest_nodeid=request.node.nodeid, test=request.node.name, test_run=session_run_id):
        log.debug("pytest.test.start", event="pytest.test.start")
        yield


@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    outcome = yield
    rep = outcome.get_result()
    if rep.when == "call":
        log = get_logger("test")
        with log_context(pytest_nodeid=item.nodeid, test=item.name):
            log.debug(
                "pytest.test.finish",
                event="pytest.test.finish",
                outcome=rep.outcome,
                duration=getattr(rep, "duration", None),
            )


@pytest.fixture
def tlog():
    return get_logger("test")


@pytest.fixture
def registry():
    return CollectorRegistry()


@pytest.fixture
def metrics(registry):
    """Fresh metric set per test so counters start at zero."""
    return CoordinatorMetrics.create(registry)


_FAST_COORD = {
    "holder_id": "pytest",
    "lease_ttl_sec": 3.0,
    "lock_timeout_sec": 5.0,
    "lock_poll_sec": 0.02,
    "release_timeout_sec": 1.0,
    "retry_max_attempts": 3,
    "retry_base_delay_sec": 0.01,
    "retry_ceiling_sec": 5.0,
}


@pytest.fixture
def coord_cfg(request, monkeypatch):
    for k in list(os.environ):
        if k.startswith("PROVKIT_") and not k.startswith("PROVKIT_LOG_"):
            monkeypatch.delenv(k, raising=False)
    m = request.node.get_closest_marker("cfg")
    overrides = {**_FAST_COORD, **(m.kwargs if m else {})}
    return CoordinatorConfig.load(overrides=overrides)
