import json
import sys

import pytest

from provkit import cli
from provkit.provisioning.base import ResourceKind
from tests.helpers import fake_providers

pytestmark = [
    pytest.mark.scenario,
    pytest.mark.skipif(sys.platform == "win32", reason="posix shell actions"),
]


@pytest.fixture(autouse=True)
def _isolated(monkeypatch):
    import os

    for k in list(os.environ):
        if k.startswith("PROVKIT_") and not k.startswith("PROVKIT_LOG_"):
            monkeypatch.delenv(k, raising=False)
    providers = fake_providers()
    monkeypatch.setattr(cli, "_providers", lambda args: providers)
    # keep the session log handlers installed by conftest
    monkeypatch.setattr(cli, "configure_from_env", lambda **kw: None)
    monkeypatch.setenv("PROVKIT_LOCK_POLL_SEC", "0.02")
    return providers


def _report(out: str) -> dict:
    # log lines may share stdout with the report
    line = next(ln for ln in reversed(out.splitlines()) if ln.startswith("{\"v\""))
    return json.loads(line)


def test_run_passes_names_to_action_and_reports_success(tmp_path, capfd):
    seen = tmp_path / "env.txt"
    code = cli.main(
        [
            "run",
            "--revision",
            "abc123",
            "--date",
            "2025-11-07",
            "--holder",
            "ci-host:1",
            "--",
            "sh",
            "-c",
            f'printf "%s %s %s" "$TF_WORKSPACE" "$PROVKIT_BUCKET" "$PROVKIT_FINGERPRINT" > {seen}',
        ]
    )
    out, _ = capfd.readouterr()
    assert code == cli.EXIT_OK
    rep = _report(out)
    assert rep["outcome"] == "succeeded"
    assert rep["holder"] == f"ci-host:1/{rep['run_id']}"
    assert rep["action_result"] == {"returncode": 0}
    assert seen.read_text() == "abc123-2025-11-07 abc123-2025-11-07 abc123-2025-11-07"


def test_failing_action_exits_one(capfd):
    code = cli.main(["run", "--revision", "abc123", "--date", "2025-11-07", "--", "sh", "-c", "exit 3"])
    out, _ = capfd.readouterr()
    assert code == cli.EXIT_FAILED
    rep = _report(out)
    assert rep["reason"] == "provisioning_error"
    assert "status 3" in rep["last_error"]
    assert rep["lock_release"] == "released"


def test_malformed_revision_exits_one(capfd):
    code = cli.main(["run", "--revision", "not a rev", "--date", "2025-11-07", "--", "true"])
    out, _ = capfd.readouterr()
    assert code == cli.EXIT_FAILED
    assert _report(out)["reason"] == "malformed_input"


def test_run_without_action_is_a_usage_error(capfd):
    with pytest.raises(SystemExit) as ei:
        cli.main(["run", "--revision", "abc123", "--date", "2025-11-07"])
    assert ei.value.code == 2


def test_bad_config_env_is_a_usage_error(monkeypatch, capfd):
    monkeypatch.setenv("PROVKIT_LEASE_TTL_SEC", "soon")
    code = cli.main(["run", "--revision", "abc123", "--date", "2025-11-07", "--", "true"])
    _, err = capfd.readouterr()
    assert code == cli.EXIT_USAGE
    assert "invalid configuration" in err


def test_cleanup_and_lock_status(_isolated, capfd):
    _isolated[ResourceKind.workspace].names.add("abc123-2025-11-07")
    code = cli.main(["cleanup", "--revision", "abc123", "--date", "2025-11-07"])
    out, _ = capfd.readouterr()
    assert code == cli.EXIT_OK
    rep = _report(out)
    assert rep["operation"] == "cleanup"
    assert rep["outcome"] == "succeeded"

    code = cli.main(["lock-status", "--key", "provkit/lock/abc123-2025-11-07"])
    out, _ = capfd.readouterr()
    assert code == cli.EXIT_OK
    status = next(ln for ln in reversed(out.splitlines()) if ln.startswith("{\"key\""))
    assert json.loads(status) == {"key": "provkit/lock/abc123-2025-11-07", "held": False}


def test_exit_code_mapping():
    from provkit.runtime.coordinator import RunAttempt, RunState

    assert cli._exit_code(RunAttempt(run_id="r", holder="h", state=RunState.completed)) == 0
    assert cli._exit_code(RunAttempt(run_id="r", holder="h", state=RunState.aborted)) == 130
    assert cli._exit_code(RunAttempt(run_id="r", holder="h", state=RunState.failed)) == 1


def test_cli_logs_go_to_stderr_not_the_report_stream(monkeypatch, capfd):
    seen = {}
    monkeypatch.setattr(cli, "configure_from_env", lambda **kw: seen.update(kw))
    assert cli.main(["lock-status", "--key", "provkit/lock/abc123-2025-11-07"]) == cli.EXIT_OK
    assert seen["stream"] is sys.stderr
