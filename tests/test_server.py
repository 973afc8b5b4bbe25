"""Deployment records, supervised bring-up and verification, with SSH faked."""

import os
import stat

import pytest

from deployn8n import server
from deployn8n.bringup import BringupStep
from deployn8n.server import (
    as_root_script,
    load_deployment,
    load_secrets,
    run_bringup,
    save_deployment,
    save_secrets,
    verify_deployment,
    wait_for_dns,
)

IP = "203.0.113.10"


class FakeHost:
    """Stands in for the instance: a step's check passes once its script ran."""

    def __init__(self, done=(), failing=(), broken=()):
        self.done = set(done)
        self.failing = set(failing)
        self.broken = set(broken)
        self.ran = []
        self.commands = []
        self.secrets = None

    def check(self, ip, cmd, user="ubuntu"):
        return cmd.removeprefix("check-") in self.done

    def run(self, ip, cmd, user, show_output, secrets=None):
        self.commands.append(cmd)
        self.secrets = secrets
        name = cmd.split("script-", 1)[1].split()[0].rstrip("'")
        self.ran.append(name)
        if name in self.failing:
            raise RuntimeError(f"{name} exploded with hunter2")
        if name not in self.broken:
            self.done.add(name)
        return ""

    def ssh(self, ip, cmd, user="ubuntu", show_output=False):
        self.commands.append(cmd)
        return ""


def _steps(*names):
    return [BringupStep(n, f"Do {n}", f"script-{n}", f"check-{n}") for n in names]


@pytest.fixture
def host(monkeypatch):
    fake = FakeHost()
    monkeypatch.setattr(server, "ssh_check", fake.check)
    monkeypatch.setattr(server, "_with_retries", fake.run)
    monkeypatch.setattr(server, "ssh", fake.ssh)
    return fake


def test_deployment_record_roundtrip(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    record = {"name": "myn8n", "instance_id": "i-1", "static_ip": IP}
    save_deployment("myn8n", record)
    assert (tmp_path / "myn8n.deployment.json").exists()
    assert load_deployment("myn8n") == record


def test_load_missing_deployment_fails(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    with pytest.raises(SystemExit):
        load_deployment("nope")


def test_secrets_file_is_private(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert load_secrets("myn8n") == {}
    path = save_secrets("myn8n", {"basic_auth_password": "s3cret"})
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert load_secrets("myn8n") == {"basic_auth_password": "s3cret"}


def test_as_root_script_quotes_single_quotes():
    assert as_root_script("echo 'hi'") == "sudo bash -c 'set -e\necho '\\''hi'\\'''"


def test_bringup_runs_pending_steps_in_order(host):
    host.done = {"packages"}
    ran = run_bringup(IP, _steps("packages", "docker", "compose"))
    assert ran == ["docker", "compose"]
    assert host.ran == ["docker", "compose"]
    assert any(cmd.endswith("/var/lib/deployn8n/compose.ok") for cmd in host.commands)


def test_bringup_is_a_noop_when_everything_passes(host):
    host.done = {"packages", "docker"}
    assert run_bringup(IP, _steps("packages", "docker")) == []
    assert host.ran == []


def test_bringup_force_reruns(host):
    host.done = {"packages", "docker"}
    assert run_bringup(IP, _steps("packages", "docker"), force=True) == ["packages", "docker"]


def test_bringup_single_step(host):
    ran = run_bringup(IP, _steps("packages", "docker", "certificate"), only="certificate")
    assert ran == ["certificate"]


def test_bringup_unknown_step_fails(host):
    with pytest.raises(SystemExit):
        run_bringup(IP, _steps("packages"), only="database")


def test_bringup_stops_at_failed_step(host, caplog):
    host.failing = {"docker"}
    with pytest.raises(SystemExit):
        run_bringup(IP, _steps("packages", "docker", "compose"), secrets=["hunter2"])
    assert host.ran == ["packages", "docker"]
    assert "--step docker" in caplog.text
    assert "hunter2" not in caplog.text


def test_bringup_fails_when_check_still_fails(host, caplog):
    host.broken = {"docker"}
    with pytest.raises(SystemExit):
        run_bringup(IP, _steps("packages", "docker"))
    assert "--step docker" in caplog.text


def _chained_steps():
    steps = _steps("packages", "compose", "container", "proxy")
    steps[1] = BringupStep(
        "compose", "Do compose", "script-compose", "check-compose", triggers=("container",)
    )
    return steps


def test_bringup_reruns_triggered_step_even_when_its_check_passes(host):
    host.done = {"packages", "container", "proxy"}
    ran = run_bringup(IP, _chained_steps())
    assert ran == ["compose", "container"]
    assert host.ran == ["compose", "container"]


def test_single_step_carries_its_triggered_steps(host):
    host.done = {"packages", "compose", "container", "proxy"}
    ran = run_bringup(IP, _chained_steps(), only="compose", force=True)
    assert ran == ["compose", "container"]


def test_skipped_step_triggers_nothing(host):
    host.done = {"packages", "compose", "container", "proxy"}
    assert run_bringup(IP, _chained_steps()) == []


def test_wait_for_dns(monkeypatch):
    answers = iter([None, "198.51.100.1", IP])
    monkeypatch.setattr(server, "resolve_dns_a", lambda domain: next(answers))
    monkeypatch.setattr(server.time, "sleep", lambda _: None)
    wait_for_dns("n8n.example.com", IP, retries=3, delay=0)


def test_wait_for_dns_gives_up(monkeypatch):
    monkeypatch.setattr(server, "resolve_dns_a", lambda domain: None)
    monkeypatch.setattr(server.time, "sleep", lambda _: None)
    with pytest.raises(SystemExit):
        wait_for_dns("n8n.example.com", IP, retries=2, delay=0)


@pytest.fixture
def healthy(monkeypatch):
    monkeypatch.setattr(server, "_with_retries", lambda *args: " 10:00 up 1 day")
    monkeypatch.setattr(server, "completed_steps", lambda ip, user="ubuntu": ["a", "b"])
    monkeypatch.setattr(server, "ssh_check", lambda ip, cmd, user="ubuntu": True)
    monkeypatch.setattr(server, "resolve_dns_a", lambda domain: IP)
    monkeypatch.setattr(server, "check_http_status", lambda url: (401, "HTTP 401"))


RECORD = {"name": "myn8n", "static_ip": IP, "domain": "n8n.example.com"}


def test_verify_healthy_deployment(healthy, capsys):
    issues = verify_deployment(RECORD, step_names=["a", "b"], policy_problems=[])
    assert issues == []
    out = capsys.readouterr().out
    assert "[OK] Access policy" in out
    assert "All checks passed!" in out


def test_verify_reports_problems(healthy, monkeypatch):
    monkeypatch.setattr(server, "resolve_dns_a", lambda domain: "198.51.100.1")
    issues = verify_deployment(
        RECORD,
        step_names=["a", "b", "certificate"],
        policy_problems=["n8n port 5678 is reachable directly"],
    )
    assert "Access policy: n8n port 5678 is reachable directly" in issues
    assert "Bring-up incomplete: certificate" in issues
    assert any(issue.startswith("DNS mismatch") for issue in issues)


def test_step_output_is_streamed_with_secrets_masked(host):
    run_bringup(IP, _steps("packages"), secrets=["hunter2"])
    assert host.secrets == ["hunter2"]


def _refuse(*args):
    raise TimeoutError("timed out")


def test_unreachable_host_exits_with_message(monkeypatch, caplog):
    monkeypatch.setattr(server, "_run_ssh", _refuse)
    with pytest.raises(SystemExit):
        server._with_retries(IP, "uptime", "ubuntu", False)
    assert f"SSH connection to '{IP}' failed" in caplog.text


def test_verify_reports_unreachable_host(monkeypatch, capsys):
    monkeypatch.setattr(server, "_run_ssh", _refuse)
    issues = verify_deployment(RECORD, step_names=["a"])
    assert issues == ["SSH connection failed"]
    assert f"[FAIL] SSH: '{IP}' unreachable" in capsys.readouterr().out
