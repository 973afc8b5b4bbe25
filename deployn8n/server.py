"""Server operations: SSH, deployment records, bring-up supervision, verification."""

import json
import os
import time
import urllib.error
import urllib.request
from pathlib import Path

import dns.exception
import dns.resolver
from fabric import Connection
from paramiko.ssh_exception import SSHException
from rich import print

from .bringup import (
    ADMIN_USER,
    CONTAINER_CHECK,
    MARKER_DIR,
    PROXY_ENABLED_CHECK,
    BringupStep,
    certificate_check,
    marker_path,
    select_steps,
)
from .types import DeploymentData
from .utils import LogStream, error, log, redact, warn

SSH_TIMEOUT = 600
SSH_RETRIES = 3
DNS_VERIFY_RETRIES = 30
DNS_VERIFY_DELAY = 10
BOOT_LOG = "/var/log/cloud-init-output.log"


def _run_ssh(
    ip: str, cmd: str, user: str, show_output: bool, secrets: list[str] | None = None
) -> str:
    """Single SSH attempt - open connection, run cmd, return stdout."""
    with Connection(ip, user=user, connect_kwargs={"look_for_keys": True}) as c:
        if show_output:
            stream = LogStream(secrets)
            result = c.run(cmd, hide=True, warn=True, in_stream=False,
                           out_stream=stream, err_stream=stream)
            stream.flush()
        else:
            result = c.run(cmd, hide=True, warn=True, in_stream=False)
        if result.failed:
            raise RuntimeError(result.stderr.strip() or f"exit status {result.exited}")
        return result.stdout


def _with_retries(
    ip: str, cmd: str, user: str, show_output: bool, secrets: list[str] | None = None
) -> str:
    """Run an SSH command, retrying transient banner errors.

    :param secrets: Values to mask in streamed output
    :raises RuntimeError: If the remote command exits non-zero
    :raises SystemExit: If the host cannot be reached
    """
    for attempt in range(SSH_RETRIES):
        try:
            return _run_ssh(ip, cmd, user, show_output, secrets)
        except SSHException as e:
            if "Error reading SSH protocol banner" in str(e) and attempt < SSH_RETRIES - 1:
                time.sleep(5)
                continue
            error(f"SSH connection failed: {e}")
        except OSError as e:
            # refused, unreachable, timed out
            error(f"SSH connection to '{ip}' failed: {e}")
    error("SSH connection failed after retries")


def as_root_script(script: str) -> str:
    escaped = script.replace("'", "'\\''")
    return f"sudo bash -c 'set -e\n{escaped}'"


def ssh(ip: str, cmd: str, user: str = ADMIN_USER, show_output: bool = False) -> str:
    try:
        return _with_retries(ip, cmd, user, show_output)
    except RuntimeError as e:
        error(f"SSH command failed: {e}")


def ssh_check(ip: str, cmd: str, user: str = ADMIN_USER) -> bool:
    """Run a check as root; True when it exits zero."""
    try:
        _with_retries(ip, as_root_script(cmd), user, False)
    except RuntimeError:
        return False
    return True


def wait_for_ssh(ip: str, user: str = ADMIN_USER, timeout: int = SSH_TIMEOUT):
    log(f"Waiting for SSH on '{ip}'...")
    start = time.time()
    while time.time() - start < timeout:
        try:
            with Connection(
                ip, user=user, connect_kwargs={"look_for_keys": True, "timeout": 5}
            ) as c:
                c.run("echo ok", hide=True, in_stream=False)
                log("SSH ready")
                return
        except Exception as e:
            elapsed = int(time.time() - start)
            log(f"SSH not ready yet ({elapsed}s, {type(e).__name__}), retrying...")
        time.sleep(5)
    error(f"SSH timeout after '{timeout}s'")


def deployment_path(name: str) -> Path:
    return Path(f"{name}.deployment.json")


def secrets_path(name: str) -> Path:
    return Path(f"{name}.secrets.json")


def load_deployment(name: str) -> DeploymentData:
    path = deployment_path(name)
    if not path.exists():
        error(f"Deployment file not found: '{path}'")
    return json.loads(path.read_text())


def save_deployment(name: str, data: DeploymentData):
    deployment_path(name).write_text(json.dumps(data, indent=2))


def save_secrets(name: str, secrets: dict[str, str]) -> Path:
    """Write secrets readable only by the current user.

    This file is the only place generated credentials are surfaced.
    """
    path = secrets_path(name)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        json.dump(secrets, f, indent=2)
    os.chmod(path, 0o600)
    return path


def load_secrets(name: str) -> dict[str, str]:
    path = secrets_path(name)
    if not path.exists():
        return {}
    return json.loads(path.read_text())


def resolve_dns_a(domain: str, nameserver: str = "8.8.8.8") -> str | None:
    """Resolve domain to IPv4 address.

    :param nameserver: DNS nameserver IP (default: 8.8.8.8)
    :return: First A record IP or None
    """
    try:
        resolver = dns.resolver.Resolver()
        resolver.nameservers = [nameserver]
        answer = resolver.resolve(domain, "A")
        return str(answer[0]) if answer else None
    except dns.exception.DNSException:
        return None


def wait_for_dns(
    domain: str,
    ip: str,
    retries: int = DNS_VERIFY_RETRIES,
    delay: int = DNS_VERIFY_DELAY,
) -> None:
    """Block until domain resolves to ip.

    :raises SystemExit: If DNS still points elsewhere after all retries
    """
    log(f"Verifying DNS: '{domain}' -> '{ip}'...")
    for i in range(retries):
        resolved = resolve_dns_a(domain)
        if resolved == ip:
            log(f"DNS verified: '{domain}' -> '{ip}'")
            return
        warn(f"Waiting for DNS ('{resolved or 'nothing'}')... ({i + 1}/{retries})")
        time.sleep(delay)
    error(
        f"'{domain}' does not resolve to '{ip}'. Create an A record pointing "
        f"to '{ip}' and retry, or pass --skip-dns."
    )


def check_http_status(url: str, timeout: int = 5) -> tuple[int | None, str]:
    """:return: (status_code, response_text) or (None, error_message)"""
    try:
        req = urllib.request.Request(url, method="HEAD")
        with urllib.request.urlopen(req, timeout=timeout) as response:
            status_code = response.getcode()
            return (
                status_code,
                f"HTTP/{response.version} {status_code} {response.reason}",
            )
    except urllib.error.HTTPError as e:
        return e.code, f"HTTP {e.code} {e.reason}"
    except urllib.error.URLError as e:
        return None, str(e.reason)
    except OSError as e:
        return None, str(e)


def boot_log(ip: str, lines: int = 100, user: str = ADMIN_USER) -> str:
    return ssh(ip, f"sudo tail -n {lines} {BOOT_LOG}", user=user)


def completed_steps(ip: str, user: str = ADMIN_USER) -> list[str]:
    """Names of steps whose marker file exists on the instance."""
    output = ssh(ip, f"ls {MARKER_DIR} 2>/dev/null || true", user=user)
    return [
        line.removesuffix(".ok")
        for line in output.split()
        if line.endswith(".ok")
    ]


def run_bringup(
    ip: str,
    steps: list[BringupStep],
    *,
    only: str | None = None,
    force: bool = False,
    secrets: list[str] | None = None,
    user: str = ADMIN_USER,
) -> list[str]:
    """Bring an instance up over SSH, one idempotent step at a time.

    A step whose check already passes is skipped unless force is set, or an
    earlier step that ran lists it in its triggers. The run stops at the
    first step that fails or whose check still fails afterwards, naming it
    so that only that step needs retrying.

    :param only: Run just this step, plus any steps it triggers
    :param force: Run steps even when their check passes
    :param secrets: Values to mask in error output
    :return: Names of the steps that were run
    :raises SystemExit: If a step fails
    """
    try:
        selected = select_steps(steps, only)
    except ValueError as e:
        error(str(e))

    ran = []
    pending = set()
    for step in steps:
        if step not in selected and step.name not in pending:
            continue
        if step.name in pending:
            log(f"[{step.name}] re-run after an earlier step changed its inputs")
        elif not force and ssh_check(ip, step.check, user=user):
            log(f"[{step.name}] already done")
            continue

        log(f"[{step.name}] {step.description}...")
        try:
            _with_retries(ip, as_root_script(step.script), user, True, secrets)
        except RuntimeError as e:
            error(
                f"Step '{step.name}' failed: {redact(str(e), secrets or [])}\n"
                f"Retry just this step with --step {step.name}"
            )
        if not ssh_check(ip, step.check, user=user):
            error(
                f"Step '{step.name}' ran but its check still fails.\n"
                f"Inspect the instance, then retry with --step {step.name}"
            )
        ssh(ip, f"sudo mkdir -p {MARKER_DIR} && sudo touch {marker_path(step.name)}", user=user)
        ran.append(step.name)
        pending.update(step.triggers)

    log(f"Bring-up complete ({len(ran)} step(s) run)")
    return ran


def verify_deployment(
    record: DeploymentData,
    *,
    step_names: list[str],
    policy_problems: list[str] | None = None,
    user: str = ADMIN_USER,
) -> list[str]:
    """Check a deployment end to end and print one line per check.

    :param step_names: Expected bring-up steps, in order
    :param policy_problems: Result of the provider's security group audit
    :return: Issues found; empty when everything passed
    """
    ip = record["static_ip"]
    domain = record["domain"]

    print(f"Verifying '{record['name']}' ('{ip}')...")
    print("-" * 40)
    issues = []

    if policy_problems:
        for problem in policy_problems:
            print(f"[FAIL] Access policy: {problem}")
        issues.extend(f"Access policy: {p}" for p in policy_problems)
    elif policy_problems is not None:
        print("[OK] Access policy: ports 22, 80, 443 only")

    try:
        uptime = _with_retries(ip, "uptime", user, False).strip()
        print(f"[OK] SSH: '{uptime}'")
    except RuntimeError as e:
        print(f"[FAIL] SSH: {e}")
        issues.append("SSH connection failed")
        return issues
    except SystemExit:
        # the connection error itself is already logged
        print(f"[FAIL] SSH: '{ip}' unreachable")
        issues.append("SSH connection failed")
        return issues

    done = completed_steps(ip, user=user)
    missing = [name for name in step_names if name not in done]
    if missing:
        print(f"[FAIL] Bring-up: steps not completed: {', '.join(missing)}")
        issues.append(f"Bring-up incomplete: {', '.join(missing)}")
    else:
        print("[OK] Bring-up: all steps completed")

    for label, check in [
        ("Container", CONTAINER_CHECK),
        ("Nginx", PROXY_ENABLED_CHECK),
        ("Certificate", certificate_check(domain)),
    ]:
        if ssh_check(ip, check, user=user):
            print(f"[OK] {label}")
        else:
            print(f"[FAIL] {label}")
            issues.append(f"{label} check failed")

    dns_ip = resolve_dns_a(domain)
    if dns_ip == ip:
        print(f"[OK] DNS: '{domain}' -> '{ip}'")
    elif dns_ip:
        print(f"[FAIL] DNS: '{domain}' -> '{dns_ip}' (expected '{ip}')")
        issues.append(f"DNS mismatch: '{dns_ip}' != '{ip}'")
    else:
        print(f"[FAIL] DNS: '{domain}' -> no A record found")
        issues.append("DNS check failed")

    status_code, response_line = check_http_status(f"https://{domain}")
    if status_code in (200, 301, 302, 401):
        print(f"[OK] HTTPS: '{domain}' responding")
    elif status_code:
        print(f"[WARN] HTTPS: '{response_line}'")
    else:
        print(f"[FAIL] HTTPS: '{response_line}'")
        issues.append("HTTPS not responding")

    print("-" * 40)
    if issues:
        print(f"Issues found ({len(issues)}):")
        for issue in issues:
            print(f"  - {issue}")
    else:
        print("All checks passed!")
    return issues
