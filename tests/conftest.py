"""Shared fixtures: operator parameters, and a live deployment for integration tests."""

import os
from pathlib import Path
from uuid import uuid4

import pytest

from deployn8n.bringup import build_steps, render_user_data
from deployn8n.params import resolve_params
from deployn8n.providers import AWSProvider
from deployn8n.server import save_deployment, wait_for_ssh

DB_PASSWORD = "db-pass!word"
ENCRYPTION_KEY = "enc-key!value"
AUTH_PASSWORD = "auth!pass"


def pytest_addoption(parser):
    parser.addoption(
        "--region",
        default=None,
        help="AWS region for integration tests (default: AWS_REGION or us-east-1)",
    )


@pytest.fixture
def env():
    return {
        "N8N_KEY_NAME": "mykey",
        "N8N_DOMAIN_NAME": "n8n.example.com",
        "N8N_EMAIL": "ops@example.com",
        "N8N_DB_HOST": "db.example.com",
        "N8N_DB_USER": "n8n",
        "N8N_DB_PASSWORD": DB_PASSWORD,
        "N8N_ENCRYPTION_KEY": ENCRYPTION_KEY,
        "N8N_BASIC_AUTH_PASSWORD": AUTH_PASSWORD,
    }


@pytest.fixture
def params(env):
    return resolve_params(env=env)


@pytest.fixture
def clean_env(monkeypatch):
    """Process environment without N8N_* values or a .env file."""
    for key in list(os.environ):
        if key.startswith("N8N_"):
            monkeypatch.delenv(key)
    monkeypatch.setattr("deployn8n.params.load_dotenv", lambda: None)
    return monkeypatch


@pytest.fixture(scope="session")
def region(request):
    return request.config.getoption("--region")


@pytest.fixture(scope="session")
def live_deployment(region):
    """Create a real deployment from N8N_* variables, yield its record, delete on teardown.

    The domain's DNS is not expected to point at the new address, so the
    certificate step is expected to fail at first boot.
    """
    live_params = resolve_params()
    name = f"test-deployn8n-{uuid4().hex[:8]}"
    p = AWSProvider(region=region)
    ami_id = p.preflight(name, live_params)

    record = None
    try:
        user_data = render_user_data(build_steps(live_params))
        record = p.create_deployment(name, live_params, user_data, ami_id)
        save_deployment(name, record)
        wait_for_ssh(record["static_ip"])
        yield record
    finally:
        if record:
            try:
                p.delete_deployment(record)
            except (Exception, SystemExit):
                pass
        Path(f"{name}.deployment.json").unlink(missing_ok=True)
