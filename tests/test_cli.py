"""CLI commands with the AWS provider replaced by a MagicMock."""

import json
from unittest.mock import MagicMock

import pytest

from deployn8n import cli
from deployn8n.bringup import STEP_ORDER

SECRETS = ["db-pass!word", "enc-key!value"]

OPTIONS = {
    "key_name": "mykey",
    "domain_name": "n8n.example.com",
    "email": "ops@example.com",
    "db_host": "db.example.com",
    "db_user": "n8n",
    "db_password": "db-pass!word",
    "encryption_key": "enc-key!value",
}

RECORD = {
    "name": "myn8n",
    "instance_id": "i-1",
    "region": "us-east-1",
    "security_group_id": "sg-1",
    "allocation_id": "eipalloc-1",
    "static_ip": "203.0.113.10",
    "domain": "n8n.example.com",
    "email": "ops@example.com",
    "key_name": "mykey",
    "db_host": "db.example.com",
    "db_port": 5432,
    "db_name": "postgres",
    "db_user": "n8n",
    "basic_auth_user": "admin",
    "instance_type": "t2.micro",
    "ami": "ami-0abc",
}


@pytest.fixture
def aws(clean_env, tmp_path):
    clean_env.chdir(tmp_path)
    provider_cls = MagicMock()
    provider = provider_cls.return_value
    provider.preflight.return_value = "ami-0abc"
    provider.create_deployment.return_value = dict(RECORD)
    clean_env.setattr(cli, "AWSProvider", provider_cls)
    return provider_cls


def test_create_missing_db_host_touches_nothing(aws, tmp_path):
    options = {k: v for k, v in OPTIONS.items() if k != "db_host"}
    with pytest.raises(SystemExit):
        cli.create_deployment("myn8n", **options)
    aws.assert_not_called()
    assert not list(tmp_path.iterdir())


def test_create_saves_record_and_generated_credentials(aws, tmp_path, capsys):
    cli.create_deployment("myn8n", **OPTIONS)

    provider = aws.return_value
    provider.preflight.assert_called_once()
    name, params, user_data, ami_id = provider.create_deployment.call_args.args
    assert (name, ami_id) == ("myn8n", "ami-0abc")
    assert params.generated_password
    for secret in SECRETS + [params.basic_auth_password]:
        assert secret not in user_data

    record = json.loads((tmp_path / "myn8n.deployment.json").read_text())
    assert record["static_ip"] == "203.0.113.10"
    stored = json.loads((tmp_path / "myn8n.secrets.json").read_text())
    assert stored["basic_auth_password"] == params.basic_auth_password

    out = capsys.readouterr().out
    assert "https://n8n.example.com" in out
    assert params.basic_auth_password not in out


def test_create_saves_partial_record_before_failing(aws, tmp_path):
    partial = {k: RECORD[k] for k in ("name", "instance_id", "region", "security_group_id")}

    def fail_after_launch(name, params, user_data, ami_id, checkpoint):
        checkpoint(partial)
        raise SystemExit(1)

    aws.return_value.create_deployment.side_effect = fail_after_launch
    with pytest.raises(SystemExit):
        cli.create_deployment("myn8n", basic_auth_password="operator-chosen", **OPTIONS)

    assert json.loads((tmp_path / "myn8n.deployment.json").read_text()) == partial
    stored = json.loads((tmp_path / "myn8n.secrets.json").read_text())
    assert stored["basic_auth_password"] == "operator-chosen"


def test_create_refuses_existing_record(aws, tmp_path):
    (tmp_path / "myn8n.deployment.json").write_text("{}")
    with pytest.raises(SystemExit):
        cli.create_deployment("myn8n", **OPTIONS)
    aws.assert_not_called()


def test_plan_shows_no_secrets_and_calls_no_aws(aws, capsys):
    cli.plan_deployment("myn8n", show_script=True, **OPTIONS)
    out = capsys.readouterr().out
    aws.assert_not_called()
    for secret in SECRETS:
        assert secret not in out
    assert "***" in out
    for name in STEP_ORDER:
        assert name in out


def test_outputs_hides_credentials_unless_asked(aws, tmp_path, capsys):
    (tmp_path / "myn8n.deployment.json").write_text(json.dumps(RECORD))
    (tmp_path / "myn8n.secrets.json").write_text(
        json.dumps({"basic_auth_user": "admin", "basic_auth_password": "gen-pass"})
    )

    cli.show_outputs("myn8n")
    assert "gen-pass" not in capsys.readouterr().out

    cli.show_outputs("myn8n", show_secrets=True)
    assert "gen-pass" in capsys.readouterr().out


def test_delete_with_force(aws, tmp_path):
    (tmp_path / "myn8n.deployment.json").write_text(json.dumps(RECORD))
    (tmp_path / "myn8n.secrets.json").write_text("{}")
    cli.delete_deployment("myn8n", force=True)
    aws.return_value.delete_deployment.assert_called_once_with(RECORD)
    assert not list(tmp_path.iterdir())


def test_delete_cancelled(aws, tmp_path, monkeypatch):
    (tmp_path / "myn8n.deployment.json").write_text(json.dumps(RECORD))
    monkeypatch.setattr("builtins.input", lambda prompt: "no")
    cli.delete_deployment("myn8n")
    aws.return_value.delete_deployment.assert_not_called()
    assert (tmp_path / "myn8n.deployment.json").exists()


def test_rebind_requires_running_instance(aws, tmp_path):
    (tmp_path / "myn8n.deployment.json").write_text(json.dumps(RECORD))
    aws.return_value.get_instance_state.return_value = "stopped"
    with pytest.raises(SystemExit):
        cli.rebind_static_ip("myn8n", "i-2")
    aws.return_value.rebind_static_ip.assert_not_called()


def test_bringup_certificate_waits_for_dns(aws, tmp_path, monkeypatch):
    (tmp_path / "myn8n.deployment.json").write_text(json.dumps(RECORD))
    (tmp_path / "myn8n.secrets.json").write_text(
        json.dumps({"basic_auth_user": "admin", "basic_auth_password": "gen-pass"})
    )
    calls = []
    monkeypatch.setattr(cli, "wait_for_ssh", lambda ip: calls.append("ssh"))
    monkeypatch.setattr(cli, "wait_for_dns", lambda domain, ip: calls.append("dns"))
    monkeypatch.setattr(
        cli, "run_bringup", lambda ip, steps, **kwargs: calls.append(kwargs["only"])
    )

    cli.bringup_command(
        "myn8n", step="certificate", db_password=SECRETS[0], encryption_key=SECRETS[1]
    )
    assert calls == ["ssh", "dns", "certificate"]

    calls.clear()
    cli.bringup_command(
        "myn8n",
        step="certificate",
        skip_dns=True,
        db_password=SECRETS[0],
        encryption_key=SECRETS[1],
    )
    assert calls == ["ssh", "certificate"]


def _record_bringup(monkeypatch):
    calls = []
    monkeypatch.setattr(cli, "wait_for_ssh", lambda ip: None)
    monkeypatch.setattr(cli, "wait_for_dns", lambda domain, ip: None)
    monkeypatch.setattr(
        cli, "run_bringup", lambda ip, steps, **kwargs: calls.append(kwargs)
    )
    return calls


def test_bringup_reuses_password_given_at_create(aws, tmp_path, monkeypatch):
    cli.create_deployment("myn8n", basic_auth_password="operator-chosen", **OPTIONS)
    stored = json.loads((tmp_path / "myn8n.secrets.json").read_text())
    assert stored == {"basic_auth_user": "admin", "basic_auth_password": "operator-chosen"}

    calls = _record_bringup(monkeypatch)
    cli.bringup_command(
        "myn8n", step="compose", db_password=SECRETS[0], encryption_key=SECRETS[1]
    )
    assert calls[0]["secrets"] == SECRETS + ["operator-chosen"]
    stored = json.loads((tmp_path / "myn8n.secrets.json").read_text())
    assert stored["basic_auth_password"] == "operator-chosen"


def test_bringup_without_stored_password_fails(aws, tmp_path, monkeypatch):
    (tmp_path / "myn8n.deployment.json").write_text(json.dumps(RECORD))
    calls = _record_bringup(monkeypatch)
    with pytest.raises(SystemExit):
        cli.bringup_command(
            "myn8n", step="compose", db_password=SECRETS[0], encryption_key=SECRETS[1]
        )
    assert calls == []
    assert not (tmp_path / "myn8n.secrets.json").exists()


def test_bringup_password_option_overrides_file(aws, tmp_path, monkeypatch):
    (tmp_path / "myn8n.deployment.json").write_text(json.dumps(RECORD))
    calls = _record_bringup(monkeypatch)
    cli.bringup_command(
        "myn8n",
        step="compose",
        db_password=SECRETS[0],
        encryption_key=SECRETS[1],
        basic_auth_password="lost-and-reset",
    )
    assert calls[0]["secrets"][-1] == "lost-and-reset"
    stored = json.loads((tmp_path / "myn8n.secrets.json").read_text())
    assert stored["basic_auth_password"] == "lost-and-reset"
