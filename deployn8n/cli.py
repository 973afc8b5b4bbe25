#!/usr/bin/env python3
"""Provision a single-instance n8n deployment on AWS.

Prerequisites: AWS credentials, an EC2 key pair, a domain you can point at
the Elastic IP, and a reachable PostgreSQL database.

Usage: uv run deployn8n <noun> <verb> [options]

Examples:
    uv run deployn8n deploy plan myn8n --domain-name n8n.example.com ...
    uv run deployn8n deploy create myn8n --key-name mykey --domain-name n8n.example.com ...
    uv run deployn8n deploy outputs myn8n --key-file ~/.ssh/mykey.pem
    uv run deployn8n server bringup myn8n --step certificate
    uv run deployn8n server verify myn8n
"""

import sys

import cyclopts
from rich import print
from rich.table import Table

from .bringup import (
    STEP_ORDER,
    build_steps,
    render_compose,
    render_nginx_site,
    render_user_data,
    select_steps,
)
from .outputs import DEFAULT_KEY_FILE, build_outputs, print_outputs
from .params import DeploymentParams, resolve_params
from .providers import AWSProvider
from .server import (
    boot_log,
    deployment_path,
    load_deployment,
    load_secrets,
    run_bringup,
    save_deployment,
    save_secrets,
    secrets_path,
    verify_deployment,
    wait_for_dns,
    wait_for_ssh,
)
from .types import DeploymentData
from .utils import error, log, setup_logging, warn

app = cyclopts.App(
    name="deployn8n", help="Provision n8n on AWS", sort_key=None
)

deploy_app = cyclopts.App(name="deploy", help="Create and manage deployments", sort_key=1)
server_app = cyclopts.App(name="server", help="Bring up and inspect the instance", sort_key=2)

app.command(deploy_app)
app.command(server_app)

RESOURCE_PLAN = [
    ("Parameters", "Validate parameters, credentials and key pair; resolve the image"),
    ("Security group", "Ingress tcp 22, 80, 443 from 0.0.0.0/0"),
    ("EC2 instance", "Launched with the security group and the first-boot script"),
    ("Elastic IP", "Allocated and associated with the instance"),
    ("Outputs", "StaticIP, SSHCommand, AccessURL"),
]


def _provider_for(record: DeploymentData) -> AWSProvider:
    return AWSProvider(region=record.get("region"), aws_profile=record.get("aws_profile"))


def _print_params(params: DeploymentParams) -> None:
    table = Table(title="Parameters")
    table.add_column("Name")
    table.add_column("Value")
    for key, value in params.redacted().items():
        table.add_row(key, str(value))
    print(table)


def _params_from_record(
    record: DeploymentData,
    *,
    db_password: str | None,
    encryption_key: str | None,
    basic_auth_password: str | None = None,
) -> DeploymentParams:
    """Rebuild parameters for a recorded deployment.

    Non-secret values come from the record, the basic auth pair from the
    secrets file unless given, and the database password and encryption key
    from the options or N8N_* environment variables. A password is never
    generated here: the running container already has one.
    """
    stored = load_secrets(record["name"])
    return resolve_params(
        key_name=record.get("key_name"),
        domain_name=record.get("domain"),
        email=record.get("email"),
        db_host=record.get("db_host"),
        db_user=record.get("db_user"),
        db_port=record.get("db_port"),
        db_name=record.get("db_name"),
        db_password=db_password,
        encryption_key=encryption_key,
        basic_auth_user=stored.get("basic_auth_user") or record.get("basic_auth_user"),
        basic_auth_password=basic_auth_password or stored.get("basic_auth_password"),
        instance_type=record.get("instance_type"),
        ubuntu_ami=record.get("ami"),
        generate_password_if_missing=False,
    )


def _save_credentials(name: str, params: DeploymentParams) -> None:
    """Store the basic auth pair, supplied or generated, in the 0600 secrets file."""
    path = save_secrets(
        name,
        {
            "basic_auth_user": params.basic_auth_user,
            "basic_auth_password": params.basic_auth_password,
        },
    )
    kind = "Generated basic auth" if params.generated_password else "Basic auth"
    log(f"{kind} credentials saved to '{path}'")
    log(f"Show them with: deployn8n deploy outputs {name} --show-secrets")


@deploy_app.command(name="plan")
def plan_deployment(
    name: str,
    *,
    key_name: str | None = None,
    domain_name: str | None = None,
    email: str | None = None,
    db_host: str | None = None,
    db_port: int | None = None,
    db_name: str | None = None,
    db_user: str | None = None,
    db_password: str | None = None,
    encryption_key: str | None = None,
    basic_auth_user: str | None = None,
    basic_auth_password: str | None = None,
    ubuntu_ami: str | None = None,
    instance_type: str | None = None,
    show_script: bool = False,
):
    """Show what create would do, without calling AWS.

    Parameters are resolved exactly as for create. Secrets are shown as ***.

    :param name: Deployment name
    :param show_script: Also print the first-boot script
    """
    params = resolve_params(
        key_name=key_name,
        domain_name=domain_name,
        email=email,
        db_host=db_host,
        db_port=db_port,
        db_name=db_name,
        db_user=db_user,
        db_password=db_password,
        encryption_key=encryption_key,
        basic_auth_user=basic_auth_user,
        basic_auth_password=basic_auth_password,
        ubuntu_ami=ubuntu_ami,
        instance_type=instance_type,
    )
    masked = params.masked()

    print(f"Plan for deployment '{name}':")
    _print_params(params)
    if params.generated_password:
        print("  basic_auth_password will be generated")

    print("\nResources, in creation order:")
    for i, (resource, detail) in enumerate(RESOURCE_PLAN, 1):
        print(f"  {i}. {resource}: {detail}")

    print("\nFirst-boot steps:")
    for i, step in enumerate(build_steps(masked), 1):
        print(f"  {i}. {step.name}: {step.description}")

    print("\ndocker-compose.yml:")
    sys.stdout.write(render_compose(masked))
    print("\nnginx site:")
    sys.stdout.write(render_nginx_site(params.domain_name))

    if show_script:
        print("\nFirst-boot script:")
        sys.stdout.write(render_user_data(build_steps(masked)) + "\n")


@deploy_app.command(name="create")
def create_deployment(
    name: str,
    *,
    key_name: str | None = None,
    domain_name: str | None = None,
    email: str | None = None,
    db_host: str | None = None,
    db_port: int | None = None,
    db_name: str | None = None,
    db_user: str | None = None,
    db_password: str | None = None,
    encryption_key: str | None = None,
    basic_auth_user: str | None = None,
    basic_auth_password: str | None = None,
    ubuntu_ami: str | None = None,
    instance_type: str | None = None,
    region: str | None = None,
    aws_profile: str | None = None,
    key_file: str = DEFAULT_KEY_FILE,
):
    """Create the security group, instance and Elastic IP for n8n.

    Every option falls back to the matching N8N_* environment variable
    (e.g. --db-password / N8N_DB_PASSWORD), read from .env if present.
    Prefer the environment for secrets.

    :param name: Deployment name
    :param key_name: EC2 key pair for SSH access
    :param domain_name: Domain that will point at the Elastic IP
    :param email: Contact email for the Let's Encrypt certificate
    :param db_host: PostgreSQL host
    :param db_port: PostgreSQL port (default: 5432)
    :param db_name: PostgreSQL database (default: postgres)
    :param db_user: PostgreSQL user
    :param db_password: PostgreSQL password
    :param encryption_key: n8n encryption key
    :param basic_auth_user: n8n basic auth user (default: admin)
    :param basic_auth_password: n8n basic auth password (default: generated)
    :param ubuntu_ami: SSM parameter path or AMI id (default: Ubuntu 22.04)
    :param instance_type: EC2 instance type (default: t2.micro)
    :param region: AWS region (default: AWS_REGION or us-east-1)
    :param aws_profile: AWS profile (default: AWS_PROFILE)
    :param key_file: Private key path shown in the SSH command
    """
    params = resolve_params(
        key_name=key_name,
        domain_name=domain_name,
        email=email,
        db_host=db_host,
        db_port=db_port,
        db_name=db_name,
        db_user=db_user,
        db_password=db_password,
        encryption_key=encryption_key,
        basic_auth_user=basic_auth_user,
        basic_auth_password=basic_auth_password,
        ubuntu_ami=ubuntu_ami,
        instance_type=instance_type,
    )
    if deployment_path(name).exists():
        error(f"'{deployment_path(name)}' already exists. Delete the deployment first.")

    p = AWSProvider(region=region, aws_profile=aws_profile)
    ami_id = p.preflight(name, params)

    user_data = render_user_data(build_steps(params))
    _save_credentials(name, params)
    record = p.create_deployment(
        name, params, user_data, ami_id,
        checkpoint=lambda partial: save_deployment(name, partial),
    )
    save_deployment(name, record)

    log("Deployment created!")
    print_outputs(build_outputs(record["static_ip"], record["domain"], key_file=key_file))
    warn(
        f"Point an A record for '{record['domain']}' at '{record['static_ip']}'. "
        "If the certificate step ran before DNS resolved, retry it with:\n"
        f"  deployn8n server bringup {name} --step certificate"
    )


@deploy_app.command(name="delete")
def delete_deployment(name: str, *, force: bool = False):
    """Release the Elastic IP, terminate the instance, delete the security group.

    :param name: Deployment name
    :param force: Skip confirmation prompt
    """
    record = load_deployment(name)

    print("[yellow]Deployment to delete:[/yellow]")
    print(f"  Name: {name}")
    print(f"  Region: {record.get('region')}")
    print(f"  Instance: {record.get('instance_id')}")
    print(f"  Elastic IP: {record.get('static_ip')}")
    print(f"  Security group: {record.get('security_group_id')}")

    if not force:
        confirm = input("Delete this deployment? (yes/no): ")
        if confirm != "yes":
            log("Cancelled")
            return

    log("Deleting deployment...")
    _provider_for(record).delete_deployment(record)
    deployment_path(name).unlink(missing_ok=True)
    secrets_path(name).unlink(missing_ok=True)
    log("Deployment deleted")


@deploy_app.command(name="list")
def list_deployments(
    *,
    region: str | None = None,
    aws_profile: str | None = None,
):
    """List deployments in the specified region.

    :param region: AWS region (default: AWS_REGION or us-east-1)
    :param aws_profile: AWS profile (default: AWS_PROFILE)
    """
    p = AWSProvider(region=region, aws_profile=aws_profile)
    log(f"Listing deployments in '{p.region}'...")
    deployments = p.list_deployments()

    if not deployments:
        log(f"No deployments found in '{p.region}'")
        return

    max_name = max(len(d["name"]) for d in deployments)
    max_ip = max(len(d["static_ip"]) for d in deployments)
    max_region = max(len(d["region"]) for d in deployments)

    name_header = "NAME".ljust(max_name)
    ip_header = "IP ADDRESS".ljust(max_ip)
    region_header = "ZONE".ljust(max_region)
    print(f"  {name_header}  {ip_header}  {region_header}  STATUS")
    print(f"  {'-' * max_name}  {'-' * max_ip}  {'-' * max_region}  {'---'}")

    for d in deployments:
        name = d["name"].ljust(max_name)
        ip = d["static_ip"].ljust(max_ip)
        region = d["region"].ljust(max_region)
        print(f"  {name}  {ip}  {region}  {d['status']}")


@deploy_app.command(name="outputs")
def show_outputs(
    name: str,
    *,
    key_file: str = DEFAULT_KEY_FILE,
    show_secrets: bool = False,
):
    """Show StaticIP, SSHCommand and AccessURL for a deployment.

    :param name: Deployment name
    :param key_file: Private key path shown in the SSH command
    :param show_secrets: Also print the stored basic auth credentials
    """
    record = load_deployment(name)
    print_outputs(build_outputs(record["static_ip"], record["domain"], key_file=key_file))

    if show_secrets:
        stored = load_secrets(name)
        if not stored:
            log(f"No credentials stored for '{name}'")
            return
        print(f"  Basic auth user: {stored.get('basic_auth_user')}")
        print(f"  Basic auth password: {stored.get('basic_auth_password')}")


@deploy_app.command(name="rebind")
def rebind_static_ip(name: str, instance_id: str):
    """Move the deployment's Elastic IP to another instance.

    :param name: Deployment name
    :param instance_id: Instance to associate the address with
    """
    record = load_deployment(name)
    p = _provider_for(record)
    p.validate_auth()

    state = p.get_instance_state(instance_id)
    if state != "running":
        error(f"Instance '{instance_id}' is not running (state: {state or 'not found'})")

    record = p.rebind_static_ip(record, instance_id)
    save_deployment(name, record)
    log(f"'{record['static_ip']}' now points at '{instance_id}'")


@deploy_app.command(name="cleanup")
def cleanup_resources(
    *,
    region: str | None = None,
    aws_profile: str | None = None,
    dry_run: bool = True,
):
    """Release unassociated Elastic IPs and delete unused security groups.

    :param region: AWS region (default: AWS_REGION or us-east-1)
    :param aws_profile: AWS profile (default: AWS_PROFILE)
    :param dry_run: Show what would be deleted without deleting (default: true)
    """
    p = AWSProvider(region=region, aws_profile=aws_profile)
    p.cleanup_resources(dry_run=dry_run)


@server_app.command(name="bringup")
def bringup_command(
    name: str,
    *,
    step: str | None = None,
    force: bool = False,
    skip_dns: bool = False,
    db_password: str | None = None,
    encryption_key: str | None = None,
    basic_auth_password: str | None = None,
):
    """Run the bring-up steps over SSH, skipping those already done.

    Use after a failed first boot: only steps whose check fails are run.

    :param name: Deployment name
    :param step: Run only this step (packages, docker, compose, container,
        proxy, proxy-enable, certificate, docker-group)
    :param force: Run steps even when their check passes
    :param skip_dns: Request the certificate without waiting for DNS
    :param db_password: PostgreSQL password (default: N8N_DB_PASSWORD)
    :param encryption_key: n8n encryption key (default: N8N_ENCRYPTION_KEY)
    :param basic_auth_password: n8n basic auth password (default: the
        secrets file, then N8N_BASIC_AUTH_PASSWORD)
    """
    record = load_deployment(name)
    params = _params_from_record(
        record,
        db_password=db_password,
        encryption_key=encryption_key,
        basic_auth_password=basic_auth_password,
    )
    steps = build_steps(params)
    try:
        selected = select_steps(steps, step)
    except ValueError as e:
        error(str(e))

    ip = record["static_ip"]
    wait_for_ssh(ip)
    if not skip_dns and any(s.name == "certificate" for s in selected):
        wait_for_dns(record["domain"], ip)

    run_bringup(ip, steps, only=step, force=force, secrets=params.secrets)
    _save_credentials(name, params)


@server_app.command(name="verify")
def verify_command(name: str):
    """Verify deployment health: access policy, SSH, bring-up, DNS, HTTPS.

    :param name: Deployment name
    """
    record = load_deployment(name)
    p = _provider_for(record)
    p.validate_auth()
    issues = verify_deployment(
        record,
        step_names=list(STEP_ORDER),
        policy_problems=p.audit_access_policy(record),
    )
    if issues:
        error(f"Verification failed with {len(issues)} issue(s)")


@server_app.command(name="logs")
def show_boot_log(name: str, *, lines: int = 100):
    """View the first-boot log.

    :param name: Deployment name
    :param lines: Number of lines to show (default: 100)
    """
    record = load_deployment(name)
    output = boot_log(record["static_ip"], lines)
    sys.stdout.write(output)
    failed = [
        line for line in output.splitlines() if line.startswith("deployn8n: step ")
        and line.endswith(" failed")
    ]
    if failed:
        warn(f"{len(failed)} step(s) failed at boot; retry with: deployn8n server bringup {name}")


@server_app.command(name="ssh-command")
def ssh_command(name: str, *, key_file: str = DEFAULT_KEY_FILE):
    """Print the SSH command for a deployment.

    :param name: Deployment name
    :param key_file: Private key path
    """
    record = load_deployment(name)
    print(build_outputs(record["static_ip"], record["domain"], key_file=key_file)["SSHCommand"])


def main():
    setup_logging()
    app()


if __name__ == "__main__":
    main()
