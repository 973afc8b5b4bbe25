"""Bring-up of a fresh instance into a running n8n behind nginx and TLS.

Bring-up is an ordered list of steps. Each step has an idempotent root
shell script and a check command that succeeds once the step's effect is in
place, so any single step can be verified or re-run on its own.

The same steps are rendered two ways: into the first-boot user data script
(run once by cloud-init, continuing past failures and leaving a marker file
per successful step), and into remote commands run over SSH by
run_bringup(), which stops at the first failing step.
"""

import base64
import hashlib
from dataclasses import dataclass
from textwrap import dedent

import yaml

from .firewall import N8N_PORT
from .params import DeploymentParams
from .types import StepName

APP_DIR = "/home/ubuntu/n8n"
COMPOSE_PATH = f"{APP_DIR}/docker-compose.yml"
NGINX_SITE = "n8n"
NGINX_SITE_PATH = f"/etc/nginx/sites-available/{NGINX_SITE}"
NGINX_ENABLED_PATH = f"/etc/nginx/sites-enabled/{NGINX_SITE}"
MARKER_DIR = "/var/lib/deployn8n"
N8N_IMAGE = "n8nio/n8n:latest"
ADMIN_USER = "ubuntu"

PACKAGES = ["docker.io", "docker-compose", "nginx", "certbot", "python3-certbot-nginx"]

STEP_ORDER: tuple[StepName, ...] = (
    "packages",
    "docker",
    "compose",
    "container",
    "proxy",
    "proxy-enable",
    "certificate",
    "docker-group",
)

CONTAINER_CHECK = '[ -n "$(docker ps -q --filter name=n8n --filter status=running)" ]'
PROXY_ENABLED_CHECK = (
    f"[ -L {NGINX_ENABLED_PATH} ] && systemctl is-active nginx > /dev/null 2>&1"
)


def certificate_check(domain: str) -> str:
    return (
        f"[ -d /etc/letsencrypt/live/{domain} ] && "
        f"grep -q ssl_certificate {NGINX_SITE_PATH}"
    )


@dataclass(frozen=True)
class BringupStep:
    """One idempotent unit of bring-up.

    triggers names later steps that must run again whenever this one runs,
    even if their own check passes.
    """

    name: StepName
    description: str
    script: str
    check: str
    triggers: tuple[StepName, ...] = ()


def render_compose(params: DeploymentParams) -> str:
    """Render the docker-compose descriptor for the n8n container."""
    compose = {
        "version": "3.8",
        "services": {
            "n8n": {
                "image": N8N_IMAGE,
                "ports": [f"{N8N_PORT}:{N8N_PORT}"],
                "environment": {
                    "DB_TYPE": "postgresdb",
                    "DB_POSTGRESDB_HOST": params.db_host,
                    "DB_POSTGRESDB_PORT": params.db_port,
                    "DB_POSTGRESDB_DATABASE": params.db_name,
                    "DB_POSTGRESDB_USER": params.db_user,
                    "DB_POSTGRESDB_PASSWORD": params.db_password,
                    "N8N_ENCRYPTION_KEY": params.encryption_key,
                    "N8N_BASIC_AUTH_ACTIVE": "true",
                    "N8N_BASIC_AUTH_USER": params.basic_auth_user,
                    "N8N_BASIC_AUTH_PASSWORD": params.basic_auth_password,
                    "N8N_HOST": params.domain_name,
                    "N8N_PROTOCOL": "https",
                    "WEBHOOK_URL": f"https://{params.domain_name}",
                    "NODE_FUNCTION_ALLOW_EXTERNAL": "*",
                },
                "volumes": ["n8n_data:/home/node/.n8n"],
                "restart": "unless-stopped",
            }
        },
        "volumes": {"n8n_data": None},
    }
    return yaml.safe_dump(compose, sort_keys=False, default_flow_style=False)


def render_nginx_site(domain: str, port: int = N8N_PORT) -> str:
    """Render the nginx server block proxying every path to the container.

    Upgrade/Connection headers are forwarded so the editor's websocket
    connection works through the proxy.
    """
    return dedent(f"""
        server {{
            listen 80;
            server_name {domain};

            location / {{
                proxy_pass http://localhost:{port};
                proxy_http_version 1.1;
                proxy_set_header Upgrade $http_upgrade;
                proxy_set_header Connection "upgrade";
                proxy_set_header Host $host;
                proxy_set_header X-Real-IP $remote_addr;
                proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
                proxy_set_header X-Forwarded-Proto $scheme;
            }}
        }}
    """).strip() + "\n"


def write_file_script(path: str, content: str, mode: str = "644", owner: str = "root") -> str:
    """Shell lines that write content to path, overwriting any previous file.

    Content travels base64-encoded so secrets and '$' need no shell quoting.
    """
    encoded = base64.b64encode(content.encode()).decode()
    return "\n".join(
        [
            f"mkdir -p {path.rsplit('/', 1)[0]}",
            f"echo '{encoded}' | base64 -d > {path}",
            f"chmod {mode} {path}",
            f"chown {owner}:{owner} {path}",
        ]
    )


def content_check(path: str, content: str) -> str:
    digest = hashlib.sha256(content.encode()).hexdigest()
    return f"echo '{digest}  {path}' | sha256sum -c --status"


def build_steps(params: DeploymentParams) -> list[BringupStep]:
    """Return the bring-up steps in the order they must run.

    Packages come before anything that uses them, the container starts
    before the proxy that forwards to it is enabled, and the certificate
    is requested only after the proxy for the same domain is active.
    """
    domain = params.domain_name
    compose = render_compose(params)
    site = render_nginx_site(domain)
    packages = " ".join(PACKAGES)

    return [
        BringupStep(
            name="packages",
            description="Install docker, docker-compose, nginx and certbot",
            script=dedent(f"""
                apt-get update
                DEBIAN_FRONTEND=noninteractive apt-get install -y {packages}
            """).strip(),
            check=f"dpkg -s {packages} > /dev/null 2>&1",
        ),
        BringupStep(
            name="docker",
            description="Start docker on boot",
            script="systemctl enable --now docker",
            check="systemctl is-enabled docker > /dev/null 2>&1 && systemctl is-active docker > /dev/null 2>&1",
        ),
        BringupStep(
            name="compose",
            description=f"Write {COMPOSE_PATH}",
            script=write_file_script(COMPOSE_PATH, compose, mode="600", owner=ADMIN_USER),
            check=content_check(COMPOSE_PATH, compose),
            triggers=("container",),
        ),
        BringupStep(
            name="container",
            description="Start the n8n container",
            script=f"cd {APP_DIR} && docker-compose up -d",
            check=CONTAINER_CHECK,
        ),
        BringupStep(
            name="proxy",
            description=f"Write nginx site {NGINX_SITE_PATH}",
            script=write_file_script(NGINX_SITE_PATH, site),
            # certbot edits the site in place, so check the invariant lines only
            check=(
                f"grep -q 'server_name {domain};' {NGINX_SITE_PATH} 2>/dev/null && "
                f"grep -q 'proxy_pass http://localhost:{N8N_PORT};' {NGINX_SITE_PATH}"
            ),
            triggers=("proxy-enable",),
        ),
        BringupStep(
            name="proxy-enable",
            description="Enable the nginx site and restart nginx",
            script=dedent(f"""
                ln -sf {NGINX_SITE_PATH} {NGINX_ENABLED_PATH}
                nginx -t
                systemctl restart nginx
            """).strip(),
            check=PROXY_ENABLED_CHECK,
        ),
        BringupStep(
            name="certificate",
            description=f"Obtain a Let's Encrypt certificate for {domain}",
            script=(
                f"certbot --nginx --non-interactive --agree-tos --redirect "
                f"--keep-until-expiring -d {domain} -m {params.email}"
            ),
            check=certificate_check(domain),
        ),
        BringupStep(
            name="docker-group",
            description=f"Let {ADMIN_USER} manage containers without sudo",
            script=f"usermod -aG docker {ADMIN_USER}",
            check=f"id -nG {ADMIN_USER} | grep -qw docker",
        ),
    ]


def step_names(steps: list[BringupStep]) -> list[str]:
    return [step.name for step in steps]


def select_steps(steps: list[BringupStep], only: str | None = None) -> list[BringupStep]:
    """Return all steps, or just the named one.

    :raises ValueError: If only names an unknown step
    """
    if only is None:
        return steps
    selected = [step for step in steps if step.name == only]
    if not selected:
        raise ValueError(
            f"Unknown step '{only}'. Steps: {', '.join(step_names(steps))}"
        )
    return selected


def marker_path(step_name: str) -> str:
    return f"{MARKER_DIR}/{step_name}.ok"


def _function_name(step_name: str) -> str:
    return "step_" + step_name.replace("-", "_")


def render_user_data(steps: list[BringupStep]) -> str:
    """Render the first-boot bash script that runs every step once, in order.

    A failing step does not stop the script; its marker file is simply not
    written and a 'deployn8n: step <name> failed' line lands in the boot log.
    """
    lines = [
        "#!/bin/bash",
        "# deployn8n first-boot bring-up",
        f"mkdir -p {MARKER_DIR}",
        "",
        "run_step() {",
        '    echo "deployn8n: step $1 starting"',
        '    "$2"',
        '    if [ $? -eq 0 ]; then',
        f'        touch "{MARKER_DIR}/$1.ok"',
        '        echo "deployn8n: step $1 ok"',
        "    else",
        '        echo "deployn8n: step $1 failed"',
        "    fi",
        "}",
        "",
    ]
    for step in steps:
        func = _function_name(step.name)
        lines.append(f"# {step.description}")
        lines.append(f"{func}() (")
        lines.append("    set -e")
        for line in step.script.splitlines():
            lines.append(f"    {line}")
        lines.append(")")
        lines.append(f"run_step {step.name} {func}")
        lines.append("")
    return "\n".join(lines)
