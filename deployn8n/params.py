"""Operator parameters: resolution from CLI and environment, validation, redaction."""

import os
import re
import secrets
from collections import abc as cabc
from dataclasses import dataclass, field, replace

from dotenv import load_dotenv

from .utils import SECRET_MASK, error, mask

DEFAULT_UBUNTU_AMI = (
    "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp2/ami-id"
)
DEFAULT_INSTANCE_TYPE = "t2.micro"
DEFAULT_DB_PORT = 5432
DEFAULT_DB_NAME = "postgres"
DEFAULT_BASIC_AUTH_USER = "admin"
ENV_PREFIX = "N8N_"

INSTANCE_TYPES = [
    "t2.micro",
    "t2.small",
    "t2.medium",
    "t3.micro",
    "t3.small",
    "t3.medium",
    "t3.large",
    "t3a.micro",
    "t3a.small",
    "t3a.medium",
    "m5.large",
    "m6i.large",
]

REQUIRED_FIELDS = [
    "key_name",
    "domain_name",
    "email",
    "db_host",
    "db_user",
    "db_password",
    "encryption_key",
]

SECRET_FIELDS = ["db_password", "encryption_key", "basic_auth_password"]

_DOMAIN_RE = re.compile(
    r"^(?=.{1,253}$)(?!-)[a-z0-9-]{1,63}(?<!-)(\.(?!-)[a-z0-9-]{1,63}(?<!-))+$",
    re.IGNORECASE,
)
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class DeploymentParams:
    """Values needed before anything is provisioned.

    Secret fields are excluded from repr so they never leak into tracebacks
    or log lines that format the whole object.
    """

    key_name: str
    domain_name: str
    email: str
    db_host: str
    db_user: str
    db_password: str = field(repr=False)
    encryption_key: str = field(repr=False)
    basic_auth_password: str = field(repr=False)
    ubuntu_ami: str = DEFAULT_UBUNTU_AMI
    instance_type: str = DEFAULT_INSTANCE_TYPE
    db_port: int = DEFAULT_DB_PORT
    db_name: str = DEFAULT_DB_NAME
    basic_auth_user: str = DEFAULT_BASIC_AUTH_USER
    generated_password: bool = False

    @property
    def secrets(self) -> list[str]:
        return [getattr(self, name) for name in SECRET_FIELDS]

    def redacted(self) -> dict:
        """Return all parameters as a dict with secret values masked."""
        data = {
            "key_name": self.key_name,
            "domain_name": self.domain_name,
            "email": self.email,
            "db_host": self.db_host,
            "db_port": self.db_port,
            "db_name": self.db_name,
            "db_user": self.db_user,
            "db_password": self.db_password,
            "encryption_key": self.encryption_key,
            "basic_auth_user": self.basic_auth_user,
            "basic_auth_password": self.basic_auth_password,
            "ubuntu_ami": self.ubuntu_ami,
            "instance_type": self.instance_type,
        }
        for name in SECRET_FIELDS:
            data[name] = mask(data[name])
        return data

    def masked(self) -> "DeploymentParams":
        """Copy with every secret replaced by the mask, for rendering previews."""
        return replace(
            self,
            db_password=SECRET_MASK,
            encryption_key=SECRET_MASK,
            basic_auth_password=SECRET_MASK,
        )


def env_key(name: str) -> str:
    return f"{ENV_PREFIX}{name.upper()}"


def is_ssm_parameter(ami: str) -> bool:
    """SSM parameter paths start with '/', AMI ids with 'ami-'."""
    return ami.startswith("/")


def generate_password(length: int = 24) -> str:
    return secrets.token_urlsafe(length)


def validate_params(params: DeploymentParams) -> list[str]:
    """Check parameter values, returning a list of problems (empty when valid)."""
    problems = []
    if not _DOMAIN_RE.match(params.domain_name):
        problems.append(f"Invalid domain name: '{params.domain_name}'")
    if not _EMAIL_RE.match(params.email):
        problems.append(f"Invalid email: '{params.email}'")
    if params.instance_type not in INSTANCE_TYPES:
        problems.append(
            f"Invalid instance type: '{params.instance_type}' "
            f"(valid: {', '.join(INSTANCE_TYPES[:4])}, ...)"
        )
    if not 0 < params.db_port < 65536:
        problems.append(f"Invalid database port: {params.db_port}")
    if not (is_ssm_parameter(params.ubuntu_ami) or params.ubuntu_ami.startswith("ami-")):
        problems.append(
            f"Invalid image reference: '{params.ubuntu_ami}' "
            "(expected an SSM parameter path or an ami- id)"
        )
    return problems


def resolve_params(
    *,
    key_name: str | None = None,
    domain_name: str | None = None,
    email: str | None = None,
    db_host: str | None = None,
    db_user: str | None = None,
    db_password: str | None = None,
    encryption_key: str | None = None,
    basic_auth_password: str | None = None,
    ubuntu_ami: str | None = None,
    instance_type: str | None = None,
    db_port: int | None = None,
    db_name: str | None = None,
    basic_auth_user: str | None = None,
    env: cabc.Mapping[str, str] | None = None,
    generate_password_if_missing: bool = True,
) -> DeploymentParams:
    """Resolve parameters from explicit values, then N8N_* environment variables.

    Fails closed: every missing required value is reported and the process
    exits before any cloud resource is touched.

    :param env: Environment mapping (default: os.environ after loading .env)
    :param generate_password_if_missing: Generate the basic auth password when
        none is given; when False a missing password is an error
    :return: Validated parameters
    :raises SystemExit: If a required value is missing or a value is invalid
    """
    if env is None:
        load_dotenv()
        env = os.environ

    given = {
        "key_name": key_name,
        "domain_name": domain_name,
        "email": email,
        "db_host": db_host,
        "db_user": db_user,
        "db_password": db_password,
        "encryption_key": encryption_key,
        "basic_auth_password": basic_auth_password,
        "ubuntu_ami": ubuntu_ami,
        "instance_type": instance_type,
        "db_port": db_port,
        "db_name": db_name,
        "basic_auth_user": basic_auth_user,
    }
    values = {}
    for name, value in given.items():
        if value is None or value == "":
            value = env.get(env_key(name)) or None
        if value is not None:
            values[name] = value

    missing = [name for name in REQUIRED_FIELDS if name not in values]
    if missing:
        flags = ", ".join(f"--{n.replace('_', '-')} / {env_key(n)}" for n in missing)
        error(f"Missing required parameters: {flags}")

    if "db_port" in values:
        try:
            values["db_port"] = int(values["db_port"])
        except ValueError:
            error(f"Invalid database port: '{values['db_port']}'")

    generated = "basic_auth_password" not in values
    if generated and not generate_password_if_missing:
        error(
            "Missing basic auth password: --basic-auth-password / "
            f"{env_key('basic_auth_password')}"
        )
    if generated:
        values["basic_auth_password"] = generate_password()

    params = DeploymentParams(**values, generated_password=generated)
    problems = validate_params(params)
    if problems:
        error("Invalid parameters:\n  " + "\n  ".join(problems))
    return params
