"""Type definitions for deployn8n."""

from typing import Literal, TypedDict

StepName = Literal[
    "packages",
    "docker",
    "compose",
    "container",
    "proxy",
    "proxy-enable",
    "certificate",
    "docker-group",
]


class DeploymentData(TypedDict, total=False):
    """Deployment record stored in .deployment.json files.

    Holds resource references only; secret parameters are never stored here.
    """

    name: str
    instance_id: str
    region: str
    aws_profile: str
    ami: str
    instance_type: str
    key_name: str
    security_group_id: str
    allocation_id: str
    static_ip: str
    domain: str
    email: str
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    basic_auth_user: str
    created_at: str


class DeploymentOutputs(TypedDict):
    """Values reported after provisioning."""

    StaticIP: str
    SSHCommand: str
    AccessURL: str


class DeploymentListItem(TypedDict):
    """Deployment information in list results."""

    name: str
    instance_id: str
    static_ip: str
    status: str
    region: str
