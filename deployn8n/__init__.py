"""deployn8n - Provision a single-instance n8n deployment on AWS."""

from .bringup import BringupStep, build_steps, render_user_data
from .cli import app
from .firewall import INGRESS_RULES, IngressRule
from .outputs import build_outputs
from .params import DeploymentParams, resolve_params
from .providers import AWSProvider, check_aws_auth
from .types import DeploymentData, DeploymentListItem, DeploymentOutputs, StepName
from .utils import error, log, warn

__all__ = [
    "AWSProvider",
    "check_aws_auth",
    "app",
    "log",
    "warn",
    "error",
    "BringupStep",
    "build_steps",
    "render_user_data",
    "INGRESS_RULES",
    "IngressRule",
    "build_outputs",
    "DeploymentParams",
    "resolve_params",
    "DeploymentData",
    "DeploymentListItem",
    "DeploymentOutputs",
    "StepName",
]
