"""Values reported once a deployment exists."""

from rich import print
from rich.table import Table

from .bringup import ADMIN_USER
from .types import DeploymentOutputs

DEFAULT_KEY_FILE = "your-key.pem"

DESCRIPTIONS = {
    "StaticIP": "Static Elastic IP to use in your DNS A-record",
    "SSHCommand": "SSH access command (replace .pem with your actual key file)",
    "AccessURL": "Your secure n8n URL",
}


def build_outputs(
    static_ip: str,
    domain: str,
    *,
    key_file: str = DEFAULT_KEY_FILE,
    user: str = ADMIN_USER,
) -> DeploymentOutputs:
    return {
        "StaticIP": static_ip,
        "SSHCommand": f"ssh -i {key_file} {user}@{static_ip}",
        "AccessURL": f"https://{domain}",
    }


def print_outputs(outputs: DeploymentOutputs) -> None:
    table = Table(title="Outputs")
    table.add_column("Key")
    table.add_column("Value", no_wrap=True)
    table.add_column("Description")
    for key, value in outputs.items():
        table.add_row(key, value, DESCRIPTIONS.get(key, ""))
    print(table)
