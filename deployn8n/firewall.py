"""Inbound access policy for the n8n instance.

The rule set is fixed: SSH, HTTP and HTTPS from anywhere. The n8n port is
never opened, so every request to the app goes through nginx.
"""

from dataclasses import dataclass
from datetime import datetime, timezone

from botocore.exceptions import ClientError

from .utils import error, log

N8N_PORT = 5678
ANY_SOURCE = "0.0.0.0/0"
SECURITY_GROUP_DESCRIPTION = "Allow SSH, HTTP, HTTPS"


@dataclass(frozen=True)
class IngressRule:
    protocol: str
    from_port: int
    to_port: int
    cidr: str
    description: str


INGRESS_RULES = (
    IngressRule("tcp", 22, 22, ANY_SOURCE, "SSH access"),
    IngressRule("tcp", 80, 80, ANY_SOURCE, "HTTP access"),
    IngressRule("tcp", 443, 443, ANY_SOURCE, "HTTPS access"),
)


def allowed_ports() -> set[int]:
    return {rule.from_port for rule in INGRESS_RULES}


def build_ip_permissions() -> list[dict]:
    """Return INGRESS_RULES in the EC2 IpPermissions shape."""
    return [
        {
            "IpProtocol": rule.protocol,
            "FromPort": rule.from_port,
            "ToPort": rule.to_port,
            "IpRanges": [{"CidrIp": rule.cidr, "Description": rule.description}],
        }
        for rule in INGRESS_RULES
    ]


def security_group_name(deployment_name: str) -> str:
    return f"deployn8n-{deployment_name}"


def find_security_group(ec2, name: str) -> str | None:
    response = ec2.describe_security_groups(
        Filters=[{"Name": "group-name", "Values": [name]}]
    )
    if response["SecurityGroups"]:
        return response["SecurityGroups"][0]["GroupId"]
    return None


def ensure_security_group(ec2, name: str, vpc_id: str | None = None) -> str:
    """Ensure the deployment's security group exists with the fixed rule set.

    Creates the group and authorizes exactly INGRESS_RULES. A group of the
    same name is reused only when its ingress rules already match.
    Outbound traffic keeps the AWS default (allow all).

    :param ec2: Boto3 EC2 client instance
    :param name: Security group name
    :param vpc_id: VPC to create the group in (default VPC when None)
    :return: Security group ID
    :raises SystemExit: If an existing group's rules differ from the policy
    """
    sg_id = find_security_group(ec2, name)
    if sg_id:
        problems = audit_security_group(ec2, sg_id)
        if problems:
            error(
                f"Existing security group '{name}' ('{sg_id}') does not match the "
                "access policy:\n  " + "\n  ".join(problems) + "\n"
                "Delete the group or choose another deployment name."
            )
        log(f"Using existing security group: '{name}'")
        return sg_id

    log(f"Creating security group '{name}'...")
    create_params = {
        "GroupName": name,
        "Description": SECURITY_GROUP_DESCRIPTION,
        "TagSpecifications": [
            {
                "ResourceType": "security-group",
                "Tags": [
                    {"Key": "Name", "Value": name},
                    {"Key": "ManagedBy", "Value": "deployn8n"},
                    {
                        "Key": "CreatedAt",
                        "Value": datetime.now(timezone.utc).isoformat(),
                    },
                ],
            }
        ],
    }
    if vpc_id:
        create_params["VpcId"] = vpc_id
    sg_id = ec2.create_security_group(**create_params)["GroupId"]

    try:
        ec2.authorize_security_group_ingress(
            GroupId=sg_id, IpPermissions=build_ip_permissions()
        )
    except ClientError as e:
        if e.response["Error"]["Code"] != "InvalidPermission.Duplicate":
            raise
    log(f"Created security group: '{name}' ('{sg_id}') allowing ports 22, 80, 443")
    return sg_id


def audit_security_group(ec2, sg_id: str) -> list[str]:
    """Compare a security group's ingress rules with the fixed policy.

    :param ec2: Boto3 EC2 client instance
    :param sg_id: Security group ID
    :return: Problems found; empty when the group matches INGRESS_RULES exactly
    """
    sg = ec2.describe_security_groups(GroupIds=[sg_id])["SecurityGroups"][0]
    actual = set()
    for perm in sg.get("IpPermissions", []):
        for ip_range in perm.get("IpRanges", []):
            actual.add(
                (
                    perm.get("IpProtocol"),
                    perm.get("FromPort"),
                    perm.get("ToPort"),
                    ip_range.get("CidrIp"),
                )
            )
    expected = {
        (rule.protocol, rule.from_port, rule.to_port, rule.cidr)
        for rule in INGRESS_RULES
    }

    problems = []
    for protocol, from_port, to_port, cidr in sorted(expected - actual):
        problems.append(f"Missing rule: {protocol} {from_port}-{to_port} from {cidr}")
    for protocol, from_port, to_port, cidr in sorted(
        actual - expected, key=lambda r: (str(r[0]), r[1] or 0)
    ):
        problems.append(f"Unexpected rule: {protocol} {from_port}-{to_port} from {cidr}")
    for _, from_port, to_port, _ in actual:
        if from_port is not None and to_port is not None and from_port <= N8N_PORT <= to_port:
            problems.append(f"n8n port {N8N_PORT} is reachable directly")
            break
    return problems
