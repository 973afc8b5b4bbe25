"""AWS provider: credentials, image lookup, and the deployment's EC2 resources."""

import os
import time
from collections.abc import Callable
from datetime import datetime, timezone

import boto3
from botocore.exceptions import ClientError, ProfileNotFound, WaiterError
from dotenv import load_dotenv

from .firewall import (
    audit_security_group,
    ensure_security_group,
    find_security_group,
    security_group_name,
)
from .params import DeploymentParams, is_ssm_parameter
from .types import DeploymentData, DeploymentListItem
from .utils import error, log, warn

MANAGED_BY = "deployn8n"
DEFAULT_REGION = "us-east-1"
ACTIVE_STATES = ["running", "pending", "stopping", "stopped"]
SG_DELETE_RETRIES = 10
SG_DELETE_DELAY = 5

REGIONS = [
    "us-east-1",
    "us-east-2",
    "us-west-1",
    "us-west-2",
    "ca-central-1",
    "eu-west-1",
    "eu-west-2",
    "eu-west-3",
    "eu-central-1",
    "eu-north-1",
    "ap-southeast-1",
    "ap-southeast-2",
    "ap-northeast-1",
    "ap-northeast-2",
    "ap-south-1",
    "sa-east-1",
]


def resource_tags(resource_type: str, name: str) -> list[dict]:
    return [
        {
            "ResourceType": resource_type,
            "Tags": [
                {"Key": "Name", "Value": name},
                {"Key": "ManagedBy", "Value": MANAGED_BY},
                {"Key": "CreatedAt", "Value": datetime.now(timezone.utc).isoformat()},
                {"Key": "CreatedBy", "Value": os.getenv("USER", "unknown")},
            ],
        }
    ]


def _tag_value(resource: dict, key: str) -> str | None:
    return next(
        (tag["Value"] for tag in resource.get("Tags", []) if tag["Key"] == key), None
    )


def check_aws_auth(profile: str | None = None) -> None:
    """Validate AWS credentials, fail fast with clear error if expired or invalid.

    :param profile: AWS profile name to check (uses default chain if None)
    :raises SystemExit: If credentials are missing, expired, or invalid
    """
    aws_config = {}
    if profile:
        aws_config["profile_name"] = profile

    try:
        session = boto3.Session(**aws_config)
        sts = session.client("sts")
        sts.get_caller_identity()
    except ClientError as e:
        error_code = e.response["Error"]["Code"]
        if error_code in ("ExpiredToken", "ExpiredTokenException"):
            login_cmd = f"aws sso login --profile {profile}" if profile else "aws sso login"
            error(f"AWS credentials expired. Run:\n  {login_cmd}")
        else:
            error(f"AWS authentication failed ({error_code}): {e}")
    except Exception as e:
        error(f"AWS authentication failed: {e}")


class AWSProvider:
    def __init__(self, region: str | None = None, aws_profile: str | None = None):
        self.aws_config = AWSProvider.get_aws_config(profile=aws_profile)

        region = region or self.aws_config.get("region_name", DEFAULT_REGION)

        # Accept an availability zone such as us-east-1a
        if region and region[-1].isalpha() and region[:-1] in REGIONS:
            normalized_region = region[:-1]
            log(f"Converted availability zone '{region}' to region '{normalized_region}'")
            region = normalized_region
        elif region not in REGIONS:
            error(
                f"Invalid AWS region: '{region}'\n"
                f"Valid AWS regions: '{', '.join(REGIONS[:6])}', ..."
            )
        self.region = region
        self.aws_config["region_name"] = region

    @staticmethod
    def get_aws_config(profile: str | None = None) -> dict:
        """Build boto3.Session() arguments.

        boto3 reads the shared credentials and config files itself; an
        unknown profile falls back to the default credential chain.

        :param profile: Explicit AWS profile name (overrides AWS_PROFILE env var)
        :return: Dict with profile_name and/or region_name keys for boto3.Session()
        """
        load_dotenv()

        profile_name = profile or os.getenv("AWS_PROFILE")
        try:
            session = boto3.Session(profile_name=profile_name)
        except ProfileNotFound:
            log(f"AWS profile '{profile_name}' not found, using default credential chain...")
            os.environ.pop("AWS_PROFILE", None)
            profile_name = None
            session = boto3.Session()

        aws_config = {}
        if profile_name:
            aws_config["profile_name"] = profile_name
        region = os.getenv("AWS_REGION") or session.region_name
        if region:
            aws_config["region_name"] = region
        return aws_config

    @property
    def profile_name(self) -> str | None:
        return self.aws_config.get("profile_name")

    def _get_session(self):
        """Get boto3 session using aws_config."""
        return boto3.Session(**self.aws_config)

    def _get_ec2_client(self):
        return self._get_session().client("ec2")

    def _get_ssm_client(self):
        return self._get_session().client("ssm")

    def validate_auth(self) -> None:
        check_aws_auth(self.profile_name)
        sts = self._get_session().client("sts")
        identity = sts.get_caller_identity()
        account_id = identity.get("Account", "unknown")
        profile = self.profile_name or identity.get("Arn", "instance-role").split("/")[-1]
        log(f"AWS: region={self.region}  profile={profile}  account={account_id}")

    def key_pair_exists(self, key_name: str) -> bool:
        ec2 = self._get_ec2_client()
        try:
            ec2.describe_key_pairs(KeyNames=[key_name])
        except ClientError as e:
            if e.response["Error"]["Code"] == "InvalidKeyPair.NotFound":
                return False
            raise
        return True

    def resolve_ami(self, ami: str) -> str:
        """Resolve an image reference to an AMI id.

        :param ami: SSM public parameter path or an ami- id
        :return: AMI id
        :raises SystemExit: If the parameter or image does not exist
        """
        if is_ssm_parameter(ami):
            ssm = self._get_ssm_client()
            try:
                ami_id = ssm.get_parameter(Name=ami)["Parameter"]["Value"]
            except ClientError as e:
                if e.response["Error"]["Code"] == "ParameterNotFound":
                    error(f"SSM parameter not found: '{ami}'")
                raise
            log(f"Resolved '{ami}' to '{ami_id}'")
            return ami_id

        ec2 = self._get_ec2_client()
        try:
            images = ec2.describe_images(ImageIds=[ami])["Images"]
        except ClientError as e:
            if e.response["Error"]["Code"] in ("InvalidAMIID.NotFound", "InvalidAMIID.Malformed"):
                error(f"AMI not found: '{ami}'")
            raise
        if not images:
            error(f"AMI not found: '{ami}'")
        return ami

    def find_instance(self, name: str) -> dict | None:
        ec2 = self._get_ec2_client()
        response = ec2.describe_instances(
            Filters=[
                {"Name": "tag:Name", "Values": [name]},
                {"Name": "tag:ManagedBy", "Values": [MANAGED_BY]},
                {"Name": "instance-state-name", "Values": ACTIVE_STATES},
            ]
        )
        for reservation in response["Reservations"]:
            for instance in reservation["Instances"]:
                return instance
        return None

    def get_instance_state(self, instance_id: str) -> str | None:
        ec2 = self._get_ec2_client()
        try:
            response = ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if e.response["Error"]["Code"] == "InvalidInstanceID.NotFound":
                return None
            raise
        for reservation in response["Reservations"]:
            for instance in reservation["Instances"]:
                return instance["State"]["Name"]
        return None

    def preflight(self, name: str, params: DeploymentParams) -> str:
        """Run every check that can fail before a resource is created.

        :return: Resolved AMI id
        :raises SystemExit: If any check fails; nothing has been created yet
        """
        self.validate_auth()

        if self.find_instance(name):
            error(f"Deployment '{name}' already exists in '{self.region}'")

        if not self.key_pair_exists(params.key_name):
            error(
                f"EC2 key pair '{params.key_name}' not found in '{self.region}'. "
                "Create or import it first:\n"
                f"  aws ec2 import-key-pair --key-name {params.key_name} "
                "--public-key-material fileb://~/.ssh/id_ed25519.pub"
            )
        log(f"Using key pair: '{params.key_name}'")

        return self.resolve_ami(params.ubuntu_ami)

    def allocate_static_ip(self, ec2, name: str) -> tuple[str, str]:
        """:return: (allocation_id, public_ip)"""
        response = ec2.allocate_address(
            Domain="vpc", TagSpecifications=resource_tags("elastic-ip", name)
        )
        log(f"Allocated Elastic IP: '{response['PublicIp']}'")
        return response["AllocationId"], response["PublicIp"]

    def associate_static_ip(self, ec2, allocation_id: str, instance_id: str) -> None:
        ec2.associate_address(
            AllocationId=allocation_id, InstanceId=instance_id, AllowReassociation=True
        )
        log(f"Associated Elastic IP with instance '{instance_id}'")

    def create_deployment(
        self,
        name: str,
        params: DeploymentParams,
        user_data: str,
        ami_id: str,
        checkpoint: Callable[[DeploymentData], None] | None = None,
    ) -> DeploymentData:
        """Create the security group, instance and Elastic IP, in that order.

        Once the instance exists, every resource reference is passed to
        checkpoint as soon as it is known, so a later failure still leaves a
        record that `deploy delete` can work from.

        :param user_data: First-boot script (boto3 base64-encodes it)
        :param ami_id: Image id returned by preflight()
        :param checkpoint: Called with the record so far after each resource
        :return: Deployment record
        :raises SystemExit: If a step after the instance launch fails
        """
        ec2 = self._get_ec2_client()

        try:
            sg_id = ensure_security_group(ec2, security_group_name(name))
        except ClientError as e:
            if e.response["Error"]["Code"] == "VPCIdNotSpecified":
                error(
                    f"No default VPC in '{self.region}'. Create one with:\n"
                    f"  aws ec2 create-default-vpc --region {self.region}"
                )
            raise

        log(f"Creating EC2 instance '{name}' ({params.instance_type})...")
        response = ec2.run_instances(
            ImageId=ami_id,
            InstanceType=params.instance_type,
            KeyName=params.key_name,
            MinCount=1,
            MaxCount=1,
            SecurityGroupIds=[sg_id],
            UserData=user_data,
            TagSpecifications=resource_tags("instance", name),
        )
        instance_id = response["Instances"][0]["InstanceId"]

        record: DeploymentData = {
            "name": name,
            "instance_id": instance_id,
            "region": self.region,
            "ami": ami_id,
            "instance_type": params.instance_type,
            "key_name": params.key_name,
            "security_group_id": sg_id,
            "domain": params.domain_name,
            "email": params.email,
            "db_host": params.db_host,
            "db_port": params.db_port,
            "db_name": params.db_name,
            "db_user": params.db_user,
            "basic_auth_user": params.basic_auth_user,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        if self.profile_name:
            record["aws_profile"] = self.profile_name
        if checkpoint:
            checkpoint(record)

        try:
            log("Waiting for instance to start...")
            waiter = ec2.get_waiter("instance_running")
            waiter.wait(InstanceIds=[instance_id])

            allocation_id, static_ip = self.allocate_static_ip(ec2, name)
            record["allocation_id"] = allocation_id
            record["static_ip"] = static_ip
            if checkpoint:
                checkpoint(record)

            self.associate_static_ip(ec2, allocation_id, instance_id)
        except (ClientError, WaiterError) as e:
            error(
                f"Creating '{name}' failed after instance '{instance_id}' was launched: {e}\n"
                f"Remove what was created with: deployn8n deploy delete {name}"
            )

        return record

    def rebind_static_ip(self, record: DeploymentData, instance_id: str) -> DeploymentData:
        """Move the deployment's Elastic IP to another instance (e.g. a replacement)."""
        ec2 = self._get_ec2_client()
        self.associate_static_ip(ec2, record["allocation_id"], instance_id)
        return {**record, "instance_id": instance_id}

    def release_static_ip(self, ec2, allocation_id: str) -> None:
        try:
            addresses = ec2.describe_addresses(AllocationIds=[allocation_id])["Addresses"]
        except ClientError as e:
            if e.response["Error"]["Code"] == "InvalidAllocationID.NotFound":
                log(f"Elastic IP '{allocation_id}' already released")
                return
            raise
        for address in addresses:
            if address.get("AssociationId"):
                ec2.disassociate_address(AssociationId=address["AssociationId"])
        ec2.release_address(AllocationId=allocation_id)
        log(f"Released Elastic IP '{allocation_id}'")

    def delete_security_group(self, ec2, sg_id: str) -> None:
        """Delete a security group, retrying while a terminating instance still holds it."""
        for attempt in range(SG_DELETE_RETRIES):
            try:
                ec2.delete_security_group(GroupId=sg_id)
                log(f"Deleted security group '{sg_id}'")
                return
            except ClientError as e:
                code = e.response["Error"]["Code"]
                if code == "InvalidGroup.NotFound":
                    return
                if code != "DependencyViolation" or attempt == SG_DELETE_RETRIES - 1:
                    raise
            time.sleep(SG_DELETE_DELAY)

    def delete_deployment(self, record: DeploymentData) -> None:
        """Release the Elastic IP, terminate the instance, delete the security group."""
        self.validate_auth()
        ec2 = self._get_ec2_client()

        if record.get("allocation_id"):
            self.release_static_ip(ec2, record["allocation_id"])

        instance_id = record.get("instance_id")
        if instance_id and self.get_instance_state(instance_id) not in (None, "terminated"):
            ec2.terminate_instances(InstanceIds=[instance_id])
            log("Waiting for instance to terminate...")
            waiter = ec2.get_waiter("instance_terminated")
            waiter.wait(InstanceIds=[instance_id])

        if record.get("security_group_id"):
            self.delete_security_group(ec2, record["security_group_id"])

    def list_deployments(self) -> list[DeploymentListItem]:
        self.validate_auth()
        ec2 = self._get_ec2_client()
        response = ec2.describe_instances(
            Filters=[
                {"Name": "tag:ManagedBy", "Values": [MANAGED_BY]},
                {"Name": "instance-state-name", "Values": ACTIVE_STATES},
            ]
        )

        deployments = []
        for reservation in response["Reservations"]:
            for instance in reservation["Instances"]:
                deployments.append(
                    {
                        "name": _tag_value(instance, "Name") or instance["InstanceId"],
                        "instance_id": instance["InstanceId"],
                        "static_ip": instance.get("PublicIpAddress", "N/A"),
                        "status": instance["State"]["Name"],
                        "region": instance["Placement"]["AvailabilityZone"],
                    }
                )
        return deployments

    def cleanup_resources(self, *, dry_run: bool = True) -> None:
        """Release unassociated Elastic IPs and delete unused security groups.

        Only resources tagged ManagedBy=deployn8n are considered. An Elastic IP
        left unassociated keeps costing money, so it is reported first.

        :param dry_run: Show what would be deleted without deleting
        """
        self.validate_auth()
        ec2 = self._get_ec2_client()

        log(f"Scanning for orphaned resources in '{self.region}'...")
        addresses = ec2.describe_addresses(
            Filters=[{"Name": "tag:ManagedBy", "Values": [MANAGED_BY]}]
        )["Addresses"]
        orphaned_ips = [a for a in addresses if not a.get("AssociationId")]
        for address in orphaned_ips:
            label = f"'{address['PublicIp']}' ('{address['AllocationId']}')"
            if dry_run:
                warn(f"[DRY RUN] Would release unassociated Elastic IP {label}")
            else:
                ec2.release_address(AllocationId=address["AllocationId"])
                log(f"Released Elastic IP {label}")
        if not orphaned_ips:
            log("No unassociated Elastic IPs")

        sgs = ec2.describe_security_groups(
            Filters=[{"Name": "tag:ManagedBy", "Values": [MANAGED_BY]}]
        )["SecurityGroups"]
        for sg in sgs:
            sg_id = sg["GroupId"]
            sg_name = sg["GroupName"]
            in_use = ec2.describe_instances(
                Filters=[
                    {"Name": "instance.group-id", "Values": [sg_id]},
                    {"Name": "instance-state-name", "Values": ACTIVE_STATES},
                ]
            )["Reservations"]
            if in_use:
                log(f"Security group '{sg_name}' ('{sg_id}') in use")
            elif dry_run:
                log(f"[DRY RUN] Would delete unused security group '{sg_name}' ('{sg_id}')")
            else:
                try:
                    ec2.delete_security_group(GroupId=sg_id)
                    log(f"Deleted security group '{sg_name}' ('{sg_id}')")
                except ClientError as e:
                    if e.response["Error"]["Code"] == "DependencyViolation":
                        log(f"Security group '{sg_name}' ('{sg_id}') is still in use")
                    else:
                        raise

        if dry_run:
            log("Run with --no-dry-run to actually delete resources")

    def audit_access_policy(self, record: DeploymentData) -> list[str]:
        """:return: Problems with the deployment's security group rules"""
        ec2 = self._get_ec2_client()
        sg_id = record.get("security_group_id") or find_security_group(
            ec2, security_group_name(record["name"])
        )
        if not sg_id:
            return ["Security group not found"]
        return audit_security_group(ec2, sg_id)
