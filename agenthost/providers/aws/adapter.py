"""EC2 adapter built on aioboto3.

Each instance gets its own key pair and security group (SSH ingress only),
boots the latest Ubuntu AMI resolved through the public SSM parameter, and
carries a ``Name`` tag so it can be found again after an unconfirmed create.
"""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import aioboto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from loguru import logger

from agenthost.api.model import Instance, InstanceConfig, InstanceSecret, InstanceStatus, Provider
from agenthost.channel.base import CommandResult
from agenthost.config import AWSDefaults
from agenthost.core.exceptions import (
    BillingRequiredError,
    CreateUncertainError,
    InstanceNotFoundError,
    ProviderError,
    TerminalProviderError,
    TransientProviderError,
    UnsupportedProviderError,
)
from agenthost.providers.base import generate_ssh_keypair

log = logger.bind(component="aws", provider="aws")

_TRANSIENT_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "Unavailable",
    "InternalError",
    "InsufficientInstanceCapacity",
})
_AUTH_CODES = frozenset({
    "AuthFailure",
    "UnauthorizedOperation",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "OptInRequired",
})
_NOT_FOUND_CODES = frozenset({"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"})

# The request may have reached EC2 before the connection dropped.
_UNCERTAIN = (ReadTimeoutError, ConnectionClosedError)
_UNREACHABLE = (EndpointConnectionError, ConnectTimeoutError, *_UNCERTAIN)

_STATE_MAP: dict[str, InstanceStatus] = {
    "pending": "starting",
    "running": "running",
    "stopping": "stopped",
    "stopped": "stopped",
    "shutting-down": "stopped",
    "terminated": "stopped",
}


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def is_billing_error(exc: BaseException) -> bool:
    """True when EC2 refuses the launch until the account adds billing."""
    text = str(exc)
    return "Free Tier" in text or (
        isinstance(exc, ClientError) and error_code(exc) == "InvalidParameterCombination"
    )


def classify(exc: Exception, size: str = "") -> ProviderError:
    """Map a botocore failure onto the agenthost provider hierarchy."""
    if isinstance(exc, ClientError):
        code = error_code(exc)
        if is_billing_error(exc):
            return BillingRequiredError(size, str(exc))
        if code in _TRANSIENT_CODES:
            return TransientProviderError(str(exc))
        if code in _AUTH_CODES:
            return TerminalProviderError(f"AWS rejected the credentials: {exc}")
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        if status in (429, 500, 502, 503, 504):
            return TransientProviderError(str(exc))
        return TerminalProviderError(str(exc))
    if isinstance(exc, (*_UNREACHABLE, TimeoutError, ConnectionError)):
        return TransientProviderError(str(exc))
    return TerminalProviderError(str(exc))


class AWSAdapter:
    """CloudAdapter for EC2.

    Args:
        access_key_id: IAM access key.
        secret_access_key: IAM secret.
        defaults: Region, instance type, AMI parameter and disk size.
        region: Overrides ``defaults.region``.
    """

    provider = Provider.AWS

    def __init__(
        self,
        access_key_id: str,
        secret_access_key: str,
        defaults: AWSDefaults | None = None,
        region: str | None = None,
    ) -> None:
        self.defaults = defaults or AWSDefaults()
        self.region = region or self.defaults.region
        self._session = aioboto3.Session(
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=self.region,
        )

    @asynccontextmanager
    async def _client(self, service: str = "ec2") -> AsyncIterator[Any]:
        async with self._session.client(service, region_name=self.region) as client:
            yield client

    def _to_instance(self, raw: dict[str, Any]) -> Instance:
        tags = {t["Key"]: t["Value"] for t in raw.get("Tags", [])}
        ip = raw.get("PublicIpAddress")
        specific = {"security_group": g["GroupId"] for g in raw.get("SecurityGroups", [])[:1]}
        if key_name := raw.get("KeyName"):
            specific["key_name"] = key_name
        return Instance(
            id=raw["InstanceId"],
            provider=Provider.AWS,
            name=tags.get("Name", raw["InstanceId"]),
            status=_STATE_MAP.get(raw.get("State", {}).get("Name", ""), "error"),
            size=raw.get("InstanceType", ""),
            region=self.region,
            ip=ip,
            url=f"ssh://{self.defaults.username}@{ip}" if ip else None,
            specific=specific,
        )

    # -------------------------------------------------------------------------
    # Supporting resources
    # -------------------------------------------------------------------------

    async def _resolve_ami(self, ssm: Any) -> str:
        try:
            response = await ssm.get_parameter(Name=self.defaults.ami_parameter)
        except ClientError as e:
            if error_code(e) == "ParameterNotFound":
                raise TerminalProviderError(
                    f"No Ubuntu AMI published in {self.region} "
                    f"(SSM parameter {self.defaults.ami_parameter})"
                ) from e
            raise
        ami_id: str = response["Parameter"]["Value"]
        log.debug("Resolved AMI {ami} in {region}", ami=ami_id, region=self.region)
        return ami_id

    async def _create_security_group(self, ec2: Any, name: str) -> str:
        response = await ec2.create_security_group(
            GroupName=f"{name}-sg",
            Description=f"SSH access for {name}",
        )
        group_id: str = response["GroupId"]
        await ec2.authorize_security_group_ingress(
            GroupId=group_id,
            IpPermissions=[{
                "IpProtocol": "tcp",
                "FromPort": 22,
                "ToPort": 22,
                "IpRanges": [{"CidrIp": "0.0.0.0/0", "Description": "SSH"}],
            }],
        )
        return group_id

    async def _cleanup(self, ec2: Any, key_name: str | None, group_id: str | None) -> None:
        if key_name:
            with contextlib.suppress(ClientError):
                await ec2.delete_key_pair(KeyName=key_name)
        if group_id:
            with contextlib.suppress(ClientError):
                await ec2.delete_security_group(GroupId=group_id)

    # -------------------------------------------------------------------------
    # CloudAdapter
    # -------------------------------------------------------------------------

    async def create_instance(self, config: InstanceConfig) -> tuple[Instance, InstanceSecret]:
        size = config.size or self.defaults.instance_type
        private_key, public_key = generate_ssh_keypair(config.name)
        secret = InstanceSecret(ssh_private_key=private_key)
        key_name = f"{config.name}-key"
        group_id: str | None = None
        launched = False

        async with self._client() as ec2, self._client("ssm") as ssm:
            try:
                ami_id = await self._resolve_ami(ssm)
                await ec2.import_key_pair(KeyName=key_name, PublicKeyMaterial=public_key.encode())
                group_id = await self._create_security_group(ec2, config.name)

                launched = True
                response = await ec2.run_instances(
                    ImageId=ami_id,
                    InstanceType=size,
                    KeyName=key_name,
                    SecurityGroupIds=[group_id],
                    MinCount=1,
                    MaxCount=1,
                    BlockDeviceMappings=[{
                        "DeviceName": "/dev/sda1",
                        "Ebs": {"VolumeSize": self.defaults.disk_gb, "VolumeType": "gp3"},
                    }],
                    TagSpecifications=[{
                        "ResourceType": "instance",
                        "Tags": [
                            {"Key": "Name", "Value": config.name},
                            {"Key": "agenthost", "Value": "true"},
                        ],
                    }],
                )
            except (ClientError, BotoCoreError) as e:
                if launched and isinstance(e, _UNCERTAIN):
                    raise CreateUncertainError(config.name, str(e), secret) from e
                await self._cleanup(ec2, key_name, group_id)
                raise classify(e, size) from e
            except TimeoutError as e:
                if launched:
                    raise CreateUncertainError(config.name, str(e), secret) from e
                raise TransientProviderError(str(e)) from e

        instance = self._to_instance(response["Instances"][0])
        log.info(
            "Launched {id} ({size}) in {region}", id=instance.id, size=size, region=self.region
        )
        return instance, secret

    async def get_instance(self, instance_id: str) -> Instance:
        async with self._client() as ec2:
            try:
                response = await ec2.describe_instances(InstanceIds=[instance_id])
            except ClientError as e:
                if error_code(e) in _NOT_FOUND_CODES:
                    raise InstanceNotFoundError(f"EC2 instance {instance_id} not found") from e
                raise classify(e) from e
            except BotoCoreError as e:
                raise classify(e) from e

        for reservation in response.get("Reservations", []):
            for raw in reservation.get("Instances", []):
                if raw.get("State", {}).get("Name") != "terminated":
                    return self._to_instance(raw)
        raise InstanceNotFoundError(f"EC2 instance {instance_id} not found")

    async def find_instance(self, name: str) -> Instance | None:
        async with self._client() as ec2:
            try:
                response = await ec2.describe_instances(
                    Filters=[
                        {"Name": "tag:Name", "Values": [name]},
                        {"Name": "instance-state-name", "Values": ["pending", "running"]},
                    ]
                )
            except (ClientError, BotoCoreError) as e:
                raise classify(e) from e

        for reservation in response.get("Reservations", []):
            for raw in reservation.get("Instances", []):
                return self._to_instance(raw)
        return None

    async def delete_instance(self, instance_id: str) -> None:
        instance = await self.get_instance(instance_id)
        async with self._client() as ec2:
            try:
                await ec2.terminate_instances(InstanceIds=[instance_id])
            except (ClientError, BotoCoreError) as e:
                raise classify(e) from e
            # Security group deletion fails until the instance is gone; that one is left behind.
            await self._cleanup(ec2, instance.specific.get("key_name"), None)
        log.info("Terminated {id}", id=instance_id)

    async def run_remote_command(
        self, instance_id: str, command: str, timeout: float | None = None
    ) -> CommandResult:
        raise UnsupportedProviderError("AWS instances are reached over SSH")

    async def validate_credentials(self) -> None:
        async with self._client("sts") as sts:
            try:
                await sts.get_caller_identity()
            except (ClientError, BotoCoreError) as e:
                raise classify(e) from e

    async def close(self) -> None:
        pass
