"""Spot instance launch, tagging and termination for spotsh."""

from __future__ import annotations

import base64
import time
from dataclasses import replace
from typing import Any, Callable

from botocore.exceptions import ClientError
from rich.console import Console

from spotsh.ami import DEFAULT_OS, ImageResolver, default_user
from spotsh.clients import ALL_REGIONS, ClientFactory, new_client, resolve_region
from spotsh.exceptions import ConsistencyError, SpotCapacityError, ValidationError
from spotsh.keys import KeyManager
from spotsh.network import NetworkResolver
from spotsh.pricing import PriceTable, find_cheapest
from spotsh.types import InstanceRecord, LaunchSpec, OperatingSystem

console = Console(stderr=True)

USER_TAG_KEY = "spotsh.user"
OS_TAG_KEY = "spotsh.os"
VPN_TAG_KEY = "spotsh.vpn"

DEFAULT_INSTANCE_TYPES = [
    "c5.large",
    "c5a.large",
    "c6i.large",
    "c6a.large",
    "c7i.large",
    "c7a.large",
    "c7i-flex.large",
]
DEFAULT_MAX_SPOT_PRICE = "0.08"
DEFAULT_ROOT_VOLUME_GIB = 64
LAUNCH_TEMPLATE_NAME = "spotsh"

ADDRESS_POLL_INTERVAL = 1.0


def validate_launch_spec(spec: LaunchSpec) -> None:
    """Reject contradictory launch requests before touching the cloud.

    Raises:
        ValidationError: If more than one of os, image id and image name is
            set, if an image is given without a user, or if os is invalid.
    """
    if spec.image_id and spec.image_name:
        raise ValidationError(
            "Image id and image name are mutually exclusive; please specify one or the other"
        )
    if (spec.image_id or spec.image_name) and spec.os is not OperatingSystem.NONE:
        raise ValidationError(
            "Operating system and image id/name are mutually exclusive; "
            "please specify one or the other"
        )
    if (spec.image_id or spec.image_name) and not spec.user:
        raise ValidationError("User must be specified when image id or image name is specified")
    if spec.os is OperatingSystem.INVALID:
        raise ValidationError(
            "Invalid operating system; choose one of: "
            + ", ".join(str(o) for o in OperatingSystem.launchable())
        )


def ownership_tags(user: str, os_: OperatingSystem, vpn: bool = False) -> list[dict[str, str]]:
    return [
        {"Key": USER_TAG_KEY, "Value": user},
        {"Key": OS_TAG_KEY, "Value": str(os_)},
        {"Key": VPN_TAG_KEY, "Value": "true" if vpn else "false"},
    ]


class EC2Manager:
    """Launches, tags and terminates spotsh instances in one region.

    ``region`` may be ``all``, in which case launch goes to whichever region
    has the cheapest matching spot capacity.
    """

    def __init__(
        self,
        region: str | None = None,
        client_factory: ClientFactory = new_client,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.region = resolve_region(region)
        self.client_factory = client_factory
        self._sleep = sleep

    def client(self, service: str = "ec2", region: str | None = None) -> Any:
        return self.client_factory(service, region or self.region)

    # ------------------------------------------------------------------
    # Launch
    # ------------------------------------------------------------------

    def launch(self, spec: LaunchSpec | None = None) -> InstanceRecord:
        """Launch one spot instance and wait for its public address.

        The instance is tagged with the ownership tags in the same request
        that creates it. If describing the instance fails while waiting for
        an address, the launch is still reported as a success with an empty
        ``public_ip``.

        Args:
            spec: Launch preferences; unset fields get defaults.

        Returns:
            The launched instance.

        Raises:
            ValidationError: For contradictory or incomplete input.
            ImageNotFoundError: If ``spec.image_name`` matches none of our images.
            SpotCapacityError: If the fleet could not satisfy the request.
            ConsistencyError: If the API returned an impossible instance count.
        """
        spec = replace(spec) if spec is not None else LaunchSpec()
        validate_launch_spec(spec)

        instance_types = list(dict.fromkeys(spec.instance_types or DEFAULT_INSTANCE_TYPES))
        max_price = spec.max_spot_price or DEFAULT_MAX_SPOT_PRICE

        table, best = find_cheapest(instance_types, self.region, self.client_factory)
        region = self.region
        if region == ALL_REGIONS:
            if best is None:
                raise ValidationError(
                    f"Could not find spot pricing for {', '.join(instance_types)} in any region"
                )
            region = best[1]
            console.print(f"Launching in cheapest region [bold]{region}[/bold]")

        ec2 = self.client("ec2", region)
        images = ImageResolver(ec2, self.client("ssm", region))
        network = NetworkResolver(ec2)

        image_id, user, os_ = self._resolve_image(spec, images)
        sg_id = spec.security_group_id or network.default_security_group_id()

        keys = KeyManager(ec2, region)
        key_name = spec.key_name or keys.ensure_default_key()
        local_key_file = keys.local_key_file(key_name)
        if not local_key_file:
            console.print(
                f"[yellow]No local private key found for key pair [bold]{key_name}[/bold][/yellow]"
            )

        az_name = ""
        subnet_id = ""
        if best is not None:
            az_name = best[2]
            subnet_id = network.subnet_for_az(az_name)

        root_device = images.root_device_name(image_id)
        root_size = spec.root_volume_size or DEFAULT_ROOT_VOLUME_GIB

        template_id = self._create_launch_template(
            ec2,
            image_id=image_id,
            key_name=key_name,
            sg_id=sg_id,
            role_name=spec.role_name,
            init_cmd=spec.init_cmd,
            root_device=root_device,
            root_size=root_size,
            tags=ownership_tags(user, os_),
        )
        instance_id, instance_type = self._create_fleet(
            ec2, template_id, instance_types, max_price, subnet_id
        )
        console.print(f"Launched spot instance [bold]{instance_id}[/bold] ({instance_type})")

        record = InstanceRecord(
            instance_id=instance_id,
            user=user,
            local_key_file=local_key_file,
            instance_type=instance_type,
            image_id=image_id,
            az_name=az_name,
            os=os_,
            security_group_id=sg_id,
            region=region,
        )
        self._wait_for_address(ec2, record)
        record.current_price = _observed_price(table, record)
        return record

    def _resolve_image(
        self, spec: LaunchSpec, images: ImageResolver
    ) -> tuple[str, str, OperatingSystem]:
        """Return (image_id, user, os) for a validated spec."""
        image_id = spec.image_id
        if spec.image_name:
            image_id = images.image_id_from_name(spec.image_name)
        if image_id:
            return image_id, spec.user, OperatingSystem.NONE

        os_ = spec.os if spec.os is not OperatingSystem.NONE else DEFAULT_OS
        with console.status(f"Resolving latest image for [bold]{os_}[/bold]..."):
            image_id = images.latest_image_id(os_)
        return image_id, spec.user or default_user(os_), os_

    def _delete_launch_template(self, ec2: Any) -> None:
        try:
            resp = ec2.describe_launch_templates(LaunchTemplateNames=[LAUNCH_TEMPLATE_NAME])
        except ClientError as e:
            if e.response["Error"]["Code"] not in (
                "InvalidLaunchTemplateName.NotFoundException",
                "InvalidLaunchTemplateName.NotFound",
            ):
                raise
            return
        for tmpl in resp.get("LaunchTemplates", []):
            ec2.delete_launch_template(LaunchTemplateId=tmpl["LaunchTemplateId"])

    def _create_launch_template(
        self,
        ec2: Any,
        image_id: str,
        key_name: str,
        sg_id: str,
        role_name: str,
        init_cmd: str,
        root_device: str,
        root_size: int,
        tags: list[dict[str, str]],
    ) -> str:
        """(Re)create the ``spotsh`` launch template. Returns its id."""
        self._delete_launch_template(ec2)

        data: dict[str, Any] = {
            "ImageId": image_id,
            "KeyName": key_name,
            "SecurityGroupIds": [sg_id],
            "InstanceInitiatedShutdownBehavior": "terminate",
            "BlockDeviceMappings": [{
                "DeviceName": root_device,
                "Ebs": {"VolumeSize": root_size},
            }],
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
        }
        if role_name:
            data["IamInstanceProfile"] = {"Name": role_name}
        if init_cmd:
            data["UserData"] = base64.b64encode(init_cmd.encode()).decode()

        resp = ec2.create_launch_template(
            LaunchTemplateName=LAUNCH_TEMPLATE_NAME,
            LaunchTemplateData=data,
        )
        return resp["LaunchTemplate"]["LaunchTemplateId"]

    def _create_fleet(
        self,
        ec2: Any,
        template_id: str,
        instance_types: list[str],
        max_price: str,
        subnet_id: str,
    ) -> tuple[str, str]:
        """Request exactly one spot instance. Returns (instance_id, instance_type)."""
        overrides = []
        for itype in instance_types:
            override = {"InstanceType": itype, "MaxPrice": max_price}
            if subnet_id:
                override["SubnetId"] = subnet_id
            overrides.append(override)

        with console.status("Requesting spot instance..."):
            resp = ec2.create_fleet(
                Type="instant",
                LaunchTemplateConfigs=[{
                    "LaunchTemplateSpecification": {
                        "LaunchTemplateId": template_id,
                        "Version": "$Latest",
                    },
                    "Overrides": overrides,
                }],
                TargetCapacitySpecification={
                    "TotalTargetCapacity": 1,
                    "DefaultTargetCapacityType": "spot",
                    "OnDemandTargetCapacity": 0,
                    "SpotTargetCapacity": 1,
                },
                SpotOptions={
                    "AllocationStrategy": "price-capacity-optimized",
                    "InstanceInterruptionBehavior": "terminate",
                    "MaxTotalPrice": max_price,
                    "MinTargetCapacity": 1,
                    "SingleAvailabilityZone": True,
                    "SingleInstanceType": False,
                },
            )

        launched = [
            (instance_id, entry.get("InstanceType", ""))
            for entry in resp.get("Instances", [])
            for instance_id in entry.get("InstanceIds", [])
        ]
        errors = resp.get("Errors", [])
        if not launched and errors:
            attempts = [
                (
                    err.get("LaunchTemplateAndOverrides", {})
                    .get("Overrides", {})
                    .get("InstanceType", ""),
                    err.get("ErrorCode", ""),
                    err.get("ErrorMessage", ""),
                )
                for err in errors
            ]
            details = "; ".join(f"{t or '?'}: {code} {msg}".strip() for t, code, msg in attempts)
            raise SpotCapacityError(f"Spot fleet could not launch an instance: {details}", attempts)
        if len(launched) != 1:
            raise ConsistencyError(f"Unexpected instance count from fleet request: {len(launched)}")
        return launched[0]

    def _wait_for_address(self, ec2: Any, record: InstanceRecord) -> None:
        """Poll once a second until the instance has a public IP."""
        with console.status(f"Waiting for public IP of [bold]{record.instance_id}[/bold]..."):
            while True:
                self._sleep(ADDRESS_POLL_INTERVAL)
                try:
                    resp = ec2.describe_instances(InstanceIds=[record.instance_id])
                except ClientError as e:
                    # the instance exists; only its address is unknown
                    console.print(
                        f"[yellow]Could not confirm public IP of {record.instance_id}: {e}[/yellow]"
                    )
                    return

                reservations = resp.get("Reservations", [])
                if len(reservations) != 1:
                    raise ConsistencyError(
                        f"Unexpected reservation count for {record.instance_id}: {len(reservations)}"
                    )
                instances = reservations[0].get("Instances", [])
                if len(instances) != 1:
                    raise ConsistencyError(
                        f"Unexpected instance count in reservation for "
                        f"{record.instance_id}: {len(instances)}"
                    )
                inst = instances[0]
                if inst.get("PublicIpAddress"):
                    record.public_ip = inst["PublicIpAddress"]
                    record.dns_name = inst.get("PublicDnsName", "")
                    record.az_name = (
                        inst.get("Placement", {}).get("AvailabilityZone") or record.az_name
                    )
                    return

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def terminate_instance(self, instance_id: str) -> None:
        """Terminate an EC2 instance."""
        self.client().terminate_instances(InstanceIds=[instance_id])
        console.print(f"Terminated instance [bold]{instance_id}[/bold]")

    def update_tag(self, instance_id: str, key: str, value: str) -> None:
        self.client().create_tags(
            Resources=[instance_id],
            Tags=[{"Key": key, "Value": value}],
        )

    def get_tag_value(self, instance_id: str, key: str) -> str:
        """Value of tag *key* on an instance, or "" if the tag is absent."""
        resp = self.client().describe_tags(
            Filters=[
                {"Name": "resource-id", "Values": [instance_id]},
                {"Name": "key", "Values": [key]},
            ]
        )
        tags = resp.get("Tags", [])
        if not tags:
            return ""
        return tags[0].get("Value", "")


def _observed_price(table: PriceTable, record: InstanceRecord) -> float:
    price = table.price_for(record.instance_type, record.region, record.az_name)
    return price if price is not None else 0.0
