"""OS to image resolution and custom image creation for spotsh."""

from __future__ import annotations

import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Mapping

from rich.console import Console

from spotsh.exceptions import ImageNotFoundError, ValidationError
from spotsh.types import OperatingSystem

console = Console(stderr=True)

DEFAULT_OS = OperatingSystem.AMZN2023


@dataclass(frozen=True)
class ImageInfo:
    description: str
    ssm_parameter: str
    user: str


IMAGE_TABLE: Mapping[OperatingSystem, ImageInfo] = MappingProxyType({
    OperatingSystem.UBUNTU22_04: ImageInfo(
        "Ubuntu 22.04 LTS",
        "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp2/ami-id",
        "ubuntu",
    ),
    OperatingSystem.AMZN2: ImageInfo(
        "Amazon Linux 2",
        "/aws/service/ami-amazon-linux-latest/amzn2-ami-hvm-x86_64-gp2",
        "ec2-user",
    ),
    OperatingSystem.AMZN2023: ImageInfo(
        "Amazon Linux 2023 (standard)",
        "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-x86_64",
        "ec2-user",
    ),
    OperatingSystem.AMZN2023_MIN: ImageInfo(
        "Amazon Linux 2023 (minimal)",
        "/aws/service/ami-amazon-linux-latest/al2023-ami-minimal-kernel-default-x86_64",
        "ec2-user",
    ),
    OperatingSystem.DEBIAN12: ImageInfo(
        "Debian GNU/Linux 12",
        "/aws/service/debian/release/12/latest/amd64",
        "admin",
    ),
    OperatingSystem.UBUNTU24_04: ImageInfo(
        "Ubuntu 24.04 LTS",
        "/aws/service/canonical/ubuntu/server/24.04/stable/current/amd64/hvm/ebs-gp3/ami-id",
        "ubuntu",
    ),
})


def image_info(os_: OperatingSystem) -> ImageInfo:
    """Table entry for a launchable OS.

    Raises:
        ValidationError: For NONE, INVALID, or anything not in the table.
    """
    try:
        return IMAGE_TABLE[os_]
    except KeyError:
        raise ValidationError(
            f"No image known for operating system {str(os_)!r}; choose one of: "
            + ", ".join(str(o) for o in OperatingSystem.launchable())
        ) from None


def image_description(os_: OperatingSystem) -> str:
    """Human description of an OS, falling back to the default OS when unset."""
    return IMAGE_TABLE.get(os_, IMAGE_TABLE[DEFAULT_OS]).description


def default_user(os_: OperatingSystem) -> str:
    """Login user the OS's stock image ships with."""
    return image_info(os_).user


class ImageResolver:
    """Resolve OS names and image names to image ids, and build custom images."""

    def __init__(self, ec2_client: Any, ssm_client: Any) -> None:
        self.ec2_client = ec2_client
        self.ssm_client = ssm_client

    def latest_image_id(self, os_: OperatingSystem) -> str:
        """Latest stock image for *os_*, via its public SSM parameter."""
        info = image_info(os_)
        resp = self.ssm_client.get_parameter(Name=info.ssm_parameter)
        return resp["Parameter"]["Value"]

    def root_device_name(self, image_id: str) -> str:
        """Root block device of an image, needed to size the root volume."""
        resp = self.ec2_client.describe_images(ImageIds=[image_id])
        images = resp.get("Images", [])
        if len(images) != 1:
            raise ImageNotFoundError(
                f"Unexpected image count returned ({len(images)}) for {image_id} description"
            )
        return images[0]["RootDeviceName"]

    def list_own_images(self) -> list[dict[str, str]]:
        """Images owned by this account, newest first."""
        resp = self.ec2_client.describe_images(Owners=["self"])
        images = sorted(
            resp.get("Images", []),
            key=lambda i: i.get("CreationDate", ""),
            reverse=True,
        )
        return [
            {
                "id": img["ImageId"],
                "name": img.get("Name", ""),
                "created": img.get("CreationDate", ""),
                "state": img.get("State", ""),
            }
            for img in images
        ]

    def image_id_from_name(self, name: str) -> str:
        """Find one of our own images by exact name."""
        for img in self.list_own_images():
            if img["name"] == name:
                return img["id"]
        raise ImageNotFoundError(f"Could not find ami id for {name}")

    def create(self, instance_id: str, name: str = "", description: str = "") -> str:
        """Create an image from a running instance. Returns the new image id."""
        name = name or f"spotsh-{int(time.time())}"
        kwargs: dict[str, str] = {"InstanceId": instance_id, "Name": name}
        if description:
            kwargs["Description"] = description
        with console.status(f"Creating image from [bold]{instance_id}[/bold]..."):
            resp = self.ec2_client.create_image(**kwargs)
        image_id = resp["ImageId"]
        console.print(f"Image: [bold]{image_id}[/bold] ({name})")
        return image_id
