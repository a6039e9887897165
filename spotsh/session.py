"""Session -- the main user-facing orchestrator."""

from __future__ import annotations

from typing import Callable

from rich.console import Console

from spotsh.ami import ImageResolver
from spotsh.clients import ClientFactory, new_client, resolve_region
from spotsh.ec2 import EC2Manager
from spotsh.exceptions import ConnectivityError, ValidationError
from spotsh.gate import ConnectivityGate
from spotsh.locator import locate_instances
from spotsh.network import NetworkResolver
from spotsh.prefs import Preferences
from spotsh.remote import RemoteShell
from spotsh.selection import select_instance
from spotsh.types import InstanceRecord, LaunchSpec
from spotsh.vpn import VpnManager

console = Console(stderr=True)


class Session:
    """Find, launch and connect to spotsh instances.

    Args:
        region: Region to work in, or ``all``. Defaults from the environment.
        prefs: Launch defaults; loaded from the preferences file if omitted.
        client_factory: Builds boto3 clients as ``factory(service, region)``.
        gate_factory: Builds the ConnectivityGate used before ssh/scp.
    """

    def __init__(
        self,
        region: str | None = None,
        prefs: Preferences | None = None,
        client_factory: ClientFactory = new_client,
        gate_factory: Callable[..., ConnectivityGate] = ConnectivityGate,
    ) -> None:
        self.region = resolve_region(region)
        self.prefs = prefs if prefs is not None else Preferences.load()
        self.client_factory = client_factory
        self.gate_factory = gate_factory

    def ec2_manager(self, region: str | None = None) -> EC2Manager:
        return EC2Manager(region or self.region, client_factory=self.client_factory)

    def instances(self) -> list[InstanceRecord]:
        """Every running spotsh instance in this session's region(s)."""
        return locate_instances(self.region, self.client_factory)

    def launch(self, spec: LaunchSpec | None = None) -> InstanceRecord:
        """Launch a new instance; unset fields of *spec* come from preferences."""
        spec = spec if spec is not None else self.prefs.to_launch_spec()
        record = self.ec2_manager().launch(spec)
        if record.public_ip:
            console.print(f"Public IP: [bold]{record.public_ip}[/bold]")
        console.print("[green bold]Instance ready.[/green bold]")
        return record

    def select(
        self,
        instance_id: str | None = None,
        allow_launch: bool = False,
        spec: LaunchSpec | None = None,
    ) -> InstanceRecord:
        """Pick the instance to act on, launching one if allowed and none is running."""
        launcher = None
        if allow_launch:
            def launcher() -> InstanceRecord:
                console.print("No running instance found, launching one...")
                return self.launch(spec)
        return select_instance(self.instances(), instance_id, launcher)

    def ensure_reachable(self, record: InstanceRecord) -> None:
        """Block until the instance's ssh port answers.

        Raises:
            ConnectivityError: If it never does, or the instance has no address.
        """
        if not record.public_ip:
            raise ConnectivityError(
                f"Instance {record.instance_id} has no public IP address yet; try again shortly"
            )

        def remediate() -> None:
            ec2 = self.client_factory("ec2", record.region)
            NetworkResolver(ec2).ensure_ssh_ingress(record.security_group_id)

        remediation = remediate if record.security_group_id else None
        self.gate_factory(record.public_ip, remediate=remediation).wait()

    def ssh(
        self,
        instance_id: str | None = None,
        allow_launch: bool = False,
        command: list[str] | None = None,
        spec: LaunchSpec | None = None,
    ) -> None:
        """Replace this process with an ssh session to the selected instance."""
        record = self.select(instance_id, allow_launch, spec)
        self.ensure_reachable(record)
        RemoteShell(record).ssh_interactive(command)

    def scp(self, paths: list[str], instance_id: str | None = None) -> None:
        """Replace this process with scp; ``:path`` arguments refer to the instance."""
        record = self.select(instance_id)
        self.ensure_reachable(record)
        RemoteShell(record).scp(paths)

    def terminate(self, instance_id: str | None = None) -> InstanceRecord:
        record = self.select(instance_id)
        self.ec2_manager(record.region).terminate_instance(record.instance_id)
        return record

    def create_image(
        self,
        instance_id: str | None = None,
        name: str = "",
        description: str = "",
    ) -> str:
        """Create an image from the selected instance. Returns the image id."""
        record = self.select(instance_id)
        images = ImageResolver(
            self.client_factory("ec2", record.region),
            self.client_factory("ssm", record.region),
        )
        return images.create(record.instance_id, name, description)

    def vpn(self, action: str, instance_id: str | None = None) -> None:
        """Start or stop the VPN through the selected instance."""
        action = action.lower()
        if action not in ("start", "stop"):
            raise ValidationError("spotsh vpn <start|stop> must be specified")
        record = self.select(instance_id)
        manager = VpnManager(record, self.ec2_manager(record.region))
        if action == "start":
            self.ensure_reachable(record)
            manager.start()
        else:
            manager.stop()
