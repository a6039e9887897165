"""VPC, subnet and security group resolution for spotsh."""

from __future__ import annotations

import socket
from typing import Any

import requests
from rich.console import Console

from spotsh.exceptions import ValidationError

console = Console(stderr=True)

EXTERNAL_IP_URL = "https://api.ipify.org?format=text"
EXTERNAL_IP_TIMEOUT = 30
SSH_PORT = 22


def get_external_ip(timeout: float = EXTERNAL_IP_TIMEOUT) -> str:
    """Public IP address of this machine, as seen from the internet."""
    resp = requests.get(EXTERNAL_IP_URL, timeout=timeout)
    resp.raise_for_status()
    return resp.text.strip()


def local_hostname() -> str:
    try:
        return socket.gethostname() or "localhost"
    except OSError:
        return "localhost"


class NetworkResolver:
    """Look up the default network and manage SSH ingress for one region."""

    def __init__(self, ec2_client: Any) -> None:
        self.ec2_client = ec2_client

    def default_vpc_id(self) -> str:
        """The default VPC, or the only VPC if the account has just one."""
        vpcs = self.ec2_client.describe_vpcs().get("Vpcs", [])
        for vpc in vpcs:
            if vpc.get("IsDefault"):
                return vpc["VpcId"]
        # with a single VPC it is the only reasonable choice even if not default
        if len(vpcs) == 1:
            return vpcs[0]["VpcId"]
        raise ValidationError(
            "Could not find default VPC; please specify a security group id"
        )

    def default_security_group_id(self) -> str:
        """Default security group of the default VPC.

        Falls back to the VPC's only security group when none is named
        ``default``.
        """
        vpc_id = self.default_vpc_id()
        resp = self.ec2_client.describe_security_groups(
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}]
        )
        groups = [sg for sg in resp.get("SecurityGroups", []) if sg.get("VpcId") == vpc_id]
        for sg in groups:
            if sg.get("GroupName") == "default":
                return sg["GroupId"]
        if len(groups) == 1:
            return groups[0]["GroupId"]
        raise ValidationError(
            f"Could not find default Security Group in vpc {vpc_id}; "
            "please specify a security group id"
        )

    def lookup_vpc_security_groups(self) -> dict[str, dict[str, Any]]:
        """Every VPC with its security groups: {vpc_id: {default, groups: {sg_id: name}}}."""
        result: dict[str, dict[str, Any]] = {}
        for vpc in self.ec2_client.describe_vpcs().get("Vpcs", []):
            result[vpc["VpcId"]] = {"default": bool(vpc.get("IsDefault")), "groups": {}}

        for sg in self.ec2_client.describe_security_groups().get("SecurityGroups", []):
            vpc = result.get(sg.get("VpcId", ""))
            if vpc is None:
                # VPC created between the two calls
                continue
            vpc["groups"][sg["GroupId"]] = sg.get("GroupName", "")
        return result

    def _subnets(self) -> list[dict[str, Any]]:
        return self.ec2_client.describe_subnets().get("Subnets", [])

    def az_for_subnet(self, subnet_id: str, memo: dict[str, str] | None = None) -> str:
        """AZ name of a subnet. *memo* caches every subnet seen on the first miss."""
        if memo is None:
            memo = {}
        if subnet_id in memo:
            return memo[subnet_id]
        for subnet in self._subnets():
            memo[subnet["SubnetId"]] = subnet["AvailabilityZone"]
        return memo.get(subnet_id, "")

    def subnet_for_az(self, az_name: str) -> str:
        """A subnet in *az_name*, preferring the AZ's default subnet."""
        candidates = [s for s in self._subnets() if s["AvailabilityZone"] == az_name]
        if not candidates:
            raise ValidationError(f"Could not find subnet for az:{az_name}")
        candidates.sort(key=lambda s: not s.get("DefaultForAz", False))
        return candidates[0]["SubnetId"]

    def has_ssh_ingress_rule(self, sg_id: str, host: str) -> bool:
        """True if *sg_id* has a rule that spotsh added for *host* earlier."""
        resp = self.ec2_client.describe_security_groups(GroupIds=[sg_id])
        for sg in resp.get("SecurityGroups", []):
            for perm in sg.get("IpPermissions", []):
                ranges = perm.get("IpRanges", []) + perm.get("Ipv6Ranges", [])
                for rng in ranges:
                    desc = rng.get("Description", "")
                    if "ssh" in desc and host in desc:
                        return True
        return False

    def add_ssh_ingress_rule(self, sg_id: str, host: str, ip: str) -> None:
        self.ec2_client.authorize_security_group_ingress(
            GroupId=sg_id,
            IpPermissions=[{
                "IpProtocol": "tcp",
                "FromPort": SSH_PORT,
                "ToPort": SSH_PORT,
                "IpRanges": [{
                    "CidrIp": f"{ip}/32",
                    "Description": f"allow ssh from {host} (added by spotsh)",
                }],
            }],
        )

    def ensure_ssh_ingress(self, sg_id: str) -> bool:
        """Let this machine reach port 22 through *sg_id*.

        Returns True if a rule was added, False if one was already there.
        """
        host = local_hostname()
        if self.has_ssh_ingress_rule(sg_id, host):
            console.print(f"[dim]Security group [bold]{sg_id}[/bold] already allows ssh from {host}[/dim]")
            return False
        ip = get_external_ip()
        console.print(
            f"Adding ssh ingress rule for [bold]{ip}/32[/bold] to security group [bold]{sg_id}[/bold]"
        )
        self.add_ssh_ingress_rule(sg_id, host, ip)
        return True
