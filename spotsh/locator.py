"""Discovery of running spotsh instances across regions."""

from __future__ import annotations

import threading
from typing import Any

from rich.console import Console

from spotsh.clients import ClientFactory, expand_regions, new_client, resolve_region, run_per_region
from spotsh.ec2 import OS_TAG_KEY, USER_TAG_KEY
from spotsh.keys import KeyManager
from spotsh.network import NetworkResolver
from spotsh.pricing import lookup_spot_prices
from spotsh.types import InstanceRecord, OperatingSystem

console = Console(stderr=True)

RUNNING_FILTERS = [
    {"Name": "instance-state-name", "Values": ["running"]},
    {"Name": "tag-key", "Values": [USER_TAG_KEY]},
]


def _tags(inst: dict[str, Any]) -> dict[str, str]:
    return {t["Key"]: t.get("Value", "") for t in inst.get("Tags", [])}


def _running_instances(ec2: Any) -> list[dict[str, Any]]:
    """Running instances carrying the ownership tag.

    The server-side filter is re-checked here; an instance without the
    ``spotsh.user`` tag is never ours.
    """
    found = []
    kwargs: dict[str, Any] = {"Filters": RUNNING_FILTERS}
    while True:
        resp = ec2.describe_instances(**kwargs)
        for resv in resp.get("Reservations", []):
            for inst in resv.get("Instances", []):
                if inst.get("State", {}).get("Name") != "running":
                    continue
                if USER_TAG_KEY not in _tags(inst):
                    continue
                found.append(inst)
        token = resp.get("NextToken")
        if not token:
            return found
        kwargs["NextToken"] = token


def _locate_in_region(region: str, client_factory: ClientFactory) -> list[InstanceRecord]:
    ec2 = client_factory("ec2", region)
    instances = _running_instances(ec2)
    if not instances:
        return []

    keys = KeyManager(ec2, region).lookup_keys()
    key_files = {k.name: k.local_key_file for k in keys.values()}
    network = NetworkResolver(ec2)
    az_memo: dict[str, str] = {}

    records = []
    for inst in instances:
        tags = _tags(inst)
        subnet_id = inst.get("SubnetId", "")
        if subnet_id:
            az_name = network.az_for_subnet(subnet_id, az_memo)
        else:
            az_name = inst.get("Placement", {}).get("AvailabilityZone", "")
        sg_ids = [g["GroupId"] for g in inst.get("SecurityGroups", [])]
        records.append(InstanceRecord(
            instance_id=inst["InstanceId"],
            public_ip=inst.get("PublicIpAddress", ""),
            user=tags[USER_TAG_KEY],
            local_key_file=key_files.get(inst.get("KeyName", ""), ""),
            instance_type=inst.get("InstanceType", ""),
            image_id=inst.get("ImageId", ""),
            az_name=az_name,
            dns_name=inst.get("PublicDnsName", ""),
            os=OperatingSystem.from_string(tags.get(OS_TAG_KEY)),
            security_group_id=sg_ids[0] if sg_ids else "",
            region=region,
        ))

    table = lookup_spot_prices(
        [r.instance_type for r in records], region, client_factory
    )
    for rec in records:
        price = table.price_for(rec.instance_type, region, rec.az_name)
        rec.current_price = price if price is not None else 0.0
    return records


def locate_instances(
    region: str | None = None,
    client_factory: ClientFactory = new_client,
) -> list[InstanceRecord]:
    """Every running spotsh instance in *region* (or every region for ``all``).

    Each record carries the current spot price of its (type, region, AZ).
    Results are ordered by region, then instance id.
    """
    regions = expand_regions(resolve_region(region), client_factory)
    found: list[InstanceRecord] = []
    lock = threading.Lock()

    def worker(reg: str) -> None:
        records = _locate_in_region(reg, client_factory)
        with lock:
            found.extend(records)

    with console.status("Looking for running instances..."):
        run_per_region(regions, worker)
    found.sort(key=lambda r: (r.region, r.instance_id))
    return found
