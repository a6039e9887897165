"""Spot price lookup and cheapest instance selection."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone

from rich.console import Console

from spotsh.clients import ClientFactory, expand_regions, new_client, run_per_region
from spotsh.exceptions import ValidationError

console = Console(stderr=True)

PRODUCT_DESCRIPTION = "Linux/UNIX"
# A window start far in the future makes the API return only the latest price
LATEST_PRICE_START_TIME = datetime(2199, 1, 1, tzinfo=timezone.utc)


@dataclass
class AzPrice:
    az_name: str
    price: float


@dataclass
class RegionPrices:
    region: str
    azs: dict[str, AzPrice] = field(default_factory=dict)
    cheapest_az: AzPrice | None = None


@dataclass
class InstanceTypePrices:
    instance_type: str
    regions: dict[str, RegionPrices] = field(default_factory=dict)
    cheapest_region: RegionPrices | None = None

    @property
    def cheapest_price(self) -> float | None:
        if self.cheapest_region is None or self.cheapest_region.cheapest_az is None:
            return None
        return self.cheapest_region.cheapest_az.price


class PriceTable:
    """instance type -> region -> AZ -> price, with a cheapest pointer per level.

    Pointers only move on a strictly lower price, so among equal prices the
    first one recorded stays cheapest.
    """

    def __init__(self, instance_types: list[str], regions: list[str]) -> None:
        self.instance_types: dict[str, InstanceTypePrices] = {}
        self.cheapest_type: InstanceTypePrices | None = None
        self._lock = threading.Lock()
        for itype in instance_types:
            entry = self.instance_types.setdefault(itype, InstanceTypePrices(itype))
            for region in regions:
                entry.regions.setdefault(region, RegionPrices(region))

    def record(self, instance_type: str, region: str, az_name: str, price: float) -> None:
        """Store one price point and cascade the cheapest pointers upward."""
        with self._lock:
            itype = self.instance_types.setdefault(
                instance_type, InstanceTypePrices(instance_type)
            )
            reg = itype.regions.setdefault(region, RegionPrices(region))
            # history is returned newest first; keep the latest point per AZ
            if az_name in reg.azs:
                return
            point = AzPrice(az_name, price)
            reg.azs[az_name] = point

            if reg.cheapest_az is None or price < reg.cheapest_az.price:
                reg.cheapest_az = point

            if itype.cheapest_price is None or price < itype.cheapest_price:
                itype.cheapest_region = reg

            if self.cheapest_type is None or price < self.cheapest_type.cheapest_price:
                self.cheapest_type = itype

    def price_for(self, instance_type: str, region: str, az_name: str) -> float | None:
        """Price of one (type, region, AZ) point, or None if never observed."""
        itype = self.instance_types.get(instance_type)
        if itype is None:
            return None
        reg = itype.regions.get(region)
        if reg is None:
            return None
        point = reg.azs.get(az_name)
        return point.price if point else None

    def cheapest(self) -> tuple[str, str, str, float] | None:
        """Return (instance_type, region, az_name, price) of the cheapest point seen."""
        itype = self.cheapest_type
        if itype is None or itype.cheapest_region is None:
            return None
        reg = itype.cheapest_region
        az = reg.cheapest_az
        return itype.instance_type, reg.region, az.az_name, az.price

    def rows(self) -> list[tuple[str, str, str, float]]:
        """Every observed point as (type, region, az, price), cheapest first."""
        out = [
            (itype.instance_type, reg.region, az.az_name, az.price)
            for itype in self.instance_types.values()
            for reg in itype.regions.values()
            for az in reg.azs.values()
        ]
        out.sort(key=lambda r: (r[3], r[0], r[1], r[2]))
        return out


def _lookup_region(
    region: str,
    instance_types: list[str],
    table: PriceTable,
    client_factory: ClientFactory,
) -> None:
    client = client_factory("ec2", region)
    resp = client.describe_spot_price_history(
        InstanceTypes=instance_types,
        ProductDescriptions=[PRODUCT_DESCRIPTION],
        StartTime=LATEST_PRICE_START_TIME,
    )
    for entry in resp.get("SpotPriceHistory", []):
        itype = entry["InstanceType"]
        az_name = entry["AvailabilityZone"]
        try:
            price = float(entry["SpotPrice"])
        except (TypeError, ValueError) as e:
            raise ValueError(
                f"Failed to parse spot price {entry.get('SpotPrice')!r} "
                f"for {itype}:{region}:{az_name}"
            ) from e
        table.record(itype, region, az_name, price)


def lookup_spot_prices(
    instance_types: list[str],
    region: str,
    client_factory: ClientFactory = new_client,
) -> PriceTable:
    """Query the latest spot prices for *instance_types* in *region* (or ``all``).

    One thread per region fills a shared PriceTable. If any region fails the
    first error is raised after every region has answered.

    Raises:
        ValidationError: If *instance_types* is empty.
    """
    instance_types = list(dict.fromkeys(instance_types))
    if not instance_types:
        raise ValidationError(
            "Could not fetch spot prices: please specify 1 or more instance types"
        )

    regions = expand_regions(region, client_factory)
    table = PriceTable(instance_types, regions)
    run_per_region(
        regions,
        lambda reg: _lookup_region(reg, instance_types, table, client_factory),
    )
    return table


def find_cheapest(
    instance_types: list[str],
    region: str,
    client_factory: ClientFactory = new_client,
) -> tuple[PriceTable, tuple[str, str, str, float] | None]:
    """Look up prices and return the table plus its cheapest point."""
    with console.status("Checking spot prices..."):
        table = lookup_spot_prices(instance_types, region, client_factory)
    best = table.cheapest()
    if best is not None:
        itype, reg, az, price = best
        console.print(
            f"Cheapest: [bold]{itype}[/bold] in [bold]{az}[/bold] "
            f"([green]${price:.4f}/hr[/green])"
        )
    return table, best
