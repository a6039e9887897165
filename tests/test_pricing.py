import itertools
import random
import threading
from unittest.mock import MagicMock

import pytest

from spotsh.exceptions import ValidationError
from spotsh.pricing import PriceTable, lookup_spot_prices


def _history(*points):
    return {
        "SpotPriceHistory": [
            {"InstanceType": t, "AvailabilityZone": az, "SpotPrice": p}
            for t, az, p in points
        ]
    }


def test_empty_instance_types_fail_without_calls():
    factory = MagicMock()
    with pytest.raises(ValidationError):
        lookup_spot_prices([], "all", factory)
    factory.assert_not_called()


def test_single_region_lookup(client_factory):
    ec2 = client_factory("ec2", "us-east-1")
    ec2.describe_spot_price_history.return_value = _history(
        ("c5.large", "us-east-1a", "0.0400"),
        ("c5.large", "us-east-1b", "0.0350"),
        ("c6a.large", "us-east-1a", "0.0310"),
    )

    table = lookup_spot_prices(["c5.large", "c6a.large"], "us-east-1", client_factory)

    call = ec2.describe_spot_price_history.call_args.kwargs
    assert call["ProductDescriptions"] == ["Linux/UNIX"]
    assert call["StartTime"].year == 2199
    assert table.cheapest() == ("c6a.large", "us-east-1", "us-east-1a", 0.031)
    assert table.price_for("c5.large", "us-east-1", "us-east-1b") == 0.035
    assert table.price_for("c5.large", "us-east-1", "us-east-1c") is None


def test_all_regions_fan_out(client_factory):
    lister = client_factory("ec2", "us-east-2")
    lister.describe_regions.return_value = {
        "Regions": [{"RegionName": "us-east-2"}, {"RegionName": "eu-west-1"}]
    }
    lister.describe_spot_price_history.return_value = _history(
        ("c5.large", "us-east-2a", "0.05"),
    )
    client_factory("ec2", "eu-west-1").describe_spot_price_history.return_value = _history(
        ("c5.large", "eu-west-1c", "0.02"),
    )

    table = lookup_spot_prices(["c5.large"], "all", client_factory)

    lister.describe_regions.assert_called_once_with(AllRegions=False)
    assert table.cheapest() == ("c5.large", "eu-west-1", "eu-west-1c", 0.02)


def test_first_region_error_is_raised_after_all_workers(client_factory):
    client_factory("ec2", "us-east-2").describe_regions.return_value = {
        "Regions": [{"RegionName": r} for r in ("us-east-2", "us-west-2", "eu-west-1")]
    }
    client_factory("ec2", "us-east-2").describe_spot_price_history.return_value = _history()
    client_factory("ec2", "us-west-2").describe_spot_price_history.side_effect = RuntimeError("boom")
    client_factory("ec2", "eu-west-1").describe_spot_price_history.return_value = _history()

    with pytest.raises(RuntimeError, match="boom"):
        lookup_spot_prices(["c5.large"], "all", client_factory)

    for region in ("us-east-2", "eu-west-1"):
        client_factory("ec2", region).describe_spot_price_history.assert_called_once()


def test_unparseable_price_names_the_point(client_factory):
    client_factory("ec2", "us-east-1").describe_spot_price_history.return_value = _history(
        ("c5.large", "us-east-1a", "cheap"),
    )
    with pytest.raises(ValueError, match="c5.large:us-east-1:us-east-1a"):
        lookup_spot_prices(["c5.large"], "us-east-1", client_factory)


def test_duplicate_types_are_queried_once(client_factory):
    ec2 = client_factory("ec2", "us-east-1")
    ec2.describe_spot_price_history.return_value = _history()
    lookup_spot_prices(["c5.large", "c5.large"], "us-east-1", client_factory)
    assert ec2.describe_spot_price_history.call_args.kwargs["InstanceTypes"] == ["c5.large"]


def test_ties_keep_first_observed():
    table = PriceTable(["a", "b"], ["r1", "r2"])
    table.record("a", "r1", "r1a", 0.05)
    table.record("b", "r2", "r2a", 0.05)
    table.record("a", "r2", "r2b", 0.05)
    assert table.cheapest() == ("a", "r1", "r1a", 0.05)


def test_first_point_per_az_wins():
    table = PriceTable(["a"], ["r1"])
    table.record("a", "r1", "r1a", 0.05)
    table.record("a", "r1", "r1a", 0.01)
    assert table.price_for("a", "r1", "r1a") == 0.05
    assert table.cheapest()[3] == 0.05


def _check_pointers(table):
    points = table.rows()
    overall = min(p[3] for p in points)
    assert table.cheapest()[3] == overall
    for itype in table.instance_types.values():
        type_points = [p for p in points if p[0] == itype.instance_type]
        if not type_points:
            assert itype.cheapest_region is None
            continue
        assert itype.cheapest_price == min(p[3] for p in type_points)
        for reg in itype.regions.values():
            if reg.cheapest_az is None:
                assert not reg.azs
                continue
            assert reg.azs[reg.cheapest_az.az_name] is reg.cheapest_az
            assert reg.cheapest_az.price == min(az.price for az in reg.azs.values())


@pytest.mark.parametrize("seed", range(5))
def test_cheapest_pointers_stay_consistent_under_concurrency(seed):
    rng = random.Random(seed)
    types = ["c5.large", "c6i.large", "c7a.large"]
    regions = ["us-east-1", "us-west-2", "eu-west-1"]
    table = PriceTable(types, regions)
    streams = {
        region: [
            (t, f"{region}{az}", round(rng.uniform(0.01, 0.1), 4))
            for t, az in itertools.product(types, "abc")
        ]
        for region in regions
    }

    def feed(region):
        for t, az, price in streams[region]:
            table.record(t, region, az, price)

    threads = [threading.Thread(target=feed, args=(r,)) for r in regions]
    for th in threads:
        th.start()
    for th in threads:
        th.join()

    _check_pointers(table)
