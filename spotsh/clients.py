"""boto3 client construction and region resolution."""

from __future__ import annotations

import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, TypeVar

import boto3

T = TypeVar("T")

ALL_REGIONS = "all"
DEFAULT_REGION = "us-east-1"
# describe_regions is answered by any enabled region; this one is always on
REGION_LISTING_REGION = "us-east-2"

ClientFactory = Callable[[str, str], Any]


def new_client(service: str, region: str) -> Any:
    """Build a client on a fresh boto3 session bound to *region*.

    boto3 sessions are not thread-safe, so every worker thread that talks to
    its own region gets its own session rather than sharing the default one.
    """
    session = boto3.Session(region_name=region)
    return session.client(service)


def resolve_region(region: str | None = None) -> str:
    """Pick the region to work in: explicit, then AWS_REGION, then AWS_DEFAULT_REGION."""
    return (
        region
        or os.environ.get("AWS_REGION")
        or os.environ.get("AWS_DEFAULT_REGION")
        or DEFAULT_REGION
    )


def list_regions(client_factory: ClientFactory = new_client) -> list[str]:
    """Return every region enabled for this account."""
    client = client_factory("ec2", REGION_LISTING_REGION)
    resp = client.describe_regions(AllRegions=False)
    return [r["RegionName"] for r in resp.get("Regions", [])]


def expand_regions(region: str, client_factory: ClientFactory = new_client) -> list[str]:
    """Turn a region or the ``all`` sentinel into a concrete region list."""
    if region == ALL_REGIONS:
        return list_regions(client_factory)
    return [region]


def run_per_region(regions: list[str], worker: Callable[[str], T]) -> list[T]:
    """Run *worker* once per region, one thread each, and wait for all of them.

    Workers are never cancelled. If any of them raised, the first error seen
    is re-raised once every worker has finished and all results are dropped.
    """
    if not regions:
        return []

    results: list[T] = []
    first_error: BaseException | None = None
    with ThreadPoolExecutor(max_workers=len(regions)) as pool:
        futures = [pool.submit(worker, region) for region in regions]
        for future in as_completed(futures):
            try:
                results.append(future.result())
            except Exception as e:
                if first_error is None:
                    first_error = e

    if first_error is not None:
        raise first_error
    return results
