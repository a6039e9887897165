"""spotsh -- a disposable shell on the cheapest AWS spot instance."""

__version__ = "0.4.0"

from spotsh.exceptions import (  # noqa: E402
    AmbiguousInstanceError,
    ConnectivityError,
    ConsistencyError,
    SpotCapacityError,
    SpotshError,
    ValidationError,
)
from spotsh.pricing import lookup_spot_prices  # noqa: E402
from spotsh.session import Session  # noqa: E402
from spotsh.types import InstanceRecord, LaunchSpec, OperatingSystem  # noqa: E402

__all__ = [
    "AmbiguousInstanceError",
    "ConnectivityError",
    "ConsistencyError",
    "InstanceRecord",
    "LaunchSpec",
    "OperatingSystem",
    "Session",
    "SpotCapacityError",
    "SpotshError",
    "ValidationError",
    "lookup_spot_prices",
]
