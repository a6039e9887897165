"""spotsh exceptions."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from spotsh.types import InstanceRecord


class SpotshError(Exception):
    """Base class for every error spotsh raises on its own behalf."""


class ValidationError(SpotshError):
    """Invalid or contradictory user input (mutually exclusive options, missing fields)."""


class ImageNotFoundError(SpotshError):
    """No image matched the requested name."""


class NoRunningInstanceError(SpotshError):
    """No spotsh instance is running and launching is not permitted here."""


class NoSuchInstanceError(SpotshError):
    """An explicit instance id did not match any running spotsh instance."""


class AmbiguousInstanceError(SpotshError):
    """More than one spotsh instance matched and no instance id was given.

    Attributes:
        candidates: Every matching record, so the caller can pick one.
    """

    def __init__(self, candidates: list[InstanceRecord]):
        self.candidates = list(candidates)
        lines = "\n".join(
            f"  {rec.instance_id} ({rec.public_ip or 'no public ip'}, {rec.region})"
            for rec in self.candidates
        )
        super().__init__(
            f"Found {len(self.candidates)} running instances; "
            f"please specify one with --instance-id:\n{lines}"
        )


class MissingKeyError(SpotshError):
    """The selected instance has no matching private key file locally."""


class ConsistencyError(SpotshError):
    """The cloud API returned something its contract rules out.

    Never retried: the CLI reports it and exits.
    """


class ConnectivityError(SpotshError):
    """SSH port stayed unreachable, even after trying to open the firewall.

    Attributes:
        cause: The last connection error observed.
        remediation_error: Error raised while adding the ingress rule, if any.
        initial_error: The timeout that led to the ingress rule check, when
            probing was retried after it.
    """

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        remediation_error: BaseException | None = None,
        initial_error: BaseException | None = None,
    ):
        if remediation_error is not None:
            message = f"{message} (ingress rule update also failed: {remediation_error})"
        super().__init__(message)
        self.cause = cause
        self.remediation_error = remediation_error
        self.initial_error = initial_error


class SpotCapacityError(SpotshError):
    """The spot fleet request came back without an instance.

    Attributes:
        attempts: List of (instance_type, error_code, error_message) tuples
            reported by the fleet for each override it could not satisfy.
    """

    def __init__(self, message: str, attempts: list[tuple[str, str, str]] | None = None):
        super().__init__(message)
        self.attempts = attempts or []


class VpnError(SpotshError):
    """Setting up or tearing down the VPN tunnel failed."""
