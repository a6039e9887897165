"""Pick the instance a command should act on."""

from __future__ import annotations

from typing import Callable

from spotsh.exceptions import (
    AmbiguousInstanceError,
    MissingKeyError,
    NoRunningInstanceError,
    NoSuchInstanceError,
)
from spotsh.types import InstanceRecord


def select_instance(
    records: list[InstanceRecord],
    instance_id: str | None = None,
    launcher: Callable[[], InstanceRecord] | None = None,
) -> InstanceRecord:
    """Choose one record out of *records*.

    Args:
        records: Located instances.
        instance_id: Optional explicit instance to pick.
        launcher: Called to launch an instance when nothing is running. Only
            used when no *instance_id* was given.

    Raises:
        NoRunningInstanceError: Nothing is running and launching isn't allowed.
        NoSuchInstanceError: *instance_id* matched nothing.
        AmbiguousInstanceError: Several instances and no *instance_id*.
        MissingKeyError: The chosen instance has no local private key.
    """
    if instance_id:
        matches = [r for r in records if r.instance_id == instance_id]
        if not matches:
            raise NoSuchInstanceError(f"No running spotsh instance with id {instance_id}")
        selected = matches[0]
    elif not records:
        if launcher is None:
            raise NoRunningInstanceError(
                "No running spotsh instance found; launch one first with `spotsh launch`"
            )
        selected = launcher()
    elif len(records) > 1:
        raise AmbiguousInstanceError(records)
    else:
        selected = records[0]

    if not selected.local_key_file:
        raise MissingKeyError(
            f"Could not find a local private key for instance {selected.instance_id}; "
            "check ~/.ssh for the key pair it was launched with"
        )
    return selected
