"""SSH key pair management for spotsh."""

from __future__ import annotations

import os
import stat
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import paramiko
from paramiko.pkey import UnknownKeyType
from botocore.exceptions import ClientError
from rich.console import Console

console = Console(stderr=True)

KEY_NAME_PREFIX = "spotsh"

# Serialize key creation across threads so two launches can't race on one name
_key_lock = threading.Lock()


def ssh_dir() -> Path:
    return Path.home() / ".ssh"


def default_key_name(region: str) -> str:
    """Deterministic per-region key pair name."""
    return f"{KEY_NAME_PREFIX}.{region}"


def default_key_file(region: str) -> Path:
    return ssh_dir() / default_key_name(region)


@dataclass
class KeyRecord:
    key_id: str
    name: str
    public_key: str
    fingerprint: str
    local_key_file: str = ""


def _public_blob(public_key: str) -> str:
    """Base64 key blob of an authorized_keys style line ("<type> <blob> [comment]")."""
    parts = public_key.split()
    if len(parts) < 2:
        raise ValueError(f"Malformed public key: {public_key!r}")
    return parts[1]


def _private_key_blob(path: Path) -> str | None:
    """Public key blob derived from the private key at *path*, or None if not a usable key."""
    try:
        key = paramiko.PKey.from_path(path)
    except (
        paramiko.SSHException, UnknownKeyType, OSError, ValueError, TypeError, UnicodeDecodeError
    ):
        return None
    return key.get_base64()


def local_key_index(directory: Path | None = None) -> dict[str, str]:
    """Map public key blob -> private key path for every key file in *directory*.

    When two files hold the same key the first by name wins.
    """
    directory = directory or ssh_dir()
    index: dict[str, str] = {}
    if not directory.is_dir():
        return index
    for entry in sorted(directory.iterdir()):
        if not entry.is_file():
            continue
        blob = _private_key_blob(entry)
        if blob is not None:
            index.setdefault(blob, str(entry))
    return index


def find_matching_key_file(
    public_key: str,
    directory: Path | None = None,
    index: dict[str, str] | None = None,
) -> str:
    """Path of the private key whose public half equals *public_key*.

    Files are matched on key material, not on their names. Pass a prebuilt
    *index* to avoid re-reading the directory. Returns "" when nothing
    matches.
    """
    try:
        wanted = _public_blob(public_key)
    except ValueError:
        return ""
    if index is None:
        index = local_key_index(directory)
    return index.get(wanted, "")


class KeyManager:
    """Create and look up spotsh's key pairs in one region."""

    def __init__(self, ec2_client: Any, region: str) -> None:
        self.ec2_client = ec2_client
        self.region = region

    def lookup_keys(self) -> dict[str, KeyRecord]:
        """All key pairs in the region, keyed by key pair id, with local key files resolved."""
        resp = self.ec2_client.describe_key_pairs(IncludePublicKey=True)
        keys: dict[str, KeyRecord] = {}
        key_pairs = resp.get("KeyPairs", [])
        index = local_key_index() if key_pairs else {}
        for kp in key_pairs:
            record = KeyRecord(
                key_id=kp.get("KeyPairId", kp["KeyName"]),
                name=kp["KeyName"],
                public_key=kp.get("PublicKey", ""),
                fingerprint=kp.get("KeyFingerprint", ""),
            )
            record.local_key_file = find_matching_key_file(record.public_key, index=index)
            keys[record.key_id] = record
        return keys

    def local_key_file(self, key_name: str, keys: dict[str, KeyRecord] | None = None) -> str:
        """Local private key for the remote key pair *key_name*, or ""."""
        if keys is None:
            keys = self.lookup_keys()
        for record in keys.values():
            if record.name == key_name:
                return record.local_key_file
        return ""

    def ensure_default_key(self) -> str:
        """Make sure the region's default key pair exists remotely and locally.

        Thread-safe: uses a lock so concurrent callers don't both create it.

        Returns the key pair name.
        """
        key_name = default_key_name(self.region)
        key_file = default_key_file(self.region)

        with _key_lock:
            if key_file.exists():
                console.print(f"[dim]Key pair [bold]{key_name}[/bold] exists[/dim]")
                return key_name

            ssh_dir().mkdir(parents=True, exist_ok=True, mode=0o700)
            try:
                self.ec2_client.describe_key_pairs(KeyNames=[key_name])
                console.print(
                    f"[yellow]Key pair [bold]{key_name}[/bold] exists in AWS "
                    f"but key file missing locally. Recreating...[/yellow]"
                )
                self.ec2_client.delete_key_pair(KeyName=key_name)
            except ClientError as e:
                if e.response["Error"]["Code"] != "InvalidKeyPair.NotFound":
                    raise

            console.print(f"Creating key pair [bold]{key_name}[/bold]")
            resp = self.ec2_client.create_key_pair(
                KeyName=key_name,
                KeyType="ed25519",
                KeyFormat="pem",
            )
            fd = os.open(str(key_file), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR)
            with os.fdopen(fd, "w") as f:
                f.write(resp["KeyMaterial"])

        return key_name
