"""WireGuard VPN through a spotsh instance.

The tunnel itself is set up by external scripts kept in ``<config dir>/vpn``:
``setupVpnServer.sh`` runs on the instance, ``setupVpnClient.sh`` and
``teardownVpnClient.sh`` run locally. WireGuard keys are generated with
``wg``.
"""

from __future__ import annotations

import os
import stat
import subprocess
from pathlib import Path

from rich.console import Console

from spotsh.ec2 import VPN_TAG_KEY, EC2Manager
from spotsh.exceptions import VpnError
from spotsh.prefs import config_dir
from spotsh.remote import RemoteShell
from spotsh.types import InstanceRecord, OperatingSystem

console = Console(stderr=True)

VPN_SCRIPT_DIR = "vpn"
# working directory on the instance, relative to the login user's home
REMOTE_WORKING_DIR = "vpn"
CLIENT_PRIVATE_KEY_FILE = "wg.private.key"
CLIENT_PUBLIC_KEY_FILE = "wg.public.key"
SERVER_PUBLIC_KEY_FILE = "vpn.server.key.public"
SETUP_SERVER_SCRIPT = "setupVpnServer.sh"
SETUP_CLIENT_SCRIPT = "setupVpnClient.sh"
TEARDOWN_CLIENT_SCRIPT = "teardownVpnClient.sh"

SUPPORTED_OS = (OperatingSystem.AMZN2023, OperatingSystem.AMZN2023_MIN)


def _run_local(args: list[str], stdin: str | None = None) -> str:
    try:
        result = subprocess.run(
            args, input=stdin, capture_output=True, text=True, check=True
        )
    except FileNotFoundError as e:
        raise VpnError(f"Could not run {args[0]}: {e}") from e
    except subprocess.CalledProcessError as e:
        raise VpnError(f"{Path(args[0]).name} failed: {(e.stderr or '').strip()}") from e
    return result.stdout


def _write_key(path: Path, text: str, mode: int) -> None:
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "w") as f:
        f.write(text)


class VpnManager:
    """Start and stop the VPN for one instance."""

    def __init__(
        self,
        record: InstanceRecord,
        ec2: EC2Manager,
        directory: Path | None = None,
    ) -> None:
        self.record = record
        self.ec2 = ec2
        self.directory = directory or config_dir()
        self.shell = RemoteShell(record)

    @property
    def script_dir(self) -> Path:
        return self.directory / VPN_SCRIPT_DIR

    def _script(self, name: str) -> Path:
        path = self.script_dir / name
        if not path.is_file():
            raise VpnError(f"VPN script {path} not found")
        return path

    def check_supported(self) -> None:
        if self.record.os not in SUPPORTED_OS:
            raise VpnError(
                "spotsh vpn is only supported on Amazon Linux 2023 instances "
                f"(instance {self.record.instance_id} runs {str(self.record.os) or 'an unknown OS'})"
            )

    def ensure_client_keys(self) -> tuple[Path, Path]:
        """Generate the local WireGuard key pair if it is missing.

        Returns (private_key_path, public_key_path).
        """
        self.directory.mkdir(parents=True, exist_ok=True, mode=0o700)
        private = self.directory / CLIENT_PRIVATE_KEY_FILE
        public = self.directory / CLIENT_PUBLIC_KEY_FILE

        if not private.exists():
            console.print("Generating WireGuard client key")
            _write_key(private, _run_local(["wg", "genkey"]), stat.S_IRUSR)
        if not public.exists():
            key = _run_local(["wg", "pubkey"], stdin=private.read_text())
            _write_key(public, key, stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)
        return private, public

    def _run_remote(self, command: str, what: str) -> str:
        try:
            return self.shell.ssh_run(command)
        except subprocess.CalledProcessError as e:
            raise VpnError(f"Failed to {what}: {(e.stderr or '').strip()}") from e

    def is_active(self) -> bool:
        """Whether the instance is tagged as carrying our VPN."""
        return self.ec2.get_tag_value(self.record.instance_id, VPN_TAG_KEY) == "true"

    def start(self) -> None:
        self.check_supported()
        if self.is_active():
            console.print(
                f"[yellow]VPN through [bold]{self.record.public_ip}[/bold] is already up; "
                f"run 'spotsh vpn stop' first to restart it[/yellow]"
            )
            return
        private, public = self.ensure_client_keys()
        server_script = self._script(SETUP_SERVER_SCRIPT)
        client_script = self._script(SETUP_CLIENT_SCRIPT)
        client_pub_key = public.read_text().splitlines()[0]

        console.print("Copying vpn setup scripts to spot instance...")
        self._run_remote(f"mkdir -p {REMOTE_WORKING_DIR}", "create vpn working dir")
        remote_script = f"{REMOTE_WORKING_DIR}/{SETUP_SERVER_SCRIPT}"
        try:
            self.shell.scp_to(str(server_script), remote_script)
        except subprocess.CalledProcessError as e:
            raise VpnError(f"Failed to copy vpn server setup script: {e}") from e
        self._run_remote(f"chmod 755 {remote_script}", "set vpn server setup permissions")

        with console.status("Starting vpn server..."):
            self._run_remote(
                f"cd {REMOTE_WORKING_DIR}; ./{SETUP_SERVER_SCRIPT} "
                f"{client_pub_key} {SERVER_PUBLIC_KEY_FILE}",
                "start vpn server",
            )
        server_pub_key = self._run_remote(
            f"cat {REMOTE_WORKING_DIR}/{SERVER_PUBLIC_KEY_FILE}",
            "read vpn server public key",
        ).splitlines()[0]

        console.print("Starting vpn client...")
        self.ec2.update_tag(self.record.instance_id, VPN_TAG_KEY, "true")
        _run_local([str(client_script), server_pub_key, self.record.public_ip, str(private)])
        console.print(f"[green]VPN to [bold]{self.record.public_ip}[/bold] is up[/green]")

    def stop(self) -> None:
        self.check_supported()
        teardown_script = self._script(TEARDOWN_CLIENT_SCRIPT)

        console.print("Stopping vpn client...")
        _run_local([str(teardown_script)])
        self.ec2.update_tag(self.record.instance_id, VPN_TAG_KEY, "false")
        console.print("[green]VPN stopped[/green]")
