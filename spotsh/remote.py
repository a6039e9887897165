"""ssh and scp against a spotsh instance."""

from __future__ import annotations

import os
import subprocess
import sys

from rich.console import Console

from spotsh.exceptions import ValidationError
from spotsh.types import InstanceRecord

console = Console(stderr=True)

# Arguments starting with this prefix name a path on the instance
REMOTE_PATH_PREFIX = ":"


def exec_command(args: list[str]) -> None:
    """Hand the terminal over to *args*.

    On POSIX this replaces the current process and never returns. Elsewhere
    the command is run as a child with inherited stdio and its exit code
    becomes ours.
    """
    if os.name == "posix":
        os.execvp(args[0], args)
    else:
        result = subprocess.run(args)
        sys.exit(result.returncode)


class RemoteShell:
    """Connection settings for one instance."""

    def __init__(self, record: InstanceRecord) -> None:
        if not record.public_ip:
            raise ValidationError(
                f"Instance {record.instance_id} has no public IP address yet"
            )
        self.record = record
        self.ssh_opts = [
            "-i", record.local_key_file,
            # spot instances are disposable; their host keys change every launch
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "LogLevel=ERROR",
            "-o", "ServerAliveInterval=15",
            "-o", "ServerAliveCountMax=3",
        ]
        self.remote = record.destination

    def ssh_args(self, command: list[str] | None = None) -> list[str]:
        return ["ssh", *self.ssh_opts, self.remote, *(command or [])]

    def scp_args(self, paths: list[str]) -> list[str]:
        """scp argv with ``:path`` arguments expanded to ``user@ip:path``."""
        if len(paths) < 2:
            raise ValidationError("scp needs at least one source and a destination")
        if not any(p.startswith(REMOTE_PATH_PREFIX) for p in paths):
            raise ValidationError(
                "scp needs at least one remote path; prefix it with ':' (e.g. :/tmp/file)"
            )
        expanded = [
            f"{self.remote}{p}" if p.startswith(REMOTE_PATH_PREFIX) else p
            for p in paths
        ]
        return ["scp", *self.ssh_opts, *expanded]

    def ssh_interactive(self, command: list[str] | None = None) -> None:
        """Replace this process with an SSH session (or a remote command)."""
        exec_command(self.ssh_args(command))

    def scp(self, paths: list[str]) -> None:
        """Replace this process with scp."""
        exec_command(self.scp_args(paths))

    def ssh_run(self, command: str) -> str:
        """Run a command on the instance and return its stdout.

        Raises:
            subprocess.CalledProcessError: If the command exits non-zero.
        """
        cmd = self.ssh_args([command])
        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode, cmd, result.stdout, result.stderr
            )
        return result.stdout

    def scp_to(self, local_path: str, remote_path: str) -> None:
        """SCP a single file to the instance."""
        cmd = ["scp", *self.ssh_opts, local_path, f"{self.remote}:{remote_path}"]
        console.print(f"[dim]scp {local_path} -> {remote_path}[/dim]")
        subprocess.run(cmd, check=True)
