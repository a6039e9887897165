"""Wait for an instance's SSH port, repairing the firewall once if needed."""

from __future__ import annotations

import socket
import time
from typing import Any, Callable

from rich.console import Console

from spotsh.exceptions import ConnectivityError
from spotsh.network import SSH_PORT

console = Console(stderr=True)

PROBE_ATTEMPTS = 10
PROBE_INTERVAL = 1.0
PROBE_TIMEOUT = 3.0

OK = "ok"
REFUSED = "refused"
TIMED_OUT = "timeout"


class ConnectivityGate:
    """Probe TCP port 22 until it accepts a connection.

    A refused connection means sshd is not up yet and is simply retried. A
    timeout suggests a security group is dropping our packets: once the
    probes are used up, *remediate* is called one time and the probes are
    run again. Any other socket error stops probing immediately.

    Args:
        host: Address to probe.
        remediate: Called once after a probe sequence that saw a timeout.
        connect: ``socket.create_connection`` compatible callable.
        sleep: ``time.sleep`` compatible callable.
    """

    def __init__(
        self,
        host: str,
        remediate: Callable[[], Any] | None = None,
        port: int = SSH_PORT,
        attempts: int = PROBE_ATTEMPTS,
        interval: float = PROBE_INTERVAL,
        timeout: float = PROBE_TIMEOUT,
        connect: Callable[..., Any] = socket.create_connection,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.host = host
        self.remediate = remediate
        self.port = port
        self.attempts = attempts
        self.interval = interval
        self.timeout = timeout
        self._connect = connect
        self._sleep = sleep
        self.remediations = 0

    def _probe_once(self) -> None:
        sock = self._connect((self.host, self.port), timeout=self.timeout)
        sock.close()

    def _probe_sequence(self) -> tuple[str, OSError | None]:
        """Run up to ``attempts`` probes. Returns (outcome, last error)."""
        saw_timeout = False
        last_error: OSError | None = None
        for attempt in range(self.attempts):
            if attempt:
                self._sleep(self.interval)
            try:
                self._probe_once()
                return OK, None
            except ConnectionRefusedError as e:
                last_error = e
            except TimeoutError as e:
                saw_timeout = True
                last_error = e
            except OSError as e:
                raise ConnectivityError(
                    f"Could not connect to {self.host}:{self.port}: {e}", cause=e
                ) from e
        return (TIMED_OUT if saw_timeout else REFUSED), last_error

    def wait(self) -> None:
        """Block until the port is reachable.

        Raises:
            ConnectivityError: If the port never became reachable.
        """
        with console.status(f"Waiting for ssh on [bold]{self.host}[/bold]..."):
            outcome, error = self._probe_sequence()
        if outcome == OK:
            return

        if outcome == TIMED_OUT and self.remediate is not None:
            console.print(
                f"[yellow]Connections to {self.host}:{self.port} are timing out; "
                f"checking security group ingress[/yellow]"
            )
            self.remediations += 1
            try:
                self.remediate()
            except Exception as e:
                raise ConnectivityError(
                    f"Could not connect to {self.host}:{self.port}: {error}",
                    cause=error,
                    remediation_error=e,
                ) from e
            first_error = error
            with console.status(f"Waiting for ssh on [bold]{self.host}[/bold]..."):
                outcome, error = self._probe_sequence()
            if outcome == OK:
                return
            raise ConnectivityError(
                f"Could not connect to {self.host}:{self.port} after "
                f"{self.attempts} attempts: {error} (timed out before the ingress "
                f"rule was checked: {first_error})",
                cause=error,
                initial_error=first_error,
            )

        raise ConnectivityError(
            f"Could not connect to {self.host}:{self.port} after "
            f"{self.attempts} attempts: {error}",
            cause=error,
        )
