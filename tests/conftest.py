"""Shared fixtures for spotsh tests."""

from __future__ import annotations

from typing import Any, Generator
from unittest.mock import MagicMock

import pytest
from moto import mock_aws

from spotsh.types import InstanceRecord, OperatingSystem


@pytest.fixture
def aws_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    """Fake credentials so nothing can reach a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    monkeypatch.delenv("AWS_REGION", raising=False)
    monkeypatch.delenv("AWS_PROFILE", raising=False)


@pytest.fixture
def mocked_aws(aws_credentials: None) -> Generator[None, None, None]:
    """Mock all AWS interactions."""
    with mock_aws():
        yield


@pytest.fixture
def home(tmp_path, monkeypatch: pytest.MonkeyPatch):
    """Point ~ (and so ~/.ssh and the config dir) at a temp directory."""
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("SPOTSH_CONFIG_DIR", str(tmp_path / "config"))
    (tmp_path / ".ssh").mkdir()
    return tmp_path


@pytest.fixture
def client_factory() -> Any:
    """A ``factory(service, region)`` handing out one MagicMock per (service, region)."""
    clients: dict[tuple[str, str], MagicMock] = {}

    def factory(service: str, region: str) -> MagicMock:
        key = (service, region)
        if key not in clients:
            clients[key] = MagicMock(name=f"{service}:{region}")
        return clients[key]

    factory.clients = clients
    return factory


def make_record(instance_id: str = "i-0123456789abcdef0", **kwargs: Any) -> InstanceRecord:
    defaults: dict[str, Any] = {
        "public_ip": "203.0.113.10",
        "user": "ec2-user",
        "local_key_file": "/home/me/.ssh/spotsh.us-east-1",
        "instance_type": "c5.large",
        "az_name": "us-east-1a",
        "os": OperatingSystem.AMZN2023,
        "security_group_id": "sg-0123",
        "region": "us-east-1",
    }
    defaults.update(kwargs)
    return InstanceRecord(instance_id=instance_id, **defaults)


@pytest.fixture
def record_factory():
    return make_record


