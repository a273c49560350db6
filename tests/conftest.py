"""
Shared fixtures for the edge certificate renewal tests.

External dependencies (acme.sh, the IoT platform, the edge) are replaced by
in-memory fakes.
"""

import itertools
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import Mock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID

from edgecert.command import CommandResult, CommandRunner
from edgecert.config_loader import Config, PlatformConfig, Settings, resolve_renewal_config
from edgecert.platform import PlatformError


def make_certificate_pem(common_name: str = "edge.example.com", days: int = 90) -> bytes:
    """Self-signed PEM certificate for common_name."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(Encoding.PEM)


class FakeRunner(CommandRunner):
    """CommandRunner that records calls and optionally writes the certificate."""

    def __init__(self, exit_code: int = 0, writes: Optional[Dict[Path, bytes]] = None):
        self.exit_code = exit_code
        self.writes = writes or {}
        self.calls: List[dict] = []
        self.side_effect = None

    def run(self, command, args, env=None, timeout=None):
        self.calls.append({"command": command, "args": list(args), "env": env, "timeout": timeout})
        if self.side_effect is not None:
            self.side_effect(command, args)
        if self.exit_code == 0:
            for path, content in self.writes.items():
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(content)
        return CommandResult(exit_code=self.exit_code, stdout="", stderr="boom" if self.exit_code else "")

    @property
    def issue_calls(self) -> List[dict]:
        return [c for c in self.calls if "--issue" in c["args"] or "--renew" in c["args"]]


class FakePlatform:
    """In-memory stand-in for PlatformClient."""

    def __init__(self, options: Optional[Dict[str, str]] = None, tenant_domain: str = "edge.example.com"):
        self.options = dict(options or {})
        self.tenant_domain = tenant_domain
        self.binaries: Dict[str, dict] = {}
        self.created_options: List[tuple] = []
        self.events: List[dict] = []
        self.deleted: List[str] = []
        self.fail_upload = False
        self.fail_create_option = False
        self._ids = itertools.count(100)

    def list_tenant_options(self, category):
        return dict(self.options)

    def create_tenant_option(self, category, key, value):
        if self.fail_create_option:
            raise PlatformError("option creation refused")
        self.created_options.append((category, key, value))
        self.options[key] = value

    def get_tenant_domain(self, tenant_id):
        return self.tenant_domain

    def find_newest_binary(self, name, owner):
        matching = [
            binary_id for binary_id, binary in self.binaries.items()
            if binary["name"] == name and binary["owner"] == owner
        ]
        return max(matching, key=int) if matching else None

    def upload_binary(self, name, content):
        if self.fail_upload:
            raise PlatformError("upload refused")
        binary_id = str(next(self._ids))
        self.binaries[binary_id] = {"name": name, "owner": "service-user", "content": content}
        return binary_id

    def download_binary(self, binary_id):
        return self.binaries[binary_id]["content"]

    def delete_binary(self, binary_id):
        self.deleted.append(binary_id)
        del self.binaries[binary_id]

    def find_application_device(self, application_name):
        return "4711"

    def create_event(self, event):
        self.events.append(event)

    def close(self):
        pass


def response(status_code: int, body=None) -> Mock:
    """Mocked requests.Response."""
    mock = Mock()
    mock.status_code = status_code
    mock.json.return_value = body if body is not None else {}
    mock.content = b""
    return mock


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(base_path=str(tmp_path), poll_interval_seconds=10)


@pytest.fixture
def platform_config() -> PlatformConfig:
    return PlatformConfig(
        base_url="https://tenant.example.com",
        tenant="t100",
        user="service-user",
        password="secret",
        application_name="acme",
        application_key="app-key",
    )


@pytest.fixture
def config(platform_config, settings) -> Config:
    return Config(platform=platform_config, settings=settings)


@pytest.fixture
def options() -> Dict[str, str]:
    return {
        "domain": "edge.example.com",
        "dns_provider": "dns_cf",
        "server": "letsencrypt",
        "CF_Token": "cf-token",
    }


@pytest.fixture
def renewal_config(options, settings):
    return resolve_renewal_config(options, settings)


@pytest.fixture
def fake_platform(options) -> FakePlatform:
    return FakePlatform(options)


@pytest.fixture
def certificate_pem() -> bytes:
    return make_certificate_pem()
