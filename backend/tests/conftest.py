import os
import sys
from pathlib import Path
from typing import Generator, List, Optional

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path to import trustguard modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set test environment variables before importing the app
os.environ["MASTER_KEY"] = "test_master_key_32_characters_minimum_length"
os.environ["ADMIN_PASSWORD"] = "admin_password"
os.environ["DEBUG"] = "true"
os.environ["LOG_LEVEL"] = "debug"

# Import app after setting environment variables
from trustguard.config import Settings  # noqa: E402
from trustguard.deps import Services, build_services, ca_parameters, get_services  # noqa: E402
from trustguard.main import app  # noqa: E402
from trustguard.services.supervisor_service import CommandResult, ServiceController  # noqa: E402


class FakeController(ServiceController):
    """Scripted stand-in for systemd; each queue is consumed one call at a time."""

    def __init__(
        self,
        version: Optional[str] = "7.0.5",
        reload_results: Optional[List[bool]] = None,
        restart_results: Optional[List[bool]] = None,
        validate_results: Optional[List[bool]] = None,
        default: bool = True,
    ):
        self.name = "mongod"
        self._version = version
        self.reload_results = list(reload_results or [])
        self.restart_results = list(restart_results or [])
        self.validate_results = list(validate_results or [])
        self.default = default
        self.calls: List[str] = []

    def _result(self, action: str, queue: List[bool]) -> CommandResult:
        self.calls.append(action)
        ok = queue.pop(0) if queue else self.default
        return CommandResult(
            args=["systemctl", action, self.name],
            returncode=0 if ok else 1,
            stderr="" if ok else f"{action} failed",
        )

    def reload(self) -> CommandResult:
        return self._result("reload", self.reload_results)

    def restart(self) -> CommandResult:
        return self._result("restart", self.restart_results)

    def validate(self) -> CommandResult:
        return self._result("validate", self.validate_results)

    def version(self) -> Optional[str]:
        self.calls.append("version")
        return self._version

    def is_active(self) -> bool:
        return True


@pytest.fixture
def make_controller():
    return FakeController


@pytest.fixture
def fake_controller() -> FakeController:
    return FakeController()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings rooted in a per-test directory tree"""
    return Settings(
        CA_DIR=tmp_path / "mongoCA",
        SSL_DIR=tmp_path / "ssl" / "mongodb",
        CLIENT_DIR=tmp_path / "mongoCA" / "clients",
        FAILSAFE_DIR=tmp_path / "failsafe",
        SERVICE_CONFIG_PATH=tmp_path / "etc" / "mongod.conf",
        SERVICE_USER=None,
        SERVICE_GROUP=None,
        SERVER_HOSTNAME="db.example.com",
        SERVER_ALT_NAMES=["10.0.0.5"],
        CLIENT_ROLES=["admin", "app"],
        VALIDATION_INTERVAL_SECONDS=0,
    )


@pytest.fixture
def services(test_settings: Settings, fake_controller: FakeController) -> Services:
    return build_services(test_settings, controller=fake_controller)


@pytest.fixture
def initialized_ca(services: Services):
    services.store.initialize(ca_parameters(services.settings))
    return services.store


@pytest.fixture(scope="function")
def client(services: Services) -> Generator[TestClient, None, None]:
    """Create a test client bound to the per-test services"""
    app.dependency_overrides[get_services] = lambda: services

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_token(client: TestClient) -> str:
    """Get authentication token for testing"""
    response = client.post(
        "/api/auth/login",
        json={"username": "admin", "password": "admin_password"},
    )
    assert response.status_code == 200
    data = response.json()
    assert "token" in data
    return data["token"]


@pytest.fixture
def auth_headers(auth_token: str) -> dict:
    """Get headers with authentication token"""
    return {"Authorization": f"Bearer {auth_token}"}
