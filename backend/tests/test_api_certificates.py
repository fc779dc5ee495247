import json
import os
import time

from fastapi.testclient import TestClient


def _hold_marker(services) -> None:
    path = services.settings.rotation_lock_path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"pid": os.getpid(), "started_at": time.time()}))


class TestCertificatesAPI:
    """Test certificates API endpoints"""

    def test_list_certificates_empty(self, client: TestClient, auth_headers: dict):
        response = client.get("/api/certificates/list", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["data"]["certificates"] == []
        assert data["data"]["total"] == 0

    def test_issue_server_uses_configured_host(
        self, client: TestClient, auth_headers: dict, initialized_ca
    ):
        response = client.post("/api/certificates/server", json={}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["data"]["apply_result"]["state"] == "validated"
        data = response.json()["data"]["certificate"]
        assert data["kind"] == "server"
        assert data["serial_number"] == "03E8"
        assert "CN=db.example.com" in data["subject_dn"]
        assert "DNS.1=db.example.com" in data["san"]
        assert "DNS.2=localhost" in data["san"]
        assert any(entry.endswith("=10.0.0.5") for entry in data["san"])

    def test_issue_server_without_ca(self, client: TestClient, auth_headers: dict):
        response = client.post("/api/certificates/server", json={}, headers=auth_headers)

        assert response.status_code == 503

    def test_issue_client(self, client: TestClient, auth_headers: dict, initialized_ca):
        response = client.post(
            "/api/certificates/client", json={"role": "reporting"}, headers=auth_headers
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["kind"] == "client"
        assert data["name"] == "reporting"
        assert "CN=reporting" in data["subject_dn"]

    def test_issue_client_invalid_role(self, client: TestClient, auth_headers: dict, initialized_ca):
        response = client.post(
            "/api/certificates/client", json={"role": "../etc"}, headers=auth_headers
        )

        assert response.status_code == 422

    def test_list_and_filter(self, client: TestClient, auth_headers: dict, initialized_ca):
        client.post("/api/certificates/server", json={}, headers=auth_headers)
        client.post("/api/certificates/client", json={"role": "admin"}, headers=auth_headers)

        response = client.get("/api/certificates/list", headers=auth_headers)
        names = [cert["name"] for cert in response.json()["data"]["certificates"]]
        assert names == ["ca", "mongodb-server", "admin"]

        response = client.get("/api/certificates/list?kind=client", headers=auth_headers)
        assert [cert["name"] for cert in response.json()["data"]["certificates"]] == ["admin"]

    def test_detail_by_serial(self, client: TestClient, auth_headers: dict, initialized_ca):
        issued = client.post(
            "/api/certificates/client", json={"role": "admin"}, headers=auth_headers
        ).json()["data"]

        response = client.get(
            f"/api/certificates/detail?serial_number={issued['serial_number']}",
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["data"]["name"] == "admin"

    def test_detail_unknown_serial(self, client: TestClient, auth_headers: dict, initialized_ca):
        response = client.get("/api/certificates/detail?serial_number=FFFF", headers=auth_headers)

        assert response.status_code == 404

    def test_detail_bad_serial(self, client: TestClient, auth_headers: dict, initialized_ca):
        response = client.get("/api/certificates/detail?serial_number=xyz", headers=auth_headers)

        assert response.status_code == 400

    def test_renew_client(self, client: TestClient, auth_headers: dict, initialized_ca):
        first = client.post(
            "/api/certificates/client", json={"role": "admin"}, headers=auth_headers
        ).json()["data"]

        response = client.post(
            "/api/certificates/renew", json={"kind": "client", "role": "admin"}, headers=auth_headers
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["superseded"]["serial_number"] == first["serial_number"]
        assert data["certificate"]["serial_number"] != first["serial_number"]
        assert data["certificate"]["subject_dn"] == first["subject_dn"]

    def test_renew_client_requires_role(self, client: TestClient, auth_headers: dict, initialized_ca):
        response = client.post("/api/certificates/renew", json={"kind": "client"}, headers=auth_headers)

        assert response.status_code == 400

    def test_renew_missing_server(self, client: TestClient, auth_headers: dict, initialized_ca):
        response = client.post("/api/certificates/renew", json={"kind": "server"}, headers=auth_headers)

        assert response.status_code == 404

    def test_subject_dn(self, client: TestClient, auth_headers: dict, initialized_ca):
        client.post("/api/certificates/client", json={"role": "app"}, headers=auth_headers)

        response = client.get("/api/certificates/subject-dn?role=app", headers=auth_headers)

        assert response.status_code == 200
        dn = response.json()["data"]["subject_dn"]
        assert dn.startswith("CN=app,")
        assert dn.endswith(",C=US")

    def test_subject_dn_unknown_role(self, client: TestClient, auth_headers: dict, initialized_ca):
        response = client.get("/api/certificates/subject-dn?role=ghost", headers=auth_headers)

        assert response.status_code == 404


class TestServerApply:
    """Server certificates go live through the reload orchestrator"""

    def test_issue_writes_service_config(
        self, client: TestClient, auth_headers: dict, services, initialized_ca
    ):
        client.post("/api/certificates/server", json={}, headers=auth_headers)

        config = services.settings.SERVICE_CONFIG_PATH.read_text()
        assert str(services.issuer.server_paths().pem) in config

    def test_failed_apply_restores_previous_server(
        self, client: TestClient, auth_headers: dict, services, fake_controller, initialized_ca
    ):
        client.post("/api/certificates/server", json={}, headers=auth_headers)
        pem_before = services.issuer.server_paths().pem.read_bytes()
        fake_controller.default = False

        response = client.post("/api/certificates/server", json={}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["message"] == "Server certificate rolled back"
        assert services.issuer.server_paths().pem.read_bytes() == pem_before

    def test_renew_server(self, client: TestClient, auth_headers: dict, initialized_ca):
        first = client.post("/api/certificates/server", json={}, headers=auth_headers).json()["data"]

        response = client.post("/api/certificates/renew", json={"kind": "server"}, headers=auth_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["superseded"]["serial_number"] == first["certificate"]["serial_number"]
        assert data["apply_result"]["state"] == "validated"


class TestWriterMarker:
    """State-changing routes share the rotation marker with the timer"""

    def test_client_issue_refused_while_rotating(
        self, client: TestClient, auth_headers: dict, services, initialized_ca
    ):
        _hold_marker(services)
        serial_before = initialized_ca.serial_path.read_text()

        response = client.post("/api/certificates/client", json={"role": "admin"}, headers=auth_headers)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "ROTATION_IN_PROGRESS"
        assert initialized_ca.serial_path.read_text() == serial_before
        assert services.settings.rotation_lock_path.exists()

    def test_server_issue_refused_while_rotating(
        self, client: TestClient, auth_headers: dict, services, initialized_ca
    ):
        _hold_marker(services)

        response = client.post("/api/certificates/server", json={}, headers=auth_headers)

        assert response.status_code == 409

    def test_marker_released_after_request(
        self, client: TestClient, auth_headers: dict, services, initialized_ca
    ):
        response = client.post("/api/certificates/client", json={"role": "admin"}, headers=auth_headers)

        assert response.status_code == 200
        assert not services.settings.rotation_lock_path.exists()

    def test_reads_allowed_while_rotating(
        self, client: TestClient, auth_headers: dict, services, initialized_ca
    ):
        _hold_marker(services)

        response = client.get("/api/certificates/list", headers=auth_headers)

        assert response.status_code == 200
