import json
import os
import time
from datetime import timedelta

import pytest

from trustguard import rotate
from trustguard.deps import build_services
from trustguard.errors import CAIntegrityError, InvalidServiceConfig, RotationInProgress
from trustguard.models.certificate import CertificateKind
from trustguard.models.reload import ReloadState
from trustguard.services.rotation_service import (
    EXIT_ABORTED,
    EXIT_OK,
    EXIT_ROLLED_BACK,
    RotationLock,
)


def _write_marker(path, pid, started_at):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps({"pid": pid, "started_at": started_at}))


class TestRotationLock:
    def test_acquire_and_release(self, tmp_path):
        lock = RotationLock(tmp_path / "rotation.lock")

        with lock:
            assert lock.path.exists()
            with pytest.raises(RotationInProgress):
                RotationLock(lock.path).acquire()

        assert not lock.path.exists()

    def test_expired_marker_is_replaced(self, tmp_path):
        path = tmp_path / "rotation.lock"
        _write_marker(path, os.getpid(), time.time() - 7200)
        lock = RotationLock(path, ttl_seconds=3600)

        lock.acquire()

        assert json.loads(path.read_text())["started_at"] > time.time() - 60
        lock.release()

    def test_garbage_marker_is_stale(self, tmp_path):
        path = tmp_path / "rotation.lock"
        path.write_text("not json")

        assert RotationLock(path).is_stale()

    def test_live_marker_is_not_stale(self, tmp_path):
        path = tmp_path / "rotation.lock"
        _write_marker(path, os.getpid(), time.time())

        assert not RotationLock(path).is_stale()

    def test_marker_complete_and_no_leftovers(self, tmp_path):
        lock = RotationLock(tmp_path / "rotation.lock")

        with lock:
            marker = json.loads(lock.path.read_text())
            assert marker["pid"] == os.getpid()
            assert sorted(p.name for p in tmp_path.iterdir()) == ["rotation.lock"]

        assert list(tmp_path.iterdir()) == []

    def test_second_acquire_leaves_no_leftovers(self, tmp_path):
        path = tmp_path / "rotation.lock"
        _write_marker(path, os.getpid(), time.time())

        with pytest.raises(RotationInProgress):
            RotationLock(path).acquire()

        assert [p.name for p in tmp_path.iterdir()] == ["rotation.lock"]


class TestRotateNow:
    def test_first_run_bootstraps_everything(self, services):
        result = services.scheduler.rotate_now()

        assert not result.skipped
        assert result.ca_initialized
        kinds = sorted(cert.kind.value for cert in result.issued)
        assert kinds == ["client", "client", "server"]
        assert result.apply_result.state == ReloadState.VALIDATED
        assert result.exit_code == EXIT_OK

        config = services.settings.SERVICE_CONFIG_PATH.read_text()
        assert str(services.issuer.server_paths().pem) in config
        assert str(services.store.crl_path) in config
        assert services.store.crl_path.exists()

    def test_second_run_is_a_noop(self, services, fake_controller):
        services.scheduler.rotate_now()
        serial_before = services.store.serial_path.read_text()
        crl_before = services.store.crl_path.read_bytes()
        config_before = services.settings.SERVICE_CONFIG_PATH.read_text()
        fake_controller.calls.clear()

        result = services.scheduler.rotate_now()

        assert result.issued == []
        assert result.apply_result is None
        assert fake_controller.calls == []
        assert services.store.serial_path.read_text() == serial_before
        assert services.store.crl_path.read_bytes() == crl_before
        assert services.settings.SERVICE_CONFIG_PATH.read_text() == config_before

    def test_held_lock_skips_cycle(self, services, fake_controller):
        _write_marker(services.settings.rotation_lock_path, os.getpid(), time.time())

        result = services.scheduler.rotate_now()

        assert result.skipped
        assert result.exit_code == EXIT_OK
        assert not services.store.initialized
        assert fake_controller.calls == []
        assert services.settings.rotation_lock_path.exists()

    def test_lock_released_after_cycle(self, services):
        services.scheduler.rotate_now()

        assert not services.settings.rotation_lock_path.exists()

    def test_renewal_window(self, services):
        services.scheduler.rotate_now()
        services.scheduler.renew_before = timedelta(days=100000)

        result = services.scheduler.rotate_now()

        assert len(result.issued) == 3
        assert result.apply_result.succeeded

    def test_hostname_change_reissues_server(self, services):
        services.scheduler.rotate_now()
        services.scheduler.hostname = "db2.example.com"

        result = services.scheduler.rotate_now()

        assert [cert.kind for cert in result.issued] == [CertificateKind.SERVER]
        assert "CN=db2.example.com" in result.issued[0].subject_dn

    def test_retain_policy_keeps_superseded_valid(self, services):
        services.scheduler.rotate_now()

        result = services.scheduler.rotate_now(force=True)

        assert len(result.issued) == 3
        assert result.revoked == []
        assert services.ledger.revocations() == []

    def test_revoke_policy(self, test_settings, make_controller):
        config = test_settings.model_copy(update={"SUPERSEDED_POLICY": "revoke"})
        services = build_services(config, controller=make_controller())
        first = services.scheduler.rotate_now()

        result = services.scheduler.rotate_now(force=True)

        assert len(result.revoked) == 3
        assert {entry.reason for entry in result.revoked} == {"superseded"}
        revoked = {entry.serial for entry in services.ledger.revocations()}
        assert revoked == {cert.serial for cert in first.issued}

    def test_rollback_restores_previous_material(self, test_settings, services, make_controller):
        services.scheduler.rotate_now()
        pem_before = services.issuer.server_paths().pem.read_bytes()
        config_before = test_settings.SERVICE_CONFIG_PATH.read_text()

        failing = build_services(test_settings, controller=make_controller(default=False))
        result = failing.scheduler.rotate_now(force=True)

        assert result.apply_result.rolled_back
        assert result.exit_code == EXIT_ROLLED_BACK
        assert failing.issuer.server_paths().pem.read_bytes() == pem_before
        assert test_settings.SERVICE_CONFIG_PATH.read_text() == config_before

    def test_damaged_ca_is_not_reinitialized(self, initialized_ca, services):
        initialized_ca.key_path.unlink()
        cert_before = initialized_ca.cert_path.read_bytes()

        with pytest.raises(CAIntegrityError) as excinfo:
            services.scheduler.rotate_now()

        assert excinfo.value.remediation
        assert initialized_ca.cert_path.read_bytes() == cert_before


    def test_broken_service_config_aborts_before_issuing(self, test_settings, services):
        services.scheduler.rotate_now()
        pem_before = services.issuer.server_paths().pem.read_bytes()
        serial_before = services.store.serial_path.read_text()
        test_settings.SERVICE_CONFIG_PATH.write_text("net: [unclosed\n")

        with pytest.raises(InvalidServiceConfig) as excinfo:
            services.scheduler.rotate_now(force=True)

        assert excinfo.value.remediation
        assert services.issuer.server_paths().pem.read_bytes() == pem_before
        assert services.store.serial_path.read_text() == serial_before
        assert not services.scheduler.lock.path.exists()

    def test_failure_after_issue_restores_server(self, services, monkeypatch):
        services.scheduler.rotate_now()
        pem_before = services.issuer.server_paths().pem.read_bytes()

        def broken_crl():
            raise OSError("disk full")

        monkeypatch.setattr(services.ledger, "regenerate_crl", broken_crl)

        with pytest.raises(OSError):
            services.scheduler.rotate_now(force=True)

        assert services.issuer.server_paths().pem.read_bytes() == pem_before


class TestRotateEntryPoint:
    def test_exit_ok(self, services, monkeypatch):
        monkeypatch.setattr(rotate, "build_services", lambda config: services)

        assert rotate.main() == EXIT_OK

    def test_exit_aborted_on_integrity_failure(self, initialized_ca, services, monkeypatch):
        initialized_ca.key_path.unlink()
        monkeypatch.setattr(rotate, "build_services", lambda config: services)

        assert rotate.main() == EXIT_ABORTED

    def test_exit_rolled_back(self, test_settings, make_controller, monkeypatch):
        failing = build_services(test_settings, controller=make_controller(default=False))
        monkeypatch.setattr(rotate, "build_services", lambda config: failing)

        assert rotate.main() == EXIT_ROLLED_BACK

    def test_exit_aborted_on_broken_service_config(self, test_settings, services, monkeypatch):
        services.scheduler.rotate_now()
        test_settings.SERVICE_CONFIG_PATH.write_text("net: [unclosed\n")
        monkeypatch.setattr(rotate, "build_services", lambda config: services)

        assert rotate.main() == EXIT_ABORTED
