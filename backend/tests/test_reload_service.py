import pytest

from trustguard.errors import RollbackError
from trustguard.models.reload import ReloadState
from trustguard.services.reload_service import ReloadOrchestrator
from trustguard.services.snapshot_service import SnapshotStore

OLD_CONFIG = "net:\n  port: 27017\n"
NEW_CONFIG = "net:\n  port: 27017\n  tls:\n    mode: requireTLS\n"


@pytest.fixture
def snapshots(tmp_path) -> SnapshotStore:
    return SnapshotStore(tmp_path / "failsafe" / "lkg")


@pytest.fixture
def target(tmp_path):
    path = tmp_path / "etc" / "mongod.conf"
    path.parent.mkdir(parents=True)
    path.write_text(OLD_CONFIG)
    return path


def _states(result):
    return [t.target for t in result.transitions]


class TestApply:
    def test_graceful_reload(self, snapshots, target, make_controller):
        controller = make_controller(version="7.0.5")
        result = ReloadOrchestrator(snapshots, controller).apply(target, NEW_CONFIG)

        assert result.succeeded
        assert _states(result) == [
            ReloadState.SNAPSHOTTED,
            ReloadState.WRITTEN,
            ReloadState.RELOAD_ATTEMPTED,
            ReloadState.VALIDATED,
        ]
        assert controller.calls == ["version", "reload", "validate"]
        assert target.read_text() == NEW_CONFIG
        assert snapshots.get(target).content == OLD_CONFIG.encode()

    def test_old_version_skips_reload(self, snapshots, target, make_controller):
        controller = make_controller(version="4.2.24")
        result = ReloadOrchestrator(snapshots, controller, min_reload_version="4.4").apply(
            target, NEW_CONFIG
        )

        assert result.succeeded
        assert "reload" not in controller.calls
        assert ReloadState.RELOAD_ATTEMPTED not in _states(result)
        assert ReloadState.RESTART_ATTEMPTED in _states(result)

    def test_unknown_version_skips_reload(self, snapshots, target, make_controller):
        controller = make_controller(version=None)
        result = ReloadOrchestrator(snapshots, controller).apply(target, NEW_CONFIG)

        assert result.succeeded
        assert controller.calls == ["version", "restart", "validate"]

    def test_failed_reload_falls_back_to_restart(self, snapshots, target, make_controller):
        controller = make_controller(reload_results=[False])
        result = ReloadOrchestrator(snapshots, controller).apply(target, NEW_CONFIG)

        assert result.succeeded
        assert controller.calls == ["version", "reload", "restart", "validate"]
        assert target.read_text() == NEW_CONFIG

    def test_failed_validation_after_reload_falls_back_to_restart(
        self, snapshots, target, make_controller
    ):
        controller = make_controller(validate_results=[False, True])
        result = ReloadOrchestrator(snapshots, controller).apply(target, NEW_CONFIG)

        assert result.succeeded
        assert controller.calls == ["version", "reload", "validate", "restart", "validate"]


class TestRollback:
    def test_restart_validation_failure_rolls_back(self, snapshots, target, make_controller):
        controller = make_controller(reload_results=[False], validate_results=[False, False])
        result = ReloadOrchestrator(snapshots, controller).apply(target, NEW_CONFIG)

        assert result.rolled_back
        assert result.state == ReloadState.ROLLED_BACK
        assert target.read_text() == OLD_CONFIG
        assert result.final_restart_ok is False
        assert controller.calls == [
            "version",
            "reload",
            "restart",
            "validate",
            "restart",
            "validate",
        ]

    def test_recovered_after_rollback(self, snapshots, target, make_controller):
        controller = make_controller(reload_results=[False], restart_results=[False, True])
        result = ReloadOrchestrator(snapshots, controller).apply(target, NEW_CONFIG)

        assert result.rolled_back
        assert result.final_restart_ok is True
        assert "restart failed" in result.reason

    def test_related_files_restored(self, snapshots, target, tmp_path, make_controller):
        cert = tmp_path / "ssl" / "mongodb-server.pem"
        cert.parent.mkdir()
        cert.write_text("old pem")
        snapshots.snapshot(cert)
        cert.write_text("new pem")

        controller = make_controller(default=False, version="7.0.5")
        result = ReloadOrchestrator(snapshots, controller).apply(target, NEW_CONFIG, [cert])

        assert result.rolled_back
        assert cert.read_text() == "old pem"
        assert target.read_text() == OLD_CONFIG

    def test_new_file_without_snapshot_is_removed(self, snapshots, tmp_path, make_controller):
        target = tmp_path / "etc" / "fresh.conf"
        target.parent.mkdir(parents=True)
        controller = make_controller(default=False)

        result = ReloadOrchestrator(snapshots, controller).apply(target, NEW_CONFIG)

        assert result.rolled_back
        assert result.transitions[0].reason == "no existing file to snapshot"
        assert not target.exists()

    def test_write_failure_rolls_back_without_restart(self, snapshots, tmp_path, make_controller):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        controller = make_controller()

        result = ReloadOrchestrator(snapshots, controller).apply(blocker / "mongod.conf", NEW_CONFIG)

        assert result.rolled_back
        assert _states(result) == [ReloadState.SNAPSHOTTED, ReloadState.ROLLED_BACK]
        assert result.final_restart_ok is None
        assert controller.calls == []

    def test_failed_restore_raises(self, snapshots, target, tmp_path, make_controller, monkeypatch):
        controller = make_controller(default=False)
        orchestrator = ReloadOrchestrator(snapshots, controller)

        def broken_rollback(path):
            raise OSError("disk full")

        monkeypatch.setattr(snapshots, "rollback", broken_rollback)

        with pytest.raises(RollbackError):
            orchestrator.apply(target, NEW_CONFIG)
