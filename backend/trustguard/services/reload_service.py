import logging
from pathlib import Path
from typing import Iterable, List, Union

from trustguard.errors import ConfigWriteError, NoSnapshot, RollbackError, ValidationFailure
from trustguard.models.reload import ApplyResult, ReloadState, Transition
from trustguard.services.snapshot_service import SnapshotStore
from trustguard.services.supervisor_service import ServiceController, supports_graceful_reload

logger = logging.getLogger(__name__)


class ReloadOrchestrator:
    """Apply one configuration change to a running service.

    snapshot -> atomic write -> graceful reload (when the installed version
    supports it) -> restart -> rollback to the last-known-good copy, with a
    validation after every reload or restart.
    """

    def __init__(
        self,
        snapshots: SnapshotStore,
        controller: ServiceController,
        min_reload_version: str = "4.4",
    ):
        self.snapshots = snapshots
        self.controller = controller
        self.min_reload_version = min_reload_version

    def _move(self, result: ApplyResult, target: ReloadState, reason: str, level=logging.INFO) -> None:
        result.transitions.append(Transition(source=result.state, target=target, reason=reason))
        logger.log(
            level,
            "%s: %s -> %s (%s)",
            self.controller.name,
            result.state.value,
            target.value,
            reason,
        )
        result.state = target

    def apply(
        self,
        target_path: Path,
        new_content: Union[bytes, str],
        related_paths: Iterable[Path] = (),
    ) -> ApplyResult:
        """Write ``new_content`` to ``target_path`` and bring the service onto it.

        ``related_paths`` are files the caller already snapshotted and replaced
        (certificate material); they are restored together with the target
        when the change is rolled back.
        """
        target_path = Path(target_path)
        related = [Path(path) for path in related_paths]
        result = ApplyResult(target_path=target_path)

        existed = target_path.exists()
        try:
            self.snapshots.snapshot(target_path)
        except OSError as exc:
            raise ConfigWriteError(f"Could not snapshot {target_path}: {exc}") from exc
        self._move(
            result,
            ReloadState.SNAPSHOTTED,
            "snapshot taken" if existed else "no existing file to snapshot",
        )

        try:
            self.snapshots.write_atomic(target_path, new_content)
        except ConfigWriteError as exc:
            logger.error("Write of %s failed: %s", target_path, exc)
            self._rollback(result, related, restart=False, reason=f"write failed: {exc}")
            return result
        self._move(result, ReloadState.WRITTEN, "new configuration written")

        version = self.controller.version()
        if supports_graceful_reload(version, self.min_reload_version):
            outcome = self.controller.reload()
            self._move(
                result,
                ReloadState.RELOAD_ATTEMPTED,
                f"graceful reload on version {version}" if outcome.ok else outcome.describe(),
            )
            if outcome.ok:
                try:
                    self._validate("reload")
                    self._move(result, ReloadState.VALIDATED, "validated after reload")
                    return result
                except ValidationFailure as exc:
                    fallback = str(exc)
            else:
                fallback = f"reload failed: {outcome.describe()}"
        else:
            fallback = (
                f"version {version or 'unknown'} below {self.min_reload_version}, "
                "graceful reload skipped"
            )

        outcome = self.controller.restart()
        self._move(result, ReloadState.RESTART_ATTEMPTED, fallback, logging.WARNING)
        if outcome.ok:
            try:
                self._validate("restart")
                self._move(result, ReloadState.VALIDATED, "validated after restart")
                return result
            except ValidationFailure as exc:
                reason = str(exc)
        else:
            reason = f"restart failed: {outcome.describe()}"

        self._rollback(result, related, restart=True, reason=reason)
        return result

    def _validate(self, stage: str) -> None:
        check = self.controller.validate()
        if not check.ok:
            raise ValidationFailure(f"validation after {stage} failed: {check.describe()}")

    def _restore(self, path: Path) -> None:
        if self.snapshots.get(path) is None:
            # nothing was there before this change
            if path.exists():
                path.unlink()
                logger.warning("Removed %s, which had no last-known-good copy", path)
            return
        self.snapshots.rollback(path)

    def _rollback(self, result: ApplyResult, related: List[Path], restart: bool, reason: str) -> None:
        paths = [result.target_path] + related
        failures = []
        for path in paths:
            try:
                self._restore(path)
            except (NoSnapshot, OSError) as exc:
                failures.append(f"{path}: {exc}")

        if failures:
            logger.critical(
                "Rollback of %s failed; the service may be running an unvalidated configuration: %s",
                self.controller.name,
                "; ".join(failures),
            )
            raise RollbackError(f"Rollback failed for {', '.join(failures)}")

        self._move(result, ReloadState.ROLLED_BACK, reason, logging.ERROR)

        if restart:
            final = self.controller.restart().ok
            if final:
                try:
                    self._validate("rollback")
                except ValidationFailure:
                    final = False
            result.final_restart_ok = final
            if final:
                logger.error("%s restarted on the last-known-good configuration", self.controller.name)
            else:
                logger.critical(
                    "%s did not come back on the last-known-good configuration", self.controller.name
                )
