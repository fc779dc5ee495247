import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from trustguard.errors import CAAlreadyExists, InvalidServiceConfig, RotationInProgress
from trustguard.fileio import ensure_dir
from trustguard.models.ca import CAParameters
from trustguard.models.certificate import Certificate, CertificateStatus
from trustguard.models.crl import ExpiryFinding, RevocationEntry
from trustguard.models.reload import ApplyResult
from trustguard.services import config_service, crypto_service
from trustguard.services.ca_service import CAStore
from trustguard.services.cert_service import CertificateIssuer, default_server_alt_names
from trustguard.services.crl_service import RevocationLedger
from trustguard.services.reload_service import ReloadOrchestrator
from trustguard.services.snapshot_service import SnapshotStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_ROLLED_BACK = 2


class RotationLock:
    """Marker file that keeps rotation cycles from overlapping.

    A marker whose owner process is gone, or which is older than
    ``ttl_seconds``, is considered stale and replaced.
    """

    def __init__(self, path: Path, ttl_seconds: int = 3600):
        self.path = Path(path)
        self.ttl_seconds = ttl_seconds
        self._held = False

    def _create(self) -> bool:
        # the marker appears complete or not at all: written aside, then hard-linked
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w") as handle:
                json.dump({"pid": os.getpid(), "started_at": time.time()}, handle)
            try:
                os.link(tmp_name, self.path)
            except FileExistsError:
                return False
            return True
        finally:
            os.unlink(tmp_name)

    def _read(self) -> Optional[dict]:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def is_stale(self) -> bool:
        marker = self._read()
        if marker is None:
            return True
        try:
            pid = int(marker["pid"])
            started_at = float(marker["started_at"])
        except (KeyError, TypeError, ValueError):
            return True

        if time.time() - started_at > self.ttl_seconds:
            return True
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            pass
        return False

    def acquire(self) -> None:
        ensure_dir(self.path.parent, 0o700)
        if self._create():
            self._held = True
            return
        if self.is_stale():
            logger.warning("Removing stale rotation marker %s", self.path)
            self.path.unlink(missing_ok=True)
            if self._create():
                self._held = True
                return
        raise RotationInProgress(f"Rotation already in progress (marker {self.path})")

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    def __enter__(self) -> "RotationLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@dataclass
class RotationResult:
    skipped: bool = False
    reason: str = ""
    ca_initialized: bool = False
    issued: List[Certificate] = field(default_factory=list)
    revoked: List[RevocationEntry] = field(default_factory=list)
    crl_path: Optional[Path] = None
    apply_result: Optional[ApplyResult] = None
    findings: List[ExpiryFinding] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        if self.apply_result is not None and self.apply_result.rolled_back:
            return EXIT_ROLLED_BACK
        return EXIT_OK

    def to_dict(self) -> dict:
        return {
            "skipped": self.skipped,
            "reason": self.reason,
            "ca_initialized": self.ca_initialized,
            "issued": [cert.to_dict() for cert in self.issued],
            "revoked": [entry.to_dict() for entry in self.revoked],
            "crl_path": str(self.crl_path) if self.crl_path else None,
            "apply_result": self.apply_result.to_dict() if self.apply_result else None,
            "findings": [finding.to_dict() for finding in self.findings],
        }


def _san_values(entries: List[str]) -> set:
    values = set()
    for entry in entries:
        label, _, value = entry.partition("=")
        values.add((label.split(".", 1)[0], value))
    return values


class RotationScheduler:
    """One "rotate now" cycle: renew what is due, publish the CRL, apply the config."""

    def __init__(
        self,
        store: CAStore,
        issuer: CertificateIssuer,
        ledger: RevocationLedger,
        snapshots: SnapshotStore,
        orchestrator: ReloadOrchestrator,
        lock: RotationLock,
        ca_params: CAParameters,
        hostname: str,
        config_path: Path,
        alt_names: Optional[List[str]] = None,
        client_roles: Optional[List[str]] = None,
        renew_before_days: int = 30,
        expiry_warning_days: int = 30,
        superseded_policy: str = "retain",
    ):
        if superseded_policy not in ("retain", "revoke"):
            raise ValueError(f"Unknown superseded certificate policy: {superseded_policy}")
        self.store = store
        self.issuer = issuer
        self.ledger = ledger
        self.snapshots = snapshots
        self.orchestrator = orchestrator
        self.lock = lock
        self.ca_params = ca_params
        self.hostname = hostname.lower()
        self.config_path = Path(config_path)
        self.alt_names = list(alt_names or [])
        self.client_roles = list(client_roles or [])
        self.renew_before = timedelta(days=renew_before_days)
        self.expiry_warning_days = expiry_warning_days
        self.superseded_policy = superseded_policy

    def rotate_now(self, force: bool = False) -> RotationResult:
        try:
            with self.lock:
                return self._cycle(force)
        except RotationInProgress as exc:
            logger.info("Skipping rotation: %s", exc)
            return RotationResult(skipped=True, reason=str(exc))

    def _renewal_reason(self, current: Optional[Certificate], now: datetime) -> Optional[str]:
        if current is None:
            return "missing"
        if current.status == CertificateStatus.REVOKED:
            return "revoked"
        if current.not_after <= now:
            return "expired"
        if current.not_after - now <= self.renew_before:
            return f"expires {current.not_after.date()}"
        return None

    def _server_reason(self, current: Optional[Certificate], now: datetime) -> Optional[str]:
        reason = self._renewal_reason(current, now)
        if reason:
            return reason
        expected = _san_values(
            crypto_service.label_san_entries(default_server_alt_names(self.hostname) + self.alt_names)
        )
        if f"CN={self.hostname}" not in current.subject_dn.split(","):
            return "hostname changed"
        if _san_values(current.san) != expected:
            return "alternative names changed"
        return None

    def _render_config(self) -> str:
        try:
            config = config_service.load_config(self.config_path)
        except (OSError, ValueError) as exc:
            raise InvalidServiceConfig(f"Cannot read {self.config_path}: {exc}") from exc
        config = config_service.with_tls_material(
            config,
            cert_key_file=self.issuer.server_paths().pem,
            ca_file=self.store.cert_path,
            crl_file=self.store.crl_path,
        )
        return config_service.render_config(config)

    def _snapshot_server(self) -> Dict[Path, bool]:
        return {
            path: self.snapshots.snapshot(path) is not None
            for path in self.issuer.server_paths().all()
        }

    def _restore_server(self, existed: Dict[Path, bool]) -> None:
        for path, was_present in existed.items():
            if was_present:
                self.snapshots.rollback(path)
            elif path.exists():
                path.unlink()
        logger.error("Restored the previous server certificate material")

    def _cycle(self, force: bool) -> RotationResult:
        result = RotationResult()
        now = datetime.now(timezone.utc)

        # a certificate without its key is damage, not a fresh install
        if not self.store.initialized and not self.store.cert_path.exists():
            try:
                self.store.initialize(self.ca_params)
                result.ca_initialized = True
            except CAAlreadyExists:
                pass
        self.store.verify()

        # the configuration must be usable before any live material is replaced
        content = self._render_config()
        current_content = self.config_path.read_text() if self.config_path.exists() else None

        current_server = self.issuer.load_server()
        reason = "forced" if force else self._server_reason(current_server, now)
        existed: Dict[Path, bool] = {}
        if reason:
            logger.info("Renewing server certificate: %s", reason)
            existed = self._snapshot_server()

        try:
            if existed:
                result.issued.append(self.issuer.issue_server(self.hostname, self.alt_names))
            for role in self.client_roles:
                current = self.issuer.load_client(role)
                reason = "forced" if force else self._renewal_reason(current, now)
                if not reason:
                    continue
                logger.info("Renewing client certificate %s: %s", role, reason)
                if current is None:
                    result.issued.append(self.issuer.issue_client(role))
                else:
                    result.issued.append(self.issuer.renew(current))
                    if self.superseded_policy == "revoke" and current.status != CertificateStatus.REVOKED:
                        result.revoked.append(self.ledger.revoke(current, "superseded"))

            crl_before = self.ledger.read_crl()
            result.crl_path = self.ledger.regenerate_crl()
            crl_changed = self.ledger.read_crl() != crl_before

            if existed or crl_changed or content != current_content:
                result.apply_result = self.orchestrator.apply(self.config_path, content, list(existed))
        except Exception:
            # a server certificate nobody validated must not stay live
            if existed:
                self._restore_server(existed)
            raise

        if result.apply_result is None:
            logger.info("Nothing to apply; %s is current", self.config_path)
        elif result.apply_result.rolled_back:
            logger.error("New configuration rolled back; the previous certificates remain in use")
        elif existed:
            self._retire_server(current_server, result)

        result.findings = self.ledger.check_expiry(self.expiry_warning_days)
        return result

    def _retire_server(self, previous: Optional[Certificate], result: RotationResult) -> None:
        # only after the new server certificate validated
        if (
            self.superseded_policy == "revoke"
            and previous is not None
            and previous.status != CertificateStatus.REVOKED
        ):
            result.revoked.append(self.ledger.revoke(previous, "superseded"))
            self.ledger.regenerate_crl()

    def replace_server(self, issue: Callable[[], Certificate]) -> RotationResult:
        """Install a new server certificate outside the timer cycle.

        ``issue`` writes the new material (``issue_server`` or ``renew``); the
        service configuration is then applied through the orchestrator exactly
        as a rotation would. The caller holds the rotation lock.
        """
        result = RotationResult()
        self.store.verify()
        content = self._render_config()
        previous = self.issuer.load_server()

        existed = self._snapshot_server()
        try:
            result.issued.append(issue())
            result.crl_path = self.ledger.regenerate_crl()
            result.apply_result = self.orchestrator.apply(self.config_path, content, list(existed))
        except Exception:
            self._restore_server(existed)
            raise

        if result.apply_result.rolled_back:
            logger.error("New server certificate rolled back; the previous one remains in use")
        else:
            self._retire_server(previous, result)
        return result
