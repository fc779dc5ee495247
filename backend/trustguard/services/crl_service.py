import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from trustguard.errors import CertificateNotFound
from trustguard.fileio import ensure_dir, write_file_atomic
from trustguard.models.certificate import (
    Certificate,
    CertificateKind,
    CertificateStatus,
    format_serial,
    parse_serial,
)
from trustguard.models.crl import ExpiryFinding, ExpiryStatus, RevocationEntry, Severity
from trustguard.services import crypto_service
from trustguard.services.ca_service import CAStore
from trustguard.services.cert_service import CertificateIssuer

logger = logging.getLogger(__name__)

RevocationTarget = Union[Certificate, int, str]


def resolve_serial(target: RevocationTarget) -> int:
    if isinstance(target, Certificate):
        return target.serial
    if isinstance(target, bool):
        raise ValueError("Serial must be an integer or a hex string")
    if isinstance(target, int):
        return target
    if isinstance(target, str):
        try:
            return parse_serial(target)
        except ValueError as exc:
            raise ValueError(f"Invalid serial number: {target!r}") from exc
    raise ValueError("Serial must be an integer or a hex string")


def _crl_reason(reason: Optional[str]) -> Optional[str]:
    """Reason as it appears in the CRL; ``unspecified`` is carried as no extension."""
    if not reason or reason == "unspecified":
        return None
    return reason


class RevocationLedger:
    """Revocation bookkeeping on top of the CA issuance index.

    Revocations live in ``index.txt`` (status ``R``) so the ledger and the
    issuance record can never disagree; the CRL is rebuilt from it.
    """

    def __init__(self, store: CAStore, issuer: CertificateIssuer, crl_validity_days: int = 30):
        self.store = store
        self.issuer = issuer
        self.crl_validity_days = crl_validity_days

    @property
    def crl_path(self) -> Path:
        return self.store.crl_path

    def revoke(
        self,
        target: RevocationTarget,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RevocationEntry:
        serial = resolve_serial(target)
        if reason is not None and reason not in crypto_service.REVOCATION_REASONS:
            raise ValueError(f"Unknown revocation reason: {reason}")

        entry = self.store.find_entry(serial)
        if entry is None:
            raise CertificateNotFound(f"Serial {format_serial(serial)} was not issued by this CA")

        if entry.status == CertificateStatus.REVOKED:
            logger.info("Serial %s already revoked on %s", entry.serial_hex, entry.revoked_at)
            return RevocationEntry(
                serial=entry.serial,
                revoked_at=entry.revoked_at,
                reason=entry.reason,
                subject=entry.subject,
            )

        entry.status = CertificateStatus.REVOKED
        entry.revoked_at = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        entry.reason = reason
        self.store.update_entry(entry)
        logger.warning(
            "Revoked serial %s (%s), reason %s", entry.serial_hex, entry.subject, reason or "unspecified"
        )

        for path in self.issuer.superseded_files(serial):
            path.unlink()
            logger.info("Removed superseded file %s", path)

        return RevocationEntry(
            serial=entry.serial,
            revoked_at=entry.revoked_at,
            reason=entry.reason,
            subject=entry.subject,
        )

    def revocations(self) -> List[RevocationEntry]:
        return [
            RevocationEntry(
                serial=entry.serial,
                revoked_at=entry.revoked_at,
                reason=entry.reason,
                subject=entry.subject,
            )
            for entry in self.store.read_index()
            if entry.status == CertificateStatus.REVOKED
        ]

    def _crl_contents(self, now: datetime) -> Dict[int, Tuple[datetime, Optional[str]]]:
        # Expired certificates drop off the list
        return {
            entry.serial: (entry.revoked_at, _crl_reason(entry.reason))
            for entry in self.store.read_index()
            if entry.status == CertificateStatus.REVOKED and entry.expires_at > now
        }

    def _is_current(self, contents, ca_cert, now: datetime) -> bool:
        if not self.crl_path.exists():
            return False
        try:
            crl = crypto_service.load_crl(self.crl_path.read_bytes())
        except ValueError:
            logger.warning("Existing CRL %s is unreadable, rebuilding", self.crl_path)
            return False

        if not crypto_service.crl_signature_valid(crl, ca_cert):
            return False
        if crl.next_update_utc is None:
            return False

        listed = crypto_service.crl_revocations(crl)
        expected = {serial: reason for serial, (_, reason) in contents.items()}
        if listed != expected:
            return False

        halfway = crl.last_update_utc + (crl.next_update_utc - crl.last_update_utc) / 2
        return now < halfway

    def regenerate_crl(self, now: Optional[datetime] = None) -> Path:
        now = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        self.store.verify(now)
        ca_key = self.store.load_key()
        ca_cert = self.store.load_certificate()

        contents = self._crl_contents(now)
        if self._is_current(contents, ca_cert, now):
            logger.debug("CRL %s is current, not rebuilt", self.crl_path)
            return self.crl_path

        crl_number = self.store.next_crl_number()
        crl = crypto_service.generate_crl(
            ca_cert,
            ca_key,
            [(serial, revoked_at, reason) for serial, (revoked_at, reason) in sorted(contents.items())],
            crl_number=crl_number,
            last_update=now,
            next_update=now + timedelta(days=self.crl_validity_days),
        )

        ensure_dir(self.crl_path.parent, 0o755)
        write_file_atomic(self.crl_path, crypto_service.dump_crl(crl), mode=0o644, reference=self.crl_path)
        logger.info(
            "Published CRL #%s with %d revoked certificate(s)", format_serial(crl_number), len(contents)
        )
        return self.crl_path

    def revoke_and_publish(
        self, target: RevocationTarget, reason: Optional[str] = None
    ) -> Tuple[RevocationEntry, Path]:
        entry = self.revoke(target, reason)
        return entry, self.regenerate_crl()

    def read_crl(self) -> Optional[bytes]:
        if not self.crl_path.exists():
            return None
        return self.crl_path.read_bytes()

    def check_expiry(self, warning_days: int = 30, now: Optional[datetime] = None) -> List[ExpiryFinding]:
        """Classify every tracked certificate; read-only."""
        now = now or datetime.now(timezone.utc)
        window = timedelta(days=warning_days)
        findings = []

        for cert in self.issuer.list_certificates():
            if cert.status == CertificateStatus.REVOKED:
                status, severity = ExpiryStatus.REVOKED, Severity.HIGH
                message = f"{cert.kind.value} certificate {cert.name} is revoked"
            elif cert.not_after <= now:
                status, severity = ExpiryStatus.EXPIRED, Severity.CRITICAL
                message = f"{cert.kind.value} certificate {cert.name} expired on {cert.not_after.date()}"
            elif cert.not_after - now <= window:
                status = ExpiryStatus.EXPIRING
                severity = Severity.MEDIUM if cert.kind == CertificateKind.CLIENT else Severity.HIGH
                days = (cert.not_after - now).days
                message = f"{cert.kind.value} certificate {cert.name} expires in {days} day(s)"
            else:
                status, severity = ExpiryStatus.HEALTHY, Severity.INFO
                message = f"{cert.kind.value} certificate {cert.name} valid until {cert.not_after.date()}"

            if status != ExpiryStatus.HEALTHY:
                logger.warning(message)

            findings.append(
                ExpiryFinding(
                    name=cert.name,
                    kind=cert.kind,
                    serial=cert.serial,
                    not_after=cert.not_after,
                    status=status,
                    severity=severity,
                    message=message,
                )
            )
        return findings
