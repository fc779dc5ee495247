import logging
import os
import stat
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional

from cryptography import x509

from trustguard.errors import CAAlreadyExists, CAIntegrityError, CANotReady
from trustguard.fileio import ensure_dir, write_file_atomic
from trustguard.models.ca import CAHealth, CAParameters, CertificateAuthority
from trustguard.models.certificate import IndexEntry, format_serial, parse_serial
from trustguard.services import crypto_service

logger = logging.getLogger(__name__)

FIRST_SERIAL = 1000
EXPIRY_WARNING_SECONDS = 86400


class CAStore:
    """On-disk CA: root key and certificate, serial counters and issuance index.

    The layout follows the OpenSSL ``ca`` database so existing tooling can read
    it: ``index.txt``, ``serial`` and ``crlnumber`` hold OpenSSL formats and
    ``ca.key`` is written last, marking a completed initialization.
    """

    def __init__(self, ca_dir: Path):
        self.ca_dir = Path(ca_dir)
        self.key_path = self.ca_dir / "ca.key"
        self.cert_path = self.ca_dir / "ca.crt"
        self.pem_path = self.ca_dir / "ca.pem"
        self.index_path = self.ca_dir / "index.txt"
        self.index_attr_path = self.ca_dir / "index.txt.attr"
        self.serial_path = self.ca_dir / "serial"
        self.crlnumber_path = self.ca_dir / "crlnumber"
        self.crl_dir = self.ca_dir / "crl"
        self.crl_path = self.crl_dir / "ca.crl"
        self.newcerts_dir = self.ca_dir / "newcerts"

    @property
    def initialized(self) -> bool:
        return self.key_path.exists()

    def initialize(self, params: CAParameters) -> CertificateAuthority:
        if self.key_path.exists():
            logger.info("CA already initialized at %s", self.ca_dir)
            raise CAAlreadyExists(f"CA key already present at {self.key_path}")

        logger.info("Initializing CA in %s (%d-bit key)", self.ca_dir, params.key_size)
        ensure_dir(self.ca_dir, 0o755)
        ensure_dir(self.crl_dir, 0o755)
        ensure_dir(self.newcerts_dir, 0o700)

        private_key = crypto_service.generate_private_key(params.key_size)
        cert = crypto_service.create_ca_certificate(
            private_key, params.subject(), params.validity_days
        )
        cert_pem = crypto_service.dump_certificate(cert)

        write_file_atomic(self.index_path, b"", mode=0o644)
        write_file_atomic(self.index_attr_path, "unique_subject = no\n", mode=0o644)
        write_file_atomic(self.serial_path, format_serial(FIRST_SERIAL) + "\n", mode=0o644)
        write_file_atomic(self.crlnumber_path, format_serial(FIRST_SERIAL) + "\n", mode=0o644)
        write_file_atomic(self.cert_path, cert_pem, mode=0o644)
        write_file_atomic(self.pem_path, cert_pem, mode=0o644)
        write_file_atomic(
            self.key_path, crypto_service.dump_private_key(private_key), mode=0o600
        )

        logger.info(
            "CA initialized: %s, valid until %s",
            crypto_service.subject_rfc2253(cert.subject),
            cert.not_valid_after_utc.isoformat(),
        )
        return self.info()

    # Material

    def load_key(self):
        try:
            return crypto_service.load_private_key(self.key_path.read_bytes())
        except FileNotFoundError as exc:
            raise CAIntegrityError(f"CA key missing: {self.key_path}") from exc
        except (ValueError, TypeError) as exc:
            raise CAIntegrityError(f"CA key unreadable: {exc}") from exc

    def load_certificate(self) -> x509.Certificate:
        try:
            return crypto_service.load_certificate(self.cert_path.read_bytes())
        except FileNotFoundError as exc:
            raise CAIntegrityError(f"CA certificate missing: {self.cert_path}") from exc
        except ValueError as exc:
            raise CAIntegrityError(f"CA certificate unreadable: {exc}") from exc

    def verify(self, now: Optional[datetime] = None) -> CAHealth:
        now = now or datetime.now(timezone.utc)

        if not self.ca_dir.is_dir():
            raise CAIntegrityError(f"CA directory not found: {self.ca_dir}")
        for required in (self.key_path, self.cert_path, self.index_path, self.serial_path):
            if not required.exists():
                raise CAIntegrityError(f"CA file missing: {required}")

        private_key = self.load_key()
        cert = self.load_certificate()

        key_digest = crypto_service.public_key_digest(private_key)
        if key_digest != crypto_service.public_key_digest(cert):
            raise CAIntegrityError(
                "CA key and certificate do not match",
                remediation="ca.crt was not issued for ca.key; restore the matching pair from backup",
            )

        warnings = []
        mode = stat.S_IMODE(os.stat(self.key_path).st_mode)
        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            warnings.append(f"CA key permissions are {oct(mode)}, expected 0o600")

        not_after = cert.not_valid_after_utc
        if not_after <= now:
            warnings.append(f"CA certificate expired on {not_after.isoformat()}")
        elif not_after - now <= timedelta(seconds=EXPIRY_WARNING_SECONDS):
            warnings.append(f"CA certificate expires within 24 hours ({not_after.isoformat()})")

        for warning in warnings:
            logger.warning(warning)

        return CAHealth(
            subject_dn=crypto_service.subject_rfc2253(cert.subject),
            not_after=not_after,
            key_digest=key_digest,
            warnings=warnings,
        )

    def require_ready(self) -> CAHealth:
        """Run :meth:`verify` as an issuance precondition."""
        try:
            return self.verify()
        except CAIntegrityError as exc:
            if isinstance(exc, CANotReady):
                raise
            raise CANotReady(f"CA not ready: {exc}") from exc

    def info(self) -> CertificateAuthority:
        cert = self.load_certificate()
        return CertificateAuthority(
            subject_dn=crypto_service.subject_rfc2253(cert.subject),
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            key_digest=crypto_service.public_key_digest(cert),
            next_serial=self._peek_serial(),
            issued=len(self.read_index()),
        )

    # Issuance index

    def read_index(self) -> List[IndexEntry]:
        if not self.index_path.exists():
            return []
        entries = []
        for number, line in enumerate(self.index_path.read_text().splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entries.append(IndexEntry.from_line(line))
            except (ValueError, KeyError) as exc:
                raise CAIntegrityError(
                    f"{self.index_path}:{number}: unreadable index entry",
                    remediation="Repair index.txt by hand; each line needs six tab-separated fields",
                ) from exc
        return entries

    def find_entry(self, serial: int) -> Optional[IndexEntry]:
        for entry in self.read_index():
            if entry.serial == serial:
                return entry
        return None

    def write_index(self, entries: List[IndexEntry]) -> None:
        write_file_atomic(
            self.index_path,
            "".join(entry.to_line() for entry in entries),
            reference=self.index_path,
            mode=0o644,
        )

    def update_entry(self, updated: IndexEntry) -> None:
        entries = self.read_index()
        for position, entry in enumerate(entries):
            if entry.serial == updated.serial:
                entries[position] = updated
                break
        else:
            raise KeyError(updated.serial)
        self.write_index(entries)

    def record_issuance(self, cert: x509.Certificate) -> IndexEntry:
        entries = self.read_index()
        serial = cert.serial_number
        if any(entry.serial == serial for entry in entries):
            raise CAIntegrityError(
                f"Serial {format_serial(serial)} already present in the issuance index"
            )

        entry = IndexEntry(
            serial=serial,
            subject=crypto_service.subject_openssl(cert.subject),
            expires_at=cert.not_valid_after_utc,
        )
        entries.append(entry)
        self.write_index(entries)

        ensure_dir(self.newcerts_dir, 0o700)
        write_file_atomic(
            self.newcerts_dir / f"{entry.serial_hex}.pem",
            crypto_service.dump_certificate(cert),
            mode=0o644,
        )
        logger.info("Recorded serial %s for %s", entry.serial_hex, entry.subject)
        return entry

    # Counters

    def _read_counter(self, path: Path) -> Optional[int]:
        try:
            text = path.read_text().strip()
        except FileNotFoundError:
            return None
        if not text:
            return None
        try:
            return parse_serial(text)
        except ValueError as exc:
            raise CAIntegrityError(f"Counter file {path} is corrupt: {text!r}") from exc

    def _peek_serial(self) -> int:
        floor = max((entry.serial + 1 for entry in self.read_index()), default=FIRST_SERIAL)
        counter = self._read_counter(self.serial_path)
        return max(counter if counter is not None else FIRST_SERIAL, floor)

    def next_serial(self) -> int:
        """Reserve the next serial.

        The incremented counter is renamed into place before the value is
        returned, so a crash before the index append loses the serial instead
        of handing it out twice.
        """
        value = self._peek_serial()
        write_file_atomic(self.serial_path, format_serial(value + 1) + "\n", reference=self.serial_path)
        return value

    def next_crl_number(self) -> int:
        counter = self._read_counter(self.crlnumber_path)
        value = counter if counter is not None else FIRST_SERIAL
        write_file_atomic(
            self.crlnumber_path, format_serial(value + 1) + "\n", reference=self.crlnumber_path
        )
        return value
