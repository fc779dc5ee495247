import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from cryptography import x509

from trustguard.errors import CertificateNotFound, SigningError
from trustguard.fileio import apply_ownership, ensure_dir, write_file_atomic
from trustguard.models.certificate import (
    Certificate,
    CertificateKind,
    CertificatePaths,
    CertificateStatus,
    format_serial,
)
from trustguard.services import crypto_service
from trustguard.services.ca_service import CAStore

logger = logging.getLogger(__name__)

ROLE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
HOSTNAME_PATTERN = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]*[A-Za-z0-9])?(\.[A-Za-z0-9]([A-Za-z0-9-]*[A-Za-z0-9])?)*$")

SERVER_EKU = ("server_auth", "client_auth")
CLIENT_EKU = ("client_auth",)
SUPERSEDED_DIR = "superseded"


def default_server_alt_names(hostname: str) -> List[str]:
    return [hostname, "localhost", hostname.split(".", 1)[0], "127.0.0.1"]


class CertificateIssuer:
    def __init__(
        self,
        store: CAStore,
        ssl_dir: Path,
        client_dir: Path,
        subject_defaults: Dict[str, str],
        service_name: str = "mongodb",
        service_user: Optional[str] = None,
        service_group: Optional[str] = None,
        key_size: int = 2048,
        server_validity_days: int = 365,
        client_validity_days: int = 90,
    ):
        self.store = store
        self.ssl_dir = Path(ssl_dir)
        self.client_dir = Path(client_dir)
        self.subject_defaults = dict(subject_defaults)
        self.service_name = service_name
        self.service_user = service_user
        self.service_group = service_group
        self.key_size = key_size
        self.server_validity_days = server_validity_days
        self.client_validity_days = client_validity_days

    # Layout

    @property
    def server_name(self) -> str:
        return f"{self.service_name}-server"

    def server_paths(self) -> CertificatePaths:
        return _paths_for(self.ssl_dir, self.server_name)

    def client_paths(self, role: str) -> CertificatePaths:
        validate_role_name(role)
        return _paths_for(self.client_dir / role, role)

    # Issuance

    def issue_server(
        self,
        hostname: str,
        alt_names: Iterable[str] = (),
        key_size: Optional[int] = None,
        validity_days: Optional[int] = None,
    ) -> Certificate:
        hostname = (hostname or "").strip().lower()
        if not HOSTNAME_PATTERN.match(hostname):
            raise ValueError(f"Invalid hostname: {hostname!r}")

        san = crypto_service.label_san_entries(
            default_server_alt_names(hostname) + list(alt_names)
        )
        return self._issue(
            kind=CertificateKind.SERVER,
            name=self.server_name,
            common_name=hostname,
            san=san,
            paths=self.server_paths(),
            key_size=self.key_size if key_size is None else key_size,
            validity_days=self.server_validity_days if validity_days is None else validity_days,
            eku=SERVER_EKU,
        )

    def issue_client(
        self, role: str, key_size: Optional[int] = None, validity_days: Optional[int] = None
    ) -> Certificate:
        validate_role_name(role)
        return self._issue(
            kind=CertificateKind.CLIENT,
            name=role,
            common_name=role,
            san=[],
            paths=self.client_paths(role),
            key_size=self.key_size if key_size is None else key_size,
            validity_days=self.client_validity_days if validity_days is None else validity_days,
            eku=CLIENT_EKU,
        )

    def renew(self, existing: Certificate) -> Certificate:
        """Issue a fresh certificate for the same identity.

        The previous files are archived, not revoked; revocation stays an
        explicit caller decision.
        """
        if existing.kind == CertificateKind.SERVER:
            hostname = _common_name(existing)
            defaults = {
                _san_value(entry)
                for entry in crypto_service.label_san_entries(default_server_alt_names(hostname))
            }
            extra = [
                _san_value(entry)[1] for entry in existing.san if _san_value(entry) not in defaults
            ]
            return self.issue_server(hostname, extra)
        if existing.kind == CertificateKind.CLIENT:
            return self.issue_client(existing.name)
        raise ValueError("The CA certificate cannot be renewed through the issuer")

    def _issue(
        self,
        kind: CertificateKind,
        name: str,
        common_name: str,
        san: List[str],
        paths: CertificatePaths,
        key_size: int,
        validity_days: int,
        eku: Iterable[str],
    ) -> Certificate:
        if validity_days < 1:
            raise ValueError("Validity must be at least one day")

        self.store.require_ready()

        private_key = crypto_service.generate_private_key(key_size)
        subject = dict(self.subject_defaults, CN=common_name)
        try:
            csr = crypto_service.create_csr(private_key, subject, san)
        except ValueError as exc:
            raise SigningError(f"Could not build a request for {name}: {exc}") from exc

        ca_key = self.store.load_key()
        ca_cert = self.store.load_certificate()
        serial = self.store.next_serial()
        cert = crypto_service.sign_csr(csr, ca_key, ca_cert, serial, validity_days, eku)

        if not crypto_service.key_matches_certificate(private_key, cert):
            raise SigningError(f"Issued certificate for {name} does not match its key")

        self.store.record_issuance(cert)
        self._archive_current(name, paths)

        key_pem = crypto_service.dump_private_key(private_key)
        cert_pem = crypto_service.dump_certificate(cert)

        if kind == CertificateKind.CLIENT:
            ensure_dir(self.client_dir, 0o755)
            ensure_dir(paths.cert.parent, 0o700)
        else:
            ensure_dir(paths.cert.parent, 0o755)

        write_file_atomic(paths.key, key_pem, mode=0o600)
        write_file_atomic(paths.cert, cert_pem, mode=0o644)
        write_file_atomic(paths.pem, cert_pem + key_pem, mode=0o600)

        if kind == CertificateKind.SERVER:
            for path in paths.all():
                apply_ownership(path, self.service_user, self.service_group)

        logger.info(
            "Issued %s certificate %s serial %s, valid until %s",
            kind.value,
            name,
            format_serial(serial),
            cert.not_valid_after_utc.isoformat(),
        )
        return self._to_certificate(name, kind, cert, paths, CertificateStatus.ACTIVE)

    def _archive_current(self, name: str, paths: CertificatePaths) -> None:
        if not paths.cert.exists():
            return
        try:
            previous = crypto_service.load_certificate(paths.cert.read_bytes())
        except ValueError:
            logger.warning("Existing %s is unreadable, not archived", paths.cert)
            return

        archive_dir = ensure_dir(paths.cert.parent / SUPERSEDED_DIR, 0o700)
        serial_hex = format_serial(previous.serial_number)
        for source in paths.all():
            if source.exists():
                target = archive_dir / f"{name}-{serial_hex}{source.suffix}"
                write_file_atomic(target, source.read_bytes(), reference=source)
        logger.info("Archived superseded %s serial %s", name, serial_hex)

    # Inspection

    def _to_certificate(
        self,
        name: str,
        kind: CertificateKind,
        cert: x509.Certificate,
        paths: Optional[CertificatePaths],
        status: Optional[CertificateStatus] = None,
    ) -> Certificate:
        info = crypto_service.parse_certificate(cert)
        if status is None:
            status = self._resolve_status(cert)
        return Certificate(
            name=name,
            kind=kind,
            serial=info["serial"],
            subject_dn=info["subject_dn"],
            not_before=info["not_before"],
            not_after=info["not_after"],
            status=status,
            san=info["san"],
            paths=paths,
        )

    def _resolve_status(self, cert: x509.Certificate) -> CertificateStatus:
        entry = self.store.find_entry(cert.serial_number)
        if entry is not None and entry.status == CertificateStatus.REVOKED:
            return CertificateStatus.REVOKED
        if cert.not_valid_after_utc <= _utcnow():
            return CertificateStatus.EXPIRED
        return CertificateStatus.ACTIVE

    def _load(self, name: str, kind: CertificateKind, paths: CertificatePaths) -> Optional[Certificate]:
        if not paths.cert.exists():
            return None
        cert = crypto_service.load_certificate(paths.cert.read_bytes())
        return self._to_certificate(name, kind, cert, paths)

    def load_server(self) -> Optional[Certificate]:
        return self._load(self.server_name, CertificateKind.SERVER, self.server_paths())

    def load_client(self, role: str) -> Optional[Certificate]:
        return self._load(role, CertificateKind.CLIENT, self.client_paths(role))

    def load_ca(self) -> Optional[Certificate]:
        if not self.store.cert_path.exists():
            return None
        cert = self.store.load_certificate()
        info = crypto_service.parse_certificate(cert)
        status = CertificateStatus.EXPIRED if info["not_after"] <= _utcnow() else CertificateStatus.ACTIVE
        return Certificate(
            name="ca",
            kind=CertificateKind.CA,
            serial=info["serial"],
            subject_dn=info["subject_dn"],
            not_before=info["not_before"],
            not_after=info["not_after"],
            status=status,
            paths=CertificatePaths(
                key=self.store.key_path, cert=self.store.cert_path, pem=self.store.pem_path
            ),
        )

    def client_roles(self) -> List[str]:
        if not self.client_dir.is_dir():
            return []
        roles = []
        for child in sorted(self.client_dir.iterdir()):
            if child.is_dir() and ROLE_NAME_PATTERN.match(child.name) and (child / f"{child.name}.crt").exists():
                roles.append(child.name)
        return roles

    def list_certificates(self) -> List[Certificate]:
        certificates = []
        for found in [self.load_ca(), self.load_server()]:
            if found is not None:
                certificates.append(found)
        for role in self.client_roles():
            found = self.load_client(role)
            if found is not None:
                certificates.append(found)
        return certificates

    def subject_dn(self, role: str) -> str:
        """RFC 2253 subject DN of a role certificate, read back from the file."""
        found = self.load_client(role)
        if found is None:
            raise CertificateNotFound(f"No certificate issued for role {role!r}")
        return found.subject_dn

    def superseded_files(self, serial: int) -> List[Path]:
        suffix = f"-{format_serial(serial)}"
        directories = [self.ssl_dir / SUPERSEDED_DIR]
        directories += [self.client_dir / role / SUPERSEDED_DIR for role in self.client_roles()]
        found = []
        for directory in directories:
            if not directory.is_dir():
                continue
            for path in sorted(directory.iterdir()):
                if path.stem.endswith(suffix):
                    found.append(path)
        return found

    def find_by_serial(self, serial: int) -> Optional[Certificate]:
        for certificate in self.list_certificates():
            if certificate.serial == serial and certificate.kind != CertificateKind.CA:
                return certificate
        for path in self.superseded_files(serial):
            if path.suffix == ".crt":
                cert = crypto_service.load_certificate(path.read_bytes())
                name = path.stem[: -len(format_serial(serial)) - 1]
                kind = CertificateKind.SERVER if name == self.server_name else CertificateKind.CLIENT
                return self._to_certificate(name, kind, cert, None)
        return None


def validate_role_name(role: str) -> str:
    if not isinstance(role, str) or not ROLE_NAME_PATTERN.match(role):
        raise ValueError(f"Invalid role name: {role!r}")
    return role


def _common_name(certificate: Certificate) -> str:
    for part in certificate.subject_dn.split(","):
        key, _, value = part.partition("=")
        if key.strip() == "CN":
            return value
    raise ValueError(f"Certificate {certificate.name} has no common name")


def _san_value(entry: str):
    label, _, value = entry.partition("=")
    return label.split(".", 1)[0], value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _paths_for(directory: Path, name: str) -> CertificatePaths:
    return CertificatePaths(
        key=directory / f"{name}.key",
        cert=directory / f"{name}.crt",
        pem=directory / f"{name}.pem",
    )
