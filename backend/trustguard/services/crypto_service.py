import ipaddress
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, ExtensionOID, NameOID

from trustguard.errors import SigningError
from trustguard.security import calculate_fingerprint


# Order matches the OpenSSL subject line written by the CA scripts
_SUBJECT_FIELDS = [
    ("C", NameOID.COUNTRY_NAME),
    ("ST", NameOID.STATE_OR_PROVINCE_NAME),
    ("L", NameOID.LOCALITY_NAME),
    ("O", NameOID.ORGANIZATION_NAME),
    ("OU", NameOID.ORGANIZATIONAL_UNIT_NAME),
    ("CN", NameOID.COMMON_NAME),
    ("emailAddress", NameOID.EMAIL_ADDRESS),
]
_OID_TO_FIELD = {oid: key for key, oid in _SUBJECT_FIELDS}

_EKU_NAME_TO_OID = {
    "server_auth": ExtendedKeyUsageOID.SERVER_AUTH,
    "client_auth": ExtendedKeyUsageOID.CLIENT_AUTH,
}

REVOCATION_REASONS = {
    "unspecified": x509.ReasonFlags.unspecified,
    "keyCompromise": x509.ReasonFlags.key_compromise,
    "CACompromise": x509.ReasonFlags.ca_compromise,
    "affiliationChanged": x509.ReasonFlags.affiliation_changed,
    "superseded": x509.ReasonFlags.superseded,
    "cessationOfOperation": x509.ReasonFlags.cessation_of_operation,
    "certificateHold": x509.ReasonFlags.certificate_hold,
    "removeFromCRL": x509.ReasonFlags.remove_from_crl,
}
_FLAG_TO_REASON = {flag: name for name, flag in REVOCATION_REASONS.items()}


def _build_subject_name(subject: Dict[str, str]) -> x509.Name:
    attrs = []
    for key, oid in _SUBJECT_FIELDS:
        value = subject.get(key)
        if value:
            attrs.append(x509.NameAttribute(oid, value))
    if not attrs:
        raise ValueError("Subject must contain at least one attribute")
    return x509.Name(attrs)


def _san_general_names(san_entries: Iterable[str]) -> List[x509.GeneralName]:
    """Map ``DNS.n=value`` / ``IP.n=value`` labels onto x509 general names."""
    names = []
    for entry in san_entries:
        label, _, value = entry.partition("=")
        kind = label.split(".", 1)[0].upper()
        if kind == "IP":
            names.append(x509.IPAddress(ipaddress.ip_address(value)))
        elif kind == "DNS":
            names.append(x509.DNSName(value))
        else:
            raise ValueError(f"Unsupported SAN entry: {entry}")
    return names


def label_san_entries(values: Iterable[str]) -> List[str]:
    """Number DNS and IP alternative names separately, dropping duplicates.

    IP literals go under ``IP.n``; anything else is treated as a DNS name.
    """
    labelled = []
    seen = set()
    counters = {"DNS": 0, "IP": 0}
    for raw in values:
        value = str(raw).strip()
        if not value:
            continue
        try:
            value = str(ipaddress.ip_address(value))
            kind = "IP"
        except ValueError:
            value = value.lower()
            kind = "DNS"
        if (kind, value) in seen:
            continue
        seen.add((kind, value))
        counters[kind] += 1
        labelled.append(f"{kind}.{counters[kind]}={value}")
    return labelled


def generate_private_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    if key_size < 2048:
        raise ValueError("RSA key size must be at least 2048 bits")
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def create_csr(
    private_key, subject: Dict[str, str], san_entries: Optional[List[str]] = None
) -> x509.CertificateSigningRequest:
    builder = x509.CertificateSigningRequestBuilder().subject_name(_build_subject_name(subject))
    if san_entries:
        builder = builder.add_extension(
            x509.SubjectAlternativeName(_san_general_names(san_entries)),
            critical=False,
        )
    return builder.sign(private_key, hashes.SHA256())


def create_ca_certificate(
    private_key, subject: Dict[str, str], validity_days: int = 3650
) -> x509.Certificate:
    subject_name = _build_subject_name(subject)
    public_key = private_key.public_key()
    now = datetime.now(timezone.utc).replace(microsecond=0)

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject_name)
        .issuer_name(subject_name)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=validity_days))
    )

    builder = builder.add_extension(
        x509.BasicConstraints(ca=True, path_length=None),
        critical=True,
    )
    builder = builder.add_extension(
        x509.KeyUsage(
            digital_signature=True,
            content_commitment=False,
            key_encipherment=False,
            data_encipherment=False,
            key_agreement=False,
            key_cert_sign=True,
            crl_sign=True,
            encipher_only=False,
            decipher_only=False,
        ),
        critical=True,
    )
    builder = builder.add_extension(
        x509.SubjectKeyIdentifier.from_public_key(public_key), critical=False
    )
    builder = builder.add_extension(
        x509.AuthorityKeyIdentifier.from_issuer_public_key(public_key), critical=False
    )

    return builder.sign(private_key, hashes.SHA256())


def sign_csr(
    csr: x509.CertificateSigningRequest,
    ca_key,
    ca_cert: x509.Certificate,
    serial: int,
    validity_days: int,
    extended_key_usage: Iterable[str] = ("client_auth",),
) -> x509.Certificate:
    if not csr.is_signature_valid:
        raise SigningError("CSR signature does not verify against its public key")

    now = datetime.now(timezone.utc).replace(microsecond=0)
    not_after = min(now + timedelta(days=validity_days), ca_cert.not_valid_after_utc)
    if not_after <= now:
        raise SigningError("CA certificate has expired; cannot sign new certificates")

    try:
        eku = [_EKU_NAME_TO_OID[name] for name in extended_key_usage]
    except KeyError as exc:
        raise ValueError(f"Unsupported extended key usage: {exc.args[0]}") from exc

    builder = (
        x509.CertificateBuilder()
        .subject_name(csr.subject)
        .issuer_name(ca_cert.subject)
        .public_key(csr.public_key())
        .serial_number(serial)
        .not_valid_before(now)
        .not_valid_after(not_after)
    )

    # Basic Constraints
    builder = builder.add_extension(
        x509.BasicConstraints(ca=False, path_length=None),
        critical=True,
    )

    # Key Usage
    builder = builder.add_extension(
        x509.KeyUsage(
            digital_signature=True,
            content_commitment=True,
            key_encipherment=True,
            data_encipherment=False,
            key_agreement=False,
            key_cert_sign=False,
            crl_sign=False,
            encipher_only=False,
            decipher_only=False,
        ),
        critical=False,
    )

    if eku:
        builder = builder.add_extension(x509.ExtendedKeyUsage(eku), critical=False)

    # Subject Alternative Name copied from the request
    try:
        san = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        builder = builder.add_extension(san.value, critical=san.critical)
    except x509.ExtensionNotFound:
        pass

    builder = builder.add_extension(
        x509.SubjectKeyIdentifier.from_public_key(csr.public_key()), critical=False
    )
    builder = builder.add_extension(
        x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
        critical=False,
    )

    try:
        return builder.sign(ca_key, hashes.SHA256())
    except (ValueError, TypeError) as exc:
        raise SigningError(f"Signing rejected: {exc}") from exc


def public_key_digest(material) -> str:
    """SHA-256 over the DER SubjectPublicKeyInfo of a key or certificate."""
    if isinstance(material, x509.Certificate):
        public_key = material.public_key()
    elif hasattr(material, "private_bytes"):
        public_key = material.public_key()
    else:
        public_key = material
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return calculate_fingerprint(der)


def key_matches_certificate(private_key, cert: x509.Certificate) -> bool:
    return public_key_digest(private_key) == public_key_digest(cert)


def subject_rfc2253(name: x509.Name) -> str:
    return name.rfc4514_string({NameOID.EMAIL_ADDRESS: "emailAddress"})


def subject_openssl(name: x509.Name) -> str:
    """``/C=US/ST=../CN=..`` form used by the OpenSSL CA index."""
    parts = []
    for attr in name:
        field = _OID_TO_FIELD.get(attr.oid, attr.oid.dotted_string)
        value = str(attr.value).replace("/", "\\/")
        parts.append(f"/{field}={value}")
    return "".join(parts)


def subject_fields(name: x509.Name) -> Dict[str, str]:
    fields = {}
    for key, oid in _SUBJECT_FIELDS:
        attrs = name.get_attributes_for_oid(oid)
        fields[key] = str(attrs[0].value) if attrs else ""
    return fields


def san_entries(cert: x509.Certificate) -> List[str]:
    try:
        san = cert.extensions.get_extension_for_oid(
            ExtensionOID.SUBJECT_ALTERNATIVE_NAME
        ).value
    except x509.ExtensionNotFound:
        return []
    entries = []
    for index, name in enumerate(san.get_values_for_type(x509.DNSName), start=1):
        entries.append(f"DNS.{index}={name}")
    for index, address in enumerate(san.get_values_for_type(x509.IPAddress), start=1):
        entries.append(f"IP.{index}={address}")
    return entries


def parse_certificate(cert: x509.Certificate) -> Dict[str, Any]:
    return {
        "serial": cert.serial_number,
        "subject": subject_fields(cert.subject),
        "subject_dn": subject_rfc2253(cert.subject),
        "issuer_dn": subject_rfc2253(cert.issuer),
        "not_before": cert.not_valid_before_utc,
        "not_after": cert.not_valid_after_utc,
        "san": san_entries(cert),
    }


def generate_crl(
    ca_cert: x509.Certificate,
    ca_key,
    revocations: Iterable[Tuple[int, datetime, Optional[str]]],
    crl_number: int,
    last_update: datetime,
    next_update: datetime,
) -> x509.CertificateRevocationList:
    builder = (
        x509.CertificateRevocationListBuilder()
        .issuer_name(ca_cert.subject)
        .last_update(last_update)
        .next_update(next_update)
        .add_extension(x509.CRLNumber(crl_number), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
    )

    for serial, revoked_at, reason in revocations:
        revoked = (
            x509.RevokedCertificateBuilder()
            .serial_number(serial)
            .revocation_date(revoked_at)
        )
        if reason and reason != "unspecified":
            revoked = revoked.add_extension(
                x509.CRLReason(REVOCATION_REASONS[reason]), critical=False
            )
        builder = builder.add_revoked_certificate(revoked.build())

    return builder.sign(ca_key, hashes.SHA256())


def crl_revocations(crl: x509.CertificateRevocationList) -> Dict[int, Optional[str]]:
    revoked = {}
    for entry in crl:
        reason = None
        try:
            flag = entry.extensions.get_extension_for_class(x509.CRLReason).value.reason
            reason = _FLAG_TO_REASON.get(flag)
        except x509.ExtensionNotFound:
            pass
        revoked[entry.serial_number] = reason
    return revoked


def crl_signature_valid(crl: x509.CertificateRevocationList, ca_cert: x509.Certificate) -> bool:
    try:
        return crl.is_signature_valid(ca_cert.public_key())
    except (InvalidSignature, TypeError):
        return False


# PEM helpers


def dump_private_key(private_key) -> bytes:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def load_private_key(pem_data: bytes):
    return serialization.load_pem_private_key(pem_data, password=None)


def dump_certificate(cert: x509.Certificate) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def load_certificate(pem_data: bytes) -> x509.Certificate:
    return x509.load_pem_x509_certificate(pem_data)


def dump_crl(crl: x509.CertificateRevocationList) -> bytes:
    return crl.public_bytes(serialization.Encoding.PEM)


def load_crl(pem_data: bytes) -> x509.CertificateRevocationList:
    return x509.load_pem_x509_crl(pem_data)
