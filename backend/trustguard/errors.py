from typing import Optional


class TrustGuardError(Exception):
    """Base class for CA, issuance and reload failures.

    ``remediation`` is a short operator-facing hint surfaced alongside the
    message when a rotation cycle aborts.
    """

    remediation = ""

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        if remediation is not None:
            self.remediation = remediation


class CAAlreadyExists(TrustGuardError):
    remediation = "The CA is already initialized; remove the CA directory explicitly to start over"


class CAIntegrityError(TrustGuardError):
    remediation = "Restore ca.key and ca.crt from backup or re-initialize the CA"


class CANotReady(CAIntegrityError):
    remediation = "Run CA verification and fix the reported problem before issuing certificates"


class SigningError(TrustGuardError):
    remediation = "Inspect the request subject and key, then retry the issuance"


class CertificateNotFound(TrustGuardError):
    remediation = "Check the serial number or certificate name against the CA index"


class ConfigWriteError(TrustGuardError):
    remediation = "Check free space and permissions of the configuration directory"


class InvalidServiceConfig(TrustGuardError):
    remediation = (
        "Fix the syntax of the service configuration file, or move it aside to start from defaults"
    )


class ValidationFailure(TrustGuardError):
    remediation = "Check the service logs for the reason the new configuration was rejected"


class NoSnapshot(TrustGuardError):
    remediation = "Snapshot the file before writing it"


class RollbackError(TrustGuardError):
    remediation = (
        "The service may be running an unvalidated configuration; restore it by hand "
        "from the last-known-good directory and restart the service"
    )


class RotationInProgress(TrustGuardError):
    remediation = "Wait for the running rotation cycle to finish"
