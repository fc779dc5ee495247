from fastapi import APIRouter, Depends, HTTPException, Query

from trustguard.auth import get_current_user
from trustguard.deps import Services, get_locked_services, get_services
from trustguard.errors import CertificateNotFound
from trustguard.models.certificate import Certificate
from trustguard.schemas.certificates import (
    CertificateListResponse,
    CertificateRenewRequest,
    ClientIssueRequest,
    ServerIssueRequest,
)
from trustguard.schemas.common import success_response
from trustguard.services.crl_service import resolve_serial
from trustguard.services.rotation_service import RotationResult

router = APIRouter(
    prefix="/api/certificates", tags=["Certificates"], dependencies=[Depends(get_current_user)]
)


def _find(services: Services, serial_number: str) -> Certificate:
    try:
        serial = resolve_serial(serial_number)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    cert = services.issuer.find_by_serial(serial)
    if cert is None:
        ca = services.issuer.load_ca()
        if ca is not None and ca.serial == serial:
            return ca
        raise CertificateNotFound(f"Certificate {serial_number} not found")
    return cert


@router.get(
    "/list",
    summary="List certificates",
    description="Inventory of the CA, server and client certificates with their status.",
)
def list_certificates_endpoint(
    kind: str = Query(None, pattern="^(ca|server|client)$"),
    status: str = Query(None, pattern="^(active|revoked|expired)$"),
    services: Services = Depends(get_services),
):
    certificates = services.issuer.list_certificates()
    if kind:
        certificates = [cert for cert in certificates if cert.kind.value == kind]
    if status:
        certificates = [cert for cert in certificates if cert.status.value == status]
    listing = CertificateListResponse(
        certificates=[cert.to_dict() for cert in certificates], total=len(certificates)
    )
    return success_response("Certificates retrieved", listing.model_dump()).model_dump()


@router.get("/detail", summary="Certificate detail", description="Look a certificate up by hex serial.")
def certificate_detail(
    serial_number: str = Query(..., min_length=1), services: Services = Depends(get_services)
):
    return success_response("Certificate retrieved", _find(services, serial_number).to_dict()).model_dump()


def _server_outcome(result: RotationResult, issued_message: str) -> str:
    if result.apply_result is not None and result.apply_result.rolled_back:
        return "Server certificate rolled back"
    return issued_message


@router.post(
    "/server",
    summary="Issue server certificate",
    description="Replace the server certificate and apply it to the service with reload/rollback.",
)
def issue_server_certificate(
    request: ServerIssueRequest, services: Services = Depends(get_locked_services)
):
    hostname = request.hostname or services.settings.server_hostname
    alt_names = request.alt_names or services.settings.SERVER_ALT_NAMES
    try:
        result = services.scheduler.replace_server(
            lambda: services.issuer.issue_server(
                hostname, alt_names, key_size=request.key_size, validity_days=request.validity_days
            )
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return success_response(
        _server_outcome(result, "Server certificate issued"),
        {"certificate": result.issued[0].to_dict(), "apply_result": result.apply_result.to_dict()},
    ).model_dump()


@router.post("/client", summary="Issue client certificate")
def issue_client_certificate(
    request: ClientIssueRequest, services: Services = Depends(get_locked_services)
):
    try:
        cert = services.issuer.issue_client(
            request.role, key_size=request.key_size, validity_days=request.validity_days
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return success_response("Client certificate issued", cert.to_dict()).model_dump()


@router.post(
    "/renew",
    summary="Renew certificate",
    description="Issue a new serial for an existing identity; the old certificate is archived, not revoked.",
)
def renew_certificate(
    request: CertificateRenewRequest, services: Services = Depends(get_locked_services)
):
    if request.kind == "server":
        existing = services.issuer.load_server()
    else:
        if not request.role:
            raise HTTPException(status_code=400, detail="role is required for client renewal")
        existing = services.issuer.load_client(request.role)
    if existing is None:
        raise CertificateNotFound(f"No {request.kind} certificate to renew")

    if request.kind == "client":
        cert = services.issuer.renew(existing)
        return success_response(
            "Certificate renewed", {"certificate": cert.to_dict(), "superseded": existing.to_dict()}
        ).model_dump()

    result = services.scheduler.replace_server(lambda: services.issuer.renew(existing))
    return success_response(
        _server_outcome(result, "Certificate renewed"),
        {
            "certificate": result.issued[0].to_dict(),
            "superseded": existing.to_dict(),
            "apply_result": result.apply_result.to_dict(),
        },
    ).model_dump()


@router.get(
    "/subject-dn",
    summary="Role subject DN",
    description="RFC 2253 subject DN of a role certificate, for x.509 user mapping.",
)
def role_subject_dn(
    role: str = Query(..., min_length=1, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$"),
    services: Services = Depends(get_services),
):
    return success_response(
        "Subject DN retrieved", {"role": role, "subject_dn": services.issuer.subject_dn(role)}
    ).model_dump()
