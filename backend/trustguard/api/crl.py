from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from trustguard.auth import get_current_user
from trustguard.deps import Services, get_locked_services, get_services
from trustguard.schemas.common import success_response
from trustguard.schemas.crl import CertificateRevokeRequest, CRLRevocationsResponse

router = APIRouter(prefix="/api/crl", tags=["CRL"], dependencies=[Depends(get_current_user)])


@router.post("/revoke", summary="Revoke certificate", description="Revoke by hex serial and publish the CRL.")
def revoke_certificate_endpoint(
    request: CertificateRevokeRequest, services: Services = Depends(get_locked_services)
):
    if request.publish:
        entry, crl_path = services.ledger.revoke_and_publish(request.serial_number, request.reason)
    else:
        entry, crl_path = services.ledger.revoke(request.serial_number, request.reason), None
    return success_response(
        "Certificate revoked",
        {"revocation": entry.to_dict(), "crl_path": str(crl_path) if crl_path else None},
    ).model_dump()


@router.post("/generate", summary="Generate CRL", description="Rebuild the CRL from the revocation ledger.")
def generate_crl_endpoint(services: Services = Depends(get_locked_services)):
    crl_path = services.ledger.regenerate_crl()
    return success_response("CRL generated", {"crl_path": str(crl_path)}).model_dump()


@router.get("/download", summary="Download CRL", description="Current CRL in PEM form.")
def download_crl_endpoint(services: Services = Depends(get_services)):
    crl_pem = services.ledger.read_crl()
    if crl_pem is None:
        raise HTTPException(status_code=404, detail="CRL not generated yet")
    return Response(
        content=crl_pem,
        media_type="application/pkix-crl",
        headers={"Content-Disposition": "attachment; filename=ca.crl"},
    )


@router.get("/revocations", summary="List revocations", description="Revoked serials from the CA index.")
def list_revocations_endpoint(services: Services = Depends(get_services)):
    revocations = [entry.to_dict() for entry in services.ledger.revocations()]
    listing = CRLRevocationsResponse(revocations=revocations, total=len(revocations))
    return success_response("Revocations retrieved", listing.model_dump()).model_dump()


@router.get("/expiry", summary="Expiry report", description="Classify every tracked certificate by expiry.")
def expiry_report_endpoint(
    warning_days: int = Query(None, ge=0, le=3650),
    services: Services = Depends(get_services),
):
    days = services.settings.EXPIRY_WARNING_DAYS if warning_days is None else warning_days
    findings = services.ledger.check_expiry(days)
    return success_response(
        "Expiry report", {"findings": [finding.to_dict() for finding in findings], "warning_days": days}
    ).model_dump()
