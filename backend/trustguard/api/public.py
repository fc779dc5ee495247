from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from trustguard.deps import Services, get_services

router = APIRouter(prefix="/public", tags=["Public"])


@router.get("/health", summary="Health check", description="Liveness check, no authentication.")
async def health_check():
    return {"status": "healthy"}


@router.get("/crl.crl", summary="Download public CRL", description="Current CRL, PEM encoded.")
async def download_crl(services: Services = Depends(get_services)) -> Response:
    crl_pem = services.ledger.read_crl()
    if crl_pem is None:
        raise HTTPException(status_code=404, detail="CRL not found")

    return Response(
        content=crl_pem,
        media_type="application/pkix-crl",
        headers={"Content-Disposition": "attachment; filename=ca.crl"},
    )


@router.get("/ca.crt", summary="Download CA certificate", description="Public CA certificate download.")
async def download_ca_cert(services: Services = Depends(get_services)) -> Response:
    if not services.store.cert_path.exists():
        raise HTTPException(status_code=404, detail="CA not found")

    return Response(
        content=services.store.cert_path.read_bytes(),
        media_type="application/x-x509-ca-cert",
        headers={"Content-Disposition": "attachment; filename=ca.crt"},
    )
