import dataclasses
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from trustguard.auth import get_current_user
from trustguard.deps import Services, ca_parameters, get_locked_services, get_services
from trustguard.schemas.ca import CAHealthDetail, CAInitRequest
from trustguard.schemas.common import success_response

router = APIRouter(prefix="/api/ca", tags=["Certificate Authority"], dependencies=[Depends(get_current_user)])


@router.post("/init", summary="Initialize CA", description="Create the CA key, certificate and database.")
def init_ca(
    request: Optional[CAInitRequest] = None, services: Services = Depends(get_locked_services)
):
    defaults = ca_parameters(services.settings)
    overrides = request.model_dump(exclude_none=True) if request else {}
    try:
        params = dataclasses.replace(defaults, **overrides)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    authority = services.store.initialize(params)
    return success_response("CA initialized", authority.to_dict()).model_dump()


@router.get("/verify", summary="Verify CA", description="Check CA material and key/certificate binding.")
def verify_ca(services: Services = Depends(get_services)):
    health = services.store.verify()
    detail = CAHealthDetail(**health.to_dict())
    return success_response("CA verified", detail.model_dump()).model_dump()


@router.get("/detail", summary="CA details", description="Subject, validity and serial counter of the CA.")
def ca_detail(services: Services = Depends(get_services)):
    if not services.store.initialized:
        raise HTTPException(status_code=404, detail="CA not initialized")
    return success_response("CA retrieved", services.store.info().to_dict()).model_dump()
