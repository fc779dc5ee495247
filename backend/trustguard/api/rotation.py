from typing import Optional

from fastapi import APIRouter, Depends

from trustguard.auth import get_current_user
from trustguard.deps import Services, get_services
from trustguard.schemas.common import success_response
from trustguard.schemas.rotation import RotationRunRequest

router = APIRouter(prefix="/api/rotation", tags=["Rotation"], dependencies=[Depends(get_current_user)])


@router.post(
    "/run",
    summary="Rotate now",
    description="Run one rotation cycle: renew due certificates, publish the CRL, apply the service config.",
)
def run_rotation(
    request: Optional[RotationRunRequest] = None, services: Services = Depends(get_services)
):
    result = services.scheduler.rotate_now(force=request.force if request else False)
    if result.skipped:
        message = "Rotation skipped"
    elif result.apply_result is not None and result.apply_result.rolled_back:
        message = "Rotation rolled back"
    else:
        message = "Rotation completed"
    return success_response(message, result.to_dict()).model_dump()
