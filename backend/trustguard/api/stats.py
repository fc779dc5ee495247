from collections import Counter

from fastapi import APIRouter, Depends

from trustguard.auth import get_current_user
from trustguard.deps import Services, get_services
from trustguard.schemas.common import success_response

router = APIRouter(
    prefix="/api/stats", tags=["Statistics"], dependencies=[Depends(get_current_user)]
)


@router.get(
    "",
    summary="Get dashboard statistics",
    description="Certificate counters by kind and expiry status.",
)
def get_stats(services: Services = Depends(get_services)):
    findings = services.ledger.check_expiry(services.settings.EXPIRY_WARNING_DAYS)
    kinds = Counter(finding.kind.value for finding in findings)
    statuses = Counter(finding.status.value for finding in findings)

    return success_response(
        "Statistics retrieved",
        {
            "certificates": {
                "total": len(findings),
                "ca": kinds.get("ca", 0),
                "server": kinds.get("server", 0),
                "client": kinds.get("client", 0),
                "healthy": statuses.get("healthy", 0),
                "expiring": statuses.get("expiring", 0),
                "expired": statuses.get("expired", 0),
                "revoked": statuses.get("revoked", 0),
            },
            "revocations": {"total": len(services.ledger.revocations())},
            "ca_initialized": services.store.initialized,
        },
    ).model_dump()
