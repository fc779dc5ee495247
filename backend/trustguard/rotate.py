import logging
import sys

from trustguard.config import settings
from trustguard.deps import build_services
from trustguard.errors import TrustGuardError
from trustguard.logging_config import setup_logging
from trustguard.services.rotation_service import EXIT_ABORTED

logger = logging.getLogger("trustguard.rotate")


def main() -> int:
    """Entry point for the periodic timer; takes no arguments."""
    setup_logging(settings.LOG_LEVEL)
    services = build_services(settings)

    try:
        result = services.scheduler.rotate_now()
    except TrustGuardError as exc:
        logger.error("Rotation aborted: %s", exc)
        if exc.remediation:
            logger.error("Remediation: %s", exc.remediation)
        return EXIT_ABORTED

    if result.skipped:
        return result.exit_code

    logger.info(
        "Rotation finished: %d issued, %d revoked", len(result.issued), len(result.revoked)
    )
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
