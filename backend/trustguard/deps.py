from dataclasses import dataclass
from typing import Iterator, Optional

from fastapi import Depends

from trustguard.config import Settings, settings
from trustguard.models.ca import CAParameters
from trustguard.services.ca_service import CAStore
from trustguard.services.cert_service import CertificateIssuer
from trustguard.services.crl_service import RevocationLedger
from trustguard.services.reload_service import ReloadOrchestrator
from trustguard.services.rotation_service import RotationLock, RotationScheduler
from trustguard.services.snapshot_service import SnapshotStore
from trustguard.services.supervisor_service import ServiceController, SystemdServiceController


@dataclass
class Services:
    settings: Settings
    store: CAStore
    issuer: CertificateIssuer
    ledger: RevocationLedger
    snapshots: SnapshotStore
    controller: ServiceController
    orchestrator: ReloadOrchestrator
    scheduler: RotationScheduler


def ca_parameters(config: Settings) -> CAParameters:
    return CAParameters(
        country=config.CA_COUNTRY,
        state=config.CA_STATE,
        city=config.CA_CITY,
        org=config.CA_ORG,
        email=config.CA_EMAIL,
        key_size=config.DEFAULT_KEY_SIZE,
        validity_days=config.CA_VALIDITY_DAYS,
        common_name=config.CA_COMMON_NAME,
    )


def build_services(config: Settings, controller: Optional[ServiceController] = None) -> Services:
    """Wire every component from one settings object; all paths come from it."""
    store = CAStore(config.CA_DIR)
    issuer = CertificateIssuer(
        store,
        ssl_dir=config.SSL_DIR,
        client_dir=config.CLIENT_DIR,
        subject_defaults=config.subject_defaults,
        service_name=config.SERVICE_CERT_NAME,
        service_user=config.SERVICE_USER,
        service_group=config.SERVICE_GROUP,
        key_size=config.DEFAULT_KEY_SIZE,
        server_validity_days=config.SERVER_VALIDITY_DAYS,
        client_validity_days=config.CLIENT_VALIDITY_DAYS,
    )
    ledger = RevocationLedger(store, issuer, crl_validity_days=config.CRL_VALIDITY_DAYS)
    snapshots = SnapshotStore(config.lkg_dir)
    controller = controller or SystemdServiceController.from_settings(config)
    orchestrator = ReloadOrchestrator(
        snapshots, controller, min_reload_version=config.GRACEFUL_RELOAD_MIN_VERSION
    )
    scheduler = RotationScheduler(
        store=store,
        issuer=issuer,
        ledger=ledger,
        snapshots=snapshots,
        orchestrator=orchestrator,
        lock=RotationLock(config.rotation_lock_path, config.ROTATION_LOCK_TTL_SECONDS),
        ca_params=ca_parameters(config),
        hostname=config.server_hostname,
        config_path=config.SERVICE_CONFIG_PATH,
        alt_names=config.SERVER_ALT_NAMES,
        client_roles=config.CLIENT_ROLES,
        renew_before_days=config.RENEW_BEFORE_DAYS,
        expiry_warning_days=config.EXPIRY_WARNING_DAYS,
        superseded_policy=config.SUPERSEDED_POLICY,
    )
    return Services(
        settings=config,
        store=store,
        issuer=issuer,
        ledger=ledger,
        snapshots=snapshots,
        controller=controller,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )


def get_services() -> Services:
    return build_services(settings)


def get_locked_services(services: Services = Depends(get_services)) -> Iterator[Services]:
    """Hold the rotation marker while a request changes CA state.

    The timer process and the API share the marker, so only one of them
    touches the serial counter and the index at a time.
    """
    with services.scheduler.lock:
        yield services
