import logging
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

CONFIG_HEADER = "# mongod configuration, TLS section managed by trustguard\n"


class _Section(BaseModel):
    # unknown keys are kept so hand-edited options survive a rewrite
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class TLSConfig(_Section):
    mode: str = "requireTLS"
    certificate_key_file: Optional[str] = Field(None, alias="certificateKeyFile")
    ca_file: Optional[str] = Field(None, alias="CAFile")
    crl_file: Optional[str] = Field(None, alias="CRLFile")
    allow_connections_without_certificates: bool = Field(
        False, alias="allowConnectionsWithoutCertificates"
    )
    allow_invalid_certificates: bool = Field(False, alias="allowInvalidCertificates")
    allow_invalid_hostnames: bool = Field(False, alias="allowInvalidHostnames")
    disabled_protocols: Optional[str] = Field("TLS1_0,TLS1_1", alias="disabledProtocols")


class NetConfig(_Section):
    port: int = 27017
    bind_ip: str = Field("127.0.0.1", alias="bindIp")
    max_incoming_connections: Optional[int] = Field(None, alias="maxIncomingConnections")
    tls: Optional[TLSConfig] = None


class StorageConfig(_Section):
    db_path: str = Field("/var/lib/mongodb", alias="dbPath")
    engine: Optional[str] = "wiredTiger"


class SystemLogConfig(_Section):
    destination: str = "file"
    log_append: bool = Field(True, alias="logAppend")
    log_rotate: Optional[str] = Field("reopen", alias="logRotate")
    path: str = "/var/log/mongodb/mongod.log"


class ProcessManagementConfig(_Section):
    fork: Optional[bool] = None
    pid_file_path: Optional[str] = Field(None, alias="pidFilePath")
    time_zone_info: Optional[str] = Field("/usr/share/zoneinfo", alias="timeZoneInfo")


class SecurityConfig(_Section):
    authorization: str = "enabled"
    cluster_auth_mode: Optional[str] = Field("x509", alias="clusterAuthMode")
    javascript_enabled: Optional[bool] = Field(False, alias="javascriptEnabled")


class OperationProfilingConfig(_Section):
    mode: str = "slowOp"
    slow_op_threshold_ms: Optional[int] = Field(100, alias="slowOpThresholdMs")


class MongodConfig(_Section):
    storage: StorageConfig = Field(default_factory=StorageConfig)
    system_log: SystemLogConfig = Field(default_factory=SystemLogConfig, alias="systemLog")
    net: NetConfig = Field(default_factory=NetConfig)
    process_management: Optional[ProcessManagementConfig] = Field(None, alias="processManagement")
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    set_parameter: Dict[str, Any] = Field(
        default_factory=lambda: {"authenticationMechanisms": "MONGODB-X509"},
        alias="setParameter",
    )
    operation_profiling: Optional[OperationProfilingConfig] = Field(None, alias="operationProfiling")


def default_config() -> MongodConfig:
    return MongodConfig(
        process_management=ProcessManagementConfig(),
        operation_profiling=OperationProfilingConfig(),
    )


def parse_config(text: str) -> MongodConfig:
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Configuration is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError("Configuration document must be a mapping")
    try:
        return MongodConfig.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid mongod configuration: {exc}") from exc


def load_config(path: Path) -> MongodConfig:
    """Read an existing mongod.conf, or start from hardened defaults when absent."""
    path = Path(path)
    if not path.exists():
        logger.info("%s not found, starting from defaults", path)
        return default_config()
    return parse_config(path.read_text())


def with_tls_material(
    config: MongodConfig,
    cert_key_file: Path,
    ca_file: Path,
    crl_file: Optional[Path] = None,
) -> MongodConfig:
    updated = config.model_copy(deep=True)
    tls = updated.net.tls or TLSConfig()
    if tls.mode in (None, "disabled"):
        tls.mode = "requireTLS"
    tls.certificate_key_file = str(cert_key_file)
    tls.ca_file = str(ca_file)
    tls.crl_file = str(crl_file) if crl_file else None
    updated.net.tls = tls
    return updated


def render_config(config: MongodConfig) -> str:
    data = config.model_dump(by_alias=True, exclude_none=True)
    return CONFIG_HEADER + yaml.safe_dump(data, sort_keys=False, default_flow_style=False)
