from pathlib import Path

import pytest
import yaml

from trustguard.services import config_service

EXISTING = """\
storage:
  dbPath: /data/db
  journal:
    enabled: true
systemLog:
  destination: file
  path: /data/log/mongod.log
net:
  port: 27018
  bindIp: 0.0.0.0
replication:
  replSetName: rs0
"""


def test_defaults_when_missing(tmp_path):
    config = config_service.load_config(tmp_path / "absent.conf")
    data = yaml.safe_load(config_service.render_config(config))

    assert data["security"]["clusterAuthMode"] == "x509"
    assert data["setParameter"] == {"authenticationMechanisms": "MONGODB-X509"}
    assert data["operationProfiling"]["slowOpThresholdMs"] == 100
    assert data["net"]["port"] == 27017


def test_unknown_options_survive(tmp_path):
    path = tmp_path / "mongod.conf"
    path.write_text(EXISTING)

    rendered = config_service.render_config(config_service.load_config(path))
    data = yaml.safe_load(rendered)

    assert data["replication"] == {"replSetName": "rs0"}
    assert data["storage"]["journal"] == {"enabled": True}
    assert data["storage"]["dbPath"] == "/data/db"
    assert data["net"]["bindIp"] == "0.0.0.0"
    assert "operationProfiling" not in data
    assert "processManagement" not in data


def test_with_tls_material():
    config = config_service.parse_config(EXISTING)

    updated = config_service.with_tls_material(
        config,
        cert_key_file=Path("/etc/ssl/mongodb/mongodb-server.pem"),
        ca_file=Path("/etc/mongoCA/ca.crt"),
        crl_file=Path("/etc/mongoCA/crl/ca.crl"),
    )
    tls = yaml.safe_load(config_service.render_config(updated))["net"]["tls"]

    assert tls["mode"] == "requireTLS"
    assert tls["certificateKeyFile"] == "/etc/ssl/mongodb/mongodb-server.pem"
    assert tls["CAFile"] == "/etc/mongoCA/ca.crt"
    assert tls["CRLFile"] == "/etc/mongoCA/crl/ca.crl"
    assert tls["allowInvalidCertificates"] is False
    assert config.net.tls is None


def test_existing_tls_mode_kept():
    config = config_service.parse_config("net:\n  tls:\n    mode: preferTLS\n")

    updated = config_service.with_tls_material(config, Path("/a.pem"), Path("/ca.crt"))

    assert updated.net.tls.mode == "preferTLS"
    assert updated.net.tls.crl_file is None


def test_render_is_stable():
    config = config_service.with_tls_material(
        config_service.default_config(), Path("/a.pem"), Path("/ca.crt")
    )
    rendered = config_service.render_config(config)

    assert rendered.startswith(config_service.CONFIG_HEADER)
    assert config_service.render_config(config_service.parse_config(rendered)) == rendered


@pytest.mark.parametrize("text", ["- a\n- b\n", "net:\n  port: not-a-port\n", "net: [unclosed\n"])
def test_invalid_documents(text):
    with pytest.raises(ValueError):
        config_service.parse_config(text)
