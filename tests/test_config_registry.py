from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from _afip_fakes import ISSUER_CUIT, OTHER_CUIT, FakeClock, signing_material
from app.afip_client.exceptions import BranchConfigNotFound, ConfigurationError, CredentialsNotConfigured
from facturador.config_registry import ConfigRegistry
from facturador.db import Database


@pytest.fixture
def registry(tmp_path):
    db = Database(str(tmp_path / "registry.db"))
    db.init_schema()
    return ConfigRegistry(db, now_fn=FakeClock())


@pytest.mark.parametrize(
    "cuit,punto_venta,condition",
    [
        ("20123456787", 3, "RI"),
        ("2012345678", 3, "RI"),
        (ISSUER_CUIT, 0, "RI"),
        (ISSUER_CUIT, "tres", "RI"),
        (ISSUER_CUIT, 3, "EXENTO"),
    ],
)
def test_invalid_config_is_rejected(registry, cuit, punto_venta, condition):
    with pytest.raises(ConfigurationError) as excinfo:
        registry.set_config("suc-1", cuit, punto_venta, condition)
    assert excinfo.value.code == "INVALID_CONFIG"


def test_cuit_with_dashes_is_normalized(registry):
    config = registry.set_config("suc-1", "20-12345678-6", 3, "ri")

    assert config.cuit == ISSUER_CUIT
    assert config.iva_condition == "RI"
    assert config.active is True


def test_new_active_config_replaces_previous(registry):
    registry.set_config("suc-1", ISSUER_CUIT, 3, "RI")
    registry.set_config("suc-1", OTHER_CUIT, 7, "MONOTRIBUTO")

    active = registry.active_config("suc-1")
    assert (active.cuit, active.punto_venta, active.iva_condition) == (OTHER_CUIT, 7, "MONOTRIBUTO")
    assert len(registry.list_configs()) == 2
    assert len(registry.list_configs(active_only=True)) == 1


def test_missing_or_deactivated_config(registry):
    with pytest.raises(BranchConfigNotFound):
        registry.active_config("suc-1")

    registry.set_config("suc-1", ISSUER_CUIT, 3)
    assert registry.deactivate("suc-1") is True
    assert registry.deactivate("suc-1") is False
    with pytest.raises(BranchConfigNotFound):
        registry.active_config("suc-1")


def test_active_cuits_are_unique(registry):
    registry.set_config("suc-1", ISSUER_CUIT, 3)
    registry.set_config("suc-2", ISSUER_CUIT, 4)
    registry.set_config("suc-3", OTHER_CUIT, 1)

    assert registry.active_cuits() == sorted([ISSUER_CUIT, OTHER_CUIT])


def test_certificate_identity_mismatch_is_reported(registry, monkeypatch):
    monkeypatch.setenv("AFIP_CERT_PATH", "/certs/comercio.crt")
    monkeypatch.setenv("AFIP_KEY_PATH", "/certs/comercio.key")
    registry.set_config("suc-1", ISSUER_CUIT, 3)
    registry.set_config("suc-2", OTHER_CUIT, 1)

    mismatches = registry.check_certificate_identity(ISSUER_CUIT, "/certs/comercio.crt")

    assert [m["branch_id"] for m in mismatches] == ["suc-2"]
    assert mismatches[0]["configured_cuit"] == OTHER_CUIT


def test_certificate_from_other_source_is_not_compared(registry, monkeypatch):
    monkeypatch.setenv(f"AFIP_CERT_PATH_{OTHER_CUIT}", "/certs/otro.crt")
    monkeypatch.setenv(f"AFIP_KEY_PATH_{OTHER_CUIT}", "/certs/otro.key")
    registry.set_config("suc-2", OTHER_CUIT, 1)

    assert registry.check_certificate_identity(ISSUER_CUIT, "/certs/comercio.crt") == []


def test_consistency_report(registry):
    registry.set_config("suc-1", ISSUER_CUIT, 3)
    registry.set_config("suc-2", OTHER_CUIT, 1)

    def loader(cuit):
        if cuit == OTHER_CUIT:
            raise CredentialsNotConfigured(cuit)
        return signing_material(ISSUER_CUIT)

    report = {entry["branch_id"]: entry for entry in registry.consistency_report(loader=loader)}

    assert report["suc-1"]["match"] is True
    assert report["suc-1"]["credentials"] is True
    assert report["suc-1"]["certificate_expires_at"] is not None
    assert report["suc-2"]["match"] is False
    assert report["suc-2"]["credentials"] is False
    assert "credenciales" in report["suc-2"]["error"]
