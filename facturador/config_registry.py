"""
Registro de configuración fiscal por sucursal (CUIT + punto de venta)
"""
import logging
from typing import Any, Callable, Dict, List, Optional

from app.afip_client.cert_utils import SigningMaterial, load_signing_material_for_cuit
from app.afip_client.config import get_signing_material_refs
from app.afip_client.exceptions import (
    BranchConfigNotFound,
    ConfigurationError,
    CredentialsNotConfigured,
    SignatureError,
)
from app.afip_client.models import ISSUER_CONDITIONS, BranchFiscalConfig
from app.afip_client.payload import is_valid_cuit

from .db import Database, to_iso, utcnow

logger = logging.getLogger(__name__)


def _row_to_config(row) -> BranchFiscalConfig:
    return BranchFiscalConfig(
        branch_id=row["branch_id"],
        cuit=row["cuit"],
        punto_venta=int(row["punto_venta"]),
        active=bool(row["active"]),
        iva_condition=row["iva_condition"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def certificate_source_for(cuit: str) -> Optional[str]:
    """Identifica de dónde sale el certificado de un CUIT (ruta o 'base64')"""
    cert_path, _key_path, cert_b64, _key_b64 = get_signing_material_refs(cuit)
    if cert_path:
        return cert_path
    if cert_b64:
        return "base64"
    return None


class ConfigRegistry:
    """Configuración fiscal activa por sucursal"""

    def __init__(self, db: Database, now_fn=utcnow):
        self.db = db
        self.now_fn = now_fn

    def active_config(self, branch_id: str) -> BranchFiscalConfig:
        """
        Raises:
            BranchConfigNotFound: Si la sucursal no tiene configuración activa
        """
        with self.db.connect() as con:
            row = con.execute(
                "SELECT * FROM branch_fiscal_configs WHERE branch_id=? AND active=1",
                (branch_id,),
            ).fetchone()
        if row is None:
            raise BranchConfigNotFound(branch_id)
        return _row_to_config(row)

    def set_config(
        self,
        branch_id: str,
        cuit: str,
        punto_venta: int,
        iva_condition: str = "RI",
        active: bool = True,
    ) -> BranchFiscalConfig:
        """
        Registra una configuración para la sucursal. Si queda activa, desactiva la anterior.

        Raises:
            ConfigurationError: CUIT, punto de venta o condición IVA inválidos
        """
        branch_id = (branch_id or "").strip()
        cuit = (cuit or "").strip().replace("-", "")
        iva_condition = (iva_condition or "").strip().upper()
        if not branch_id:
            raise ConfigurationError("branch_id es obligatorio", "INVALID_CONFIG")
        if not is_valid_cuit(cuit):
            raise ConfigurationError(f"CUIT inválido: {cuit!r}", "INVALID_CONFIG")
        try:
            punto_venta = int(punto_venta)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Punto de venta inválido: {punto_venta!r}", "INVALID_CONFIG")
        if punto_venta <= 0 or punto_venta > 99999:
            raise ConfigurationError(f"Punto de venta fuera de rango: {punto_venta}", "INVALID_CONFIG")
        if iva_condition not in ISSUER_CONDITIONS:
            raise ConfigurationError(f"Condición IVA del emisor inválida: {iva_condition!r}", "INVALID_CONFIG")

        now = to_iso(self.now_fn())
        with self.db.connect(immediate=True) as con:
            if active:
                con.execute(
                    "UPDATE branch_fiscal_configs SET active=0, updated_at=? WHERE branch_id=? AND active=1",
                    (now, branch_id),
                )
            cur = con.execute(
                """
                INSERT INTO branch_fiscal_configs (branch_id, cuit, punto_venta, iva_condition, active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (branch_id, cuit, punto_venta, iva_condition, 1 if active else 0, now, now),
            )
            row = con.execute("SELECT * FROM branch_fiscal_configs WHERE id=?", (cur.lastrowid,)).fetchone()
        logger.info(f"Sucursal {branch_id}: configuración fiscal CUIT {cuit} PtoVta {punto_venta} ({iva_condition})")
        return _row_to_config(row)

    def deactivate(self, branch_id: str) -> bool:
        with self.db.connect() as con:
            cur = con.execute(
                "UPDATE branch_fiscal_configs SET active=0, updated_at=? WHERE branch_id=? AND active=1",
                (to_iso(self.now_fn()), branch_id),
            )
        if cur.rowcount:
            logger.info(f"Sucursal {branch_id}: configuración fiscal desactivada")
        return bool(cur.rowcount)

    def list_configs(self, active_only: bool = False) -> List[BranchFiscalConfig]:
        sql = "SELECT * FROM branch_fiscal_configs"
        if active_only:
            sql += " WHERE active=1"
        sql += " ORDER BY branch_id, id"
        with self.db.connect() as con:
            rows = con.execute(sql).fetchall()
        return [_row_to_config(row) for row in rows]

    def active_cuits(self) -> List[str]:
        return sorted({cfg.cuit for cfg in self.list_configs(active_only=True)})

    def check_certificate_identity(self, cuit_from_cert: Optional[str], source: str) -> List[Dict[str, Any]]:
        """
        Compara el CUIT del certificado con los CUIT configurados que lo usan.

        Sólo advierte: loguea un warning por cada sucursal que no coincide y devuelve
        la lista de diferencias.
        """
        if not cuit_from_cert:
            logger.warning(f"Certificado {source}: no trae CUIT en el subject (serialNumber)")
            return []
        mismatches = []
        for cfg in self.list_configs(active_only=True):
            if certificate_source_for(cfg.cuit) != source or cfg.cuit == cuit_from_cert:
                continue
            logger.warning(
                f"Sucursal {cfg.branch_id}: CUIT configurado {cfg.cuit} no coincide con "
                f"el CUIT del certificado {cuit_from_cert} ({source})"
            )
            mismatches.append({
                "branch_id": cfg.branch_id,
                "configured_cuit": cfg.cuit,
                "certificate_cuit": cuit_from_cert,
                "source": source,
            })
        return mismatches

    def consistency_report(
        self,
        loader: Callable[[str], SigningMaterial] = load_signing_material_for_cuit,
    ) -> List[Dict[str, Any]]:
        """Por sucursal activa: CUIT configurado vs certificado disponible"""
        report = []
        for cfg in self.list_configs(active_only=True):
            entry: Dict[str, Any] = {
                "branch_id": cfg.branch_id,
                "cuit": cfg.cuit,
                "punto_venta": cfg.punto_venta,
                "iva_condition": cfg.iva_condition,
                "credentials": False,
                "certificate_cuit": None,
                "certificate_expires_at": None,
                "match": False,
                "error": None,
            }
            try:
                material = loader(cfg.cuit)
            except CredentialsNotConfigured as e:
                entry["error"] = e.message
            except SignatureError as e:
                entry["error"] = e.message
            else:
                entry["credentials"] = True
                entry["certificate_cuit"] = material.subject_cuit
                entry["certificate_expires_at"] = to_iso(material.not_valid_after)
                entry["match"] = material.subject_cuit == cfg.cuit
            report.append(entry)
        return report
