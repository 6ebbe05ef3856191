from __future__ import annotations

import threading
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
import sys
from typing import Any, Dict, List, Optional, Tuple

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from app.afip_client.cert_utils import SigningMaterial
from app.afip_client.config import AfipConfig
from app.afip_client.models import AuthTicket, CAEAccepted, CAERejected

ISSUER_CUIT = "20123456786"
OTHER_CUIT = "30712345671"
BUYER_CUIT = "20301234563"

START = datetime(2026, 10, 19, 15, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_certificate(cuit: str = ISSUER_CUIT, days: int = 365):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "AR"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Comercio de Prueba"),
        x509.NameAttribute(NameOID.COMMON_NAME, "facturador"),
        x509.NameAttribute(NameOID.SERIAL_NUMBER, f"CUIT {cuit}"),
    ])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    return cert, key


_MATERIAL_CACHE: Dict[str, SigningMaterial] = {}


def signing_material(cuit: str = ISSUER_CUIT) -> SigningMaterial:
    # RSA 2048 es lento de generar: uno por CUIT alcanza
    if cuit not in _MATERIAL_CACHE:
        cert, key = make_certificate(cuit)
        _MATERIAL_CACHE[cuit] = SigningMaterial(certificate=cert, private_key=key, source=f"test:{cuit}")
    return _MATERIAL_CACHE[cuit]


def make_config(**overrides) -> AfipConfig:
    config = AfipConfig(AfipConfig.ENV_TEST)
    config.max_retries = 0
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def sale_dict(sale_id: str = "S-1", branch_id: str = "suc-1", total: str = "1000.00", **extra) -> Dict[str, Any]:
    data = {
        "id": sale_id,
        "branch_id": branch_id,
        "total": total,
        "items": [
            {"description": "Producto", "quantity": "1", "unit_price": total, "tax_rate": "21"},
        ],
    }
    data.update(extra)
    return data


class FakeWireClient:
    """
    Imita FiscalWireClient en memoria. AFIP numera por (punto de venta, tipo);
    `outcomes` permite forzar el resultado de las próximas llamadas a authorize_invoice.
    """

    def __init__(self, clock: FakeClock = None, ticket_hours: int = 12):
        self.clock = clock or FakeClock()
        self.ticket_hours = ticket_hours
        self.login_calls: List[str] = []
        self.login_errors: List[Exception] = []
        self.login_gate: Optional[threading.Event] = None
        self.login_started = threading.Event()
        self.authorize_calls: List[Tuple[str, int, int, int]] = []
        self.consult_calls: List[Tuple[int, int, int]] = []
        self.outcomes: List[Any] = []
        self.last_numbers: Dict[Tuple[int, int], int] = {}
        self.issued: Dict[Tuple[int, int, int], Dict[str, Any]] = {}
        self.server = {"app_server": "OK", "db_server": "OK", "auth_server": "OK"}
        self._lock = threading.Lock()

    def login(self, cuit: str, signed_cms: str) -> AuthTicket:
        with self._lock:
            self.login_calls.append(cuit)
            n = len(self.login_calls)
        self.login_started.set()
        if self.login_gate is not None:
            self.login_gate.wait(timeout=5)
        if self.login_errors:
            raise self.login_errors.pop(0)
        now = self.clock()
        return AuthTicket(
            cuit=cuit,
            token=f"token-{n}",
            sign=f"sign-{n}",
            expires_at=now + timedelta(hours=self.ticket_hours),
            generated_at=now,
        )

    def last_authorized_number(self, ticket, punto_venta: int, cbte_tipo: int) -> int:
        return self.last_numbers.get((punto_venta, cbte_tipo), 0)

    def issue(self, punto_venta: int, payload, number: int) -> CAEAccepted:
        """AFIP emite el CAE para ese número (aunque la respuesta no llegue)"""
        cae = str(76000000000000 + number)
        expiry = date(2026, 10, 29)
        self.last_numbers[(punto_venta, payload.cbte_tipo)] = number
        self.issued[(punto_venta, payload.cbte_tipo, number)] = {
            "number": number,
            "punto_venta": punto_venta,
            "cbte_tipo": payload.cbte_tipo,
            "doc_tipo": payload.doc_tipo,
            "doc_nro": payload.doc_nro,
            "cbte_fch": payload.issue_date.strftime("%Y%m%d"),
            "imp_total": Decimal(payload.imp_total),
            "resultado": "A",
            "cae": cae,
            "cae_expiry": expiry,
        }
        return CAEAccepted(cae=cae, cae_expiry=expiry, invoice_number=number)

    def authorize_invoice(self, ticket, branch_config, payload, invoice_number=None):
        if invoice_number is None:
            invoice_number = self.last_authorized_number(ticket, branch_config.punto_venta, payload.cbte_tipo) + 1
        self.authorize_calls.append((ticket.token, branch_config.punto_venta, payload.cbte_tipo, invoice_number))
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if callable(outcome):
                outcome = outcome(self, branch_config, payload, invoice_number)
            if isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, CAERejected):
                return outcome
        return self.issue(branch_config.punto_venta, payload, invoice_number)

    def consult_invoice(self, ticket, punto_venta: int, cbte_tipo: int, number: int):
        self.consult_calls.append((punto_venta, cbte_tipo, number))
        return self.issued.get((punto_venta, cbte_tipo, number))

    def server_status(self):
        return dict(self.server)

    def close(self):
        pass


def build_service(tmp_path: Path, clock: FakeClock = None, wire: FakeWireClient = None, **config_overrides):
    from facturador.db import Database
    from facturador.service import FacturacionService

    clock = clock or FakeClock()
    wire = wire or FakeWireClient(clock)
    service = FacturacionService(
        config=make_config(**config_overrides),
        db=Database(str(tmp_path / "facturador.db")),
        wire_client=wire,
        credentials_loader=lambda cuit: signing_material(cuit),
        now_fn=clock,
    )
    return service, wire, clock
