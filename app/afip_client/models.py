"""
Modelos de datos para AFIP (WSAA / WSFEv1)
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union


# Tipos de comprobante (FEParamGetTiposCbte)
CBTE_TIPO_BY_LETTER = {
    "A": 1,   # Factura A
    "B": 6,   # Factura B
    "C": 11,  # Factura C
}

# Tipos de documento del receptor (FEParamGetTiposDoc)
DOC_TIPO_CUIT = 80
DOC_TIPO_CUIL = 86
DOC_TIPO_DNI = 96
DOC_TIPO_CONSUMIDOR_FINAL = 99

# Condición frente al IVA del receptor (RG 5616, CondicionIVAReceptorId)
IVA_RECEPTOR_RESPONSABLE_INSCRIPTO = 1
IVA_RECEPTOR_EXENTO = 4
IVA_RECEPTOR_CONSUMIDOR_FINAL = 5
IVA_RECEPTOR_MONOTRIBUTO = 6

IVA_RECEPTOR_BY_NAME = {
    "RI": IVA_RECEPTOR_RESPONSABLE_INSCRIPTO,
    "EXENTO": IVA_RECEPTOR_EXENTO,
    "CF": IVA_RECEPTOR_CONSUMIDOR_FINAL,
    "MONOTRIBUTO": IVA_RECEPTOR_MONOTRIBUTO,
}

# Condición del emisor configurada por sucursal
ISSUER_RI = "RI"
ISSUER_MONOTRIBUTO = "MONOTRIBUTO"
ISSUER_CONDITIONS = (ISSUER_RI, ISSUER_MONOTRIBUTO)

# Alícuotas de IVA (FEParamGetTiposIva). "EXENTO" no lleva AlicIva: va a ImpOpEx.
TAX_RATE_EXEMPT = "EXENTO"
IVA_ID_BY_RATE = {
    Decimal("0"): 3,
    Decimal("2.5"): 9,
    Decimal("5"): 8,
    Decimal("10.5"): 4,
    Decimal("21"): 5,
    Decimal("27"): 6,
}

CONCEPTO_PRODUCTOS = 1
MONEDA_PESOS = "PES"


@dataclass(frozen=True)
class AuthTicket:
    """Ticket de acceso (TA) devuelto por WSAA: token y sign son opacos"""
    cuit: str
    token: str
    sign: str
    expires_at: datetime
    generated_at: Optional[datetime] = None

    def is_usable(self, at: datetime, margin: timedelta = timedelta(0)) -> bool:
        """True si el ticket sigue vigente en `at` con al menos `margin` de sobra"""
        return bool(self.token and self.sign) and self.expires_at - margin > at


@dataclass(frozen=True)
class BranchFiscalConfig:
    """Configuración fiscal de una sucursal"""
    branch_id: str
    cuit: str
    punto_venta: int
    active: bool = True
    iva_condition: str = ISSUER_RI
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class SaleItem:
    description: str
    quantity: Decimal
    unit_price: Decimal
    discount_pct: Decimal = Decimal("0")
    tax_rate: Union[Decimal, str] = Decimal("21")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "discount_pct": str(self.discount_pct),
            "tax_rate": str(self.tax_rate),
        }


@dataclass
class Sale:
    """Venta (propiedad del subsistema de ventas; aquí sólo se lee)"""
    id: str
    branch_id: str
    total: Decimal
    items: List[SaleItem] = field(default_factory=list)
    buyer_name: Optional[str] = None
    buyer_doc_type: Optional[int] = None
    buyer_doc_number: Optional[str] = None
    buyer_iva_condition: Optional[str] = None
    requested_letter: Optional[str] = None

    @property
    def has_buyer_document(self) -> bool:
        return bool(self.buyer_doc_type and (self.buyer_doc_number or "").strip())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "total": str(self.total),
            "items": [item.to_dict() for item in self.items],
            "buyer_name": self.buyer_name,
            "buyer_doc_type": self.buyer_doc_type,
            "buyer_doc_number": self.buyer_doc_number,
            "buyer_iva_condition": self.buyer_iva_condition,
            "requested_letter": self.requested_letter,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Sale":
        """Construye una Sale desde JSON (montos como string o número)"""
        items = []
        for raw in data.get("items") or []:
            rate = raw.get("tax_rate", "21")
            rate_text = str(rate).strip().upper()
            items.append(
                SaleItem(
                    description=str(raw.get("description") or "").strip(),
                    quantity=Decimal(str(raw.get("quantity", "1"))),
                    unit_price=Decimal(str(raw.get("unit_price", "0"))),
                    discount_pct=Decimal(str(raw.get("discount_pct") or "0")),
                    tax_rate=TAX_RATE_EXEMPT if rate_text == TAX_RATE_EXEMPT else Decimal(rate_text),
                )
            )
        doc_type = data.get("buyer_doc_type")
        return cls(
            id=str(data["id"]),
            branch_id=str(data["branch_id"]),
            total=Decimal(str(data["total"])),
            items=items,
            buyer_name=data.get("buyer_name"),
            buyer_doc_type=int(doc_type) if doc_type not in (None, "") else None,
            buyer_doc_number=(str(data["buyer_doc_number"]).strip() if data.get("buyer_doc_number") else None),
            buyer_iva_condition=data.get("buyer_iva_condition"),
            requested_letter=(str(data["requested_letter"]).strip().upper() if data.get("requested_letter") else None),
        )


@dataclass(frozen=True)
class VatLine:
    """Una línea de AlicIva: base imponible e importe por alícuota"""
    iva_id: int
    base: Decimal
    amount: Decimal


@dataclass
class InvoicePayload:
    """Datos del comprobante listos para FECAESolicitar (sin número)"""
    letter: str
    cbte_tipo: int
    concepto: int
    doc_tipo: int
    doc_nro: str
    condicion_iva_receptor: int
    issue_date: date
    imp_total: Decimal
    imp_tot_conc: Decimal
    imp_neto: Decimal
    imp_op_ex: Decimal
    imp_iva: Decimal
    imp_trib: Decimal
    vat_lines: List[VatLine] = field(default_factory=list)
    moneda: str = MONEDA_PESOS
    cotizacion: Decimal = Decimal("1")


@dataclass(frozen=True)
class CAEAccepted:
    """AFIP autorizó el comprobante"""
    cae: str
    cae_expiry: date
    invoice_number: int
    observations: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class CAERejected:
    """AFIP rechazó el comprobante: lista de (código, texto)"""
    reasons: Tuple[Tuple[str, str], ...]
    invoice_number: Optional[int] = None
    sequence_conflict: bool = False

    def summary(self) -> str:
        return "; ".join(f"[{code}] {text}" for code, text in self.reasons) or "Rechazado sin detalle"


CAEResult = Union[CAEAccepted, CAERejected]
