"""
Registros del flujo de comprobantes
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from app.afip_client.models import Sale

# Motivos de falla y si se reintentan automáticamente
REASON_UNAVAILABLE = "UNAVAILABLE"
REASON_AUTH_UNAVAILABLE = "AUTH_UNAVAILABLE"
REASON_AUTH_REJECTED = "AUTH_REJECTED"
REASON_BUSINESS_REJECTED = "BUSINESS_REJECTED"
REASON_CONFIGURATION = "CONFIGURATION"
REASON_INTERRUPTED = "INTERRUPTED"
REASON_SEQUENCE_CONFLICT = "SEQUENCE_CONFLICT"

RETRYABLE_REASONS = {
    REASON_UNAVAILABLE,
    REASON_AUTH_UNAVAILABLE,
    REASON_INTERRUPTED,
    REASON_SEQUENCE_CONFLICT,
}

STATE_PENDING = "pending"
STATE_PROCESSING = "processing"
STATE_COMPLETED = "completed"
STATE_ERROR = "error"

# Transiciones permitidas
TRANSITIONS = {
    (STATE_PENDING, STATE_PROCESSING),
    (STATE_PROCESSING, STATE_COMPLETED),
    (STATE_PROCESSING, STATE_ERROR),
    (STATE_ERROR, STATE_PROCESSING),
}


def is_transition_allowed(current: str, target: str) -> bool:
    return (current, target) in TRANSITIONS


@dataclass
class InvoiceRecord:
    id: int
    sale_id: str
    branch_id: str
    cuit: str
    punto_venta: int
    letter: str
    state: str
    attempts: int
    retryable: bool
    sale_snapshot: Dict[str, Any]
    log: List[Dict[str, Any]] = field(default_factory=list)
    invoice_number: Optional[int] = None
    attempted_number: Optional[int] = None
    attempted_date: Optional[str] = None
    cae: Optional[str] = None
    cae_expiry: Optional[str] = None
    last_error_reason: Optional[str] = None
    last_error_detail: Optional[str] = None
    processing_started_at: Optional[str] = None
    current_attempt_id: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "InvoiceRecord":
        return cls(
            id=int(row["id"]),
            sale_id=row["sale_id"],
            branch_id=row["branch_id"],
            cuit=row["cuit"],
            punto_venta=int(row["punto_venta"]),
            letter=row["letter"],
            state=row["state"],
            attempts=int(row["attempts"]),
            retryable=bool(row["retryable"]),
            sale_snapshot=json.loads(row["sale_snapshot"]),
            log=json.loads(row["log_json"] or "[]"),
            invoice_number=row["invoice_number"],
            attempted_number=row["attempted_number"],
            attempted_date=row["attempted_date"],
            cae=row["cae"],
            cae_expiry=row["cae_expiry"],
            last_error_reason=row["last_error_reason"],
            last_error_detail=row["last_error_detail"],
            processing_started_at=row["processing_started_at"],
            current_attempt_id=row["current_attempt_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def sale(self) -> Sale:
        return Sale.from_dict(self.sale_snapshot)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "branch_id": self.branch_id,
            "cuit": self.cuit,
            "punto_venta": self.punto_venta,
            "letter": self.letter,
            "state": self.state,
            "attempts": self.attempts,
            "retryable": self.retryable,
            "invoice_number": self.invoice_number,
            "cae": self.cae,
            "cae_expiry": self.cae_expiry,
            "last_error_reason": self.last_error_reason,
            "last_error_detail": self.last_error_detail,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class InvoiceStatus:
    """Vista para quien consulta: en curso, completado (con CAE) o error (con motivo)"""
    invoice_id: int
    sale_id: str
    state: str
    status: str
    letter: str
    attempts: int
    invoice_number: Optional[int] = None
    cae: Optional[str] = None
    cae_expiry: Optional[str] = None
    reason: Optional[str] = None
    detail: Optional[str] = None
    retryable: Optional[bool] = None
    recent_log: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "invoice_id": self.invoice_id,
            "sale_id": self.sale_id,
            "state": self.state,
            "status": self.status,
            "letter": self.letter,
            "attempts": self.attempts,
        }
        if self.status == "completed":
            data.update(invoice_number=self.invoice_number, cae=self.cae, cae_expiry=self.cae_expiry)
        elif self.status == "error":
            data.update(
                reason=self.reason,
                detail=self.detail,
                retryable=self.retryable,
                recent_log=self.recent_log,
            )
        return data
