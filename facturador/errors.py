"""
Excepciones del flujo de comprobantes
"""
from typing import Optional


class FacturadorError(Exception):
    """Excepción base del flujo de comprobantes"""
    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(self.message)


class InvoiceNotFound(FacturadorError):
    def __init__(self, invoice_id):
        self.invoice_id = invoice_id
        super().__init__(f"Comprobante {invoice_id} no encontrado", "INVOICE_NOT_FOUND")


class InvoiceStateError(FacturadorError):
    """Transición de estado no permitida"""
    def __init__(self, invoice_id, state: str, target: str):
        self.invoice_id = invoice_id
        self.state = state
        self.target = target
        super().__init__(
            f"Comprobante {invoice_id}: transición {state} -> {target} no permitida",
            "INVALID_TRANSITION",
        )


class InvoiceBusy(FacturadorError):
    """Otro hilo de este proceso ya está procesando el comprobante"""
    def __init__(self, invoice_id):
        self.invoice_id = invoice_id
        super().__init__(f"Comprobante {invoice_id} en proceso por otra solicitud", "INVOICE_BUSY")
