"""
Facturador: tickets WSAA, comprobantes y reintentos sobre SQLite
"""
from .config_registry import ConfigRegistry
from .db import Database
from .errors import InvoiceBusy, InvoiceNotFound, InvoiceStateError
from .models import InvoiceRecord, InvoiceStatus
from .retry import RetryCoordinator, SweepResult
from .service import FacturacionService
from .tickets import TicketManager, TicketStore
from .workflow import InvoiceWorkflow

__all__ = [
    'ConfigRegistry',
    'Database',
    'InvoiceBusy',
    'InvoiceNotFound',
    'InvoiceStateError',
    'InvoiceRecord',
    'InvoiceStatus',
    'RetryCoordinator',
    'SweepResult',
    'FacturacionService',
    'TicketManager',
    'TicketStore',
    'InvoiceWorkflow',
]
