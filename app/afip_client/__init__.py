"""
Módulo cliente para integración con AFIP (WSAA + WSFEv1)
Argentina - Factura electrónica
"""
from .config import AfipConfig, get_afip_config
from .wire_client import FiscalWireClient
from .cert_utils import (
    SigningMaterial,
    build_login_ticket_request,
    cuit_from_certificate,
    load_signing_material,
    load_signing_material_for_cuit,
    sign_login_ticket_request,
)
from .payload import build_invoice_payload, determine_letter, is_valid_cuit
from .models import (
    AuthTicket,
    BranchFiscalConfig,
    CAEAccepted,
    CAERejected,
    InvoicePayload,
    Sale,
    SaleItem,
)
from .exceptions import (
    AfipException,
    AfipUnavailable,
    AuthRejected,
    AuthUnavailable,
    BranchConfigNotFound,
    BusinessRejected,
    ConfigurationError,
    CredentialsNotConfigured,
    InvoiceDataError,
    SignatureError,
    TicketRejected,
)

__all__ = [
    'AfipConfig',
    'get_afip_config',
    'FiscalWireClient',
    'SigningMaterial',
    'build_login_ticket_request',
    'cuit_from_certificate',
    'load_signing_material',
    'load_signing_material_for_cuit',
    'sign_login_ticket_request',
    'build_invoice_payload',
    'determine_letter',
    'is_valid_cuit',
    'AuthTicket',
    'BranchFiscalConfig',
    'CAEAccepted',
    'CAERejected',
    'InvoicePayload',
    'Sale',
    'SaleItem',
    'AfipException',
    'AfipUnavailable',
    'AuthRejected',
    'AuthUnavailable',
    'BranchConfigNotFound',
    'BusinessRejected',
    'ConfigurationError',
    'CredentialsNotConfigured',
    'InvoiceDataError',
    'SignatureError',
    'TicketRejected',
]
