"""
Configuración para cliente AFIP (WSAA + WSFEv1)
"""
import os
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

# Peor caso de llamadas SOAP en un intento de facturación: login, FECompConsultar,
# FECompUltimoAutorizado y FECAESolicitar, dos veces si el ticket se rechaza a mitad
CALLS_PER_ATTEMPT = 8


def _env_int(key: str, default: int) -> int:
    raw = (os.getenv(key) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{key} debe ser entero, recibido: {raw!r}")


def _env_float(key: str, default: float) -> float:
    raw = (os.getenv(key) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} debe ser numérico, recibido: {raw!r}")


def get_signing_material_refs(cuit: str) -> Tuple[Optional[str], Optional[str], Optional[str], Optional[str]]:
    """
    Resuelve de dónde leer certificado y clave de firma para un CUIT.

    Prioridad:
    1. AFIP_CERT_PATH_<CUIT> / AFIP_KEY_PATH_<CUIT> (override por CUIT)
    2. AFIP_CERT_PATH / AFIP_KEY_PATH (certificado único)
    3. AFIP_CERT_BASE64 / AFIP_KEY_BASE64 (PEM en base64, estilo despliegue serverless)

    Returns:
        Tupla (cert_path, key_path, cert_b64, key_b64). Los que no aplican quedan en None.
    """
    cuit = (cuit or "").strip()
    cert_path = os.getenv(f"AFIP_CERT_PATH_{cuit}") or os.getenv("AFIP_CERT_PATH")
    key_path = os.getenv(f"AFIP_KEY_PATH_{cuit}") or os.getenv("AFIP_KEY_PATH")
    if cert_path and key_path:
        return cert_path, key_path, None, None

    cert_b64 = os.getenv("AFIP_CERT_BASE64")
    key_b64 = os.getenv("AFIP_KEY_BASE64")
    if cert_b64 and key_b64:
        return None, None, cert_b64, key_b64

    return None, None, None, None


class AfipConfig:
    """Configuración del cliente AFIP por ambiente"""

    ENV_TEST = "test"
    ENV_PROD = "prod"

    # Homologación vs producción
    WSAA_URLS = {
        "test": "https://wsaahomo.afip.gov.ar/ws/services/LoginCms",
        "prod": "https://wsaa.afip.gov.ar/ws/services/LoginCms",
    }
    WSFE_URLS = {
        "test": "https://wswhomo.afip.gov.ar/wsfev1/service.asmx",
        "prod": "https://servicios1.afip.gov.ar/wsfev1/service.asmx",
    }

    # Servicio para el que se pide el ticket de acceso
    SERVICE = "wsfe"

    def __init__(self, env: str = ENV_TEST):
        """
        Inicializa la configuración AFIP

        Args:
            env: Ambiente ('test' o 'prod')
        """
        if env not in [self.ENV_TEST, self.ENV_PROD]:
            raise ValueError(f"Ambiente inválido: {env}. Debe ser 'test' o 'prod'")

        self.env = env
        self.wsaa_url = os.getenv("AFIP_WSAA_URL") or self.WSAA_URLS[env]
        self.wsfe_url = os.getenv("AFIP_WSFE_URL") or self.WSFE_URLS[env]

        # Timeouts / retries de transporte
        self.connect_timeout = _env_int("AFIP_SOAP_TIMEOUT_CONNECT", 10)
        self.read_timeout = _env_int("AFIP_SOAP_TIMEOUT_READ", 30)
        self.max_retries = _env_int("AFIP_SOAP_MAX_RETRIES", 2)
        self.backoff_base = _env_float("AFIP_SOAP_BACKOFF_BASE", 0.6)
        self.backoff_max = _env_float("AFIP_SOAP_BACKOFF_MAX", 8.0)

        # Ticket de acceso (TA): duración pedida y margen antes de renovar
        self.ticket_ttl = _env_int("AFIP_TICKET_TTL_SEC", 12 * 60 * 60)
        self.ticket_safety_margin = _env_int("AFIP_TICKET_SAFETY_MARGIN_SEC", 10 * 60)
        # Otro proceso renovando: cada cuánto se vuelve a mirar el ticket guardado
        self.ticket_lease_poll_sec = _env_float("AFIP_TICKET_LEASE_POLL_SEC", 0.5)

        # Reintentos del flujo de facturación
        self.max_attempts = _env_int("AFIP_MAX_ATTEMPTS", 5)
        self.stale_processing_sec = _env_int("AFIP_STALE_PROCESSING_SEC", 5 * 60)
        self.sweep_batch = _env_int("AFIP_SWEEP_BATCH", 20)
        self.invoice_log_max = _env_int("AFIP_INVOICE_LOG_MAX", 50)

        self.ca_bundle_path = os.getenv("AFIP_CA_BUNDLE_PATH") or None

    @property
    def timeout(self) -> Tuple[int, int]:
        """Timeout (connect, read) para requests"""
        return (self.connect_timeout, self.read_timeout)

    @property
    def call_budget_sec(self) -> float:
        """Lo máximo que puede tardar una llamada SOAP con sus reintentos y backoff"""
        attempts = self.max_retries + 1
        return (self.connect_timeout + self.read_timeout) * attempts + self.backoff_max * self.max_retries

    @property
    def ticket_lease_sec(self) -> float:
        """Vigencia de la reserva de renovación de un ticket (un loginCms completo)"""
        return self.call_budget_sec + 30

    @property
    def stale_after_sec(self) -> float:
        """
        Antigüedad a partir de la cual un processing se considera colgado: el peor
        intento posible más AFIP_STALE_PROCESSING_SEC de gracia. Así un intento vivo
        en otro proceso nunca se reclama.
        """
        return self.call_budget_sec * CALLS_PER_ATTEMPT + self.stale_processing_sec


def get_afip_config(env: Optional[str] = None) -> AfipConfig:
    """
    Obtiene la configuración AFIP desde variables de entorno

    Args:
        env: Ambiente ('test' o 'prod'). Si None, usa AFIP_ENV

    Returns:
        Configuración AFIP
    """
    if env is None:
        env = (os.getenv("AFIP_ENV") or AfipConfig.ENV_TEST).strip().lower()
    return AfipConfig(env)
