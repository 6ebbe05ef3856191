"""
Excepciones del cliente AFIP (WSAA / WSFEv1)

Clasificación usada por el flujo de facturación:
- ConfigurationError / SignatureError: falta o no coincide configuración/credenciales (requiere operador)
- AfipUnavailable / AuthUnavailable: red, timeout, servicio caído (reintentable)
- AuthRejected / TicketRejected: credencial o ticket rechazado
- BusinessRejected: AFIP rechazó el contenido del comprobante (requiere corregir datos)
"""
from typing import List, Optional, Tuple


class AfipException(Exception):
    """Excepción base para errores AFIP"""
    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(self.message)


class ConfigurationError(AfipException):
    """Configuración de sucursal o credenciales ausente/inconsistente"""
    pass


class BranchConfigNotFound(ConfigurationError):
    """No hay configuración AFIP activa para la sucursal"""
    def __init__(self, branch_id: str):
        self.branch_id = branch_id
        super().__init__(f"No hay configuración AFIP activa para la sucursal {branch_id}", "BRANCH_NOT_CONFIGURED")


class AfipUnavailable(AfipException):
    """Error de red, timeout o servicio AFIP no disponible"""
    def __init__(self, message: str, code: Optional[str] = None, http_status: Optional[int] = None):
        self.http_status = http_status
        super().__init__(message, code)


class AuthUnavailable(AfipUnavailable):
    """No se pudo obtener ticket de acceso (WSAA caído o login concurrente)"""
    pass


class CredentialsNotConfigured(ConfigurationError, AuthUnavailable):
    """No hay certificado/clave de firma configurado para el CUIT"""
    def __init__(self, cuit: str, detail: str = ""):
        self.cuit = cuit
        message = f"No hay credenciales de firma configuradas para CUIT {cuit}"
        if detail:
            message = f"{message}: {detail}"
        AfipException.__init__(self, message, "CREDENTIALS_MISSING")
        self.http_status = None


class AuthRejected(AfipException):
    """WSAA rechazó el CMS (certificado no confiable, firma inválida, TRA vencido)"""
    pass


class TicketRejected(AuthRejected):
    """WSFE rechazó token/sign durante la llamada (vencido o inválido)"""
    pass


class BusinessRejected(AfipException):
    """AFIP (o la validación local) rechazó los datos del comprobante"""
    def __init__(self, message: str, reasons: Optional[List[Tuple[str, str]]] = None, code: Optional[str] = None):
        self.reasons = list(reasons or [])
        super().__init__(message, code)


class InvoiceDataError(BusinessRejected):
    """Datos de la venta inválidos para armar el comprobante"""
    def __init__(self, message: str):
        super().__init__(message, reasons=[("LOCAL", message)], code="LOCAL_VALIDATION")


class SignatureError(ConfigurationError):
    """Error al cargar certificado/clave o firmar el TRA"""
    pass
