"""
Certificados y firma CMS para WSAA

Carga el certificado X.509 y la clave privada de un CUIT (PEM en disco, PEM en base64
o PKCS#12/PFX), arma el TRA (loginTicketRequest) y lo firma como CMS/PKCS#7 SignedData
con el contenido adjunto (SHA-256, DER, base64), que es lo que espera loginCms.
"""
import base64
import logging
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs7, pkcs12
from cryptography.x509.oid import NameOID
from lxml import etree

from .config import get_signing_material_refs
from .exceptions import CredentialsNotConfigured, SignatureError

logger = logging.getLogger(__name__)

_CUIT_IN_SUBJECT = re.compile(r"CUIT\s*(\d{11})")


@dataclass
class SigningMaterial:
    """Certificado + clave privada listos para firmar"""
    certificate: x509.Certificate
    private_key: object
    source: str

    @property
    def subject_cuit(self) -> Optional[str]:
        return cuit_from_certificate(self.certificate)

    @property
    def not_valid_after(self) -> datetime:
        return self.certificate.not_valid_after_utc


def cuit_from_certificate(certificate: x509.Certificate) -> Optional[str]:
    """
    Extrae el CUIT del subject del certificado.

    AFIP emite certificados con serialNumber=CUIT nnnnnnnnnnn en el subject.
    """
    for attr in certificate.subject.get_attributes_for_oid(NameOID.SERIAL_NUMBER):
        match = _CUIT_IN_SUBJECT.search(str(attr.value))
        if match:
            return match.group(1)
    return None


def _password_bytes(password: Optional[str]) -> Optional[bytes]:
    return password.encode("utf-8") if password else None


def _load_pem_pair(cert_bytes: bytes, key_bytes: bytes, password: Optional[str], source: str) -> SigningMaterial:
    try:
        certificate = x509.load_pem_x509_certificate(cert_bytes)
    except ValueError as e:
        raise SignatureError(f"Certificado PEM inválido ({source}): {e}") from e
    try:
        private_key = serialization.load_pem_private_key(key_bytes, password=_password_bytes(password))
    except (ValueError, TypeError) as e:
        raise SignatureError(f"Clave privada PEM inválida ({source}): {e}") from e
    return SigningMaterial(certificate=certificate, private_key=private_key, source=source)


def _load_pkcs12(p12_bytes: bytes, password: Optional[str], source: str) -> SigningMaterial:
    try:
        private_key, certificate, _extra = pkcs12.load_key_and_certificates(p12_bytes, _password_bytes(password))
    except ValueError as e:
        raise SignatureError(f"No se pudo abrir PKCS#12 ({source}): {e}") from e
    if certificate is None or private_key is None:
        raise SignatureError(f"PKCS#12 sin certificado o clave ({source})")
    return SigningMaterial(certificate=certificate, private_key=private_key, source=source)


def load_signing_material(
    cert_path: Optional[str] = None,
    key_path: Optional[str] = None,
    cert_b64: Optional[str] = None,
    key_b64: Optional[str] = None,
    password: Optional[str] = None,
) -> SigningMaterial:
    """
    Carga certificado y clave desde rutas o desde PEM codificado en base64.

    Si cert_path apunta a un .p12/.pfx se usa como contenedor único (key_path se ignora).

    Raises:
        SignatureError: Si los archivos no existen o no se pueden parsear
    """
    if cert_path:
        cert_file = Path(cert_path)
        if not cert_file.exists():
            raise SignatureError(f"Certificado no encontrado: {cert_path}")
        if cert_file.suffix.lower() in (".p12", ".pfx"):
            return _load_pkcs12(cert_file.read_bytes(), password, str(cert_file))
        if not key_path or not Path(key_path).exists():
            raise SignatureError(f"Clave privada no encontrada: {key_path}")
        return _load_pem_pair(cert_file.read_bytes(), Path(key_path).read_bytes(), password, str(cert_file))

    if cert_b64 and key_b64:
        try:
            cert_bytes = base64.b64decode(cert_b64)
            key_bytes = base64.b64decode(key_b64)
        except (ValueError, TypeError) as e:
            raise SignatureError(f"Base64 inválido en certificado/clave: {e}") from e
        return _load_pem_pair(cert_bytes, key_bytes, password, "base64")

    raise SignatureError("No se indicó certificado ni clave")


def load_signing_material_for_cuit(cuit: str) -> SigningMaterial:
    """
    Resuelve y carga las credenciales de firma de un CUIT desde el entorno.

    Raises:
        CredentialsNotConfigured: Si no hay ninguna credencial configurada
        SignatureError: Si hay credenciales pero no se pueden cargar
    """
    cert_path, key_path, cert_b64, key_b64 = get_signing_material_refs(cuit)
    if not (cert_path or cert_b64):
        raise CredentialsNotConfigured(cuit)
    return load_signing_material(
        cert_path=cert_path,
        key_path=key_path,
        cert_b64=cert_b64,
        key_b64=key_b64,
        password=os.getenv("AFIP_KEY_PASSWORD") or None,
    )


def _isoformat(value: datetime) -> str:
    # WSAA acepta xsd:dateTime con offset; sin microsegundos
    return value.replace(microsecond=0).isoformat()


def build_login_ticket_request(
    service: str,
    now: Optional[datetime] = None,
    ttl_seconds: int = 12 * 60 * 60,
    unique_id: Optional[int] = None,
) -> bytes:
    """
    Construye el TRA (loginTicketRequest versión 1.0).

    generationTime se corre 10 minutos hacia atrás para tolerar desfasaje de reloj con WSAA.
    """
    now = now or datetime.now(timezone.utc)
    if unique_id is None:
        unique_id = uuid.uuid4().int % 4294967295

    root = etree.Element("loginTicketRequest", version="1.0")
    header = etree.SubElement(root, "header")
    etree.SubElement(header, "uniqueId").text = str(unique_id)
    etree.SubElement(header, "generationTime").text = _isoformat(now - timedelta(minutes=10))
    etree.SubElement(header, "expirationTime").text = _isoformat(now + timedelta(seconds=ttl_seconds))
    etree.SubElement(root, "service").text = service
    return etree.tostring(root, xml_declaration=True, encoding="UTF-8")


def sign_login_ticket_request(tra_xml: bytes, material: SigningMaterial) -> str:
    """
    Firma el TRA como CMS SignedData (contenido adjunto) y devuelve base64 del DER.

    Binary: el TRA viaja tal cual, sin pasar los saltos de línea a CRLF.

    Raises:
        SignatureError: Si la firma falla (clave incompatible, certificado no corresponde)
    """
    try:
        signed = (
            pkcs7.PKCS7SignatureBuilder()
            .set_data(tra_xml)
            .add_signer(material.certificate, material.private_key, hashes.SHA256())
            .sign(serialization.Encoding.DER, [pkcs7.PKCS7Options.Binary])
        )
    except (ValueError, TypeError) as e:
        raise SignatureError(f"Error firmando TRA con {material.source}: {e}") from e
    return base64.b64encode(signed).decode("ascii")
