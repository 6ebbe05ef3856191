"""
Cliente SOAP 1.1 para WSAA (loginCms) y WSFEv1 (FECompUltimoAutorizado, FECAESolicitar,
FECompConsultar, FEDummy).

Los sobres se arman y parsean con lxml; el transporte es requests con timeouts
(connect, read) acotados y reintentos con backoff exponencial + jitter sólo ante
errores de conexión. Un read timeout en FECAESolicitar nunca se reintenta aquí:
AFIP pudo haber emitido el CAE y la reconciliación le corresponde al flujo.
"""
import logging
import random
import time
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

import requests
from lxml import etree

from .config import AfipConfig
from .exceptions import (
    AfipException,
    AfipUnavailable,
    AuthRejected,
    AuthUnavailable,
    TicketRejected,
)
from .models import AuthTicket, BranchFiscalConfig, CAEAccepted, CAERejected, CAEResult, InvoicePayload
from .payload import format_amount

logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
WSAA_NS = "http://wsaa.view.sua.dvadac.desein.afip.gov"
WSFE_NS = "http://ar.gov.afip.dif.FEV1/"

# Errores WSFE de token/sign vencido o inválido, o CUIT no habilitado en el ticket
TICKET_ERROR_CODES = {"600", "601"}
# "Sin resultados": en FECompConsultar es comprobante inexistente; en el resto, un error más
NOT_FOUND_CODE = "602"
# Número o fecha fuera de secuencia (otra emisión se adelantó)
SEQUENCE_ERROR_CODE = "10016"
# Errores internos de AFIP (base de datos, servicio): reintentables
TRANSIENT_ERROR_CODES = {"500", "501", "502"}

# Faults WSAA que son rechazo definitivo de la credencial o del CMS
_WSAA_REJECT_PREFIXES = ("cms.", "xml.", "wsn.", "wsaa.", "coe.notauthorized")
_WSAA_ALREADY_AUTH = "coe.alreadyauthenticated"

ARGENTINA_TZ = timezone(timedelta(hours=-3))


def find_text(node: Any, name: str) -> Optional[str]:
    """Primer descendiente con ese local-name (tolera prefijos)"""
    nodes = node.xpath(f'.//*[local-name()="{name}"]')
    if nodes:
        val = nodes[0].text
        return val.strip() if val else None
    return None


def parse_afip_datetime(value: str) -> datetime:
    """ISO 8601 de WSAA (con offset) a datetime aware UTC. Sin offset se asume hora argentina."""
    parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ARGENTINA_TZ)
    return parsed.astimezone(timezone.utc)


def parse_afip_date(value: Optional[str]) -> Optional[date]:
    """yyyymmdd a date"""
    if not value:
        return None
    return datetime.strptime(value.strip(), "%Y%m%d").date()


def _split_fault_code(faultcode: str) -> str:
    # "ns1:cms.cert.untrusted" -> "cms.cert.untrusted"
    return faultcode.split(":", 1)[-1].strip()


def parse_soap_fault(root: Any) -> Optional[Tuple[str, str]]:
    """(faultcode sin prefijo, faultstring) o None si no es Fault"""
    faults = root.xpath('//*[local-name()="Body"]/*[local-name()="Fault"]')
    if not faults:
        return None
    fault = faults[0]
    code = fault.xpath('string(./*[local-name()="faultcode"])') or ""
    text = fault.xpath('string(./*[local-name()="faultstring"])') or ""
    return _split_fault_code(code), text.strip()


def _classify_wsaa_fault(code: str, text: str) -> AfipException:
    lowered = code.lower()
    message = f"WSAA fault {code}: {text}"
    if lowered == _WSAA_ALREADY_AUTH:
        # Ya existe un TA vigente en AFIP que no tenemos; hay que esperar a que venza
        return AuthUnavailable(message, code)
    if lowered.startswith(_WSAA_REJECT_PREFIXES) or "cert" in lowered:
        return AuthRejected(message, code)
    return AuthUnavailable(message, code)


def parse_login_response(cuit: str, xml_bytes: bytes) -> AuthTicket:
    """
    Parsea la respuesta de loginCms.

    loginCmsReturn trae el loginTicketResponse como XML escapado; token, sign y
    expirationTime se guardan tal cual (token/sign son opacos).
    """
    try:
        root = etree.fromstring(xml_bytes)
    except etree.XMLSyntaxError as e:
        raise AuthUnavailable(f"Respuesta WSAA no es XML: {e}") from e

    fault = parse_soap_fault(root)
    if fault:
        raise _classify_wsaa_fault(*fault)

    inner = find_text(root, "loginCmsReturn")
    if not inner:
        raise AuthUnavailable("Respuesta WSAA sin loginCmsReturn")
    try:
        ticket_root = etree.fromstring(inner.encode("utf-8"))
    except etree.XMLSyntaxError as e:
        raise AuthUnavailable(f"loginTicketResponse inválido: {e}") from e

    token = find_text(ticket_root, "token")
    sign = find_text(ticket_root, "sign")
    expiration = find_text(ticket_root, "expirationTime")
    generation = find_text(ticket_root, "generationTime")
    if not (token and sign and expiration):
        raise AuthUnavailable("loginTicketResponse incompleto (token/sign/expirationTime)")

    return AuthTicket(
        cuit=cuit,
        token=token,
        sign=sign,
        expires_at=parse_afip_datetime(expiration),
        generated_at=parse_afip_datetime(generation) if generation else None,
    )


def _collect_pairs(node: Any, container: str, item: str) -> List[Tuple[str, str]]:
    """Lista de (Code, Msg) de Errors/Err u Observaciones/Obs"""
    pairs = []
    for el in node.xpath(f'.//*[local-name()="{container}"]/*[local-name()="{item}"]'):
        code = find_text(el, "Code") or ""
        msg = find_text(el, "Msg") or ""
        pairs.append((code, msg))
    return pairs


def _raise_on_ticket_errors(errors: List[Tuple[str, str]], operation: str) -> None:
    for code, msg in errors:
        if code in TICKET_ERROR_CODES:
            raise TicketRejected(f"{operation}: ticket rechazado [{code}] {msg}", code)


def _raise_on_transient_errors(errors: List[Tuple[str, str]], operation: str) -> None:
    for code, msg in errors:
        if code in TRANSIENT_ERROR_CODES:
            raise AfipUnavailable(f"{operation}: error interno AFIP [{code}] {msg}", code)


def parse_cae_response(xml_bytes: bytes) -> CAEResult:
    """Parsea FECAESolicitarResponse a CAEAccepted / CAERejected"""
    root = _parse_wsfe_xml(xml_bytes, "FECAESolicitar")
    result = _result_node(root, "FECAESolicitarResult")

    errors = _collect_pairs(result, "Errors", "Err")
    _raise_on_ticket_errors(errors, "FECAESolicitar")
    _raise_on_transient_errors(errors, "FECAESolicitar")

    observations = _collect_pairs(result, "Observaciones", "Obs")
    det = result.xpath('.//*[local-name()="FECAEDetResponse"]')
    det = det[0] if det else None

    number = None
    if det is not None:
        raw_number = find_text(det, "CbteDesde")
        number = int(raw_number) if raw_number and raw_number.isdigit() else None

    if any(code == SEQUENCE_ERROR_CODE for code, _ in errors + observations):
        return CAERejected(reasons=tuple(errors + observations), invoice_number=number, sequence_conflict=True)

    det_result = find_text(det, "Resultado") if det is not None else None
    cae = find_text(det, "CAE") if det is not None else None
    if det_result == "A" and cae:
        return CAEAccepted(
            cae=cae,
            cae_expiry=parse_afip_date(find_text(det, "CAEFchVto")),
            invoice_number=number,
            observations=tuple(observations),
        )

    reasons = tuple(errors + observations)
    if not reasons:
        cab_result = find_text(result, "Resultado") or "?"
        reasons = (("SIN_DETALLE", f"Resultado {det_result or cab_result} sin observaciones"),)
    return CAERejected(reasons=reasons, invoice_number=number)


def _parse_wsfe_xml(xml_bytes: bytes, operation: str) -> Any:
    try:
        root = etree.fromstring(xml_bytes)
    except etree.XMLSyntaxError as e:
        raise AfipUnavailable(f"{operation}: respuesta no es XML: {e}") from e
    fault = parse_soap_fault(root)
    if fault:
        code, text = fault
        raise AfipUnavailable(f"{operation}: SOAP fault {code}: {text}", code)
    return root


def _result_node(root: Any, name: str) -> Any:
    nodes = root.xpath(f'//*[local-name()="{name}"]')
    if not nodes:
        raise AfipUnavailable(f"Respuesta WSFE sin {name}")
    return nodes[0]


class FiscalWireClient:
    """Cliente de los servicios web de AFIP (WSAA + WSFEv1)"""

    def __init__(
        self,
        config: AfipConfig,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.session = session or requests.Session()
        self._sleep = sleep

    # ---------------------------------------------------------------------
    # Transporte
    # ---------------------------------------------------------------------
    def _post(
        self,
        url: str,
        soap_bytes: bytes,
        soap_action: str,
        operation: str,
        unavailable_cls: Type[AfipUnavailable] = AfipUnavailable,
        retry_read_timeout: bool = True,
    ) -> bytes:
        headers = {
            "Content-Type": "text/xml; charset=utf-8",
            "SOAPAction": f'"{soap_action}"',
        }
        max_attempts = self.config.max_retries + 1
        last_exception: Optional[Exception] = None
        resp = None

        for attempt in range(1, max_attempts + 1):
            try:
                logger.debug(f"{operation}: intento {attempt}/{max_attempts} POST {url}")
                resp = self.session.post(
                    url,
                    data=soap_bytes,
                    headers=headers,
                    verify=self.config.ca_bundle_path or True,
                    timeout=self.config.timeout,
                )
                break
            except requests.exceptions.ReadTimeout as e:
                last_exception = e
                if not retry_read_timeout:
                    logger.warning(f"{operation}: read timeout, no se reintenta (resultado incierto)")
                    raise unavailable_cls(f"{operation}: timeout de lectura: {e}", "READ_TIMEOUT") from e
                self._backoff(operation, attempt, max_attempts, e)
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout, ConnectionResetError) as e:
                last_exception = e
                self._backoff(operation, attempt, max_attempts, e)

        if resp is None:
            raise unavailable_cls(
                f"{operation}: error de conexión después de {max_attempts} intentos: {last_exception}",
                "CONNECTION",
            ) from last_exception

        # WSAA/WSFE devuelven los SOAP Fault con HTTP 500: el cuerpo manda
        if resp.status_code != 200 and b"Fault" not in (resp.content or b""):
            raise unavailable_cls(
                f"{operation}: HTTP {resp.status_code}: {resp.text[:300]}",
                f"HTTP_{resp.status_code}",
                http_status=resp.status_code,
            )
        return resp.content

    def _backoff(self, operation: str, attempt: int, max_attempts: int, error: Exception) -> None:
        if attempt >= max_attempts:
            logger.error(f"{operation}: todos los intentos fallaron. Último error: {error}")
            return
        delay = min(self.config.backoff_base * (2 ** (attempt - 1)), self.config.backoff_max)
        # jitter ±25%
        jitter = delay * 0.25 * (random.random() * 2 - 1)
        final_delay = delay + jitter
        logger.warning(
            f"{operation}: error de conexión (intento {attempt}/{max_attempts}): {error}. "
            f"Reintentando en {final_delay:.2f}s..."
        )
        self._sleep(final_delay)

    # ---------------------------------------------------------------------
    # Sobres
    # ---------------------------------------------------------------------
    @staticmethod
    def _envelope(ns: str, prefix: str, operation: str):
        nsmap = {"soapenv": SOAP_ENV_NS, prefix: ns}
        envelope = etree.Element(f"{{{SOAP_ENV_NS}}}Envelope", nsmap=nsmap)
        etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Header")
        body = etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
        op = etree.SubElement(body, f"{{{ns}}}{operation}")
        return envelope, op

    @staticmethod
    def _sub(parent: Any, name: str, text: Any = None) -> Any:
        el = etree.SubElement(parent, f"{{{WSFE_NS}}}{name}")
        if text is not None:
            el.text = str(text)
        return el

    def _wsfe_envelope(self, operation: str, ticket: Optional[AuthTicket]):
        envelope, op = self._envelope(WSFE_NS, "ar", operation)
        if ticket is not None:
            auth = self._sub(op, "Auth")
            self._sub(auth, "Token", ticket.token)
            self._sub(auth, "Sign", ticket.sign)
            self._sub(auth, "Cuit", ticket.cuit)
        return envelope, op

    def build_login_envelope(self, signed_cms: str) -> bytes:
        envelope, op = self._envelope(WSAA_NS, "wsaa", "loginCms")
        etree.SubElement(op, f"{{{WSAA_NS}}}in0").text = signed_cms
        return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8")

    def build_cae_request(self, ticket: AuthTicket, punto_venta: int, payload: InvoicePayload, number: int) -> bytes:
        envelope, op = self._wsfe_envelope("FECAESolicitar", ticket)
        req = self._sub(op, "FeCAEReq")
        cab = self._sub(req, "FeCabReq")
        self._sub(cab, "CantReg", 1)
        self._sub(cab, "PtoVta", punto_venta)
        self._sub(cab, "CbteTipo", payload.cbte_tipo)

        det_req = self._sub(req, "FeDetReq")
        det = self._sub(det_req, "FECAEDetRequest")
        self._sub(det, "Concepto", payload.concepto)
        self._sub(det, "DocTipo", payload.doc_tipo)
        self._sub(det, "DocNro", payload.doc_nro)
        self._sub(det, "CbteDesde", number)
        self._sub(det, "CbteHasta", number)
        self._sub(det, "CbteFch", payload.issue_date.strftime("%Y%m%d"))
        self._sub(det, "ImpTotal", format_amount(payload.imp_total))
        self._sub(det, "ImpTotConc", format_amount(payload.imp_tot_conc))
        self._sub(det, "ImpNeto", format_amount(payload.imp_neto))
        self._sub(det, "ImpOpEx", format_amount(payload.imp_op_ex))
        self._sub(det, "ImpTrib", format_amount(payload.imp_trib))
        self._sub(det, "ImpIVA", format_amount(payload.imp_iva))
        self._sub(det, "MonId", payload.moneda)
        self._sub(det, "MonCotiz", f"{payload.cotizacion:.0f}" if payload.cotizacion == 1 else str(payload.cotizacion))
        self._sub(det, "CondicionIVAReceptorId", payload.condicion_iva_receptor)
        if payload.letter != "C" and payload.vat_lines:
            iva = self._sub(det, "Iva")
            for line in payload.vat_lines:
                alic = self._sub(iva, "AlicIva")
                self._sub(alic, "Id", line.iva_id)
                self._sub(alic, "BaseImp", format_amount(line.base))
                self._sub(alic, "Importe", format_amount(line.amount))
        return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8")

    # ---------------------------------------------------------------------
    # API pública
    # ---------------------------------------------------------------------
    def login(self, cuit: str, signed_cms: str) -> AuthTicket:
        """
        Intercambia el CMS firmado por un ticket de acceso.

        Raises:
            AuthRejected: WSAA rechazó el CMS o el certificado
            AuthUnavailable: red, timeout, HTTP 5xx sin fault o TA vigente ya emitido
        """
        logger.info(f"WSAA loginCms para CUIT {cuit} ({self.config.env})")
        content = self._post(
            self.config.wsaa_url,
            self.build_login_envelope(signed_cms),
            soap_action="",
            operation="loginCms",
            unavailable_cls=AuthUnavailable,
        )
        ticket = parse_login_response(cuit, content)
        logger.info(f"WSAA ticket obtenido para CUIT {cuit}, vence {ticket.expires_at.isoformat()}")
        return ticket

    def _wsfe_call(self, operation: str, envelope: Any, idempotent: bool = True) -> bytes:
        return self._post(
            self.config.wsfe_url,
            etree.tostring(envelope, xml_declaration=True, encoding="UTF-8"),
            soap_action=f"{WSFE_NS}{operation}",
            operation=operation,
            retry_read_timeout=idempotent,
        )

    def last_authorized_number(self, ticket: AuthTicket, punto_venta: int, cbte_tipo: int) -> int:
        """Último número autorizado para (punto de venta, tipo de comprobante)"""
        envelope, op = self._wsfe_envelope("FECompUltimoAutorizado", ticket)
        self._sub(op, "PtoVta", punto_venta)
        self._sub(op, "CbteTipo", cbte_tipo)
        root = _parse_wsfe_xml(self._wsfe_call("FECompUltimoAutorizado", envelope), "FECompUltimoAutorizado")
        result = _result_node(root, "FECompUltimoAutorizadoResult")

        errors = _collect_pairs(result, "Errors", "Err")
        _raise_on_ticket_errors(errors, "FECompUltimoAutorizado")
        if errors:
            detail = "; ".join(f"[{c}] {m}" for c, m in errors)
            raise AfipUnavailable(f"FECompUltimoAutorizado: {detail}", errors[0][0])

        raw = find_text(result, "CbteNro")
        if raw is None or not raw.lstrip("-").isdigit():
            raise AfipUnavailable(f"FECompUltimoAutorizado: CbteNro inválido: {raw!r}")
        return int(raw)

    def authorize_invoice(
        self,
        ticket: AuthTicket,
        branch_config: BranchFiscalConfig,
        payload: InvoicePayload,
        invoice_number: Optional[int] = None,
    ) -> CAEResult:
        """
        Solicita CAE para un comprobante.

        Si no se indica número, usa último autorizado + 1.

        Raises:
            TicketRejected: token/sign rechazado (600/601)
            AfipUnavailable: red, timeout, HTTP 5xx
        """
        if invoice_number is None:
            invoice_number = (
                self.last_authorized_number(ticket, branch_config.punto_venta, payload.cbte_tipo) + 1
            )
        logger.info(
            f"FECAESolicitar CUIT {branch_config.cuit} PtoVta {branch_config.punto_venta} "
            f"Tipo {payload.cbte_tipo} Nro {invoice_number} Total {format_amount(payload.imp_total)}"
        )
        soap_bytes = self.build_cae_request(ticket, branch_config.punto_venta, payload, invoice_number)
        content = self._post(
            self.config.wsfe_url,
            soap_bytes,
            soap_action=f"{WSFE_NS}FECAESolicitar",
            operation="FECAESolicitar",
            retry_read_timeout=False,
        )
        result = parse_cae_response(content)
        if isinstance(result, CAEAccepted) and result.invoice_number is None:
            result = CAEAccepted(
                cae=result.cae,
                cae_expiry=result.cae_expiry,
                invoice_number=invoice_number,
                observations=result.observations,
            )
        elif isinstance(result, CAERejected) and result.invoice_number is None:
            result = CAERejected(
                reasons=result.reasons,
                invoice_number=invoice_number,
                sequence_conflict=result.sequence_conflict,
            )
        return result

    def consult_invoice(
        self, ticket: AuthTicket, punto_venta: int, cbte_tipo: int, number: int
    ) -> Optional[Dict[str, Any]]:
        """
        Consulta un comprobante emitido (FECompConsultar).

        Returns:
            Dict con los datos del comprobante, o None si AFIP informa que no existe
        """
        envelope, op = self._wsfe_envelope("FECompConsultar", ticket)
        req = self._sub(op, "FeCompConsReq")
        self._sub(req, "CbteTipo", cbte_tipo)
        self._sub(req, "CbteNro", number)
        self._sub(req, "PtoVta", punto_venta)
        root = _parse_wsfe_xml(self._wsfe_call("FECompConsultar", envelope), "FECompConsultar")
        return parse_consult_response(root)

    def server_status(self) -> Dict[str, str]:
        """Estado de los servidores de WSFE (FEDummy, no requiere ticket)"""
        envelope, _op = self._wsfe_envelope("FEDummy", None)
        root = _parse_wsfe_xml(self._wsfe_call("FEDummy", envelope), "FEDummy")
        result = _result_node(root, "FEDummyResult")
        return {
            "app_server": find_text(result, "AppServer") or "",
            "db_server": find_text(result, "DbServer") or "",
            "auth_server": find_text(result, "AuthServer") or "",
        }

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def _decimal_or_none(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation:
        return None


def parse_consult_response(root: Any) -> Optional[Dict[str, Any]]:
    """FECompConsultarResult a dict; None si AFIP responde 602 (sin resultados)"""
    result = _result_node(root, "FECompConsultarResult")
    errors = _collect_pairs(result, "Errors", "Err")
    if any(code == NOT_FOUND_CODE for code, _ in errors):
        return None
    _raise_on_ticket_errors(errors, "FECompConsultar")
    if errors:
        detail = "; ".join(f"[{c}] {m}" for c, m in errors)
        raise AfipUnavailable(f"FECompConsultar: {detail}", errors[0][0])

    nodes = result.xpath('.//*[local-name()="ResultGet"]')
    if not nodes:
        return None
    get = nodes[0]
    number = find_text(get, "CbteDesde")
    doc_tipo = find_text(get, "DocTipo")
    return {
        "number": int(number) if number and number.isdigit() else None,
        "punto_venta": int(find_text(get, "PtoVta") or 0),
        "cbte_tipo": int(find_text(get, "CbteTipo") or 0),
        "doc_tipo": int(doc_tipo) if doc_tipo and doc_tipo.isdigit() else None,
        "doc_nro": find_text(get, "DocNro"),
        "cbte_fch": find_text(get, "CbteFch"),
        "imp_total": _decimal_or_none(find_text(get, "ImpTotal")),
        "resultado": find_text(get, "Resultado"),
        "cae": find_text(get, "CodAutorizacion"),
        "cae_expiry": parse_afip_date(find_text(get, "FchVto")),
        "emision_tipo": find_text(get, "EmisionTipo"),
    }
