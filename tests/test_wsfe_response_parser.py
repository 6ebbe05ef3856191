from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
import sys
from unittest.mock import Mock

import lxml.etree as etree
import pytest
import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from _afip_fakes import BUYER_CUIT, ISSUER_CUIT, make_config
from app.afip_client.exceptions import AfipUnavailable, TicketRejected
from app.afip_client.models import AuthTicket, BranchFiscalConfig, CAEAccepted, CAERejected, Sale
from app.afip_client.payload import build_invoice_payload
from app.afip_client.wire_client import FiscalWireClient, parse_cae_response

TICKET = AuthTicket(
    cuit=ISSUER_CUIT,
    token="tok",
    sign="sig",
    expires_at=datetime(2026, 10, 20, tzinfo=timezone.utc),
)
BRANCH = BranchFiscalConfig(branch_id="suc-1", cuit=ISSUER_CUIT, punto_venta=3)


def _envelope(inner: str) -> bytes:
    return f"""<?xml version="1.0" encoding="utf-8"?>
<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">
  <soap:Body>{inner}</soap:Body>
</soap:Envelope>
""".encode("utf-8")


def _cae_response(det: str, errors: str = "", cab_result: str = "A") -> bytes:
    return _envelope(f"""
    <FECAESolicitarResponse xmlns="http://ar.gov.afip.dif.FEV1/">
      <FECAESolicitarResult>
        <FeCabResp><Cuit>{ISSUER_CUIT}</Cuit><PtoVta>3</PtoVta><CbteTipo>6</CbteTipo>
          <FchProceso>20261019120000</FchProceso><CantReg>1</CantReg><Resultado>{cab_result}</Resultado>
        </FeCabResp>
        <FeDetResp>{det}</FeDetResp>
        {errors}
      </FECAESolicitarResult>
    </FECAESolicitarResponse>""")


def _client(*contents: bytes) -> FiscalWireClient:
    session = Mock()
    session.post.side_effect = [Mock(status_code=200, content=c, text="") for c in contents]
    return FiscalWireClient(make_config(), session=session, sleep=lambda _s: None)


def _payload(letter="B", total="1000.00"):
    sale = Sale.from_dict({
        "id": "S-1",
        "branch_id": "suc-1",
        "total": total,
        "items": [{"description": "x", "quantity": "1", "unit_price": total, "tax_rate": "21"}],
    })
    return build_invoice_payload(sale, letter, date(2026, 10, 19))


def test_accepted_response_gives_cae_number_and_expiry():
    xml = _cae_response("""
        <FECAEDetResponse><Concepto>1</Concepto><DocTipo>99</DocTipo><DocNro>0</DocNro>
          <CbteDesde>8</CbteDesde><CbteHasta>8</CbteHasta><CbteFch>20261019</CbteFch>
          <Resultado>A</Resultado><CAE>76123456789012</CAE><CAEFchVto>20261029</CAEFchVto>
        </FECAEDetResponse>""")

    result = parse_cae_response(xml)

    assert result == CAEAccepted(cae="76123456789012", cae_expiry=date(2026, 10, 29), invoice_number=8)


def test_rejected_with_observations_lists_reasons():
    xml = _cae_response("""
        <FECAEDetResponse><CbteDesde>8</CbteDesde><Resultado>R</Resultado><CAE/>
          <Observaciones>
            <Obs><Code>10013</Code><Msg>DocTipo invalido para Factura A</Msg></Obs>
            <Obs><Code>10015</Code><Msg>DocNro invalido</Msg></Obs>
          </Observaciones>
        </FECAEDetResponse>""", cab_result="R")

    result = parse_cae_response(xml)

    assert isinstance(result, CAERejected)
    assert result.sequence_conflict is False
    assert result.reasons == (("10013", "DocTipo invalido para Factura A"), ("10015", "DocNro invalido"))
    assert "10013" in result.summary()


def test_sequence_error_is_flagged():
    xml = _cae_response(
        "<FECAEDetResponse><CbteDesde>8</CbteDesde><Resultado>R</Resultado></FECAEDetResponse>",
        errors="<Errors><Err><Code>10016</Code><Msg>El numero o fecha del comprobante no se corresponde</Msg></Err></Errors>",
        cab_result="R",
    )

    result = parse_cae_response(xml)

    assert isinstance(result, CAERejected)
    assert result.sequence_conflict is True


@pytest.mark.parametrize("code", ["600", "601"])
def test_token_errors_raise_ticket_rejected(code):
    xml = _cae_response("", errors=f"<Errors><Err><Code>{code}</Code><Msg>ValidacionDeToken</Msg></Err></Errors>")

    with pytest.raises(TicketRejected):
        parse_cae_response(xml)


def test_no_results_on_cae_request_is_a_rejection_not_a_ticket_error():
    xml = _cae_response("", errors="<Errors><Err><Code>602</Code><Msg>Sin Resultados</Msg></Err></Errors>", cab_result="R")

    result = parse_cae_response(xml)

    assert isinstance(result, CAERejected)
    assert result.reasons == (("602", "Sin Resultados"),)


def test_no_results_on_last_authorized_is_unavailable():
    client = _client(_envelope("""
    <FECompUltimoAutorizadoResponse xmlns="http://ar.gov.afip.dif.FEV1/">
      <FECompUltimoAutorizadoResult>
        <Errors><Err><Code>602</Code><Msg>Sin Resultados</Msg></Err></Errors>
      </FECompUltimoAutorizadoResult>
    </FECompUltimoAutorizadoResponse>"""))

    with pytest.raises(AfipUnavailable) as excinfo:
        client.last_authorized_number(TICKET, 3, 6)
    assert excinfo.value.code == "602"


def test_last_authorized_number():
    client = _client(_envelope("""
    <FECompUltimoAutorizadoResponse xmlns="http://ar.gov.afip.dif.FEV1/">
      <FECompUltimoAutorizadoResult><PtoVta>3</PtoVta><CbteTipo>6</CbteTipo><CbteNro>41</CbteNro>
      </FECompUltimoAutorizadoResult>
    </FECompUltimoAutorizadoResponse>"""))

    assert client.last_authorized_number(TICKET, 3, 6) == 41
    headers = client.session.post.call_args.kwargs["headers"]
    assert headers["SOAPAction"] == '"http://ar.gov.afip.dif.FEV1/FECompUltimoAutorizado"'


def test_authorize_invoice_request_carries_auth_amounts_and_iva():
    accepted = _cae_response("""
        <FECAEDetResponse><CbteDesde>42</CbteDesde><Resultado>A</Resultado>
          <CAE>76000000000042</CAE><CAEFchVto>20261029</CAEFchVto></FECAEDetResponse>""")
    client = _client(accepted)

    result = client.authorize_invoice(TICKET, BRANCH, _payload("B"), invoice_number=42)

    assert isinstance(result, CAEAccepted)
    assert result.invoice_number == 42
    sent = etree.fromstring(client.session.post.call_args.kwargs["data"])

    def text(name):
        return sent.xpath(f'string(//*[local-name()="{name}"])')

    assert text("Token") == "tok"
    assert text("Sign") == "sig"
    assert text("Cuit") == ISSUER_CUIT
    assert text("PtoVta") == "3"
    assert text("CbteTipo") == "6"
    assert text("CbteDesde") == "42"
    assert text("CbteHasta") == "42"
    assert text("CbteFch") == "20261019"
    assert text("DocTipo") == "99"
    assert text("DocNro") == "0"
    assert text("ImpTotal") == "1000.00"
    assert text("ImpNeto") == "826.45"
    assert text("ImpIVA") == "173.55"
    assert text("MonId") == "PES"
    assert text("MonCotiz") == "1"
    assert text("CondicionIVAReceptorId") == "5"
    assert text("Id") == "5"
    assert text("BaseImp") == "826.45"
    assert text("Importe") == "173.55"


def test_authorize_invoice_letter_c_has_no_iva_block():
    accepted = _cae_response("""
        <FECAEDetResponse><CbteDesde>1</CbteDesde><Resultado>A</Resultado>
          <CAE>76000000000001</CAE><CAEFchVto>20261029</CAEFchVto></FECAEDetResponse>""")
    client = _client(accepted)

    client.authorize_invoice(TICKET, BRANCH, _payload("C"), invoice_number=1)

    sent = etree.fromstring(client.session.post.call_args.kwargs["data"])
    assert sent.xpath('//*[local-name()="Iva"]') == []
    assert sent.xpath('string(//*[local-name()="ImpNeto"])') == "1000.00"
    assert sent.xpath('string(//*[local-name()="CbteTipo"])') == "11"


def test_authorize_without_number_uses_last_plus_one():
    last = _envelope("""
    <FECompUltimoAutorizadoResponse xmlns="http://ar.gov.afip.dif.FEV1/">
      <FECompUltimoAutorizadoResult><CbteNro>9</CbteNro></FECompUltimoAutorizadoResult>
    </FECompUltimoAutorizadoResponse>""")
    accepted = _cae_response("""
        <FECAEDetResponse><CbteDesde>10</CbteDesde><Resultado>A</Resultado>
          <CAE>76000000000010</CAE><CAEFchVto>20261029</CAEFchVto></FECAEDetResponse>""")
    client = _client(last, accepted)

    result = client.authorize_invoice(TICKET, BRANCH, _payload("B"))

    assert result.invoice_number == 10


def test_read_timeout_on_cae_request_is_not_retried():
    session = Mock()
    session.post.side_effect = requests.exceptions.ReadTimeout("sin respuesta")
    client = FiscalWireClient(make_config(max_retries=3), session=session, sleep=lambda _s: None)

    with pytest.raises(AfipUnavailable) as excinfo:
        client.authorize_invoice(TICKET, BRANCH, _payload("B"), invoice_number=5)
    assert session.post.call_count == 1
    assert excinfo.value.code == "READ_TIMEOUT"


def test_consult_invoice_returns_voucher_data():
    client = _client(_envelope(f"""
    <FECompConsultarResponse xmlns="http://ar.gov.afip.dif.FEV1/">
      <FECompConsultarResult>
        <ResultGet>
          <Concepto>1</Concepto><DocTipo>80</DocTipo><DocNro>{BUYER_CUIT}</DocNro>
          <CbteDesde>7</CbteDesde><CbteHasta>7</CbteHasta><CbteFch>20261019</CbteFch>
          <ImpTotal>1210.00</ImpTotal><Resultado>A</Resultado>
          <CodAutorizacion>76000000000007</CodAutorizacion><EmisionTipo>CAE</EmisionTipo>
          <FchVto>20261029</FchVto><PtoVta>3</PtoVta><CbteTipo>1</CbteTipo>
        </ResultGet>
      </FECompConsultarResult>
    </FECompConsultarResponse>"""))

    found = client.consult_invoice(TICKET, 3, 1, 7)

    assert found["number"] == 7
    assert found["doc_tipo"] == 80
    assert found["doc_nro"] == BUYER_CUIT
    assert found["imp_total"] == Decimal("1210.00")
    assert found["cae"] == "76000000000007"
    assert found["cae_expiry"] == date(2026, 10, 29)


def test_consult_invoice_not_found_returns_none():
    client = _client(_envelope("""
    <FECompConsultarResponse xmlns="http://ar.gov.afip.dif.FEV1/">
      <FECompConsultarResult>
        <Errors><Err><Code>602</Code><Msg>No existen datos en nuestros registros para los parametros ingresados.</Msg></Err></Errors>
      </FECompConsultarResult>
    </FECompConsultarResponse>"""))

    assert client.consult_invoice(TICKET, 3, 1, 99) is None


def test_server_status_from_fedummy():
    client = _client(_envelope("""
    <FEDummyResponse xmlns="http://ar.gov.afip.dif.FEV1/">
      <FEDummyResult><AppServer>OK</AppServer><DbServer>OK</DbServer><AuthServer>OK</AuthServer></FEDummyResult>
    </FEDummyResponse>"""))

    assert client.server_status() == {"app_server": "OK", "db_server": "OK", "auth_server": "OK"}
