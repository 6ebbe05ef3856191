"""
Armado del comprobante (letra, importes, alícuotas) a partir de una venta
"""
import logging
from collections import OrderedDict
from datetime import date
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Dict, Optional, Union

from .exceptions import InvoiceDataError
from .models import (
    CBTE_TIPO_BY_LETTER,
    CONCEPTO_PRODUCTOS,
    DOC_TIPO_CONSUMIDOR_FINAL,
    DOC_TIPO_CUIT,
    ISSUER_MONOTRIBUTO,
    IVA_ID_BY_RATE,
    IVA_RECEPTOR_BY_NAME,
    IVA_RECEPTOR_CONSUMIDOR_FINAL,
    IVA_RECEPTOR_RESPONSABLE_INSCRIPTO,
    InvoicePayload,
    Sale,
    TAX_RATE_EXEMPT,
    VatLine,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def money(value: Union[Decimal, int, str]) -> Decimal:
    """Redondeo a centavos, mitad hacia arriba"""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal) -> str:
    return f"{money(value):.2f}"


def is_valid_cuit(cuit: Optional[str]) -> bool:
    """Valida un CUIT/CUIL: 11 dígitos y dígito verificador módulo 11"""
    digits = (cuit or "").strip()
    if len(digits) != 11 or not digits.isdigit():
        return False
    weights = (5, 4, 3, 2, 7, 6, 5, 4, 3, 2)
    total = sum(int(d) * w for d, w in zip(digits[:10], weights))
    check = 11 - (total % 11)
    if check == 11:
        check = 0
    elif check == 10:
        return False
    return check == int(digits[10])


def _buyer_has_cuit(sale: Sale) -> bool:
    return sale.buyer_doc_type == DOC_TIPO_CUIT and bool((sale.buyer_doc_number or "").strip())


def determine_letter(sale: Sale, issuer_iva_condition: str) -> str:
    """
    Decide la letra del comprobante.

    Monotributista emite siempre C. Responsable inscripto emite A a quien tiene CUIT
    y B al resto. Una letra pedida explícitamente gana si es compatible con el emisor.
    """
    issuer = (issuer_iva_condition or "").strip().upper()
    requested = (sale.requested_letter or "").strip().upper() or None

    if issuer == ISSUER_MONOTRIBUTO:
        if requested and requested != "C":
            logger.info(f"Venta {sale.id}: emisor monotributista, se ignora letra pedida {requested}")
        return "C"

    if requested in ("A", "B"):
        if requested == "A" and not _buyer_has_cuit(sale):
            raise InvoiceDataError("Factura A requiere receptor con CUIT (DocTipo 80)")
        return requested
    if requested:
        raise InvoiceDataError(f"Letra {requested} no corresponde a emisor responsable inscripto")

    return "A" if _buyer_has_cuit(sale) else "B"


def _iva_id_for(rate: Decimal) -> int:
    # Decimal("21.00") == Decimal("21") y comparten hash
    iva_id = IVA_ID_BY_RATE.get(Decimal(rate))
    if iva_id is None:
        raise InvoiceDataError(f"Alícuota de IVA desconocida: {rate}")
    return iva_id


def _receptor(sale: Sale, letter: str):
    """(DocTipo, DocNro, CondicionIVAReceptorId)"""
    if not sale.has_buyer_document:
        if letter == "A":
            raise InvoiceDataError("Factura A requiere documento del receptor")
        return DOC_TIPO_CONSUMIDOR_FINAL, "0", IVA_RECEPTOR_CONSUMIDOR_FINAL

    doc_tipo = int(sale.buyer_doc_type)
    doc_nro = (sale.buyer_doc_number or "").strip().replace("-", "")
    if not doc_nro.isdigit():
        raise InvoiceDataError(f"Número de documento inválido: {sale.buyer_doc_number!r}")
    if letter == "A":
        if doc_tipo != DOC_TIPO_CUIT or not is_valid_cuit(doc_nro):
            raise InvoiceDataError(f"Factura A requiere CUIT válido del receptor (recibido {doc_nro})")
    elif doc_tipo == DOC_TIPO_CUIT and not is_valid_cuit(doc_nro):
        raise InvoiceDataError(f"CUIT del receptor inválido: {doc_nro}")

    condition_name = (sale.buyer_iva_condition or "").strip().upper()
    if condition_name:
        condition = IVA_RECEPTOR_BY_NAME.get(condition_name)
        if condition is None:
            raise InvoiceDataError(f"Condición IVA del receptor desconocida: {sale.buyer_iva_condition}")
    elif letter == "A":
        condition = IVA_RECEPTOR_RESPONSABLE_INSCRIPTO
    else:
        condition = IVA_RECEPTOR_CONSUMIDOR_FINAL
    return doc_tipo, doc_nro, condition


def _gross_by_rate(sale: Sale) -> "OrderedDict[Union[Decimal, str], Decimal]":
    """Suma de importes con IVA incluido agrupada por alícuota"""
    groups: "OrderedDict[Union[Decimal, str], Decimal]" = OrderedDict()
    for idx, item in enumerate(sale.items, start=1):
        try:
            quantity = Decimal(item.quantity)
            unit_price = Decimal(item.unit_price)
            discount = Decimal(item.discount_pct or 0)
        except (InvalidOperation, TypeError) as e:
            raise InvoiceDataError(f"Ítem {idx}: importe inválido ({e})") from e
        if quantity <= 0:
            raise InvoiceDataError(f"Ítem {idx}: cantidad debe ser positiva")
        if unit_price < 0:
            raise InvoiceDataError(f"Ítem {idx}: precio unitario negativo")
        if discount < 0 or discount > HUNDRED:
            raise InvoiceDataError(f"Ítem {idx}: descuento fuera de rango ({discount})")

        gross = quantity * unit_price * (HUNDRED - discount) / HUNDRED
        rate = item.tax_rate
        key = TAX_RATE_EXEMPT if rate == TAX_RATE_EXEMPT else Decimal(rate)
        if key != TAX_RATE_EXEMPT:
            _iva_id_for(key)
        groups[key] = groups.get(key, Decimal("0")) + gross
    return groups


def build_invoice_payload(sale: Sale, letter: str, issue_date: date) -> InvoicePayload:
    """
    Calcula importes del comprobante. Los precios de la venta incluyen IVA.

    Por alícuota: base = bruto / (1 + r) redondeado, iva = bruto - base. Así la suma
    de neto + IVA + exento coincide con el total al centavo.

    Raises:
        InvoiceDataError: Si la venta no alcanza para armar un comprobante válido
    """
    letter = (letter or "").strip().upper()
    if letter not in CBTE_TIPO_BY_LETTER:
        raise InvoiceDataError(f"Letra de comprobante inválida: {letter!r}")
    if not sale.items:
        raise InvoiceDataError("La venta no tiene ítems")

    total = money(sale.total)
    if total <= 0:
        raise InvoiceDataError(f"Total de la venta debe ser positivo (recibido {sale.total})")

    groups = _gross_by_rate(sale)
    items_total = money(sum(groups.values(), Decimal("0")))
    if abs(items_total - total) > CENT:
        raise InvoiceDataError(f"Los ítems suman {items_total} pero el total de la venta es {total}")

    doc_tipo, doc_nro, condition = _receptor(sale, letter)

    imp_op_ex = Decimal("0.00")
    imp_neto = Decimal("0.00")
    imp_iva = Decimal("0.00")
    vat_lines = []

    if letter == "C":
        # Monotributo: sin discriminar IVA, todo es neto
        imp_neto = total
    else:
        by_id: Dict[int, VatLine] = {}
        for rate, gross in groups.items():
            gross = money(gross)
            if rate == TAX_RATE_EXEMPT:
                imp_op_ex += gross
                continue
            base = money(gross / (Decimal("1") + Decimal(rate) / HUNDRED))
            amount = gross - base
            iva_id = _iva_id_for(rate)
            prev = by_id.get(iva_id)
            if prev:
                by_id[iva_id] = VatLine(iva_id, prev.base + base, prev.amount + amount)
            else:
                by_id[iva_id] = VatLine(iva_id, base, amount)
        vat_lines = list(by_id.values())
        imp_neto = money(sum((line.base for line in vat_lines), Decimal("0")))
        imp_iva = money(sum((line.amount for line in vat_lines), Decimal("0")))
        imp_op_ex = money(imp_op_ex)
        # La diferencia de redondeo entre ítems y total se absorbe en el neto
        drift = total - (imp_neto + imp_iva + imp_op_ex)
        if drift and vat_lines:
            first = vat_lines[0]
            vat_lines[0] = VatLine(first.iva_id, first.base + drift, first.amount)
            imp_neto += drift
        elif drift:
            imp_op_ex += drift

    return InvoicePayload(
        letter=letter,
        cbte_tipo=CBTE_TIPO_BY_LETTER[letter],
        concepto=CONCEPTO_PRODUCTOS,
        doc_tipo=doc_tipo,
        doc_nro=doc_nro,
        condicion_iva_receptor=condition,
        issue_date=issue_date,
        imp_total=total,
        imp_tot_conc=Decimal("0.00"),
        imp_neto=money(imp_neto),
        imp_op_ex=money(imp_op_ex),
        imp_iva=money(imp_iva),
        imp_trib=Decimal("0.00"),
        vat_lines=vat_lines,
    )
