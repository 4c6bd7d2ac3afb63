"""XML rendering for SRI factura (v1.1.0) and notaCredito (v1.1.0)."""

from __future__ import annotations

import re
import textwrap
import unicodedata
from decimal import Decimal
from typing import List
from xml.sax.saxutils import escape as xml_escape

from billing.access_key import AccessKeyGenerator
from billing.dto import DocumentKind, FiscalDocument, IssuerProfile, LineItem
from billing.errors import ValidationError
from billing.taxes import VAT_TAX_CODE, DocumentTotals, percentage_code

DOCUMENT_VERSION = "1.1.0"
CURRENCY = "DOLAR"

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_QUOTE_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def sanitize_text(value: object) -> str:
    """Strip accents, escape markup characters and drop control characters."""

    if value is None:
        return ""
    decomposed = unicodedata.normalize("NFD", str(value))
    plain = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    escaped = xml_escape(plain, _QUOTE_ENTITIES)
    return _CONTROL_CHARS.sub("", escaped)


def _money(value: Decimal) -> str:
    return f"{value.quantize(Decimal('0.01')):.2f}"


def _price(value: Decimal) -> str:
    return f"{value.quantize(Decimal('0.000001')):.6f}"


def _rate(value: Decimal) -> str:
    return format(value.normalize(), "f")


def _render_totals(totals: DocumentTotals, indent: str) -> str:
    fragments = [
        textwrap.dedent(
            f"""
            <totalImpuesto>
              <codigo>{VAT_TAX_CODE}</codigo>
              <codigoPorcentaje>{bucket.code}</codigoPorcentaje>
              <baseImponible>{_money(bucket.tax_base)}</baseImponible>
              <valor>{_money(bucket.tax_value)}</valor>
            </totalImpuesto>
            """
        ).strip()
        for bucket in totals.by_rate
    ]
    return textwrap.indent("\n".join(fragments), indent)


def _render_line(item: LineItem, kind: DocumentKind) -> str:
    code_tag = "codigoPrincipal" if kind is DocumentKind.INVOICE else "codigoInterno"
    return textwrap.dedent(
        f"""
        <detalle>
          <{code_tag}>{sanitize_text(item.code)}</{code_tag}>
          <descripcion>{sanitize_text(item.description)}</descripcion>
          <cantidad>{_price(item.quantity)}</cantidad>
          <precioUnitario>{_price(item.net_unit_price)}</precioUnitario>
          <descuento>0.00</descuento>
          <precioTotalSinImpuesto>{_money(item.tax_base)}</precioTotalSinImpuesto>
          <impuestos>
            <impuesto>
              <codigo>{VAT_TAX_CODE}</codigo>
              <codigoPorcentaje>{percentage_code(item.rate)}</codigoPorcentaje>
              <tarifa>{_rate(item.rate)}</tarifa>
              <baseImponible>{_money(item.tax_base)}</baseImponible>
              <valor>{_money(item.tax_value)}</valor>
            </impuesto>
          </impuestos>
        </detalle>
        """
    ).strip()


def _render_additional(document: FiscalDocument) -> str:
    fields: List[tuple[str, str]] = []
    buyer = document.buyer
    if buyer.address:
        fields.append(("Direccion", buyer.address))
    if buyer.phone:
        fields.append(("Telefono", buyer.phone))
    if buyer.email:
        fields.append(("Email", buyer.email))
    if not fields:
        return ""
    rows = "\n".join(
        f'    <campoAdicional nombre="{name}">{sanitize_text(value)}</campoAdicional>'
        for name, value in fields
    )
    return f"  <infoAdicional>\n{rows}\n  </infoAdicional>\n"


class DocumentXMLBuilder:
    """Renders unsigned XML and assigns a fresh access key on every build."""

    def __init__(self, key_generator: AccessKeyGenerator) -> None:
        self._keys = key_generator

    def build(self, document: FiscalDocument, issuer: IssuerProfile) -> str:
        if document.sequence is None:
            raise ValidationError("sequence must be allocated before rendering")
        if document.kind is DocumentKind.CREDIT_NOTE and document.modified is None:
            raise ValidationError("credit note requires the modified document reference")

        document.access_key = self._keys.generate(
            document.emission_date,
            document.kind.value,
            issuer.ruc,
            issuer.environment,
            document.establishment,
            document.emission_point,
            document.sequence,
        )
        totals = document.totals()
        if document.kind is DocumentKind.INVOICE:
            return self._render_invoice(document, issuer, totals)
        return self._render_credit_note(document, issuer, totals)

    def _info_tributaria(self, document: FiscalDocument, issuer: IssuerProfile) -> str:
        commercial = (
            f"    <nombreComercial>{sanitize_text(issuer.commercial_name)}</nombreComercial>\n"
            if issuer.commercial_name
            else ""
        )
        return (
            "  <infoTributaria>\n"
            f"    <ambiente>{issuer.environment}</ambiente>\n"
            "    <tipoEmision>1</tipoEmision>\n"
            f"    <razonSocial>{sanitize_text(issuer.business_name)}</razonSocial>\n"
            f"{commercial}"
            f"    <ruc>{issuer.ruc}</ruc>\n"
            f"    <claveAcceso>{document.access_key}</claveAcceso>\n"
            f"    <codDoc>{document.kind.value}</codDoc>\n"
            f"    <estab>{document.establishment}</estab>\n"
            f"    <ptoEmi>{document.emission_point}</ptoEmi>\n"
            f"    <secuencial>{document.sequence}</secuencial>\n"
            f"    <dirMatriz>{sanitize_text(issuer.matrix_address)}</dirMatriz>\n"
            "  </infoTributaria>\n"
        )

    def _buyer_block(self, document: FiscalDocument, issuer: IssuerProfile) -> str:
        buyer = document.buyer
        special = (
            f"    <contribuyenteEspecial>{sanitize_text(issuer.special_taxpayer)}</contribuyenteEspecial>\n"
            if issuer.special_taxpayer
            else ""
        )
        return (
            f"    <fechaEmision>{document.emission_date:%d/%m/%Y}</fechaEmision>\n"
            f"    <dirEstablecimiento>{sanitize_text(issuer.establishment_address)}</dirEstablecimiento>\n"
            f"{special}"
            f"    <obligadoContabilidad>{'SI' if issuer.keeps_accounting else 'NO'}</obligadoContabilidad>\n"
            f"    <tipoIdentificacionComprador>{buyer.identification_type}</tipoIdentificacionComprador>\n"
            f"    <razonSocialComprador>{sanitize_text(buyer.name)}</razonSocialComprador>\n"
            f"    <identificacionComprador>{sanitize_text(buyer.identification)}</identificacionComprador>\n"
        )

    def _render_invoice(self, document: FiscalDocument, issuer: IssuerProfile, totals: DocumentTotals) -> str:
        details = "\n".join(_render_line(item, document.kind) for item in document.lines)
        return (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            f'<factura id="comprobante" version="{DOCUMENT_VERSION}">\n'
            f"{self._info_tributaria(document, issuer)}"
            "  <infoFactura>\n"
            f"{self._buyer_block(document, issuer)}"
            f"    <totalSinImpuestos>{_money(totals.subtotal)}</totalSinImpuestos>\n"
            "    <totalDescuento>0.00</totalDescuento>\n"
            "    <totalConImpuestos>\n"
            f"{_render_totals(totals, '      ')}\n"
            "    </totalConImpuestos>\n"
            "    <propina>0.00</propina>\n"
            f"    <importeTotal>{_money(totals.total)}</importeTotal>\n"
            f"    <moneda>{CURRENCY}</moneda>\n"
            "    <pagos>\n"
            "      <pago>\n"
            f"        <formaPago>{sanitize_text(document.payment_method)}</formaPago>\n"
            f"        <total>{_money(totals.total)}</total>\n"
            "        <plazo>0</plazo>\n"
            "        <unidadTiempo>dias</unidadTiempo>\n"
            "      </pago>\n"
            "    </pagos>\n"
            "  </infoFactura>\n"
            "  <detalles>\n"
            f"{textwrap.indent(details, '    ')}\n"
            "  </detalles>\n"
            f"{_render_additional(document)}"
            "</factura>\n"
        )

    def _render_credit_note(self, document: FiscalDocument, issuer: IssuerProfile, totals: DocumentTotals) -> str:
        modified = document.modified
        if modified is None:
            raise ValidationError("credit note requires the modified document reference")
        details = "\n".join(_render_line(item, document.kind) for item in document.lines)
        return (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            f'<notaCredito id="comprobante" version="{DOCUMENT_VERSION}">\n'
            f"{self._info_tributaria(document, issuer)}"
            "  <infoNotaCredito>\n"
            f"{self._buyer_block(document, issuer)}"
            f"    <codDocModificado>{DocumentKind.INVOICE.value}</codDocModificado>\n"
            f"    <numDocModificado>{sanitize_text(modified.document_number)}</numDocModificado>\n"
            f"    <fechaEmisionDocSustento>{modified.emission_date:%d/%m/%Y}</fechaEmisionDocSustento>\n"
            f"    <totalSinImpuestos>{_money(totals.subtotal)}</totalSinImpuestos>\n"
            f"    <valorModificacion>{_money(totals.total)}</valorModificacion>\n"
            f"    <moneda>{CURRENCY}</moneda>\n"
            "    <totalConImpuestos>\n"
            f"{_render_totals(totals, '      ')}\n"
            "    </totalConImpuestos>\n"
            f"    <motivo>{sanitize_text(document.reason_text)}</motivo>\n"
            "  </infoNotaCredito>\n"
            "  <detalles>\n"
            f"{textwrap.indent(details, '    ')}\n"
            "  </detalles>\n"
            f"{_render_additional(document)}"
            "</notaCredito>\n"
        )
