from __future__ import annotations

import itertools
from decimal import Decimal
from xml.etree import ElementTree as ET

import pytest

from billing.access_key import AccessKeyGenerator, is_valid_access_key
from billing.documents import DocumentXMLBuilder, parse_totals, sanitize_text, validate_document_xml
from billing.dto import Buyer, CreditNoteReason, DocumentKind, FiscalDocument, ModifiedDocument, build_line
from billing.errors import ValidationError

from sri_fakes import ISSUER, TODAY, invoice_document


@pytest.fixture
def builder() -> DocumentXMLBuilder:
    codes = itertools.count(1000)
    return DocumentXMLBuilder(AccessKeyGenerator(numeric_code=lambda: next(codes)))


def _numbered(document: FiscalDocument, sequence: str = "000000007") -> FiscalDocument:
    document.establishment = ISSUER.establishment
    document.emission_point = ISSUER.emission_point
    document.sequence = sequence
    return document


def _credit_note() -> FiscalDocument:
    original = invoice_document()
    return _numbered(
        FiscalDocument(
            kind=DocumentKind.CREDIT_NOTE,
            emission_date=TODAY,
            buyer=original.buyer,
            lines=[build_line("JUG-02", "Jugo natural", 1, "2.30", 15)],
            modified=ModifiedDocument(
                record_id="inv-1",
                access_key="1" * 49,
                document_number="001-002-000000003",
                emission_date=TODAY,
            ),
            reason=CreditNoteReason.MERCHANDISE_RETURN,
        ),
        sequence="000000001",
    )


def test_invoice_structure(builder: DocumentXMLBuilder) -> None:
    document = _numbered(invoice_document())

    xml = builder.build(document, ISSUER)
    root = ET.fromstring(xml)

    assert root.tag == "factura"
    assert root.attrib == {"id": "comprobante", "version": "1.1.0"}
    assert root.findtext("infoTributaria/claveAcceso") == document.access_key
    assert root.findtext("infoTributaria/codDoc") == "01"
    assert root.findtext("infoTributaria/secuencial") == "000000007"
    assert root.findtext("infoTributaria/nombreComercial") == "La Esquina"
    assert root.findtext("infoFactura/fechaEmision") == "17/10/2026"
    assert root.findtext("infoFactura/obligadoContabilidad") == "SI"
    assert root.findtext("infoFactura/tipoIdentificacionComprador") == "05"
    assert root.findtext("infoFactura/razonSocialComprador") == "Maria Jose Pena"
    assert root.findtext("infoFactura/importeTotal") == "19.30"
    assert root.findtext("infoFactura/pagos/pago/total") == "19.30"
    assert [d.findtext("codigoPrincipal") for d in root.iter("detalle")] == ["ALM-01", "JUG-02"]
    first_line = root.find("detalles/detalle")
    assert first_line.findtext("cantidad") == "2.000000"
    assert first_line.findtext("precioUnitario") == "7.390000"
    assert first_line.findtext("precioTotalSinImpuesto") == "14.78"
    assert first_line.findtext("impuestos/impuesto/codigoPorcentaje") == "4"
    assert first_line.findtext("impuestos/impuesto/tarifa") == "15"
    extras = {node.get("nombre"): node.text for node in root.iter("campoAdicional")}
    assert extras == {"Direccion": "Calle Larga 5-10", "Telefono": "0991234567", "Email": "maria.pena@example.com"}


def test_invoice_totals_are_consistent(builder: DocumentXMLBuilder) -> None:
    xml = builder.build(_numbered(invoice_document()), ISSUER)

    totals = parse_totals(xml)
    validation = validate_document_xml(xml)

    assert totals.subtotal == totals.line_base_sum == Decimal("16.78")
    assert totals.tax == totals.line_tax_sum == Decimal("2.52")
    assert totals.total == Decimal("19.30")
    assert validation.ok, validation.messages
    assert is_valid_access_key(validation.access_key)


def test_every_build_assigns_a_new_key(builder: DocumentXMLBuilder) -> None:
    document = _numbered(invoice_document())

    builder.build(document, ISSUER)
    first = document.access_key
    builder.build(document, ISSUER)

    assert document.access_key != first
    assert document.access_key[30:39] == first[30:39]


def test_credit_note_structure(builder: DocumentXMLBuilder) -> None:
    document = _credit_note()

    xml = builder.build(document, ISSUER)
    root = ET.fromstring(xml)

    assert root.tag == "notaCredito"
    assert root.findtext("infoTributaria/codDoc") == "04"
    info = root.find("infoNotaCredito")
    assert info.findtext("codDocModificado") == "01"
    assert info.findtext("numDocModificado") == "001-002-000000003"
    assert info.findtext("fechaEmisionDocSustento") == "17/10/2026"
    assert info.findtext("valorModificacion") == "2.30"
    assert info.findtext("motivo") == "Devolucion de mercaderia"
    assert root.findtext("detalles/detalle/codigoInterno") == "JUG-02"
    assert validate_document_xml(xml).ok


def test_credit_note_without_reference_is_refused(builder: DocumentXMLBuilder) -> None:
    document = _credit_note()
    document.modified = None

    with pytest.raises(ValidationError):
        builder.build(document, ISSUER)
    with pytest.raises(ValidationError, match="modified document reference"):
        builder._render_credit_note(document, ISSUER, document.totals())


def test_unnumbered_document_is_refused(builder: DocumentXMLBuilder) -> None:
    with pytest.raises(ValidationError):
        builder.build(invoice_document(), ISSUER)


def test_markup_in_buyer_data_is_escaped(builder: DocumentXMLBuilder) -> None:
    buyer = Buyer(identification="1790012345001", name='Ñandú & "Hijos" <Cía>', address="Av. 6 de Diciembre\x07")
    document = _numbered(invoice_document(buyer=buyer))

    xml = builder.build(document, ISSUER)
    root = ET.fromstring(xml)

    assert root.findtext("infoFactura/razonSocialComprador") == 'Nandu & "Hijos" <Cia>'
    assert root.findtext("infoFactura/tipoIdentificacionComprador") == "04"
    assert "\x07" not in xml


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("Peña", "Pena"),
        ("A & B", "A &amp; B"),
        ("<tag>", "&lt;tag&gt;"),
        ("it's \"ok\"", "it&apos;s &quot;ok&quot;"),
        ("line\x00break\x1f", "linebreak"),
        (None, ""),
    ],
)
def test_sanitize_text(raw, expected) -> None:
    assert sanitize_text(raw) == expected


def test_validator_reports_broken_documents() -> None:
    assert not validate_document_xml("<factura>").ok

    tampered = validate_document_xml(
        "<factura><infoTributaria><claveAcceso>123</claveAcceso></infoTributaria>"
        "<infoFactura><totalSinImpuestos>1.00</totalSinImpuestos><importeTotal>5.00</importeTotal></infoFactura>"
        "</factura>"
    )
    assert not tampered.ok
    assert "claveAcceso invalid" in tampered.messages
