from __future__ import annotations

import base64
import logging
import time
from datetime import datetime
from typing import List, Optional
from xml.etree import ElementTree as ET

import httpx

from backend.core.config import Settings, settings
from backend.core.observability import metrics
from billing.errors import TransportError

from .dto import (
    AuthorityMessage,
    Authorized,
    NotAuthorized,
    NotFound,
    Processing,
    QueryResult,
    Received,
    Returned,
    SubmitResult,
    Unknown,
)

logger = logging.getLogger(__name__)

RECEPTION_NS = "http://ec.gob.sri.ws.recepcion"
AUTHORIZATION_NS = "http://ec.gob.sri.ws.autorizacion"
SOAP_HEADERS = {"Content-Type": "text/xml;charset=UTF-8", "SOAPAction": ""}

_RECEPTION_ENVELOPE = (
    '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/" '
    f'xmlns:ec="{RECEPTION_NS}">'
    "<soapenv:Header/><soapenv:Body><ec:validarComprobante>"
    "<xml>{payload}</xml>"
    "</ec:validarComprobante></soapenv:Body></soapenv:Envelope>"
)
_AUTHORIZATION_ENVELOPE = (
    '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/" '
    f'xmlns:ec="{AUTHORIZATION_NS}">'
    "<soapenv:Header/><soapenv:Body><ec:autorizacionComprobante>"
    "<claveAccesoComprobante>{access_key}</claveAccesoComprobante>"
    "</ec:autorizacionComprobante></soapenv:Body></soapenv:Envelope>"
)

_TIMESTAMP_FORMATS = ("%d/%m/%Y %H:%M:%S", "%d/%m/%Y %H:%M")


def _strip_ns(tag: str) -> str:
    return tag.split("}", 1)[1] if "}" in tag else tag


def _find(element: ET.Element, name: str) -> Optional[ET.Element]:
    for node in element.iter():
        if _strip_ns(node.tag) == name:
            return node
    return None


def _findall(element: ET.Element, name: str) -> List[ET.Element]:
    return [node for node in element.iter() if _strip_ns(node.tag) == name]


def _child_text(element: ET.Element, name: str) -> str:
    for child in element:
        if _strip_ns(child.tag) == name:
            return (child.text or "").strip()
    return ""


def _parse_messages(element: Optional[ET.Element]) -> List[AuthorityMessage]:
    if element is None:
        return []
    return [
        AuthorityMessage(
            identifier=_child_text(node, "identificador"),
            message=_child_text(node, "mensaje"),
            additional_info=_child_text(node, "informacionAdicional"),
            type=_child_text(node, "tipo"),
        )
        for node in _findall(element, "mensaje")
        if len(node)
    ]


def parse_timestamp(value: str) -> Optional[datetime]:
    value = (value or "").strip()
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        pass
    for fmt in _TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    logger.warning("unparseable authorization timestamp", extra={"value": value})
    return None


def parse_reception_response(body: bytes | str) -> SubmitResult:
    try:
        root = ET.fromstring(body)
    except ET.ParseError:
        return Unknown(state="UNPARSEABLE")
    response = _find(root, "RespuestaRecepcionComprobante")
    if response is None:
        return Unknown(state="MISSING")
    state = _child_text(response, "estado").upper()
    messages = _parse_messages(_find(response, "comprobantes"))
    if state == "RECIBIDA":
        return Received(messages=messages)
    if state == "DEVUELTA":
        return Returned(messages=messages)
    return Unknown(state=state, messages=messages)


def parse_authorization_response(body: bytes | str) -> QueryResult:
    try:
        root = ET.fromstring(body)
    except ET.ParseError as exc:
        raise TransportError(f"authorization response is not XML: {exc}") from exc
    response = _find(root, "RespuestaAutorizacionComprobante")
    if response is None:
        raise TransportError("authorization response without RespuestaAutorizacionComprobante")

    count = _child_text(response, "numeroComprobantes")
    records = _findall(response, "autorizacion")
    if count == "0" or not records:
        return NotFound()

    # The authority lists every attempt for a key; an authorized one wins
    chosen = next(
        (node for node in records if _child_text(node, "estado").upper() == "AUTORIZADO"),
        records[0],
    )
    state = _child_text(chosen, "estado").upper()
    messages = _parse_messages(_find(chosen, "mensajes"))
    if state == "AUTORIZADO":
        return Authorized(
            number=_child_text(chosen, "numeroAutorizacion"),
            timestamp=parse_timestamp(_child_text(chosen, "fechaAutorizacion")),
            authorized_xml=_child_text(chosen, "comprobante") or None,
            messages=messages,
        )
    if state == "NO AUTORIZADO":
        return NotAuthorized(messages=messages)
    return Processing(messages=messages)


class AuthorityTransportClient:
    """SOAP client for the authority's offline reception and authorization services."""

    def __init__(
        self,
        *,
        config: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._config = config or settings
        timeout_s = self._config.SRI_TIMEOUT_MS / 1000.0
        self.timeout = httpx.Timeout(timeout_s, connect=timeout_s)
        self.client = httpx.AsyncClient(
            timeout=self.timeout,
            verify=True,
            follow_redirects=False,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "AuthorityTransportClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def reception_url(self, is_production: bool) -> str:
        if is_production:
            return self._config.SRI_RECEPTION_URL_PROD
        return self._config.SRI_RECEPTION_URL_TEST

    def authorization_url(self, is_production: bool) -> str:
        if is_production:
            return self._config.SRI_AUTHORIZATION_URL_PROD
        return self._config.SRI_AUTHORIZATION_URL_TEST

    async def submit(self, signed_xml: str, is_production: bool) -> SubmitResult:
        payload = base64.b64encode(signed_xml.encode("utf-8")).decode("ascii")
        envelope = _RECEPTION_ENVELOPE.format(payload=payload)
        body = await self._post("submit", self.reception_url(is_production), envelope)
        result = parse_reception_response(body)
        metrics.increment_reception(type(result).__name__.lower())
        return result

    async def query_authorization(self, access_key: str, is_production: bool) -> QueryResult:
        envelope = _AUTHORIZATION_ENVELOPE.format(access_key=access_key)
        body = await self._post("query", self.authorization_url(is_production), envelope)
        return parse_authorization_response(body)

    async def _post(self, operation: str, url: str, envelope: str) -> bytes:
        started = time.monotonic()
        try:
            response = await self.client.post(url, content=envelope.encode("utf-8"), headers=SOAP_HEADERS)
        except httpx.TimeoutException as exc:
            metrics.increment_transport_failures(operation)
            raise TransportError(f"{operation}: timeout contacting authority") from exc
        except httpx.HTTPError as exc:
            metrics.increment_transport_failures(operation)
            raise TransportError(f"{operation}: {exc.__class__.__name__}: {exc}") from exc
        finally:
            metrics.observe_duration(started, "sri_request_duration_ms", {"operation": operation})

        if response.status_code >= 400:
            metrics.increment_transport_failures(operation)
            raise TransportError(
                f"{operation}: authority answered HTTP {response.status_code}",
                status_code=response.status_code,
            )
        logger.debug(
            "authority response",
            extra={"operation": operation, "status_code": response.status_code},
        )
        return response.content
