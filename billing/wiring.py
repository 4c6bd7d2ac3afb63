"""Assemble a production orchestrator from settings."""

from __future__ import annotations

import importlib
from typing import Optional

from sqlalchemy.engine import Engine

from backend.apps.billing.repository import SqlBillingRecordStore, SqlCounterStore, get_engine
from backend.clients.sri.client import AuthorityTransportClient
from backend.core.config import settings
from billing.access_key import AccessKeyGenerator
from billing.documents.generator import DocumentXMLBuilder
from billing.errors import SigningError
from billing.issuer import IssuerConfigRepository
from billing.notifications import LoggingNotifier, Notifier
from billing.numbering import SequenceAllocator
from billing.orchestrator import AuthorizationOrchestrator
from billing.signing import Pkcs12SigningGateway, SigningMaterial, XadesSigner


def _missing_signer(xml: str, material: SigningMaterial) -> str:
    raise SigningError("SRI_XADES_SIGNER is not configured")


def load_signer(path: str) -> XadesSigner:
    if not path:
        return _missing_signer
    module_name, _, attribute = path.partition(":")
    if not attribute:
        raise SigningError(f"signer path must look like 'module:callable', got {path!r}")
    module = importlib.import_module(module_name)
    return getattr(module, attribute)


def build_orchestrator(
    *,
    engine: Optional[Engine] = None,
    transport: Optional[AuthorityTransportClient] = None,
    notifier: Optional[Notifier] = None,
) -> AuthorizationOrchestrator:
    engine = engine or get_engine()
    return AuthorizationOrchestrator(
        allocator=SequenceAllocator(SqlCounterStore(engine)),
        builder=DocumentXMLBuilder(AccessKeyGenerator()),
        signer=Pkcs12SigningGateway(load_signer(settings.SRI_XADES_SIGNER)),
        transport=transport or AuthorityTransportClient(),
        store=SqlBillingRecordStore(engine),
        issuer=IssuerConfigRepository(),
        notifier=notifier or LoggingNotifier(),
    )
