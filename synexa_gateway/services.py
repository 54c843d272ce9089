"""Composition root: builds the long-lived services once per application."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from synexa_gateway.config import Settings
from synexa_gateway.database import make_session_factory
from synexa_gateway.facade import GatewayFacade
from synexa_gateway.gateway import ProviderGateway
from synexa_gateway.ledger import UsageLedger
from synexa_gateway.llm.base import LLMClient
from synexa_gateway.llm.factory import create_llm_client
from synexa_gateway.model_resolver import ModelResolver
from synexa_gateway.rate_limit import RateLimiter
from synexa_gateway.repository import AccountRepository, SqlAlchemyAccountRepository
from synexa_gateway.sync import SyncBroadcaster

logger = logging.getLogger(__name__)

_UNSET = object()


@dataclass
class Services:
    settings: Settings
    repository: AccountRepository
    ledger: UsageLedger
    resolver: ModelResolver
    gateway: ProviderGateway
    broadcaster: SyncBroadcaster
    facade: GatewayFacade
    rate_limiter: RateLimiter


def build_services(
    settings: Settings,
    llm_client=_UNSET,
    repository: Optional[AccountRepository] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> Services:
    """Wire every service from ``settings``.

    ``llm_client`` overrides the provider client (pass None to force demo
    mode); ``repository`` and ``clock`` replace the SQLAlchemy store and the
    wall clock.
    """
    if repository is None:
        repository = SqlAlchemyAccountRepository(make_session_factory(settings.database_url))

    client: Optional[LLMClient] = create_llm_client(settings) if llm_client is _UNSET else llm_client

    ledger = UsageLedger.from_settings(repository, settings, clock=clock)
    resolver = ModelResolver(settings.ai_default_chat_model, settings.family_prefixes)
    gateway = ProviderGateway(client, settings, repository)
    broadcaster = SyncBroadcaster(settings.sync_heartbeat_seconds)
    facade = GatewayFacade(ledger, resolver, gateway, broadcaster, settings)
    rate_limiter = RateLimiter(settings.rate_limit_requests_per_minute)

    logger.info(
        "Services ready: provider=%s (%s), demo_fallback=%s",
        settings.ai_provider, settings.provider_display_name, settings.allow_demo_fallback,
    )
    return Services(
        settings=settings,
        repository=repository,
        ledger=ledger,
        resolver=resolver,
        gateway=gateway,
        broadcaster=broadcaster,
        facade=facade,
        rate_limiter=rate_limiter,
    )
