from __future__ import annotations

import logging
from dataclasses import dataclass

from .cache import ResolutionCache
from .classifier import Conventions
from .provider import ProviderClient
from .reconcile import BatchReconciler
from .repositories import SqliteRepository
from .resolver import AssetProvider, Resolver
from .seeds import seed_cache
from .settings import Settings
from .webhooks import WebhookReconciler


logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    conventions: Conventions
    cache: ResolutionCache
    provider: AssetProvider
    repo: SqliteRepository
    resolver: Resolver
    webhooks: WebhookReconciler

    def batch(self, *, dry_run: bool = False, concurrency: int | None = None) -> BatchReconciler:
        return BatchReconciler(
            self.resolver,
            self.repo,
            concurrency=concurrency or self.settings.GV_RECONCILE_CONCURRENCY,
            dry_run=dry_run,
        )

    async def aclose(self) -> None:
        await self.resolver.drain()
        close = getattr(self.provider, "aclose", None)
        if close is not None:
            await close()


def build_services(settings: Settings, *, provider: AssetProvider | None = None) -> Services:
    conventions = Conventions.from_settings(settings)
    cache = ResolutionCache(transient_ttl=settings.GV_CACHE_TRANSIENT_TTL_SEC)
    seed_cache(cache, settings.GV_SEED_FILE, conventions)
    if provider is None:
        provider = ProviderClient.from_settings(settings)
        if not (settings.GV_PROVIDER_TOKEN_ID and settings.GV_PROVIDER_TOKEN_SECRET):
            logger.warning("Provider credentials not configured; asset lookups will be unauthenticated")
    repo = SqliteRepository(settings, conventions=conventions)
    resolver = Resolver(cache, provider, conventions=conventions, timeout=settings.GV_PROVIDER_TIMEOUT_SEC)
    return Services(
        settings=settings,
        conventions=conventions,
        cache=cache,
        provider=provider,
        repo=repo,
        resolver=resolver,
        webhooks=WebhookReconciler(cache, repo, conventions=conventions),
    )
