"""
Wiring for the store, adapters and orchestrators.

Everything a request handler or CLI command needs is built here once and
passed in explicitly; nothing below holds module-level client state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import structlog
from openai import AsyncOpenAI

from loancall.billing import BillingWebhookHandler
from loancall.config import Settings
from loancall.database import Database
from loancall.extraction import Extractor
from loancall.los import EncompassClient, LOSPushOrchestrator
from loancall.processor import CallProcessor
from loancall.storage import ArtifactStore
from loancall.transcription import Transcriber

log = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    db: Database
    store: ArtifactStore
    processor: CallProcessor
    pusher: LOSPushOrchestrator
    billing: BillingWebhookHandler
    openai_client: Optional[AsyncOpenAI] = None
    los_client: Optional[EncompassClient] = None
    started: bool = field(default=False, init=False)

    @classmethod
    def build(cls, settings: Settings) -> "Services":
        db = Database(settings.database_path)
        store = ArtifactStore(
            settings.storage_dir,
            settings.public_base_url,
            fetch_timeout=settings.artifact_fetch_timeout,
        )
        openai_client = None
        if settings.openai_api_key:
            openai_client = AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                max_retries=0,
            )
        else:
            log.warning("openai_not_configured", detail="call processing will fail until OPENAI_API_KEY is set")
        transcriber = Transcriber(
            openai_client,
            model=settings.transcription_model,
            timeout=settings.transcription_timeout,
        )
        extractor = Extractor(
            openai_client,
            model=settings.extraction_model,
            timeout=settings.extraction_timeout,
        )
        los_client = EncompassClient(settings)
        return cls(
            settings=settings,
            db=db,
            store=store,
            processor=CallProcessor(settings, db, store, transcriber, extractor),
            pusher=LOSPushOrchestrator(db, los_client, timeout=settings.los_timeout),
            billing=BillingWebhookHandler(
                db,
                webhook_secret=settings.stripe_webhook_secret,
                price_plans=settings.stripe_price_plans,
                default_plan=settings.default_plan,
            ),
            openai_client=openai_client,
            los_client=los_client,
        )

    async def start(self) -> None:
        self.settings.ensure_dirs()
        await self.db.connect()
        self.started = True
        log.info(
            "services_started",
            db=str(self.settings.database_path),
            los_simulated=self.los_client.simulated if self.los_client else None,
        )

    async def stop(self) -> None:
        await self.store.close()
        if self.los_client:
            await self.los_client.close()
        if self.openai_client:
            await self.openai_client.close()
        await self.db.close()
        self.started = False
        log.info("services_stopped")
