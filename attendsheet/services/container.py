"""
Service wiring. ``build_services`` is called once from the app lifespan;
tests call it with fakes for the channel provider and the archive store.
"""

from __future__ import annotations

from dataclasses import dataclass

from attendsheet.core.clock import Clock, SystemClock
from attendsheet.core.config import Settings
from attendsheet.db.session import SessionFactory
from attendsheet.services.archive import (ArchiveReconciler, ArchiveStore,
                                          HttpArchiveStore)
from attendsheet.services.audit import AuditSink
from attendsheet.services.channels import ChannelProvider, HttpChannelProvider
from attendsheet.services.directory import EmployeeDirectory, PassthroughDirectory
from attendsheet.services.dispatcher import NotificationDispatcher
from attendsheet.services.rule_store import RuleConfigStore
from attendsheet.services.scheduler import AutoConfirmScheduler
from attendsheet.services.sheets import SheetService


@dataclass
class Services:
    clock: Clock
    audit: AuditSink
    rules: RuleConfigStore
    scheduler: AutoConfirmScheduler
    sheets: SheetService
    archive: ArchiveReconciler
    dispatcher: NotificationDispatcher
    channels: ChannelProvider
    archive_store: ArchiveStore

    async def aclose(self) -> None:
        await self.scheduler.shutdown()
        await self.archive.shutdown()
        await self.audit.drain()
        for adapter in (self.channels, self.archive_store):
            close = getattr(adapter, "aclose", None)
            if close is not None:
                await close()


def build_services(
    session_factory: SessionFactory,
    settings: Settings,
    channels: ChannelProvider | None = None,
    archive_store: ArchiveStore | None = None,
    directory: EmployeeDirectory | None = None,
    clock: Clock | None = None,
) -> Services:
    clock = clock or SystemClock()
    channels = channels or HttpChannelProvider(
        settings.CHANNEL_BASE_URL, timeout=settings.CHANNEL_TIMEOUT_SECONDS
    )
    archive_store = archive_store or HttpArchiveStore(settings.ARCHIVE_BASE_URL)

    audit = AuditSink(session_factory, clock)
    rules = RuleConfigStore(session_factory, audit, clock)
    scheduler = AutoConfirmScheduler(
        session_factory, audit, clock, lookahead_hours=settings.AUTO_CONFIRM_LOOKAHEAD_HOURS
    )
    archive = ArchiveReconciler(
        session_factory,
        archive_store,
        audit,
        prefix=settings.ARCHIVE_PREFIX,
        font_path=settings.ARCHIVE_FONT_PATH,
    )
    dispatcher = NotificationDispatcher(
        session_factory,
        channels,
        directory or PassthroughDirectory(),
        audit,
        archive=archive,
        clock=clock,
        timeout=settings.CHANNEL_TIMEOUT_SECONDS,
        confirm_url_template=settings.CONFIRM_URL_TEMPLATE,
    )
    sheets = SheetService(session_factory, rules, scheduler, audit, clock)
    return Services(
        clock=clock,
        audit=audit,
        rules=rules,
        scheduler=scheduler,
        sheets=sheets,
        archive=archive,
        dispatcher=dispatcher,
        channels=channels,
        archive_store=archive_store,
    )
