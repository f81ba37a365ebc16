from __future__ import annotations

import logging

from core.config import AppConfig
from database.base import Database
from database.migrations.runner import run_migrations
from database.repositories import (
    CategoryRepository,
    CommentRepository,
    CounterRepository,
    OutboxRepository,
    StatisticsRepository,
    TicketRepository,
    UserRepository,
    VoteRepository,
)
from services.blob_store import LocalBlobStore
from services.cache import CacheBackend, build_cache
from services.category_service import CategoryService
from services.comment_service import CommentService
from services.identity_service import IdentityService
from services.notification_service import (
    NotificationDispatcher,
    NotificationSender,
    NotificationService,
    build_sender,
)
from services.statistics_service import StatisticsService
from services.ticket_service import TicketService, TicketServiceDeps
from services.user_service import UserService

LOGGER = logging.getLogger(__name__)


class HelpDeskApp:
    """Owns the database, cache and every service for one running process."""

    def __init__(self, config: AppConfig, sender: NotificationSender | None = None) -> None:
        self.config = config
        self.database = Database(
            url=config.database.url,
            timeout_seconds=config.database.timeout_seconds,
            pool_min_size=config.database.pool_min_size,
            pool_max_size=config.database.pool_max_size,
        )
        self.cache: CacheBackend | None = None
        self.sender = sender or build_sender(config.notifications)
        self.started = False

        # Repositories and services are initialized in start().
        self.user_repo: UserRepository
        self.category_repo: CategoryRepository
        self.counter_repo: CounterRepository
        self.ticket_repo: TicketRepository
        self.vote_repo: VoteRepository
        self.comment_repo: CommentRepository
        self.outbox_repo: OutboxRepository
        self.stats_repo: StatisticsRepository

        self.identity: IdentityService
        self.blob_store: LocalBlobStore
        self.notifications: NotificationService
        self.dispatcher: NotificationDispatcher
        self.categories: CategoryService
        self.tickets: TicketService
        self.comments: CommentService
        self.statistics: StatisticsService
        self.users: UserService

    async def start(self, *, run_dispatcher: bool = True) -> None:
        if self.started:
            return
        await self.database.connect()
        await run_migrations(self.database)
        self.cache = await build_cache(self.config.redis)

        self.user_repo = UserRepository(self.database)
        self.category_repo = CategoryRepository(self.database)
        self.counter_repo = CounterRepository(self.database)
        self.ticket_repo = TicketRepository(self.database)
        self.vote_repo = VoteRepository(self.database)
        self.comment_repo = CommentRepository(self.database)
        self.outbox_repo = OutboxRepository(self.database)
        self.stats_repo = StatisticsRepository(self.database)

        self.dispatcher = NotificationDispatcher(self.config.notifications, self.outbox_repo, self.sender)
        self.notifications = NotificationService(
            self.config.notifications, self.outbox_repo, on_enqueued=self.dispatcher.wake
        )
        self.identity = IdentityService(self.config.auth, self.user_repo)
        self.blob_store = LocalBlobStore(self.config.uploads)
        self.categories = CategoryService(self.category_repo, self.ticket_repo)
        self.tickets = TicketService(
            self.config,
            TicketServiceDeps(
                ticket_repo=self.ticket_repo,
                category_repo=self.category_repo,
                user_repo=self.user_repo,
                vote_repo=self.vote_repo,
                counter_repo=self.counter_repo,
                cache=self.cache,
                notifications=self.notifications,
            ),
        )
        self.comments = CommentService(
            self.tickets,
            self.ticket_repo,
            self.comment_repo,
            self.user_repo,
            self.notifications,
            max_attachments=self.config.uploads.max_files_per_comment,
        )
        self.statistics = StatisticsService(self.stats_repo, self.ticket_repo, self.user_repo, self.tickets)
        self.users = UserService(self.user_repo, self.ticket_repo)

        await self.users.bootstrap_admin(self.config.bootstrap.admin_username, self.config.bootstrap.admin_email)
        if run_dispatcher and self.config.notifications.enabled:
            self.dispatcher.start()
        self.started = True
        LOGGER.info("Help desk ready. database=%s cache=%s", self.database.driver, type(self.cache).__name__)

    async def close(self) -> None:
        if self.started:
            await self.dispatcher.stop()
        await self.database.close()
        if self.cache:
            await self.cache.close()
            self.cache = None
        self.started = False

    async def __aenter__(self) -> HelpDeskApp:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
