from __future__ import annotations

import logging
from typing import List, Optional

from devicehub.core.config import Settings, settings as default_settings
from devicehub.db.session import get_session
from devicehub.services.background import PeriodicTask, cleanup_expired_sessions
from devicehub.services.permission_cache import PermissionCache, Resolver
from devicehub.services.permissions import PermissionSet, resolve_permissions

logger = logging.getLogger(__name__)


def resolve_user_permissions(user_id: int) -> PermissionSet:
    with get_session() as session:
        return resolve_permissions(session, user_id)


class AuthContainer:
    """Process-wide owner of the permission cache and its background jobs."""

    def __init__(self, config: Optional[Settings] = None, resolver: Optional[Resolver] = None) -> None:
        self.settings = config or default_settings
        self.cache = PermissionCache(
            resolver or resolve_user_permissions,
            ttl_seconds=self.settings.permission_cache_ttl_seconds,
        )
        self.tasks: List[PeriodicTask] = [
            PeriodicTask(
                "permission-cache-sweep",
                self.settings.permission_cache_sweep_interval_seconds,
                self.cache.sweep,
            ),
            PeriodicTask(
                "session-cleanup",
                self.settings.session_cleanup_interval_seconds,
                cleanup_expired_sessions,
            ),
        ]

    def start(self) -> None:
        for task in self.tasks:
            task.start()
        logger.info("Auth container started")

    async def shutdown(self) -> None:
        for task in self.tasks:
            await task.shutdown()
        self.cache.invalidate_all()
        logger.info("Auth container stopped")
