from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

from sqlmodel import Session, select

from devicehub.core.timeutil import utcnow
from devicehub.db.session import get_session
from devicehub.models import UserSession

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Runs a blocking job every ``interval_seconds`` on a worker thread."""

    def __init__(self, name: str, interval_seconds: float, job: Callable[[], object]) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self.job = job
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._tasks.append(asyncio.create_task(self._run(), name=self.name))

    async def shutdown(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._running = False

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval_seconds)
                await asyncio.to_thread(self.job)
            except asyncio.CancelledError:
                break
            except Exception:  # noqa: BLE001
                logger.exception("Periodic task %s failed", self.name)


def cleanup_expired_sessions(session: Optional[Session] = None) -> int:
    """Deactivate sessions past ``expires_at``. Returns the number touched."""
    if session is None:
        with get_session() as own_session:
            return cleanup_expired_sessions(own_session)

    now = utcnow()
    expired = session.exec(
        select(UserSession).where(
            UserSession.is_active == True,  # noqa: E712
            UserSession.expires_at <= now,
        )
    ).all()
    for entry in expired:
        entry.is_active = False
        session.add(entry)
    session.commit()
    if expired:
        logger.info("Deactivated %d expired sessions", len(expired))
    return len(expired)
