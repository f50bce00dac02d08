from __future__ import annotations

import asyncio
import contextlib
import json
from dataclasses import dataclass
from typing import Any, Optional

from authflow.logging import get_logger
from authflow.service.registration import REGISTRATION_KEY_PREFIX
from authflow.storage.errors import CacheUnavailable
from authflow.storage.models import RegistrationSession, utcnow

logger = get_logger(__name__)


@dataclass
class CleanupReport:
    registrations_deleted: int = 0
    refresh_tokens_deleted: int = 0
    errors: int = 0


class CleanupScheduler:
    """Periodically removes lapsed registration sessions and refresh tokens.

    Redis TTLs already expire most keys; the sweep catches payloads whose own
    ``expires_at`` has passed, undecodable payloads, and refresh tokens in the
    durable directory.
    """

    def __init__(self, cache: Any, directory: Any, *, interval_minutes: int = 30) -> None:
        self.cache = cache
        self.directory = directory
        self.interval_seconds = max(1, interval_minutes) * 60
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("cleanup_scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if not task:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("cleanup_scheduler_stopped")

    async def _run(self) -> None:
        try:
            while True:
                try:
                    await self.sweep_once()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error("cleanup_sweep_failed", error_type=type(exc).__name__, error=str(exc))
                await asyncio.sleep(self.interval_seconds)
        except asyncio.CancelledError:
            logger.info("cleanup_task_cancelled")
            raise

    async def sweep_once(self) -> CleanupReport:
        report = CleanupReport()
        now = utcnow()

        try:
            keys = await self.cache.scan_prefix(REGISTRATION_KEY_PREFIX)
        except CacheUnavailable as exc:
            logger.error("cleanup_scan_failed", error=str(exc.cause))
            report.errors += 1
            keys = []

        for key in keys:
            try:
                if await self._sweep_registration(key, now):
                    report.registrations_deleted += 1
            except CacheUnavailable as exc:
                logger.warning("cleanup_key_failed", operation=exc.operation, error=str(exc.cause))
                report.errors += 1

        try:
            report.refresh_tokens_deleted = await asyncio.to_thread(
                self.directory.purge_expired_refresh_tokens, now
            )
        except Exception as exc:
            logger.error(
                "cleanup_refresh_purge_failed", error_type=type(exc).__name__, error=str(exc)
            )
            report.errors += 1

        logger.info(
            "cleanup_sweep_completed",
            registrations_deleted=report.registrations_deleted,
            refresh_tokens_deleted=report.refresh_tokens_deleted,
            errors=report.errors,
        )
        return report

    async def _sweep_registration(self, key: str, now) -> bool:
        raw = await self.cache.get(key)
        if raw is None:
            return False
        try:
            session = RegistrationSession.from_payload(
                key[len(REGISTRATION_KEY_PREFIX):], json.loads(raw)
            )
            stale = session.is_expired(now)
        except (ValueError, KeyError, TypeError):
            stale = True
        if not stale:
            return False
        return await self.cache.delete(key) > 0
