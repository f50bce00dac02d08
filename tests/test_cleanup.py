"""Tests for the periodic cleanup sweep."""

import asyncio
import json
from datetime import timedelta

from authflow.service.cleanup import CleanupScheduler
from authflow.service.registration import RegistrationData, registration_key
from authflow.storage.errors import CacheUnavailable
from authflow.storage.models import RegistrationSession, utcnow


def _session(token, *, expires_in):
    now = utcnow()
    return RegistrationSession(
        token=token,
        email=f"{token[:6]}@example.com",
        first_name="Eve",
        last_name="",
        password_hash="$argon2id$stub",
        created_at=now,
        expires_at=now + expires_in,
    )


async def test_sweep_removes_lapsed_and_corrupt_sessions(cache, memory_store):
    live = _session("a" * 64, expires_in=timedelta(minutes=10))
    lapsed = _session("b" * 64, expires_in=timedelta(minutes=-1))
    await cache.set(registration_key(live.token), json.dumps(live.to_payload()), 600)
    await cache.set(registration_key(lapsed.token), json.dumps(lapsed.to_payload()), 600)
    await cache.set(registration_key("c" * 64), "garbage", 600)

    report = await CleanupScheduler(cache, memory_store).sweep_once()

    assert report.registrations_deleted == 2
    assert report.errors == 0
    assert await cache.exists(registration_key(live.token)) is True
    assert await cache.exists(registration_key(lapsed.token)) is False


async def test_sweep_purges_expired_refresh_tokens(cache, memory_store, token_issuer):
    user = memory_store.create_user("frank@example.com", "Frank", "hash")
    keep = token_issuer.issue_token_pair(user)
    stale = token_issuer.issue_token_pair(user)
    for record in memory_store.refresh_tokens.values():
        if record.token_hash == token_issuer._hash_refresh_token(stale.refresh_token):
            record.expires_at = utcnow() - timedelta(seconds=5)

    report = await CleanupScheduler(cache, memory_store).sweep_once()

    assert report.refresh_tokens_deleted == 1
    assert list(memory_store.refresh_tokens) == [
        token_issuer._hash_refresh_token(keep.refresh_token)
    ]


async def test_sweep_keeps_pending_registrations(cache, memory_store, registration_service):
    staged = await registration_service.stage(
        RegistrationData(email="gina@example.com", password="Str0ng!Pass", first_name="Gina")
    )

    report = await CleanupScheduler(cache, memory_store).sweep_once()

    assert report.registrations_deleted == 0
    assert await cache.exists(registration_key(staged.token)) is True


async def test_scan_failure_is_reported(cache, memory_store):
    async def broken_scan(prefix):
        raise CacheUnavailable("scan", ConnectionError("refused"))

    cache.scan_prefix = broken_scan

    report = await CleanupScheduler(cache, memory_store).sweep_once()

    assert report.errors == 1


async def test_scheduler_start_and_stop(cache, memory_store):
    scheduler = CleanupScheduler(cache, memory_store, interval_minutes=30)

    scheduler.start()
    assert scheduler.running
    await asyncio.sleep(0)
    await scheduler.stop()

    assert not scheduler.running
    # Stopping twice is a no-op
    await scheduler.stop()


def test_interval_is_thirty_minutes_by_default(cache, memory_store):
    assert CleanupScheduler(cache, memory_store).interval_seconds == 1800
