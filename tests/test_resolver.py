from __future__ import annotations

import asyncio

import pytest

from conftest import ASSET_ID, OTHER_ASSET_ID, PLAYBACK_ID, UPLOAD_ID, FakeClock, FakeProvider, ready_asset
from glint_video.cache import ResolutionCache
from glint_video.models import AssetSnapshot, FailureReason, LifecycleStatus, Outcome, UploadSnapshot
from glint_video.provider import ProviderError
from glint_video.repositories import PATCHED, SqliteRepository
from glint_video.resolver import Resolver


def _resolver(provider, *, clock=None, timeout=10.0) -> Resolver:
    cache = ResolutionCache(clock=clock) if clock else ResolutionCache()
    return Resolver(cache, provider, timeout=timeout)


def test_asset_id_resolves_to_canonical_url(provider):
    r = _resolver(provider)
    result = asyncio.run(r.resolve(ASSET_ID))

    assert result.outcome is Outcome.RESOLVED
    assert result.playback_id == PLAYBACK_ID
    assert result.playback_url == f"https://stream.mux.com/{PLAYBACK_ID}.m3u8"
    assert result.asset_id == ASSET_ID
    assert provider.asset_calls == [ASSET_ID]


def test_second_resolve_is_served_from_cache(provider):
    r = _resolver(provider)

    async def scenario():
        first = await r.resolve(ASSET_ID)
        second = await r.resolve(f"https://stream.mux.com/{ASSET_ID}.m3u8")
        return first, second

    first, second = asyncio.run(scenario())
    assert first == second
    assert provider.asset_calls == [ASSET_ID]


def test_playback_id_resolves_without_network(provider):
    r = _resolver(provider)
    result = asyncio.run(r.resolve(f"https://stream.mux.com/{PLAYBACK_ID}/high.mp4"))
    assert result.playback_url == f"https://stream.mux.com/{PLAYBACK_ID}.m3u8"
    assert provider.asset_calls == []
    assert provider.upload_calls == []


def test_malformed_reference(provider):
    r = _resolver(provider)
    result = asyncio.run(r.resolve("definitely not a video"))
    assert result.outcome is Outcome.FAILED
    assert result.reason is FailureReason.MALFORMED
    assert provider.asset_calls == []


def test_concurrent_resolutions_share_one_provider_call():
    provider = FakeProvider(delay=0.02)
    provider.assets[ASSET_ID] = ready_asset(ASSET_ID, PLAYBACK_ID)
    r = _resolver(provider)

    async def scenario():
        return await asyncio.gather(*(r.resolve(ASSET_ID) for _ in range(10)))

    results = asyncio.run(scenario())
    assert len(provider.asset_calls) == 1
    assert {res.playback_id for res in results} == {PLAYBACK_ID}
    assert not r.cache.in_flight(ASSET_ID)


def test_deleted_asset_is_negatively_cached(provider):
    r = _resolver(provider)

    async def scenario():
        return await r.resolve(OTHER_ASSET_ID), await r.resolve(OTHER_ASSET_ID)

    first, second = asyncio.run(scenario())
    assert first.reason is FailureReason.ASSET_DELETED
    assert first.is_terminal_failure
    assert first.user_message == "This video needs to be re-uploaded."
    assert second == first
    assert provider.asset_calls == [OTHER_ASSET_ID]


def test_errored_asset(provider):
    provider.assets[OTHER_ASSET_ID] = AssetSnapshot(id=OTHER_ASSET_ID, status="errored")
    result = asyncio.run(_resolver(provider).resolve(OTHER_ASSET_ID))
    assert result.reason is FailureReason.ASSET_ERRORED
    assert result.asset_id == OTHER_ASSET_ID


def test_pending_asset_is_retried_after_ttl(provider):
    clock = FakeClock()
    provider.assets[OTHER_ASSET_ID] = AssetSnapshot(id=OTHER_ASSET_ID, status="preparing")
    r = _resolver(provider, clock=clock)

    async def scenario():
        first = await r.resolve(OTHER_ASSET_ID)
        again = await r.resolve(OTHER_ASSET_ID)
        clock.advance(31)
        provider.assets[OTHER_ASSET_ID] = ready_asset(OTHER_ASSET_ID, "PB2")
        later = await r.resolve(OTHER_ASSET_ID)
        return first, again, later

    first, again, later = asyncio.run(scenario())
    assert first.outcome is Outcome.PENDING
    assert again.outcome is Outcome.PENDING
    assert later.playback_id == "PB2"
    assert provider.asset_calls == [OTHER_ASSET_ID, OTHER_ASSET_ID]


def test_ready_asset_with_only_signed_ids_is_pending(provider):
    provider.assets[OTHER_ASSET_ID] = ready_asset(OTHER_ASSET_ID, "SIGNED", policy="signed")
    result = asyncio.run(_resolver(provider).resolve(OTHER_ASSET_ID))
    assert result.outcome is Outcome.PENDING


def test_provider_outage_is_transient(provider):
    provider.assets[OTHER_ASSET_ID] = ProviderError(FailureReason.PROVIDER_UNAVAILABLE, "HTTP 503")
    r = _resolver(provider)
    result = asyncio.run(r.resolve(OTHER_ASSET_ID))
    assert result.reason is FailureReason.PROVIDER_UNAVAILABLE
    assert not result.is_permanent
    assert not r.cache.get(OTHER_ASSET_ID).permanent


def test_slow_provider_times_out():
    provider = FakeProvider(delay=5)
    provider.assets[ASSET_ID] = ready_asset(ASSET_ID, PLAYBACK_ID)
    r = _resolver(provider, timeout=0.05)
    result = asyncio.run(r.resolve(ASSET_ID))
    assert result.reason is FailureReason.PROVIDER_UNAVAILABLE
    assert not r.cache.in_flight(ASSET_ID)


def test_upload_resolves_through_its_asset_and_aliases_both(provider):
    provider.uploads[UPLOAD_ID] = UploadSnapshot(id=UPLOAD_ID, status="asset_created", asset_id=ASSET_ID)
    r = _resolver(provider)

    async def scenario():
        via_upload = await r.resolve(UPLOAD_ID)
        via_asset = await r.resolve(ASSET_ID)
        return via_upload, via_asset

    via_upload, via_asset = asyncio.run(scenario())
    assert via_upload.playback_id == PLAYBACK_ID
    assert via_upload.asset_id == ASSET_ID
    assert via_asset.playback_id == PLAYBACK_ID
    assert provider.upload_calls == [UPLOAD_ID]
    assert provider.asset_calls == [ASSET_ID]
    assert r.cache.get(UPLOAD_ID).result.playback_id == PLAYBACK_ID


@pytest.mark.parametrize(
    "status,outcome,reason",
    [
        ("waiting", Outcome.PENDING, None),
        ("errored", Outcome.FAILED, FailureReason.ASSET_ERRORED),
        ("cancelled", Outcome.FAILED, FailureReason.ASSET_DELETED),
        ("timed_out", Outcome.FAILED, FailureReason.ASSET_DELETED),
    ],
)
def test_upload_states(provider, status, outcome, reason):
    provider.uploads[UPLOAD_ID] = UploadSnapshot(id=UPLOAD_ID, status=status)
    result = asyncio.run(_resolver(provider).resolve(UPLOAD_ID))
    assert result.outcome is outcome
    assert result.reason is reason
    assert provider.asset_calls == []


def test_cancelled_caller_does_not_abort_shared_resolution():
    provider = FakeProvider(delay=0.05)
    provider.assets[ASSET_ID] = ready_asset(ASSET_ID, PLAYBACK_ID)
    r = _resolver(provider)

    async def scenario():
        caller = asyncio.ensure_future(r.resolve(ASSET_ID))
        await asyncio.sleep(0.01)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller
        await r.drain()
        return r.cache.get(ASSET_ID)

    entry = asyncio.run(scenario())
    assert entry is not None
    assert entry.result.playback_id == PLAYBACK_ID


def test_unexpected_provider_bug_reaches_every_waiter():
    provider = FakeProvider(delay=0.01)
    provider.assets[ASSET_ID] = RuntimeError("provider bug")
    r = _resolver(provider)

    async def scenario():
        return await asyncio.gather(*(r.resolve(ASSET_ID) for _ in range(3)), return_exceptions=True)

    results = asyncio.run(scenario())
    assert all(isinstance(e, RuntimeError) for e in results)
    assert len(provider.asset_calls) == 1
    assert not r.cache.in_flight(ASSET_ID)


def test_resolve_record_patches_and_background_patch(settings, provider):
    repo = SqliteRepository(settings)
    rec = repo.insert_record("owner-1", ASSET_ID, record_id="r1")
    other = repo.insert_record("owner-1", f"https://stream.mux.com/{ASSET_ID}.m3u8", record_id="r2")
    r = _resolver(provider)

    async def scenario():
        result, written = await r.resolve_record(rec, repo)
        r.schedule_record_patch(other, repo)
        await r.drain()
        return result, written

    result, written = asyncio.run(scenario())
    assert result.playback_id == PLAYBACK_ID
    assert written == PATCHED

    for rid in ("r1", "r2"):
        stored = repo.get_record(rid)
        assert stored.lifecycle_status is LifecycleStatus.READY
        assert stored.playback_url == f"https://stream.mux.com/{PLAYBACK_ID}.m3u8"
        assert stored.thumbnail_url == f"https://image.mux.com/{PLAYBACK_ID}/thumbnail.jpg"
        assert stored.asset_id == ASSET_ID


def test_identify_record_falls_back_to_url(settings, provider):
    repo = SqliteRepository(settings)
    rec = repo.insert_record("owner-1", "legacy video", record_id="r1")
    rec.playback_url = f"https://stream.mux.com/{ASSET_ID}/high.mp4"
    ident = _resolver(provider).identify_record(rec)
    assert ident.id == ASSET_ID
