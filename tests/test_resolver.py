"""Tests for PreviewResolver orchestration."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from module.audio_preview.config import PreviewConfig
from module.audio_preview.core.cache import CacheStore
from module.audio_preview.core.queue import ConcurrencyGate
from module.audio_preview.core.resolver import PreviewResolver
from module.audio_preview.downloader.extractor import StreamExtractor
from module.audio_preview.downloader.search import SearchResolver
from module.audio_preview.downloader.yt_dlp import YTDLPClient
from module.audio_preview.models import (
    EmbedDescriptor,
    Preview,
    PreviewQuery,
    PreviewSource,
    QueryKind,
)
from module.audio_preview.proxy.pool import ProxyHandle
from module.audio_preview.utils.errors import InvalidQueryError, ProxyError

TTL = 3600


@pytest.fixture
def cache(tmp_path, clock):
    return CacheStore(str(tmp_path / "cache"), ttl=TTL, clock=clock)


@pytest.fixture
def searcher(candidate):
    searcher = MagicMock(spec=SearchResolver)
    searcher.search = AsyncMock(return_value=[candidate])
    return searcher


@pytest.fixture
def extractor(preview, candidate):
    extractor = MagicMock(spec=StreamExtractor)
    extractor.extract = AsyncMock(return_value=preview)
    extractor.embed_only = MagicMock(return_value=Preview(
        media_id=candidate.media_id,
        title=candidate.title,
        channel_label=candidate.channel_label,
        thumbnail_url=candidate.thumbnail_url,
        embed=EmbedDescriptor("youtube", candidate.media_id, 30, 60),
        source=PreviewSource.EMBED,
    ))
    return extractor


@pytest.fixture
def make_resolver(cache, searcher, extractor):
    def factory(**kwargs):
        kwargs.setdefault("gate", ConcurrencyGate(max_parallel=2))
        return PreviewResolver(cache=cache, searcher=searcher, extractor=extractor, **kwargs)
    return factory


@pytest.fixture
def query():
    return PreviewQuery("Queen", "Bohemian Rhapsody")


def proxy_pool_with(handles):
    pool = MagicMock()
    pool.get_agent = AsyncMock(side_effect=handles)
    pool.ban_proxy = AsyncMock()
    pool.cleanup = AsyncMock()
    pool.init = AsyncMock()
    return pool


# =============================================================================
# CACHE INTERACTION
# =============================================================================

class TestResolverCache:

    @pytest.mark.asyncio
    async def test_second_call_is_cache_hit(self, make_resolver, searcher, query, preview):
        resolver = make_resolver()

        first = await resolver.resolve(query)
        second = await resolver.resolve(query)

        assert first.source is PreviewSource.DIRECT
        assert second.source is PreviewSource.CACHE
        assert second.direct_audio_url == preview.direct_audio_url
        assert searcher.search.await_count == 1

    @pytest.mark.asyncio
    async def test_expired_entry_is_resolved_again(self, make_resolver, searcher, query, clock):
        resolver = make_resolver()

        await resolver.resolve(query)
        clock.advance(TTL + 1)
        result = await resolver.resolve(query)

        assert result.source is PreviewSource.DIRECT
        assert searcher.search.await_count == 2

    @pytest.mark.asyncio
    async def test_skip_cache_forces_lookup(self, make_resolver, searcher, query):
        resolver = make_resolver()

        await resolver.resolve(query)
        result = await resolver.resolve(query, skip_cache=True)

        assert result.source is PreviewSource.DIRECT
        assert searcher.search.await_count == 2

    @pytest.mark.asyncio
    async def test_no_candidates_returns_none_and_is_not_cached(self, make_resolver, searcher, cache, query):
        searcher.search.return_value = []
        resolver = make_resolver()

        assert await resolver.resolve(query) is None
        assert cache.get(query) is None
        assert await resolver.resolve(query) is None
        assert searcher.search.await_count == 2

    @pytest.mark.asyncio
    async def test_accepts_dict_query(self, make_resolver, searcher):
        resolver = make_resolver()
        result = await resolver.resolve({"artistName": "Björk", "kind": "artist"})

        assert result is not None
        searched = searcher.search.await_args.args[0]
        assert searched.kind is QueryKind.ARTIST

    @pytest.mark.asyncio
    async def test_invalid_query_raises(self, make_resolver):
        resolver = make_resolver()
        with pytest.raises(InvalidQueryError):
            await resolver.resolve({"artistName": "   "})
        with pytest.raises(InvalidQueryError):
            await resolver.resolve("Queen")


# =============================================================================
# FAILURE HANDLING
# =============================================================================

class TestResolverFallbacks:

    @pytest.mark.asyncio
    async def test_embed_fallback_when_extraction_fails(self, make_resolver, extractor, cache, query):
        extractor.extract.return_value = None
        resolver = make_resolver()

        result = await resolver.resolve(query)

        assert result.source is PreviewSource.EMBED
        assert result.direct_audio_url is None
        assert cache.get(query) is not None

    @pytest.mark.asyncio
    async def test_without_embed_fallback(self, make_resolver, extractor, query):
        extractor.extract.return_value = None
        resolver = make_resolver(embed_fallback=False)

        assert await resolver.resolve(query) is None
        extractor.embed_only.assert_not_called()

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_none(self, make_resolver, searcher, query):
        searcher.search.side_effect = RuntimeError("boom")
        resolver = make_resolver()
        assert await resolver.resolve(query) is None

    @pytest.mark.asyncio
    async def test_task_deadline_becomes_none(self, make_resolver, searcher, query):
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        searcher.search.side_effect = hang
        resolver = make_resolver(task_timeout=0.05)

        assert await resolver.resolve(query) is None
        assert resolver.gate.active_count == 0


# =============================================================================
# PROXIES
# =============================================================================

class TestResolverProxies:

    @pytest.mark.asyncio
    async def test_dead_proxy_is_banned_and_next_one_used(self, make_resolver, searcher, candidate, query):
        bad = ProxyHandle(url="http://10.0.0.1:80", endpoint="http://10.0.0.1:80")
        good = ProxyHandle(url="http://u:p@10.0.0.2:80", endpoint="http://127.0.0.1:40000")
        pool = proxy_pool_with([bad, good])
        searcher.search.side_effect = [ProxyError("dead", proxy_url=bad.url), [candidate]]
        resolver = make_resolver(proxy_pool=pool)

        result = await resolver.resolve(query)

        assert result is not None
        pool.ban_proxy.assert_awaited_once_with(bad.url)
        assert searcher.search.await_args.kwargs["proxy"] == good.endpoint

    @pytest.mark.asyncio
    async def test_proxy_retries_are_bounded(self, make_resolver, searcher, query):
        handles = [ProxyHandle(url=f"http://10.0.0.{i}:80", endpoint=f"http://10.0.0.{i}:80") for i in range(10)]
        pool = proxy_pool_with(handles)
        searcher.search.side_effect = ProxyError("dead")
        resolver = make_resolver(proxy_pool=pool, max_proxy_retries=3)

        assert await resolver.resolve(query) is None
        assert searcher.search.await_count == 4
        assert pool.ban_proxy.await_count == 4

    @pytest.mark.asyncio
    async def test_extraction_proxy_error_is_retried(self, make_resolver, extractor, query, preview):
        handles = [ProxyHandle(url=f"http://10.0.0.{i}:80", endpoint=f"http://10.0.0.{i}:80") for i in range(2)]
        pool = proxy_pool_with(handles)
        extractor.extract.side_effect = [ProxyError("dead"), preview]
        resolver = make_resolver(proxy_pool=pool)

        assert await resolver.resolve(query) is not None
        pool.ban_proxy.assert_awaited_once_with("http://10.0.0.0:80")

    @pytest.mark.asyncio
    async def test_direct_connection_when_pool_is_empty(self, make_resolver, searcher, query):
        pool = proxy_pool_with([None])
        resolver = make_resolver(proxy_pool=pool)

        assert await resolver.resolve(query) is not None
        assert searcher.search.await_args.kwargs["proxy"] is None

    @pytest.mark.asyncio
    async def test_context_manager_initializes_and_cleans_pool(self, make_resolver):
        pool = proxy_pool_with([])
        async with make_resolver(proxy_pool=pool):
            pool.init.assert_awaited_once()
        pool.cleanup.assert_awaited_once()


# =============================================================================
# CONCURRENCY
# =============================================================================

class TestResolverConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_lookup(self, make_resolver, searcher, candidate, query):
        async def slow_search(*args, **kwargs):
            await asyncio.sleep(0.02)
            return [candidate]

        searcher.search.side_effect = slow_search
        resolver = make_resolver()

        results = await asyncio.gather(*(resolver.resolve(PreviewQuery("QUEEN", "bohemian rhapsody"))
                                         for _ in range(3)), resolver.resolve(query))

        assert searcher.search.await_count == 1
        assert len({r.media_id for r in results}) == 1
        assert resolver._inflight == {}

    @pytest.mark.asyncio
    async def test_gate_bounds_distinct_lookups(self, make_resolver, searcher, candidate):
        active = 0
        peak = 0

        async def tracked_search(*args, **kwargs):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return [candidate]

        searcher.search.side_effect = tracked_search
        resolver = make_resolver(gate=ConcurrencyGate(max_parallel=2))

        await asyncio.gather(*(resolver.resolve_artist(f"Artist {i}") for i in range(6)))

        assert peak == 2
        assert searcher.search.await_count == 6

    @pytest.mark.asyncio
    async def test_close_cancels_lookup_inside_gate(self, make_resolver, searcher, query):
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def hanging_search(*args, **kwargs):
            started.set()
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.set()
                raise

        searcher.search.side_effect = hanging_search
        resolver = make_resolver()

        caller = asyncio.create_task(resolver.resolve(query))
        await started.wait()
        assert resolver.gate.active_count == 1

        await resolver.close()

        assert cancelled.is_set()
        assert resolver.gate.active_count == 0
        assert resolver.gate.pending_count == 0
        with pytest.raises(asyncio.CancelledError):
            await caller


# =============================================================================
# END TO END
# =============================================================================

@pytest.mark.integration
class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_queen_bohemian_rhapsody(self, cache):
        client = MagicMock(spec=YTDLPClient)
        client.search = AsyncMock(return_value=[
            YTDLPClient()._parse_video_data({
                "id": "fJ9rUzIMcZQ",
                "title": "Queen - Bohemian Rhapsody (Official Video Remastered)",
                "channel": "Queen Official",
                "duration": 359,
                "thumbnail": "https://i.ytimg.com/vi/fJ9rUzIMcZQ/hqdefault.jpg",
            })
        ])
        client.dump_info = AsyncMock(return_value={"formats": [
            {"format_id": "140", "url": "https://cdn/140", "vcodec": "none", "acodec": "mp4a.40.2", "abr": 129, "ext": "m4a"},
            {"format_id": "251", "url": "https://cdn/251", "vcodec": "none", "acodec": "opus", "abr": 135, "ext": "webm"},
        ]})
        client.audio_only_formats = YTDLPClient.audio_only_formats
        client.format_mime_type = YTDLPClient.format_mime_type
        client.format_bitrate = YTDLPClient.format_bitrate

        resolver = PreviewResolver(
            cache=cache,
            gate=ConcurrencyGate(),
            searcher=SearchResolver(client),
            extractor=StreamExtractor(client),
        )

        preview = await resolver.resolve_song("Queen", "Bohemian Rhapsody")

        assert preview.media_id == "fJ9rUzIMcZQ"
        assert preview.direct_audio_url == "https://cdn/251"
        assert preview.channel_label == "Queen Official"
        assert 15 <= preview.embed.start_offset <= 50
        client.search.assert_awaited_once_with(
            "Queen Bohemian Rhapsody audio official", limit=3, proxy=None
        )

        again = await resolver.resolve_song("queen", "BOHEMIAN RHAPSODY")
        assert again.source is PreviewSource.CACHE
        assert client.search.await_count == 1


def test_from_config_wires_components(tmp_path):
    config = PreviewConfig(cache_dir=str(tmp_path), max_parallel=3, search_limit=2, embed_fallback=False)
    resolver = PreviewResolver.from_config(config)

    assert resolver.gate.max_parallel == 3
    assert resolver.searcher.limit == 2
    assert resolver.proxy_pool is None
    assert resolver.embed_fallback is False
    assert resolver.cache.cache_dir == tmp_path


def test_from_config_with_proxies(tmp_path):
    config = PreviewConfig(
        cache_dir=str(tmp_path),
        proxy_enabled=True,
        proxy_reliable=("http://u:p@10.0.0.1:8080",),
        proxy_cache_path=str(tmp_path / "proxy.json"),
    )
    resolver = PreviewResolver.from_config(config)
    assert resolver.proxy_pool.reliable_proxies == ["http://u:p@10.0.0.1:8080"]
