"""Tests for PreviewConfig environment loading."""

import pytest

from module.audio_preview.config import PreviewConfig, task_timeout_for
from module.audio_preview.constants import (
    CACHE_TTL,
    EXTRACTION_STRATEGY_COUNT,
    MAX_PARALLEL,
    PROXY_MAX_RETRIES,
    PROXY_SOURCES,
    TASK_TIMEOUT,
    YTDLP_EXTRACT_TIMEOUT,
    YTDLP_SEARCH_TIMEOUT,
)
from module.audio_preview.downloader.extractor import default_strategies
from module.audio_preview.utils.errors import ConfigurationError


class TestPreviewConfig:

    def test_defaults(self):
        config = PreviewConfig.from_env({})
        assert config.cache_ttl == CACHE_TTL
        assert config.max_parallel == MAX_PARALLEL
        assert config.proxy_enabled is False
        assert config.proxy_sources == PROXY_SOURCES
        assert config.embed_fallback is True

    def test_overrides(self):
        config = PreviewConfig.from_env({
            "PREVIEW_CACHE_DIR": "/tmp/previews",
            "PREVIEW_CACHE_TTL": "60",
            "PREVIEW_MAX_PARALLEL": "2",
            "PREVIEW_TASK_TIMEOUT": "0",
            "PREVIEW_EMBED_FALLBACK": "no",
            "PROXY_ENABLED": "TRUE",
            "PROXY_RELIABLE": " http://u:p@1.2.3.4:80 , http://5.6.7.8:3128,, ",
            "DEBUG": "1",
        })

        assert config.cache_dir == "/tmp/previews"
        assert config.cache_ttl == 60.0
        assert config.max_parallel == 2
        assert config.task_timeout is None
        assert config.embed_fallback is False
        assert config.proxy_enabled is True
        assert config.proxy_reliable == ("http://u:p@1.2.3.4:80", "http://5.6.7.8:3128")
        assert config.debug is True

    @pytest.mark.parametrize("env", [
        {"PREVIEW_MAX_PARALLEL": "five"},
        {"PREVIEW_MAX_PARALLEL": "0"},
        {"PREVIEW_CACHE_TTL": "-1"},
        {"PROXY_ENABLED": "maybe"},
    ])
    def test_invalid_values(self, env):
        with pytest.raises(ConfigurationError):
            PreviewConfig.from_env(env)

    # ====================================================================
    # 任務時限
    # ====================================================================

    def test_default_task_timeout_covers_worst_case(self):
        worst = (PROXY_MAX_RETRIES + 1) * (YTDLP_SEARCH_TIMEOUT + EXTRACTION_STRATEGY_COUNT * YTDLP_EXTRACT_TIMEOUT)
        assert TASK_TIMEOUT == worst
        assert PreviewConfig.from_env({}).task_timeout == worst

    def test_strategy_count_matches_default_strategies(self):
        assert len(default_strategies()) == EXTRACTION_STRATEGY_COUNT

    def test_task_timeout_follows_overridden_timeouts(self):
        config = PreviewConfig.from_env({
            "YTDLP_SEARCH_TIMEOUT": "10",
            "YTDLP_EXTRACT_TIMEOUT": "5",
            "PROXY_MAX_RETRIES": "1",
        })
        assert config.ytdlp_search_timeout == 10.0
        assert config.task_timeout == task_timeout_for(10, 5, 1) == 2 * (10 + EXTRACTION_STRATEGY_COUNT * 5)

    def test_explicit_task_timeout_wins(self):
        config = PreviewConfig.from_env({"PREVIEW_TASK_TIMEOUT": "12"})
        assert config.task_timeout == 12.0
