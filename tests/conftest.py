"""
Pytest configuration for audio preview tests.

Adds the project root to sys.path so that 'from module.audio_preview...' imports work,
and provides shared fixtures (fake clock, sample candidate / preview).
"""
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from module.audio_preview.models import Candidate, EmbedDescriptor, Preview, PreviewSource


class FakeClock:
    """Manually advanced clock, callable like time.time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def candidate():
    return Candidate(
        media_id="fJ9rUzIMcZQ",
        title="Queen - Bohemian Rhapsody (Official Video Remastered)",
        channel_label="Queen Official",
        thumbnail_url="https://i.ytimg.com/vi/fJ9rUzIMcZQ/maxresdefault.jpg",
        duration=359,
        url="https://www.youtube.com/watch?v=fJ9rUzIMcZQ",
    )


@pytest.fixture
def preview(candidate):
    return Preview(
        media_id=candidate.media_id,
        title=candidate.title,
        channel_label=candidate.channel_label,
        thumbnail_url=candidate.thumbnail_url,
        direct_audio_url="https://rr3---sn.googlevideo.com/videoplayback?id=abc&itag=251",
        embed=EmbedDescriptor("youtube", candidate.media_id, 20, 50),
        bitrate=135,
        mime_type='audio/webm; codecs="opus"',
        source=PreviewSource.DIRECT,
    )
