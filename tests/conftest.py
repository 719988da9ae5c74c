"""Shared fixtures wiring a pipeline to the fakes in helpers.py."""

import pytest

from wordclip.cache import StageCacheManager
from wordclip.config import (
    CacheSettings,
    ClipTiming,
    OutputSettings,
    ProcessingSettings,
    TrackSettings,
    WordclipConfig,
)
from wordclip.errors import RetryConfig
from wordclip.pipeline import Pipeline

from helpers import FakeCutter, FakeExtractor, FakeModelProvider, FakeTranscriber


@pytest.fixture
def video_file(tmp_path):
    """A stand-in input recording."""
    path = tmp_path / "talk.mp4"
    path.write_bytes(b"not really a video")
    return path


@pytest.fixture
def make_config(tmp_path, video_file):
    """Factory for a run configuration rooted in tmp_path."""

    def factory(clips=None, tracks=None, **processing):
        processing.setdefault("max_parallel", 2)
        return WordclipConfig(
            input_file=video_file,
            clips=clips if clips is not None else {"magic": ClipTiming(lead_seconds=10, trail_seconds=10)},
            tracks=TrackSettings(audio_tracks=tracks or [1]),
            output=OutputSettings(directory=tmp_path / "out"),
            cache=CacheSettings(directory=tmp_path / "cache"),
            processing=ProcessingSettings(**processing),
        )

    return factory


@pytest.fixture
def make_pipeline(tmp_path):
    """Factory wiring a Pipeline to fakes and a temp-dir cache."""

    def factory(
        config,
        by_track=None,
        provider=None,
        extractor=None,
        transcriber=None,
        cutter=None,
        cancel_event=None,
    ):
        transcriber = transcriber or FakeTranscriber(by_track or {})
        pipeline = Pipeline(
            config=config,
            cache=StageCacheManager(tmp_path / "cache"),
            model_provider=provider or FakeModelProvider(),
            extractor=extractor or FakeExtractor(),
            transcriber_factory=lambda model_path: transcriber,
            cutter=cutter or FakeCutter(),
            retry_config=RetryConfig(max_attempts=3, initial_delay=0.0, jitter=False),
            cancel_event=cancel_event,
        )
        return pipeline

    return factory
