"""In-memory stand-ins for ffmpeg, Whisper and the model hub."""

import threading
from pathlib import Path

from wordclip.collaborators import Cutter, Extractor, MediaInfo, ModelProvider, Transcriber
from wordclip.errors import ClipCutFailed, TrackExtractionFailed
from wordclip.models.transcript import TranscriptToken


def tokens(*spec):
    """Build tokens from (text, start, end) triples."""
    return [TranscriptToken(text=text, start=start, end=end) for text, start, end in spec]


class FakeModelProvider(ModelProvider):
    """Writes a dummy model directory; can fail a number of times first."""

    def __init__(self, failures=None):
        self.failures = list(failures or [])
        self.calls = []

    def fetch(self, model_name, destination):
        self.calls.append(model_name)
        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)
        if self.failures:
            (destination / "partial.bin").write_bytes(b"\0")
            raise self.failures.pop(0)
        (destination / "model.bin").write_bytes(b"weights")
        return destination


class FakeExtractor(Extractor):
    """Writes one small file per track holding the track id."""

    def __init__(self, duration=120.0, audio_streams=2, failing_tracks=()):
        self.info = MediaInfo(duration=duration, audio_streams=audio_streams)
        self.failing_tracks = set(failing_tracks)
        self.probe_calls = []
        self.extract_calls = []

    def probe(self, media_path):
        self.probe_calls.append(Path(media_path))
        return self.info

    def extract(self, media_path, track_ids, dest_dir):
        self.extract_calls.append(list(track_ids))
        extracted = {}
        for track in track_ids:
            if track in self.failing_tracks:
                raise TrackExtractionFailed(track, "stream is corrupt")
            path = Path(dest_dir) / f"track{track}.wav"
            path.write_text(str(track))
            extracted[track] = path
        return extracted


class FakeTranscriber(Transcriber):
    """Returns canned tokens for the track id written by FakeExtractor."""

    def __init__(self, by_track, error=None, delay=0.0):
        self.by_track = by_track
        self.error = error
        self.delay = delay
        self.calls = []

    def transcribe(self, audio_path):
        track = int(Path(audio_path).read_text())
        self.calls.append(track)
        if self.delay:
            threading.Event().wait(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.by_track.get(track, []))


class FakeCutter(Cutter):
    """Writes a placeholder clip file; can fail chosen clips by start time."""

    def __init__(self, failing_starts=(), on_cut=None):
        self.failing_starts = set(failing_starts)
        self.on_cut = on_cut
        self.calls = []
        self.terminated = 0

    def cut(self, media_path, start, end, output_path):
        self.calls.append((start, end, Path(output_path).name))
        if self.on_cut is not None:
            self.on_cut()
        if start in self.failing_starts:
            raise ClipCutFailed("muxer error", clip_id=None)
        Path(output_path).write_bytes(b"clip")

    def terminate_all(self):
        self.terminated += 1


