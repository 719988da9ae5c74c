"""Pipeline orchestration for one input recording.

Drives a run through its stages:

    pending -> model_ready -> audio_extracted -> transcribed
            -> windows_merged -> clips_materialized -> done

with `failed` as the terminal state for fatal errors. Every stage output is
committed to the stage cache under a fingerprint of its inputs; a stage
whose artifact is already cached is skipped, so an interrupted run resumes
where it stopped.

Extraction and cutting run on a bounded thread pool. Transcription runs
sequentially on a single engine instance. A failed cut is recorded and
the run continues; anything else that fails stops the run.
"""

from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from wordclip.cache import PurgeReport, StageCacheManager, StageKind, fingerprint, media_identity
from wordclip.collaborators import Cutter, Extractor, MediaInfo, ModelProvider, Transcriber
from wordclip.config import WordclipConfig, keyword_rules, validate_config
from wordclip.errors import (
    CacheError,
    ErrorContext,
    ExternalToolError,
    InvalidTrackSelection,
    ModelUnavailable,
    RetryConfig,
    RunCancelled,
    TrackExtractionFailed,
    TranscriptionFailed,
    WordclipError,
    retry_with_backoff,
)
from wordclip.ffmpeg import FFmpegWrapper
from wordclip.logging import get_logger, log_operation_complete, log_operation_failed, log_operation_start
from wordclip.merge import check_merge_invariants, merge_windows
from wordclip.model_store import WhisperModelStore
from wordclip.models.clip import CandidateWindow, ClipManifest, KeywordRule, MergedClip
from wordclip.models.transcript import TrackTranscript, TranscriptToken, combine_transcripts
from wordclip.storage import load_model
from wordclip.transcription import WhisperTranscriber
from wordclip.windows import build_candidate_windows

logger = get_logger(__name__)

# How often blocking waits wake up to look for cancellation
_POLL_SECONDS = 0.25


class PipelineState(str, Enum):
    """Stage a run has reached."""

    PENDING = "pending"
    MODEL_READY = "model_ready"
    AUDIO_EXTRACTED = "audio_extracted"
    TRANSCRIBED = "transcribed"
    WINDOWS_MERGED = "windows_merged"
    CLIPS_MATERIALIZED = "clips_materialized"
    DONE = "done"
    FAILED = "failed"


class ClipStatus(str, Enum):
    """Outcome of cutting one clip."""

    PRODUCED = "produced"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    """Overall outcome of a run."""

    SUCCESS = "success"  # Every clip produced
    PARTIAL = "partial"  # Some clips failed
    FAILED = "failed"  # Fatal error or no usable output
    CANCELLED = "cancelled"  # Interrupted

    @property
    def exit_code(self) -> int:
        """Process exit code for this outcome."""
        return {
            RunStatus.SUCCESS: 0,
            RunStatus.PARTIAL: 3,
            RunStatus.FAILED: 1,
            RunStatus.CANCELLED: 130,
        }[self]


@dataclass
class ClipOutcome:
    """Result of materializing one merged clip.

    Attributes:
        clip: The clip that was cut
        status: Whether the file was produced
        output_path: Where the clip was (or would have been) written
        error_message: Why the cut failed, if it did
    """

    clip: MergedClip
    status: ClipStatus
    output_path: Path | None = None
    error_message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.clip.id,
            "start": self.clip.start,
            "end": self.clip.end,
            "sources": list(self.clip.sources),
            "status": self.status.value,
            "output_path": str(self.output_path) if self.output_path else None,
            "error_message": self.error_message,
        }


def new_run_id() -> str:
    """Generate a sortable, unique run id."""
    return f"{datetime.now().strftime('%Y%m%dT%H%M%S')}_{uuid.uuid4().hex[:8]}"


@dataclass
class PipelineRun:
    """State of one run over one input.

    Owns the combined transcript, the keyword rules and the merged clips
    for the input, plus a record of every fingerprint the run touched.
    """

    input_file: Path
    run_id: str = field(default_factory=new_run_id)
    state: PipelineState = PipelineState.PENDING
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.PENDING])
    error: WordclipError | None = None
    cancelled: bool = False
    media: MediaInfo | None = None
    model_path: Path | None = None
    audio_paths: dict[int, Path] = field(default_factory=dict)
    tokens: list[TranscriptToken] = field(default_factory=list)
    rules: list[KeywordRule] = field(default_factory=list)
    windows: list[CandidateWindow] = field(default_factory=list)
    clips: list[MergedClip] = field(default_factory=list)
    outcomes: list[ClipOutcome] = field(default_factory=list)
    fingerprints: dict[StageKind, list[str]] = field(default_factory=dict)
    reused: list[StageKind] = field(default_factory=list)
    purge_report: PurgeReport | None = None
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    completed_at: str = ""

    def advance(self, state: PipelineState) -> None:
        """Move to the next stage."""
        self.state = state
        self.history.append(state)
        logger.info(f"{self.input_file.name}: {state.value}", extra={"run_id": self.run_id})

    def fail(self, error: WordclipError, cancelled: bool = False) -> None:
        """Move to the terminal failed state."""
        self.error = error
        self.cancelled = cancelled or isinstance(error, RunCancelled)
        self.state = PipelineState.FAILED
        self.history.append(PipelineState.FAILED)

    def record(self, stage: StageKind, key: str) -> None:
        """Remember a fingerprint used by this run."""
        keys = self.fingerprints.setdefault(stage, [])
        if key not in keys:
            keys.append(key)

    @property
    def failure_reason(self) -> str:
        """Message of the fatal error, if any."""
        return self.error.message if self.error else ""

    @property
    def produced_count(self) -> int:
        """Number of clip files written."""
        return sum(1 for outcome in self.outcomes if outcome.status == ClipStatus.PRODUCED)

    @property
    def failed_count(self) -> int:
        """Number of clips that could not be cut."""
        return sum(1 for outcome in self.outcomes if outcome.status == ClipStatus.FAILED)

    @property
    def total_clips(self) -> int:
        """Number of merged clips the run set out to produce."""
        return len(self.clips)

    @property
    def status(self) -> RunStatus:
        """Overall outcome, which decides the exit code."""
        if self.cancelled:
            return RunStatus.CANCELLED
        if self.state == PipelineState.FAILED or self.produced_count == 0:
            return RunStatus.FAILED
        if self.produced_count < self.total_clips:
            return RunStatus.PARTIAL
        return RunStatus.SUCCESS

    @property
    def produced_paths(self) -> list[Path]:
        """Paths of the clips written, in clip order."""
        return [
            outcome.output_path
            for outcome in self.outcomes
            if outcome.status == ClipStatus.PRODUCED and outcome.output_path
        ]

    @property
    def unmatched_keywords(self) -> list[str]:
        """Keywords that did not occur in the transcript."""
        matched = {source for window in self.windows for source in window.sources}
        return [rule.keyword for rule in self.rules if rule.keyword not in matched]

    def summary_line(self) -> str:
        """One-line summary such as ``3 of 4 clips produced``."""
        return f"{self.produced_count} of {self.total_clips} clips produced"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for the run manifest."""
        return {
            "input_file": str(self.input_file),
            "state": self.state.value,
            "status": self.status.value,
            "history": [state.value for state in self.history],
            "error": self.failure_reason,
            "fingerprints": {stage.value: keys for stage, keys in self.fingerprints.items()},
            "reused": [stage.value for stage in self.reused],
            "clips": [outcome.to_dict() for outcome in self.outcomes],
            "unmatched_keywords": self.unmatched_keywords,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "purged": self.purge_report is not None,
        }


TranscriberFactory = Callable[[Path], Transcriber]


class Pipeline:
    """Runs the keyword-to-clip pipeline for one input.

    Example:
        pipeline = Pipeline.from_config(config)
        run = pipeline.run()
        print(run.summary_line())
        raise SystemExit(run.status.exit_code)
    """

    def __init__(
        self,
        config: WordclipConfig,
        cache: StageCacheManager,
        model_provider: ModelProvider,
        extractor: Extractor,
        transcriber_factory: TranscriberFactory,
        cutter: Cutter,
        retry_config: RetryConfig | None = None,
        cancel_event: threading.Event | None = None,
        progress_callback: Callable[[str, int, int, str], None] | None = None,
    ):
        """Initialize the pipeline.

        Args:
            config: Validated run configuration
            cache: Stage cache shared with other runs
            model_provider: Fetches the speech model when it is not cached
            extractor: Probes media and extracts audio tracks
            transcriber_factory: Builds the speech engine from a model path
            cutter: Cuts clips out of the input
            retry_config: Retry policy for model downloads
            cancel_event: Event that cancels the run when set
            progress_callback: Optional callback for progress updates
                Signature: (stage, current, total, message)
        """
        self.config = config
        self.cache = cache
        self.model_provider = model_provider
        self.extractor = extractor
        self.transcriber_factory = transcriber_factory
        self.cutter = cutter
        self.retry_config = retry_config or RetryConfig(max_attempts=4, initial_delay=2.0)
        self.cancel_event = cancel_event or threading.Event()
        self.progress_callback = progress_callback
        self._engine_lock = threading.Lock()

    @classmethod
    def from_config(
        cls,
        config: WordclipConfig,
        cancel_event: threading.Event | None = None,
        progress_callback: Callable[[str, int, int, str], None] | None = None,
    ) -> "Pipeline":
        """Build a pipeline wired to ffmpeg, faster-whisper and the disk cache."""
        processing = config.processing
        media = FFmpegWrapper(
            config.ffmpeg,
            extract_timeout=processing.extract_timeout_seconds,
            cut_timeout=processing.cut_timeout_seconds,
        )
        whisper = config.whisper

        def make_transcriber(model_path: Path) -> Transcriber:
            return WhisperTranscriber(
                model_path,
                language=whisper.language,
                device=whisper.device,
                compute_type=whisper.compute_type,
            )

        return cls(
            config=config,
            cache=StageCacheManager(config.cache.resolved_directory()),
            model_provider=WhisperModelStore(),
            extractor=media,
            transcriber_factory=make_transcriber,
            cutter=media,
            cancel_event=cancel_event,
            progress_callback=progress_callback,
        )

    def _report_progress(self, stage: str, current: int, total: int, message: str = "") -> None:
        if self.progress_callback:
            self.progress_callback(stage, current, total, message)

    def cancel(self) -> None:
        """Cancel the run: no new work starts and live subprocesses are killed."""
        if self.cancel_event.is_set():
            return
        logger.warning("Cancelling run")
        self.cancel_event.set()
        self.cutter.terminate_all()
        if self.extractor is not self.cutter and isinstance(self.extractor, Cutter):
            self.extractor.terminate_all()

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise RunCancelled()

    def run(self) -> PipelineRun:
        """Run every stage for the configured input.

        Errors inside a stage do not propagate; they leave the run in the
        failed state with `error` set. Inspect `run.status` for the outcome.

        Returns:
            The finished run

        Raises:
            ConfigError: If the configuration is invalid (nothing has run yet)
        """
        validate_config(self.config)
        run = PipelineRun(input_file=Path(self.config.input_file))
        run.rules = keyword_rules(self.config)
        log = logger.with_context(run_id=run.run_id, input=run.input_file.name)
        started = time.monotonic()
        log_operation_start(log, "pipeline run", keywords=len(run.rules))

        try:
            self._run_stages(run)
        except WordclipError as e:
            if self.cancel_event.is_set() and not isinstance(e, RunCancelled):
                e = RunCancelled(context={"interrupted": e.message})
            run.fail(e)
            log_operation_failed(log, "pipeline run", e, state=run.history[-2].value)
        finally:
            run.completed_at = datetime.now().isoformat()
            self._record_run(run)

        if run.state == PipelineState.DONE:
            log_operation_complete(
                log,
                "pipeline run",
                duration=time.monotonic() - started,
                produced=run.produced_count,
                total=run.total_clips,
            )
        return run

    def _run_stages(self, run: PipelineRun) -> None:
        tracks = list(self.config.tracks.audio_tracks)
        identity = media_identity(run.input_file)
        model_key = fingerprint("model", self.config.whisper.model)

        audio_keys = {track: fingerprint("audio", identity, track) for track in tracks}
        transcript_keys = {
            track: fingerprint(
                "transcript",
                audio_keys[track],
                track,
                model_key,
                self.config.whisper.language,
            )
            for track in tracks
        }
        for track in tracks:
            run.record(StageKind.AUDIO, audio_keys[track])
            run.record(StageKind.TRANSCRIPT, transcript_keys[track])

        transcripts = self._load_cached_transcripts(transcript_keys)
        missing = [track for track in tracks if track not in transcripts]
        if not missing:
            run.reused.append(StageKind.TRANSCRIPT)

        self._check_cancelled()
        # Track ids are checked against the media before any model download
        run.media = self._probe(run.input_file, tracks)
        if missing:
            run.model_path = self._prepare_model(model_key)
            run.record(StageKind.MODEL, model_key)
        run.advance(PipelineState.MODEL_READY)

        self._check_cancelled()
        if missing:
            run.audio_paths = self._extract_audio(run.input_file, missing, audio_keys)
        run.advance(PipelineState.AUDIO_EXTRACTED)

        if missing:
            transcripts.update(self._transcribe(run, missing, transcript_keys))
        run.tokens = combine_transcripts(transcripts[track] for track in tracks)
        run.advance(PipelineState.TRANSCRIBED)

        self._check_cancelled()
        self._derive_clips(run, [transcript_keys[track] for track in tracks])
        run.advance(PipelineState.WINDOWS_MERGED)

        self._check_cancelled()
        run.outcomes = self._materialize(run)
        run.advance(PipelineState.CLIPS_MATERIALIZED)
        if self.cancel_event.is_set():
            raise RunCancelled(context={"produced": run.produced_count})

        if self.config.cache.cleanup and run.failed_count == 0:
            run.purge_report = self.cache.purge(
                key
                for stage, keys in run.fingerprints.items()
                if stage != StageKind.MODEL
                for key in keys
            )
        elif run.failed_count:
            logger.info("Keeping cached artifacts so failed clips can be retried")
        run.advance(PipelineState.DONE)

    def _prepare_model(self, model_key: str) -> Path:
        """Resolve the speech model from the cache or download it."""
        model_name = self.config.whisper.model
        artifact = self.cache.resolve(StageKind.MODEL, model_key)
        if artifact is not None:
            return artifact.path

        staged = self.cache.staging_path(StageKind.MODEL, model_key)
        fetch = retry_with_backoff(self.retry_config, self.cancel_event)(self.model_provider.fetch)
        self._report_progress("model", 0, 1, f"Downloading model {model_name}")

        with ErrorContext("model download", rollback=lambda: self.cache.discard(staged), context={"model": model_name}):
            try:
                fetched = fetch(model_name, staged)
            except WordclipError as e:
                if isinstance(e, (ModelUnavailable, CacheError, RunCancelled)):
                    raise
                raise ModelUnavailable(model_name, e.message) from e
            except OSError as e:
                raise ModelUnavailable(model_name, str(e)) from e
            artifact = self.cache.commit(StageKind.MODEL, model_key, Path(fetched), label=model_name)

        self._report_progress("model", 1, 1, f"Model {model_name} ready")
        return artifact.path

    def _probe(self, media_path: Path, tracks: list[int]) -> MediaInfo:
        """Probe the input and check the configured tracks exist."""
        info = self.extractor.probe(media_path)
        for track in tracks:
            if track > info.audio_streams:
                raise InvalidTrackSelection(track, info.audio_streams, str(media_path))
        return info

    def _extract_audio(
        self,
        media_path: Path,
        tracks: list[int],
        audio_keys: dict[int, str],
    ) -> dict[int, Path]:
        """Extract every track whose audio is not cached, in parallel."""
        paths: dict[int, Path] = {}
        to_extract = []
        for track in tracks:
            artifact = self.cache.resolve(StageKind.AUDIO, audio_keys[track])
            if artifact is not None:
                paths[track] = artifact.path
            else:
                to_extract.append(track)

        if not to_extract:
            return paths

        def extract_one(track: int) -> Path:
            self._check_cancelled()
            key = audio_keys[track]
            staging_dir = self.cache.staging_path(StageKind.AUDIO, key)
            staging_dir.mkdir(parents=True)
            try:
                with ErrorContext("audio extraction", context={"track_id": track}):
                    extracted = self.extractor.extract(media_path, [track], staging_dir)
                    if track not in extracted:
                        raise TrackExtractionFailed(track, "extractor returned no file")
                    artifact = self.cache.commit(
                        StageKind.AUDIO,
                        key,
                        extracted[track],
                        label=f"{media_path.stem}_track{track}",
                    )
            finally:
                self.cache.discard(staging_dir)
            return artifact.path

        workers = max(1, min(self.config.processing.max_parallel, len(to_extract)))
        error: WordclipError | None = None
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(extract_one, track): track for track in to_extract}
            for done, future in enumerate(self._as_completed(futures), start=1):
                track = futures[future]
                if future.cancelled():
                    continue
                try:
                    paths[track] = future.result()
                    self._report_progress("audio", done, len(to_extract), f"Extracted track {track}")
                except WordclipError as e:
                    if error is None:
                        error = e
                        self._cancel_pending(futures)
                except OSError as e:
                    if error is None:
                        error = TrackExtractionFailed(track, str(e))
                        self._cancel_pending(futures)

        if error is not None:
            raise error
        self._check_cancelled()
        return paths

    def _as_completed(self, futures: dict[Future, Any]):
        """Yield finished futures, cancelling the rest once the run is cancelled."""
        pending = set(futures)
        while pending:
            try:
                for future in as_completed(pending, timeout=_POLL_SECONDS):
                    pending.discard(future)
                    yield future
            except FutureTimeoutError:
                pass
            if self.cancel_event.is_set():
                self._cancel_pending(futures)

    @staticmethod
    def _cancel_pending(futures: dict[Future, Any]) -> None:
        for future in futures:
            future.cancel()

    def _load_cached_transcripts(self, transcript_keys: dict[int, str]) -> dict[int, list[TranscriptToken]]:
        cached = {}
        for track, key in transcript_keys.items():
            artifact = self.cache.resolve(StageKind.TRANSCRIPT, key)
            if artifact is None:
                continue
            try:
                cached[track] = load_model(artifact.path, TrackTranscript).tokens
            except CacheError as e:
                logger.warning(f"Ignoring unreadable cached transcript for track {track}: {e}")
        return cached

    def _transcribe(
        self,
        run: PipelineRun,
        tracks: list[int],
        transcript_keys: dict[int, str],
    ) -> dict[int, list[TranscriptToken]]:
        """Transcribe tracks one after another on a single engine."""
        transcriber = self.transcriber_factory(run.model_path)
        timeout = self.config.processing.transcribe_timeout_seconds
        results = {}

        # One worker, so a hung engine call can be abandoned on timeout
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            for index, track in enumerate(tracks, start=1):
                self._check_cancelled()
                self._report_progress("transcript", index - 1, len(tracks), f"Transcribing track {track}")

                future = executor.submit(self._transcribe_one, transcriber, run.audio_paths[track], track)
                tokens = self._wait_for(future, timeout, track)

                transcript = TrackTranscript(
                    track_id=track,
                    model=self.config.whisper.model,
                    language=self.config.whisper.language or "auto",
                    tokens=tokens,
                )
                self.cache.commit(
                    StageKind.TRANSCRIPT,
                    transcript_keys[track],
                    transcript,
                    label=f"{run.input_file.stem}_track{track}",
                )
                results[track] = tokens
                logger.info(f"Track {track}: {len(tokens)} tokens", extra={"track_id": track})
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        self._report_progress("transcript", len(tracks), len(tracks), "Transcription complete")
        return results

    def _transcribe_one(self, transcriber: Transcriber, audio_path: Path, track: int) -> list[TranscriptToken]:
        with self._engine_lock:
            try:
                return transcriber.transcribe(audio_path)
            except TranscriptionFailed as e:
                if e.track_id is None:
                    raise TranscriptionFailed(e.message.removeprefix("Transcription failed: "), track) from e
                raise
            except WordclipError:
                raise
            except Exception as e:
                raise TranscriptionFailed(f"{type(e).__name__}: {e}", track) from e

    def _wait_for(self, future: Future, timeout: float | None, track: int) -> list[TranscriptToken]:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            self._check_cancelled()
            wait = _POLL_SECONDS
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    future.cancel()
                    raise TranscriptionFailed(f"timed out after {timeout} seconds", track)
                wait = min(wait, remaining)
            try:
                return future.result(timeout=wait)
            except FutureTimeoutError:
                continue

    def _derive_clips(self, run: PipelineRun, transcript_keys: list[str]) -> None:
        """Build windows, merge them and commit the clip manifest."""
        duration = run.media.duration if run.media else None
        gap = self.config.processing.merge_gap_seconds
        manifest_key = fingerprint(
            "manifest",
            transcript_keys,
            sorted((rule.model_dump() for rule in run.rules), key=lambda rule: rule["keyword"]),
            duration,
            gap,
        )
        run.record(StageKind.CLIP_MANIFEST, manifest_key)

        artifact = self.cache.resolve(StageKind.CLIP_MANIFEST, manifest_key)
        if artifact is not None:
            try:
                manifest = ClipManifest.model_validate(artifact.load_json())
                run.windows = list(manifest.windows)
                run.clips = list(manifest.clips)
                run.reused.append(StageKind.CLIP_MANIFEST)
                logger.info(f"Reusing clip manifest with {len(run.clips)} clip(s)")
                return
            except (CacheError, ValueError) as e:
                logger.warning(f"Ignoring unreadable clip manifest: {e}")

        run.windows = build_candidate_windows(run.tokens, run.rules, duration)
        run.clips = merge_windows(run.windows, gap_seconds=gap)

        problems = check_merge_invariants(run.windows, run.clips, gap_seconds=gap)
        if problems:
            raise WordclipError("Merged clips are inconsistent: " + "; ".join(problems))

        manifest = ClipManifest(
            media_duration=duration or 0.0,
            merge_gap_seconds=gap,
            rules=run.rules,
            windows=run.windows,
            clips=run.clips,
            transcript_fingerprints=transcript_keys,
        )
        self.cache.commit(StageKind.CLIP_MANIFEST, manifest_key, manifest.to_json(), label=run.input_file.stem)
        logger.info(
            f"{len(run.windows)} window(s) merged into {len(run.clips)} clip(s)",
            extra={"windows": len(run.windows), "clips": len(run.clips)},
        )

    def _materialize(self, run: PipelineRun) -> list[ClipOutcome]:
        """Cut every clip in parallel; failures are recorded per clip."""
        if not run.clips:
            logger.warning("No keyword occurrences found; nothing to cut")
            return []

        output_dir = Path(self.config.output.directory)
        output_dir.mkdir(parents=True, exist_ok=True)
        suffix = run.input_file.suffix or ".mp4"
        stem = run.input_file.stem

        def cut_one(clip: MergedClip) -> Path:
            self._check_cancelled()
            output_path = output_dir / clip.output_name(stem, suffix)
            self.cutter.cut(run.input_file, clip.start, clip.end, output_path)
            return output_path

        outcomes: dict[int, ClipOutcome] = {}
        workers = max(1, min(self.config.processing.max_parallel, len(run.clips)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {executor.submit(cut_one, clip): clip for clip in run.clips}
            for done, future in enumerate(self._as_completed(futures), start=1):
                clip = futures[future]
                expected = output_dir / clip.output_name(stem, suffix)
                outcomes[clip.id] = self._clip_outcome(future, clip, expected)
                self._report_progress("clips", done, len(run.clips), f"clip {clip.id}: {outcomes[clip.id].status.value}")

            for future, clip in futures.items():
                if clip.id not in outcomes:
                    outcomes[clip.id] = ClipOutcome(clip=clip, status=ClipStatus.CANCELLED)

        return [outcomes[clip.id] for clip in run.clips]

    def _clip_outcome(self, future: Future, clip: MergedClip, expected: Path) -> ClipOutcome:
        if future.cancelled():
            return ClipOutcome(clip=clip, status=ClipStatus.CANCELLED, output_path=expected)
        try:
            return ClipOutcome(clip=clip, status=ClipStatus.PRODUCED, output_path=future.result())
        except RunCancelled:
            return ClipOutcome(clip=clip, status=ClipStatus.CANCELLED, output_path=expected)
        except (ExternalToolError, OSError) as e:
            if self.cancel_event.is_set():
                return ClipOutcome(clip=clip, status=ClipStatus.CANCELLED, output_path=expected)
            message = e.message if isinstance(e, WordclipError) else str(e)
            logger.error(f"Clip {clip.id} failed: {message}", extra={"clip_id": clip.id})
            return ClipOutcome(clip=clip, status=ClipStatus.FAILED, output_path=expected, error_message=message)

    def _record_run(self, run: PipelineRun) -> None:
        try:
            self.cache.record_run(run.run_id, run.to_dict())
        except CacheError as e:
            logger.warning(f"Could not write run manifest: {e}")
