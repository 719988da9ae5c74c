"""Fingerprint-addressed stage cache.

Every stage of the pipeline persists its output here under a fingerprint
of the inputs that produced it, so a later run with the same inputs picks
the artifact up instead of recomputing it. Producers write into a staging
path first and `commit` renames the result into place, which keeps the
cache consistent across crashes and concurrent runs without locking.

Layout::

    <cache>/models/<fp>_<label>/        model weights (shared across runs)
    <cache>/audio/<fp>_<label>.wav      one extracted track
    <cache>/transcripts/<fp>_<label>.json
    <cache>/manifests/<fp>_<label>.json
    <cache>/runs/<run_id>.json          fingerprints used by one run
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from pydantic import BaseModel

from wordclip.errors import CacheError
from wordclip.logging import get_logger
from wordclip.storage import atomic_write, atomic_write_json, read_json

logger = get_logger(__name__)

CACHE_DIR_ENV = "WORDCLIP_CACHE_DIR"
STAGING_PREFIX = ".staging_"


class StageKind(str, Enum):
    """Pipeline stages whose outputs are cached."""

    MODEL = "model"
    AUDIO = "audio"
    TRANSCRIPT = "transcript"
    CLIP_MANIFEST = "clip_manifest"


STAGE_DIRECTORIES = {
    StageKind.MODEL: "models",
    StageKind.AUDIO: "audio",
    StageKind.TRANSCRIPT: "transcripts",
    StageKind.CLIP_MANIFEST: "manifests",
}

# Stages whose artifacts are JSON documents and must parse to be valid
JSON_STAGES = frozenset({StageKind.TRANSCRIPT, StageKind.CLIP_MANIFEST})


def default_cache_dir() -> Path:
    """Get the cache directory from the environment or the home default."""
    configured = os.environ.get(CACHE_DIR_ENV)
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".wordclip" / "cache"


def fingerprint(*parts: Any) -> str:
    """Compute a deterministic fingerprint of stage inputs.

    Parts are serialized as canonical JSON (sorted keys, no whitespace)
    and hashed with SHA-256. Pydantic models are dumped first.

    Args:
        *parts: JSON-serializable inputs

    Returns:
        Hex digest
    """
    normalized = [part.model_dump(mode="json") if isinstance(part, BaseModel) else part for part in parts]
    canonical = json.dumps(normalized, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def media_identity(path: Path) -> dict[str, Any]:
    """Describe an input file by location, size and modification time.

    Raises:
        CacheError: If the file cannot be stat'ed
    """
    try:
        stat = path.stat()
    except OSError as e:
        raise CacheError(f"Cannot read input {path}: {e}", context={"path": str(path)}) from e
    return {
        "path": str(path.resolve()),
        "size": stat.st_size,
        "mtime_ns": stat.st_mtime_ns,
    }


def _safe_label(label: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", label).strip("_") or "artifact"


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def _path_size(path: Path) -> int:
    if path.is_dir():
        return sum(child.stat().st_size for child in path.rglob("*") if child.is_file())
    return path.stat().st_size


@dataclass(frozen=True)
class StageArtifact:
    """Handle to one cached stage output.

    Attributes:
        stage: Stage that produced the artifact
        key: Fingerprint of the stage inputs
        path: File or directory holding the artifact
        valid: Whether the artifact is present and readable
    """

    stage: StageKind
    key: str
    path: Path
    valid: bool = True

    @property
    def label(self) -> str:
        """Get the human-readable part of the artifact name."""
        name = self.path.name
        if self.path.suffix and not self.path.is_dir():
            name = self.path.stem
        return name[len(self.key) + 1:]

    def load_json(self) -> Any:
        """Read a JSON artifact."""
        return read_json(self.path)


@dataclass
class PurgeReport:
    """Outcome of a best-effort purge.

    Attributes:
        removed: Paths deleted
        failed: Paths that could not be deleted, with the reason
    """

    removed: list[Path] = field(default_factory=list)
    failed: list[tuple[Path, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Check if every targeted path was removed."""
        return not self.failed

    def merge(self, other: "PurgeReport") -> None:
        """Fold another report into this one."""
        self.removed.extend(other.removed)
        self.failed.extend(other.failed)


class StageCacheManager:
    """Fingerprint-addressed artifact store for the pipeline stages.

    Example:
        cache = StageCacheManager(Path("~/.wordclip/cache").expanduser())

        fp = fingerprint(media_identity(video), 1)
        artifact = cache.resolve(StageKind.AUDIO, fp)
        if artifact is None:
            staged = cache.staging_path(StageKind.AUDIO, fp, ".wav")
            extract_track(video, staged)
            artifact = cache.commit(StageKind.AUDIO, fp, staged, "interview_track1")
    """

    def __init__(self, root: Path | None = None):
        """Initialize the cache manager.

        Args:
            root: Cache directory. Defaults to `default_cache_dir()`.
        """
        self.root = Path(root) if root is not None else default_cache_dir()

    @property
    def runs_dir(self) -> Path:
        """Directory holding run manifests."""
        return self.root / "runs"

    def stage_dir(self, stage: StageKind) -> Path:
        """Get the directory for a stage, creating it on first use."""
        path = self.root / STAGE_DIRECTORIES[stage]
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheError(f"Cannot create cache directory {path}: {e}", context={"stage": stage.value}) from e
        return path

    def _entries(self, stage: StageKind, key: str) -> list[Path]:
        directory = self.root / STAGE_DIRECTORIES[stage]
        if not directory.is_dir():
            return []
        return sorted(directory.glob(f"{key}_*"))

    def _is_valid(self, stage: StageKind, path: Path) -> bool:
        try:
            if path.is_dir():
                return any(path.iterdir())
            if not path.is_file() or path.stat().st_size == 0:
                return False
        except OSError:
            return False

        if stage in JSON_STAGES:
            try:
                read_json(path)
            except CacheError:
                return False
        return True

    def resolve(self, stage: StageKind, key: str) -> StageArtifact | None:
        """Look up a valid artifact for a stage and fingerprint.

        Empty, unreadable or corrupt entries count as a miss.

        Args:
            stage: Stage to look in
            key: Fingerprint of the stage inputs

        Returns:
            The artifact, or None on a miss
        """
        candidates = [path for path in self._entries(stage, key) if self._is_valid(stage, path)]
        if not candidates:
            logger.debug(f"Cache miss: {stage.value} {key[:12]}", extra={"stage": stage.value})
            return None

        # Newest wins if an older label is still around
        path = max(candidates, key=lambda p: p.stat().st_mtime_ns)
        logger.debug(f"Cache hit: {stage.value} {path.name}", extra={"stage": stage.value})
        return StageArtifact(stage=stage, key=key, path=path)

    def staging_path(self, stage: StageKind, key: str, suffix: str = "") -> Path:
        """Get a unique temporary path inside the stage directory.

        Producers write here and pass the path to `commit`. The path is
        hidden from `resolve` and unique per call, so concurrent runs never
        collide.

        Args:
            stage: Stage the artifact belongs to
            key: Fingerprint of the stage inputs
            suffix: Extension for the staged file, including the dot

        Returns:
            Path that does not exist yet
        """
        return self.stage_dir(stage) / f"{STAGING_PREFIX}{key[:16]}_{uuid.uuid4().hex}{suffix}"

    def commit(
        self,
        stage: StageKind,
        key: str,
        payload: Path | BaseModel | dict | list | str,
        label: str,
    ) -> StageArtifact:
        """Publish a stage output under its fingerprint.

        A `Path` payload is a staged file or directory and is renamed into
        place. Anything else is written as JSON with an atomic temp-file
        write (a `str` is taken as already serialized JSON). Any earlier
        entry for the same stage and fingerprint is replaced.

        Args:
            stage: Stage the artifact belongs to
            key: Fingerprint of the stage inputs
            payload: Staged path or JSON data
            label: Human-readable name part

        Returns:
            Handle to the committed artifact

        Raises:
            CacheError: If the artifact cannot be written
        """
        directory = self.stage_dir(stage)
        name = f"{key}_{_safe_label(label)}"

        if isinstance(payload, Path):
            target = directory / (name if payload.is_dir() else name + payload.suffix)
            self._install(payload, target)
        else:
            target = directory / f"{name}.json"
            if isinstance(payload, BaseModel):
                atomic_write_json(target, payload.model_dump(mode="json"), sort_keys=True)
            elif isinstance(payload, str):
                atomic_write(target, payload)
            else:
                atomic_write_json(target, payload, sort_keys=True)

        for stale in self._entries(stage, key):
            if stale != target:
                try:
                    _remove_path(stale)
                except OSError as e:
                    logger.warning(f"Could not remove superseded artifact {stale}: {e}")

        logger.debug(f"Committed {stage.value} artifact {target.name}", extra={"stage": stage.value})
        return StageArtifact(stage=stage, key=key, path=target)

    def _install(self, staged: Path, target: Path) -> None:
        if not staged.exists():
            raise CacheError(f"Staged artifact {staged} does not exist", context={"path": str(staged)})
        try:
            if staged.is_dir():
                if target.exists():
                    # Directories cannot be replaced atomically; swap the old one aside
                    retired = target.with_name(f"{STAGING_PREFIX}retired_{uuid.uuid4().hex}")
                    os.rename(target, retired)
                    os.rename(staged, target)
                    shutil.rmtree(retired, ignore_errors=True)
                else:
                    os.rename(staged, target)
            else:
                os.replace(staged, target)
        except OSError as e:
            raise CacheError(f"Failed to commit {staged} to {target}: {e}", context={"path": str(target)}) from e

    def discard(self, path: Path) -> None:
        """Remove a staged path that will not be committed."""
        if not path.exists():
            return
        try:
            _remove_path(path)
        except OSError as e:
            logger.warning(f"Could not remove staged path {path}: {e}")

    def purge(self, keys: Iterable[str], include_models: bool = False) -> PurgeReport:
        """Remove artifacts for the given fingerprints, best effort.

        Failures are logged and reported, never raised. Model artifacts are
        shared across runs and are kept unless `include_models` is set.

        Args:
            keys: Fingerprints to remove
            include_models: Also remove model artifacts

        Returns:
            What was removed and what was not
        """
        report = PurgeReport()
        keys = set(keys)
        if not keys:
            return report

        for stage, dirname in STAGE_DIRECTORIES.items():
            if stage == StageKind.MODEL and not include_models:
                continue
            directory = self.root / dirname
            if not directory.is_dir():
                continue
            for path in directory.iterdir():
                if not any(self._belongs_to(path.name, key) for key in keys):
                    continue
                self._purge_path(path, report)

        if report.failed:
            logger.warning(f"Cache purge left {len(report.failed)} item(s) behind")
        return report

    @staticmethod
    def _belongs_to(name: str, key: str) -> bool:
        return name.startswith(f"{key}_") or name.startswith(f"{STAGING_PREFIX}{key[:16]}_")

    def _purge_path(self, path: Path, report: PurgeReport) -> None:
        try:
            _remove_path(path)
            report.removed.append(path)
        except OSError as e:
            logger.warning(f"Failed to remove cached artifact {path}: {e}")
            report.failed.append((path, str(e)))

    def list_artifacts(self, stage: StageKind | None = None) -> list[StageArtifact]:
        """List committed artifacts, valid or not.

        Args:
            stage: Only list this stage

        Returns:
            Artifacts ordered by stage and name
        """
        stages = [stage] if stage is not None else list(StageKind)
        artifacts = []
        for current in stages:
            directory = self.root / STAGE_DIRECTORIES[current]
            if not directory.is_dir():
                continue
            for path in sorted(directory.iterdir()):
                if path.name.startswith(".") or "_" not in path.name:
                    continue
                key = path.name.split("_", 1)[0]
                artifacts.append(
                    StageArtifact(stage=current, key=key, path=path, valid=self._is_valid(current, path))
                )
        return artifacts

    def artifact_size(self, artifact: StageArtifact) -> int:
        """Get the on-disk size of an artifact in bytes."""
        try:
            return _path_size(artifact.path)
        except OSError:
            return 0

    def clear(self, include_models: bool = False) -> PurgeReport:
        """Remove every cached artifact, staging leftovers and run manifests.

        Args:
            include_models: Also remove downloaded models

        Returns:
            Purge report
        """
        report = PurgeReport()
        directories = [
            self.root / dirname
            for stage, dirname in STAGE_DIRECTORIES.items()
            if include_models or stage != StageKind.MODEL
        ]
        directories.append(self.runs_dir)

        for directory in directories:
            if not directory.is_dir():
                continue
            for path in directory.iterdir():
                self._purge_path(path, report)
        return report

    def record_run(self, run_id: str, data: dict[str, Any]) -> Path:
        """Write the manifest of one run.

        Args:
            run_id: Unique run identifier
            data: Fingerprints and outcome of the run

        Returns:
            Path of the run manifest
        """
        path = self.runs_dir / f"{run_id}.json"
        atomic_write_json(path, {"run_id": run_id, "recorded_at": datetime.now().isoformat(), **data})
        return path

    def list_runs(self) -> list[dict[str, Any]]:
        """Load every readable run manifest, oldest first."""
        if not self.runs_dir.is_dir():
            return []
        runs = []
        for path in sorted(self.runs_dir.glob("*.json")):
            try:
                runs.append(read_json(path))
            except CacheError as e:
                logger.debug(f"Skipping unreadable run manifest: {e}")
        return sorted(runs, key=lambda run: run.get("recorded_at", ""))
