"""Whisper model acquisition.

Downloads CTranslate2 conversions of the Whisper models from the Hugging
Face Hub through faster-whisper. The pipeline stages the download into the
cache and retries transient failures.
"""

from __future__ import annotations

from pathlib import Path

from wordclip.collaborators import ModelProvider
from wordclip.errors import ModelUnavailable, wrap_download_error
from wordclip.logging import get_logger

logger = get_logger(__name__)

# Model sizes faster-whisper knows how to download
KNOWN_MODELS = (
    "tiny",
    "tiny.en",
    "base",
    "base.en",
    "small",
    "small.en",
    "medium",
    "medium.en",
    "large-v1",
    "large-v2",
    "large-v3",
    "large",
    "distil-large-v2",
    "distil-medium.en",
    "distil-small.en",
    "distil-large-v3",
    "large-v3-turbo",
    "turbo",
)


def is_known_model(model_name: str) -> bool:
    """Check if a model name can be downloaded."""
    return model_name in KNOWN_MODELS


class WhisperModelStore(ModelProvider):
    """Fetches Whisper models with `faster_whisper.download_model`."""

    def __init__(self, hub_cache_dir: Path | None = None):
        """Initialize the store.

        Args:
            hub_cache_dir: Hugging Face hub cache to reuse across tools
        """
        self.hub_cache_dir = hub_cache_dir

    def fetch(self, model_name: str, destination: Path) -> Path:
        """Download a model into `destination`.

        Args:
            model_name: Known model size, e.g. "base.en"
            destination: Directory to download into

        Returns:
            destination

        Raises:
            ModelUnavailable: If the model name is unknown
            TransientError: On network failures worth retrying
            AcquisitionError: On any other download failure
        """
        if not is_known_model(model_name):
            raise ModelUnavailable(model_name, f"unknown model (choose from {', '.join(KNOWN_MODELS)})")

        from faster_whisper import download_model

        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)
        logger.info(f"Downloading Whisper model '{model_name}'", extra={"model": model_name})

        try:
            download_model(
                model_name,
                output_dir=str(destination),
                cache_dir=str(self.hub_cache_dir) if self.hub_cache_dir else None,
            )
        except Exception as e:
            raise wrap_download_error(e, model_name) from e

        return destination
