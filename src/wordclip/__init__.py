"""Wordclip - keyword-driven video clipping.

Transcribes the audio tracks of a long recording, finds every spoken
occurrence of a set of keywords, and cuts one short clip around each
cluster of occurrences. Every stage is cached on disk so interrupted runs
resume where they stopped.
"""

__version__ = "0.1.0"
