"""Public interface for the audio download engine."""

from .audio_file import AudioFile, decrypt
from .channel import Channel, DataCallback, HeaderCallback, ReleaseCallback
from .player import MAX_CHANNEL_ID, Player
from .sequence import MAX_SEQUENCE, SequenceProvider, SessionSequence

__all__ = [
    "MAX_CHANNEL_ID",
    "MAX_SEQUENCE",
    "AudioFile",
    "Channel",
    "DataCallback",
    "HeaderCallback",
    "Player",
    "ReleaseCallback",
    "SequenceProvider",
    "SessionSequence",
    "decrypt",
]
