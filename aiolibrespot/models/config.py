"""Configuration for the download engine."""

from __future__ import annotations

from dataclasses import dataclass

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin


@dataclass
class PlayerConfig(DataClassORJSONMixin):
    """Tunables shared by a Player and the AudioFiles it creates."""

    key_timeout: float = 10.0
    """Seconds to wait for an audio key response."""
    chunk_timeout: float = 30.0
    """Seconds to wait for a channel to deliver a whole chunk."""
    chunk_size_words: int = 32768
    """Chunk size in 4-byte words (128 KiB)."""
    max_concurrent_chunks: int = 4
    """Number of channels an AudioFile keeps in flight at once."""

    class Config(BaseConfig):
        """Config for parsing json."""

        omit_default = True

    def __post_init__(self) -> None:
        """Validate the configured values."""
        if self.key_timeout <= 0:
            raise ValueError("key_timeout must be positive")
        if self.chunk_timeout <= 0:
            raise ValueError("chunk_timeout must be positive")
        if self.chunk_size_words <= 0:
            raise ValueError("chunk_size_words must be positive")
        if self.max_concurrent_chunks <= 0:
            raise ValueError("max_concurrent_chunks must be positive")

    @property
    def chunk_size(self) -> int:
        """Return the chunk size in bytes."""
        return self.chunk_size_words * 4
