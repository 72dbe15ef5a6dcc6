"""Contract of the local media capture provider."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Protocol, Sequence


@dataclass(frozen=True)
class MediaConstraints:
    """Capture settings requested when a call starts."""

    audio: bool = True
    video: bool = True
    width: int = 1280
    height: int = 720
    frame_rate: int = 30
    camera_index: int = 0
    sample_rate: int = 48000
    channels: int = 1


class MediaCaptureProvider(Protocol):
    """Acquires local tracks for a call and takes them back afterwards.

    ``acquire`` raises :class:`caller.errors.MediaAcquisitionError` when a
    device cannot be opened; the call core never retries it.
    """

    async def acquire(self, constraints: MediaConstraints) -> List[Any]: ...

    def release(self, tracks: Sequence[Any]) -> None: ...
