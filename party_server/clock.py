"""Playback clock materialization.

A room stores its playback position together with the wall-clock instant at
which that position was exact. Anything that reads the position for a client,
or mutates it on behalf of the host, first folds the elapsed time in with
:func:`materialize` so that time is never counted twice nor dropped.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from party_shared.protocol import VideoRef


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True, frozen=True)
class PlaybackSnapshot:
    video: Optional[VideoRef] = None
    playing: bool = False
    position: float = 0.0
    updated_ms: int = 0

    def to_wire(self) -> Dict[str, Any]:
        return {
            "video": self.video.to_dict() if self.video else None,
            "playing": self.playing,
            "time": self.position,
        }


def materialize(snapshot: PlaybackSnapshot, now: int) -> PlaybackSnapshot:
    """Return ``snapshot`` advanced to ``now`` (milliseconds).

    While playing, the position moves forward by the elapsed wall-clock time
    and is clamped at zero; while paused it is returned unchanged. In both
    cases the result is re-stamped with ``now``.
    """

    position = snapshot.position
    if snapshot.playing:
        position = max(0.0, position + (now - snapshot.updated_ms) / 1000.0)
    return replace(snapshot, position=position, updated_ms=now)
