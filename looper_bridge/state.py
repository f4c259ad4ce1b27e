from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum

from looper_bridge.constants import DEFAULT_TRACK_COUNT

LEVEL_DB_RANGE = (-40, 0)
PAN_UNITS_RANGE = (-64, 63)
FEEDBACK_PERCENT_RANGE = (0, 100)


class TrackState(IntEnum):
    UNKNOWN = -1
    EMPTY = 0
    RECORDING = 1
    OVERDUBBING = 2
    STOPPED = 3
    PLAYING = 4
    REPLACING = 5

    @classmethod
    def _missing_(cls, value):
        # Any other integer code; the raw value is not kept
        if isinstance(value, int):
            return cls.UNKNOWN
        return None


@dataclass(frozen=True)
class TrackStatus:
    state: TrackState = TrackState.EMPTY
    length_samples: int = 0
    position_samples: int = 0
    level_db: int = 0
    pan_units: int = 0
    feedback_percent: int = 0

    def to_dict(self) -> dict:
        return {
            "state": self.state.name.lower(),
            "length_samples": self.length_samples,
            "position_samples": self.position_samples,
            "level_db": self.level_db,
            "pan_units": self.pan_units,
            "feedback_percent": self.feedback_percent,
        }


def _default_tracks() -> tuple[TrackStatus, ...]:
    return tuple(TrackStatus() for _ in range(DEFAULT_TRACK_COUNT))


@dataclass(frozen=True)
class DeviceStatus:
    """Full decoded snapshot of the looper.

    Instances are immutable; every accepted frame produces a new one. ``sample_rate``
    is carried through untouched so a decoded frame can be encoded again.
    """

    track_count: int = DEFAULT_TRACK_COUNT
    tracks: tuple[TrackStatus, ...] = field(default_factory=_default_tracks)
    selected_track: int = 0
    sample_rate: int = 0

    def to_dict(self) -> dict:
        return {
            "track_count": self.track_count,
            "selected_track": self.selected_track,
            "sample_rate": self.sample_rate,
            "tracks": [t.to_dict() for t in self.tracks],
        }


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    DISCOVERING = "discovering"
    CONNECTED = "connected"


@dataclass(frozen=True)
class DeviceConnection:
    state: ConnectionState = ConnectionState.DISCONNECTED
    address: str | None = None
    last_seen_at: float | None = None  # event loop monotonic seconds
    device_id: str | None = None

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "address": self.address,
            "device_id": self.device_id,
        }


# ---- Events pushed to subscribers ----


@dataclass(frozen=True)
class StatusUpdate:
    status: DeviceStatus

    def to_dict(self) -> dict:
        return {"event": "status", "status": self.status.to_dict()}


@dataclass(frozen=True)
class DeviceFound:
    address: str
    device_id: str

    def to_dict(self) -> dict:
        return {"event": "device_found", "address": self.address, "id": self.device_id}


@dataclass(frozen=True)
class DeviceLost:
    address: str | None = None

    def to_dict(self) -> dict:
        return {"event": "device_lost", "address": self.address}


@dataclass(frozen=True)
class DeviceError:
    message: str

    def to_dict(self) -> dict:
        return {"event": "device_error", "message": self.message}
