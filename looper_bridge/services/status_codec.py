"""
Pure encode/decode for the looper's UDP protocol.

Compact status frame (all integers 32-bit big-endian signed):

    [sample_rate][track_count][state * n][length * n][position * n]
    [level * n][pan * n][feedback * n][selected * n]

The per-track fields are seven parallel arrays laid back to back, not interleaved
records. Outbound traffic is ASCII text built from a small tag vocabulary.
"""

from __future__ import annotations

import dataclasses
import re
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Union

from looper_bridge.constants import SUPPORTED_TRACK_COUNTS
from looper_bridge.state import (
    FEEDBACK_PERCENT_RANGE,
    LEVEL_DB_RANGE,
    PAN_UNITS_RANGE,
    DeviceStatus,
    TrackState,
    TrackStatus,
)

SYSEX_MARKER = 0xF0
FIELD_SIZE = 4
FIELDS_PER_TRACK = 7
HEADER_SIZE = 8
TRACK_STRIDE = FIELD_SIZE * FIELDS_PER_TRACK

_HEADER = struct.Struct(">ii")

# Only the head of the datagram is inspected for legacy text markers
TEXT_PROBE_BYTES = 20


class DecodeErrorKind(str, Enum):
    MALFORMED = "malformed"
    UNSUPPORTED_TRACK_COUNT = "unsupported_track_count"
    TRUNCATED = "truncated"


class DecodeError(Exception):
    """A status frame was rejected; the stored snapshot must not change."""

    def __init__(self, kind: DecodeErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


class CommandError(ValueError):
    """An outbound command is outside the supported vocabulary."""


def _clamp(value: int, bounds: tuple[int, int]) -> int:
    lo, hi = bounds
    return max(lo, min(hi, value))


# ---------------------------------------------------------------------------
# Binary compact status
# ---------------------------------------------------------------------------


def is_sysex(data: bytes) -> bool:
    return data[:1] == bytes([SYSEX_MARKER])


def frame_size(track_count: int) -> int:
    return HEADER_SIZE + track_count * TRACK_STRIDE


def decode_status(data: bytes, prior: DeviceStatus | None = None) -> DeviceStatus | None:
    """
    Decode a compact status frame into a new DeviceStatus.

    Returns None for sysex control traffic, which shares the port and is ignored.
    Raises DecodeError for anything else that cannot be decoded; no partial result is
    ever produced. ``prior`` supplies the selected track to keep when no track in the
    frame carries the selected flag. State codes outside the known set decode as
    TrackState.UNKNOWN.
    """
    if is_sysex(data):
        return None
    if len(data) < HEADER_SIZE:
        raise DecodeError(
            DecodeErrorKind.MALFORMED,
            f"frame too short for header: {len(data)} bytes",
        )

    sample_rate, track_count = _HEADER.unpack_from(data, 0)
    if track_count not in SUPPORTED_TRACK_COUNTS:
        raise DecodeError(
            DecodeErrorKind.UNSUPPORTED_TRACK_COUNT,
            f"unsupported track count {track_count}",
        )

    need = frame_size(track_count)
    if len(data) < need:
        raise DecodeError(
            DecodeErrorKind.TRUNCATED,
            f"frame has {len(data)} bytes, need {need} for {track_count} tracks",
        )

    column = struct.Struct(f">{track_count}i")
    states, lengths, positions, levels, pans, feedbacks, selected = (
        column.unpack_from(data, HEADER_SIZE + k * track_count * FIELD_SIZE)
        for k in range(FIELDS_PER_TRACK)
    )

    tracks: list[TrackStatus] = []
    for i in range(track_count):
        tracks.append(
            TrackStatus(
                state=TrackState(states[i]),
                length_samples=max(0, lengths[i]),
                position_samples=max(0, positions[i]),
                level_db=_clamp(levels[i], LEVEL_DB_RANGE),
                pan_units=_clamp(pans[i], PAN_UNITS_RANGE),
                feedback_percent=_clamp(feedbacks[i], FEEDBACK_PERCENT_RANGE),
            )
        )

    selected_track = prior.selected_track if prior is not None else 0
    if selected_track >= track_count:
        selected_track = 0
    # Hardware should flag a single track; if several are set the last one wins
    for i, flag in enumerate(selected):
        if flag:
            selected_track = i

    return DeviceStatus(
        track_count=track_count,
        tracks=tuple(tracks),
        selected_track=selected_track,
        sample_rate=sample_rate,
    )


def encode_status(status: DeviceStatus) -> bytes:
    """
    Render a DeviceStatus back into the compact frame layout.

    The selected column is rebuilt from ``selected_track`` as a single flag of 1, so
    only frames carrying exactly one flag of value 1 come back byte for byte. UNKNOWN
    states are written as -1.
    """
    n = status.track_count
    if len(status.tracks) != n:
        raise ValueError(f"status has {len(status.tracks)} tracks, expected {n}")
    columns = (
        [int(t.state) for t in status.tracks],
        [t.length_samples for t in status.tracks],
        [t.position_samples for t in status.tracks],
        [t.level_db for t in status.tracks],
        [t.pan_units for t in status.tracks],
        [t.feedback_percent for t in status.tracks],
        [1 if i == status.selected_track else 0 for i in range(n)],
    )
    column = struct.Struct(f">{n}i")
    return _HEADER.pack(status.sample_rate, n) + b"".join(
        column.pack(*values) for values in columns
    )


# ---------------------------------------------------------------------------
# Legacy text framing
# ---------------------------------------------------------------------------

_TRACK_BLOCK_RE = re.compile(r"<track>(.*?)</track>", re.S)
_TRACK_ID_RE = re.compile(r"<id>(\d+)</id>")
_DEVICE_ID_RE = re.compile(r"<id>(.*?)</id>", re.S)

# tag -> (TrackStatus field, clamp range)
_TEXT_FIELDS = {
    "level": ("level_db", LEVEL_DB_RANGE),
    "pan": ("pan_units", PAN_UNITS_RANGE),
    "feedback": ("feedback_percent", FEEDBACK_PERCENT_RANGE),
}
_TEXT_STATE_RE = re.compile(r"<status>(\d+)</status>")


def _ascii(data: bytes) -> str:
    return data.decode("ascii", errors="ignore")


def is_text_status(data: bytes) -> bool:
    head = _ascii(data[:TEXT_PROBE_BYTES])
    return "<status>" in head or "<track>" in head


def parse_text_status(data: bytes, prior: DeviceStatus) -> DeviceStatus:
    """
    Best-effort decode of the tagged text status form.

    Only fields present in the text are applied; everything else keeps the value from
    ``prior``. Track ids in the text are 1-based. Blocks without a usable id are skipped.
    """
    text = _ascii(data)
    tracks = list(prior.tracks)
    for block in _TRACK_BLOCK_RE.findall(text):
        id_match = _TRACK_ID_RE.search(block)
        if not id_match:
            continue
        index = int(id_match.group(1)) - 1
        if not 0 <= index < len(tracks):
            continue

        changes: dict = {}
        for tag, (attr, bounds) in _TEXT_FIELDS.items():
            m = re.search(rf"<{tag}>(-?\d+)</{tag}>", block)
            if m:
                changes[attr] = _clamp(int(m.group(1)), bounds)
        state_match = _TEXT_STATE_RE.search(block)
        if state_match:
            changes["state"] = TrackState(int(state_match.group(1)))
        if changes:
            tracks[index] = dataclasses.replace(tracks[index], **changes)

    return dataclasses.replace(prior, tracks=tuple(tracks))


def extract_device_id(data: bytes) -> str | None:
    """Return the device id from an identity response, or None.

    ``<id>`` tags nested in ``<track>`` blocks are track ids, not device ids.
    """
    text = _TRACK_BLOCK_RE.sub("", _ascii(data))
    m = _DEVICE_ID_RE.search(text)
    if not m:
        return None
    device_id = m.group(1).strip()
    return device_id or None


# ---------------------------------------------------------------------------
# Outbound commands
# ---------------------------------------------------------------------------

TRACK_PARAMETER_RANGES: dict[str, tuple[int, int]] = {
    "level": LEVEL_DB_RANGE,
    "pan": PAN_UNITS_RANGE,
    "feedback": FEEDBACK_PERCENT_RANGE,
}
MAX_TRACK_ID = max(SUPPORTED_TRACK_COUNTS)
_COMMAND_NAME_RE = re.compile(r"[A-Za-z0-9_ .-]+")


@dataclass(frozen=True)
class IdentityQuery:
    pass


@dataclass(frozen=True)
class StatusQuery:
    pass


@dataclass(frozen=True)
class GenericCommand:
    name: str

    def __post_init__(self) -> None:
        if not _COMMAND_NAME_RE.fullmatch(self.name or ""):
            raise CommandError(f"invalid command name: {self.name!r}")


@dataclass(frozen=True)
class TrackParameter:
    track_id: int  # 1-based, as the device numbers tracks
    parameter: str
    value: int

    def __post_init__(self) -> None:
        if not 1 <= self.track_id <= MAX_TRACK_ID:
            raise CommandError(f"track id out of range: {self.track_id}")
        bounds = TRACK_PARAMETER_RANGES.get(self.parameter)
        if bounds is None:
            raise CommandError(f"unknown track parameter: {self.parameter!r}")
        lo, hi = bounds
        if not lo <= self.value <= hi:
            raise CommandError(
                f"{self.parameter} value {self.value} outside [{lo}, {hi}]"
            )


Command = Union[IdentityQuery, StatusQuery, GenericCommand, TrackParameter]


def render_command(command: Command) -> str:
    if isinstance(command, IdentityQuery):
        return "<query>id</query>"
    if isinstance(command, StatusQuery):
        return "<query>status compact</query>"
    if isinstance(command, GenericCommand):
        return f"<command>{command.name}</command>"
    if isinstance(command, TrackParameter):
        p = command.parameter
        return f"<track><id>{command.track_id}</id><{p}>{command.value}</{p}></track>"
    raise CommandError(f"unsupported command type: {type(command).__name__}")


def encode_command(command: Command) -> bytes:
    return render_command(command).encode("ascii")


def parse_command(text: str) -> Command:
    """
    Map a subscriber's text command onto the vocabulary.

    ``STATUS`` -> StatusQuery, ``TRACK_<n>_<PARAM>_<value>`` -> TrackParameter,
    anything else -> GenericCommand.
    """
    text = (text or "").strip()
    if text.upper() == "STATUS":
        return StatusQuery()
    if text.upper().startswith("TRACK_"):
        parts = text.split("_")
        if len(parts) != 4:
            raise CommandError(f"expected TRACK_<n>_<PARAM>_<value>, got {text!r}")
        try:
            track_id = int(parts[1])
            value = int(parts[3])
        except ValueError:
            raise CommandError(f"non-numeric track command: {text!r}") from None
        return TrackParameter(track_id, parts[2].lower(), value)
    return GenericCommand(text)
