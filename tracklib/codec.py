"""
The codec module converts tracks to and from their on-disk TOML representation.

Reading happens in two phases. First we parse the document and inspect only the top-level `version`
tag. Then we hand the document to the reader registered for that tag, which validates the full body
against that version's schema. An unrecognized tag is always a FormatError: we never guess at a
schema. When the format changes, the old reader stays registered (or converts to the new model) and
a new reader is added for the new tag.
"""

from __future__ import annotations

import dataclasses
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import tomli_w
import tomllib

from tracklib.common import TracklibExpectedError
from tracklib.track import (
    CONTROL_SCHEMES,
    NOTE_TYPES,
    TRACK_FORMAT_VERSION,
    BpmEvent,
    DragNote,
    DragNotePath,
    Note,
    Pattern,
    PatternMetadata,
    SoundChannel,
    Track,
    TrackMetadata,
)

logger = logging.getLogger(__name__)


class FormatError(TracklibExpectedError):
    pass


def serialize_track(track: Track) -> str:
    """
    Render a track as TOML. Refuses (with a FormatError) to write a track that the reader would
    reject, so that every saved file loads back.
    """
    _check_preview_window(
        track.track_metadata.preview_start_time,
        track.track_metadata.preview_end_time,
        "track_metadata",
    )
    data: dict[str, Any] = {
        "version": track.version,
        "track_metadata": dataclasses.asdict(track.track_metadata),
        "patterns": [_pattern_to_dict(p) for p in track.patterns],
    }
    return tomli_w.dumps(data)


def _pattern_to_dict(pattern: Pattern) -> dict[str, Any]:
    return {
        "pattern_metadata": dataclasses.asdict(pattern.pattern_metadata),
        "bpm_events": [dataclasses.asdict(e) for e in pattern.bpm_events],
        "sound_channels": [
            {
                "name": channel.name,
                "notes": [
                    {"lane": n.lane, "pulse": n.pulse, "type": n.type} for n in channel.notes
                ],
                "drag_notes": [
                    {
                        "lane": n.lane,
                        "pulse": n.pulse,
                        "type": n.type,
                        "path": [{"lane": p.lane, "pulse": p.pulse} for p in n.path],
                    }
                    for n in channel.drag_notes
                ],
            }
            for channel in pattern.sound_channels
        ],
    }


def deserialize_track(text: str) -> Track:
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise FormatError(f"Invalid track file: {e}") from e
    except RecursionError as e:
        raise FormatError("Invalid track file: values are nested too deeply") from e

    version = _read_version(data)
    try:
        reader = READERS[version]
    except KeyError as e:
        raise FormatError(f"Unknown version: {version}") from e
    logger.debug(f"Reading track with format version {version}")
    return reader(data)


def _read_version(data: dict[str, Any]) -> str:
    """Read the envelope. Nothing but the version tag is looked at here."""
    try:
        version = data["version"]
    except KeyError as e:
        raise FormatError("Missing version tag") from e
    if not isinstance(version, str):
        raise FormatError(f"Invalid version tag: must be a string: got {version!r}")
    return version


def clone_track(track: Track) -> Track:
    """
    Deep copy a track by round-tripping it through the text format. Slow, but it guarantees that the
    copy shares nothing with the original.
    """
    return deserialize_track(serialize_track(track))


def load_track(path: Path) -> Track:
    try:
        with path.open("r", encoding="utf-8") as fp:
            text = fp.read()
    except UnicodeDecodeError as e:
        raise FormatError(f"Invalid track file: not UTF-8 text: {e}") from e
    return deserialize_track(text)


def save_track(track: Track, path: Path) -> None:
    text = serialize_track(track)
    tmppath = path.with_name(path.name + ".tmp")
    with tmppath.open("w", encoding="utf-8") as fp:
        fp.write(text)
    tmppath.replace(path)
    logger.debug(f"Saved track {track.track_metadata.title} to {path}")


def dump_track(track: Track) -> str:
    return json.dumps(dataclasses.asdict(track))


# Version 1 reader. Missing scalar fields take their defaults, but a field that is present must have
# the right type.


def _read_track_v1(data: dict[str, Any]) -> Track:
    metadata = _table(data, "track_metadata", "", required=True)
    patterns = _list(data, "patterns", "", required=True)
    return Track(
        version=TRACK_FORMAT_VERSION,
        track_metadata=_read_track_metadata_v1(metadata),
        patterns=[
            _read_pattern_v1(_as_table(p, f"patterns[{i}]"), f"patterns[{i}]")
            for i, p in enumerate(patterns)
        ],
    )


def _read_track_metadata_v1(data: dict[str, Any]) -> TrackMetadata:
    at = "track_metadata"
    sub_artists = _list(data, "sub_artists", at)
    for i, s in enumerate(sub_artists):
        if not isinstance(s, str):
            raise FormatError(f"Invalid value for {at}.sub_artists[{i}]: must be a string")
    preview_start_time = _float(data, "preview_start_time", at)
    preview_end_time = _float(data, "preview_end_time", at)
    _check_preview_window(preview_start_time, preview_end_time, at)
    return TrackMetadata(
        title=_str(data, "title", at),
        subtitle=_str(data, "subtitle", at),
        artist=_str(data, "artist", at),
        sub_artists=sub_artists,
        genre=_str(data, "genre", at),
        eyecatch_image=_str(data, "eyecatch_image", at),
        preview_track=_str(data, "preview_track", at),
        preview_start_time=preview_start_time,
        preview_end_time=preview_end_time,
        back_image=_str(data, "back_image", at),
        bga=_str(data, "bga", at),
        bga_start_time=_float(data, "bga_start_time", at),
    )


def _check_preview_window(start: float, end: float, at: str) -> None:
    if start > end:
        raise FormatError(
            f"Invalid value for {at}.preview_end_time: must not be before preview_start_time"
        )


def _read_pattern_v1(data: dict[str, Any], at: str) -> Pattern:
    metadata = _table(data, "pattern_metadata", at, required=True)
    mat = f"{at}.pattern_metadata"
    control_scheme = _str(metadata, "control_scheme", mat, default="Touch")
    if control_scheme not in CONTROL_SCHEMES:
        raise FormatError(
            f"Invalid value for {mat}.control_scheme: must be one of {', '.join(CONTROL_SCHEMES)}: "
            f"got {control_scheme}"
        )
    pattern_metadata = PatternMetadata(
        pattern_name=_str(metadata, "pattern_name", mat),
        level=_int(metadata, "level", mat),
        control_scheme=control_scheme,  # type: ignore
        backing_track=_str(metadata, "backing_track", mat),
        first_beat_offset=_float(metadata, "first_beat_offset", mat),
        initial_bpm=_float(metadata, "initial_bpm", mat, default=60.0),
        beats_per_scan=_int(metadata, "beats_per_scan", mat, default=4),
    )

    bpm_events: list[BpmEvent] = []
    for i, e in enumerate(_list(data, "bpm_events", at)):
        eat = f"{at}.bpm_events[{i}]"
        e = _as_table(e, eat)
        bpm_events.append(
            BpmEvent(
                pulse=_int(e, "pulse", eat, required=True),
                bpm=_float(e, "bpm", eat, required=True),
            )
        )

    sound_channels: list[SoundChannel] = []
    seen_names: set[str] = set()
    for i, c in enumerate(_list(data, "sound_channels", at)):
        cat = f"{at}.sound_channels[{i}]"
        c = _as_table(c, cat)
        name = _str(c, "name", cat, required=True)
        if name in seen_names:
            raise FormatError(f"Invalid value for {cat}.name: duplicate sound channel {name}")
        seen_names.add(name)
        sound_channels.append(
            SoundChannel(
                name=name,
                notes=[
                    _read_note_v1(_as_table(n, f"{cat}.notes[{j}]"), f"{cat}.notes[{j}]")
                    for j, n in enumerate(_list(c, "notes", cat))
                ],
                drag_notes=[
                    _read_drag_note_v1(
                        _as_table(n, f"{cat}.drag_notes[{j}]"), f"{cat}.drag_notes[{j}]"
                    )
                    for j, n in enumerate(_list(c, "drag_notes", cat))
                ],
            )
        )

    return Pattern(
        pattern_metadata=pattern_metadata,
        bpm_events=bpm_events,
        sound_channels=sound_channels,
    )


def _read_note_v1(data: dict[str, Any], at: str) -> Note:
    return Note(
        lane=_int(data, "lane", at, required=True),
        pulse=_int(data, "pulse", at, required=True),
        type=_note_type(data, at, default="Basic"),  # type: ignore
    )


def _read_drag_note_v1(data: dict[str, Any], at: str) -> DragNote:
    path: list[DragNotePath] = []
    for i, p in enumerate(_list(data, "path", at)):
        pat = f"{at}.path[{i}]"
        p = _as_table(p, pat)
        path.append(
            DragNotePath(
                lane=_int(p, "lane", pat, required=True),
                pulse=_int(p, "pulse", pat, required=True),
            )
        )
    return DragNote(
        lane=_int(data, "lane", at, required=True),
        pulse=_int(data, "pulse", at, required=True),
        type=_note_type(data, at, default="Drag"),  # type: ignore
        path=path,
    )


def _note_type(data: dict[str, Any], at: str, default: str) -> str:
    note_type = _str(data, "type", at, default=default)
    if note_type not in NOTE_TYPES:
        raise FormatError(f"Invalid value for {at}.type: unknown note type {note_type}")
    return note_type


READERS: dict[str, Callable[[dict[str, Any]], Track]] = {
    "1": _read_track_v1,
}


# Field accessors. `at` is the accessor of the containing table ("" at the top level), used in error
# messages.


def _accessor(at: str, key: str) -> str:
    return f"{at}.{key}" if at else key


def _get(data: dict[str, Any], key: str, at: str, required: bool) -> Any:
    try:
        return data[key]
    except KeyError as e:
        if required:
            raise FormatError(f"Missing key {_accessor(at, key)}") from e
        return None


def _str(data: dict[str, Any], key: str, at: str, required: bool = False, default: str = "") -> str:
    value = _get(data, key, at, required)
    if value is None:
        return default
    if not isinstance(value, str):
        raise _invalid(at, key, "must be a string", value)
    return value


def _int(data: dict[str, Any], key: str, at: str, required: bool = False, default: int = 0) -> int:
    value = _get(data, key, at, required)
    if value is None:
        return default
    # bool is a subclass of int, but `lane = true` is certainly a mistake.
    if not isinstance(value, int) or isinstance(value, bool):
        raise _invalid(at, key, "must be an integer", value)
    return value


def _float(
    data: dict[str, Any],
    key: str,
    at: str,
    required: bool = False,
    default: float = 0.0,
) -> float:
    value = _get(data, key, at, required)
    if value is None:
        return default
    if not isinstance(value, int | float) or isinstance(value, bool):
        raise _invalid(at, key, "must be a number", value)
    return float(value)


def _list(data: dict[str, Any], key: str, at: str, required: bool = False) -> list[Any]:
    value = _get(data, key, at, required)
    if value is None:
        return []
    if not isinstance(value, list):
        raise _invalid(at, key, "must be a list", value)
    return value


def _table(data: dict[str, Any], key: str, at: str, required: bool = False) -> dict[str, Any]:
    value = _get(data, key, at, required)
    if value is None:
        return {}
    return _as_table(value, _accessor(at, key))


def _as_table(value: Any, at: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise FormatError(f"Invalid value for {at}: must be a table: got {type(value).__name__}")
    return value


def _invalid(at: str, key: str, expectation: str, value: Any) -> FormatError:
    return FormatError(
        f"Invalid value for {_accessor(at, key)}: {expectation}: got {type(value).__name__}"
    )
