"""
The track module defines the in-memory track model: a track's metadata, its patterns, and the notes
within each pattern.

All timing is measured in pulses. A beat is always PULSES_PER_BEAT pulses, so note and tempo event
positions are exact integers and never drift.

Notes are bucketed by keysound: every note belongs to exactly one sound channel, and a keysound
filename appears in at most one channel per pattern. The mutation methods on Pattern maintain that
invariant; callers should not edit `sound_channels` directly.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Literal

from tracklib.common import TracklibExpectedError

logger = logging.getLogger(__name__)

TRACK_FORMAT_VERSION = "1"

PULSES_PER_BEAT = 240

NoteType = Literal[
    "Basic",
    "ChainHead",
    "Chain",
    "HoldStart",
    "HoldEnd",
    "Drag",
    "RepeatHead",
    "RepeatHeadHold",
    "Repeat",
    "RepeatHoldStart",
    "RepeatHoldEnd",
]
NOTE_TYPES: list[NoteType] = [
    "Basic",
    "ChainHead",
    "Chain",
    "HoldStart",
    "HoldEnd",
    "Drag",
    "RepeatHead",
    "RepeatHeadHold",
    "Repeat",
    "RepeatHoldStart",
    "RepeatHoldEnd",
]

# KM is keys and mouse.
ControlScheme = Literal["Touch", "Keys", "KM"]
CONTROL_SCHEMES: list[ControlScheme] = ["Touch", "Keys", "KM"]


class NotFoundError(TracklibExpectedError):
    def __init__(self, message: str, sound: str):
        super().__init__(message)
        self.sound = sound


@dataclass
class TrackMetadata:
    title: str = ""
    subtitle: str = ""
    artist: str = ""
    sub_artists: list[str] = dataclasses.field(default_factory=list)
    genre: str = ""

    # Shown in the track select screen. Filenames are relative to the track's directory.
    eyecatch_image: str = ""
    preview_track: str = ""
    # In seconds.
    preview_start_time: float = 0.0
    preview_end_time: float = 0.0

    # Shown in gameplay. If bga is empty, back_image is shown instead.
    back_image: str = ""
    bga: str = ""
    bga_start_time: float = 0.0


@dataclass
class PatternMetadata:
    pattern_name: str = ""
    level: int = 0
    control_scheme: ControlScheme = "Touch"
    # Always played from its beginning. Without keysounds, this is the entire song.
    backing_track: str = ""
    # Seconds from time zero to pulse zero.
    first_beat_offset: float = 0.0
    initial_bpm: float = 60.0
    beats_per_scan: int = 4


@dataclass
class BpmEvent:
    pulse: int
    bpm: float


@dataclass
class Note:
    lane: int
    pulse: int
    type: NoteType = "Basic"

    def clone(self) -> Note:
        return Note(lane=self.lane, pulse=self.pulse, type=self.type)


@dataclass
class DragNotePath:
    lane: int
    pulse: int


@dataclass
class DragNote(Note):
    type: NoteType = "Drag"
    # Ordered by pulse. The first point coincides with the note's own lane and pulse.
    path: list[DragNotePath] = dataclasses.field(default_factory=list)

    def clone(self) -> DragNote:
        return DragNote(
            lane=self.lane,
            pulse=self.pulse,
            type=self.type,
            path=[DragNotePath(lane=p.lane, pulse=p.pulse) for p in self.path],
        )


@dataclass
class SoundChannel:
    # The keysound filename.
    name: str
    notes: list[Note] = dataclasses.field(default_factory=list)
    drag_notes: list[DragNote] = dataclasses.field(default_factory=list)

    def bucket_for(self, note: Note) -> list:
        return self.drag_notes if isinstance(note, DragNote) else self.notes

    def __contains__(self, note: Note) -> bool:
        return note in self.bucket_for(note)


@dataclass
class Pattern:
    pattern_metadata: PatternMetadata = dataclasses.field(default_factory=PatternMetadata)
    bpm_events: list[BpmEvent] = dataclasses.field(default_factory=list)
    sound_channels: list[SoundChannel] = dataclasses.field(default_factory=list)

    def find_channel(self, sound: str) -> SoundChannel | None:
        for channel in self.sound_channels:
            if channel.name == sound:
                return channel
        return None

    def _find_or_create_channel(self, sound: str) -> SoundChannel:
        channel = self.find_channel(sound)
        if channel is None:
            logger.debug(f"Creating sound channel {sound}")
            channel = SoundChannel(name=sound)
            self.sound_channels.append(channel)
        return channel

    def add_note(self, note: Note, sound: str) -> None:
        """
        Add a note to the channel of the given keysound, creating the channel if needed. Assumes
        that no note already exists at the same lane and pulse anywhere in the pattern.
        """
        self._find_or_create_channel(sound).bucket_for(note).append(note)

    def retarget_note_keysound(self, note: Note, old_sound: str, new_sound: str) -> None:
        """Move a note from the old keysound's channel to the new keysound's channel."""
        old_channel = self.find_channel(old_sound)
        if old_channel is None:
            raise NotFoundError(
                f"Sound channel {old_sound} not found in pattern when modifying keysound",
                old_sound,
            )
        if note not in old_channel:
            raise NotFoundError(
                f"Note at lane {note.lane}, pulse {note.pulse} not found in sound channel "
                f"{old_sound} when modifying keysound",
                old_sound,
            )
        old_channel.bucket_for(note).remove(note)
        self._find_or_create_channel(new_sound).bucket_for(note).append(note)

    def delete_note(self, note: Note, sound: str) -> None:
        channel = self.find_channel(sound)
        if channel is None:
            raise NotFoundError(f"Sound channel {sound} not found in pattern when deleting", sound)
        if note not in channel:
            raise NotFoundError(
                f"Note at lane {note.lane}, pulse {note.pulse} not found in sound channel {sound} "
                "when deleting",
                sound,
            )
        channel.bucket_for(note).remove(note)

    def iter_notes(self) -> Iterator[tuple[str, Note]]:
        for channel in self.sound_channels:
            for note in channel.notes:
                yield channel.name, note
            for drag_note in channel.drag_notes:
                yield channel.name, drag_note

    def bpm_at(self, pulse: int) -> float:
        """
        Return the tempo in effect at a pulse: the latest BPM event at or before the pulse, or the
        initial BPM if there is none. If two events share a pulse, the later one in the list wins.
        """
        bpm = self.pattern_metadata.initial_bpm
        latest_pulse: int | None = None
        for event in self.bpm_events:
            if event.pulse > pulse:
                continue
            if latest_pulse is None or event.pulse >= latest_pulse:
                latest_pulse = event.pulse
                bpm = event.bpm
        return bpm


@dataclass
class Track:
    track_metadata: TrackMetadata = dataclasses.field(default_factory=TrackMetadata)
    patterns: list[Pattern] = dataclasses.field(default_factory=list)
    version: str = TRACK_FORMAT_VERSION

    @classmethod
    def new(cls, title: str, artist: str) -> Track:
        return Track(track_metadata=TrackMetadata(title=title, artist=artist), patterns=[])

