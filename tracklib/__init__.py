from tracklib.archives import ExtractionError, extract_archive, is_archive
from tracklib.codec import (
    FormatError,
    clone_track,
    deserialize_track,
    dump_track,
    load_track,
    save_track,
    serialize_track,
)
from tracklib.common import (
    VERSION,
    TracklibError,
    TracklibExpectedError,
    initialize_logging,
)
from tracklib.config import Config
from tracklib.library import (
    ErrorInTrack,
    IndexBuild,
    IndexBuildError,
    IndexBuildInProgressError,
    LibraryIndex,
    LocationIndex,
    LocationNotInLibraryError,
    Subfolder,
    TrackInFolder,
    parent_location,
    sort_tracks_by_title,
)
from tracklib.track import (
    CONTROL_SCHEMES,
    NOTE_TYPES,
    PULSES_PER_BEAT,
    TRACK_FORMAT_VERSION,
    BpmEvent,
    ControlScheme,
    DragNote,
    DragNotePath,
    Note,
    NotFoundError,
    NoteType,
    Pattern,
    PatternMetadata,
    SoundChannel,
    Track,
    TrackMetadata,
)

__all__ = [
    # Plumbing
    "initialize_logging",
    "VERSION",
    # Errors
    "TracklibError",
    "TracklibExpectedError",
    "FormatError",
    "ExtractionError",
    "NotFoundError",
    "IndexBuildError",
    "IndexBuildInProgressError",
    "LocationNotInLibraryError",
    # Configuration
    "Config",
    # Track Model
    "PULSES_PER_BEAT",
    "TRACK_FORMAT_VERSION",
    "NOTE_TYPES",
    "CONTROL_SCHEMES",
    "NoteType",
    "ControlScheme",
    "Track",
    "TrackMetadata",
    "Pattern",
    "PatternMetadata",
    "BpmEvent",
    "SoundChannel",
    "Note",
    "DragNote",
    "DragNotePath",
    # Track Files
    "serialize_track",
    "deserialize_track",
    "clone_track",
    "load_track",
    "save_track",
    "dump_track",
    # Archives
    "extract_archive",
    "is_archive",
    # Library Index
    "LibraryIndex",
    "IndexBuild",
    "LocationIndex",
    "Subfolder",
    "TrackInFolder",
    "ErrorInTrack",
    "parent_location",
    "sort_tracks_by_title",
]

initialize_logging(__name__)
