"""
The library module indexes the tracks under the tracks root directory.

The index is keyed by location: a directory in the library. For every location we cache three
lists: the subfolders directly in it, the tracks directly in it, and the track files directly in it
that failed to load. A directory is a track if it directly contains the track file; otherwise it is
a subfolder, and we recurse into it.

Building the index touches every file in the library and can take a while, so it runs on a
background thread. A build is always a full rebuild from the root, never a rebuild of one subtree:
a stale entry anywhere may hide structural changes, so we throw the entire cache away and start
over. The caller gets an IndexBuild handle back immediately and polls or waits on it.

The worker builds into private dictionaries and only publishes them once the whole tree has been
scanned, immediately before signalling completion. So a reader either sees the complete previous
state (nothing, since a rebuild starts by clearing the cache) or the complete new state, never a
half-populated tree.

Failures are isolated per item. A corrupt track file becomes an ErrorInTrack entry, and an archive
that fails to extract is logged and left on disk. Neither stops the scan.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from tracklib.archives import ExtractionError, extract_archive, is_archive
from tracklib.codec import FormatError, clone_track, load_track
from tracklib.common import TracklibError, TracklibExpectedError
from tracklib.config import Config
from tracklib.track import Track

logger = logging.getLogger(__name__)


class IndexBuildInProgressError(TracklibExpectedError):
    pass


class IndexBuildError(TracklibError):
    pass


class LocationNotInLibraryError(TracklibExpectedError):
    pass


@dataclass(slots=True)
class Subfolder:
    path: Path
    eyecatch_path: Path | None

    def dump(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "eyecatch_path": str(self.eyecatch_path) if self.eyecatch_path else None,
        }


@dataclass(slots=True)
class TrackInFolder:
    # The track's own directory, not the location it is listed under.
    folder: Path
    track_path: Path
    # Shared with the cache. Call `checkout` to get a copy that is safe to edit.
    track: Track

    def checkout(self) -> Track:
        return clone_track(self.track)

    def dump(self) -> dict[str, Any]:
        metadata = self.track.track_metadata
        return {
            "folder": str(self.folder),
            "track_path": str(self.track_path),
            "title": metadata.title,
            "subtitle": metadata.subtitle,
            "artist": metadata.artist,
            "genre": metadata.genre,
            "patterns": [
                {
                    "pattern_name": p.pattern_metadata.pattern_name,
                    "level": p.pattern_metadata.level,
                    "control_scheme": p.pattern_metadata.control_scheme,
                }
                for p in self.track.patterns
            ],
        }


@dataclass(slots=True)
class ErrorInTrack:
    track_file: Path
    message: str

    def dump(self) -> dict[str, Any]:
        return {"track_file": str(self.track_file), "message": self.message}


@dataclass(slots=True)
class LocationIndex:
    location: Path
    subfolders: list[Subfolder]
    tracks: list[TrackInFolder]
    errors: list[ErrorInTrack]

    def dump(self) -> dict[str, Any]:
        return {
            "location": str(self.location),
            "subfolders": [s.dump() for s in self.subfolders],
            "tracks": [t.dump() for t in self.tracks],
            "errors": [e.dump() for e in self.errors],
        }


BuildState = Literal["building", "complete", "error"]


class IndexBuild:
    """
    A handle on one index build. The worker thread writes the progress text and the final state;
    any other thread may poll `progress` and `is_done()`, or block in `wait()` / `result()`.
    """

    def __init__(self, library: LibraryIndex, location: Path):
        self.location = location
        self._library = library
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._progress = ""
        self._state: BuildState = "building"
        self._error: BaseException | None = None

    @property
    def progress(self) -> str:
        """Advisory text describing what the worker is currently doing."""
        with self._lock:
            return self._progress

    @property
    def state(self) -> BuildState:
        with self._lock:
            return self._state

    @property
    def error(self) -> BaseException | None:
        with self._lock:
            return self._error

    def is_done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def result(self, timeout: float | None = None) -> LocationIndex:
        """Wait for the build, then return the index of the location it was requested for."""
        if not self._done.wait(timeout):
            raise TimeoutError(f"Index build for {self.location} did not finish in {timeout}s")
        error = self.error
        if error is not None:
            raise IndexBuildError(f"Failed to build index for {self.location}: {error}") from error
        return self._library.get_index(self.location)

    def _set_progress(self, text: str) -> None:
        with self._lock:
            self._progress = text

    def _finish(self, error: BaseException | None = None) -> None:
        with self._lock:
            self._progress = ""
            self._error = error
            self._state = "error" if error is not None else "complete"
        self._done.set()


class LibraryIndex:
    def __init__(self, c: Config):
        self.config = c
        self.root = _location_key(c.tracks_root_dir)
        self._lock = threading.Lock()
        self._subfolders: dict[Path, list[Subfolder]] = {}
        self._tracks: dict[Path, list[TrackInFolder]] = {}
        self._errors: dict[Path, list[ErrorInTrack]] = {}
        self._current_build: IndexBuild | None = None

    def is_cached(self, location: Path) -> bool:
        key = _location_key(location)
        with self._lock:
            return key in self._subfolders and key in self._tracks and key in self._errors

    def get_index(self, location: Path) -> LocationIndex:
        """
        Return the cached index of a location. An uncached location has an empty index. The lists
        are copies, so the caller may sort or filter them freely.
        """
        key = _location_key(location)
        with self._lock:
            return LocationIndex(
                location=key,
                subfolders=list(self._subfolders.get(key, [])),
                tracks=list(self._tracks.get(key, [])),
                errors=list(self._errors.get(key, [])),
            )

    def invalidate(self, location: Path) -> None:
        """Forget one location so that the next visit to it triggers a rebuild."""
        key = _location_key(location)
        logger.debug(f"Invalidating cached index for {key}")
        with self._lock:
            self._subfolders.pop(key, None)
            self._tracks.pop(key, None)
            self._errors.pop(key, None)

    def invalidate_all(self) -> None:
        with self._lock:
            self._subfolders = {}
            self._tracks = {}
            self._errors = {}

    def get_or_build_index(self, location: Path) -> IndexBuild:
        """
        Return a handle whose result is the index of the location. If the location is cached, the
        handle is already done. Otherwise, this kicks off a full rebuild in the background.
        """
        key = self._folder_location_key(location)
        if self.is_cached(key):
            logger.debug(f"Index for {key} is cached")
            build = IndexBuild(self, key)
            build._finish()
            return build
        return self.request_rebuild(key)

    def request_rebuild(self, location: Path) -> IndexBuild:
        """
        Throw away the entire cache and rebuild it from the tracks root on a background thread. Only
        one rebuild may run at a time.
        """
        key = self._folder_location_key(location)
        with self._lock:
            if self._current_build is not None and not self._current_build.is_done():
                raise IndexBuildInProgressError(
                    f"An index build for {self._current_build.location} is already in progress"
                )
            build = IndexBuild(self, key)
            self._current_build = build
            self._subfolders = {}
            self._tracks = {}
            self._errors = {}

        logger.info(f"Rebuilding track index from {self.root} (requested for {key})")
        thread = threading.Thread(
            target=self._run_build,
            args=(build,),
            name="tracklib-index-build",
            daemon=True,
        )
        thread.start()
        return build

    def _checked_location_key(self, location: Path) -> Path:
        key = _location_key(location)
        if not key.is_relative_to(self.root):
            raise LocationNotInLibraryError(
                f"Location {key} is not inside the tracks root directory {self.root}"
            )
        return key

    def _folder_location_key(self, location: Path) -> Path:
        """
        Resolve the location a build is requested for. Only folders are ever cached, so a location
        that does not exist or is a track's own directory falls back to the tracks root.
        """
        key = self._checked_location_key(location)
        if key != self.root and (
            not key.is_dir() or (key / self.config.track_filename).is_file()
        ):
            logger.info(f"Location {key} is not a folder in the library, using {self.root} instead")
            return self.root
        return key

    def _run_build(self, build: IndexBuild) -> None:
        subfolders: dict[Path, list[Subfolder]] = {}
        tracks: dict[Path, list[TrackInFolder]] = {}
        errors: dict[Path, list[ErrorInTrack]] = {}
        try:
            self._build_recursive(self.root, build, subfolders, tracks, errors, set())
        except Exception as e:
            logger.exception(f"Failed to build track index from {self.root}")
            build._finish(e)
            return

        with self._lock:
            self._subfolders = subfolders
            self._tracks = tracks
            self._errors = errors
        logger.info(
            f"Finished building track index: {len(subfolders)} locations, "
            f"{sum(len(x) for x in tracks.values())} tracks, "
            f"{sum(len(x) for x in errors.values())} errors"
        )
        build._finish()

    def _build_recursive(
        self,
        directory: Path,
        build: IndexBuild,
        subfolders: dict[Path, list[Subfolder]],
        tracks: dict[Path, list[TrackInFolder]],
        errors: dict[Path, list[ErrorInTrack]],
        visited: set[str],
    ) -> None:
        # Every visited directory gets entries, even if the directory turns out to be empty.
        subfolders[directory] = []
        tracks[directory] = []
        errors[directory] = []

        # Guard against symlink loops.
        realpath = os.path.realpath(directory)
        if realpath in visited:
            logger.warning(f"Skipping {directory}: already scanned as {realpath}")
            return
        visited.add(realpath)

        try:
            archives = [
                Path(e.path)
                for e in _scandir_sorted(directory)
                if e.is_file() and is_archive(Path(e.name), self.config.archive_extension)
            ]
        except OSError as e:
            logger.warning(f"Skipping scan of {directory}: {e}")
            return

        for archive in archives:
            build._set_progress(f"Extracting {archive}")
            try:
                extract_archive(archive, directory)
            except ExtractionError as e:
                logger.error(f"Failed to extract {archive}, skipping: {e}")

        # List directories after extracting, so that freshly extracted tracks are picked up.
        try:
            child_dirs = [Path(e.path) for e in _scandir_sorted(directory) if e.is_dir()]
        except OSError as e:
            logger.warning(f"Skipping scan of {directory}: {e}")
            return

        for child in child_dirs:
            build._set_progress(f"Scanning {child}")
            track_path = child / self.config.track_filename
            if not track_path.is_file():
                logger.debug(f"Found subfolder {child}")
                subfolders[directory].append(
                    Subfolder(path=child, eyecatch_path=self._find_eyecatch(child))
                )
                self._build_recursive(child, build, subfolders, tracks, errors, visited)
                continue

            try:
                track = load_track(track_path)
            except (FormatError, OSError) as e:
                logger.warning(f"Failed to load track {track_path}: {e}")
                errors[directory].append(ErrorInTrack(track_file=track_path, message=str(e)))
                continue
            # Errors are isolated per track file; the scan always goes on.
            except Exception as e:
                logger.exception(f"Unexpected error loading track {track_path}")
                errors[directory].append(
                    ErrorInTrack(track_file=track_path, message=f"{e.__class__.__name__}: {e}")
                )
                continue
            logger.debug(f"Found track {track.track_metadata.title} in {child}")
            tracks[directory].append(TrackInFolder(folder=child, track_path=track_path, track=track))

    def _find_eyecatch(self, directory: Path) -> Path | None:
        for filename in [self.config.eyecatch_png_filename, self.config.eyecatch_jpg_filename]:
            path = directory / filename
            if path.is_file():
                return path
        return None


def sort_tracks_by_title(tracks: list[TrackInFolder]) -> list[TrackInFolder]:
    return sorted(
        tracks,
        key=lambda t: (t.track.track_metadata.title.casefold(), t.track.track_metadata.title),
    )


def parent_location(c: Config, location: Path) -> Path | None:
    """The location one level up, or None if the location is the tracks root (or outside it)."""
    root = _location_key(c.tracks_root_dir)
    key = _location_key(location)
    if key == root or not key.is_relative_to(root):
        return None
    return key.parent


def _location_key(location: Path) -> Path:
    return Path(os.path.abspath(location))


def _scandir_sorted(directory: Path) -> list[os.DirEntry[str]]:
    with os.scandir(directory) as it:
        return sorted(it, key=lambda e: e.name)
