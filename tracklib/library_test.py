import json
import os
import threading
from pathlib import Path
from typing import Any

import pytest

import tracklib.library
from conftest import write_archive
from tracklib.codec import save_track, serialize_track
from tracklib.config import Config
from tracklib.library import (
    ErrorInTrack,
    IndexBuildError,
    IndexBuildInProgressError,
    LibraryIndex,
    LocationNotInLibraryError,
    Subfolder,
    TrackInFolder,
    parent_location,
    sort_tracks_by_title,
)
from tracklib.track import Track

TIMEOUT = 10


def _make_track(directory: Path, title: str) -> None:
    directory.mkdir(parents=True)
    save_track(Track.new(title, "Test Artist"), directory / "track.tech")


def test_build_index(config: Config, library_dir: Path) -> None:
    library = LibraryIndex(config)
    build = library.get_or_build_index(library_dir)
    result = build.result(timeout=TIMEOUT)
    assert build.state == "complete"
    assert build.error is None
    assert build.progress == ""

    assert result.location == library_dir
    assert result.subfolders == [
        Subfolder(
            path=library_dir / "Collection",
            eyecatch_path=library_dir / "Collection" / "eyecatch.png",
        ),
        Subfolder(path=library_dir / "Empty Folder", eyecatch_path=None),
    ]
    assert len(result.tracks) == 1
    alpha = result.tracks[0]
    assert alpha.folder == library_dir / "Test Track 1"
    assert alpha.track_path == library_dir / "Test Track 1" / "track.tech"
    assert alpha.track.track_metadata.title == "Alpha"
    assert result.errors == []


def test_build_index_nested_locations(config: Config, library_dir: Path) -> None:
    library = LibraryIndex(config)
    library.get_or_build_index(library_dir).result(timeout=TIMEOUT)

    collection = library.get_index(library_dir / "Collection")
    assert collection.subfolders == []
    assert [t.track.track_metadata.title for t in collection.tracks] == ["Beta"]
    assert len(collection.errors) == 1
    error = collection.errors[0]
    assert error.track_file == library_dir / "Collection" / "Broken Track" / "track.tech"
    assert "Unknown version: 2" in error.message

    # A track directory is listed under its parent, never as a location of its own.
    assert not library.is_cached(library_dir / "Test Track 1")

    # Empty directories are cached with empty lists.
    assert library.is_cached(library_dir / "Empty Folder")
    empty = library.get_index(library_dir / "Empty Folder")
    assert empty.subfolders == []
    assert empty.tracks == []
    assert empty.errors == []


def test_cached_location_returns_finished_build(config: Config, library_dir: Path) -> None:
    library = LibraryIndex(config)
    library.get_or_build_index(library_dir).result(timeout=TIMEOUT)

    build = library.get_or_build_index(library_dir / "Collection")
    assert build.is_done()
    assert build.state == "complete"
    assert [t.track.track_metadata.title for t in build.result().tracks] == ["Beta"]


def test_uncached_location_has_empty_index(config: Config) -> None:
    library = LibraryIndex(config)
    assert not library.is_cached(config.tracks_root_dir)
    index = library.get_index(config.tracks_root_dir)
    assert index.subfolders == []
    assert index.tracks == []
    assert index.errors == []


def test_corrupt_track_does_not_stop_scan(config: Config) -> None:
    root = config.tracks_root_dir
    for i in range(9):
        _make_track(root / f"Track {i}", f"Track {i}")
    (root / "Track 4b").mkdir()
    (root / "Track 4b" / "track.tech").write_text("this is not a track")
    _make_track(root / "Zeta" / "Nested", "Nested")

    library = LibraryIndex(config)
    result = library.get_or_build_index(root).result(timeout=TIMEOUT)
    assert len(result.tracks) == 9
    assert len(result.errors) == 1
    assert result.errors[0].track_file == root / "Track 4b" / "track.tech"
    assert "Invalid track file" in result.errors[0].message
    # The sibling sorted after the broken track was still scanned.
    assert [s.path for s in result.subfolders] == [root / "Zeta"]
    nested = library.get_index(root / "Zeta")
    assert [t.track.track_metadata.title for t in nested.tracks] == ["Nested"]


def test_deeply_nested_track_file_does_not_stop_scan(config: Config) -> None:
    root = config.tracks_root_dir
    _make_track(root / "Good", "Good")
    (root / "Deep").mkdir()
    (root / "Deep" / "track.tech").write_text(
        'version = "1"\nx = ' + "[" * 5000 + "]" * 5000 + "\n"
    )

    library = LibraryIndex(config)
    build = library.get_or_build_index(root)
    result = build.result(timeout=TIMEOUT)
    assert build.state == "complete"
    assert [t.track.track_metadata.title for t in result.tracks] == ["Good"]
    assert [e.track_file for e in result.errors] == [root / "Deep" / "track.tech"]


def test_unexpected_track_load_failure_is_isolated(
    config: Config,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    root = config.tracks_root_dir
    _make_track(root / "Good", "Good")
    _make_track(root / "Haunted", "Haunted")

    original = tracklib.library.load_track

    def haunted_load(path: Path) -> Track:
        if path.parent.name == "Haunted":
            raise KeyError("ghost")
        return original(path)

    monkeypatch.setattr(tracklib.library, "load_track", haunted_load)

    library = LibraryIndex(config)
    build = library.get_or_build_index(root)
    result = build.result(timeout=TIMEOUT)
    assert build.state == "complete"
    assert [t.track.track_metadata.title for t in result.tracks] == ["Good"]
    assert len(result.errors) == 1
    assert result.errors[0].message == "KeyError: 'ghost'"


def test_non_folder_location_falls_back_to_root(config: Config, library_dir: Path) -> None:
    library = LibraryIndex(config)
    build = library.get_or_build_index(library_dir / "Does Not Exist")
    assert build.location == library_dir
    result = build.result(timeout=TIMEOUT)
    assert [t.track.track_metadata.title for t in result.tracks] == ["Alpha"]

    # A track's own directory is never cached; it resolves to the cached root without a rebuild.
    build = library.get_or_build_index(library_dir / "Test Track 1")
    assert build.is_done()
    assert build.location == library_dir
    assert [t.track.track_metadata.title for t in build.result().tracks] == ["Alpha"]


def test_build_extracts_archives(config: Config) -> None:
    root = config.tracks_root_dir
    archive = write_archive(
        root / "download.zip",
        {"Zipped Track/track.tech": serialize_track(Track.new("Zipped", "Zipper")).encode()},
    )
    library = LibraryIndex(config)
    result = library.get_or_build_index(root).result(timeout=TIMEOUT)
    assert [t.track.track_metadata.title for t in result.tracks] == ["Zipped"]
    assert result.tracks[0].folder == root / "Zipped Track"
    assert not archive.exists()


def test_build_extracts_archives_in_subfolders(config: Config) -> None:
    root = config.tracks_root_dir
    (root / "Pack").mkdir()
    write_archive(
        root / "Pack" / "download.ZIP",
        {"Zipped Track/track.tech": serialize_track(Track.new("Zipped", "Zipper")).encode()},
    )
    library = LibraryIndex(config)
    library.get_or_build_index(root).result(timeout=TIMEOUT)
    pack = library.get_index(root / "Pack")
    assert [t.folder for t in pack.tracks] == [root / "Pack" / "Zipped Track"]


def test_build_skips_bad_archive(config: Config) -> None:
    root = config.tracks_root_dir
    bad = root / "broken.zip"
    bad.write_bytes(b"not a zip")
    _make_track(root / "Track", "Survivor")

    library = LibraryIndex(config)
    build = library.get_or_build_index(root)
    result = build.result(timeout=TIMEOUT)
    assert build.state == "complete"
    assert [t.track.track_metadata.title for t in result.tracks] == ["Survivor"]
    assert result.errors == []
    assert bad.exists()


def test_build_survives_symlink_loop(config: Config) -> None:
    root = config.tracks_root_dir
    _make_track(root / "Loop" / "Track", "Looped")
    os.symlink(root, root / "Loop" / "Back")

    library = LibraryIndex(config)
    build = library.get_or_build_index(root)
    build.result(timeout=TIMEOUT)
    assert build.state == "complete"
    loop = library.get_index(root / "Loop")
    assert [s.path for s in loop.subfolders] == [root / "Loop" / "Back"]
    assert [t.track.track_metadata.title for t in loop.tracks] == ["Looped"]


def test_invalidate_triggers_rebuild(config: Config, library_dir: Path) -> None:
    library = LibraryIndex(config)
    library.get_or_build_index(library_dir).result(timeout=TIMEOUT)

    library.invalidate(library_dir / "Collection")
    assert not library.is_cached(library_dir / "Collection")
    assert library.is_cached(library_dir)

    build = library.get_or_build_index(library_dir / "Collection")
    result = build.result(timeout=TIMEOUT)
    assert build.location == library_dir / "Collection"
    assert [t.track.track_metadata.title for t in result.tracks] == ["Beta"]


def test_invalidate_all(config: Config, library_dir: Path) -> None:
    library = LibraryIndex(config)
    library.get_or_build_index(library_dir).result(timeout=TIMEOUT)
    library.invalidate_all()
    assert not library.is_cached(library_dir)
    assert not library.is_cached(library_dir / "Collection")


def test_rebuild_picks_up_changes(config: Config, library_dir: Path) -> None:
    library = LibraryIndex(config)
    library.get_or_build_index(library_dir).result(timeout=TIMEOUT)

    _make_track(library_dir / "Test Track 3", "Delta")
    # The cache is served until someone asks for a rebuild.
    cached = library.get_or_build_index(library_dir).result(timeout=TIMEOUT)
    assert [t.track.track_metadata.title for t in cached.tracks] == ["Alpha"]

    rebuilt = library.request_rebuild(library_dir).result(timeout=TIMEOUT)
    assert sorted(t.track.track_metadata.title for t in rebuilt.tracks) == ["Alpha", "Delta"]


def test_rebuild_while_building_is_rejected(
    config: Config,
    library_dir: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    release = threading.Event()
    original = LibraryIndex._build_recursive

    def blocking_build(self: LibraryIndex, *args: Any) -> None:
        release.wait(TIMEOUT)
        original(self, *args)

    monkeypatch.setattr(LibraryIndex, "_build_recursive", blocking_build)

    library = LibraryIndex(config)
    build = library.get_or_build_index(library_dir)
    try:
        assert not build.is_done()
        assert build.state == "building"
        assert not library.is_cached(library_dir)
        with pytest.raises(IndexBuildInProgressError):
            library.request_rebuild(library_dir)
    finally:
        release.set()

    result = build.result(timeout=TIMEOUT)
    assert [t.track.track_metadata.title for t in result.tracks] == ["Alpha"]
    # Once the build is done, another may start.
    library.request_rebuild(library_dir).result(timeout=TIMEOUT)


def test_failed_build(config: Config, library_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def failing_build(self: LibraryIndex, *args: Any) -> None:
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(LibraryIndex, "_build_recursive", failing_build)

    library = LibraryIndex(config)
    build = library.get_or_build_index(library_dir)
    with pytest.raises(IndexBuildError, match="disk on fire"):
        build.result(timeout=TIMEOUT)
    assert build.state == "error"
    assert isinstance(build.error, RuntimeError)
    assert not library.is_cached(library_dir)


def test_location_outside_library(config: Config, isolated_dir: Path) -> None:
    library = LibraryIndex(config)
    with pytest.raises(LocationNotInLibraryError):
        library.get_or_build_index(isolated_dir)
    with pytest.raises(LocationNotInLibraryError):
        library.request_rebuild(isolated_dir / "Elsewhere")


def test_result_lists_are_copies(config: Config, library_dir: Path) -> None:
    library = LibraryIndex(config)
    result = library.get_or_build_index(library_dir).result(timeout=TIMEOUT)
    result.tracks.clear()
    result.subfolders.clear()
    again = library.get_index(library_dir)
    assert len(again.tracks) == 1
    assert len(again.subfolders) == 2


def test_checkout_is_independent(config: Config, library_dir: Path) -> None:
    library = LibraryIndex(config)
    result = library.get_or_build_index(library_dir).result(timeout=TIMEOUT)
    entry = result.tracks[0]

    track = entry.checkout()
    assert track == entry.track
    track.track_metadata.title = "Edited"
    track.patterns[0].sound_channels.clear()

    cached = library.get_index(library_dir).tracks[0].track
    assert cached.track_metadata.title == "Alpha"
    assert len(cached.patterns[0].sound_channels) == 2


def test_dump_is_json(config: Config, library_dir: Path) -> None:
    library = LibraryIndex(config)
    library.get_or_build_index(library_dir).result(timeout=TIMEOUT)
    data = json.loads(json.dumps(library.get_index(library_dir / "Collection").dump()))
    assert data["location"] == str(library_dir / "Collection")
    assert data["tracks"][0]["title"] == "Beta"
    assert data["tracks"][0]["patterns"] == [
        {"pattern_name": "Hard", "level": 9, "control_scheme": "KM"}
    ]
    assert data["errors"][0]["track_file"].endswith("track.tech")


def test_sort_tracks_by_title() -> None:
    def entry(title: str) -> TrackInFolder:
        return TrackInFolder(
            folder=Path(title),
            track_path=Path(title) / "track.tech",
            track=Track.new(title, "Artist"),
        )

    tracks = [entry("beta"), entry("Gamma"), entry("alpha"), entry("Alpha")]
    assert [t.track.track_metadata.title for t in sort_tracks_by_title(tracks)] == [
        "Alpha",
        "alpha",
        "beta",
        "Gamma",
    ]
    # Sorting does not reorder the input.
    assert tracks[0].track.track_metadata.title == "beta"


def test_parent_location(config: Config, isolated_dir: Path) -> None:
    root = config.tracks_root_dir
    assert parent_location(config, root) is None
    assert parent_location(config, root / "Collection") == root
    assert parent_location(config, root / "Collection" / "Pack") == root / "Collection"
    assert parent_location(config, isolated_dir) is None


def test_error_in_track_dump() -> None:
    error = ErrorInTrack(track_file=Path("a/track.tech"), message="Unknown version: 2")
    assert error.dump() == {"track_file": "a/track.tech", "message": "Unknown version: 2"}
