import logging
import shutil
import zipfile
from collections.abc import Iterator
from pathlib import Path

import pytest
from click.testing import CliRunner

from tracklib.config import Config
from tracklib.track import BpmEvent, DragNote, DragNotePath, Note, Pattern, PatternMetadata, Track

logger = logging.getLogger(__name__)

TESTDATA = Path(__file__).resolve().parent / "testdata"
TEST_LIBRARY = TESTDATA / "Library"


@pytest.fixture(autouse=True)
def debug_logging() -> None:
    logging.getLogger().setLevel(logging.DEBUG)


@pytest.fixture()
def isolated_dir() -> Iterator[Path]:
    with CliRunner().isolated_filesystem():
        yield Path.cwd()


@pytest.fixture()
def config(isolated_dir: Path) -> Config:
    tracks_root_dir = isolated_dir / "Tracks"
    tracks_root_dir.mkdir()
    return Config(
        tracks_root_dir=tracks_root_dir,
        track_filename="track.tech",
        archive_extension="zip",
        eyecatch_png_filename="eyecatch.png",
        eyecatch_jpg_filename="eyecatch.jpg",
    )


@pytest.fixture()
def library_dir(config: Config) -> Path:
    """
    Tracks/
      Test Track 1/track.tech        (Alpha)
      Collection/
        eyecatch.png, eyecatch.jpg
        Test Track 2/track.tech      (Beta)
        Broken Track/track.tech      (unknown version)
      Empty Folder/
    """
    shutil.copytree(TEST_LIBRARY, config.tracks_root_dir, dirs_exist_ok=True)
    (config.tracks_root_dir / "Empty Folder").mkdir()
    return config.tracks_root_dir


@pytest.fixture()
def sample_track() -> Track:
    track = Track.new("Gamma", "Conductor Woman")
    track.track_metadata.sub_artists = ["Violin Woman", "Bass Man"]
    track.track_metadata.preview_start_time = 5.0
    track.track_metadata.preview_end_time = 15.0
    pattern = Pattern(
        pattern_metadata=PatternMetadata(
            pattern_name="Lunatic",
            level=12,
            control_scheme="Keys",
            backing_track="backing.ogg",
            first_beat_offset=0.25,
            initial_bpm=140.0,
            beats_per_scan=2,
        ),
        bpm_events=[BpmEvent(pulse=480, bpm=70.0), BpmEvent(pulse=1920, bpm=140.0)],
    )
    pattern.add_note(Note(lane=0, pulse=0), "kick.wav")
    pattern.add_note(Note(lane=1, pulse=240, type="RepeatHead"), "hat.wav")
    pattern.add_note(Note(lane=1, pulse=480, type="Repeat"), "hat.wav")
    pattern.add_note(
        DragNote(
            lane=2,
            pulse=720,
            path=[DragNotePath(lane=2, pulse=720), DragNotePath(lane=3, pulse=960)],
        ),
        "kick.wav",
    )
    track.patterns.append(pattern)
    track.patterns.append(Pattern(pattern_metadata=PatternMetadata(pattern_name="Empty")))
    return track


def write_archive(path: Path, entries: dict[str, bytes | None]) -> Path:
    """Write a zip archive. A None value writes a directory entry."""
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in entries.items():
            if content is None:
                zf.writestr(zipfile.ZipInfo(name), b"")
            else:
                zf.writestr(name, content)
    return path
