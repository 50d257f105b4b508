"""
The cli module defines tracklib's CLI interface. It does not have any domain logic of its own. It is
dedicated to parsing, resolving arguments, and delegating to the appropriate module.
"""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path

import click

from tracklib.common import TracklibExpectedError
from tracklib.config import Config

logger = logging.getLogger(__name__)

# How often the index command redraws the build progress.
PROGRESS_POLL_INTERVAL = 0.1


class TrackAlreadyExistsError(TracklibExpectedError):
    pass


@dataclass
class Context:
    config: Config


# fmt: off
@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Emit verbose logging.")
@click.option("--config", "-c", type=click.Path(path_type=Path), help="Override the config file location.")
@click.pass_context
# fmt: on
def cli(cc: click.Context, verbose: bool, config: Path | None = None) -> None:
    """A track library indexer and track file toolkit."""
    cc.obj = Context(
        config=Config.parse(config_path_override=config),
    )
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.getLogger("tracklib").setLevel(logging.DEBUG)


@cli.command()
@click.argument("location", type=click.Path(path_type=Path), required=False)
@click.pass_obj
def index(ctx: Context, location: Path | None) -> None:
    """Print the subfolders, tracks, and broken tracks in a location (in JSON)."""
    from tracklib.library import LibraryIndex, sort_tracks_by_title

    library = LibraryIndex(ctx.config)
    location = location or ctx.config.tracks_root_dir
    build = library.get_or_build_index(location)
    last_progress = ""
    while not build.wait(PROGRESS_POLL_INTERVAL):
        progress = build.progress
        if progress and progress != last_progress:
            click.secho(progress, err=True, dim=True)
            last_progress = progress
    result = build.result()
    result.tracks = sort_tracks_by_title(result.tracks)
    click.echo(json.dumps(result.dump()))


@cli.group()
def tracks() -> None:
    """Read and create track files."""


@tracks.command(name="print")
@click.argument("path", type=click.Path(path_type=Path, exists=True), nargs=1)
@click.pass_obj
def print1(ctx: Context, path: Path) -> None:
    """Print a track file (in JSON). Accepts the track file or the track's directory."""
    from tracklib.codec import dump_track, load_track

    if path.is_dir():
        path = path / ctx.config.track_filename
    click.echo(dump_track(load_track(path)))


# fmt: off
@tracks.command()
@click.argument("directory", type=click.Path(path_type=Path, file_okay=False), nargs=1)
@click.option("--title", "-t", type=str, required=True, help="Title of the track.")
@click.option("--artist", "-a", type=str, required=True, help="Artist of the track.")
@click.pass_obj
# fmt: on
def create(ctx: Context, directory: Path, title: str, artist: str) -> None:
    """Create a new, empty track in a directory."""
    from tracklib.codec import save_track
    from tracklib.track import Track

    path = directory / ctx.config.track_filename
    if path.exists():
        raise TrackAlreadyExistsError(f"Track file {path} already exists")
    directory.mkdir(parents=True, exist_ok=True)
    save_track(Track.new(title, artist), path)
    logger.info(f"Created track {title} at {path}")


@cli.group()
def archives() -> None:
    """Manage track package archives."""


# fmt: off
@archives.command()
@click.argument("archive", type=click.Path(path_type=Path, exists=True, dir_okay=False), nargs=1)
@click.option("--destination", "-d", type=click.Path(path_type=Path, file_okay=False), help="Extract into this directory (default: the archive's directory).")
# fmt: on
def extract(archive: Path, destination: Path | None) -> None:
    """Extract a track package archive and delete it."""
    from tracklib.archives import extract_archive

    started = time.time()
    written = extract_archive(archive, destination or archive.parent)
    logger.info(f"Extracted {len(written)} files from {archive} in {time.time() - started:.2f}s")
