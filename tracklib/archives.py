"""
The archives module unpacks downloaded track packages in place.

A well-formed package keeps all of its files under one top-level directory, so extracting it into a
library directory produces exactly one new track (or folder of tracks) there. Files at the root of
the archive and bare directory entries are skipped. Once every file has been written, the archive
is deleted so that the next scan does not extract it again.
"""

import logging
import os
import shutil
import zipfile
from pathlib import Path, PurePosixPath

from tracklib.common import TracklibExpectedError

logger = logging.getLogger(__name__)


class ExtractionError(TracklibExpectedError):
    pass


def is_archive(path: Path, extension: str) -> bool:
    return path.suffix.lower() == "." + extension.lower().lstrip(".")


def extract_archive(archive_path: Path, destination_root: Path) -> list[Path]:
    """
    Extract the nested files of an archive into destination_root, overwriting existing files, and
    then delete the archive. Returns the paths of the written files.

    If the archive cannot be read, contains an entry that would land outside destination_root, or a
    write fails, an ExtractionError is raised and the archive is left in place. Entries are all
    validated before anything is written, so an unsafe archive writes nothing.
    """
    logger.info(f"Extracting: {archive_path}")
    destination_root = Path(os.path.abspath(destination_root))
    written: list[Path] = []
    try:
        with zipfile.ZipFile(archive_path) as zf:
            accepted: list[tuple[zipfile.ZipInfo, Path]] = []
            for info in zf.infolist():
                name = info.filename.replace("\\", "/")
                if info.is_dir() or name.endswith("/"):
                    logger.debug(f"Ignoring empty folder: {info.filename} in {archive_path}")
                    continue
                dest = _safe_destination(destination_root, PurePosixPath(name), archive_path)
                # Checked after normalizing, so `top/../b.txt` counts as a root-level file.
                if dest.parent == destination_root:
                    logger.debug(
                        f"Ignoring due to not being in a folder: {info.filename} in {archive_path}"
                    )
                    continue
                accepted.append((info, dest))

            for info, dest in accepted:
                logger.debug(f"Extracting {info.filename} in {archive_path} to: {dest}")
                dest.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, dest.open("wb") as dst:
                    shutil.copyfileobj(src, dst)
                written.append(dest)
    except zipfile.BadZipFile as e:
        raise ExtractionError(f"Failed to open archive {archive_path}: {e}") from e
    except (OSError, NotImplementedError) as e:
        raise ExtractionError(f"Failed to extract archive {archive_path}: {e}") from e

    logger.info(f"Extract successful. Deleting: {archive_path}")
    try:
        archive_path.unlink()
    except OSError as e:
        raise ExtractionError(f"Extracted archive {archive_path} but failed to delete it: {e}") from e
    return written


def _safe_destination(destination_root: Path, relpath: PurePosixPath, archive_path: Path) -> Path:
    if relpath.is_absolute() or (relpath.parts and relpath.parts[0].endswith(":")):
        raise ExtractionError(f"Refusing to extract absolute path {relpath} in {archive_path}")
    dest = Path(os.path.normpath(destination_root.joinpath(*relpath.parts)))
    if not dest.is_relative_to(destination_root) or dest == destination_root:
        raise ExtractionError(
            f"Refusing to extract {relpath} in {archive_path}: resolves outside {destination_root}"
        )
    return dest
