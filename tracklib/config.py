"""
The config module provides the config schema and parsing logic.

Invalid configuration is reported with an error that names the offending key and the file, and
unrecognized keys are reported with a warning rather than rejected.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import appdirs
import tomllib

from tracklib.common import TracklibExpectedError

XDG_CONFIG_TRACKLIB = Path(appdirs.user_config_dir("tracklib"))
CONFIG_PATH = XDG_CONFIG_TRACKLIB / "config.toml"

logger = logging.getLogger(__name__)


class ConfigNotFoundError(TracklibExpectedError):
    pass


class ConfigDecodeError(TracklibExpectedError):
    pass


class MissingConfigKeyError(TracklibExpectedError):
    pass


class InvalidConfigValueError(TracklibExpectedError, ValueError):
    pass


@dataclass(frozen=True)
class Config:
    # Every index rebuild starts from here, regardless of the location that requested it.
    tracks_root_dir: Path
    # The reserved filename that marks a directory as a track.
    track_filename: str
    # Lowercase, without the leading dot.
    archive_extension: str
    eyecatch_png_filename: str
    eyecatch_jpg_filename: str

    @classmethod
    def parse(cls, config_path_override: Path | None = None) -> Config:
        # As we parse, delete consumed values from the data dictionary. If any are left over at the
        # end of the config, warn that unknown config keys were found.
        cfgpath = config_path_override or CONFIG_PATH
        try:
            with cfgpath.open("rb") as fp:
                data = tomllib.load(fp)
        except FileNotFoundError as e:
            raise ConfigNotFoundError(f"Configuration file not found ({cfgpath})") from e
        except tomllib.TOMLDecodeError as e:
            raise ConfigDecodeError(
                f"Failed to decode configuration file: invalid TOML: {e}"
            ) from e

        try:
            tracks_root_dir = Path(data["tracks_root_dir"]).expanduser()
            del data["tracks_root_dir"]
        except KeyError as e:
            raise MissingConfigKeyError(
                f"Missing key tracks_root_dir in configuration file ({cfgpath})"
            ) from e
        except (ValueError, TypeError) as e:
            raise InvalidConfigValueError(
                f"Invalid value for tracks_root_dir in configuration file ({cfgpath}): must be a path"
            ) from e
        tracks_root_dir.mkdir(parents=True, exist_ok=True)

        track_filename = _parse_filename(data, "track_filename", "track.tech", cfgpath)
        eyecatch_png_filename = _parse_filename(
            data, "eyecatch_png_filename", "eyecatch.png", cfgpath
        )
        eyecatch_jpg_filename = _parse_filename(
            data, "eyecatch_jpg_filename", "eyecatch.jpg", cfgpath
        )

        try:
            archive_extension = data["archive_extension"]
            del data["archive_extension"]
            if not isinstance(archive_extension, str):
                raise ValueError(f"Must be a str: got {type(archive_extension)}")
            archive_extension = archive_extension.lower().lstrip(".")
            if not archive_extension:
                raise ValueError("Must not be empty")
        except KeyError:
            archive_extension = "zip"
        except ValueError as e:
            raise InvalidConfigValueError(
                f"Invalid value for archive_extension in configuration file ({cfgpath}): {e}"
            ) from e

        if data:
            unrecognized_accessors: list[str] = []
            # Do a DFS over the data keys to assemble the map of unknown keys. State is a tuple of
            # ("accessor", node).
            dfs_state: deque[tuple[str, Any]] = deque([("", data)])
            while dfs_state:
                accessor, node = dfs_state.pop()
                if isinstance(node, dict):
                    for k, v in node.items():
                        child_accessor = k if not accessor else f"{accessor}.{k}"
                        dfs_state.append((child_accessor, v))
                    continue
                unrecognized_accessors.append(accessor)
            logger.warning(
                f"Unrecognized options found in configuration file: {', '.join(unrecognized_accessors)}"
            )

        return Config(
            tracks_root_dir=tracks_root_dir,
            track_filename=track_filename,
            archive_extension=archive_extension,
            eyecatch_png_filename=eyecatch_png_filename,
            eyecatch_jpg_filename=eyecatch_jpg_filename,
        )


def _parse_filename(data: dict[str, Any], key: str, default: str, cfgpath: Path) -> str:
    try:
        value = data[key]
        del data[key]
        if not isinstance(value, str):
            raise ValueError(f"Must be a str: got {type(value)}")
        if not value or "/" in value or "\\" in value:
            raise ValueError(f"Must be a bare filename: got {value!r}")
    except KeyError:
        value = default
    except ValueError as e:
        raise InvalidConfigValueError(
            f"Invalid value for {key} in configuration file ({cfgpath}): {e}"
        ) from e
    return value
