#!/usr/bin/env python
#
# Copyright (c) 2024-2025, Ryan Galloway (ryan@rsgalloway.com)
#
# Redistribution and use in source and binary forms, with or without
# modification, are permitted provided that the following conditions are met:
#
#  - Redistributions of source code must retain the above copyright notice,
#    this list of conditions and the following disclaimer.
#
#  - Redistributions in binary form must reproduce the above copyright notice,
#    this list of conditions and the following disclaimer in the documentation
#    and/or other materials provided with the distribution.
#
#  - Neither the name of the software nor the names of its contributors
#    may be used to endorse or promote products derived from this software
#    without specific prior written permission.
#
# THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS IS"
# AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED TO, THE
# IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR PURPOSE
# ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR CONTRIBUTORS BE
# LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL, EXEMPLARY, OR
# CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED TO, PROCUREMENT OF
# SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR PROFITS; OR BUSINESS
# INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER IN
# CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE)
# ARISING IN ANY WAY OUT OF THE USE OF THIS SOFTWARE, EVEN IF ADVISED OF THE
# POSSIBILITY OF SUCH DAMAGE.
#

__doc__ = """
Contains cache definition classes and the cache file reader.
"""

import enum
import json
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from jobcache import config, util
from jobcache.errors import ConfigurationError
from jobcache.logger import log


class StorageFormat(enum.Enum):
    """How a cache definition is stored remotely."""

    # one remote object per file
    DIRECTORY = "directory"
    # single zip archive, symlinks are followed
    ZIP = "zip"
    # single tar archive, symlinks are preserved
    TAR = "tar"

    @property
    def extension(self) -> Optional[str]:
        """Archive file extension, or None for directory storage."""
        return None if self is StorageFormat.DIRECTORY else self.value

    @classmethod
    def parse(cls, value) -> "StorageFormat":
        """Parse a format name, case insensitive.

        :param value: format name or StorageFormat.
        :raises ConfigurationError: for unknown formats.
        :return: StorageFormat member.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigurationError(f"Unsupported storage format: {value}")


@dataclass(frozen=True)
class CacheDefinition:
    """A local path to persist between builds and how to store it."""

    path: str
    includes: str = config.DEFAULT_INCLUDES
    excludes: str = ""
    format: StorageFormat = StorageFormat.DIRECTORY
    dependency_descriptor: Optional[str] = None

    def __post_init__(self):
        if not self.path or not str(self.path).strip():
            raise ConfigurationError("Cache definition requires a path")
        object.__setattr__(self, "format", StorageFormat.parse(self.format))

    def to_dict(self) -> dict:
        """Serializable form used by run summaries."""
        d = {
            config.TAG_PATH: self.path,
            config.TAG_INCLUDES: self.includes,
            config.TAG_EXCLUDES: self.excludes,
            config.TAG_FORMAT: self.format.value,
        }
        if self.dependency_descriptor:
            d[config.TAG_DESCRIPTOR] = self.dependency_descriptor
        return d


@dataclass(frozen=True)
class UploadOptions:
    """Object metadata applied to every upload."""

    storage_class: str = config.STORAGE_CLASS
    server_side_encryption: bool = config.SERVER_SIDE_ENCRYPTION
    user_metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class CacheFile:
    """Contents of a cache file."""

    caches: List[CacheDefinition]
    max_cache_size: int = config.MAX_SIZE_MB
    path: str = ""


def parse_definition(entry: dict) -> CacheDefinition:
    """Build a CacheDefinition from a cache file entry:

        {
            "path": "node_modules",
            "includes": "**/*",
            "excludes": "**/.cache/",
            "format": "tar",
            "dependencyDescriptor": "package-lock.json"
        }

    :param entry: dictionary from the cache file.
    :raises ConfigurationError: if the entry is malformed.
    :return: CacheDefinition.
    """
    if not isinstance(entry, dict):
        raise ConfigurationError(f"Cache entry must be an object: {entry!r}")

    path = entry.get(config.TAG_PATH)
    if not isinstance(path, str):
        raise ConfigurationError(f"Cache entry is missing a path: {entry!r}")

    return CacheDefinition(
        path=util.normalize_path(path),
        includes=entry.get(config.TAG_INCLUDES) or config.DEFAULT_INCLUDES,
        excludes=entry.get(config.TAG_EXCLUDES) or "",
        format=StorageFormat.parse(entry.get(config.TAG_FORMAT, "directory")),
        dependency_descriptor=entry.get(config.TAG_DESCRIPTOR) or None,
    )


def read_cache_file(location: str = ".") -> CacheFile:
    """Reads a cache file, either a path to the file or a directory
    containing one:

        {
            "version": 1,
            "maxCacheSize": 100,
            "caches": [ { "path": "deps" } ]
        }

    :param location: cache file or directory containing it.
    :raises ConfigurationError: if the file is missing or invalid.
    :return: CacheFile.
    """
    cache_file = location
    if os.path.isdir(location):
        cache_file = os.path.join(location, config.CACHE_FILE)
    if not os.path.isfile(cache_file):
        raise ConfigurationError(f"{cache_file} does not exist")

    try:
        with open(cache_file, "r") as json_file:
            root = json.load(json_file)
    except (OSError, ValueError) as e:
        raise ConfigurationError(f"Failed to parse cache file: {e}") from e

    if not isinstance(root, dict):
        raise ConfigurationError("Cache file must contain an object")

    try:
        version = int(root.get(config.TAG_VERSION, 0))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid cache file version in {cache_file}: {e}") from e
    if version < config.CACHE_FILE_VERSION:
        log.warning(
            "WARNING: Old cache file version: %s (current %d)",
            version,
            config.CACHE_FILE_VERSION,
        )
    elif version > config.CACHE_FILE_VERSION:
        raise ConfigurationError(
            "This cache file is newer than supported version: %s (current %d)"
            % (version, config.CACHE_FILE_VERSION)
        )

    entries = root.get(config.TAG_CACHES)
    if not isinstance(entries, list) or not entries:
        raise ConfigurationError("Cache file defines no caches")

    try:
        max_size = int(root.get(config.TAG_MAX_SIZE, config.MAX_SIZE_MB))
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"Invalid {config.TAG_MAX_SIZE}: {root.get(config.TAG_MAX_SIZE)!r}"
        )

    return CacheFile(
        caches=[parse_definition(e) for e in entries],
        max_cache_size=max_size,
        path=cache_file,
    )
