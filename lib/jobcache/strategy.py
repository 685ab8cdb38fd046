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
Contains the sync strategies moving one cache definition between a local
directory and the object store.

    DirectoryStrategy   one object per file, incremental uploads
    ZipStrategy         single zip archive, symlinks followed
    TarStrategy         single tar archive, symlinks preserved

Remote layout:

    <key>/<relative/path>       directory storage
    <key>/archive.<zip|tar>     archive storage
"""

import tarfile
import threading
import zipfile
from pathlib import Path
from typing import Dict, Optional, Type

from jobcache import config, util
from jobcache.definition import CacheDefinition, StorageFormat, UploadOptions
from jobcache.errors import ConfigurationError
from jobcache.keys import CacheKey
from jobcache.logger import log
from jobcache.matcher import PathMatcher
from jobcache.remote import (
    ObjectMetadata,
    ObjectStore,
    iter_summaries,
    list_prefix,
    list_summaries,
    total_size,
)
from jobcache.transfer import TransferJob, TransferPool, TransferTracker


def ensure_base(base: Path) -> None:
    """Create the restore target directory.

    :param base: directory to create.
    :raises OSError: if it cannot be created.
    """
    if base.is_dir():
        return
    try:
        util.ensure_dir(base)
    except OSError as e:
        raise OSError(f"Failed to create directory: {base}: {e}") from e


class SyncStrategy(object):
    """Base class for moving a cache between a directory and the store."""

    format: StorageFormat = None

    def __init__(
        self,
        definition: CacheDefinition,
        store: ObjectStore,
        bucket: str,
        pool: TransferPool,
        options: Optional[UploadOptions] = None,
        threshold: int = config.INFLIGHT_THRESHOLD,
        cancel_event: Optional[threading.Event] = None,
        progress: bool = False,
    ):
        """Initializes the strategy.

        :param definition: cache definition this strategy serves.
        :param store: object store.
        :param bucket: bucket name.
        :param pool: transfer pool.
        :param options: metadata applied to uploads.
        :param threshold: max in-flight transfers before the walk blocks.
        :param cancel_event: external cancellation signal read by trackers.
        :param progress: show progress bars.
        """
        self.definition = definition
        self.store = store
        self.bucket = bucket
        self.pool = pool
        self.options = options or UploadOptions()
        self.threshold = max(1, int(threshold))
        self.cancel_event = cancel_event or threading.Event()
        self.progress = progress
        self.matcher = PathMatcher(definition.includes, definition.excludes)

    def __repr__(self):
        return f"{self.__class__.__name__}({self.definition.path!r})"

    def tracker(self, desc: str) -> TransferTracker:
        """New tracker for one restore or save call."""
        return TransferTracker(
            self.store,
            self.bucket,
            self.pool,
            cancel_event=self.cancel_event,
            progress=self.progress,
            desc=desc,
        )

    def metadata(self, path: Path) -> ObjectMetadata:
        """Upload metadata for a local file."""
        return ObjectMetadata(
            size=path.stat().st_size,
            server_side_encryption=self.options.server_side_encryption,
            storage_class=self.options.storage_class,
            user_metadata=dict(self.options.user_metadata),
        )

    def calculate_size(self, key: CacheKey) -> int:
        """Total size in bytes of everything stored under key."""
        return total_size(self.store, self.bucket, str(key))

    def restore(self, key: CacheKey, base: Path) -> int:
        """Copy the cache stored under key into base.

        :return: number of restored files (advisory for archives).
        """
        raise NotImplementedError

    def save(self, key: CacheKey, base: Path) -> int:
        """Copy the selected files of base to the store under key.

        :return: number of uploaded objects.
        """
        raise NotImplementedError


class DirectoryStrategy(SyncStrategy):
    """Stores each file as its own object and uploads only files that are
    newer than their stored copy."""

    format = StorageFormat.DIRECTORY

    def restore(self, key: CacheKey, base: Path) -> int:
        base = Path(base)
        ensure_base(base)
        prefix = list_prefix(key)

        with self.tracker(f"[restoring {self.definition.path}]") as tracker:
            for summary in iter_summaries(self.store, self.bucket, str(key)):
                relpath = summary.key[len(prefix) :]
                if not relpath or relpath.endswith("/"):
                    log.debug("skipping folder placeholder %s", summary.key)
                    continue
                target = base / relpath
                if not util.is_within(base, target):
                    log.warning("Skipping object outside of %s: %s", base, summary.key)
                    continue
                tracker.start_download(
                    TransferJob(target, summary.key, last_modified=summary.last_modified)
                )
                if tracker.count() >= self.threshold:
                    tracker.finish_waiting()
            tracker.finish_waiting()
            return tracker.completed

    def save(self, key: CacheKey, base: Path) -> int:
        base = Path(base)
        if not base.exists():
            log.warning("Nothing to cache at %s", base)
            return 0

        log.debug("querying existing objects at %s/%s", self.bucket, key)
        summaries = list_summaries(self.store, self.bucket, str(key))

        skipped = 0
        with self.tracker(f"[saving {self.definition.path}]") as tracker:
            for path, relpath in self.matcher.scan(base):
                if not path.is_file():
                    continue
                object_key = key.object_key(relpath)
                summary = summaries.get(object_key)
                if summary is not None and util.mtime_millis(path) <= util.to_millis(
                    summary.last_modified
                ):
                    skipped += 1
                    continue
                tracker.start_upload(TransferJob(path, object_key, self.metadata(path)))
                if tracker.count() >= self.threshold:
                    tracker.finish_waiting()
            tracker.finish_waiting()
            log.debug("uploaded %d, skipped %d unchanged", tracker.completed, skipped)
            return tracker.completed


class ArchiveStrategy(SyncStrategy):
    """Stores the selected files as a single archive object, uploaded only if
    no archive exists under the key yet."""

    def write_archive(self, base: Path, archive: Path) -> int:
        """Write the selected files of base into archive.

        :return: number of entries written.
        """
        raise NotImplementedError

    def extract_archive(self, archive: Path, base: Path) -> int:
        """Extract archive into base.

        :return: number of entries in the archive.
        """
        raise NotImplementedError

    def save(self, key: CacheKey, base: Path) -> int:
        base = Path(base)
        if not base.exists():
            log.warning("Nothing to cache at %s", base)
            return 0

        archive_key = key.archive_key(self.format.extension)
        log.debug("querying existing archive at %s/%s", self.bucket, archive_key)
        if archive_key in list_summaries(self.store, self.bucket, str(key)):
            log.info("Cache archive %s exists, skipping upload", archive_key)
            return 0

        archive = util.make_temp_file(prefix="upload", suffix="." + self.format.extension)
        try:
            entries = self.write_archive(base, archive)
            log.debug("archived %d entries from %s", entries, base)
            with self.tracker(f"[saving {self.definition.path}]") as tracker:
                tracker.start_upload(TransferJob(archive, archive_key, self.metadata(archive)))
                return tracker.finish_waiting()
        finally:
            util.remove_temp_file(archive)

    def restore(self, key: CacheKey, base: Path) -> int:
        base = Path(base)
        ensure_base(base)

        archive_key = key.archive_key(self.format.extension)
        if archive_key not in list_summaries(self.store, self.bucket, str(key)):
            log.info("No cache archive at %s", archive_key)
            return 0

        archive = util.make_temp_file(prefix="download", suffix="." + self.format.extension)
        try:
            with self.tracker(f"[restoring {self.definition.path}]") as tracker:
                tracker.start_download(TransferJob(archive, archive_key))
                tracker.finish_waiting()
            return self.extract_archive(archive, base)
        finally:
            util.remove_temp_file(archive)


class ZipStrategy(ArchiveStrategy):
    """Zip archive storage. Symlinked files are stored by content."""

    format = StorageFormat.ZIP

    def write_archive(self, base: Path, archive: Path) -> int:
        count = 0
        with zipfile.ZipFile(
            archive, "w", zipfile.ZIP_DEFLATED, strict_timestamps=False
        ) as zf:
            for path, relpath in self.matcher.scan(base):
                if path.is_file():
                    zf.write(path, relpath)
                    count += 1
        return count

    def extract_archive(self, archive: Path, base: Path) -> int:
        try:
            with zipfile.ZipFile(archive) as zf:
                names = [n for n in zf.namelist() if not n.endswith("/")]
                zf.extractall(base)
        except zipfile.BadZipFile as e:
            raise OSError(f"Invalid cache archive {archive}: {e}") from e
        return len(names)


class TarStrategy(ArchiveStrategy):
    """Uncompressed tar archive storage. Symlinks are stored as links."""

    format = StorageFormat.TAR

    def write_archive(self, base: Path, archive: Path) -> int:
        count = 0
        with tarfile.open(archive, "w") as tf:
            for path, relpath in self.matcher.scan(base):
                if path.is_symlink() or path.is_file():
                    tf.add(str(path), arcname=relpath, recursive=False)
                    count += 1
        return count

    def extract_archive(self, archive: Path, base: Path) -> int:
        try:
            with tarfile.open(archive, "r") as tf:
                members = tf.getmembers()
                tf.extractall(base, filter="tar")
        except tarfile.TarError as e:
            raise OSError(f"Invalid cache archive {archive}: {e}") from e
        return len(members)


STRATEGIES: Dict[StorageFormat, Type[SyncStrategy]] = {
    StorageFormat.DIRECTORY: DirectoryStrategy,
    StorageFormat.ZIP: ZipStrategy,
    StorageFormat.TAR: TarStrategy,
}


def get_strategy(definition: CacheDefinition, *args, **kwargs) -> SyncStrategy:
    """Create the sync strategy for a definition's storage format.

    :param definition: cache definition.
    :raises ConfigurationError: for unsupported formats.
    :return: SyncStrategy instance.
    """
    cls = STRATEGIES.get(definition.format)
    if cls is None:
        raise ConfigurationError(f"Unsupported storage format: {definition.format}")
    return cls(definition, *args, **kwargs)
