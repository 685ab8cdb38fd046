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
Contains the cache manager restoring caches before a build step and saving
or evicting them afterwards.
"""

import contextlib
import json
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from jobcache import config, util
from jobcache.definition import CacheDefinition, UploadOptions
from jobcache.digest import DigestPolicy, get_digest_policy
from jobcache.keys import CacheKey, job_cache_path, resolve_cache_key
from jobcache.locks import KeyedLocks
from jobcache.logger import log
from jobcache.remote import ObjectStore, prefix_exists
from jobcache.strategy import SyncStrategy, get_strategy
from jobcache.transfer import TransferPool


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class CacheSaver:
    """A cache definition resolved for one run: its key and strategy."""

    definition: CacheDefinition
    key: CacheKey
    strategy: SyncStrategy
    restored: int = 0
    saved: int = 0

    def base(self, workspace: Path) -> Path:
        """Local directory of this cache in the workspace."""
        return Path(workspace) / self.definition.path


@dataclass
class CacheRunSummary:
    """What a run did with its caches, kept for later inspection."""

    job: str
    cache_path: str
    max_size_mb: int
    caches: List[dict] = field(default_factory=list)
    total_size: int = 0
    evicted: bool = False
    started: str = field(default_factory=_now)
    finished: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class CacheManager(object):
    """Restores and saves the caches of build jobs against one bucket."""

    def __init__(
        self,
        store: ObjectStore,
        bucket: str,
        prefix: str = config.PREFIX,
        pool: Optional[TransferPool] = None,
        locks: Optional[KeyedLocks] = None,
        options: Optional[UploadOptions] = None,
        threshold: int = config.INFLIGHT_THRESHOLD,
        digest_policy: Optional[DigestPolicy] = None,
        strict_descriptors: bool = True,
        progress: bool = False,
    ):
        """Initializes the manager.

        :param store: object store.
        :param bucket: bucket name.
        :param prefix: optional key prefix inside the bucket.
        :param pool: transfer pool, created and owned by the manager if None.
        :param locks: keyed locks shared with other managers in the process.
        :param options: metadata applied to uploads.
        :param threshold: max in-flight transfers per call.
        :param digest_policy: dependency descriptor digest policy.
        :param strict_descriptors: fail when a dependency descriptor is
            missing, instead of falling back to the un-keyed path.
        :param progress: show progress bars.
        """
        self.store = store
        self.bucket = bucket
        self.prefix = prefix
        self._owns_pool = pool is None
        self.pool = pool or TransferPool()
        self.locks = locks if locks is not None else KeyedLocks()
        self.options = options or UploadOptions()
        self.threshold = threshold
        self.digest_policy = digest_policy or get_digest_policy()
        self.strict_descriptors = strict_descriptors
        self.progress = progress
        self.cancel_event = threading.Event()
        self.history: List[CacheRunSummary] = []

    def __enter__(self) -> "CacheManager":
        return self

    def __exit__(self, *exc):
        self.close()

    def close(self) -> None:
        """Shut down the transfer pool if the manager created it."""
        if self._owns_pool:
            self.pool.shutdown()

    def cancel(self) -> None:
        """Signal running restores and saves to stop."""
        self.cancel_event.set()

    def get_cache_path(self, job: str) -> CacheKey:
        """Root key of a job's caches."""
        return job_cache_path(job, self.prefix)

    @contextlib.contextmanager
    def hold(self, cache_path: CacheKey):
        """Serialize work on a job cache root. Threads of this process wait
        on the keyed locks, other processes on the store lock."""
        key = str(cache_path)
        with self.locks.hold(key), self.store.lock(self.bucket, key):
            yield

    def resolve_key(
        self, job: str, definition: CacheDefinition, workspace: Optional[Path]
    ) -> CacheKey:
        """Resolve the key of one definition. A missing dependency descriptor
        raises unless strict_descriptors is off, in which case the un-keyed
        path is used.

        :raises FileNotFoundError: if the descriptor is missing.
        """
        cache_path = self.get_cache_path(job)
        try:
            return resolve_cache_key(cache_path, definition, workspace, self.digest_policy)
        except FileNotFoundError as e:
            if self.strict_descriptors:
                raise
            log.warning("%s, caching %s without a digest", e, definition.path)
            return resolve_cache_key(cache_path, definition, None)

    def resolve(
        self, job: str, workspace: Path, definitions: Sequence[CacheDefinition]
    ) -> List[CacheSaver]:
        """Resolve keys and strategies of all definitions, once per run."""
        savers = []
        for definition in definitions:
            key = self.resolve_key(job, definition, workspace)
            strategy = get_strategy(
                definition,
                self.store,
                self.bucket,
                self.pool,
                options=self.options,
                threshold=self.threshold,
                cancel_event=self.cancel_event,
                progress=self.progress,
            )
            log.debug("%s resolved to %s/%s", definition.path, self.bucket, key)
            savers.append(CacheSaver(definition, key, strategy))
        return savers

    def restore(
        self, job: str, workspace: Path, definitions: Sequence[CacheDefinition]
    ) -> List[CacheSaver]:
        """Restore every cache of a job into the workspace. A cache with
        nothing stored restores nothing.

        :param job: job name.
        :param workspace: workspace directory.
        :param definitions: caches to restore.
        :return: savers to pass to save() after the build step.
        """
        workspace = Path(workspace)
        log.info("Going to download cache...")
        savers = self.resolve(job, workspace, definitions)

        with self.hold(self.get_cache_path(job)):
            for saver in savers:
                saver.restored = saver.strategy.restore(saver.key, saver.base(workspace))
                log.info("Restored %d file(s) into %s", saver.restored, saver.definition.path)

        log.info("Cache downloaded")
        return savers

    def save(
        self,
        job: str,
        workspace: Path,
        savers: Sequence[CacheSaver],
        max_cache_size: int = config.MAX_SIZE_MB,
    ) -> CacheRunSummary:
        """Save every cache of a job, or delete the job's whole cache when
        its stored size exceeds max_cache_size megabytes.

        :param job: job name.
        :param workspace: workspace directory.
        :param savers: savers returned by restore().
        :param max_cache_size: size cap in megabytes.
        :raises TransferError: if eviction or an upload fails.
        :return: run summary.
        """
        workspace = Path(workspace)
        cache_path = self.get_cache_path(job)
        summary = CacheRunSummary(
            job=job, cache_path=str(cache_path), max_size_mb=max_cache_size
        )
        log.info("Going to upload cache...")

        with self.hold(cache_path):
            summary.total_size = sum(s.strategy.calculate_size(s.key) for s in savers)
            log.debug("cache size is %s", util.format_size(summary.total_size))

            if summary.total_size > max_cache_size * 1024 * 1024:
                log.info(
                    "Removing job cache as it has grown beyond configured maximum "
                    "size of %dM. Next build will start with no cache.",
                    max_cache_size,
                )
                if prefix_exists(self.store, self.bucket, str(cache_path)):
                    self.store.delete(self.bucket, str(cache_path), recursive=True)
                else:
                    log.info(
                        "Cache does not exist even though max cache was reached. "
                        "You may want to consider increasing maximum cache size."
                    )
                summary.evicted = True
            else:
                for saver in savers:
                    saver.saved = saver.strategy.save(saver.key, saver.base(workspace))
                    log.info("Uploaded %d object(s) from %s", saver.saved, saver.definition.path)

        summary.caches = [
            dict(
                s.definition.to_dict(), key=str(s.key), restored=s.restored, saved=s.saved
            )
            for s in savers
        ]
        summary.finished = _now()
        self.record(workspace, summary)
        log.info("Cache uploaded")
        return summary

    def record(self, workspace: Path, summary: CacheRunSummary) -> None:
        """Keep the summary in history and write it to the workspace. A
        failed write is only logged."""
        self.history.append(summary)
        summary_file = Path(workspace) / config.META_DIR / config.SUMMARY_FILE
        try:
            util.ensure_dir(summary_file.parent)
            summary_file.write_text(json.dumps(summary.to_dict(), indent=4), encoding="utf-8")
        except OSError as e:
            log.warning("Unable to write cache summary %s: %s", summary_file, e)

    def run(
        self,
        job: str,
        workspace: Path,
        definitions: Sequence[CacheDefinition],
        body: Callable,
        max_cache_size: int = config.MAX_SIZE_MB,
    ):
        """Restore caches, call body, then save caches whether body succeeded
        or failed. A save failure after a failed body is logged and the body's
        exception propagates. Nothing is saved if body is interrupted.

        :param job: job name.
        :param workspace: workspace directory.
        :param definitions: caches to use.
        :param body: the guarded build step.
        :param max_cache_size: size cap in megabytes.
        :return: whatever body returns.
        """
        savers = self.restore(job, workspace, definitions)

        try:
            result = body()
        except KeyboardInterrupt:
            log.info("Build interrupted, not saving cache")
            raise
        except Exception:
            try:
                self.save(job, workspace, savers, max_cache_size)
            except Exception as e:
                log.error("Failed to save cache: %s", e)
            raise

        self.save(job, workspace, savers, max_cache_size)
        return result
