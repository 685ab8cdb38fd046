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
Contains the transfer pool and the tracker that bounds, joins and cancels
uploads and downloads.

Jobs are submitted to a shared bounded TransferPool. A TransferTracker keeps
the futures of the jobs it started; finish_waiting() is the only point where
the caller blocks on them. Cancellation is an explicit Event: once set, jobs
that have not started are dropped and running transfers abort at their next
progress callback.
"""

import concurrent.futures as cf
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from tqdm import tqdm

from jobcache import config, util
from jobcache.errors import TransferError, TransferInterrupted
from jobcache.logger import log
from jobcache.remote import ObjectMetadata, ObjectStore

UPLOAD = "upload"
DOWNLOAD = "download"


@dataclass
class TransferJob:
    """One file to move between the workspace and the store."""

    local_file: Path
    remote_key: str
    metadata: ObjectMetadata = field(default_factory=ObjectMetadata)
    # downloads only: stamped onto the local file once written
    last_modified: Optional[datetime] = None


class TransferPool(object):
    """Bounded pool of transfer worker threads, shared by trackers."""

    def __init__(self, workers: int = config.WORKERS):
        """Initializes the pool.

        :param workers: max number of concurrent transfers.
        """
        self.workers = max(1, int(workers))
        self._executor = cf.ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="jobcache-transfer"
        )

    def __enter__(self) -> "TransferPool":
        return self

    def __exit__(self, *exc):
        self.shutdown()

    def submit(self, fn, *args, **kwargs) -> cf.Future:
        """Schedule fn on a worker thread."""
        return self._executor.submit(fn, *args, **kwargs)

    def shutdown(self, wait: bool = True) -> None:
        """Stop the workers, dropping queued jobs."""
        self._executor.shutdown(wait=wait, cancel_futures=True)


class TransferTracker(object):
    """Tracks the transfers started for one restore or save call."""

    def __init__(
        self,
        store: ObjectStore,
        bucket: str,
        pool: TransferPool,
        cancel_event: Optional[threading.Event] = None,
        progress: bool = False,
        desc: str = "",
    ):
        """Initializes the tracker.

        :param store: object store the jobs run against.
        :param bucket: bucket name.
        :param pool: pool executing the jobs.
        :param cancel_event: external cancellation signal, e.g. the owning
            manager's. Only read here; cleanup() cancels this tracker alone.
        :param progress: show a progress bar.
        :param desc: progress bar label.
        """
        self.store = store
        self.bucket = bucket
        self.pool = pool
        self.cancel_event = cancel_event or threading.Event()
        self._cancelled = threading.Event()
        self.started = 0
        self.completed = 0
        self.transferred_bytes = 0
        self.max_in_flight = 0
        self._futures: List[cf.Future] = []
        self._active = 0
        self._lock = threading.Lock()
        self._pbar = tqdm(desc=desc or "[transfer]", unit="file", disable=not progress)

    def __enter__(self) -> "TransferTracker":
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None and self._futures:
            self.cleanup()
        self.close()

    def close(self) -> None:
        """Close the progress bar."""
        self._pbar.close()

    @property
    def cancelled(self) -> bool:
        """True once this tracker or its external signal was cancelled."""
        return self._cancelled.is_set() or self.cancel_event.is_set()

    def _check_cancelled(self) -> None:
        if self.cancelled:
            raise TransferInterrupted("transfer cancelled")

    def _progress(self, nbytes: int) -> None:
        """Progress callback handed to the store; raising here aborts the
        running transfer."""
        self._check_cancelled()
        with self._lock:
            self.transferred_bytes += nbytes

    def _run(self, direction: str, job: TransferJob) -> TransferJob:
        """Worker body for a single job."""
        self._check_cancelled()
        with self._lock:
            self._active += 1
            self.max_in_flight = max(self.max_in_flight, self._active)
        try:
            if direction == UPLOAD:
                log.debug("uploading %s to %s", job.local_file, job.remote_key)
                self.store.put(
                    self.bucket, job.remote_key, job.local_file, job.metadata, self._progress
                )
            else:
                log.debug("downloading %s to %s", job.remote_key, job.local_file)
                self.store.get(self.bucket, job.remote_key, job.local_file, self._progress)
                if job.last_modified is not None:
                    util.set_mtime(Path(job.local_file), job.last_modified)
        finally:
            with self._lock:
                self._active -= 1
        return job

    def _start(self, direction: str, job: TransferJob) -> cf.Future:
        self._check_cancelled()
        future = self.pool.submit(self._run, direction, job)
        self._futures.append(future)
        self.started += 1
        return future

    def start_upload(self, job: TransferJob) -> cf.Future:
        """Start uploading job.local_file to job.remote_key.

        :param job: transfer job.
        :raises TransferInterrupted: if the tracker was cancelled.
        :return: future of the job.
        """
        return self._start(UPLOAD, job)

    def start_download(self, job: TransferJob) -> cf.Future:
        """Start downloading job.remote_key into job.local_file.

        :param job: transfer job.
        :raises TransferInterrupted: if the tracker was cancelled.
        :return: future of the job.
        """
        return self._start(DOWNLOAD, job)

    def count(self) -> int:
        """Number of jobs started and not yet harvested by finish_waiting."""
        return len(self._futures)

    def finish_waiting(self) -> int:
        """Block until every started job has succeeded or failed.

        If a job fails, queued jobs are cancelled, running ones are awaited,
        and a TransferError is raised. If the wait is interrupted, either by
        KeyboardInterrupt or by the cancellation signal, outstanding jobs are
        cancelled and the interruption is re-raised.

        :raises TransferError: if any job failed.
        :raises TransferInterrupted: if the tracker was cancelled.
        :return: number of jobs completed by this wait.
        """
        pending = set(self._futures)
        if pending:
            log.debug("waiting for %d %s", len(pending), "transfer(s)")

        done_count = 0
        failures = 0
        error: Optional[BaseException] = None
        try:
            while pending:
                self._check_cancelled()
                done, pending = cf.wait(
                    pending,
                    timeout=config.WAIT_POLL_SECONDS,
                    return_when=cf.FIRST_EXCEPTION,
                )
                for future in done:
                    if future.cancelled():
                        continue
                    exc = future.exception()
                    if exc is None:
                        done_count += 1
                        self._pbar.update(1)
                        continue
                    if isinstance(exc, TransferInterrupted):
                        raise exc
                    failures += 1
                    if error is None:
                        error = exc
                        log.error("transfer failed: %s", exc)
                        for f in pending:
                            f.cancel()
            self._check_cancelled()

        except (KeyboardInterrupt, TransferInterrupted):
            self.cleanup()
            raise

        self._futures = []
        self.completed += done_count

        if error is not None:
            if isinstance(error, TransferError) and failures == 1:
                raise error
            raise TransferError(f"{failures} transfer(s) failed: {error}") from error

        return done_count

    def cleanup(self) -> int:
        """Cancel all outstanding jobs without waiting for them. Running
        transfers stop at their next progress callback. Only this tracker
        is cancelled; the external signal is left untouched.

        :return: number of jobs that were still outstanding.
        """
        self._cancelled.set()
        outstanding = [f for f in self._futures if not f.done()]
        for future in outstanding:
            future.cancel()
        if outstanding:
            log.warning("cancelled %d outstanding transfer(s)", len(outstanding))
        self._futures = []
        return len(outstanding)
