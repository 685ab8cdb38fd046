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
Contains the remote object store interface and paginated listing helpers.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, ContextManager, Dict, Iterator, List, Optional, Protocol, Tuple

from jobcache.logger import log

# called with the number of bytes moved since the last call
ProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class ObjectSummary:
    """A remote object as reported by a listing."""

    key: str
    last_modified: datetime
    size: int


@dataclass(frozen=True)
class ObjectMetadata:
    """Metadata sent with an uploaded object."""

    size: int = 0
    server_side_encryption: bool = False
    storage_class: str = ""
    user_metadata: Dict[str, str] = field(default_factory=dict)


class ObjectStore(Protocol):
    """Port for remote object store operations."""

    def list_objects(
        self, bucket: str, prefix: str, marker: Optional[str] = None
    ) -> Tuple[List[ObjectSummary], Optional[str]]:
        """List one page of objects under prefix, with the marker of the
        next page or None."""
        ...

    def put(
        self,
        bucket: str,
        key: str,
        local_file: Path,
        metadata: ObjectMetadata,
        callback: Optional[ProgressCallback] = None,
    ) -> None:
        """Upload a local file. The object is visible once put returns."""
        ...

    def get(
        self,
        bucket: str,
        key: str,
        local_file: Path,
        callback: Optional[ProgressCallback] = None,
    ) -> None:
        """Download an object into a local file."""
        ...

    def delete(self, bucket: str, prefix: str, recursive: bool = False) -> int:
        """Delete an object, or every object under prefix when recursive.
        Returns the number of deleted objects."""
        ...

    def lock(self, bucket: str, key: str) -> ContextManager:
        """Exclusive lock on key shared with other processes using the same
        store, or a no-op where the store has no locking primitive."""
        ...


def list_prefix(key: str) -> str:
    """Listing prefix for the children of key, always ending in '/' so that
    'deps' does not also match 'deps2'."""
    key = str(key)
    return key if key.endswith("/") else key + "/"


def iter_summaries(
    store: ObjectStore, bucket: str, prefix: str
) -> Iterator[ObjectSummary]:
    """Yield every object summary below a key, following continuation
    markers until the store reports no further page.

    :param store: object store.
    :param bucket: bucket name.
    :param prefix: cache key.
    :return: generator of ObjectSummary.
    """
    marker = None
    pages = 0
    while True:
        summaries, marker = store.list_objects(bucket, list_prefix(prefix), marker)
        pages += 1
        for summary in summaries:
            yield summary
        if not marker:
            break
    log.debug("listed %s in %d page(s)", prefix, pages)


def list_summaries(
    store: ObjectStore, bucket: str, prefix: str
) -> Dict[str, ObjectSummary]:
    """Map of remote key to summary for everything below prefix."""
    return {s.key: s for s in iter_summaries(store, bucket, prefix)}


def total_size(store: ObjectStore, bucket: str, prefix: str) -> int:
    """Sum of the sizes of all objects below prefix."""
    return sum(s.size for s in iter_summaries(store, bucket, prefix))


def prefix_exists(store: ObjectStore, bucket: str, prefix: str) -> bool:
    """Check whether anything is stored below prefix."""
    summaries, _ = store.list_objects(bucket, list_prefix(prefix), None)
    return bool(summaries)
