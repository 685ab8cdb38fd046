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
Contains the cache key type and functions resolving cache definitions to
remote key prefixes:

    [<prefix>/]<job>/cache/<path>[/<descriptor digest>]
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from jobcache import config, util
from jobcache.definition import CacheDefinition
from jobcache.digest import DigestPolicy, get_digest_policy
from jobcache.errors import ConfigurationError
from jobcache.logger import log


def _split(path: str) -> Tuple[str, ...]:
    """Split a slash separated string into non-empty segments."""
    return tuple(s for s in util.sanitize_path(path or "").split("/") if s and s != ".")


@dataclass(frozen=True)
class CacheKey:
    """Ordered remote path segments under which one cache lives."""

    segments: Tuple[str, ...]

    def __post_init__(self):
        segments = []
        for s in self.segments:
            segments.extend(_split(str(s)))
        object.__setattr__(self, "segments", tuple(segments))

    def __str__(self) -> str:
        return "/".join(self.segments)

    @classmethod
    def parse(cls, path: str) -> "CacheKey":
        """Create a key from a slash separated string."""
        return cls(_split(path))

    def child(self, *segments: str) -> "CacheKey":
        """Return a new key extended with segments."""
        return CacheKey(self.segments + tuple(segments))

    def object_key(self, relpath: str) -> str:
        """Remote object key for a file below this key.

        :param relpath: path relative to the cached directory.
        :return: '<key>/<relpath>' with forward slashes.
        """
        return f"{self}/{util.sanitize_path(relpath)}"

    def archive_key(self, extension: str) -> str:
        """Remote object key of the archive stored under this key."""
        return f"{self}/{config.ARCHIVE_NAME}.{extension}"


def job_cache_path(job: str, prefix: str = config.PREFIX) -> CacheKey:
    """Root key of all caches of a job.

    :param job: job name, e.g. 'myrepo/main'.
    :param prefix: optional global prefix in the bucket.
    :return: CacheKey.
    """
    return CacheKey((prefix, job, config.CACHE_DIR))


def descriptor_digest(
    workspace: Path, descriptor: str, policy: Optional[DigestPolicy] = None
) -> str:
    """Digest of a dependency descriptor file in the workspace.

    :param workspace: workspace directory.
    :param descriptor: descriptor path relative to the workspace.
    :param policy: digest policy, defaults to the configured one.
    :raises FileNotFoundError: if the descriptor does not exist.
    :raises ConfigurationError: if the policy cannot read the descriptor.
    :return: hex digest.
    """
    policy = policy or get_digest_policy()
    descriptor_file = Path(workspace) / descriptor
    if not descriptor_file.is_file():
        raise FileNotFoundError(f"Dependency descriptor not found: {descriptor_file}")
    log.debug("computing dependency descriptor digest for %s", descriptor_file)
    try:
        digest = policy(descriptor_file)
    except UnicodeDecodeError as e:
        raise ConfigurationError(
            f"Dependency descriptor is not UTF-8 text: {descriptor_file}: {e}"
        ) from e
    log.debug("digest is %s", digest)
    return digest


def resolve_cache_key(
    base: CacheKey,
    definition: CacheDefinition,
    workspace: Optional[Path] = None,
    policy: Optional[DigestPolicy] = None,
) -> CacheKey:
    """Resolve the remote key of a cache definition. The declared path is
    appended to base; when the definition names a dependency descriptor and a
    workspace is given, the descriptor digest is appended as well, so any
    change to the descriptor resolves to a fresh key.

    :param base: job cache root.
    :param definition: cache definition.
    :param workspace: workspace holding the descriptor.
    :param policy: digest policy for the descriptor.
    :raises FileNotFoundError: if the descriptor is missing.
    :return: CacheKey.
    """
    key = base.child(util.normalize_path(definition.path))
    if definition.dependency_descriptor and workspace is not None:
        key = key.child(
            descriptor_digest(workspace, definition.dependency_descriptor, policy)
        )
    return key
