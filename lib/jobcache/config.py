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
Contains default config and settings.
"""

import os

# remote store settings
BUCKET = os.getenv("JOBCACHE_BUCKET", "")
PREFIX = os.getenv("JOBCACHE_PREFIX", "")
ENDPOINT_URL = os.getenv("JOBCACHE_ENDPOINT_URL")
REGION = os.getenv("JOBCACHE_REGION")
PROFILE = os.getenv("JOBCACHE_PROFILE")
STORAGE_CLASS = os.getenv("JOBCACHE_STORAGE_CLASS", "")
SERVER_SIDE_ENCRYPTION = os.getenv("JOBCACHE_SSE", "0").lower() in ("1", "true", "yes")
LOCAL_BUCKET = "jobcache"
CONNECT_TIMEOUT = 10
READ_TIMEOUT = 60
MAX_ATTEMPTS = 3
LOCK_DIR = ".locks"
LOCK_TIMEOUT = float(os.getenv("JOBCACHE_LOCK_TIMEOUT", "-1"))

# cache settings
CACHE_FILE = "cache.json"
CACHE_FILE_VERSION = 1
CACHE_DIR = "cache"
META_DIR = ".jobcache"
SUMMARY_FILE = "last_run.json"
ARCHIVE_NAME = "archive"
DEFAULT_INCLUDES = "**/*"
MAX_SIZE_MB = int(os.getenv("JOBCACHE_MAX_SIZE_MB", "1024"))
DIGEST_POLICY = os.getenv("JOBCACHE_DIGEST_POLICY", "raw")

# transfer settings
INFLIGHT_THRESHOLD = int(os.getenv("JOBCACHE_INFLIGHT", "20"))
WORKERS = int(os.getenv("JOBCACHE_WORKERS", str(min(32, (os.cpu_count() or 8) * 4))))
CHUNK_SIZE = 1024 * 1024
WAIT_POLL_SECONDS = 0.5

# logging settings
LOG_NAME = "jobcache"
LOG_DIR = os.getenv("LOG_DIR", os.path.expanduser("~/log/jobcache"))
LOG_LEVEL_DEFAULT = "INFO"
LOG_LEVEL = os.getenv("LOG_LEVEL", LOG_LEVEL_DEFAULT)
LOG_MAX_BYTES = 1_000_000
LOG_BACKUP_COUNT = 5

# cache file keys/tags
TAG_CACHES = "caches"
TAG_DESCRIPTOR = "dependencyDescriptor"
TAG_EXCLUDES = "excludes"
TAG_FORMAT = "format"
TAG_INCLUDES = "includes"
TAG_MAX_SIZE = "maxCacheSize"
TAG_PATH = "path"
TAG_VERSION = "version"
