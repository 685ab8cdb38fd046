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
Contains utility functions.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

from jobcache import config
from jobcache.logger import log

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def sanitize_path(path: str) -> str:
    """Sanitizes a path by changing separators to forward slashes and removing
    trailing slashes.

    :param path: file system path.
    :returns: sanitized path.
    """
    return path.replace("\\", "/").rstrip("/") if path else path


def normalize_path(path: str) -> str:
    """Normalizes a relative path by sanitizing it and removing any leading
    "./" segments. Absolute paths are only sanitized.

    :param path: file system path.
    :return: normalized path.
    """
    path = sanitize_path(path)
    while path.startswith("./"):
        path = path[2:]
    return path or "."


def ensure_dir(p: Path) -> None:
    """Ensure that directory p exists.

    :param p: Directory path to ensure
    """
    p.mkdir(parents=True, exist_ok=True)


def is_within(base: Path, p: Path) -> bool:
    """Check that p stays inside base once resolved.

    :param base: Base directory.
    :param p: Path to check.
    :return: True if p is base or below it.
    """
    base = base.resolve()
    try:
        p.resolve().relative_to(base)
        return True
    except ValueError:
        return False


def mtime_millis(p: Path) -> int:
    """Get the modification time of p in milliseconds since the epoch.

    :param p: Path to the file.
    :return: Modification time in ms.
    """
    return p.stat().st_mtime_ns // 1_000_000


def to_millis(dt: datetime) -> int:
    """Convert a datetime to milliseconds since the epoch. Naive datetimes
    are taken as UTC.

    :param dt: datetime to convert.
    :return: Time in ms.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = dt - EPOCH
    return (delta.days * 86400 + delta.seconds) * 1000 + delta.microseconds // 1000


def from_nanos(ns: int) -> datetime:
    """Convert nanoseconds since the epoch to an aware UTC datetime,
    truncated to microseconds.

    :param ns: Time in ns.
    :return: datetime.
    """
    return EPOCH + timedelta(microseconds=ns // 1000)


def set_mtime(p: Path, dt: datetime) -> None:
    """Set the access and modification time of p to dt.

    :param p: Path to the file.
    :param dt: New modification time.
    """
    ns = to_millis(dt) * 1_000_000
    os.utime(p, ns=(ns, ns))


def copy_file_chunked(
    src: Path,
    dst: Path,
    callback: Optional[Callable[[int], None]] = None,
    chunk_size: int = config.CHUNK_SIZE,
) -> int:
    """Copy src to dst through a temp file in the destination directory, then
    atomically replace dst. The callback receives the byte count of each
    chunk and may raise to abort the copy.

    :param src: Source file path.
    :param dst: Destination file path.
    :param callback: Optional progress callback.
    :param chunk_size: Bytes per read.
    :return: Number of bytes copied.
    """
    ensure_dir(dst.parent)
    fd, tmp_name = tempfile.mkstemp(prefix=".jobcache.", dir=str(dst.parent))
    tmp_path = Path(tmp_name)
    copied = 0
    try:
        with open(src, "rb") as infile, os.fdopen(fd, "wb") as outfile:
            while True:
                chunk = infile.read(chunk_size)
                if not chunk:
                    break
                outfile.write(chunk)
                copied += len(chunk)
                if callback:
                    callback(len(chunk))
        os.replace(tmp_path, dst)
    finally:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)
    return copied


def make_temp_file(prefix: str = "jobcache", suffix: str = ".archive") -> Path:
    """Create an empty temporary file and return its path. The caller owns
    the file and must delete it.

    :param prefix: File name prefix.
    :param suffix: File name suffix.
    :return: Path to the temp file.
    """
    fd, name = tempfile.mkstemp(prefix=prefix, suffix=suffix)
    os.close(fd)
    return Path(name)


def remove_temp_file(p: Path) -> bool:
    """Delete a temporary file. Failures are logged, not raised.

    :param p: Path to the temp file.
    :return: True if the file is gone.
    """
    try:
        p.unlink(missing_ok=True)
        return True
    except OSError as e:
        log.warning("Unable to delete temporary file %s: %s", p, e)
        return False


def format_size(num: int) -> str:
    """Format a byte count for status lines, e.g. 1536 -> '1.5K'.

    :param num: Number of bytes.
    :return: Human readable size.
    """
    size = float(num)
    for unit in ("B", "K", "M", "G", "T"):
        if size < 1024 or unit == "T":
            if unit == "B":
                return f"{int(size)}B"
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{num}B"
