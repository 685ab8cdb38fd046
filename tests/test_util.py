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
Contains tests for the util module.
"""

import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from jobcache import util


def test_normalize_path():
    """Test the normalize_path function to ensure it correctly normalizes
    paths."""
    assert util.normalize_path("./foo/bar/") == "foo/bar"
    assert util.normalize_path("././foo") == "foo"
    assert util.normalize_path("") == "."
    assert util.normalize_path("./") == "."


def test_sanitize_path():
    """Test the sanitize_path function to ensure it correctly sanitizes
    paths."""
    assert util.sanitize_path("foo\\bar\\") == "foo/bar"
    assert util.sanitize_path("foo/bar/") == "foo/bar"
    assert util.sanitize_path("") == ""


def test_is_within(tmp_path):
    assert util.is_within(tmp_path, tmp_path / "a" / "b")
    assert util.is_within(tmp_path, tmp_path)
    assert not util.is_within(tmp_path, tmp_path / ".." / "other")


def test_to_millis_naive_is_utc():
    aware = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)
    naive = aware.replace(tzinfo=None)
    assert util.to_millis(aware) == util.to_millis(naive)
    assert util.to_millis(aware) % 1000 == 678


def test_set_mtime(tmp_path):
    """Test that set_mtime stamps a file with millisecond precision."""
    p = tmp_path / "file.txt"
    p.write_text("hello")
    dt = datetime(2023, 5, 6, 7, 8, 9, 123000, tzinfo=timezone.utc)
    util.set_mtime(p, dt)
    assert util.mtime_millis(p) == util.to_millis(dt)


def test_copy_file_chunked(tmp_path):
    """Test that copy_file_chunked copies content, creates parent dirs and
    reports every chunk."""
    src = tmp_path / "src.bin"
    src.write_bytes(b"x" * 2500)
    dst = tmp_path / "a" / "b" / "dst.bin"
    chunks = []

    copied = util.copy_file_chunked(src, dst, chunks.append, chunk_size=1000)

    assert copied == 2500
    assert chunks == [1000, 1000, 500]
    assert dst.read_bytes() == src.read_bytes()
    assert os.listdir(dst.parent) == ["dst.bin"]


def test_copy_file_chunked_abort(tmp_path):
    """Test that a raising callback aborts the copy without leaving a
    partial file behind."""
    src = tmp_path / "src.bin"
    src.write_bytes(b"x" * 2500)
    dst = tmp_path / "out" / "dst.bin"

    def abort(nbytes):
        raise RuntimeError("stop")

    with pytest.raises(RuntimeError):
        util.copy_file_chunked(src, dst, abort, chunk_size=1000)

    assert not dst.exists()
    assert os.listdir(dst.parent) == []


def test_make_and_remove_temp_file():
    p = util.make_temp_file(suffix=".zip")
    assert p.exists()
    assert p.name.endswith(".zip")
    assert util.remove_temp_file(p) is True
    assert not p.exists()
    # already gone
    assert util.remove_temp_file(p) is True


def test_remove_temp_file_failure(mocker):
    """Test that a failed delete is reported, not raised."""
    mocker.patch.object(Path, "unlink", side_effect=PermissionError("denied"))
    assert util.remove_temp_file(Path("/tmp/does-not-matter")) is False


def test_format_size():
    assert util.format_size(10) == "10B"
    assert util.format_size(1536) == "1.5K"
    assert util.format_size(3 * 1024 * 1024) == "3.0M"


def test_from_nanos():
    dt = util.from_nanos(1_700_000_000_123_456_789)
    assert dt.tzinfo is not None
    assert dt.microsecond == 123456
    assert util.to_millis(dt) == 1_700_000_000_123
