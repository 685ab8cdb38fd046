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
Contains tests for the matcher module.
"""

import os

import pytest

from jobcache import matcher
from jobcache.matcher import PathMatcher


def test_split_patterns():
    assert matcher.split_patterns(None) == []
    assert matcher.split_patterns("") == []
    assert matcher.split_patterns("**/*.jar, lib/*.so  build/") == [
        "**/*.jar",
        "lib/*.so",
        "build/",
    ]


@pytest.mark.parametrize(
    "pattern,path,expected",
    [
        ("**/*", "a.txt", True),
        ("**/*", "a/b/c.txt", True),
        ("**/*.jar", "x.jar", True),
        ("**/*.jar", "a/b/x.jar", True),
        ("**/*.jar", "a/b/x.jar.bak", False),
        ("*.txt", "a.txt", True),
        ("*.txt", "sub/a.txt", False),
        ("lib/*.so", "lib/libz.so", True),
        ("lib/*.so", "lib/sub/libz.so", False),
        ("build/", "build/out/a.o", True),
        ("build/", "builds/a.o", False),
        ("?.txt", "a.txt", True),
        ("?.txt", "ab.txt", False),
        ("a/**/z", "a/z", True),
        ("a/**/z", "a/b/c/z", True),
        ("./src/*.c", "src/main.c", True),
    ],
)
def test_translate(pattern, path, expected):
    """Test that Ant style globs select the expected paths."""
    regex = matcher.compile_patterns(pattern)
    assert bool(regex.match(path)) is expected


def test_compile_patterns_empty():
    assert matcher.compile_patterns("") is None
    assert matcher.compile_patterns(" , ") is None


def test_matches_include_exclude():
    m = PathMatcher("**/*", "**/*.tmp, cache/")
    assert m.matches("a/b.txt")
    assert m.matches("./a/b.txt")
    assert not m.matches("a/b.tmp")
    assert not m.matches("cache/x/y")


def test_default_includes_everything():
    m = PathMatcher()
    assert m.includes == "**/*"
    assert m.matches("deep/ly/nested/file")


def test_scan(tmp_path):
    """Test that scan walks in sorted order and applies the patterns."""
    (tmp_path / "b").mkdir()
    (tmp_path / "b" / "two.txt").write_text("2")
    (tmp_path / "b" / "skip.tmp").write_text("x")
    (tmp_path / "a.txt").write_text("1")

    m = PathMatcher("**/*", "**/*.tmp")
    relpaths = [rel for _, rel in m.scan(tmp_path)]

    assert relpaths == ["a.txt", "b/two.txt"]


def test_scan_symlinked_dir_not_followed(tmp_path):
    """Test that a symlinked directory is yielded but not descended into."""
    target = tmp_path / "target"
    target.mkdir()
    (target / "inner.txt").write_text("x")
    base = tmp_path / "base"
    base.mkdir()
    os.symlink(target, base / "link")
    (base / "file.txt").write_text("y")

    found = {rel: p for p, rel in PathMatcher().scan(base)}

    assert set(found) == {"file.txt", "link"}
    assert found["link"].is_symlink()
