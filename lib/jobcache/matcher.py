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
Contains the glob based include/exclude matcher used to select cached files.

Patterns follow Ant conventions and are given as comma (or whitespace)
separated lists:

    **/*.jar            any .jar file at any depth
    lib/*.so            .so files directly under lib/
    build/              everything under build/ (same as build/**)
    ?.txt               one character names
"""

import os
import re
from pathlib import Path
from typing import Generator, List, Optional, Pattern, Tuple

from jobcache import config, util

SPLIT_PATTERNS = re.compile(r"[,\s]+")


def split_patterns(patterns: Optional[str]) -> List[str]:
    """Split a comma or whitespace separated pattern string.

    :param patterns: pattern string, may be None or empty.
    :return: list of individual patterns.
    """
    if not patterns:
        return []
    return [p for p in SPLIT_PATTERNS.split(patterns.strip()) if p]


def _translate_segment(segment: str) -> str:
    """Translate a single path segment glob into a regex."""
    out = []
    for ch in segment:
        if ch == "*":
            out.append("[^/]*")
        elif ch == "?":
            out.append("[^/]")
        else:
            out.append(re.escape(ch))
    return "".join(out)


def translate(pattern: str) -> str:
    """Translate an Ant style glob into a regex string anchored at both ends.

    :param pattern: glob pattern.
    :return: regex source.
    """
    pattern = util.sanitize_path(pattern.strip()) + ("/" if pattern.endswith("/") else "")
    while pattern.startswith("./"):
        pattern = pattern[2:]
    pattern = pattern.lstrip("/")
    if pattern.endswith("/"):
        pattern += "**"

    tokens = pattern.split("/")
    parts = []
    for i, token in enumerate(tokens):
        last = i == len(tokens) - 1
        if token == "**":
            # zero or more whole directories, or anything when trailing
            parts.append(".*" if last else "(?:[^/]+/)*")
        else:
            parts.append(_translate_segment(token) + ("" if last else "/"))
    return "^" + "".join(parts) + "$"


def compile_patterns(patterns: Optional[str]) -> Optional[Pattern]:
    """Compile a pattern string into a single regex, or None when empty.

    :param patterns: comma separated glob patterns.
    :return: compiled regex or None.
    """
    items = split_patterns(patterns)
    if not items:
        return None
    return re.compile("|".join("(?:%s)" % translate(p) for p in items))


class PathMatcher(object):
    """Selects files below a base directory by include and exclude globs."""

    def __init__(self, includes: Optional[str] = None, excludes: Optional[str] = None):
        """Initializes the matcher.

        :param includes: include patterns, defaults to everything.
        :param excludes: exclude patterns, defaults to nothing.
        """
        self.includes = includes or config.DEFAULT_INCLUDES
        self.excludes = excludes or ""
        self._include = compile_patterns(self.includes)
        self._exclude = compile_patterns(self.excludes)

    def __repr__(self):
        return f"PathMatcher(includes={self.includes!r}, excludes={self.excludes!r})"

    def matches(self, relpath: str) -> bool:
        """Check a relative path against the include and exclude patterns.

        :param relpath: path relative to the scanned base, forward slashes.
        :return: True if the path is selected.
        """
        relpath = util.normalize_path(relpath)
        if self._include is None or not self._include.match(relpath):
            return False
        return not (self._exclude and self._exclude.match(relpath))

    def scan(self, base: Path) -> Generator[Tuple[Path, str], None, None]:
        """Walk base and yield (path, relpath) for every selected file and
        symlink. Symlinked directories are yielded as entries but never
        descended into.

        :param base: directory to walk.
        :return: generator of (absolute path, relative path) tuples.
        """
        base = Path(base)
        for root, dirs, files in os.walk(base, followlinks=False):
            dirs.sort()
            root_p = Path(root)
            rel_root = root_p.relative_to(base).as_posix()
            prefix = "" if rel_root == "." else rel_root + "/"

            names = sorted(files) + [d for d in dirs if (root_p / d).is_symlink()]
            for name in names:
                relpath = prefix + name
                if self.matches(relpath):
                    yield root_p / name, relpath
