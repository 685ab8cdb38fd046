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
Contains digest policies for dependency descriptor files.

A policy is a callable taking a file path and returning a hex digest. The
digest becomes a cache key segment, so a policy must give the same result
for the same content every time, and the run that saves a cache and the run
that restores it must use the same policy.

    raw     MD5 of the file bytes (default)
    text    MD5 of the lines joined with LF, ignoring line ending style
    sniff   text for known text files, raw otherwise
"""

import hashlib
import mimetypes
import re
from pathlib import Path
from typing import Callable, Dict

from jobcache import config
from jobcache.errors import ConfigurationError

DigestPolicy = Callable[[Path], str]

LINE_BREAKS = re.compile(r"\r\n|\r|\n")

# descriptor extensions treated as text by the sniffing policy
TEXT_EXTENSIONS = {
    ".cfg",
    ".gradle",
    ".json",
    ".lock",
    ".properties",
    ".sum",
    ".toml",
    ".txt",
    ".xml",
    ".yaml",
    ".yml",
}


def raw_digest(path: Path) -> str:
    """MD5 of the raw file bytes.

    :param path: file to digest.
    :return: hex digest.
    """
    md5 = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(config.CHUNK_SIZE), b""):
            md5.update(chunk)
    return md5.hexdigest()


def text_lines(content: str) -> str:
    """Render text as its lines joined by LF, without a trailing line break.

    :param content: decoded file content.
    :return: normalized text.
    """
    lines = LINE_BREAKS.split(content)
    if lines and lines[-1] == "":
        lines.pop()
    return "\n".join(lines)


def text_digest(path: Path) -> str:
    """MD5 of the UTF-8 encoded line-joined rendering of a text file, so CRLF
    and LF checkouts of the same descriptor give the same digest.

    :param path: file to digest.
    :raises UnicodeDecodeError: if the file is not UTF-8 text.
    :return: hex digest.
    """
    content = Path(path).read_bytes().decode("utf-8")
    return hashlib.md5(text_lines(content).encode("utf-8")).hexdigest()


def is_text_file(path: Path) -> bool:
    """Guess from the file name whether a descriptor is text."""
    path = Path(path)
    if path.suffix.lower() in TEXT_EXTENSIONS:
        return True
    mime, _ = mimetypes.guess_type(path.name)
    return bool(mime) and mime.startswith("text/")


def sniff_digest(path: Path) -> str:
    """Text digest for files that look like text, raw digest for the rest or
    when the content does not decode.

    :param path: file to digest.
    :return: hex digest.
    """
    if is_text_file(path):
        try:
            return text_digest(path)
        except UnicodeDecodeError:
            pass
    return raw_digest(path)


DIGEST_POLICIES: Dict[str, DigestPolicy] = {
    "raw": raw_digest,
    "text": text_digest,
    "sniff": sniff_digest,
}


def get_digest_policy(name: str = config.DIGEST_POLICY) -> DigestPolicy:
    """Look up a digest policy by name.

    :param name: policy name.
    :raises ConfigurationError: for unknown names.
    :return: digest policy callable.
    """
    try:
        return DIGEST_POLICIES[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown digest policy '{name}' (choose from {', '.join(DIGEST_POLICIES)})"
        )
