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
Contains the jobcache logger and its handlers.

Status lines (restore and save progress, eviction decisions) go to the
console as bare messages. The rotating file log under LOG_DIR records every
message with the user and job that produced it.
"""

import getpass
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Union

from jobcache import config

log = logging.Logger(config.LOG_NAME)

# numeric levels accepted from the environment
LEVEL_NAMES = {
    0: "NOTSET",
    10: "DEBUG",
    20: "INFO",
    30: "WARNING",
    40: "ERROR",
    50: "CRITICAL",
}

FILE_FORMAT = "%(asctime)s - %(username)s - %(job)s - %(levelname)s - %(message)s"


def resolve_level(level: Union[int, str, None]) -> str:
    """Level name for a numeric or named level, falling back to the default
    for anything logging would reject.

    :param level: e.g. 10, "10" or "DEBUG".
    :return: level name.
    """
    if isinstance(level, str) and level.isdigit():
        level = int(level)
    if isinstance(level, int):
        return LEVEL_NAMES.get(level, config.LOG_LEVEL_DEFAULT)
    if isinstance(level, str) and level.upper() in LEVEL_NAMES.values():
        return level.upper()
    return config.LOG_LEVEL_DEFAULT


LOG_LEVEL = resolve_level(config.LOG_LEVEL)

log.setLevel(LOG_LEVEL)
log.addHandler(logging.NullHandler())


def current_user() -> str:
    try:
        return os.getlogin()
    except OSError:
        return getpass.getuser()


class RecordFilter(logging.Filter):
    """Tags each record with the user name and the job being cached."""

    def __init__(self, job: str = ""):
        super().__init__()
        self.job = job or "-"
        self.username = current_user()

    def filter(self, record: logging.LogRecord):
        record.username = self.username
        record.job = self.job
        return True


def _replace_handler(handler: logging.Handler) -> logging.Handler:
    """Swap in handler for any earlier handler of the same type."""
    handler.set_name(log.name)
    for h in list(log.handlers):
        if h.name == log.name and type(h) is type(handler):
            log.removeHandler(h)
            h.close()
    log.addHandler(handler)
    return handler


def setup_stream_handler(level: str = LOG_LEVEL) -> logging.Handler:
    """Adds the console handler printing bare messages.

    :param level: log level.
    :return: handler.
    """
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return _replace_handler(handler)


def setup_file_handler(
    job: str = "",
    logdir: str = config.LOG_DIR,
    level: str = LOG_LEVEL,
    max_bytes: int = config.LOG_MAX_BYTES,
    backup_count: int = config.LOG_BACKUP_COUNT,
) -> logging.Handler:
    """Adds the rotating file handler writing jobcache.log in logdir.

    :param job: job name added to each record.
    :param logdir: directory of the log files.
    :param level: log level.
    :param max_bytes: max bytes per file.
    :param backup_count: number of rotated files kept.
    :return: handler.
    """
    os.makedirs(logdir, exist_ok=True)
    handler = RotatingFileHandler(
        os.path.join(logdir, "jobcache.log"),
        maxBytes=max_bytes,
        backupCount=backup_count,
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT))
    handler.addFilter(RecordFilter(job))
    return _replace_handler(handler)


def setup_logging(job: str = "", verbose: bool = False):
    """Setup log handlers. A log directory that cannot be written only
    disables the file log.

    :param job: job name for the file log.
    :param verbose: show debug messages on the console.
    """
    if verbose:
        log.setLevel("DEBUG")
    setup_stream_handler(level="DEBUG" if verbose else LOG_LEVEL)

    try:
        setup_file_handler(job=job, level="DEBUG" if verbose else LOG_LEVEL)
    except OSError as err:
        print("Error: %s" % str(err))
