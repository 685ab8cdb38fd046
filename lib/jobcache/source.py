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
Contains functions deriving the job name from a workspace git checkout.

Caches are kept per job, and a job is a repository branch:

    <repo name>/<branch>
"""

import os
import re
from dataclasses import dataclass
from typing import Optional

import git

from jobcache.logger import log

UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._/-]+")


@dataclass
class JobInfo:
    """Identity of a build job."""

    name: str
    branch: str = ""
    head: str = ""

    @property
    def job(self) -> str:
        """Job name used as the cache namespace."""
        return sanitize_job(f"{self.name}/{self.branch}" if self.branch else self.name)


def sanitize_job(job: str) -> str:
    """Make a job name safe to use as key segments.

    :param job: raw job name, e.g. 'org/repo/feature/x'.
    :return: sanitized name without empty or dot segments.
    """
    job = UNSAFE_CHARS.sub("_", job.replace("\\", "/"))
    parts = [p for p in job.split("/") if p and p not in (".", "..")]
    return "/".join(parts)


def repo_name(repo: git.Repo, directory: str) -> str:
    """Name of the repository from its origin url, or the directory name."""
    path = ""
    if repo.remotes:
        remote = repo.remotes.origin if "origin" in [r.name for r in repo.remotes] else repo.remotes[0]
        path = remote.url
    if not path:
        path = repo.working_tree_dir or directory
    if "@" in path:
        path = path.split("@", 1)[-1]
    path = path.replace(":", "/").rstrip("/")
    name = os.path.basename(path)
    return name[:-4] if name.endswith(".git") else name


def read_job_info(directory: str = ".") -> JobInfo:
    """Read the job identity from the git checkout containing directory.
    Outside a git repository the directory name is used.

    :param directory: workspace directory.
    :return: JobInfo.
    """
    fallback = JobInfo(name=os.path.basename(os.path.abspath(directory)))

    try:
        repo = git.Repo(directory, search_parent_directories=True)
    except (git.InvalidGitRepositoryError, git.NoSuchPathError):
        log.warning("Warning: Not in a git repository")
        return fallback

    info = JobInfo(name=repo_name(repo, directory))
    try:
        info.head = repo.head.commit.hexsha
    except ValueError:
        log.debug("repository has no commits yet")

    try:
        info.branch = repo.active_branch.name
    except (TypeError, AttributeError):
        log.warning("Warning: Detached HEAD or no active branch")

    return info


def get_job_name(job: Optional[str] = None, directory: str = ".") -> str:
    """Explicit job name, or one derived from the workspace checkout.

    :param job: explicit job name, used as is when given.
    :param directory: workspace directory.
    :return: sanitized job name.
    """
    if job:
        return sanitize_job(job)
    return read_job_info(directory).job
