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
Contains tests for the source module.
"""

import git
import pytest

from jobcache import source


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("myrepo/main", "myrepo/main"),
        ("myrepo/feature/x", "myrepo/feature/x"),
        ("my repo/feat#1", "my_repo/feat_1"),
        ("../up/./and//down/", "up/and/down"),
        ("win\\path", "win/path"),
    ],
)
def test_sanitize_job(raw, expected):
    assert source.sanitize_job(raw) == expected


def test_get_job_name_explicit():
    assert source.get_job_name("repo/branch name") == "repo/branch_name"


@pytest.fixture
def mock_repo(mocker):
    """Fixture to mock a git checkout of myrepo on branch feature/x."""
    origin = mocker.MagicMock()
    origin.name = "origin"
    origin.url = "git@github.com:org/myrepo.git"

    repo = mocker.MagicMock()
    repo.remotes.__iter__.return_value = [origin]
    repo.remotes.origin = origin
    repo.head.commit.hexsha = "abc123"
    repo.active_branch.name = "feature/x"
    mocker.patch("jobcache.source.git.Repo", return_value=repo)
    return repo


def test_read_job_info(mock_repo):
    info = source.read_job_info("/work/checkout")
    assert info.name == "myrepo"
    assert info.branch == "feature/x"
    assert info.head == "abc123"
    assert info.job == "myrepo/feature/x"
    assert source.get_job_name(None, "/work/checkout") == "myrepo/feature/x"


def test_read_job_info_detached_head(mock_repo, mocker):
    type(mock_repo).active_branch = mocker.PropertyMock(side_effect=TypeError("detached"))
    info = source.read_job_info("/work/checkout")
    assert info.branch == ""
    assert info.job == "myrepo"


def test_read_job_info_not_a_repo(tmp_path, mocker):
    mocker.patch(
        "jobcache.source.git.Repo", side_effect=git.InvalidGitRepositoryError(str(tmp_path))
    )
    workspace = tmp_path / "project"
    workspace.mkdir()
    assert source.read_job_info(str(workspace)).job == "project"


@pytest.mark.parametrize(
    "url",
    [
        "git@github.com:org/myrepo.git",
        "https://github.com/org/myrepo.git",
        "https://user@example.com/org/myrepo",
    ],
)
def test_repo_name(mocker, url):
    remote = mocker.MagicMock()
    remote.name = "origin"
    remote.url = url
    repo = mocker.MagicMock()
    repo.remotes.__iter__.return_value = [remote]
    repo.remotes.origin = remote
    assert source.repo_name(repo, "/work") == "myrepo"
