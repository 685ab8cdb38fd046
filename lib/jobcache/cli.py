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
Command line interface for jobcache: persist build caches in an object store.

Usage:

    $ jobcache restore [OPTIONS]
    $ jobcache save [OPTIONS]
    $ jobcache run [OPTIONS] -- COMMAND [ARGS...]
"""

import argparse
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from jobcache import config
from jobcache.definition import UploadOptions, read_cache_file
from jobcache.digest import DIGEST_POLICIES, get_digest_policy
from jobcache.errors import ConfigurationError, TransferError, TransferInterrupted
from jobcache.logger import log, setup_logging
from jobcache.manager import CacheManager
from jobcache.source import get_job_name
from jobcache.store import LocalStore, S3Store, make_s3_client
from jobcache.transfer import TransferPool

# exit code when interrupted
INTERRUPTED_EXIT = 130


def build_parser(prog: str = "jobcache") -> argparse.ArgumentParser:
    """Build the argument parser."""
    from jobcache import __version__

    parser = argparse.ArgumentParser(
        prog=prog, description=__doc__, formatter_class=argparse.RawTextHelpFormatter
    )
    parser.add_argument(
        "command",
        choices=["restore", "save", "run"],
        help="restore caches, save caches, or run COMMAND between the two",
    )
    parser.add_argument(
        "-f",
        "--file",
        metavar="PATH",
        default=".",
        help=f"cache file or directory containing {config.CACHE_FILE} (default is cwd)",
    )
    parser.add_argument(
        "-w",
        "--workspace",
        metavar="DIR",
        type=Path,
        default=Path("."),
        help="workspace directory cache paths are relative to (default is cwd)",
    )
    parser.add_argument(
        "-j",
        "--job",
        metavar="NAME",
        help="job name (default is <repo>/<branch> of the workspace checkout)",
    )
    parser.add_argument(
        "--bucket", default=config.BUCKET, help="bucket holding the caches"
    )
    parser.add_argument(
        "--prefix", default=config.PREFIX, help="key prefix inside the bucket"
    )
    parser.add_argument(
        "--endpoint-url", default=config.ENDPOINT_URL, help="S3 compatible endpoint"
    )
    parser.add_argument("--region", default=config.REGION, help="S3 region")
    parser.add_argument("--profile", default=config.PROFILE, help="credentials profile")
    parser.add_argument(
        "--local",
        metavar="DIR",
        type=Path,
        help="store caches in a local or mounted directory instead of S3",
    )
    parser.add_argument(
        "--max-size",
        metavar="MB",
        type=int,
        help="maximum cache size in megabytes (overrides the cache file)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=config.WORKERS,
        help="transfer threads (default: 4x CPU, capped at 32)",
    )
    parser.add_argument(
        "--inflight",
        type=int,
        default=config.INFLIGHT_THRESHOLD,
        help="max in-flight transfers before waiting (default: %(default)s)",
    )
    parser.add_argument(
        "--digest-policy",
        choices=sorted(DIGEST_POLICIES),
        default=config.DIGEST_POLICY,
        help="dependency descriptor digest (default: %(default)s)",
    )
    parser.add_argument(
        "--allow-missing-descriptor",
        action="store_true",
        help="cache without a digest when a dependency descriptor is missing",
    )
    parser.add_argument(
        "--storage-class", default=config.STORAGE_CLASS, help="storage class of uploads"
    )
    parser.add_argument(
        "--sse",
        action="store_true",
        default=config.SERVER_SIDE_ENCRYPTION,
        help="request server side encryption of uploads",
    )
    parser.add_argument(
        "-p", "--progress", action="store_true", help="show transfer progress"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="show verbose information"
    )
    parser.add_argument(
        "--version", action="version", version=f"jobcache {__version__}"
    )
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    argv = list(argv) if argv is not None else sys.argv[1:]
    build_command: List[str] = []
    if "--" in argv:
        i = argv.index("--")
        argv, build_command = argv[:i], argv[i + 1 :]

    args = build_parser().parse_args(argv)
    args.build_command = build_command
    return args


def create_store(args: argparse.Namespace):
    """Create the object store and bucket name selected by args."""
    if args.local:
        return LocalStore(args.local), args.bucket or config.LOCAL_BUCKET
    if not args.bucket:
        raise ConfigurationError("No bucket given (use --bucket or JOBCACHE_BUCKET)")
    client = make_s3_client(args.endpoint_url, args.region, args.profile)
    return S3Store(client), args.bucket


def run_command(command: List[str], cwd: Path) -> int:
    """Run the build command and return its exit code."""
    log.info("Running: '%s'", subprocess.list2cmdline(command))
    return subprocess.run(command, cwd=str(cwd)).returncode


def run(args: argparse.Namespace) -> int:
    """Run a restore, save or run command."""
    if args.command == "run" and not args.build_command:
        log.error("run requires a COMMAND after --")
        return 2

    workspace = args.workspace.resolve()
    cache_file = read_cache_file(args.file)
    max_size = args.max_size if args.max_size is not None else cache_file.max_cache_size
    job = get_job_name(args.job, str(workspace))
    store, bucket = create_store(args)

    log.debug("job %s, bucket %s, store %r", job, bucket, store)

    with TransferPool(args.workers) as pool, CacheManager(
        store,
        bucket,
        prefix=args.prefix,
        pool=pool,
        options=UploadOptions(storage_class=args.storage_class, server_side_encryption=args.sse),
        threshold=args.inflight,
        digest_policy=get_digest_policy(args.digest_policy),
        strict_descriptors=not args.allow_missing_descriptor,
        progress=args.progress,
    ) as manager:
        try:
            if args.command == "restore":
                manager.restore(job, workspace, cache_file.caches)
                return 0

            if args.command == "save":
                savers = manager.resolve(job, workspace, cache_file.caches)
                manager.save(job, workspace, savers, max_size)
                return 0

            return manager.run(
                job,
                workspace,
                cache_file.caches,
                lambda: run_command(args.build_command, workspace),
                max_size,
            )

        except KeyboardInterrupt:
            manager.cancel()
            raise


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for jobcache."""
    args = parse_args(argv)
    setup_logging(job=args.job or "", verbose=args.verbose)

    try:
        return run(args)

    except ConfigurationError as e:
        log.error(f"configuration error: {e}")
        return 2

    except (KeyboardInterrupt, TransferInterrupted):
        log.error("canceled")
        return INTERRUPTED_EXIT

    except (TransferError, OSError) as e:
        log.error(f"cache failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
