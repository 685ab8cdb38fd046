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
Contains object store implementations: S3 (or any S3 compatible endpoint)
through boto3, and a local directory store for shared filesystems.
"""

import contextlib
import os
from pathlib import Path
from typing import List, Optional, Tuple

import boto3
from boto3.exceptions import S3UploadFailedError
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from filelock import FileLock

from jobcache import config, util
from jobcache.errors import TransferError
from jobcache.logger import log
from jobcache.remote import ObjectMetadata, ObjectSummary, ProgressCallback, list_prefix

# max keys per list and delete request
PAGE_SIZE = 1000


def make_s3_client(
    endpoint_url: Optional[str] = config.ENDPOINT_URL,
    region: Optional[str] = config.REGION,
    profile: Optional[str] = config.PROFILE,
):
    """Create an S3 client with bounded timeouts and retries.

    :param endpoint_url: custom endpoint, e.g. a MinIO server.
    :param region: region name.
    :param profile: named credentials profile.
    :return: boto3 S3 client.
    """
    boto_config = BotoConfig(
        connect_timeout=config.CONNECT_TIMEOUT,
        read_timeout=config.READ_TIMEOUT,
        retries={"max_attempts": config.MAX_ATTEMPTS, "mode": "standard"},
    )
    kwargs = {"config": boto_config}
    if endpoint_url:
        kwargs["endpoint_url"] = endpoint_url
    if region:
        kwargs["region_name"] = region

    session = boto3.Session(profile_name=profile) if profile else boto3.Session()
    return session.client("s3", **kwargs)


class S3Store(object):
    """Object store backed by an S3 client."""

    def __init__(self, client=None, page_size: int = PAGE_SIZE):
        """Initializes the store.

        :param client: boto3 S3 client, created from config when None.
        :param page_size: max keys per listing page.
        """
        self.client = client or make_s3_client()
        self.page_size = page_size
        # transfers are already spread over the tracker pool
        self.transfer_config = TransferConfig(use_threads=False)

    def list_objects(
        self, bucket: str, prefix: str, marker: Optional[str] = None
    ) -> Tuple[List[ObjectSummary], Optional[str]]:
        kwargs = {"Bucket": bucket, "Prefix": prefix, "MaxKeys": self.page_size}
        if marker:
            kwargs["ContinuationToken"] = marker
        try:
            response = self.client.list_objects_v2(**kwargs)
        except (BotoCoreError, ClientError) as e:
            raise TransferError(f"Failed to list s3://{bucket}/{prefix}: {e}") from e

        summaries = [
            ObjectSummary(
                key=obj["Key"],
                last_modified=obj["LastModified"],
                size=int(obj.get("Size", 0)),
            )
            for obj in response.get("Contents", [])
        ]
        next_marker = None
        if response.get("IsTruncated"):
            next_marker = response.get("NextContinuationToken")
        return summaries, next_marker

    def put(
        self,
        bucket: str,
        key: str,
        local_file: Path,
        metadata: ObjectMetadata,
        callback: Optional[ProgressCallback] = None,
    ) -> None:
        extra_args = {}
        if metadata.server_side_encryption:
            extra_args["ServerSideEncryption"] = "AES256"
        if metadata.storage_class:
            extra_args["StorageClass"] = metadata.storage_class
        if metadata.user_metadata:
            extra_args["Metadata"] = dict(metadata.user_metadata)

        try:
            self.client.upload_file(
                str(local_file),
                bucket,
                key,
                ExtraArgs=extra_args or None,
                Callback=callback,
                Config=self.transfer_config,
            )
        except (BotoCoreError, ClientError, S3UploadFailedError) as e:
            raise TransferError(f"Failed to upload s3://{bucket}/{key}: {e}") from e

    def get(
        self,
        bucket: str,
        key: str,
        local_file: Path,
        callback: Optional[ProgressCallback] = None,
    ) -> None:
        util.ensure_dir(Path(local_file).parent)
        try:
            self.client.download_file(
                bucket,
                key,
                str(local_file),
                Callback=callback,
                Config=self.transfer_config,
            )
        except (BotoCoreError, ClientError) as e:
            raise TransferError(f"Failed to download s3://{bucket}/{key}: {e}") from e

    def delete(self, bucket: str, prefix: str, recursive: bool = False) -> int:
        try:
            if not recursive:
                self.client.delete_object(Bucket=bucket, Key=prefix)
                return 1

            deleted = 0
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=bucket, Prefix=list_prefix(prefix)):
                keys = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
                if not keys:
                    continue
                response = self.client.delete_objects(
                    Bucket=bucket, Delete={"Objects": keys, "Quiet": True}
                )
                errors = response.get("Errors") or []
                if errors:
                    raise TransferError(
                        "Failed to delete %d object(s) under s3://%s/%s: %s"
                        % (len(errors), bucket, prefix, errors[0].get("Message", ""))
                    )
                deleted += len(keys)
            return deleted

        except (BotoCoreError, ClientError) as e:
            raise TransferError(f"Failed to delete s3://{bucket}/{prefix}: {e}") from e

    def lock(self, bucket: str, key: str):
        """S3 has no locking primitive, so concurrent runs of one job on
        different hosts are not serialized."""
        return contextlib.nullcontext()


class LocalStore(object):
    """Object store kept in a local (or mounted) directory. Each bucket is a
    subdirectory of root and each key a file path below it. Object
    last-modified times are the file modification times."""

    # in-progress copies, never listed
    TEMP_PREFIX = ".jobcache."

    def __init__(self, root: Path, page_size: int = PAGE_SIZE):
        """Initializes the store.

        :param root: directory holding the buckets.
        :param page_size: max keys per listing page.
        """
        self.root = Path(root)
        self.page_size = page_size

    def __repr__(self):
        return f"LocalStore({str(self.root)!r})"

    def _path(self, bucket: str, key: str) -> Path:
        """File path of an object, refusing keys that leave the bucket."""
        parts = [p for p in util.sanitize_path(key).split("/") if p]
        if not bucket or not parts or any(p in (".", "..") for p in parts):
            raise TransferError(f"Invalid object key: {bucket}/{key}")
        return self.root.joinpath(bucket, *parts)

    def _keys(self, bucket: str, prefix: str) -> List[str]:
        """Sorted keys under prefix."""
        bucket_dir = self.root / bucket
        start = bucket_dir
        if "/" in prefix:
            start = bucket_dir.joinpath(*[p for p in prefix.rsplit("/", 1)[0].split("/") if p])
        if not start.is_dir():
            return []

        keys = []
        for root, dirs, files in os.walk(start):
            for name in files:
                if name.startswith(self.TEMP_PREFIX):
                    continue
                key = (Path(root) / name).relative_to(bucket_dir).as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        return sorted(keys)

    def list_objects(
        self, bucket: str, prefix: str, marker: Optional[str] = None
    ) -> Tuple[List[ObjectSummary], Optional[str]]:
        keys = self._keys(bucket, prefix)
        if marker:
            keys = [k for k in keys if k > marker]
        page = keys[: self.page_size]

        summaries = []
        for key in page:
            st = self._path(bucket, key).stat()
            summaries.append(
                ObjectSummary(
                    key=key,
                    last_modified=util.from_nanos(st.st_mtime_ns),
                    size=st.st_size,
                )
            )
        next_marker = page[-1] if len(keys) > len(page) else None
        return summaries, next_marker

    def put(
        self,
        bucket: str,
        key: str,
        local_file: Path,
        metadata: ObjectMetadata,
        callback: Optional[ProgressCallback] = None,
    ) -> None:
        dest = self._path(bucket, key)
        try:
            util.copy_file_chunked(Path(local_file), dest, callback)
        except OSError as e:
            raise TransferError(f"Failed to store {bucket}/{key}: {e}") from e
        log.debug("stored %s (%d bytes)", dest, metadata.size)

    def get(
        self,
        bucket: str,
        key: str,
        local_file: Path,
        callback: Optional[ProgressCallback] = None,
    ) -> None:
        src = self._path(bucket, key)
        if not src.is_file():
            raise TransferError(f"No such object: {bucket}/{key}")
        try:
            util.copy_file_chunked(src, Path(local_file), callback)
        except OSError as e:
            raise TransferError(f"Failed to fetch {bucket}/{key}: {e}") from e

    def delete(self, bucket: str, prefix: str, recursive: bool = False) -> int:
        if not recursive:
            path = self._path(bucket, prefix)
            try:
                path.unlink()
            except FileNotFoundError:
                return 0
            except OSError as e:
                raise TransferError(f"Failed to delete {bucket}/{prefix}: {e}") from e
            return 1

        deleted = 0
        for key in self._keys(bucket, list_prefix(prefix)):
            try:
                self._path(bucket, key).unlink()
            except OSError as e:
                raise TransferError(f"Failed to delete {bucket}/{key}: {e}") from e
            deleted += 1

        # remove the now empty directories below the prefix
        top = self._path(bucket, prefix)
        if top.is_dir():
            for root, dirs, files in os.walk(top, topdown=False):
                if not os.listdir(root):
                    os.rmdir(root)
        return deleted

    def lock_path(self, bucket: str, key: str) -> Path:
        """Lock file guarding key, kept outside the bucket so it is never
        listed or deleted with the objects."""
        path = self._path(bucket, key)
        rel = path.relative_to(self.root)
        return self.root.joinpath(config.LOCK_DIR, *rel.parts[:-1], rel.name + ".lock")

    def lock(self, bucket: str, key: str, timeout: float = config.LOCK_TIMEOUT):
        """Inter-process lock on key, shared by every process using this root.

        :param bucket: bucket name.
        :param key: key to lock, e.g. a job cache root.
        :param timeout: seconds to wait, -1 waits forever.
        :return: context manager holding the lock.
        """
        path = self.lock_path(bucket, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        return FileLock(path, timeout=timeout)
