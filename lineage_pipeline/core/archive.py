"""Write-once cold storage for reconstructed lineage trees.

Trees are stored as JSON under ``{prefix}/root_id={root_id}/{request_id}.json``.
An object is written exactly once; a second write of the same key raises
``ArchiveExistsError``, which the reconstructor treats as a redelivery of a
retrace that already completed.
"""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from lineage_pipeline.config import ArchiveSettings
from lineage_pipeline.core.errors import ArchiveError, ArchiveExistsError
from lineage_pipeline.lineage.models import LineageTree
from lineage_pipeline.observability.logging import get_logger

logger = get_logger(__name__)


def tree_key(root_id: str, request_id: str, prefix: str = "lineage-trees") -> str:
    """Build the archive key of a tree."""
    prefix = prefix.strip("/")
    key = f"root_id={root_id}/{request_id}.json"
    return f"{prefix}/{key}" if prefix else key


class Archive(ABC):
    """Write-once archive of lineage trees."""

    def __init__(self, prefix: str = "lineage-trees") -> None:
        self.prefix = prefix

    def key_for(self, tree: LineageTree) -> str:
        return tree_key(tree.root_id, tree.request_id, self.prefix)

    @abstractmethod
    async def write_tree(self, tree: LineageTree) -> str:
        """Write a tree and return its key.

        Raises:
            ArchiveExistsError: The key was written before
            ArchiveError: The backend failed
        """

    @abstractmethod
    async def read_tree(self, key: str) -> LineageTree:
        """Read a tree back.

        Raises:
            ArchiveError: The key does not exist or the backend failed
        """

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check whether a key was written."""

    @abstractmethod
    async def find_request(self, request_id: str) -> str | None:
        """Find the key of the tree archived for a request, under any root."""


class LocalArchive(Archive):
    """Archive on the local filesystem.

    Exclusive file creation makes concurrent writers of the same key race
    safely: exactly one succeeds.
    """

    def __init__(self, base_path: Path | str, prefix: str = "lineage-trees") -> None:
        super().__init__(prefix)
        self.base_path = Path(base_path)

    def _path(self, key: str) -> Path:
        return self.base_path / key

    def _write(self, key: str, data: str) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(path, "x", encoding="utf-8") as f:
                f.write(data)
        except FileExistsError as e:
            raise ArchiveExistsError(key) from e
        except OSError as e:
            raise ArchiveError(f"Failed to write {key}: {e}") from e

    async def write_tree(self, tree: LineageTree) -> str:
        key = self.key_for(tree)
        await asyncio.to_thread(self._write, key, tree.model_dump_json())
        logger.info("tree_archived", key=key, root_id=tree.root_id, node_count=tree.node_count)
        return key

    async def read_tree(self, key: str) -> LineageTree:
        path = self._path(key)
        try:
            data = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except OSError as e:
            raise ArchiveError(f"Failed to read {key}: {e}") from e
        return LineageTree.model_validate_json(data)

    async def exists(self, key: str) -> bool:
        return self._path(key).exists()

    async def find_request(self, request_id: str) -> str | None:
        matches = sorted(self.base_path.glob(tree_key("*", request_id, self.prefix)))
        return matches[0].relative_to(self.base_path).as_posix() if matches else None


class S3Archive(Archive):
    """Archive in an S3 bucket.

    Writes use a conditional ``PutObject`` (``If-None-Match: *``) so the
    bucket rejects a second write of the same key. boto3 is blocking and
    runs in a worker thread.
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "lineage-trees",
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        client: Any = None,
    ) -> None:
        super().__init__(prefix)
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            client_kwargs: dict[str, Any] = {
                "region_name": self.region,
                "config": Config(retries={"max_attempts": 3, "mode": "adaptive"}),
            }
            if self.endpoint_url:
                client_kwargs["endpoint_url"] = self.endpoint_url
            self._client = boto3.client("s3", **client_kwargs)
        return self._client

    def _put(self, key: str, data: bytes) -> None:
        try:
            self._get_client().put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType="application/json",
                IfNoneMatch="*",
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("PreconditionFailed", "ConditionalRequestConflict"):
                raise ArchiveExistsError(key) from e
            raise ArchiveError(f"Failed to write s3://{self.bucket}/{key}: {e}") from e
        except BotoCoreError as e:
            raise ArchiveError(f"Failed to write s3://{self.bucket}/{key}: {e}") from e

    def _get(self, key: str) -> bytes:
        try:
            response = self._get_client().get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (ClientError, BotoCoreError) as e:
            raise ArchiveError(f"Failed to read s3://{self.bucket}/{key}: {e}") from e

    def _head(self, key: str) -> bool:
        try:
            self._get_client().head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise ArchiveError(f"Failed to check s3://{self.bucket}/{key}: {e}") from e

    def _find(self, request_id: str) -> str | None:
        # Keys lead with the root, so this lists every tree under the prefix
        suffix = f"/{request_id}.json"
        prefix = self.prefix.strip("/")
        try:
            paginator = self._get_client().get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=f"{prefix}/" if prefix else ""):
                for item in page.get("Contents", []):
                    if item["Key"].endswith(suffix):
                        return item["Key"]
        except (ClientError, BotoCoreError) as e:
            raise ArchiveError(f"Failed to list s3://{self.bucket}/{prefix}: {e}") from e
        return None

    async def write_tree(self, tree: LineageTree) -> str:
        key = self.key_for(tree)
        await asyncio.to_thread(self._put, key, tree.model_dump_json().encode("utf-8"))
        logger.info("tree_archived", key=key, bucket=self.bucket, root_id=tree.root_id, node_count=tree.node_count)
        return key

    async def read_tree(self, key: str) -> LineageTree:
        data = await asyncio.to_thread(self._get, key)
        return LineageTree.model_validate_json(data)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._head, key)

    async def find_request(self, request_id: str) -> str | None:
        return await asyncio.to_thread(self._find, request_id)


def create_archive(config: ArchiveSettings) -> Archive:
    """Build the archive selected by settings."""
    if config.backend == "s3":
        if not config.bucket:
            raise ValueError("ARCHIVE_BUCKET is required for the s3 archive backend")
        return S3Archive(
            bucket=config.bucket,
            prefix=config.prefix,
            region=config.region,
            endpoint_url=config.endpoint_url,
        )
    return LocalArchive(config.base_path, prefix=config.prefix)
