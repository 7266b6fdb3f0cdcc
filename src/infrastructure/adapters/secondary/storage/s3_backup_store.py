"""S3 Backup Store - BackupStorePort on S3-compatible storage (AWS S3, Cloudflare R2, MinIO).

Object layout: ``projects/{project_id}/files/{relative_path}``.
"""

import asyncio
import logging
import mimetypes
from datetime import UTC, datetime
from typing import Any, Optional
from urllib.parse import quote

import aioboto3
from botocore.exceptions import ClientError

from src.domain.model.sandbox.project_file import ProjectFile
from src.domain.ports.services.backup_store_port import BackupMetadata, BackupStorePort

logger = logging.getLogger(__name__)

_EXTRA_CONTENT_TYPES = {
    ".ts": "text/typescript",
    ".tsx": "text/typescript",
    ".jsx": "text/javascript",
    ".mjs": "text/javascript",
    ".md": "text/markdown",
    ".json": "application/json",
}


def backup_prefix(project_id: str) -> str:
    return f"projects/{project_id}/files/"


def backup_key(project_id: str, path: str) -> str:
    return f"{backup_prefix(project_id)}{path.lstrip('/')}"


def content_type_for(path: str) -> str:
    """Guess a content type from the file extension."""
    suffix = path[path.rfind(".") :].lower() if "." in path else ""
    if suffix in _EXTRA_CONTENT_TYPES:
        return _EXTRA_CONTENT_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path)
    return guessed or "text/plain"


def _ascii_metadata(metadata: dict[str, str]) -> dict[str, str]:
    # S3 metadata values must be ASCII; URL-encode anything else
    encoded = {}
    for k, v in metadata.items():
        try:
            v.encode("ascii")
            encoded[k] = v
        except UnicodeEncodeError:
            encoded[k] = quote(v, safe="")
    return encoded


class S3BackupStore(BackupStorePort):
    """
    Backup store on an S3-compatible bucket.

    Supports AWS S3 and R2/MinIO via ``endpoint_url``.
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = "auto",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        endpoint_url: Optional[str] = None,
    ):
        """
        Initialize the backup store.

        Args:
            bucket_name: Bucket holding project backups
            region: Region name ("auto" for R2)
            access_key_id: Access key ID (optional, can use IAM role)
            secret_access_key: Secret access key (optional, can use IAM role)
            endpoint_url: Custom endpoint for R2 or MinIO
        """
        self._bucket = bucket_name
        self._endpoint_url = endpoint_url

        session_kwargs: dict[str, Any] = {"region_name": region}
        if access_key_id and secret_access_key:
            session_kwargs["aws_access_key_id"] = access_key_id
            session_kwargs["aws_secret_access_key"] = secret_access_key

        self._session = aioboto3.Session(**session_kwargs)

        logger.info(
            f"S3BackupStore initialized: bucket={bucket_name}, endpoint={endpoint_url or 'AWS S3'}"
        )

    async def _get_client(self):
        """Get an S3 client context manager."""
        return self._session.client("s3", endpoint_url=self._endpoint_url)

    async def _list_objects(self, s3, project_id: str) -> list[dict[str, Any]]:
        objects: list[dict[str, Any]] = []
        kwargs: dict[str, Any] = {"Bucket": self._bucket, "Prefix": backup_prefix(project_id)}
        while True:
            response = await s3.list_objects_v2(**kwargs)
            objects.extend(response.get("Contents", []))
            if not response.get("IsTruncated"):
                return objects
            kwargs["ContinuationToken"] = response["NextContinuationToken"]

    async def has_backup(self, project_id: str) -> bool:
        metadata = await self.get_backup_metadata(project_id)
        return metadata.has_files

    async def get_backup_metadata(self, project_id: str) -> BackupMetadata:
        async with await self._get_client() as s3:
            try:
                objects = await self._list_objects(s3, project_id)
            except ClientError as e:
                logger.error(f"Failed to list backup for project {project_id}: {e}")
                raise

        last_modified = max((o["LastModified"] for o in objects if o.get("LastModified")), default=None)
        return BackupMetadata(
            project_id=project_id,
            file_count=len(objects),
            total_size_bytes=sum(o.get("Size", 0) for o in objects),
            last_modified=last_modified,
        )

    async def restore_files(self, project_id: str) -> list[ProjectFile]:
        prefix = backup_prefix(project_id)
        async with await self._get_client() as s3:
            try:
                objects = await self._list_objects(s3, project_id)

                async def fetch(key: str) -> ProjectFile:
                    response = await s3.get_object(Bucket=self._bucket, Key=key)
                    body = await response["Body"].read()
                    return ProjectFile(key[len(prefix) :], body.decode("utf-8"))

                files = await asyncio.gather(*(fetch(o["Key"]) for o in objects))
            except ClientError as e:
                logger.error(f"Failed to restore backup for project {project_id}: {e}")
                raise

        logger.info(f"Restored {len(files)} files from backup for project {project_id}")
        return list(files)

    async def backup_file(self, project_id: str, file: ProjectFile) -> None:
        key = backup_key(project_id, file.path)
        body = file.content.encode("utf-8")
        async with await self._get_client() as s3:
            try:
                await s3.put_object(
                    Bucket=self._bucket,
                    Key=key,
                    Body=body,
                    ContentType=content_type_for(file.path),
                    Metadata=_ascii_metadata(
                        {
                            "project-id": project_id,
                            "file-path": file.path,
                            "updated-at": datetime.now(UTC).isoformat(),
                        }
                    ),
                )
            except ClientError as e:
                logger.error(f"Failed to back up {key}: {e}")
                raise

        logger.debug(f"Backed up {key} ({len(body)} bytes)")

    async def backup_files(self, project_id: str, files: list[ProjectFile]) -> int:
        results = await asyncio.gather(
            *(self.backup_file(project_id, f) for f in files),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            logger.warning(
                f"Backup of project {project_id}: {len(failures)}/{len(files)} files failed "
                f"(first error: {failures[0]})"
            )
        return len(files) - len(failures)
