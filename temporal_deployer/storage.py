"""
Remote object storage for backups (DigitalOcean Spaces, S3-compatible).
"""

import logging
from pathlib import Path
from typing import Optional, List, Any
from dataclasses import dataclass
from datetime import datetime, timezone

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import SpacesConfig

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when an object-storage request fails."""


@dataclass
class RemoteObject:
    """One object from a bucket listing."""
    key: str
    last_modified: datetime
    size: int = 0


class SpacesStorage:
    """S3 client bound to one Spaces bucket and backup prefix."""

    def __init__(self, spaces: SpacesConfig, client: Optional[Any] = None):
        self.spaces = spaces
        self._client = client

    @property
    def client(self):
        """Lazy initialization of the S3 client."""
        if self._client is None:
            self._client = boto3.client(
                "s3",
                region_name=self.spaces.region,
                endpoint_url=self.spaces.endpoint_url,
                aws_access_key_id=self.spaces.access_key,
                aws_secret_access_key=self.spaces.secret_key,
            )
        return self._client

    def key_for(self, filename: str) -> str:
        return f"{self.spaces.prefix}/{filename}"

    def upload(self, local_path: Path, key: Optional[str] = None) -> str:
        """Upload a file as a private object and return its key."""
        key = key or self.key_for(Path(local_path).name)
        try:
            self.client.upload_file(
                str(local_path),
                self.spaces.bucket,
                key,
                ExtraArgs={"ACL": "private"}
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Upload of {key} failed: {e}") from e
        logger.info(f"Uploaded s3://{self.spaces.bucket}/{key}")
        return key

    def list_objects(self) -> List[RemoteObject]:
        """List every object under the backup prefix."""
        objects = []
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.spaces.bucket, Prefix=f"{self.spaces.prefix}/"):
                for item in page.get("Contents", []):
                    modified = item["LastModified"]
                    if modified.tzinfo is None:
                        modified = modified.replace(tzinfo=timezone.utc)
                    objects.append(RemoteObject(
                        key=item["Key"],
                        last_modified=modified,
                        size=item.get("Size", 0)
                    ))
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Listing s3://{self.spaces.bucket}/{self.spaces.prefix}/ failed: {e}") from e
        return objects

    def delete(self, key: str):
        """Delete one object."""
        try:
            self.client.delete_object(Bucket=self.spaces.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Delete of {key} failed: {e}") from e
        logger.info(f"Deleted s3://{self.spaces.bucket}/{key}")
