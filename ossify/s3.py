from __future__ import annotations

import asyncio
import tempfile
from typing import AsyncIterable, AsyncIterator, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .backend import DEFAULT_CHUNK_SIZE, DEFAULT_PAGE_SIZE, ListPage, RawEntry
from .config import Provider, StorageConfig
from .errors import BackendUnavailable, NotFound, OssifyError, PermissionDenied

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound", "NoSuchBucket"}
DENIED_CODES = {"403", "AccessDenied", "Forbidden", "InvalidAccessKeyId", "SignatureDoesNotMatch"}
SPOOL_MAX_BYTES = 8 * DEFAULT_CHUNK_SIZE


class S3Backend:
    """S3-compatible object store (AWS S3, MinIO, Alibaba OSS) through boto3."""

    supports_rename = False

    def __init__(
        self,
        bucket: str,
        region: Optional[str] = None,
        endpoint: Optional[str] = None,
        access_key_id: Optional[str] = None,
        access_key_secret: Optional[str] = None,
        profile: Optional[str] = None,
        max_attempts: int = 3,
        addressing_style: Optional[str] = None,
        client: object = None,
    ) -> None:
        self.bucket = bucket
        self.name = f"s3://{bucket}"
        self._region = region
        self._endpoint = endpoint
        self._access_key_id = access_key_id
        self._access_key_secret = access_key_secret
        self._profile = profile
        self._max_attempts = max_attempts
        self._addressing_style = addressing_style
        self._client_instance = client

    @classmethod
    def from_config(cls, config: StorageConfig) -> S3Backend:
        # OSS only accepts virtual-hosted style requests on its S3 endpoint.
        addressing_style = "virtual" if config.provider == Provider.OSS else None
        if config.provider == Provider.MINIO:
            addressing_style = "path"
        return cls(
            bucket=config.bucket or "",
            region=config.region,
            endpoint=config.endpoint,
            access_key_id=config.access_key_id,
            access_key_secret=config.access_key_secret,
            profile=config.profile,
            max_attempts=config.max_attempts,
            addressing_style=addressing_style,
        )

    def _client(self):
        if self._client_instance is not None:
            return self._client_instance
        session_kwargs: dict[str, str] = {}
        if self._profile:
            session_kwargs["profile_name"] = self._profile
        if self._access_key_id and self._access_key_secret:
            session_kwargs["aws_access_key_id"] = self._access_key_id
            session_kwargs["aws_secret_access_key"] = self._access_key_secret
        session = boto3.session.Session(**session_kwargs)
        client_config = Config(
            retries={"max_attempts": self._max_attempts, "mode": "standard"},
            s3={"addressing_style": self._addressing_style} if self._addressing_style else None,
        )
        client_kwargs: dict[str, object] = {"config": client_config}
        if self._region:
            client_kwargs["region_name"] = self._region
        if self._endpoint:
            client_kwargs["endpoint_url"] = self._endpoint
        self._client_instance = session.client("s3", **client_kwargs)
        return self._client_instance

    def _is_sso_expired_error(self, exc: Exception) -> bool:
        text = f"{type(exc).__name__}: {exc}".lower()
        markers = [
            "unauthorizedssotokenerror",
            "sso session",
            "sso token",
            "token has expired",
            "expiredtoken",
            "error loading sso token",
        ]
        return any(marker in text for marker in markers)

    def _map_error(self, exc: Exception, key: str) -> OssifyError:
        location = f"s3://{self.bucket}/{key}"
        if isinstance(exc, ClientError):
            error = exc.response.get("Error", {})
            code = str(error.get("Code", ""))
            status = str(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", ""))
            message = error.get("Message") or code or str(exc)
            if code in NOT_FOUND_CODES or status == "404":
                return NotFound(f"No such object: {location}", path=key)
            if code in DENIED_CODES or status == "403":
                return PermissionDenied(f"Access denied: {location} ({message})", path=key)
            if self._is_sso_expired_error(exc):
                return PermissionDenied(
                    f"SSO session expired while accessing {location}; run aws sso login",
                    path=key,
                )
            return BackendUnavailable(f"{location}: {message}", path=key)
        if self._is_sso_expired_error(exc):
            return PermissionDenied(
                f"SSO session expired while accessing {location}; run aws sso login",
                path=key,
            )
        return BackendUnavailable(f"{location}: {exc}", path=key)

    async def _run(self, key: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except (ClientError, BotoCoreError) as exc:
            raise self._map_error(exc, key) from exc

    async def list(self, prefix: str, page_token: Optional[str] = None) -> ListPage:
        return await self._run(prefix, self._list_page, prefix, page_token)

    def _list_page(self, prefix: str, page_token: Optional[str]) -> ListPage:
        client = self._client()
        kwargs = {
            "Bucket": self.bucket,
            "Delimiter": "/",
            "Prefix": prefix,
            "MaxKeys": DEFAULT_PAGE_SIZE,
        }
        if page_token:
            kwargs["ContinuationToken"] = page_token
        response = client.list_objects_v2(**kwargs)
        entries: list[RawEntry] = []
        for entry in response.get("CommonPrefixes", []):
            value = entry.get("Prefix")
            if value:
                entries.append(RawEntry(key=value, is_dir=True, implied=True))
        for entry in response.get("Contents", []):
            key = entry.get("Key")
            if not key:
                continue
            entries.append(
                RawEntry(
                    key=key,
                    is_dir=key.endswith("/"),
                    size=int(entry.get("Size", 0)),
                    last_modified=entry.get("LastModified"),
                    etag=_strip_etag(entry.get("ETag")),
                )
            )
        next_token = None
        if response.get("IsTruncated"):
            next_token = response.get("NextContinuationToken")
        if prefix and not page_token and not entries and not next_token:
            raise NotFound(f"No such directory: s3://{self.bucket}/{prefix}", path=prefix)
        return ListPage(entries=entries, next_token=next_token)

    async def stat(self, key: str) -> RawEntry:
        return await self._run(key, self._stat, key)

    def _stat(self, key: str) -> RawEntry:
        if not key:
            return RawEntry(key="", is_dir=True)
        response = self._client().head_object(Bucket=self.bucket, Key=key)
        return RawEntry(
            key=key,
            is_dir=key.endswith("/"),
            size=int(response.get("ContentLength", 0)),
            last_modified=response.get("LastModified"),
            etag=_strip_etag(response.get("ETag")),
            content_type=response.get("ContentType"),
        )

    async def read(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        response = await self._run(key, self._get_object, key)
        body = response.get("Body")
        if body is None:
            return
        try:
            while True:
                chunk = await self._run(key, body.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    def _get_object(self, key: str) -> dict:
        return self._client().get_object(Bucket=self.bucket, Key=key)

    async def write(self, key: str, chunks: AsyncIterable[bytes]) -> int:
        total = 0
        # Spool to disk past a few chunks so large objects are never held in
        # memory; upload_fileobj switches to multipart on its own.
        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES) as spool:
            async for chunk in chunks:
                spool.write(chunk)
                total += len(chunk)
            spool.seek(0)
            await self._run(key, self._upload, spool, key)
        return total

    def _upload(self, fileobj, key: str) -> None:
        self._client().upload_fileobj(fileobj, self.bucket, key)

    async def delete(self, key: str) -> None:
        await self._run(key, self._delete, key)

    def _delete(self, key: str) -> None:
        self._client().delete_object(Bucket=self.bucket, Key=key)

    async def create_dir(self, key: str) -> None:
        if not key:
            return
        marker = key if key.endswith("/") else f"{key}/"
        await self._run(marker, self._put_marker, marker)

    def _put_marker(self, key: str) -> None:
        self._client().put_object(Bucket=self.bucket, Key=key, Body=b"")

    async def rename(self, src: str, dst: str) -> None:
        raise NotImplementedError("S3 has no rename; moves are copy then delete")


def _strip_etag(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value.strip('"')
