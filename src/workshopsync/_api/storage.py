"""Blob storage for request attachments."""

from __future__ import annotations

from urllib.parse import quote, unquote, urlparse

from workshopsync._transport import Transport


def split_public_url(url: str) -> tuple[str, str] | None:
    """Return ``(bucket, path)`` for a public object URL, else ``None``.

    Public URLs look like ``.../storage/v1/object/public/<bucket>/<path>``.
    """
    parts = urlparse(url).path.split("/")
    try:
        index = parts.index("public")
    except ValueError:
        return None
    if index + 2 >= len(parts):
        return None
    bucket = unquote(parts[index + 1])
    path = "/".join(unquote(part) for part in parts[index + 2 :])
    if not bucket or not path:
        return None
    return bucket, path


class RestBlobStorage:
    def __init__(self, transport: Transport, storage_url: str) -> None:
        self._transport = transport
        self._storage_url = storage_url.rstrip("/")

    async def upload(
        self,
        bucket: str,
        path: str,
        content: bytes,
        *,
        content_type: str = "application/octet-stream",
    ) -> str:
        """Upload *content* and return its object path."""
        await self._transport.request(
            "POST",
            f"{self._storage_url}/object/{quote(bucket)}/{quote(path)}",
            data=content,
            headers={"content-type": content_type, "x-upsert": "false"},
        )
        return path

    def get_public_url(self, bucket: str, path: str) -> str:
        return f"{self._storage_url}/object/public/{quote(bucket)}/{quote(path)}"

    async def remove(self, bucket: str, paths: list[str]) -> None:
        if not paths:
            return
        await self._transport.request(
            "DELETE",
            f"{self._storage_url}/object/{quote(bucket)}",
            json_body={"prefixes": list(paths)},
        )
