"""
Script: docker_cache/cache_service.py
What: Client for the GitHub Actions cache service, plus the interface the cache flow depends on.
Doing: Looks up, downloads, and uploads one gzip tarball per cache key through the service's JSON API.
Why: The Docker flow only needs "restore these paths for this key" and "save these paths under this key".
Goal: Keep cache storage behind a small interface so the flow can be tested without network access.
"""

from __future__ import annotations

import base64
import hashlib
import http.client
import json
import shutil
import tarfile
import tempfile
import urllib.error
import urllib.parse
import urllib.request
from http import HTTPStatus
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence

from docker_cache.actions import ActionsContext
from docker_cache.common import CiToolError, require_env


CACHE_SERVICE_PATH = "twirp/github.actions.results.api.v1.CacheService"
MAX_KEY_LENGTH = 512
MAX_KEY_COUNT = 10
COMPRESSION_METHOD = "gzip"
ARCHIVE_FORMAT_VERSION = "1.0"
ARCHIVE_NAME = "cache.tgz"
DEFAULT_ARCHIVE_ROOT = Path(Path.home().anchor)
# One Put Block request per chunk; the block list commits them in order.
UPLOAD_CHUNK_SIZE = 64 * 1024 * 1024
BLOB_SERVICE_VERSION = "2023-11-03"


class CacheBackend(Protocol):
    """Remote key/value store for one archive per key."""

    def restore(
        self,
        paths: Sequence[str],
        primary_key: str,
        restore_keys: Sequence[str] | None = None,
        *,
        lookup_only: bool = False,
    ) -> str | None:
        """Restore `paths` and return the key that matched, or `None` on a miss."""
        ...

    def save(self, paths: Sequence[str], key: str) -> None:
        """Upload `paths` under `key`."""
        ...


class CacheServiceError(CiToolError):
    """Raised when the cache service or blob storage answers with an error."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def validate_key(key: str) -> None:
    """Reject keys the cache service would refuse."""
    if len(key) > MAX_KEY_LENGTH:
        raise CiToolError(
            f"Key Validation Error: {key} cannot be larger than {MAX_KEY_LENGTH} characters."
        )
    # Commas separate keys in the service's own key lists.
    if "," in key:
        raise CiToolError(f"Key Validation Error: {key} cannot contain commas.")


def validate_paths(paths: Sequence[str]) -> None:
    if not any(paths):
        raise CiToolError(
            "Path Validation Error: At least one directory or file path is required"
        )


def cache_version(paths: Sequence[str]) -> str:
    """
    Return the version string stored with each cache entry.

    The service only matches entries whose version equals the requested one,
    so the same set of paths (with the same archive format) always hashes the same.
    """
    components = [*paths, COMPRESSION_METHOD, ARCHIVE_FORMAT_VERSION]
    return hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()


def archive_member_name(path: str, archive_root: Path) -> str:
    """Map a (possibly `~`-prefixed) path to its member name inside the tarball."""
    absolute = Path(path).expanduser().absolute()
    try:
        return absolute.relative_to(archive_root).as_posix()
    except ValueError as exc:
        raise CiToolError(f"Cache path {absolute} is outside {archive_root}") from exc


def create_archive(paths: Sequence[str], archive_path: Path, archive_root: Path) -> None:
    """Pack `paths` into a gzip tarball with names relative to `archive_root`."""
    with tarfile.open(archive_path, "w:gz") as tar:
        for path in paths:
            if not path:
                continue
            member_name = archive_member_name(path, archive_root)
            tar.add(archive_root / member_name, arcname=member_name)


def extract_archive(archive_path: Path, archive_root: Path) -> None:
    """
    Unpack a cache tarball under `archive_root`.

    `filter="data"` blocks absolute paths, parent-directory escapes, and
    unsafe links, since the archive comes back from remote storage.
    """
    with tarfile.open(archive_path, "r:gz") as tar:
        tar.extractall(archive_root, filter="data")


class ActionsCacheClient:
    """
    `CacheBackend` backed by the hosted GitHub Actions cache service.

    The service hands out signed blob URLs; this client only talks JSON to
    the service and streams the archive to/from those URLs.
    """

    def __init__(
        self,
        context: ActionsContext,
        *,
        base_url: str,
        token: str,
        archive_root: Path = DEFAULT_ARCHIVE_ROOT,
        timeout: float = 60.0,
        upload_chunk_size: int = UPLOAD_CHUNK_SIZE,
        urlopen: Callable[..., Any] = urllib.request.urlopen,
    ) -> None:
        self.context = context
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.archive_root = archive_root
        self.timeout = timeout
        self.upload_chunk_size = upload_chunk_size
        self._urlopen = urlopen

    @classmethod
    def from_env(cls, context: ActionsContext) -> "ActionsCacheClient":
        # The runner only exposes these to actions, not to plain `run:` steps.
        return cls(
            context,
            base_url=require_env("ACTIONS_RESULTS_URL", context.env),
            token=require_env("ACTIONS_RUNTIME_TOKEN", context.env),
        )

    def restore(
        self,
        paths: Sequence[str],
        primary_key: str,
        restore_keys: Sequence[str] | None = None,
        *,
        lookup_only: bool = False,
    ) -> str | None:
        validate_paths(paths)
        restore_keys = list(restore_keys or [])
        keys = [primary_key, *restore_keys]
        if len(keys) > MAX_KEY_COUNT:
            raise CiToolError(
                f"Key Validation Error: Keys are limited to a maximum of {MAX_KEY_COUNT}."
            )
        for key in keys:
            validate_key(key)

        try:
            response = self._call(
                "GetCacheEntryDownloadURL",
                {"key": primary_key, "restore_keys": restore_keys, "version": cache_version(paths)},
            )
            if not response.get("ok"):
                self.context.info(f"Cache not found for input keys: {', '.join(keys)}")
                return None

            matched_key = str(response.get("matched_key") or "")
            if lookup_only:
                self.context.info(f"Cache found and can be restored from key: {matched_key}")
                return matched_key

            with tempfile.TemporaryDirectory(dir=self._temp_dir()) as temp_dir:
                archive_path = Path(temp_dir) / ARCHIVE_NAME
                self._download(str(response.get("signed_download_url") or ""), archive_path)
                extract_archive(archive_path, self.archive_root)
        except (CacheServiceError, OSError, EOFError, http.client.HTTPException, tarfile.TarError) as exc:
            # A broken or truncated cache is a miss, not a failed job.
            self.context.warning(f"Failed to restore: {exc}")
            return None

        self.context.info(f"Cache restored from key: {matched_key}")
        return matched_key

    def save(self, paths: Sequence[str], key: str) -> None:
        validate_paths(paths)
        validate_key(key)
        version = cache_version(paths)

        with tempfile.TemporaryDirectory(dir=self._temp_dir()) as temp_dir:
            archive_path = Path(temp_dir) / ARCHIVE_NAME
            try:
                create_archive(paths, archive_path, self.archive_root)
                size = archive_path.stat().st_size
                self.context.info(f"Cache Size: ~{round(size / (1024 * 1024))} MB ({size} B)")

                response = self._call("CreateCacheEntry", {"key": key, "version": version})
                if not response.get("ok"):
                    self._log_reserve_conflict(key)
                    return

                self._upload(str(response.get("signed_upload_url") or ""), archive_path)

                finalize = self._call(
                    "FinalizeCacheEntryUpload",
                    {"key": key, "version": version, "size_bytes": str(size)},
                )
                if not finalize.get("ok"):
                    raise CacheServiceError(
                        f"Unable to finalize cache with key {key}, another job may be finalizing this cache."
                    )
            except CacheServiceError as exc:
                if exc.status == HTTPStatus.CONFLICT:
                    self._log_reserve_conflict(key)
                    return
                self.context.warning(f"Failed to save: {exc}")
                return
            except (OSError, EOFError, http.client.HTTPException, tarfile.TarError) as exc:
                self.context.warning(f"Failed to save: {exc}")
                return

        self.context.info(f"Cache saved with key: {key}")

    def _log_reserve_conflict(self, key: str) -> None:
        self.context.info(
            f"Failed to save: Unable to reserve cache with key {key}, "
            "another job may be creating this cache."
        )

    def _temp_dir(self) -> str | None:
        return self.context.env.get("RUNNER_TEMP") or None

    def _call(self, method: str, body: dict[str, Any]) -> dict[str, Any]:
        """POST one JSON request to the cache service and return the parsed reply."""
        request = urllib.request.Request(
            f"{self.base_url}/{CACHE_SERVICE_PATH}/{method}",
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Accept": "application/json",
                "Authorization": f"Bearer {self.token}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with self._urlopen(request, timeout=self.timeout) as response:
                payload = response.read()
        except urllib.error.HTTPError as exc:
            raise _http_error(method, exc) from exc
        except urllib.error.URLError as exc:
            raise CacheServiceError(f"{method} failed: {exc.reason}") from exc

        try:
            data = json.loads(payload or b"{}")
        except json.JSONDecodeError as exc:
            raise CacheServiceError(f"Expected JSON from cache service method {method}") from exc
        if not isinstance(data, dict):
            raise CacheServiceError(f"Expected JSON object from cache service method {method}")
        return data

    def _download(self, url: str, archive_path: Path) -> None:
        if not url:
            raise CacheServiceError("Cache service returned no download URL")
        # Signed URLs carry their own auth, so no bearer token here.
        request = urllib.request.Request(url, method="GET")
        try:
            with self._urlopen(request, timeout=self.timeout) as response, archive_path.open("wb") as handle:
                shutil.copyfileobj(response, handle)
        except urllib.error.HTTPError as exc:
            raise _http_error("Download", exc) from exc
        except urllib.error.URLError as exc:
            raise CacheServiceError(f"Download failed: {exc.reason}") from exc

    def _upload(self, url: str, archive_path: Path) -> None:
        """
        Upload the archive to a signed blob URL in fixed-size blocks.

        One Put Blob request is capped in size, and Docker archives can
        exceed it, so each chunk goes up as a block and a final block list
        commits them in order.
        """
        if not url:
            raise CacheServiceError("Cache service returned no upload URL")
        separator = "&" if "?" in url else "?"

        block_ids: list[str] = []
        with archive_path.open("rb") as handle:
            while True:
                chunk = handle.read(self.upload_chunk_size)
                if not chunk:
                    break
                # Azure requires every block ID of a blob to have the same length.
                block_id = base64.b64encode(f"{len(block_ids):06d}".encode("ascii")).decode("ascii")
                self._put_blob(
                    f"{url}{separator}comp=block&blockid={urllib.parse.quote(block_id)}",
                    chunk,
                    "application/octet-stream",
                )
                block_ids.append(block_id)

        block_list = "".join(f"<Latest>{block_id}</Latest>" for block_id in block_ids)
        self._put_blob(
            f"{url}{separator}comp=blocklist",
            f'<?xml version="1.0" encoding="utf-8"?><BlockList>{block_list}</BlockList>'.encode("utf-8"),
            "application/xml",
        )

    def _put_blob(self, url: str, body: bytes, content_type: str) -> None:
        request = urllib.request.Request(
            url,
            data=body,
            headers={
                "Content-Type": content_type,
                "x-ms-version": BLOB_SERVICE_VERSION,
            },
            method="PUT",
        )
        try:
            with self._urlopen(request, timeout=self.timeout) as response:
                response.read()
        except urllib.error.HTTPError as exc:
            raise _http_error("Upload", exc) from exc
        except urllib.error.URLError as exc:
            raise CacheServiceError(f"Upload failed: {exc.reason}") from exc


def _http_error(action: str, exc: urllib.error.HTTPError) -> CacheServiceError:
    detail = exc.read().decode("utf-8", "replace").strip() if exc.fp else ""
    message = f"{action} failed with HTTP {exc.code}"
    if detail:
        message = f"{message}: {detail}"
    return CacheServiceError(message, status=exc.code)
