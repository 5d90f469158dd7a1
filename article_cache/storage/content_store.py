"""
A file-backed payload store addressed by cache key.

Payloads live in a flat directory, one file per key named after the SHA-256 of
the key, with the content type kept in a small sidecar file. The store knows
nothing about groups or reference counts; callers decide what to remove.
"""

import asyncio
import logging
import os
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path

import aiofiles

from article_cache.exceptions import StoreIOFailure
from article_cache.utils.keys import content_filename

log = logging.getLogger(__name__)

CONTENT_TYPE_SUFFIX = ".type"
TEMP_SUFFIX = ".tmp"
DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass(frozen=True)
class StoredPayload:
    data: bytes
    content_type: str


class ContentStore:
    """
    Manages durable placement, lookup and removal of cached payloads.
    """

    def __init__(self, cache_dir_path: Path):
        """
        Initializes the content store.

        Args:
            cache_dir_path: The directory under which payloads are stored.
        """
        self.root_dir = cache_dir_path / "content"
        self.tmp_dir = cache_dir_path / "tmp"
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)

    def path_for_key(self, key: str) -> Path:
        """Returns the final path of the payload for a cache key."""
        return self.root_dir / content_filename(key)

    def _content_type_path(self, payload_path: Path) -> Path:
        return payload_path.with_name(payload_path.name + CONTENT_TYPE_SUFFIX)

    def _staging_path(self, payload_path: Path) -> Path:
        # Same directory as the final path so os.replace stays atomic
        return payload_path.with_name(
            f"{payload_path.name}.{uuid.uuid4().hex}{TEMP_SUFFIX}"
        )

    def new_temp_path(self) -> Path:
        """Returns a unique path in the store's scratch directory."""
        return self.tmp_dir / f"{uuid.uuid4().hex}{TEMP_SUFFIX}"

    def _commit_sync(self, staging_path: Path, key: str, content_type: str) -> int:
        payload_path = self.path_for_key(key)
        type_path = self._content_type_path(payload_path)
        type_staging = self._staging_path(type_path)
        try:
            type_staging.write_text(content_type, encoding="utf-8")
            os.replace(type_staging, type_path)
            os.replace(staging_path, payload_path)
            return payload_path.stat().st_size
        finally:
            for leftover in (staging_path, type_staging):
                if leftover.exists():
                    leftover.unlink()

    def _write_sync(self, key: str, temp_location: Path, content_type: str) -> int:
        staging_path = self._staging_path(self.path_for_key(key))
        try:
            shutil.move(str(temp_location), str(staging_path))
            return self._commit_sync(staging_path, key, content_type)
        except OSError as e:
            raise StoreIOFailure(f"Failed to store payload for '{key}': {e}") from e

    async def write(
        self, key: str, temp_location: Path, content_type: str | None = None
    ) -> int:
        """
        Moves a transient file into durable storage for a key.

        The payload is staged next to its final path and swapped in with
        os.replace, so a partial file is never visible under the key.

        Returns:
            The size of the stored payload in bytes.

        Raises:
            StoreIOFailure: If the payload could not be moved into place.
        """
        return await asyncio.to_thread(
            self._write_sync, key, temp_location, content_type or DEFAULT_CONTENT_TYPE
        )

    async def write_bytes(
        self, key: str, data: bytes, content_type: str | None = None
    ) -> int:
        """Stores an in-memory payload with the same guarantees as write()."""
        staging_path = self._staging_path(self.path_for_key(key))
        try:
            async with aiofiles.open(staging_path, "wb") as f:
                await f.write(data)
            return await asyncio.to_thread(
                self._commit_sync,
                staging_path,
                key,
                content_type or DEFAULT_CONTENT_TYPE,
            )
        except OSError as e:
            if staging_path.exists():
                staging_path.unlink()
            raise StoreIOFailure(f"Failed to store payload for '{key}': {e}") from e

    def _remove_sync(self, payload_path: Path) -> bool:
        removed = False
        for path in (payload_path, self._content_type_path(payload_path)):
            try:
                path.unlink()
                removed = True
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StoreIOFailure(f"Failed to remove '{path.name}': {e}") from e
        return removed

    async def remove(self, key: str) -> bool:
        """
        Deletes the payload for a key. An already absent payload is not an error.

        Returns:
            True if a file was actually removed, False if nothing was there.

        Raises:
            StoreIOFailure: On any error other than the file being missing.
        """
        removed = await asyncio.to_thread(self._remove_sync, self.path_for_key(key))
        if not removed:
            log.debug(f"Payload for '{key}' was already absent.")
        return removed

    async def remove_filename(self, filename: str) -> bool:
        """Removes a payload by its on-disk name (used for stray files)."""
        return await asyncio.to_thread(self._remove_sync, self.root_dir / filename)

    def _read_sync(self, key: str) -> StoredPayload:
        payload_path = self.path_for_key(key)
        try:
            data = payload_path.read_bytes()
        except OSError as e:
            raise StoreIOFailure(f"Failed to read payload for '{key}': {e}") from e
        try:
            content_type = self._content_type_path(payload_path).read_text(
                encoding="utf-8"
            )
        except OSError:
            content_type = DEFAULT_CONTENT_TYPE
        return StoredPayload(data=data, content_type=content_type.strip())

    async def read(self, key: str) -> StoredPayload:
        """Reads a stored payload and its content type."""
        return await asyncio.to_thread(self._read_sync, key)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self.path_for_key(key).is_file)

    def _stored_filenames_sync(self) -> set[str]:
        return {
            path.name
            for path in self.root_dir.iterdir()
            if path.is_file()
            and not path.name.endswith((CONTENT_TYPE_SUFFIX, TEMP_SUFFIX))
        }

    async def stored_filenames(self) -> set[str]:
        """Returns the on-disk names of every stored payload."""
        return await asyncio.to_thread(self._stored_filenames_sync)

    def _orphaned_sidecars_sync(self) -> set[str]:
        names = set()
        for path in self.root_dir.glob(f"*{CONTENT_TYPE_SUFFIX}"):
            payload_name = path.name[: -len(CONTENT_TYPE_SUFFIX)]
            if not (self.root_dir / payload_name).is_file():
                names.add(payload_name)
        return names

    async def orphaned_sidecars(self) -> set[str]:
        """
        Returns the payload names of content type sidecars whose payload is gone.
        Pass them to remove_filename() to drop the sidecar.
        """
        return await asyncio.to_thread(self._orphaned_sidecars_sync)

    def _total_size_sync(self) -> int:
        return sum(
            path.stat().st_size for path in self.root_dir.iterdir() if path.is_file()
        )

    async def total_size(self) -> int:
        return await asyncio.to_thread(self._total_size_sync)

    def _cleanup_temp_files_sync(self) -> int:
        cleaned_count = 0
        candidates = list(self.tmp_dir.glob(f"*{TEMP_SUFFIX}"))
        candidates += list(self.root_dir.glob(f"*{TEMP_SUFFIX}"))
        for temp_file in candidates:
            try:
                temp_file.unlink()
                cleaned_count += 1
            except OSError as e:
                log.warning(f"Failed to remove temp file {temp_file.name}: {e}")
        if cleaned_count > 0:
            log.debug(f"Removed {cleaned_count} leftover temp files.")
        return cleaned_count

    async def cleanup_temp_files(self) -> int:
        """Removes staging files left behind by an interrupted write."""
        return await asyncio.to_thread(self._cleanup_temp_files_sync)

    def _clear_sync(self) -> None:
        try:
            for path in self.root_dir.iterdir():
                if path.is_file():
                    path.unlink()
        except OSError as e:
            raise StoreIOFailure(f"Failed to clear content store: {e}") from e

    async def clear(self) -> None:
        """Removes every stored payload."""
        log.info("Clearing all stored payloads...")
        await asyncio.to_thread(self._clear_sync)
