"""Persistent storage for the OAuth token record.

This module provides storage for the single local user's token record:
- A JSON file written atomically (temp file + rename) with 0600 permissions
- A containing directory created with 0700 permissions
- A null storage variant used when the filesystem cannot be written

If the token file turns out to be unwritable (permissions, read-only
filesystem), the store permanently switches to the null variant for the rest
of the process: writes become no-ops and reads return None, which the rest of
the system treats exactly like "never authenticated".
"""

import asyncio
import errno
import json
import logging
import os
import stat
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable

from .tokens import DEFAULT_EXPIRES_IN, TokenRecord, TokenUpdate, now_ms

logger = logging.getLogger(__name__)

# OS errors that mean "this storage can never be written"
DEGRADING_ERRNOS = {errno.EACCES, errno.EPERM, errno.EROFS}


class TokenStoreError(Exception):
    """Error in token storage operations."""

    pass


def _is_degrading_error(error: OSError) -> bool:
    return isinstance(error, PermissionError) or error.errno in DEGRADING_ERRNOS


class Storage(ABC):
    """Backing store for a single JSON object."""

    persistent: bool = False

    @abstractmethod
    def read(self) -> dict[str, Any] | None:
        """Return the stored object, or None if nothing is stored."""

    @abstractmethod
    def write(self, data: dict[str, Any]) -> None:
        """Replace the stored object."""

    @abstractmethod
    def delete(self) -> None:
        """Remove the stored object; no error if absent."""


class NullStorage(Storage):
    """Storage that never persists anything."""

    def read(self) -> dict[str, Any] | None:
        return None

    def write(self, data: dict[str, Any]) -> None:
        pass

    def delete(self) -> None:
        pass


class PersistentStorage(Storage):
    """JSON file storage with owner-only permissions.

    Writes go to a temporary file in the same directory which is then renamed
    over the target, so readers always see either the old or the new record.
    """

    persistent = True

    def __init__(self, path: Path):
        self.path = path

    def _ensure_directory(self) -> None:
        directory = self.path.parent
        if directory.exists():
            return

        directory.mkdir(parents=True, mode=stat.S_IRWXU, exist_ok=True)
        # mkdir's mode is filtered through the umask
        try:
            directory.chmod(stat.S_IRWXU)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

    def read(self) -> dict[str, Any] | None:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError(f"Token file {self.path} does not contain a JSON object")
        return data

    def write(self, data: dict[str, Any]) -> None:
        self._ensure_directory()

        # mkstemp creates the file with 0600 permissions
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

        try:
            self.path.chmod(stat.S_IRUSR | stat.S_IWUSR)  # 0600
        except OSError as e:
            logger.warning(f"Could not set file permissions: {e}")

    def delete(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


def open_storage(path: Path) -> Storage:
    """Select the storage variant for a token file path.

    Probes the containing directory once: if it can be created and written,
    returns PersistentStorage; otherwise logs a warning and returns NullStorage.

    Args:
        path: Path of the token file

    Returns:
        Storage to use for the lifetime of the process
    """
    storage = PersistentStorage(path)
    try:
        storage._ensure_directory()
        fd, probe = tempfile.mkstemp(dir=path.parent, prefix=".probe-")
        os.close(fd)
        os.unlink(probe)
    except OSError as e:
        logger.warning(
            f"Token storage disabled: cannot write to {path.parent} ({e}). "
            f"Tokens will not be saved; set ETSY_MCP_TOKEN_PATH to a writable directory."
        )
        return NullStorage()

    logger.debug(f"Token storage at {path}")
    return storage


class TokenStore:
    """Owner of the persisted token record.

    Every read goes to the backing storage; nothing is cached in memory so
    several processes sharing one token file never diverge. File I/O runs in
    a worker thread to keep the event loop responsive.

    Usage:
        store = TokenStore(open_storage(settings.token_path))
        await store.save(TokenUpdate.from_token_response(response))
        record = await store.get_valid()
    """

    def __init__(self, storage: Storage, clock: Callable[[], int] = now_ms):
        self._storage = storage
        self._clock = clock

    @property
    def persistent(self) -> bool:
        """Whether records survive the process."""
        return self._storage.persistent

    def _degrade(self, operation: str, error: OSError) -> None:
        logger.warning(
            f"Token storage disabled after failing to {operation}: {error}. "
            f"Tokens will not be persisted for the rest of this session."
        )
        self._storage = NullStorage()

    def _read_raw(self) -> dict[str, Any] | None:
        try:
            return self._storage.read()
        except OSError as e:
            if _is_degrading_error(e):
                self._degrade("read tokens", e)
            else:
                logger.warning(f"Error reading tokens: {e}")
            return None
        except ValueError as e:
            # json.JSONDecodeError is a ValueError
            logger.warning(f"Token file is corrupted, ignoring it: {e}")
            return None

    def _load(self) -> TokenRecord | None:
        data = self._read_raw()
        if data is None:
            return None
        try:
            return TokenRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Invalid token data: {e}")
            return None

    def _write(self, record: TokenRecord) -> None:
        try:
            self._storage.write(record.to_dict())
        except OSError as e:
            if _is_degrading_error(e):
                self._degrade("save tokens", e)
                return
            raise TokenStoreError(f"Failed to save tokens: {e}") from e

    def _merge(self, update: TokenUpdate) -> TokenRecord:
        previous = self._load()
        now = self._clock()

        if update.expires_in is not None:
            expires_at = now + update.expires_in * 1000
        elif update.expires_at is not None:
            expires_at = update.expires_at
        elif previous is not None:
            expires_at = previous.expires_at
        else:
            expires_at = now + DEFAULT_EXPIRES_IN * 1000

        record = TokenRecord(
            access_token=update.access_token or "",
            expires_at=expires_at,
            refresh_token=update.refresh_token,
            user_id=update.user_id,
            shop_id=update.shop_id,
            shop_name=update.shop_name,
        )

        if previous is not None:
            record.access_token = record.access_token or previous.access_token
            record.refresh_token = record.refresh_token or previous.refresh_token

            # Shop preferences belong to a user; a different user starts fresh
            same_user = record.user_id is None or previous.user_id in (None, record.user_id)
            if record.user_id is None:
                record.user_id = previous.user_id
            if same_user and record.shop_id is None:
                record.shop_id = previous.shop_id
                record.shop_name = record.shop_name or previous.shop_name

        if not record.access_token:
            raise TokenStoreError("Cannot save a token record without an access token")
        return record

    def _save(self, update: TokenUpdate) -> TokenRecord:
        record = self._merge(update)
        self._write(record)
        return record

    def _clear(self) -> None:
        try:
            self._storage.delete()
        except OSError as e:
            if _is_degrading_error(e):
                self._degrade("clear tokens", e)
                return
            raise TokenStoreError(f"Failed to clear tokens: {e}") from e

    async def save(self, update: TokenUpdate) -> TokenRecord:
        """Merge a partial update into the stored record and persist it.

        Fields the update leaves unset keep their stored values. The expiry is
        derived from ``expires_in`` when given, else taken from ``expires_at``,
        else kept from the stored record, else defaults to one hour from now.

        Args:
            update: Fields to change

        Returns:
            The merged record (returned even when storage is disabled)

        Raises:
            TokenStoreError: If no access token is available or the write
                fails for a reason other than permissions
        """
        record = await asyncio.to_thread(self._save, update)
        logger.debug("Stored token record")
        return record

    async def get_valid(self) -> TokenRecord | None:
        """Return the stored record if its access token has not expired.

        Returns:
            TokenRecord, or None if missing, unreadable, or expired
        """
        record = await asyncio.to_thread(self._load)
        if record is None or record.is_expired(self._clock()):
            return None
        return record

    async def get_even_if_expired(self) -> TokenRecord | None:
        """Return the stored record regardless of expiry.

        Used to recover the refresh token once the access token has expired.
        """
        return await asyncio.to_thread(self._load)

    async def clear(self) -> None:
        """Delete the stored record (no error if absent)."""
        await asyncio.to_thread(self._clear)
        logger.debug("Cleared token record")

    async def set_default_shop(self, shop_id: int, shop_name: str | None) -> TokenRecord:
        """Update the default shop without touching the token fields.

        Raises:
            TokenStoreError: If no token record exists
        """
        return await self.save(TokenUpdate(shop_id=shop_id, shop_name=shop_name))
