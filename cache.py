"""
Validation cache storage.

Validation records and last-known-valid license keys are kept in one of
three interchangeable backends. The backend is picked once per client by
probing what the environment offers: a shared persistent key/value store,
a writable home directory, or nothing (in-memory only).
"""

import json
import os
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import quote

import structlog
from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from config import Settings, settings as default_settings
from database import LocalStorageEntry, create_session_factory
from models import ValidationRecord

logger = structlog.get_logger()

CACHE_KEY_SEPARATOR = ":"

SHARED_STORE_VALIDATION_PREFIX = "codecheckout_validation_"
SHARED_STORE_LICENSE_PREFIX = "codecheckout_license_"
FILE_VALIDATION_PREFIX = "validation_cache_"
FILE_LICENSE_PREFIX = "license_"


def create_cache_key(software_id: str, license_key: str) -> str:
    """
    Build the storage key for a (software id, license key) pair.

    Both parts are percent-encoded, so neither can contain the separator and
    distinct pairs never map to the same key.
    """
    return f"{quote(software_id, safe='')}{CACHE_KEY_SEPARATOR}{quote(license_key, safe='')}"


def default_cache_dir(settings: Settings = default_settings) -> Path:
    if settings.CACHE_DIR:
        return Path(settings.CACHE_DIR).expanduser()
    return Path.home() / ".codecheckout" / "cache"


class StorageBackend(str, Enum):
    SHARED_STORE = "shared_store"
    FILESYSTEM = "filesystem"
    MEMORY = "memory"


# ---------------------------------------------------------------------------
# Validation records
# ---------------------------------------------------------------------------

class CacheStorage(ABC):
    """Keyed store for validation records. No operation ever raises."""

    backend: StorageBackend

    @abstractmethod
    async def get(self, key: str) -> Optional[ValidationRecord]:
        """Return the record stored under `key`, or None."""
        ...

    @abstractmethod
    async def set(self, key: str, record: ValidationRecord) -> None:
        """Store `record` under `key`, replacing any previous record."""
        ...

    @abstractmethod
    async def clear(self) -> None:
        """Remove every record in this backend's namespace, and only those."""
        ...


class MemoryCacheStorage(CacheStorage):
    backend = StorageBackend.MEMORY

    def __init__(self):
        self._records: Dict[str, ValidationRecord] = {}

    async def get(self, key: str) -> Optional[ValidationRecord]:
        record = self._records.get(key)
        return record.model_copy() if record else None

    async def set(self, key: str, record: ValidationRecord) -> None:
        self._records[key] = record.model_copy()

    async def clear(self) -> None:
        self._records.clear()


class SharedStoreCacheStorage(CacheStorage):
    """
    Records kept as JSON strings in the shared key/value table.

    Other applications write to the same table, so keys carry a fixed prefix
    and `clear` only removes prefixed entries.
    """

    backend = StorageBackend.SHARED_STORE

    def __init__(self, session_factory: sessionmaker, prefix: str = SHARED_STORE_VALIDATION_PREFIX):
        self.session_factory = session_factory
        self.prefix = prefix

    async def get(self, key: str) -> Optional[ValidationRecord]:
        try:
            with self.session_factory() as db:
                entry = db.get(LocalStorageEntry, self.prefix + key)
                if entry is None:
                    return None
                data = entry.value
            return ValidationRecord.model_validate(json.loads(data))
        except (ValueError, ValidationError) as e:
            logger.warning("cache_entry_corrupted", backend=self.backend.value, error=str(e))
            return None
        except SQLAlchemyError as e:
            logger.error("cache_read_failed", backend=self.backend.value, error=str(e))
            return None

    async def set(self, key: str, record: ValidationRecord) -> None:
        try:
            with self.session_factory() as db:
                db.merge(LocalStorageEntry(key=self.prefix + key, value=record.model_dump_json()))
                db.commit()
        except SQLAlchemyError as e:
            logger.error("cache_write_failed", backend=self.backend.value, error=str(e))

    async def clear(self) -> None:
        try:
            with self.session_factory() as db:
                keys_to_remove = [
                    stored_key
                    for (stored_key,) in db.query(LocalStorageEntry.key).all()
                    if stored_key.startswith(self.prefix)
                ]
                for stored_key in keys_to_remove:
                    db.query(LocalStorageEntry).filter(LocalStorageEntry.key == stored_key).delete()
                db.commit()
            logger.info("cache_cleared", backend=self.backend.value, removed=len(keys_to_remove))
        except SQLAlchemyError as e:
            logger.error("cache_clear_failed", backend=self.backend.value, error=str(e))


class FileCacheStorage(CacheStorage):
    """One JSON file per record inside a fixed cache directory."""

    backend = StorageBackend.FILESYSTEM

    def __init__(self, cache_dir: Path, prefix: str = FILE_VALIDATION_PREFIX):
        self.cache_dir = Path(cache_dir)
        self.prefix = prefix

    def _path_for(self, key: str) -> Path:
        # Keys may contain characters that are not valid in file names
        return self.cache_dir / f"{self.prefix}{quote(key, safe='')}.json"

    async def get(self, key: str) -> Optional[ValidationRecord]:
        path = self._path_for(key)
        try:
            return ValidationRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (ValueError, ValidationError) as e:
            logger.warning("cache_entry_corrupted", backend=self.backend.value, cache_dir=str(self.cache_dir), error=str(e))
            return None
        except OSError as e:
            logger.error("cache_read_failed", backend=self.backend.value, cache_dir=str(self.cache_dir), error=str(e))
            return None

    async def set(self, key: str, record: ValidationRecord) -> None:
        path = self._path_for(key)
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(record.model_dump_json(), encoding="utf-8")
        except OSError as e:
            logger.error("cache_write_failed", backend=self.backend.value, cache_dir=str(self.cache_dir), error=str(e))

    async def clear(self) -> None:
        removed = 0
        try:
            if not self.cache_dir.exists():
                return
            for entry in self.cache_dir.iterdir():
                if entry.is_file() and entry.name.startswith(self.prefix) and entry.suffix == ".json":
                    entry.unlink()
                    removed += 1
            logger.info("cache_cleared", backend=self.backend.value, removed=removed)
        except OSError as e:
            logger.error("cache_clear_failed", backend=self.backend.value, error=str(e))


# ---------------------------------------------------------------------------
# Last-known-valid license keys
# ---------------------------------------------------------------------------

class LicenseKeyStore(ABC):
    """Software id -> last license key that validated successfully. Never raises."""

    backend: StorageBackend

    @abstractmethod
    async def get(self, software_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set(self, software_id: str, license_key: str) -> None:
        ...


class MemoryLicenseKeyStore(LicenseKeyStore):
    backend = StorageBackend.MEMORY

    def __init__(self):
        self._keys: Dict[str, str] = {}

    async def get(self, software_id: str) -> Optional[str]:
        return self._keys.get(software_id)

    async def set(self, software_id: str, license_key: str) -> None:
        self._keys[software_id] = license_key


class SharedStoreLicenseKeyStore(LicenseKeyStore):
    backend = StorageBackend.SHARED_STORE

    def __init__(self, session_factory: sessionmaker, prefix: str = SHARED_STORE_LICENSE_PREFIX):
        self.session_factory = session_factory
        self.prefix = prefix

    async def get(self, software_id: str) -> Optional[str]:
        try:
            with self.session_factory() as db:
                entry = db.get(LocalStorageEntry, self.prefix + software_id)
                return entry.value if entry else None
        except SQLAlchemyError as e:
            logger.error("license_key_read_failed", backend=self.backend.value, software_id=software_id, error=str(e))
            return None

    async def set(self, software_id: str, license_key: str) -> None:
        try:
            with self.session_factory() as db:
                db.merge(LocalStorageEntry(key=self.prefix + software_id, value=license_key))
                db.commit()
        except SQLAlchemyError as e:
            logger.error("license_key_write_failed", backend=self.backend.value, software_id=software_id, error=str(e))


class FileLicenseKeyStore(LicenseKeyStore):
    backend = StorageBackend.FILESYSTEM

    def __init__(self, cache_dir: Path, prefix: str = FILE_LICENSE_PREFIX):
        self.cache_dir = Path(cache_dir)
        self.prefix = prefix

    def _path_for(self, software_id: str) -> Path:
        return self.cache_dir / f"{self.prefix}{quote(software_id, safe='')}.txt"

    async def get(self, software_id: str) -> Optional[str]:
        path = self._path_for(software_id)
        try:
            return path.read_text(encoding="utf-8").strip() or None
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error("license_key_read_failed", backend=self.backend.value, cache_dir=str(self.cache_dir), error=str(e))
            return None

    async def set(self, software_id: str, license_key: str) -> None:
        path = self._path_for(software_id)
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(license_key, encoding="utf-8")
        except OSError as e:
            logger.error("license_key_write_failed", backend=self.backend.value, cache_dir=str(self.cache_dir), error=str(e))


# ---------------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------------

def _shared_store_available(settings: Settings) -> bool:
    if not settings.SHARED_STORE_URL:
        return False
    session_factory = None
    try:
        session_factory = create_session_factory(settings.SHARED_STORE_URL)
        with session_factory() as db:
            db.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, ImportError) as e:
        # ImportError: the URL names a database driver that is not installed
        logger.warning("shared_store_unavailable", error=str(e))
        return False
    finally:
        # The probe engine is throwaway; create_storage builds the long-lived one
        if session_factory is not None:
            session_factory.kw["bind"].dispose()


def _filesystem_available(settings: Settings) -> bool:
    try:
        cache_dir = default_cache_dir(settings)
    except RuntimeError:
        # Path.home() could not be resolved
        return False

    # The directory itself is created lazily, so probe its nearest existing ancestor
    candidate = cache_dir
    while not candidate.exists():
        if candidate.parent == candidate:
            return False
        candidate = candidate.parent
    return candidate.is_dir() and os.access(candidate, os.W_OK)


def detect_storage_backend(settings: Settings = default_settings) -> StorageBackend:
    """Probe the environment: shared store, then file system, then memory."""
    if _shared_store_available(settings):
        return StorageBackend.SHARED_STORE
    if _filesystem_available(settings):
        return StorageBackend.FILESYSTEM
    return StorageBackend.MEMORY


BackendDetector = Callable[[Settings], StorageBackend]


def create_storage(
    settings: Settings = default_settings,
    detector: BackendDetector = detect_storage_backend,
) -> Tuple[CacheStorage, LicenseKeyStore]:
    """
    Create the validation cache and the license key store.

    `detector` runs exactly once; both stores live on the backend it picks.
    """
    backend = detector(settings)
    logger.info("cache_backend_selected", backend=backend.value)

    if backend == StorageBackend.SHARED_STORE:
        session_factory = create_session_factory(settings.SHARED_STORE_URL)
        return SharedStoreCacheStorage(session_factory), SharedStoreLicenseKeyStore(session_factory)
    if backend == StorageBackend.FILESYSTEM:
        cache_dir = default_cache_dir(settings)
        return FileCacheStorage(cache_dir), FileLicenseKeyStore(cache_dir)
    return MemoryCacheStorage(), MemoryLicenseKeyStore()
