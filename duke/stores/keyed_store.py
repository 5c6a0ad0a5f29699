"""
Typed keyed store over a directory of JSON files.

One file per key, named by the hex of the key bytes, so a sorted listing is
an ordered scan. Writes go through a temp file in the same directory and an
atomic move; removal first renames the file so concurrent removers of the
same key see exactly one winner.
"""

from __future__ import annotations

import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Any, Callable, Generic, Iterator, Optional, Tuple, Type, TypeVar
from uuid import UUID

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError

from ..core.locks import KeyLockRegistry
from ..utils.exceptions import BackendError, DeserializeError, SerializeError
from ..utils.logger import get_logger

logger = get_logger(__name__)

K = TypeVar("K")
V = TypeVar("V")
O = TypeVar("O")

RECORD_SUFFIX = ".json"
TEMP_PREFIX = ".tmp-"
REMOVING_SUFFIX = ".removing"


class KeyCodec(Generic[K]):
    """Maps keys to the raw bytes the store is addressed by."""

    def encode(self, key: K) -> bytes:
        raise NotImplementedError

    def decode(self, raw: bytes) -> K:
        raise NotImplementedError


class UUIDKeyCodec(KeyCodec[UUID]):
    def encode(self, key: UUID) -> bytes:
        return key.bytes

    def decode(self, raw: bytes) -> UUID:
        return UUID(bytes=raw)


class StrKeyCodec(KeyCodec[str]):
    def encode(self, key: str) -> bytes:
        return key.encode("utf-8")

    def decode(self, raw: bytes) -> str:
        return raw.decode("utf-8")


UUID_KEYS = UUIDKeyCodec()
STR_KEYS = StrKeyCodec()


class KeyedStore(Generic[K, V]):
    """
    Strongly-typed view of a persistent byte map.

    Values are (de)serialised with a pydantic TypeAdapter. Bulk iteration
    skips entries that fail to deserialise; direct reads surface the error.
    """

    def __init__(
        self,
        path: Path,
        value_type: Type[V] | Any,
        key_codec: KeyCodec[K] = UUID_KEYS,
        name: Optional[str] = None,
    ):
        self.path = Path(path)
        self.name = name or self.path.name
        self.key_codec = key_codec
        self._adapter: TypeAdapter = TypeAdapter(value_type)
        self._locks = KeyLockRegistry(self.name)
        try:
            self.path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackendError(f"Failed to open store {self.path}: {e}")

    # -- raw layer -----------------------------------------------------

    def _file_for(self, raw_key: bytes) -> Path:
        return self.path / f"{raw_key.hex()}{RECORD_SUFFIX}"

    def _serialize(self, value: V) -> bytes:
        try:
            return self._adapter.dump_json(value)
        except (PydanticSerializationError, ValueError, TypeError) as e:
            raise SerializeError(f"Failed to serialise value for {self.name}: {e}")

    def _deserialize_as(self, adapter: TypeAdapter, data: bytes) -> Any:
        try:
            return adapter.validate_json(data)
        except ValidationError as e:
            raise DeserializeError(f"Failed to deserialise value in {self.name}: {e}")

    def _deserialize(self, data: bytes) -> V:
        return self._deserialize_as(self._adapter, data)

    def _read_raw(self, raw_key: bytes) -> Optional[bytes]:
        try:
            return self._file_for(raw_key).read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise BackendError(f"Failed to read {self.name}/{raw_key.hex()}: {e}")

    def _write_raw(self, raw_key: bytes, data: bytes) -> None:
        """Write bytes atomically."""
        target = self._file_for(raw_key)
        temp_path: Optional[Path] = None
        try:
            with tempfile.NamedTemporaryFile(
                mode="wb", dir=self.path, prefix=TEMP_PREFIX, delete=False
            ) as tf:
                tf.write(data)
                tf.flush()
                os.fsync(tf.fileno())
                temp_path = Path(tf.name)
            # Atomic move/replace
            shutil.move(str(temp_path), str(target))
        except OSError as e:
            if temp_path is not None and temp_path.exists():
                temp_path.unlink()
            raise BackendError(f"Failed to write {self.name}/{raw_key.hex()}: {e}")

    def _take_raw(self, raw_key: bytes) -> Optional[bytes]:
        """Remove the entry and return its bytes. Only one caller can win per stored value."""
        source = self._file_for(raw_key)
        claimed = self.path / f"{TEMP_PREFIX}{raw_key.hex()}.{uuid.uuid4().hex}{REMOVING_SUFFIX}"
        try:
            os.rename(source, claimed)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise BackendError(f"Failed to remove {self.name}/{raw_key.hex()}: {e}")
        try:
            return claimed.read_bytes()
        except OSError as e:
            raise BackendError(f"Failed to read removed {self.name}/{raw_key.hex()}: {e}")
        finally:
            claimed.unlink(missing_ok=True)

    def _iter_raw(self) -> Iterator[Tuple[bytes, bytes]]:
        try:
            names = sorted(
                p.name for p in self.path.iterdir()
                if p.name.endswith(RECORD_SUFFIX) and not p.name.startswith(".")
            )
        except OSError as e:
            logger.error("Failed to list store", store=self.name, error=str(e))
            return
        for filename in names:
            try:
                raw_key = bytes.fromhex(filename[: -len(RECORD_SUFFIX)])
            except ValueError:
                continue
            data = self._read_raw_quiet(raw_key)
            if data is not None:
                yield raw_key, data

    def _read_raw_quiet(self, raw_key: bytes) -> Optional[bytes]:
        try:
            return self._read_raw(raw_key)
        except BackendError as e:
            logger.warning("Skipping unreadable entry", store=self.name, error=str(e))
            return None

    def _decode_key(self, raw_key: bytes) -> Optional[K]:
        try:
            return self.key_codec.decode(raw_key)
        except (ValueError, UnicodeDecodeError):
            return None

    # -- typed API -----------------------------------------------------

    def insert(self, key: K, value: V) -> None:
        self.insert_raw(self.key_codec.encode(key), value)

    def insert_raw(self, raw_key: bytes, value: V) -> None:
        self._write_raw(raw_key, self._serialize(value))

    def fetch(self, key: K) -> Optional[V]:
        data = self._read_raw(self.key_codec.encode(key))
        if data is None:
            return None
        return self._deserialize(data)

    # Removal takes the key's write lock and waits out any guard on the key

    def remove(self, key: K) -> Optional[V]:
        raw_key = self.key_codec.encode(key)
        with self._locks.hold(raw_key):
            data = self._take_raw(raw_key)
        if data is None:
            return None
        return self._deserialize(data)

    def remove_silent(self, key: K) -> bool:
        """Remove without decoding. Returns True if this call removed an entry."""
        raw_key = self.key_codec.encode(key)
        with self._locks.hold(raw_key):
            return self._take_raw(raw_key) is not None

    def remove_held(self, key: K) -> bool:
        """remove_silent for a caller already holding the key via lock_key()."""
        return self._take_raw(self.key_codec.encode(key)) is not None

    def contains_key(self, key: K) -> bool:
        return self._file_for(self.key_codec.encode(key)).exists()

    def items(self) -> Iterator[Tuple[K, V]]:
        """Yield (key, value) for every entry where both decode."""
        for raw_key, data in self._iter_raw():
            key = self._decode_key(raw_key)
            if key is None:
                continue
            try:
                yield key, self._deserialize(data)
            except DeserializeError:
                continue

    def values(self) -> Iterator[V]:
        for raw_key, data in self._iter_raw():
            try:
                yield self._deserialize(data)
            except DeserializeError:
                continue

    def keys(self) -> Iterator[K]:
        for raw_key, _ in self._iter_raw():
            key = self._decode_key(raw_key)
            if key is not None:
                yield key

    def for_each_value(self, f: Callable[[V], None]) -> None:
        for value in self.values():
            f(value)

    def for_each(self, f: Callable[[K, V], None]) -> None:
        for key, value in self.items():
            f(key, value)

    def for_each_key(self, f: Callable[[K, Optional[V]], None]) -> None:
        """Like for_each, but undecodable values are reported as None."""
        for raw_key, data in self._iter_raw():
            key = self._decode_key(raw_key)
            if key is None:
                continue
            try:
                value: Optional[V] = self._deserialize(data)
            except DeserializeError:
                value = None
            f(key, value)

    def retain(self, keep_undeserialisable: bool, predicate: Callable[[V], bool]) -> int:
        """Delete entries the predicate rejects. Returns the number removed."""
        doomed = []
        for raw_key, data in self._iter_raw():
            try:
                keep = predicate(self._deserialize(data))
            except DeserializeError:
                keep = keep_undeserialisable
            if not keep:
                doomed.append(raw_key)

        removed = 0
        for raw_key in doomed:
            try:
                with self._locks.hold(raw_key):
                    # Re-check: a writer may have changed the entry since the scan
                    data = self._read_raw(raw_key)
                    if data is None:
                        continue
                    try:
                        keep = predicate(self._deserialize(data))
                    except DeserializeError:
                        keep = keep_undeserialisable
                    if not keep and self._take_raw(raw_key) is not None:
                        removed += 1
            except BackendError as e:
                logger.warning("Failed to remove entry during retain", store=self.name, error=str(e))
        return removed

    def migrate(self, old_type: Type[O] | Any, f: Callable[[K, O], V]) -> int:
        """Rewrite every entry readable as old_type through f."""
        old_adapter = TypeAdapter(old_type)
        migrated = 0
        for raw_key, data in self._iter_raw():
            key = self._decode_key(raw_key)
            if key is None:
                continue
            try:
                old_value = self._deserialize_as(old_adapter, data)
            except DeserializeError:
                continue
            try:
                self.insert_raw(raw_key, f(key, old_value))
                migrated += 1
            except (SerializeError, BackendError) as e:
                logger.warning("Failed to migrate entry", store=self.name, error=str(e))
        return migrated

    # -- locking -------------------------------------------------------

    def write_lock(self, key: K, timeout_seconds: Optional[float] = None) -> Optional["WriteGuard[K, V]"]:
        """
        Lock the key and return a guard over its current value.

        Returns None (lock released) if the key is absent. Use the guard as
        a context manager; the lock is released on exit.
        """
        return self._lock_raw(self.key_codec.encode(key), timeout_seconds)

    def _lock_raw(self, raw_key: bytes, timeout_seconds: Optional[float] = None) -> Optional["WriteGuard[K, V]"]:
        self._locks.acquire(raw_key, timeout_seconds)
        try:
            data = self._read_raw(raw_key)
            if data is None:
                self._locks.release(raw_key)
                return None
            value = self._deserialize(data)
        except Exception:
            self._locks.release(raw_key)
            raise
        return WriteGuard(self, raw_key, value)

    def lock_key(self, key: K, timeout_seconds: Optional[float] = None):
        """Hold the key's write lock without reading it (for insert-if-absent)."""
        return self._locks.hold(self.key_codec.encode(key), timeout_seconds)

    def for_each_write(self, f: Callable[["WriteGuard[K, V]"], None]) -> None:
        """Call f with a guard for each entry, one key held at a time."""
        for raw_key, _ in list(self._iter_raw()):
            try:
                guard = self._lock_raw(raw_key)
            except DeserializeError:
                continue
            if guard is None:
                continue
            with guard:
                f(guard)


class WriteGuard(Generic[K, V]):
    """
    Holds a key's write lock and its value.

    The value is written back on exit only if it was taken through
    mutable() or replace(), only if the with-block did not raise, and only
    if the entry still exists.
    """

    def __init__(self, store: KeyedStore[K, V], raw_key: bytes, value: V):
        self._store = store
        self._raw_key = raw_key
        self._value = value
        self._mutated = False
        self._released = False

    @property
    def key(self) -> K:
        return self._store.key_codec.decode(self._raw_key)

    @property
    def value(self) -> V:
        return self._value

    @property
    def mutated(self) -> bool:
        return self._mutated

    def mutable(self) -> V:
        self._mutated = True
        return self._value

    def replace(self, value: V) -> None:
        self._value = value
        self._mutated = True

    def release(self, write_back: bool = True) -> None:
        if self._released:
            return
        self._released = True
        try:
            if write_back and self._mutated:
                if self._store._file_for(self._raw_key).exists():
                    self._store.insert_raw(self._raw_key, self._value)
                else:
                    logger.warning(
                        "Entry removed while write guard was held; not writing back",
                        store=self._store.name,
                    )
        except (SerializeError, BackendError) as e:
            logger.error(
                "Failed to re-insert value with write guard",
                store=self._store.name,
                error=str(e),
            )
            raise
        finally:
            self._store._locks.release(self._raw_key)

    def __enter__(self) -> "WriteGuard[K, V]":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release(write_back=exc_type is None)
