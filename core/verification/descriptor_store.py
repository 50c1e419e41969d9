"""Content-addressed cache of reference face descriptors.

An entry is valid iff its ``source_fingerprint`` equals the fingerprint of
the current source content and it was produced by the active encoder. The
store is shared between sessions; writes are last-writer-wins.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Union

import numpy as np

from core.inference.engine import InferenceError

from .directory import Department, UserProfile

logger = logging.getLogger(__name__)

NO_PHOTOS = "no-photos"

Descriptor = np.ndarray
DescriptorValue = Union[Descriptor, List[Descriptor]]


class DescriptorExtractionError(RuntimeError):
    """Raised when reference descriptors could not be extracted at all."""


class DescriptorExtractor(Protocol):
    @property
    def model_name(self) -> str:
        ...

    def extract_single(self, source: str) -> Optional[Descriptor]:
        ...

    def extract_set(self, sources: Iterable[str]) -> Any:
        ...


# ----------------------------------------------------------------------
# Keys and fingerprints
# ----------------------------------------------------------------------
def profile_key(uid: str) -> str:
    return f"profile:{uid}"


def classroom_env_key(department_id: str) -> str:
    return f"classroom-env:{department_id}"


def classroom_student_key(department_id: str) -> str:
    return f"classroom-student:{department_id}"


def photo_fingerprint(url: str) -> str:
    return url


def photo_set_fingerprint(urls: Iterable[str]) -> str:
    """Order-independent fingerprint of a photo set."""
    unique = sorted(set(u for u in urls if u))
    if not unique:
        return NO_PHOTOS
    digest = hashlib.sha256("\n".join(unique).encode("utf-8")).hexdigest()
    return f"sha256:{digest}"


# ----------------------------------------------------------------------
# Entries and backends
# ----------------------------------------------------------------------
@dataclass
class DescriptorCacheEntry:
    key: str
    descriptor: DescriptorValue
    source_fingerprint: str
    created_at: float
    model: str

    @property
    def is_set(self) -> bool:
        return isinstance(self.descriptor, list)

    def descriptors(self) -> List[Descriptor]:
        if isinstance(self.descriptor, list):
            return list(self.descriptor)
        return [self.descriptor]

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.descriptor, list):
            payload: Any = [d.tolist() for d in self.descriptor]
        else:
            payload = self.descriptor.tolist()
        return {
            "key": self.key,
            "descriptor": payload,
            "is_set": self.is_set,
            "source_fingerprint": self.source_fingerprint,
            "created_at": self.created_at,
            "model": self.model,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DescriptorCacheEntry":
        raw = data["descriptor"]
        if data.get("is_set"):
            descriptor: DescriptorValue = [np.asarray(d, dtype="float32") for d in raw]
        else:
            descriptor = np.asarray(raw, dtype="float32")
        return cls(
            key=data["key"],
            descriptor=descriptor,
            source_fingerprint=data["source_fingerprint"],
            created_at=float(data["created_at"]),
            model=data.get("model", ""),
        )


@dataclass(frozen=True)
class CacheStatus:
    needs_update: bool
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"needs_update": self.needs_update, "reason": self.reason}


class MemoryBackend:
    """Process-local key/value storage (session scope)."""

    def __init__(self) -> None:
        self._entries: Dict[str, DescriptorCacheEntry] = {}

    def get(self, key: str) -> Optional[DescriptorCacheEntry]:
        return self._entries.get(key)

    def set(self, entry: DescriptorCacheEntry) -> None:
        self._entries[entry.key] = entry

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def keys(self) -> List[str]:
        return list(self._entries)


class JsonFileBackend(MemoryBackend):
    """Memory backend mirrored to a JSON file after every write."""

    def __init__(self, path: Union[str, Path]) -> None:
        super().__init__()
        self._path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            with self._path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.error("[DescriptorStore] ❌ Không đọc được cache %s: %s", self._path, exc)
            return
        for item in data.get("entries", []):
            try:
                entry = DescriptorCacheEntry.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("[DescriptorStore] Bỏ qua entry hỏng: %s", exc)
                continue
            self._entries[entry.key] = entry
        logger.info("[DescriptorStore] Loaded %d entries from %s", len(self._entries), self._path)

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump({"entries": [e.to_dict() for e in self._entries.values()]}, fh)
        os.replace(tmp, self._path)

    def set(self, entry: DescriptorCacheEntry) -> None:
        super().set(entry)
        self._flush()

    def delete(self, key: str) -> bool:
        removed = super().delete(key)
        if removed:
            self._flush()
        return removed


# ----------------------------------------------------------------------
# Store
# ----------------------------------------------------------------------
class DescriptorStore:
    """get/status/update/clear over keyed descriptor entries."""

    def __init__(
        self,
        extractor: DescriptorExtractor,
        *,
        backend: Optional[MemoryBackend] = None,
        clock=None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._extractor = extractor
        self._backend = backend if backend is not None else MemoryBackend()
        self._clock = clock or time.time
        self._logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._version = 0
        self._last_write: Optional[float] = None

    def _active_model(self) -> Optional[str]:
        try:
            return self._extractor.model_name
        except InferenceError:
            return None

    # ------------------------------------------------------------------
    # Generic key API
    # ------------------------------------------------------------------
    def get_entry(self, key: str) -> Optional[DescriptorCacheEntry]:
        with self._lock:
            return self._backend.get(key)

    def get(self, key: str) -> Optional[DescriptorValue]:
        entry = self.get_entry(key)
        return None if entry is None else entry.descriptor

    def status(self, key: str, current_fingerprint: str) -> CacheStatus:
        entry = self.get_entry(key)
        if entry is None:
            return CacheStatus(True, "missing")
        if entry.source_fingerprint != current_fingerprint:
            return CacheStatus(True, "source-changed")
        model = self._active_model()
        if model is not None and entry.model != model:
            return CacheStatus(True, "model-changed")
        return CacheStatus(False, "up-to-date")

    def valid(self, key: str, current_fingerprint: str) -> Optional[DescriptorCacheEntry]:
        if self.status(key, current_fingerprint).needs_update:
            return None
        return self.get_entry(key)

    def clear(self, key: str) -> bool:
        with self._lock:
            removed = self._backend.delete(key)
            if removed:
                self._touch()
        if removed:
            self._logger.info("[DescriptorStore] Cleared %s", key)
        return removed

    def _touch(self) -> None:
        self._version += 1
        self._last_write = self._clock()

    def _store(self, key: str, value: DescriptorValue, fingerprint: str, model: str) -> DescriptorCacheEntry:
        entry = DescriptorCacheEntry(
            key=key,
            descriptor=value,
            source_fingerprint=fingerprint,
            created_at=self._clock(),
            model=model,
        )
        with self._lock:
            self._backend.set(entry)
            self._touch()
        return entry

    def update(
        self,
        key: str,
        source: Union[str, Sequence[str]],
        fingerprint: Optional[str] = None,
    ) -> Optional[DescriptorCacheEntry]:
        """Recompute the entry for ``key`` from one photo or a photo set.

        Returns the stored entry, or None when no face was found (the entry is
        cleared). On extraction failure the prior entry is left untouched.
        """
        try:
            model = self._extractor.model_name
        except InferenceError as exc:
            raise DescriptorExtractionError(str(exc)) from exc

        if isinstance(source, str):
            try:
                descriptor = self._extractor.extract_single(source)
            except Exception as exc:
                self._logger.error("[DescriptorStore] ❌ Không trích xuất được %s: %s", key, exc)
                raise DescriptorExtractionError(f"Could not analyze photo: {exc}") from exc
            if descriptor is None:
                self._logger.info("[DescriptorStore] Không có khuôn mặt cho %s, xóa entry", key)
                self.clear(key)
                return None
            entry = self._store(key, descriptor, fingerprint or photo_fingerprint(source), model)
            self._logger.info("[DescriptorStore] ✅ Updated %s (1 descriptor)", key)
            return entry

        urls = list(source)
        set_fingerprint = fingerprint or photo_set_fingerprint(urls)
        if not urls:
            self.clear(key)
            return None

        result = self._extractor.extract_set(urls)
        if result.processed == 0:
            self._logger.error("[DescriptorStore] ❌ Tất cả %d ảnh của %s đều lỗi", len(urls), key)
            raise DescriptorExtractionError(f"None of the {len(urls)} photos could be analyzed")
        if not result.descriptors:
            self._logger.info("[DescriptorStore] Không có khuôn mặt trong bộ ảnh %s, xóa entry", key)
            self.clear(key)
            return None

        entry = self._store(key, list(result.descriptors), set_fingerprint, model)
        self._logger.info(
            "[DescriptorStore] ✅ Updated %s (%d descriptors, %d photos skipped)",
            key,
            len(result.descriptors),
            len(result.failures),
        )
        return entry

    def describe(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "entries": len(self._backend.keys()),
                "version": self._version,
                "last_write": self._last_write,
                "model": self._active_model(),
            }

    # ------------------------------------------------------------------
    # Profile helpers
    # ------------------------------------------------------------------
    def profile_status(self, user: UserProfile) -> CacheStatus:
        if not user.profile_image:
            return CacheStatus(False, "no-profile-image")
        return self.status(profile_key(user.uid), photo_fingerprint(user.profile_image))

    def refresh_profile(self, user: UserProfile, force: bool = False) -> Optional[DescriptorCacheEntry]:
        key = profile_key(user.uid)
        if not user.profile_image:
            self.clear(key)
            return None
        if not force and not self.profile_status(user).needs_update:
            return self.get_entry(key)
        return self.update(key, user.profile_image)

    def profile_descriptor(self, user: UserProfile) -> Optional[Descriptor]:
        if not user.profile_image:
            return None
        entry = self.valid(profile_key(user.uid), photo_fingerprint(user.profile_image))
        if entry is None:
            return None
        return entry.descriptors()[0]

    # ------------------------------------------------------------------
    # Classroom helpers
    # ------------------------------------------------------------------
    def _classroom_sources(self, department: Department) -> Dict[str, List[str]]:
        return {
            classroom_env_key(department.id): department.embedded_classroom_urls(),
            classroom_student_key(department.id): department.embedded_student_urls(),
        }

    def _set_status(self, key: str, fingerprint: str) -> CacheStatus:
        # an empty set has nothing to cache once its entry is gone
        if fingerprint == NO_PHOTOS and self.get_entry(key) is None:
            return CacheStatus(False, NO_PHOTOS)
        return self.status(key, fingerprint)

    def classroom_status(self, department: Department) -> Dict[str, CacheStatus]:
        return {
            key: self._set_status(key, photo_set_fingerprint(urls))
            for key, urls in self._classroom_sources(department).items()
        }

    def refresh_classroom(self, department: Department, force: bool = False) -> Dict[str, Optional[DescriptorCacheEntry]]:
        """Rebuild both classroom photo sets; a failing set does not stop the other.

        Raises only when every set that needed rebuilding failed.
        """
        results: Dict[str, Optional[DescriptorCacheEntry]] = {}
        errors: List[str] = []
        attempted = 0
        for key, urls in self._classroom_sources(department).items():
            fingerprint = photo_set_fingerprint(urls)
            if not force and not self._set_status(key, fingerprint).needs_update:
                results[key] = self.get_entry(key)
                continue
            attempted += 1
            try:
                results[key] = self.update(key, urls, fingerprint)
            except DescriptorExtractionError as exc:
                errors.append(f"{key}: {exc}")
                results[key] = self.get_entry(key)
        if errors:
            self._logger.warning("[DescriptorStore] Classroom refresh errors: %s", "; ".join(errors))
            if len(errors) == attempted:
                raise DescriptorExtractionError("; ".join(errors))
        return results

    def classroom_descriptors(self, department: Department) -> List[Descriptor]:
        """Valid descriptors from both classroom photo sets, flattened."""
        out: List[Descriptor] = []
        for key, urls in self._classroom_sources(department).items():
            entry = self.valid(key, photo_set_fingerprint(urls))
            if entry is not None:
                out.extend(entry.descriptors())
        return out


__all__ = [
    "CacheStatus",
    "DescriptorCacheEntry",
    "DescriptorExtractionError",
    "DescriptorStore",
    "JsonFileBackend",
    "MemoryBackend",
    "NO_PHOTOS",
    "classroom_env_key",
    "classroom_student_key",
    "photo_fingerprint",
    "photo_set_fingerprint",
    "profile_key",
]
