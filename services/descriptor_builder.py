"""Face descriptor extraction for profile and classroom reference photos.

Photos are addressed by URL (fetched with ``requests``) or by a local path.
Each photo is decoded with Pillow, converted to RGB and passed to the
inference engine. Batch extraction is tolerant: a photo that cannot be
fetched or analyzed is logged and skipped so the rest of the set still
produces descriptors.
"""

import io
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

import numpy as np
import requests
from PIL import Image, UnidentifiedImageError

from core.inference.engine import InferenceEngine

logger = logging.getLogger(__name__)

ImageFetcher = Callable[[str], np.ndarray]


class ImageFetchError(RuntimeError):
    """Không tải hoặc giải mã được ảnh nguồn."""


def _decode_rgb(data: bytes, source: str) -> np.ndarray:
    try:
        with Image.open(io.BytesIO(data)) as img:
            return np.array(img.convert("RGB"))
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageFetchError(f"Không giải mã được ảnh {source}: {exc}") from exc


def load_image_rgb(source: str, *, timeout: float = 10.0, session: Optional[requests.Session] = None) -> np.ndarray:
    """Tải ảnh từ URL (http/https) hoặc đường dẫn cục bộ và trả về mảng RGB."""
    if source.startswith(("http://", "https://")):
        http = session or requests
        try:
            response = http.get(source, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ImageFetchError(f"Không tải được ảnh {source}: {exc}") from exc
        return _decode_rgb(response.content, source)

    path = Path(source)
    if not path.is_file():
        raise ImageFetchError(f"Không tìm thấy file ảnh {source}")
    return _decode_rgb(path.read_bytes(), source)


@dataclass
class BatchResult:
    descriptors: List[np.ndarray] = field(default_factory=list)
    processed: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)


class DescriptorBuilder:
    """Turns photo sources into face descriptors using the active encoder."""

    def __init__(
        self,
        engine: InferenceEngine,
        *,
        fetch: Optional[ImageFetcher] = None,
        timeout: float = 10.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._engine = engine
        self._timeout = timeout
        self._fetch = fetch or self._default_fetch
        self._logger = logger or logging.getLogger(__name__)
        self._session = requests.Session()

    def _default_fetch(self, source: str) -> np.ndarray:
        return load_image_rgb(source, timeout=self._timeout, session=self._session)

    @property
    def model_name(self) -> str:
        return self._engine.model_name

    def extract_single(self, source: str) -> Optional[np.ndarray]:
        """Descriptor of the most prominent face, or None when no face is found.

        Fetch and model errors propagate to the caller.
        """
        rgb = self._fetch(source)
        face = self._engine.detect_single(rgb)
        if face is None:
            self._logger.info("[DescriptorBuilder] Không phát hiện khuôn mặt trong %s", source)
            return None
        return face.descriptor

    def extract_all(self, source: str) -> List[np.ndarray]:
        rgb = self._fetch(source)
        return [face.descriptor for face in self._engine.detect_all(rgb)]

    def extract_set(self, sources: Iterable[str]) -> BatchResult:
        """Every face of every photo, flattened into one list."""
        result = BatchResult()
        sources = list(sources)
        self._logger.info("[DescriptorBuilder] Bắt đầu trích xuất %d ảnh", len(sources))

        for source in sources:
            try:
                descriptors = self.extract_all(source)
            except Exception as exc:
                self._logger.error("[DescriptorBuilder] ❌ Bỏ qua ảnh %s: %s", source, exc)
                result.failures.append((source, str(exc)))
                continue
            result.processed += 1
            result.descriptors.extend(descriptors)
            self._logger.debug("[DescriptorBuilder] %s -> %d khuôn mặt", source, len(descriptors))

        self._logger.info(
            "[DescriptorBuilder] Hoàn thành: %d descriptor từ %d/%d ảnh",
            len(result.descriptors),
            result.processed,
            len(sources),
        )
        return result


__all__ = ["BatchResult", "DescriptorBuilder", "ImageFetchError", "ImageFetcher", "load_image_rgb"]
