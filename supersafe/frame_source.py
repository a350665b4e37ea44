"""
Frame Sources

Supply the current frame as an encoded still image on demand.

- ImageFileFrameSource: one image file, or every image in a directory in turn
- CameraFrameSource: local camera through OpenCV (pip install supersafe[camera])
"""

import asyncio
import logging
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

try:
    import cv2
    HAS_CV2 = True
except ImportError:
    HAS_CV2 = False
    cv2 = None

from .config import config
from .exceptions import ConfigurationError, FrameSourceError
from .models import EncodedImage

logger = logging.getLogger(__name__)

IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".webp")


class FrameSource(ABC):
    """Pull-based frame provider."""

    @property
    @abstractmethod
    def is_ready(self) -> bool:
        """True once frames can be captured."""

    def open(self) -> None:
        """Acquire the underlying device or files."""

    def close(self) -> None:
        """Release the underlying device."""

    @abstractmethod
    async def capture(self) -> EncodedImage:
        """Current frame. Raises FrameSourceError when none is available."""


class ImageFileFrameSource(FrameSource):
    """Serves a single image or cycles through a directory of images."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._files: List[Path] = []
        self._index = 0

    @property
    def is_ready(self) -> bool:
        return bool(self._files)

    def open(self) -> None:
        if self.path.is_dir():
            files = sorted(
                p for p in self.path.iterdir() if p.suffix.lower() in IMAGE_SUFFIXES
            )
        elif self.path.is_file():
            files = [self.path]
        else:
            raise FrameSourceError(f"Image source not found: {self.path}")

        if not files:
            raise FrameSourceError(f"No images in {self.path}")
        self._files = files
        self._index = 0
        logger.info(f"Serving {len(files)} image(s) from {self.path}")

    def close(self) -> None:
        self._files = []

    async def capture(self) -> EncodedImage:
        if not self._files:
            raise FrameSourceError("Image source is not open")

        path = self._files[self._index % len(self._files)]
        self._index += 1
        try:
            data = path.read_bytes()
        except OSError as e:
            raise FrameSourceError(f"Cannot read {path}: {e}") from e

        mime_type, _ = mimetypes.guess_type(str(path))
        return EncodedImage(data=data, mime_type=mime_type or "image/jpeg")


def output_size(native_width: int, native_height: int, width: int = 0, height: int = 0) -> Tuple[int, int]:
    """Size frames are encoded at.

    A zero width or height means "not configured": with both unset the
    native size is kept, with one unset it follows the native aspect ratio.
    """
    if width > 0 and height > 0:
        return width, height
    if width > 0:
        return width, max(1, round(native_height * width / native_width))
    if height > 0:
        return max(1, round(native_width * height / native_height)), height
    return native_width, native_height


@dataclass
class CameraConfig:
    """Camera capture configuration. Width/height 0 keeps the native size."""
    device: int = 0
    width: int = 0
    height: int = 0
    jpeg_quality: int = 70

    @classmethod
    def from_env(cls) -> "CameraConfig":
        return cls(
            device=config.get_int("SS_CAMERA_DEVICE", 0),
            width=config.get_int("SS_FRAME_WIDTH", 0),
            height=config.get_int("SS_FRAME_HEIGHT", 0),
            jpeg_quality=config.get_int("SS_JPEG_QUALITY", 70),
        )


class CameraFrameSource(FrameSource):
    """Local camera via OpenCV. Reads run in the default executor."""

    def __init__(self, camera_config: Optional[CameraConfig] = None):
        self.config = camera_config or CameraConfig.from_env()
        self._cap = None

    @property
    def is_ready(self) -> bool:
        return self._cap is not None and self._cap.isOpened()

    def open(self) -> None:
        if not HAS_CV2:
            raise ConfigurationError("OpenCV required for camera capture: pip install supersafe[camera]")

        cap = cv2.VideoCapture(self.config.device)
        if not cap.isOpened():
            cap.release()
            raise FrameSourceError(
                f"Unable to access camera {self.config.device}. Check permissions and try again."
            )
        cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        self._cap = cap
        logger.info(f"Camera {self.config.device} opened")

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None

    def _grab(self) -> bytes:
        ok, frame = self._cap.read()
        if not ok or frame is None:
            raise FrameSourceError("Camera returned no frame")

        height, width = frame.shape[:2]
        size = output_size(width, height, self.config.width, self.config.height)
        if size != (width, height):
            frame = cv2.resize(frame, size)

        ok, jpeg = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, self.config.jpeg_quality])
        if not ok:
            raise FrameSourceError("JPEG encoding failed")
        return jpeg.tobytes()

    async def capture(self) -> EncodedImage:
        if not self.is_ready:
            raise FrameSourceError("Camera is not open")
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, self._grab)
        return EncodedImage(data=data, mime_type="image/jpeg")
