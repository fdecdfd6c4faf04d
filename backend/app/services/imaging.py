"""
KitForge Imaging Utilities
Raster/mask containers, byte decoding and encoding, mask resizing.
"""
import io
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from app.config import config

PNG_MAGIC = b'\x89PNG\r\n\x1a\n'
JPEG_MAGIC = b'\xff\xd8\xff'


class ImageDecodeError(ValueError):
    """Bytes could not be decoded into an image."""
    pass


@dataclass
class RasterImage:
    """RGBA 8-bit image; ``pixels`` has shape (height, width, 4)."""

    pixels: np.ndarray

    def __post_init__(self):
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 4:
            raise ValueError(f"RasterImage expects (H, W, 4) pixels, got {self.pixels.shape}")
        if self.pixels.dtype != np.uint8:
            raise ValueError(f"RasterImage expects uint8 pixels, got {self.pixels.dtype}")
        if self.pixels.shape[0] == 0 or self.pixels.shape[1] == 0:
            raise ValueError("RasterImage dimensions must be non-zero")

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def rgb(self) -> np.ndarray:
        return self.pixels[..., :3]

    @property
    def alpha(self) -> np.ndarray:
        return self.pixels[..., 3]

    def copy(self) -> "RasterImage":
        return RasterImage(self.pixels.copy())

    @classmethod
    def from_rgb(cls, rgb: np.ndarray, alpha: Optional[np.ndarray] = None) -> "RasterImage":
        """Build an RGBA image from an (H, W, 3) array, opaque unless alpha is given."""
        h, w = rgb.shape[:2]
        if alpha is None:
            alpha = np.full((h, w), 255, dtype=np.uint8)
        pixels = np.dstack([rgb.astype(np.uint8), alpha.astype(np.uint8)])
        return cls(pixels)


@dataclass
class Mask:
    """Single channel region mask; values >= threshold are inside the region."""

    role: str
    values: np.ndarray

    def __post_init__(self):
        if self.values.ndim != 2:
            raise ValueError(f"Mask '{self.role}' must be single channel, got {self.values.shape}")
        if self.values.size == 0:
            raise ValueError(f"Mask '{self.role}' is empty")
        if self.values.dtype != np.uint8:
            self.values = np.clip(self.values, 0, 255).astype(np.uint8)

    @property
    def width(self) -> int:
        return int(self.values.shape[1])

    @property
    def height(self) -> int:
        return int(self.values.shape[0])

    def inside(self, threshold: int = None) -> np.ndarray:
        """Boolean array marking pixels inside the region."""
        if threshold is None:
            threshold = config.MASK_THRESHOLD
        return self.values >= threshold

    def coverage(self, threshold: int = None) -> float:
        """Fraction of pixels inside the region."""
        return float(np.count_nonzero(self.inside(threshold))) / self.values.size

    def resized_to(self, width: int, height: int) -> "Mask":
        """Return this mask at (width, height) using nearest-neighbour sampling."""
        if self.width == width and self.height == height:
            return self
        resized = cv2.resize(self.values, (width, height), interpolation=cv2.INTER_NEAREST)
        return Mask(self.role, resized)

    def without_boxes(self, boxes: Iterable[Tuple[float, float, float, float]]) -> "Mask":
        """Clear rectangular (x, y, w, h) areas so they fall outside the region."""
        cleared = self.values.copy()
        for x, y, w, h in boxes:
            x1 = max(0, int(np.floor(x)))
            y1 = max(0, int(np.floor(y)))
            x2 = min(self.width, int(np.ceil(x + w)))
            y2 = min(self.height, int(np.ceil(y + h)))
            if x2 > x1 and y2 > y1:
                cleared[y1:y2, x1:x2] = 0
        return Mask(self.role, cleared)


def validate_magic_bytes(file_bytes: bytes) -> str:
    """
    Validate file magic bytes to ensure the payload is a supported image.

    Returns:
        Detected MIME type

    Raises:
        ImageDecodeError: for empty, oversized or unknown payloads
    """
    if len(file_bytes) < 8:
        raise ImageDecodeError("File too small or corrupt")
    if len(file_bytes) > config.MAX_FILE_MB * 1024 * 1024:
        raise ImageDecodeError(f"File too large. Maximum size: {config.MAX_FILE_MB}MB")

    if file_bytes.startswith(JPEG_MAGIC):
        mime_type = "image/jpeg"
    elif file_bytes.startswith(PNG_MAGIC):
        mime_type = "image/png"
    else:
        raise ImageDecodeError("Invalid image file. Magic bytes don't match supported formats.")

    if mime_type not in config.SUPPORTED_MIME_TYPES:
        raise ImageDecodeError(f"Unsupported image type: {mime_type}")
    return mime_type


def _open(file_bytes: bytes) -> Image.Image:
    validate_magic_bytes(file_bytes)
    try:
        pil_image = Image.open(io.BytesIO(file_bytes))
        pil_image.load()
    except Exception as e:
        raise ImageDecodeError(f"Failed to decode image: {str(e)}") from e
    return pil_image


def decode_image(file_bytes: bytes) -> RasterImage:
    """Decode PNG/JPEG bytes into an RGBA raster (opaque alpha for images without one)."""
    pil_image = _open(file_bytes)
    if pil_image.mode != "RGBA":
        pil_image = pil_image.convert("RGBA")
    return RasterImage(np.array(pil_image, dtype=np.uint8))


def decode_mask(file_bytes: bytes, role: str) -> Mask:
    """Decode mask bytes into a grayscale Mask."""
    pil_image = _open(file_bytes)
    if pil_image.mode != "L":
        pil_image = pil_image.convert("L")
    return Mask(role, np.array(pil_image, dtype=np.uint8))


def encode_png(image: RasterImage) -> bytes:
    """Encode an RGBA raster as PNG bytes."""
    bgra = cv2.cvtColor(image.pixels, cv2.COLOR_RGBA2BGRA)
    success, buffer = cv2.imencode(".png", bgra)
    if not success:
        raise RuntimeError("Failed to encode RGBA as PNG")
    return buffer.tobytes()


def encode_mask_png(mask: Mask) -> bytes:
    """Encode a mask as single channel PNG bytes."""
    success, buffer = cv2.imencode(".png", mask.values)
    if not success:
        raise RuntimeError("Failed to encode mask as PNG")
    return buffer.tobytes()
