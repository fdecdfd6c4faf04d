"""
Color space math for the recolor engine.

sRGB <-> XYZ <-> CIE Lab conversions under the D65 illuminant, plus the
Euclidean Lab distance used as the perceptual similarity metric everywhere
(clustering, color target checks). All conversions are vectorised: they accept
arrays shaped ``(..., 3)`` and return arrays of the same leading shape.
"""
import re
from dataclasses import dataclass
from typing import Iterable, Tuple, Union

import numpy as np

ArrayLike = Union[np.ndarray, Iterable[float]]

# sRGB (D65, 2 degree observer) to XYZ
SRGB_TO_XYZ = np.array([
    [0.4124564, 0.3575761, 0.1804375],
    [0.2126729, 0.7151522, 0.0721750],
    [0.0193339, 0.1191920, 0.9503041],
])
XYZ_TO_SRGB = np.linalg.inv(SRGB_TO_XYZ)

# CIE 1931 D65 reference white
D65_WHITE = np.array([95.047, 100.0, 108.883])

LAB_EPSILON = 0.008856  # (6/29)^3
LAB_SLOPE = 7.787
LAB_OFFSET = 16.0 / 116.0

_HEX_RE = re.compile(r"^#?([0-9A-Fa-f]{6})$")


@dataclass(frozen=True)
class LabColor:
    """Device independent perceptual color."""

    L: float
    a: float
    b: float

    def as_array(self) -> np.ndarray:
        return np.array([self.L, self.a, self.b], dtype=np.float64)

    @classmethod
    def from_array(cls, values: ArrayLike) -> "LabColor":
        L, a, b = (float(v) for v in np.asarray(values, dtype=np.float64).reshape(3))
        return cls(L, a, b)


def rgb_to_xyz(rgb: ArrayLike) -> np.ndarray:
    """Convert 8-bit sRGB values to XYZ scaled to Y=100 for white."""
    c = np.asarray(rgb, dtype=np.float64) / 255.0
    linear = np.where(c > 0.04045, ((c + 0.055) / 1.055) ** 2.4, c / 12.92)
    return (linear * 100.0) @ SRGB_TO_XYZ.T


def xyz_to_lab(xyz: ArrayLike) -> np.ndarray:
    """Convert XYZ to Lab relative to the D65 white."""
    t = np.asarray(xyz, dtype=np.float64) / D65_WHITE
    f = np.where(t > LAB_EPSILON, np.cbrt(t), LAB_SLOPE * t + LAB_OFFSET)
    L = 116.0 * f[..., 1] - 16.0
    a = 500.0 * (f[..., 0] - f[..., 1])
    b = 200.0 * (f[..., 1] - f[..., 2])
    return np.stack([L, a, b], axis=-1)


def rgb_to_lab(rgb: ArrayLike) -> np.ndarray:
    return xyz_to_lab(rgb_to_xyz(rgb))


def lab_to_xyz(lab: ArrayLike) -> np.ndarray:
    lab = np.asarray(lab, dtype=np.float64)
    fy = (lab[..., 0] + 16.0) / 116.0
    fx = lab[..., 1] / 500.0 + fy
    fz = fy - lab[..., 2] / 200.0
    f = np.stack([fx, fy, fz], axis=-1)
    cube = f ** 3
    t = np.where(cube > LAB_EPSILON, cube, (f - LAB_OFFSET) / LAB_SLOPE)
    return t * D65_WHITE


def xyz_to_rgb(xyz: ArrayLike) -> np.ndarray:
    """Convert XYZ back to 8-bit sRGB, clamped and rounded."""
    linear = (np.asarray(xyz, dtype=np.float64) / 100.0) @ XYZ_TO_SRGB.T
    positive = np.maximum(linear, 0.0)
    srgb = np.where(linear > 0.0031308, 1.055 * positive ** (1.0 / 2.4) - 0.055, 12.92 * linear)
    return np.clip(np.rint(srgb * 255.0), 0, 255).astype(np.uint8)


def lab_to_rgb(lab: ArrayLike) -> np.ndarray:
    return xyz_to_rgb(lab_to_xyz(lab))


def lab_distance(a: ArrayLike, b: ArrayLike) -> Union[float, np.ndarray]:
    """Euclidean (CIE76) distance between Lab colors; broadcasts over arrays."""
    if isinstance(a, LabColor):
        a = a.as_array()
    if isinstance(b, LabColor):
        b = b.as_array()
    diff = np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)
    dist = np.sqrt(np.sum(diff * diff, axis=-1))
    return float(dist) if np.ndim(dist) == 0 else dist


def normalize_hex(value: str) -> str:
    """Return ``#RRGGBB`` upper-case or raise ValueError for unparseable input."""
    match = _HEX_RE.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValueError(f"Invalid hex color: {value!r}")
    return f"#{match.group(1).upper()}"


def hex_to_rgb(hex_color: str) -> Tuple[int, int, int]:
    """Convert hex color string to RGB tuple."""
    digits = normalize_hex(hex_color)[1:]
    return tuple(int(digits[i:i + 2], 16) for i in (0, 2, 4))


def rgb_to_hex(rgb_u8: ArrayLike) -> str:
    """Convert RGB uint8 triple to hex color string."""
    r, g, b = [int(x) for x in np.asarray(rgb_u8).reshape(3)]
    return f"#{r:02X}{g:02X}{b:02X}"


def hex_to_lab(hex_color: str) -> LabColor:
    return LabColor.from_array(rgb_to_lab(hex_to_rgb(hex_color)))


def lab_color_to_rgb(lab: LabColor) -> Tuple[int, int, int]:
    r, g, b = lab_to_rgb(lab.as_array())
    return int(r), int(g), int(b)
