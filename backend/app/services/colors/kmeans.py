"""
Dominant color extraction for colorway suggestions.

This module implements k-means clustering in CIE Lab space over the pixels of
a (optionally masked) reference image:
- pixel collection under a mask with the shared inside threshold
- fixed-stride subsampling to bound clustering cost
- Lloyd iterations with empty-cluster reseeding and convergence detection
- exact cluster sizes recomputed over the full pixel set
"""

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from loguru import logger
from sklearn.metrics import pairwise_distances_argmin

from app.config import config
from app.errors import EmptyRegionError
from app.services.colors.lab import LabColor, lab_to_rgb, rgb_to_hex, rgb_to_lab
from app.services.imaging import Mask, RasterImage, decode_image, decode_mask
from app.services.reliability import TimeoutManager
from app.utils.metrics import get_metrics

NEUTRAL_GRAY_HEX = "#808080"


@dataclass(frozen=True)
class ColorCluster:
    """One k-means cluster: Lab centroid, its RGB/hex rendering and its share."""

    lab_centroid: LabColor
    rgb_centroid: Tuple[int, int, int]
    hex: str
    pixel_count: int
    proportion: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hex": self.hex,
            "rgb": list(self.rgb_centroid),
            "lab": [self.lab_centroid.L, self.lab_centroid.a, self.lab_centroid.b],
            "pixel_count": self.pixel_count,
            "proportion": self.proportion,
        }


NEUTRAL_GRAY_CLUSTER = ColorCluster(
    lab_centroid=LabColor(50.0, 0.0, 0.0),
    rgb_centroid=(128, 128, 128),
    hex=NEUTRAL_GRAY_HEX,
    pixel_count=0,
    proportion=0.0,
)


@dataclass(frozen=True)
class DominantColors:
    """Three-color suggestion derived from the largest clusters."""

    primary: str
    secondary: str
    tertiary: str
    clusters: Tuple[ColorCluster, ...]

    def as_colorway(self) -> Dict[str, str]:
        return {"primary": self.primary, "secondary": self.secondary, "tertiary": self.tertiary}


def collect_region_pixels(image: RasterImage, mask: Optional[Mask] = None,
                          threshold: Optional[int] = None) -> np.ndarray:
    """
    Gather the RGB values of every pixel inside the mask.

    The mask is resized with nearest-neighbour sampling when its size differs
    from the image. Without a mask every pixel is returned.

    Returns:
        (N, 3) uint8 array in row-major pixel order
    """
    rgb = image.rgb
    if mask is None:
        return rgb.reshape(-1, 3)
    mask = mask.resized_to(image.width, image.height)
    return rgb[mask.inside(threshold)]


def stride_sample(values: np.ndarray, max_samples: int) -> np.ndarray:
    """Deterministically subsample with a fixed stride of ceil(n / max_samples)."""
    n = len(values)
    if n <= max_samples:
        return values
    stride = math.ceil(n / max_samples)
    return values[::stride]


def _nearest_centroid(points: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    return pairwise_distances_argmin(points, centroids, metric="euclidean")


def cluster(image: RasterImage,
            mask: Optional[Mask] = None,
            k: int = 3,
            max_iterations: Optional[int] = None,
            rng: Optional[np.random.Generator] = None,
            max_samples: Optional[int] = None) -> List[ColorCluster]:
    """
    Cluster region pixels into ``k`` Lab centroids.

    Args:
        image: Reference image
        mask: Optional region mask (values >= threshold are sampled)
        k: Number of clusters
        max_iterations: Lloyd iteration cap (default from config, 20)
        rng: Random generator used for centroid seeding; pass a seeded one for
            reproducible results
        max_samples: Cap on the number of pixels used while iterating

    Returns:
        Clusters sorted by pixel_count descending. Counts and proportions are
        measured against every collected pixel, not just the sample.

    Raises:
        EmptyRegionError: if the mask selects no pixels
        ValueError: if k < 1
    """
    if k < 1:
        raise ValueError(f"k must be positive, got {k}")
    if max_iterations is None:
        max_iterations = config.KMEANS_MAX_ITERATIONS
    if max_samples is None:
        max_samples = config.KMEANS_MAX_SAMPLES
    if rng is None:
        rng = np.random.default_rng()

    logger.debug(f"[K-means] Starting with k={k}, max_iterations={max_iterations}")

    pixels_rgb = collect_region_pixels(image, mask)
    if len(pixels_rgb) == 0:
        raise EmptyRegionError("No pixels found inside mask")

    pixels_lab = rgb_to_lab(pixels_rgb)
    sample = stride_sample(pixels_lab, max_samples)
    logger.debug(f"[K-means] Collected {len(pixels_lab)} pixels, clustering on {len(sample)} samples")

    centroids = sample[rng.integers(0, len(sample), size=k)].copy()
    assignments = np.full(len(sample), -1, dtype=np.int64)
    reseeded = False

    for iteration in range(max_iterations):
        new_assignments = _nearest_centroid(sample, centroids)
        if np.array_equal(new_assignments, assignments) and not reseeded:
            logger.debug(f"[K-means] Converged at iteration {iteration + 1}")
            break
        assignments = new_assignments
        reseeded = False

        counts = np.bincount(assignments, minlength=k)
        sums = np.stack(
            [np.bincount(assignments, weights=sample[:, ch], minlength=k) for ch in range(3)],
            axis=1,
        )
        for c in range(k):
            if counts[c] == 0:
                # a reseeded centroid needs another assignment pass
                centroids[c] = sample[rng.integers(0, len(sample))]
                reseeded = True
            else:
                centroids[c] = sums[c] / counts[c]

    # Exact membership over the full pixel set
    full_assignments = _nearest_centroid(pixels_lab, centroids)
    full_counts = np.bincount(full_assignments, minlength=k)
    total = len(pixels_lab)

    clusters = []
    for c in range(k):
        rgb = lab_to_rgb(centroids[c])
        clusters.append(ColorCluster(
            lab_centroid=LabColor.from_array(centroids[c]),
            rgb_centroid=(int(rgb[0]), int(rgb[1]), int(rgb[2])),
            hex=rgb_to_hex(rgb),
            pixel_count=int(full_counts[c]),
            proportion=float(full_counts[c]) / total,
        ))

    clusters.sort(key=lambda cl: -cl.pixel_count)
    logger.debug(f"[K-means] Clusters: {[f'{cl.hex} ({cl.proportion * 100:.1f}%)' for cl in clusters]}")
    return clusters


def detect_dominant_colors(image: RasterImage,
                           mask: Optional[Mask] = None,
                           rng: Optional[np.random.Generator] = None) -> DominantColors:
    """
    Suggest primary/secondary/tertiary colors for a reference image.

    Tries k=4 first and keeps the three largest clusters. When k=4 degenerates
    (fewer than four non-empty clusters) it re-runs with k=3. Any shortfall is
    padded with neutral gray so three colors are always returned.

    Raises:
        EmptyRegionError: if the mask selects no pixels
    """
    start = time.time()
    clusters = [c for c in cluster(image, mask, k=4, rng=rng) if c.pixel_count > 0]
    if len(clusters) < 4:
        logger.debug(f"[K-means] k=4 produced {len(clusters)} non-empty clusters, falling back to k=3")
        clusters = [c for c in cluster(image, mask, k=3, rng=rng) if c.pixel_count > 0]

    clusters = clusters[:3]
    while len(clusters) < 3:
        clusters.append(NEUTRAL_GRAY_CLUSTER)

    metrics = get_metrics()
    metrics.increment_extraction_count()
    metrics.record_timing("dominant_colors", (time.time() - start) * 1000)

    return DominantColors(
        primary=clusters[0].hex,
        secondary=clusters[1].hex,
        tertiary=clusters[2].hex,
        clusters=tuple(clusters),
    )


async def suggest_colorway(fetcher, image_url: str, mask_url: Optional[str] = None,
                           rng: Optional[np.random.Generator] = None,
                           timeout_manager: Optional[TimeoutManager] = None) -> DominantColors:
    """
    Download a reference image (and optional mask) and derive a colorway.

    Args:
        fetcher: ImageFetcher collaborator
        image_url: Reference image URL
        mask_url: Optional region mask URL; a missing mask falls back to the
            whole image
        rng: Optional seeded generator
        timeout_manager: Bounds the whole call with the "colorway" budget

    Raises:
        RecolorTimeoutError: when the budget is exceeded
    """
    timeouts = timeout_manager or TimeoutManager()
    async with timeouts.timeout("colorway"):
        image_bytes = await fetcher.download_image(image_url)
        mask_bytes = await fetcher.try_download(mask_url) if mask_url else None

        image = await asyncio.to_thread(decode_image, image_bytes)
        mask = await asyncio.to_thread(decode_mask, mask_bytes, "reference") if mask_bytes else None
        if mask_url and mask is None:
            logger.warning(f"[K-means] Mask {mask_url} not found, clustering whole image")

        return await asyncio.to_thread(detect_dominant_colors, image, mask, rng)
