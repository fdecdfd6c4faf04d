"""
Geometry and color validation guards.

Both guards are pure verification steps run on a compositor candidate: they
never modify an image, they either return a report or raise a typed error.
"""
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Mapping, Optional, Sequence

import cv2
import numpy as np
from loguru import logger

from app.config import config
from app.errors import ColorTargetError, GeometryDriftError
from app.services.colors.lab import hex_to_lab, lab_distance, rgb_to_hex, rgb_to_lab
from app.services.imaging import Mask, RasterImage
from app.services.recolor.regions import DEFAULT_PRECEDENCE, resolve_regions, role_colors


@dataclass(frozen=True)
class GeometryReport:
    alpha_drift: float
    differing_pixels: int
    edge_loss: float
    base_edge_pixels: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RegionColorReport:
    region: str
    target_hex: str
    achieved_hex: str
    delta_e: float
    pixel_count: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def silhouette_edges(alpha: np.ndarray) -> np.ndarray:
    """Boolean edge map of an alpha channel."""
    return cv2.Canny(np.ascontiguousarray(alpha), 50, 150) > 0


def measure_edge_loss(base_alpha: np.ndarray, result_alpha: np.ndarray) -> tuple:
    """
    Fraction of base silhouette edge pixels with no result edge within one pixel.

    Returns:
        (edge_loss, base_edge_pixel_count); loss is 0.0 for a base without edges
    """
    base_edges = silhouette_edges(base_alpha)
    total = int(np.count_nonzero(base_edges))
    if total == 0:
        return 0.0, 0
    result_edges = silhouette_edges(result_alpha).astype(np.uint8)
    near = cv2.dilate(result_edges, np.ones((3, 3), np.uint8), iterations=1) > 0
    lost = int(np.count_nonzero(base_edges & ~near))
    return lost / total, total


def assert_geometry_locked(base: RasterImage,
                           result: RasterImage,
                           alpha_tolerance: Optional[int] = None,
                           max_drift: Optional[float] = None,
                           max_edge_loss: Optional[float] = None) -> GeometryReport:
    """
    Verify the candidate kept the template silhouette.

    Checks, in order: identical dimensions; the share of pixels whose alpha
    moved by more than ``alpha_tolerance`` stays within ``max_drift``; the
    share of base silhouette edges missing from the result stays within
    ``max_edge_loss``.

    Raises:
        GeometryDriftError: with the measured drift scores
    """
    if alpha_tolerance is None:
        alpha_tolerance = config.GEOMETRY_ALPHA_TOLERANCE
    if max_drift is None:
        max_drift = config.GEOMETRY_MAX_DRIFT
    if max_edge_loss is None:
        max_edge_loss = config.GEOMETRY_MAX_EDGE_LOSS

    logger.debug("[Guard] Checking geometry lock...")

    if base.size != result.size:
        raise GeometryDriftError(
            f"Dimensions mismatch ({base.width}x{base.height} vs {result.width}x{result.height})",
            drift_score=1.0,
            base_size=list(base.size),
            result_size=list(result.size),
        )

    alpha_delta = np.abs(base.alpha.astype(np.int16) - result.alpha.astype(np.int16))
    differing = int(np.count_nonzero(alpha_delta > alpha_tolerance))
    drift = differing / float(base.width * base.height)
    edge_loss, base_edge_pixels = measure_edge_loss(base.alpha, result.alpha)

    report = GeometryReport(
        alpha_drift=drift,
        differing_pixels=differing,
        edge_loss=edge_loss,
        base_edge_pixels=base_edge_pixels,
    )
    logger.debug(
        f"[Guard] Geometry check: {differing} alpha pixels differ ({drift * 100:.4f}%), "
        f"edge loss {edge_loss * 100:.4f}%"
    )

    if drift > max_drift:
        raise GeometryDriftError(
            f"{drift * 100:.2f}% alpha pixels differ (threshold: {max_drift * 100:.2f}%)",
            drift_score=drift,
            **{k: v for k, v in report.to_dict().items() if k != "alpha_drift"},
        )
    if edge_loss > max_edge_loss:
        raise GeometryDriftError(
            f"{edge_loss * 100:.2f}% silhouette edges lost (threshold: {max_edge_loss * 100:.2f}%)",
            drift_score=edge_loss,
            **{k: v for k, v in report.to_dict().items() if k != "edge_loss"},
        )

    logger.debug("[Guard] Geometry locked - silhouette preserved")
    return report


def assert_color_targets(result: RasterImage,
                         masks: Mapping[str, Optional[Mask]],
                         colors: Any,
                         max_delta_e: Optional[float] = None,
                         precedence: Sequence[str] = DEFAULT_PRECEDENCE,
                         threshold: Optional[int] = None) -> List[RegionColorReport]:
    """
    Verify the mean achieved color of each region is close to its target.

    Each role is measured over its effective region (after overlap precedence)
    restricted to visible pixels. The mean RGB is converted to Lab and
    compared to the target with the Euclidean Lab distance.

    Raises:
        ColorTargetError: listing every region above ``max_delta_e``
    """
    if max_delta_e is None:
        max_delta_e = config.COLOR_MAX_DELTA_E

    logger.debug("[Guard] Checking color targets...")

    targets = role_colors(colors, masks)
    regions = resolve_regions(masks, list(targets), result.width, result.height, precedence, threshold)
    visible = result.alpha > 0

    reports: List[RegionColorReport] = []
    for role, region in regions.items():
        sample = region & visible
        count = int(np.count_nonzero(sample))
        if count == 0:
            logger.warning(f"[Guard] No pixels found in {role} mask, skipping color check")
            continue

        mean_rgb = result.rgb[sample].astype(np.float64).mean(axis=0)
        distance = lab_distance(rgb_to_lab(mean_rgb), hex_to_lab(targets[role]))
        report = RegionColorReport(
            region=role,
            target_hex=targets[role],
            achieved_hex=rgb_to_hex(np.clip(np.rint(mean_rgb), 0, 255)),
            delta_e=float(distance),
            pixel_count=count,
        )
        reports.append(report)
        logger.debug(f"[Guard] {role}: achieved {report.achieved_hex} vs target {report.target_hex}, "
                     f"delta E {report.delta_e:.2f}")

    misses = [r.to_dict() for r in reports if r.delta_e > max_delta_e]
    if misses:
        raise ColorTargetError(misses, max_delta_e)

    logger.debug("[Guard] Color targets validated")
    return reports
