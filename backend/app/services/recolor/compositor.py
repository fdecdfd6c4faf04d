"""
Masked template recolor (template mode).

Repaints garment regions to target colors while keeping the template's
shading. Each region is converted to Lab; chroma (a, b) is replaced by the
target's and lightness is re-centred on the target lightness while keeping
every pixel's deviation from the region mean, so folds, seams and shadow
gradients survive. The alpha channel and every pixel outside the masks are
copied through untouched.
"""
from typing import Any, Mapping, Optional, Sequence

import numpy as np
from loguru import logger

from app.config import config
from app.services.colors.lab import hex_to_lab, lab_distance, lab_to_rgb, rgb_to_lab
from app.services.imaging import Mask, RasterImage
from app.services.recolor.regions import DEFAULT_PRECEDENCE, resolve_regions, role_colors


# Largest Lab distance between a region's mean result and its target before
# the shading contrast is compressed.
MEAN_TOLERANCE_DE = 2.0
SHADING_STEPS = (1.0, 0.5, 0.25, 0.125, 0.0)


def _shade(lightness: np.ndarray, target: np.ndarray, strength: float, offset: float = 0.0) -> np.ndarray:
    out = np.empty((len(lightness), 3), dtype=np.float64)
    out[:, 0] = np.clip(target[0] + offset + strength * (lightness - lightness.mean()), 0.0, 100.0)
    out[:, 1] = target[1]
    out[:, 2] = target[2]
    return lab_to_rgb(out)


def _mean_lab(rgb_pixels: np.ndarray) -> np.ndarray:
    return rgb_to_lab(rgb_pixels.astype(np.float64).mean(axis=0))


def transfer_shading(rgb_pixels: np.ndarray, target_hex: str, shading_strength: float = 1.0) -> np.ndarray:
    """
    Recolor a set of pixels to ``target_hex`` keeping their lightness structure.

    Saturated targets cannot hold their chroma across a wide lightness range,
    and sRGB clipping then pulls the region mean away from the target. When the
    mean misses by more than MEAN_TOLERANCE_DE the lightness is re-centred on
    the measured mean once; if that is still not enough, the shading contrast
    is halved step by step down to a flat fill, which always lands on target.

    Args:
        rgb_pixels: (N, 3) uint8 pixels of one region
        target_hex: Target color
        shading_strength: Scale applied to lightness deviations (0 gives a flat
            fill, 1 keeps the template's shading contrast)

    Returns:
        (N, 3) uint8 recolored pixels
    """
    if len(rgb_pixels) == 0:
        return rgb_pixels.copy()

    lightness = rgb_to_lab(rgb_pixels)[:, 0]
    target = hex_to_lab(target_hex).as_array()

    for step in SHADING_STEPS:
        strength = shading_strength * step
        out = _shade(lightness, target, strength)
        measured = _mean_lab(out)
        if lab_distance(measured, target) <= MEAN_TOLERANCE_DE:
            return out

        out = _shade(lightness, target, strength, offset=target[0] - measured[0])
        if lab_distance(_mean_lab(out), target) <= MEAN_TOLERANCE_DE or strength == 0.0:
            if step < 1.0:
                logger.debug(f"[TemplateMode] Shading compressed to {strength:.3f} for {target_hex}")
            return out

    return out


def recolor(template: RasterImage,
            colors: Any,
            masks: Mapping[str, Optional[Mask]],
            precedence: Sequence[str] = DEFAULT_PRECEDENCE,
            shading_strength: Optional[float] = None,
            threshold: Optional[int] = None) -> RasterImage:
    """
    Recolor the body/sleeves/trims regions of a template.

    Args:
        template: Source jersey render (RGBA)
        colors: Colorway (primary, secondary?, tertiary?) as model or mapping
        masks: Role to Mask; body and sleeves expected, trims optional
        precedence: Role order for overlapping masks, later roles win
        shading_strength: Lightness deviation scale (default from config)
        threshold: Mask inside threshold (default from config)

    Returns:
        New RasterImage with the template's dimensions and alpha channel
    """
    if shading_strength is None:
        shading_strength = config.SHADING_STRENGTH

    targets = role_colors(colors, masks)
    regions = resolve_regions(masks, list(targets), template.width, template.height, precedence, threshold)
    visible = template.alpha > 0

    logger.debug(f"[TemplateMode] Recoloring {template.width}x{template.height} template, roles={list(regions)}")

    pixels = template.pixels.copy()
    rgb_view = pixels[..., :3]
    for role, region in regions.items():
        paint = region & visible
        if not paint.any():
            logger.warning(f"[TemplateMode] Region '{role}' has no visible pixels, skipping")
            continue
        rgb_view[paint] = transfer_shading(template.rgb[paint], targets[role], shading_strength)
        logger.debug(f"[TemplateMode] Painted {int(paint.sum())} px of '{role}' with {targets[role]}")

    return RasterImage(pixels)
