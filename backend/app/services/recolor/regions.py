"""
Region resolution for template recoloring.

Maps garment roles to target colors and resolves overlapping masks into one
owner per pixel using an explicit precedence order (later roles win).
"""
from typing import Any, Dict, Mapping, Optional, Sequence

import numpy as np

from app.config import Config, MASK_ROLES
from app.services.colors.lab import normalize_hex
from app.services.imaging import Mask

DEFAULT_PRECEDENCE = MASK_ROLES


def colors_as_dict(colors: Any) -> Dict[str, Optional[str]]:
    """Accept a Colorway model or a plain mapping."""
    if hasattr(colors, "model_dump"):
        return colors.model_dump()
    return dict(colors)


def role_colors(colors: Any, masks: Mapping[str, Optional[Mask]]) -> Dict[str, str]:
    """
    Resolve the target color of every role that will be repainted.

    body takes primary, sleeves take secondary (primary when no secondary is
    given), trims take tertiary only when both the trims mask and a tertiary
    color are supplied.
    """
    colors = colors_as_dict(colors)
    primary = colors.get("primary")
    if not primary:
        raise ValueError("Colorway requires a primary color")

    targets: Dict[str, str] = {}
    if masks.get("body") is not None:
        targets["body"] = normalize_hex(primary)
    if masks.get("sleeves") is not None:
        targets["sleeves"] = normalize_hex(colors.get("secondary") or primary)
    if masks.get("trims") is not None and colors.get("tertiary"):
        targets["trims"] = normalize_hex(colors["tertiary"])
    return targets


def check_precedence(precedence: Sequence[str]) -> tuple:
    order = tuple(precedence)
    if not Config.validate_precedence(order):
        raise ValueError(f"Invalid mask precedence {order}; expected a permutation of {MASK_ROLES}")
    return order


def resolve_regions(masks: Mapping[str, Optional[Mask]],
                    roles: Sequence[str],
                    width: int,
                    height: int,
                    precedence: Sequence[str] = DEFAULT_PRECEDENCE,
                    threshold: Optional[int] = None) -> Dict[str, np.ndarray]:
    """
    Build the effective boolean region of each active role.

    Masks are resized to (width, height) with nearest-neighbour sampling.
    Where masks overlap, the role that comes later in ``precedence`` owns the
    pixel. The returned regions are pairwise disjoint.
    """
    order = check_precedence(precedence)
    active = [role for role in order if role in roles and masks.get(role) is not None]

    owner = np.full((height, width), -1, dtype=np.int8)
    for index, role in enumerate(active):
        inside = masks[role].resized_to(width, height).inside(threshold)
        owner[inside] = index

    return {role: owner == index for index, role in enumerate(active)}
