"""
Test configuration and fixtures for KitForge recolor tests.

Synthetic jersey templates are built on a 512x512 canvas: a transparent
background, an opaque torso with two sleeves and a collar strip, shaded with a
vertical gray gradient. Region masks are slightly larger than the silhouette so
they overlap each other and cover transparent pixels.
"""
from types import SimpleNamespace

import numpy as np
import pytest

from app.config import RecolorSettings
from app.services.imaging import Mask, RasterImage, encode_mask_png, encode_png
from app.services.recolor.pipeline import RecolorPipeline, mask_url
from app.services.storage import (
    DesignRecord, InMemoryDesignRequestStore, InMemoryImageFetcher, InMemoryObjectStore,
)
from app.utils.metrics import reset_metrics as _reset_metrics

MASK_BASE_URL = "https://cdn.test/storage/v1/object/public/masks"
TEMPLATE_URL = "https://cdn.test/storage/v1/object/public/templates/crew-neck.png"
DESIGN_SLUG = "crew-neck"
DESIGN_REQUEST_ID = "dr-1"
OWNER_ID = "user-1"


def box(size, x1, y1, x2, y2):
    """Boolean rectangle given in 512-canvas coordinates, scaled to ``size``."""
    s = size / 512.0
    region = np.zeros((size, size), dtype=bool)
    region[int(y1 * s):int(y2 * s), int(x1 * s):int(x2 * s)] = True
    return region


def jersey_layout(size=512):
    return {
        "torso": box(size, 128, 96, 384, 480),
        "sleeves": box(size, 48, 96, 128, 256) | box(size, 384, 96, 464, 256),
        "collar": box(size, 200, 96, 312, 120),
        "body_mask": box(size, 120, 88, 392, 488),
        "sleeves_mask": box(size, 40, 88, 136, 264) | box(size, 376, 88, 472, 264),
        "trims_mask": box(size, 196, 92, 316, 124),
    }


def build_jersey(size=512, shade=(150, 170)):
    """Return (template, masks) for the synthetic jersey."""
    layout = jersey_layout(size)
    silhouette = layout["torso"] | layout["sleeves"]

    low, high = shade
    gradient = np.linspace(low, high, size).astype(np.uint8)
    gray = np.repeat(gradient[:, None], size, axis=1)

    pixels = np.zeros((size, size, 4), dtype=np.uint8)
    for ch in range(3):
        pixels[..., ch] = np.where(silhouette, gray, 0)
    pixels[..., 3] = np.where(silhouette, 255, 0)

    masks = {
        "body": Mask("body", layout["body_mask"].astype(np.uint8) * 255),
        "sleeves": Mask("sleeves", layout["sleeves_mask"].astype(np.uint8) * 255),
        "trims": Mask("trims", layout["trims_mask"].astype(np.uint8) * 255),
    }
    return RasterImage(pixels), masks


@pytest.fixture(autouse=True)
def reset_metrics():
    """Reset metrics before each test."""
    _reset_metrics()


@pytest.fixture
def jersey():
    """512x512 jersey with a gentle shading gradient and all three masks."""
    template, masks = build_jersey()
    return SimpleNamespace(template=template, masks=masks, layout=jersey_layout())


@pytest.fixture
def flat_jersey():
    """512x512 jersey without shading."""
    template, masks = build_jersey(shade=(160, 160))
    return SimpleNamespace(template=template, masks=masks, layout=jersey_layout())


@pytest.fixture
def recolor_payload():
    return {
        "designRequestId": DESIGN_REQUEST_ID,
        "templateUrl": TEMPLATE_URL,
        "colors": {"primary": "#1E90FF", "secondary": "#FFD700"},
        "designSlug": DESIGN_SLUG,
    }


@pytest.fixture
def make_env():
    """
    Factory for a pipeline wired to in-memory collaborators.

    Args:
        roles: Mask roles present in the mask store
        template_bytes: Override the stored template bytes
        delay: Artificial latency (seconds) for every download
        **overrides: RecolorSettings overrides
    """

    def _make(roles=("body", "sleeves", "trims"), template_bytes=None, delay=0.0, **overrides):
        template, masks = build_jersey()
        objects = {TEMPLATE_URL: template_bytes if template_bytes is not None else encode_png(template)}
        for role in roles:
            objects[mask_url(MASK_BASE_URL, DESIGN_SLUG, role)] = encode_mask_png(masks[role])

        fetcher = InMemoryImageFetcher(objects, delay=delay)
        object_store = InMemoryObjectStore()
        design_store = InMemoryDesignRequestStore()
        design_store.add(DesignRecord(id=DESIGN_REQUEST_ID, owner_id=OWNER_ID))

        settings = RecolorSettings(mask_base_url=MASK_BASE_URL, **overrides)
        pipeline = RecolorPipeline(fetcher, object_store, design_store, settings)
        return SimpleNamespace(
            pipeline=pipeline,
            fetcher=fetcher,
            object_store=object_store,
            design_store=design_store,
            settings=settings,
            template=template,
            masks=masks,
        )

    return _make
