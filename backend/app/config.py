"""
KitForge Configuration
Manages environment variables and defaults for the recolor engine.
"""
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

MASK_ROLES: Tuple[str, ...] = ("body", "sleeves", "trims")
REQUIRED_MASK_ROLES: Tuple[str, ...] = ("body", "sleeves")


class Config:
    """Configuration class for KitForge services."""

    # Logging
    LOG_LEVEL: str = os.environ.get("KITFORGE_LOG_LEVEL", "INFO")

    # Storage layout
    MASK_BASE_URL: str = os.environ.get("KITFORGE_MASK_BASE_URL", "http://localhost:54321/storage/v1/object/public/masks")
    OUTPUT_BUCKET: str = os.environ.get("KITFORGE_OUTPUT_BUCKET", "renders")

    # Mask handling
    MASK_THRESHOLD: int = int(os.environ.get("KITFORGE_MASK_THRESHOLD", "200"))
    MASK_PRECEDENCE: str = os.environ.get("KITFORGE_MASK_PRECEDENCE", "body,sleeves,trims")

    # Compositing
    SHADING_STRENGTH: float = float(os.environ.get("KITFORGE_SHADING_STRENGTH", "1.0"))

    # Quality gates
    GEOMETRY_ALPHA_TOLERANCE: int = int(os.environ.get("KITFORGE_GEOMETRY_ALPHA_TOLERANCE", "10"))
    GEOMETRY_MAX_DRIFT: float = float(os.environ.get("KITFORGE_GEOMETRY_MAX_DRIFT", "0.005"))
    GEOMETRY_MAX_EDGE_LOSS: float = float(os.environ.get("KITFORGE_GEOMETRY_MAX_EDGE_LOSS", "0.01"))
    COLOR_MAX_DELTA_E: float = float(os.environ.get("KITFORGE_COLOR_MAX_DELTA_E", "12.0"))

    # Clustering
    KMEANS_MAX_SAMPLES: int = int(os.environ.get("KITFORGE_KMEANS_MAX_SAMPLES", "10000"))
    KMEANS_MAX_ITERATIONS: int = int(os.environ.get("KITFORGE_KMEANS_MAX_ITERATIONS", "20"))

    # Timeouts
    HTTP_TIMEOUT_S: float = float(os.environ.get("KITFORGE_HTTP_TIMEOUT_S", "15"))
    TIMEOUT_TOTAL_MS: int = int(os.environ.get("KITFORGE_TIMEOUT_TOTAL_MS", "60000"))

    # Supported image formats
    MAX_FILE_MB: int = int(os.environ.get("KITFORGE_MAX_FILE_MB", "20"))
    SUPPORTED_MIME_TYPES = ["image/jpeg", "image/png"]

    @classmethod
    def parse_precedence(cls, value: Optional[str] = None) -> Tuple[str, ...]:
        """Split a comma separated precedence string into role names."""
        raw = cls.MASK_PRECEDENCE if value is None else value
        return tuple(part.strip() for part in raw.split(",") if part.strip())

    @classmethod
    def validate_precedence(cls, order: Tuple[str, ...]) -> bool:
        """Precedence must list known roles, each at most once, including body and sleeves."""
        if len(set(order)) != len(order):
            return False
        if any(role not in MASK_ROLES for role in order):
            return False
        return all(role in order for role in REQUIRED_MASK_ROLES)

    @classmethod
    def validate_threshold(cls, threshold: int) -> bool:
        """Validate mask threshold parameter."""
        return 1 <= threshold <= 255

    @classmethod
    def validate_shading_strength(cls, strength: float) -> bool:
        """Validate shading strength parameter."""
        return 0.0 <= strength <= 2.0


# Global config instance
config = Config()


@dataclass(frozen=True)
class RecolorSettings:
    """Explicit settings handed to the recolor pipeline."""

    mask_base_url: str
    output_bucket: str = "renders"
    mask_threshold: int = 200
    precedence: Tuple[str, ...] = MASK_ROLES
    shading_strength: float = 1.0
    alpha_tolerance: int = 10
    max_drift: float = 0.005
    max_edge_loss: float = 0.01
    max_delta_e: float = 12.0
    timeout_ms: int = 60000

    def __post_init__(self):
        if not Config.validate_precedence(self.precedence):
            raise ValueError(f"Invalid mask precedence: {self.precedence}")
        if not Config.validate_threshold(self.mask_threshold):
            raise ValueError(f"Invalid mask threshold: {self.mask_threshold}")
        if not Config.validate_shading_strength(self.shading_strength):
            raise ValueError(f"Invalid shading strength: {self.shading_strength}")

    @classmethod
    def from_config(cls, cfg: Config = config, **overrides) -> "RecolorSettings":
        values = dict(
            mask_base_url=cfg.MASK_BASE_URL,
            output_bucket=cfg.OUTPUT_BUCKET,
            mask_threshold=cfg.MASK_THRESHOLD,
            precedence=cfg.parse_precedence(),
            shading_strength=cfg.SHADING_STRENGTH,
            alpha_tolerance=cfg.GEOMETRY_ALPHA_TOLERANCE,
            max_drift=cfg.GEOMETRY_MAX_DRIFT,
            max_edge_loss=cfg.GEOMETRY_MAX_EDGE_LOSS,
            max_delta_e=cfg.COLOR_MAX_DELTA_E,
            timeout_ms=cfg.TIMEOUT_TOTAL_MS,
        )
        values.update(overrides)
        return cls(**values)
