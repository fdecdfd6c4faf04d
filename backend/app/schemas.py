"""
KitForge Schemas
Pydantic models for recolor requests, render specs and colorway suggestions.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.services.colors.lab import normalize_hex


class Colorway(BaseModel):
    """Target colors for a garment template."""
    model_config = ConfigDict(frozen=True)

    primary: str = Field(..., description="Body color, #RRGGBB")
    secondary: Optional[str] = Field(None, description="Sleeves color, #RRGGBB (defaults to primary)")
    tertiary: Optional[str] = Field(None, description="Trims color, #RRGGBB")

    @field_validator("primary", "secondary", "tertiary")
    @classmethod
    def validate_hex(cls, v):
        if v is None:
            return v
        return normalize_hex(v)


class ProtectedBox(BaseModel):
    """Rectangle (pixels in template space) that must never be repainted, e.g. a logo."""
    model_config = ConfigDict(frozen=True)

    x: float = Field(..., ge=0)
    y: float = Field(..., ge=0)
    w: float = Field(..., gt=0)
    h: float = Field(..., gt=0)

    def as_tuple(self):
        return (self.x, self.y, self.w, self.h)


class RecolorRequest(BaseModel):
    """Template-mode recolor request."""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    design_request_id: str = Field(..., min_length=1, alias="designRequestId")
    template_url: str = Field(..., min_length=1, alias="templateUrl")
    colors: Colorway
    design_slug: str = Field(..., alias="designSlug", pattern=r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
    protected_boxes: List[ProtectedBox] = Field(default_factory=list, alias="protectedBoxes")

    @field_validator("template_url")
    @classmethod
    def validate_template_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("templateUrl must be an http(s) URL")
        if "/logos/" in v or "logo" in v.lower():
            raise ValueError("templateUrl must be a product template, not a logo")
        return v


class RenderMasks(BaseModel):
    """Mask URLs used for a render."""
    model_config = ConfigDict(frozen=True)

    body: str
    sleeves: str
    trims: Optional[str] = None


class RenderSpec(BaseModel):
    """Immutable record of how an output image was produced."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    mode: Literal["template"] = "template"
    colors: Colorway
    template_url: str = Field(..., alias="templateUrl")
    masks: RenderMasks
    timestamp: str = Field(..., description="ISO-8601 UTC creation time")

    def to_record(self) -> Dict[str, Any]:
        """Persisted shape (camelCase keys, trims omitted when unused)."""
        return self.model_dump(by_alias=True, exclude_none=True)


class RecolorResult(BaseModel):
    """Successful recolor outcome."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    output_url: str = Field(..., alias="outputUrl")
    render_spec: RenderSpec = Field(..., alias="renderSpec")
    mode: Literal["template"] = "template"
    duration_ms: int = Field(..., ge=0, alias="durationMs")


class ColorClusterEntry(BaseModel):
    """One dominant color cluster."""
    hex: str = Field(..., pattern=r"^#[0-9A-F]{6}$")
    rgb: List[int] = Field(..., min_length=3, max_length=3)
    lab: List[float] = Field(..., min_length=3, max_length=3)
    pixel_count: int = Field(..., ge=0)
    proportion: float = Field(..., ge=0.0, le=1.0)


class ColorwaySuggestion(BaseModel):
    """Colorway derived from a reference image."""
    colorway: Colorway
    clusters: List[ColorClusterEntry]

    @classmethod
    def from_dominant(cls, dominant) -> "ColorwaySuggestion":
        return cls(
            colorway=Colorway(**dominant.as_colorway()),
            clusters=[ColorClusterEntry(**c.to_dict()) for c in dominant.clusters],
        )


class ErrorResponse(BaseModel):
    """Structured failure payload."""
    error: str = Field(..., description="Stable error code, e.g. MASKS_MISSING")
    message: str = Field(..., description="Human readable message")
    status: int = Field(..., description="Reference HTTP status")
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_error(cls, exc) -> "ErrorResponse":
        return cls(error=exc.code, message=exc.message, status=exc.status_code, details=exc.details)
