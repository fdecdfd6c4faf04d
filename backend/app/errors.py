"""
KitForge Error Taxonomy
Typed failures raised by the recolor pipeline. Each error carries a stable code,
the HTTP status an outer surface would map it to, and diagnostic details.
"""
from typing import Any, Dict, List, Optional


class RecolorError(Exception):
    """Base class for every failure surfaced by the recolor engine."""

    code: str = "RECOLOR_FAILED"
    status_code: int = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class RequestValidationError(RecolorError):
    """Malformed or missing request fields. Caller's fault, never retried."""

    code = "BAD_INPUT"
    status_code = 400


class NotFoundError(RecolorError):
    """Referenced design request does not exist."""

    code = "NOT_FOUND"
    status_code = 404


class AuthorizationError(RecolorError):
    """Requester is neither owner nor admin of the design request."""

    code = "FORBIDDEN"
    status_code = 403


class MasksMissingError(RecolorError):
    """Required region masks are absent from the mask store."""

    code = "MASKS_MISSING"
    status_code = 409

    def __init__(self, design_slug: str, missing: Dict[str, bool]):
        absent = [role for role, is_missing in missing.items() if is_missing]
        super().__init__(
            f"Required masks not found for design '{design_slug}': {', '.join(absent)}. "
            f"Upload body.png and sleeves.png under masks/{design_slug}/",
            {"missing": dict(missing)},
        )
        self.design_slug = design_slug
        self.missing = dict(missing)


class GeometryDriftError(RecolorError):
    """Recolored output changed the garment silhouette."""

    code = "GEOMETRY_CHANGED"
    status_code = 422

    def __init__(self, message: str, drift_score: float, **measurements: Any):
        details = {"drift_score": drift_score}
        details.update(measurements)
        super().__init__(message, details)
        self.drift_score = drift_score


class ColorTargetError(RecolorError):
    """Achieved region color is too far from the requested target."""

    code = "COLOR_TARGET_FAILED"
    status_code = 422

    def __init__(self, misses: List[Dict[str, Any]], threshold: float):
        summary = "; ".join(
            f"{m['region']}: achieved {m['achieved_hex']} vs target {m['target_hex']} "
            f"(delta E {m['delta_e']:.2f} > {threshold:.2f})"
            for m in misses
        )
        super().__init__(f"Color targets missed - {summary}", {"regions": misses, "threshold": threshold})
        self.misses = misses
        self.threshold = threshold


class InfraError(RecolorError):
    """Storage or network failure. Caller may retry."""

    code = "INFRA_ERROR"
    status_code = 500


class RecolorTimeoutError(InfraError):
    """Pipeline exceeded its wall-clock budget."""

    code = "TIMEOUT"


class EmptyRegionError(ValueError):
    """No pixels were collected for clustering."""
    pass
