"""
Tests for request/response models and configuration validation.
"""
import numpy as np
import pytest
from pydantic import ValidationError

from app.config import Config, RecolorSettings
from app.errors import MasksMissingError, NotFoundError
from app.schemas import (
    Colorway, ColorwaySuggestion, ErrorResponse, ProtectedBox, RecolorRequest, RenderMasks, RenderSpec,
)
from app.services.colors.kmeans import detect_dominant_colors
from app.services.imaging import RasterImage


class TestColorway:

    def test_hex_is_normalized(self):
        colorway = Colorway(primary="1e90ff", secondary="#ffd700")
        assert colorway.primary == "#1E90FF"
        assert colorway.secondary == "#FFD700"
        assert colorway.tertiary is None

    def test_invalid_hex(self):
        with pytest.raises(ValidationError):
            Colorway(primary="#12345")

    def test_primary_required(self):
        with pytest.raises(ValidationError):
            Colorway(secondary="#FFD700")


class TestRecolorRequest:

    def base(self, **changes):
        payload = {
            "designRequestId": "dr-1",
            "templateUrl": "https://cdn.test/templates/crew.png",
            "colors": {"primary": "#1E90FF"},
            "designSlug": "crew-neck",
        }
        payload.update(changes)
        return payload

    def test_snake_case_names_accepted(self):
        request = RecolorRequest(
            design_request_id="dr-1",
            template_url="https://cdn.test/templates/crew.png",
            colors=Colorway(primary="#1E90FF"),
            design_slug="crew-neck",
        )
        assert request.design_slug == "crew-neck"

    @pytest.mark.parametrize("url", [
        "ftp://cdn.test/templates/crew.png",
        "/templates/crew.png",
        "https://cdn.test/logos/club.png",
        "https://cdn.test/templates/club-LOGO.png",
    ])
    def test_template_url_rejected(self, url):
        with pytest.raises(ValidationError):
            RecolorRequest(**self.base(templateUrl=url))

    @pytest.mark.parametrize("slug", ["../etc", "", "crew/neck", "-crew"])
    def test_slug_rejected(self, slug):
        with pytest.raises(ValidationError):
            RecolorRequest(**self.base(designSlug=slug))

    def test_protected_boxes(self):
        request = RecolorRequest(**self.base(protectedBoxes=[{"x": 1, "y": 2, "w": 3, "h": 4}]))
        assert request.protected_boxes[0].as_tuple() == (1, 2, 3, 4)

    def test_protected_box_must_have_area(self):
        with pytest.raises(ValidationError):
            ProtectedBox(x=0, y=0, w=0, h=10)


class TestRenderSpec:

    def test_record_shape(self):
        spec = RenderSpec(
            colors=Colorway(primary="#1E90FF"),
            template_url="https://cdn.test/templates/crew.png",
            masks=RenderMasks(body="https://m/body.png", sleeves="https://m/sleeves.png"),
            timestamp="2026-01-01T00:00:00.000Z",
        )
        record = spec.to_record()
        assert record == {
            "mode": "template",
            "colors": {"primary": "#1E90FF"},
            "templateUrl": "https://cdn.test/templates/crew.png",
            "masks": {"body": "https://m/body.png", "sleeves": "https://m/sleeves.png"},
            "timestamp": "2026-01-01T00:00:00.000Z",
        }

    def test_is_immutable(self):
        spec = RenderSpec(
            colors=Colorway(primary="#1E90FF"),
            template_url="https://cdn.test/templates/crew.png",
            masks=RenderMasks(body="b", sleeves="s"),
            timestamp="2026-01-01T00:00:00.000Z",
        )
        with pytest.raises(ValidationError):
            spec.timestamp = "later"


class TestColorwaySuggestion:

    def test_from_dominant(self):
        image = RasterImage.from_rgb(np.full((20, 20, 3), (30, 144, 255), dtype=np.uint8))
        suggestion = ColorwaySuggestion.from_dominant(detect_dominant_colors(image, rng=np.random.default_rng(0)))
        assert suggestion.colorway.primary == "#1E90FF"
        assert suggestion.colorway.secondary == "#808080"
        assert len(suggestion.clusters) == 3
        assert suggestion.clusters[0].pixel_count == 400


class TestErrorResponse:

    def test_masks_missing_payload(self):
        response = ErrorResponse.from_error(MasksMissingError("crew-neck", {"body": True, "sleeves": False}))
        assert response.error == "MASKS_MISSING"
        assert response.status == 409
        assert response.details == {"missing": {"body": True, "sleeves": False}}
        assert "body" in response.message

    def test_to_dict(self):
        payload = NotFoundError("Design request dr-9 not found", {"design_request_id": "dr-9"}).to_dict()
        assert payload == {
            "error": "NOT_FOUND",
            "message": "Design request dr-9 not found",
            "design_request_id": "dr-9",
        }


class TestSettings:

    def test_defaults(self):
        settings = RecolorSettings(mask_base_url="https://m")
        assert settings.precedence == ("body", "sleeves", "trims")
        assert settings.max_delta_e == 12.0
        assert settings.output_bucket == "renders"

    def test_from_config_overrides(self):
        settings = RecolorSettings.from_config(max_delta_e=8.0, timeout_ms=1000)
        assert settings.max_delta_e == 8.0
        assert settings.timeout_ms == 1000
        assert settings.mask_base_url == Config.MASK_BASE_URL

    @pytest.mark.parametrize("overrides", [
        {"precedence": ("body", "body", "sleeves")},
        {"precedence": ("body",)},
        {"precedence": ("body", "sleeves", "collar")},
        {"mask_threshold": 0},
        {"shading_strength": 3.0},
    ])
    def test_invalid_settings(self, overrides):
        with pytest.raises(ValueError):
            RecolorSettings(mask_base_url="https://m", **overrides)

    def test_parse_precedence(self):
        assert Config.parse_precedence(" trims, body ,sleeves ") == ("trims", "body", "sleeves")
