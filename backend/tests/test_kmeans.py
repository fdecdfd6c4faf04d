"""
Unit tests for dominant color extraction (k-means in Lab space).
"""
import numpy as np
import pytest

from app.errors import EmptyRegionError, RecolorTimeoutError
from app.services.colors.kmeans import (
    NEUTRAL_GRAY_HEX, cluster, collect_region_pixels, detect_dominant_colors, stride_sample,
    suggest_colorway,
)
from app.services.colors.lab import lab_distance, rgb_to_lab
from app.services.imaging import Mask, RasterImage, encode_mask_png, encode_png
from app.services.reliability import TimeoutManager
from app.services.storage import InMemoryImageFetcher
from app.utils.metrics import get_metrics


class FixedPicks:
    """Generator stand-in that seeds centroids at known sample indices."""

    def __init__(self, indices):
        self.indices = np.array(indices)

    def integers(self, low, high, size=None):
        if size is None:
            return int(self.indices[0])
        return self.indices[:size]


@pytest.fixture
def striped_image():
    """100x100: rows 0-49 red, 50-79 green, 80-99 blue."""
    rgb = np.zeros((100, 100, 3), dtype=np.uint8)
    rgb[:50] = (255, 0, 0)
    rgb[50:80] = (0, 255, 0)
    rgb[80:] = (0, 0, 255)
    return RasterImage.from_rgb(rgb)


class TestPixelCollection:

    def test_without_mask_returns_all_pixels(self, striped_image):
        assert collect_region_pixels(striped_image).shape == (10000, 3)

    def test_mask_threshold(self, striped_image):
        values = np.zeros((100, 100), dtype=np.uint8)
        values[:10] = 255
        values[10:20] = 199  # below the default threshold of 200
        pixels = collect_region_pixels(striped_image, Mask("m", values))
        assert len(pixels) == 1000
        assert np.all(pixels == (255, 0, 0))

    def test_mask_is_resized_to_image(self, striped_image):
        values = np.zeros((50, 50), dtype=np.uint8)
        values[:25] = 255
        pixels = collect_region_pixels(striped_image, Mask("m", values))
        assert len(pixels) == 5000

    def test_stride_sample(self):
        values = np.arange(25)
        sampled = stride_sample(values, 10)
        np.testing.assert_array_equal(sampled, np.arange(0, 25, 3))
        assert stride_sample(values, 100) is values


class TestCluster:

    def test_recovers_known_colors(self, striped_image):
        clusters = cluster(striped_image, k=3, rng=FixedPicks([0, 5000, 8000]))

        assert [c.pixel_count for c in clusters] == [5000, 3000, 2000]
        assert [c.proportion for c in clusters] == pytest.approx([0.5, 0.3, 0.2])
        expected = [(255, 0, 0), (0, 255, 0), (0, 0, 255)]
        for found, rgb in zip(clusters, expected):
            assert np.abs(np.array(found.rgb_centroid) - np.array(rgb)).max() <= 1

    @pytest.mark.parametrize("seed", [0, 1, 7, 42])
    def test_two_regions_under_mask(self, striped_image, seed):
        # mask keeps red rows 30-49 and green rows 50-79
        values = np.zeros((100, 100), dtype=np.uint8)
        values[30:80] = 255
        clusters = cluster(striped_image, Mask("m", values), k=2, rng=np.random.default_rng(seed))

        assert [c.proportion for c in clusters] == pytest.approx([0.6, 0.4])
        assert [c.pixel_count for c in clusters] == [3000, 2000]
        green, red = rgb_to_lab(np.array([(0, 255, 0), (255, 0, 0)]))
        assert lab_distance(clusters[0].lab_centroid, green) < 1.0
        assert lab_distance(clusters[1].lab_centroid, red) < 1.0

    def test_counts_use_full_pixel_set(self, striped_image):
        clusters = cluster(striped_image, k=3, rng=FixedPicks([0, 500, 800]), max_samples=1000)
        assert sum(c.pixel_count for c in clusters) == 10000
        assert [c.pixel_count for c in clusters] == [5000, 3000, 2000]

    def test_sorted_and_proportions_sum_to_one(self, striped_image):
        clusters = cluster(striped_image, k=4, rng=np.random.default_rng(3))
        counts = [c.pixel_count for c in clusters]
        assert counts == sorted(counts, reverse=True)
        assert sum(c.proportion for c in clusters) == pytest.approx(1.0)

    def test_seeded_runs_are_reproducible(self, striped_image):
        first = cluster(striped_image, k=3, rng=np.random.default_rng(42))
        second = cluster(striped_image, k=3, rng=np.random.default_rng(42))
        assert [c.hex for c in first] == [c.hex for c in second]
        assert [c.pixel_count for c in first] == [c.pixel_count for c in second]

    def test_empty_region_raises(self, striped_image):
        empty = Mask("m", np.zeros((100, 100), dtype=np.uint8))
        with pytest.raises(EmptyRegionError):
            cluster(striped_image, empty, k=3)

    def test_invalid_k(self, striped_image):
        with pytest.raises(ValueError):
            cluster(striped_image, k=0)


class TestDominantColors:

    def test_single_color_pads_with_gray(self):
        image = RasterImage.from_rgb(np.full((40, 40, 3), (200, 30, 30), dtype=np.uint8))
        dominant = detect_dominant_colors(image, rng=np.random.default_rng(1))

        assert dominant.primary == "#C81E1E"
        assert dominant.secondary == NEUTRAL_GRAY_HEX
        assert dominant.tertiary == NEUTRAL_GRAY_HEX
        assert len(dominant.clusters) == 3
        assert dominant.clusters[0].proportion == pytest.approx(1.0)
        assert dominant.clusters[1].pixel_count == 0

    def test_always_three_colors(self, striped_image):
        dominant = detect_dominant_colors(striped_image, rng=np.random.default_rng(5))
        colorway = dominant.as_colorway()
        assert set(colorway) == {"primary", "secondary", "tertiary"}
        assert all(value.startswith("#") and len(value) == 7 for value in colorway.values())

    def test_records_metrics(self, striped_image):
        detect_dominant_colors(striped_image, rng=np.random.default_rng(5))
        metrics = get_metrics()
        assert metrics.get_counters()["colorway_extractions_total"] == 1
        assert "dominant_colors_duration_ms" in metrics.get_timing_stats()

    def test_masked_region_only(self, striped_image):
        values = np.zeros((100, 100), dtype=np.uint8)
        values[80:] = 255
        dominant = detect_dominant_colors(striped_image, Mask("m", values), rng=np.random.default_rng(2))
        assert dominant.primary == "#0000FF"
        assert dominant.secondary == NEUTRAL_GRAY_HEX


class TestSuggestColorway:

    @pytest.mark.asyncio
    async def test_uses_mask_when_present(self, striped_image):
        values = np.zeros((100, 100), dtype=np.uint8)
        values[:50] = 255
        fetcher = InMemoryImageFetcher({
            "https://cdn.test/ref.png": encode_png(striped_image),
            "https://cdn.test/ref-mask.png": encode_mask_png(Mask("m", values)),
        })

        dominant = await suggest_colorway(fetcher, "https://cdn.test/ref.png", "https://cdn.test/ref-mask.png",
                                          rng=np.random.default_rng(0))
        assert dominant.primary == "#FF0000"

    @pytest.mark.asyncio
    async def test_missing_mask_falls_back_to_whole_image(self, striped_image):
        fetcher = InMemoryImageFetcher({"https://cdn.test/ref.png": encode_png(striped_image)})

        dominant = await suggest_colorway(fetcher, "https://cdn.test/ref.png", "https://cdn.test/nope.png",
                                          rng=FixedPicks([0, 5000, 8000, 9999]))
        assert dominant.clusters[0].proportion == pytest.approx(0.5)
        assert fetcher.requests == ["https://cdn.test/ref.png", "https://cdn.test/nope.png"]

    @pytest.mark.asyncio
    async def test_slow_download_times_out(self, striped_image):
        fetcher = InMemoryImageFetcher({"https://cdn.test/ref.png": encode_png(striped_image)}, delay=0.5)
        with pytest.raises(RecolorTimeoutError) as exc_info:
            await suggest_colorway(fetcher, "https://cdn.test/ref.png", timeout_manager=TimeoutManager(20))
        assert exc_info.value.details["operation"] == "colorway"
