import pytest

from color_smoother import HSV, rgb_to_hsv
from errors import ConfigInvalid
from zone_mapper import build_mapping, map_colors


class TestBuildMapping:

    def test_even_split(self):
        mapping = build_mapping(2, 6)
        assert mapping.assignments == (0, 0, 0, 1, 1, 1)
        assert mapping.leds_for(1) == [3, 4, 5]

    def test_one_to_one(self):
        assert build_mapping(3, 3).assignments == (0, 1, 2)

    def test_remainder_goes_to_front_segments(self):
        assert build_mapping(3, 8).assignments == (0, 0, 0, 1, 1, 1, 2, 2)

    def test_fewer_leds_than_segments_resamples(self):
        assert build_mapping(5, 2).assignments == (1, 3)
        assert build_mapping(3, 1).assignments == (1,)

    @pytest.mark.parametrize("n", [1, 2, 3, 5, 7, 16])
    @pytest.mark.parametrize("m", [1, 2, 4, 6, 15, 60, 61])
    def test_total_contiguous_and_deterministic(self, n, m):
        mapping = build_mapping(n, m)
        assert len(mapping.assignments) == m
        assert all(0 <= s < n for s in mapping.assignments)
        assert list(mapping.assignments) == sorted(mapping.assignments)
        if m >= n:
            assert set(mapping.assignments) == set(range(n))
            sizes = [len(mapping.leds_for(s)) for s in range(n)]
            assert max(sizes) - min(sizes) <= 1
        assert build_mapping(n, m) == mapping

    @pytest.mark.parametrize("n, m", [(0, 5), (5, 0)])
    def test_rejects_zero(self, n, m):
        with pytest.raises(ConfigInvalid):
            build_mapping(n, m)


class TestMapColors:

    def test_primaries_pass_through(self):
        colors = [rgb_to_hsv(c) for c in [(255, 0, 0), (0, 255, 0), (0, 0, 255)]]
        out = map_colors(build_mapping(3, 3), colors, brightness=1.0, saturation=1.0)
        assert out == [(255, 0, 0), (0, 255, 0), (0, 0, 255)]

    def test_segments_fan_out_to_leds(self):
        colors = [rgb_to_hsv((255, 0, 0)), rgb_to_hsv((0, 0, 255))]
        out = map_colors(build_mapping(2, 6), colors)
        assert out == [(255, 0, 0)] * 3 + [(0, 0, 255)] * 3

    def test_brightness_scales_value(self):
        out = map_colors(build_mapping(1, 2), [HSV(0, 1, 1)], brightness=0.5)
        assert out == [(128, 0, 0), (128, 0, 0)]

    def test_saturation_scales_toward_white(self):
        out = map_colors(build_mapping(1, 1), [HSV(0, 1, 1)], saturation=0.0)
        assert out == [(255, 255, 255)]

    def test_wrong_segment_count(self):
        with pytest.raises(ValueError):
            map_colors(build_mapping(3, 3), [HSV(0, 0, 0)])
