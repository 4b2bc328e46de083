import numpy as np
import pytest

from lens_reproject.color import (ColorSettings, apply_exposure, auto_exposure, estimate_exposure,
                                  post_process, process, reinhard)
from lens_reproject.image import Image


def test_reinhard_is_bounded_and_monotonic():
  values = np.concatenate([[0.0], np.logspace(-6, 6, 500)])
  for max_value in (0.5, 1.0, 4.0):
    out = reinhard(values, max_value)
    assert np.all(out >= 0.0)
    assert np.all(out < max_value)
    assert np.all(np.diff(out) > 0)


def test_reinhard_is_identity_like_for_small_values():
  values = np.array([1e-4, 1e-3])
  np.testing.assert_allclose(reinhard(values, 100.0), values, rtol=1e-4)


def test_reinhard_rejects_non_positive_max():
  with pytest.raises(ValueError):
    reinhard(np.ones(3), 0.0)


def test_exposure_is_invertible():
  rng = np.random.default_rng(1)
  pixels = rng.random((8, 8, 3)).astype(np.float32) * 10.0
  for ev in (-3.5, 0.5, 2.0):
    restored = apply_exposure(apply_exposure(pixels, ev), -ev)
    np.testing.assert_allclose(restored, pixels, rtol=1e-6)


def test_exposure_doubles_per_stop():
  pixels = np.full((2, 2, 3), 0.25, dtype=np.float32)
  np.testing.assert_allclose(apply_exposure(pixels, 2.0), 1.0)


def test_noop_settings_skip_processing():
  image = Image(np.full((4, 4, 3), 3.0, dtype=np.float32))
  buffer = image.pixels
  result = process(image, ColorSettings())
  assert result is image
  assert result.pixels is buffer
  np.testing.assert_array_equal(result.pixels, 3.0)


def test_post_process_applies_exposure_then_tonemap():
  image = Image(np.full((2, 2, 4), 1.0, dtype=np.float32))
  process(image, ColorSettings(exposure_ev=1.0, reinhard_max=2.0))
  # 1 * 2**1 = 2, then 2 / (1 + 2 / 2) = 1
  np.testing.assert_allclose(image.pixels, 1.0)


def test_post_process_with_unit_max_still_tonemaps():
  image = Image(np.full((2, 2, 3), 1.0, dtype=np.float32))
  post_process(image, 4.0, 1.0)
  np.testing.assert_allclose(image.pixels, 0.8)


def test_auto_exposure_is_deterministic():
  rng = np.random.default_rng(7)
  pixels = (rng.random((16, 16, 3)) * np.array([2.0, 1.0, 0.5])).astype(np.float32)
  first = auto_exposure(Image(pixels.copy()), 1.0).pixels
  second = auto_exposure(Image(pixels.copy()), 1.0).pixels
  np.testing.assert_array_equal(first, second)
  assert np.all(first < 1.0)


def test_auto_exposure_balances_color_cast():
  pixels = np.ones((8, 8, 3), dtype=np.float32) * np.array([0.8, 0.4, 0.2], dtype=np.float32)
  exposure, gains = estimate_exposure(pixels)
  balanced = pixels[0, 0] * gains
  np.testing.assert_allclose(balanced, balanced[0], rtol=1e-6)
  luminance = float(pixels[0, 0] @ np.array([0.2126, 0.7152, 0.0722]))
  assert exposure == pytest.approx(0.18 / (luminance + 1e-4), rel=1e-6)


def test_auto_exposure_ignores_black_fallback_pixels():
  pixels = np.zeros((8, 8, 3), dtype=np.float32)
  pixels[2:6, 2:6] = 0.5
  exposure_partial, _ = estimate_exposure(pixels)
  exposure_full, _ = estimate_exposure(np.full((8, 8, 3), 0.5, dtype=np.float32))
  assert exposure_partial == pytest.approx(exposure_full)


def test_auto_exposure_leaves_black_image_black():
  image = Image(np.zeros((4, 4, 4), dtype=np.float32))
  process(image, ColorSettings(auto_exposure=True))
  np.testing.assert_array_equal(image.pixels, 0.0)
