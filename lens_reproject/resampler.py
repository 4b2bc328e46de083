"""
MIT License

Copyright (c) 2025 Pan Yu

Permission is hereby granted, free of charge, to any person obtaining a copy
of this software and associated documentation files (the "Software"), to deal
in the Software without restriction, including without limitation the rights
to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
copies of the Software, and to permit persons to whom the Software is
furnished to do so, subject to the following conditions:

The above copyright notice and this permission notice shall be included in all
copies or substantial portions of the Software.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
SOFTWARE.

Author: Pan Yu
"""

from enum import Enum
from typing import Callable, Dict

import numpy as np

from .image import Image

# Catmull-Rom
CUBIC_A = -0.5


class Interpolation(Enum):
  """Resampling kernels."""
  NEAREST = "nearest"
  BILINEAR = "bilinear"
  BICUBIC = "bicubic"


def _gather(pixels: np.ndarray, ix: np.ndarray, iy: np.ndarray) -> np.ndarray:
  """
  Fetch pixel values at integer coordinates.

  Taps outside the image yield the fallback color (zero); they are never
  clamped to the border and never read out of bounds.
  """
  height, width = pixels.shape[:2]
  inside = (ix >= 0) & (ix < width) & (iy >= 0) & (iy < height)
  values = pixels[np.clip(iy, 0, height - 1), np.clip(ix, 0, width - 1)]
  values[~inside] = 0.0
  return values


def cubic_weights(t: np.ndarray, a: float = CUBIC_A) -> np.ndarray:
  """Cubic convolution kernel evaluated at distance t."""
  t = np.abs(t)
  t2 = t * t
  t3 = t2 * t
  near = (a + 2.0) * t3 - (a + 3.0) * t2 + 1.0
  far = a * t3 - 5.0 * a * t2 + 8.0 * a * t - 4.0 * a
  return np.where(t <= 1.0, near, np.where(t < 2.0, far, 0.0))


def _sample_nearest(pixels: np.ndarray, x: np.ndarray, y: np.ndarray) -> np.ndarray:
  ix = np.floor(x + 0.5).astype(np.intp)
  iy = np.floor(y + 0.5).astype(np.intp)
  return _gather(pixels, ix, iy)


def _sample_bilinear(pixels: np.ndarray, x: np.ndarray, y: np.ndarray) -> np.ndarray:
  x0 = np.floor(x)
  y0 = np.floor(y)
  fx = (x - x0)[..., np.newaxis]
  fy = (y - y0)[..., np.newaxis]
  ix = x0.astype(np.intp)
  iy = y0.astype(np.intp)

  top = (1.0 - fx) * _gather(pixels, ix, iy) + fx * _gather(pixels, ix + 1, iy)
  bottom = (1.0 - fx) * _gather(pixels, ix, iy + 1) + fx * _gather(pixels, ix + 1, iy + 1)
  return (1.0 - fy) * top + fy * bottom


def _sample_bicubic(pixels: np.ndarray, x: np.ndarray, y: np.ndarray) -> np.ndarray:
  x0 = np.floor(x)
  y0 = np.floor(y)
  fx = x - x0
  fy = y - y0
  ix = x0.astype(np.intp)
  iy = y0.astype(np.intp)

  # Horizontal weights are shared by all four rows of the 4x4 neighbourhood
  weights_x = [cubic_weights(fx - i)[..., np.newaxis] for i in range(-1, 3)]

  result = np.zeros(x.shape + (pixels.shape[2],), dtype=np.float64)
  for j in range(-1, 3):
    row = np.zeros_like(result)
    for i, wx in zip(range(-1, 3), weights_x):
      row += wx * _gather(pixels, ix + i, iy + j)
    result += cubic_weights(fy - j)[..., np.newaxis] * row
  return result


_SAMPLERS: Dict[Interpolation, Callable] = {
  Interpolation.NEAREST: _sample_nearest,
  Interpolation.BILINEAR: _sample_bilinear,
  Interpolation.BICUBIC: _sample_bicubic,
}


class Resampler:
  """
  Samples an image at fractional pixel-center coordinates.

  Every channel is filtered independently with the same weights. Kernel
  taps that fall outside the image contribute the fallback color (zero),
  so samples near the border fade towards zero instead of smearing the
  edge pixels.
  """

  def __init__(self, kernel: Interpolation = Interpolation.BICUBIC):
    self.kernel = Interpolation(kernel)
    self._sampler = _SAMPLERS[self.kernel]

  def sample(self, image: Image, x, y) -> np.ndarray:
    """
    Sample image at (x, y).

    Parameters:
    - image: source Image
    - x, y: scalars or equally shaped arrays of pixel-center coordinates

    Returns:
    - float32 array of shape x.shape + (channels,)
    """
    x = np.asarray(x, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    if x.shape != y.shape:
      raise ValueError(f"Coordinate shapes differ: {x.shape} vs {y.shape}")
    # Flat coordinates keep every tap lookup a fancy-indexed copy
    values = self._sampler(image.pixels, x.reshape(-1), y.reshape(-1))
    return values.reshape(x.shape + (image.channels,)).astype(np.float32, copy=False)

  def __repr__(self):
    return f"Resampler({self.kernel.value})"


def sample(image: Image, x, y, kernel: Interpolation = Interpolation.BICUBIC) -> np.ndarray:
  """Convenience wrapper around Resampler(kernel).sample(image, x, y)."""
  return Resampler(kernel).sample(image, x, y)
