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

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .lens_model import LensModel


class Image:
  """
  Floating-point image together with the lens it was (or will be) projected with.

  Pixels are stored as a C-contiguous float32 array of shape
  (height, width, channels), i.e. a flat row-major buffer. Channels are
  3 (RGB) or 4 (RGB plus alpha or depth). An Image belongs to exactly one
  pipeline stage at a time; stages hand it on instead of sharing it.
  """

  def __init__(self, pixels: np.ndarray, lens: Optional[LensModel] = None):
    pixels = np.ascontiguousarray(pixels, dtype=np.float32)
    if pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
      raise ValueError(f"Expected pixels of shape (height, width, 3|4), got {pixels.shape}")
    if pixels.shape[0] == 0 or pixels.shape[1] == 0:
      raise ValueError(f"Image has no pixels: {pixels.shape}")
    self.pixels = pixels
    self.lens = lens

  @classmethod
  def blank(cls, width: int, height: int, channels: int, lens: Optional[LensModel] = None) -> 'Image':
    """Create an image filled with the fallback color (zero)."""
    return cls(np.zeros((height, width, channels), dtype=np.float32), lens)

  @property
  def width(self) -> int:
    return self.pixels.shape[1]

  @property
  def height(self) -> int:
    return self.pixels.shape[0]

  @property
  def channels(self) -> int:
    return self.pixels.shape[2]

  def copy(self, lens: Optional[LensModel] = None) -> 'Image':
    """Deep copy of the pixel buffer, optionally tagged with another lens."""
    return Image(self.pixels.copy(), self.lens if lens is None else lens)

  def __repr__(self):
    return f"Image({self.width}x{self.height}x{self.channels}, lens={self.lens!r})"


def subsample_offsets(samples_per_dim: int) -> np.ndarray:
  """
  Uniform grid of sub-pixel offsets inside a pixel footprint.

  Parameters:
  - samples_per_dim: grid size n, must be >= 1

  Returns:
  - array of shape (n*n, 2) with (dx, dy) offsets in (-0.5, 0.5);
    n = 1 yields the single offset (0, 0)
  """
  if samples_per_dim < 1:
    raise ValueError(f"samples_per_dim must be >= 1, got {samples_per_dim}")
  steps = (np.arange(samples_per_dim, dtype=np.float64) + 0.5) / samples_per_dim - 0.5
  dy, dx = np.meshgrid(steps, steps, indexing='ij')
  return np.stack([dx.ravel(), dy.ravel()], axis=-1)


@dataclass(frozen=True)
class SampleRequest:
  """Output pixel coordinate plus supersampling grid size."""
  x: int
  y: int
  samples_per_dim: int = 1

  def positions(self) -> np.ndarray:
    """Absolute (x, y) positions of the n*n sub-samples of this pixel."""
    return subsample_offsets(self.samples_per_dim) + np.array([self.x, self.y], dtype=np.float64)
