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

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .image import Image

logger = logging.getLogger(__name__)

# Rec. 709 luminance weights
LUMINANCE_WEIGHTS = np.array([0.2126, 0.7152, 0.0722], dtype=np.float64)
# Middle grey the log-average luminance is mapped to by auto-exposure
AUTO_EXPOSURE_KEY = 0.18
LOG_DELTA = 1e-4


@dataclass(frozen=True)
class ColorSettings:
  """
  Color processing applied after reprojection.

  - exposure_ev: exposure compensation in stops
  - reinhard_max: Reinhard tonemap maximum; 1.0 together with 0 EV disables processing
  - auto_exposure: derive exposure and white balance from the image instead of exposure_ev
  """
  exposure_ev: float = 0.0
  reinhard_max: float = 1.0
  auto_exposure: bool = False

  @property
  def exposure(self) -> float:
    return 2.0 ** self.exposure_ev

  @property
  def is_noop(self) -> bool:
    return not self.auto_exposure and self.exposure == 1.0 and self.reinhard_max == 1.0


def apply_exposure(pixels: np.ndarray, ev: float) -> np.ndarray:
  """Scale every channel sample by 2**ev."""
  return (pixels * (2.0 ** ev)).astype(pixels.dtype, copy=False)


def reinhard(pixels: np.ndarray, max_value: float) -> np.ndarray:
  """
  Reinhard tonemap: out = in / (1 + in / max).

  Monotonically increasing for non-negative input, approaches max_value as
  the input grows and stays close to the identity for values far below it.
  """
  if not max_value > 0:
    raise ValueError(f"Reinhard maximum must be positive, got {max_value}")
  return (pixels / (1.0 + pixels / max_value)).astype(pixels.dtype, copy=False)


def post_process(image: Image, exposure: float, reinhard_max: float) -> Image:
  """
  Multiply by an exposure factor, then tonemap. Modifies the image in place.

  Parameters:
  - exposure: linear multiplier (2**EV)
  - reinhard_max: tonemap maximum
  """
  pixels = image.pixels
  pixels *= exposure
  image.pixels = reinhard(pixels, reinhard_max)
  return image


def estimate_exposure(pixels: np.ndarray) -> Tuple[float, np.ndarray]:
  """
  Estimate exposure and gray-world white balance from an image.

  Only pixels with positive luminance contribute, so fallback (black)
  regions outside the field of view do not drag the estimate down.

  Returns:
  - exposure: multiplier mapping the log-average luminance to middle grey
  - gains: per color channel white-balance gains (3 values)
  """
  color = pixels[..., :3].reshape(-1, 3).astype(np.float64)
  luminance = color @ LUMINANCE_WEIGHTS
  lit = luminance > 0
  if not np.any(lit):
    return 1.0, np.ones(3)

  color = color[lit]
  luminance = luminance[lit]
  log_average = float(np.exp(np.mean(np.log(LOG_DELTA + luminance))))
  exposure = AUTO_EXPOSURE_KEY / log_average

  channel_means = color.mean(axis=0)
  gains = np.ones(3)
  nonzero = channel_means > 0
  gains[nonzero] = luminance.mean() / channel_means[nonzero]
  return exposure, gains


def auto_exposure(image: Image, reinhard_max: float) -> Image:
  """
  Automatic exposure and white balance followed by Reinhard tonemapping.

  The auxiliary fourth channel, if any, receives the exposure but no
  white-balance gain. Modifies the image in place.
  """
  exposure, gains = estimate_exposure(image.pixels)
  logger.debug("Auto exposure %.4f, white balance gains %s", exposure, np.round(gains, 4))

  scale = np.full(image.channels, exposure, dtype=np.float64)
  scale[:3] *= gains
  pixels = image.pixels
  pixels *= scale.astype(np.float32)
  image.pixels = reinhard(pixels, reinhard_max)
  return image


def process(image: Image, settings: ColorSettings) -> Image:
  """Color processing stage entry point. Returns the image untouched on the no-op path."""
  if settings.auto_exposure:
    return auto_exposure(image, settings.reinhard_max)
  if settings.is_noop:
    return image
  return post_process(image, settings.exposure, settings.reinhard_max)
