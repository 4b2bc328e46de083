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
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional, Tuple

import numpy as np

from .cache_manager import CacheManager, ProjectionMaps
from .image import Image, subsample_offsets
from .lens_model import LensModel, project, unproject
from .resampler import Interpolation, Resampler

logger = logging.getLogger(__name__)

# Upper bound on sub-samples evaluated per row chunk during map generation
CHUNK_SAMPLES = 1 << 21


def scaled_size(width: int, height: int, scale: float) -> Tuple[int, int]:
  """Output dimensions for a scale factor, rounded towards zero and at least 1."""
  if not scale > 0:
    raise ValueError(f"Scale must be positive, got {scale}")
  return max(1, int(width * scale)), max(1, int(height * scale))


def passthrough(image: Image) -> Image:
  """
  Copy an image unchanged.

  Used when neither the lens nor the resolution changes; the result is
  bit-identical to the source buffer.
  """
  return image.copy()


def apply_projection_maps(image: Image, maps: ProjectionMaps, resampler: Resampler) -> np.ndarray:
  """
  Resample an image through pre-generated coordinate maps.

  Parameters:
  - image: source image
  - maps: (map_x, map_y, valid), each of shape (n*n, out_height, out_width)
  - resampler: kernel used for every valid sub-sample

  Returns:
  - float32 pixels of shape (out_height, out_width, channels). Each pixel is
    the unweighted mean of its sub-samples, invalid sub-samples counting as
    zero. Pixels straddling the input field of view therefore fade out
    instead of being cut off hard.
  """
  map_x, map_y, valid = maps
  num_samples, output_height, output_width = map_x.shape

  start_time = time.time()
  accum = np.zeros((output_height, output_width, image.channels), dtype=np.float64)
  for s in range(num_samples):
    mask = valid[s]
    if np.any(mask):
      accum[mask] += resampler.sample(image, map_x[s][mask], map_y[s][mask])
  accum /= num_samples

  logger.debug("Resampling processing time: %.4f seconds", time.time() - start_time)
  return accum.astype(np.float32)


class ReprojectionEngine:
  """
  Reprojects images into the pixel grid of an output lens.

  For every output pixel, a uniform grid of sub-samples is unprojected
  through the output lens, projected through the input lens and sampled
  with the selected kernel. The resulting coordinate maps depend only on
  geometry, so they are cached and shared across images.
  """

  def __init__(self, output_lens: LensModel, samples_per_dim: int = 1,
               kernel: Interpolation = Interpolation.BICUBIC,
               cache_manager: Optional[CacheManager] = None, max_workers: int = 1):
    """
    Parameters:
    - output_lens: lens model of the produced images
    - samples_per_dim: supersampling grid size n (n*n samples per pixel)
    - kernel: resampling kernel
    - cache_manager: optional shared map cache. If None, creates a new one.
    - max_workers: threads used to generate maps in row chunks
    """
    if samples_per_dim < 1:
      raise ValueError(f"samples_per_dim must be >= 1, got {samples_per_dim}")
    if max_workers < 1:
      raise ValueError(f"max_workers must be >= 1, got {max_workers}")
    self.output_lens = output_lens
    self.samples_per_dim = samples_per_dim
    self.resampler = Resampler(kernel)
    self.cache_manager = cache_manager if cache_manager is not None else CacheManager()
    self.max_workers = max_workers
    self._key_locks: Dict[str, threading.Lock] = {}
    self._key_locks_guard = threading.Lock()
    self._uncached: Optional[Tuple[str, ProjectionMaps]] = None

  def _generate_cache_key(self, input_lens: LensModel, input_width: int, input_height: int,
                          output_width: int, output_height: int) -> str:
    return (f"{input_lens!r}_{input_width}x{input_height}"
            f"_to_{self.output_lens!r}_{output_width}x{output_height}_s{self.samples_per_dim}")

  def _process_row_chunk(self, row_start: int, row_end: int, input_lens: LensModel,
                         input_width: int, input_height: int,
                         output_width: int, output_height: int) -> ProjectionMaps:
    """
    Generate maps for output rows [row_start, row_end).

    Returns:
    - (map_x, map_y, valid), each of shape (n*n, row_end - row_start, output_width)
    """
    offsets = subsample_offsets(self.samples_per_dim)
    v_coords, u_coords = np.mgrid[row_start:row_end, 0:output_width].astype(np.float64)

    # (samples, rows, width)
    px = u_coords[np.newaxis] + offsets[:, 0, np.newaxis, np.newaxis]
    py = v_coords[np.newaxis] + offsets[:, 1, np.newaxis, np.newaxis]

    rays = unproject(self.output_lens, px, py, output_width, output_height)
    map_x, map_y, valid = project(input_lens, rays, input_width, input_height)

    map_x = np.where(valid, map_x, -1.0).astype(np.float32)
    map_y = np.where(valid, map_y, -1.0).astype(np.float32)
    return map_x, map_y, valid

  def _generate_projection_maps(self, input_lens: LensModel, input_width: int, input_height: int,
                                output_width: int, output_height: int) -> ProjectionMaps:
    start_time = time.time()

    num_samples = self.samples_per_dim * self.samples_per_dim
    chunk_size = max(1, CHUNK_SAMPLES // (num_samples * output_width))
    row_ranges = [(row_start, min(row_start + chunk_size, output_height))
                  for row_start in range(0, output_height, chunk_size)]

    shape = (num_samples, output_height, output_width)
    map_x = np.empty(shape, dtype=np.float32)
    map_y = np.empty(shape, dtype=np.float32)
    valid = np.empty(shape, dtype=bool)

    def process(row_range):
      return self._process_row_chunk(row_range[0], row_range[1], input_lens,
                                     input_width, input_height, output_width, output_height)

    if self.max_workers == 1 or len(row_ranges) == 1:
      chunks = map(process, row_ranges)
    else:
      with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
        chunks = list(executor.map(process, row_ranges))

    for (row_start, row_end), (chunk_x, chunk_y, chunk_valid) in zip(row_ranges, chunks):
      map_x[:, row_start:row_end] = chunk_x
      map_y[:, row_start:row_end] = chunk_y
      valid[:, row_start:row_end] = chunk_valid

    logger.info("Generated %dx%d projection maps with %d samples per pixel "
                "(%d row chunks), processing time: %.4f seconds",
                output_width, output_height, num_samples, len(row_ranges), time.time() - start_time)
    return map_x, map_y, valid

  def _key_lock(self, cache_key: str) -> threading.Lock:
    with self._key_locks_guard:
      return self._key_locks.setdefault(cache_key, threading.Lock())

  def get_projection_maps(self, input_lens: LensModel, input_width: int, input_height: int,
                          output_width: int, output_height: int) -> ProjectionMaps:
    """
    Get coordinate maps from the cache, generating them on a miss.

    Generation is single-flight per geometry: concurrent callers asking for
    the same maps wait for the first one instead of building their own copy.
    Maps too large for the cache are kept for the most recent geometry so a
    batch does not rebuild them for every image.

    Returns:
    - (map_x, map_y, valid): input pixel coordinates and validity of every
      sub-sample, each of shape (n*n, output_height, output_width)
    """
    if input_width < 1 or input_height < 1:
      raise ValueError(f"Invalid input size: {input_width}x{input_height}")
    if output_width < 1 or output_height < 1:
      raise ValueError(f"Invalid output size: {output_width}x{output_height}")

    cache_key = self._generate_cache_key(input_lens, input_width, input_height,
                                         output_width, output_height)
    with self._key_lock(cache_key):
      uncached = self._uncached
      if uncached is not None and uncached[0] == cache_key:
        return uncached[1]

      maps = self.cache_manager.get(cache_key)
      if maps is not None:
        return maps

      maps = self._generate_projection_maps(input_lens, input_width, input_height,
                                            output_width, output_height)
      if not self.cache_manager.put(cache_key, maps):
        self._uncached = (cache_key, maps)
      return maps

  def reproject(self, image: Image, output_width: int, output_height: int) -> Image:
    """
    Reproject an image into the output lens at the given resolution.

    Parameters:
    - image: source image, its lens attribute must be set

    Returns:
    - new Image owning its own buffer, tagged with the output lens
    """
    if image.lens is None:
      raise ValueError("Input image has no lens model")

    maps = self.get_projection_maps(image.lens, image.width, image.height,
                                    output_width, output_height)
    pixels = apply_projection_maps(image, maps, self.resampler)
    return Image(pixels, self.output_lens)


def reproject(image: Image, output_lens: LensModel, output_width: int, output_height: int,
              samples_per_dim: int = 1, kernel: Interpolation = Interpolation.BICUBIC) -> Image:
  """Reproject a single image without keeping the generated maps around."""
  engine = ReprojectionEngine(output_lens, samples_per_dim, kernel)
  return engine.reproject(image, output_width, output_height)
