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
import os
from pathlib import Path
from typing import Dict, Iterable, Union

import numpy as np

# OpenCV only decodes/encodes OpenEXR when this is set before the first EXR call
os.environ.setdefault('OPENCV_IO_ENABLE_OPENEXR', '1')
import cv2  # noqa: E402

from .errors import DecodeError, EncodeError  # noqa: E402
from .image import Image  # noqa: E402

logger = logging.getLogger(__name__)

SUPPORTED_FORMATS = ('png', 'exr')

PathLike = Union[str, Path]


def _to_rgb(data: np.ndarray) -> np.ndarray:
  """Convert OpenCV's BGR(A)/gray channel layout to RGB(A)."""
  if data.ndim == 2:
    data = data[..., np.newaxis]
  channels = data.shape[2]
  if channels == 1:
    return np.repeat(data, 3, axis=2)
  if channels == 2:
    gray, alpha = data[..., :1], data[..., 1:]
    return np.concatenate([gray, gray, gray, alpha], axis=2)
  if channels == 3:
    return cv2.cvtColor(data, cv2.COLOR_BGR2RGB)
  return cv2.cvtColor(data, cv2.COLOR_BGRA2RGBA)


def _normalize(data: np.ndarray) -> np.ndarray:
  if data.dtype == np.uint8:
    return data.astype(np.float32) / 255.0
  if data.dtype == np.uint16:
    return data.astype(np.float32) / 65535.0
  return data.astype(np.float32, copy=False)


def decode(path: PathLike) -> Image:
  """
  Read a PNG (8 or 16 bit) or OpenEXR image into a float32 RGB(A) Image.

  PNG samples are normalized to [0, 1]; EXR samples are kept as stored.
  The returned image has no lens attached.

  Raises:
  - DecodeError for unsupported extensions and unreadable files
  """
  path = Path(path)
  extension = path.suffix.lower().lstrip('.')
  if extension not in SUPPORTED_FORMATS:
    raise DecodeError(f"Unsupported input format '{path.suffix}': {path}")

  try:
    data = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
  except cv2.error as e:
    raise DecodeError(f"Could not decode image {path}: {e}") from e
  if data is None:
    raise DecodeError(f"Could not load image: {path}")

  logger.debug("Loaded %s: shape %s, dtype %s", path.name, data.shape, data.dtype)
  return Image(_normalize(_to_rgb(data)))


def _encode_png(image: Image, path: Path) -> bool:
  # PNG output carries color only
  color = np.clip(image.pixels[..., :3], 0.0, 1.0)
  data = np.round(color * 255.0).astype(np.uint8)
  return cv2.imwrite(str(path), cv2.cvtColor(data, cv2.COLOR_RGB2BGR))


def _encode_exr(image: Image, path: Path) -> bool:
  if image.channels == 4:
    data = cv2.cvtColor(image.pixels, cv2.COLOR_RGBA2BGRA)
  else:
    data = cv2.cvtColor(image.pixels, cv2.COLOR_RGB2BGR)
  return cv2.imwrite(str(path), data, [cv2.IMWRITE_EXR_TYPE, cv2.IMWRITE_EXR_TYPE_FLOAT])


_ENCODERS = {
  'png': _encode_png,
  'exr': _encode_exr,
}


def encode(image: Image, path: PathLike) -> None:
  """
  Write an Image, choosing the container from the file extension.

  - .png: 8-bit color, clipped to [0, 1]; a fourth channel is dropped
  - .exr: 32-bit float, all channels (color plus alpha/depth)

  Raises:
  - EncodeError for unsupported extensions and failed writes
  """
  path = Path(path)
  extension = path.suffix.lower().lstrip('.')
  encoder = _ENCODERS.get(extension)
  if encoder is None:
    raise EncodeError(f"Unsupported output format '{path.suffix}': {path}")

  try:
    written = encoder(image, path)
  except cv2.error as e:
    raise EncodeError(f"Could not encode image {path}: {e}") from e
  if not written:
    raise EncodeError(f"Could not write image: {path}")


def output_paths(output_dir: PathLike, source: PathLike, formats: Iterable[str]) -> Dict[str, Path]:
  """
  Output file per format: the source file name with its extension replaced.

  Returns:
  - mapping of format name to <output_dir>/<stem>.<format>
  """
  output_dir = Path(output_dir)
  stem = Path(source).stem
  return {fmt: output_dir / f"{stem}.{fmt}" for fmt in formats}
