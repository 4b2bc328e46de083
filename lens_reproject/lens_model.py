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

import math
from dataclasses import dataclass
from enum import Enum
from typing import Callable, ClassVar, Dict, Tuple, Union

import numpy as np


class LensType(Enum):
  """Projection models understood by the reprojection engine."""
  RECTILINEAR = "rectilinear"
  FISHEYE_EQUISOLID = "fisheye_equisolid"
  FISHEYE_EQUIDISTANT = "fisheye_equidistant"


def _validate_sensor(sensor_width: float, sensor_height: float) -> None:
  if not sensor_width > 0 or not sensor_height > 0:
    raise ValueError(f"Invalid sensor size: {sensor_width}x{sensor_height}")


def _validate_focal_length(focal_length: float) -> None:
  if not focal_length > 0:
    raise ValueError(f"Invalid focal length: {focal_length}")


def _validate_fov(fov: float) -> None:
  if not 0 < fov < 2 * math.pi:
    raise ValueError(f"Field of view must be in (0, 2*pi) radians, got {fov}")


@dataclass(frozen=True)
class Rectilinear:
  """
  Pinhole lens. Sensor dimensions and focal length share one unit (usually mm).
  """
  focal_length: float
  sensor_width: float
  sensor_height: float

  lens_type: ClassVar[LensType] = LensType.RECTILINEAR

  def __post_init__(self):
    _validate_focal_length(self.focal_length)
    _validate_sensor(self.sensor_width, self.sensor_height)


@dataclass(frozen=True)
class FisheyeEquisolid:
  """
  Equisolid-angle fisheye: r = 2 * f * sin(theta / 2).

  Parameters:
  - focal_length: lens focal length, same unit as the sensor
  - sensor_width, sensor_height: sensor extent
  - fov: field of view in radians, the image circle ends at theta = fov / 2
  """
  focal_length: float
  sensor_width: float
  sensor_height: float
  fov: float

  lens_type: ClassVar[LensType] = LensType.FISHEYE_EQUISOLID

  def __post_init__(self):
    _validate_focal_length(self.focal_length)
    _validate_sensor(self.sensor_width, self.sensor_height)
    _validate_fov(self.fov)


@dataclass(frozen=True)
class FisheyeEquidistant:
  """
  Equidistant fisheye: r = f * theta, with f chosen so that theta = fov / 2
  lands on the sensor's horizontal edge.
  """
  sensor_width: float
  sensor_height: float
  fov: float

  lens_type: ClassVar[LensType] = LensType.FISHEYE_EQUIDISTANT

  def __post_init__(self):
    _validate_sensor(self.sensor_width, self.sensor_height)
    _validate_fov(self.fov)

  @property
  def focal_length(self) -> float:
    return self.sensor_width / self.fov


LensModel = Union[Rectilinear, FisheyeEquisolid, FisheyeEquidistant]


@dataclass(frozen=True, eq=False)
class Ray:
  """
  Bundle of unit viewing directions in camera space (x right, y down, z forward).

  - directions: array of shape (..., 3)
  - valid: boolean mask of shape (...), False where the originating pixel lies
    outside the lens' image circle
  """
  directions: np.ndarray
  valid: np.ndarray

  @property
  def x(self) -> np.ndarray:
    return self.directions[..., 0]

  @property
  def y(self) -> np.ndarray:
    return self.directions[..., 1]

  @property
  def z(self) -> np.ndarray:
    return self.directions[..., 2]


def pixel_to_sensor(lens: LensModel, px, py, width: int, height: int) -> Tuple[np.ndarray, np.ndarray]:
  """
  Convert pixel-center coordinates to sensor coordinates centered on the optical axis.

  Pixel i spans [i - 0.5, i + 0.5), so the axis sits at ((width - 1) / 2, (height - 1) / 2).
  """
  sx = (np.asarray(px, dtype=np.float64) - (width - 1) / 2.0) * (lens.sensor_width / width)
  sy = (np.asarray(py, dtype=np.float64) - (height - 1) / 2.0) * (lens.sensor_height / height)
  return sx, sy


def sensor_to_pixel(lens: LensModel, sx, sy, width: int, height: int) -> Tuple[np.ndarray, np.ndarray]:
  """Inverse of pixel_to_sensor."""
  px = sx * (width / lens.sensor_width) + (width - 1) / 2.0
  py = sy * (height / lens.sensor_height) + (height - 1) / 2.0
  return px, py


def _directions_from_angles(sx: np.ndarray, sy: np.ndarray, theta: np.ndarray) -> np.ndarray:
  # Azimuth of the ray equals the polar angle of the sensor point
  phi = np.arctan2(sy, sx)
  sin_theta = np.sin(theta)
  return np.stack([sin_theta * np.cos(phi), sin_theta * np.sin(phi), np.cos(theta)], axis=-1)


def _angles_from_directions(x: np.ndarray, y: np.ndarray, z: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
  # arctan2 keeps precision near the axis where arccos(z) does not
  theta = np.arctan2(np.hypot(x, y), z)
  phi = np.arctan2(y, x)
  return theta, phi


def _unproject_rectilinear(lens: Rectilinear, sx: np.ndarray, sy: np.ndarray):
  directions = np.stack([sx, sy, np.full_like(sx, lens.focal_length)], axis=-1)
  directions /= np.linalg.norm(directions, axis=-1, keepdims=True)
  return directions, np.ones(sx.shape, dtype=bool)


def _project_rectilinear(lens: Rectilinear, x: np.ndarray, y: np.ndarray, z: np.ndarray):
  in_front = z > 0
  safe_z = np.where(in_front, z, 1.0)
  sx = lens.focal_length * x / safe_z
  sy = lens.focal_length * y / safe_z
  on_sensor = (np.abs(sx) <= lens.sensor_width / 2.0) & (np.abs(sy) <= lens.sensor_height / 2.0)
  return sx, sy, in_front & on_sensor


def _unproject_equisolid(lens: FisheyeEquisolid, sx: np.ndarray, sy: np.ndarray):
  ratio = np.hypot(sx, sy) / (2.0 * lens.focal_length)
  theta = 2.0 * np.arcsin(np.minimum(ratio, 1.0))
  valid = (ratio <= 1.0) & (theta <= lens.fov / 2.0)
  return _directions_from_angles(sx, sy, theta), valid


def _project_equisolid(lens: FisheyeEquisolid, x: np.ndarray, y: np.ndarray, z: np.ndarray):
  theta, phi = _angles_from_directions(x, y, z)
  r = 2.0 * lens.focal_length * np.sin(theta / 2.0)
  return r * np.cos(phi), r * np.sin(phi), theta <= lens.fov / 2.0


def _unproject_equidistant(lens: FisheyeEquidistant, sx: np.ndarray, sy: np.ndarray):
  theta = np.hypot(sx, sy) / lens.focal_length
  valid = theta <= lens.fov / 2.0
  # Beyond pi the direction wraps around; those pixels are invalid anyway
  theta = np.minimum(theta, math.pi)
  return _directions_from_angles(sx, sy, theta), valid


def _project_equidistant(lens: FisheyeEquidistant, x: np.ndarray, y: np.ndarray, z: np.ndarray):
  theta, phi = _angles_from_directions(x, y, z)
  r = lens.focal_length * theta
  return r * np.cos(phi), r * np.sin(phi), theta <= lens.fov / 2.0


_UNPROJECTORS: Dict[type, Callable] = {
  Rectilinear: _unproject_rectilinear,
  FisheyeEquisolid: _unproject_equisolid,
  FisheyeEquidistant: _unproject_equidistant,
}

_PROJECTORS: Dict[type, Callable] = {
  Rectilinear: _project_rectilinear,
  FisheyeEquisolid: _project_equisolid,
  FisheyeEquidistant: _project_equidistant,
}


def _lookup(table: Dict[type, Callable], lens: LensModel) -> Callable:
  try:
    return table[type(lens)]
  except KeyError:
    raise TypeError(f"Unsupported lens model: {lens!r}") from None


def unproject(lens: LensModel, px, py, width: int, height: int) -> Ray:
  """
  Map pixel-center coordinates of a width x height image to viewing rays.

  Parameters:
  - lens: lens model the image was captured with
  - px, py: scalars or arrays of pixel coordinates (same shape)
  - width, height: image dimensions in pixels

  Returns:
  - Ray bundle with directions of shape px.shape + (3,)
  """
  unprojector = _lookup(_UNPROJECTORS, lens)
  sx, sy = pixel_to_sensor(lens, px, py, width, height)
  directions, valid = unprojector(lens, sx, sy)
  return Ray(directions=directions, valid=valid)


def project(lens: LensModel, ray: Ray, width: int, height: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
  """
  Map viewing rays to pixel-center coordinates of a width x height image.

  Returns:
  - px, py: fractional pixel coordinates
  - valid: False where the ray is behind the camera, outside the lens'
    field of view, or was already invalid when unprojected
  """
  projector = _lookup(_PROJECTORS, lens)
  sx, sy, valid = projector(lens, ray.x, ray.y, ray.z)
  px, py = sensor_to_pixel(lens, sx, sy, width, height)
  return px, py, valid & ray.valid
