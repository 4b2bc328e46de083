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

import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

import yaml

from .errors import ConfigurationError
from .lens_model import FisheyeEquidistant, FisheyeEquisolid, LensModel, LensType, Rectilinear

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_YAML_SUFFIXES = ('.yaml', '.yml')


def load_config(filename: PathLike) -> Dict[str, Any]:
  """
  Load a dataset configuration document (JSON, or YAML by extension).

  Raises:
  - ConfigurationError if the file is missing, malformed or not a mapping
  """
  filename = Path(filename)
  try:
    with open(filename, 'r') as f:
      if filename.suffix.lower() in _YAML_SUFFIXES:
        data = yaml.safe_load(f)
      else:
        data = json.load(f)
  except FileNotFoundError:
    raise ConfigurationError(f"Configuration file not found: {filename}") from None
  except (json.JSONDecodeError, yaml.YAMLError) as e:
    raise ConfigurationError(f"Invalid configuration format in file '{filename}': {e}") from e

  if not isinstance(data, dict):
    raise ConfigurationError(f"Configuration file '{filename}' must contain an object")
  return data


def save_config(cfg: Dict[str, Any], filename: PathLike) -> None:
  """Write a configuration document as indented JSON, or YAML by extension."""
  filename = Path(filename)
  with open(filename, 'w') as f:
    if filename.suffix.lower() in _YAML_SUFFIXES:
      yaml.safe_dump(cfg, f, sort_keys=False)
    else:
      json.dump(cfg, f, indent=2)
      f.write('\n')


def get_resolution(cfg: Dict[str, Any]) -> Tuple[int, int]:
  try:
    width, height = cfg['resolution']
    return int(width), int(height)
  except (KeyError, TypeError, ValueError) as e:
    raise ConfigurationError(f"Invalid or missing 'resolution' in configuration: {e}") from e


def lens_from_config(camera: Dict[str, Any]) -> LensModel:
  """
  Build a lens model from the 'camera' object of a configuration document.

  Expected keys: type, sensor_width, sensor_height, plus focal_length for
  rectilinear/equisolid and fov (radians) for the fisheye types.
  """
  try:
    lens_type = LensType(camera['type'])
    sensor_width = float(camera['sensor_width'])
    sensor_height = float(camera['sensor_height'])
    if lens_type is LensType.RECTILINEAR:
      return Rectilinear(float(camera['focal_length']), sensor_width, sensor_height)
    if lens_type is LensType.FISHEYE_EQUISOLID:
      return FisheyeEquisolid(float(camera['focal_length']), sensor_width, sensor_height,
                              float(camera['fov']))
    return FisheyeEquidistant(sensor_width, sensor_height, float(camera['fov']))
  except KeyError as e:
    raise ConfigurationError(f"Missing camera parameter in configuration: {e}") from e
  except (TypeError, ValueError) as e:
    raise ConfigurationError(f"Invalid camera parameters in configuration: {e}") from e


def lens_to_config(lens: LensModel) -> Dict[str, Any]:
  """Inverse of lens_from_config."""
  camera: Dict[str, Any] = {'type': lens.lens_type.value}
  if not isinstance(lens, FisheyeEquidistant):
    camera['focal_length'] = lens.focal_length
  camera['sensor_width'] = lens.sensor_width
  camera['sensor_height'] = lens.sensor_height
  if not isinstance(lens, Rectilinear):
    camera['fov'] = lens.fov
  return camera


def matches_filter(name: str, prefix: str = '', suffix: str = '') -> bool:
  """True if name starts with prefix and ends with suffix. Empty filters match everything."""
  return name.startswith(prefix) and name.endswith(suffix)


def filter_frames(frames: List[Dict[str, Any]], prefix: str = '', suffix: str = '') -> List[Dict[str, Any]]:
  """Keep frame entries whose 'name' passes both the prefix and the suffix filter."""
  return [frame for frame in frames if matches_filter(frame['name'], prefix, suffix)]


def build_output_config(cfg: Dict[str, Any], output_lens: LensModel, scale: float = 1.0,
                        prefix: str = '', suffix: str = '') -> Dict[str, Any]:
  """
  Configuration document describing the reprojected dataset.

  Returns a copy of cfg with the frames filtered, the camera replaced by the
  output lens and the resolution scaled (rounded towards zero, at least 1).
  """
  width, height = get_resolution(cfg)
  out_cfg = copy.deepcopy(cfg)
  if 'frames' in out_cfg:
    out_cfg['frames'] = filter_frames(out_cfg['frames'], prefix, suffix)
  out_cfg['camera'] = lens_to_config(output_lens)
  out_cfg['resolution'] = [max(1, int(width * scale)), max(1, int(height * scale))]
  return out_cfg
