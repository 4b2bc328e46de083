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

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from .color import ColorSettings
from .config import build_output_config, get_resolution, lens_from_config, load_config, save_config
from .errors import ConfigurationError
from .lens_model import FisheyeEquidistant, FisheyeEquisolid, LensModel, Rectilinear
from .pipeline import BatchPipeline, PipelineSettings, collect_inputs
from .resampler import Interpolation

logger = logging.getLogger(__name__)

# Sensor used for equidistant output, which is specified by its field of view only
EQUIDISTANT_SENSOR_WIDTH = 36.0

_LENS_ARGUMENT_FIELDS = {
  'rectilinear': ('focal_length', 'sensor_width'),
  'equisolid': ('focal_length', 'sensor_width', 'fov'),
  'equidistant': ('fov',),
}


def parse_lens_argument(kind: str, text: str, resolution: Tuple[int, int]) -> LensModel:
  """
  Parse a comma separated lens argument such as "35,36" or "8,36,3.14159".

  The sensor height follows the aspect ratio of the input resolution.

  Parameters:
  - kind: 'rectilinear' (focal_length,sensor_width), 'equisolid'
    (focal_length,sensor_width,fov) or 'equidistant' (fov); fov in radians
  - text: the raw argument
  - resolution: (width, height) of the input images

  Raises:
  - ConfigurationError for unknown kinds, wrong field counts, non-numeric
    fields and out-of-range values
  """
  fields = _LENS_ARGUMENT_FIELDS.get(kind)
  if fields is None:
    raise ConfigurationError(f"Unknown lens type: {kind}")

  parts = [part.strip() for part in text.split(',')]
  if len(parts) != len(fields):
    raise ConfigurationError(f"Required format for --{kind}: {','.join(fields)} (got '{text}')")
  try:
    values = dict(zip(fields, (float(part) for part in parts)))
  except ValueError:
    raise ConfigurationError(f"Non-numeric value in --{kind} '{text}'") from None

  width, height = resolution
  aspect = height / width
  try:
    if kind == 'rectilinear':
      return Rectilinear(values['focal_length'], values['sensor_width'],
                         values['sensor_width'] * aspect)
    if kind == 'equisolid':
      return FisheyeEquisolid(values['focal_length'], values['sensor_width'],
                              values['sensor_width'] * aspect, values['fov'])
    return FisheyeEquidistant(EQUIDISTANT_SENSOR_WIDTH, EQUIDISTANT_SENSOR_WIDTH * aspect,
                              values['fov'])
  except ValueError as e:
    raise ConfigurationError(f"Invalid --{kind} '{text}': {e}") from e


def build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(
    prog='lens-reproject',
    description="Reprojection tool for producing a variation of lens configurations "
                "based on reference images with a known lens configuration.")

  io_group = parser.add_argument_group('Input/output')
  io_group.add_argument('--input-cfg', type=Path, required=True, metavar='json-file',
                        help="Configuration with lens and camera settings of the input images.")
  io_group.add_argument('--output-cfg', type=Path, required=True, metavar='json-file',
                        help="Configuration to write for the reprojected images.")
  inputs = io_group.add_mutually_exclusive_group(required=True)
  inputs.add_argument('-i', '--input-dir', type=Path, metavar='dir',
                      help="Directory containing images to reproject.")
  inputs.add_argument('--single', type=Path, metavar='file', help="A single input file to convert.")
  io_group.add_argument('-o', '--output-dir', type=Path, required=True, metavar='dir',
                        help="Directory to put the reprojected images in.")
  io_group.add_argument('--exr', action='store_true', help="Output EXR files. Color and depth.")
  io_group.add_argument('--png', action='store_true', help="Output PNG files. Color only.")

  filter_group = parser.add_argument_group('Filter files')
  filter_group.add_argument('--filter-prefix', default='', metavar='prefix',
                            help="Only include files and frames starting with prefix.")
  filter_group.add_argument('--filter-suffix', default='', metavar='suffix',
                            help="Only include files and frames ending with suffix.")

  sampling = parser.add_argument_group('Sampling')
  sampling.add_argument('-s', '--samples', type=int, default=1, metavar='number',
                        help="Number of samples per dimension for interpolating.")
  kernels = sampling.add_mutually_exclusive_group()
  kernels.add_argument('--nn', dest='kernel', action='store_const', const=Interpolation.NEAREST,
                       help="Nearest neighbor interpolation.")
  kernels.add_argument('--bl', dest='kernel', action='store_const', const=Interpolation.BILINEAR,
                       help="Bilinear interpolation.")
  kernels.add_argument('--bc', dest='kernel', action='store_const', const=Interpolation.BICUBIC,
                       help="Bicubic interpolation (default).")
  sampling.add_argument('--scale', type=float, default=1.0, metavar='fraction',
                        help="Output scale as a fraction of the input size. Increase --samples "
                             "when downscaling, e.g. --scale 0.5 --samples 2. "
                             "Final dimensions are rounded towards zero.")
  parser.set_defaults(kernel=Interpolation.BICUBIC)

  optics = parser.add_argument_group('Output optics')
  optics.add_argument('--no-reproject', action='store_true', help="Do not reproject at all.")
  optics.add_argument('--rectilinear', metavar='focal_length,sensor_width',
                      help="Output rectilinear images.")
  optics.add_argument('--equisolid', metavar='focal_length,sensor_width,fov',
                      help="Output equisolid fisheye images (fov in radians).")
  optics.add_argument('--equidistant', metavar='fov',
                      help="Output equidistant fisheye images (fov in radians).")

  color_group = parser.add_argument_group('Color processing')
  color_group.add_argument('--auto-exposure', action='store_true',
                           help="Automatic exposure compensation and white balance.")
  color_group.add_argument('--exposure', type=float, default=0.0, metavar='EV',
                           help="Exposure compensation in stops to brighten or darken the images.")
  color_group.add_argument('--reinhard', type=float, default=1.0, metavar='max',
                           help="Reinhard tonemapping maximum, applied after exposure.")

  runtime = parser.add_argument_group('Runtime')
  runtime.add_argument('--skip-if-exists', action='store_true',
                       help="Skip images whose outputs already exist.")
  runtime.add_argument('-j', '--parallel', type=int, default=1, metavar='threads',
                       help="Number of images to process in parallel.")
  runtime.add_argument('--dry-run', action='store_true',
                       help="Only produce the output configuration.")
  runtime.add_argument('-v', '--verbose', action='store_true', help="Enable debug logging.")
  return parser


def _output_formats(args: argparse.Namespace) -> Tuple[str, ...]:
  formats = tuple(fmt for fmt, enabled in (('png', args.png), ('exr', args.exr)) if enabled)
  if not formats:
    raise ConfigurationError("Did not specify any output format. Choose --png or --exr (both are possible).")
  return formats


def _output_lens(args: argparse.Namespace, input_lens: LensModel,
                 resolution: Tuple[int, int]) -> LensModel:
  selected = [kind for kind in _LENS_ARGUMENT_FIELDS if getattr(args, kind) is not None]
  if args.no_reproject:
    selected.append('no-reproject')
  if len(selected) != 1:
    raise ConfigurationError("Specify exactly one output lens type: "
                             "--rectilinear, --equisolid, --equidistant or --no-reproject "
                             f"(got {len(selected)})")
  if args.no_reproject:
    return input_lens
  kind = selected[0]
  return parse_lens_argument(kind, getattr(args, kind), resolution)


def _check_ranges(args: argparse.Namespace) -> None:
  if args.samples < 1:
    raise ConfigurationError(f"--samples must be at least 1, got {args.samples}")
  if args.parallel < 1:
    raise ConfigurationError(f"--parallel must be at least 1, got {args.parallel}")
  if not args.scale > 0:
    raise ConfigurationError(f"--scale must be positive, got {args.scale}")
  if not args.reinhard > 0:
    raise ConfigurationError(f"--reinhard must be positive, got {args.reinhard}")


def main(argv: Optional[Sequence[str]] = None) -> int:
  parser = build_parser()
  args = parser.parse_args(argv)

  logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                      format='%(asctime)s - %(levelname)s - %(message)s')

  try:
    _check_ranges(args)
    formats = _output_formats(args)
    cfg = load_config(args.input_cfg)
    resolution = get_resolution(cfg)
    input_lens = lens_from_config(cfg.get('camera', {}))
    output_lens = _output_lens(args, input_lens, resolution)
    if args.input_dir is not None:
      paths: List[Path] = collect_inputs(args.input_dir, args.filter_prefix, args.filter_suffix)
    else:
      paths = [args.single]
  except ConfigurationError as e:
    parser.error(str(e))
  except OSError as e:
    logger.error("Cannot read inputs: %s", e)
    return 1

  logger.info("Input lens: %r", input_lens)
  logger.info("Output lens: %r", output_lens)
  out_cfg = build_output_config(cfg, output_lens, args.scale, args.filter_prefix, args.filter_suffix)

  try:
    logger.info("Creating directory: %s", args.output_dir)
    args.output_dir.mkdir(parents=True, exist_ok=True)
    logger.info("Saving output config: %s", args.output_cfg)
    save_config(out_cfg, args.output_cfg)
  except OSError as e:
    logger.error("Setup failed: %s", e)
    return 1

  if args.dry_run:
    logger.info("Dry-run. Exiting.")
    return 0

  settings = PipelineSettings(
    output_dir=args.output_dir,
    input_lens=input_lens,
    output_lens=output_lens,
    formats=formats,
    scale=args.scale,
    samples_per_dim=args.samples,
    kernel=args.kernel,
    reproject=not args.no_reproject,
    color=ColorSettings(exposure_ev=args.exposure, reinhard_max=args.reinhard,
                        auto_exposure=args.auto_exposure),
    skip_if_exists=args.skip_if_exists,
    max_workers=args.parallel,
  )

  report = BatchPipeline(settings).run(paths)
  return 0 if report.failed == 0 else 1


if __name__ == "__main__":
  sys.exit(main())
