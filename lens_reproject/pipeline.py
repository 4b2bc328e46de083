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
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from . import color
from .cache_manager import CacheManager
from .color import ColorSettings
from .config import matches_filter
from .errors import ConfigurationError
from .image import Image
from .image_io import SUPPORTED_FORMATS, decode, encode, output_paths
from .lens_model import LensModel
from .reprojection import ReprojectionEngine, passthrough, scaled_size
from .resampler import Interpolation

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class ItemState(Enum):
  """Lifecycle of one work item. Items only move forward."""
  PENDING = "pending"
  DECODING = "decoding"
  REPROJECTING = "reprojecting"
  COLOR_PROCESSING = "color_processing"
  ENCODING = "encoding"
  DONE = "done"
  FAILED = "failed"

  @property
  def is_terminal(self) -> bool:
    return self in (ItemState.DONE, ItemState.FAILED)


_TRANSITIONS = {
  ItemState.PENDING: (ItemState.DECODING, ItemState.DONE),
  ItemState.DECODING: (ItemState.REPROJECTING,),
  ItemState.REPROJECTING: (ItemState.COLOR_PROCESSING,),
  ItemState.COLOR_PROCESSING: (ItemState.ENCODING,),
  ItemState.ENCODING: (ItemState.DONE,),
}


class WorkItem:
  """One input file. Mutated only by the worker that processes it."""

  def __init__(self, path: Path):
    self.path = path
    self.state = ItemState.PENDING
    self.history: List[ItemState] = [ItemState.PENDING]

  def advance(self, state: ItemState) -> None:
    if self.state.is_terminal:
      raise RuntimeError(f"{self.path}: already {self.state.value}")
    if state is not ItemState.FAILED and state not in _TRANSITIONS[self.state]:
      raise RuntimeError(f"{self.path}: invalid transition {self.state.value} -> {state.value}")
    self.state = state
    self.history.append(state)

  def __repr__(self):
    return f"WorkItem({str(self.path)!r}, {self.state.value})"


@dataclass(frozen=True)
class ItemResult:
  """Message a worker posts when its item reaches a terminal state."""
  path: Path
  state: ItemState
  skipped: bool = False
  failed_stage: Optional[ItemState] = None
  error: Optional[str] = None


@dataclass(frozen=True)
class BatchReport:
  """Summary produced by BatchPipeline.shutdown()."""
  submitted: int
  completed: int
  skipped: int
  failed: int
  states: Tuple[Tuple[Path, ItemState], ...] = ()

  @property
  def pending(self) -> int:
    return sum(1 for _, state in self.states if not state.is_terminal)

  @property
  def succeeded(self) -> bool:
    return self.failed == 0 and self.completed == self.submitted


@dataclass
class PipelineSettings:
  """
  Everything a worker needs to turn one input file into its outputs.

  When reproject is False the output lens is forced to the input lens.
  """
  output_dir: Path
  input_lens: LensModel
  output_lens: Optional[LensModel] = None
  formats: Tuple[str, ...] = ('png',)
  scale: float = 1.0
  samples_per_dim: int = 1
  kernel: Interpolation = Interpolation.BICUBIC
  reproject: bool = True
  color: ColorSettings = field(default_factory=ColorSettings)
  skip_if_exists: bool = False
  max_workers: int = 1
  map_cache_mb: Optional[float] = 2048.0

  def __post_init__(self):
    self.output_dir = Path(self.output_dir)
    self.formats = tuple(self.formats)
    if not self.formats:
      raise ValueError("At least one output format is required")
    unsupported = [fmt for fmt in self.formats if fmt not in SUPPORTED_FORMATS]
    if unsupported:
      raise ValueError(f"Unsupported output formats: {unsupported}")
    if self.max_workers < 1:
      raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
    if not self.scale > 0:
      raise ValueError(f"Scale must be positive, got {self.scale}")
    if not self.reproject:
      self.output_lens = self.input_lens
    elif self.output_lens is None:
      raise ValueError("An output lens is required when reprojecting")


def collect_inputs(input_dir: PathLike, prefix: str = '', suffix: str = '') -> List[Path]:
  """
  Regular PNG/EXR files in input_dir, sorted by name.

  The prefix/suffix filters apply to the file stem, the same way frame
  names are filtered in the configuration.

  Raises:
  - ConfigurationError if two inputs share a stem (e.g. a.png and a.exr),
    since both would write the same output files
  """
  paths = []
  seen: Dict[str, Path] = {}
  for path in sorted(Path(input_dir).iterdir()):
    if not path.is_file():
      continue
    if path.suffix.lower().lstrip('.') not in SUPPORTED_FORMATS:
      continue
    if not matches_filter(path.stem, prefix, suffix):
      continue
    if path.stem in seen:
      raise ConfigurationError(f"Inputs '{seen[path.stem].name}' and '{path.name}' "
                               f"would write the same output files")
    seen[path.stem] = path
    paths.append(path)
  return paths


class BatchPipeline:
  """
  Bounded worker pool converting input files one item per worker.

  Each worker runs an item to completion (decode, reproject, color process,
  encode) and posts an ItemResult on a queue. A single aggregator thread
  consumes the results, owns the progress counter and logs progress, so no
  mutable state is shared between workers. A failing item is reported and
  marked FAILED without affecting the others.
  """

  def __init__(self, settings: PipelineSettings,
               decoder: Callable[[Path], Image] = decode,
               encoder: Callable[[Image, Path], None] = encode,
               reprojector: Optional[Callable[[Image], Image]] = None,
               cache_manager: Optional[CacheManager] = None):
    """
    Parameters:
    - settings: PipelineSettings
    - decoder, encoder: image codec callables
    - reprojector: optional replacement for the reprojection stage
    - cache_manager: optional map cache. If None, creates one bounded by settings.map_cache_mb.
    """
    self.settings = settings
    self._decode = decoder
    self._encode = encoder
    if cache_manager is None:
      cache_manager = CacheManager(max_memory_mb=settings.map_cache_mb)
    self.engine = ReprojectionEngine(settings.output_lens, settings.samples_per_dim,
                                     settings.kernel, cache_manager=cache_manager)
    self._reproject = reprojector if reprojector is not None else self._reproject_image

    self._items: List[WorkItem] = []
    self._lock = threading.Lock()
    self._closed = False
    self._submitted = 0
    self._report: Optional[BatchReport] = None

    self._results: 'queue.Queue[Optional[ItemResult]]' = queue.Queue()
    self._done_count = 0
    self._skipped_count = 0
    self._failed_count = 0
    self._start_time = time.time()

    self._executor = ThreadPoolExecutor(max_workers=settings.max_workers,
                                        thread_name_prefix='reproject-worker')
    self._aggregator = threading.Thread(target=self._aggregate, name='reproject-progress',
                                        daemon=True)
    self._aggregator.start()
    logger.info("Initialized batch pipeline with %d workers", settings.max_workers)

  def __enter__(self) -> 'BatchPipeline':
    return self

  def __exit__(self, exc_type, exc, tb):
    self.shutdown()

  @property
  def items(self) -> List[WorkItem]:
    return list(self._items)

  def submit(self, path: PathLike) -> None:
    """Enqueue one input file."""
    with self._lock:
      if self._closed:
        raise RuntimeError("Cannot submit to a pipeline that has been shut down")
      item = WorkItem(Path(path))
      self._items.append(item)
      self._submitted += 1
      self._executor.submit(self._run_item, item)

  def run(self, paths: Iterable[PathLike]) -> BatchReport:
    """Submit every path, then wait for all of them."""
    for path in paths:
      self.submit(path)
    return self.shutdown()

  def shutdown(self) -> BatchReport:
    """
    Block until every submitted item is DONE or FAILED.

    Returns:
    - BatchReport with submitted, completed, skipped and failed counts
    """
    with self._lock:
      if self._closed:
        return self._report
      self._closed = True

    self._executor.shutdown(wait=True)
    self._results.put(None)
    self._aggregator.join()

    self._report = BatchReport(
      submitted=self._submitted,
      completed=self._done_count,
      skipped=self._skipped_count,
      failed=self._failed_count,
      states=tuple((item.path, item.state) for item in self._items),
    )
    logger.info("Processed %d / %d images (%d skipped, %d failed) in %.2f seconds",
                self._report.completed, self._report.submitted, self._report.skipped,
                self._report.failed, time.time() - self._start_time)
    self.engine.cache_manager.log_status()
    return self._report

  def _reproject_image(self, image: Image) -> Image:
    settings = self.settings
    if not settings.reproject and settings.scale == 1.0:
      return passthrough(image)
    width, height = scaled_size(image.width, image.height, settings.scale)
    return self.engine.reproject(image, width, height)

  def _run_item(self, item: WorkItem) -> None:
    settings = self.settings
    try:
      outputs = output_paths(settings.output_dir, item.path, settings.formats)
      if settings.skip_if_exists and all(path.exists() for path in outputs.values()):
        item.advance(ItemState.DONE)
        self._results.put(ItemResult(item.path, ItemState.DONE, skipped=True))
        return

      item.advance(ItemState.DECODING)
      image = self._decode(item.path)
      image.lens = settings.input_lens

      # Each stage takes over the buffer; the previous one is released on rebinding
      item.advance(ItemState.REPROJECTING)
      image = self._reproject(image)

      item.advance(ItemState.COLOR_PROCESSING)
      image = color.process(image, settings.color)

      item.advance(ItemState.ENCODING)
      for path in outputs.values():
        self._encode(image, path)
      del image

      item.advance(ItemState.DONE)
      result = ItemResult(item.path, ItemState.DONE)
    except Exception as e:
      failed_stage = item.state
      logger.debug("Traceback for %s", item.path, exc_info=True)
      item.advance(ItemState.FAILED)
      result = ItemResult(item.path, ItemState.FAILED, failed_stage=failed_stage, error=str(e))
    self._results.put(result)

  def _aggregate(self) -> None:
    while True:
      result = self._results.get()
      if result is None:
        return

      if result.state is ItemState.DONE:
        self._done_count += 1
        if result.skipped:
          self._skipped_count += 1
          logger.info("%4d / %4d: skipping '%s', already exists",
                      self._done_count, self._submitted, result.path.name)
        else:
          logger.info("%4d / %4d: %s", self._done_count, self._submitted, result.path.stem)
      else:
        self._failed_count += 1
        logger.error("Error processing '%s' while %s: %s",
                     result.path, result.failed_stage.value, result.error)
