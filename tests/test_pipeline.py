import threading
import time
from pathlib import Path

import numpy as np
import pytest

from lens_reproject.color import ColorSettings
from lens_reproject.errors import ConfigurationError
from lens_reproject.image import Image
from lens_reproject.lens_model import FisheyeEquidistant, Rectilinear
from lens_reproject.pipeline import (BatchPipeline, ItemState, PipelineSettings, WorkItem,
                                     collect_inputs)
from lens_reproject.reprojection import ReprojectionEngine
from lens_reproject.resampler import Interpolation

INPUT_LENS = Rectilinear(focal_length=20.0, sensor_width=36.0, sensor_height=27.0)
OUTPUT_LENS = FisheyeEquidistant(sensor_width=36.0, sensor_height=27.0, fov=3.0)


class FakeCodec:
  """Decoder/encoder double that counts calls and never touches the disk."""

  def __init__(self, fail_on=()):
    self.fail_on = set(fail_on)
    self.decoded = []
    self.encoded = []
    self._lock = threading.Lock()

  def decode(self, path):
    with self._lock:
      self.decoded.append(Path(path).name)
    if Path(path).name in self.fail_on:
      raise IOError(f"corrupt file: {path}")
    return Image(np.full((12, 16, 3), 0.5, dtype=np.float32))

  def encode(self, image, path):
    with self._lock:
      self.encoded.append((Path(path).name, image.width, image.height))


def _settings(tmp_path, **kwargs):
  defaults = dict(output_dir=tmp_path / "out", input_lens=INPUT_LENS, output_lens=OUTPUT_LENS,
                  formats=('png',), samples_per_dim=2, kernel=Interpolation.BILINEAR)
  defaults.update(kwargs)
  return PipelineSettings(**defaults)


def _paths(count):
  return [Path(f"frame_{i:03d}.png") for i in range(count)]


@pytest.mark.parametrize("workers", [1, 4, 7])
def test_every_item_reaches_a_terminal_state(tmp_path, workers):
  codec = FakeCodec()
  pipeline = BatchPipeline(_settings(tmp_path, max_workers=workers),
                           decoder=codec.decode, encoder=codec.encode)
  report = pipeline.run(_paths(7))

  assert report.submitted == 7
  assert report.completed == 7
  assert report.failed == 0
  assert report.pending == 0
  assert report.succeeded
  assert all(state is ItemState.DONE for _, state in report.states)
  assert sorted(name for name, _, _ in codec.encoded) == [f"frame_{i:03d}.png" for i in range(7)]


def test_single_worker_processes_in_submission_order(tmp_path):
  codec = FakeCodec()
  BatchPipeline(_settings(tmp_path), decoder=codec.decode, encoder=codec.encode).run(_paths(5))
  assert codec.decoded == [path.name for path in _paths(5)]


def test_item_walks_through_every_stage(tmp_path):
  codec = FakeCodec()
  pipeline = BatchPipeline(_settings(tmp_path, scale=0.5, formats=('png', 'exr')),
                           decoder=codec.decode, encoder=codec.encode)
  pipeline.run(_paths(1))

  item = pipeline.items[0]
  assert item.history == [ItemState.PENDING, ItemState.DECODING, ItemState.REPROJECTING,
                          ItemState.COLOR_PROCESSING, ItemState.ENCODING, ItemState.DONE]
  assert sorted(codec.encoded) == [("frame_000.exr", 8, 6), ("frame_000.png", 8, 6)]


def test_failures_are_isolated(tmp_path):
  codec = FakeCodec(fail_on={"frame_001.png", "frame_003.png"})
  report = BatchPipeline(_settings(tmp_path, max_workers=3),
                         decoder=codec.decode, encoder=codec.encode).run(_paths(5))

  assert report.completed == 3
  assert report.failed == 2
  assert not report.succeeded
  states = {path.name: state for path, state in report.states}
  assert states["frame_001.png"] is ItemState.FAILED
  assert states["frame_003.png"] is ItemState.FAILED
  assert states["frame_004.png"] is ItemState.DONE
  assert len(codec.encoded) == 3


def test_failure_in_reprojection_is_recorded_at_that_stage(tmp_path):
  codec = FakeCodec()

  def broken_reproject(image):
    raise RuntimeError("boom")

  pipeline = BatchPipeline(_settings(tmp_path), decoder=codec.decode, encoder=codec.encode,
                           reprojector=broken_reproject)
  report = pipeline.run(_paths(2))
  assert report.failed == 2
  assert pipeline.items[0].history[-2:] == [ItemState.REPROJECTING, ItemState.FAILED]
  assert codec.encoded == []


def test_skip_if_exists_never_decodes(tmp_path):
  settings = _settings(tmp_path, skip_if_exists=True, formats=('png', 'exr'))
  settings.output_dir.mkdir()
  for path in _paths(3)[:2]:
    (settings.output_dir / path.with_suffix('.png').name).touch()
    (settings.output_dir / path.with_suffix('.exr').name).touch()
  # Only one of the two outputs exists: not skipped
  (settings.output_dir / "frame_002.png").touch()

  codec = FakeCodec()
  reproject_calls = []

  def counting_reproject(image):
    reproject_calls.append(image)
    return image

  pipeline = BatchPipeline(settings, decoder=codec.decode, encoder=codec.encode,
                           reprojector=counting_reproject)
  report = pipeline.run(_paths(3))

  assert report.completed == 3
  assert report.skipped == 2
  assert codec.decoded == ["frame_002.png"]
  assert len(reproject_calls) == 1
  assert pipeline.items[0].history == [ItemState.PENDING, ItemState.DONE]


def test_existing_outputs_are_rewritten_without_skip(tmp_path):
  settings = _settings(tmp_path)
  settings.output_dir.mkdir()
  (settings.output_dir / "frame_000.png").touch()
  codec = FakeCodec()
  report = BatchPipeline(settings, decoder=codec.decode, encoder=codec.encode).run(_paths(1))
  assert report.skipped == 0
  assert codec.decoded == ["frame_000.png"]


def test_no_reproject_without_scale_passes_pixels_through(tmp_path):
  source = np.random.default_rng(3).random((12, 16, 3), dtype=np.float32)
  written = []
  pipeline = BatchPipeline(_settings(tmp_path, reproject=False, output_lens=None),
                           decoder=lambda path: Image(source.copy()),
                           encoder=lambda image, path: written.append(image))
  pipeline.run(_paths(1))

  assert pipeline.settings.output_lens == INPUT_LENS
  assert written[0].pixels.tobytes() == source.tobytes()


def test_color_settings_are_applied(tmp_path):
  written = []
  settings = _settings(tmp_path, reproject=False, color=ColorSettings(exposure_ev=1.0, reinhard_max=2.0))
  BatchPipeline(settings, decoder=lambda path: Image(np.ones((4, 4, 3), dtype=np.float32)),
                encoder=lambda image, path: written.append(image)).run(_paths(1))
  np.testing.assert_allclose(written[0].pixels, 1.0)


def test_shutdown_is_a_barrier_and_idempotent(tmp_path):
  codec = FakeCodec()
  with BatchPipeline(_settings(tmp_path, max_workers=2),
                     decoder=codec.decode, encoder=codec.encode) as pipeline:
    for path in _paths(4):
      pipeline.submit(path)
  report = pipeline.shutdown()
  assert report.completed == 4
  assert all(item.state.is_terminal for item in pipeline.items)
  with pytest.raises(RuntimeError):
    pipeline.submit("late.png")


def test_work_item_only_moves_forward():
  item = WorkItem(Path("a.png"))
  item.advance(ItemState.DECODING)
  with pytest.raises(RuntimeError):
    item.advance(ItemState.PENDING)
  item.advance(ItemState.FAILED)
  with pytest.raises(RuntimeError):
    item.advance(ItemState.DONE)


@pytest.mark.parametrize("kwargs", [
  {'formats': ()},
  {'formats': ('jpg',)},
  {'max_workers': 0},
  {'scale': 0.0},
  {'output_lens': None},
])
def test_invalid_settings_rejected(tmp_path, kwargs):
  with pytest.raises(ValueError):
    _settings(tmp_path, **kwargs)


def test_collect_inputs_filters_and_sorts(tmp_path):
  for name in ["b_1.png", "a_2.exr", "a_1.png", "a_1.txt", "c_2.png"]:
    (tmp_path / name).touch()
  (tmp_path / "a_3.png").mkdir()

  assert [p.name for p in collect_inputs(tmp_path)] == ["a_1.png", "a_2.exr", "b_1.png", "c_2.png"]
  assert [p.name for p in collect_inputs(tmp_path, prefix="a_")] == ["a_1.png", "a_2.exr"]
  assert [p.name for p in collect_inputs(tmp_path, suffix="_2")] == ["a_2.exr", "c_2.png"]
  assert [p.name for p in collect_inputs(tmp_path, "a_", "_2")] == ["a_2.exr"]


def test_encode_failure_is_isolated(tmp_path):
  written = []

  def flaky_encode(image, path):
    if path.stem == "frame_001":
      raise IOError(f"disk full: {path}")
    written.append(path.name)

  codec = FakeCodec()
  pipeline = BatchPipeline(_settings(tmp_path, max_workers=2), decoder=codec.decode, encoder=flaky_encode)
  report = pipeline.run(_paths(3))

  assert report.completed == 2
  assert report.failed == 1
  item = next(item for item in pipeline.items if item.path.stem == "frame_001")
  assert item.history[-2:] == [ItemState.ENCODING, ItemState.FAILED]
  assert sorted(written) == ["frame_000.png", "frame_002.png"]


def test_workers_share_one_map_generation(tmp_path, monkeypatch):
  calls = []
  generate = ReprojectionEngine._generate_projection_maps

  def slow_generate(self, *args):
    calls.append(args)
    time.sleep(0.2)
    return generate(self, *args)

  monkeypatch.setattr(ReprojectionEngine, '_generate_projection_maps', slow_generate)
  codec = FakeCodec()
  report = BatchPipeline(_settings(tmp_path, max_workers=4),
                         decoder=codec.decode, encoder=codec.encode).run(_paths(4))

  assert report.completed == 4
  assert len(calls) == 1


def test_collect_inputs_rejects_shared_stems(tmp_path):
  for name in ["a.png", "a.exr", "b.png"]:
    (tmp_path / name).touch()
  with pytest.raises(ConfigurationError, match="a.exr"):
    collect_inputs(tmp_path)
  # Filtering one of them out resolves the clash
  assert [p.name for p in collect_inputs(tmp_path, prefix="b")] == ["b.png"]
