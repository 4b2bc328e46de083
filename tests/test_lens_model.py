import math

import numpy as np
import pytest

from lens_reproject.lens_model import (FisheyeEquidistant, FisheyeEquisolid, LensType, Ray,
                                       Rectilinear, project, unproject)

WIDTH, HEIGHT = 64, 48

LENSES = [
  Rectilinear(focal_length=24.0, sensor_width=36.0, sensor_height=27.0),
  FisheyeEquisolid(focal_length=8.0, sensor_width=36.0, sensor_height=27.0, fov=math.pi),
  FisheyeEquidistant(sensor_width=36.0, sensor_height=27.0, fov=math.radians(200)),
]


def _pixel_grid():
  py, px = np.mgrid[0:HEIGHT:3, 0:WIDTH:3].astype(np.float64)
  return px + 0.25, py - 0.25


@pytest.mark.parametrize("lens", LENSES, ids=lambda lens: lens.lens_type.value)
def test_round_trip(lens):
  px, py = _pixel_grid()
  rays = unproject(lens, px, py, WIDTH, HEIGHT)

  np.testing.assert_allclose(np.linalg.norm(rays.directions, axis=-1), 1.0, rtol=1e-12)

  back_x, back_y, valid = project(lens, rays, WIDTH, HEIGHT)
  assert np.count_nonzero(valid) > 0
  np.testing.assert_allclose(back_x[valid], px[valid], rtol=1e-4, atol=1e-6)
  np.testing.assert_allclose(back_y[valid], py[valid], rtol=1e-4, atol=1e-6)


@pytest.mark.parametrize("lens", LENSES, ids=lambda lens: lens.lens_type.value)
def test_center_pixel_looks_down_the_axis(lens):
  rays = unproject(lens, (WIDTH - 1) / 2.0, (HEIGHT - 1) / 2.0, WIDTH, HEIGHT)
  np.testing.assert_allclose(rays.directions, [0.0, 0.0, 1.0], atol=1e-12)
  assert bool(rays.valid)


def test_rectilinear_rejects_rays_behind_camera_and_off_sensor():
  lens = LENSES[0]
  directions = np.array([
    [0.0, 0.0, -1.0],
    [0.0, 0.0, 1.0],
    [0.9, 0.0, 0.1],
  ])
  rays = Ray(directions=directions, valid=np.ones(3, dtype=bool))
  _, _, valid = project(lens, rays, WIDTH, HEIGHT)
  assert valid.tolist() == [False, True, False]


def test_fisheye_validity_follows_field_of_view():
  lens = FisheyeEquisolid(focal_length=8.0, sensor_width=36.0, sensor_height=36.0,
                          fov=math.radians(120))
  angles = np.radians([0.0, 59.0, 61.0, 100.0])
  directions = np.stack([np.sin(angles), np.zeros_like(angles), np.cos(angles)], axis=-1)
  _, _, valid = project(lens, Ray(directions, np.ones(4, dtype=bool)), WIDTH, WIDTH)
  assert valid.tolist() == [True, True, False, False]


def test_equisolid_radius_formula():
  lens = FisheyeEquisolid(focal_length=10.0, sensor_width=40.0, sensor_height=40.0, fov=math.pi)
  theta = math.radians(40)
  ray = Ray(np.array([[math.sin(theta), 0.0, math.cos(theta)]]), np.array([True]))
  px, py, valid = project(lens, ray, 400, 400)
  expected_r = 2 * 10.0 * math.sin(theta / 2)
  # 10 pixels per mm
  assert px[0] == pytest.approx(199.5 + expected_r * 10.0)
  assert py[0] == pytest.approx(199.5)
  assert valid[0]


def test_equidistant_fills_sensor_width_at_half_fov():
  lens = FisheyeEquidistant(sensor_width=36.0, sensor_height=36.0, fov=math.pi)
  assert lens.focal_length == pytest.approx(36.0 / math.pi)
  ray = Ray(np.array([[1.0, 0.0, 0.0]]), np.array([True]))
  px, _, valid = project(lens, ray, 100, 100)
  # sensor edge sits half a pixel beyond the last pixel center
  assert px[0] == pytest.approx(99.5)
  assert valid[0]


def test_fisheye_corners_outside_image_circle_are_invalid():
  lens = FisheyeEquidistant(sensor_width=36.0, sensor_height=36.0, fov=math.pi)
  rays = unproject(lens, np.array([0.0, 50.0]), np.array([0.0, 50.0]), 100, 100)
  assert rays.valid.tolist() == [False, True]


@pytest.mark.parametrize("factory", [
  lambda: Rectilinear(0.0, 36.0, 24.0),
  lambda: Rectilinear(35.0, -1.0, 24.0),
  lambda: FisheyeEquisolid(8.0, 36.0, 0.0, math.pi),
  lambda: FisheyeEquisolid(8.0, 36.0, 24.0, 0.0),
  lambda: FisheyeEquidistant(36.0, 36.0, 2 * math.pi),
])
def test_invalid_parameters_rejected(factory):
  with pytest.raises(ValueError):
    factory()


def test_lens_models_are_immutable_values():
  lens = Rectilinear(35.0, 36.0, 24.0)
  assert lens == Rectilinear(35.0, 36.0, 24.0)
  assert lens.lens_type is LensType.RECTILINEAR
  with pytest.raises(AttributeError):
    lens.focal_length = 50.0


def test_unknown_lens_type_raises_type_error():
  with pytest.raises(TypeError):
    unproject(object(), 0.0, 0.0, 10, 10)
