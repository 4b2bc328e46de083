"""
Lens Reprojection Core Modules

This package converts images captured with one lens projection model into
images as they would appear through another:
- Lens models (rectilinear, equisolid and equidistant fisheye)
- Resampling kernels and supersampled reprojection
- Exposure, auto-exposure and Reinhard tonemapping
- Concurrent batch conversion of image datasets
"""

from .color import ColorSettings, auto_exposure, post_process, reinhard
from .errors import ConfigurationError, DecodeError, EncodeError, ReprojectError
from .image import Image, SampleRequest, subsample_offsets
from .lens_model import (FisheyeEquidistant, FisheyeEquisolid, LensModel, LensType, Ray,
                         Rectilinear, project, unproject)
from .pipeline import BatchPipeline, BatchReport, ItemState, PipelineSettings
from .reprojection import ReprojectionEngine, passthrough, reproject
from .resampler import Interpolation, Resampler

__all__ = [
    'ColorSettings',
    'auto_exposure',
    'post_process',
    'reinhard',
    'ConfigurationError',
    'DecodeError',
    'EncodeError',
    'ReprojectError',
    'Image',
    'SampleRequest',
    'subsample_offsets',
    'FisheyeEquidistant',
    'FisheyeEquisolid',
    'LensModel',
    'LensType',
    'Ray',
    'Rectilinear',
    'project',
    'unproject',
    'BatchPipeline',
    'BatchReport',
    'ItemState',
    'PipelineSettings',
    'ReprojectionEngine',
    'passthrough',
    'reproject',
    'Interpolation',
    'Resampler',
]
