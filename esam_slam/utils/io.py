"""
I/O and performance utilities for esam_slam.

Provides:
- add_lock: Serialises callbacks that touch the graph pair
- CodeTimer: Performance measurement context manager
- load_config / esam_config: ESAM keyword arguments from ROS-style parameters
- write_ply: ASCII PLY export of point clouds
"""
import logging
import timeit
from functools import wraps
from threading import RLock
from typing import Any, Dict

import numpy as np
import yaml

from esam_slam.core.types import (BilateralFilterParams, FPFHFeatureParams, OutlierRemovalParams,
                                  OutlierType, PointCloud, SIFTKeypointParams)


graph_lock = RLock()


def add_lock(callback):
    """
    Lock decorator for callback functions.

    Forces callbacks sharing the graph to execute one at a time, so a
    measurement insertion is never interleaved with an optimization, even
    under a multi-threaded executor.

    Args:
        callback: Function to decorate

    Returns:
        Wrapped callback with locking mechanism
    """
    @wraps(callback)
    def lock_callback(*args, **kwargs):
        with graph_lock:
            return callback(*args, **kwargs)

    return lock_callback


class CodeTimer(object):
    """Timer class used with `with` statement

    - Disable output by setting CodeTimer.silent = True
    - Pass a ROS or python logger to route the output

    with CodeTimer("Some function", logger):
        some_func()

    """

    silent = False

    def __init__(self, name="Code block", logger=None):
        self.name = name
        self.logger = logger if logger is not None else logging.getLogger('CodeTimer')
        self.took = 0.0

    def __enter__(self):
        """Start measuring at the start of indent"""
        self.start = timeit.default_timer()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        """
            Stop measuring at the end of indent. This will run even
            if the indented lines raise an exception.
        """
        self.took = timeit.default_timer() - self.start
        if not CodeTimer.silent:
            self.logger.debug("{} : {:.5f} s".format(self.name, float(self.took)))


def _flatten(params: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat = {}
    for name, value in params.items():
        if isinstance(value, dict):
            flat.update(_flatten(value, prefix + name + "."))
        else:
            flat[prefix + name] = value
    return flat


def esam_config(params: Dict[str, Any]) -> Dict[str, Any]:
    """Translate flat, dot-separated parameters into ESAM keyword arguments.

    Missing entries keep the ESAM defaults.
    """
    config: Dict[str, Any] = {}
    for name in ('pose_key', 'landmark_key', 'downsample_size', 'match_percentage',
                 'use_statistical_margins', 'relative_error_tol', 'max_iterations'):
        if name in params:
            config[name] = params[name]
    for name in ('landmark_var', 'bbox_margins'):
        if name in params:
            config[name] = tuple(params[name])

    bfilter = BilateralFilterParams()
    config['bfilter'] = BilateralFilterParams(
        filtering=params.get('bilateral.filtering', bfilter.filtering),
        spatial_width=params.get('bilateral.spatial_width', bfilter.spatial_width),
        range_sigma=params.get('bilateral.range_sigma', bfilter.range_sigma),
    )
    config['outliers'] = OutlierRemovalParams(
        type=OutlierType(params.get('outliers.type', OutlierType.NONE.value)),
        parameter_one=params.get('outliers.parameter_one', 0.0),
        parameter_two=params.get('outliers.parameter_two', 0.0),
    )
    keypoint = SIFTKeypointParams()
    config['keypoint'] = SIFTKeypointParams(
        min_scale=params.get('keypoint.min_scale', keypoint.min_scale),
        nr_octaves=params.get('keypoint.nr_octaves', keypoint.nr_octaves),
        nr_scales_per_octave=params.get('keypoint.nr_scales_per_octave', keypoint.nr_scales_per_octave),
        min_contrast=params.get('keypoint.min_contrast', keypoint.min_contrast),
    )
    feature = FPFHFeatureParams()
    config['feature'] = FPFHFeatureParams(
        normal_radius=params.get('feature.normal_radius', feature.normal_radius),
        feature_radius=params.get('feature.feature_radius', feature.feature_radius),
    )
    return config


def load_config(filename: str, node_name: str = 'esam_node') -> Dict[str, Any]:
    """Read a ROS 2 parameter file and return ESAM keyword arguments."""
    with open(filename, 'r') as f:
        data = yaml.safe_load(f) or {}
    params = data.get(node_name, {}).get('ros__parameters', {})
    return esam_config(_flatten(params))


def write_ply(cloud: PointCloud, filename: str) -> None:
    """Write an ASCII PLY file, with colors when the cloud has them."""
    has_color = cloud.colors is not None
    header = [
        "ply",
        "format ascii 1.0",
        f"element vertex {len(cloud)}",
        "property float x",
        "property float y",
        "property float z",
    ]
    if has_color:
        header += ["property uchar red", "property uchar green", "property uchar blue"]
    header.append("end_header")

    with open(filename, 'w') as f:
        f.write("\n".join(header) + "\n")
        if has_color:
            rgb = np.clip(np.round(cloud.colors[:, :3] * 255.0), 0, 255).astype(int)
            for p, c in zip(cloud.points, rgb):
                f.write(f"{p[0]:.6f} {p[1]:.6f} {p[2]:.6f} {c[0]} {c[1]} {c[2]}\n")
        else:
            for p in cloud.points:
                f.write(f"{p[0]:.6f} {p[1]:.6f} {p[2]:.6f}\n")
