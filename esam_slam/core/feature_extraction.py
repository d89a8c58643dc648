"""
Feature Extraction Module

3D SIFT keypoints (difference of gaussians over a point intensity) described
with Fast Point Feature Histograms (FPFH, 3 x 11 bins). Keypoints are
detected on the full cloud; normals and descriptors use a coarser voxel
downsampled copy as search surface.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np
from scipy.spatial import KDTree

from esam_slam.core.types import FPFHFeatureParams, PointCloud, SIFTKeypointParams
from esam_slam.cpp import pcl
from esam_slam.utils.io import CodeTimer


FPFH_BINS = 11
FPFH_SIZE = 3 * FPFH_BINS

# Neighbours compared when searching scale-space extrema
SIFT_NEIGHBORS = 25


def point_intensity(cloud: PointCloud) -> np.ndarray:
    """Luminance in [0, 255] for colored clouds, z otherwise."""
    if cloud.colors is None:
        return cloud.points[:, 2].copy()
    rgb = cloud.colors[:, :3] * 255.0
    return 0.299 * rgb[:, 0] + 0.587 * rgb[:, 1] + 0.114 * rgb[:, 2]


def estimate_normals(points: np.ndarray, radius: float,
                     viewpoint: Optional[np.ndarray] = None) -> np.ndarray:
    """Surface normals by PCA over a radius neighbourhood.

    Normals point towards `viewpoint` (origin by default). Points with fewer
    than 3 neighbours get NaN normals.
    """
    viewpoint = np.zeros(3) if viewpoint is None else np.asarray(viewpoint, dtype=float)
    normals = np.full(points.shape, np.nan)
    if len(points) < 3:
        return normals

    tree = KDTree(points)
    for i, nn in enumerate(tree.query_ball_point(points, radius)):
        if len(nn) < 3:
            continue
        neighborhood = points[nn]
        cov = np.cov(neighborhood, rowvar=False)
        _, vectors = np.linalg.eigh(cov)
        normal = vectors[:, 0]
        if np.dot(normal, viewpoint - points[i]) < 0:
            normal = -normal
        normals[i] = normal
    return normals


def _pair_features(p1, n1, p2, n2):
    """Angular features between one oriented point and m others.

    Returns:
        f1, f2, f3: (m,) arrays, valid: (m,) mask
    """
    dp = p2 - p1
    f4 = np.linalg.norm(dp, axis=1)
    valid = f4 > 0
    dpn = dp / np.where(valid, f4, 1.0)[:, None]

    n1 = np.broadcast_to(n1, n2.shape)
    angle1 = np.sum(dpn * n1, axis=1)
    angle2 = np.sum(dpn * n2, axis=1)
    swap = np.arccos(np.clip(np.abs(angle1), 0.0, 1.0)) > np.arccos(np.clip(np.abs(angle2), 0.0, 1.0))

    u = np.where(swap[:, None], n2, n1)
    other = np.where(swap[:, None], n1, n2)
    d = np.where(swap[:, None], -dp, dp)
    f3 = np.where(swap, -angle2, angle1)

    v = np.cross(d, u)
    v_norm = np.linalg.norm(v, axis=1)
    valid &= v_norm > 0
    v = v / np.where(v_norm > 0, v_norm, 1.0)[:, None]
    w = np.cross(u, v)

    f2 = np.sum(v * other, axis=1)
    f1 = np.arctan2(np.sum(w * other, axis=1), np.sum(u * other, axis=1))
    return f1, f2, f3, valid


def _bin(values: np.ndarray, low: float, high: float) -> np.ndarray:
    idx = np.floor(FPFH_BINS * (values - low) / (high - low)).astype(int)
    return np.clip(idx, 0, FPFH_BINS - 1)


def _spfh(index, surface, normals, neighbors) -> np.ndarray:
    hist = np.zeros(FPFH_SIZE)
    nn = np.asarray([j for j in neighbors if j != index], dtype=int)
    nn = nn[np.all(np.isfinite(normals[nn]), axis=1)] if len(nn) else nn
    if len(nn) == 0 or not np.all(np.isfinite(normals[index])):
        return hist

    f1, f2, f3, valid = _pair_features(surface[index], normals[index], surface[nn], normals[nn])
    increment = 100.0 / len(nn)
    np.add.at(hist, _bin(f1[valid], -np.pi, np.pi), increment)
    np.add.at(hist, FPFH_BINS + _bin(f2[valid], -1.0, 1.0), increment)
    np.add.at(hist, 2 * FPFH_BINS + _bin(f3[valid], -1.0, 1.0), increment)
    return hist


def compute_fpfh(keypoints: np.ndarray, surface: np.ndarray, normals: np.ndarray,
                 radius: float) -> np.ndarray:
    """FPFH descriptors of `keypoints` over a search surface with normals.

    Keypoints without surface neighbours get NaN descriptors.
    """
    descriptors = np.full((len(keypoints), FPFH_SIZE), np.nan)
    if len(keypoints) == 0 or len(surface) == 0:
        return descriptors

    tree = KDTree(surface)
    surface_neighbors = tree.query_ball_point(surface, radius)
    spfh = {}

    for k, nn in enumerate(tree.query_ball_point(keypoints, radius)):
        if not nn:
            continue
        hist = np.zeros(FPFH_SIZE)
        for j in nn:
            sqr_dist = float(np.sum((surface[j] - keypoints[k]) ** 2))
            if sqr_dist == 0.0:
                continue
            if j not in spfh:
                spfh[j] = _spfh(j, surface, normals, surface_neighbors[j])
            hist += spfh[j] / sqr_dist

        for b in range(3):
            block = hist[b * FPFH_BINS:(b + 1) * FPFH_BINS]
            total = block.sum()
            if total > 0:
                block *= 100.0 / total
        descriptors[k] = hist
    return descriptors


def _scale_space_extrema(points, intensity, base_scale, nr_scales, min_contrast):
    scales = base_scale * 2.0 ** ((np.arange(nr_scales + 3) - 1) / float(nr_scales))
    tree = KDTree(points)

    # Gaussian smoothed intensity at every scale
    scale_space = np.zeros((len(points), len(scales)))
    for i, nn in enumerate(tree.query_ball_point(points, 3.0 * scales[-1])):
        d2 = np.sum((points[nn] - points[i]) ** 2, axis=1)
        weights = np.exp(-d2[:, None] / (2.0 * scales[None, :] ** 2))
        scale_space[i] = weights.T @ intensity[nn] / weights.sum(axis=0)
    dog = np.diff(scale_space, axis=1)

    k = min(SIFT_NEIGHBORS, len(points))
    _, nn_idx = tree.query(points, k=k)
    nn_idx = np.asarray(nn_idx).reshape(len(points), k)

    keypoints, keypoint_scales = [], []
    for s in range(1, dog.shape[1] - 1):
        neigh = dog[nn_idx][:, :, s - 1:s + 2].copy()
        center = dog[:, s]
        # exclude the point itself at the scale being tested
        self_mask = nn_idx == np.arange(len(points))[:, None]
        neigh[:, :, 1][self_mask] = np.nan
        neigh = neigh.reshape(len(points), -1)
        is_max = center > np.nanmax(neigh, axis=1)
        is_min = center < np.nanmin(neigh, axis=1)
        selected = (is_max | is_min) & (np.abs(center) >= min_contrast)
        keypoints.append(points[selected])
        keypoint_scales.append(np.full(int(selected.sum()), scales[s]))

    return np.vstack(keypoints), np.concatenate(keypoint_scales)


def detect_keypoints(cloud: PointCloud, params: SIFTKeypointParams) -> Tuple[np.ndarray, np.ndarray]:
    """3D SIFT keypoints.

    Returns:
        keypoints: (N, 3), scales: (N,)
    """
    keypoints = [np.zeros((0, 3))]
    scales = [np.zeros(0)]
    intensity_cloud = PointCloud(cloud.points, point_intensity(cloud)[:, None])

    scale = params.min_scale
    for _ in range(params.nr_octaves):
        octave = pcl.downsample(intensity_cloud, scale)
        if len(octave) < 2:
            break
        kp, sc = _scale_space_extrema(octave.points, octave.colors[:, 0], scale,
                                      params.nr_scales_per_octave, params.min_contrast)
        keypoints.append(kp)
        scales.append(sc)
        scale *= 2.0

    return np.vstack(keypoints), np.concatenate(scales)


class FeatureExtraction:
    """Keypoint detection and description of pose point clouds.

    Designed as a composable module owned by the graph manager.
    """

    def __init__(
        self,
        keypoint: Optional[SIFTKeypointParams] = None,
        feature: Optional[FPFHFeatureParams] = None,
        downsample_size: float = 0.01,
        logger=None
    ):
        self.keypoint = keypoint if keypoint is not None else SIFTKeypointParams()
        self.feature = feature if feature is not None else FPFHFeatureParams()
        self.downsample_size = downsample_size
        self.logger = logger if logger is not None else logging.getLogger('FeatureExtraction')

    def detect_and_describe(self, cloud: PointCloud) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Keypoints, their scales and FPFH descriptors for a cloud.

        Keypoints whose descriptor cannot be computed are dropped.
        """
        with CodeTimer("FeatureExtraction - detect_and_describe", self.logger):
            surface = pcl.downsample(cloud, 5.0 * self.downsample_size)
            normals = estimate_normals(surface.points, self.feature.normal_radius)
            keypoints, scales = detect_keypoints(cloud, self.keypoint)
            descriptors = compute_fpfh(keypoints, surface.points, normals, self.feature.feature_radius)

        valid = np.all(np.isfinite(descriptors), axis=1) & (np.sum(descriptors, axis=1) > 0)
        self.logger.debug(f"keypoints: {len(keypoints)} detected, {int(valid.sum())} described")
        return keypoints[valid], scales[valid], descriptors[valid]
