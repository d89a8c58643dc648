"""
Python implementation of the PCL filters used by ESAM
Point cloud preprocessing (bilateral, outlier removal, voxel grid, uniform
sampling) and nearest neighbour matching with numpy, scipy and scikit-learn
"""

import numpy as np
from scipy.spatial import KDTree
from sklearn.neighbors import NearestNeighbors

from esam_slam.core.types import BilateralFilterParams, OutlierRemovalParams, OutlierType, PointCloud


def remove_invalid(cloud):
    """Drop points with non-finite coordinates (organization is lost)"""
    mask = np.all(np.isfinite(cloud.points), axis=1)
    if np.all(mask):
        return cloud
    return cloud.select(mask)


def bilateral_filter(cloud, spatial_width, range_sigma):
    """
    Edge preserving smoothing of the depth of an organized cloud

    Each depth is replaced by the average of the depths in a window of
    `spatial_width` pixels, weighted by pixel distance and depth difference.
    x and y are rescaled to stay on the viewing ray.

    Args:
        cloud: organized PointCloud
        spatial_width: gaussian sigma over pixels (window radius)
        range_sigma: gaussian sigma over depth differences

    Returns:
        filtered PointCloud with the same organization
    """
    if not cloud.is_organized:
        return cloud

    h, w = cloud.height, cloud.width
    grid = cloud.points.reshape(h, w, 3)
    depth = grid[:, :, 2]
    valid = np.isfinite(depth)
    depth0 = np.where(valid, depth, 0.0)

    half = max(int(np.ceil(spatial_width)), 1)
    pad_depth = np.pad(depth0, half)
    pad_valid = np.pad(valid, half)

    acc = np.zeros_like(depth0)
    norm = np.zeros_like(depth0)
    for dy in range(-half, half + 1):
        for dx in range(-half, half + 1):
            w_s = np.exp(-(dx * dx + dy * dy) / (2.0 * spatial_width ** 2))
            shifted = pad_depth[half + dy:half + dy + h, half + dx:half + dx + w]
            shifted_valid = pad_valid[half + dy:half + dy + h, half + dx:half + dx + w]
            w_r = np.exp(-((shifted - depth0) ** 2) / (2.0 * range_sigma ** 2))
            weight = w_s * w_r * shifted_valid
            acc += weight * shifted
            norm += weight

    filtered = np.where(valid & (norm > 0), acc / np.where(norm > 0, norm, 1.0), depth)
    scale = np.where(valid & (depth0 != 0), filtered / np.where(depth0 != 0, depth0, 1.0), 1.0)

    out = grid.copy()
    out[:, :, 0] *= scale
    out[:, :, 1] *= scale
    out[:, :, 2] = filtered
    return PointCloud(out.reshape(-1, 3), cloud.colors, h, w)


def remove_outlier(cloud, radius, min_points):
    """
    Remove outlier points based on radius search

    Args:
        cloud: PointCloud
        radius: search radius
        min_points: minimum number of neighbors required (self excluded)

    Returns:
        filtered PointCloud
    """
    if len(cloud) == 0:
        return cloud

    # Build KDTree for efficient neighbor search
    tree = KDTree(cloud.points)

    # query_ball_point counts the point itself
    counts = np.array([len(n) for n in tree.query_ball_point(cloud.points, radius)]) - 1
    return cloud.select(counts >= min_points)


def statistical_outlier_removal(cloud, mean_k, std_mul):
    """
    Remove points whose mean distance to their k neighbors is unusually large

    Args:
        cloud: PointCloud
        mean_k: number of neighbors used for the mean distance
        std_mul: points beyond mean + std_mul * std are removed

    Returns:
        filtered PointCloud
    """
    mean_k = int(mean_k)
    if len(cloud) <= mean_k or mean_k < 1:
        return cloud

    nbrs = NearestNeighbors(n_neighbors=mean_k + 1, algorithm='kd_tree')
    nbrs.fit(cloud.points)
    distances, _ = nbrs.kneighbors(cloud.points)

    # First column is the point itself
    mean_distances = np.mean(distances[:, 1:], axis=1)
    threshold = np.mean(mean_distances) + std_mul * np.std(mean_distances)
    return cloud.select(mean_distances <= threshold)


def downsample(cloud, resolution):
    """
    Downsample point cloud using voxel grid

    Args:
        cloud: PointCloud
        resolution: voxel size

    Returns:
        PointCloud with one centroid (and mean color) per occupied voxel
    """
    if len(cloud) == 0 or resolution <= 0:
        return cloud

    # Compute voxel indices for each point
    voxel_indices = np.floor(cloud.points / resolution).astype(np.int64)
    _, inverse, counts = np.unique(voxel_indices, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)

    # Take centroid of points in each voxel
    points = np.zeros((len(counts), 3))
    np.add.at(points, inverse, cloud.points)
    points /= counts[:, None]

    colors = None
    if cloud.colors is not None:
        colors = np.zeros((len(counts), cloud.colors.shape[1]))
        np.add.at(colors, inverse, cloud.colors)
        colors /= counts[:, None]

    return PointCloud(points, colors)


def uniform_sample(cloud, radius):
    """
    Keep, per voxel of size `radius`, the point nearest to the voxel center

    Args:
        cloud: PointCloud
        radius: voxel size

    Returns:
        PointCloud subset of the input
    """
    if len(cloud) == 0 or radius <= 0:
        return cloud

    voxel_indices = np.floor(cloud.points / radius).astype(np.int64)
    centers = (voxel_indices + 0.5) * radius
    dist = np.linalg.norm(cloud.points - centers, axis=1)

    _, inverse = np.unique(voxel_indices, axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)

    # Sort by voxel then by distance; the first entry per voxel wins
    order = np.lexsort((dist, inverse))
    first = np.ones(len(order), dtype=bool)
    first[1:] = inverse[order][1:] != inverse[order][:-1]
    return cloud.select(np.sort(order[first]))


def remove_colorless(cloud):
    """Remove points whose rgb is black (no color information)"""
    if cloud.colors is None:
        return cloud
    return cloud.select(np.any(cloud.colors[:, :3] > 0.0, axis=1))


def clean(cloud, downsample_size, bfilter=None, outliers=None):
    """
    Preprocessing pipeline applied to each incoming cloud

    bilateral filter (organized clouds) -> radius outliers -> voxel grid ->
    statistical outliers -> colorless points

    Args:
        cloud: PointCloud
        downsample_size: voxel size, <= 0 disables downsampling
        bfilter: BilateralFilterParams
        outliers: OutlierRemovalParams

    Returns:
        cleaned PointCloud
    """
    bfilter = bfilter if bfilter is not None else BilateralFilterParams()
    outliers = outliers if outliers is not None else OutlierRemovalParams()

    if bfilter.filtering and cloud.is_organized:
        cloud = bilateral_filter(cloud, bfilter.spatial_width, bfilter.range_sigma)
    cloud = remove_invalid(cloud)

    if outliers.type == OutlierType.RADIUS:
        cloud = remove_outlier(cloud, outliers.parameter_one, outliers.parameter_two)

    cloud = downsample(cloud, downsample_size)

    if outliers.type == OutlierType.STATISTICAL:
        cloud = statistical_outlier_removal(cloud, outliers.parameter_one, outliers.parameter_two)

    return remove_colorless(cloud)


def match(reference_points, query_points, knn=1, max_dist=float('inf')):
    """
    Find nearest neighbors from reference to query points

    Args:
        reference_points: (N, D) reference points or descriptors
        query_points: (M, D) query points or descriptors
        knn: number of nearest neighbors
        max_dist: maximum matching distance

    Returns:
        indices: (M, knn) indices in reference cloud (-1 if no match)
        distances: (M, knn) distances to matches
    """
    if len(reference_points) == 0 or len(query_points) == 0:
        indices = -np.ones((len(query_points), knn), dtype=np.int64)
        distances = np.full((len(query_points), knn), float('inf'))
        return indices, distances

    # Build KDTree for reference points
    tree = KDTree(reference_points)

    # Query knn neighbors
    distances, indices = tree.query(query_points, k=knn, distance_upper_bound=max_dist)

    # KDTree returns len(reference_points) as index for points beyond max_dist
    indices = np.asarray(indices, dtype=np.int64).reshape(len(query_points), knn)
    distances = np.asarray(distances, dtype=float).reshape(len(query_points), knn)
    invalid_mask = indices >= len(reference_points)
    indices[invalid_mask] = -1
    distances[invalid_mask] = float('inf')

    return indices, distances
