#!/usr/bin/env python3
"""
ESAM node.

Feeds odometry and point clouds into the ESAM graph manager. A new pose is
created whenever the odometry moved more than the keyframe thresholds since
the last pose; the node then computes keypoints, searches landmarks and
publishes the current pose, the trajectory and the merged map.

Usage:
    ros2 run esam_slam esam_node
    ros2 launch esam_slam esam.launch.py
"""

import numpy as np
import gtsam
import rclpy
from rclpy.node import Node
from geometry_msgs.msg import PoseStamped, PoseWithCovarianceStamped
from nav_msgs.msg import Odometry, Path
from sensor_msgs.msg import PointCloud2, PointField
from std_msgs.msg import Header

from esam_slam.core.esam import ESAM
from esam_slam.core.types import PointCloud
from esam_slam.utils.conversions import pose_from_quaternion, quaternion
from esam_slam.utils.io import CodeTimer, add_lock, esam_config
from esam_slam.utils.topics import CLOUD_TOPIC, ESAM_CLOUD_TOPIC, ESAM_POSE_TOPIC, ESAM_TRAJ_TOPIC, ODOM_TOPIC


_FIELD_DTYPES = {
    PointField.INT8: np.int8, PointField.UINT8: np.uint8,
    PointField.INT16: np.int16, PointField.UINT16: np.uint16,
    PointField.INT32: np.int32, PointField.UINT32: np.uint32,
    PointField.FLOAT32: np.float32, PointField.FLOAT64: np.float64,
}


def pointcloud2_to_point_cloud(cloud_msg):
    """
    Convert PointCloud2 message to a PointCloud

    Args:
        cloud_msg: sensor_msgs.msg.PointCloud2 with x, y, z and optional rgb/rgba

    Returns:
        PointCloud keeping the message organization
    """
    fields = {field.name: field for field in cloud_msg.fields}
    if not all(name in fields for name in ('x', 'y', 'z')):
        raise ValueError("PointCloud2 must have x, y, z fields")

    dtype = np.dtype({
        'names': list(fields),
        'formats': [_FIELD_DTYPES[f.datatype] for f in fields.values()],
        'offsets': [f.offset for f in fields.values()],
        'itemsize': cloud_msg.point_step,
    }).newbyteorder('>' if cloud_msg.is_bigendian else '<')

    num_points = cloud_msg.width * cloud_msg.height
    data = np.frombuffer(bytes(cloud_msg.data), dtype=dtype, count=num_points)
    points = np.stack([data['x'], data['y'], data['z']], axis=1).astype(np.float64)

    colors = None
    color_field = 'rgba' if 'rgba' in fields else 'rgb' if 'rgb' in fields else None
    if color_field is not None:
        packed = np.ascontiguousarray(data[color_field])
        packed = packed.view(np.uint32) if packed.dtype.kind == "f" \
            else packed.astype(np.uint32)
        colors = np.stack([(packed >> 16) & 0xFF, (packed >> 8) & 0xFF, packed & 0xFF,
                           np.full(num_points, 255)], axis=1) / 255.0

    return PointCloud(points, colors, cloud_msg.height, cloud_msg.width)


def point_cloud_to_pointcloud2(cloud, header):
    """Convert a PointCloud to an unorganized xyz PointCloud2 message"""
    msg = PointCloud2()
    msg.header = header
    msg.height = 1
    msg.width = len(cloud)
    msg.fields = [
        PointField(name='x', offset=0, datatype=PointField.FLOAT32, count=1),
        PointField(name='y', offset=4, datatype=PointField.FLOAT32, count=1),
        PointField(name='z', offset=8, datatype=PointField.FLOAT32, count=1),
    ]
    msg.is_bigendian = False
    msg.point_step = 12
    msg.row_step = msg.point_step * msg.width
    msg.is_dense = True
    msg.data = cloud.points.astype(np.float32).tobytes()
    return msg


def r2g(pose_msg):
    """geometry_msgs/Pose -> gtsam.Pose3"""
    p, q = pose_msg.position, pose_msg.orientation
    return pose_from_quaternion((p.x, p.y, p.z), (q.w, q.x, q.y, q.z))


def g2r(pose, pose_msg):
    """Fill a geometry_msgs/Pose from a gtsam.Pose3"""
    pose_msg.position.x, pose_msg.position.y, pose_msg.position.z = (float(v) for v in pose.translation())
    w, x, y, z = quaternion(pose)
    pose_msg.orientation.w, pose_msg.orientation.x = float(w), float(x)
    pose_msg.orientation.y, pose_msg.orientation.z = float(y), float(z)
    return pose_msg


class ESAMNode(Node):
    """ROS2 adapter around the ESAM graph manager"""

    def __init__(self):
        super().__init__('esam_node')

        # Declare parameters
        self.declare_parameter('odom_topic', ODOM_TOPIC)
        self.declare_parameter('cloud_topic', CLOUD_TOPIC)
        self.declare_parameter('map_frame', 'map')
        self.declare_parameter('keyframe_translation', 0.5)
        self.declare_parameter('keyframe_rotation', 0.35)
        self.declare_parameter('optimize_every', 0)  # 0 = only after new landmarks
        self.declare_parameter('publish_cloud', True)
        self.declare_parameter('prior_variance', [1e-4] * 6)
        self.declare_parameter('odometry_variance', [1e-3] * 6)

        self.declare_parameter('pose_key', 'x')
        self.declare_parameter('landmark_key', 'l')
        self.declare_parameter('downsample_size', 0.01)
        self.declare_parameter('landmark_var', [0.01, 0.01, 0.01])
        self.declare_parameter('match_percentage', 1.0)
        self.declare_parameter('bbox_margins', [0.05, 0.4, 1.0])
        self.declare_parameter('use_statistical_margins', False)
        self.declare_parameter('relative_error_tol', 1e-5)
        self.declare_parameter('max_iterations', 100)

        self.declare_parameter('bilateral.filtering', False)
        self.declare_parameter('bilateral.spatial_width', 15.0)
        self.declare_parameter('bilateral.range_sigma', 0.05)
        self.declare_parameter('outliers.type', 'none')
        self.declare_parameter('outliers.parameter_one', 0.0)
        self.declare_parameter('outliers.parameter_two', 0.0)
        self.declare_parameter('keypoint.min_scale', 0.08)
        self.declare_parameter('keypoint.nr_octaves', 3)
        self.declare_parameter('keypoint.nr_scales_per_octave', 3)
        self.declare_parameter('keypoint.min_contrast', 5.0)
        self.declare_parameter('feature.normal_radius', 0.1)
        self.declare_parameter('feature.feature_radius', 1.0)

        # Get parameters
        odom_topic = self.get_parameter('odom_topic').value
        cloud_topic = self.get_parameter('cloud_topic').value
        self.map_frame = self.get_parameter('map_frame').value
        self.keyframe_translation = self.get_parameter('keyframe_translation').value
        self.keyframe_rotation = self.get_parameter('keyframe_rotation').value
        self.optimize_every = self.get_parameter('optimize_every').value
        self.publish_cloud = self.get_parameter('publish_cloud').value
        self.odometry_variance = np.array(self.get_parameter('odometry_variance').value)

        esam_names = [
            'pose_key', 'landmark_key', 'downsample_size', 'landmark_var', 'match_percentage',
            'bbox_margins', 'use_statistical_margins', 'relative_error_tol', 'max_iterations',
            'bilateral.filtering', 'bilateral.spatial_width', 'bilateral.range_sigma',
            'outliers.type', 'outliers.parameter_one', 'outliers.parameter_two',
            'keypoint.min_scale', 'keypoint.nr_octaves', 'keypoint.nr_scales_per_octave',
            'keypoint.min_contrast', 'feature.normal_radius', 'feature.feature_radius',
        ]
        self.config = esam_config({name: self.get_parameter(name).value for name in esam_names})
        self.prior_variance = np.array(self.get_parameter('prior_variance').value)

        # The graph is created on the first odometry message
        self.esam = None
        self.last_odom_pose = None
        self.last_stamp = None
        self.pending_clouds = []

        self.odom_sub = self.create_subscription(Odometry, odom_topic, self.odom_callback, 10)
        self.cloud_sub = self.create_subscription(PointCloud2, cloud_topic, self.cloud_callback, 10)

        self.pose_pub = self.create_publisher(PoseWithCovarianceStamped, ESAM_POSE_TOPIC, 10)
        self.traj_pub = self.create_publisher(Path, ESAM_TRAJ_TOPIC, 10)
        self.cloud_pub = self.create_publisher(PointCloud2, ESAM_CLOUD_TOPIC, 10)

        self.get_logger().info(f"ESAM node listening on {odom_topic} and {cloud_topic}")

    @add_lock
    def cloud_callback(self, cloud_msg: PointCloud2) -> None:
        cloud = pointcloud2_to_point_cloud(cloud_msg)
        if self.esam is None:
            self.pending_clouds.append(cloud)
            return
        self.esam.push_point_cloud(cloud)

    @add_lock
    def odom_callback(self, odom_msg: Odometry) -> None:
        pose = r2g(odom_msg.pose.pose)
        stamp = odom_msg.header.stamp
        time = stamp.sec + stamp.nanosec * 1e-9

        if self.esam is None:
            self.esam = ESAM(pose, self.prior_variance, logger=self.get_logger(), **self.config)
            for cloud in self.pending_clouds:
                self.esam.push_point_cloud(cloud)
            self.pending_clouds = []
            self.last_odom_pose = pose
            self.last_stamp = stamp
            self.publish_all()
            return

        delta = self.last_odom_pose.between(pose)
        translation = np.linalg.norm(delta.translation())
        rotation = np.linalg.norm(gtsam.Rot3.Logmap(delta.rotation()))
        if translation < self.keyframe_translation and rotation < self.keyframe_rotation:
            return

        with CodeTimer("ESAMNode - keyframe", self.get_logger()):
            self.esam.add_delta_pose_factor(time, delta, self.odometry_variance)
            self.esam.compute_keypoints()
            added = self.esam.detect_landmarks(time)
            if added == 0 and self.optimize_every > 0 and self.esam.pose_idx % self.optimize_every == 0:
                self.esam.optimize()

        self.last_odom_pose = pose
        self.last_stamp = stamp
        self.publish_all()

    def header(self) -> Header:
        header = Header()
        header.stamp = self.last_stamp
        header.frame_id = self.map_frame
        return header

    def publish_all(self) -> None:
        self.publish_pose()
        self.publish_trajectory()
        if self.publish_cloud:
            self.publish_point_cloud()

    def publish_pose(self) -> None:
        """Newest pose estimate with covariance"""
        _, data = self.esam.get_last_pose_value_and_id()
        pose_msg = PoseWithCovarianceStamped()
        pose_msg.header = self.header()
        g2r(data.pose, pose_msg.pose.pose)
        pose_msg.pose.covariance = [float(v) for v in data.cov.ravel()]
        self.pose_pub.publish(pose_msg)

    def publish_trajectory(self) -> None:
        """All pose estimates as a nav_msgs/Path"""
        traj_msg = Path()
        traj_msg.header = self.header()
        for rbs in self.esam.get_rbs_poses():
            pose_msg = PoseStamped()
            pose_msg.header = traj_msg.header
            g2r(pose_from_quaternion(rbs.position, rbs.orientation), pose_msg.pose)
            traj_msg.poses.append(pose_msg)
        self.traj_pub.publish(traj_msg)

    def publish_point_cloud(self) -> None:
        """Merged, downsampled map in the map frame"""
        cloud = self.esam.merge_point_clouds(downsample=True)
        if len(cloud) == 0:
            return
        self.cloud_pub.publish(point_cloud_to_pointcloud2(cloud, self.header()))


def main(args=None):
    rclpy.init(args=args)
    node = ESAMNode()

    try:
        rclpy.spin(node)
    except KeyboardInterrupt:
        pass
    finally:
        node.destroy_node()
        rclpy.shutdown()


if __name__ == '__main__':
    main()
