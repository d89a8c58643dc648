#!/usr/bin/env python3
"""Launch file for the ESAM node."""

from launch import LaunchDescription
from launch.actions import DeclareLaunchArgument
from launch.substitutions import LaunchConfiguration, PathJoinSubstitution
from launch_ros.actions import Node
from launch_ros.substitutions import FindPackageShare


def generate_launch_description():
    config_arg = DeclareLaunchArgument(
        'config',
        default_value=PathJoinSubstitution([FindPackageShare('esam_slam'), 'config', 'esam.yaml']),
        description='ESAM parameter file'
    )
    odom_topic_arg = DeclareLaunchArgument('odom_topic', default_value='/odom')
    cloud_topic_arg = DeclareLaunchArgument('cloud_topic', default_value='/camera/depth/points')

    return LaunchDescription([
        config_arg,
        odom_topic_arg,
        cloud_topic_arg,
        Node(
            package='esam_slam',
            executable='esam_node',
            name='esam_node',  # Must match yaml namespace (esam_node.ros__parameters)
            output='screen',
            parameters=[
                LaunchConfiguration('config'),
                {
                    'odom_topic': LaunchConfiguration('odom_topic'),
                    'cloud_topic': LaunchConfiguration('cloud_topic'),
                }
            ],
        ),
    ])
