"""
Topics for the esam_slam project (ROS2)
"""

# Sensor topics
ODOM_TOPIC = "/odom"
CLOUD_TOPIC = "/camera/depth/points"

# ESAM namespace
ESAM_NS = "/esam/"

# Estimation outputs
ESAM_POSE_TOPIC = ESAM_NS + "pose"
ESAM_TRAJ_TOPIC = ESAM_NS + "traj"
ESAM_CLOUD_TOPIC = ESAM_NS + "cloud"
