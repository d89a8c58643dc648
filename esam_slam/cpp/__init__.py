"""
Python implementations of the PCL point cloud filters used by esam_slam.
"""
