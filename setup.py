from setuptools import setup
from glob import glob
import os

package_name = 'esam_slam'

setup(
    name=package_name,
    version='0.1.0',
    packages=[
        package_name,
        package_name + '.nodes',
        package_name + '.core',
        package_name + '.utils',
        package_name + '.cpp',
    ],
    data_files=[
        ('share/ament_index/resource_index/packages',
            ['resource/' + package_name]),
        ('share/' + package_name, ['package.xml']),
        (os.path.join('share', package_name, 'launch'), glob('launch/*.launch.py')),
        (os.path.join('share', package_name, 'config'), glob('config/*.yaml')),
    ],
    install_requires=[
        'setuptools',
        'numpy',
        'scipy',
        'scikit-learn',
        'gtsam',
        'networkx',
        'PyYAML',
    ],
    extras_require={
        'test': ['pytest'],
    },
    zip_safe=True,
    maintainer='root',
    maintainer_email='root@todo.todo',
    description='Incremental pose-landmark graph SLAM backend with spatial data association',
    license='TODO',
    tests_require=['pytest'],
    entry_points={
        'console_scripts': [
            'esam_node = esam_slam.nodes.esam_node:main',
        ],
    },
)
