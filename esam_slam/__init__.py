from .core.esam import ESAM
from .core.types import PointCloud, PoseWithCovariance, Symbol

__all__ = ['ESAM', 'PointCloud', 'PoseWithCovariance', 'Symbol']
