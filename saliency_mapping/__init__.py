from .core.mapping_3d import SaliencyMapping3D
from .core.types import CellStatus, SaliencyPhase, SaliencyConfig

__all__ = ['SaliencyMapping3D', 'CellStatus', 'SaliencyPhase', 'SaliencyConfig']
