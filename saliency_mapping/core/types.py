"""
Shared types for the saliency-aware occupancy map.

One record type is used for every voxel: occupancy log-odds plus an explicit
saliency state. Behaviour that depends on the saliency phase is a field check
on that record.
"""
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Tuple

import numpy as np

# Integer voxel coordinate (ix, iy, iz) = floor(coord / resolution)
VoxelKey = Tuple[int, int, int]


class SaliencyMappingError(Exception):
    """Base class for errors raised by the mapping core."""


class InvalidConfigurationError(SaliencyMappingError, ValueError):
    """Raised when a parameter set cannot produce a valid map."""


class PreconditionError(SaliencyMappingError, ValueError):
    """Raised when a caller violates an operation precondition."""


class CellStatus(Enum):
    FREE = 0
    OCCUPIED = 1
    UNKNOWN = 2


class SaliencyPhase(IntEnum):
    """Saliency life cycle. Only ever advances NORMAL -> SALIENT -> RETIRED."""
    NORMAL = 0
    SALIENT = 1
    RETIRED = 2


@dataclass
class SaliencyState:
    phase: SaliencyPhase = SaliencyPhase.NORMAL
    value: int = 0                 # uint8 range [0, 255]
    value_buffer: float = 0.0      # running mean of intensities this tick
    sample_count: int = 0
    last_touched_tick: int = 0
    viewpoint_count: int = 0
    density: int = 0

    def copy(self):
        return SaliencyState(self.phase, self.value, self.value_buffer,
                             self.sample_count, self.last_touched_tick,
                             self.viewpoint_count, self.density)


@dataclass
class VoxelRecord:
    log_odds: float = 0.0
    saliency: SaliencyState = field(default_factory=SaliencyState)

    def copy(self):
        return VoxelRecord(self.log_odds, self.saliency.copy())


@dataclass(frozen=True)
class SaliencyConfig:
    """
    Per-call saliency parameters

    Attributes:
        alpha: Accumulation gain applied to the change of the running mean
        beta: Inhibition-of-return decay rate (negative enables decay)
        threshold: Promotion cutoff on the saliency value (0-255)
        projection_limit: Max ray length when projecting pixels into the map
        pixel_stride: Pixel subsampling step in both image axes
        ground_z: Hits at or below this height are not sampled
        stop_at_unknown: Stop projection rays at the first unknown voxel
    """
    alpha: float = 0.5
    beta: float = -0.05
    threshold: float = 128.0
    projection_limit: float = 5.0
    pixel_stride: int = 5
    ground_z: float = 0.0
    stop_at_unknown: bool = False

    @property
    def decay_enabled(self):
        return self.beta < 0.0

    @classmethod
    def from_dict(cls, params):
        """Build from a (possibly partial) parameter dictionary."""
        known = {k: params[k] for k in cls.__dataclass_fields__ if k in params}
        return cls(**known)


def probability_to_log_odds(p):
    return float(np.log(p / (1.0 - p)))


def log_odds_to_probability(l):
    return float(1.0 / (1.0 + np.exp(-l)))
