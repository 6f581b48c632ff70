from .profiler import MappingProfiler
from .fusion import running_mean, taylor_decay_factor, clamp_uint8
from .config import load_config, DEFAULT_CONFIG

__all__ = ['MappingProfiler', 'running_mean', 'taylor_decay_factor', 'clamp_uint8',
           'load_config', 'DEFAULT_CONFIG']
