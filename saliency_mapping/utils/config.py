"""
Parameter loading for the saliency map.

Parameters live in a flat dictionary (saliency settings nested under
'saliency'), read from a ROS 2 style YAML file and merged over
DEFAULT_CONFIG.
"""
import copy
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from saliency_mapping.core.types import InvalidConfigurationError

DEFAULT_CONFIG: Dict[str, Any] = {
    # Octree
    'resolution': 0.15,
    'tree_depth': 16,
    # Sensor model
    'probability_hit': 0.65,
    'probability_miss': 0.4,
    'threshold_min': 0.12,
    'threshold_max': 0.97,
    'threshold_occupancy': 0.5,
    # Insertion
    'sensor_max_range': 5.0,
    'max_free_space': 0.0,
    'min_height_free_space': 0.0,
    # Queries
    'filter_speckles': True,
    'treat_unknown_as_occupied': True,
    'robot_size': [1.0, 1.0, 1.0],
    'change_detection_enabled': False,
    # Exploration region
    'exploration_bbx_min': [-10.0, -10.0, 0.0],
    'exploration_bbx_max': [10.0, 10.0, 3.0],
    # Saliency
    'saliency': {
        'alpha': 0.5,
        'beta': -0.05,
        'threshold': 128.0,
        'projection_limit': 5.0,
        'pixel_stride': 5,
        'ground_z': 0.0,
        'stop_at_unknown': False,
    },
    # Profiling
    'enable_profiling': False,
    'profiling_csv_path': '/tmp/saliency_mapping_profiling.csv',
    'frame_interval': 10,
}


def _load_yaml_file(path) -> Dict[str, Any]:
    """Load a YAML config file, handling the ros__parameters wrapper."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    # ROS2 YAML files wrap parameters in <node or /**>:/ros__parameters:
    for node_params in data.values():
        if isinstance(node_params, dict) and 'ros__parameters' in node_params:
            return node_params['ros__parameters']
    return data


def merge_config(base: Dict[str, Any], overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Deep-merge overrides into a copy of base (one nesting level)"""
    merged = copy.deepcopy(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key].update(value)
        else:
            merged[key] = value
    return merged


def validate_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Reject parameter sets that cannot produce a valid map

    Raises:
        InvalidConfigurationError: on the first invalid parameter
    """
    resolution = config.get('resolution')
    if not isinstance(resolution, (int, float)) or resolution <= 0:
        raise InvalidConfigurationError(f"resolution must be positive, got {resolution}")
    if int(config.get('tree_depth', 16)) < 1:
        raise InvalidConfigurationError("tree_depth must be >= 1")

    for name in ('probability_hit', 'probability_miss', 'threshold_min',
                 'threshold_max', 'threshold_occupancy'):
        if not 0.0 < float(config[name]) < 1.0:
            raise InvalidConfigurationError(f"{name} must be in (0, 1), got {config[name]}")
    if config['threshold_min'] > config['threshold_max']:
        raise InvalidConfigurationError("threshold_min exceeds threshold_max")

    for name in ('exploration_bbx_min', 'exploration_bbx_max', 'robot_size'):
        if len(config[name]) != 3:
            raise InvalidConfigurationError(f"{name} must have 3 components")
    if any(hi < lo for lo, hi in zip(config['exploration_bbx_min'], config['exploration_bbx_max'])):
        raise InvalidConfigurationError("exploration_bbx_max is below exploration_bbx_min")

    if int(config['saliency'].get('pixel_stride', 1)) < 1:
        raise InvalidConfigurationError("saliency.pixel_stride must be >= 1")
    return config


def load_config(path=None, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Build a validated configuration

    Args:
        path: Optional YAML file (plain or ROS 2 parameter layout)
        overrides: Optional dictionary applied last

    Returns:
        Configuration dictionary
    """
    config = DEFAULT_CONFIG
    if path is not None:
        config = merge_config(config, _load_yaml_file(Path(path)))
    config = merge_config(config, overrides)
    return validate_config(config)
