"""Intensity fusion utilities for saliency integration."""
import numpy as np


def running_mean(previous_mean, count, sample):
    """
    Incremental mean of `count` samples given the mean of the first count-1.

    Args:
        previous_mean: Mean of the previous count-1 samples
        count: Number of samples including the new one (>= 1)
        sample: New sample value

    Returns:
        Updated mean

    Examples:
        >>> running_mean(200.0, 2, 210)
        205.0
    """
    return (previous_mean * (count - 1) + sample) / count


def taylor_decay_factor(k, beta):
    """
    Second-order Taylor approximation of exp(k * beta).

    The polynomial 1 + x + x^2/2 has its minimum (0.5) at x = -1 and grows
    again below it, so x is floored at -1 to keep the factor monotone in k.

    Args:
        k: Number of decay ticks since promotion
        beta: Decay rate (negative)

    Returns:
        Multiplicative factor in [0.5, 1] for beta <= 0
    """
    x = max(k * beta, -1.0)
    return 1.0 + x + x * x / 2.0


def clamp_uint8(value):
    """Store a float as a uint8 intensity (clipped, fractional part dropped)."""
    return int(np.clip(value, 0.0, 255.0))
