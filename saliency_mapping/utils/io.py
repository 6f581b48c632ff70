"""
I/O and synchronization utilities for saliency_mapping.

Provides:
- ReadWriteLock: single writer / many readers lock for the map
- CodeTimer: Performance measurement context manager
- Snapshot packing and the diagnostic saliency log
"""
import logging
import timeit
from contextlib import contextmanager
from pathlib import Path
from threading import Condition, Lock

import numpy as np

from saliency_mapping.core.types import (
    PreconditionError,
    SaliencyPhase,
    SaliencyState,
    VoxelRecord,
)

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1


class ReadWriteLock(object):
    """Shared/exclusive lock. Waiting writers block new readers."""

    def __init__(self):
        self._cond = Condition(Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self):
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True

    def release_write(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


class CodeTimer(object):
    """Timer class used with `with` statement

    - Disable output by setting CodeTimer.silent = True
    - Change log_func to print/logger.info/etc

    with CodeTimer("Some function") as timer:
        some_func()
    print(timer.took)

    """

    silent = False

    def __init__(self, name="Code block", log_func=None):
        self.name = name
        self.log_func = log_func if log_func is not None else logger.debug
        self.took = 0.0

    def __enter__(self):
        """Start measuring at the start of indent"""
        self.start = timeit.default_timer()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        """
            Stop measuring at the end of indent. This will run even
            if the indented lines raise an exception.
        """
        self.took = timeit.default_timer() - self.start
        if not CodeTimer.silent:
            self.log_func("{} : {:.5f} s".format(self.name, float(self.took)))


def pack_snapshot(octree):
    """
    Opaque full-state snapshot of an octree

    Returns:
        Dictionary of numpy arrays plus resolution/tree_depth
    """
    keys, log_odds, saliency = [], [], []
    for key, record in octree.iter_leaves():
        s = record.saliency
        keys.append(key)
        log_odds.append(record.log_odds)
        saliency.append((int(s.phase), s.value, s.value_buffer, s.sample_count,
                         s.last_touched_tick, s.viewpoint_count, s.density))

    return {
        'version': SNAPSHOT_VERSION,
        'resolution': octree.resolution,
        'tree_depth': octree.tree_depth,
        'keys': np.array(keys, dtype=np.int64).reshape(-1, 3),
        'log_odds': np.array(log_odds, dtype=np.float64),
        'saliency': np.array(saliency, dtype=np.float64).reshape(-1, 7),
    }


def unpack_snapshot(snapshot):
    """
    Yield (key, VoxelRecord) pairs stored in a snapshot

    Raises:
        PreconditionError: snapshot is missing or malformed
    """
    if snapshot is None:
        raise PreconditionError("snapshot is required")
    for field in ('resolution', 'keys', 'log_odds', 'saliency'):
        if field not in snapshot:
            raise PreconditionError(f"snapshot is missing '{field}'")

    keys = np.asarray(snapshot['keys'], dtype=np.int64).reshape(-1, 3)
    log_odds = np.asarray(snapshot['log_odds'], dtype=np.float64)
    saliency = np.asarray(snapshot['saliency'], dtype=np.float64).reshape(-1, 7)
    if not len(keys) == len(log_odds) == len(saliency):
        raise PreconditionError("snapshot arrays have different lengths")

    for key, l, s in zip(keys, log_odds, saliency):
        state = SaliencyState(
            phase=SaliencyPhase(int(s[0])),
            value=int(s[1]),
            value_buffer=float(s[2]),
            sample_count=int(s[3]),
            last_touched_tick=int(s[4]),
            viewpoint_count=int(s[5]),
            density=int(s[6]),
        )
        yield (int(key[0]), int(key[1]), int(key[2])), VoxelRecord(float(l), state)


def format_saliency_line(center, saliency):
    """One diagnostic line: x,y,z,phase,value,viewpoint_count,density"""
    return "{},{},{},{},{},{},{}".format(
        center[0], center[1], center[2], int(saliency.phase),
        int(saliency.value), saliency.viewpoint_count, saliency.density)


def write_saliency_log(lines, path):
    """
    Write diagnostic lines to a text file

    Args:
        lines: Iterable of formatted lines
        path: Output file path (required)

    Returns:
        Path that was written
    """
    if path is None:
        raise PreconditionError("an output path is required")
    path = Path(path)
    with open(path, 'w') as log_file:
        for line in lines:
            log_file.write(line + "\n")
    logger.info(f"Saved saliency log in: {path}")
    return path
