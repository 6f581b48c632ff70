"""
Mapping profiling utilities for performance monitoring.
"""
import csv
import time
from pathlib import Path


class MappingProfiler:
    """CSV-based profiler for map update performance tracking"""

    FIELDS = [
        'frame_id', 'timestamp_sec', 'kind', 'total_ms',
        'saliency_ms', 'ior_ms', 'num_points', 'num_free', 'num_occupied',
        'num_sampled', 'map_voxels'
    ]

    def __init__(self, csv_path: str, sample_interval: int = 10):
        """
        Args:
            csv_path: Path to CSV output file
            sample_interval: Record every N frames
        """
        self.csv_path = Path(csv_path)
        self.sample_interval = max(int(sample_interval), 1)
        self.csv_file = None
        self.csv_writer = None
        self.current_frame = 0
        self.metrics = {}

    def start(self):
        """Initialize CSV file with headers"""
        self.csv_file = open(self.csv_path, 'w', newline='')
        self.csv_writer = csv.writer(self.csv_file)
        self.csv_writer.writerow(self.FIELDS)
        self.csv_file.flush()

    def record_frame(self, frame_id: int, **metrics):
        """Record metrics for current frame"""
        self.current_frame = frame_id
        self.metrics = metrics

        # Write to CSV if sampling interval matches
        if frame_id % self.sample_interval == 0:
            self.write_csv_row()

    def write_csv_row(self):
        """Write current metrics to CSV"""
        if self.csv_writer is None:
            return

        row = [self.current_frame, self.metrics.get('timestamp', time.time())]
        row += [self.metrics.get(name, 0) for name in self.FIELDS[2:]]
        self.csv_writer.writerow(row)
        self.csv_file.flush()

    def close(self):
        """Close CSV file"""
        if self.csv_file:
            self.csv_file.close()
            self.csv_file = None
            self.csv_writer = None
