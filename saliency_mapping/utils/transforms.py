"""
Pose and camera helpers.

Default implementations of the frame collaborators used by the saliency
integration: pose -> 4x4 transform and pinhole pixel -> ray unprojection.
"""
import numpy as np
from scipy.spatial.transform import Rotation as R

from saliency_mapping.core.types import PreconditionError


def pose_to_transform(pose):
    """
    Convert a pose to a 4x4 transform matrix

    Args:
        pose: 4x4 array, dict with 'position'/'orientation' (x, y, z[, w]),
              or an object with .position/.orientation attributes

    Returns:
        4x4 numpy array transform matrix
    """
    if pose is None:
        raise PreconditionError("pose is required")

    if isinstance(pose, np.ndarray) or isinstance(pose, (list, tuple)):
        T = np.asarray(pose, dtype=np.float64)
        if T.shape != (4, 4):
            raise PreconditionError(f"Expected 4x4 transform, got shape {T.shape}")
        return T

    # Handle dict format
    if isinstance(pose, dict):
        position = [pose['position']['x'], pose['position']['y'], pose['position']['z']]
        quaternion = [
            pose['orientation']['x'],
            pose['orientation']['y'],
            pose['orientation']['z'],
            pose['orientation']['w']
        ]
    else:
        # Handle message-like objects
        if hasattr(pose, 'pose'):
            pose = pose.pose
        position = [pose.position.x, pose.position.y, pose.position.z]
        quaternion = [pose.orientation.x, pose.orientation.y,
                      pose.orientation.z, pose.orientation.w]

    T = np.eye(4)
    rot = R.from_quat(quaternion)  # scipy uses [x, y, z, w] format
    T[:3, :3] = rot.as_matrix()
    T[:3, 3] = position
    return T


def transform_points(T, points):
    """Apply a 4x4 transform to (N, 3) points"""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return points @ T[:3, :3].T + T[:3, 3]


class PinholeCamera:
    """
    Minimal pinhole model (rectified image)

    Attributes:
        fx, fy: Focal lengths in pixels
        cx, cy: Principal point; defaults to the image center when None
    """

    def __init__(self, fx, fy, cx=None, cy=None):
        if fx <= 0 or fy <= 0:
            raise PreconditionError(f"focal lengths must be positive, got fx={fx}, fy={fy}")
        self.fx = float(fx)
        self.fy = float(fy)
        self.cx = cx
        self.cy = cy

    @classmethod
    def from_intrinsics(cls, intrinsics):
        """Build from a dict with fx, fy and optional cx, cy"""
        if intrinsics is None:
            raise PreconditionError("camera intrinsics are required")
        if isinstance(intrinsics, PinholeCamera):
            return intrinsics
        return cls(intrinsics['fx'], intrinsics['fy'],
                   intrinsics.get('cx'), intrinsics.get('cy'))

    def project_pixels_to_rays(self, u, v, width, height):
        """
        Camera-frame rays (z forward) through pixel coordinates

        Args:
            u, v: Arrays of column and row indices
            width, height: Image size, used for the default principal point

        Returns:
            (N, 3) unit direction vectors
        """
        cx = self.cx if self.cx is not None else (width - 1) / 2.0
        cy = self.cy if self.cy is not None else (height - 1) / 2.0
        u = np.asarray(u, dtype=np.float64)
        v = np.asarray(v, dtype=np.float64)
        rays = np.stack([(u - cx) / self.fx, (v - cy) / self.fy, np.ones_like(u)], axis=-1)
        return rays / np.linalg.norm(rays, axis=-1, keepdims=True)
