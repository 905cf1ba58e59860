import numpy as np
from dataclasses import dataclass


def project_to_so3(M):
    """Closest rotation matrix to ``M`` in the Frobenius sense (via SVD)."""
    U, _, Vt = np.linalg.svd(M)
    R = U @ Vt
    if np.linalg.det(R) < 0:
        U[:, -1] *= -1
        R = U @ Vt
    return R


@dataclass
class Pose:
    """
    Rigid transform taking world coordinates into a camera frame.

    ``X_cam = rotation @ X_world + translation``. Relative poses between two
    cameras use the same convention with the first camera as "world".
    """
    rotation: np.ndarray
    translation: np.ndarray

    def __post_init__(self):
        self.rotation = np.asarray(self.rotation, dtype=np.float64).reshape(3, 3)
        self.translation = np.asarray(self.translation, dtype=np.float64).reshape(3)

    @classmethod
    def identity(cls):
        return cls(np.eye(3), np.zeros(3))

    @classmethod
    def from_matrix(cls, T):
        T = np.asarray(T, dtype=np.float64)
        return cls(T[:3, :3], T[:3, 3])

    @property
    def matrix(self):
        """4x4 homogeneous transform."""
        T = np.eye(4)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.translation
        return T

    @property
    def camera_center(self):
        """Camera position in world coordinates."""
        return -self.rotation.T @ self.translation

    def inverse(self):
        R_inv = self.rotation.T
        return Pose(R_inv, -R_inv @ self.translation)

    def compose(self, other):
        """Apply ``other`` first, then ``self``."""
        return Pose(self.rotation @ other.rotation,
                    self.rotation @ other.translation + self.translation)

    def __matmul__(self, other):
        return self.compose(other)

    def transform(self, points):
        """Map (N, 3) world points into this camera frame."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return points @ self.rotation.T + self.translation

    def inverse_transform(self, points):
        """Map (N, 3) camera-frame points back into world coordinates."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return (points - self.translation) @ self.rotation

    def projection_matrix(self, K):
        """3x4 matrix ``K [R | t]``."""
        return np.asarray(K) @ np.hstack((self.rotation, self.translation.reshape(3, 1)))

    def copy(self):
        return Pose(self.rotation.copy(), self.translation.copy())
