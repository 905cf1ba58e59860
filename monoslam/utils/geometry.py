"""
Two-view geometry kernels.

All functions work on normalized image coordinates, i.e. pixels with the
intrinsics removed, unless stated otherwise. The relative pose convention is
``x2 ~ R x1 + t`` so that the essential matrix is ``E = [t]x R`` and
``x2^T E x1 = 0``.
"""

import logging

import cv2
import numpy as np

from monoslam.errors import GeometricDegeneracyError, NumericInvalidError

logger = logging.getLogger(__name__)

# Rotation by +90 degrees about z, used to decompose E.
W = np.array([[0.0, -1.0, 0.0],
              [1.0, 0.0, 0.0],
              [0.0, 0.0, 1.0]])


def skew(v):
    """Cross-product matrix: ``skew(a) @ b == np.cross(a, b)``."""
    x, y, z = v
    return np.array([[0.0, -z, y],
                     [z, 0.0, -x],
                     [-y, x, 0.0]])


def normalize_pixels(points, intrinsics):
    """Remove the intrinsics from (N, 2) pixel coordinates."""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    return np.column_stack([(points[:, 0] - intrinsics.cx) / intrinsics.fx,
                            (points[:, 1] - intrinsics.cy) / intrinsics.fy])


def to_homogeneous(points):
    points = np.asarray(points, dtype=np.float64)
    return np.hstack([points, np.ones((points.shape[0], 1))])


def _conditioning_transform(points):
    """Similarity moving the centroid to the origin with mean distance sqrt(2)."""
    centroid = points.mean(axis=0)
    mean_dist = np.linalg.norm(points - centroid, axis=1).mean()
    if not np.isfinite(mean_dist) or mean_dist < 1e-12:
        raise GeometricDegeneracyError("Coincident points cannot define a transform")
    s = np.sqrt(2.0) / mean_dist
    return np.array([[s, 0.0, -s * centroid[0]],
                     [0.0, s, -s * centroid[1]],
                     [0.0, 0.0, 1.0]])


def eight_point_essential(x1, x2):
    """
    Normalized 8-point algorithm.

    Args:
        x1: (N, 2) normalized coordinates in the first view, N >= 8.
        x2: (N, 2) corresponding coordinates in the second view.

    Returns:
        3x3 essential matrix with singular values (1, 1, 0).
    """
    x1 = np.asarray(x1, dtype=np.float64)
    x2 = np.asarray(x2, dtype=np.float64)
    if len(x1) < 8 or len(x1) != len(x2):
        raise GeometricDegeneracyError("The 8-point algorithm needs at least 8 correspondences")
    if not (np.all(np.isfinite(x1)) and np.all(np.isfinite(x2))):
        raise NumericInvalidError("Non-finite correspondence coordinates")

    T1 = _conditioning_transform(x1)
    T2 = _conditioning_transform(x2)
    p1 = to_homogeneous(x1) @ T1.T
    p2 = to_homogeneous(x2) @ T2.T

    A = np.column_stack([
        p2[:, 0] * p1[:, 0], p2[:, 0] * p1[:, 1], p2[:, 0],
        p2[:, 1] * p1[:, 0], p2[:, 1] * p1[:, 1], p2[:, 1],
        p1[:, 0], p1[:, 1], np.ones(len(p1)),
    ])
    _, _, Vt = np.linalg.svd(A)
    E = T2.T @ Vt[-1].reshape(3, 3) @ T1

    # Project onto the essential manifold
    U, _, Vt = np.linalg.svd(E)
    E = U @ np.diag([1.0, 1.0, 0.0]) @ Vt
    if not np.all(np.isfinite(E)):
        raise NumericInvalidError("Essential matrix estimate is not finite")
    return E


def sampson_distance(E, x1, x2):
    """First-order geometric epipolar error for each correspondence."""
    p1 = to_homogeneous(x1)
    p2 = to_homogeneous(x2)
    Ex1 = p1 @ E.T
    Etx2 = p2 @ E
    residual = np.sum(p2 * Ex1, axis=1)
    denom = Ex1[:, 0] ** 2 + Ex1[:, 1] ** 2 + Etx2[:, 0] ** 2 + Etx2[:, 1] ** 2
    with np.errstate(divide='ignore', invalid='ignore'):
        dist = np.abs(residual) / np.sqrt(denom)
    dist[~np.isfinite(dist)] = np.inf
    return dist


def decompose_essential(E):
    """
    The four (R, t) motions compatible with an essential matrix.

    ``t`` has unit norm; which candidate is physical is decided by a
    chirality test.
    """
    U, _, Vt = np.linalg.svd(E)
    if np.linalg.det(U) < 0:
        U = -U
    if np.linalg.det(Vt) < 0:
        Vt = -Vt
    R1 = U @ W @ Vt
    R2 = U @ W.T @ Vt
    t = U[:, 2] / np.linalg.norm(U[:, 2])
    return [(R1, t), (R1, -t), (R2, t), (R2, -t)]


def triangulate_points(P1, P2, pts1, pts2):
    """
    Linear triangulation of correspondences.

    Args:
        P1, P2: 3x4 projection matrices.
        pts1, pts2: (N, 2) image coordinates matching the projections.

    Returns:
        (N, 3) points; rows at infinity are non-finite.
    """
    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    pts2 = np.asarray(pts2, dtype=np.float64).reshape(-1, 2)
    if len(pts1) == 0:
        return np.empty((0, 3))
    points_4d = cv2.triangulatePoints(np.asarray(P1, dtype=np.float64),
                                      np.asarray(P2, dtype=np.float64),
                                      pts1.T, pts2.T)
    with np.errstate(divide='ignore', invalid='ignore'):
        points_3d = (points_4d[:3] / points_4d[3]).T
    return points_3d


def count_in_front(R, t, x1, x2):
    """Number of correspondences that triangulate in front of both cameras."""
    P1 = np.hstack((np.eye(3), np.zeros((3, 1))))
    P2 = np.hstack((R, np.asarray(t).reshape(3, 1)))
    X = triangulate_points(P1, P2, x1, x2)
    finite = np.all(np.isfinite(X), axis=1)
    depth1 = X[:, 2]
    depth2 = X @ R[2] + t[2]
    return int(np.sum(finite & (depth1 > 0) & (depth2 > 0)))


def triangulate_multiview(projections, points):
    """
    DLT triangulation of one point seen by two or more cameras.

    Args:
        projections: Sequence of 3x4 projection matrices.
        points: Sequence of matching (2,) image coordinates.

    Returns:
        (3,) point, or None when the solution lies at infinity.
    """
    if len(projections) < 2 or len(projections) != len(points):
        return None
    rows = []
    for P, (u, v) in zip(projections, points):
        rows.append(u * P[2] - P[0])
        rows.append(v * P[2] - P[1])
    _, _, Vt = np.linalg.svd(np.stack(rows))
    X_h = Vt[-1]
    if abs(X_h[3]) < 1e-12:
        return None
    X = X_h[:3] / X_h[3]
    return X if np.all(np.isfinite(X)) else None
