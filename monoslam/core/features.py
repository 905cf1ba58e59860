import numpy as np
import cv2
from dataclasses import dataclass, field
from typing import List, Tuple


@dataclass(frozen=True)
class Keypoint:
    """A detected corner.

    Attributes:
        x, y: Pixel coordinates in the full-resolution frame.
        score: Harris response (scale normalised).
        scale: Factor of the image level the corner was detected on.
    """
    x: float
    y: float
    score: float
    scale: float = 1.0

    @property
    def pt(self) -> Tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True)
class Match:
    """Correspondence between keypoint ``query_idx`` of the first set and
    keypoint ``train_idx`` of the second set."""
    query_idx: int
    train_idx: int
    distance: float


@dataclass
class FeatureSet:
    """Keypoints of one frame and their packed binary descriptors.

    Keypoints are ordered by descending score and row ``i`` of
    ``descriptors`` belongs to keypoint ``i``.
    """
    keypoints: List[Keypoint]
    descriptors: np.ndarray
    image_size: Tuple[int, int] = (0, 0)
    _points: np.ndarray = field(default=None, init=False, repr=False)

    def __len__(self):
        return len(self.keypoints)

    @property
    def points(self):
        """(N, 2) float array of keypoint coordinates."""
        if self._points is None:
            if self.keypoints:
                self._points = np.array([kp.pt for kp in self.keypoints], dtype=np.float64)
            else:
                self._points = np.zeros((0, 2), dtype=np.float64)
        return self._points

    @classmethod
    def empty(cls, image_size=(0, 0), descriptor_bytes=32):
        return cls([], np.zeros((0, descriptor_bytes), dtype=np.uint8), image_size)

    @classmethod
    def from_points(cls, points, descriptors=None, image_size=(0, 0)):
        """Wrap raw coordinates, e.g. projected synthetic points."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        keypoints = [Keypoint(float(x), float(y), 1.0) for x, y in points]
        if descriptors is None:
            descriptors = np.zeros((len(keypoints), 32), dtype=np.uint8)
        return cls(keypoints, np.asarray(descriptors, dtype=np.uint8), image_size)


def hamming_distance(desc1, desc2):
    """Number of differing bits between two packed binary descriptors."""
    desc1 = np.ascontiguousarray(desc1, dtype=np.uint8).reshape(1, -1)
    desc2 = np.ascontiguousarray(desc2, dtype=np.uint8).reshape(1, -1)
    if desc1.shape != desc2.shape:
        raise ValueError("Descriptors must have the same length")
    return int(cv2.norm(desc1, desc2, cv2.NORM_HAMMING))
