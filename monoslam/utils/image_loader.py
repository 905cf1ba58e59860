import os

import cv2
import numpy as np

from monoslam.config import CameraIntrinsics

IMAGE_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.bmp')


class ImageLoader:
    def __init__(self, sequence_path, image_dir=None, fps=30.0):
        """
        Frames of a recorded sequence stored as image files.

        The directory layout follows KITTI: images in ``image_0`` (or the
        sequence directory itself), optional ``times.txt`` with one timestamp
        per frame and optional ``calib.txt`` with 3x4 projection matrices.

        :param sequence_path: Path to the sequence directory.
        :param image_dir: Image subdirectory; auto-detected when None.
        :param fps: Frame rate used for timestamps when ``times.txt`` is missing.
        """
        self.sequence_path = sequence_path
        if image_dir is None:
            candidate = os.path.join(sequence_path, 'image_0')
            image_dir = candidate if os.path.isdir(candidate) else sequence_path
        self.image_dir = image_dir
        self.fps = fps
        self.image_files = sorted(f for f in os.listdir(self.image_dir)
                                  if f.lower().endswith(IMAGE_EXTENSIONS))
        self.timestamps = self._load_timestamps()
        self.calibration = self._load_calibration()

    def __len__(self):
        return len(self.image_files)

    def __iter__(self):
        for frame_id in range(len(self)):
            yield self.load_image(frame_id), self.get_timestamp(frame_id)

    def _load_timestamps(self):
        timestamps_path = os.path.join(self.sequence_path, 'times.txt')
        if not os.path.exists(timestamps_path):
            return None
        with open(timestamps_path, 'r') as f:
            return [float(line.strip()) for line in f if line.strip()]

    def _load_calibration(self):
        """
        Loads calibration parameters from calib.txt.
        :return: Dictionary of camera name -> 3x3 intrinsic matrix.
        """
        calib_path = os.path.join(self.sequence_path, 'calib.txt')
        calib = {}
        if not os.path.exists(calib_path):
            return calib
        with open(calib_path, 'r') as f:
            for line in f:
                if ':' not in line:
                    continue
                key, value = line.split(':', 1)
                projection_matrix = np.array([float(x) for x in value.split()]).reshape(3, 4)
                calib[key.strip()] = projection_matrix[:, :3]
        return calib

    def intrinsics(self, camera='P0'):
        """CameraIntrinsics from the calibration file, or None."""
        K = self.calibration.get(camera)
        return CameraIntrinsics.from_matrix(K) if K is not None else None

    def load_image(self, frame_id):
        """
        Load the frame with the given index as an RGB (or grayscale) array.
        """
        image_path = os.path.join(self.image_dir, self.image_files[frame_id])
        image = cv2.imread(image_path, cv2.IMREAD_UNCHANGED)
        if image is None:
            raise ValueError(f"Image at path '{image_path}' could not be loaded")
        if image.ndim == 3 and image.shape[2] == 3:
            image = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
        elif image.ndim == 3 and image.shape[2] == 4:
            image = cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA)
        return image

    def get_timestamp(self, frame_id):
        if self.timestamps is not None and frame_id < len(self.timestamps):
            return self.timestamps[frame_id]
        return frame_id / self.fps
