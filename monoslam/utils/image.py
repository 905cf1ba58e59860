import cv2
import numpy as np


def to_grayscale(image):
    """
    Convert a frame to a single-channel uint8 image.

    Accepts grayscale (H, W), RGB (H, W, 3) or RGBA (H, W, 4) arrays. Color
    frames are reduced with the luminance weights 0.299 R + 0.587 G + 0.114 B.
    """
    image = np.asarray(image)
    if image.ndim == 2:
        gray = image
    elif image.ndim == 3 and image.shape[2] == 4:
        gray = cv2.cvtColor(np.ascontiguousarray(image), cv2.COLOR_RGBA2GRAY)
    elif image.ndim == 3 and image.shape[2] == 3:
        gray = cv2.cvtColor(np.ascontiguousarray(image), cv2.COLOR_RGB2GRAY)
    elif image.ndim == 3 and image.shape[2] == 1:
        gray = image[:, :, 0]
    else:
        raise ValueError(f"Unsupported frame shape {image.shape}")
    if gray.dtype != np.uint8:
        gray = np.clip(gray, 0, 255).astype(np.uint8)
    return gray


def sample_colors(image, points):
    """
    RGB colors in [0, 1] at (N, 2) pixel positions (nearest pixel, clamped).

    Grayscale frames give gray colors.
    """
    image = np.asarray(image)
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    h, w = image.shape[:2]
    cols = np.clip(np.rint(points[:, 0]).astype(int), 0, w - 1)
    rows = np.clip(np.rint(points[:, 1]).astype(int), 0, h - 1)
    pixels = image[rows, cols].astype(np.float64)
    if image.ndim == 2 or image.shape[2] == 1:
        pixels = np.repeat(pixels.reshape(-1, 1), 3, axis=1)
    else:
        pixels = pixels[:, :3]
    return pixels / 255.0
