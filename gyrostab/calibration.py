"""
Lens Calibration Module.

Detects chessboard calibration targets in frames, fits a fisheye lens
profile from the detections and draws the detected corners into RGBA8
pixel buffers while the manager is in calibration mode.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import cv2
import numpy as np

from .lens_profile import FisheyeParams, LensProfile
from .params import PixelFormat
from .state import RWLock
from .undistortion import image_view


@dataclass
class Detected:
    """Chessboard corners found in one frame."""
    frame: int
    points: np.ndarray  # (columns * rows, 2)


class LensCalibrator:
    """Collects chessboard detections and fits a fisheye model."""

    def __init__(self, columns: int = 14, rows: int = 8, width: int = 0, height: int = 0):
        """
        Args:
            columns: Inner corners per chessboard row
            rows: Inner corners per chessboard column
            width: Frame width the detections are made at
            height: Frame height the detections are made at
        """
        self.columns = columns
        self.rows = rows
        self.width = width
        self.height = height

        self.all_matches: Dict[int, Detected] = {}
        self.matches_lock = RWLock()
        self.rms = 0.0

    def feed_frame(self, frame: int, image: np.ndarray) -> bool:
        """Look for the chessboard in a BGR or grayscale image; True if found and stored."""
        gray = image if image.ndim == 2 else cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        self.height, self.width = gray.shape[:2]

        found, corners = cv2.findChessboardCorners(
            gray,
            (self.columns, self.rows),
            flags=cv2.CALIB_CB_ADAPTIVE_THRESH | cv2.CALIB_CB_NORMALIZE_IMAGE
        )
        if not found:
            return False

        criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 0.01)
        corners = cv2.cornerSubPix(gray, corners, (5, 5), (-1, -1), criteria)

        with self.matches_lock.write():
            self.all_matches[frame] = Detected(frame=frame, points=corners.reshape(-1, 2))
        return True

    def get_points(self, frame: int) -> Optional[np.ndarray]:
        with self.matches_lock.read():
            entry = self.all_matches.get(frame)
            return None if entry is None else entry.points.copy()

    def object_points(self) -> np.ndarray:
        grid = np.zeros((self.columns * self.rows, 3), np.float64)
        grid[:, :2] = np.mgrid[0:self.columns, 0:self.rows].T.reshape(-1, 2)
        return grid

    def calibrate(self) -> LensProfile:
        """
        Fit a fisheye lens profile to all stored detections.

        Raises:
            ValueError: with fewer than 3 detections, or if OpenCV cannot converge
        """
        with self.matches_lock.read():
            detections = [d.points for d in self.all_matches.values()]
        if len(detections) < 3:
            raise ValueError("At least 3 chessboard detections are needed to calibrate")

        objp = self.object_points().reshape(1, -1, 3)
        object_points = [objp for _ in detections]
        image_points = [d.reshape(1, -1, 2).astype(np.float64) for d in detections]

        K = np.zeros((3, 3))
        D = np.zeros((4, 1))
        flags = cv2.fisheye.CALIB_RECOMPUTE_EXTRINSIC | cv2.fisheye.CALIB_FIX_SKEW
        criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 100, 1e-6)
        try:
            rms, K, D, _, _ = cv2.fisheye.calibrate(
                object_points, image_points, (self.width, self.height), K, D,
                flags=flags, criteria=criteria
            )
        except cv2.error as e:
            raise ValueError(f"Calibration failed: {e}") from e

        self.rms = float(rms)
        return LensProfile(
            name='Calibrated',
            calib_dimension=(self.width, self.height),
            fisheye_params=FisheyeParams(
                rms_error=self.rms,
                camera_matrix=K.tolist(),
                distortion_coeffs=D.reshape(-1).tolist()
            )
        )


def draw_chessboard_corners(
    width: int,
    height: int,
    stride: int,
    pixels,
    pattern: Tuple[int, int],
    points: np.ndarray,
    found: bool
) -> bool:
    """Draw chessboard corners into an RGBA8 buffer in place; False if the buffer is unusable."""
    view = image_view(pixels, width, height, stride, PixelFormat.RGBA8)
    if view is None or not view.flags.writeable or len(points) == 0:
        return False

    canvas = np.ascontiguousarray(view)
    corners = np.asarray(points, dtype=np.float32).reshape(-1, 1, 2)
    cv2.drawChessboardCorners(canvas, pattern, corners, found)
    view[...] = canvas
    return True
