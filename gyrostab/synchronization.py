"""
Pose / Sync Estimator Module.

Estimates camera rotation between consecutive frames from the video itself
(feature detection + pyramidal Lucas-Kanade tracking + RANSAC homography),
to be compared against gyro data when synchronizing. The detected points
and flow vectors are also what the render overlays draw.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np
from scipy import signal
from scipy.spatial.transform import Rotation
from tqdm import tqdm

from .state import RWLock


@dataclass
class FrameResult:
    """Motion of one frame towards the next."""
    points: np.ndarray            # (N, 2) features detected in this frame
    tracked: np.ndarray           # (N, 2) the same features in the next frame
    rotation: np.ndarray          # rotation vector, this frame -> next
    filtered_rotation: Optional[np.ndarray] = None


class PoseEstimator:
    """
    Frame-to-frame rotation estimates for a clip, keyed by frame index.
    """

    def __init__(
        self,
        max_features: int = 300,
        quality_level: float = 0.01,
        min_distance: float = 10.0,
        ransac_threshold: float = 3.0
    ):
        """
        Args:
            max_features: Maximum corners detected per frame
            quality_level: Corner quality threshold for goodFeaturesToTrack
            min_distance: Minimum distance between detected corners (pixels)
            ransac_threshold: RANSAC reprojection threshold (pixels)
        """
        self.max_features = max_features
        self.quality_level = quality_level
        self.min_distance = min_distance
        self.ransac_threshold = ransac_threshold

        self.sync_results: Dict[int, FrameResult] = {}
        self._lock = RWLock()

    def detect_features(self, gray: np.ndarray) -> np.ndarray:
        corners = cv2.goodFeaturesToTrack(
            gray,
            maxCorners=self.max_features,
            qualityLevel=self.quality_level,
            minDistance=self.min_distance
        )
        if corners is None:
            return np.zeros((0, 2), dtype=np.float32)
        return corners.reshape(-1, 2)

    def estimate_frame(
        self,
        frame: int,
        prev_gray: np.ndarray,
        gray: np.ndarray,
        camera_matrix: Optional[np.ndarray] = None
    ) -> FrameResult:
        """
        Track features from ``prev_gray`` (frame ``frame``) into ``gray`` and store the result.

        Args:
            frame: Index of the frame ``prev_gray`` belongs to
            prev_gray: Grayscale frame
            gray: Grayscale next frame
            camera_matrix: 3x3 camera matrix (defaults to focal = width)

        Returns:
            The stored FrameResult
        """
        h, w = prev_gray.shape[:2]
        if camera_matrix is None:
            camera_matrix = np.array([[w, 0, w / 2.0], [0, w, h / 2.0], [0, 0, 1]], dtype=np.float64)

        points = self.detect_features(prev_gray)
        tracked = np.zeros((0, 2), dtype=np.float32)
        rotation = np.zeros(3)

        if len(points) > 0:
            next_pts, status, _ = cv2.calcOpticalFlowPyrLK(prev_gray, gray, points.reshape(-1, 1, 2), None)
            ok = status.reshape(-1) == 1
            points = points[ok]
            tracked = next_pts.reshape(-1, 2)[ok]

        if len(points) >= 8:
            H, _ = cv2.findHomography(points, tracked, cv2.RANSAC, self.ransac_threshold)
            if H is not None:
                rotation = self._rotation_from_homography(H, camera_matrix)

        result = FrameResult(points=points, tracked=tracked, rotation=rotation)
        with self._lock.write():
            self.sync_results[frame] = result
        return result

    @staticmethod
    def _rotation_from_homography(H: np.ndarray, K: np.ndarray) -> np.ndarray:
        """Closest rotation to the pure-rotation homography K^-1 H K, as a rotation vector."""
        m = np.linalg.inv(K) @ H @ K
        u, _, vt = np.linalg.svd(m)
        r = u @ vt
        if np.linalg.det(r) < 0:
            r = -r
        return Rotation.from_matrix(r).as_rotvec()

    def estimate_clip(
        self,
        frames: Sequence[np.ndarray],
        camera_matrix: Optional[np.ndarray] = None,
        verbose: bool = False
    ) -> int:
        """Estimate every consecutive pair of BGR or grayscale frames; returns the number of pairs."""
        grays = [f if f.ndim == 2 else cv2.cvtColor(f, cv2.COLOR_BGR2GRAY) for f in frames]
        pairs = range(len(grays) - 1)
        iterator = tqdm(pairs, desc="Pose estimation") if verbose else pairs
        for i in iterator:
            self.estimate_frame(i, grays[i], grays[i + 1], camera_matrix)
        return len(pairs)

    def get_points_for_frame(self, frame: int) -> Tuple[List[float], List[float]]:
        with self._lock.read():
            result = self.sync_results.get(frame)
            if result is None:
                return [], []
            return result.points[:, 0].tolist(), result.points[:, 1].tolist()

    def get_of_lines_for_frame(
        self,
        frame: int,
        scale: float,
        step: int
    ) -> Optional[Tuple[List[Tuple[float, float]], List[Tuple[float, float]]]]:
        """Flow segments (start points, end points) of ``frame``, every ``step``-th one, scaled."""
        with self._lock.read():
            result = self.sync_results.get(frame)
            if result is None or len(result.points) == 0:
                return None
            step = max(int(step), 1)
            p1 = result.points[::step] * scale
            p2 = result.tracked[::step] * scale
        return [tuple(p) for p in p1.tolist()], [tuple(p) for p in p2.tolist()]

    def lowpass_filter(self, hz: float, frame_count: int, duration_ms: float):
        """
        Low-pass the per-frame rotations into ``filtered_rotation``.

        A cutoff of 0 (or too few frames) copies the raw rotations.
        """
        with self._lock.write():
            frames = sorted(self.sync_results)
            if not frames:
                return
            raw = np.array([self.sync_results[f].rotation for f in frames])
            filtered = raw.copy()

            if hz > 0 and frame_count > 0 and duration_ms > 0 and len(frames) > 6:
                fps = frame_count / (duration_ms / 1000.0)
                cutoff = hz / (fps / 2.0)
                if 0 < cutoff < 1:
                    b, a = signal.butter(1, cutoff, btype='low')
                    filtered = signal.filtfilt(b, a, raw, axis=0)

            for f, rot in zip(frames, filtered):
                self.sync_results[f].filtered_rotation = rot

    def clear(self):
        with self._lock.write():
            self.sync_results.clear()
