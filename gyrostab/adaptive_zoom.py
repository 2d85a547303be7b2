"""
Adaptive Zoom Module.

Finds, per frame, the field of view that keeps the output rectangle inside
the source image once the frame's correction rotation is applied, then
smooths the result over time so the zoom does not pump.

Window semantics (seconds):
    > 0     dynamic zoom, smoothed over the window
    < -0.9  static zoom: one value for the whole trimmed clip
    else    disabled
"""

from typing import List, Sequence, Tuple

import numpy as np
from scipy.ndimage import gaussian_filter1d, minimum_filter1d

from .gyro_source import quat_to_matrix
from .state import read_cells

BORDER_SAMPLES = 8


class AdaptiveZoom:
    """Per-frame field of view from correction rotations."""

    def __init__(
        self,
        window: float = 0.0,
        fps: float = 0.0,
        frame_count: int = 0,
        input_size: Tuple[int, int] = (0, 0),
        output_size: Tuple[int, int] = (0, 0),
        camera_matrix: np.ndarray = None,
        trim_start: float = 0.0,
        trim_end: float = 1.0
    ):
        """
        Args:
            window: Smoothing window in seconds (see module docstring)
            fps: Frame rate the per-frame values are sampled at
            frame_count: Number of frames
            input_size: Processing input size (width, height)
            output_size: Processing output size (width, height)
            camera_matrix: 3x3 camera matrix at ``input_size``
            trim_start: Trim start as a fraction of the clip
            trim_end: Trim end as a fraction of the clip
        """
        self.window = window
        self.fps = fps
        self.frame_count = frame_count
        self.input_size = tuple(input_size)
        self.output_size = tuple(output_size)
        self.camera_matrix = np.eye(3) if camera_matrix is None else np.asarray(camera_matrix, dtype=np.float64)
        self.trim_start = trim_start
        self.trim_end = trim_end

    @classmethod
    def from_manager(cls, manager) -> 'AdaptiveZoom':
        with read_cells(manager.params, manager.lens) as (params, lens):
            return cls(
                window=params.adaptive_zoom_window,
                fps=params.get_scaled_fps(),
                frame_count=params.frame_count,
                input_size=params.size,
                output_size=params.output_size,
                camera_matrix=lens.get_camera_matrix(params.size),
                trim_start=params.trim_start,
                trim_end=params.trim_end
            )

    def is_enabled(self) -> bool:
        return self.window > 0.0 or self.window < -0.9

    def get_state_checksum(self) -> int:
        return hash((
            self.window, self.fps, self.frame_count,
            self.input_size, self.output_size,
            self.camera_matrix.tobytes(),
            self.trim_start, self.trim_end,
        ))

    def _border_points(self) -> np.ndarray:
        w, h = self.input_size
        ow, oh = self.output_size
        scale = min(w / ow, h / oh)
        hw, hh = ow * scale / 2.0, oh * scale / 2.0
        t = np.linspace(-1.0, 1.0, BORDER_SAMPLES)
        edges = np.concatenate([
            np.stack([t * hw, np.full_like(t, -hh)], axis=1),
            np.stack([t * hw, np.full_like(t, hh)], axis=1),
            np.stack([np.full_like(t, -hw), t * hh], axis=1),
            np.stack([np.full_like(t, hw), t * hh], axis=1),
        ])
        return edges + np.array([w / 2.0, h / 2.0])

    def required_fov(self, quat: np.ndarray, points: np.ndarray, k_inv: np.ndarray) -> float:
        """Largest field of view (<= 1) for which the rotated output border stays in the source."""
        w, h = self.input_size
        cx, cy = w / 2.0, h / 2.0
        rays = k_inv @ np.vstack([points.T, np.ones(len(points))])
        src = self.camera_matrix @ (quat_to_matrix(quat) @ rays)
        valid = src[2] > 1e-9
        if not np.any(valid):
            return 1.0
        qx = src[0, valid] / src[2, valid]
        qy = src[1, valid] / src[2, valid]
        zoom = max(
            float(np.max(np.abs(qx - cx))) / cx,
            float(np.max(np.abs(qy - cy))) / cy,
            1.0
        )
        return 1.0 / zoom

    def compute(self, quats: Sequence[np.ndarray]) -> List[float]:
        """
        Per-frame field of view for per-frame correction rotations.

        Args:
            quats: One correction quaternion (w, x, y, z) per frame

        Returns:
            One field-of-view factor per frame (1.0 = no zoom, smaller = zoomed in)
        """
        n = len(quats)
        if n == 0 or not self.is_enabled() or min(self.input_size) <= 0 or min(self.output_size) <= 0:
            return []

        points = self._border_points()
        k_inv = np.linalg.inv(self.camera_matrix)
        fovs = np.array([self.required_fov(q, points, k_inv) for q in quats])

        if self.window < -0.9:
            start = min(max(int(np.floor(self.trim_start * n)), 0), n - 1)
            end = min(max(int(np.ceil(self.trim_end * n)), start + 1), n)
            return [float(np.min(fovs[start:end]))] * n

        frames = max(1, int(round(self.window * self.fps)))
        if frames > 1:
            fovs = minimum_filter1d(fovs, size=frames, mode='nearest')
            fovs = gaussian_filter1d(fovs, sigma=frames / 6.0, mode='nearest', truncate=3.0)
        return [float(v) for v in fovs]
