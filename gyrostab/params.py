"""
Parameter State Module.

Holds the configuration record of a stabilization job: processing and
output sizes, frame timing, framing (field of view, trim, rotation) and
the render toggles. Every other component reads a snapshot of it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple


class PixelFormat(Enum):
    """Pixel layouts accepted by the render-time calls: (channels, bytes per channel)."""
    LUMA8 = (1, 1)
    RGBA8 = (4, 1)
    RGBA16 = (4, 2)
    RGBAF = (4, 4)

    @property
    def count(self) -> int:
        return self.value[0]

    @property
    def scalar_bytes(self) -> int:
        return self.value[1]

    @property
    def bytes_per_pixel(self) -> int:
        return self.count * self.scalar_bytes

    @property
    def dtype(self) -> str:
        return {1: 'uint8', 2: 'uint16', 4: 'float32'}[self.scalar_bytes]


@dataclass
class BasicParams:
    """
    Configuration of one stabilization job.

    Sizes are (width, height) tuples. ``size``/``output_size`` are the
    processing resolution, ``video_size``/``video_output_size`` the full
    resolution; both pairs share one scale factor.
    """
    size: Tuple[int, int] = (0, 0)
    output_size: Tuple[int, int] = (0, 0)
    video_size: Tuple[int, int] = (0, 0)
    video_output_size: Tuple[int, int] = (0, 0)

    background: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)

    frame_readout_time: float = 0.0
    adaptive_zoom_window: float = 0.0
    fov: float = 1.0
    fovs: List[float] = field(default_factory=list)
    fps: float = 0.0
    fps_scale: Optional[float] = None
    frame_count: int = 0
    duration_ms: float = 0.0

    trim_start: float = 0.0
    trim_end: float = 1.0

    video_rotation: float = 0.0

    framebuffer_inverted: bool = False
    is_calibrator: bool = False

    stab_enabled: bool = True
    show_detected_features: bool = True
    show_optical_flow: bool = True

    def get_scaled_duration_ms(self) -> float:
        if self.fps_scale is not None:
            return self.duration_ms / self.fps_scale
        return self.duration_ms

    def get_scaled_fps(self) -> float:
        if self.fps_scale is not None:
            return self.fps / self.fps_scale
        return self.fps

    def size_ratio(self) -> float:
        """Scale between processing and full resolution (1.0 while the video size is unknown)."""
        if self.video_size[0] <= 0:
            return 1.0
        return self.size[0] / self.video_size[0]


def frame_at_timestamp(timestamp_ms: float, fps: float) -> int:
    """Frame index shown at ``timestamp_ms``, rounded to the nearest frame."""
    return int(round(timestamp_ms * (fps / 1000.0)))


def timestamp_at_frame(frame: int, fps: float) -> float:
    """Timestamp in milliseconds of ``frame``; inverse of :func:`frame_at_timestamp`."""
    if fps <= 0:
        return 0.0
    return frame * 1000.0 / fps
