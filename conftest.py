"""
Shared fixtures for the stabilization tests.

Synthetic data only: a generated orientation track written as a
``.gyroflow`` document, a small pinhole lens profile and a manager
configured for a 64x48 clip at 30 fps.
"""

import json

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from gyrostab import InlineScheduler, StabilizationManager

VIDEO_SIZE = (64, 48)
FPS = 30.0
FRAMES = 60


def shaky_track(n_frames: int = FRAMES, fps: float = FPS) -> np.ndarray:
    """
    Slow pan around Y with frame-to-frame jitter.

    Returns:
        (N, 6) rows of frame, time_s, w, x, y, z
    """
    i = np.arange(n_frames)
    angle = 0.01 * i + 0.02 * (-1.0) ** i
    xyzw = Rotation.from_rotvec(np.stack([np.zeros(n_frames), angle, np.zeros(n_frames)], axis=1)).as_quat()
    return np.column_stack([i, i / fps, xyzw[:, 3], xyzw[:, 0], xyzw[:, 1], xyzw[:, 2]])


def lens_json(width: int = VIDEO_SIZE[0], height: int = VIDEO_SIZE[1]) -> dict:
    return {
        "name": "Test lens",
        "camera_brand": "Acme",
        "camera_model": "Cam1",
        "lens_model": "Wide",
        "calib_dimension": {"w": width, "h": height},
        "fisheye_params": {
            "RMS_error": 0.1,
            "camera_matrix": [[50.0, 0.0, width / 2.0], [0.0, 50.0, height / 2.0], [0.0, 0.0, 1.0]],
            "distortion_coeffs": [0.0, 0.0, 0.0, 0.0],
        },
    }


def write_gyroflow(path, calibration: bool = True, raw_imu=None) -> str:
    doc = {"frame_orientation": shaky_track().tolist()}
    if calibration:
        doc["calibration_data"] = lens_json()
    if raw_imu is not None:
        doc["raw_imu"] = raw_imu
    path.write_text(json.dumps(doc))
    return str(path)


def make_manager(tmp_path, scheduler=None, **kwargs) -> StabilizationManager:
    """Manager with the shaky track and test lens loaded, sized to the clip."""
    manager = StabilizationManager(
        scheduler=scheduler if scheduler is not None else InlineScheduler(),
        **kwargs
    )
    path = write_gyroflow(tmp_path / "clip.gyroflow")
    manager.init_from_video_data(path, FRAMES * 1000.0 / FPS, FPS, FRAMES, VIDEO_SIZE)
    manager.set_output_size(*VIDEO_SIZE)
    manager.set_size(*VIDEO_SIZE)
    return manager


@pytest.fixture
def manager(tmp_path):
    return make_manager(tmp_path)


@pytest.fixture
def rgba_frame():
    rng = np.random.default_rng(0)
    return rng.integers(1, 255, size=(VIDEO_SIZE[1], VIDEO_SIZE[0], 4), dtype=np.uint8)
