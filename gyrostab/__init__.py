"""
Gyro-Based Video Stabilization

Camera orientation from gyroscope telemetry, smoothed into a steady path,
turned into per-frame lens-aware corrections and applied to video frames.
StabilizationManager coordinates the subsystems and their background
recomputation.
"""

from .manager import StabilizationManager
from .params import BasicParams, PixelFormat
from .gyro_source import GyroSource
from .lens_profile import LensParam, LensProfile, LensProfileDatabase
from .smoothing import Smoothing
from .adaptive_zoom import AdaptiveZoom
from .undistortion import Undistortion
from .synchronization import PoseEstimator
from .calibration import LensCalibrator
from .scheduler import DeferredScheduler, InlineScheduler, ThreadPoolScheduler

__version__ = "1.0.0"
__all__ = [
    "StabilizationManager",
    "BasicParams",
    "PixelFormat",
    "GyroSource",
    "LensParam",
    "LensProfile",
    "LensProfileDatabase",
    "Smoothing",
    "AdaptiveZoom",
    "Undistortion",
    "PoseEstimator",
    "LensCalibrator",
    "DeferredScheduler",
    "InlineScheduler",
    "ThreadPoolScheduler",
]
