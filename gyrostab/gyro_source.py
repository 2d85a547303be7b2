"""
Gyro Source Module.

Camera orientation over time, as quaternions (w, x, y, z) keyed by
microsecond timestamps. Orientation either comes ready-made from a
telemetry file or is integrated from raw gyroscope samples, after the IMU
axis remap, IMU rotation and optional low-pass filter are applied.

After smoothing, ``smoothed_quaternions`` holds the per-sample correction
``inv(smoothed) * raw`` that the undistortion stage applies to each frame.
"""

import copy
import csv
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy import signal
from scipy.spatial.transform import Rotation

from .lens_profile import CameraIdentifier

IDENTITY_QUAT = np.array([1.0, 0.0, 0.0, 0.0])


# =============================================================================
# Quaternion helpers (w, x, y, z), vectorised over leading axes
# =============================================================================

def quat_mul(q1: np.ndarray, q2: np.ndarray) -> np.ndarray:
    w1, x1, y1, z1 = np.moveaxis(np.asarray(q1, dtype=np.float64), -1, 0)
    w2, x2, y2, z2 = np.moveaxis(np.asarray(q2, dtype=np.float64), -1, 0)
    return np.stack([
        w1 * w2 - x1 * x2 - y1 * y2 - z1 * z2,
        w1 * x2 + x1 * w2 + y1 * z2 - z1 * y2,
        w1 * y2 - x1 * z2 + y1 * w2 + z1 * x2,
        w1 * z2 + x1 * y2 - y1 * x2 + z1 * w2,
    ], axis=-1)


def quat_conj(q: np.ndarray) -> np.ndarray:
    return np.asarray(q, dtype=np.float64) * np.array([1.0, -1.0, -1.0, -1.0])


def quat_normalize(q: np.ndarray) -> np.ndarray:
    q = np.asarray(q, dtype=np.float64)
    n = np.linalg.norm(q, axis=-1, keepdims=True)
    return np.where(n > 1e-12, q / np.maximum(n, 1e-12), IDENTITY_QUAT)


def slerp(q0: np.ndarray, q1: np.ndarray, t: float) -> np.ndarray:
    """Spherical linear interpolation."""
    dot = float(np.dot(q0, q1))
    if dot < 0:
        q1 = -q1
        dot = -dot

    if dot > 0.9995:
        result = q0 + t * (q1 - q0)
        return result / np.linalg.norm(result)

    theta = np.arccos(np.clip(dot, -1, 1)) * t
    q2 = q1 - q0 * dot
    q2 = q2 / np.linalg.norm(q2)
    return q0 * np.cos(theta) + q2 * np.sin(theta)


def quat_to_matrix(q: np.ndarray) -> np.ndarray:
    w, x, y, z = q
    return Rotation.from_quat([x, y, z, w]).as_matrix()


def matrix_to_quat(m: np.ndarray) -> np.ndarray:
    x, y, z, w = Rotation.from_matrix(m).as_quat()
    return np.array([w, x, y, z])


def integrate_gyro(timestamps_s: np.ndarray, gyro: np.ndarray) -> np.ndarray:
    """
    First-order integration of angular velocity to orientation.

    Args:
        timestamps_s: (N,) sample times in seconds
        gyro: (N, 3) angular velocity in rad/s

    Returns:
        (N, 4) quaternions (w, x, y, z), starting at identity
    """
    n = len(timestamps_s)
    quats = np.zeros((n, 4))
    if n == 0:
        return quats
    quats[0] = IDENTITY_QUAT

    for i in range(1, n):
        dt = timestamps_s[i] - timestamps_s[i - 1]
        if dt <= 0:
            dt = 1 / 200

        w = gyro[i - 1]
        q_dot = 0.5 * quat_mul(quats[i - 1], np.array([0.0, w[0], w[1], w[2]]))
        quats[i] = quat_normalize(quats[i - 1] + q_dot * dt)

    return quats


# =============================================================================
# Data Structures
# =============================================================================

@dataclass
class TimeIMU:
    """One raw IMU sample; gyro in deg/s, accelerometer in g."""
    timestamp_ms: float
    gyro: Optional[Tuple[float, float, float]] = None
    accl: Optional[Tuple[float, float, float]] = None
    magn: Optional[Tuple[float, float, float]] = None


@dataclass
class FileMetadata:
    """Everything a telemetry loader can hand to the gyro source."""
    imu_orientation: Optional[str] = None
    detected_source: Optional[str] = None
    quaternions: Optional[Tuple[np.ndarray, np.ndarray]] = None  # (timestamps_us, quats)
    raw_imu: Optional[List[TimeIMU]] = None
    frame_readout_time: Optional[float] = None
    camera_identifier: Optional[CameraIdentifier] = None


def _remap_axes(orientation: str, vectors: np.ndarray) -> np.ndarray:
    out = np.empty_like(vectors)
    for i, letter in enumerate(orientation):
        axis = 'xyz'.index(letter.lower())
        sign = 1.0 if letter.isupper() else -1.0
        out[:, i] = sign * vectors[:, axis]
    return out


def is_valid_orientation(orientation: str) -> bool:
    if len(orientation) != 3:
        return False
    axes = [c.lower() for c in orientation]
    return all(a in 'xyz' for a in axes) and len(set(axes)) == 3


class GyroSource:
    """Orientation samples of one clip plus the transforms applied to them."""

    def __init__(self):
        self.fps = 0.0
        self.duration_ms = 0.0

        self.detected_source: Optional[str] = None
        self.imu_orientation: Optional[str] = None
        self.imu_rotation: Optional[np.ndarray] = None
        self.lowpass_hz = 0.0

        self.raw_imu: List[TimeIMU] = []
        self.file_quaternions: Optional[Tuple[np.ndarray, np.ndarray]] = None

        self.timestamps_us = np.zeros(0, dtype=np.int64)
        self.quaternions = np.zeros((0, 4))
        self.org_smoothed_quaternions = np.zeros((0, 4))
        self.smoothed_quaternions = np.zeros((0, 4))

        self.offsets: Dict[int, float] = {}

    def clone(self) -> 'GyroSource':
        return copy.deepcopy(self)

    def init_from_params(self, params):
        self.fps = params.get_scaled_fps()
        self.duration_ms = params.get_scaled_duration_ms()

    def is_empty(self) -> bool:
        return len(self.timestamps_us) == 0

    # ------------------------------------------------------------------ loading

    def load_from_telemetry(self, metadata: FileMetadata):
        """Replace the orientation samples with the ones in ``metadata``."""
        self.detected_source = metadata.detected_source
        if metadata.imu_orientation is not None:
            self.imu_orientation = metadata.imu_orientation
        self.raw_imu = list(metadata.raw_imu or [])

        if metadata.quaternions is not None:
            ts, quats = metadata.quaternions
            order = np.argsort(ts, kind='stable')
            self.file_quaternions = (
                np.asarray(ts, dtype=np.int64)[order],
                quat_normalize(np.asarray(quats, dtype=np.float64).reshape(-1, 4)[order])
            )
        else:
            self.file_quaternions = None

        self.apply_transforms()

    def apply_transforms(self):
        """Rebuild ``quaternions`` from the file quaternions or the raw IMU samples."""
        if self.file_quaternions is not None:
            ts, quats = self.file_quaternions
            quats = quats.copy()
            if self.imu_rotation is not None:
                r = matrix_to_quat(self.imu_rotation)
                quats = quat_mul(quat_mul(r, quats), quat_conj(r))
        else:
            ts, quats = self._integrate_raw_imu()

        self.timestamps_us = ts
        self.quaternions = quats
        self.org_smoothed_quaternions = quats.copy()
        self.smoothed_quaternions = np.tile(IDENTITY_QUAT, (len(quats), 1))

    def _integrate_raw_imu(self) -> Tuple[np.ndarray, np.ndarray]:
        samples = [s for s in self.raw_imu if s.gyro is not None]
        if not samples:
            return np.zeros(0, dtype=np.int64), np.zeros((0, 4))

        t_ms = np.array([s.timestamp_ms for s in samples], dtype=np.float64)
        gyro = np.deg2rad(np.array([s.gyro for s in samples], dtype=np.float64))

        if self.imu_orientation and is_valid_orientation(self.imu_orientation):
            gyro = _remap_axes(self.imu_orientation, gyro)
        if self.imu_rotation is not None:
            gyro = gyro @ self.imu_rotation.T

        if self.lowpass_hz > 0 and len(t_ms) > 12:
            dt_ms = float(np.median(np.diff(t_ms)))
            if dt_ms > 0:
                nyquist = 1000.0 / dt_ms / 2.0
                cutoff = min(self.lowpass_hz / nyquist, 0.99)
                b, a = signal.butter(1, cutoff, btype='low')
                gyro = signal.filtfilt(b, a, gyro, axis=0)

        quats = integrate_gyro(t_ms / 1000.0, gyro)
        return np.round(t_ms * 1000.0).astype(np.int64), quats

    @staticmethod
    def parse_telemetry_file(path: str, size: Tuple[int, int], fps: float) -> FileMetadata:
        """
        Parse a CSV gyro log.

        Columns: ``time`` (seconds), ``gx, gy, gz`` (deg/s) and optionally
        ``ax, ay, az``. Leading ``# key: value`` lines may carry
        ``frame_readout_time``, ``imu_orientation``, ``camera_brand``,
        ``camera_model`` and ``lens_model``.

        Raises:
            OSError: file cannot be read
            ValueError: unsupported or malformed telemetry
        """
        if Path(path).suffix.lower() != '.csv':
            raise ValueError(f"Unsupported telemetry format: {path}")

        header: Dict[str, str] = {}
        with open(path, newline='') as f:
            lines = f.read().splitlines()

        data_lines = []
        for line in lines:
            if line.startswith('#'):
                key, _, value = line[1:].partition(':')
                header[key.strip()] = value.strip()
            elif line.strip():
                data_lines.append(line)

        reader = csv.DictReader(data_lines)
        columns = set(reader.fieldnames or [])
        time_col = 'time' if 'time' in columns else 't'
        if not {time_col, 'gx', 'gy', 'gz'} <= columns:
            raise ValueError(f"Missing gyro columns in {path}")
        has_accl = {'ax', 'ay', 'az'} <= columns

        raw_imu = []
        try:
            for row in reader:
                raw_imu.append(TimeIMU(
                    timestamp_ms=float(row[time_col]) * 1000.0,
                    gyro=(float(row['gx']), float(row['gy']), float(row['gz'])),
                    accl=(float(row['ax']), float(row['ay']), float(row['az'])) if has_accl else None
                ))
        except (TypeError, ValueError) as e:
            raise ValueError(f"Malformed telemetry row in {path}: {e}") from e

        camera = None
        if 'camera_brand' in header or 'camera_model' in header:
            camera = CameraIdentifier(
                brand=header.get('camera_brand', ''),
                model=header.get('camera_model', ''),
                lens_model=header.get('lens_model', ''),
                video_size=tuple(size),
                fps=fps
            )

        readout = header.get('frame_readout_time')
        return FileMetadata(
            imu_orientation=header.get('imu_orientation'),
            detected_source='CSV gyro log',
            raw_imu=raw_imu,
            frame_readout_time=float(readout) if readout else None,
            camera_identifier=camera
        )

    # ---------------------------------------------------------------- smoothing

    def recompute_smoothness(self, algorithm):
        """Run ``algorithm`` over the raw orientation and refresh the correction series."""
        if self.is_empty():
            return
        smoothed = quat_normalize(algorithm.smooth(self.timestamps_us, self.quaternions, self.duration_ms))
        self.org_smoothed_quaternions = smoothed
        self.smoothed_quaternions = quat_normalize(quat_mul(quat_conj(smoothed), self.quaternions))

    def _interpolate(self, series: np.ndarray, timestamp_ms: float) -> np.ndarray:
        if len(series) == 0:
            return IDENTITY_QUAT.copy()
        t_us = timestamp_ms * 1000.0
        ts = self.timestamps_us
        idx = int(np.searchsorted(ts, t_us))
        if idx == 0:
            return series[0].copy()
        if idx >= len(ts):
            return series[-1].copy()
        t0, t1 = ts[idx - 1], ts[idx]
        alpha = (t_us - t0) / (t1 - t0) if t1 != t0 else 0.0
        return slerp(series[idx - 1], series[idx], alpha)

    def quat_at_timestamp(self, timestamp_ms: float) -> np.ndarray:
        timestamp_ms += self.offset_at_timestamp(timestamp_ms)
        return self._interpolate(self.quaternions, timestamp_ms)

    def smoothed_quat_at_timestamp(self, timestamp_ms: float) -> np.ndarray:
        """Correction rotation at ``timestamp_ms`` (identity when no data is loaded)."""
        timestamp_ms += self.offset_at_timestamp(timestamp_ms)
        return self._interpolate(self.smoothed_quaternions, timestamp_ms)

    # ------------------------------------------------------------------ offsets

    def set_offset(self, timestamp_us: int, offset_ms: float):
        self.offsets[int(timestamp_us)] = float(offset_ms)

    def remove_offset(self, timestamp_us: int):
        self.offsets.pop(int(timestamp_us), None)

    def offset_at_timestamp(self, timestamp_ms: float) -> float:
        """Gyro offset, linearly interpolated between the set points and clamped outside them."""
        if not self.offsets:
            return 0.0
        keys = sorted(self.offsets)
        xs = [k / 1000.0 for k in keys]
        ys = [self.offsets[k] for k in keys]
        return float(np.interp(timestamp_ms, xs, ys))

    # ---------------------------------------------------------------- IMU setup

    def set_lowpass_filter(self, hz: float):
        self.lowpass_hz = max(0.0, float(hz))
        self.apply_transforms()

    def set_imu_rotation(self, pitch_deg: float, roll_deg: float, yaw_deg: float):
        if pitch_deg == 0 and roll_deg == 0 and yaw_deg == 0:
            self.imu_rotation = None
        else:
            self.imu_rotation = Rotation.from_euler(
                'xyz', [pitch_deg, roll_deg, yaw_deg], degrees=True
            ).as_matrix()
        self.apply_transforms()

    def set_imu_orientation(self, orientation: str) -> bool:
        if not is_valid_orientation(orientation):
            return False
        self.imu_orientation = orientation
        self.apply_transforms()
        return True

    def get_state_checksum(self) -> int:
        return hash((self.quaternions.tobytes(), frozenset(self.offsets.items())))


def _numeric_rows(rows, min_len: int) -> List[List[float]]:
    out = []
    for row in rows:
        if not isinstance(row, list):
            continue
        values = [float(x) for x in row if isinstance(x, (int, float)) and not isinstance(x, bool)]
        if len(values) >= min_len:
            out.append(values)
    return out


def load_gyroflow_document(path: str) -> Tuple[FileMetadata, Optional[dict]]:
    """
    Read a ``.gyroflow`` project document.

    ``frame_orientation`` rows are ``[frame, time_s, w, x, y, z, ...]``;
    ``raw_imu`` rows are ``[gx, gy, gz, ax, ay, az, ...]`` without their own
    timestamps, so they are spread evenly over the orientation time range.

    Returns:
        (metadata, calibration_data) where calibration_data is None when
        the document carries no lens calibration

    Raises:
        OSError: file cannot be read
        ValueError: not a JSON object, or no ``frame_orientation`` list
    """
    with open(path) as f:
        try:
            doc = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid gyroflow document {path}: {e}") from e

    if not isinstance(doc, dict):
        raise ValueError(f"Invalid gyroflow document {path}: not an object")
    orientation = doc.get('frame_orientation')
    if not isinstance(orientation, list):
        raise ValueError(f"Invalid gyroflow document {path}: missing frame_orientation")

    rows = _numeric_rows(orientation, 6)
    ts_us = np.array([int(r[1] * 1000000.0) for r in rows], dtype=np.int64)
    quats = np.array([r[2:6] for r in rows], dtype=np.float64).reshape(-1, 4)

    raw_rows = _numeric_rows(doc.get('raw_imu') or [], 6)
    raw_imu = []
    if raw_rows:
        if len(ts_us) > 1:
            times_ms = np.linspace(ts_us[0] / 1000.0, ts_us[-1] / 1000.0, len(raw_rows))
        else:
            times_ms = np.zeros(len(raw_rows))
        for t, r in zip(times_ms, raw_rows):
            raw_imu.append(TimeIMU(timestamp_ms=float(t), gyro=tuple(r[0:3]), accl=tuple(r[3:6])))

    calibration = doc.get('calibration_data')
    metadata = FileMetadata(
        detected_source='Gyroflow file',
        quaternions=(ts_us, quats),
        raw_imu=raw_imu
    )
    return metadata, calibration if isinstance(calibration, dict) else None
