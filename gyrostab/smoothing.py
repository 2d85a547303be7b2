"""
Trajectory Smoothing Module.

Registry of orientation smoothing algorithms. Each algorithm turns the raw
camera orientation (quaternions over time) into the smoothed path the
stabilized video should follow:

- None: no smoothing, the correction is identity
- Plain 3D: two-pass SLERP low-pass with a fixed time constant
- Velocity dampened: time constant shrinks as the camera moves faster
- Kalman: constant-velocity Kalman filter on the rotation vector

Every algorithm and the selector expose a cheap state checksum, so the
recompute coordinator can skip smoothing when nothing that feeds it changed.
"""

from typing import Any, Dict, List, Optional

import numpy as np
from scipy.spatial.transform import Rotation

from .gyro_source import quat_normalize, slerp


class SmoothingAlgorithm:
    """Base class; subclasses declare ``name`` and ``PARAMETERS``."""

    name = ''
    # name -> (description, unit, min, max, default)
    PARAMETERS: Dict[str, tuple] = {}

    def __init__(self):
        self.values: Dict[str, float] = {k: v[4] for k, v in self.PARAMETERS.items()}

    def set_parameter(self, name: str, value: float) -> bool:
        if name not in self.PARAMETERS:
            return False
        _, _, lo, hi, _ = self.PARAMETERS[name]
        self.values[name] = float(min(max(value, lo), hi))
        return True

    def get_parameters(self) -> List[Dict[str, Any]]:
        """Parameter description for a settings UI."""
        return [
            {
                'name': name,
                'description': desc,
                'unit': unit,
                'from': lo,
                'to': hi,
                'value': self.values[name],
            }
            for name, (desc, unit, lo, hi, _) in self.PARAMETERS.items()
        ]

    def get_state_checksum(self) -> int:
        return hash((self.name, frozenset(self.values.items())))

    def smooth(self, timestamps_us: np.ndarray, quats: np.ndarray, duration_ms: float) -> np.ndarray:
        raise NotImplementedError


class NoSmoothing(SmoothingAlgorithm):
    name = 'No smoothing'

    def smooth(self, timestamps_us, quats, duration_ms):
        return quats.copy()


def _two_pass_slerp(timestamps_s: np.ndarray, quats: np.ndarray, tau: np.ndarray) -> np.ndarray:
    n = len(quats)

    fwd = np.zeros_like(quats)
    fwd[0] = quats[0]
    for i in range(1, n):
        dt = max(timestamps_s[i] - timestamps_s[i - 1], 1e-6)
        blend = dt / (tau[i] + dt)
        fwd[i] = slerp(fwd[i - 1], quats[i], blend)

    bwd = np.zeros_like(quats)
    bwd[-1] = fwd[-1]
    for i in range(n - 2, -1, -1):
        dt = max(timestamps_s[i + 1] - timestamps_s[i], 1e-6)
        blend = dt / (tau[i] + dt)
        bwd[i] = slerp(bwd[i + 1], fwd[i], blend)

    return bwd


class PlainSmoothing(SmoothingAlgorithm):
    """Forward then backward SLERP low-pass with a constant time constant."""

    name = 'Plain 3D'
    PARAMETERS = {
        'time_constant': ('Smoothness', 's', 0.01, 10.0, 0.25),
    }

    def smooth(self, timestamps_us, quats, duration_ms):
        if len(quats) < 2:
            return quats.copy()
        t = timestamps_us / 1_000_000.0
        tau = np.full(len(quats), self.values['time_constant'])
        return _two_pass_slerp(t, quats, tau)


class VelocityDampenedSmoothing(SmoothingAlgorithm):
    """
    Velocity-adaptive two-pass SLERP.

    Low angular velocity -> long time constant (strong smoothing).
    High angular velocity -> short time constant (follows intentional pans).
    """

    name = 'Velocity dampened'
    PARAMETERS = {
        'max_smoothness': ('Smoothness at rest', 's', 0.01, 10.0, 1.0),
        'min_smoothness': ('Smoothness at high velocity', 's', 0.01, 10.0, 0.1),
        'velocity_scale': ('Velocity for full dampening', 'deg/s', 1.0, 2000.0, 500.0),
    }

    def smooth(self, timestamps_us, quats, duration_ms):
        n = len(quats)
        if n < 3:
            return quats.copy()
        t = timestamps_us / 1_000_000.0

        rot = Rotation.from_quat(quats[:, [1, 2, 3, 0]])
        dt = np.maximum(np.diff(t), 1e-6)
        vel = np.rad2deg((rot[:-1].inv() * rot[1:]).magnitude() / dt)
        vel = np.concatenate([[vel[0]], vel])

        window = min(21, n // 10 + 1)
        if window % 2 == 0:
            window += 1
        vel_smooth = np.convolve(vel, np.ones(window) / window, mode='same')

        alpha = np.clip(vel_smooth / self.values['velocity_scale'], 0, 1)
        tau = self.values['max_smoothness'] * (1 - alpha) + self.values['min_smoothness'] * alpha
        return _two_pass_slerp(t, quats, tau)


class KalmanSmoothing(SmoothingAlgorithm):
    """Constant-velocity Kalman filter on the rotation vector relative to the first sample."""

    name = 'Kalman'
    PARAMETERS = {
        'process_noise': ('Process noise', '', 1e-5, 1.0, 0.0005),
        'measurement_noise': ('Measurement noise', '', 1e-4, 10.0, 1.0),
    }

    def kalman_filter_1d(self, signal_1d: np.ndarray) -> np.ndarray:
        """
        Apply Kalman filter to 1D signal.

        Args:
            signal_1d: Input signal

        Returns:
            Filtered signal
        """
        n = len(signal_1d)
        filtered = np.zeros(n)

        # State: [position, velocity]
        x = np.array([signal_1d[0], 0.0])
        F = np.array([[1, 1], [0, 1]])
        H = np.array([[1, 0]])
        q = self.values['process_noise']
        Q = np.array([[q, 0], [0, q]])
        R = np.array([[self.values['measurement_noise']]])
        P = np.eye(2) * 1000

        for i in range(n):
            # Predict
            x = F @ x
            P = F @ P @ F.T + Q

            # Update
            z = np.array([signal_1d[i]])
            y = z - H @ x
            S = H @ P @ H.T + R
            K = P @ H.T @ np.linalg.inv(S)
            x = x + K @ y
            P = (np.eye(2) - K @ H) @ P

            filtered[i] = x[0]

        return filtered

    def smooth(self, timestamps_us, quats, duration_ms):
        if len(quats) < 2:
            return quats.copy()
        rot = Rotation.from_quat(quats[:, [1, 2, 3, 0]])
        base = rot[0]
        rotvec = (base.inv() * rot).as_rotvec()

        smoothed = np.zeros_like(rotvec)
        for dim in range(3):
            smoothed[:, dim] = self.kalman_filter_1d(rotvec[:, dim])

        out = (base * Rotation.from_rotvec(smoothed)).as_quat()
        return quat_normalize(out[:, [3, 0, 1, 2]])


class Smoothing:
    """Smoothing selector: the available algorithms and the current choice."""

    def __init__(self):
        self.algs: List[SmoothingAlgorithm] = [
            NoSmoothing(),
            PlainSmoothing(),
            VelocityDampenedSmoothing(),
            KalmanSmoothing(),
        ]
        self.current_id = 1
        self.quats_checksum = 0

    def set_current(self, index: int) -> bool:
        if 0 <= index < len(self.algs):
            self.current_id = index
            return True
        return False

    def current(self) -> SmoothingAlgorithm:
        return self.algs[self.current_id]

    def get_names(self) -> List[str]:
        return [alg.name for alg in self.algs]

    def index_of(self, name: str) -> Optional[int]:
        names = [n.lower() for n in self.get_names()]
        return names.index(name.lower()) if name.lower() in names else None

    def update_quats_checksum(self, quats: np.ndarray):
        self.quats_checksum = hash(np.ascontiguousarray(quats).tobytes())

    def get_state_checksum(self) -> int:
        return hash((self.current_id, self.current().get_state_checksum(), self.quats_checksum))
