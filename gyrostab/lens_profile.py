"""
Lens Profile Module.

Fisheye camera model (camera matrix + four distortion coefficients) for the
lens that recorded the clip, the database of known profiles, and the camera
identity used to look profiles up.

Profiles are JSON documents::

    {
        "name": "...", "camera_brand": "...", "camera_model": "...",
        "lens_model": "...",
        "calib_dimension": {"w": 1920, "h": 1080},
        "fisheye_params": {
            "RMS_error": 0.5,
            "camera_matrix": [[fx, 0, cx], [0, fy, cy], [0, 0, 1]],
            "distortion_coeffs": [k1, k2, k3, k4]
        }
    }
"""

import copy
import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import numpy as np


class LensParam(Enum):
    """Lens coefficients that can be edited one at a time."""
    FX = 'fx'
    FY = 'fy'
    CX = 'cx'
    CY = 'cy'
    K1 = 'k1'
    K2 = 'k2'
    K3 = 'k3'
    K4 = 'k4'

    @classmethod
    def parse(cls, name: Union[str, 'LensParam']) -> Optional['LensParam']:
        if isinstance(name, LensParam):
            return name
        try:
            return cls(name)
        except ValueError:
            return None


@dataclass
class CameraIdentifier:
    """Camera identity detected from telemetry."""
    brand: str = ''
    model: str = ''
    lens_model: str = ''
    video_size: Tuple[int, int] = (0, 0)
    fps: float = 0.0

    @property
    def identifier(self) -> str:
        parts = [self.brand, self.model, self.lens_model]
        if self.video_size[0] > 0:
            parts.append(f"{self.video_size[0]}x{self.video_size[1]}")
        return '_'.join(p.replace(' ', '-') for p in parts if p).lower()


@dataclass
class FisheyeParams:
    rms_error: float = 0.0
    camera_matrix: List[List[float]] = field(default_factory=list)
    distortion_coeffs: List[float] = field(default_factory=list)


@dataclass
class LensProfile:
    """Calibrated lens model; empty until loaded or calibrated."""
    name: str = ''
    camera_brand: str = ''
    camera_model: str = ''
    lens_model: str = ''
    calib_dimension: Tuple[int, int] = (0, 0)
    fisheye_params: FisheyeParams = field(default_factory=FisheyeParams)
    frame_readout_time: Optional[float] = None

    def clone(self) -> 'LensProfile':
        return copy.deepcopy(self)

    def is_complete(self) -> bool:
        m = self.fisheye_params.camera_matrix
        return (
            len(self.fisheye_params.distortion_coeffs) >= 4
            and len(m) == 3 and all(len(row) == 3 for row in m)
        )

    def has_distortion(self) -> bool:
        return self.is_complete() and any(abs(k) > 0 for k in self.fisheye_params.distortion_coeffs[:4])

    def load_from_json_value(self, value: Dict[str, Any]):
        """
        Fill the profile from a parsed JSON object.

        Raises:
            ValueError: if the object does not describe a lens profile
        """
        if not isinstance(value, dict):
            raise ValueError("Lens profile must be a JSON object")
        try:
            dim = value.get('calib_dimension') or {}
            fisheye = value.get('fisheye_params') or {}
            self.name = str(value.get('name', ''))
            self.camera_brand = str(value.get('camera_brand', ''))
            self.camera_model = str(value.get('camera_model', ''))
            self.lens_model = str(value.get('lens_model', ''))
            self.calib_dimension = (int(dim.get('w', 0)), int(dim.get('h', 0)))
            self.fisheye_params = FisheyeParams(
                rms_error=float(fisheye.get('RMS_error', 0.0)),
                camera_matrix=[[float(v) for v in row] for row in fisheye.get('camera_matrix', [])],
                distortion_coeffs=[float(v) for v in fisheye.get('distortion_coeffs', [])]
            )
            readout = value.get('frame_readout_time')
            self.frame_readout_time = float(readout) if readout is not None else None
        except (AttributeError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid lens profile: {e}") from e

    def load_from_file(self, path: str):
        """
        Raises:
            OSError: file cannot be read
            ValueError: malformed JSON or profile
        """
        with open(path) as f:
            value = json.load(f)
        self.load_from_json_value(value)

    def to_json_value(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'camera_brand': self.camera_brand,
            'camera_model': self.camera_model,
            'lens_model': self.lens_model,
            'calib_dimension': {'w': self.calib_dimension[0], 'h': self.calib_dimension[1]},
            'fisheye_params': {
                'RMS_error': self.fisheye_params.rms_error,
                'camera_matrix': self.fisheye_params.camera_matrix,
                'distortion_coeffs': self.fisheye_params.distortion_coeffs,
            },
            'frame_readout_time': self.frame_readout_time,
        }

    def set_param(self, param: Union[str, LensParam], value: float) -> bool:
        """Set one coefficient; returns False for unknown names or an incomplete profile."""
        param = LensParam.parse(param)
        if param is None or not self.is_complete():
            return False

        m = self.fisheye_params.camera_matrix
        k = self.fisheye_params.distortion_coeffs
        if param is LensParam.FX:
            m[0][0] = value
        elif param is LensParam.FY:
            m[1][1] = value
        elif param is LensParam.CX:
            m[0][2] = value
        elif param is LensParam.CY:
            m[1][2] = value
        else:
            k[int(param.value[1]) - 1] = value
        return True

    def get_camera_matrix(self, size: Tuple[int, int]) -> np.ndarray:
        """
        Camera matrix scaled to ``size``.

        Without a calibrated profile a pinhole with focal length equal to the
        frame width, centred principal point, is assumed.
        """
        w, h = size
        if self.is_complete() and self.calib_dimension[0] > 0 and self.calib_dimension[1] > 0:
            mat = np.array(self.fisheye_params.camera_matrix, dtype=np.float64)
            sx = w / self.calib_dimension[0]
            sy = h / self.calib_dimension[1]
            mat[0, :] *= sx
            mat[1, :] *= sy
            mat[2] = [0.0, 0.0, 1.0]
            return mat
        return np.array([
            [float(w), 0.0, w / 2.0],
            [0.0, float(w), h / 2.0],
            [0.0, 0.0, 1.0]
        ])

    def get_distortion_coeffs(self) -> np.ndarray:
        if self.is_complete():
            return np.array(self.fisheye_params.distortion_coeffs[:4], dtype=np.float64)
        return np.zeros(4)

    def get_state_checksum(self) -> int:
        return hash((
            self.calib_dimension,
            tuple(tuple(row) for row in self.fisheye_params.camera_matrix),
            tuple(self.fisheye_params.distortion_coeffs),
        ))


class LensProfileDatabase:
    """Known lens profiles, keyed by camera identifier."""

    def __init__(self):
        self.profiles: Dict[str, LensProfile] = {}

    def load_dir(self, directory: str) -> int:
        """
        Load every ``*.json`` profile below ``directory``.

        Unreadable files are skipped with a warning; returns the number loaded.
        """
        loaded = 0
        for path in sorted(Path(directory).rglob('*.json')):
            profile = LensProfile()
            try:
                profile.load_from_file(str(path))
            except (OSError, ValueError) as e:
                print(f"Warning: Could not load lens profile {path}: {e}")
                continue
            self.add(profile)
            loaded += 1
        return loaded

    @staticmethod
    def key_for(profile: LensProfile) -> str:
        camera = CameraIdentifier(
            brand=profile.camera_brand,
            model=profile.camera_model,
            lens_model=profile.lens_model,
            video_size=profile.calib_dimension
        )
        return camera.identifier

    def add(self, profile: LensProfile):
        self.profiles[self.key_for(profile)] = profile

    def find(self, camera: CameraIdentifier) -> Optional[LensProfile]:
        profile = self.profiles.get(camera.identifier)
        return profile.clone() if profile is not None else None

    def get_all_names(self) -> List[str]:
        return sorted(p.name or key for key, p in self.profiles.items())
