"""
Undistortion Engine Module.

Turns the committed stabilization state into per-timestamp correction data
and applies it to pixel buffers.

Per-timestamp data (``FrameTransform.params``) is a (rows, 9) float32 array:
    row 0:  fx, fy, cx, cy, k1, k2, k3, k4, fov
    row 1+: row-major 3x3 correction rotation, one per rolling-shutter band

Pixels are resampled with ``cv2.remap`` (or ``grid_sample`` on a torch
device), through the fisheye model when the lens profile has distortion
coefficients, through a pinhole otherwise.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np
import torch
import torch.nn.functional as F

from .gyro_source import GyroSource, quat_to_matrix
from .lens_profile import LensProfile
from .params import PixelFormat, frame_at_timestamp
from .state import read_cells

ROLLING_SHUTTER_BANDS = 16
MAX_CACHED_FRAMES = 4096


@dataclass
class ComputeParams:
    """Snapshot of everything the undistortion stage reads."""
    gyro: GyroSource = field(default_factory=GyroSource)
    lens: LensProfile = field(default_factory=LensProfile)
    fovs: List[float] = field(default_factory=list)
    fov: float = 1.0
    fps: float = 0.0
    frame_count: int = 0
    frame_readout_time: float = 0.0
    video_rotation: float = 0.0
    background: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)

    @classmethod
    def from_manager(cls, manager) -> 'ComputeParams':
        """Consistent snapshot of params, gyro and lens taken under one ordered lock acquisition."""
        with read_cells(manager.params, manager.gyro, manager.lens) as (params, gyro, lens):
            return cls(
                gyro=gyro.clone(),
                lens=lens.clone(),
                fovs=list(params.fovs),
                fov=params.fov,
                fps=params.get_scaled_fps(),
                frame_count=params.frame_count,
                frame_readout_time=params.frame_readout_time,
                video_rotation=params.video_rotation,
                background=tuple(params.background)
            )


def _rotation_z(degrees: float) -> np.ndarray:
    a = np.deg2rad(degrees)
    c, s = np.cos(a), np.sin(a)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


@dataclass
class FrameTransform:
    """Correction data for one timestamp."""
    params: np.ndarray

    @classmethod
    def at_timestamp(cls, compute: ComputeParams, size: Tuple[int, int], timestamp_ms: float) -> 'FrameTransform':
        frame = frame_at_timestamp(timestamp_ms, compute.fps) if compute.fps > 0 else 0
        fov = compute.fov
        if 0 <= frame < len(compute.fovs):
            fov *= compute.fovs[frame]
        fov = max(fov, 1e-3)

        k = compute.lens.get_camera_matrix(size)
        d = compute.lens.get_distortion_coeffs()
        head = [k[0, 0] / fov, k[1, 1] / fov, k[0, 2], k[1, 2], d[0], d[1], d[2], d[3], fov]

        rows = [head]
        bands = 1 if compute.frame_readout_time == 0 else ROLLING_SHUTTER_BANDS
        roll = _rotation_z(compute.video_rotation)
        for i in range(bands):
            t = timestamp_ms
            if bands > 1:
                t += compute.frame_readout_time * i / (bands - 1)
            r = quat_to_matrix(compute.gyro.smoothed_quat_at_timestamp(t)) @ roll
            rows.append(r.reshape(-1))

        return cls(params=np.array(rows, dtype=np.float32))

    @property
    def rotations(self) -> np.ndarray:
        return self.params[1:].reshape(-1, 3, 3).astype(np.float64)


@dataclass
class PackedLayout:
    """
    Layout of the caller-owned correction buffer.

    The first 8 scalars of row 0 are copied as-is, then every following
    triplet of source scalars lands in a 4-scalar block whose last slot is
    left untouched.
    """
    rows: int

    HEAD = 8
    ROW = 9
    TRIPLET = 3
    BLOCK = 4

    @property
    def source_len(self) -> int:
        return self.rows * self.ROW

    @property
    def triplets(self) -> int:
        return max(self.source_len - self.ROW, 0) // self.TRIPLET

    @property
    def packed_len(self) -> int:
        return self.HEAD + self.BLOCK * self.triplets

    @property
    def required_capacity(self) -> int:
        return max(self.source_len, self.packed_len)

    def write(self, params: np.ndarray, out: np.ndarray, capacity: int) -> bool:
        """Pack ``params`` into ``out``; False (nothing written) if it does not fit."""
        capacity = min(capacity, len(out))
        if capacity < self.required_capacity:
            return False

        src = np.asarray(params, dtype=np.float32).reshape(-1)
        out[:self.HEAD] = src[:self.HEAD]
        if self.triplets:
            blocks = out[self.HEAD:self.packed_len].reshape(self.triplets, self.BLOCK)
            blocks[:, :self.TRIPLET] = src[self.ROW:].reshape(self.triplets, self.TRIPLET)
        return True


def image_view(
    buffer,
    width: int,
    height: int,
    stride: int,
    pixel_format: PixelFormat
) -> Optional[np.ndarray]:
    """
    Writable (height, width, channels) view of a raw pixel buffer.

    Pixels are addressed as ``row * stride + column * bytes_per_pixel``.
    Returns None when the buffer is too small for the given geometry.
    """
    if isinstance(buffer, np.ndarray):
        if not buffer.flags.c_contiguous:
            return None
        raw = buffer.reshape(-1).view(np.uint8)
    else:
        raw = np.frombuffer(buffer, dtype=np.uint8)

    bpp = pixel_format.bytes_per_pixel
    if width <= 0 or height <= 0 or stride < width * bpp:
        return None
    if raw.size < (height - 1) * stride + width * bpp:
        return None

    view = np.lib.stride_tricks.as_strided(
        raw,
        shape=(height, width, bpp),
        strides=(stride, bpp, 1),
        writeable=raw.flags.writeable
    )
    return view.view(pixel_format.dtype)


class Undistortion:
    """
    Per-timestamp correction data and pixel warping for one output geometry.
    """

    def __init__(
        self,
        pixel_format: PixelFormat = PixelFormat.RGBA8,
        backend: str = 'opencv',
        device: Optional[str] = None
    ):
        """
        Args:
            pixel_format: Layout of the pixel buffers this engine processes
            backend: 'opencv' (cv2.remap) or 'torch' (grid_sample)
            device: Torch device for the 'torch' backend (None for auto)
        """
        if backend not in ('opencv', 'torch'):
            raise ValueError(f"Unknown undistortion backend: {backend}")
        self.pixel_format = pixel_format
        self.backend = backend
        if device is None:
            self.device = torch.device('cuda' if torch.cuda.is_available() else 'cpu')
        else:
            self.device = torch.device(device)

        self.size: Tuple[int, int] = (0, 0)
        self.stride = 0
        self.output_size: Tuple[int, int] = (0, 0)
        self.output_stride = 0
        self.background = np.zeros(4, dtype=np.float64)

        self.compute_params: Optional[ComputeParams] = None
        self.stab_data: Dict[int, FrameTransform] = {}

    def init_size(
        self,
        background,
        size: Tuple[int, int],
        stride: int,
        output_size: Tuple[int, int],
        output_stride: int
    ):
        self.background = np.asarray(background, dtype=np.float64)
        self.size = tuple(size)
        self.stride = stride
        self.output_size = tuple(output_size)
        self.output_stride = output_stride
        self.stab_data.clear()

    def set_background(self, background):
        self.background = np.asarray(background, dtype=np.float64)

    def set_compute_params(self, params: ComputeParams):
        self.compute_params = params
        self.stab_data.clear()

    def get_undistortion_data(self, timestamp_us: int) -> Optional[FrameTransform]:
        """Correction data for ``timestamp_us``, computed on first request and cached."""
        if self.compute_params is None:
            return None
        itm = self.stab_data.get(timestamp_us)
        if itm is None:
            if len(self.stab_data) >= MAX_CACHED_FRAMES:
                self.stab_data.clear()
            size = self.size if self.size[0] > 0 else (1, 1)
            itm = FrameTransform.at_timestamp(self.compute_params, size, timestamp_us / 1000.0)
            self.stab_data[timestamp_us] = itm
        return itm

    def build_maps(self, itm: FrameTransform) -> Tuple[np.ndarray, np.ndarray]:
        """Source pixel coordinates for every output pixel."""
        w, h = self.size
        ow, oh = self.output_size
        scale = min(w / ow, h / oh)

        fx, fy, cx, cy = (float(v) for v in itm.params[0, :4])
        u, v = np.meshgrid(np.arange(ow, dtype=np.float64), np.arange(oh, dtype=np.float64))
        px = (u - ow / 2.0) * scale + w / 2.0
        py = (v - oh / 2.0) * scale + h / 2.0
        rays = np.stack([(px - cx) / fx, (py - cy) / fy, np.ones_like(px)], axis=-1)

        rotations = itm.rotations
        bands = len(rotations)
        band_of_row = np.minimum(np.arange(oh) * bands // oh, bands - 1)
        src = np.empty_like(rays)
        for b in range(bands):
            rows = band_of_row == b
            src[rows] = rays[rows] @ rotations[b].T

        z = src[..., 2]
        valid = z > 1e-6
        safe_z = np.where(valid, z, 1.0)
        xn = src[..., 0] / safe_z
        yn = src[..., 1] / safe_z

        k = self.compute_params.lens.get_camera_matrix(self.size)
        if self.compute_params.lens.has_distortion():
            d = self.compute_params.lens.get_distortion_coeffs()
            pts = np.stack([xn, yn], axis=-1).reshape(-1, 1, 2)
            distorted = cv2.fisheye.distortPoints(pts, k, d).reshape(oh, ow, 2)
            map_x, map_y = distorted[..., 0], distorted[..., 1]
        else:
            map_x = k[0, 0] * xn + k[0, 2]
            map_y = k[1, 1] * yn + k[1, 2]

        map_x = np.where(valid, map_x, -10.0).astype(np.float32)
        map_y = np.where(valid, map_y, -10.0).astype(np.float32)
        return map_x, map_y

    def _remap_torch(self, src: np.ndarray, map_x: np.ndarray, map_y: np.ndarray) -> np.ndarray:
        h, w = src.shape[:2]
        count = src.shape[2]
        src_t = torch.from_numpy(src.astype(np.float32)).permute(2, 0, 1).unsqueeze(0).to(self.device)
        gx = map_x / max(w - 1, 1) * 2.0 - 1.0
        gy = map_y / max(h - 1, 1) * 2.0 - 1.0
        grid = torch.from_numpy(np.stack([gx, gy], axis=-1)[None].astype(np.float32)).to(self.device)

        out = F.grid_sample(src_t, grid, mode='bilinear', padding_mode='zeros', align_corners=True)
        coverage = F.grid_sample(
            torch.ones_like(src_t[:, :1]), grid,
            mode='bilinear', padding_mode='zeros', align_corners=True
        )
        bg = torch.tensor(self.background[:count], dtype=torch.float32, device=self.device).view(1, count, 1, 1)
        out = out + (1.0 - coverage) * bg

        result = out[0].permute(1, 2, 0).cpu().numpy()
        if np.issubdtype(src.dtype, np.integer):
            info = np.iinfo(src.dtype)
            result = np.clip(np.rint(result), info.min, info.max)
        return result.astype(src.dtype)

    def process_pixels(
        self,
        timestamp_us: int,
        width: int,
        height: int,
        stride: int,
        out_width: int,
        out_height: int,
        out_stride: int,
        pixels,
        out_pixels
    ) -> bool:
        """
        Warp ``pixels`` into ``out_pixels`` for ``timestamp_us``.

        Returns:
            False if no compute params are set, the geometry does not match
            ``init_size`` or a buffer is too small; True after writing.
        """
        if self.compute_params is None:
            return False
        if (width, height) != self.size or (out_width, out_height) != self.output_size:
            return False

        src = image_view(pixels, width, height, stride, self.pixel_format)
        dst = image_view(out_pixels, out_width, out_height, out_stride, self.pixel_format)
        if src is None or dst is None or not dst.flags.writeable:
            return False

        itm = self.get_undistortion_data(timestamp_us)
        map_x, map_y = self.build_maps(itm)
        src = np.ascontiguousarray(src)

        if self.backend == 'torch':
            result = self._remap_torch(src, map_x, map_y)
        else:
            count = self.pixel_format.count
            border = tuple(float(v) for v in self.background[:count])
            result = cv2.remap(
                src, map_x, map_y,
                interpolation=cv2.INTER_LINEAR,
                borderMode=cv2.BORDER_CONSTANT,
                borderValue=border
            )

        dst[...] = result.reshape(dst.shape)
        return True
