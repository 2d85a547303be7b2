"""
Stabilization Manager.

Owns all mutable state of a stabilization job and coordinates the
subsystems that derive correction data from it:

    setters -> Parameter State / subsystem cells
            -> recompute (blocking, or threaded with cancellation)
            -> committed undistortion data
            -> render-time queries (fill_undistortion_data_padded, process_pixels)

Threaded recomputation runs in three stages (smoothing, adaptive zoom,
undistortion), each skipped when the fingerprint of its inputs matches the
last committed one. A newer submission supersedes older jobs at the next
checkpoint, so a stale job never commits past the point where it was
superseded and never reports completion.

Render-time calls never touch the scheduler; they read committed state
under short per-cell locks and report failures as ``False``.
"""

import copy
import uuid
from typing import Callable, List, Optional, Tuple, Union

import numpy as np
from skimage.draw import line

from .adaptive_zoom import AdaptiveZoom
from .calibration import LensCalibrator, draw_chessboard_corners
from .gyro_source import GyroSource, load_gyroflow_document
from .lens_profile import LensParam, LensProfile, LensProfileDatabase
from .params import BasicParams, PixelFormat, frame_at_timestamp
from .scheduler import CancellationToken, default_scheduler
from .smoothing import Smoothing
from .state import AtomicValue, StateCell, read_cells, write_cells
from .synchronization import PoseEstimator
from .undistortion import ComputeParams, PackedLayout, Undistortion, image_view

FEATURE_COLOR = (0x0c, 0xff, 0x00)
OPTICAL_FLOW_COLOR = (0xfe, 0xfb, 0x47)
OPTICAL_FLOW_FRAMES = 3


class StabilizationManager:
    """
    Stabilization job: parameter state, subsystems and recompute coordination.
    """

    def __init__(
        self,
        pixel_format: PixelFormat = PixelFormat.RGBA8,
        scheduler=None,
        undistortion_backend: str = 'opencv',
        device: Optional[str] = None,
        verbose: bool = False,
        params: Optional[BasicParams] = None,
        gyro: Optional[GyroSource] = None,
        lens: Optional[LensProfile] = None
    ):
        """
        Initialize the manager with default state.

        Args:
            pixel_format: Layout of the pixel buffers given to process_pixels
            scheduler: Job scheduler for threaded recompute (None for the process-wide pool)
            undistortion_backend: 'opencv' or 'torch'
            device: Torch device for the 'torch' backend (None for auto)
            verbose: Whether to print progress
            params: Initial parameter state (defaults if None)
            gyro: Initial gyro source (empty if None)
            lens: Initial lens profile (empty if None)
        """
        self.pixel_format = pixel_format
        self.scheduler = scheduler if scheduler is not None else default_scheduler()
        self.undistortion_backend = undistortion_backend
        self.device = device
        self.verbose = verbose

        self.params = StateCell(params if params is not None else BasicParams(), 'params')
        self.gyro = StateCell(gyro if gyro is not None else GyroSource(), 'gyro')
        self.lens = StateCell(lens if lens is not None else LensProfile(), 'lens')
        self.smoothing = StateCell(Smoothing(), 'smoothing')
        self.undistortion = StateCell(
            Undistortion(pixel_format, backend=undistortion_backend, device=device),
            'undistortion'
        )
        self.pose_estimator = PoseEstimator()
        self.lens_calibrator = StateCell(None, 'lens_calibrator')
        self.camera_id = StateCell(None, 'camera_id')
        self.lens_profile_db = StateCell(LensProfileDatabase(), 'lens_profile_db')

        self.current_compute_id = AtomicValue('')
        self.smoothness_checksum = AtomicValue(0)
        self.adaptive_zoom_checksum = AtomicValue(0)

        # Called as stage_hook(job_id, stage) whenever a recompute stage actually runs.
        self.stage_hook: Optional[Callable[[str, str], None]] = None

    def _log(self, message: str):
        """Print message if verbose mode is enabled."""
        if self.verbose:
            print(message)

    def _stage(self, job_id: str, stage: str):
        if self.stage_hook is not None:
            self.stage_hook(job_id, stage)

    def get_params(self) -> BasicParams:
        """Copy of the current parameter state."""
        with self.params.read() as params:
            return copy.deepcopy(params)

    # =========================================================================
    # Loading
    # =========================================================================

    def init_from_video_data(
        self,
        path: str,
        duration_ms: float,
        fps: float,
        frame_count: int,
        video_size: Tuple[int, int]
    ):
        """
        Store video metadata and try to load telemetry embedded in the video.

        A video without telemetry is not an error; the failure is only logged.
        """
        with self.params.write() as params:
            params.fps = fps
            params.frame_count = frame_count
            params.duration_ms = duration_ms
            params.video_size = tuple(video_size)

        self.pose_estimator.clear()

        try:
            self.load_gyro_data(path)
        except (OSError, ValueError) as e:
            self._log(f"No telemetry loaded from {path}: {e}")

    def load_gyro_data(self, path: str):
        """
        Load orientation data from a ``.gyroflow`` document or a telemetry log.

        Raises:
            OSError: file cannot be read
            ValueError: malformed document or unsupported telemetry
        """
        params = self.get_params()
        with self.gyro.write() as gyro:
            gyro.init_from_params(params)

        if path.endswith('.gyroflow'):
            metadata, calibration = load_gyroflow_document(path)
            if calibration is not None:
                profile = LensProfile()
                profile.load_from_json_value(calibration)
                self.lens.replace(profile)
        else:
            metadata = GyroSource.parse_telemetry_file(path, params.video_size, params.fps)
            with self.params.write() as p:
                p.frame_readout_time = metadata.frame_readout_time or 0.0
            if metadata.camera_identifier is not None:
                self.camera_id.replace(metadata.camera_identifier)

        with self.gyro.write() as gyro:
            gyro.load_from_telemetry(metadata)
        self._update_quats_checksum()
        self._log(f"Loaded gyro data from {path} ({metadata.detected_source})")

    def _update_quats_checksum(self):
        with self.gyro.read() as gyro:
            quats = gyro.quaternions.copy()
        with self.smoothing.write() as smoothing:
            smoothing.update_quats_checksum(quats)

    def load_lens_profile(self, path: str):
        """
        Raises:
            OSError: file cannot be read
            ValueError: malformed profile
        """
        profile = LensProfile()
        profile.load_from_file(path)
        self.lens.replace(profile)

    def load_lens_profile_database(self, directory: str) -> int:
        with self.lens_profile_db.write() as db:
            return db.load_dir(directory)

    def apply_lens_profile_for_camera(self) -> bool:
        """Use the database profile matching the detected camera, if there is one."""
        with self.camera_id.read() as camera:
            camera = copy.deepcopy(camera)
        if camera is None:
            return False
        with self.lens_profile_db.read() as db:
            profile = db.find(camera)
        if profile is None:
            return False
        self.lens.replace(profile)
        return True

    # =========================================================================
    # Sizes
    # =========================================================================

    def init_size(self):
        with self.params.read() as params:
            (w, h), (ow, oh), bg = params.size, params.output_size, params.background

        s = w * self.pixel_format.bytes_per_pixel
        os_ = ow * self.pixel_format.bytes_per_pixel

        if w > 0 and ow > 0 and h > 0 and oh > 0:
            with self.undistortion.write() as undistortion:
                undistortion.init_size(bg, (w, h), s, (ow, oh), os_)

    def set_size(self, width: int, height: int):
        """Set the processing input size; output size follows the shared scale factor."""
        with self.params.write() as params:
            params.size = (width, height)
            ratio = params.size_ratio()
            params.output_size = (
                int(params.video_output_size[0] * ratio),
                int(params.video_output_size[1] * ratio)
            )
        self.init_size()

    def set_output_size(self, width: int, height: int):
        """Set the full-resolution output size; processing output size follows."""
        with self.params.write() as params:
            ratio = params.size_ratio()
            params.output_size = (int(width * ratio), int(height * ratio))
            params.video_output_size = (width, height)
        self.init_size()

    # =========================================================================
    # Recompute
    # =========================================================================

    @staticmethod
    def recompute_adaptive_zoom_static(
        zoom: AdaptiveZoom,
        window: float,
        frame_count: int,
        fps: float,
        gyro: GyroSource
    ) -> List[float]:
        if (window > 0.0 or window < -0.9) and fps > 0:
            quats = [gyro.smoothed_quat_at_timestamp(i * 1000.0 / fps) for i in range(frame_count)]
            return zoom.compute(quats)
        return []

    @staticmethod
    def _zoom_inputs(params: BasicParams) -> Tuple[float, int, float]:
        return params.adaptive_zoom_window, params.frame_count, params.get_scaled_fps()

    def recompute_adaptive_zoom(self):
        zoom = AdaptiveZoom.from_manager(self)
        with self.params.read() as params:
            window, frames, fps = self._zoom_inputs(params)
        with self.gyro.read() as gyro:
            fovs = self.recompute_adaptive_zoom_static(zoom, window, frames, fps, gyro)
        with self.params.write() as params:
            params.fovs = fovs

    def recompute_smoothness(self):
        with write_cells(self.gyro, self.smoothing) as (gyro, smoothing):
            gyro.recompute_smoothness(smoothing.current())

    def recompute_undistortion(self):
        params = ComputeParams.from_manager(self)
        with self.undistortion.write() as undistortion:
            undistortion.set_compute_params(params)

    def recompute_blocking(self):
        """Run smoothing, adaptive zoom and undistortion now, without staleness checks."""
        self.recompute_smoothness()
        self.recompute_adaptive_zoom()
        self.recompute_undistortion()

    def recompute_threaded(self, callback: Optional[Callable[[str], None]] = None) -> str:
        """
        Recompute stale stages on the scheduler.

        The compute snapshot is taken here, on the calling thread. The job
        checks for a newer submission before each stage and stops silently
        if superseded; otherwise it commits and calls ``callback(job_id)``.

        Returns:
            The id of the submitted job
        """
        params = ComputeParams.from_manager(self)
        zoom = AdaptiveZoom.from_manager(self)

        job_id = uuid.uuid4().hex
        self.current_compute_id.set(job_id)
        token = CancellationToken(self.current_compute_id, job_id)

        smoothing = self.smoothing
        basic_params = self.params
        gyro = self.gyro
        undistortion = self.undistortion
        smoothness_checksum = self.smoothness_checksum
        adaptive_zoom_checksum = self.adaptive_zoom_checksum

        def job():
            token.check()

            with smoothing.read() as s:
                smooth_state = s.get_state_checksum()
                algorithm = copy.deepcopy(s.current())

            smoothing_changed = False
            if smooth_state != smoothness_checksum.get():
                self._stage(job_id, 'smoothing')
                params.gyro.recompute_smoothness(algorithm)

                with gyro.write() as g:
                    g.quaternions = params.gyro.quaternions.copy()
                    g.smoothed_quaternions = params.gyro.smoothed_quaternions.copy()
                    g.org_smoothed_quaternions = params.gyro.org_smoothed_quaternions.copy()
                smoothing_changed = True

            token.check()

            zoom_state = zoom.get_state_checksum()
            if smoothing_changed or zoom_state != adaptive_zoom_checksum.get():
                self._stage(job_id, 'adaptive_zoom')
                with basic_params.read() as p:
                    window, frames, fps = self._zoom_inputs(p)
                params.fovs = self.recompute_adaptive_zoom_static(zoom, window, frames, fps, params.gyro)
                with basic_params.write() as p:
                    p.fovs = list(params.fovs)

            token.check()

            self._stage(job_id, 'undistortion')
            with undistortion.write() as u:
                u.set_compute_params(params)

            smoothness_checksum.set(smooth_state)
            adaptive_zoom_checksum.set(zoom_state)
            self._log(f"Recompute {job_id[:8]} committed")
            if callback is not None:
                callback(job_id)

        self.scheduler.spawn(job)
        return job_id

    # =========================================================================
    # Render-time access
    # =========================================================================

    def fill_undistortion_data_padded(self, timestamp_us: int, out: np.ndarray, out_size: Optional[int] = None) -> bool:
        """
        Pack the correction data for ``timestamp_us`` into ``out`` (float32).

        See ``PackedLayout`` for the layout. Returns False when stabilization
        is disabled, no data is available or ``out`` is too small.
        """
        with self.params.read() as params:
            enabled = params.stab_enabled
        if not enabled:
            return False

        capacity = len(out) if out_size is None else out_size
        with self.undistortion.write() as undistortion:
            itm = undistortion.get_undistortion_data(timestamp_us)
            if itm is None:
                return False
            layout = PackedLayout(rows=len(itm.params))
            return layout.write(itm.params, out, capacity)

    def get_features_pixels(self, frame: int) -> Optional[np.ndarray]:
        """Detected features of ``frame`` as 3x3 pixel blocks: (N, 3) rows of x, y, alpha."""
        with self.params.read() as params:
            show = params.show_detected_features
        if not show:
            return None

        xs, ys = self.pose_estimator.get_points_for_frame(frame)
        if not xs:
            return None

        xs = np.asarray(xs).astype(np.int32)
        ys = np.asarray(ys).astype(np.int32)
        offsets = np.array([(dx, dy) for dx in (-1, 0, 1) for dy in (-1, 0, 1)])
        px = (xs[:, None] + offsets[None, :, 0]).reshape(-1)
        py = (ys[:, None] + offsets[None, :, 1]).reshape(-1)
        return np.stack([px, py, np.ones_like(px)], axis=1).astype(np.float32)

    def get_opticalflow_pixels(self, frame: int) -> Optional[np.ndarray]:
        """Optical flow of ``frame`` and the next frames as (N, 3) rows of x, y, alpha; older frames fade."""
        with self.params.read() as params:
            show = params.show_optical_flow
        if not show:
            return None

        chunks = []
        for i in range(OPTICAL_FLOW_FRAMES):
            alpha = (OPTICAL_FLOW_FRAMES - i) / OPTICAL_FLOW_FRAMES
            lines = self.pose_estimator.get_of_lines_for_frame(frame + i, 1.0, 1)
            if lines is None:
                continue
            for (x1, y1), (x2, y2) in zip(*lines):
                rr, cc = line(int(y1), int(x1), int(y2), int(x2))
                chunks.append(np.stack([cc, rr, np.full(len(rr), alpha)], axis=1))

        if not chunks:
            return None
        return np.concatenate(chunks).astype(np.float32)

    @staticmethod
    def _overlay_coords(pxs: np.ndarray, width: int, height: int, inverted: bool):
        x = pxs[:, 0].astype(np.int64)
        y = pxs[:, 1].astype(np.int64)
        if inverted:
            y = height - y
        keep = (x >= 0) & (x < width) & (y >= 0) & (y < height)
        return x[keep], y[keep], pxs[keep, 2]

    def _draw_overlays(self, frame: int, width: int, height: int, stride: int, pixels, inverted: bool, is_calibrator: bool):
        view = image_view(pixels, width, height, stride, self.pixel_format)
        if view is None or not view.flags.writeable:
            return

        features = self.get_features_pixels(frame)
        if features is not None:
            x, y, _ = self._overlay_coords(features, width, height, inverted)
            view[y, x, :3] = FEATURE_COLOR

        flow = self.get_opticalflow_pixels(frame)
        if flow is not None:
            x, y, a = self._overlay_coords(flow, width, height, inverted)
            color = np.array(OPTICAL_FLOW_COLOR, dtype=np.float32)
            for alpha in np.unique(a)[::-1]:
                sel = a == alpha
                px = view[y[sel], x[sel], :3].astype(np.float32)
                view[y[sel], x[sel], :3] = (px * (1.0 - alpha) + color * alpha).astype(np.uint8)

        if is_calibrator:
            with self.lens_calibrator.read() as calibrator:
                if calibrator is None:
                    return
                points = calibrator.get_points(frame)
                pattern = (calibrator.columns, calibrator.rows)
            if points is not None:
                if inverted:
                    points[:, 1] = height - points[:, 1]
                draw_chessboard_corners(width, height, stride, pixels, pattern, points, True)

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
        Draw overlays into ``pixels`` and write the stabilized frame into ``out_pixels``.

        Returns:
            False (output untouched) unless stabilization is enabled and
            ``out_width``/``out_height`` equal the configured output size;
            otherwise the undistortion engine's result.
        """
        with self.params.read() as params:
            enabled = params.stab_enabled
            ow, oh = params.output_size
            framebuffer_inverted = params.framebuffer_inverted
            fps = params.fps
            fps_scale = params.fps_scale
            is_calibrator = params.is_calibrator

        if not (enabled and ow == out_width and oh == out_height):
            return False

        if fps_scale is not None:
            timestamp_us = int(round(timestamp_us / fps_scale))
        frame = frame_at_timestamp(timestamp_us / 1000.0, fps)

        if self.pixel_format is PixelFormat.RGBA8:
            self._draw_overlays(frame, width, height, stride, pixels, framebuffer_inverted, is_calibrator)

        with self.undistortion.write() as undistortion:
            return undistortion.process_pixels(
                timestamp_us, width, height, stride,
                out_width, out_height, out_stride,
                pixels, out_pixels
            )

    # =========================================================================
    # Setters
    # =========================================================================

    def set_video_rotation(self, v: float):
        with self.params.write() as params:
            params.video_rotation = v

    def set_trim_start(self, v: float):
        with self.params.write() as params:
            params.trim_start = v

    def set_trim_end(self, v: float):
        with self.params.write() as params:
            params.trim_end = v

    def set_show_detected_features(self, v: bool):
        with self.params.write() as params:
            params.show_detected_features = v

    def set_show_optical_flow(self, v: bool):
        with self.params.write() as params:
            params.show_optical_flow = v

    def set_stab_enabled(self, v: bool):
        with self.params.write() as params:
            params.stab_enabled = v

    def set_frame_readout_time(self, v: float):
        with self.params.write() as params:
            params.frame_readout_time = v

    def set_adaptive_zoom(self, v: float):
        with self.params.write() as params:
            params.adaptive_zoom_window = v

    def set_fov(self, v: float):
        with self.params.write() as params:
            params.fov = v

    def set_framebuffer_inverted(self, v: bool):
        with self.params.write() as params:
            params.framebuffer_inverted = v

    def set_background_color(self, bg):
        bg = tuple(float(c) for c in bg)
        with self.params.write() as params:
            params.background = bg
        with self.undistortion.write() as undistortion:
            undistortion.set_background(bg)

    def remove_offset(self, timestamp_us: int):
        with self.gyro.write() as gyro:
            gyro.remove_offset(timestamp_us)

    def set_offset(self, timestamp_us: int, offset_ms: float):
        with self.gyro.write() as gyro:
            gyro.set_offset(timestamp_us, offset_ms)

    def offset_at_timestamp(self, timestamp_us: int) -> float:
        with self.gyro.read() as gyro:
            return gyro.offset_at_timestamp(timestamp_us / 1000.0)

    def set_imu_lpf(self, lpf: float):
        with self.gyro.write() as gyro:
            gyro.set_lowpass_filter(lpf)
        self._update_quats_checksum()

    def set_imu_rotation(self, pitch_deg: float, roll_deg: float, yaw_deg: float):
        with self.gyro.write() as gyro:
            gyro.set_imu_rotation(pitch_deg, roll_deg, yaw_deg)
        self._update_quats_checksum()

    def set_imu_orientation(self, orientation: str) -> bool:
        with self.gyro.write() as gyro:
            applied = gyro.set_imu_orientation(orientation)
        if applied:
            self._update_quats_checksum()
        return applied

    def set_sync_lpf(self, lpf: float):
        with self.params.read() as params:
            frame_count, duration_ms = params.frame_count, params.duration_ms
        self.pose_estimator.lowpass_filter(lpf, frame_count, duration_ms)

    def set_lens_param(self, param: Union[str, LensParam], value: float) -> bool:
        """Set one lens coefficient; False if the name is unknown or the profile is incomplete."""
        with self.lens.write() as lens:
            return lens.set_param(param, value)

    def set_smoothing_method(self, index: int) -> List[dict]:
        """Select a smoothing algorithm (out-of-range index keeps the current one); returns its parameters."""
        with self.smoothing.write() as smoothing:
            smoothing.set_current(index)
            return smoothing.current().get_parameters()

    def set_smoothing_param(self, name: str, value: float) -> bool:
        with self.smoothing.write() as smoothing:
            return smoothing.current().set_parameter(name, value)

    def get_smoothing_algs(self) -> List[str]:
        with self.smoothing.read() as smoothing:
            return smoothing.get_names()

    def init_calibrator(self, columns: int = 14, rows: int = 8):
        """Bring all stages up to date and enter calibration mode."""
        self.recompute_blocking()
        with self.params.read() as params:
            w, h = params.size
        self.lens_calibrator.replace(LensCalibrator(columns=columns, rows=rows, width=w, height=h))
        with self.params.write() as params:
            params.is_calibrator = True

    def override_video_fps(self, fps: float):
        """Play the clip at ``fps``; forces every stage of the next threaded recompute to run."""
        with write_cells(self.params, self.gyro) as (params, gyro):
            if params.fps > 0 and abs(fps - params.fps) > 0.001:
                params.fps_scale = fps / params.fps
            else:
                params.fps_scale = None
            gyro.init_from_params(params)

        self.recompute_undistortion()

        self.smoothness_checksum.set(0)
        self.adaptive_zoom_checksum.set(0)

    # =========================================================================
    # Render clone / reset
    # =========================================================================

    def get_render_stabilizator(self, output_size: Tuple[int, int]) -> 'StabilizationManager':
        """
        Independent manager for final rendering at ``output_size``.

        Parameter state, gyro data and lens profile are copied; every other
        subsystem starts from defaults.
        """
        with read_cells(self.params, self.gyro, self.lens) as (params, gyro, lens):
            size = params.video_size
            params_copy = copy.deepcopy(params)
            gyro_copy = gyro.clone()
            lens_copy = lens.clone()

        stab = StabilizationManager(
            pixel_format=self.pixel_format,
            scheduler=self.scheduler,
            undistortion_backend=self.undistortion_backend,
            device=self.device,
            verbose=self.verbose,
            params=params_copy,
            gyro=gyro_copy,
            lens=lens_copy
        )
        stab.set_framebuffer_inverted(False)
        stab.set_size(*size)
        stab.set_output_size(*output_size)

        stab.recompute_undistortion()

        return stab

    def clear(self):
        """Reset to defaults, keeping stabilization/overlay toggles, background, zoom window and framebuffer orientation."""
        with self.params.read() as params:
            keep = {
                'stab_enabled': params.stab_enabled,
                'show_detected_features': params.show_detected_features,
                'show_optical_flow': params.show_optical_flow,
                'background': params.background,
                'adaptive_zoom_window': params.adaptive_zoom_window,
                'framebuffer_inverted': params.framebuffer_inverted,
            }

        self.params.replace(BasicParams(**keep))
        self.gyro.replace(GyroSource())
        self.pose_estimator.clear()
