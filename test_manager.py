"""
Tests for the stabilization manager: size bookkeeping, render-time access,
background recomputation, render clones and reset.
"""

import threading

import numpy as np

from conftest import FPS, FRAMES, VIDEO_SIZE, make_manager
from gyrostab import (
    BasicParams,
    DeferredScheduler,
    InlineScheduler,
    LensParam,
    StabilizationManager,
    ThreadPoolScheduler,
)
from gyrostab.manager import FEATURE_COLOR, OPTICAL_FLOW_COLOR
from gyrostab.params import frame_at_timestamp, timestamp_at_frame
from gyrostab.synchronization import FrameResult


# =============================================================================
# Sizes and timing
# =============================================================================

def test_size_ratio_scenario():
    params = BasicParams(
        size=(1920, 1080),
        output_size=(1920, 1080),
        video_size=(1920, 1080),
        video_output_size=(1920, 1080)
    )
    m = StabilizationManager(scheduler=InlineScheduler(), params=params)

    m.set_size(960, 540)
    assert m.get_params().output_size == (960, 540)

    m.set_output_size(1920, 1080)
    p = m.get_params()
    assert p.output_size == (960, 540)
    assert p.video_output_size == (1920, 1080)
    assert p.size[0] * p.video_output_size[0] == p.output_size[0] * p.video_size[0]


def test_size_ratio_truncates():
    params = BasicParams(size=(1000, 1000), video_size=(3000, 3000), video_output_size=(1000, 1000))
    m = StabilizationManager(scheduler=InlineScheduler(), params=params)
    m.set_output_size(1001, 1001)
    assert m.get_params().output_size == (333, 333)


def test_size_ratio_without_video_size():
    m = StabilizationManager(scheduler=InlineScheduler())
    m.set_output_size(320, 240)
    m.set_size(320, 240)
    assert m.get_params().output_size == (320, 240)


def test_frame_timestamp_inverse():
    for fps in (23.976, 25.0, 29.97, 30.0, 59.94, 120.0):
        for frame in range(0, 500, 7):
            assert frame_at_timestamp(timestamp_at_frame(frame, fps), fps) == frame


# =============================================================================
# Render-time access
# =============================================================================

def test_process_pixels_output_size_mismatch(manager, rgba_frame):
    manager.recompute_blocking()
    out = np.full((24, 32, 4), 7, dtype=np.uint8)
    w, h = VIDEO_SIZE

    ok = manager.process_pixels(0, w, h, w * 4, 32, 24, 32 * 4, rgba_frame, out)

    assert not ok
    assert np.all(out == 7)


def test_process_pixels_disabled(manager, rgba_frame):
    manager.recompute_blocking()
    manager.set_stab_enabled(False)
    out = np.full((VIDEO_SIZE[1], VIDEO_SIZE[0], 4), 7, dtype=np.uint8)
    w, h = VIDEO_SIZE

    assert not manager.process_pixels(0, w, h, w * 4, w, h, w * 4, rgba_frame, out)
    assert np.all(out == 7)


def test_process_pixels_writes_output(manager, rgba_frame):
    manager.recompute_blocking()
    out = np.zeros_like(rgba_frame)
    w, h = VIDEO_SIZE

    assert manager.process_pixels(0, w, h, w * 4, w, h, w * 4, rgba_frame, out)
    assert np.any(out != 0)


def test_process_pixels_torch_backend(tmp_path, rgba_frame):
    m = make_manager(tmp_path, undistortion_backend='torch', device='cpu')
    m.recompute_blocking()
    out = np.zeros_like(rgba_frame)
    w, h = VIDEO_SIZE

    assert m.process_pixels(0, w, h, w * 4, w, h, w * 4, rgba_frame, out)
    assert np.any(out != 0)


def test_process_pixels_draws_overlays(manager, rgba_frame):
    manager.recompute_blocking()
    manager.pose_estimator.sync_results[0] = FrameResult(
        points=np.array([[10.0, 10.0]]),
        tracked=np.array([[20.0, 10.0]]),
        rotation=np.zeros(3)
    )
    out = np.zeros_like(rgba_frame)
    w, h = VIDEO_SIZE

    assert manager.process_pixels(0, w, h, w * 4, w, h, w * 4, rgba_frame, out)
    assert tuple(rgba_frame[9, 9, :3]) == FEATURE_COLOR
    assert tuple(rgba_frame[10, 15, :3]) == OPTICAL_FLOW_COLOR


def test_overlays_flipped_for_inverted_framebuffer(manager, rgba_frame):
    manager.recompute_blocking()
    manager.set_framebuffer_inverted(True)
    manager.set_show_optical_flow(False)
    manager.pose_estimator.sync_results[0] = FrameResult(
        points=np.array([[10.0, 10.0]]),
        tracked=np.array([[20.0, 10.0]]),
        rotation=np.zeros(3)
    )
    out = np.zeros_like(rgba_frame)
    w, h = VIDEO_SIZE

    manager.process_pixels(0, w, h, w * 4, w, h, w * 4, rgba_frame, out)
    assert tuple(rgba_frame[h - 9, 9, :3]) == FEATURE_COLOR


def test_opticalflow_pixels_fade(manager):
    for frame in range(3):
        manager.pose_estimator.sync_results[frame] = FrameResult(
            points=np.array([[5.0, 5.0 + frame]]),
            tracked=np.array([[8.0, 5.0 + frame]]),
            rotation=np.zeros(3)
        )
    pixels = manager.get_opticalflow_pixels(0)
    assert np.allclose(np.unique(pixels[:, 2]), [1 / 3, 2 / 3, 1.0])

    manager.set_show_optical_flow(False)
    assert manager.get_opticalflow_pixels(0) is None


def test_fill_undistortion_data_rejects_small_buffer(manager):
    manager.recompute_blocking()

    out = np.full(10, -1.0, dtype=np.float32)
    assert not manager.fill_undistortion_data_padded(0, out)
    assert np.all(out == -1.0)

    out = np.full(40, -1.0, dtype=np.float32)
    assert not manager.fill_undistortion_data_padded(0, out, out_size=12)
    assert np.all(out == -1.0)


def test_fill_undistortion_data_layout(manager):
    manager.recompute_blocking()
    with manager.undistortion.write() as undistortion:
        params = undistortion.get_undistortion_data(0).params.reshape(-1)

    out = np.full(24, -1.0, dtype=np.float32)
    assert manager.fill_undistortion_data_padded(0, out)

    assert np.allclose(out[:8], params[:8])
    assert np.allclose(out[8:11], params[9:12])
    assert out[11] == -1.0
    assert np.allclose(out[12:15], params[12:15])
    assert out[15] == -1.0
    assert np.allclose(out[16:19], params[15:18])
    assert np.all(out[19:] == -1.0)


def test_fill_undistortion_data_disabled(manager):
    manager.recompute_blocking()
    manager.set_stab_enabled(False)
    out = np.zeros(64, dtype=np.float32)
    assert not manager.fill_undistortion_data_padded(0, out)


def test_fill_undistortion_data_rolling_shutter(manager):
    manager.set_frame_readout_time(10.0)
    manager.recompute_blocking()
    out = np.zeros(100, dtype=np.float32)
    assert not manager.fill_undistortion_data_padded(0, out)

    out = np.zeros(8 + 4 * 48 + 16, dtype=np.float32)
    assert manager.fill_undistortion_data_padded(0, out)


# =============================================================================
# Background recomputation
# =============================================================================

def test_recompute_threaded_superseded_job_is_silent(tmp_path):
    scheduler = DeferredScheduler()
    m = make_manager(tmp_path, scheduler=scheduler)
    fired = []

    j1 = m.recompute_threaded(fired.append)
    j2 = m.recompute_threaded(fired.append)
    assert j1 != j2
    assert scheduler.run_pending() == 2

    assert fired == [j2]
    with m.undistortion.read() as undistortion:
        assert undistortion.compute_params is not None


def test_recompute_threaded_sequential_jobs_both_complete(tmp_path):
    scheduler = DeferredScheduler()
    m = make_manager(tmp_path, scheduler=scheduler)
    fired = []

    j1 = m.recompute_threaded(fired.append)
    scheduler.run_pending()
    j2 = m.recompute_threaded(fired.append)
    scheduler.run_pending()

    assert fired == [j1, j2]


def test_recompute_threaded_stops_at_checkpoint(tmp_path):
    scheduler = DeferredScheduler()
    m = make_manager(tmp_path, scheduler=scheduler)
    stages = []
    fired = []
    newer = []

    def hook(job_id, stage):
        stages.append((job_id, stage))
        if not newer:
            newer.append(m.recompute_threaded(fired.append))

    m.stage_hook = hook
    j1 = m.recompute_threaded(fired.append)
    scheduler.run_pending()
    j2 = newer[0]

    assert [s for j, s in stages if j == j1] == ['smoothing']
    assert [s for j, s in stages if j == j2] == ['smoothing', 'adaptive_zoom', 'undistortion']
    assert fired == [j2]


def test_recompute_threaded_skips_unchanged_stages(tmp_path):
    m = make_manager(tmp_path)
    stages = []
    m.stage_hook = lambda job_id, stage: stages.append(stage)

    m.recompute_threaded()
    assert stages == ['smoothing', 'adaptive_zoom', 'undistortion']

    stages.clear()
    m.recompute_threaded()
    assert stages == ['undistortion']

    stages.clear()
    m.set_adaptive_zoom(1.0)
    m.recompute_threaded()
    assert stages == ['adaptive_zoom', 'undistortion']
    assert len(m.get_params().fovs) == FRAMES

    stages.clear()
    m.set_smoothing_param('time_constant', 1.0)
    m.recompute_threaded()
    assert stages == ['smoothing', 'adaptive_zoom', 'undistortion']


def test_recompute_threaded_after_fps_override_runs_everything(tmp_path):
    m = make_manager(tmp_path)
    m.recompute_threaded()
    stages = []
    m.stage_hook = lambda job_id, stage: stages.append(stage)

    m.override_video_fps(60.0)
    assert m.smoothness_checksum.get() == 0
    assert m.adaptive_zoom_checksum.get() == 0
    m.recompute_threaded()
    assert stages == ['smoothing', 'adaptive_zoom', 'undistortion']


def test_recompute_threaded_on_thread_pool(tmp_path):
    scheduler = ThreadPoolScheduler(max_workers=2)
    m = make_manager(tmp_path, scheduler=scheduler)
    done = threading.Event()
    fired = []

    def callback(job_id):
        fired.append(job_id)
        done.set()

    job_id = m.recompute_threaded(callback)
    assert done.wait(timeout=30)
    scheduler.shutdown()

    assert fired == [job_id]
    out = np.zeros(64, dtype=np.float32)
    assert m.fill_undistortion_data_padded(0, out)


def test_recompute_blocking_fills_correction(manager):
    manager.set_smoothing_method(0)
    manager.recompute_blocking()
    with manager.gyro.read() as gyro:
        assert np.allclose(np.abs(gyro.smoothed_quaternions[:, 0]), 1.0)
    with manager.undistortion.read() as undistortion:
        assert undistortion.compute_params is not None


# =============================================================================
# Setters
# =============================================================================

def test_override_video_fps(manager):
    manager.override_video_fps(60.0)
    p = manager.get_params()
    assert p.fps_scale == 2.0
    assert p.get_scaled_fps() == FPS / 2.0

    manager.override_video_fps(FPS + 0.0005)
    assert manager.get_params().fps_scale is None


def test_set_lens_param(manager):
    assert manager.set_lens_param('fx', 42.0)
    assert manager.set_lens_param(LensParam.K3, 0.5)
    assert not manager.set_lens_param('focal', 1.0)

    with manager.lens.read() as lens:
        assert lens.fisheye_params.camera_matrix[0][0] == 42.0
        assert lens.fisheye_params.distortion_coeffs[2] == 0.5


def test_set_lens_param_without_profile():
    m = StabilizationManager(scheduler=InlineScheduler())
    assert not m.set_lens_param('fx', 42.0)


def test_smoothing_selection(manager):
    assert manager.get_smoothing_algs() == ['No smoothing', 'Plain 3D', 'Velocity dampened', 'Kalman']

    params = manager.set_smoothing_method(3)
    assert [p['name'] for p in params] == ['process_noise', 'measurement_noise']

    params = manager.set_smoothing_method(99)
    assert [p['name'] for p in params] == ['process_noise', 'measurement_noise']

    assert manager.set_smoothing_param('process_noise', 5.0)
    assert not manager.set_smoothing_param('unknown', 1.0)
    with manager.smoothing.read() as smoothing:
        assert smoothing.current().values['process_noise'] == 1.0


def test_background_color_forwarded(manager):
    manager.set_background_color((1, 2, 3, 4))
    assert manager.get_params().background == (1.0, 2.0, 3.0, 4.0)
    with manager.undistortion.read() as undistortion:
        assert list(undistortion.background) == [1.0, 2.0, 3.0, 4.0]


def test_offsets(manager):
    manager.set_offset(1_000_000, 10.0)
    manager.set_offset(2_000_000, 20.0)
    assert manager.offset_at_timestamp(1_500_000) == 15.0
    assert manager.offset_at_timestamp(0) == 10.0

    manager.remove_offset(2_000_000)
    assert manager.offset_at_timestamp(1_500_000) == 10.0


def test_imu_orientation(manager):
    assert not manager.set_imu_orientation('abc')
    assert not manager.set_imu_orientation('XXZ')
    assert manager.set_imu_orientation('yXz')


def test_imu_changes_update_quats_checksum(manager):
    with manager.smoothing.read() as smoothing:
        before = smoothing.quats_checksum
    manager.set_imu_rotation(0.0, 0.0, 90.0)
    with manager.smoothing.read() as smoothing:
        assert smoothing.quats_checksum != before


def test_sync_lpf(manager):
    for frame in range(10):
        manager.pose_estimator.sync_results[frame] = FrameResult(
            points=np.zeros((0, 2)),
            tracked=np.zeros((0, 2)),
            rotation=np.array([0.0, 0.01 * (-1) ** frame, 0.0])
        )
    manager.set_sync_lpf(2.0)
    filtered = np.array([manager.pose_estimator.sync_results[f].filtered_rotation for f in range(10)])
    assert np.abs(filtered[:, 1]).max() < 0.01


def test_init_calibrator(manager):
    manager.init_calibrator(columns=9, rows=6)
    assert manager.get_params().is_calibrator
    with manager.lens_calibrator.read() as calibrator:
        assert (calibrator.columns, calibrator.rows) == (9, 6)
        assert (calibrator.width, calibrator.height) == VIDEO_SIZE


# =============================================================================
# Render clone and reset
# =============================================================================

def test_render_stabilizator_is_independent(manager, rgba_frame):
    manager.set_framebuffer_inverted(True)
    manager.recompute_blocking()

    clone = manager.get_render_stabilizator((32, 24))
    p = clone.get_params()
    assert p.output_size == (32, 24)
    assert p.size == VIDEO_SIZE
    assert not p.framebuffer_inverted

    clone.set_fov(2.0)
    clone.set_offset(0, 5.0)
    assert manager.get_params().fov == 1.0
    assert manager.offset_at_timestamp(0) == 0.0
    assert manager.get_params().output_size == VIDEO_SIZE

    out = np.zeros((24, 32, 4), dtype=np.uint8)
    w, h = VIDEO_SIZE
    assert clone.process_pixels(0, w, h, w * 4, 32, 24, 32 * 4, rgba_frame, out)


def test_clear_keeps_display_settings(manager):
    manager.set_stab_enabled(False)
    manager.set_show_optical_flow(False)
    manager.set_background_color((1, 2, 3, 4))
    manager.set_adaptive_zoom(3.0)
    manager.set_framebuffer_inverted(True)
    manager.set_fov(2.0)
    manager.set_trim_start(0.2)
    manager.pose_estimator.sync_results[0] = FrameResult(
        points=np.array([[10.0, 10.0]]),
        tracked=np.array([[20.0, 10.0]]),
        rotation=np.zeros(3)
    )

    manager.clear()
    p = manager.get_params()

    assert not p.stab_enabled
    assert not p.show_optical_flow
    assert p.show_detected_features
    assert p.background == (1.0, 2.0, 3.0, 4.0)
    assert p.adaptive_zoom_window == 3.0
    assert p.framebuffer_inverted
    assert p.fov == 1.0
    assert p.trim_start == 0.0
    assert p.fps == 0.0
    assert p.size == (0, 0)
    with manager.gyro.read() as gyro:
        assert gyro.is_empty()
    assert manager.pose_estimator.get_points_for_frame(0) == ([], [])
    assert manager.pose_estimator.get_of_lines_for_frame(0, 1.0, 1) is None
