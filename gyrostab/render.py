"""
Export Renderer.

Reads a video with OpenCV, runs every frame through a render clone of a
configured ``StabilizationManager`` and writes the stabilized frames to a
new file. Also the command-line entry point of the package.
"""

from typing import Iterable, Iterator, Optional, Tuple

import cv2
import numpy as np
from tqdm import tqdm

from .manager import StabilizationManager
from .params import PixelFormat, timestamp_at_frame


def probe_video(video_path: str) -> Tuple[float, int, Tuple[int, int]]:
    """
    Read the stream properties of a video.

    Returns:
        fps: Frames per second
        frame_count: Number of frames reported by the container
        frame_size: (width, height)
    """
    cap = cv2.VideoCapture(video_path)
    if not cap.isOpened():
        raise ValueError(f"Cannot open video: {video_path}")

    fps = cap.get(cv2.CAP_PROP_FPS)
    frame_count = int(cap.get(cv2.CAP_PROP_FRAME_COUNT))
    width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
    height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
    cap.release()

    return fps, frame_count, (width, height)


def read_frames(video_path: str) -> Iterator[np.ndarray]:
    """Yield the BGR frames of a video one at a time."""
    cap = cv2.VideoCapture(video_path)
    if not cap.isOpened():
        raise ValueError(f"Cannot open video: {video_path}")
    try:
        while True:
            ret, frame = cap.read()
            if not ret:
                break
            yield frame
    finally:
        cap.release()


def save_video(
    frames: Iterable[np.ndarray],
    output_path: str,
    fps: float,
    frame_size: Tuple[int, int],
    codec: str = 'mp4v'
) -> int:
    """
    Save frames as video file.

    Args:
        frames: BGR frames, consumed lazily
        output_path: Output video path
        fps: Frame rate
        frame_size: (width, height) of every frame
        codec: FourCC codec string

    Returns:
        Number of frames written
    """
    fourcc = cv2.VideoWriter_fourcc(*codec)
    writer = cv2.VideoWriter(output_path, fourcc, fps, frame_size, True)

    written = 0
    try:
        for frame in frames:
            writer.write(frame)
            written += 1
    finally:
        writer.release()

    if written == 0:
        raise ValueError("No frames to save")
    return written


def stabilize_frames(
    stab: StabilizationManager,
    frames: Iterable[np.ndarray],
    fps: float,
    output_size: Tuple[int, int],
    frame_range: Optional[Tuple[int, int]] = None
) -> Iterator[np.ndarray]:
    """
    Stabilize BGR frames with a render manager.

    Frames outside ``frame_range`` (start inclusive, end exclusive) are
    skipped. A frame the manager refuses is passed through resized, so the
    output keeps its timing.
    """
    ow, oh = output_size
    bpp = PixelFormat.RGBA8.bytes_per_pixel
    out = np.zeros((oh, ow, 4), dtype=np.uint8)

    for i, frame in enumerate(frames):
        if frame_range is not None and not (frame_range[0] <= i < frame_range[1]):
            continue

        h, w = frame.shape[:2]
        rgba = cv2.cvtColor(frame, cv2.COLOR_BGR2RGBA)
        timestamp_us = int(round(timestamp_at_frame(i, fps) * 1000.0))

        ok = stab.process_pixels(timestamp_us, w, h, w * bpp, ow, oh, ow * bpp, rgba, out)
        if ok:
            yield cv2.cvtColor(out, cv2.COLOR_RGBA2BGR)
        else:
            stab._log(f"Warning: frame {i} was not stabilized")
            yield cv2.resize(frame, (ow, oh))


def render_video(
    manager: StabilizationManager,
    input_path: str,
    output_path: str,
    output_size: Optional[Tuple[int, int]] = None,
    codec: str = 'mp4v'
) -> int:
    """
    Export the stabilized video.

    The manager's stages should be up to date (``recompute_blocking``);
    rendering happens on an independent render clone so the manager can
    keep being edited meanwhile.

    Returns:
        Number of frames written
    """
    params = manager.get_params()
    if output_size is None:
        output_size = params.video_output_size if params.video_output_size[0] > 0 else params.video_size

    stab = manager.get_render_stabilizator(output_size)

    n = params.frame_count
    start = int(np.floor(params.trim_start * n))
    end = int(np.ceil(params.trim_end * n)) if n > 0 else 0
    total = max(end - start, 0)

    frames = stabilize_frames(stab, read_frames(input_path), params.fps, output_size, (start, end))
    if manager.verbose:
        frames = tqdm(frames, total=total, desc="Rendering")

    written = save_video(frames, output_path, params.fps, output_size, codec)
    manager._log(f"Wrote {written} frames to {output_path}")
    return written


def _parse_smoothing_param(text: str) -> Tuple[str, float]:
    name, sep, value = text.partition('=')
    if not sep:
        raise ValueError(f"Expected NAME=VALUE, got: {text}")
    return name.strip(), float(value)


def main():
    """Command-line interface for gyro-based video stabilization."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Gyro-based video stabilization"
    )
    parser.add_argument("input", help="Input video path")
    parser.add_argument("output", help="Output video path")
    parser.add_argument("--gyro", default=None, help="Gyro data (.gyroflow or CSV log)")
    parser.add_argument("--lens", default=None, help="Lens profile JSON")
    parser.add_argument("--smoothing", default=None,
                        help="Smoothing algorithm name (e.g. 'Plain 3D', 'Kalman')")
    parser.add_argument("--smoothing-param", action="append", default=[], metavar="NAME=VALUE",
                        help="Smoothing parameter, may be repeated")
    parser.add_argument("--fov", type=float, default=1.0, help="Field of view factor")
    parser.add_argument("--adaptive-zoom", type=float, default=0.0,
                        help="Adaptive zoom window in seconds (<= -1 for static zoom, 0 to disable)")
    parser.add_argument("--output-size", type=int, nargs=2, default=None,
                        help="Output size (width height), defaults to the input size")
    parser.add_argument("--trim", type=float, nargs=2, default=[0.0, 1.0],
                        help="Trim range as fractions of the clip (start end)")
    parser.add_argument("--backend", choices=["opencv", "torch"], default="opencv",
                        help="Pixel warping backend")
    parser.add_argument("--device", default=None, help="Compute device for the torch backend (cuda/cpu)")
    parser.add_argument("--codec", default="mp4v", help="FourCC codec of the output")
    parser.add_argument("--quiet", action="store_true", help="Disable verbose output")

    args = parser.parse_args()

    manager = StabilizationManager(
        undistortion_backend=args.backend,
        device=args.device,
        verbose=not args.quiet
    )

    fps, frame_count, size = probe_video(args.input)
    duration_ms = frame_count * 1000.0 / fps if fps > 0 else 0.0
    manager.init_from_video_data(args.input, duration_ms, fps, frame_count, size)
    if args.gyro:
        manager.load_gyro_data(args.gyro)
    if args.lens:
        manager.load_lens_profile(args.lens)
    else:
        manager.apply_lens_profile_for_camera()

    if args.smoothing:
        with manager.smoothing.read() as smoothing:
            index = smoothing.index_of(args.smoothing)
        if index is None:
            parser.error(f"Unknown smoothing algorithm: {args.smoothing}")
        manager.set_smoothing_method(index)
    for text in args.smoothing_param:
        name, value = _parse_smoothing_param(text)
        if not manager.set_smoothing_param(name, value):
            print(f"Warning: Unknown smoothing parameter {name}")

    output_size = tuple(args.output_size) if args.output_size else size
    manager.set_output_size(*output_size)
    manager.set_size(*size)
    manager.set_fov(args.fov)
    manager.set_adaptive_zoom(args.adaptive_zoom)
    manager.set_trim_start(args.trim[0])
    manager.set_trim_end(args.trim[1])

    manager.recompute_blocking()
    render_video(manager, args.input, args.output, output_size, args.codec)


if __name__ == "__main__":
    main()
