"""Live virtual try-on: camera feed with a tracked 3D glasses overlay."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

import cv2

from tryon.camera import CameraConfig
from tryon.controls import ControlsConfig, PlacementControls, draw_status
from tryon.errors import CameraError
from tryon.face_detector import FaceDetectorConfig
from tryon.model_loader import AssetLoaderConfig
from tryon.pose_smoother import PlacementConfig, SmootherConfig
from tryon.render_loop import SessionConfig, SessionState, SessionStatus, TryOnSession
from tryon.scene_3d import Scene3DConfig

WINDOW = "Virtual Try-On"


def build_config(args: argparse.Namespace) -> SessionConfig:
    """Assemble the session configuration from defaults and CLI flags."""
    # ===== EDIT THESE SETTINGS IF NEEDED =====
    capture_width = 640
    capture_height = 480
    mirror = True

    box_model = "yolov8n-face.pt"  # None: run the landmarker on the full frame
    landmark_model = "face_landmarker.task"
    detection_conf = 0.5
    detection_imgsz = 320
    device = None  # Example: "cuda:0" or "cpu"

    smoothing_factor = 0.3
    horizontal_scale = 0.5
    vertical_scale = 0.8
    depth = -0.5
    size_factor = 2.0
    smooth_scale = False

    fov_deg = 50.0
    camera_z = 2.0
    ambient = 0.7
    directional = 0.8

    detection_interval = 0.030
    frame_interval = 1.0 / 60.0
    # ========================================

    return SessionConfig(
        detection_interval=detection_interval,
        frame_interval=frame_interval,
        camera=CameraConfig(
            index=args.camera,
            width=capture_width,
            height=capture_height,
            mirror=mirror,
        ),
        detector=FaceDetectorConfig(
            models_base=args.models_base,
            cache_dir=Path(args.cache_dir),
            box_model=None if args.no_box_model else box_model,
            landmark_model=landmark_model,
            conf=detection_conf,
            imgsz=detection_imgsz,
            device=device,
            force_fallback=args.fallback,
        ),
        smoother=SmootherConfig(
            smoothing_factor=smoothing_factor,
            horizontal_scale=horizontal_scale,
            vertical_scale=vertical_scale,
            depth=depth,
            size_factor=size_factor,
            smooth_scale=smooth_scale,
        ),
        scene=Scene3DConfig(
            fov_deg=fov_deg,
            camera_z=camera_z,
            ambient=ambient,
            directional=directional,
        ),
        loader=AssetLoaderConfig(),
    )


async def run_live(config: SessionConfig, model_url: str, placement: PlacementConfig) -> SessionStatus:
    """Run one session until the window is closed or 'q' is pressed."""
    controls = PlacementControls(WINDOW, ControlsConfig(), initial=placement)
    session: TryOnSession

    def show(frame) -> None:
        session.set_placement(controls.read())
        draw_status(frame, session.status)
        cv2.imshow(WINDOW, frame)
        key = cv2.waitKey(1) & 0xFF
        if key in (ord("q"), 27) or cv2.getWindowProperty(WINDOW, cv2.WND_PROP_VISIBLE) < 1:
            session.stop()

    def on_status(status: SessionStatus) -> None:
        logging.getLogger("tryon").debug("Status: %s", status)

    session = TryOnSession(config, display=show, on_status=on_status)
    session.set_placement(placement)

    try:
        await session.start(model_url)
        await session.wait_stopped()
    finally:
        session.stop()

    return session.status


def main() -> None:
    """Parse flags and start the live try-on window."""
    parser = argparse.ArgumentParser(description="Try on 3D glasses with a live camera.")
    parser.add_argument("--model", required=True, help="Glasses model (.glb) path or URL")
    parser.add_argument("--camera", type=int, default=0, help="Camera index")
    parser.add_argument("--models-base", default="models", help="Detector weights directory or base URL")
    parser.add_argument("--cache-dir", default=str(Path.home() / ".cache" / "tryon"), help="Download cache")
    parser.add_argument("--no-box-model", action="store_true", help="Skip the YOLO face box stage")
    parser.add_argument("--fallback", action="store_true", help="Force the geometric face estimate")
    parser.add_argument("--scale", type=float, default=1.0, help="Initial glasses scale (0.5-1.5)")
    parser.add_argument("--x", type=float, default=0.0, help="Initial horizontal offset (-0.5-0.5)")
    parser.add_argument("--y", type=float, default=0.0, help="Initial vertical offset (-0.5-0.5)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = build_config(args)
    placement = PlacementConfig(scale=args.scale, x=args.x, y=args.y)

    try:
        status = asyncio.run(run_live(config, args.model, placement))
    except CameraError as exc:
        print(f"Camera unavailable: {exc}")
        print("Please allow camera access to use the virtual try-on.")
        raise SystemExit(1)
    finally:
        cv2.destroyAllWindows()

    print(f"Model: {args.model}")
    print(f"Final state: {status.state.value}")
    if status.state is not SessionState.STOPPED:
        print(f"Error: {status.error}")
    if status.asset_error:
        print(f"Model error: {status.asset_error}")


if __name__ == "__main__":
    main()
