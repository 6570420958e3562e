"""Face pose estimation: landmark detector with a geometric fallback."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple
import asyncio
import logging
import math

import cv2
import numpy as np
import requests

from tryon.errors import DetectorLoadError

logger = logging.getLogger(__name__)

Point = Tuple[float, float]


@dataclass(frozen=True)
class FaceBox:
    """Face bounding box in frame pixel coordinates."""

    x: float
    y: float
    width: float
    height: float


@dataclass(frozen=True)
class Rotation:
    """Head rotation in normalized units (roll is the eye-line angle in radians)."""

    pitch: float = 0.0
    yaw: float = 0.0
    roll: float = 0.0


@dataclass(frozen=True)
class FacePose:
    """Detection result for one frame."""

    box: FaceBox
    eye_level: float
    nose_tip: Point
    rotation: Rotation = field(default_factory=Rotation)
    source: str = "landmarks"


@dataclass
class DetectedFace:
    """Raw output of the detector collaborator in full-frame pixels."""

    box: FaceBox
    landmarks: List[Tuple[float, float, float]]  # (x, y, z) per FaceMesh index


@dataclass
class FaceDetectorConfig:
    """Configuration for the learned detector and its weights."""

    models_base: str = "models"  # directory, or http(s) base URL to download from
    cache_dir: Path = Path.home() / ".cache" / "tryon"
    box_model: Optional[str] = "yolov8n-face.pt"  # None: landmarker on the full frame
    landmark_model: str = "face_landmarker.task"
    conf: float = 0.5
    iou: float = 0.45
    imgsz: int = 320
    device: Optional[str] = None
    force_fallback: bool = False
    download_timeout: float = 30.0


def frame_is_empty(frame: Optional[np.ndarray]) -> bool:
    """True while the camera has not produced a usable frame."""
    return frame is None or frame.ndim < 2 or frame.shape[0] == 0 or frame.shape[1] == 0


class FaceLandmarkDetector:
    """YOLO face box followed by MediaPipe FaceLandmarker inside the crop."""

    # MediaPipe FaceMesh indices: https://github.com/google/mediapipe/blob/master/mediapipe/python/solutions/face_mesh_connections.py
    # "left"/"right" are image sides, so the left eye is the subject's right eye.
    LEFT_EYE_IDXS = (33, 7, 163, 144, 145, 153, 154, 155, 133, 173, 157, 158, 159, 160, 161, 246)
    RIGHT_EYE_IDXS = (263, 249, 390, 373, 374, 380, 381, 382, 362, 398, 384, 385, 386, 387, 388, 466)
    NOSE_TIP_IDX = 1

    def __init__(self, config: FaceDetectorConfig, box_model, landmarker) -> None:
        """Wrap already-loaded models; use `load_face_detector` to build one."""
        self.config = config
        self.box_model = box_model
        self.landmarker = landmarker

    def _find_box(self, frame: np.ndarray) -> Optional[Tuple[int, int, int, int]]:
        """Return the largest face box (x1, y1, x2, y2) above the confidence threshold."""
        frame_height, frame_width = frame.shape[:2]
        if self.box_model is None:
            return 0, 0, frame_width, frame_height

        results = self.box_model.predict(
            source=frame,
            conf=self.config.conf,
            iou=self.config.iou,
            imgsz=self.config.imgsz,
            device=self.config.device,
            verbose=False,
        )
        if not results:
            return None
        boxes = results[0].boxes
        if boxes is None or boxes.xyxy is None or len(boxes.xyxy) == 0:
            return None

        areas = (boxes.xyxy[:, 2] - boxes.xyxy[:, 0]) * (boxes.xyxy[:, 3] - boxes.xyxy[:, 1])
        best_idx = int(areas.argmax().item())
        x1, y1, x2, y2 = boxes.xyxy[best_idx].tolist()
        x1 = max(0, min(int(x1), frame_width - 1))
        y1 = max(0, min(int(y1), frame_height - 1))
        x2 = max(1, min(int(x2), frame_width))
        y2 = max(1, min(int(y2), frame_height))
        return x1, y1, x2, y2

    def detect(self, frame: np.ndarray) -> Optional[DetectedFace]:
        """Detect at most one face and return its box and full-frame landmarks."""
        import mediapipe as mp

        bbox = self._find_box(frame)
        if bbox is None:
            return None

        x1, y1, x2, y2 = bbox
        face = frame[y1:y2, x1:x2]
        if face.size == 0:
            return None

        face_rgb = np.ascontiguousarray(cv2.cvtColor(face, cv2.COLOR_BGR2RGB))
        output = self.landmarker.detect(mp.Image(image_format=mp.ImageFormat.SRGB, data=face_rgb))
        if not output.face_landmarks:
            return None

        crop_w = x2 - x1
        crop_h = y2 - y1
        landmarks = [
            (x1 + lm.x * crop_w, y1 + lm.y * crop_h, lm.z * crop_w)
            for lm in output.face_landmarks[0]
        ]

        if self.box_model is None:
            xs = [p[0] for p in landmarks]
            ys = [p[1] for p in landmarks]
            box = FaceBox(min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys))
        else:
            box = FaceBox(float(x1), float(y1), float(crop_w), float(crop_h))
        return DetectedFace(box=box, landmarks=landmarks)


def resolve_weights(config: FaceDetectorConfig, name: str) -> Path:
    """Locate a weights file under the models base, downloading it once if remote."""
    base = config.models_base
    if not base.startswith(("http://", "https://")):
        path = Path(base) / name
        if not path.exists():
            raise DetectorLoadError(f"Detector weights not found: {path}")
        return path

    target = config.cache_dir / name
    if target.exists():
        return target

    url = base.rstrip("/") + "/" + name
    logger.info("Downloading detector weights from %s", url)
    target.parent.mkdir(parents=True, exist_ok=True)
    partial = target.with_suffix(target.suffix + ".part")
    try:
        with requests.get(url, stream=True, timeout=config.download_timeout) as response:
            response.raise_for_status()
            with open(partial, "wb") as fh:
                for chunk in response.iter_content(chunk_size=1 << 16):
                    fh.write(chunk)
    except requests.RequestException as exc:
        partial.unlink(missing_ok=True)
        raise DetectorLoadError(f"Could not download {url}: {exc}") from exc
    partial.replace(target)
    return target


def load_face_detector(config: FaceDetectorConfig) -> FaceLandmarkDetector:
    """Load the box and landmark models. Blocking; run it off the event loop."""
    landmark_path = resolve_weights(config, config.landmark_model)
    box_path = resolve_weights(config, config.box_model) if config.box_model else None

    try:
        from mediapipe.tasks.python.core.base_options import BaseOptions
        from mediapipe.tasks.python.vision import face_landmarker
        from mediapipe.tasks.python.vision.core.vision_task_running_mode import VisionTaskRunningMode

        options = face_landmarker.FaceLandmarkerOptions(
            base_options=BaseOptions(model_asset_path=str(landmark_path)),
            running_mode=VisionTaskRunningMode.IMAGE,
            num_faces=1,
            min_face_detection_confidence=config.conf,
            min_face_presence_confidence=config.conf,
        )
        landmarker = face_landmarker.FaceLandmarker.create_from_options(options)

        box_model = None
        if box_path is not None:
            from ultralytics import YOLO

            box_model = YOLO(str(box_path))
    except (ImportError, RuntimeError, OSError, ValueError) as exc:
        raise DetectorLoadError(f"Could not initialize face detector: {exc}") from exc

    logger.info("Face detector loaded from %s", config.models_base)
    return FaceLandmarkDetector(config, box_model, landmarker)


def _centroid(points: Sequence[Sequence[float]]) -> Point:
    xs = [p[0] for p in points]
    ys = [p[1] for p in points]
    return sum(xs) / len(xs), sum(ys) / len(ys)


def pose_from_landmarks(
    box: FaceBox,
    left_eye: Sequence[Sequence[float]],
    right_eye: Sequence[Sequence[float]],
    nose_tip: Sequence[float],
    yaw_baseline: float = 0.3,
    pitch_baseline: float = 0.15,
) -> FacePose:
    """Derive eye level, nose tip and head rotation from landmark geometry."""
    left = _centroid(left_eye)
    right = _centroid(right_eye)
    eye_level = (left[1] + right[1]) / 2.0

    face_width = max(box.width, 1e-6)
    face_height = max(box.height, 1e-6)

    # Frontal faces sit at the baselines, so yaw and pitch read ~0 there.
    yaw = ((right[0] - left[0]) / face_width - yaw_baseline) * 2.0
    pitch = ((nose_tip[1] - eye_level) / face_height - pitch_baseline) * 2.0
    roll = math.atan2(right[1] - left[1], right[0] - left[0])

    return FacePose(
        box=box,
        eye_level=eye_level,
        nose_tip=(float(nose_tip[0]), float(nose_tip[1])),
        rotation=Rotation(pitch=pitch, yaw=yaw, roll=roll),
        source="landmarks",
    )


class PoseEstimator:
    """Capability: estimate(frame) -> FacePose | None."""

    async def estimate(self, frame: np.ndarray) -> Optional[FacePose]:
        raise NotImplementedError


class GeometricPoseEstimator(PoseEstimator):
    """Assumes a centered, frontal face of typical proportions."""

    def __init__(self, face_width_ratio: float = 0.4, aspect: float = 1.3) -> None:
        self.face_width_ratio = face_width_ratio
        self.aspect = aspect

    def estimate_sync(self, frame: np.ndarray) -> Optional[FacePose]:
        if frame_is_empty(frame):
            return None
        frame_height, frame_width = frame.shape[:2]

        face_width = frame_width * self.face_width_ratio
        face_height = face_width * self.aspect
        face_x = (frame_width - face_width) / 2.0
        face_y = (frame_height - face_height) / 2.5  # slightly above center

        return FacePose(
            box=FaceBox(face_x, face_y, face_width, face_height),
            eye_level=face_y + face_height * 0.4,
            nose_tip=(frame_width / 2.0, face_y + face_height * 0.55),
            rotation=Rotation(),
            source="fallback",
        )

    async def estimate(self, frame: np.ndarray) -> Optional[FacePose]:
        return self.estimate_sync(frame)


class LandmarkPoseEstimator(PoseEstimator):
    """Runs the learned detector off the event loop and derives pose from landmarks."""

    def __init__(self, detector: FaceLandmarkDetector) -> None:
        self.detector = detector

    def pose_from_detection(self, face: DetectedFace) -> Optional[FacePose]:
        """Convert raw landmarks to a FacePose, or None if the mesh is incomplete."""
        landmarks = face.landmarks
        try:
            left_eye = [landmarks[i] for i in FaceLandmarkDetector.LEFT_EYE_IDXS]
            right_eye = [landmarks[i] for i in FaceLandmarkDetector.RIGHT_EYE_IDXS]
            nose = landmarks[FaceLandmarkDetector.NOSE_TIP_IDX]
        except IndexError:
            return None
        return pose_from_landmarks(face.box, left_eye, right_eye, nose)

    async def estimate(self, frame: np.ndarray) -> Optional[FacePose]:
        if frame_is_empty(frame):
            return None
        face = await asyncio.to_thread(self.detector.detect, frame)
        if face is None:
            return None
        return self.pose_from_detection(face)


DetectorFactory = Callable[[FaceDetectorConfig], FaceLandmarkDetector]


class FacePoseEstimator(PoseEstimator):
    """Session-facing estimator that owns detector loading and fallback selection.

    The detector is loaded lazily on first use. Concurrent callers share one
    in-flight load. Until it is ready, or after it fails, estimates come from
    the geometric fallback so the overlay stays roughly on screen.
    """

    def __init__(
        self,
        config: FaceDetectorConfig,
        detector_factory: Optional[DetectorFactory] = None,
    ) -> None:
        self.config = config
        self.detector_factory = detector_factory or load_face_detector
        self.fallback = GeometricPoseEstimator()
        self.landmarks: Optional[LandmarkPoseEstimator] = None
        self.failed = False
        self._load_task: Optional[asyncio.Task] = None
        self._warned = False

    @property
    def using_fallback(self) -> bool:
        return self.config.force_fallback or self.landmarks is None

    def _warn_once(self, message: str, exc: BaseException) -> None:
        if self._warned:
            logger.debug("%s: %s", message, exc)
            return
        self._warned = True
        logger.warning("%s: %s. Using simplified face tracking.", message, exc)

    async def _load(self) -> bool:
        try:
            detector = await asyncio.to_thread(self.detector_factory, self.config)
        except Exception as exc:  # weights, runtime and import failures all mean "fallback"
            self.failed = True
            self._warn_once("Face detector failed to load", exc)
            return False
        self.landmarks = LandmarkPoseEstimator(detector)
        return True

    async def ensure_loaded(self) -> bool:
        """Load the detector once; every concurrent caller awaits the same load."""
        if self.landmarks is not None:
            return True
        if self.failed or self.config.force_fallback:
            return False
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._load())
        return await asyncio.shield(self._load_task)

    def retry_detector(self) -> None:
        """Forget a failed load so the next estimate tries again."""
        self.failed = False
        self._warned = False
        self._load_task = None
        self.landmarks = None

    async def estimate(self, frame: np.ndarray) -> Optional[FacePose]:
        if frame_is_empty(frame):
            return None
        if self.config.force_fallback or self.failed:
            return await self.fallback.estimate(frame)

        if self.landmarks is None:
            if self._load_task is None:
                self._load_task = asyncio.ensure_future(self._load())
            return await self.fallback.estimate(frame)

        try:
            return await self.landmarks.estimate(frame)
        except Exception as exc:  # detector internals are a black box
            self.failed = True
            self.landmarks = None
            self._warn_once("Face detection error", exc)
            return await self.fallback.estimate(frame)
