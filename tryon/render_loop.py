"""Try-on session: frame scheduling, detection cadence and resource lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Callable, Optional, Tuple
import asyncio
import enum
import logging
import time

import numpy as np

from tryon.camera import CameraConfig, VideoStream, open_camera
from tryon.errors import AssetLoadError, CameraError, SessionError
from tryon.face_detector import FaceDetectorConfig, FacePoseEstimator, PoseEstimator, frame_is_empty
from tryon.model_loader import AssetLoader, AssetLoaderConfig, Clock, GlassesAsset
from tryon.placement import place
from tryon.pose_smoother import PlacementConfig, SmootherConfig, TemporalSmoother
from tryon.scene_3d import OverlayRenderer, Scene3DConfig

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SessionStatus:
    """What the UI shows: lifecycle, model loading and tracking feedback."""

    state: SessionState = SessionState.IDLE
    asset_state: str = "none"  # none | loading | loaded | failed
    load_progress: Optional[float] = None
    face_detected: bool = False
    using_fallback: bool = False
    error: Optional[str] = None
    asset_error: Optional[str] = None


@dataclass
class SessionConfig:
    """Configuration for one try-on session and its collaborators."""

    detection_interval: float = 0.030  # seconds between pose estimations
    frame_interval: float = 1.0 / 60.0  # display cadence
    camera: CameraConfig = field(default_factory=CameraConfig)
    detector: FaceDetectorConfig = field(default_factory=FaceDetectorConfig)
    smoother: SmootherConfig = field(default_factory=SmootherConfig)
    scene: Scene3DConfig = field(default_factory=Scene3DConfig)
    loader: AssetLoaderConfig = field(default_factory=AssetLoaderConfig)


class FrameScheduler:
    """Self-rescheduling tick on the asyncio loop with an explicit start/stop."""

    def __init__(self, interval: float = 1.0 / 60.0) -> None:
        self.interval = interval
        self.running = False
        self._callback: Optional[Callable[[], None]] = None
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        """True while a tick is scheduled."""
        return self._handle is not None

    def start(self, callback: Callable[[], None]) -> None:
        if self.running:
            raise SessionError("Scheduler is already running.")
        self._callback = callback
        self.running = True
        self._request()

    def stop(self) -> None:
        self.running = False
        self._cancel()

    def _request(self) -> None:
        self._handle = asyncio.get_running_loop().call_later(self.interval, self._fire)

    def _cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self) -> None:
        self._handle = None
        self._run_tick()

    def _run_tick(self) -> None:
        if not self.running or self._callback is None:
            return
        try:
            self._callback()
        finally:
            if self.running:
                self._request()


class ManualScheduler(FrameScheduler):
    """Deterministic scheduler: each `step()` runs exactly one pending tick."""

    def __init__(self) -> None:
        super().__init__(interval=0.0)
        self._queued = False

    @property
    def pending(self) -> bool:
        return self._queued

    def _request(self) -> None:
        self._queued = True

    def _cancel(self) -> None:
        self._queued = False

    def step(self) -> bool:
        """Run the pending tick; False if nothing was scheduled."""
        if not self._queued:
            return False
        self._queued = False
        self._run_tick()
        return True


Display = Callable[[np.ndarray], None]
StatusListener = Callable[[SessionStatus], None]


class TryOnSession:
    """Drives camera → pose → smoothing → placement → draw for one user session.

    Draws happen on every scheduler tick. Pose estimation runs as a task on
    its own cadence and its result is applied when it completes, so a slow
    detector never delays a draw. Results from a stopped or restarted session
    are discarded by comparing the session generation.
    """

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        *,
        estimator: Optional[PoseEstimator] = None,
        loader: Optional[AssetLoader] = None,
        camera_factory: Callable[[CameraConfig], VideoStream] = open_camera,
        renderer_factory: Callable[[Scene3DConfig], OverlayRenderer] = OverlayRenderer,
        scheduler: Optional[FrameScheduler] = None,
        display: Optional[Display] = None,
        on_status: Optional[StatusListener] = None,
        now: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or SessionConfig()
        self.estimator = estimator or FacePoseEstimator(self.config.detector)
        self.loader = loader or AssetLoader(self.config.loader)
        self.smoother = TemporalSmoother(self.config.smoother)
        self.scheduler = scheduler or FrameScheduler(self.config.frame_interval)
        self.camera_factory = camera_factory
        self.renderer_factory = renderer_factory
        self.display = display
        self.on_status = on_status
        self._now = now

        self.placement = PlacementConfig()
        self.status = SessionStatus()
        self.stream: Optional[VideoStream] = None
        self.renderer: Optional[OverlayRenderer] = None
        self.asset: Optional[GlassesAsset] = None
        self.clock = Clock(now)
        self.frame_size: Tuple[int, int] = (0, 0)
        self.last_output: Optional[np.ndarray] = None

        self._generation = 0
        self._last_detection: Optional[float] = None
        self._asset_task: Optional[asyncio.Task] = None
        self._detection_task: Optional[asyncio.Task] = None
        self._detector_task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    @property
    def state(self) -> SessionState:
        return self.status.state

    @property
    def detection_task(self) -> Optional[asyncio.Task]:
        """The pose estimation currently in flight, if any."""
        return self._detection_task

    def _update_status(self, **changes) -> None:
        status = replace(self.status, **changes)
        if status == self.status:
            return
        self.status = status
        if self.on_status is not None:
            self.on_status(status)

    def set_placement(self, placement: PlacementConfig) -> None:
        """Apply new slider values; takes effect on the next tick."""
        self.placement = placement

    async def start(self, model_url: Optional[str] = None) -> None:
        """Open the camera and begin rendering; the model attaches when it loads."""
        if self.state in (SessionState.INITIALIZING, SessionState.ACTIVE):
            raise SessionError(f"Session is already {self.state.value}.")

        self._generation += 1
        generation = self._generation
        self._stopped.clear()
        self.smoother.reset()
        self.clock = Clock(self._now)
        self.frame_size = (0, 0)
        self._last_detection = None
        self.renderer = self.renderer_factory(self.config.scene)
        self._update_status(
            state=SessionState.INITIALIZING,
            error=None,
            asset_error=None,
            face_detected=False,
            using_fallback=getattr(self.estimator, "using_fallback", False),
        )

        ensure_loaded = getattr(self.estimator, "ensure_loaded", None)
        if ensure_loaded is not None:
            self._detector_task = asyncio.ensure_future(ensure_loaded())
        if model_url:
            self._begin_asset_load(model_url, generation)

        try:
            stream = await asyncio.to_thread(self.camera_factory, self.config.camera)
        except Exception as exc:
            error = exc if isinstance(exc, CameraError) else CameraError(f"Could not start camera: {exc}")
            if generation == self._generation:
                logger.error("Error accessing camera: %s", error)
                self._cancel_background()
                self._dispose_renderer()
                self._dispose_asset()
                self._update_status(state=SessionState.IDLE, error=str(error), asset_state="none", load_progress=None)
                self._stopped.set()
            if error is exc:
                raise
            raise error from exc

        if generation != self._generation:
            # Stopped while the camera was opening
            self._release_stream(stream)
            return

        self.stream = stream
        self._update_status(state=SessionState.ACTIVE)
        self.scheduler.start(self._tick)
        logger.info("Try-on session active")

    def change_model(self, model_url: str) -> asyncio.Task:
        """Dispose the current model and load another without restarting the loop."""
        if self.state not in (SessionState.INITIALIZING, SessionState.ACTIVE):
            raise SessionError("Cannot change model on an inactive session.")
        if self._asset_task is not None and not self._asset_task.done():
            self._asset_task.cancel()
        if self.asset is not None:
            self.asset.dispose()
            self.asset = None
        return self._begin_asset_load(model_url, self._generation)

    def _begin_asset_load(self, url: str, generation: int) -> asyncio.Task:
        loop = asyncio.get_running_loop()

        def progress(loaded: int, total: Optional[int]) -> None:
            loop.call_soon_threadsafe(self._on_progress, generation, loaded, total)

        self._update_status(asset_state="loading", load_progress=0.0, asset_error=None)
        self._asset_task = asyncio.ensure_future(self._load_asset(url, generation, progress))
        return self._asset_task

    def _on_progress(self, generation: int, loaded: int, total: Optional[int]) -> None:
        if generation != self._generation or self.status.asset_state != "loading":
            return
        self._update_status(load_progress=(loaded / total) if total else None)

    async def _load_asset(self, url: str, generation: int, progress) -> None:
        logger.info("Loading 3D model from %s", url)
        try:
            asset = await self.loader.load_async(url, progress)
        except AssetLoadError as exc:
            self._asset_failed(generation, str(exc))
            return
        except Exception as exc:  # a bad model must not leave the overlay "loading"
            logger.debug("Model load crashed", exc_info=True)
            self._asset_failed(generation, f"Could not load model {url}: {exc}")
            return

        if generation != self._generation or self.state not in (SessionState.INITIALIZING, SessionState.ACTIVE):
            asset.dispose()
            return

        self.asset = asset
        place(asset, self.smoother.pose, self.placement)
        self._update_status(asset_state="loaded", load_progress=1.0)

    def _asset_failed(self, generation: int, message: str) -> None:
        if generation != self._generation:
            return
        logger.error("Error loading model: %s", message)
        self._update_status(asset_state="failed", load_progress=None, asset_error=message)

    def _resize(self, width: int, height: int) -> None:
        self.frame_size = (width, height)
        if self.renderer is not None:
            self.renderer.set_size(width, height)
        logger.info("Camera frame size %dx%d", width, height)

    def _tick(self) -> None:
        """One display frame: maybe fire detection, then place and draw."""
        if self.state is not SessionState.ACTIVE or self.stream is None or self.renderer is None:
            return

        frame = self.stream.read()
        if frame_is_empty(frame):
            return

        height, width = frame.shape[:2]
        if (width, height) != self.frame_size:
            self._resize(width, height)

        now = self._now()
        due = self._last_detection is None or now - self._last_detection >= self.config.detection_interval
        if due and self._detection_task is None:
            self._last_detection = now
            self._detection_task = asyncio.ensure_future(
                self._detect(frame, width, height, self._generation)
            )

        delta = self.clock.get_delta()
        if self.asset is not None:
            if self.asset.mixer is not None:
                self.asset.mixer.update(delta)
            place(self.asset, self.smoother.pose, self.placement)

        output = self.renderer.render(frame, self.asset)
        self.last_output = output
        if self.display is not None:
            self.display(output)

    async def _detect(self, frame: np.ndarray, width: int, height: int, generation: int) -> None:
        try:
            face = await self.estimator.estimate(frame)
        except Exception as exc:  # one bad frame must not end the session
            logger.debug("Pose estimation failed: %s", exc)
            face = None
        finally:
            if generation == self._generation:
                self._detection_task = None

        if generation != self._generation or self.state is not SessionState.ACTIVE:
            return

        target = None
        if face is not None:
            target = self.smoother.target_from_face(face, width, height, self.placement)
        pose = self.smoother.update(target)
        if self.asset is not None:
            place(self.asset, pose, self.placement)

        self._update_status(
            face_detected=face is not None,
            using_fallback=getattr(self.estimator, "using_fallback", False),
        )

    def stop(self) -> None:
        """Cancel the tick, release the camera and free render resources."""
        if self.state not in (SessionState.INITIALIZING, SessionState.ACTIVE):
            return

        self._generation += 1
        self.scheduler.stop()
        self._cancel_background()

        if self.stream is not None:
            self._release_stream(self.stream)
            self.stream = None
        self._dispose_renderer()
        self._dispose_asset()

        self._update_status(
            state=SessionState.STOPPED,
            asset_state="none",
            load_progress=None,
            face_detected=False,
        )
        self._stopped.set()
        logger.info("Try-on session stopped")

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    def _cancel_background(self) -> None:
        if self._asset_task is not None and not self._asset_task.done():
            self._asset_task.cancel()
        self._asset_task = None
        # The shared detector load keeps running; only this session's wait is dropped.
        if self._detector_task is not None and not self._detector_task.done():
            self._detector_task.cancel()
        self._detector_task = None
        # In-flight estimations are left to finish and get discarded by generation.
        self._detection_task = None

    def _release_stream(self, stream: VideoStream) -> None:
        try:
            stream.stop()
        except Exception:
            logger.debug("Camera release failed", exc_info=True)

    def _dispose_renderer(self) -> None:
        if self.renderer is None:
            return
        try:
            self.renderer.dispose()
        except Exception:
            logger.debug("Renderer dispose failed", exc_info=True)
        self.renderer = None

    def _dispose_asset(self) -> None:
        if self.asset is None:
            return
        try:
            self.asset.dispose()
        except Exception:
            logger.debug("Asset dispose failed", exc_info=True)
        self.asset = None
