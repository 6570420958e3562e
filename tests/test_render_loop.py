"""Tests for the try-on session lifecycle and per-frame pipeline."""

import asyncio
import threading

import numpy as np
import pytest

from tryon.errors import AssetLoadError, CameraError, SessionError
from tryon.face_detector import FaceBox, FaceDetectorConfig, FacePose, FacePoseEstimator, PoseEstimator, Rotation
from tryon.model_loader import AssetLoader
from tryon.pose_smoother import PlacementConfig
from tryon.render_loop import FrameScheduler, ManualScheduler, SessionState, TryOnSession
from tryon.scene_3d import OverlayRenderer

from fakes import FakeDetector, FakeLoader, FakeStream, FakeTime, box_glb, quad_asset, with_gltf_fields


def offset_face():
    """Face whose nose sits at 75% of a 640 wide frame."""
    return FacePose(
        box=FaceBox(380.0, 100.0, 200.0, 260.0),
        eye_level=240.0,
        nose_tip=(480.0, 260.0),
        rotation=Rotation(pitch=0.1, yaw=0.2, roll=0.0),
    )


class ScriptedEstimator(PoseEstimator):
    """Returns queued results in order; the last one repeats. Exceptions are raised."""

    def __init__(self, *results, gate=None):
        self.results = list(results) or [None]
        self.gate = gate
        self.calls = 0

    async def estimate(self, frame):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class Harness:
    """A session wired to fakes, with handles on what it created."""

    def __init__(self, frame, estimator=None, loader=None, camera_error=None):
        self.frame = frame
        self.streams = []
        self.renderers = []
        self.statuses = []
        self.outputs = []
        self.time = FakeTime()
        self.scheduler = ManualScheduler()
        self.estimator = estimator or ScriptedEstimator()
        self.loader = loader or FakeLoader(asset=quad_asset())
        self.camera_error = camera_error
        self.session = TryOnSession(
            estimator=self.estimator,
            loader=self.loader,
            camera_factory=self._open_camera,
            renderer_factory=self._make_renderer,
            scheduler=self.scheduler,
            display=self.outputs.append,
            on_status=self.statuses.append,
            now=self.time,
        )

    def _open_camera(self, config):
        if self.camera_error is not None:
            raise self.camera_error
        stream = FakeStream(self.frame)
        self.streams.append(stream)
        return stream

    def _make_renderer(self, config):
        renderer = OverlayRenderer(config)
        self.renderers.append(renderer)
        return renderer

    async def tick(self):
        """Run one frame and let its detection finish."""
        assert self.scheduler.step()
        task = self.session.detection_task
        if task is not None and self.estimator_is_ungated():
            await task

    def estimator_is_ungated(self):
        gate = getattr(self.estimator, "gate", None)
        return gate is None or gate.is_set()


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


class TestLifecycle:
    def test_start_goes_active_with_pending_tick(self, frame, run):
        h = Harness(frame)

        async def scenario():
            await h.session.start()
            assert h.session.state is SessionState.ACTIVE
            assert h.scheduler.pending
            assert h.streams[0].tracks == ["video"]
            assert h.renderers[0].size == (0, 0)
            await h.tick()
            assert h.renderers[0].size == (640, 480)
            assert h.session.frame_size == (640, 480)

        run(scenario())
        states = [s.state for s in h.statuses]
        assert states[0] is SessionState.INITIALIZING
        assert states[-1] is SessionState.ACTIVE

    def test_stop_releases_everything(self, frame, run):
        h = Harness(frame, loader=FakeLoader(asset=quad_asset()))

        async def scenario():
            await h.session.start("glasses.glb")
            await settle()
            await h.tick()
            asset = h.session.asset
            h.session.stop()
            await h.session.wait_stopped()
            return asset

        asset = run(scenario())
        assert h.session.state is SessionState.STOPPED
        assert h.streams[0].tracks == []
        assert h.streams[0].stop_calls == 1
        assert not h.scheduler.pending
        assert h.renderers[0].disposed
        assert h.session.renderer is None
        assert asset.disposed
        assert h.session.asset is None

    def test_stop_twice_is_harmless(self, frame, run):
        h = Harness(frame)

        async def scenario():
            await h.session.start()
            h.session.stop()
            h.session.stop()

        run(scenario())
        assert h.streams[0].stop_calls == 1
        assert h.session.state is SessionState.STOPPED

    def test_camera_error_returns_to_idle(self, frame, run):
        h = Harness(frame, camera_error=CameraError("Permission denied"))

        async def scenario():
            with pytest.raises(CameraError):
                await h.session.start("glasses.glb")

        run(scenario())
        assert h.session.state is SessionState.IDLE
        assert h.session.status.error == "Permission denied"
        assert h.session.status.asset_state == "none"
        assert not h.scheduler.pending
        assert h.renderers[0].disposed

    def test_double_start_is_rejected(self, frame, run):
        h = Harness(frame)

        async def scenario():
            await h.session.start()
            with pytest.raises(SessionError):
                await h.session.start()
            h.session.stop()

        run(scenario())

    def test_restart_after_stop(self, frame, run):
        h = Harness(frame, estimator=ScriptedEstimator(offset_face()))

        async def scenario():
            await h.session.start()
            await h.tick()
            assert h.session.smoother.pose.x > 0.0
            h.session.stop()
            await h.session.start()
            assert h.scheduler.pending
            await h.tick()

        run(scenario())
        assert h.session.state is SessionState.ACTIVE
        assert len(h.streams) == 2 and len(h.renderers) == 2
        assert h.streams[1].tracks == ["video"]
        assert h.session.smoother.pose.x == pytest.approx(0.075)


class TestPipeline:
    def test_detection_moves_pose(self, frame, run):
        h = Harness(frame, estimator=ScriptedEstimator(offset_face()))

        async def scenario():
            await h.session.start()
            await h.tick()

        run(scenario())
        pose = h.session.smoother.pose
        assert pose.x == pytest.approx(0.075)
        assert pose.rotation.yaw == pytest.approx(0.06)
        assert h.session.status.face_detected

    def test_detection_cadence(self, frame, run):
        h = Harness(frame, estimator=ScriptedEstimator(offset_face()))

        async def scenario():
            await h.session.start()
            await h.tick()
            h.time.advance(0.010)
            await h.tick()
            first = h.estimator.calls
            h.time.advance(0.025)
            await h.tick()
            return first

        first = run(scenario())
        assert first == 1
        assert h.estimator.calls == 2
        assert len(h.outputs) == 3

    def test_slow_detection_does_not_block_draws(self, frame, run):
        h = Harness(frame)

        async def scenario():
            h.estimator.gate = asyncio.Event()
            h.estimator.results = [offset_face()]
            await h.session.start()
            for _ in range(4):
                await h.tick()
                await settle()
                h.time.advance(0.05)
            in_flight = h.estimator.calls
            h.estimator.gate.set()
            await settle()
            return in_flight

        in_flight = run(scenario())
        assert in_flight == 1
        assert len(h.outputs) == 4
        assert h.session.smoother.pose.x == pytest.approx(0.075)

    def test_estimator_error_freezes_pose(self, frame, run):
        h = Harness(frame, estimator=ScriptedEstimator(offset_face(), RuntimeError("bad frame")))

        async def scenario():
            await h.session.start()
            await h.tick()
            before = h.session.smoother.pose
            h.time.advance(0.05)
            await h.tick()
            return before

        before = run(scenario())
        assert h.estimator.calls == 2
        assert h.session.smoother.pose == before
        assert not h.session.status.face_detected
        assert h.session.state is SessionState.ACTIVE

    def test_late_detection_after_stop_is_discarded(self, frame, run):
        h = Harness(frame)

        async def scenario():
            h.estimator.gate = asyncio.Event()
            h.estimator.results = [offset_face()]
            await h.session.start()
            await h.tick()
            task = h.session.detection_task
            h.session.stop()
            h.estimator.gate.set()
            await task

        run(scenario())
        assert h.session.smoother.pose.x == 0.0
        assert h.session.state is SessionState.STOPPED
        assert not h.session.status.face_detected

    def test_frame_resize(self, frame, run):
        h = Harness(frame)

        async def scenario():
            await h.session.start()
            await h.tick()
            h.streams[0].frame = np.full((240, 320, 3), 90, dtype=np.uint8)
            await h.tick()

        run(scenario())
        assert h.session.frame_size == (320, 240)
        assert h.renderers[0].camera.aspect == pytest.approx(320 / 240)
        assert h.outputs[-1].shape == (240, 320, 3)

    def test_placement_scale_reaches_transform(self, frame, run):
        h = Harness(frame, loader=FakeLoader(asset=quad_asset()))

        async def scenario():
            await h.session.start("glasses.glb")
            await settle()
            h.session.set_placement(PlacementConfig(scale=1.5))
            await h.tick()

        run(scenario())
        assert h.session.asset.transform.scale == pytest.approx((1.5, 1.5, 1.5))

    def test_always_failing_detector_uses_fallback(self, frame, run):
        detector = FakeDetector(error=RuntimeError("inference failed"))
        estimator = FacePoseEstimator(FaceDetectorConfig(), detector_factory=lambda cfg: detector)
        h = Harness(frame, estimator=estimator)

        async def scenario():
            await h.session.start()
            await estimator.ensure_loaded()
            for _ in range(3):
                await h.tick()
                h.time.advance(0.05)

        run(scenario())
        assert detector.calls == 1
        assert h.session.status.face_detected
        assert h.session.status.using_fallback
        assert h.session.state is SessionState.ACTIVE
        # fallback nose is centered horizontally
        assert h.session.smoother.pose.x == pytest.approx(0.0)


class TestAssets:
    def test_asset_failure_keeps_session_running(self, frame, run):
        h = Harness(frame, loader=FakeLoader(error=AssetLoadError("corrupt file")))

        async def scenario():
            await h.session.start("broken.glb")
            await settle()
            await h.tick()

        run(scenario())
        assert h.session.state is SessionState.ACTIVE
        assert h.session.status.asset_state == "failed"
        assert h.session.status.asset_error == "corrupt file"
        assert h.session.status.error is None
        assert np.array_equal(h.outputs[-1], frame)

    def test_late_asset_attaches_without_restart(self, frame, run):
        async def scenario():
            gate = asyncio.Event()
            h = Harness(frame, loader=FakeLoader(asset=quad_asset(), gate=gate))
            await h.session.start("glasses.glb")
            await h.tick()
            loading = h.session.status
            gate.set()
            await settle()
            h.time.advance(0.05)
            await h.tick()
            return h, loading

        h, loading = run(scenario())
        assert loading.asset_state == "loading"
        assert np.array_equal(h.outputs[0], frame)
        assert h.session.status.asset_state == "loaded"
        assert not np.array_equal(h.outputs[-1], frame)
        assert len(h.streams) == 1 and len(h.renderers) == 1

    def test_change_model(self, frame, run):
        loader = FakeLoader(asset=quad_asset())
        h = Harness(frame, loader=loader)

        async def scenario():
            await h.session.start("a.glb")
            await settle()
            first = h.session.asset
            loader.asset = quad_asset((255, 0, 0))
            task = h.session.change_model("b.glb")
            assert first.disposed
            await task
            await h.tick()
            return first

        first = run(scenario())
        assert loader.urls == ["a.glb", "b.glb"]
        assert h.session.asset is not first
        assert h.session.asset.url == "quad.glb"
        assert h.session.status.asset_state == "loaded"
        assert h.scheduler.pending

    def test_change_model_requires_active_session(self, frame, run):
        h = Harness(frame)

        async def scenario():
            with pytest.raises(SessionError):
                h.session.change_model("a.glb")

        run(scenario())


class TestFailurePaths:
    def test_malformed_animation_glb_through_session(self, frame, run, tmp_path):
        path = tmp_path / "odd.glb"
        path.write_bytes(with_gltf_fields(box_glb(), animations=[{"samplers": [{"input": "0"}]}]))
        h = Harness(frame, loader=AssetLoader())

        async def scenario():
            await h.session.start()
            await h.session.change_model(str(path))
            await h.tick()

        run(scenario())
        assert h.session.status.asset_state == "loaded"
        assert h.session.status.asset_error is None

    def test_unexpected_loader_error_is_a_failed_load(self, frame, run):
        h = Harness(frame, loader=FakeLoader(error=TypeError("'>=' not supported")))

        async def scenario():
            await h.session.start()
            await h.session.change_model("odd.glb")
            await h.tick()

        run(scenario())
        status = h.session.status
        assert status.state is SessionState.ACTIVE
        assert status.asset_state == "failed"
        assert "not supported" in status.asset_error
        assert np.array_equal(h.outputs[-1], frame)

    def test_unexpected_camera_error_returns_to_idle(self, frame, run):
        h = Harness(frame, camera_error=OSError("device busy"))

        async def scenario():
            with pytest.raises(CameraError) as info:
                await h.session.start("glasses.glb")
            await h.session.wait_stopped()
            return info.value

        error = run(scenario())
        assert isinstance(error.__cause__, OSError)
        assert h.session.state is SessionState.IDLE
        assert "device busy" in h.session.status.error
        assert h.renderers[0].disposed
        assert h.session.asset is None
        assert not h.scheduler.pending

    def test_stop_drops_detector_wait_but_not_the_load(self, frame, run):
        release = threading.Event()

        def factory(cfg):
            release.wait(timeout=5.0)
            return FakeDetector(face=None)

        estimator = FacePoseEstimator(FaceDetectorConfig(), detector_factory=factory)
        h = Harness(frame, estimator=estimator)

        async def scenario():
            await h.session.start()
            wait = h.session._detector_task
            assert wait is not None and not wait.done()
            h.session.stop()
            await settle()
            cancelled = wait.cancelled()
            release.set()
            return cancelled, await estimator.ensure_loaded()

        cancelled, loaded = run(scenario())
        assert cancelled
        assert h.session._detector_task is None
        assert loaded


class TestFrameScheduler:
    def test_ticks_until_stopped(self, run):
        ticks = []

        async def scenario():
            scheduler = FrameScheduler(interval=0.005)
            scheduler.start(lambda: ticks.append(1))
            assert scheduler.pending
            await asyncio.sleep(0.1)
            running = len(ticks)
            scheduler.stop()
            assert not scheduler.pending
            await asyncio.sleep(0.05)
            return running

        running = run(scenario())
        assert running > 0
        assert len(ticks) == running

    def test_failing_tick_still_reschedules(self, run):
        calls = []

        def tick():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("draw failed")

        async def scenario():
            loop = asyncio.get_running_loop()
            errors = []
            loop.set_exception_handler(lambda loop, context: errors.append(context.get("exception")))
            scheduler = FrameScheduler(interval=0.005)
            scheduler.start(tick)
            await asyncio.sleep(0.1)
            scheduler.stop()
            return errors

        errors = run(scenario())
        assert len(calls) > 1
        assert isinstance(errors[0], RuntimeError)

    def test_double_start_is_rejected(self, run):
        async def scenario():
            scheduler = FrameScheduler(interval=0.005)
            scheduler.start(lambda: None)
            with pytest.raises(SessionError):
                scheduler.start(lambda: None)
            scheduler.stop()

        run(scenario())

    def test_session_stop_leaves_no_pending_tick(self, frame, run):
        scheduler = FrameScheduler(interval=0.005)
        outputs = []
        session = TryOnSession(
            estimator=ScriptedEstimator(),
            loader=FakeLoader(asset=quad_asset()),
            camera_factory=lambda config: FakeStream(frame),
            scheduler=scheduler,
            display=outputs.append,
        )

        async def scenario():
            await session.start()
            await asyncio.sleep(0.1)
            drawn = len(outputs)
            session.stop()
            assert not scheduler.pending
            await asyncio.sleep(0.05)
            return drawn

        drawn = run(scenario())
        assert drawn > 0
        assert len(outputs) == drawn
        assert session.state is SessionState.STOPPED
