"""Exponential smoothing of face poses into glasses placement targets."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

from tryon.face_detector import FacePose, Rotation


def _clamp(value: float, low: float, high: float) -> float:
    return low if value < low else (high if value > high else value)


@dataclass(frozen=True)
class PlacementConfig:
    """User-adjustable placement: uniform scale and position offsets."""

    scale: float = 1.0
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    SCALE_RANGE = (0.5, 1.5)
    OFFSET_RANGE = (-0.5, 0.5)

    def __post_init__(self) -> None:
        object.__setattr__(self, "scale", _clamp(float(self.scale), *self.SCALE_RANGE))
        for axis in ("x", "y", "z"):
            object.__setattr__(self, axis, _clamp(float(getattr(self, axis)), *self.OFFSET_RANGE))


@dataclass(frozen=True)
class SmoothedPose:
    """Running smoothed pose in scene units; `scale` is the face-width base scale."""

    x: float = 0.0
    y: float = 0.0
    z: float = -0.5
    rotation: Rotation = field(default_factory=Rotation)
    scale: float = 1.0


@dataclass
class SmootherConfig:
    """Constants mapping detections into scene space and blending them."""

    smoothing_factor: float = 0.3  # higher = snappier, lower = steadier
    horizontal_scale: float = 0.5
    vertical_scale: float = 0.8
    depth: float = -0.5
    size_factor: float = 2.0
    smooth_scale: bool = False  # scale follows the raw face width unless enabled

    def __post_init__(self) -> None:
        if not 0.0 < self.smoothing_factor <= 1.0:
            raise ValueError(f"smoothing_factor must be in (0, 1], got {self.smoothing_factor}")


def blend(previous: float, target: float, factor: float) -> float:
    return previous + (target - previous) * factor


class TemporalSmoother:
    """Blends each new target into the last smoothed pose; holds on missing faces."""

    def __init__(self, config: Optional[SmootherConfig] = None) -> None:
        self.config = config or SmootherConfig()
        self.pose = SmoothedPose(z=self.config.depth)

    def reset(self) -> SmoothedPose:
        """Return to the rest pose (start of a try-on session)."""
        self.pose = SmoothedPose(z=self.config.depth)
        return self.pose

    def target_from_face(
        self,
        face: FacePose,
        frame_width: int,
        frame_height: int,
        placement: PlacementConfig,
    ) -> SmoothedPose:
        """Map a detection to a scene-space target, user offsets included."""
        cfg = self.config
        nose_x = (face.nose_tip[0] / frame_width) * 2.0 - 1.0
        eye_y = (face.eye_level / frame_height) * 2.0 - 1.0

        return SmoothedPose(
            x=nose_x * cfg.horizontal_scale + placement.x,
            # Image y grows downwards, scene y grows upwards
            y=-eye_y * cfg.vertical_scale + placement.y,
            z=cfg.depth + placement.z,
            rotation=face.rotation,
            scale=(face.box.width / frame_width) * cfg.size_factor,
        )

    def update(self, target: Optional[SmoothedPose]) -> SmoothedPose:
        """Move every component a fixed fraction toward the target; None freezes."""
        if target is None:
            return self.pose

        k = self.config.smoothing_factor
        prev = self.pose
        rotation = Rotation(
            pitch=blend(prev.rotation.pitch, target.rotation.pitch, k),
            yaw=blend(prev.rotation.yaw, target.rotation.yaw, k),
            roll=blend(prev.rotation.roll, target.rotation.roll, k),
        )
        scale = blend(prev.scale, target.scale, k) if self.config.smooth_scale else target.scale

        self.pose = replace(
            prev,
            x=blend(prev.x, target.x, k),
            y=blend(prev.y, target.y, k),
            z=blend(prev.z, target.z, k),
            rotation=rotation,
            scale=scale,
        )
        return self.pose
