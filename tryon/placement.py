"""Writes the glasses transform from the smoothed pose and user placement."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from tryon.pose_smoother import PlacementConfig, SmoothedPose

Vec3 = Tuple[float, float, float]


@dataclass(frozen=True)
class Transform:
    """Object transform: rotation is Euler XYZ (pitch, yaw, roll)."""

    position: Vec3 = (0.0, 0.0, 0.0)
    rotation: Vec3 = (0.0, 0.0, 0.0)
    scale: Vec3 = (1.0, 1.0, 1.0)


def compute_transform(pose: SmoothedPose, config: PlacementConfig) -> Transform:
    s = pose.scale * config.scale
    return Transform(
        position=(pose.x, pose.y, pose.z),
        rotation=(pose.rotation.pitch, pose.rotation.yaw, pose.rotation.roll),
        scale=(s, s, s),
    )


def place(asset, pose: SmoothedPose, config: PlacementConfig) -> Transform:
    """Set `asset.transform`; the only writer of an asset's transform."""
    transform = compute_transform(pose, config)
    asset.transform = transform
    return transform
