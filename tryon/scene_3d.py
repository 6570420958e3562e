"""Perspective projection and rasterization of the glasses over a camera frame."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple
import logging
import math

import cv2
import numpy as np

from tryon.placement import Transform

logger = logging.getLogger(__name__)


@dataclass
class Scene3DConfig:
    """Configuration for the scene camera and lighting."""

    fov_deg: float = 50.0
    near: float = 0.1
    far: float = 1000.0
    camera_z: float = 2.0
    default_aspect: float = 16.0 / 9.0
    ambient: float = 0.7
    directional: float = 0.8
    light_direction: Tuple[float, float, float] = (0.0, 1.0, 1.0)


def euler_matrix(pitch: float, yaw: float, roll: float) -> np.ndarray:
    """Rotation matrix for Euler angles applied in XYZ order."""
    cp, sp = math.cos(pitch), math.sin(pitch)
    cy, sy = math.cos(yaw), math.sin(yaw)
    cr, sr = math.cos(roll), math.sin(roll)

    rx = np.array([[1.0, 0.0, 0.0], [0.0, cp, -sp], [0.0, sp, cp]], dtype=np.float64)
    ry = np.array([[cy, 0.0, sy], [0.0, 1.0, 0.0], [-sy, 0.0, cy]], dtype=np.float64)
    rz = np.array([[cr, -sr, 0.0], [sr, cr, 0.0], [0.0, 0.0, 1.0]], dtype=np.float64)

    return rx @ ry @ rz


def apply_transform(vertices: np.ndarray, transform: Transform) -> np.ndarray:
    """Scale, rotate, then translate object-space vertices into the world."""
    rot = euler_matrix(*transform.rotation)
    scaled = np.asarray(vertices, dtype=np.float64) * np.asarray(transform.scale, dtype=np.float64)
    return scaled @ rot.T + np.asarray(transform.position, dtype=np.float64)


class PerspectiveCamera:
    """Pinhole camera on the +z axis looking toward -z."""

    def __init__(self, config: Scene3DConfig) -> None:
        self.config = config
        self.fov_deg = config.fov_deg
        self.aspect = config.default_aspect
        self.near = config.near
        self.far = config.far
        self.z = config.camera_z
        self.focal = 1.0
        self.update_projection_matrix()

    def update_projection_matrix(self) -> None:
        self.focal = 1.0 / math.tan(math.radians(self.fov_deg) / 2.0)

    def project(self, points: np.ndarray, width: int, height: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return pixel coordinates (N, 2) and view depth (N,) for world points."""
        depth = self.z - points[:, 2]
        safe = np.where(np.abs(depth) < 1e-9, 1e-9, depth)

        ndc_x = (self.focal / self.aspect) * points[:, 0] / safe
        ndc_y = self.focal * points[:, 1] / safe

        u = (ndc_x + 1.0) * 0.5 * width
        v = (1.0 - ndc_y) * 0.5 * height
        return np.stack([u, v], axis=1), depth


class OverlayRenderer:
    """Draws shaded, depth-sorted triangles of the asset onto a copy of the frame."""

    def __init__(self, config: Optional[Scene3DConfig] = None) -> None:
        self.config = config or Scene3DConfig()
        self.camera = PerspectiveCamera(self.config)
        self.size: Tuple[int, int] = (0, 0)
        self.disposed = False
        self._buffers: Dict[int, np.ndarray] = {}

        light = np.asarray(self.config.light_direction, dtype=np.float64)
        self._light = light / (np.linalg.norm(light) or 1.0)

    def set_size(self, width: int, height: int) -> None:
        """Match the output to the camera frame, preserving its aspect ratio."""
        if width <= 0 or height <= 0:
            return
        self.size = (width, height)
        self.camera.aspect = width / height
        self.camera.update_projection_matrix()
        logger.debug("Renderer resized to %dx%d", width, height)

    def _colors(self, asset) -> np.ndarray:
        key = id(asset)
        colors = self._buffers.get(key)
        if colors is None or colors.shape[0] != len(asset.faces):
            colors = asset.face_colors.astype(np.float64)
            self._buffers[key] = colors
        return colors

    def render(self, frame: np.ndarray, asset=None) -> np.ndarray:
        """Composite the asset over the frame; without an asset the frame passes through."""
        output = frame.copy()
        if self.disposed or asset is None or getattr(asset, "disposed", False) or len(asset.faces) == 0:
            return output

        height, width = output.shape[:2]
        if self.size != (width, height):
            self.set_size(width, height)

        world = apply_transform(asset.vertices, asset.transform)
        uv, depth = self.camera.project(world, width, height)

        faces = asset.faces
        tri_depth = depth[faces]
        visible = np.all(tri_depth > self.camera.near, axis=1) & np.all(tri_depth < self.camera.far, axis=1)
        if not np.any(visible):
            return output

        tri = world[faces]
        normals = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])
        lengths = np.linalg.norm(normals, axis=1)
        lengths[lengths < 1e-12] = 1.0
        # Two-sided lighting: thin frames are seen from both sides.
        lambert = np.abs((normals / lengths[:, None]) @ self._light)
        intensity = np.clip(self.config.ambient + self.config.directional * lambert, 0.0, 1.0)
        shaded = np.clip(self._colors(asset) * intensity[:, None], 0, 255).astype(np.uint8)

        # Painter's algorithm: farthest triangles first
        order = np.argsort(-tri_depth.mean(axis=1))
        pts = np.round(uv[faces]).astype(np.int32)
        for idx in order:
            if not visible[idx]:
                continue
            cv2.fillConvexPoly(output, pts[idx], tuple(int(c) for c in shaded[idx]), cv2.LINE_AA)

        return output

    def dispose(self) -> None:
        """Release cached buffers; later renders pass frames through."""
        self._buffers.clear()
        self.disposed = True
