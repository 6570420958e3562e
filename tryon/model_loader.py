"""Glasses model loading, normalization and animation playback."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Tuple
from urllib.parse import unquote, urlparse
import asyncio
import json
import logging
import struct
import time

import numpy as np
import requests
import trimesh

from tryon.errors import AssetLoadError
from tryon.placement import Transform

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, Optional[int]], None]  # (bytes loaded, total or None)

GLB_MAGIC = b"glTF"
GLB_CHUNK_JSON = 0x4E4F534A


@dataclass(frozen=True)
class AnimationClip:
    """A named animation and its length in seconds."""

    name: str
    duration: float


class AnimationMixer:
    """Plays one clip on a loop; time only advances through `update`."""

    def __init__(self, clip: AnimationClip) -> None:
        self.clip = clip
        self.time = 0.0
        self.playing = False

    def play(self) -> None:
        self.playing = True

    def stop(self) -> None:
        self.playing = False
        self.time = 0.0

    def update(self, delta: float) -> float:
        if self.playing and self.clip.duration > 0:
            self.time = (self.time + delta) % self.clip.duration
        return self.time


class Clock:
    """Seconds elapsed between successive `get_delta` calls (0.0 on the first)."""

    def __init__(self, now: Callable[[], float] = time.monotonic) -> None:
        self._now = now
        self._last: Optional[float] = None

    def get_delta(self) -> float:
        now = self._now()
        delta = 0.0 if self._last is None else now - self._last
        self._last = now
        return delta


@dataclass
class GlassesAsset:
    """Normalized glasses geometry ready for the renderer."""

    vertices: np.ndarray  # (N, 3), centered, largest extent 1.0
    faces: np.ndarray  # (M, 3) vertex indices
    face_colors: np.ndarray  # (M, 3) BGR uint8
    url: str = ""
    clip: Optional[AnimationClip] = None
    mixer: Optional[AnimationMixer] = None
    transform: Transform = field(default_factory=Transform)
    disposed: bool = False

    @property
    def bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        return self.vertices.min(axis=0), self.vertices.max(axis=0)

    def dispose(self) -> None:
        """Drop geometry buffers; the asset cannot be drawn afterwards."""
        self.vertices = np.zeros((0, 3), dtype=np.float32)
        self.faces = np.zeros((0, 3), dtype=np.int64)
        self.face_colors = np.zeros((0, 3), dtype=np.uint8)
        if self.mixer is not None:
            self.mixer.stop()
        self.disposed = True


def normalize_vertices(vertices: np.ndarray) -> Tuple[np.ndarray, np.ndarray, float]:
    """Center on the bounding-box centroid and scale the largest extent to 1."""
    vertices = np.asarray(vertices, dtype=np.float64)
    if vertices.ndim != 2 or vertices.shape[0] == 0 or vertices.shape[1] != 3:
        raise AssetLoadError("Model has no geometry.")

    min_bounds = vertices.min(axis=0)
    max_bounds = vertices.max(axis=0)
    center = (min_bounds + max_bounds) / 2.0
    max_dim = float(np.max(max_bounds - min_bounds))
    if not np.isfinite(max_dim) or max_dim <= 0.0:
        raise AssetLoadError("Model has zero extent.")

    scale = 1.0 / max_dim
    return (vertices - center) * scale, center, scale


def read_animation_clips(data: bytes) -> List[AnimationClip]:
    """Read animation names and durations from a binary glTF JSON chunk."""
    if len(data) < 20 or data[:4] != GLB_MAGIC:
        return []
    chunk_length, chunk_type = struct.unpack_from("<II", data, 12)
    if chunk_type != GLB_CHUNK_JSON:
        return []
    try:
        gltf = json.loads(data[20:20 + chunk_length].decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return []

    if not isinstance(gltf, dict):
        return []
    try:
        return _clips_from_gltf(gltf)
    except (TypeError, AttributeError, ValueError, IndexError) as exc:
        logger.warning("Ignoring malformed animation data: %s", exc)
        return []


def _clips_from_gltf(gltf: dict) -> List[AnimationClip]:
    accessors = gltf.get("accessors") or []
    clips: List[AnimationClip] = []
    for i, anim in enumerate(gltf.get("animations") or []):
        if not isinstance(anim, dict):
            continue
        duration = 0.0
        for sampler in anim.get("samplers") or []:
            if not isinstance(sampler, dict):
                continue
            idx = sampler.get("input")
            # bool is an int subclass
            if not isinstance(idx, int) or isinstance(idx, bool) or not 0 <= idx < len(accessors):
                continue
            accessor = accessors[idx]
            if not isinstance(accessor, dict):
                continue
            upper = accessor.get("max") or [0.0]
            duration = max(duration, float(upper[0]))
        name = anim.get("name")
        clips.append(AnimationClip(name=name if isinstance(name, str) else f"animation_{i}", duration=duration))
    return clips


def _face_colors(mesh: trimesh.Trimesh, default: Tuple[int, int, int]) -> np.ndarray:
    """Per-face BGR colors from vertex/face colors or the material base color."""
    visual = mesh.visual
    try:
        if hasattr(visual, "to_color"):
            visual = visual.to_color()
        rgba = np.asarray(visual.face_colors, dtype=np.uint8)
    except (AttributeError, ValueError, IndexError):
        rgba = None

    if rgba is None or rgba.shape[0] != len(mesh.faces):
        return np.tile(np.array(default, dtype=np.uint8), (len(mesh.faces), 1))
    return np.ascontiguousarray(rgba[:, 2::-1])


@dataclass
class AssetLoaderConfig:
    """Configuration for fetching and parsing glasses models."""

    chunk_size: int = 1 << 16
    timeout: float = 30.0
    default_color: Tuple[int, int, int] = (40, 40, 40)  # BGR


class AssetLoader:
    """Fetches a model from a path or URL and returns a normalized GlassesAsset."""

    def __init__(self, config: Optional[AssetLoaderConfig] = None) -> None:
        self.config = config or AssetLoaderConfig()

    def fetch(self, url: str, progress: Optional[ProgressCallback] = None) -> bytes:
        """Read the raw model bytes, reporting progress per chunk."""
        parsed = urlparse(url)
        if parsed.scheme in ("http", "https"):
            try:
                with requests.get(url, stream=True, timeout=self.config.timeout) as response:
                    response.raise_for_status()
                    length = response.headers.get("Content-Length")
                    total = int(length) if length and length.isdigit() else None
                    buf = bytearray()
                    for chunk in response.iter_content(chunk_size=self.config.chunk_size):
                        buf.extend(chunk)
                        if progress is not None:
                            progress(len(buf), total)
                    return bytes(buf)
            except requests.RequestException as exc:
                raise AssetLoadError(f"Could not download {url}: {exc}") from exc

        path = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(url)
        try:
            total = path.stat().st_size
            buf = bytearray()
            with open(path, "rb") as fh:
                while True:
                    chunk = fh.read(self.config.chunk_size)
                    if not chunk:
                        break
                    buf.extend(chunk)
                    if progress is not None:
                        progress(len(buf), total)
        except OSError as exc:
            raise AssetLoadError(f"Could not read {path}: {exc}") from exc
        return bytes(buf)

    def parse(self, data: bytes, url: str = "") -> GlassesAsset:
        """Build a normalized asset from model bytes."""
        suffix = Path(urlparse(url).path).suffix.lower().lstrip(".")
        file_type = suffix or "glb"
        try:
            mesh = trimesh.load(trimesh.util.wrap_as_stream(data), file_type=file_type, force="mesh")
        except Exception as exc:  # trimesh surfaces malformed files through many exception types
            raise AssetLoadError(f"Could not parse model {url or '<bytes>'}: {exc}") from exc

        if not isinstance(mesh, trimesh.Trimesh) or len(mesh.faces) == 0:
            raise AssetLoadError(f"Model {url or '<bytes>'} contains no triangles.")

        vertices, center, scale = normalize_vertices(mesh.vertices)
        asset = GlassesAsset(
            vertices=vertices.astype(np.float32),
            faces=np.asarray(mesh.faces, dtype=np.int64),
            face_colors=_face_colors(mesh, self.config.default_color),
            url=url,
        )

        clips = read_animation_clips(data) if file_type == "glb" else []
        if clips:
            asset.clip = clips[0]
            asset.mixer = AnimationMixer(asset.clip)
            asset.mixer.play()

        logger.info(
            "Model %s loaded: %d vertices, %d faces, center %s, scale %.4f%s",
            url or "<bytes>",
            len(asset.vertices),
            len(asset.faces),
            np.round(center, 4).tolist(),
            scale,
            f", animation '{asset.clip.name}'" if asset.clip else "",
        )
        return asset

    def load(self, url: str, progress: Optional[ProgressCallback] = None) -> GlassesAsset:
        return self.parse(self.fetch(url, progress), url)

    async def load_async(self, url: str, progress: Optional[ProgressCallback] = None) -> GlassesAsset:
        """Load off the event loop; progress callbacks fire on the worker thread."""
        return await asyncio.to_thread(self.load, url, progress)
