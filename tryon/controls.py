"""OpenCV trackbars for placement and a status overlay for the try-on window."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from tryon.pose_smoother import PlacementConfig
from tryon.render_loop import SessionState, SessionStatus


@dataclass
class ControlsConfig:
    """Slider ranges (percent) and overlay styling."""

    scale_range: Tuple[int, int] = (50, 150)
    offset_range: Tuple[int, int] = (-50, 50)
    font_scale: float = 0.6
    text_color: Tuple[int, int, int] = (255, 255, 255)  # BGR white
    error_color: Tuple[int, int, int] = (0, 0, 255)  # BGR red
    line_thickness: int = 1


def placement_from_sliders(scale_pct: int, x_pct: int, y_pct: int) -> PlacementConfig:
    """Map slider percentages to a clamped PlacementConfig."""
    return PlacementConfig(scale=scale_pct / 100.0, x=x_pct / 100.0, y=y_pct / 100.0)


class PlacementControls:
    """Scale and x/y trackbars attached to a HighGUI window.

    OpenCV trackbars start at 0, so offsets are stored shifted by the lower
    bound of their range.
    """

    def __init__(self, window: str, config: Optional[ControlsConfig] = None, initial: Optional[PlacementConfig] = None) -> None:
        self.window = window
        self.config = config or ControlsConfig()
        initial = initial or PlacementConfig()

        lo_s, hi_s = self.config.scale_range
        lo_o, hi_o = self.config.offset_range
        self._offset_base = lo_o

        cv2.namedWindow(window, cv2.WINDOW_AUTOSIZE)
        cv2.createTrackbar("scale %", window, int(round(initial.scale * 100)), hi_s, lambda _: None)
        cv2.setTrackbarMin("scale %", window, lo_s)
        cv2.createTrackbar("x %", window, int(round(initial.x * 100)) - lo_o, hi_o - lo_o, lambda _: None)
        cv2.createTrackbar("y %", window, int(round(initial.y * 100)) - lo_o, hi_o - lo_o, lambda _: None)

    def read(self) -> PlacementConfig:
        scale = cv2.getTrackbarPos("scale %", self.window)
        x = cv2.getTrackbarPos("x %", self.window) + self._offset_base
        y = cv2.getTrackbarPos("y %", self.window) + self._offset_base
        return placement_from_sliders(scale, x, y)


def status_lines(status: SessionStatus) -> list[tuple[str, bool]]:
    """Human-readable feedback lines; the flag marks errors."""
    lines: list[tuple[str, bool]] = []
    if status.error:
        lines.append((f"Camera error: {status.error}", True))
    if status.state is SessionState.INITIALIZING:
        lines.append(("Starting camera...", False))

    if status.asset_state == "loading":
        if status.load_progress is None:
            lines.append(("Loading 3D model...", False))
        else:
            lines.append((f"Loading 3D model: {int(round(status.load_progress * 100))}%", False))
    elif status.asset_state == "failed":
        lines.append(("Error loading model", True))
    elif status.asset_state == "loaded" and not status.face_detected:
        lines.append(("Position your face in the center of the camera", False))

    if status.state is SessionState.ACTIVE and status.using_fallback and status.face_detected:
        lines.append(("Using simplified face tracking", False))
    return lines


def draw_status(frame: np.ndarray, status: SessionStatus, config: Optional[ControlsConfig] = None) -> np.ndarray:
    """Write status lines in the top-left corner of the frame (in place)."""
    config = config or ControlsConfig()
    y = 24
    for text, is_error in status_lines(status):
        color = config.error_color if is_error else config.text_color
        cv2.putText(
            frame,
            text,
            (10, y),
            cv2.FONT_HERSHEY_SIMPLEX,
            config.font_scale,
            color,
            config.line_thickness,
            cv2.LINE_AA,
        )
        y += int(28 * config.font_scale / 0.6)
    return frame
