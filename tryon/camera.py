"""Camera capture with a background reader thread."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional
import logging
import threading
import time

import cv2
import numpy as np

from tryon.errors import CameraError

logger = logging.getLogger(__name__)


@dataclass
class CameraConfig:
    """Configuration for the live camera stream."""

    index: int = 0
    width: Optional[int] = 640
    height: Optional[int] = 480
    fps: Optional[float] = None
    mirror: bool = True  # "user" facing mode: selfie view
    stop_timeout: float = 1.0  # seconds to wait for the reader thread


class VideoStream:
    """Keeps the most recent camera frame so reads never wait on device IO."""

    def __init__(self, cap: cv2.VideoCapture, config: CameraConfig, first_frame: np.ndarray) -> None:
        """Take ownership of an opened capture and start the reader thread."""
        self.cap = cap
        self.config = config
        self.frame: Optional[np.ndarray] = first_frame
        self.lock = threading.Lock()
        self.running = True
        self._reader_done = False
        self._release_deferred = False
        self.thread = threading.Thread(target=self._reader, name="camera-reader", daemon=True)
        self.thread.start()

    def _reader(self) -> None:
        """Background loop: overwrite the latest frame as fast as the device delivers."""
        while self.running:
            ok, frame = self.cap.read()
            if ok:
                with self.lock:
                    self.frame = frame
            else:
                # Device hiccup, retry shortly
                time.sleep(0.01)

        with self.lock:
            self._reader_done = True
            deferred = self._release_deferred
        if deferred:
            self.cap.release()
            logger.info("Camera %s released after reader exit", self.config.index)

    @property
    def tracks(self) -> List[str]:
        """Live video tracks (empty once stopped)."""
        return ["video"] if self.running else []

    @property
    def frame_size(self) -> tuple[int, int]:
        """Reported (width, height) of the stream, 0 while unknown."""
        with self.lock:
            if self.frame is None:
                return 0, 0
            h, w = self.frame.shape[:2]
        return w, h

    def read(self) -> Optional[np.ndarray]:
        """Return a copy of the newest frame, mirrored for the user facing mode."""
        with self.lock:
            if self.frame is None:
                return None
            frame = self.frame.copy()
        if self.config.mirror:
            frame = cv2.flip(frame, 1)
        return frame

    def stop(self) -> None:
        """Stop the reader and release the device.

        If the reader is still blocked in a device read after `stop_timeout`,
        the release is left to the reader thread when that read returns.
        """
        if not self.running:
            return
        self.running = False
        if self.thread.is_alive() and self.thread is not threading.current_thread():
            self.thread.join(timeout=self.config.stop_timeout)
        with self.lock:
            if not self._reader_done:
                self._release_deferred = True
        if self._release_deferred:
            logger.warning("Camera %s reader still running; release deferred", self.config.index)
            return
        self.cap.release()
        logger.info("Camera %s released", self.config.index)


def open_camera(config: CameraConfig) -> VideoStream:
    """Open the configured device and return a running stream."""
    cap = cv2.VideoCapture(config.index)
    if not cap.isOpened():
        raise CameraError(f"Could not open camera {config.index}.")

    if config.width is not None:
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, config.width)
    if config.height is not None:
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, config.height)
    if config.fps is not None:
        cap.set(cv2.CAP_PROP_FPS, config.fps)

    ok, frame = cap.read()
    if not ok or frame is None:
        cap.release()
        raise CameraError(f"Could not read from camera {config.index}.")

    h, w = frame.shape[:2]
    logger.info("Camera %s streaming at %dx%d", config.index, w, h)
    return VideoStream(cap, config, frame)
