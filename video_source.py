import cv2
import time
import numpy as np
import mss
import logging
from typing import Optional

from stream_protocol import CAPTURE_WIDTH, CAPTURE_HEIGHT

logger = logging.getLogger(__name__)

class ScreenCapturer:
    def __init__(self, monitor_idx=1, width=CAPTURE_WIDTH, height=CAPTURE_HEIGHT):
        self.sct = mss.mss()
        try:
            self.monitor = self.sct.monitors[monitor_idx]
        except IndexError:
            logger.warning(f"Monitor {monitor_idx} not found, using primary.")
            self.monitor = self.sct.monitors[1] # usually 1 is the first monitor in mss

        self.target_res = (width, height)

    def capture_frame(self) -> Optional[np.ndarray]:
        """
        Captures the screen and returns a resized BGR frame, or None on failure.
        """
        try:
            t0 = time.time()
            sct_img = self.sct.grab(self.monitor)
            # BGRA -> BGR
            frame = np.array(sct_img)
            frame = cv2.cvtColor(frame, cv2.COLOR_BGRA2BGR)
            frame = cv2.resize(frame, self.target_res)

            dt = (time.time() - t0) * 1000
            if dt > 30:
                logger.warning(f"Slow Capture: {dt:.1f}ms")
            return frame
        except mss.exception.ScreenShotError as e:
            logger.error(f"Screen capture failed: {e}")
            return None

    def close(self):
        self.sct.close()


class CameraCapturer:
    """Default camera through OpenCV, at a VGA-sized preset."""

    def __init__(self, device_idx=0, width=CAPTURE_WIDTH, height=CAPTURE_HEIGHT):
        self.cap = cv2.VideoCapture(device_idx)
        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        if not self.cap.isOpened():
            raise RuntimeError(f"Failed to open camera {device_idx}")

    def capture_frame(self) -> Optional[np.ndarray]:
        ok, frame = self.cap.read()
        if not ok:
            logger.error("Camera read failed")
            return None
        return frame

    def close(self):
        self.cap.release()


class TestPatternSource:
    """Synthetic frames (gradient + moving bar) for headless runs and tests."""

    __test__ = False  # not a pytest class

    def __init__(self, width=CAPTURE_WIDTH, height=CAPTURE_HEIGHT):
        self.width = width
        self.height = height
        self.frame_index = 0
        gradient = np.linspace(0, 255, width, dtype=np.uint8)
        self._background = np.dstack([np.tile(gradient, (height, 1))] * 3)

    def capture_frame(self) -> np.ndarray:
        frame = self._background.copy()
        bar_w = max(1, self.width // 16)
        x = (self.frame_index * 8) % max(1, self.width - bar_w)
        frame[:, x:x + bar_w] = (0, 0, 255)
        cv2.putText(frame, f"#{self.frame_index}", (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (255, 255, 255), 2)
        self.frame_index += 1
        return frame

    def close(self):
        pass
