import cv2
import time
import logging

from codec import DecodedFrame

logger = logging.getLogger(__name__)

class VideoRenderer:
    def __init__(self, window_name="Peer Stream", headless=False):
        self.window_name = window_name
        self.headless = headless
        self.frames_rendered = 0
        self.last_frame: DecodedFrame = None

        # OSD Stats
        self.fps_counter = 0
        self.bytes_counter = 0
        self.last_update_time = time.time()
        self.display_text_fps = "FPS: 0"
        self.display_text_kbps = "Rate: 0 KB/s"
        self.display_text_res = "Res: -"

    def render(self, frame: DecodedFrame):
        """
        Shows one decoded frame (on-screen stats drawn on a copy).
        """
        if frame is None:
            return

        self.frames_rendered += 1
        self.last_frame = frame
        img = frame.image

        self.fps_counter += 1
        self.bytes_counter += img.nbytes
        now = time.time()
        elapsed = now - self.last_update_time
        if elapsed >= 1.0:
            fps = self.fps_counter / elapsed
            kbps = (self.bytes_counter / 1024) / elapsed
            h, w = img.shape[:2]

            self.display_text_fps = f"FPS: {fps:.1f}"
            self.display_text_kbps = f"Raw: {kbps:.1f} KB/s"
            self.display_text_res = f"Res: {w}x{h} (session {frame.session_id})"

            self.last_update_time = now
            self.fps_counter = 0
            self.bytes_counter = 0

        if self.headless:
            return

        try:
            t0 = time.time()
            osd = img.copy()

            font = cv2.FONT_HERSHEY_SIMPLEX
            font_scale = 0.6
            thickness = 2
            color = (0, 255, 0) # Green
            outline_color = (0, 0, 0) # Black

            def draw_text(text, pos):
                cv2.putText(osd, text, pos, font, font_scale, outline_color, thickness + 2)
                cv2.putText(osd, text, pos, font, font_scale, color, thickness)

            draw_text(self.display_text_fps, (10, 30))
            draw_text(self.display_text_kbps, (10, 60))
            draw_text(self.display_text_res, (10, 90))

            # Note: cv2.imshow requires a GUI environment.
            cv2.imshow(self.window_name, osd)
            cv2.waitKey(1)

            dt_total = (time.time() - t0) * 1000
            if dt_total > 30:
                logger.warning(f"Slow Render: {dt_total:.1f}ms")
        except cv2.error as e:
            logger.error(f"Render error: {e}")

    def close(self):
        if self.headless or self.frames_rendered == 0:
            return
        try:
            cv2.destroyWindow(self.window_name)
        except cv2.error as e:
            logger.debug(f"destroyWindow: {e}")
