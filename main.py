import asyncio
import socket
import argparse
import logging

from dashboard import start_dashboard
from peer_manager import ROLE_HOST, ROLE_VIEWER
from stream_node import StreamNode
from stream_protocol import (
    DEFAULT_DASHBOARD_PORT,
    DEFAULT_FPS,
    DEFAULT_JPEG_QUALITY,
    DEFAULT_PORT,
    KEYFRAME_INTERVAL,
)
from transport import TransportError
from video_player import VideoRenderer
from video_source import CameraCapturer, ScreenCapturer, TestPatternSource

logger = logging.getLogger("Main")

def configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler("stream_node.log", mode='w')
        ]
    )

def make_source(kind: str):
    if kind == "screen":
        return ScreenCapturer()
    if kind == "camera":
        return CameraCapturer()
    return TestPatternSource()

def get_lan_ips():
    ips = []
    s = None
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        s.connect(('8.8.8.8', 1))
        ip = s.getsockname()[0]
        if not ip.startswith('127.'):
            ips.append(ip)
    except OSError:
        pass
    finally:
        if s:
            s.close()
    return ips if ips else ['127.0.0.1']

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Peer-to-peer video stream node")
    parser.add_argument('--role', choices=[ROLE_HOST, ROLE_VIEWER], required=True, help="Node role")
    parser.add_argument('--port', type=int, default=DEFAULT_PORT, help="TCP port to listen on")
    parser.add_argument('--connect', type=str, help="Peer to connect to (host:port) instead of listening")
    parser.add_argument('--dashboard-port', type=int, default=DEFAULT_DASHBOARD_PORT,
                        help="Stats dashboard port (0 disables it)")
    parser.add_argument('--source', choices=['screen', 'camera', 'pattern'], default='screen',
                        help="Frame source for the host")
    parser.add_argument('--fps', type=float, default=DEFAULT_FPS)
    parser.add_argument('--quality', type=int, default=DEFAULT_JPEG_QUALITY, help="JPEG quality 1-100")
    parser.add_argument('--keyframe-interval', type=int, default=KEYFRAME_INTERVAL)
    parser.add_argument('--headless', action='store_true', help="Viewer decodes without opening a window")
    parser.add_argument('--log-level', default="INFO")
    return parser.parse_args(argv)

async def main(argv=None):
    args = parse_args(argv)
    configure_logging(args.log_level)

    source = make_source(args.source) if args.role == ROLE_HOST else None
    renderer = VideoRenderer("Peer Stream Viewer", headless=args.headless) if args.role == ROLE_VIEWER else None
    node = StreamNode(args.role, port=args.port, source=source, quality=args.quality, fps=args.fps,
                      keyframe_interval=args.keyframe_interval, renderer=renderer)

    port = await node.start(listen=not args.connect)
    if port is not None:
        logger.info(f"Listening as {args.role.upper()} on port {port}, reachable at {get_lan_ips()}")

    if args.connect:
        target_host, target_port = args.connect.rsplit(":", 1)
        try:
            await node.connect(target_host, int(target_port))
        except TransportError as e:
            logger.error(str(e))
            await node.stop()
            return 1

    dashboard = None
    if args.dashboard_port:
        dashboard = await start_dashboard(args.dashboard_port)

    try:
        while True:
            await asyncio.sleep(1)
    except asyncio.CancelledError:
        pass
    finally:
        await node.stop()
        if dashboard:
            await dashboard.cleanup()
    return 0

def run():
    try:
        return asyncio.run(main())
    except KeyboardInterrupt:
        return 0

if __name__ == "__main__":
    raise SystemExit(run())
