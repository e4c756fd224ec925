#!/usr/bin/env python3
"""Run one mower unit with a camera, the YOLO detector and optional swarm.

Drive commands go to the dry-run ``LoggingActuator``; motor and IMU
drivers are platform specific and plug in through ``Actuator`` and the
``readings_fn`` passed to ``Mower.run``.

Usage:
    # Mow with the pylon model, swarm gossip on the default port
    python scripts/run_mower.py --mode mow --unit-id 3

    # Stationary animal monitor with push notifications (logged only without a token)
    MOWER_NOTIFY_TOKEN=... python scripts/run_mower.py --mode monitor_animal \\
        --model asset/model/animal_yolov8n_320.onnx

Stop with Ctrl-C: actuators are stopped first, pending sends are abandoned.
"""

import argparse
import logging
import os
import signal
import sys
import threading
import time
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from mower.control.drive import LoggingActuator
from mower.control.speaker import AudioFileSpeaker, LoggingSpeaker
from mower.coordination.swarm import UdpBroadcastTransport
from mower.core.config import MowerConfig, NotificationConfig, OperatingMode, SwarmConfig
from mower.core.mower import Mower
from mower.core.state import SensorReadings
from mower.perception.camera import CameraCapture, CameraConfig
from mower.perception.detector import ANIMAL_MODEL_CLASSES, PYLON_MODEL_CLASSES, DetectorConfig, YOLODetector

logger = logging.getLogger("run_mower")


def build_config(args: argparse.Namespace) -> MowerConfig:
    mode = OperatingMode(args.mode)
    token = args.token or os.environ.get("MOWER_NOTIFY_TOKEN", "")
    if mode == OperatingMode.MOW:
        config = MowerConfig.for_mowing()
    else:
        config = MowerConfig.for_monitoring(mode=mode, token=token)
    return config.with_overrides(
        unit_id=args.unit_id,
        notification=NotificationConfig(token=token, cooldown_s=args.cooldown),
        swarm=SwarmConfig(enabled=not args.no_swarm and mode == OperatingMode.MOW, port=args.port),
    )


def main():
    parser = argparse.ArgumentParser(description="Run a pylon mower unit")
    parser.add_argument("--mode", choices=[m.value for m in OperatingMode], default="mow", help="Operating mode")
    parser.add_argument("--unit-id", type=int, default=None, help="Unit identity 1-249 (default: random)")
    parser.add_argument("--model", type=str, default=None, help="Detector model path")
    parser.add_argument("--camera", type=int, default=0, help="Camera device index")
    parser.add_argument("--token", type=str, default="", help="Notification token (or MOWER_NOTIFY_TOKEN)")
    parser.add_argument("--cooldown", type=float, default=60.0, help="Notification cooldown per class (s)")
    parser.add_argument("--port", type=int, default=47800, help="Swarm UDP port")
    parser.add_argument("--audio-dir", type=str, default=None, help="Announcement clips (default: log only)")
    parser.add_argument("--no-swarm", action="store_true", help="Disable swarm gossip")
    parser.add_argument("--duration", type=float, default=0.0, help="Stop after N seconds (0 = run until Ctrl-C)")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    config = build_config(args)

    mow = config.mode == OperatingMode.MOW
    detector_config = DetectorConfig(
        class_map=dict(PYLON_MODEL_CLASSES if mow else ANIMAL_MODEL_CLASSES),
    )
    if args.model:
        detector_config.model_path = args.model
    elif not mow:
        detector_config.model_path = "asset/model/animal_yolov8n_320.onnx"

    detector = YOLODetector(detector_config)
    if not detector.initialize():
        return 1

    camera = CameraCapture(CameraConfig(device=args.camera))
    swarm_transport = UdpBroadcastTransport(config.swarm.port, config.swarm.broadcast_address) if config.swarm.enabled else None

    mower = Mower(
        config,
        LoggingActuator(),
        swarm_transport=swarm_transport,
        image_fn=camera.save_latest,
        speaker=AudioFileSpeaker(args.audio_dir) if args.audio_dir else LoggingSpeaker(),
    )
    mower.attach_detector(lambda frame: detector.detect(frame.image, frame.timestamp))
    # Camera frames go straight into the mower's frame buffer
    camera.buffer = mower.frame_buffer

    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    if args.duration > 0:
        threading.Timer(args.duration, stop_event.set).start()

    if not camera.start():
        return 1

    try:
        mower.run(lambda: SensorReadings(timestamp=time.monotonic()), stop_event)
    finally:
        camera.stop()
        logger.info(f"Final status: {mower.get_status()}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
