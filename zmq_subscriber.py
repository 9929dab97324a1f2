"""
ZeroMQ subscriber for the fleet-telemetry stream.

Messages arrive as one or more frames. Their concatenated text may carry a topic
prefix before the JSON body; everything before the first "{" is discarded.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import zmq
import zmq.asyncio

from link_registry import VehicleDirectory
from telemetry_ingest import is_sentry_aware_message, normalize_stream_message

logger = logging.getLogger(__name__)


def decode_frames(frames: List[bytes]) -> Optional[Dict[str, Any]]:
    """Join frames and parse the JSON body; None when no body is present."""
    text = "".join(
        frame.decode("utf-8", errors="replace") if isinstance(frame, (bytes, bytearray)) else str(frame)
        for frame in frames
    )
    start = text.find("{")
    if start < 0:
        return None
    return json.loads(text[start:])


class TelemetryStreamSubscriber:
    def __init__(
        self,
        endpoint: str,
        vehicle_directory: VehicleDirectory,
        coordinator: Any,
        context: Optional[zmq.asyncio.Context] = None,
    ):
        self.endpoint = endpoint.strip()
        self.vehicle_directory = vehicle_directory
        self.coordinator = coordinator
        self._context = context
        self._owns_context = context is None
        self._socket: Optional[zmq.asyncio.Socket] = None
        self._task: Optional[asyncio.Task] = None
        self.messages_received = 0
        self.messages_rejected = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def state(self) -> str:
        if not self.endpoint:
            return "disabled"
        return "running" if self.running else "stopped"

    def start(self) -> None:
        if not self.endpoint:
            logger.warning("ZMQ_ENDPOINT not configured, telemetry stream subscriber disabled")
            return
        if self.running:
            return

        if self._context is None:
            self._context = zmq.asyncio.Context()
        self._socket = self._context.socket(zmq.SUB)
        self._socket.connect(self.endpoint)
        self._socket.setsockopt_string(zmq.SUBSCRIBE, "")
        self._task = asyncio.create_task(self._receive_loop())
        logger.info(f"Subscribed to telemetry stream at {self.endpoint}")

    async def _receive_loop(self) -> None:
        while True:
            try:
                frames = await self._socket.recv_multipart()
                await self.handle_frames(frames)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error while processing ZMQ message: {e}")

    async def handle_frames(self, frames: List[bytes]) -> None:
        self.messages_received += 1
        try:
            message = decode_frames(frames)
        except ValueError as e:
            self.messages_rejected += 1
            logger.error(f"Invalid JSON in telemetry message: {e}")
            return
        if not isinstance(message, dict):
            self.messages_rejected += 1
            logger.warning("Telemetry message without a JSON object body ignored")
            return
        await self.process_message(message)

    async def process_message(self, message: Dict[str, Any]) -> None:
        vin = message.get("vin")
        try:
            logger.info(f"Processing telemetry for VIN {vin}")
            owner = await self.vehicle_directory.lookup(vin) if vin else None
            if owner is None:
                logger.warning(f"No user found for VIN {vin}")
                return

            if owner.debug_messages:
                await self.coordinator.send_debug_message(owner.user_id, message, vin)

            if not is_sentry_aware_message(message):
                logger.debug(f"Non-alert telemetry received for VIN {vin}")
                return

            logger.info(f"Sentry alert detected for VIN {vin}")
            record = normalize_stream_message(message, display_name=owner.display_name)
            await self.coordinator.send_alert(owner.user_id, record, owner.locale)
        except Exception as e:
            logger.error(f"Error while handling telemetry for VIN {vin}: {e}")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._socket is not None:
            try:
                self._socket.close(linger=0)
            except zmq.ZMQError as e:
                logger.error(f"Error while closing ZMQ socket: {e}")
            self._socket = None
            logger.info("Telemetry stream subscriber stopped")

        if self._owns_context and self._context is not None:
            self._context.term()
            self._context = None
