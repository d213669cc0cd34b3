"""
WebSocket handler for streaming verification sessions.

This module provides the WebSocketHandler class that manages the websocket
message format (incoming frames or observations, outgoing challenge, step
progress and verdict messages) and a WebSocketObservationSource that feeds
the liveness state machine from a websocket.
"""
import asyncio
import base64
import json
import logging
from typing import Any, Dict, Optional

import cv2
import numpy as np
from fastapi import WebSocket, WebSocketDisconnect

from ..exceptions import ObservationStreamEnded, SourceError
from ..models.data_models import (
    FeedbackType,
    LivenessChallenge,
    Observation,
    StepProgress,
    VerificationFeedback,
)
from .frame_adapter import FaceModels
from .observation_source import ObservationSource

logger = logging.getLogger(__name__)


class WebSocketHandler:
    """
    Manages WebSocket communication for real-time verification.

    Clients send JSON messages of type ``observation`` (a ready-made
    observation, e.g. from an in-browser face model), ``video_frame``
    (a base64 image processed server-side) or ``end``.
    """

    async def handle_connection(self, websocket: WebSocket, session_id: str) -> None:
        """Accept the connection for a session"""
        await websocket.accept()
        logger.info(f"WebSocket connection established for session {session_id}")

    async def receive_message(self, websocket: WebSocket) -> Optional[Dict[str, Any]]:
        """
        Receive and parse one JSON message.

        Returns:
            The parsed message, or None if it was not valid JSON

        Raises:
            WebSocketDisconnect: If the client went away
        """
        data = await websocket.receive_text()
        try:
            message = json.loads(data)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON received: {e}")
            return None
        if not isinstance(message, dict):
            logger.error("Ignoring non-object message")
            return None
        return message

    async def send_challenge(self, websocket: WebSocket, challenge: LivenessChallenge) -> None:
        """Send the ordered step instructions to the client"""
        await self.send_feedback(
            websocket,
            VerificationFeedback(
                type=FeedbackType.CHALLENGE_ISSUED,
                message=f"Challenge: {', then '.join(step.instruction or step.name for step in challenge.steps)}",
                data={
                    "nonce": challenge.nonce,
                    "steps": [
                        {"name": step.name, "instruction": step.instruction}
                        for step in challenge.steps
                    ],
                }
            )
        )

    async def send_progress(self, websocket: WebSocket, progress: StepProgress) -> None:
        await self.send_feedback(
            websocket,
            VerificationFeedback(
                type=FeedbackType.STEP_SATISFIED,
                message=f"{progress.step_name.capitalize()} detected",
                data={
                    "step": progress.step_name,
                    "index": progress.step_index,
                    "total": progress.total_steps,
                }
            )
        )

    async def send_verdict(self, websocket: WebSocket, response: Dict[str, Any]) -> None:
        await self.send_feedback(
            websocket,
            VerificationFeedback(type=FeedbackType.VERDICT, message=response.get("outcome", ""), data=response)
        )

    async def send_feedback(self, websocket: WebSocket, feedback: VerificationFeedback) -> None:
        """
        Send one feedback message to the client.

        Args:
            websocket: FastAPI WebSocket connection object
            feedback: VerificationFeedback object containing message details
        """
        try:
            await websocket.send_json({
                "type": feedback.type.value,
                "message": feedback.message,
                "data": feedback.data
            })
            logger.debug(f"Sent feedback: {feedback.type.value}")
        except Exception as e:
            logger.error(f"Error sending feedback: {e}")
            raise

    async def close_connection(
        self,
        websocket: WebSocket,
        code: int = 1000,
        reason: str = "Normal closure"
    ) -> None:
        """Close the WebSocket connection gracefully."""
        try:
            await websocket.close(code=code, reason=reason)
            logger.info(f"WebSocket closed: {reason} (code: {code})")
        except Exception as e:
            logger.error(f"Error closing WebSocket: {e}")

    def decode_frame(self, frame_data: str) -> Optional[np.ndarray]:
        """
        Decode a base64-encoded image (optionally a data URL) into a BGR frame.

        Returns:
            Decoded frame as numpy array, or None if decoding fails
        """
        try:
            # Remove data URL prefix if present (e.g., "data:image/jpeg;base64,")
            if "," in frame_data:
                frame_data = frame_data.split(",")[1]

            img_bytes = base64.b64decode(frame_data)
            nparr = np.frombuffer(img_bytes, np.uint8)
            frame = cv2.imdecode(nparr, cv2.IMREAD_COLOR)

            if frame is None:
                logger.error("Failed to decode frame: cv2.imdecode returned None")
                return None

            return frame

        except Exception as e:
            logger.error(f"Error decoding frame: {e}")
            return None


class WebSocketObservationSource(ObservationSource):
    """Observation source reading messages from a connected websocket."""

    def __init__(
        self,
        websocket: WebSocket,
        handler: WebSocketHandler,
        models: Optional[FaceModels] = None,
    ):
        super().__init__()
        self.websocket = websocket
        self.handler = handler
        self.models = models

    async def next_observation(self, want_embedding: bool = False) -> Observation:
        while True:
            try:
                message = await self.handler.receive_message(self.websocket)
            except WebSocketDisconnect as e:
                raise SourceError("Client disconnected", {"code": e.code}) from e
            if message is None:
                continue

            message_type = message.get("type")
            if message_type == "observation":
                try:
                    return Observation.from_dict(message.get("observation") or {})
                except (KeyError, TypeError, ValueError) as e:
                    logger.error(f"Ignoring malformed observation: {e}")
                    continue

            if message_type == "video_frame":
                return await self._observe_frame(message, want_embedding)

            if message_type == "end":
                raise ObservationStreamEnded("Client ended the observation stream")

            logger.debug(f"Ignoring message of type {message_type!r}")

    async def _observe_frame(self, message: Dict[str, Any], want_embedding: bool) -> Observation:
        if self.models is None or not self.models.loaded:
            raise SourceError("Server-side frame processing is not available")
        frame = self.handler.decode_frame(message.get("frame") or "")
        if frame is None:
            raise SourceError("Undecodable video frame")
        try:
            timestamp = float(message.get("timestamp", 0.0))
        except (TypeError, ValueError) as e:
            raise SourceError("Invalid frame timestamp", {"timestamp": message.get("timestamp")}) from e
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, self.models.observe_frame, frame, timestamp, want_embedding
        )
