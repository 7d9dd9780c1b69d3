# publisher.py
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DETECTION_EVENT = "drone-data"
TELEMETRY_EVENT = "team-drones-update"
UPLOAD_EVENT = "new-detected-image"

REPLAY_EVENTS = (DETECTION_EVENT, TELEMETRY_EVENT)

DEFAULT_SEND_TIMEOUT_S = 2.0


def encode_message(event: str, payload: Any) -> str:
    return json.dumps({"event": event, "data": payload}, default=str)


class BroadcastPublisher:
    """Fans named events out to every connected WebSocket session.

    The last payload of each replayable event is kept and sent to a session
    as soon as it connects. There is no acknowledgement: a session that is
    gone when a broadcast happens simply misses it. Sends are concurrent and
    bounded by `send_timeout`; a session that fails or stalls is dropped.
    """

    def __init__(self, replay_events=REPLAY_EVENTS, send_timeout=DEFAULT_SEND_TIMEOUT_S):
        self.sessions: List[Any] = []
        self.replay_events = tuple(replay_events)
        self.send_timeout = send_timeout
        self._latest: Dict[str, Any] = {}
        self._fallbacks: Dict[str, Callable[[], Awaitable[Optional[Any]]]] = {}

    def register_fallback(self, event: str, provider: Callable[[], Awaitable[Optional[Any]]]):
        """Provider used to compute a replay payload when none has been broadcast yet."""
        self._fallbacks[event] = provider

    def latest(self, event: str):
        return self._latest.get(event)

    def remember(self, event: str, payload: Any):
        if event in self.replay_events:
            self._latest[event] = payload

    async def connect(self, websocket):
        await websocket.accept()
        self.sessions.append(websocket)
        logger.info(f"[SOCKET] Client connected. Total: {len(self.sessions)}")
        await self.replay(websocket)

    def disconnect(self, websocket):
        if websocket in self.sessions:
            self.sessions.remove(websocket)
            logger.info(f"[SOCKET] Client disconnected. Total: {len(self.sessions)}")

    async def replay(self, websocket):
        for event in self.replay_events:
            payload = self._latest.get(event)
            if payload is None and event in self._fallbacks:
                try:
                    computed = await self._fallbacks[event]()
                except Exception as e:
                    logger.error(f"[SOCKET] Could not compute replay for '{event}': {e}")
                    computed = None
                if computed is not None:
                    self._latest.setdefault(event, computed)
                # a broadcast may have landed during the await; it already reached this session
                payload = self._latest.get(event)
                if payload is not None and payload is not computed:
                    continue
            if payload is None:
                continue
            if not await self._send(websocket, event, encode_message(event, payload)):
                self.disconnect(websocket)
                return

    async def _send(self, session, event: str, message: str) -> bool:
        try:
            await asyncio.wait_for(session.send_text(message), self.send_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"[SOCKET] Send of '{event}' timed out after {self.send_timeout}s")
        except Exception as e:
            logger.warning(f"[SOCKET] Error sending '{event}': {e}")
        return False

    async def broadcast(self, event: str, payload: Any) -> int:
        """Send to all sessions; returns how many sends succeeded."""
        self.remember(event, payload)
        if not self.sessions:
            return 0

        message = encode_message(event, payload)
        sessions = list(self.sessions)
        results = await asyncio.gather(*(self._send(s, event, message) for s in sessions))

        for session, ok in zip(sessions, results):
            if not ok:
                self.disconnect(session)
        delivered = sum(1 for ok in results if ok)
        logger.debug(f"[SOCKET] Emitted '{event}' to {delivered} client(s)")
        return delivered
