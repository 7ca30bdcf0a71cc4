"""
Voice Session Adapter - real-time voice interviews over ElevenLabs Conversational AI.

The voice provider keeps no conversation state across a dropped socket, so the
adapter keeps its own rolling transcript (most recent 60 turns) and replays
the documents plus the latest 12 turns when it reconnects. A greeting nudge
fires 900 ms after connecting if the agent has not started speaking on its
own; some agents do not reliably auto-greet.

VoiceConnection is the transport seam: ElevenLabsConnection speaks the
provider's websocket protocol, tests plug in an in-memory connection.
"""
import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import aiohttp
import httpx

from models import AppendTurnRequest, MessageRole
from services.coach_prompts import build_document_context
from services.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

ELEVENLABS_API_BASE = "https://api.elevenlabs.io/v1/convai/conversation"
ELEVENLABS_API_KEY = os.getenv("ELEVENLABS_API_KEY")
ELEVENLABS_AGENT_ID = os.getenv("ELEVENLABS_AGENT_ID")

TRANSCRIPT_MAX_TURNS = 60
PRIMING_TURNS = 12
GREETING_NUDGE_SECONDS = 0.9

GREETING_NUDGE = "Hello, I'm ready to begin the interview."
CONTINUE_NUDGE = "I'm back. Please continue the interview from where we left off."


class VoiceEventType(str, Enum):
    AGENT_RESPONSE = "agent_response"
    USER_TRANSCRIPT = "user_transcript"
    AGENT_SPEAKING = "agent_speaking"
    DISCONNECTED = "disconnected"


@dataclass
class VoiceEvent:
    type: VoiceEventType
    text: Optional[str] = None


EventListener = Callable[[VoiceEvent], Awaitable[None]]


class VoiceConnection(ABC):
    """One live connection to a voice agent."""

    def __init__(self):
        self._listener: Optional[EventListener] = None

    def set_listener(self, listener: EventListener):
        self._listener = listener

    async def emit(self, event: VoiceEvent):
        if self._listener:
            await self._listener(event)

    @abstractmethod
    async def open(self):
        ...

    @abstractmethod
    async def close(self):
        ...

    @abstractmethod
    async def send_contextual_update(self, text: str):
        """Background context for the agent; not treated as a user turn."""

    @abstractmethod
    async def send_user_message(self, text: str):
        """A synthetic user turn, used to steer the agent."""


class VoiceSessionAdapter:
    """Drives one voice interview across any number of reconnects."""

    def __init__(
        self,
        connection_factory: Callable[[], Awaitable[VoiceConnection]],
        documents: Optional[Dict[str, str]] = None,
        session_id: Optional[str] = None,
        email: Optional[str] = None,
        nudge_delay: float = GREETING_NUDGE_SECONDS,
    ):
        self.connection_factory = connection_factory
        self.documents = documents or {}
        self.session_id = session_id
        self.email = email
        self.nudge_delay = nudge_delay

        self.transcript: Deque[Dict[str, str]] = deque(maxlen=TRANSCRIPT_MAX_TURNS)
        self.connection: Optional[VoiceConnection] = None
        self.connected = False
        self.interview_started = False
        self.agent_has_spoken = False
        self.user_ended = False
        self.needs_reconnect = False
        self._nudge_task: Optional[asyncio.Task] = None

    @property
    def document_context(self) -> str:
        return build_document_context(
            self.documents.get("resume"),
            self.documents.get("job_description"),
            self.documents.get("company_url"),
        ).strip()

    async def connect(self):
        await self._open_connection()
        if self.document_context:
            await self.connection.send_contextual_update(self.document_context)
        self._arm_greeting_nudge()

    async def reconnect(self):
        """Re-establish after an unexpected drop and pick the interview back up."""
        if self.user_ended:
            raise RuntimeError("Cannot reconnect a session the user ended")
        self._cancel_nudge()
        self.agent_has_spoken = False
        await self._open_connection()
        await self.connection.send_contextual_update(self.priming_message())
        await self.connection.send_user_message(CONTINUE_NUDGE)
        self.needs_reconnect = False
        logger.info(f"Voice session reconnected session_id={self.session_id} turns={len(self.transcript)}")

    async def end(self) -> List[Dict[str, str]]:
        """Intentional end: close the socket and return the transcript as chat turns."""
        self.user_ended = True
        self.needs_reconnect = False
        self._cancel_nudge()
        if self.connection and self.connected:
            await self.connection.close()
        self.connected = False
        return list(self.transcript)

    def priming_message(self) -> str:
        recent = list(self.transcript)[-PRIMING_TURNS:]
        lines = []
        for turn in recent:
            speaker = "Interviewer" if turn["role"] == MessageRole.ASSISTANT.value else "Candidate"
            lines.append(f"{speaker}: {turn['content']}")
        parts = []
        if self.document_context:
            parts.append(self.document_context)
        parts.append(
            "The call dropped and has been reconnected. The conversation so far:\n"
            + ("\n".join(lines) if lines else "(no turns yet)")
            + "\n\nContinue the interview from where it left off. Do not restart or re-introduce yourself."
        )
        return "\n\n".join(parts)

    async def _open_connection(self):
        self.connection = await self.connection_factory()
        self.connection.set_listener(self.handle_event)
        await self.connection.open()
        self.connected = True

    def _arm_greeting_nudge(self):
        self._cancel_nudge()
        self._nudge_task = asyncio.create_task(self._greeting_nudge())

    def _cancel_nudge(self):
        if self._nudge_task and not self._nudge_task.done():
            self._nudge_task.cancel()
        self._nudge_task = None

    async def _greeting_nudge(self):
        await asyncio.sleep(self.nudge_delay)
        if self.connected and not self.agent_has_spoken:
            logger.info(f"Agent silent after connect, sending greeting nudge session_id={self.session_id}")
            await self.connection.send_user_message(GREETING_NUDGE)

    async def handle_event(self, event: VoiceEvent):
        if event.type == VoiceEventType.AGENT_SPEAKING:
            self.agent_has_spoken = True
        elif event.type == VoiceEventType.AGENT_RESPONSE:
            self.agent_has_spoken = True
            self.interview_started = True
            await self._record_turn(MessageRole.ASSISTANT, event.text)
        elif event.type == VoiceEventType.USER_TRANSCRIPT:
            await self._record_turn(MessageRole.USER, event.text)
        elif event.type == VoiceEventType.DISCONNECTED:
            self.connected = False
            self._cancel_nudge()
            # Only a drop mid-interview that the user did not ask for warrants a reconnect
            if self.interview_started and not self.user_ended:
                self.needs_reconnect = True
                logger.warning(f"Voice connection dropped unexpectedly session_id={self.session_id}")

    async def _record_turn(self, role: MessageRole, text: Optional[str]):
        if not text or not text.strip():
            return
        self.transcript.append({"role": role.value, "content": text})
        if self.session_id and self.email:
            from services.session_service import session_service
            await session_service.append_turn(
                self.session_id,
                self.email,
                AppendTurnRequest(role=role, content=text),
            )


# ============================================================================
# ELEVENLABS TRANSPORT
# ============================================================================

class ElevenLabsConnection(VoiceConnection):
    """Conversational AI websocket opened from a signed URL."""

    def __init__(self, signed_url: str):
        super().__init__()
        self.signed_url = signed_url
        self._http: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    async def open(self):
        self._http = aiohttp.ClientSession()
        try:
            self._ws = await self._http.ws_connect(self.signed_url, heartbeat=20)
        except aiohttp.ClientError as e:
            await self._http.close()
            raise ProviderError(f"Could not connect to voice provider: {e}")
        self._reader = asyncio.create_task(self._read_loop())

    async def close(self):
        self._closing = True
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._http is not None:
            await self._http.close()

    async def _send(self, payload: Dict[str, Any]):
        if self._ws is None or self._ws.closed:
            raise ProviderError("Voice connection is not open")
        await self._ws.send_str(json.dumps(payload))

    async def send_contextual_update(self, text: str):
        await self._send({"type": "contextual_update", "text": text})

    async def send_user_message(self, text: str):
        await self._send({"type": "user_message", "text": text})

    async def _read_loop(self):
        try:
            async for msg in self._ws:
                if msg.type != aiohttp.WSMsgType.TEXT:
                    continue
                await self._dispatch(json.loads(msg.data))
        except aiohttp.ClientError as e:
            logger.warning(f"Voice websocket error: {e}")
        finally:
            if self._http is not None and not self._http.closed:
                await self._http.close()
            await self.emit(VoiceEvent(VoiceEventType.DISCONNECTED))

    async def _dispatch(self, data: Dict[str, Any]):
        kind = data.get("type")
        if kind == "ping":
            event_id = (data.get("ping_event") or {}).get("event_id")
            await self._send({"type": "pong", "event_id": event_id})
        elif kind == "agent_response":
            text = (data.get("agent_response_event") or {}).get("agent_response")
            await self.emit(VoiceEvent(VoiceEventType.AGENT_RESPONSE, text))
        elif kind == "user_transcript":
            text = (data.get("user_transcription_event") or {}).get("user_transcript")
            await self.emit(VoiceEvent(VoiceEventType.USER_TRANSCRIPT, text))
        elif kind == "audio":
            await self.emit(VoiceEvent(VoiceEventType.AGENT_SPEAKING))


async def get_conversation_credentials(mode: str = "websocket", agent_id: Optional[str] = None) -> Dict[str, str]:
    """Fetch a signed websocket URL (mode=websocket) or a WebRTC token (mode=webrtc)."""
    api_key = ELEVENLABS_API_KEY
    agent_id = agent_id or ELEVENLABS_AGENT_ID
    if not api_key or not agent_id:
        raise ConfigurationError("Voice interviews are not configured", error_code="voice_not_configured")

    if mode == "webrtc":
        url, field = f"{ELEVENLABS_API_BASE}/token", "token"
    else:
        url, field = f"{ELEVENLABS_API_BASE}/get-signed-url", "signed_url"

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(
                url,
                params={"agent_id": agent_id},
                headers={"xi-api-key": api_key},
                timeout=10.0,
            )
    except httpx.HTTPError as e:
        logger.error(f"ElevenLabs request failed: {e}")
        raise ProviderError("Voice provider is unreachable")

    if response.status_code != 200:
        logger.error(f"ElevenLabs API error {response.status_code}: {response.text}")
        raise ProviderError(f"Failed to get conversation auth: {response.status_code}")

    value = response.json().get(field)
    if not value:
        raise ProviderError(f"Voice provider returned no {field}")
    logger.info(f"ElevenLabs conversation credentials issued mode={mode}")
    return {field: value}


async def elevenlabs_connection_factory(agent_id: Optional[str] = None) -> VoiceConnection:
    credentials = await get_conversation_credentials("websocket", agent_id)
    return ElevenLabsConnection(credentials["signed_url"])
