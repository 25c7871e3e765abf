"""Multiplex many terminal sessions over persistent duplex connections."""
from __future__ import annotations

import asyncio
import codecs
import logging
from itertools import count
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Literal
from typing import Optional

from pydantic import BaseModel
from pydantic import Field
from pydantic import ValidationError

from .errors import SessionNotFound
from .errors import VibeFlowError
from .sessions import DEFAULT_SESSION_KEY
from .sessions import SessionManager
from .terminal import TerminalSize

logger = logging.getLogger(__name__)

SendFunc = Callable[[dict[str, Any]], Awaitable[None]]


class ClientMessage(BaseModel):
    """Envelope for every event a connection sends."""

    type: Literal["create", "attach", "input", "resize", "destroy"]
    session_key: str = Field(default=DEFAULT_SESSION_KEY, alias="sessionKey", min_length=1)
    cols: Optional[int] = Field(default=None, gt=0)
    rows: Optional[int] = Field(default=None, gt=0)
    data: Optional[str] = None

    model_config = {"populate_by_name": True}


class ServerMessage(BaseModel):
    """Envelope for every event sent back to a connection."""

    type: Literal["created", "attached", "data", "error", "exit"]
    session_key: str = Field(alias="sessionKey")
    data: Optional[str] = None
    message: Optional[str] = None
    exit_code: Optional[int] = Field(default=None, alias="exitCode")

    model_config = {"populate_by_name": True}

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Channel:
    """One transport connection; outbound events leave in FIFO order."""

    _ids = count(1)

    def __init__(self, send: SendFunc, *, name: str | None = None) -> None:
        self._send = send
        self._queue: asyncio.Queue[ServerMessage | None] = asyncio.Queue()
        self._decoders: dict[str, codecs.IncrementalDecoder] = {}
        self.name = name or f"channel-{next(self._ids)}"
        self.closed = False

    def post(self, message: ServerMessage) -> None:
        if not self.closed:
            self._queue.put_nowait(message)

    def post_output(self, key: str, data: bytes) -> None:
        decoder = self._decoders.get(key)
        if decoder is None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            self._decoders[key] = decoder
        text = decoder.decode(data)
        if text:
            self.post(ServerMessage(type="data", session_key=key, data=text))

    def post_error(self, key: str, message: str) -> None:
        self.post(ServerMessage(type="error", session_key=key, message=message))

    def flush_output(self, key: str) -> None:
        """Emit whatever a trailing partial UTF-8 sequence decodes to."""
        decoder = self._decoders.get(key)
        if decoder is None:
            return
        text = decoder.decode(b"", final=True)
        if text:
            self.post(ServerMessage(type="data", session_key=key, data=text))

    def reset_decoder(self, key: str) -> None:
        self._decoders.pop(key, None)

    async def pump(self) -> None:
        """Drain queued events into the transport until :meth:`close`."""
        while True:
            message = await self._queue.get()
            if message is None:
                return
            await self._send(message.to_payload())

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(None)


class ChannelRouter:
    """Routes inbound requests to sessions and session output to its owner.

    Each session key has at most one owning channel: the one that most
    recently created or attached to it. Input, resize and destroy requests are
    honoured only from the owner.
    """

    def __init__(self, sessions: SessionManager) -> None:
        self._sessions = sessions
        self._owners: dict[str, Channel] = {}
        sessions.set_listener(self)

    def owner_of(self, key: str) -> Optional[Channel]:
        return self._owners.get(key)

    def keys_for(self, channel: Channel) -> list[str]:
        return [key for key, owner in self._owners.items() if owner is channel]

    # Inbound ----------------------------------------------------------
    async def handle(self, channel: Channel, payload: Any) -> None:
        try:
            message = ClientMessage.model_validate(payload)
        except ValidationError as exc:
            key = payload.get("sessionKey") if isinstance(payload, dict) else None
            channel.post_error(key if isinstance(key, str) else DEFAULT_SESSION_KEY, f"Invalid message: {exc.errors()[0]['msg']}")
            return

        key = message.session_key
        try:
            if message.type == "create":
                await self._create(channel, message)
            elif message.type == "attach":
                self._attach(channel, key)
            elif message.type == "input":
                self._require_owner(channel, key)
                self._sessions.write(key, (message.data or "").encode("utf-8"))
            elif message.type == "resize":
                self._require_owner(channel, key)
                if message.cols is None or message.rows is None:
                    channel.post_error(key, "resize requires cols and rows")
                    return
                self._sessions.resize(key, message.cols, message.rows)
            elif message.type == "destroy":
                self._require_owner(channel, key)
                self._sessions.destroy(key)
                self._drop(key)
        except (VibeFlowError, OSError) as exc:
            channel.post_error(key, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error handling %s for session %s", message.type, key)
            channel.post_error(key, f"Internal error: {exc}")

    async def _create(self, channel: Channel, message: ClientMessage) -> None:
        key = message.session_key
        self._claim(channel, key)
        default = self._sessions.default_size
        size = TerminalSize(cols=message.cols or default.cols, rows=message.rows or default.rows)
        try:
            await self._sessions.create(key, size=size)
        except Exception:
            if self._owners.get(key) is channel:
                self._drop(key)
            raise
        channel.post(ServerMessage(type="created", session_key=key))

    def _attach(self, channel: Channel, key: str) -> None:
        if key not in self._sessions:
            raise SessionNotFound(key)
        self._claim(channel, key)
        channel.post(ServerMessage(type="attached", session_key=key))

    def _claim(self, channel: Channel, key: str) -> None:
        previous = self._owners.get(key)
        if previous is not None and previous is not channel:
            logger.info("Session %s moves from %s to %s", key, previous.name, channel.name)
        self._owners[key] = channel
        channel.reset_decoder(key)

    def _require_owner(self, channel: Channel, key: str) -> None:
        if key not in self._sessions:
            raise SessionNotFound(key)
        if self._owners.get(key) is not channel:
            logger.warning("Rejected request for session %s from non-owner %s", key, channel.name)
            raise SessionNotFound(key)

    def _drop(self, key: str) -> None:
        owner = self._owners.pop(key, None)
        if owner is not None:
            owner.reset_decoder(key)

    def disconnect(self, channel: Channel) -> None:
        """Forget a connection's registrations; its sessions keep running."""
        for key in self.keys_for(channel):
            self._drop(key)
        channel.close()

    # Session events ---------------------------------------------------
    def session_output(self, key: str, data: bytes) -> None:
        owner = self._owners.get(key)
        if owner is not None:
            owner.post_output(key, data)

    def session_exited(self, key: str, exit_code: int | None) -> None:
        owner = self._owners.get(key)
        if owner is not None:
            owner.flush_output(key)
        self._drop(key)
        if owner is not None:
            owner.post(ServerMessage(type="exit", session_key=key, exit_code=exit_code))
