"""
FastAPI signaling surface for the bridge.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple, Type

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ValidationError

from ..config import BridgeConfig
from ..errors import BridgeError
from ..media.engine import MediaEngine
from ..media.memory import InMemoryEngine
from ..utils.logging import SessionLogHandler, session_log_handler
from . import schemas
from .session import FatalHook, PeerFactory, Session

LOG = logging.getLogger(__name__)

REJECT_CLOSE_CODE = 1013


@dataclass
class OutboundMessage:
    payload: Dict[str, Any]
    allow_drop: bool = False


class InvalidPayload(ValueError):
    pass


Handler = Callable[[Session, Any], Awaitable[Any]]


async def _start_session(session: Session, request: schemas.StartSessionRequest) -> Any:
    return await session.start_session(request.codec)


async def _start_client_transport(session: Session, _request: Any) -> Any:
    return await session.start_client_transport()


async def _connect_client_transport(session: Session, request: schemas.ConnectTransportRequest) -> Any:
    await session.connect_client_transport(request.dtls_parameters)


async def _start_producer(session: Session, request: schemas.StartProducerRequest) -> Any:
    return await session.start_producer(request.kind, request.rtp_parameters, request.paused)


async def _start_bridge(session: Session, request: schemas.StartBridgeRequest) -> Any:
    await session.start_bridge(request.enable_srtp)


async def _start_peer_transport(session: Session, _request: Any) -> Any:
    return await session.start_peer_transport()


async def _connect_peer_transport(session: Session, request: schemas.ConnectTransportRequest) -> Any:
    await session.connect_peer_transport(request.dtls_parameters)


async def _start_peer_consumer(session: Session, request: schemas.StartPeerConsumerRequest) -> Any:
    return await session.start_peer_consumer(request.rtp_capabilities)


async def _start_recording(session: Session, request: schemas.RecordingRequest) -> Any:
    await session.start_recording(request.recorder)


async def _stop_recording(session: Session, _request: Any) -> Any:
    await session.stop_recording()


async def _debug(session: Session, _request: Any) -> Any:
    await session.debug()


ROUTES: Dict[str, Tuple[Optional[Type[BaseModel]], Handler]] = {
    "start-session": (schemas.StartSessionRequest, _start_session),
    "start-client-transport": (None, _start_client_transport),
    "connect-client-transport": (schemas.ConnectTransportRequest, _connect_client_transport),
    "start-producer": (schemas.StartProducerRequest, _start_producer),
    "start-bridge": (schemas.StartBridgeRequest, _start_bridge),
    "start-peer-transport": (None, _start_peer_transport),
    "connect-peer-transport": (schemas.ConnectTransportRequest, _connect_peer_transport),
    "start-peer-consumer": (schemas.StartPeerConsumerRequest, _start_peer_consumer),
    "start-recording": (schemas.RecordingRequest, _start_recording),
    "stop-recording": (None, _stop_recording),
    "debug": (None, _debug),
}

_ENVELOPE_KEYS = {"type", "id", "data", "args"}


def extract_arguments(msg_type: str, message: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalise the argument payload of ``message``.

    Arguments may be carried in ``data``/``args`` (object or bare value) or
    directly at the top level next to ``type``.
    """

    data = message.get("data", message.get("args"))
    if data is None:
        return {key: value for key, value in message.items() if key not in _ENVELOPE_KEYS}
    if isinstance(data, dict):
        wrapped = schemas.OBJECT_ARGUMENTS.get(msg_type)
        if wrapped is not None:
            key, marker = wrapped
            if key not in data and marker in data:
                return {key: data}
        return data
    key = schemas.SCALAR_ARGUMENTS.get(msg_type)
    if key is None:
        raise InvalidPayload(f"{msg_type} expects an object payload")
    return {key: data}


class SignalingConnection:
    """One accepted WebSocket: send/receive loops and the session it drives."""

    def __init__(self, channel: "SignalingChannel", websocket: WebSocket, *, queue_size: int) -> None:
        self.channel = channel
        self.websocket = websocket
        self.connection_id = uuid.uuid4().hex
        self.session: Optional[Session] = None
        self.send_queue: asyncio.Queue[OutboundMessage] = asyncio.Queue(maxsize=queue_size)
        self.last_pong = time.monotonic()
        self.speaks_ping = False
        self._stop_event = asyncio.Event()
        self._closing = False
        self.logger = LOG.getChild(f"ws.{self.connection_id[:8]}")
        # Bound once so the log handler can compare sinks by identity.
        self.log_sink = self.log_line

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def peer_port(self) -> Optional[int]:
        client = self.websocket.client
        return client.port if client else None

    async def run(self) -> None:
        try:
            await self.websocket.accept()
        except Exception:  # pragma: no cover
            self.logger.exception("Failed to accept WebSocket connection")
            return

        if not await self.channel.attach(self):
            await self.reject("Client already connected")
            return

        try:
            async with asyncio.TaskGroup() as task_group:
                task_group.create_task(self._recv_loop())
                task_group.create_task(self._send_loop())
                task_group.create_task(self._keepalive_loop())
        except asyncio.CancelledError:
            raise
        except Exception:  # pragma: no cover
            self.logger.exception("Signaling connection crashed")
        finally:
            await self.channel.detach(self)
            await self.close(code=1000)

    async def reject(self, reason: str) -> None:
        self.logger.warning("Rejecting WebSocket client: %s", reason)
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.send_json({"type": "error", "data": reason})
        await self.close(code=REJECT_CLOSE_CODE, reason=reason)

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        if self._closing:
            return
        self._closing = True
        self._stop_event.set()
        with contextlib.suppress(RuntimeError, WebSocketDisconnect):
            await self.websocket.close(code=code, reason=reason)

    async def send(self, payload: Dict[str, Any], *, allow_drop: bool = False) -> None:
        if self.is_stopped:
            return
        message = OutboundMessage(payload=dict(payload), allow_drop=allow_drop)
        if allow_drop:
            try:
                self.send_queue.put_nowait(message)
            except asyncio.QueueFull:
                pass
            return
        await self.send_queue.put(message)

    def post(self, payload: Dict[str, Any], *, allow_drop: bool = False) -> None:
        """Queue ``payload`` without waiting; used from synchronous callbacks."""

        if self.is_stopped:
            return
        try:
            self.send_queue.put_nowait(OutboundMessage(payload=dict(payload), allow_drop=allow_drop))
        except asyncio.QueueFull:
            if not allow_drop:
                self.logger.debug("Dropping %s notification due to backpressure", payload.get("type"))

    def notify(self, msg_type: str, data: Any = None) -> None:
        self.post({"type": msg_type, "data": data})

    def log_line(self, line: str) -> None:
        self.post({"type": "log", "data": line}, allow_drop=True)

    async def _recv_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    raw = await self.websocket.receive_text()
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    self._stop_event.set()
                    break
                except Exception:  # pragma: no cover - safety net
                    self.logger.exception("Failed to receive message")
                    self._stop_event.set()
                    break

                self.last_pong = time.monotonic()
                try:
                    message = json.loads(raw)
                except ValueError:
                    self.logger.warning("Ignoring malformed frame: %.80r", raw)
                    continue
                if not isinstance(message, dict):
                    continue

                msg_type = str(message.get("type") or "").lower()
                if msg_type == "pong":
                    self.speaks_ping = True
                    continue
                if msg_type == "ping":
                    await self.send({"type": "pong", "ts": time.time()})
                    continue

                try:
                    await self.handle_message(message)
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    self._stop_event.set()
                    break
        finally:
            self._stop_event.set()

    async def _send_loop(self) -> None:
        try:
            while not self.is_stopped:
                try:
                    outbound = await asyncio.wait_for(self.send_queue.get(), timeout=0.5)
                except asyncio.TimeoutError:
                    continue

                try:
                    await self.websocket.send_json(outbound.payload)
                except asyncio.CancelledError:
                    raise
                except WebSocketDisconnect:
                    self._stop_event.set()
                    break
                except RuntimeError as exc:
                    if "close message has been sent" not in str(exc):
                        self.logger.error("Failed to send message: %s", exc)
                    self._stop_event.set()
                    break
                finally:
                    self.send_queue.task_done()
        finally:
            self._stop_event.set()

    async def _keepalive_loop(self) -> None:
        interval = self.channel.ping_interval
        if interval <= 0:
            return
        try:
            while not self.is_stopped:
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
                if self.is_stopped:
                    break
                await self.send({"type": "ping", "ts": time.time()})
                # Only clients that answered a ping before are held to the deadline.
                if self.speaks_ping and (time.monotonic() - self.last_pong) > self.channel.pong_timeout:
                    self.logger.warning("Ping timeout; closing signaling connection")
                    await self.close(code=1011, reason="ping timeout")
                    break
        finally:
            self._stop_event.set()

    async def handle_message(self, message: Dict[str, Any]) -> None:
        raw_type = message.get("type")
        msg_type = schemas.canonical_type(raw_type)
        request_id = message.get("id")
        route = ROUTES.get(msg_type)
        if route is None:
            self.logger.warning("Invalid request type: %s", raw_type)
            await self._reply_error(raw_type, request_id, "E_INVALID_REQUEST", f"Invalid request type: {raw_type}")
            return

        session = self.session
        if session is None:  # pragma: no cover - attach always creates one
            return
        schema, handler = route
        try:
            request = schema.model_validate(extract_arguments(msg_type, message)) if schema else None
            data = await handler(session, request)
        except (ValidationError, InvalidPayload) as exc:
            self.logger.warning("Invalid %s payload: %s", msg_type, exc)
            await self._reply_error(msg_type, request_id, "E_INVALID_PAYLOAD", str(exc))
        except BridgeError as exc:
            self.logger.error("%s failed [%s]: %s", msg_type, exc.code, exc)
            await self._reply_error(msg_type, request_id, exc.code, str(exc))
        except (asyncio.CancelledError, WebSocketDisconnect):
            raise
        except Exception as exc:
            self.logger.exception("Unhandled error while processing %s", msg_type)
            await self._reply_error(msg_type, request_id, "E_INTERNAL", str(exc))
        else:
            if request_id is not None:
                await self.send({"type": msg_type, "id": request_id, "data": data})

    async def _reply_error(self, msg_type: Any, request_id: Any, code: str, text: str) -> None:
        error = {"code": code, "message": text}
        if request_id is not None:
            await self.send({"type": msg_type, "id": request_id, "error": error})
        else:
            await self.send({"type": "error", "data": dict(error, request=msg_type)})


class SignalingChannel:
    """Admit exactly one signaling client and give it a fresh :class:`Session`."""

    def __init__(
        self,
        config: BridgeConfig,
        engine: MediaEngine,
        *,
        peer_factory: Optional[PeerFactory] = None,
        fatal: Optional[FatalHook] = None,
        log_handler: Optional[SessionLogHandler] = None,
        queue_size: int = 256,
    ) -> None:
        self.config = config
        self.engine = engine
        self.peer_factory = peer_factory
        self.fatal = fatal
        self.log_handler = log_handler or session_log_handler()
        self.queue_size = max(1, int(queue_size))
        self.ping_interval = max(0.0, float(config.http.ws_ping_interval))
        self.pong_timeout = self.ping_interval + max(0.0, float(config.http.ws_ping_timeout))
        self.connection: Optional[SignalingConnection] = None
        self._lock = asyncio.Lock()
        self._running = False

    @property
    def session(self) -> Optional[Session]:
        return self.connection.session if self.connection else None

    async def start(self) -> None:
        self._running = True

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        connection = self.connection
        if connection is not None:
            await connection.close(code=1001, reason="server shutting down")
            await self.detach(connection)

    async def run(self, websocket: WebSocket) -> None:
        connection = SignalingConnection(self, websocket, queue_size=self.queue_size)
        await connection.run()

    async def attach(self, connection: SignalingConnection) -> bool:
        async with self._lock:
            if self.connection is not None:
                return False
            self.connection = connection
            connection.session = Session(
                self.config,
                self.engine,
                peer_factory=self.peer_factory,
                notify=connection.notify,
                fatal=self.fatal,
            )
        self.log_handler.attach(connection.log_sink)
        LOG.info("WebSocket client connected, port: %s", connection.peer_port)
        return True

    async def detach(self, connection: SignalingConnection) -> None:
        # Hold the slot until the session is closed; attach() waits on the
        # lock meanwhile.
        async with self._lock:
            if self.connection is not connection:
                return
            self.log_handler.detach(connection.log_sink)
            try:
                if connection.session is not None:
                    await connection.session.close()
            finally:
                self.connection = None
        LOG.info("WebSocket client disconnected, port: %s", connection.peer_port)


def create_app(
    *,
    config: Optional[BridgeConfig] = None,
    engine: Optional[MediaEngine] = None,
    peer_factory: Optional[PeerFactory] = None,
    fatal: Optional[FatalHook] = None,
    lifespan: Optional[Callable[..., Any]] = None,
) -> FastAPI:
    bridge_config = config or BridgeConfig()
    media_engine = engine or InMemoryEngine(bind_plain_sockets=bridge_config.media.bind_plain_sockets)
    channel = SignalingChannel(bridge_config, media_engine, peer_factory=peer_factory, fatal=fatal)

    @asynccontextmanager
    async def app_lifespan(app: FastAPI) -> AsyncIterator[None]:
        await channel.start()
        try:
            if lifespan is not None:
                async with lifespan(app):
                    yield
            else:
                yield
        finally:
            await channel.stop()

    app = FastAPI(title="sfubridge signaling server", lifespan=app_lifespan)
    app.state.channel = channel
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.websocket(bridge_config.http.ws_path)
    async def websocket_endpoint(websocket: WebSocket) -> None:
        await channel.run(websocket)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok", "clientConnected": channel.connection is not None}

    @app.get("/api/session")
    async def session_snapshot() -> dict:
        session = channel.session
        return {"session": session.to_dict() if session else None}

    if bridge_config.http.static_dir:
        # Registered last so the routes above take precedence.
        app.mount(
            "/",
            StaticFiles(directory=bridge_config.http.static_dir, html=True, check_dir=False),
            name="client",
        )

    return app


__all__ = [
    "OutboundMessage",
    "ROUTES",
    "SignalingChannel",
    "SignalingConnection",
    "create_app",
    "extract_arguments",
]
