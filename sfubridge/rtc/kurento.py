"""
Peer engine access.

:class:`PeerEngine` is the small surface the bridge needs from a second media
engine that speaks SDP offer/answer.  :class:`KurentoClient` implements it on
top of the Kurento Media Server JSON-RPC 2.0 protocol over WebSocket.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import websockets

from ..errors import NegotiationError

LOG = logging.getLogger(__name__)

# Same suite, spelled the way each engine expects it.
SUITE_NAMES = {
    "AES_CM_128_HMAC_SHA1_80": "AES_128_CM_HMAC_SHA1_80",
    "AES_CM_128_HMAC_SHA1_32": "AES_128_CM_HMAC_SHA1_32",
}


def kurento_crypto_suite(suite: str) -> str:
    return SUITE_NAMES.get(suite, suite)


@dataclass(frozen=True)
class SdesCrypto:
    crypto_suite: str
    key_base64: str

    def to_dict(self) -> Dict[str, str]:
        return {"crypto": kurento_crypto_suite(self.crypto_suite), "keyBase64": self.key_base64}


class PeerEngine(Protocol):
    async def create_pipeline(self) -> str: ...

    async def create_rtp_endpoint(self, pipeline: str, crypto: Optional[SdesCrypto] = None) -> str: ...

    async def process_offer(self, endpoint: str, offer: str) -> str: ...

    async def set_max_video_send_bandwidth(self, endpoint: str, kbps: int) -> None: ...

    async def create_filter(self, pipeline: str, command: str) -> str: ...

    async def connect(self, source: str, sink: str) -> None: ...

    async def release(self, object_id: str) -> None: ...

    async def close(self) -> None: ...


class KurentoClient:
    """JSON-RPC client for a Kurento Media Server."""

    def __init__(self, url: str, *, request_timeout: float = 10.0) -> None:
        self.url = url
        self.request_timeout = request_timeout
        self.session_id: Optional[str] = None
        self._ws: Optional[Any] = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    async def open(self) -> None:
        async with self._connect_lock:
            if self.connected:
                return
            LOG.info("Connect with Kurento Media Server: %s", self.url)
            try:
                self._ws = await websockets.connect(
                    self.url, ping_interval=None, open_timeout=self.request_timeout
                )
            except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as exc:
                raise NegotiationError(f"cannot reach peer engine at {self.url}: {exc}") from exc
            self._reader = asyncio.create_task(self._read_loop())
            LOG.info("Kurento client connected")

    async def _read_loop(self) -> None:
        assert self._ws is not None
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    LOG.warning("Ignoring malformed frame from Kurento: %r", raw)
                    continue
                self._handle_frame(message)
        except websockets.ConnectionClosed as exc:
            LOG.warning("Kurento connection closed: %s", exc)
        finally:
            self._fail_pending(NegotiationError("peer engine connection closed"))

    def _handle_frame(self, message: Dict[str, Any]) -> None:
        if message.get("method") == "onEvent":
            value = (message.get("params") or {}).get("value") or {}
            LOG.debug("Kurento event %s on %s", value.get("type"), value.get("object"))
            return
        request_id = message.get("id")
        future = self._pending.pop(request_id, None)
        if future is None or future.done():
            return
        error = message.get("error")
        if error:
            future.set_exception(
                NegotiationError(f"Kurento error {error.get('code')}: {error.get('message')}")
            )
            return
        result = message.get("result") or {}
        if result.get("sessionId"):
            self.session_id = result["sessionId"]
        future.set_result(result)

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)

    async def request(self, method: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.connected:
            await self.open()
        assert self._ws is not None
        request_id = next(self._ids)
        payload_params = dict(params)
        if self.session_id:
            payload_params["sessionId"] = self.session_id
        payload = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": payload_params}
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._ws.send(json.dumps(payload))
            return await asyncio.wait_for(future, self.request_timeout)
        except asyncio.TimeoutError as exc:
            raise NegotiationError(f"Kurento {method} timed out after {self.request_timeout}s") from exc
        except websockets.ConnectionClosed as exc:
            raise NegotiationError(f"peer engine connection closed during {method}") from exc
        finally:
            self._pending.pop(request_id, None)

    async def create(self, type_name: str, constructor_params: Optional[Dict[str, Any]] = None) -> str:
        result = await self.request(
            "create",
            {"type": type_name, "constructorParams": constructor_params or {}, "properties": {}},
        )
        return str(result.get("value"))

    async def invoke(self, object_id: str, operation: str, operation_params: Optional[Dict[str, Any]] = None) -> Any:
        result = await self.request(
            "invoke",
            {"object": object_id, "operation": operation, "operationParams": operation_params or {}},
        )
        return result.get("value")

    async def create_pipeline(self) -> str:
        pipeline = await self.create("MediaPipeline")
        LOG.info("Kurento pipeline created")
        return pipeline

    async def create_rtp_endpoint(self, pipeline: str, crypto: Optional[SdesCrypto] = None) -> str:
        params: Dict[str, Any] = {"mediaPipeline": pipeline}
        if crypto is not None:
            params["crypto"] = crypto.to_dict()
        return await self.create("RtpEndpoint", params)

    async def process_offer(self, endpoint: str, offer: str) -> str:
        answer = await self.invoke(endpoint, "processOffer", {"offer": offer})
        if not answer:
            raise NegotiationError("Kurento returned an empty SDP answer")
        return str(answer)

    async def set_max_video_send_bandwidth(self, endpoint: str, kbps: int) -> None:
        await self.invoke(endpoint, "setMaxVideoSendBandwidth", {"maxVideoSendBandwidth": int(kbps)})

    async def create_filter(self, pipeline: str, command: str) -> str:
        return await self.create("GStreamerFilter", {"mediaPipeline": pipeline, "command": command})

    async def connect(self, source: str, sink: str) -> None:
        await self.invoke(source, "connect", {"sink": sink})

    async def release(self, object_id: str) -> None:
        await self.request("release", {"object": object_id})

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            with contextlib.suppress(websockets.WebSocketException, OSError):
                await ws.close()
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None
        self._fail_pending(NegotiationError("peer engine client closed"))
        self.session_id = None


__all__ = ["KurentoClient", "PeerEngine", "SdesCrypto", "kurento_crypto_suite"]
