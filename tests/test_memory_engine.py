from __future__ import annotations

import pytest

from helpers import client_dtls, opus_parameters, vp8_parameters
from sfubridge.config import BridgeConfig
from sfubridge.errors import EngineError, NegotiationError, OrderingError, TransportStateError
from sfubridge.media import ortc
from sfubridge.media.engine import (
    BweTrace,
    EngineEvent,
    PlainTransportOptions,
    TransportState,
    WebRtcTransportOptions,
    WorkerSettings,
)
from sfubridge.media.memory import InMemoryEngine, PortAllocator
from sfubridge.media.rtp import DtlsParameters


async def make_router(engine: InMemoryEngine):
    worker = await engine.create_worker(WorkerSettings(rtc_min_port=40000, rtc_max_port=40100))
    codecs = ortc.select_media_codecs(BridgeConfig().codec_catalog(), "VP8")
    return await worker.create_router(codecs)


async def test_consume_unknown_producer_is_an_ordering_error() -> None:
    router = await make_router(InMemoryEngine(bind_plain_sockets=False))
    transport = await router.create_webrtc_transport(WebRtcTransportOptions())

    with pytest.raises(OrderingError, match="not found"):
        await transport.consume("missing", router.rtp_capabilities)


async def test_webrtc_transport_produces_only_once_connected() -> None:
    router = await make_router(InMemoryEngine(bind_plain_sockets=False))
    transport = await router.create_webrtc_transport(WebRtcTransportOptions())

    with pytest.raises(TransportStateError):
        await transport.produce("video", vp8_parameters())

    await transport.connect(client_dtls())
    producer = await transport.produce("video", vp8_parameters())

    assert transport.state == TransportState.CONNECTED
    assert router.get_producer(producer.id) is producer
    assert producer.rtp_parameters.rtcp.cname


async def test_webrtc_connect_is_idempotent_for_same_parameters() -> None:
    router = await make_router(InMemoryEngine(bind_plain_sockets=False))
    transport = await router.create_webrtc_transport(WebRtcTransportOptions())

    await transport.connect(client_dtls())
    await transport.connect(client_dtls())

    with pytest.raises(TransportStateError):
        await transport.connect(client_dtls("11:22:33"))


async def test_webrtc_connect_requires_fingerprint() -> None:
    router = await make_router(InMemoryEngine(bind_plain_sockets=False))
    transport = await router.create_webrtc_transport(WebRtcTransportOptions())

    with pytest.raises(NegotiationError):
        await transport.connect(DtlsParameters(role="client", fingerprints=[]))


async def test_transport_descriptor_is_wire_ready() -> None:
    router = await make_router(InMemoryEngine(bind_plain_sockets=False))
    transport = await router.create_webrtc_transport(WebRtcTransportOptions(announced_ip="203.0.113.7"))

    descriptor = transport.describe()

    assert descriptor["id"] == transport.id
    assert descriptor["iceParameters"]["iceLite"] is True
    assert {candidate["protocol"] for candidate in descriptor["iceCandidates"]} == {"udp", "tcp"}
    assert all(candidate["ip"] == "203.0.113.7" for candidate in descriptor["iceCandidates"])
    assert descriptor["dtlsParameters"]["fingerprints"][0]["algorithm"] == "sha-256"


async def test_producer_rejects_codec_unknown_to_router() -> None:
    router = await make_router(InMemoryEngine(bind_plain_sockets=False))
    transport = await router.create_plain_transport(PlainTransportOptions())
    parameters = vp8_parameters()
    parameters.codecs[0].mime_type = "video/VP9"

    with pytest.raises(NegotiationError):
        await transport.produce("video", parameters)
    with pytest.raises(NegotiationError):
        await transport.produce("audio", vp8_parameters())


async def test_closing_producer_closes_its_consumers() -> None:
    router = await make_router(InMemoryEngine(bind_plain_sockets=False))
    ingress = await router.create_plain_transport(PlainTransportOptions())
    egress = await router.create_plain_transport(PlainTransportOptions())
    producer = await ingress.produce("audio", opus_parameters())
    consumer = await egress.consume(producer.id, router.rtp_capabilities, paused=True)
    events = []
    consumer.subscribe(lambda message: events.append(message.kind))

    assert consumer.paused is True
    assert consumer.rtp_parameters.codecs[0].mime_type == "audio/opus"

    await producer.close()

    assert consumer.closed is True
    assert events == [EngineEvent.PRODUCER_CLOSE]
    assert egress.consumers == []


async def test_plain_transport_explicit_connect() -> None:
    router = await make_router(InMemoryEngine(bind_plain_sockets=False))
    transport = await router.create_plain_transport(PlainTransportOptions(rtcp_mux=False))

    await transport.connect(ip="127.0.0.1", port=5004, rtcp_port=5005)

    assert transport.tuple.remote_port == 5004
    assert transport.rtcp_tuple.remote_port == 5005
    assert transport.connected
    with pytest.raises(TransportStateError):
        await transport.connect(ip="127.0.0.1", port=6000)


async def test_comedia_transport_learns_remote_tuple() -> None:
    router = await make_router(InMemoryEngine(bind_plain_sockets=False))
    transport = await router.create_plain_transport(PlainTransportOptions(comedia=True))
    seen = []
    transport.subscribe(lambda message: seen.append(message))

    with pytest.raises(TransportStateError):
        await transport.connect(ip="10.0.0.5", port=4000)

    transport.learn_remote("10.0.0.5", 4000)
    learned = await transport.wait_tuple(timeout=1.0)

    assert (learned.remote_ip, learned.remote_port) == ("10.0.0.5", 4000)
    assert transport.connected
    assert [message.kind for message in seen] == [EngineEvent.TUPLE]


async def test_srtp_requires_srtp_transport() -> None:
    router = await make_router(InMemoryEngine(bind_plain_sockets=False))
    plain = await router.create_plain_transport(PlainTransportOptions())
    secure = await router.create_plain_transport(PlainTransportOptions(comedia=True, enable_srtp=True))

    assert plain.srtp_parameters is None
    assert secure.srtp_parameters.crypto_suite == "AES_CM_128_HMAC_SHA1_80"
    with pytest.raises(TransportStateError):
        await plain.connect(srtp_parameters=secure.srtp_parameters)
    await secure.connect(srtp_parameters=secure.srtp_parameters)
    assert secure.remote_srtp_parameters == secure.srtp_parameters


async def test_trace_events_only_when_enabled() -> None:
    router = await make_router(InMemoryEngine(bind_plain_sockets=False))
    transport = await router.create_webrtc_transport(WebRtcTransportOptions())
    traces = []
    transport.subscribe(lambda message: traces.append(message.payload))

    transport.emit_trace(BweTrace(available_bitrate=100_000))
    await transport.enable_trace_event(["bwe"])
    transport.emit_trace(BweTrace(available_bitrate=200_000))

    assert [trace.available_bitrate for trace in traces] == [200_000]


async def test_router_close_closes_transports() -> None:
    engine = InMemoryEngine(bind_plain_sockets=False)
    router = await make_router(engine)
    transport = await router.create_webrtc_transport(WebRtcTransportOptions())

    await router.close()

    assert transport.closed
    with pytest.raises(EngineError):
        await router.create_webrtc_transport(WebRtcTransportOptions())


async def test_worker_crash_reports_died_event() -> None:
    engine = InMemoryEngine(bind_plain_sockets=False)
    await make_router(engine)
    worker = engine.workers[0]
    events = []
    worker.subscribe(lambda message: events.append((message.kind, message.payload)))

    worker.crash("segfault")
    worker.crash("again")

    assert events == [(EngineEvent.DIED, "segfault")]
    assert worker.closed


def test_port_allocator_exhaustion() -> None:
    ports = PortAllocator(5000, 5001)

    assert ports.allocate() == 5000
    assert ports.allocate() == 5001
    with pytest.raises(EngineError):
        ports.allocate()
    ports.release(5000)
    assert ports.allocate() == 5000


async def test_workers_share_one_port_range() -> None:
    engine = InMemoryEngine(bind_plain_sockets=False)
    first = await make_router(engine)
    second = await make_router(engine)

    old = await first.create_webrtc_transport(WebRtcTransportOptions())
    new = await second.create_webrtc_transport(WebRtcTransportOptions())

    assert old.port != new.port
    await first.worker.close()
    reused = await second.create_webrtc_transport(WebRtcTransportOptions())
    assert reused.port == old.port
    assert new.port != reused.port


async def test_closed_workers_are_forgotten() -> None:
    engine = InMemoryEngine(bind_plain_sockets=False)
    first = await make_router(engine)
    second = await make_router(engine)
    second.worker.crash("segfault")

    await first.worker.close()
    await second.worker.close()

    assert engine.workers == []
    assert second.closed


async def test_closing_releases_engine_ssrcs() -> None:
    engine = InMemoryEngine(bind_plain_sockets=False)
    router = await make_router(engine)
    ingress = await router.create_plain_transport(PlainTransportOptions())
    egress = await router.create_plain_transport(PlainTransportOptions())
    producer = await ingress.produce("audio", opus_parameters())
    consumer = await egress.consume(producer.id, router.rtp_capabilities)

    assert len(engine._ssrcs) == 2
    assert consumer.rtp_parameters.encodings[0].ssrc in engine._ssrcs

    await producer.close()

    assert engine._ssrcs == set()
