"""Tests covering the router to peer engine bridge."""

from __future__ import annotations

import pytest

from helpers import FakePeerEngine, vp8_parameters
from sfubridge.config import BridgeConfig
from sfubridge.errors import NegotiationError
from sfubridge.media import ortc
from sfubridge.media.engine import PlainTransportOptions, WorkerSettings
from sfubridge.media.memory import InMemoryEngine
from sfubridge.rtc.bridge import PeerBridge
from sfubridge.rtc.sdp import BridgeAnswer


async def make_bridge(peer: FakePeerEngine, config: BridgeConfig):
    engine = InMemoryEngine(bind_plain_sockets=False)
    worker = await engine.create_worker(WorkerSettings(rtc_min_port=41000, rtc_max_port=41100))
    router = await worker.create_router(ortc.select_media_codecs(config.codec_catalog(), "VP8"))
    ingress = await router.create_plain_transport(PlainTransportOptions())
    producer = await ingress.produce("video", vp8_parameters())
    bridge = PeerBridge(
        router, peer, peer_config=config.peer, srtp_config=config.srtp, media_config=config.media
    )
    return bridge, producer


async def test_bridge_builds_both_legs_and_filter(peer) -> None:
    config = BridgeConfig()
    bridge, producer = await make_bridge(peer, config)

    await bridge.start(producer)

    send_leg, recv_leg = bridge.send_leg, bridge.recv_leg
    assert send_leg.transport.tuple.remote_port == 40000
    assert send_leg.transport.rtcp_tuple.remote_port == 40001
    assert send_leg.consumer.producer_id == producer.id
    assert recv_leg.producer is bridge.recv_producer
    assert recv_leg.producer.rtp_parameters.encodings[0].ssrc == 424242
    assert peer.bandwidth == {recv_leg.endpoint: config.peer.max_video_send_bandwidth}
    assert peer.links == [(send_leg.endpoint, bridge.filter), (bridge.filter, recv_leg.endpoint)]

    send_offer = dict(peer.offers)[send_leg.endpoint]
    ssrc = send_leg.consumer.rtp_parameters.encodings[0].ssrc
    assert f"a=ssrc:{ssrc} cname:" in send_offer
    assert f"m=video {send_leg.transport.tuple.local_port} RTP/AVPF 96" in send_offer
    assert "a=ssrc" not in dict(peer.offers)[recv_leg.endpoint]


async def test_bridge_with_srtp_shares_the_configured_key(peer) -> None:
    config = BridgeConfig()
    bridge, producer = await make_bridge(peer, config)

    await bridge.start(producer, enable_srtp=True)

    for leg in (bridge.send_leg, bridge.recv_leg):
        crypto = peer.endpoints[leg.endpoint]
        assert crypto.to_dict() == {"crypto": "AES_128_CM_HMAC_SHA1_80", "keyBase64": config.srtp.key_base64}
        assert leg.transport.remote_srtp_parameters.key_base64 == config.srtp.key_base64
        offer = dict(peer.offers)[leg.endpoint]
        assert "RTP/SAVPF" in offer
        assert f"inline:{leg.transport.srtp_parameters.key_base64}|2^31|1:1" in offer


async def test_unanswered_offer_releases_only_that_leg() -> None:
    config = BridgeConfig()
    config.peer.offer_answer_timeout = 0.05
    peer = FakePeerEngine(stall_recv_leg=True)
    bridge, producer = await make_bridge(peer, config)

    with pytest.raises(NegotiationError, match="did not answer"):
        await bridge.start(producer)

    assert bridge.send_leg is not None
    assert not bridge.send_leg.transport.closed
    assert bridge.recv_leg is None
    stalled_endpoint = peer.offers[-1][0]
    assert peer.released == [stalled_endpoint]

    await bridge.close()

    assert bridge.send_leg.transport.closed
    assert bridge.send_leg.endpoint in peer.released
    assert peer.released[-1].startswith("pipeline")


async def test_close_releases_peer_objects(peer) -> None:
    bridge, producer = await make_bridge(peer, BridgeConfig())
    await bridge.start(producer)
    filter_id = bridge.filter

    await bridge.close()
    await bridge.close()

    assert bridge.send_leg.consumer.closed
    assert bridge.recv_leg.producer.closed
    assert peer.released[0] == filter_id
    assert len(peer.released) == 4


def test_peer_address_rewrites(monkeypatch) -> None:
    config = BridgeConfig()
    config.peer.ip = "10.1.1.1"
    bridge = PeerBridge(
        router=None, peer=FakePeerEngine(), peer_config=config.peer, srtp_config=config.srtp, media_config=config.media
    )
    answer = BridgeAnswer.parse(
        "v=0\r\nc=IN IP4 192.168.1.20\r\nm=video 40000 RTP/AVPF 96\r\na=rtpmap:96 VP8/90000\r\n"
    )
    monkeypatch.setattr("sfubridge.rtc.bridge.rewrite_loopback", lambda address: f"lo:{address}")

    assert bridge.resolve_peer_address(answer) == "lo:192.168.1.20"
    config.peer.use_announced_address = True
    assert bridge.resolve_peer_address(answer) == "192.168.1.20"
    config.peer.override_address = True
    assert bridge.resolve_peer_address(answer) == "10.1.1.1"
