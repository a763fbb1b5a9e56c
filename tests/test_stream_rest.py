import json
from dataclasses import replace

import httpx
import pytest

from qkd_etsi.etsi004 import api
from qkd_etsi.etsi004.backends import rest as rest_stream
from qkd_etsi.etsi004.models import MetadataBuffer, StreamStatus
from qkd_etsi.registry import QKDContext, build_context


def trust_all(credentials):
    return True


@pytest.fixture
def make_ctx(rest_settings, clock):
    def _make(handler):
        backend = rest_stream.create_backend(
            rest_settings,
            clock=clock,
            transport=httpx.MockTransport(handler),
            ssl_context_factory=trust_all,
        )
        return QKDContext(stream_backend=backend)

    return _make


@pytest.fixture
def initiator(make_ctx, kme):
    return make_ctx(kme)


@pytest.fixture
def responder(make_ctx, kme):
    return make_ctx(kme)


def key_id_of(metadata: MetadataBuffer) -> str:
    return json.loads(metadata.data)["key_ID"]


class TestInitiator:

    def test_chunk_drawn_from_enc_keys(self, initiator, kme, qos):
        opened = api.open_connect(initiator, "client://a", "server://b", qos)
        metadata = MetadataBuffer(capacity=256)

        result = api.get_key(initiator, opened.key_stream_id, 0, metadata)

        assert opened.status == StreamStatus.PEER_DISCONNECTED
        assert result.status == StreamStatus.SUCCESS
        assert len(result.key) == qos.key_chunk_size
        assert key_id_of(metadata) in kme.keys
        request = kme.requests[0]
        assert request.method == "GET"
        assert str(request.url) == "https://kme-1.example.org/api/v1/keys/sae-2/enc_keys?number=1&size=256"

    def test_rate_bound_checked_before_kme(self, initiator, kme, qos):
        opened = api.open_connect(initiator, "client://a", "server://b", qos)

        result = api.get_key(initiator, opened.key_stream_id, 5, MetadataBuffer())

        assert result.status == StreamStatus.INSUFFICIENT_KEY
        assert kme.requests == []

    def test_unknown_stream(self, initiator, kme, random_ksid):
        result = api.get_key(initiator, random_ksid, 0, MetadataBuffer())

        assert result.status == StreamStatus.PEER_NOT_CONNECTED_GET_KEY
        assert kme.requests == []

    def test_metadata_buffer_required(self, initiator, kme, qos):
        opened = api.open_connect(initiator, "client://a", "server://b", qos)

        assert api.get_key(initiator, opened.key_stream_id, 0).status == StreamStatus.NO_CONNECTION
        assert kme.requests == []

    def test_small_metadata_buffer_keeps_drawn_key(self, initiator, kme, qos):
        opened = api.open_connect(initiator, "client://a", "server://b", qos)
        small = MetadataBuffer(capacity=4)

        first = api.get_key(initiator, opened.key_stream_id, 0, small)
        retry = api.get_key(initiator, opened.key_stream_id, 0, MetadataBuffer(capacity=small.required_size))

        assert first.status == StreamStatus.METADATA_SIZE_INSUFFICIENT
        assert small.required_size > 4
        assert retry.status == StreamStatus.SUCCESS
        assert len(kme.requests) == 1

    @pytest.mark.parametrize("http_code,expected", [
        (400, StreamStatus.INSUFFICIENT_KEY),
        (401, StreamStatus.NO_CONNECTION),
        (503, StreamStatus.PEER_NOT_CONNECTED_GET_KEY),
    ])
    def test_kme_errors(self, make_ctx, qos, http_code, expected):
        ctx = make_ctx(lambda request: httpx.Response(http_code, json={"message": "nope"}))
        opened = api.open_connect(ctx, "client://a", "server://b", qos)

        assert api.get_key(ctx, opened.key_stream_id, 0, MetadataBuffer()).status == expected


class TestResponder:

    def test_same_chunk_through_dec_keys(self, initiator, responder, kme, qos, clock):
        opened = api.open_connect(initiator, "client://a", "server://b", qos)
        clock.advance(100)
        sent_meta = MetadataBuffer(capacity=256)
        sent = api.get_key(initiator, opened.key_stream_id, 1, sent_meta)

        joined = api.open_connect(responder, "client://b", "server://a", qos, opened.key_stream_id)
        received_meta = MetadataBuffer(capacity=256, data=sent_meta.data)
        received = api.get_key(responder, opened.key_stream_id, 0, received_meta)

        assert joined.status == StreamStatus.SUCCESS
        assert received.status == StreamStatus.SUCCESS
        assert received.key == sent.key
        assert key_id_of(received_meta) == key_id_of(sent_meta)
        request = kme.requests[-1]
        assert str(request.url) == "https://kme-2.example.org/api/v1/keys/sae-1/dec_keys"
        assert json.loads(request.content) == {"key_IDs": [{"key_ID": key_id_of(sent_meta)}]}

    def test_chunk_delivered_once(self, initiator, responder, qos, clock):
        opened = api.open_connect(initiator, "client://a", "server://b", qos)
        meta = MetadataBuffer(capacity=256)
        api.get_key(initiator, opened.key_stream_id, 0, meta)
        api.open_connect(responder, "client://b", "server://a", qos, opened.key_stream_id)
        clock.advance(100)

        assert api.get_key(responder, opened.key_stream_id, 0, MetadataBuffer(data=meta.data)).ok
        again = api.get_key(responder, opened.key_stream_id, 1, MetadataBuffer(data=meta.data))

        assert again.status == StreamStatus.INSUFFICIENT_KEY

    @pytest.mark.parametrize("data", [b"", b"not json", b"[]", b'{"age": 3}'])
    def test_missing_key_id(self, responder, kme, qos, random_ksid, data):
        api.open_connect(responder, "client://b", "server://a", qos, random_ksid)

        result = api.get_key(responder, random_ksid, 0, MetadataBuffer(data=data))

        assert result.status == StreamStatus.NO_CONNECTION
        assert kme.requests == []


class TestLifecycle:

    def test_ksid_in_use_and_close(self, responder, qos, random_ksid, clock):
        assert api.open_connect(responder, "client://b", "server://a", qos, random_ksid).ok
        assert api.open_connect(responder, "client://b", "server://a", qos, random_ksid).status == StreamStatus.KSID_IN_USE

        assert api.close(responder, random_ksid).ok
        clock.advance(qos.ttl * 1000)
        assert api.close(responder, random_ksid).ok
        assert api.get_key(responder, random_ksid, 0, MetadataBuffer()).status == StreamStatus.PEER_NOT_CONNECTED_GET_KEY

    def test_infeasible_qos_rejected(self, initiator, kme, qos):
        result = api.open_connect(initiator, "client://a", "server://b", replace(qos, min_bps=qos.max_bps + 1))

        assert result.status == StreamStatus.QOS_NOT_MET
        assert kme.requests == []

    def test_registered_by_name(self, rest_settings):
        ctx = build_context(rest_settings, stream_backend="rest")
        assert ctx.stream_backend.name == "rest"
