import json
from dataclasses import replace

import pytest

from qkd_etsi.etsi004.engine import (
    SessionTable,
    StreamEngine,
    derive_key,
    max_deliverable_index,
)
from qkd_etsi.etsi004.models import (
    KSID_SIZE,
    ZERO_KSID,
    MetadataBuffer,
    QoS,
    StreamStatus,
)

SOURCE = "client://alice"
DESTINATION = "server://bob:25575"


def open_initiator(engine, qos):
    return engine.open_connect(SOURCE, DESTINATION, qos, ZERO_KSID)


class TestOpenConnect:

    def test_initiator_gets_fresh_ksid(self, engine, qos):
        result = open_initiator(engine, qos)

        assert result.status == StreamStatus.PEER_DISCONNECTED
        assert len(result.key_stream_id) == KSID_SIZE
        assert result.key_stream_id != ZERO_KSID
        assert result.qos == qos

    def test_initiator_ksids_are_unique(self, engine, qos):
        first = open_initiator(engine, qos)
        second = open_initiator(engine, qos)
        assert first.key_stream_id != second.key_stream_id

    def test_responder_with_existing_ksid_is_in_use(self, engine, clock, qos):
        opened = open_initiator(engine, qos)

        result = engine.open_connect(DESTINATION, SOURCE, qos, opened.key_stream_id)

        assert result.status == StreamStatus.KSID_IN_USE
        assert len(engine.sessions.active(clock())) == 1

    def test_responder_on_peer_engine_succeeds(self, clock, qos):
        alice = StreamEngine(clock=clock)
        bob = StreamEngine(clock=clock)
        opened = open_initiator(alice, qos)

        result = bob.open_connect(DESTINATION, SOURCE, qos, opened.key_stream_id)

        assert result.status == StreamStatus.SUCCESS
        assert result.key_stream_id == opened.key_stream_id

    def test_responder_twice_is_in_use(self, engine, qos, random_ksid):
        assert engine.open_connect(SOURCE, DESTINATION, qos, random_ksid).status == StreamStatus.SUCCESS
        assert engine.open_connect(SOURCE, DESTINATION, qos, random_ksid).status == StreamStatus.KSID_IN_USE

    def test_min_above_max_bps_is_qos_not_met(self, engine, clock, qos):
        bad = replace(qos, min_bps=qos.max_bps + 1)

        result = open_initiator(engine, bad)

        assert result.status == StreamStatus.QOS_NOT_MET
        assert engine.sessions.active(clock()) == []

    def test_zero_chunk_size_is_qos_not_met(self, engine, qos):
        result = open_initiator(engine, replace(qos, key_chunk_size=0))
        assert result.status == StreamStatus.QOS_NOT_MET

    @pytest.mark.parametrize("source,destination", [("", DESTINATION), (SOURCE, ""), (None, DESTINATION)])
    def test_missing_uri_is_no_connection(self, engine, qos, source, destination):
        result = engine.open_connect(source, destination, qos, ZERO_KSID)
        assert result.status == StreamStatus.NO_CONNECTION

    def test_wrong_ksid_length_is_no_connection(self, engine, qos):
        result = engine.open_connect(SOURCE, DESTINATION, qos, b"\x01" * 8)
        assert result.status == StreamStatus.NO_CONNECTION

    def test_session_keeps_its_own_qos_copy(self, engine, clock, qos):
        opened = open_initiator(engine, qos)
        qos.max_bps = 1

        session = engine.sessions.find(opened.key_stream_id, clock())
        assert session.qos.max_bps == 40000


class TestGetKey:

    def test_same_index_returns_same_key(self, engine, qos):
        ksid = open_initiator(engine, qos).key_stream_id

        first = engine.get_key(ksid, 0)
        second = engine.get_key(ksid, 0)

        assert first.status == StreamStatus.SUCCESS
        assert first.key == second.key
        assert len(first.key) == qos.key_chunk_size

    def test_different_index_returns_different_key(self, engine, clock, qos):
        ksid = open_initiator(engine, qos).key_stream_id
        clock.advance(1000)

        assert engine.get_key(ksid, 1).key != engine.get_key(ksid, 2).key

    def test_peers_derive_identical_material(self, clock, qos):
        alice = StreamEngine(clock=clock)
        bob = StreamEngine(clock=clock)
        ksid = open_initiator(alice, qos).key_stream_id
        bob.open_connect(DESTINATION, SOURCE, qos, ksid)
        clock.advance(500)

        assert alice.get_key(ksid, 3).key == bob.get_key(ksid, 3).key

    def test_unknown_ksid_is_not_connected(self, engine, random_ksid):
        result = engine.get_key(random_ksid, 0)
        assert result.status == StreamStatus.PEER_NOT_CONNECTED_GET_KEY

    def test_index_beyond_rate_bound_is_insufficient_key(self, engine, clock, qos):
        ksid = open_initiator(engine, qos).key_stream_id
        clock.advance(100)
        # 100 ms * 40000 bps / (8000 * 32) = 15.625
        assert engine.get_key(ksid, 15).status == StreamStatus.SUCCESS
        assert engine.get_key(ksid, 16).status == StreamStatus.INSUFFICIENT_KEY

    def test_index_zero_available_immediately(self, engine, qos):
        ksid = open_initiator(engine, qos).key_stream_id
        assert engine.get_key(ksid, 0).status == StreamStatus.SUCCESS
        assert engine.get_key(ksid, 1).status == StreamStatus.INSUFFICIENT_KEY

    def test_negative_index_is_no_connection(self, engine, qos):
        ksid = open_initiator(engine, qos).key_stream_id
        assert engine.get_key(ksid, -1).status == StreamStatus.NO_CONNECTION

    def test_metadata_filled_when_it_fits(self, engine, clock, qos):
        ksid = open_initiator(engine, qos).key_stream_id
        clock.advance(250)
        metadata = MetadataBuffer(capacity=1024)

        result = engine.get_key(ksid, 0, metadata)

        assert result.status == StreamStatus.SUCCESS
        assert json.loads(metadata.data) == {"age": 250, "hops": 0}
        assert metadata.required_size == len(metadata.data)

    def test_undersized_metadata_reports_required_size(self, engine, qos):
        ksid = open_initiator(engine, qos).key_stream_id
        metadata = MetadataBuffer(capacity=4)

        result = engine.get_key(ksid, 0, metadata)

        assert result.status == StreamStatus.METADATA_SIZE_INSUFFICIENT
        assert result.key == b""
        assert metadata.data == b""
        assert metadata.required_size > 4

    def test_last_index_tracked(self, engine, clock, qos):
        ksid = open_initiator(engine, qos).key_stream_id
        clock.advance(1000)
        engine.get_key(ksid, 7)
        assert engine.sessions.find(ksid, clock()).last_index == 7


class TestClose:

    def test_close_before_ttl_keeps_session_queryable(self, engine, clock, qos):
        ksid = open_initiator(engine, qos).key_stream_id

        assert engine.close(ksid).status == StreamStatus.SUCCESS

        session = engine.sessions.find(ksid, clock())
        assert session is not None
        assert session.pending_close is True
        assert engine.get_key(ksid, 0).status == StreamStatus.SUCCESS

    def test_early_close_is_idempotent(self, engine, qos):
        ksid = open_initiator(engine, qos).key_stream_id
        assert engine.close(ksid).status == StreamStatus.SUCCESS
        assert engine.close(ksid).status == StreamStatus.SUCCESS

    def test_session_invalid_after_ttl(self, engine, clock, qos):
        ksid = open_initiator(engine, qos).key_stream_id
        engine.close(ksid)

        clock.advance(qos.ttl * 1000)

        assert engine.get_key(ksid, 0).status == StreamStatus.PEER_NOT_CONNECTED_GET_KEY

    def test_close_after_ttl_frees_slot(self, engine, clock, qos):
        ksid = open_initiator(engine, qos).key_stream_id
        clock.advance(qos.ttl * 1000)

        assert engine.close(ksid).status == StreamStatus.SUCCESS
        assert engine.sessions.find(ksid, clock(), include_expired=True) is None
        assert engine.close(ksid).status == StreamStatus.PEER_NOT_CONNECTED_GET_KEY

    def test_zero_ttl_closes_immediately(self, engine, clock, qos):
        ksid = open_initiator(engine, replace(qos, ttl=0)).key_stream_id

        assert engine.close(ksid).status == StreamStatus.SUCCESS
        assert engine.sessions.find(ksid, clock(), include_expired=True) is None

    def test_close_unknown_ksid(self, engine, random_ksid):
        assert engine.close(random_ksid).status == StreamStatus.PEER_NOT_CONNECTED_GET_KEY


class TestCapacity:

    def test_exhausted_table_recovers_after_ttl(self, engine, clock, qos):
        short = replace(qos, ttl=5)
        opened = [open_initiator(engine, short) for _ in range(engine.sessions.capacity)]
        assert all(r.status == StreamStatus.PEER_DISCONNECTED for r in opened)

        assert open_initiator(engine, qos).status == StreamStatus.NO_CONNECTION

        clock.advance(5000)
        assert open_initiator(engine, qos).status == StreamStatus.PEER_DISCONNECTED

    def test_default_capacity_is_sixteen(self, engine):
        assert engine.sessions.capacity == 16

    def test_lowest_free_slot_reused_first(self, qos):
        table = SessionTable(capacity=3)
        first = table.allocate(0)
        first.open(b"\x01" * 16, qos, 0, True)
        second = table.allocate(0)
        second.open(b"\x02" * 16, qos, 0, True)

        first.clear()

        assert table.allocate(0) is first

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            SessionTable(capacity=0)


class TestKeyDerivation:

    def test_length_follows_chunk_size(self):
        assert len(derive_key(0, 16)) == 16
        assert len(derive_key(0, 100)) == 100

    def test_long_chunk_extends_short_chunk(self):
        assert derive_key(9, 100)[:32] == derive_key(9, 32)

    def test_rate_bound(self):
        qos = QoS(key_chunk_size=32, max_bps=40000, min_bps=0)
        assert max_deliverable_index(0, qos) == 0
        assert max_deliverable_index(1000, qos) == 156
