import base64
import json
import os
from uuid import uuid4

import httpx
import pytest

from qkd_etsi.config import Settings
from qkd_etsi.etsi004.backends import simulated as simulated_stream
from qkd_etsi.etsi004.engine import StreamEngine
from qkd_etsi.etsi004.models import QoS
from qkd_etsi.etsi014.backends import simulated as simulated_vault
from qkd_etsi.etsi014.backends.simulated import SimulatedKeyVault
from qkd_etsi.registry import QKDContext


class FakeClock:
    """Monotonic millisecond clock advanced by hand."""

    def __init__(self, start_ms: int = 1_000_000):
        self.now_ms = start_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        qkd_master_kme_hostname="kme-1.example.org",
        qkd_slave_kme_hostname="kme-2.example.org",
        qkd_master_sae="sae-1",
        qkd_slave_sae="sae-2",
    )


@pytest.fixture
def qos():
    return QoS(
        key_chunk_size=32,
        max_bps=40000,
        min_bps=5000,
        jitter=10,
        priority=0,
        timeout=5000,
        ttl=60,
        metadata_mimetype="application/json",
    )


@pytest.fixture
def engine(clock):
    return StreamEngine(clock=clock)


@pytest.fixture
def vault():
    return SimulatedKeyVault(max_key_count=64, max_key_per_request=16)


@pytest.fixture
def ctx(engine, vault):
    return QKDContext(
        stream_backend=simulated_stream.create_backend(engine=engine),
        vault_backend=simulated_vault.create_backend(vault=vault),
    )


@pytest.fixture
def random_ksid():
    return os.urandom(16)


class FakeKME:
    """
    In-memory ETSI 014 KME for httpx.MockTransport.

    Keys handed out through enc_keys can be fetched once through dec_keys.
    """

    def __init__(self):
        self.keys = {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.endswith("/status"):
            return httpx.Response(200, json={
                "source_KME_ID": "KME-1",
                "target_KME_ID": "KME-2",
                "master_SAE_ID": "sae-1",
                "slave_SAE_ID": "sae-2",
                "key_size": 256,
                "stored_key_count": 25000,
                "max_key_count": 100000,
                "max_key_per_request": 128,
                "max_key_size": 1024,
                "min_key_size": 64,
                "max_SAE_ID_count": 0,
            })

        if path.endswith("/enc_keys"):
            if request.method == "POST":
                body = json.loads(request.content)
                number, size = body["number"], body["size"]
            else:
                number = int(request.url.params["number"])
                size = int(request.url.params["size"])
            entries = []
            for _ in range(number):
                entry = {"key_ID": str(uuid4()), "key": base64.b64encode(os.urandom(size // 8)).decode()}
                self.keys[entry["key_ID"]] = entry
                entries.append(entry)
            return httpx.Response(200, json={"keys": entries})

        if path.endswith("/dec_keys"):
            wanted = [k["key_ID"] for k in json.loads(request.content)["key_IDs"]]
            if any(k not in self.keys for k in wanted):
                return httpx.Response(400, json={"message": "key not found"})
            return httpx.Response(200, json={"keys": [self.keys.pop(k) for k in wanted]})

        return httpx.Response(404)


@pytest.fixture
def kme():
    return FakeKME()


@pytest.fixture
def rest_settings(settings, tmp_path):
    return settings.model_copy(update={
        "vault_backend": "rest",
        "qkd_master_cert_path": tmp_path / "master.crt",
        "qkd_master_key_path": tmp_path / "master.key",
        "qkd_master_ca_cert_path": tmp_path / "ca.crt",
        "qkd_slave_cert_path": tmp_path / "slave.crt",
        "qkd_slave_key_path": tmp_path / "slave.key",
        "qkd_slave_ca_cert_path": tmp_path / "ca.crt",
    })
