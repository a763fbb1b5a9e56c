"""
Command-line harness for the QKD ETSI client.

    python -m qkd_etsi status
    python -m qkd_etsi vault --number 2 --size 256
    python -m qkd_etsi stream --count 3
    python -m qkd_etsi pki --out ./pki

Backends, KME hostnames and SAE IDs come from the environment (or ``.env``)
unless overridden on the command line.
"""

import argparse
import logging
import sys
import time
from pathlib import Path
from typing import List, Optional

from .config import Settings, get_settings
from .etsi004 import api as stream_api
from .etsi004.models import MetadataBuffer
from .etsi014 import api as vault_api
from .etsi014.models import KeyRequest
from .exceptions import BackendNotConfiguredError
from .log import configure_logging
from .pki import env_lines, generate_pki
from .registry import QKDContext, build_context

logger = logging.getLogger(__name__)


def _run_status(ctx: QKDContext, settings: Settings, args: argparse.Namespace) -> int:
    host = args.kme or settings.qkd_master_kme_hostname
    slave = args.slave_sae or settings.qkd_slave_sae

    result = vault_api.get_status(ctx, host, slave)
    print(f"GET_STATUS: {result.code.name} ({int(result.code)})")
    if not result.ok:
        return 1

    status = result.status
    print(f"  source KME:      {status.source_kme_id}")
    print(f"  target KME:      {status.target_kme_id}")
    print(f"  key size:        {status.key_size}")
    print(f"  stored keys:     {status.stored_key_count}/{status.max_key_count}")
    print(f"  max per request: {status.max_key_per_request}")
    return 0


def _run_vault(ctx: QKDContext, settings: Settings, args: argparse.Namespace) -> int:
    master_host = args.kme or settings.qkd_master_kme_hostname
    slave_host = args.slave_kme or settings.qkd_slave_kme_hostname or master_host
    master_sae = args.master_sae or settings.qkd_master_sae
    slave_sae = args.slave_sae or settings.qkd_slave_sae

    request = KeyRequest(number=args.number, size=args.size)
    result = vault_api.get_key(ctx, master_host, slave_sae, request)
    print(f"GET_KEY: {result.code.name} ({int(result.code)})")
    if not result.ok:
        return 1
    for key in result.container.keys:
        print(f"  {key.key_id} ({len(key.key) * 8} bits)")

    retrieved = vault_api.get_key_with_ids(ctx, slave_host, master_sae, result.container.key_ids())
    print(f"GET_KEY_WITH_IDS: {retrieved.code.name} ({int(retrieved.code)})")
    if not retrieved.ok:
        return 1

    matched = all(a.key == b.key for a, b in zip(result.container.keys, retrieved.container.keys))
    print(f"  keys match: {'yes' if matched else 'NO'}")
    return 0 if matched else 1


def _run_stream(ctx: QKDContext, settings: Settings, args: argparse.Namespace) -> int:
    qos = settings.default_qos()
    opened = stream_api.open_connect(ctx, args.source, args.destination, qos)
    print(f"OPEN_CONNECT: {opened.status.name} ({int(opened.status)})")
    if not opened.ok:
        return 1
    print(f"  KSID: {opened.key_stream_id.hex()}")

    failed = False
    # one chunk becomes deliverable every 8 * chunk / max_bps seconds
    interval = 8 * qos.key_chunk_size / qos.max_bps + 0.001
    for index in range(args.count):
        if index:
            time.sleep(interval)
        metadata = MetadataBuffer(capacity=settings.metadata_size)
        result = stream_api.get_key(ctx, opened.key_stream_id, index, metadata)
        print(f"GET_KEY[{index}]: {result.status.name} ({int(result.status)})")
        if result.ok:
            print(f"  {len(result.key)} bytes")
        else:
            failed = True

    closed = stream_api.close(ctx, opened.key_stream_id)
    print(f"CLOSE: {closed.status.name} ({int(closed.status)})")
    return 1 if failed or not closed.ok else 0


def _run_pki(ctx: QKDContext, settings: Settings, args: argparse.Namespace) -> int:
    credentials = generate_pki(args.out, hosts=args.host or ("localhost", "127.0.0.1"))
    for line in env_lines(credentials):
        print(line)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="qkd_etsi", description="Exercise the QKD Stream and Vault APIs.")
    parser.add_argument("--stream-backend", choices=["simulated", "legacy", "rest", "none"], default=None)
    parser.add_argument("--vault-backend", choices=["simulated", "rest", "cerberis_xgr", "none"], default=None)
    parser.add_argument("--log-level", default=None)

    commands = parser.add_subparsers(dest="command", required=True)

    status = commands.add_parser("status", help="Query KME status (ETSI 014)")
    status.add_argument("--kme", help="Master KME hostname")
    status.add_argument("--slave-sae", help="Slave SAE ID")
    status.set_defaults(func=_run_status)

    vault = commands.add_parser("vault", help="Request keys, then retrieve them by ID (ETSI 014)")
    vault.add_argument("--kme", help="Master KME hostname")
    vault.add_argument("--slave-kme", help="Slave KME hostname")
    vault.add_argument("--master-sae", help="Master SAE ID")
    vault.add_argument("--slave-sae", help="Slave SAE ID")
    vault.add_argument("--number", type=int, default=1)
    vault.add_argument("--size", type=int, default=None, help="Key size in bits")
    vault.set_defaults(func=_run_vault)

    stream = commands.add_parser("stream", help="Open a key stream, fetch chunks, close (ETSI 004)")
    stream.add_argument("--source", default="client://localhost")
    stream.add_argument("--destination", default="server://localhost:25575")
    stream.add_argument("--count", type=int, default=1, help="Number of chunks to fetch")
    stream.set_defaults(func=_run_stream)

    pki = commands.add_parser("pki", help="Generate a test CA plus master/slave mTLS credentials")
    pki.add_argument("--out", type=Path, default=Path("pki"), help="Output directory")
    pki.add_argument("--host", action="append", help="Host name or IP for the certificates (repeatable)")
    pki.set_defaults(func=_run_pki)

    return parser


def main(argv: Optional[List[str]] = None, settings: Optional[Settings] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = settings or get_settings()
    configure_logging(args.log_level or settings.log_level, settings.debug)

    try:
        ctx = build_context(settings, args.stream_backend, args.vault_backend)
    except BackendNotConfiguredError as e:
        logger.error("%s", e)
        return 2

    return args.func(ctx, settings, args)


if __name__ == "__main__":
    sys.exit(main())
