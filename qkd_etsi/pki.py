"""
Test PKI for mutual-TLS KME access.

Generates a root CA plus one certificate/key pair per SAE identity, laid
out so the result can be pointed to by the ``QKD_MASTER_*`` and
``QKD_SLAVE_*`` settings. Intended for local KME simulators and tests,
not for production credentials.
"""

import ipaddress
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .etsi014.backends.rest import CredentialSet

logger = logging.getLogger(__name__)

CA_CERT_FILE = "ca_cert.pem"
CA_KEY_FILE = "ca_key.pem"


def generate_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def _name(common_name: str, organization: str) -> x509.Name:
    return x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])


def _write_key(key: rsa.RSAPrivateKey, path: Path, password: Optional[bytes] = None) -> None:
    if password:
        encryption = serialization.BestAvailableEncryption(password)
    else:
        encryption = serialization.NoEncryption()
    path.write_bytes(key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    ))
    path.chmod(0o600)


def _write_cert(cert: x509.Certificate, path: Path) -> None:
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))


def _subject_alt_names(hosts: Iterable[str]) -> List[x509.GeneralName]:
    names: List[x509.GeneralName] = []
    for host in hosts:
        try:
            names.append(x509.IPAddress(ipaddress.ip_address(host)))
        except ValueError:
            names.append(x509.DNSName(host))
    return names


def create_root_ca(out_dir: Path, common_name: str = "QKD Test Root CA",
                   valid_days: int = 3650,
                   password: Optional[bytes] = None) -> Tuple[rsa.RSAPrivateKey, x509.Certificate]:
    key = generate_key()
    subject = _name(common_name, "QKD ETSI Test PKI")
    now = datetime.now(timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=valid_days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )

    _write_key(key, out_dir / CA_KEY_FILE, password)
    _write_cert(cert, out_dir / CA_CERT_FILE)
    logger.info("Generated root CA %s", common_name)
    return key, cert


def create_identity_cert(out_dir: Path, name: str, ca_key: rsa.RSAPrivateKey,
                         ca_cert: x509.Certificate, hosts: Iterable[str] = ("localhost", "127.0.0.1"),
                         valid_days: int = 365) -> CredentialSet:
    """
    Issue a certificate usable both as TLS client (SAE) and server (KME).

    Returns:
        CredentialSet pointing at the new cert, its key and the CA cert
    """
    key = generate_key()
    now = datetime.now(timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(_name(name, "QKD ETSI Test Network"))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=valid_days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.SubjectAlternativeName(_subject_alt_names([name, *hosts])), critical=False)
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH, ExtendedKeyUsageOID.SERVER_AUTH]),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )

    key_path = out_dir / f"{name}_key.pem"
    cert_path = out_dir / f"{name}_cert.pem"
    _write_key(key, key_path)
    _write_cert(cert, cert_path)
    logger.info("Generated certificate for %s", name)
    return CredentialSet(cert_path=cert_path, key_path=key_path, ca_cert_path=out_dir / CA_CERT_FILE)


def generate_pki(out_dir: Path, identities: Iterable[str] = ("master", "slave"),
                 hosts: Iterable[str] = ("localhost", "127.0.0.1")) -> Dict[str, CredentialSet]:
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    hosts = list(hosts)

    ca_key, ca_cert = create_root_ca(out_dir)
    return {
        name: create_identity_cert(out_dir, name, ca_key, ca_cert, hosts)
        for name in identities
    }


def env_lines(credentials: Dict[str, CredentialSet]) -> List[str]:
    """``export`` lines for the master and slave credential settings."""
    lines = []
    for role in ("master", "slave"):
        creds = credentials.get(role)
        if creds is None:
            continue
        prefix = f"QKD_{role.upper()}"
        lines.append(f"export {prefix}_CERT_PATH={creds.cert_path}")
        lines.append(f"export {prefix}_KEY_PATH={creds.key_path}")
        lines.append(f"export {prefix}_CA_CERT_PATH={creds.ca_cert_path}")
    return lines
