#!/usr/bin/env python3
"""
Generate the root authority and shared leaf key used by the proxy.

Writes into the certGen directory:
    ca.crt    root certificate (install it in the client's trust store)
    ca.key    root private key, signs every leaf certificate
    cert.key  private key shared by all issued leaf certificates

Leaf certificates themselves are issued on demand by ``gen_cert.sh`` or
by the proxy's in-process issuer.

Requirements:
    pip install cryptography

Usage:
    python generate_certs.py [--dir certGen] [--ca-name tlsmitm_ca]
"""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID


def new_key(key_size: int) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def save(path: Path, data: bytes, mode: int) -> None:
    path.write_bytes(data)
    path.chmod(mode)


def key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )


def generate_root(
    out_dir: Path,
    ca_name: str = "tlsmitm_ca",
    ca_days: int = 3650,
    key_size: int = 2048,
) -> tuple[Path, Path, Path]:
    """Create ``ca.crt``, ``ca.key`` and ``cert.key`` in *out_dir*.

    Returns the three paths in that order.
    """
    out_dir.mkdir(parents=True, exist_ok=True)
    now = datetime.now(timezone.utc)

    ca_key = new_key(key_size)
    ca_subject = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "tlsmitm"),
        x509.NameAttribute(NameOID.COMMON_NAME,       ca_name),
    ])
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(ca_subject)
        .issuer_name(ca_subject)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=ca_days))
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(ca_key.public_key()), critical=False)
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(x509.KeyUsage(
            digital_signature=True, content_commitment=False, key_encipherment=False,
            data_encipherment=False, key_agreement=False, key_cert_sign=True,
            crl_sign=True, encipher_only=False, decipher_only=False,
        ), critical=True)
        .sign(ca_key, hashes.SHA256())
    )

    ca_cert_path = out_dir / "ca.crt"
    ca_key_path = out_dir / "ca.key"
    leaf_key_path = out_dir / "cert.key"
    save(ca_key_path, key_pem(ca_key), 0o600)
    save(ca_cert_path, ca_cert.public_bytes(serialization.Encoding.PEM), 0o644)
    save(leaf_key_path, key_pem(new_key(key_size)), 0o600)
    return ca_cert_path, ca_key_path, leaf_key_path


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Generate the proxy's root authority and shared leaf key.")
    parser.add_argument("--dir",      default="certGen",    help="Output directory (default: certGen)")
    parser.add_argument("--ca-name",  default="tlsmitm_ca", help="CA common name (default: tlsmitm_ca)")
    parser.add_argument("--ca-days",  type=int, default=3650, help="CA certificate validity in days (default: 3650)")
    parser.add_argument("--key-size", type=int, default=2048, help="RSA key size in bits (default: 2048)")
    parser.add_argument("--force",    action="store_true",  help="Overwrite an existing root")
    args = parser.parse_args(argv)

    out_dir = Path(args.dir)
    if (out_dir / "ca.crt").exists() and not args.force:
        print(f"CA already exists in '{out_dir}'. Use --force to regenerate.", file=sys.stderr)
        return 1

    print("Generating root authority and leaf key...")
    ca_cert, ca_key, leaf_key = generate_root(out_dir, args.ca_name, args.ca_days, args.key_size)
    print("\nDone.")
    print(f"  CA:       {ca_cert}, {ca_key}")
    print(f"  Leaf key: {leaf_key}")
    print("Stale leaf certificates in certs/ must be deleted after regenerating.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
