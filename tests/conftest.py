from __future__ import annotations

import base64
import datetime as dt
import os
from dataclasses import dataclass
from typing import Any

# Settings are read at import time; pin them before any project module loads.
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("REDIS_DISABLED", "true")
os.environ.setdefault("CELERY_ALWAYS_EAGER", "true")
os.environ.setdefault("STARTUP_BOOTSTRAP_ENABLED", "false")
os.environ.setdefault("REFUND_PROVIDER", "mock")

import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID

from billing.entitlements import reset_status_cache


@pytest.fixture(autouse=True)
def _fresh_status_cache():
    reset_status_cache()
    yield
    reset_status_cache()


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _certificate(
    *,
    subject: str,
    issuer: str,
    public_key: ec.EllipticCurvePublicKey,
    signing_key: ec.EllipticCurvePrivateKey,
    ca: bool,
) -> x509.Certificate:
    now = dt.datetime.now(dt.timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - dt.timedelta(days=1))
        .not_valid_after(now + dt.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .sign(signing_key, hashes.SHA256())
    )


@dataclass
class JwsSigner:
    """Signs App Store style JWS payloads with a throwaway root and leaf."""

    root: x509.Certificate
    leaf: x509.Certificate
    leaf_key: ec.EllipticCurvePrivateKey

    def sign(self, claims: dict[str, Any]) -> str:
        chain = [base64.b64encode(cert.public_bytes(Encoding.DER)).decode("ascii") for cert in (self.leaf, self.root)]
        return jwt.encode(claims, self.leaf_key, algorithm="ES256", headers={"x5c": chain})


def build_jws_signer(label: str = "Test") -> JwsSigner:
    root_key = ec.generate_private_key(ec.SECP256R1())
    leaf_key = ec.generate_private_key(ec.SECP256R1())
    root = _certificate(
        subject=f"{label} Root CA",
        issuer=f"{label} Root CA",
        public_key=root_key.public_key(),
        signing_key=root_key,
        ca=True,
    )
    leaf = _certificate(
        subject=f"{label} Signing Leaf",
        issuer=f"{label} Root CA",
        public_key=leaf_key.public_key(),
        signing_key=root_key,
        ca=False,
    )
    return JwsSigner(root=root, leaf=leaf, leaf_key=leaf_key)


@pytest.fixture(scope="session")
def jws_signer() -> JwsSigner:
    return build_jws_signer()


@pytest.fixture(scope="session")
def untrusted_jws_signer() -> JwsSigner:
    return build_jws_signer("Rogue")
