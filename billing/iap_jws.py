from __future__ import annotations

import base64
import binascii
from typing import Any, Sequence

import jwt
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ec

from .errors import AuthenticityError, PayloadError

SIGNED_PAYLOAD_ALGORITHM = "ES256"
_PEM_CERT_MARKER = b"-----BEGIN CERTIFICATE-----"


def _normalize_pem(value: str) -> str:
    pem = str(value or "").strip()
    if not pem:
        return ""
    # Allow storing PEM in env vars with literal "\n" separators.
    if "\\n" in pem and "BEGIN" in pem:
        pem = pem.replace("\\n", "\n")
    return pem


def load_trusted_roots(*, pem_value: str = "", pem_path: str = "") -> list[x509.Certificate]:
    """
    Load the App Store root certificate(s) that every `x5c` chain must end at.

    Accepts one or more concatenated PEM certificates, inline or from a file
    (PEM or DER).
    """

    raw = _normalize_pem(pem_value).encode("utf-8")
    if not raw and pem_path:
        with open(pem_path, "rb") as handle:
            raw = handle.read()
    if not raw:
        return []
    if _PEM_CERT_MARKER not in raw:
        return [x509.load_der_x509_certificate(raw)]
    return list(x509.load_pem_x509_certificates(raw))


def _decode_chain(header: dict[str, Any]) -> list[x509.Certificate]:
    chain = header.get("x5c")
    if not isinstance(chain, list) or not chain:
        raise AuthenticityError("signed payload has no x5c certificate chain")
    certs: list[x509.Certificate] = []
    for item in chain:
        try:
            certs.append(x509.load_der_x509_certificate(base64.b64decode(str(item))))
        except (binascii.Error, ValueError) as exc:
            raise AuthenticityError("x5c entry is not a DER certificate") from exc
    return certs


def _issued_by(child: x509.Certificate, parent: x509.Certificate) -> bool:
    try:
        child.verify_directly_issued_by(parent)
    except (InvalidSignature, ValueError, TypeError):
        return False
    return True


def verify_certificate_chain(chain: Sequence[x509.Certificate], trusted_roots: Sequence[x509.Certificate]) -> None:
    if not trusted_roots:
        raise AuthenticityError("no trusted root certificates configured")
    for child, parent in zip(chain, chain[1:]):
        if not _issued_by(child, parent):
            raise AuthenticityError("x5c certificate chain is broken")
    anchor = chain[-1]
    for root in trusted_roots:
        if anchor == root or _issued_by(anchor, root):
            return
    raise AuthenticityError("x5c chain does not end at a trusted root")


def verify_signed_payload(token: str, trusted_roots: Sequence[x509.Certificate]) -> dict[str, Any]:
    """
    Verify one App Store JWS (ES256 + x5c) and return its claims.

    The leaf certificate's key verifies the JWS signature; the chain itself
    must link up to one of `trusted_roots`.
    """

    raw = str(token or "").strip()
    if not raw:
        raise PayloadError("signed payload is empty")
    try:
        header = jwt.get_unverified_header(raw)
    except jwt.DecodeError as exc:
        raise PayloadError(f"signed payload is not a JWS: {exc}") from exc
    if header.get("alg") != SIGNED_PAYLOAD_ALGORITHM:
        raise AuthenticityError(f"unexpected JWS algorithm: {header.get('alg')}")

    chain = _decode_chain(header)
    verify_certificate_chain(chain, trusted_roots)
    leaf_key = chain[0].public_key()
    if not isinstance(leaf_key, ec.EllipticCurvePublicKey):
        raise AuthenticityError("leaf certificate key must be EC")
    try:
        claims = jwt.decode(
            raw,
            key=leaf_key,
            algorithms=[SIGNED_PAYLOAD_ALGORITHM],
            options={"verify_aud": False, "verify_iss": False},
        )
    except jwt.InvalidSignatureError as exc:
        raise AuthenticityError("JWS signature mismatch") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticityError(f"JWS rejected: {exc}") from exc
    if not isinstance(claims, dict):
        raise PayloadError("signed payload claims must be an object")
    return claims
