"""Signing primitives for QR payloads presented by scanning clients."""

from __future__ import annotations

import secrets
from datetime import datetime, timezone
from typing import Any

from jose import JWTError, jws, jwt
from jose.exceptions import JWSError

from loyalty_core.core.config import settings

ALGORITHM = settings.QR_ALGORITHM
_RESERVED_EXTRA_CLAIMS = {"kind", "sub", "aud", "iat", "nonce"}


class SignatureVerificationError(Exception):
    """Raised when no configured key verifies the payload."""


class AudienceMismatchError(Exception):
    """Raised when a correctly signed payload targets another audience."""


class MalformedClaimsError(Exception):
    """Raised when a correctly signed payload carries unusable claims."""


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_nonce() -> str:
    return secrets.token_urlsafe(16)


def _apply_extra_claims(payload: dict[str, Any], extra: dict[str, Any] | None) -> None:
    if not extra:
        return
    for key, value in extra.items():
        if key in _RESERVED_EXTRA_CLAIMS or value is None:
            continue
        payload[key] = value


def _ensure_header_algorithm(token: str) -> None:
    try:
        header = jwt.get_unverified_header(token)
    except JWTError as exc:
        raise SignatureVerificationError("Invalid payload header") from exc
    if header.get("alg") != ALGORITHM:
        raise SignatureVerificationError("Payload signed with unexpected algorithm")


def sign_payload(
    kind: str,
    subject_id: str,
    audience: str,
    *,
    issued_at: datetime | None = None,
    nonce: str | None = None,
    extra_claims: dict[str, Any] | None = None,
) -> str:
    issued = issued_at or _now()
    payload: dict[str, Any] = {
        "kind": kind,
        "sub": str(subject_id),
        "aud": audience,
        "iat": int(issued.timestamp()),
        "nonce": nonce or new_nonce(),
    }
    _apply_extra_claims(payload, extra_claims)
    return jwt.encode(payload, settings.QR_SIGNING_KEY, algorithm=ALGORITHM)


def verify_payload(token: str, audience: str) -> dict[str, Any]:
    """Return the verified claims, trying rotation fallbacks in order.

    The signature is checked before any claim is looked at, so a claim problem
    on a genuine payload is never reported as a bad signature.
    """
    _ensure_header_algorithm(token)
    secret = _verifying_key(token)
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            options={
                "verify_aud": False,
                "verify_exp": False,
                "require_aud": True,
                "require_iat": True,
                "require_sub": True,
            },
        )
    except JWTError as exc:
        raise MalformedClaimsError(str(exc)) from exc
    if not _audience_matches(claims.get("aud"), audience):
        raise AudienceMismatchError(f"Payload is not addressed to {audience}")
    return claims


def _verifying_key(token: str) -> str:
    for secret in settings.qr_signing_keys:
        try:
            jws.verify(token, secret, algorithms=[ALGORITHM])
        except JWSError:
            continue
        return secret
    raise SignatureVerificationError("No configured key verifies the payload")


def _audience_matches(claim: Any, audience: str) -> bool:
    if isinstance(claim, str):
        return claim == audience
    if isinstance(claim, list):
        return audience in claim
    return False
