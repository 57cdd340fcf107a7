from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from loyalty_core.core.config import settings
from loyalty_core.core.logging import get_logger, security_alert
from loyalty_core.core.metrics import record_qr_validation
from loyalty_core.core.replay_cache import ReplayCache
from loyalty_core.core.security import (
    AudienceMismatchError,
    MalformedClaimsError,
    SignatureVerificationError,
    new_nonce,
    sign_payload,
    verify_payload,
)
from loyalty_core.db.operations import utcnow
from loyalty_core.domain.enums import QRSubjectKind
from loyalty_core.schemas.qr import QRPayload
from loyalty_core.services.exceptions import InvalidSignature, QRExpired, ReplayDetected, SecurityError

logger = get_logger(__name__)


class QRCodeValidator:
    """Authenticates scanned QR payloads.

    A payload is accepted once: its nonce is burned in the replay cache on the
    first successful validation and stays burned for the whole age window.
    """

    def __init__(
        self,
        replay_cache: ReplayCache,
        *,
        max_age_seconds: int | None = None,
        clock_skew_seconds: int | None = None,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._replay_cache = replay_cache
        self._max_age = timedelta(seconds=max_age_seconds or settings.QR_MAX_AGE_SECONDS)
        skew = settings.QR_CLOCK_SKEW_SECONDS if clock_skew_seconds is None else clock_skew_seconds
        self._skew = timedelta(seconds=skew)
        self._now = now

    def issue(
        self,
        kind: QRSubjectKind,
        subject_id: str,
        audience: str | None = None,
        program_id: uuid.UUID | None = None,
    ) -> tuple[str, datetime]:
        """Return the signed payload and the instant it stops being accepted."""
        issued_at = self._now()
        extra = {"program_id": str(program_id)} if program_id is not None else None
        token = sign_payload(
            QRSubjectKind(kind).value,
            str(subject_id),
            audience or settings.QR_AUDIENCE,
            issued_at=issued_at,
            nonce=new_nonce(),
            extra_claims=extra,
        )
        # iat is truncated to whole seconds when signed.
        expires_at = datetime.fromtimestamp(int(issued_at.timestamp()), tz=timezone.utc) + self._max_age
        logger.info(
            "QR payload issued",
            extra={"kind": QRSubjectKind(kind).value, "subject_id": str(subject_id), "expires_at": expires_at.isoformat()},
        )
        return token, expires_at

    async def validate(self, raw_payload: str, expected_audience: str | None = None) -> QRPayload:
        audience = expected_audience or settings.QR_AUDIENCE
        try:
            payload = self._verify(raw_payload, audience)
            await self._burn_nonce(payload)
        except SecurityError as exc:
            record_qr_validation(exc.code)
            security_alert(
                "QR payload rejected",
                code=exc.code,
                reason=exc.detail,
                audience=audience,
            )
            raise
        record_qr_validation("accepted")
        logger.info(
            "QR payload accepted",
            extra={"kind": payload.kind.value, "subject_id": payload.subject_id, "nonce": payload.nonce},
        )
        return payload

    def _verify(self, raw_payload: str, audience: str) -> QRPayload:
        try:
            claims = verify_payload(raw_payload, audience)
        except AudienceMismatchError as exc:
            raise InvalidSignature("qr_audience_mismatch") from exc
        except MalformedClaimsError as exc:
            raise InvalidSignature("qr_malformed_claims") from exc
        except SignatureVerificationError as exc:
            raise InvalidSignature("qr_signature_invalid") from exc

        try:
            issued_at = datetime.fromtimestamp(int(claims["iat"]), tz=timezone.utc)
            payload = QRPayload(
                kind=claims["kind"],
                subject_id=claims["sub"],
                audience=audience,
                issued_at=issued_at,
                nonce=claims["nonce"],
                program_id=claims.get("program_id"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidSignature("qr_malformed_claims") from exc

        now = self._now()
        if payload.issued_at > now + self._skew:
            raise InvalidSignature("qr_issued_in_future")
        if now - payload.issued_at > self._max_age:
            raise QRExpired("qr_expired")
        return payload

    async def _burn_nonce(self, payload: QRPayload) -> None:
        ttl = int((self._max_age + self._skew).total_seconds())
        if not await self._replay_cache.add_if_absent(payload.nonce, ttl):
            raise ReplayDetected("qr_replayed")
