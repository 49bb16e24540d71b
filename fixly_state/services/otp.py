"""One-time passcode issuance and one-shot verification.

Record key: ``otp:{subject}:{purpose}`` holding
``{"code": "123456", "created_at": <epoch ms>}`` with a 300 second TTL.
Issuing overwrites any live record for the same pair, so only the newest code
verifies. Delivery of the code is the caller's job.
"""

import secrets
import time
from typing import Callable, Union

from fixly_state.constants import OTP_CODE_LENGTH, OTP_NAMESPACE, OTPPurpose
from fixly_state.core.config import Settings
from fixly_state.core.exceptions import InvalidKeyComponent, StoreUnavailable
from fixly_state.core.kv import KVClient
from fixly_state.core.logging import get_logger
from fixly_state.models.otp import OTPRecord, OTPStatus, OTPVerification, OTPVerifyReason

logger = get_logger(__name__)


def generate_code(length: int = OTP_CODE_LENGTH) -> str:
    """Uniformly random numeric code, leading zeros preserved."""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def normalize_subject(subject: str) -> str:
    """Strip whitespace; e-mail addresses compare case-insensitively."""
    subject = (subject or "").strip()
    if not subject:
        raise InvalidKeyComponent("OTP subject must not be empty")
    return subject.lower() if "@" in subject else subject


class OTPManager:
    """Issues and verifies codes scoped by (subject, purpose).

    Verification does not count attempts; callers rate-limit it with
    ``RateLimitAction.VERIFY_OTP``.
    """

    def __init__(self, kv: KVClient, settings: Settings,
                 clock: Callable[[], float] = time.time):
        self.kv = kv
        self.ttl = settings.otp_ttl
        self._clock = clock

    def _key(self, subject: str, purpose: Union[OTPPurpose, str]) -> str:
        purpose = OTPPurpose(purpose)
        return f"{OTP_NAMESPACE}:{normalize_subject(subject)}:{purpose.value}"

    async def issue(self, subject: str, purpose: Union[OTPPurpose, str]) -> str:
        """Generate and store a fresh code, replacing any live one.

        Raises:
            StoreUnavailable: The record could not be written; the code would
                never verify, so it must not be delivered.
        """
        key = self._key(subject, purpose)
        code = generate_code()
        record = OTPRecord(code=code, created_at=int(self._clock() * 1000))
        stored = await self.kv.set_json(key, record.to_dict(), self.ttl)
        if not stored:
            raise StoreUnavailable("otp_issue", key)
        logger.info("OTP issued", purpose=OTPPurpose(purpose).value, ttl=self.ttl)
        return code

    async def verify(self, subject: str, purpose: Union[OTPPurpose, str],
                     candidate_code: str) -> OTPVerification:
        """Check a candidate code, consuming the record on match.

        Success requires that this call's delete removed the record, so two
        concurrent verifications of the same code cannot both succeed.
        """
        key = self._key(subject, purpose)
        data = await self.kv.get_json(key)
        if not isinstance(data, dict) or "code" not in data:
            return OTPVerification(False, OTPVerifyReason.NOT_FOUND_OR_EXPIRED)

        record = OTPRecord.from_dict(data)
        candidate = str(candidate_code if candidate_code is not None else "").strip()
        if not secrets.compare_digest(record.code.encode(), candidate.encode()):
            logger.info("OTP mismatch", purpose=OTPPurpose(purpose).value)
            return OTPVerification(False, OTPVerifyReason.INVALID_CODE)

        if not await self.kv.delete(key):
            # Consumed by a concurrent verification, expired, or store lost.
            logger.info("OTP already consumed", purpose=OTPPurpose(purpose).value)
            return OTPVerification(False, OTPVerifyReason.NOT_FOUND_OR_EXPIRED)

        logger.info("OTP verified", purpose=OTPPurpose(purpose).value)
        return OTPVerification(True, OTPVerifyReason.VERIFIED)

    async def status(self, subject: str, purpose: Union[OTPPurpose, str]) -> OTPStatus:
        """Non-consuming existence check for UI polling."""
        key = self._key(subject, purpose)
        ttl = await self.kv.ttl(key)
        if ttl > 0:
            return OTPStatus(exists=True, expires_in_seconds=ttl)
        return OTPStatus(exists=await self.kv.exists(key))

    async def revoke(self, subject: str, purpose: Union[OTPPurpose, str]) -> bool:
        """Discard a live code without verifying it."""
        return await self.kv.delete(self._key(subject, purpose))
