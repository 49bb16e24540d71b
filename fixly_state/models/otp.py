"""One-time passcode records and verification outcomes."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class OTPVerifyReason(str, Enum):
    """Why a verification succeeded or failed.

    NOT_FOUND_OR_EXPIRED and INVALID_CODE are for the caller's own decisions;
    end users should see the same message for both.
    """
    VERIFIED = "verified"
    NOT_FOUND_OR_EXPIRED = "not_found_or_expired"
    INVALID_CODE = "invalid_code"


@dataclass
class OTPRecord:
    """Stored code for one (subject, purpose)."""
    code: str
    created_at: int  # epoch milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "created_at": self.created_at}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OTPRecord":
        # Codes are always compared as strings; never trust a numeric payload.
        return cls(code=str(data["code"]), created_at=int(data.get("created_at", 0)))


@dataclass(frozen=True)
class OTPVerification:
    success: bool
    reason: OTPVerifyReason

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "reason": self.reason.value}


@dataclass(frozen=True)
class OTPStatus:
    exists: bool
    expires_in_seconds: Optional[int] = None

    @property
    def expired(self) -> bool:
        return not self.exists
