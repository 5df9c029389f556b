from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from urllib.parse import quote, urlencode

from tollgate.clock import Clock, SystemClock
from tollgate.logging import get_logger

logger = get_logger(__name__)

TOTP_PERIOD_SECONDS = 30
TOTP_DIGITS = 6
SECRET_BYTES = 20


@dataclass
class TotpSetup:
    secret: str
    provisioning_uri: str


class TotpService:
    """RFC 6238 time-based one-time passwords (HMAC-SHA1, 30 s, 6 digits)."""

    def __init__(
        self,
        *,
        issuer: str = "Tollgate",
        drift_steps: int = 1,
        clock: Optional[Clock] = None,
    ) -> None:
        self.issuer = issuer
        self.drift_steps = max(0, drift_steps)
        self.clock: Clock = clock or SystemClock()

    def generate_secret(self, label: str) -> TotpSetup:
        secret = base64.b32encode(secrets.token_bytes(SECRET_BYTES)).decode("ascii").rstrip("=")
        return TotpSetup(secret=secret, provisioning_uri=self.provisioning_uri(secret, label))

    def provisioning_uri(self, secret: str, label: str) -> str:
        account = quote(f"{self.issuer}:{label}", safe=":@")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_PERIOD_SECONDS,
            }
        )
        return f"otpauth://totp/{account}?{query}"

    def verify(self, secret: str, code: str) -> bool:
        """Check ``code`` against ``secret`` allowing ``drift_steps`` either side.

        Malformed codes and undecodable secrets are a plain ``False``.
        """
        if not isinstance(code, str) or not isinstance(secret, str):
            return False
        candidate = code.strip().replace(" ", "")
        if len(candidate) != TOTP_DIGITS or not candidate.isdigit():
            return False
        key = self._decode_secret(secret)
        if key is None:
            return False
        counter = self._counter(self.clock.now())
        matched = False
        for offset in range(-self.drift_steps, self.drift_steps + 1):
            generated = self._generate(key, counter + offset)
            # Constant-time comparison; keep looping so timing does not reveal the step
            if hmac.compare_digest(generated.encode(), candidate.encode()):
                matched = True
        return matched

    def current_code(self, secret: str, at: Optional[datetime] = None) -> str:
        key = self._decode_secret(secret)
        if key is None:
            raise ValueError("invalid TOTP secret")
        return self._generate(key, self._counter(at or self.clock.now()))

    def _counter(self, moment: datetime) -> int:
        return int(moment.timestamp() // TOTP_PERIOD_SECONDS)

    def _decode_secret(self, secret: str) -> Optional[bytes]:
        cleaned = secret.strip().replace(" ", "").upper()
        if not cleaned:
            return None
        padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
        try:
            return base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return None

    def _generate(self, key: bytes, counter: int) -> str:
        if counter < 0:
            return ""
        digest = hmac.new(key, counter.to_bytes(8, "big"), hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**TOTP_DIGITS
        )
        return str(code_int).zfill(TOTP_DIGITS)
