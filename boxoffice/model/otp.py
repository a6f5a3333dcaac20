# model/otp.py
from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import math
import secrets

import redis.asyncio as redis
from loguru import logger

from ..config import OTP_LENGTH, OTP_MAX_ATTEMPTS, OTP_TTL_SECONDS
from ..errors import TooManyAttempts
from ..helpers import ct_equal, normalize_identifier, now_ts


# ---- keys
def k_otp(identifier: str) -> str: return f"otp:{identifier}"


@dataclass(frozen=True)
class IssuedCode:
    code: str
    expires_at: float


class OtpService:
    """One-time codes in a Redis hash {code, expires_at, attempts}.

    The key expires with the code. A successful verify deletes it, and only
    the caller whose DEL actually removed the key wins.
    """

    def __init__(
        self,
        r: redis.Redis,
        ttl_seconds: int = OTP_TTL_SECONDS,
        max_attempts: int = OTP_MAX_ATTEMPTS,
        length: int = OTP_LENGTH,
    ) -> None:
        self.r = r
        self.ttl = ttl_seconds
        self.max_attempts = max_attempts
        self.length = length

    def _new_code(self) -> str:
        return f"{secrets.randbelow(10 ** self.length):0{self.length}d}"

    async def issue(self, identifier: str) -> IssuedCode:
        key = k_otp(normalize_identifier(identifier))
        code = self._new_code()
        expires_at = now_ts() + self.ttl
        # replaces any outstanding code
        pipe = self.r.pipeline(transaction=True)
        pipe.delete(key)
        pipe.hset(key, mapping={
            "code": code,
            "expires_at": str(expires_at),
            "attempts": "0",
        })
        pipe.expireat(key, math.ceil(expires_at))
        await pipe.execute()
        return IssuedCode(code=code, expires_at=expires_at)

    async def verify(self, identifier: str, candidate: str) -> bool:
        ident = normalize_identifier(identifier)
        key = k_otp(ident)
        rec = await self.r.hgetall(key)
        if not rec or "code" not in rec:
            return False

        expires_at = float(rec["expires_at"])
        if now_ts() > expires_at:
            await self.r.delete(key)
            return False

        # claim the attempt before looking at the candidate
        pipe = self.r.pipeline(transaction=True)
        pipe.hincrby(key, "attempts", 1)
        pipe.hget(key, "code")
        # keep the original deadline
        pipe.expireat(key, math.ceil(expires_at))
        attempts, code, _ = await pipe.execute()

        if code is None:
            # consumed or revoked since we read it
            return False
        if attempts > self.max_attempts:
            await self.r.delete(key)
            logger.warning("otp for {} locked after too many attempts", ident)
            raise TooManyAttempts(
                "Too many failed attempts. Please request a new code."
            )

        if ct_equal(code, candidate or ""):
            return await self.r.delete(key) == 1
        return False

    async def has_code(self, identifier: str) -> bool:
        rec = await self.r.hgetall(k_otp(normalize_identifier(identifier)))
        return bool(rec) and now_ts() <= float(rec.get("expires_at", 0))

    async def remaining_attempts(self, identifier: str) -> Optional[int]:
        rec = await self.r.hgetall(k_otp(normalize_identifier(identifier)))
        if not rec:
            return None
        return max(0, self.max_attempts - int(rec.get("attempts", 0)))

    async def revoke(self, identifier: str) -> None:
        await self.r.delete(k_otp(normalize_identifier(identifier)))
