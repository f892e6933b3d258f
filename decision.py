import logging
import time
from typing import Optional

from fastapi import Request, status
from starlette.concurrency import run_in_threadpool

from config import Settings
from errors import AdmissionRejection, HumanityServiceUnavailable, RateLimitStoreUnavailable
from rate_limit import ANONYMOUS_CLIENT_KEY, SlidingWindowRateLimiter, retry_after_seconds
from schemas import AdmissionDecision, AdmissionReason, RateLimitResult
from security import (
    HumanityVerifier,
    extract_client_key,
    extract_origin,
    is_origin_allowed,
)

logger = logging.getLogger("translator.gateway.admission")


ALLOWED = AdmissionDecision(allowed=True, reason=AdmissionReason.OK)

REJECTION_STATUS = {
    AdmissionReason.ORIGIN_DENIED: status.HTTP_403_FORBIDDEN,
    AdmissionReason.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    AdmissionReason.HUMANITY_CHECK_FAILED: status.HTTP_401_UNAUTHORIZED,
}

REJECTION_MESSAGE = {
    AdmissionReason.ORIGIN_DENIED: "Forbidden (Invalid Origin)",
    AdmissionReason.RATE_LIMITED: "Πολλά αιτήματα ανά λεπτό. Παρακαλώ προσπαθήστε ξανά σε ένα λεπτό.",
    AdmissionReason.HUMANITY_CHECK_FAILED: "reCAPTCHA verification failed",
}


# =========================
# Admission Gate
# =========================

class AdmissionGate:
    """
    Ordered admission checks:

        origin -> rate limit -> humanity -> allowed

    The first failing check decides the rejection; later checks never run.

    When the rate-limit store or the verification service is unconfigured,
    unreachable or times out:
    - non-production: fail open (logged)
    - production: fail closed
    """

    def __init__(
        self,
        settings: Settings,
        *,
        rate_limiter: Optional[SlidingWindowRateLimiter],
        verifier: HumanityVerifier,
    ):
        self._settings = settings
        self._limiter = rate_limiter
        self._verifier = verifier
        self._checks = (
            self._check_origin,
            self._check_rate_limit,
            self._check_humanity,
        )

    @property
    def fail_closed(self) -> bool:
        return self._settings.is_production

    async def evaluate(self, request: Request, token: Optional[str]) -> AdmissionDecision:
        for check in self._checks:
            rejection = await check(request, token)
            if rejection is not None:
                return rejection
        return ALLOWED

    # -------------------------
    # Origin
    # -------------------------

    async def _check_origin(self, request: Request, token: Optional[str]) -> Optional[AdmissionDecision]:
        origin = extract_origin(request)
        if is_origin_allowed(origin, self._settings.allowed_origins):
            return None

        logger.warning(
            f"Request blocked by Origin check from unauthorized origin: {origin} to {request.url.path}"
        )
        return AdmissionDecision(allowed=False, reason=AdmissionReason.ORIGIN_DENIED)

    # -------------------------
    # Rate limit
    # -------------------------

    async def _check_rate_limit(self, request: Request, token: Optional[str]) -> Optional[AdmissionDecision]:
        client_key = extract_client_key(request)

        if self._limiter is None:
            return self._rate_limit_unavailable(client_key, "rate limiting is not configured")

        try:
            # redis-py is blocking; keep it off the event loop
            result = await run_in_threadpool(self._limiter.check, client_key)
        except RateLimitStoreUnavailable as e:
            return self._rate_limit_unavailable(client_key, str(e))

        if result.allowed:
            return None

        logger.warning(f"Rate limit exceeded for {client_key} on {request.url.path}")
        return AdmissionDecision(
            allowed=False,
            reason=AdmissionReason.RATE_LIMITED,
            retry_after_seconds=retry_after_seconds(result.reset_at, int(time.time() * 1000)),
            rate_limit=result,
        )

    def _rate_limit_unavailable(self, client_key: str, detail: str) -> Optional[AdmissionDecision]:
        if not self.fail_closed:
            logger.warning(f"Rate limit store unavailable ({detail}); allowing {client_key} outside production")
            return None

        logger.error(f"Rate limit store unavailable ({detail}); rejecting {client_key} in production")
        window_seconds = self._settings.RATE_LIMIT_WINDOW_SECONDS
        return AdmissionDecision(
            allowed=False,
            reason=AdmissionReason.RATE_LIMITED,
            retry_after_seconds=window_seconds,
            rate_limit=RateLimitResult(
                allowed=False,
                remaining=0,
                limit=self._settings.RATE_LIMIT_REQUESTS,
                reset_at=int(time.time() * 1000) + window_seconds * 1000,
            ),
        )

    # -------------------------
    # Humanity
    # -------------------------

    async def _check_humanity(self, request: Request, token: Optional[str]) -> Optional[AdmissionDecision]:
        rejected = AdmissionDecision(allowed=False, reason=AdmissionReason.HUMANITY_CHECK_FAILED)

        if not self._verifier.configured:
            return self._humanity_unavailable(rejected, "RECAPTCHA_SECRET_KEY is not configured")

        if not token:
            logger.warning(f"Missing reCAPTCHA token on {request.url.path}")
            return rejected

        try:
            client_key = extract_client_key(request)
            remote_ip = None if client_key == ANONYMOUS_CLIENT_KEY else client_key
            verified = await self._verifier.verify(token, remote_ip=remote_ip)
        except HumanityServiceUnavailable as e:
            return self._humanity_unavailable(rejected, str(e))

        return None if verified else rejected

    def _humanity_unavailable(self, rejected: AdmissionDecision, detail: str) -> Optional[AdmissionDecision]:
        if not self.fail_closed:
            logger.warning(f"Humanity verification unavailable ({detail}); allowing outside production")
            return None

        logger.error(f"Humanity verification unavailable ({detail}); rejecting in production")
        return rejected


# =========================
# Rejection rendering
# =========================

def rejection_for(decision: AdmissionDecision) -> AdmissionRejection:
    headers = {}
    if decision.rate_limit is not None:
        headers = {
            "X-RateLimit-Limit": str(decision.rate_limit.limit),
            "X-RateLimit-Remaining": str(decision.rate_limit.remaining),
            "X-RateLimit-Reset": str(decision.rate_limit.reset_at),
        }
    if decision.retry_after_seconds is not None:
        headers["Retry-After"] = str(decision.retry_after_seconds)

    return AdmissionRejection(
        decision,
        REJECTION_MESSAGE[decision.reason],
        status_code=REJECTION_STATUS[decision.reason],
        headers=headers,
    )
