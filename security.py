import logging
from typing import Iterable, Optional

import httpx
from fastapi import Request

from errors import HumanityServiceUnavailable
from rate_limit import client_key_from_forwarded

logger = logging.getLogger("translator.gateway.security")


HUMANITY_TOKEN_HEADER = "x-recaptcha-token"
HUMANITY_TOKEN_FIELD = "recaptchaToken"


# =========================
# ORIGIN
# =========================

def extract_origin(request: Request) -> Optional[str]:
    origin = request.headers.get("origin")
    return origin.strip().rstrip("/") if origin else None


def is_origin_allowed(origin: Optional[str], allowed: Iterable[str]) -> bool:
    """
    Absent Origin (same-origin or non-browser caller) is allowed.
    """
    if not origin:
        return True
    return origin in set(allowed)


# =========================
# CLIENT IDENTITY
# =========================

def extract_client_key(request: Request) -> str:
    """
    Rate-limit key. Header: X-Forwarded-For
    """
    return client_key_from_forwarded(request.headers.get("x-forwarded-for"))


# =========================
# HUMANITY TOKEN
# =========================

def extract_humanity_token(request: Request, payload: Optional[dict]) -> Optional[str]:
    """
    Token from the JSON body field `recaptchaToken`,
    or the X-Recaptcha-Token header.
    """
    if isinstance(payload, dict):
        token = payload.get(HUMANITY_TOKEN_FIELD)
        if isinstance(token, str) and token:
            return token
    return request.headers.get(HUMANITY_TOKEN_HEADER) or None


class HumanityVerifier:
    """
    reCAPTCHA siteverify client.

    Returns the service's verdict. Raises HumanityServiceUnavailable when
    the secret is unset or the service cannot answer in time, so the
    admission gate can apply its environment policy.
    """

    def __init__(
        self,
        secret: Optional[str],
        *,
        verify_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.secret = secret
        self.verify_url = verify_url
        self.timeout = timeout
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self.secret)

    async def verify(self, token: str, remote_ip: Optional[str] = None) -> bool:
        if not self.secret:
            raise HumanityServiceUnavailable("RECAPTCHA_SECRET_KEY is not configured")

        form = {"secret": self.secret, "response": token}
        if remote_ip:
            form["remoteip"] = remote_ip

        try:
            if self._client is not None:
                resp = await self._client.post(self.verify_url, data=form, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.verify_url, data=form)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise HumanityServiceUnavailable(f"{type(e).__name__}: {e}") from e

        success = bool(data.get("success")) if isinstance(data, dict) else False
        if not success:
            logger.info(f"reCAPTCHA rejected token: {data.get('error-codes') if isinstance(data, dict) else data}")
        return success
