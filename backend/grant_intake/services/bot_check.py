"""Cloudflare Turnstile verification for public submissions."""

import logging
import os
from typing import Optional

import httpx

from grant_intake.errors import ExternalCheckFailure

logger = logging.getLogger(__name__)

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


class TurnstileBotCheck:
    """Yes/no bot oracle backed by Turnstile's siteverify endpoint.

    With no secret configured every request passes, so local development
    and tests need no Cloudflare account.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.secret_key = secret_key if secret_key is not None else os.getenv(
            "TURNSTILE_SECRET_KEY"
        )
        self.timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.secret_key)

    async def verify(self, token: Optional[str], client_ip: Optional[str]) -> bool:
        if not self.enabled:
            return True
        if not token:
            return False

        data = {"secret": self.secret_key, "response": token}
        if client_ip:
            data["remoteip"] = client_ip
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.post(TURNSTILE_VERIFY_URL, data=data)
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Turnstile verification unavailable: %s", exc)
            raise ExternalCheckFailure(
                "Bot verification is unavailable. Please try again."
            ) from exc

        success = bool(payload.get("success"))
        if not success:
            logger.info("Turnstile rejected token: %s", payload.get("error-codes"))
        return success
