from __future__ import annotations

from typing import Optional

import httpx

from w9mail.logging import get_logger
from w9mail.service.errors import BadRequestError, ServerError

logger = get_logger(__name__)


class TurnstileVerifier:
    """Cloudflare Turnstile check for the public auth forms.

    With no secret configured every request passes. Once a secret is set the
    client token becomes mandatory.
    """

    def __init__(
        self,
        secret: Optional[str],
        verify_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.secret = secret
        self.verify_url = verify_url
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.secret)

    async def verify(self, token: str) -> bool:
        """Ask the verifier about ``token``; network failures raise ``ServerError``."""

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout), transport=self._transport
            ) as client:
                response = await client.post(
                    self.verify_url, json={"secret": self.secret, "response": token}
                )
                data = response.json()
        except httpx.TimeoutException as exc:
            logger.error("captcha_verify_timeout", timeout=self.timeout, error=str(exc))
            raise ServerError("captcha verification unavailable") from exc
        except httpx.HTTPError as exc:
            logger.error("captcha_verify_http_error", error_type=type(exc).__name__, error=str(exc))
            raise ServerError("captcha verification unavailable") from exc
        except ValueError as exc:
            logger.error("captcha_verify_bad_response", error=str(exc))
            raise ServerError("captcha verification unavailable") from exc
        success = isinstance(data, dict) and data.get("success") is True
        if not success:
            codes = data.get("error-codes") if isinstance(data, dict) else None
            logger.info("captcha_verify_rejected", error_codes=codes)
        return success

    async def require(self, token: Optional[str]) -> None:
        if not self.is_configured:
            return
        if not token:
            raise BadRequestError("captcha token required")
        if not await self.verify(token):
            raise BadRequestError("captcha verification failed")
