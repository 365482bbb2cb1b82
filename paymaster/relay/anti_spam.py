from __future__ import annotations

import logging
from typing import Any, Mapping

import aiohttp

from paymaster.common import guarded_call, log_event

RETURN_SIGNATURE_MODES = {"allow_all", "recaptcha"}
RECAPTCHA_VERIFY_URL = "https://www.google.com/recaptcha/api/siteverify"
RECAPTCHA_TOKEN_FIELD = "reCaptchaToken"


def normalize_return_signature_mode(value: str | None) -> str:
    mode = (value or "").strip().lower().replace("-", "_")
    if mode in {"allowall", "allow"}:
        return "allow_all"
    if mode in RETURN_SIGNATURE_MODES:
        return mode
    return ""


class AllowAllGate:
    async def allows(self, payload: Mapping[str, Any]) -> bool:
        return True


class ReCaptchaGate:
    """Score check against the reCAPTCHA v3 siteverify endpoint."""

    def __init__(
        self,
        *,
        secret: str,
        min_score: float,
        logger: logging.Logger,
        verify_url: str = RECAPTCHA_VERIFY_URL,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._secret = secret
        self._min_score = min_score
        self._logger = logger
        self._verify_url = verify_url
        self._session = session

    async def connect(self) -> None:
        if not self._secret:
            raise ValueError("RECAPTCHA_SECRET is required when RETURN_SIGNATURE_MODE is recaptcha.")
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=8)
            self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def allows(self, payload: Mapping[str, Any]) -> bool:
        token = payload.get(RECAPTCHA_TOKEN_FIELD)
        if not isinstance(token, str) or not token:
            return False

        body = await guarded_call(
            lambda: self._verify(token),
            logger=self._logger,
            event="recaptcha_verify_failed",
            message="reCAPTCHA verification request failed",
        )
        if not isinstance(body, dict) or not body.get("success"):
            return False

        score = float(body.get("score") or 0.0)
        if score < self._min_score:
            log_event(
                self._logger,
                level="info",
                event="recaptcha_low_score",
                message="reCAPTCHA score below threshold",
                score=score,
                min_score=self._min_score,
            )
            return False
        return True

    async def _verify(self, token: str) -> Any:
        if self._session is None:
            await self.connect()
        if self._session is None:
            raise RuntimeError("HTTP session is not initialized for reCAPTCHA verification.")

        async with self._session.post(
            self._verify_url,
            data={"secret": self._secret, "response": token},
        ) as response:
            body = await response.json(content_type=None)
            if response.status >= 400:
                raise RuntimeError(f"reCAPTCHA verify failed: status={response.status}")
        return body
