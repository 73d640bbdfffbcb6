"""Minimal Telegram Bot API client over requests."""

from __future__ import annotations

import logging
from typing import List, Optional

import requests

from .exceptions import SendFailure, SendFailureKind

logger = logging.getLogger(__name__)

API_URL = "https://api.telegram.org/bot{token}/{method}"


def classify_status(status_code: Optional[int]) -> SendFailureKind:
    if status_code == 403:
        return SendFailureKind.FORBIDDEN
    if status_code == 400:
        return SendFailureKind.BAD_REQUEST
    return SendFailureKind.TRANSIENT


class TelegramClient:
    def __init__(
        self,
        token: str,
        http: Optional[requests.Session] = None,
        timeout: float = 15.0,
    ) -> None:
        self._token = token
        self._http = http or requests.Session()
        self._timeout = timeout

    def _url(self, method: str) -> str:
        return API_URL.format(token=self._token, method=method)

    def send_message(self, chat_id: str, text: str, html: bool = True) -> None:
        """Send a message, raising SendFailure when Telegram does not accept it."""
        payload = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": False,
        }
        if html:
            payload["parse_mode"] = "HTML"
        try:
            response = self._http.post(
                self._url("sendMessage"), json=payload, timeout=self._timeout
            )
        except requests.RequestException as exc:
            raise SendFailure(SendFailureKind.TRANSIENT, str(exc)) from exc

        if response.status_code != 200:
            description = _description(response)
            raise SendFailure(
                classify_status(response.status_code),
                f"{response.status_code}: {description}",
            )

    def get_updates(self, offset: Optional[int] = None, timeout: int = 30) -> List[dict]:
        """Long-poll for incoming updates."""
        params = {"timeout": timeout, "allowed_updates": '["message"]'}
        if offset is not None:
            params["offset"] = offset
        response = self._http.get(
            self._url("getUpdates"), params=params, timeout=timeout + self._timeout
        )
        response.raise_for_status()
        payload = response.json()
        if not payload.get("ok"):
            raise requests.RequestException(f"getUpdates failed: {payload}")
        return payload.get("result") or []


def _description(response) -> str:
    try:
        return response.json().get("description", "")
    except ValueError:
        return response.text[:200]
