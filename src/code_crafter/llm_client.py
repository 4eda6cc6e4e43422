"""Blocking Gemini transport used by `AIGateway`.

The gateway calls `generate` from a worker thread and classifies every
`LLMClientError` it raises; this module only speaks HTTP.
"""

from __future__ import annotations

import http.client
import json
import os
from dataclasses import dataclass
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen


DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_API_VERSION = "v1beta"
DEFAULT_API_BASE = "https://generativelanguage.googleapis.com"
DEFAULT_TIMEOUT_SECONDS = 60.0


class LLMClientError(RuntimeError):
    """A Gemini call failed.

    `status_code` holds the HTTP status when Gemini answered with one and is
    None for network failures, timeouts and unusable bodies.
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _timeout_from_env() -> float:
    raw = os.getenv("GEMINI_TIMEOUT_SECONDS")
    if raw is None:
        return DEFAULT_TIMEOUT_SECONDS
    try:
        return float(raw)
    except ValueError as err:
        raise ValueError("GEMINI_TIMEOUT_SECONDS must be numeric") from err


@dataclass(slots=True)
class GeminiLLMClient:
    """Gemini `generateContent` client.

    Environment variables (used by `from_env`):
    - `GEMINI_API_KEY` (preferred) or `GOOGLE_API_KEY`
    - `GEMINI_MODEL` (default: gemini-2.5-flash)
    - `GEMINI_API_VERSION` (default: v1beta)
    - `GEMINI_API_BASE` (default: https://generativelanguage.googleapis.com)
    - `GEMINI_TIMEOUT_SECONDS` (default: 60)
    """

    api_key: str
    model: str = DEFAULT_MODEL
    api_version: str = DEFAULT_API_VERSION
    api_base: str = DEFAULT_API_BASE
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    @classmethod
    def from_env(cls) -> GeminiLLMClient:
        api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
        if not api_key:
            raise ValueError("Missing API key. Set GEMINI_API_KEY (or GOOGLE_API_KEY).")

        return cls(
            api_key=api_key,
            model=os.getenv("GEMINI_MODEL", DEFAULT_MODEL),
            api_version=os.getenv("GEMINI_API_VERSION", DEFAULT_API_VERSION),
            api_base=os.getenv("GEMINI_API_BASE", DEFAULT_API_BASE),
            timeout_seconds=_timeout_from_env(),
        )

    def generate(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Send one prompt pair and return the model's text.

        `metadata["json_only"]` switches the response MIME type to JSON; other
        metadata keys are tracing only and stay local.
        """
        payload = self._build_payload(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            temperature=temperature,
            json_only=bool((metadata or {}).get("json_only")),
        )
        response_json = self._post(payload)

        block_reason = (response_json.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise LLMClientError(f"Gemini blocked the prompt: {block_reason}")

        text = self._extract_text(response_json)
        if not text:
            raise LLMClientError(f"Gemini response did not include text: {response_json}")
        return text

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        request = Request(
            self._build_generate_url(),
            data=json.dumps(payload, ensure_ascii=True).encode("utf-8"),
            method="POST",
            headers={"Content-Type": "application/json", "x-goog-api-key": self.api_key},
        )
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                body = response.read().decode("utf-8")
        except HTTPError as err:
            details = err.read().decode("utf-8", errors="replace")
            raise LLMClientError(
                f"Gemini HTTP {err.code}: {details}", status_code=err.code
            ) from err
        except URLError as err:
            raise LLMClientError(f"Gemini network error: {err.reason}") from err
        except TimeoutError as err:
            raise LLMClientError(f"Gemini timed out after {self.timeout_seconds}s") from err
        except (OSError, http.client.HTTPException, UnicodeDecodeError) as err:
            raise LLMClientError(
                f"Gemini transport error: {type(err).__name__}: {err}"
            ) from err

        try:
            decoded = json.loads(body)
        except json.JSONDecodeError as err:
            raise LLMClientError("Gemini returned a non-JSON body") from err
        if not isinstance(decoded, dict):
            raise LLMClientError("Gemini returned a non-object JSON body")
        return decoded

    @staticmethod
    def _build_payload(
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float | None,
        json_only: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
        }
        if system_prompt.strip():
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        config: dict[str, Any] = {}
        if temperature is not None:
            config["temperature"] = temperature
        if json_only:
            config["responseMimeType"] = "application/json"
        if config:
            payload["generationConfig"] = config
        return payload

    def _build_generate_url(self) -> str:
        model_name = self.model.removeprefix("models/")
        base = self.api_base.rstrip("/")
        return f"{base}/{self.api_version}/models/{model_name}:generateContent"

    @staticmethod
    def _extract_text(response_json: dict[str, Any]) -> str:
        """Return the text parts of the first candidate that has any."""
        candidates = response_json.get("candidates")
        if not isinstance(candidates, list):
            return ""

        for candidate in candidates:
            content = candidate.get("content") if isinstance(candidate, dict) else None
            parts = content.get("parts") if isinstance(content, dict) else None
            if not isinstance(parts, list):
                continue
            chunks = [
                part["text"]
                for part in parts
                if isinstance(part, dict) and isinstance(part.get("text"), str)
            ]
            if chunks:
                return "\n".join(chunks).strip()
        return ""
