import json
from collections.abc import Mapping
from http.client import RemoteDisconnected
from time import sleep
from typing import Any
from urllib import error, parse, request


class GeminiApiError(Exception):
    pass


class GeminiClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: float = 30.0,
        api_base_url: str = "https://generativelanguage.googleapis.com/v1beta",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.api_base_url = api_base_url.rstrip("/")

    def generate_text(
        self,
        prompt: str,
        *,
        system_instruction: str | None = None,
        json_output: bool = False,
        temperature: float = 0.2,
    ) -> str:
        if not self.api_key:
            raise GeminiApiError("Gemini API key is not configured.")

        generation_config: dict[str, Any] = {"temperature": temperature}
        if json_output:
            generation_config["responseMimeType"] = "application/json"

        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        if system_instruction:
            payload["system_instruction"] = {"parts": [{"text": system_instruction}]}

        response_payload = self._generate(payload)
        return self._extract_text_response(response_payload)

    def _generate(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        query = parse.urlencode({"key": self.api_key})
        endpoint = f"{self.api_base_url}/models/{self.model}:generateContent?{query}"
        req = request.Request(
            endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        # Retries cover the HTTP call only; pipeline jobs are never re-run automatically.
        max_attempts = 3
        response_body: bytes | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                with request.urlopen(req, timeout=self.timeout_seconds) as response:
                    response_body = response.read()
                break
            except TimeoutError as exc:
                if attempt >= max_attempts:
                    raise GeminiApiError("Gemini API request timed out.") from exc
            except RemoteDisconnected as exc:
                if attempt >= max_attempts:
                    raise GeminiApiError(
                        "Gemini API connection was closed before sending a response.",
                    ) from exc
            except error.HTTPError as exc:
                body = exc.read().decode("utf-8", errors="ignore")
                is_retryable_status = exc.code in {429, 500, 502, 503, 504}
                if not is_retryable_status or attempt >= max_attempts:
                    raise GeminiApiError(
                        f"Gemini API HTTP {exc.code}: {body or 'empty response body'}",
                    ) from exc
            except error.URLError as exc:
                if attempt >= max_attempts:
                    raise GeminiApiError(f"Gemini API connection error: {exc.reason}") from exc

            sleep(0.5 * attempt)

        if response_body is None:
            raise GeminiApiError("Gemini API request failed after multiple attempts.")

        try:
            parsed_body = json.loads(response_body.decode("utf-8"))
        except json.JSONDecodeError as exc:
            raise GeminiApiError("Gemini API returned invalid JSON.") from exc

        if not isinstance(parsed_body, dict):
            raise GeminiApiError("Gemini API response is not a JSON object.")
        return parsed_body

    def _extract_text_response(self, payload: Mapping[str, Any]) -> str:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            raise GeminiApiError("Gemini API response missing candidates.")

        first_candidate = candidates[0]
        if not isinstance(first_candidate, Mapping):
            raise GeminiApiError("Gemini API response candidate is invalid.")

        content = first_candidate.get("content")
        if not isinstance(content, Mapping):
            raise GeminiApiError("Gemini API response missing content.")

        parts = content.get("parts")
        if not isinstance(parts, list):
            raise GeminiApiError("Gemini API response missing content parts.")

        chunks: list[str] = []
        for part in parts:
            if not isinstance(part, Mapping):
                continue
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                chunks.append(text.strip())

        if not chunks:
            raise GeminiApiError("Gemini API response did not include text output.")
        return "\n".join(chunks)
