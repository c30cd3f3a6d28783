import json
import time
import logging
from typing import Any, Dict, List, Optional

import requests

from .errors import AINotConfiguredError, AIServiceError
from .llm_json_extractor import extract_json_from_llm_response

logger = logging.getLogger(__name__)

NOT_CONFIGURED_MESSAGE = "AI is not configured on this server. Set OPENAI_API_KEY."


class LLMClient:
    """Chat client for an OpenAI-compatible API or a local Ollama server."""

    def __init__(self, base_url: str = "https://api.openai.com", api_key: str = "",
                 model: str = "gpt-4o", provider: str = "openai", timeout: float = 120):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.provider = provider
        self.timeout = timeout
        logger.info(f"Initialized {provider} client with base URL: {self.base_url}")

    @property
    def is_configured(self) -> bool:
        # Ollama runs locally and needs no key
        return self.provider == "ollama" or bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _decode(self, response) -> Dict[str, Any]:
        """Response body as a dict; anything else is an AIServiceError."""
        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"{self.provider} returned a non-JSON body: {response.text[:200]}")
            raise AIServiceError(f"AI Service Error: invalid response body ({e})")
        if not isinstance(data, dict):
            logger.error(f"{self.provider} returned {type(data).__name__} instead of an object")
            raise AIServiceError("AI Service Error: unexpected response format")
        return data

    def get_models(self) -> List[Dict[str, Any]]:
        """Get the models the provider offers."""
        path = "/api/tags" if self.provider == "ollama" else "/v1/models"
        try:
            response = requests.get(f"{self.base_url}{path}", headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Error connecting to {self.provider} API: {e}")
            return [{"id": self.model, "name": self.model, "provider": self.provider}]

        if response.status_code != 200:
            logger.error(f"Failed to get models: {response.status_code} - {response.text}")
            return [{"id": self.model, "name": self.model, "provider": self.provider}]

        try:
            data = self._decode(response)
        except AIServiceError:
            return [{"id": self.model, "name": self.model, "provider": self.provider}]
        if self.provider == "ollama":
            names = [m["name"] for m in data.get("models", [])]
        else:
            names = [m["id"] for m in data.get("data", [])]
        return [{"id": name, "name": name, "provider": self.provider} for name in names]

    def chat_completion(self, messages: List[Dict[str, str]], model_id: Optional[str] = None,
                        temperature: float = 0.7, max_tokens: Optional[int] = None,
                        json_mode: bool = False) -> Dict[str, Any]:
        """Get a chat completion; raises AIServiceError when the call fails."""
        if not self.is_configured:
            raise AINotConfiguredError(NOT_CONFIGURED_MESSAGE)

        model_id = model_id or self.model
        formatted_messages = [{"role": msg["role"], "content": msg["content"]} for msg in messages]

        if self.provider == "ollama":
            url = f"{self.base_url}/api/chat"
            payload = {
                "model": model_id,
                "messages": formatted_messages,
                "stream": False,
                "options": {"temperature": temperature},
            }
            if max_tokens:
                payload["options"]["num_predict"] = max_tokens
            if json_mode:
                payload["format"] = "json"
        else:
            url = f"{self.base_url}/v1/chat/completions"
            payload = {"model": model_id, "messages": formatted_messages, "temperature": temperature}
            if max_tokens:
                payload["max_tokens"] = max_tokens
            if json_mode:
                payload["response_format"] = {"type": "json_object"}

        logger.info(f"Sending chat request to {self.provider} for model: {model_id}")
        try:
            response = requests.post(url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Error in chat completion: {e}", exc_info=True)
            raise AIServiceError(f"AI Service Error: {e}")

        if response.status_code != 200:
            logger.error(f"{self.provider} API error: {response.status_code} - {response.text}")
            raise AIServiceError(f"AI Service Error: HTTP {response.status_code}")

        data = self._decode(response)
        if self.provider == "ollama":
            message = data.get("message")
            content = message.get("content", "") if isinstance(message, dict) else ""
        else:
            choices = data.get("choices")
            first = choices[0] if isinstance(choices, list) and choices and isinstance(choices[0], dict) else {}
            content = (first.get("message") or {}).get("content") or ""

        return {
            "id": data.get("id") or f"resp_{int(time.time())}",
            "role": "assistant",
            "content": content,
            "model": model_id,
        }

    def chat_json(self, messages: List[Dict[str, str]], temperature: float = 0.2,
                  max_tokens: Optional[int] = None) -> Dict[str, Any]:
        """Chat completion parsed as a JSON object; ``{}`` when the reply is not JSON."""
        content = self.chat_completion(messages, temperature=temperature, max_tokens=max_tokens,
                                       json_mode=True)["content"]
        json_str = extract_json_from_llm_response(content)
        if not json_str:
            logger.warning("LLM reply did not contain JSON")
            return {}
        try:
            parsed = json.loads(json_str)
        except json.JSONDecodeError as e:
            logger.warning(f"LLM reply was not valid JSON: {e}")
            return {}
        return parsed if isinstance(parsed, dict) else {"items": parsed}
