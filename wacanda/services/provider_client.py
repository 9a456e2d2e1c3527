"""HTTP client for the WhatsApp-compatible provider gateway (Evolution API)."""

from typing import Any, List, Optional

import httpx

from wacanda.config import settings
from wacanda.logging_config import get_logger
from wacanda.services.result import Result

logger = get_logger("provider_client")

SEND_DELAY_MS = 1000


def _unwrap_message_list(data: Any) -> List[dict]:
    """The gateway answers findMessages with a bare list or a paginated envelope."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        messages = data.get("messages", data)
        if isinstance(messages, dict):
            records = messages.get("records")
            if isinstance(records, list):
                return records
        if isinstance(messages, list):
            return messages
    return []


class ProviderClient:
    def __init__(self, base_url: str, api_key: Optional[str], timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def _headers(self) -> dict:
        return {"apikey": self.api_key or "", "Content-Type": "application/json"}

    def _post(self, path: str, payload: dict, *, operation: str) -> Result[Any]:
        if not self.api_key:
            return Result.failure("Provider API key is not configured", code="not_configured")

        url = f"{self.base_url}{path}"
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(url, headers=self._headers(), json=payload)
        except httpx.TimeoutException:
            logger.warning("Provider timeout", extra={"context": {"operation": operation, "url": url}})
            return Result.failure(f"{operation} timed out", code="provider_timeout")
        except httpx.HTTPError as e:
            logger.warning(
                "Provider unreachable",
                extra={"context": {"operation": operation, "url": url, "error": str(e)}},
            )
            return Result.failure(f"{operation} failed: {e}", code="provider_unavailable")

        if response.status_code not in (200, 201):
            logger.warning(
                "Provider HTTP error",
                extra={
                    "context": {
                        "operation": operation,
                        "status": response.status_code,
                        "body": response.text[:300],
                    }
                },
            )
            return Result.failure(
                f"{operation} failed: {response.status_code} - {response.text[:300]}",
                code="provider_http_error",
            )

        try:
            return Result.success(response.json())
        except ValueError:
            return Result.failure(f"{operation} returned invalid JSON", code="provider_invalid_response")

    def list_all_messages(self, instance_key: str) -> Result[List[dict]]:
        """Fetch the entire message history of an instance (empty filter)."""
        result = self._post(f"/chat/findMessages/{instance_key}", {}, operation="list_all_messages").map(
            _unwrap_message_list
        )
        if result.ok:
            logger.info(
                "Fetched provider history",
                extra={"context": {"instance_key": instance_key, "messages": len(result.value)}},
            )
        return result

    def list_messages(self, instance_key: str, external_conversation_id: str) -> Result[List[dict]]:
        payload = {"where": {"key": {"remoteJid": external_conversation_id}}}
        return self._post(f"/chat/findMessages/{instance_key}", payload, operation="list_messages").map(
            _unwrap_message_list
        )

    def send_message(self, instance_key: str, recipient: str, text: str) -> Result[dict]:
        payload = {
            "number": recipient,
            "options": {"delay": SEND_DELAY_MS, "presence": "composing"},
            "textMessage": {"text": text},
        }
        result = self._post(f"/message/sendText/{instance_key}", payload, operation="send_message")
        if not result.ok:
            return result

        data = result.value if isinstance(result.value, dict) else {}
        message_id = (data.get("key") or {}).get("id") or data.get("id")
        if not message_id:
            return Result.failure("send_message returned no message id", code="provider_invalid_response")
        return Result.success({"id": message_id})


_provider_client: Optional[ProviderClient] = None


def get_provider_client() -> ProviderClient:
    global _provider_client
    if _provider_client is None:
        _provider_client = ProviderClient(
            settings.provider_base_url,
            settings.provider_api_key,
            timeout=settings.provider_timeout_seconds,
        )
    return _provider_client
