"""HTTP client for named business actions (``POST {action, params}``)."""

from typing import Any

import httpx

from opsagent.shared.exceptions import BusinessActionError
from opsagent.shared.logging import get_logger

logger = get_logger(__name__)


class BusinessActionClient:
    """Forwards tool invocations to the business-logic endpoint.

    Calls run with the end user's bearer token so the business layer applies
    its own role checks; the service key is only a fallback for
    system-initiated calls.
    """

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 30.0) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"Accept": "application/json", "User-Agent": "opsagent"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def execute(
        self,
        action: str,
        params: dict[str, Any],
        auth_token: str | None = None,
    ) -> dict[str, Any]:
        """Run one named action.

        Args:
            action: Action name understood by the business layer
            params: Action parameters
            auth_token: Caller's bearer token

        Returns:
            The decoded JSON result

        Raises:
            BusinessActionError: Non-2xx answer, transport failure or non-JSON body
        """
        token = auth_token or self.api_key
        headers = {"Authorization": f"Bearer {token}"} if token else {}

        try:
            response = await self._get_client().post(
                self.base_url,
                json={"action": action, "params": params},
                headers=headers,
            )
        except httpx.RequestError as e:
            logger.error("business_action_request_failed", action=action, error=str(e))
            raise BusinessActionError(action, f"Business service unreachable: {e}") from e

        if response.is_error:
            message = _error_message(response)
            logger.warning(
                "business_action_rejected",
                action=action,
                status_code=response.status_code,
                error=message,
            )
            raise BusinessActionError(action, message, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise BusinessActionError(action, "Business service returned invalid JSON") from e

        logger.info("business_action_executed", action=action)
        return data if isinstance(data, dict) else {"result": data}


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"
