"""HTTP handler executor"""
import asyncio
import json
import logging
from typing import Any, Dict, Optional

import aiohttp

from lavs.types import ExecutionContext, HttpHandler, LAVSError, LAVSErrorCode

logger = logging.getLogger(__name__)

MAX_ERROR_BODY = 2000


def _query_params(data: Any) -> Dict[str, str]:
    if not isinstance(data, dict):
        return {}
    params = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, bool):
            params[key] = "true" if value else "false"
        elif isinstance(value, (dict, list)):
            params[key] = json.dumps(value)
        else:
            params[key] = str(value)
    return params


class HttpExecutor:
    """Forwards endpoint input to an HTTP service.

    GET and DELETE send the input as query parameters, other methods as a
    JSON body. Non-2xx responses and transport failures become HandlerError.
    """

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self._session = session

    async def execute(self, handler: HttpHandler, data: Any, context: ExecutionContext) -> Any:
        method = handler.method.upper()
        timeout_ms = context.timeout
        headers = {
            "Content-Type": "application/json",
            "X-LAVS-Agent-Id": context.agent_id,
            "X-LAVS-Endpoint-Id": context.endpoint_id,
            **handler.headers,
        }

        request_kwargs: Dict[str, Any] = {"headers": headers}
        if method in ("GET", "DELETE"):
            request_kwargs["params"] = _query_params(data)
        elif data is not None:
            request_kwargs["data"] = json.dumps(data)

        logger.info(f"HTTP {method} {handler.url} for {context.endpoint_id}")
        timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000)

        session = self._session
        owns_session = session is None
        if owns_session:
            session = aiohttp.ClientSession()

        try:
            async with session.request(method, handler.url, timeout=timeout, **request_kwargs) as response:
                body = await response.text()
                status = response.status
        except asyncio.TimeoutError as e:
            raise LAVSError(LAVSErrorCode.Timeout, f"HTTP handler timeout after {timeout_ms}ms") from e
        except aiohttp.ClientError as e:
            raise LAVSError(
                LAVSErrorCode.HandlerError,
                f"HTTP handler request failed: {e}",
                {"url": handler.url}
            ) from e
        finally:
            if owns_session:
                await session.close()

        if not 200 <= status < 300:
            raise LAVSError(
                LAVSErrorCode.HandlerError,
                f"HTTP handler returned status {status}",
                {"status": status, "body": body[:MAX_ERROR_BODY]}
            )

        if not body.strip():
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise LAVSError(
                LAVSErrorCode.HandlerError,
                "HTTP handler response is not valid JSON",
                {"status": status, "body": body[:MAX_ERROR_BODY], "parseError": str(e)}
            ) from e

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None
