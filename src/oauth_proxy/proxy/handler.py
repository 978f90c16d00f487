"""Core request handler: authenticate -> transform -> forward -> retry on 401 -> relay."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from oauth_proxy.auth.manager import CredentialManager
from oauth_proxy.config import ProxyConfig
from oauth_proxy.display.terminal import TRACE
from oauth_proxy.errors import (
    CredentialUnavailable,
    InvalidSystemField,
    UpstreamTransportFailure,
)
from oauth_proxy.proxy.streaming import StreamRelay
from oauth_proxy.proxy.transform import RequestTransformer

logger = logging.getLogger(__name__)


def redact_headers(headers: dict[str, str], *, redact: bool = True) -> dict[str, str]:
    """Redact sensitive values from headers."""
    if not redact:
        return headers
    result = {}
    sensitive_keys = {"authorization", "x-api-key", "api-key", "x-proxy-credential"}
    for key, value in headers.items():
        if key.lower() in sensitive_keys:
            # Keep first 12 chars + mask the rest
            if len(value) > 12:
                result[key] = value[:12] + "***"
            else:
                result[key] = "***"
        else:
            result[key] = value
    return result


def error_response(message: str, status_code: int = 500) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


class ProxyHandler:
    """Forwards one client request upstream with a valid bearer credential.

    A 401 from upstream invalidates the cached token, triggers one refresh and,
    if that succeeds, exactly one retry. A failed refresh surfaces the original
    401 to the client.
    """

    def __init__(
        self,
        config: ProxyConfig,
        credentials: CredentialManager,
        transformer: RequestTransformer,
        relay: StreamRelay,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._config = config
        self._credentials = credentials
        self._transformer = transformer
        self._relay = relay
        self._client = http_client

    async def handle(self, request: Request, preset_name: str | None = None) -> Response:
        """Handle an incoming messages request."""
        raw_body = await request.body()
        logger.debug("Incoming request headers: %s", redact_headers(dict(request.headers)))
        try:
            body = json.loads(raw_body) if raw_body else {}
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            return error_response(f"Invalid JSON: {e}", status_code=400)
        if not isinstance(body, dict):
            return error_response("Request body must be a JSON object", status_code=400)

        if preset_name:
            logger.debug("Detected preset: %s", preset_name)
        override = request.headers.get(self._config.override_header)
        return await self.dispatch(body, preset_name, override)

    async def dispatch(
        self,
        body: dict[str, Any],
        preset_name: str | None = None,
        override: str | None = None,
    ) -> Response:
        """Run the authenticate/forward/retry sequence for a parsed body."""
        try:
            upstream = await self._forward(body, preset_name, override)

            if upstream.status_code == 401:
                logger.warning("Got 401, clearing token and refreshing")
                self._credentials.invalidate()
                try:
                    await self._credentials.refresh()
                except CredentialUnavailable as e:
                    logger.error("Token refresh failed, passing 401 to client: %s", e)
                else:
                    await upstream.aclose()
                    upstream = await self._forward(body, preset_name, None)
                    logger.debug("Retry status: %s", upstream.status_code)

            if upstream.status_code >= 400:
                logger.error(
                    "Upstream error: %s %s", upstream.status_code, upstream.reason_phrase
                )
            return await self._relay.relay(upstream)

        except InvalidSystemField as e:
            return error_response(str(e), status_code=400)
        except CredentialUnavailable as e:
            logger.error("Credential error: %s", e)
            return error_response(str(e))
        except UpstreamTransportFailure as e:
            logger.error("Upstream request error: %s", e)
            return error_response(str(e))

    async def _forward(
        self,
        body: dict[str, Any],
        preset_name: str | None,
        override: str | None,
    ) -> httpx.Response:
        token = await self._credentials.get_token(override)
        headers = self.build_headers(token)
        payload = self._transformer.build(body, preset_name)

        logger.debug("Outgoing headers: %s", redact_headers(headers))
        content = json.dumps(payload).encode("utf-8")
        logger.debug("Final request upstream (%d bytes)", len(content))
        logger.log(TRACE, "Upstream payload: %s", content.decode("utf-8"))

        request = self._client.build_request(
            "POST",
            self._config.api_url,
            headers=headers,
            content=content,
            timeout=httpx.Timeout(
                self._config.upstream_timeout, connect=self._config.credential_timeout
            ),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise UpstreamTransportFailure(str(e) or type(e).__name__) from e
        logger.debug("Upstream status: %s", response.status_code)
        return response

    def build_headers(self, token: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": token,
            "anthropic-version": self._config.anthropic_version,
            "User-Agent": self._config.user_agent,
        }
        if self._config.anthropic_beta:
            headers["anthropic-beta"] = self._config.anthropic_beta
        return headers
