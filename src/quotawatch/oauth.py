import enum
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from quotawatch.errors import RefreshFailedError, SessionExpiredError
from quotawatch.models import TokenBundle

logger = structlog.get_logger()

INVALID_GRANT = "invalid_grant"


class RefreshEncoding(enum.Enum):
    JSON = "json"
    FORM = "form"


def _error_code(payload: "Any") -> "str":
    """
    extracts an OAuth error code from the shapes providers use:
    {"error": "..."}, {"error": {"code": "..."}}, {"code": "..."}
    and {"error_description": "..."}.
    """
    if not isinstance(payload, dict):
        return ""

    error = payload.get("error")
    if isinstance(error, dict):
        code = error.get("code") or error.get("type")
        if code:
            return str(code)
    elif error:
        return str(error)

    for key in ("code", "error_description"):
        if payload.get(key):
            return str(payload[key])
    return ""


def _to_token_bundle(payload: "Any") -> "TokenBundle | None":
    if not isinstance(payload, dict):
        return None

    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        return None

    expires_in = payload.get("expires_in")
    if not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool):
        expires_in = None

    return TokenBundle(
        access_token=access_token,
        refresh_token=payload.get("refresh_token") or None,
        expires_in=expires_in,
        id_token=payload.get("id_token") or None,
    )


async def refresh_access_token(
    client: "httpx.AsyncClient",
    url: "str",
    client_id: "str",
    refresh_token: "str",
    encoding: "RefreshEncoding" = RefreshEncoding.JSON,
    scope: "str | None" = None,
    extra: "dict[str, str] | None" = None,
) -> "TokenBundle | None":
    """
    performs a single OAuth2 refresh_token grant against url.

    Returns the new tokens on success, None when the server answered
    successfully but without a usable access token. Raises
    SessionExpiredError when the refresh token was rejected with
    invalid_grant and RefreshFailedError for every other failure.
    No retries are performed here.
    """
    body: "dict[str, str]" = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client_id,
    }
    if extra:
        body.update(extra)
    if scope:
        body["scope"] = scope

    try:
        if encoding is RefreshEncoding.JSON:
            resp = await client.post(
                url,
                json=body,
                headers={"Content-Type": "application/json"},
            )
        else:
            resp = await client.post(
                url,
                data=body,
                headers={"Accept": "application/json"},
            )
    except httpx.HTTPError as exc:
        logger.warning("token_refresh_request_failed", url=url, error=str(exc))
        raise RefreshFailedError(None, type(exc).__name__) from exc

    if resp.status_code in (400, 401):
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        code = _error_code(payload)
        logger.info("token_refresh_rejected", status=resp.status_code, code=code)
        if code == INVALID_GRANT:
            raise SessionExpiredError("Session expired. Please re-authenticate.")
        raise RefreshFailedError(resp.status_code, code)

    if not resp.is_success:
        try:
            code = _error_code(resp.json())
        except ValueError:
            code = ""
        logger.warning("token_refresh_failed", status=resp.status_code, code=code)
        raise RefreshFailedError(resp.status_code, code)

    try:
        payload = resp.json()
    except ValueError as exc:
        raise RefreshFailedError(resp.status_code, "invalid_response") from exc

    tokens = _to_token_bundle(payload)
    if tokens is None:
        logger.warning("token_refresh_missing_access_token", url=url)
    return tokens


@dataclass(frozen=True)
class TokenRefresher:
    """
    TokenRefresher binds a provider's token endpoint, client id and
    body encoding so adapters only pass the refresh token.
    """

    url: "str"
    client_id: "str"
    encoding: "RefreshEncoding" = RefreshEncoding.JSON
    scope: "str | None" = None
    extra: "dict[str, str]" = field(default_factory=dict)

    async def refresh(
        self, client: "httpx.AsyncClient", refresh_token: "str"
    ) -> "TokenBundle | None":
        return await refresh_access_token(
            client,
            self.url,
            self.client_id,
            refresh_token,
            encoding=self.encoding,
            scope=self.scope,
            extra=self.extra or None,
        )
