import base64
import copy
import json
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Sequence

import httpx

from quotawatch.credentials import FileCredentialSource
from quotawatch.errors import NotAuthenticatedError
from quotawatch.models import (
    CredentialBundle,
    CredentialSource,
    MetricLine,
    ProgressLine,
    TextLine,
    TokenBundle,
)
from quotawatch.oauth import RefreshEncoding, TokenRefresher
from quotawatch.provider.base import AgeBasedPolicy, ProviderAdapter, with_raw
from quotawatch.provider.normalize import (
    SESSION_PERIOD_MS,
    WEEKLY_PERIOD_MS,
    format_iso,
    format_plan_label,
    parse_iso,
    read_number,
    to_datetime,
    to_iso,
)

AUTH_PATHS = ["~/.config/codex/auth.json", "~/.codex/auth.json"]
CLIENT_ID = "app_EMoamEEZ73f0CkXaXp7hrann"
REFRESH_URL = "https://auth.openai.com/oauth/token"
USAGE_URL = "https://chatgpt.com/backend-api/wham/usage"
REFRESH_MAX_AGE = timedelta(days=8)

# claim namespace used by OpenAI id tokens
AUTH_CLAIMS_KEY = "https://api.openai.com/auth"


def chatgpt_account_id_from_id_token(id_token: "str | None") -> "str | None":
    """
    reads chatgpt_account_id from an id token's payload without
    verifying it. Any decoding problem yields None.
    """
    if not id_token:
        return None
    parts = id_token.split(".")
    if len(parts) < 2:
        return None

    payload = parts[1]
    padding = "=" * (-len(payload) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload + padding))
    except ValueError:
        return None
    if not isinstance(claims, dict):
        return None

    auth_claims = claims.get(AUTH_CLAIMS_KEY)
    if isinstance(auth_claims, dict) and auth_claims.get("chatgpt_account_id"):
        return str(auth_claims["chatgpt_account_id"])
    account_id = claims.get("chatgpt_account_id")
    return str(account_id) if account_id else None


class CodexCredentialSchema:
    """
    reads the auth.json written by the Codex CLI: tokens live under
    "tokens" and last_refresh is an ISO timestamp with no expiry.
    """

    def parse(
        self, document: "dict[str, Any]", source: "CredentialSource"
    ) -> "CredentialBundle | None":
        tokens = document.get("tokens")
        if not isinstance(tokens, dict) or not tokens.get("access_token"):
            if document.get("OPENAI_API_KEY"):
                raise NotAuthenticatedError("Usage not available for API key.")
            return None

        last_refresh = document.get("last_refresh")
        account_id = tokens.get("account_id") or chatgpt_account_id_from_id_token(
            tokens.get("id_token")
        )
        return CredentialBundle(
            access_token=str(tokens["access_token"]),
            source=source,
            raw=document,
            refresh_token=tokens.get("refresh_token") or None,
            last_refresh=parse_iso(last_refresh) if isinstance(last_refresh, str) else None,
            account_id=account_id,
        )

    def apply_refresh(
        self,
        bundle: "CredentialBundle",
        tokens: "TokenBundle",
        now: "datetime",
    ) -> "CredentialBundle":
        raw = copy.deepcopy(bundle.raw)
        stored = raw.setdefault("tokens", {})
        stored["access_token"] = tokens.access_token
        if tokens.refresh_token:
            stored["refresh_token"] = tokens.refresh_token
        if tokens.id_token:
            stored["id_token"] = tokens.id_token
        raw["last_refresh"] = format_iso(now)

        return with_raw(
            bundle,
            raw,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or bundle.refresh_token,
            last_refresh=now,
            account_id=bundle.account_id
            or chatgpt_account_id_from_id_token(tokens.id_token),
        )


def _headers(bundle: "CredentialBundle") -> "dict[str, str]":
    if bundle.account_id:
        return {"ChatGPT-Account-Id": bundle.account_id}
    return {}


def _resets_at(window: "Any", now: "datetime") -> "str | None":
    """
    prefers the absolute reset_at. A relative reset_after_seconds is
    anchored to now and truncated to the minute so consecutive probes
    of the same window agree.
    """
    if not isinstance(window, dict):
        return None
    reset_at = to_iso(window.get("reset_at"))
    if reset_at is not None:
        return reset_at

    after = read_number(window.get("reset_after_seconds"))
    if after is None:
        return None
    moment = to_datetime(now.timestamp() + after)
    if moment is None:
        return None
    return format_iso(moment.replace(second=0, microsecond=0))


def _window_line(
    label: "str",
    used: "float | None",
    window: "Any",
    period_ms: "int",
    now: "datetime",
) -> "ProgressLine | None":
    if used is None:
        return None
    return ProgressLine(
        label=label,
        used=used,
        limit=100,
        resets_at=_resets_at(window, now),
        period_duration_ms=period_ms,
    )


def normalize_usage(
    data: "Any", headers: "httpx.Headers", now: "datetime"
) -> "list[MetricLine]":
    """
    maps the wham/usage response to metric lines. The
    x-codex-*-used-percent headers are fresher than the body and
    take precedence when present.
    """
    if not isinstance(data, dict):
        data = {}

    rate_limit = data.get("rate_limit")
    if not isinstance(rate_limit, dict):
        rate_limit = {}
    primary = rate_limit.get("primary_window")
    secondary = rate_limit.get("secondary_window")
    review_limit = data.get("code_review_rate_limit")
    review = (
        review_limit.get("primary_window") if isinstance(review_limit, dict) else None
    )

    windows: "list[ProgressLine | None]" = [
        _window_line(
            "Session",
            read_number(headers.get("x-codex-primary-used-percent")),
            primary,
            SESSION_PERIOD_MS,
            now,
        ),
        _window_line(
            "Weekly",
            read_number(headers.get("x-codex-secondary-used-percent")),
            secondary,
            WEEKLY_PERIOD_MS,
            now,
        ),
    ]
    lines: "list[MetricLine]" = [line for line in windows if line is not None]

    # fall back to the body only when no header was usable
    if not lines:
        for label, window, period_ms in (
            ("Session", primary, SESSION_PERIOD_MS),
            ("Weekly", secondary, WEEKLY_PERIOD_MS),
        ):
            if not isinstance(window, dict):
                continue
            line = _window_line(
                label, read_number(window.get("used_percent")), window, period_ms, now
            )
            if line is not None:
                lines.append(line)

    if isinstance(review, dict):
        line = _window_line(
            "Reviews",
            read_number(review.get("used_percent")),
            review,
            WEEKLY_PERIOD_MS,
            now,
        )
        if line is not None:
            lines.append(line)

    credits = read_number(headers.get("x-codex-credits-balance"))
    if credits is None and isinstance(data.get("credits"), dict):
        credits = read_number(data["credits"].get("balance"))
    if credits is not None and credits > 0:
        lines.append(TextLine(label="Credits", value=f"{round(credits)} remaining"))

    return lines


async def resolve_plan(
    client: "httpx.AsyncClient", bundle: "CredentialBundle", data: "Any"
) -> "str | None":
    if isinstance(data, dict) and data.get("plan_type"):
        return format_plan_label(str(data["plan_type"]))
    return None


def default_sources() -> "list[CredentialSource]":
    paths: "list[str | Path]" = list(AUTH_PATHS)
    codex_home = os.environ.get("CODEX_HOME")
    if codex_home:
        paths.append(Path(codex_home) / "auth.json")
    return [FileCredentialSource(path) for path in paths]


def create_codex_provider(
    client: "httpx.AsyncClient | None" = None,
    sources: "Sequence[CredentialSource] | None" = None,
    **kwargs: "Any",
) -> "ProviderAdapter":
    return ProviderAdapter(
        provider_id="codex",
        name="Codex",
        usage_url=USAGE_URL,
        sources=sources if sources is not None else default_sources(),
        schema=CodexCredentialSchema(),
        refresh_policy=AgeBasedPolicy(max_age=REFRESH_MAX_AGE),
        refresher=TokenRefresher(
            url=REFRESH_URL,
            client_id=CLIENT_ID,
            encoding=RefreshEncoding.FORM,
        ),
        normalizer=normalize_usage,
        headers=_headers,
        plan_resolver=resolve_plan,
        login_command="codex",
        client=client,
        **kwargs,
    )
