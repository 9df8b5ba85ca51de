import copy
import getpass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Sequence

import httpx
import structlog

from quotawatch.credentials import FileCredentialSource, KeyringCredentialSource
from quotawatch.models import (
    DOLLARS,
    CredentialBundle,
    CredentialSource,
    MetricLine,
    ProgressLine,
    TextLine,
    TokenBundle,
)
from quotawatch.oauth import RefreshEncoding, TokenRefresher
from quotawatch.provider.base import (
    USER_AGENT,
    ExpiryBufferPolicy,
    ProviderAdapter,
    refreshed_expiry,
    with_raw,
)
from quotawatch.provider.normalize import (
    SESSION_PERIOD_MS,
    WEEKLY_PERIOD_MS,
    format_plan_label,
    read_number,
    to_datetime,
    to_iso,
)

logger = structlog.get_logger()

CREDENTIALS_PATH = "~/.claude/.credentials.json"
KEYCHAIN_SERVICE = "Claude Code-credentials"
USAGE_URL = "https://api.anthropic.com/api/oauth/usage"
PROFILE_URL = "https://api.anthropic.com/api/oauth/profile"
REFRESH_URL = "https://platform.claude.com/v1/oauth/token"
CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
SCOPES = "user:profile user:inference user:sessions:claude_code user:mcp_servers"
BETA_HEADER = "oauth-2025-04-20"

# each tuple is (response_key, label, period_ms)
USAGE_WINDOWS: "list[tuple[str, str, int]]" = [
    ("five_hour", "Session", SESSION_PERIOD_MS),
    ("seven_day", "Weekly", WEEKLY_PERIOD_MS),
    ("seven_day_sonnet", "Sonnet", WEEKLY_PERIOD_MS),
    ("seven_day_opus", "Opus", WEEKLY_PERIOD_MS),
]


class ClaudeCredentialSchema:
    """
    reads the claudeAiOauth block written by the Claude CLI. expiresAt
    is in unix milliseconds.
    """

    def parse(
        self, document: "dict[str, Any]", source: "CredentialSource"
    ) -> "CredentialBundle | None":
        oauth = document.get("claudeAiOauth")
        if not isinstance(oauth, dict) or not oauth.get("accessToken"):
            return None

        return CredentialBundle(
            access_token=str(oauth["accessToken"]),
            source=source,
            raw=document,
            refresh_token=oauth.get("refreshToken") or None,
            expires_at=to_datetime(oauth.get("expiresAt")),
            plan_hint=oauth.get("subscriptionType") or None,
        )

    def apply_refresh(
        self,
        bundle: "CredentialBundle",
        tokens: "TokenBundle",
        now: "datetime",
    ) -> "CredentialBundle":
        raw = copy.deepcopy(bundle.raw)
        oauth = raw.setdefault("claudeAiOauth", {})
        oauth["accessToken"] = tokens.access_token
        refresh_token = tokens.refresh_token or bundle.refresh_token
        if tokens.refresh_token:
            oauth["refreshToken"] = tokens.refresh_token

        expires_at = refreshed_expiry(tokens, now)
        if expires_at is not None:
            oauth["expiresAt"] = int(expires_at.timestamp() * 1000)
        else:
            expires_at = bundle.expires_at

        return with_raw(
            bundle,
            raw,
            access_token=tokens.access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )


def _headers(bundle: "CredentialBundle") -> "dict[str, str]":
    return {
        "Content-Type": "application/json",
        "anthropic-beta": BETA_HEADER,
    }


def _dollars(cents: "float") -> "float":
    return round(cents / 100, 2)


def normalize_usage(
    data: "Any", headers: "httpx.Headers", now: "datetime"
) -> "list[MetricLine]":
    """
    maps the oauth/usage response to metric lines. Utilization values
    are already percentages; credit amounts are reported in cents.
    """
    if not isinstance(data, dict):
        return []

    lines: "list[MetricLine]" = []

    for key, label, period_ms in USAGE_WINDOWS:
        window = data.get(key)
        if not isinstance(window, dict):
            continue
        utilization = read_number(window.get("utilization"))
        if utilization is None:
            continue
        lines.append(
            ProgressLine(
                label=label,
                used=utilization,
                limit=100,
                resets_at=to_iso(window.get("resets_at")),
                period_duration_ms=period_ms,
            )
        )

    extra = data.get("extra_usage")
    if isinstance(extra, dict) and extra.get("is_enabled"):
        used = read_number(extra.get("used_credits"))
        limit = read_number(extra.get("monthly_limit"))
        if used is not None and limit is not None and limit > 0:
            lines.append(
                ProgressLine(
                    label="Extra usage",
                    used=_dollars(used),
                    limit=_dollars(limit),
                    format=DOLLARS,
                )
            )
        elif used is not None and used > 0:
            lines.append(TextLine(label="Extra usage", value=f"${_dollars(used):.2f}"))

    if data.get("account_balance") is not None:
        balance = read_number(data.get("account_balance")) or 0.0
        lines.append(
            TextLine(label="Account balance", value=f"${_dollars(balance):.2f}")
        )

    return lines


async def resolve_plan(
    client: "httpx.AsyncClient", bundle: "CredentialBundle", data: "Any"
) -> "str | None":
    """
    asks the profile endpoint for the organization type and falls back
    to the subscription type cached in the credentials file.
    """
    fallback = format_plan_label(bundle.plan_hint)
    try:
        resp = await client.get(
            PROFILE_URL,
            headers={
                "Authorization": f"Bearer {bundle.access_token.strip()}",
                "Accept": "application/json",
                "anthropic-beta": BETA_HEADER,
                "User-Agent": USER_AGENT,
            },
        )
        if not resp.is_success:
            logger.debug("claude_profile_failed", status=resp.status_code)
            return fallback
        profile = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.debug("claude_profile_error", error=str(exc))
        return fallback

    if not isinstance(profile, dict):
        return fallback

    organization = profile.get("organization")
    org_type = None
    if isinstance(organization, dict):
        org_type = organization.get("organization_type")
    if org_type:
        # e.g. "claude_max" -> "Max"
        return format_plan_label(str(org_type).removeprefix("claude_"))

    account = profile.get("account")
    if not isinstance(account, dict):
        return fallback
    if account.get("has_claude_max"):
        return "Max"
    if account.get("has_claude_pro"):
        return "Pro"
    return fallback


def _keychain_account() -> "str":
    # the Claude CLI stores its keychain entry under the login name
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ""


def default_sources(
    credentials_path: "str | Path" = CREDENTIALS_PATH,
) -> "list[CredentialSource]":
    return [
        FileCredentialSource(credentials_path),
        KeyringCredentialSource(KEYCHAIN_SERVICE, _keychain_account()),
    ]


def create_claude_provider(
    client: "httpx.AsyncClient | None" = None,
    sources: "Sequence[CredentialSource] | None" = None,
    **kwargs: "Any",
) -> "ProviderAdapter":
    return ProviderAdapter(
        provider_id="claude",
        name="Claude",
        usage_url=USAGE_URL,
        sources=sources if sources is not None else default_sources(),
        schema=ClaudeCredentialSchema(),
        refresh_policy=ExpiryBufferPolicy(buffer=timedelta(minutes=5)),
        refresher=TokenRefresher(
            url=REFRESH_URL,
            client_id=CLIENT_ID,
            encoding=RefreshEncoding.JSON,
            scope=SCOPES,
        ),
        normalizer=normalize_usage,
        headers=_headers,
        plan_resolver=resolve_plan,
        login_command="claude",
        client=client,
        **kwargs,
    )
