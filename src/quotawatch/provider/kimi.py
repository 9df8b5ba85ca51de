import copy
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Sequence

import httpx

from quotawatch.credentials import FileCredentialSource, KeyringCredentialSource
from quotawatch.models import (
    CredentialBundle,
    CredentialSource,
    MetricLine,
    ProgressLine,
    TokenBundle,
)
from quotawatch.oauth import RefreshEncoding, TokenRefresher
from quotawatch.provider.base import (
    ExpiryBufferPolicy,
    ProviderAdapter,
    refreshed_expiry,
    with_raw,
)
from quotawatch.provider.normalize import (
    Quota,
    format_plan_label,
    parse_period_ms,
    quota_from_row,
    to_datetime,
    to_percent_quota,
)

CREDENTIALS_PATH = "~/.kimi/credentials/kimi-code.json"
KEYRING_SERVICE = "kimi-code"
KEYRING_ACCOUNT = "oauth/kimi-code"
USAGE_URL = "https://api.kimi.com/coding/v1/usages"
REFRESH_URL = "https://auth.kimi.com/api/oauth/token"
CLIENT_ID = "17e5f671-d194-4dfb-9706-5516cb48c098"


@dataclass(frozen=True, slots=True)
class Candidate:
    """
    Candidate is one entry of the limits array: an absolute quota
    plus the length of its window when the API states it.
    """

    quota: "Quota"
    period_ms: "int | None"


class KimiCredentialSchema:
    """
    reads the flat token document written by the Kimi CLI (to a file
    or to the keyring). expires_at is in unix seconds.
    """

    def parse(
        self, document: "dict[str, Any]", source: "CredentialSource"
    ) -> "CredentialBundle | None":
        access_token = document.get("access_token") or ""
        refresh_token = document.get("refresh_token") or None
        if not access_token and not refresh_token:
            return None

        return CredentialBundle(
            access_token=str(access_token),
            source=source,
            raw=document,
            refresh_token=refresh_token,
            expires_at=to_datetime(document.get("expires_at")),
        )

    def apply_refresh(
        self,
        bundle: "CredentialBundle",
        tokens: "TokenBundle",
        now: "datetime",
    ) -> "CredentialBundle":
        raw = copy.deepcopy(bundle.raw)
        raw["access_token"] = tokens.access_token
        if tokens.refresh_token:
            raw["refresh_token"] = tokens.refresh_token

        expires_at = refreshed_expiry(tokens, now)
        if expires_at is not None:
            raw["expires_at"] = expires_at.timestamp()
        else:
            expires_at = bundle.expires_at

        return with_raw(
            bundle,
            raw,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token or bundle.refresh_token,
            expires_at=expires_at,
        )


def collect_candidates(data: "dict[str, Any]") -> "list[Candidate]":
    limits = data.get("limits")
    if not isinstance(limits, list):
        return []

    candidates: "list[Candidate]" = []
    for item in limits:
        if not isinstance(item, dict):
            continue
        detail = item.get("detail")
        quota = quota_from_row(detail if isinstance(detail, dict) else item)
        if quota is None:
            continue
        candidates.append(Candidate(quota, parse_period_ms(item.get("window"))))
    return candidates


def pick_session(candidates: "list[Candidate]") -> "Candidate | None":
    """
    the session window is the shortest known period; candidates
    without a period sort last.
    """
    if not candidates:
        return None
    # sorted() is stable, so ties keep their API order
    return sorted(
        candidates,
        key=lambda c: (c.period_ms is None, c.period_ms or 0),
    )[0]


def pick_longest(candidates: "list[Candidate]") -> "Candidate | None":
    if not candidates:
        return None
    # max() keeps the first of several equally long windows
    return max(
        candidates,
        key=lambda c: c.period_ms if c.period_ms is not None else -1,
    )


def _progress(label: "str", candidate: "Candidate") -> "ProgressLine | None":
    percent = to_percent_quota(candidate.quota)
    if percent is None:
        return None
    return ProgressLine(
        label=label,
        used=percent.used,
        limit=percent.limit,
        resets_at=percent.resets_at,
        period_duration_ms=candidate.period_ms,
    )


def normalize_usage(
    data: "Any", headers: "httpx.Headers", now: "datetime"
) -> "list[MetricLine]":
    """
    maps the coding/v1/usages response to metric lines. Limits are
    absolute counts, rescaled to percent; the shortest window is the
    session and the account-wide usage block is the weekly window.
    """
    if not isinstance(data, dict):
        return []

    candidates = collect_candidates(data)
    session = pick_session(candidates)

    usage_quota = quota_from_row(data.get("usage"))
    if usage_quota is not None:
        weekly: "Candidate | None" = Candidate(usage_quota, None)
    else:
        weekly = pick_longest([c for c in candidates if c is not session])

    lines: "list[MetricLine]" = []
    if session is not None:
        line = _progress("Session", session)
        if line is not None:
            lines.append(line)

    if weekly is not None and (session is None or weekly.quota != session.quota):
        line = _progress("Weekly", weekly)
        if line is not None:
            lines.append(line)

    return lines


async def resolve_plan(
    client: "httpx.AsyncClient", bundle: "CredentialBundle", data: "Any"
) -> "str | None":
    if not isinstance(data, dict):
        return None
    user = data.get("user")
    membership = user.get("membership") if isinstance(user, dict) else None
    if not isinstance(membership, dict):
        return None
    return format_plan_label(membership.get("level"))


def default_sources(
    credentials_path: "str | Path" = CREDENTIALS_PATH,
) -> "list[CredentialSource]":
    return [
        FileCredentialSource(credentials_path),
        KeyringCredentialSource(KEYRING_SERVICE, KEYRING_ACCOUNT),
    ]


def create_kimi_provider(
    client: "httpx.AsyncClient | None" = None,
    sources: "Sequence[CredentialSource] | None" = None,
    **kwargs: "Any",
) -> "ProviderAdapter":
    return ProviderAdapter(
        provider_id="kimi",
        name="Kimi",
        usage_url=USAGE_URL,
        sources=sources if sources is not None else default_sources(),
        schema=KimiCredentialSchema(),
        refresh_policy=ExpiryBufferPolicy(
            buffer=timedelta(minutes=5), refresh_when_unknown=True
        ),
        refresher=TokenRefresher(
            url=REFRESH_URL,
            client_id=CLIENT_ID,
            encoding=RefreshEncoding.FORM,
        ),
        normalizer=normalize_usage,
        plan_resolver=resolve_plan,
        login_command="kimi login",
        client=client,
        **kwargs,
    )
