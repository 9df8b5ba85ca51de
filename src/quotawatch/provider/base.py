from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Sequence

import httpx
import structlog

from quotawatch.errors import (
    NotAuthenticatedError,
    ProbeError,
    SessionExpiredError,
    TransientError,
)
from quotawatch.models import (
    CredentialBundle,
    CredentialSource,
    MetricLine,
    ProbeResult,
    TokenBundle,
)
from quotawatch.oauth import TokenRefresher

logger = structlog.get_logger()

USER_AGENT = "quotawatch"

Normalizer = Callable[[Any, httpx.Headers, datetime], list[MetricLine]]
HeaderBuilder = Callable[[CredentialBundle], dict[str, str]]
PlanResolver = Callable[
    [httpx.AsyncClient, CredentialBundle, Any], Awaitable[Optional[str]]
]


class UsageProvider(Protocol):
    """
    UsageProvider stands as a common protocol that all
    subscription providers must satisfy.

    A probe never raises for authentication, network or parsing
    failures: those are reported through ProbeResult.error.
    """

    @property
    def id(self) -> "str": ...

    @property
    def name(self) -> "str": ...

    async def probe(self) -> "ProbeResult": ...

    async def close(self) -> "None": ...


class CredentialSchema(Protocol):
    """
    CredentialSchema maps a provider's credential document to a
    CredentialBundle and writes refreshed tokens back into it.
    """

    def parse(
        self, document: "dict[str, Any]", source: "CredentialSource"
    ) -> "CredentialBundle | None": ...

    def apply_refresh(
        self,
        bundle: "CredentialBundle",
        tokens: "TokenBundle",
        now: "datetime",
    ) -> "CredentialBundle": ...


class RefreshPolicy(Protocol):
    def needs_refresh(self, bundle: "CredentialBundle", now: "datetime") -> "bool": ...


class ExpiryBufferPolicy:
    """
    refreshes when the access token expires within buffer.
    refresh_when_unknown decides what happens for bundles that
    carry no expiry (or no access token at all).
    """

    def __init__(
        self,
        buffer: "timedelta" = timedelta(minutes=5),
        refresh_when_unknown: "bool" = False,
    ) -> "None":
        self._buffer = buffer
        self._refresh_when_unknown = refresh_when_unknown

    def needs_refresh(self, bundle: "CredentialBundle", now: "datetime") -> "bool":
        if not bundle.access_token:
            return self._refresh_when_unknown
        if bundle.expires_at is None:
            return self._refresh_when_unknown
        return now + self._buffer >= bundle.expires_at


class AgeBasedPolicy:
    """
    refreshes when the last refresh is older than max_age, regardless
    of any expiry. A missing last refresh counts as stale.
    """

    def __init__(self, max_age: "timedelta") -> "None":
        self._max_age = max_age

    def needs_refresh(self, bundle: "CredentialBundle", now: "datetime") -> "bool":
        if bundle.last_refresh is None:
            return True
        return now - bundle.last_refresh > self._max_age


class NoProactiveRefresh:
    def needs_refresh(self, bundle: "CredentialBundle", now: "datetime") -> "bool":
        return False


def _utcnow() -> "datetime":
    return datetime.now(timezone.utc)


class ProviderAdapter:
    """
    ProviderAdapter drives the probe state machine shared by every
    provider: load credentials, refresh proactively, fetch usage,
    refresh-and-retry once on 401, normalize and resolve the plan.

    Provider specifics (credential layout, refresh cadence, headers,
    response shape) are injected as strategy objects rather than
    overridden in subclasses.
    """

    def __init__(
        self,
        *,
        provider_id: "str",
        name: "str",
        usage_url: "str",
        sources: "Sequence[CredentialSource]",
        schema: "CredentialSchema",
        refresh_policy: "RefreshPolicy",
        refresher: "TokenRefresher | None",
        normalizer: "Normalizer",
        headers: "HeaderBuilder | None" = None,
        plan_resolver: "PlanResolver | None" = None,
        login_command: "str" = "",
        client: "httpx.AsyncClient | None" = None,
        clock: "Callable[[], datetime]" = _utcnow,
    ) -> "None":
        self._id = provider_id
        self._name = name
        self._usage_url = usage_url
        self._sources = list(sources)
        self._schema = schema
        self._refresh_policy = refresh_policy
        self._refresher = refresher
        self._normalizer = normalizer
        self._headers = headers
        self._plan_resolver = plan_resolver
        self._login_command = login_command or provider_id
        self._owns_client = client is None
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(timeout=10.0)
        self._clock = clock

    @property
    def id(self) -> "str":
        return self._id

    @property
    def name(self) -> "str":
        return self._name

    async def close(self) -> "None":
        """
        closes the underlying HTTP client when this adapter created it.
        """
        if self._owns_client:
            await self._client.aclose()

    @property
    def _not_logged_in(self) -> "str":
        return f"Not logged in. Run `{self._login_command}` to authenticate."

    @property
    def _token_expired(self) -> "str":
        return f"Token expired. Run `{self._login_command}` to log in again."

    async def probe(self) -> "ProbeResult":
        log = logger.bind(provider=self._id)
        try:
            result = await self._probe()
        except ProbeError as exc:
            log.info("probe_failed", error_type=type(exc).__name__, error=str(exc))
            return ProbeResult.failure(str(exc))

        log.debug("probe_done", lines=len(result.lines), plan=result.plan)
        return result

    def load_credentials(self) -> "CredentialBundle":
        """
        tries each credential source in order and returns the first
        usable bundle.
        """
        for source in self._sources:
            document = source.load()
            if document is None:
                continue
            bundle = self._schema.parse(document, source)
            if bundle is not None:
                logger.debug(
                    "credentials_loaded", provider=self._id, source=source.description
                )
                return bundle
        raise NotAuthenticatedError(self._not_logged_in)

    async def refresh(self, bundle: "CredentialBundle") -> "CredentialBundle | None":
        """
        exchanges the bundle's refresh token for new tokens and
        persists the updated document to the source it came from.
        Returns None when there is nothing to refresh with or the
        server returned no usable token.
        """
        if self._refresher is None or not bundle.refresh_token:
            return None

        tokens = await self._refresher.refresh(self._client, bundle.refresh_token)
        if tokens is None:
            return None

        refreshed = self._schema.apply_refresh(bundle, tokens, self._clock())
        if not refreshed.source.save(refreshed.raw):
            # the new tokens still work for this probe
            logger.warning(
                "credentials_persist_failed",
                provider=self._id,
                source=refreshed.source.description,
            )
        logger.info("token_refreshed", provider=self._id)
        return refreshed

    async def _probe(self) -> "ProbeResult":
        bundle = self.load_credentials()

        if self._refresh_policy.needs_refresh(bundle, self._clock()):
            bundle = await self._proactive_refresh(bundle)

        resp = await self._fetch_usage(bundle)

        if resp.status_code == 401 and bundle.refresh_token:
            try:
                refreshed = await self.refresh(bundle)
            except ProbeError as exc:
                logger.info("reactive_refresh_failed", provider=self._id, error=str(exc))
                raise SessionExpiredError(self._token_expired) from exc
            if refreshed is not None:
                bundle = refreshed
                resp = await self._fetch_usage(bundle)

        if resp.status_code in (401, 403):
            raise SessionExpiredError(self._token_expired)
        if not resp.is_success:
            raise TransientError(f"Usage request failed (HTTP {resp.status_code}).")

        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientError("Usage response invalid.") from exc

        try:
            lines = self._normalizer(data, resp.headers, self._clock())
        except (AttributeError, TypeError, ValueError, KeyError) as exc:
            logger.warning("usage_normalize_failed", provider=self._id, error=str(exc))
            raise TransientError("Usage response invalid.") from exc
        plan = await self._resolve_plan(bundle, data)
        return ProbeResult.success(lines, plan=plan)

    async def _proactive_refresh(self, bundle: "CredentialBundle") -> "CredentialBundle":
        try:
            refreshed = await self.refresh(bundle)
        except ProbeError as exc:
            if not bundle.access_token:
                raise
            # the current token may still be accepted
            logger.info("proactive_refresh_failed", provider=self._id, error=str(exc))
            return bundle

        if refreshed is not None:
            return refreshed
        if not bundle.access_token:
            raise SessionExpiredError(
                "Token refresh failed and no access token available."
            )
        return bundle

    async def _fetch_usage(self, bundle: "CredentialBundle") -> "httpx.Response":
        headers: "dict[str, str]" = {
            "Authorization": f"Bearer {bundle.access_token.strip()}",
            "Accept": "application/json",
            "User-Agent": USER_AGENT,
        }
        if self._headers is not None:
            headers.update(self._headers(bundle))

        logger.debug("usage_fetch", provider=self._id, url=self._usage_url)
        try:
            return await self._client.get(self._usage_url, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("usage_request_error", provider=self._id, error=str(exc))
            raise TransientError(
                "Usage request failed. Check your connection."
            ) from exc

    async def _resolve_plan(
        self, bundle: "CredentialBundle", data: "Any"
    ) -> "str | None":
        if self._plan_resolver is None:
            return None
        try:
            return await self._plan_resolver(self._client, bundle, data)
        except Exception as exc:
            # a missing plan label never fails the probe
            logger.warning("plan_resolve_failed", provider=self._id, error=str(exc))
            return None


def refreshed_expiry(tokens: "TokenBundle", now: "datetime") -> "datetime | None":
    if tokens.expires_in is None:
        return None
    return now + timedelta(seconds=tokens.expires_in)


def with_raw(
    bundle: "CredentialBundle",
    raw: "Mapping[str, Any]",
    **changes: "Any",
) -> "CredentialBundle":
    """
    copy of bundle carrying a new raw document and changed fields.
    """
    return replace(bundle, raw=dict(raw), **changes)
