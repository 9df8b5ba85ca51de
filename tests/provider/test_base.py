import json
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest
import respx

from quotawatch.credentials import FileCredentialSource
from quotawatch.models import ProgressLine
from quotawatch.provider.base import NoProactiveRefresh, ProviderAdapter
from quotawatch.provider.claude import ClaudeCredentialSchema

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
USAGE_URL = "https://usage.example.test/api/usage"


def _session_line(data, headers, now):
    return [ProgressLine(label="Session", used=data["used"], limit=100)]


def _strict_normalizer(data, headers, now):
    return [ProgressLine(label="Session", used=data["window"].get("used"), limit=100)]


async def _failing_plan(client, bundle, data):
    raise RuntimeError("profile lookup exploded")


def _adapter(path: "Path", client: "httpx.AsyncClient", **kwargs) -> "ProviderAdapter":
    path.write_text(json.dumps({"claudeAiOauth": {"accessToken": "token"}}))
    return ProviderAdapter(
        provider_id="example",
        name="Example",
        usage_url=USAGE_URL,
        sources=[FileCredentialSource(path)],
        schema=ClaudeCredentialSchema(),
        refresh_policy=NoProactiveRefresh(),
        refresher=None,
        client=client,
        clock=lambda: NOW,
        **kwargs,
    )


class TestProviderAdapter:
    @pytest.mark.asyncio
    @respx.mock
    async def test_normalizer_crash_is_invalid_response(self, tmp_path) -> "None":
        respx.get(USAGE_URL).mock(
            return_value=httpx.Response(200, json={"window": "unavailable"})
        )

        async with httpx.AsyncClient() as client:
            adapter = _adapter(
                tmp_path / "creds.json", client, normalizer=_strict_normalizer
            )
            result = await adapter.probe()

        assert result.error == "Usage response invalid."
        assert result.lines == ()

    @pytest.mark.asyncio
    @respx.mock
    async def test_plan_resolver_crash_keeps_usage(self, tmp_path) -> "None":
        respx.get(USAGE_URL).mock(return_value=httpx.Response(200, json={"used": 30}))

        async with httpx.AsyncClient() as client:
            adapter = _adapter(
                tmp_path / "creds.json",
                client,
                normalizer=_session_line,
                plan_resolver=_failing_plan,
            )
            result = await adapter.probe()

        assert result.ok
        assert result.plan is None
        assert [(line.label, line.used) for line in result.progress_lines()] == [
            ("Session", 30)
        ]
