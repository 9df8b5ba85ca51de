import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest
import respx

from quotawatch.credentials import FileCredentialSource
from quotawatch.models import DOLLARS, BadgeLine, ProgressLine, TextLine
from quotawatch.provider.claude import (
    PROFILE_URL,
    REFRESH_URL,
    USAGE_URL,
    create_claude_provider,
    normalize_usage,
)

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _write_credentials(path: "Path", **oauth: "Any") -> "FileCredentialSource":
    document = {
        "claudeAiOauth": {
            "accessToken": "old-access",
            "refreshToken": "old-refresh",
            "expiresAt": int((NOW + timedelta(hours=1)).timestamp() * 1000),
            "subscriptionType": "max",
            **oauth,
        },
        "otherTool": {"keep": True},
    }
    path.write_text(json.dumps(document))
    return FileCredentialSource(path)


@pytest.fixture()
def creds_path(tmp_path) -> "Path":
    return tmp_path / ".credentials.json"


def _provider(source: "FileCredentialSource", client: "httpx.AsyncClient"):
    return create_claude_provider(client=client, sources=[source], clock=lambda: NOW)


def _mock_profile(status: "int" = 404, payload: "Any" = None) -> "respx.Route":
    return respx.get(PROFILE_URL).mock(
        return_value=httpx.Response(status, json=payload or {})
    )


class TestClaudeProbe:
    @pytest.mark.asyncio
    @respx.mock
    async def test_reactive_refresh_then_success(self, creds_path) -> "None":
        source = _write_credentials(creds_path)
        usage = respx.get(USAGE_URL).mock(
            side_effect=[
                httpx.Response(401),
                httpx.Response(
                    200,
                    json={
                        "five_hour": {
                            "utilization": 42,
                            "resets_at": "2026-01-01T15:00:00Z",
                        }
                    },
                ),
            ]
        )
        refresh = respx.post(REFRESH_URL).mock(
            return_value=httpx.Response(
                200,
                json={
                    "access_token": "new-access",
                    "refresh_token": "new-refresh",
                    "expires_in": 28800,
                },
            )
        )
        _mock_profile()

        async with httpx.AsyncClient() as client:
            result = await _provider(source, client).probe()

        assert result.error is None
        assert result.lines == (
            ProgressLine(
                label="Session",
                used=42,
                limit=100,
                resets_at="2026-01-01T15:00:00.000Z",
                period_duration_ms=5 * 60 * 60 * 1000,
            ),
        )
        assert refresh.call_count == 1
        assert usage.call_count == 2
        assert usage.calls[1].request.headers["authorization"] == "Bearer new-access"

        saved = json.loads(creds_path.read_text())
        assert saved["claudeAiOauth"]["accessToken"] == "new-access"
        assert saved["claudeAiOauth"]["refreshToken"] == "new-refresh"
        assert saved["claudeAiOauth"]["expiresAt"] == int(
            (NOW + timedelta(hours=8)).timestamp() * 1000
        )
        # fields the refresh does not own are preserved
        assert saved["otherTool"] == {"keep": True}
        assert saved["claudeAiOauth"]["subscriptionType"] == "max"

    @pytest.mark.asyncio
    @respx.mock
    async def test_reactive_refresh_invalid_grant(self, creds_path) -> "None":
        source = _write_credentials(creds_path)
        respx.get(USAGE_URL).mock(return_value=httpx.Response(401))
        respx.post(REFRESH_URL).mock(
            return_value=httpx.Response(400, json={"error": "invalid_grant"})
        )

        async with httpx.AsyncClient() as client:
            result = await _provider(source, client).probe()

        assert result.lines == ()
        assert result.error is not None
        assert "log in again" in result.error
        assert "`claude`" in result.error

    @pytest.mark.asyncio
    @respx.mock
    async def test_second_401_is_terminal(self, creds_path) -> "None":
        source = _write_credentials(creds_path)
        usage = respx.get(USAGE_URL).mock(return_value=httpx.Response(401))
        refresh = respx.post(REFRESH_URL).mock(
            return_value=httpx.Response(200, json={"access_token": "new-access"})
        )

        async with httpx.AsyncClient() as client:
            result = await _provider(source, client).probe()

        assert result.error == "Token expired. Run `claude` to log in again."
        assert refresh.call_count == 1
        assert usage.call_count == 2

    @pytest.mark.asyncio
    @respx.mock
    async def test_proactive_refresh_near_expiry(self, creds_path) -> "None":
        source = _write_credentials(
            creds_path,
            expiresAt=int((NOW + timedelta(minutes=2)).timestamp() * 1000),
        )
        refresh = respx.post(REFRESH_URL).mock(
            return_value=httpx.Response(
                200, json={"access_token": "new-access", "expires_in": 3600}
            )
        )
        usage = respx.get(USAGE_URL).mock(
            return_value=httpx.Response(200, json={"seven_day": {"utilization": 10}})
        )
        _mock_profile()

        async with httpx.AsyncClient() as client:
            result = await _provider(source, client).probe()

        assert result.ok
        assert refresh.call_count == 1
        assert usage.calls.last.request.headers["authorization"] == "Bearer new-access"
        request_body = json.loads(refresh.calls.last.request.content)
        assert request_body["grant_type"] == "refresh_token"
        assert request_body["refresh_token"] == "old-refresh"
        assert "scope" in request_body
        # the refresh token was not rotated, so the stored one stays
        saved = json.loads(creds_path.read_text())
        assert saved["claudeAiOauth"]["refreshToken"] == "old-refresh"

    @pytest.mark.asyncio
    @respx.mock
    async def test_failed_proactive_refresh_falls_back_to_current_token(
        self, creds_path
    ) -> "None":
        source = _write_credentials(
            creds_path,
            expiresAt=int((NOW + timedelta(minutes=2)).timestamp() * 1000),
        )
        respx.post(REFRESH_URL).mock(return_value=httpx.Response(500))
        usage = respx.get(USAGE_URL).mock(
            return_value=httpx.Response(200, json={"five_hour": {"utilization": 5}})
        )
        _mock_profile()

        async with httpx.AsyncClient() as client:
            result = await _provider(source, client).probe()

        assert result.ok
        assert usage.calls.last.request.headers["authorization"] == "Bearer old-access"

    @pytest.mark.asyncio
    @respx.mock
    async def test_sends_beta_header(self, creds_path) -> "None":
        source = _write_credentials(creds_path)
        usage = respx.get(USAGE_URL).mock(return_value=httpx.Response(200, json={}))
        _mock_profile()

        async with httpx.AsyncClient() as client:
            await _provider(source, client).probe()

        headers = usage.calls.last.request.headers
        assert headers["anthropic-beta"] == "oauth-2025-04-20"
        assert headers["authorization"] == "Bearer old-access"

    @pytest.mark.asyncio
    async def test_missing_credentials(self, tmp_path) -> "None":
        source = FileCredentialSource(tmp_path / "missing.json")

        async with httpx.AsyncClient() as client:
            result = await _provider(source, client).probe()

        assert result.error == "Not logged in. Run `claude` to authenticate."
        assert result.lines == ()

    @pytest.mark.asyncio
    @respx.mock
    async def test_server_error(self, creds_path) -> "None":
        source = _write_credentials(creds_path)
        respx.get(USAGE_URL).mock(return_value=httpx.Response(500))

        async with httpx.AsyncClient() as client:
            result = await _provider(source, client).probe()

        assert result.error == "Usage request failed (HTTP 500)."

    @pytest.mark.asyncio
    @respx.mock
    async def test_invalid_json(self, creds_path) -> "None":
        source = _write_credentials(creds_path)
        respx.get(USAGE_URL).mock(return_value=httpx.Response(200, text="<html>"))

        async with httpx.AsyncClient() as client:
            result = await _provider(source, client).probe()

        assert result.error == "Usage response invalid."

    @pytest.mark.asyncio
    @respx.mock
    async def test_network_error(self, creds_path) -> "None":
        source = _write_credentials(creds_path)
        respx.get(USAGE_URL).mock(side_effect=httpx.ConnectError("refused"))

        async with httpx.AsyncClient() as client:
            result = await _provider(source, client).probe()

        assert result.error == "Usage request failed. Check your connection."

    @pytest.mark.asyncio
    @respx.mock
    async def test_empty_usage_is_no_data_badge(self, creds_path) -> "None":
        source = _write_credentials(creds_path)
        respx.get(USAGE_URL).mock(return_value=httpx.Response(200, json={}))
        _mock_profile()

        async with httpx.AsyncClient() as client:
            result = await _provider(source, client).probe()

        assert result.ok
        assert len(result.lines) == 1
        assert isinstance(result.lines[0], BadgeLine)
        assert result.lines[0].text == "No usage data"


class TestClaudePlan:
    @pytest.mark.asyncio
    @respx.mock
    async def test_plan_from_organization_type(self, creds_path) -> "None":
        source = _write_credentials(creds_path)
        respx.get(USAGE_URL).mock(
            return_value=httpx.Response(200, json={"five_hour": {"utilization": 1}})
        )
        _mock_profile(200, {"organization": {"organization_type": "claude_max"}})

        async with httpx.AsyncClient() as client:
            result = await _provider(source, client).probe()

        assert result.plan == "Max"

    @pytest.mark.asyncio
    @respx.mock
    async def test_plan_from_account_flags(self, creds_path) -> "None":
        source = _write_credentials(creds_path, subscriptionType=None)
        respx.get(USAGE_URL).mock(
            return_value=httpx.Response(200, json={"five_hour": {"utilization": 1}})
        )
        _mock_profile(200, {"account": {"has_claude_pro": True}})

        async with httpx.AsyncClient() as client:
            result = await _provider(source, client).probe()

        assert result.plan == "Pro"

    @pytest.mark.asyncio
    @respx.mock
    async def test_plan_falls_back_to_subscription_type(self, creds_path) -> "None":
        source = _write_credentials(creds_path, subscriptionType="team")
        respx.get(USAGE_URL).mock(
            return_value=httpx.Response(200, json={"five_hour": {"utilization": 1}})
        )
        _mock_profile(500)

        async with httpx.AsyncClient() as client:
            result = await _provider(source, client).probe()

        assert result.plan == "Team"

    @pytest.mark.asyncio
    @respx.mock
    async def test_malformed_profile_keeps_usage(self, creds_path) -> "None":
        source = _write_credentials(creds_path)
        respx.get(USAGE_URL).mock(
            return_value=httpx.Response(200, json={"five_hour": {"utilization": 42}})
        )
        _mock_profile(200, {"organization": "acme", "account": ["pro"]})

        async with httpx.AsyncClient() as client:
            result = await _provider(source, client).probe()

        assert result.ok
        assert [(line.label, line.used) for line in result.progress_lines()] == [
            ("Session", 42)
        ]
        # falls back to the subscription type cached with the credentials
        assert result.plan == "Max"


class TestClaudeNormalize:
    def test_all_windows(self) -> "None":
        data = {
            "five_hour": {"utilization": 12.5, "resets_at": "2026-01-01T15:00:00Z"},
            "seven_day": {"utilization": 40, "resets_at": "2026-01-05T00:00:00Z"},
            "seven_day_sonnet": {"utilization": 3},
            "seven_day_opus": None,
        }

        lines = normalize_usage(data, httpx.Headers(), NOW)

        assert [line.label for line in lines] == ["Session", "Weekly", "Sonnet"]
        assert lines[0].used == 12.5
        assert lines[1].resets_at == "2026-01-05T00:00:00.000Z"
        assert lines[2].resets_at is None

    def test_extra_usage_with_limit(self) -> "None":
        data = {
            "extra_usage": {
                "is_enabled": True,
                "used_credits": 1250,
                "monthly_limit": 5000,
            }
        }

        assert normalize_usage(data, httpx.Headers(), NOW) == [
            ProgressLine(label="Extra usage", used=12.5, limit=50, format=DOLLARS)
        ]

    def test_extra_usage_without_limit(self) -> "None":
        data = {"extra_usage": {"is_enabled": True, "used_credits": 199}}

        assert normalize_usage(data, httpx.Headers(), NOW) == [
            TextLine(label="Extra usage", value="$1.99")
        ]

    def test_disabled_extra_usage_is_skipped(self) -> "None":
        data = {"extra_usage": {"is_enabled": False, "used_credits": 199}}

        assert normalize_usage(data, httpx.Headers(), NOW) == []

    def test_account_balance(self) -> "None":
        assert normalize_usage({"account_balance": 2500}, httpx.Headers(), NOW) == [
            TextLine(label="Account balance", value="$25.00")
        ]

    def test_non_object_payload(self) -> "None":
        assert normalize_usage([1, 2], httpx.Headers(), NOW) == []
