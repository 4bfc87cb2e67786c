"""Tests for jobrelay.orchestrator.launcher and jobrelay.orchestrator.logs.

The boto3 clients are replaced with MagicMocks; no AWS calls are made.
"""

from __future__ import annotations

import time
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from jobrelay.orchestrator.config import LauncherConfig
from jobrelay.orchestrator.exceptions import LaunchFailedError, LogFetchError
from jobrelay.orchestrator.launcher import EcsWorkerLauncher
from jobrelay.orchestrator.logs import CloudWatchLogSink
from jobrelay.orchestrator.types import LaunchRequest

TASK_ARN = "arn:aws:ecs:eu-west-2:123456789012:task/jobrelay/0f1e2d3c4b5a"


def _client(response: dict | None = None) -> MagicMock:
    client = MagicMock()
    client.run_task.return_value = response or {"tasks": [{"taskArn": TASK_ARN}], "failures": []}
    return client


def _config(**overrides) -> LauncherConfig:
    fields = {
        "cluster": "jobrelay-prod",
        "subnets": ["subnet-1"],
        "security_groups": ["sg-1"],
        "api_url": "https://api.example.test",
        "secret_env": ["BROWSER_USE_API_KEY"],
    }
    fields.update(overrides)
    return LauncherConfig(**fields)


def _environment(client: MagicMock) -> dict[str, str]:
    overrides = client.run_task.call_args.kwargs["overrides"]["containerOverrides"][0]
    return {item["name"]: item["value"] for item in overrides["environment"]}


def _request(**overrides) -> LaunchRequest:
    fields = {"job_id": "job-1", "task_id": "task-1", "entity_ref": "return-9"}
    fields.update(overrides)
    return LaunchRequest(**fields)


# ─── Launch ────────────────────────────────────────────────────────────


class TestLaunch:
    @pytest.mark.asyncio
    async def test_returns_handle_with_log_location(self):
        client = _client()
        launcher = EcsWorkerLauncher(_config(), client=client)
        handle = await launcher.launch(_request())

        assert handle.execution_ref == TASK_ARN
        assert handle.log_group == "/ecs/browser-task"
        assert handle.log_stream == "ecs/browser-task/0f1e2d3c4b5a"

    @pytest.mark.asyncio
    async def test_run_task_parameters(self):
        client = _client()
        launcher = EcsWorkerLauncher(_config(assign_public_ip=False), client=client)
        await launcher.launch(_request())

        kwargs = client.run_task.call_args.kwargs
        assert kwargs["cluster"] == "jobrelay-prod"
        assert kwargs["taskDefinition"] == "browser-task"
        assert kwargs["launchType"] == "FARGATE"
        network = kwargs["networkConfiguration"]["awsvpcConfiguration"]
        assert network == {
            "subnets": ["subnet-1"],
            "securityGroups": ["sg-1"],
            "assignPublicIp": "DISABLED",
        }
        assert kwargs["overrides"]["containerOverrides"][0]["name"] == "browser-task"

    @pytest.mark.asyncio
    async def test_injects_job_identity(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("BROWSER_USE_API_KEY", "bu-secret")
        client = _client()
        launcher = EcsWorkerLauncher(
            _config(extra_environment={"PORTAL": "hmrc"}),
            redis_url="redis://cache:6379/0",
            client=client,
        )
        await launcher.launch(_request(override_saved=True))

        assert _environment(client) == {
            "JOB_ID": "job-1",
            "TASK_ID": "task-1",
            "ENTITY_REF": "return-9",
            "OVERRIDE_SAVED": "true",
            "PORTAL": "hmrc",
            "REDIS_URL": "redis://cache:6379/0",
            "JOBRELAY_API_URL": "https://api.example.test",
            "BROWSER_USE_API_KEY": "bu-secret",
        }

    @pytest.mark.asyncio
    async def test_missing_secret_is_skipped(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("BROWSER_USE_API_KEY", raising=False)
        client = _client()
        await EcsWorkerLauncher(_config(), client=client).launch(_request())
        assert "BROWSER_USE_API_KEY" not in _environment(client)

    @pytest.mark.asyncio
    async def test_sync_launch_uses_sync_task_definition(self):
        client = _client()
        launcher = EcsWorkerLauncher(_config(), client=client)
        handle = await launcher.launch_sync(
            "sync-1", org_id="org-1", jurisdiction_id="uk-hmrc", session_cookie="sess=1",
        )

        assert client.run_task.call_args.kwargs["taskDefinition"] == "tax-sync"
        env = _environment(client)
        assert env["SYNC_JOB_ID"] == "sync-1"
        assert env["ORG_ID"] == "org-1"
        assert env["JURISDICTION_ID"] == "uk-hmrc"
        assert env["SESSION_COOKIE"] == "sess=1"
        assert handle.log_group == "/ecs/tax-sync"
        assert handle.log_stream == "ecs/tax-sync/0f1e2d3c4b5a"


# ─── Launch failures ───────────────────────────────────────────────────


class TestLaunchFailures:
    @pytest.mark.asyncio
    async def test_capacity_failures_are_reported(self):
        client = _client({
            "tasks": [],
            "failures": [{"arn": "x", "reason": "RESOURCE:MEMORY"}],
        })
        launcher = EcsWorkerLauncher(_config(), client=client)
        with pytest.raises(LaunchFailedError, match="RESOURCE:MEMORY"):
            await launcher.launch(_request())

    @pytest.mark.asyncio
    async def test_empty_response(self):
        launcher = EcsWorkerLauncher(_config(), client=_client({"tasks": [], "failures": []}))
        with pytest.raises(LaunchFailedError, match="no task returned"):
            await launcher.launch(_request())

    @pytest.mark.asyncio
    async def test_client_error(self):
        client = _client()
        client.run_task.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "not authorized"}},
            "RunTask",
        )
        launcher = EcsWorkerLauncher(_config(), client=client)
        with pytest.raises(LaunchFailedError, match="refused"):
            await launcher.launch(_request())

    @pytest.mark.asyncio
    async def test_network_error(self):
        client = _client()
        client.run_task.side_effect = EndpointConnectionError(endpoint_url="https://ecs")
        with pytest.raises(LaunchFailedError):
            await EcsWorkerLauncher(_config(), client=client).launch(_request())

    @pytest.mark.asyncio
    async def test_timeout_is_bounded(self):
        client = _client()
        client.run_task.side_effect = lambda **kwargs: time.sleep(0.5)
        launcher = EcsWorkerLauncher(_config(launch_timeout_seconds=0.05), client=client)
        with pytest.raises(LaunchFailedError, match="timed out"):
            await launcher.launch(_request())


# ─── Stop ──────────────────────────────────────────────────────────────


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_calls_stop_task(self):
        client = _client()
        launcher = EcsWorkerLauncher(_config(), client=client)
        await launcher.stop(TASK_ARN, reason="x" * 400)
        kwargs = client.stop_task.call_args.kwargs
        assert kwargs["cluster"] == "jobrelay-prod"
        assert kwargs["task"] == TASK_ARN
        assert len(kwargs["reason"]) == 255

    @pytest.mark.asyncio
    async def test_stop_failure_is_swallowed(self):
        client = _client()
        client.stop_task.side_effect = ClientError(
            {"Error": {"Code": "InvalidParameterException", "Message": "task not found"}},
            "StopTask",
        )
        await EcsWorkerLauncher(_config(), client=client).stop(TASK_ARN, reason="cancel")


# ─── CloudWatch log sink ───────────────────────────────────────────────


class TestCloudWatchLogSink:
    @pytest.mark.asyncio
    async def test_fetch_reads_from_head(self):
        client = MagicMock()
        client.get_log_events.return_value = {
            "events": [
                {"timestamp": 1700000000000, "message": "Starting browser"},
                {"timestamp": 1700000001000, "message": "Logged in"},
            ],
        }
        sink = CloudWatchLogSink(region="eu-west-2", client=client)
        lines = await sink.fetch("/ecs/browser-task", "ecs/browser-task/abc", limit=50)

        assert [line.message for line in lines] == ["Starting browser", "Logged in"]
        assert lines[0].timestamp == 1700000000000
        client.get_log_events.assert_called_once_with(
            logGroupName="/ecs/browser-task",
            logStreamName="ecs/browser-task/abc",
            startFromHead=True,
            limit=50,
        )

    @pytest.mark.asyncio
    async def test_missing_stream_raises_log_fetch_error(self):
        client = MagicMock()
        client.get_log_events.side_effect = ClientError(
            {"Error": {"Code": "ResourceNotFoundException", "Message": "stream missing"}},
            "GetLogEvents",
        )
        sink = CloudWatchLogSink(region="eu-west-2", client=client)
        with pytest.raises(LogFetchError):
            await sink.fetch("/ecs/browser-task", "ecs/browser-task/abc", limit=10)

    @pytest.mark.asyncio
    async def test_timeout_raises_log_fetch_error(self):
        client = MagicMock()
        client.get_log_events.side_effect = lambda **kwargs: time.sleep(0.5)
        sink = CloudWatchLogSink(region="eu-west-2", timeout_seconds=0.05, client=client)
        with pytest.raises(LogFetchError, match="Timed out"):
            await sink.fetch("/ecs/browser-task", "ecs/browser-task/abc", limit=10)
