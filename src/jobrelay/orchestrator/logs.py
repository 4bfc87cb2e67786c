"""Log sinks: read-only access to a worker's remote log stream."""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from jobrelay.core.logging import get_logger
from jobrelay.orchestrator.exceptions import LogFetchError
from jobrelay.orchestrator.types import LogLine

_logger = get_logger("orchestrator.logs")


class LogSink(Protocol):
    async def fetch(self, log_group: str, log_stream: str, *, limit: int) -> list[LogLine]:
        """Return up to ``limit`` lines from the head of the stream.

        Raises:
            LogFetchError: If the stream cannot be read (e.g. not created yet).
        """
        ...


class CloudWatchLogSink:
    """CloudWatch Logs reader using ``get_log_events`` from the stream head."""

    def __init__(
        self,
        *,
        region: str,
        timeout_seconds: float = 10.0,
        client: Any = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._client = client or boto3.client("logs", region_name=region)

    async def fetch(self, log_group: str, log_stream: str, *, limit: int) -> list[LogLine]:
        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    self._client.get_log_events,
                    logGroupName=log_group,
                    logStreamName=log_stream,
                    startFromHead=True,
                    limit=limit,
                ),
                timeout=self._timeout,
            )
        except TimeoutError as e:
            raise LogFetchError(f"Timed out reading {log_group}/{log_stream}") from e
        except (ClientError, BotoCoreError) as e:
            _logger.debug("logs.fetch_failed", log_group=log_group, log_stream=log_stream)
            raise LogFetchError(str(e)) from e

        return [
            LogLine(timestamp=e.get("timestamp"), message=e.get("message", ""))
            for e in response.get("events", [])
        ]


__all__ = ["CloudWatchLogSink", "LogSink"]
