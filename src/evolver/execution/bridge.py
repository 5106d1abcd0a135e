"""Scripting bridge collaborators.

The orchestrator only needs two capabilities from the bridge to the creative
application: putting the shared session back into a known state between
trials, and measuring the produced document against the workflow's reference.
Both are expressed as protocols so tests can substitute in-memory fakes.

HttpBridge is the concrete adapter. It speaks JSON over HTTP to one or more
bridge endpoints:

    POST {endpoint}/reset                      -> {"success": true}
    POST {endpoint}/tools/{tool}  {"args": {}} -> {"success": bool, "result": ..., "error": str}

Unreachable endpoints (connection errors, timeouts, 5xx) move the request on
to the next endpoint; after ``max_attempts`` full rounds the bridge gives up
with ExternalUnavailableError.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel, Field, ValidationError

from evolver.core.config import BridgeConfig
from evolver.core.errors import ExternalUnavailableError, TrialFailedError
from evolver.core.logging import get_logger
from evolver.core.models import ComparisonResult, Deviation
from evolver.execution.telemetry import TelemetryRecorder, TelemetrySessionContext

_logger = get_logger("bridge")

EXTRACT_METRICS_TOOL = "extract_layout_metrics"
COMPARE_TOOL = "compare_to_reference"


@runtime_checkable
class ResetCollaborator(Protocol):
    """Restores the shared application session to a clean state."""

    async def reset_external_state(self) -> None:
        ...


@runtime_checkable
class MetricsCollaborator(Protocol):
    """Measures the document a trial produced."""

    async def extract_metrics(self) -> dict[str, Any]:
        ...

    async def compare_to_reference(self, reference: dict[str, Any]) -> ComparisonResult:
        ...


@runtime_checkable
class ToolInvoker(Protocol):
    """Runs a single bridge tool outside any trial."""

    async def invoke(self, tool: str, args: dict[str, Any]) -> ToolResult:
        ...


class _DeviationPayload(BaseModel):
    field: str
    expected: Any = None
    actual: Any = None
    deviation: float


class _ComparisonPayload(BaseModel):
    score: float = Field(ge=0.0, le=100.0)
    match: bool = False
    deviations: list[_DeviationPayload] = Field(default_factory=list)


def parse_comparison(data: Any) -> ComparisonResult:
    """Validate a raw comparison payload from the bridge.

    Raises:
        TrialFailedError: If the payload does not describe a comparison.
    """
    try:
        payload = _ComparisonPayload.model_validate(data)
    except ValidationError as e:
        raise TrialFailedError(f"Malformed comparison payload: {e}") from e
    return ComparisonResult(
        score=payload.score,
        match=payload.match,
        deviations=tuple(
            Deviation(
                field=d.field,
                expected=d.expected,
                actual=d.actual,
                deviation=d.deviation,
            )
            for d in payload.deviations
        ),
    )


@dataclass(frozen=True)
class ToolResult:
    success: bool
    result: Any = None
    error: str | None = None


class HttpBridge:
    """HTTP client for the scripting bridge, with failover across endpoints.

    Attributes:
        endpoints: Base URLs, tried in order on every attempt.
        timeout: Per-request timeout in seconds.
        max_attempts: Full rounds over the endpoints before giving up.
    """

    def __init__(
        self,
        endpoints: list[str],
        timeout: float = 30.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
        tolerance: float = 0.05,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the bridge client.

        Args:
            endpoints: Alternate base URLs for the same bridge.
            timeout: Request timeout in seconds.
            max_attempts: Rounds over all endpoints before ExternalUnavailableError.
            retry_delay: Pause between rounds, in seconds.
            tolerance: Relative tolerance passed to reference comparisons.
            transport: Optional httpx transport (tests use httpx.MockTransport).
        """
        if not endpoints:
            raise ValueError("HttpBridge needs at least one endpoint")
        self.endpoints = [e.rstrip("/") for e in endpoints]
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.tolerance = tolerance
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(cls, config: BridgeConfig) -> HttpBridge:
        return cls(
            endpoints=config.endpoints,
            timeout=config.timeout_seconds,
            max_attempts=config.max_attempts,
            retry_delay=config.retry_delay_seconds,
            tolerance=config.comparison_tolerance,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        """POST to the first endpoint that answers, retrying whole rounds.

        Raises:
            ExternalUnavailableError: When no endpoint answered in any round.
            TrialFailedError: When an endpoint rejects the request (4xx) or
                answers with something other than JSON.
        """
        client = await self._get_client()
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            for endpoint in self.endpoints:
                url = f"{endpoint}{path}"
                try:
                    response = await client.post(url, json=payload)
                except httpx.TimeoutException as e:
                    last_error = f"timeout: {e}"
                    _logger.debug("bridge_timeout", url=url, attempt=attempt)
                    continue
                except httpx.TransportError as e:
                    last_error = f"connection error: {e}"
                    _logger.debug("bridge_unreachable", url=url, attempt=attempt)
                    continue

                if response.status_code >= 500:
                    last_error = f"HTTP {response.status_code}"
                    _logger.debug(
                        "bridge_server_error",
                        url=url,
                        status=response.status_code,
                        attempt=attempt,
                    )
                    continue
                if response.status_code >= 400:
                    raise TrialFailedError(
                        f"Bridge rejected {path}: HTTP {response.status_code} {response.text}"
                    )
                try:
                    return response.json()
                except ValueError as e:
                    raise TrialFailedError(f"Bridge returned non-JSON for {path}") from e

            if attempt < self.max_attempts and self.retry_delay > 0:
                await asyncio.sleep(self.retry_delay)

        _logger.warning(
            "bridge_unavailable",
            path=path,
            attempts=self.max_attempts,
            last_error=last_error,
        )
        raise ExternalUnavailableError(
            f"Bridge unavailable for {path} after {self.max_attempts} attempts: {last_error}",
            targets=list(self.endpoints),
            attempts=self.max_attempts,
        )

    async def invoke(self, tool: str, args: dict[str, Any]) -> ToolResult:
        """Run one tool through the bridge without recording telemetry."""
        data = await self._post(f"/tools/{tool}", {"args": args})
        if not isinstance(data, dict):
            raise TrialFailedError(f"Bridge answered {tool} with {type(data).__name__}")
        return ToolResult(
            success=bool(data.get("success", False)),
            result=data.get("result"),
            error=data.get("error"),
        )

    async def reset_external_state(self) -> None:
        data = await self._post("/reset", {})
        if isinstance(data, dict) and data.get("success") is False:
            raise TrialFailedError(f"Bridge reset failed: {data.get('error', 'unknown error')}")
        _logger.debug("external_state_reset")

    async def extract_metrics(self) -> dict[str, Any]:
        outcome = await self.invoke(EXTRACT_METRICS_TOOL, {})
        if not outcome.success or not isinstance(outcome.result, dict):
            raise TrialFailedError(f"Metric extraction failed: {outcome.error or 'no metrics'}")
        return outcome.result

    async def compare_to_reference(self, reference: dict[str, Any]) -> ComparisonResult:
        outcome = await self.invoke(
            COMPARE_TOOL,
            {"reference_metrics": reference, "tolerance": self.tolerance},
        )
        if not outcome.success:
            raise TrialFailedError(f"Reference comparison failed: {outcome.error}")
        return parse_comparison(outcome.result)

    async def call_tool(
        self,
        ctx: TelemetrySessionContext,
        recorder: TelemetryRecorder,
        tool: str,
        args: dict[str, Any],
    ) -> ToolResult:
        """Run one tool through the bridge and record it in the trial's telemetry."""
        start = time.monotonic()
        try:
            outcome = await self.invoke(tool, args)
        except (ExternalUnavailableError, TrialFailedError) as e:
            recorder.capture(
                ctx,
                tool,
                args,
                duration_ms=(time.monotonic() - start) * 1000,
                success=False,
                error=str(e),
            )
            raise
        recorder.capture(
            ctx,
            tool,
            args,
            duration_ms=(time.monotonic() - start) * 1000,
            success=outcome.success,
            error=outcome.error,
        )
        return outcome

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpBridge:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        await self.close()
