"""Improvement proposers and the payload schema they must satisfy.

A proposer turns a pattern report into exactly one documentation edit. Its
answer is untrusted: it is parsed into a tagged union keyed on ``type`` and
anything that does not fit raises ProposerMalformedError, which the loop
treats as "no improvement this generation".
"""

from __future__ import annotations

import json
import os
import re
from typing import Annotated, Any, Literal, Protocol

import anthropic
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from evolver.core.config import ProposerConfig
from evolver.core.errors import (
    ConfigurationError,
    ExternalUnavailableError,
    ProposerMalformedError,
)
from evolver.core.logging import get_logger
from evolver.core.models import ImprovementType
from evolver.improvement.docstore import TOOL_NAME_PATTERN

_logger = get_logger("proposer")

_JSON_FENCE = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


class _PayloadBase(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    tool: str = Field(pattern=TOOL_NAME_PATTERN)
    proposed: str = Field(min_length=1)
    rationale: str = Field(min_length=1)
    expected_impact: float = Field(default=0.5, ge=0.0, le=1.0)


class DescriptionPayload(_PayloadBase):
    type: Literal["description"]

    @property
    def doc_field(self) -> str:
        return "description"


class ParameterPayload(_PayloadBase):
    type: Literal["parameter"]
    field: str = Field(min_length=1, description="Parameter name, e.g. fontSize.")

    @property
    def doc_field(self) -> str:
        name = self.field.removeprefix("parameters.")
        return f"parameters.{name}"


class ExamplePayload(_PayloadBase):
    type: Literal["example"]

    @property
    def doc_field(self) -> str:
        return "examples"


class ConstraintPayload(_PayloadBase):
    type: Literal["constraint"]

    @property
    def doc_field(self) -> str:
        return "constraints"


ImprovementPayload = Annotated[
    DescriptionPayload | ParameterPayload | ExamplePayload | ConstraintPayload,
    Field(discriminator="type"),
]

_payload_adapter: TypeAdapter[ImprovementPayload] = TypeAdapter(ImprovementPayload)


def payload_type(payload: ImprovementPayload) -> ImprovementType:
    return ImprovementType(payload.type)


def _extract_json(text: str) -> Any:
    fenced = _JSON_FENCE.search(text)
    if fenced:
        candidate = fenced.group(1)
    else:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise ProposerMalformedError("Proposer response contains no JSON object")
        candidate = text[start : end + 1]
    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ProposerMalformedError(f"Proposer response is not valid JSON: {e}") from e


def parse_improvement_payload(raw: str | dict[str, Any]) -> ImprovementPayload:
    """Validate a proposer answer.

    Args:
        raw: A decoded payload, or model text containing one JSON object
            (optionally inside a ```json fence).

    Raises:
        ProposerMalformedError: If no payload can be decoded or it breaks
            the schema of its ``type``.
    """
    data = _extract_json(raw) if isinstance(raw, str) else raw
    if isinstance(data, dict) and isinstance(data.get("improvement"), dict):
        data = data["improvement"]
    try:
        return _payload_adapter.validate_python(data)
    except ValidationError as e:
        issues = [
            f"{'.'.join(str(part) for part in err['loc']) or 'payload'}: {err['msg']}"
            for err in e.errors()
        ]
        raise ProposerMalformedError(
            f"Improvement payload failed validation: {'; '.join(issues)}",
            issues=issues,
        ) from e


PROMPT_TEMPLATE = """\
You improve the documentation of automation tools used by AI agents that lay
out documents in a creative application. Agents only see this documentation,
so better wording, parameter guidance, examples or constraints change how
they call the tools.

{report}

{context}

Propose exactly ONE documentation change that addresses the most significant
pattern. Answer with a single JSON object and nothing else:

{{
  "type": "description" | "parameter" | "example" | "constraint",
  "tool": "<tool name>",
  "field": "<parameter name, only for type=parameter>",
  "proposed": "<full replacement text>",
  "rationale": "<which pattern this addresses and why it should help>",
  "expected_impact": <0.0-1.0>
}}
"""


def build_proposer_prompt(report: str, context: str = "") -> str:
    return PROMPT_TEMPLATE.format(report=report, context=context)


class Proposer(Protocol):
    """Asks an external model for one improvement."""

    async def propose(self, prompt: str) -> str | dict[str, Any]:
        ...


class AnthropicProposer:
    """Proposer backed by the Anthropic Messages API."""

    def __init__(
        self,
        model: str = "claude-sonnet-4-20250514",
        api_key_env: str = "ANTHROPIC_API_KEY",
        max_tokens: int = 4096,
        temperature: float = 0.3,
        timeout_seconds: float = 300.0,
    ) -> None:
        self.model = model
        self.api_key_env = api_key_env
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds
        self._api_key = os.environ.get(api_key_env)
        self._client: anthropic.AsyncAnthropic | None = None

    @classmethod
    def from_config(
        cls, config: ProposerConfig, timeout_seconds: float = 300.0
    ) -> AnthropicProposer:
        return cls(
            model=config.model,
            api_key_env=config.api_key_env,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            timeout_seconds=timeout_seconds,
        )

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            if not self._api_key:
                raise ConfigurationError(
                    f"API key not found in environment variable: {self.api_key_env}",
                    code="MISSING_API_KEY",
                )
            self._client = anthropic.AsyncAnthropic(
                api_key=self._api_key,
                timeout=self.timeout_seconds,
            )
        return self._client

    async def propose(self, prompt: str) -> str:
        """Send the prompt and return the model's text answer.

        Raises:
            ExternalUnavailableError: If the API cannot be reached, rate limits
                the request, or fails server side.
            ProposerMalformedError: If the answer carries no text.
        """
        client = self._get_client()
        try:
            response = await client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.RateLimitError as e:
            raise ExternalUnavailableError(f"Proposer rate limited: {e}") from e
        except anthropic.APIConnectionError as e:
            raise ExternalUnavailableError(f"Proposer unreachable: {e}") from e
        except anthropic.APIStatusError as e:
            raise ExternalUnavailableError(
                f"Proposer API error {e.status_code}: {e.message}"
            ) from e

        text = "".join(block.text for block in response.content if hasattr(block, "text"))
        if not text.strip():
            raise ProposerMalformedError("Proposer returned an empty answer")

        _logger.debug(
            "proposal_received",
            model=self.model,
            input_tokens=response.usage.input_tokens if response.usage else None,
            output_tokens=response.usage.output_tokens if response.usage else None,
        )
        return text
