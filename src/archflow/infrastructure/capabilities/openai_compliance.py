"""
Compliance reasoning capability backed by an OpenAI-compatible chat API.

The model is asked for a JSON document listing violations and a score for
one rule-set; the reply is parsed with pydantic. Transport failures are
classified for the scheduler's retry policy.
"""

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, cast

import openai
from openai import OpenAI
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from archflow.domain.exceptions import TransientError, ValidationError
from archflow.domain.interfaces import CapabilityInterface
from archflow.domain.models import Job

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"

RULE_SET_BRIEFS = {
    "fire": "fire code: egress widths, exit counts, travel distances, fire separations",
    "accessibility": "ADA accessibility: door clear widths, ramps, turning circles, accessible routes",
    "energy": "energy efficiency: glazing ratios, insulation, orientation, daylighting",
    "spatial": "IBC spatial rules: minimum room areas, ceiling heights, occupancy loads",
}


@dataclass
class OpenAIComplianceConfig:
    """Configuration for OpenAIComplianceCapability.

    This typed config ensures unknown fields are rejected at construction time.
    """

    model: str = "gpt-4o-mini"
    base_url: str = DEFAULT_BASE_URL
    api_key: str | None = None  # Falls back to ARCHFLOW_LLM_API_KEY
    timeout: float = 60.0
    temperature: float = 0.0


class Finding(BaseModel):
    rule_code: str
    severity: Literal["info", "warning", "critical"]
    description: str
    element_id: str | None = None
    recommendation: str = ""
    auto_fixable: bool = False


class RuleSetFindings(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    violations: list[Finding] = Field(default_factory=list)


class OpenAIComplianceCapability(CapabilityInterface):
    """Evaluates one rule-set per job through a chat completion."""

    config_class = OpenAIComplianceConfig

    def __init__(self, config: OpenAIComplianceConfig | None = None, **kwargs: Any):
        if config is None:
            config = OpenAIComplianceConfig(**kwargs)

        api_key = config.api_key or os.environ.get("ARCHFLOW_LLM_API_KEY")
        if not api_key:
            raise ValueError(
                "An API key is required: pass api_key or set ARCHFLOW_LLM_API_KEY"
            )
        self._config = config
        self._client = OpenAI(
            base_url=config.base_url,
            api_key=api_key,
            timeout=config.timeout,
            max_retries=0,  # The scheduler owns retries
        )

    @property
    def supports_cancel(self) -> bool:
        return False

    def cancel(self, job_id: str) -> bool:
        return False

    def invoke(self, job: Job) -> Mapping[str, Any]:
        rule_set = str(job.params.get("rule_set", ""))
        if rule_set not in RULE_SET_BRIEFS:
            raise ValidationError(
                "Unknown compliance rule-set.", detail=f"rule_set={rule_set!r}"
            )
        snapshot = job.params.get("snapshot", {})

        messages = [
            {"role": "system", "content": self._system_prompt(rule_set)},
            {
                "role": "user",
                "content": json.dumps({"design": snapshot}, sort_keys=True),
            },
        ]

        try:
            response = self._client.chat.completions.create(
                model=self._config.model,
                messages=cast(Any, messages),
                temperature=self._config.temperature,
                response_format={"type": "json_object"},
            )
        except (
            openai.APITimeoutError,
            openai.APIConnectionError,
            openai.RateLimitError,
            openai.InternalServerError,
        ) as e:
            raise TransientError(detail=f"{type(e).__name__}: {e}") from e
        except openai.APIStatusError as e:
            raise ValidationError(
                "The compliance service rejected the request.",
                detail=f"status={e.status_code}: {e.message}",
            ) from e

        content = response.choices[0].message.content or ""
        findings = self._parse(content)
        logger.debug(
            "Rule-set %s evaluated for %s: %d findings, score %.2f",
            rule_set,
            job.input_ref,
            len(findings.violations),
            findings.score,
        )
        return {
            "rule_set": rule_set,
            "score": findings.score,
            "violations": [f.model_dump() for f in findings.violations],
        }

    def _parse(self, content: str) -> RuleSetFindings:
        try:
            return RuleSetFindings.model_validate_json(content)
        except PydanticValidationError as e:
            raise ValidationError(
                "The compliance service returned an unreadable answer.",
                detail=str(e)[:500],
            ) from e

    def _system_prompt(self, rule_set: str) -> str:
        return (
            "You review architectural designs for code compliance.\n"
            f"Rule-set: {RULE_SET_BRIEFS[rule_set]}.\n"
            "Reply with a JSON object: "
            '{"score": <0..1>, "violations": [{"rule_code": str, '
            '"severity": "info"|"warning"|"critical", "description": str, '
            '"element_id": str|null, "recommendation": str, "auto_fixable": bool}]}. '
            "Reference elements by their id field."
        )
