"""
Capability adapters: the external services jobs are dispatched to.
"""

from archflow.infrastructure.capabilities.mock import MockCapability
from archflow.infrastructure.capabilities.openai_compliance import (
    OpenAIComplianceCapability,
    OpenAIComplianceConfig,
)

__all__ = [
    "MockCapability",
    "OpenAIComplianceCapability",
    "OpenAIComplianceConfig",
]
