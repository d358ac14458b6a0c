"""Concrete collaborators for the remediation kernel.

Everything here reaches outside the process (LLM APIs, Biome, git, gh) and
sits behind the protocols in ``warden_kernel.collaborators``.
"""

from .llm import LLMAuditor, LLMConfig, OpenAIModelClient, get_llm_client, parse_verdict
from .linter import BIOME_SUPPORTED_EXTENSIONS, BiomeLinter, parse_biome_report
from .vcs import GitVersionControl, VersionControlError, remediation_branch_name
from .knowledge import BUILTIN_LIBRARY, JsonKnowledgeBase

__all__ = [
    "LLMConfig",
    "get_llm_client",
    "OpenAIModelClient",
    "LLMAuditor",
    "parse_verdict",
    "BiomeLinter",
    "BIOME_SUPPORTED_EXTENSIONS",
    "parse_biome_report",
    "GitVersionControl",
    "VersionControlError",
    "remediation_branch_name",
    "JsonKnowledgeBase",
    "BUILTIN_LIBRARY",
]
