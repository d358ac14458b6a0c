"""LLM Collaborators - model client and auditor backed by language models.

These classes live OUTSIDE the kernel. They talk to the network and convert
responses into the kernel's structured types at the boundary.

INVARIANTS:
1. The model client only returns ModelTurn values (never executes)
2. The auditor only returns Approved | Rejected, produced by a strict parser
3. An auditor answer that does not parse is a rejection, never an approval
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import Any

from warden_kernel.collaborators import Auditor, ModelClient, ModelTurn
from warden_kernel.proposal import Approved, Rejected, Verdict
from warden_kernel.state import Message, ToolCall

logger = logging.getLogger(__name__)

LMSTUDIO_BASE_URL = "http://localhost:1234/v1"
DEEPSEEK_BASE_URL = "https://api.deepseek.com"

OPENAI_COMPATIBLE = ("lmstudio", "openai", "deepseek")


@dataclass
class LLMConfig:
    """Configuration for one LLM-backed collaborator."""

    # Model settings
    provider: str = "lmstudio"  # "lmstudio", "openai", "deepseek", "anthropic"
    model: str = "google/gemma-3-4b"
    temperature: float = 0.2
    max_tokens: int = 4096

    # API settings
    api_key_env: str = "OPENAI_API_KEY"
    base_url: str | None = None


def get_llm_client(config: LLMConfig):
    """Get appropriate LLM client based on provider.

    Returns:
        ``openai.OpenAI`` for OpenAI-compatible providers,
        ``anthropic.Anthropic`` for anthropic.
    """
    try:
        if config.provider == "lmstudio":
            from openai import OpenAI
            return OpenAI(
                api_key=os.environ.get(config.api_key_env) or "not-needed",
                base_url=config.base_url or LMSTUDIO_BASE_URL,
            )
        elif config.provider == "deepseek":
            from openai import OpenAI
            api_key = os.environ.get(config.api_key_env) or os.environ.get("DEEPSEEK_API_KEY")
            return OpenAI(api_key=api_key, base_url=config.base_url or DEEPSEEK_BASE_URL)
        elif config.provider == "openai":
            from openai import OpenAI
            api_key = os.environ.get(config.api_key_env) or os.environ.get("OPENAI_API_KEY")
            return OpenAI(api_key=api_key, base_url=config.base_url)
        elif config.provider == "anthropic":
            import anthropic
            api_key = os.environ.get(config.api_key_env) or os.environ.get("ANTHROPIC_API_KEY")
            return anthropic.Anthropic(api_key=api_key)
        else:
            raise ValueError(f"Unknown provider: {config.provider}")
    except ImportError as e:
        logger.error(f"Failed to import LLM client: {e}")
        raise


class OpenAIModelClient(ModelClient):
    """Turn function over the chat-completions tool-calling API.

    Usage:
        model = OpenAIModelClient(LLMConfig(provider="openai", model="gpt-4o-mini"))
        turn = model.complete(transcript, registry.schemas())
    """

    def __init__(self, config: LLMConfig | None = None, client: Any = None):
        self.config = config or LLMConfig()
        if self.config.provider not in OPENAI_COMPATIBLE:
            raise ValueError(
                f"Model client needs an OpenAI-compatible provider {OPENAI_COMPATIBLE}, got {self.config.provider!r}"
            )
        self._client = client
        self._call_count = 0

    @property
    def client(self):
        """Lazy-load LLM client."""
        if self._client is None:
            self._client = get_llm_client(self.config)
        return self._client

    def complete(self, transcript: list[Message], tool_schemas: list[dict[str, Any]]) -> ModelTurn:
        response = self.client.chat.completions.create(
            model=self.config.model,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            messages=[m.to_dict() for m in transcript],
            tools=tool_schemas,
            tool_choice="auto",
        )
        self._call_count += 1
        message = response.choices[0].message

        tool_calls = tuple(
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                raw_arguments=tc.function.arguments or "",
            )
            for tc in (message.tool_calls or [])
        )
        return ModelTurn(content=message.content or "", tool_calls=tool_calls)

    def get_name(self) -> str:
        return f"OpenAIModelClient({self.config.provider}/{self.config.model})"

    @property
    def call_count(self) -> int:
        return self._call_count


AUDITOR_SYSTEM_PROMPT = """You are a senior application-security reviewer.
You receive the ORIGINAL content of one file, a PROPOSED full replacement, and EVIDENCE
(the vulnerability report or the latest test/lint failure).

Approve only if ALL hold:
1. The proposed file is more secure than the original with respect to the evidence.
2. Every public export, function and behavior of the original is still present. Snippets fail.
3. No new dependencies appear that the original does not import.
4. Secrets come from the environment, are checked for presence, and have no hardcoded fallback.

Answer in exactly this format:
RESULT: APPROVED or RESULT: REJECTED
REASON: <one paragraph explaining the decision>"""

RESULT_RE = re.compile(r"^\W*RESULT\W*:\W*(APPROVED|REJECTED)\b", re.IGNORECASE | re.MULTILINE)
REASON_RE = re.compile(r"^\W*REASON\W*:\s*(.*)", re.IGNORECASE | re.MULTILINE | re.DOTALL)


def parse_verdict(text: str) -> Verdict:
    """Strict parser: exactly one RESULT line decides the verdict.

    Missing or contradictory RESULT lines produce a rejection.
    """
    results = {m.group(1).upper() for m in RESULT_RE.finditer(text or "")}
    reason_match = REASON_RE.search(text or "")
    rationale = reason_match.group(1).strip() if reason_match else (text or "").strip()

    if results == {"APPROVED"}:
        return Approved(rationale or "approved")
    if results == {"REJECTED"}:
        return Rejected(rationale or "rejected")
    if not results:
        return Rejected(f"Auditor response had no RESULT line; treated as rejection. Raw: {(text or '')[:300]}")
    return Rejected(f"Auditor response was contradictory; treated as rejection. Raw: {(text or '')[:300]}")


class LLMAuditor(Auditor):
    """Auditor implemented as a separate model call.

    Usage:
        auditor = LLMAuditor(LLMConfig(provider="anthropic", model="claude-3-5-haiku-latest",
                                       api_key_env="ANTHROPIC_API_KEY"))
        verdict = auditor.review("src/auth.ts", proposed, current, evidence)
    """

    def __init__(self, config: LLMConfig | None = None, client: Any = None):
        self.config = config or LLMConfig()
        self._client = client
        self._review_count = 0

    @property
    def client(self):
        """Lazy-load LLM client."""
        if self._client is None:
            self._client = get_llm_client(self.config)
        return self._client

    def review(self, path: str, proposed_content: str, current_content: str, evidence: str) -> Verdict:
        logger.info(f"Auditor ({self.config.provider}/{self.config.model}) reviewing {path}")
        user_message = (
            f"FILE: {path}\n\n"
            f"EVIDENCE:\n{evidence or '(none)'}\n\n"
            f"ORIGINAL CODE:\n{current_content or '(new file)'}\n\n"
            f"PROPOSED CODE:\n{proposed_content}"
        )
        text = self._call_llm(AUDITOR_SYSTEM_PROMPT, user_message)
        self._review_count += 1

        verdict = parse_verdict(text)
        logger.info(f"  Auditor verdict: {'APPROVED' if verdict.approved else 'REJECTED'}")
        return verdict

    def _call_llm(self, system_prompt: str, user_message: str) -> str:
        """Call the LLM and return response text."""
        if self.config.provider == "anthropic":
            response = self.client.messages.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": user_message}],
            )
            return "".join(block.text for block in response.content if getattr(block, "type", "text") == "text")

        response = self.client.chat.completions.create(
            model=self.config.model,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
        )
        return response.choices[0].message.content or ""

    @property
    def review_count(self) -> int:
        return self._review_count
