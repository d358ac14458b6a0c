"""Knowledge base collaborator - remediation reference snippets.

A JSON file of ``{key: {title, description, code}}`` entries, matched
case-insensitively against the query in either direction. Without a file, a
small built-in library answers.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from warden_kernel.collaborators import KnowledgeBase

logger = logging.getLogger(__name__)

BUILTIN_LIBRARY: dict[str, dict[str, str]] = {
    "jwt": {
        "title": "JWT Security",
        "description": "Sign with a secret from the environment and pin the algorithm.",
        "code": (
            "import jwt from 'jsonwebtoken';\n"
            "const secret = process.env.JWT_SECRET;\n"
            "if (!secret) throw new Error('JWT_SECRET is not set');\n"
            "const token = jwt.sign({ id: 1 }, secret, { algorithm: 'HS256' });"
        ),
    },
    "zod": {
        "title": "Zod Validation",
        "description": "Validate untrusted input against a schema before use.",
        "code": "import { z } from 'zod';\nconst schema = z.object({ email: z.string().email() });",
    },
    "env": {
        "title": "Environment Variables",
        "description": "Read secrets from the environment and fail fast when missing. Never hardcode defaults.",
        "code": (
            "const secret = process.env.JWT_SECRET;\n"
            "if (!secret) throw new Error('JWT_SECRET is not set');"
        ),
    },
}

NO_MATCH = "No specific match. Read secrets from process.env and use standard ESM imports."


def format_entry(entry: dict[str, Any]) -> str:
    title = entry.get("title", "Reference")
    description = entry.get("description", "")
    code = entry.get("code", "")
    return f"[REFERENCE: {title}]\n{description}\n\nCODE:\n{code}".strip()


class JsonKnowledgeBase(KnowledgeBase):
    """Knowledge base backed by a JSON file, with a built-in fallback.

    Usage:
        kb = JsonKnowledgeBase("agent_knowledge/remediation_examples.json")
        kb.lookup("jwt secret")
    """

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path else None
        self._entries = self._load()

    def _load(self) -> dict[str, dict[str, Any]]:
        if self.path is None or not self.path.exists():
            if self.path is not None:
                logger.info(f"Knowledge file {self.path} not found, using built-in library")
            return dict(BUILTIN_LIBRARY)

        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Knowledge file {self.path} must hold a JSON object")
        logger.info(f"Loaded {len(data)} knowledge entries from {self.path}")
        return {str(k): v for k, v in data.items() if isinstance(v, dict)}

    @property
    def keys(self) -> list[str]:
        return list(self._entries)

    def lookup(self, query: str) -> str:
        normalized = query.strip().lower()
        if not normalized:
            return NO_MATCH
        for key, entry in self._entries.items():
            lowered = key.lower()
            if lowered in normalized or normalized in lowered:
                return format_entry(entry)
        return NO_MATCH
