"""Agent identity verification contract.

The coordinator treats identity as an external collaborator: it only asks
whether an agent id and credential belong together.
"""

from __future__ import annotations

import hmac
from collections.abc import Mapping
from typing import Protocol


class AgentVerifier(Protocol):
    def verify(self, agent_id: str, credential: str | None) -> bool: ...


class AllowAllVerifier:
    """Accept every agent. Used when no identity provider is configured."""

    def verify(self, agent_id: str, credential: str | None) -> bool:
        return True


class StaticTokenVerifier:
    """Check credentials against a fixed agent_id -> token map."""

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self._tokens = dict(tokens)

    def verify(self, agent_id: str, credential: str | None) -> bool:
        expected = self._tokens.get(agent_id)
        if expected is None or credential is None:
            return False
        return hmac.compare_digest(expected.encode("utf-8"), credential.encode("utf-8"))


def build_verifier(tokens: Mapping[str, str] | None) -> AgentVerifier:
    if tokens:
        return StaticTokenVerifier(tokens)
    return AllowAllVerifier()
