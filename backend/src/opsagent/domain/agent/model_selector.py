"""Model routing.

An ordered list of rules picks vendor, model, temperature and token budget
for a chat turn. The first matching rule wins. Pure: no I/O, no state.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass

from opsagent.domain.agent.types import ModelSelection
from opsagent.infrastructure.ai.types import ProviderTag

# Agents that read drawings, photos and scanned documents
VISION_AGENTS = frozenset({"estimation", "empire", "shopfloor"})

# Agents that reason over money, contracts or multi-step plans
COMPLEX_AGENTS = frozenset({"accounting", "legal", "estimation", "empire", "commander", "data"})

REPORT_PATTERN = re.compile(
    r"\b(report|briefing|summary|summari[sz]e|overview|daily digest|weekly|monthly|recap)\b",
    re.IGNORECASE,
)
ANALYSIS_PATTERN = re.compile(
    r"\b(analy[sz]e|analysis|strategy|strategic|forecast|compare|comparison|"
    r"projection|trend|root cause|optimi[sz]e|plan)\b",
    re.IGNORECASE,
)

LONG_HISTORY_THRESHOLD = 12


@dataclass(frozen=True)
class SelectionInput:
    agent: str
    message: str
    has_attachments: bool
    history_length: int


@dataclass(frozen=True)
class Rule:
    name: str
    predicate: Callable[[SelectionInput], bool]
    provider: ProviderTag
    model: str
    max_tokens: int
    temperature: float


RULES: tuple[Rule, ...] = (
    Rule(
        name="vision_with_attachments",
        predicate=lambda s: s.agent in VISION_AGENTS and s.has_attachments,
        provider=ProviderTag.GEMINI,
        model="gemini-2.5-pro",
        max_tokens=8000,
        temperature=0.2,
    ),
    Rule(
        name="report_request",
        predicate=lambda s: bool(REPORT_PATTERN.search(s.message)),
        provider=ProviderTag.GEMINI,
        model="gemini-2.5-pro",
        max_tokens=6000,
        temperature=0.3,
    ),
    Rule(
        name="complex_reasoning",
        predicate=lambda s: s.agent in COMPLEX_AGENTS or bool(ANALYSIS_PATTERN.search(s.message)),
        provider=ProviderTag.GPT,
        model="gpt-4o",
        max_tokens=4000,
        temperature=0.5,
    ),
)

DEFAULT_RULE = Rule(
    name="default",
    predicate=lambda s: True,
    provider=ProviderTag.GPT,
    model="gpt-4o-mini",
    max_tokens=2000,
    temperature=0.7,
)


def select_model(
    agent: str,
    message: str,
    has_attachments: bool = False,
    history_length: int = 0,
) -> ModelSelection:
    """Pick the model for a chat turn.

    Args:
        agent: Agent identifier (e.g. ``accounting``)
        message: The user's message text
        has_attachments: Whether images or documents came with the message
        history_length: Number of prior messages loaded for the conversation

    Returns:
        ModelSelection whose ``reason`` names the rule that matched
    """
    selection_input = SelectionInput(
        agent=agent.lower(),
        message=message,
        has_attachments=has_attachments,
        history_length=history_length,
    )
    for rule in RULES:
        if rule.predicate(selection_input):
            return ModelSelection(
                provider=rule.provider,
                model=rule.model,
                max_tokens=rule.max_tokens,
                temperature=rule.temperature,
                reason=rule.name,
            )

    max_tokens = DEFAULT_RULE.max_tokens
    reason = DEFAULT_RULE.name
    if history_length >= LONG_HISTORY_THRESHOLD:
        max_tokens = 3000
        reason = "default_long_conversation"
    return ModelSelection(
        provider=DEFAULT_RULE.provider,
        model=DEFAULT_RULE.model,
        max_tokens=max_tokens,
        temperature=DEFAULT_RULE.temperature,
        reason=reason,
    )
