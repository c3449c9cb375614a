"""Secondary-model review of replies from high-risk agents.

The review fails open: if the review call errors or its verdict cannot be
parsed, the reply passes with a diagnostic flag.
"""

import json
import re
from collections.abc import Iterable

from pydantic import ValidationError as PydanticValidationError

from opsagent.domain.agent.orchestrator import ChatGateway
from opsagent.domain.agent.types import QAResult, QAVerdict
from opsagent.infrastructure.ai.types import AIRequest, ChatMessage, ProviderTag
from opsagent.observability.metrics import QA_REVIEWS
from opsagent.shared.logging import get_logger

logger = get_logger(__name__)

CONTEXT_SUMMARY_LIMIT = 2000
REPLY_LIMIT = 3000

FLAG_PARSE_ERROR = "qa_parse_error"
FLAG_REVIEW_ERROR = "qa_review_error"

QA_SYSTEM_PROMPT = """You are a QA reviewer for an operations assistant used by a business.
Check the assistant reply against the supplied context. Flag:
- numbers, amounts, dates or names that do not appear in the context (hallucinations)
- financial, legal or contractual statements made with unwarranted certainty
- claims that an action was performed when no tool call was made
- instructions that could cause financial loss or safety issues if wrong

Answer with ONLY a JSON object, no prose:
{"pass": true|false, "flags": ["short description", ...], "severity": "none"|"warning"|"critical", "sanitized_reply": string|null}

Use "critical" only when the reply must not reach the user as written, and then
provide a corrected "sanitized_reply" that removes or qualifies the problem."""

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "…"


def parse_verdict(content: str) -> QAVerdict:
    """Parse the reviewer's answer, tolerating code fences around the object.

    Raises:
        ValueError: No JSON object matching the verdict structure
    """
    match = _JSON_OBJECT.search(content)
    if match is None:
        raise ValueError("no JSON object in review answer")
    try:
        return QAVerdict.model_validate_json(match.group(0))
    except PydanticValidationError as e:
        raise ValueError(str(e)) from e


class QAReviewer:
    """Runs the review only for allow-listed agents and replies long enough to matter."""

    def __init__(
        self,
        gateway: ChatGateway,
        high_risk_agents: Iterable[str],
        min_reply_chars: int = 80,
        provider: ProviderTag = ProviderTag.GPT,
        model: str = "gpt-4o-mini",
    ) -> None:
        self.gateway = gateway
        self.high_risk_agents = frozenset(agent.lower() for agent in high_risk_agents)
        self.min_reply_chars = min_reply_chars
        self.provider = provider
        self.model = model

    def should_review(self, agent: str, reply: str) -> bool:
        return agent.lower() in self.high_risk_agents and len(reply) >= self.min_reply_chars

    async def review(
        self,
        agent: str,
        reply: str,
        *,
        context_summary: str = "",
        had_tool_calls: bool = False,
    ) -> QAResult:
        """Review ``reply`` and return the verdict.

        Args:
            agent: Agent that produced the reply
            reply: Candidate reply text
            context_summary: Data the agent was given, as text
            had_tool_calls: Whether the agent called tools this turn

        Returns:
            QAResult; ``skipped`` when the cheap filters ruled the review out
        """
        if not self.should_review(agent, reply):
            return QAResult.skip()

        payload = {
            "agent": agent,
            "had_tool_calls": had_tool_calls,
            "context_summary": _truncate(context_summary, CONTEXT_SUMMARY_LIMIT),
            "reply": _truncate(reply, REPLY_LIMIT),
        }
        request = AIRequest(
            provider=self.provider,
            model=self.model,
            messages=[
                ChatMessage(role="system", content=QA_SYSTEM_PROMPT),
                ChatMessage(role="user", content=json.dumps(payload, ensure_ascii=False)),
            ],
            temperature=0.1,
            max_tokens=1000,
            action="qa_review",
        )

        try:
            result = await self.gateway.call(request)
        except Exception as e:
            logger.warning("qa_review_failed", agent=agent, error=str(e))
            QA_REVIEWS.labels(agent=agent, outcome="error").inc()
            return QAResult.fail_open(FLAG_REVIEW_ERROR)

        try:
            verdict = parse_verdict(result.content)
        except ValueError as e:
            logger.warning("qa_verdict_unparseable", agent=agent, error=str(e))
            QA_REVIEWS.labels(agent=agent, outcome="parse_error").inc()
            return QAResult.fail_open(FLAG_PARSE_ERROR)

        qa = QAResult.from_verdict(verdict)
        QA_REVIEWS.labels(agent=agent, outcome=qa.severity).inc()
        if qa.flags or qa.severity != "none":
            logger.info(
                "qa_review_flagged",
                agent=agent,
                severity=qa.severity,
                flags=qa.flags,
                sanitized=qa.sanitized_reply is not None,
            )
        return qa
