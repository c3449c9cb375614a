"""Intent classification for messages the keyword matcher is unsure about.

One cheap classification call picks up to three agents. The router is
fail-soft: without a configured vendor, on a vendor error, or on an
unusable answer it returns the caller's keyword match.
"""

import re
from typing import Literal

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from opsagent.domain.agent.catalog import AGENTS, normalize_agent
from opsagent.domain.agent.orchestrator import ChatGateway
from opsagent.infrastructure.ai.types import AIRequest, ChatMessage, FallbackSpec, ProviderTag
from opsagent.observability.metrics import AGENT_ROUTES
from opsagent.shared.exceptions import AIServiceError, ConfigurationError
from opsagent.shared.logging import get_logger

logger = get_logger(__name__)

ROUTER_DEFAULT_AGENT = "assistant"
MAX_ROUTED_AGENTS = 3

AGENT_TOPICS: dict[str, str] = {
    "sales": "Sales pipeline, leads, deals, proposals, follow-ups, CRM, closing deals, revenue, commissions",
    "commander": "Department oversight, team KPIs, escalations, department-level performance",
    "bizdev": "Business development, partnerships, market expansion, strategy, competitor analysis",
    "support": "Customer support tickets, complaints, help desk, issue resolution, SLA, satisfaction",
    "accounting": "Invoices, payments, billing, AR/AP, QuickBooks, tax, expenses, P&L, payroll, salaries",
    "collections": "Overdue invoices, payment reminders, collection calls, aging receivables",
    "legal": "Contracts, compliance, regulations, liens, disputes, litigation, permits, insurance",
    "estimation": "Estimates, quotes, bids, pricing, takeoffs, rebar barlists, tonnage, RFQs, blueprints",
    "shopfloor": "Shop floor production, cutting, bending, fabrication, machines, work orders, inventory",
    "delivery": "Deliveries, dispatch, shipping, trucks, drivers, routes, logistics, packing slips",
    "email": "Email inbox, compose, reply, forward, drafts, threads, attachments",
    "social": "Social media posts, Facebook, Instagram, LinkedIn, content scheduling, engagement",
    "eisenhower": "Priority matrix, urgent/important tasks, delegation, time management",
    "data": "Data analytics, reports, dashboards, charts, KPIs, trends, performance metrics",
    "webbuilder": "Website building, landing pages, SEO audit, UX/UI design, page speed",
    "copywriting": "Copywriting, blog posts, articles, headlines, taglines, brochures, press releases",
    "talent": "Hiring, recruitment, job postings, interviews, resumes, HR, onboarding, staffing",
    "seo": "Search engine optimization, keywords, rankings, backlinks, organic traffic, meta tags",
    "growth": "Personal development, coaching, motivation, goals, productivity, habits, mindset",
    "empire": "Multi-platform management, ERP diagnostics, cross-platform fixes",
    "assistant": "Calendar, scheduling, meetings, reminders, tasks, daily agenda, general questions",
}

ROUTER_PROMPT = """You are an intent classifier for a business ERP system. Given a user message, identify the best-matching agent(s).

Available agents:
{agents}

Rules:
1. Return 1 agent for simple requests, up to 3 for compound requests.
2. Order agents by relevance (most relevant first).
3. If the request is general conversation or unclear, use "assistant".
4. Pick the most specific agent, not a generic one.

Respond with ONLY a JSON object: {{"agents": ["agent_id"], "confidence": 0.0-1.0, "reasoning": "one sentence"}}"""

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class RouteVerdict(BaseModel):
    agents: list[str] = Field(default_factory=list)
    confidence: float | None = None
    reasoning: str = ""


class AgentRoute(BaseModel):
    """Agents chosen for a message, most relevant first."""

    agents: list[str]
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    method: Literal["llm", "keyword_fallback"]


def _agent_list() -> str:
    return "\n".join(f"- {agent}: {AGENT_TOPICS.get(agent, profile.role)}" for agent, profile in AGENTS.items())


def parse_route(content: str) -> RouteVerdict:
    """Parse the classifier's answer, tolerating code fences and prose around it.

    Raises:
        ValueError: No JSON object with the expected fields
    """
    match = _JSON_OBJECT.search(content)
    if match is None:
        raise ValueError("no JSON object in routing answer")
    try:
        return RouteVerdict.model_validate_json(match.group(0))
    except PydanticValidationError as e:
        raise ValueError(str(e)) from e


def known_agents(candidates: list[str]) -> list[str]:
    """Catalog ids among ``candidates``, deduplicated, in order, at most three."""
    agents: list[str] = []
    for candidate in candidates:
        agent = normalize_agent(candidate)
        if agent in AGENTS and agent not in agents:
            agents.append(agent)
    return agents[:MAX_ROUTED_AGENTS]


class AgentRouter:
    """Classifies a message to agents with one low-temperature model call."""

    def __init__(
        self,
        gateway: ChatGateway,
        *,
        enabled: bool = True,
        provider: ProviderTag = ProviderTag.GPT,
        model: str = "gpt-4o-mini",
        fallback: FallbackSpec | None = None,
    ) -> None:
        self.gateway = gateway
        self.enabled = enabled
        self.provider = provider
        self.model = model
        self.fallback = fallback

    async def route(
        self,
        message: str,
        *,
        keyword_match: str | None = None,
        keyword_confidence: float = 0.0,
    ) -> AgentRoute:
        """Pick agents for ``message``.

        Args:
            message: The user's message
            keyword_match: Agent the caller's keyword matcher chose, if any
            keyword_confidence: The matcher's confidence in that choice

        Returns:
            AgentRoute with ``method="llm"``, or the keyword match with
            ``method="keyword_fallback"`` when classification was not possible
        """
        if not self.enabled:
            return self._keyword_fallback(keyword_match, keyword_confidence, "no_vendor_configured")

        request = AIRequest(
            provider=self.provider,
            model=self.model,
            messages=[
                ChatMessage(role="system", content=ROUTER_PROMPT.format(agents=_agent_list())),
                ChatMessage(role="user", content=message),
            ],
            temperature=0.1,
            max_tokens=150,
            fallback=self.fallback,
            action="agent_routing",
        )
        try:
            result = await self.gateway.call(request)
        except (AIServiceError, ConfigurationError) as e:
            logger.warning("agent_routing_failed", error=str(e))
            return self._keyword_fallback(keyword_match, keyword_confidence, "vendor_error")

        try:
            verdict = parse_route(result.content)
        except ValueError as e:
            logger.warning("agent_routing_unparseable", error=str(e))
            return self._keyword_fallback(keyword_match, keyword_confidence, "parse_error")

        agents = known_agents(verdict.agents) or [ROUTER_DEFAULT_AGENT]
        confidence = 0.5 if verdict.confidence is None else min(max(verdict.confidence, 0.0), 1.0)
        AGENT_ROUTES.labels(method="llm").inc()
        logger.info("agent_routed", agents=agents, confidence=confidence, provider=result.provider.value)
        return AgentRoute(agents=agents, confidence=confidence, reasoning=verdict.reasoning, method="llm")

    @staticmethod
    def _keyword_fallback(keyword_match: str | None, keyword_confidence: float, reason: str) -> AgentRoute:
        AGENT_ROUTES.labels(method="keyword_fallback").inc()
        logger.info("agent_routing_keyword_fallback", reason=reason, keyword_match=keyword_match)
        agents = known_agents([keyword_match]) if keyword_match else []
        return AgentRoute(
            agents=agents or [ROUTER_DEFAULT_AGENT],
            confidence=min(max(keyword_confidence, 0.0), 1.0),
            method="keyword_fallback",
        )
