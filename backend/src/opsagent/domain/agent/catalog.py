"""Agent profiles and the default business tool catalog."""

import json
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from opsagent.domain.agent.registry import Tool, ToolHandler, ToolRegistry
from opsagent.domain.agent.types import ToolContext
from opsagent.infrastructure.business.client import BusinessActionClient

# ============================================================================
# Tool inputs
# ============================================================================


class _StatusUpdateInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1, description="Record id")
    status: str = Field(..., min_length=1, description="New status value")


class UpdateCutPlanStatusInput(_StatusUpdateInput):
    """Change a cut plan's status (e.g. draft, queued, cutting, completed)."""


class UpdateLeadStatusInput(_StatusUpdateInput):
    """Move a lead to another pipeline stage."""


class UpdateMachineStatusInput(_StatusUpdateInput):
    """Set a machine's status (e.g. running, idle, down, maintenance)."""


class UpdateDeliveryStatusInput(_StatusUpdateInput):
    """Set a delivery's status (e.g. scheduled, in_transit, delivered)."""


class CutPlanItemUpdates(BaseModel):
    model_config = ConfigDict(extra="forbid")

    phase: str | None = None
    completed_pieces: int | None = Field(default=None, ge=0)
    notes: str | None = None
    needs_fix: bool | None = None


class UpdateCutPlanItemInput(BaseModel):
    """Update progress fields of one cut plan item."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1, description="Cut plan item id")
    updates: CutPlanItemUpdates


class CreateEventInput(BaseModel):
    """Log an activity event on a record's timeline."""

    model_config = ConfigDict(extra="forbid")

    entity_type: str = Field(..., min_length=1, description="Kind of record, e.g. lead or order")
    event_type: str = Field(..., min_length=1, description="Event kind, e.g. note or follow_up")
    description: str = Field(..., min_length=1, max_length=2000)
    entity_id: str | None = Field(default=None, description="Record id; omitted for free-standing events")


class LogFixRequestInput(BaseModel):
    """Report something broken in the platform for the ops team to fix."""

    model_config = ConfigDict(extra="forbid")

    description: str = Field(..., min_length=1, max_length=2000)
    affected_area: str | None = None
    photo_url: str | None = None


def business_action_handler(client: BusinessActionClient, action: str) -> ToolHandler:
    """Handler that forwards validated arguments to the business layer."""

    async def handler(params: BaseModel, context: ToolContext) -> str:
        result = await client.execute(
            action,
            params.model_dump(mode="json", exclude_none=True),
            auth_token=context.auth_token,
        )
        return json.dumps(result, default=str, ensure_ascii=False)

    return handler


# (name, input model, gated, label)
_BUSINESS_TOOLS: tuple[tuple[str, type[BaseModel], bool, str], ...] = (
    ("update_cut_plan_status", UpdateCutPlanStatusInput, True, "Update cut plan status"),
    ("update_lead_status", UpdateLeadStatusInput, True, "Update lead status"),
    ("update_machine_status", UpdateMachineStatusInput, True, "Update machine status"),
    ("update_delivery_status", UpdateDeliveryStatusInput, True, "Update delivery status"),
    ("update_cut_plan_item", UpdateCutPlanItemInput, True, "Update cut plan item"),
    ("create_event", CreateEventInput, False, "Log activity event"),
    ("log_fix_request", LogFixRequestInput, False, "Log fix request"),
)


def build_default_registry(client: BusinessActionClient) -> ToolRegistry:
    """Registry of the business tools backed by ``client``."""
    return ToolRegistry(
        Tool(
            name=name,
            description=(input_model.__doc__ or label).strip(),
            input_model=input_model,
            handler=business_action_handler(client, name),
            gated=gated,
            label=label,
        )
        for name, input_model, gated, label in _BUSINESS_TOOLS
    )


# ============================================================================
# Agents
# ============================================================================

_LOGGING_TOOLS = ("create_event", "log_fix_request")


@dataclass(frozen=True)
class AgentProfile:
    id: str
    name: str
    role: str
    tools: tuple[str, ...] = _LOGGING_TOOLS


AGENTS: dict[str, AgentProfile] = {
    profile.id: profile
    for profile in (
        AgentProfile("sales", "Blitz", "Sales Agent", ("update_lead_status", *_LOGGING_TOOLS)),
        AgentProfile("commander", "Commander", "Sales Department Manager", ("update_lead_status", *_LOGGING_TOOLS)),
        AgentProfile("bizdev", "Buddy", "Business Development Agent", ("update_lead_status", *_LOGGING_TOOLS)),
        AgentProfile("support", "Haven", "Customer Support Agent"),
        AgentProfile("accounting", "Penny", "Accounting Agent"),
        AgentProfile("collections", "Collections", "Collections Agent"),
        AgentProfile("legal", "Tally", "Legal Agent"),
        AgentProfile("estimation", "Gauge", "Senior Structural Estimator"),
        AgentProfile(
            "shopfloor",
            "Forge",
            "Shop Floor Commander",
            (
                "update_cut_plan_status",
                "update_cut_plan_item",
                "update_machine_status",
                *_LOGGING_TOOLS,
            ),
        ),
        AgentProfile("delivery", "Atlas", "Delivery Navigator", ("update_delivery_status", *_LOGGING_TOOLS)),
        AgentProfile("email", "Relay", "Email Agent"),
        AgentProfile("social", "Pixel", "Social Media Agent"),
        AgentProfile("eisenhower", "Eisenhower", "Prioritization Coach"),
        AgentProfile("data", "Prism", "Data & Analytics Agent"),
        AgentProfile("webbuilder", "Commet", "Web Builder Agent"),
        AgentProfile("copywriting", "Penn", "B2B Copywriting Agent"),
        AgentProfile("talent", "Scouty", "Talent Agent"),
        AgentProfile("seo", "Seomi", "SEO Specialist Agent"),
        AgentProfile("growth", "Gigi", "Growth Agent"),
        AgentProfile("empire", "Architect", "Venture Builder"),
        AgentProfile(
            "assistant",
            "Vizzy",
            "Ops Commander",
            tuple(name for name, *_ in _BUSINESS_TOOLS),
        ),
    )
}

AGENT_ALIASES = {"estimating": "estimation"}

DEFAULT_AGENT = "sales"


def normalize_agent(agent: str) -> str:
    agent = agent.strip().lower()
    return AGENT_ALIASES.get(agent, agent)


def get_agent(agent: str) -> AgentProfile:
    """Profile for ``agent``; unknown agents get the sales profile."""
    return AGENTS.get(normalize_agent(agent)) or AGENTS[DEFAULT_AGENT]


def build_system_prompt(
    profile: AgentProfile,
    *,
    user_name: str,
    user_email: str,
    context: dict[str, Any] | None = None,
) -> str:
    """Persona header, acting user and caller-supplied data context."""
    parts = [
        f"You are **{profile.name}**, the {profile.role} for the operations platform.",
        "Use the available tools when an action is needed. Actions that change records "
        "are confirmed by the user before they run; if one is cancelled, acknowledge it "
        "and do not retry it unprompted.",
        f"## Current User\nName: {user_name}\nEmail: {user_email}",
    ]
    if context:
        parts.append(
            "Current data context:\n" + json.dumps(context, indent=2, default=str, ensure_ascii=False)
        )
    return "\n\n".join(parts)
