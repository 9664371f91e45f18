"""
Advisory suggestions - policy and workflow recommendations.

Suggestions are read-only context. They are attached to conversational
replies as labelled sections and never become executable on their own.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

POLICY = "policy"
WORKFLOW = "workflow"


@dataclass(frozen=True)
class Suggestion:
    """A single policy or workflow recommendation."""
    id: str
    description: str
    priority: float = 0.0  # policy priority or workflow strength
    risk_level: str = "read"
    category: str = "general"
    next_step: Optional[str] = None
    source: str = POLICY

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source: str) -> Suggestion:
        """Build from a collaborator payload, tolerating the field names it uses."""
        ident = data.get("id") or data.get("policy_id") or data.get("workflow_id") or data.get("recommendation_id")
        if not ident:
            raise ValueError("suggestion without id")

        priority = data.get("priority", data.get("strength", data.get("confidence", 0)))
        try:
            priority = float(priority)
        except (TypeError, ValueError):
            priority = 0.0

        return cls(
            id=str(ident),
            description=str(data.get("description") or data.get("message") or data.get("title") or ""),
            priority=priority,
            risk_level=str(data.get("risk_level", "read")),
            category=str(data.get("category", "general")),
            next_step=data.get("next_step") or data.get("recommended_action") or data.get("suggested_ability"),
            source=source,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "priority": self.priority,
            "risk_level": self.risk_level,
            "category": self.category,
            "next_step": self.next_step,
        }


def parse_suggestions(items: Iterable[Any], source: str) -> List[Suggestion]:
    """Parse a payload list, skipping malformed entries."""
    parsed: List[Suggestion] = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        try:
            parsed.append(Suggestion.from_dict(item, source))
        except ValueError as e:
            logger.debug(f"Skipping {source} suggestion: {e}")
    return parsed


def dedupe(suggestions: Iterable[Suggestion], seen: Optional[set] = None) -> List[Suggestion]:
    """Keep one suggestion per id (highest priority wins, first seen on ties)."""
    seen = seen if seen is not None else set()
    best: Dict[str, Suggestion] = {}
    order: List[str] = []
    for suggestion in suggestions:
        if suggestion.id in seen:
            continue
        current = best.get(suggestion.id)
        if current is None:
            best[suggestion.id] = suggestion
            order.append(suggestion.id)
        elif suggestion.priority > current.priority:
            best[suggestion.id] = suggestion
    return [best[i] for i in order]


def derive_workflow_suggestions(policy: Iterable[Suggestion], user_input: str = "") -> List[Suggestion]:
    """
    Local workflow suggestions built only from policy results.

    Used when the site does not expose a workflow endpoint. Only policies
    that name a next step qualify; matches against the user input rank first.
    A derived workflow is identified by its next step, so several policies
    pointing at the same step collapse into one suggestion when merged.
    """
    lowered = user_input.lower()
    derived = []
    for item in policy:
        if not item.next_step:
            continue
        strength = item.priority
        if item.category.lower() in lowered or item.next_step.lower() in lowered:
            strength += 1.0
        derived.append(Suggestion(
            id=item.next_step,
            description=f"Follow up on: {item.description}",
            priority=strength,
            risk_level=item.risk_level,
            category=item.category,
            next_step=item.next_step,
            source=WORKFLOW,
        ))
    derived.sort(key=lambda s: s.priority, reverse=True)
    return derived


@dataclass(frozen=True)
class Advisory:
    """Merged advisory sections ready to attach to a reply."""
    policy: tuple = ()
    workflow: tuple = ()

    @property
    def empty(self) -> bool:
        return not self.policy and not self.workflow

    def to_reply_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if self.policy:
            fields["policy_context"] = {
                "label": "Policy suggestions",
                "suggestions": [s.to_dict() for s in self.policy],
            }
        if self.workflow:
            fields["workflow_context"] = {
                "label": "Suggested workflows",
                "suggestions": [s.to_dict() for s in self.workflow],
            }
        return fields


def merge_advisories(
    conversational: bool,
    policy: Iterable[Suggestion] = (),
    workflow: Iterable[Suggestion] = (),
) -> Advisory:
    """
    Combine policy and workflow suggestions for one reply.

    Returns an empty Advisory unless the reply is conversational. A
    workflow suggestion that points at the same recommendation id as a
    policy suggestion is dropped; the policy entry is kept.
    """
    if not conversational:
        return Advisory()

    merged_policy = dedupe(policy)
    seen = {s.id for s in merged_policy}
    merged_workflow = dedupe(workflow, seen=seen)
    return Advisory(policy=tuple(merged_policy), workflow=tuple(merged_workflow))


def advisory_prompt_context(policy: Iterable[Suggestion], workflow: Iterable[Suggestion]) -> str:
    """Short text block describing advisory context for the generative prompt."""
    lines: List[str] = []
    policy = list(policy)
    workflow = list(workflow)
    if policy:
        lines.append("Site policy observations:")
        lines.extend(f"- [{s.risk_level}] {s.description}" for s in policy[:5])
    if workflow:
        lines.append("Workflows that may apply:")
        lines.extend(f"- {s.description}" + (f" (next: {s.next_step})" if s.next_step else "") for s in workflow[:5])
    return "\n".join(lines)
