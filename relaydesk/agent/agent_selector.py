"""
Agent Selector — pick which tenant agent answers a message.

A cheap, deterministic keyword heuristic, in the spirit of the persona
router: no model calls, same inputs always produce the same ordering.

Scoring per agent:
  - base 0.5
  - +0.2 for priority "high", -0.2 for priority "low"
  - +0.1 per description word (longer than 3 chars) found in the message
  - +0.15 per name word (longer than 3 chars) found in the message
  - enabled=False forces the score to 0 and removes the agent from selection
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

BASE_SCORE = 0.5
PRIORITY_BOOST = 0.2
DESCRIPTION_KEYWORD_BOOST = 0.1
NAME_KEYWORD_BOOST = 0.15
MIN_KEYWORD_LENGTH = 4


@dataclass
class Agent:
    """A tenant-defined agent persona (read from the tenant's ``agents`` table)."""
    name: str
    description: str = ""
    id: Optional[str] = None
    priority: Optional[str] = None  # high, medium, low
    enabled: Optional[bool] = None
    config: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Agent":
        return cls(
            id=row.get("id"),
            name=row.get("name") or "",
            description=row.get("description") or "",
            priority=row.get("priority"),
            enabled=row.get("enabled"),
            config=row.get("config") or {},
        )

    @property
    def is_enabled(self) -> bool:
        return self.enabled is not False


@dataclass
class ScoredAgent:
    agent: Agent
    score: float

    @property
    def name(self) -> str:
        return self.agent.name

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.agent.name, "score": self.score}


DEFAULT_AGENT = Agent(
    id="default",
    name="General Assistant",
    description="a helpful customer support assistant",
)


def _keyword_hits(text: str, content: str) -> int:
    return sum(
        1 for word in text.lower().split()
        if len(word) >= MIN_KEYWORD_LENGTH and word in content
    )


class AgentSelector:
    """Scores agents against message content and selects the best one."""

    def __init__(self, default_agent: Agent = DEFAULT_AGENT):
        self.default_agent = default_agent

    def score_agent(self, agent: Agent, content: str) -> float:
        lower = content.lower()
        score = BASE_SCORE
        if agent.priority == "high":
            score += PRIORITY_BOOST
        elif agent.priority == "low":
            score -= PRIORITY_BOOST
        if agent.description:
            score += DESCRIPTION_KEYWORD_BOOST * _keyword_hits(agent.description, lower)
        if agent.name:
            score += NAME_KEYWORD_BOOST * _keyword_hits(agent.name, lower)
        if not agent.is_enabled:
            return 0.0
        return round(score, 4)

    def score(self, agents: List[Agent], content: str) -> List[ScoredAgent]:
        """Score every agent; stable sort, highest first."""
        scored = [ScoredAgent(agent, self.score_agent(agent, content)) for agent in agents]
        scored.sort(key=lambda s: s.score, reverse=True)
        logger.debug(
            f"[SELECTOR] Scored {len(scored)} agents for '{content[:50]}': "
            + ", ".join(f"{s.name}={s.score}" for s in scored[:5])
        )
        return scored

    def select(self, agents: List[Agent], content: str) -> ScoredAgent:
        """
        Top enabled agent for the message.

        With no agents (or none enabled) a synthetic general assistant
        with score 1.0 is returned instead of failing.
        """
        for candidate in self.score(agents, content):
            if candidate.agent.is_enabled:
                return candidate
        if agents:
            logger.info("[SELECTOR] All agents disabled; using default agent")
        return ScoredAgent(self.default_agent, 1.0)
