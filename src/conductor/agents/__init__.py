from conductor.agents.base import AgentRole
from conductor.agents.executor import ExecutorRole, describe_phase
from conductor.agents.planner import PlannerRole
from conductor.agents.reviewer import ReviewerRole

__all__ = [
    "AgentRole",
    "ExecutorRole",
    "PlannerRole",
    "ReviewerRole",
    "describe_phase",
]
