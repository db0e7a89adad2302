"""Dependency planning."""

from .planner import EntryAction, Plan, PlanEntry, plan, topological_batches

__all__ = [
    'EntryAction',
    'Plan',
    'PlanEntry',
    'plan',
    'topological_batches',
]
