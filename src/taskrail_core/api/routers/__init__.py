"""API routers for taskrail-core."""

from . import cards, metrics, milestones, rules, tasks

__all__ = ["cards", "metrics", "milestones", "rules", "tasks"]
