"""
Dependency planner.
"""

from .plan import Plan
from .order import build_plan, plan_from_config

__all__ = ["Plan", "build_plan", "plan_from_config"]
