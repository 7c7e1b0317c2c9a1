"""Admission control for orchestration requests."""

from bulk_orchestrator.ratelimit.gate import RateDecision, RateGate, RateLimitEvent
from bulk_orchestrator.ratelimit.policy import LimiterPolicy, load_policies

__all__ = [
    "LimiterPolicy",
    "RateDecision",
    "RateGate",
    "RateLimitEvent",
    "load_policies",
]
