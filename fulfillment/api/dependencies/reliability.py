"""
FastAPI dependency for the process-wide reliability registry.

The registry lives on ``app.state.reliability``; tests swap in a fresh one via
``app.dependency_overrides[get_reliability]``.
"""
from fastapi import Request

from fulfillment.core.reliability import ReliabilityRegistry


def get_reliability(request: Request) -> ReliabilityRegistry:
    return request.app.state.reliability
