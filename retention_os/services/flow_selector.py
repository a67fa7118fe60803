"""
Flow selection among candidate flows.
"""

from retention_os.errors import NoFlowAvailable
from retention_os.models.domain.retention_domain import Flow


def select_flow(candidates: list[Flow]) -> Flow:
    """
    Pick the flow to show.

    Flows with ranking_score <= 0 are never chosen. Among the rest the
    highest ranking score wins, then the most recently updated flow, then
    the highest id.

    Raises:
        NoFlowAvailable: If no active candidate remains
    """
    active = [flow for flow in candidates if flow.ranking_score > 0]
    if not active:
        raise NoFlowAvailable("No active flow matches this user")

    return max(active, key=lambda flow: (flow.ranking_score, flow.updated_at, flow.id))
