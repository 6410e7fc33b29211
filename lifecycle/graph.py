"""
LangGraph StateGraph builder for one certificate renewal attempt.

Graph topology:
  START
    → take_snapshot
    → [conditional: failed        → report_outcome]
                    have_material → swap_material        (deploy hook)
                    issue         → request_certificate
    request_certificate
    → [conditional: issued → swap_material
                    failed → report_outcome]
    swap_material
    → [conditional: swapped → restart_service
                    failed  → report_outcome]
    → restart_service
    → verify_health
    → report_outcome
    → END

Orchestrator-initiated renewals and deploy-hook deliveries run the same graph;
they differ only in whether `material` is already set on entry.
"""
from __future__ import annotations

from typing import Callable

from langgraph.graph import END, START, StateGraph

from lifecycle.nodes.deploy import restart_service, verify_health
from lifecycle.nodes.issuance import request_certificate
from lifecycle.nodes.reporter import report_outcome
from lifecycle.nodes.router import issuance_router, snapshot_router, swap_router
from lifecycle.nodes.snapshot import take_snapshot
from lifecycle.nodes.swap import swap_material
from lifecycle.state import RenewalDeps, RenewalState


def _bind(node: Callable[[RenewalState, RenewalDeps], dict], deps: RenewalDeps) -> Callable[[RenewalState], dict]:
    def run(state: RenewalState) -> dict:
        return node(state, deps)

    run.__name__ = node.__name__
    return run


def build_renewal_graph(deps: RenewalDeps):
    """
    Build and compile the renewal pipeline with *deps* bound into every node.

    Returns:
        CompiledGraph ready to invoke.
    """
    builder = StateGraph(RenewalState)

    # ── Register nodes ────────────────────────────────────────────────────
    builder.add_node("take_snapshot", _bind(take_snapshot, deps))
    builder.add_node("request_certificate", _bind(request_certificate, deps))
    builder.add_node("swap_material", _bind(swap_material, deps))
    builder.add_node("restart_service", _bind(restart_service, deps))
    builder.add_node("verify_health", _bind(verify_health, deps))
    builder.add_node("report_outcome", _bind(report_outcome, deps))

    # ── Edges ─────────────────────────────────────────────────────────────
    builder.add_edge(START, "take_snapshot")

    builder.add_conditional_edges(
        "take_snapshot",
        snapshot_router,
        {
            "failed": "report_outcome",
            "have_material": "swap_material",
            "issue": "request_certificate",
        },
    )

    builder.add_conditional_edges(
        "request_certificate",
        issuance_router,
        {
            "issued": "swap_material",
            "failed": "report_outcome",
        },
    )

    # A failed swap never touches the running service.
    builder.add_conditional_edges(
        "swap_material",
        swap_router,
        {
            "swapped": "restart_service",
            "failed": "report_outcome",
        },
    )

    builder.add_edge("restart_service", "verify_health")
    builder.add_edge("verify_health", "report_outcome")
    builder.add_edge("report_outcome", END)

    return builder.compile()
