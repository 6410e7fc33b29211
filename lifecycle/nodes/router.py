"""
Conditional edge functions for the renewal pipeline.

These are not nodes; each is passed to graph.add_conditional_edges() and
returns the label of the next branch.
"""
from __future__ import annotations

from lifecycle.state import RenewalState


def snapshot_router(state: RenewalState) -> str:
    """
    Returns:
      "failed"        — no restore point, stop here
      "have_material" — material was handed in (deploy hook), skip issuance
      "issue"         — ask the CA client
    """
    if state.get("error"):
        return "failed"
    if state.get("material") is not None:
        return "have_material"
    return "issue"


def issuance_router(state: RenewalState) -> str:
    """Returns: "issued" | "failed" """
    return "failed" if state.get("error") else "issued"


def swap_router(state: RenewalState) -> str:
    """Returns: "swapped" | "failed" """
    return "swapped" if state.get("swapped") and not state.get("error") else "failed"
