"""
BookGen V1.0 - LangGraph Phase Machine
======================================
Top-level phase progression for one session:

    START → structure → preface → unit ─┬─ units remain ─→ unit
                                        └─ all done ─────→ post_units → assembly → END

Each node delegates to the ``Orchestrator``; the graph only owns ordering.
Nodes skip work whose artifacts already exist, so a resumed session runs the
same graph from the top.
"""

from __future__ import annotations

from typing import TypedDict

from langgraph.graph import END, START, StateGraph


class PhaseState(TypedDict, total=False):
    """
    Attributes
    ----------
    unit_index : int
        Next unit (0-based) the ``unit`` node will generate.

    unit_count : int
        Units in the session's outline, fixed at creation.
    """

    unit_index: int
    unit_count: int


# ──────────────────────────────────────────────
# CONDITIONAL ROUTING
# ──────────────────────────────────────────────
def _next_unit_or_back_matter(state: PhaseState) -> str:
    if state.get("unit_index", 0) < state.get("unit_count", 0):
        return "unit"
    return "post_units"


# ──────────────────────────────────────────────
# GRAPH BUILDER
# ──────────────────────────────────────────────
def build_phase_graph(orchestrator, session):
    """
    Compile the phase graph bound to one session.

    Returns
    -------
    CompiledGraph
        Ready to invoke with ``initial_state(session)``
    """

    async def structure_node(state: PhaseState) -> dict:
        await orchestrator.run_structure(session)
        return {"unit_count": session.config.unit_count}

    async def preface_node(state: PhaseState) -> dict:
        await orchestrator.run_preface(session)
        return {}

    async def unit_node(state: PhaseState) -> dict:
        unit_index = state.get("unit_index", 0)
        await orchestrator.run_unit(session, unit_index)
        return {"unit_index": unit_index + 1}

    async def post_units_node(state: PhaseState) -> dict:
        await orchestrator.run_post_units(session)
        return {}

    async def assembly_node(state: PhaseState) -> dict:
        await orchestrator.run_assembly(session)
        return {}

    builder = StateGraph(PhaseState)

    # --- Register nodes ---
    builder.add_node("structure", structure_node)
    builder.add_node("preface", preface_node)
    builder.add_node("unit", unit_node)
    builder.add_node("post_units", post_units_node)
    builder.add_node("assembly", assembly_node)

    # --- Define edges ---
    builder.add_edge(START, "structure")
    builder.add_edge("structure", "preface")
    builder.add_conditional_edges(
        "preface", _next_unit_or_back_matter, {"unit": "unit", "post_units": "post_units"}
    )
    builder.add_conditional_edges(
        "unit", _next_unit_or_back_matter, {"unit": "unit", "post_units": "post_units"}
    )
    builder.add_edge("post_units", "assembly")
    builder.add_edge("assembly", END)

    return builder.compile()


def initial_state(session) -> PhaseState:
    return {"unit_index": 0, "unit_count": session.config.unit_count}


def recursion_limit(session) -> int:
    # structure, preface, one step per unit, post_units, assembly
    return session.config.unit_count + 10
