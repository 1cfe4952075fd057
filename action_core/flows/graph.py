"""LangGraph construction for the action execution state machine.

Idle -> CapturingInput -> SelectingProvider -> Generating
     -> {AwaitingRefinement -> Generating | Done} -> Finalizing -> Idle

节点本身只负责推进阶段和路由，具体动作由 ConversationOrchestrator 提供。
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph

from action_core.flows.state import ActionState, Phase
from action_core.infrastructure.logging.logger import logger

if TYPE_CHECKING:
    from action_core.flows.orchestrator import ConversationOrchestrator


def _enter(state: ActionState, phase: Phase) -> None:
    state["phase"] = phase
    run = state["run"]
    logger.info("action.phase", extra={"extra": {"request_id": run.request_id, "phase": phase.value, "round": run.rounds}})


def capture_input_node(state: ActionState, orchestrator: "ConversationOrchestrator") -> ActionState:
    _enter(state, Phase.CAPTURING_INPUT)
    orchestrator.capture_input(state["run"])
    return state


def select_provider_node(state: ActionState, orchestrator: "ConversationOrchestrator") -> ActionState:
    _enter(state, Phase.SELECTING_PROVIDER)
    run = state["run"]
    run.provider = orchestrator.select_provider(run.request.provider_override)
    return state


def generate_node(state: ActionState, orchestrator: "ConversationOrchestrator") -> ActionState:
    _enter(state, Phase.GENERATING)
    orchestrator.generate(state["run"])
    return state


def deliver_node(state: ActionState, orchestrator: "ConversationOrchestrator") -> ActionState:
    run = state["run"]
    if run.request.windowed and not run.cancelled:
        _enter(state, Phase.AWAITING_REFINEMENT)
    state["refinement"] = orchestrator.deliver(run)
    return state


def refine_node(state: ActionState, orchestrator: "ConversationOrchestrator") -> ActionState:
    orchestrator.append_refinement(state["run"], state.get("refinement") or "")
    state["refinement"] = None
    return state


def finalize_node(state: ActionState, orchestrator: "ConversationOrchestrator") -> ActionState:
    _enter(state, Phase.DONE)
    _enter(state, Phase.FINALIZING)
    orchestrator.finalize(state["run"])
    state["phase"] = Phase.IDLE
    return state


def refinement_router(state: ActionState, max_rounds: int) -> str:
    run = state["run"]
    refinement = state.get("refinement")
    if run.request.windowed and refinement and refinement.strip() and not run.cancelled and run.rounds < max_rounds:
        return "refine"
    return "finalize"


def build_graph(orchestrator: "ConversationOrchestrator", max_rounds: int) -> CompiledStateGraph:
    graph = StateGraph(ActionState)
    graph.add_node("capture_input", lambda s: capture_input_node(s, orchestrator))
    graph.add_node("select_provider", lambda s: select_provider_node(s, orchestrator))
    graph.add_node("generate", lambda s: generate_node(s, orchestrator))
    graph.add_node("deliver", lambda s: deliver_node(s, orchestrator))
    graph.add_node("refine", lambda s: refine_node(s, orchestrator))
    graph.add_node("finalize", lambda s: finalize_node(s, orchestrator))
    graph.set_entry_point("capture_input")
    graph.add_edge("capture_input", "select_provider")
    graph.add_edge("select_provider", "generate")
    graph.add_edge("generate", "deliver")
    graph.add_conditional_edges(
        "deliver",
        lambda s: refinement_router(s, max_rounds),
        {"refine": "refine", "finalize": "finalize"},
    )
    graph.add_edge("refine", "generate")
    graph.add_edge("finalize", END)
    return graph.compile()


def recursion_limit_for(max_rounds: int) -> int:
    # 每轮修改经过 refine / generate / deliver 三个节点
    return 10 + 3 * max_rounds
