"""
Pipeline Graph

Composes pipelines into a DAG with dependency edges and trigger conditions,
e.g. "deploy after ci, only for pushes to main".

Nodes run in topological order. A node runs only when every dependency
succeeded and its condition holds; otherwise it is reported skipped with the
reason. Cycles and unknown dependencies are rejected when the graph is built.
"""

import logging
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from typing import Callable, Dict, List, Optional, Tuple

from tfpipelines.schemas import PipelineResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerContext:
    """What triggered the run."""
    branch: str = ""
    event: str = ""


Condition = Callable[[TriggerContext, Dict[str, PipelineResult]], bool]
NodeRunner = Callable[[Dict[str, PipelineResult]], PipelineResult]


def on_branch(*branches: str) -> Condition:
    def condition(trigger: TriggerContext, results: Dict[str, PipelineResult]) -> bool:
        return trigger.branch in branches
    condition.__doc__ = f"branch in {list(branches)}"
    return condition


def on_event(*events: str) -> Condition:
    def condition(trigger: TriggerContext, results: Dict[str, PipelineResult]) -> bool:
        return trigger.event in events
    condition.__doc__ = f"event in {list(events)}"
    return condition


def all_of(*conditions: Condition) -> Condition:
    def condition(trigger: TriggerContext, results: Dict[str, PipelineResult]) -> bool:
        return all(c(trigger, results) for c in conditions)
    condition.__doc__ = " and ".join(c.__doc__ or c.__name__ for c in conditions)
    return condition


def always(trigger: TriggerContext, results: Dict[str, PipelineResult]) -> bool:
    """always"""
    return True


class GraphError(ValueError):
    """Invalid graph: cycle, duplicate node or unknown dependency."""


@dataclass
class PipelineNode:
    name: str
    run: NodeRunner
    depends_on: Tuple[str, ...] = ()
    condition: Condition = always


@dataclass
class NodeOutcome:
    name: str
    result: Optional[PipelineResult] = None
    skip_reason: Optional[str] = None

    @property
    def ran(self) -> bool:
        return self.result is not None


@dataclass
class GraphResult:
    outcomes: Dict[str, NodeOutcome] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        """True iff every node that ran succeeded."""
        return all(o.result.success for o in self.outcomes.values() if o.ran)

    def results(self) -> Dict[str, PipelineResult]:
        return {name: o.result for name, o in self.outcomes.items() if o.ran}


class PipelineGraph:
    """
    DAG of pipeline nodes.

    Example:
        graph = PipelineGraph()
        graph.add("ci", run_ci)
        graph.add("deploy", run_deploy, depends_on=["ci"],
                  condition=all_of(on_branch("main"), on_event("push")))
        outcome = graph.run(TriggerContext(branch="main", event="push"))
    """

    def __init__(self):
        self._nodes: Dict[str, PipelineNode] = {}
        self._order: List[str] = []

    def add(
        self,
        name: str,
        run: NodeRunner,
        depends_on: Optional[List[str]] = None,
        condition: Condition = always,
    ) -> "PipelineGraph":
        if name in self._nodes:
            raise GraphError(f"Duplicate node: {name}")
        self._nodes[name] = PipelineNode(name, run, tuple(depends_on or ()), condition)
        try:
            self._order = self._validate()
        except GraphError:
            del self._nodes[name]
            raise
        return self

    @classmethod
    def from_nodes(cls, nodes: List[PipelineNode]) -> "PipelineGraph":
        """Build a graph in one go; nodes may reference each other in any order."""
        graph = cls()
        for node in nodes:
            if node.name in graph._nodes:
                raise GraphError(f"Duplicate node: {node.name}")
            graph._nodes[node.name] = node
        graph._order = graph._validate()
        return graph

    @property
    def order(self) -> List[str]:
        return list(self._order)

    def _validate(self) -> List[str]:
        for node in self._nodes.values():
            unknown = [d for d in node.depends_on if d not in self._nodes]
            if unknown:
                raise GraphError(f"Node {node.name} depends on unknown node(s): {', '.join(unknown)}")

        sorter = TopologicalSorter({n.name: n.depends_on for n in self._nodes.values()})
        try:
            return list(sorter.static_order())
        except CycleError as e:
            raise GraphError(f"Dependency cycle: {' -> '.join(e.args[1])}")

    def run(self, trigger: TriggerContext) -> GraphResult:
        """
        Run nodes in dependency order.

        Returns:
            GraphResult with one outcome per node
        """
        graph_result = GraphResult()

        for name in self._order:
            node = self._nodes[name]
            reason = self._skip_reason(node, trigger, graph_result)
            if reason:
                logger.info("Skipping %s: %s", name, reason)
                graph_result.outcomes[name] = NodeOutcome(name, skip_reason=reason)
                continue

            logger.info("Running %s", name)
            graph_result.outcomes[name] = NodeOutcome(name, result=node.run(graph_result.results()))

        return graph_result

    @staticmethod
    def _skip_reason(node: PipelineNode, trigger: TriggerContext, graph_result: GraphResult) -> Optional[str]:
        for dependency in node.depends_on:
            outcome = graph_result.outcomes[dependency]
            if not outcome.ran:
                return f"dependency {dependency} was skipped"
            if not outcome.result.success:
                return f"dependency {dependency} {outcome.result.status.value}"
        if not node.condition(trigger, graph_result.results()):
            return f"condition not met ({node.condition.__doc__ or 'condition'})"
        return None


def standard_graph(run_ci: NodeRunner, run_deploy: NodeRunner) -> PipelineGraph:
    """ci, then deploy only for pushes to main."""
    return PipelineGraph.from_nodes([
        PipelineNode("ci", run_ci),
        PipelineNode(
            "deploy",
            run_deploy,
            depends_on=("ci",),
            condition=all_of(on_branch("main"), on_event("push")),
        ),
    ])
