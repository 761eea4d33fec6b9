"""Multi-model execution strategies, keyed by Strategy."""

from modelmesh.orchestration.strategies.base import StrategyContext, StrategyFn
from modelmesh.orchestration.strategies.consensus import run_consensus
from modelmesh.orchestration.strategies.debate import run_debate
from modelmesh.orchestration.strategies.hierarchical import run_hierarchical
from modelmesh.orchestration.strategies.mixture import run_mixture
from modelmesh.orchestration.strategies.parallel import run_parallel
from modelmesh.orchestration.strategies.sequential import run_sequential
from modelmesh.orchestration.strategies.specialist import run_specialist
from modelmesh.orchestration.types import Strategy

STRATEGIES: dict[Strategy, StrategyFn] = {
    Strategy.SEQUENTIAL: run_sequential,
    Strategy.PARALLEL: run_parallel,
    Strategy.DEBATE: run_debate,
    Strategy.CONSENSUS: run_consensus,
    Strategy.SPECIALIST: run_specialist,
    Strategy.HIERARCHICAL: run_hierarchical,
    Strategy.MIXTURE: run_mixture,
}

__all__ = [
    "STRATEGIES",
    "StrategyContext",
    "StrategyFn",
    "run_consensus",
    "run_debate",
    "run_hierarchical",
    "run_mixture",
    "run_parallel",
    "run_sequential",
    "run_specialist",
]
