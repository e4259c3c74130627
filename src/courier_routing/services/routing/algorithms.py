"""Algorithm registry and selection."""

from __future__ import annotations

import logging
import random
from typing import Callable

from ...config import settings
from ...models.monitoring import OptimizationAlgorithm
from .heuristics import SolverOutcome, solve_enhanced_nearest, solve_exact, solve_nearest_neighbor
from .metaheuristics import solve_genetic, solve_simulated_annealing
from .objective import RouteEvaluator, RoutingProblem
from .solver import solve_or_tools

logger = logging.getLogger(__name__)

AUTO = "auto"

Solver = Callable[[RoutingProblem, RouteEvaluator, random.Random], SolverOutcome]


def solve_hybrid(problem: RoutingProblem, evaluator: RouteEvaluator, rng: random.Random) -> SolverOutcome:
    """Run every applicable algorithm on the problem and keep the best sequence."""
    candidates = [
        OptimizationAlgorithm.ENHANCED_NEAREST,
        OptimizationAlgorithm.SIMULATED_ANNEALING,
        OptimizationAlgorithm.GENETIC_ALGORITHM,
        OptimizationAlgorithm.OR_TOOLS,
    ]
    if problem.order_count <= settings.exact_max_orders:
        candidates.insert(0, OptimizationAlgorithm.EXACT)

    best: tuple[OptimizationAlgorithm, SolverOutcome] | None = None
    scores: dict[str, float] = {}
    iterations = 0
    for algorithm in candidates:
        outcome = SOLVERS[algorithm](problem, evaluator, rng)
        iterations += outcome.iterations
        scores[algorithm.value] = round(outcome.evaluation.optimization_score, 2)
        if best is None or outcome.score > best[1].score + 1e-9:
            best = (algorithm, outcome)
    assert best is not None
    winner, outcome = best
    return SolverOutcome(
        sequence=outcome.sequence,
        evaluation=outcome.evaluation,
        iterations=iterations,
        converged=outcome.converged,
        metadata={"winner": winner.value, "scores": scores},
    )


SOLVERS: dict[OptimizationAlgorithm, Solver] = {
    OptimizationAlgorithm.EXACT: solve_exact,
    OptimizationAlgorithm.NEAREST_NEIGHBOR: solve_nearest_neighbor,
    OptimizationAlgorithm.ENHANCED_NEAREST: solve_enhanced_nearest,
    OptimizationAlgorithm.GENETIC_ALGORITHM: solve_genetic,
    OptimizationAlgorithm.SIMULATED_ANNEALING: solve_simulated_annealing,
    OptimizationAlgorithm.OR_TOOLS: solve_or_tools,
    OptimizationAlgorithm.HYBRID_MULTI: solve_hybrid,
}


def select_algorithm(order_count: int, requested: str | OptimizationAlgorithm | None = None) -> OptimizationAlgorithm:
    """Resolve ``auto`` (or nothing) to exact search for small problems, else the default."""
    if requested is None or requested == AUTO:
        if order_count <= settings.exact_max_orders:
            return OptimizationAlgorithm.EXACT
        return OptimizationAlgorithm.parse(settings.default_algorithm)
    algorithm = OptimizationAlgorithm.parse(requested)
    if algorithm == OptimizationAlgorithm.EXACT and order_count > settings.exact_max_orders:
        raise ValueError(
            f"Exact search supports at most {settings.exact_max_orders} orders, got {order_count}."
        )
    return algorithm


def make_rng(seed: int | None = None) -> random.Random:
    return random.Random(seed if seed is not None else settings.random_seed)


def run_algorithm(
    algorithm: OptimizationAlgorithm,
    problem: RoutingProblem,
    evaluator: RouteEvaluator | None = None,
    rng: random.Random | None = None,
) -> SolverOutcome:
    evaluator = evaluator or RouteEvaluator(problem)
    rng = rng or make_rng()
    outcome = SOLVERS[algorithm](problem, evaluator, rng)
    logger.debug(
        f"{algorithm.value} sequenced {problem.size} stops: score={outcome.evaluation.optimization_score:.2f} "
        f"iterations={outcome.iterations} converged={outcome.converged}"
    )
    return outcome
