"""Constructive and local-search sequencing heuristics."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from ...config import settings
from .objective import RouteEvaluation, RouteEvaluator, RoutingProblem

logger = logging.getLogger(__name__)

MAX_LOCAL_SEARCH_PASSES = 50


@dataclass(slots=True)
class SolverOutcome:
    sequence: list[int]
    evaluation: RouteEvaluation
    iterations: int
    converged: bool
    metadata: dict = field(default_factory=dict)

    @property
    def score(self) -> float:
        return self.evaluation.total_score


def solve_exact(problem: RoutingProblem, evaluator: RouteEvaluator, rng=None) -> SolverOutcome:
    """Enumerate every pickup-before-delivery ordering and keep the best."""
    if problem.order_count > settings.exact_max_orders:
        raise ValueError(
            f"Exact search supports at most {settings.exact_max_orders} orders, got {problem.order_count}."
        )
    best: Optional[RouteEvaluation] = None
    explored = 0

    def extend(prefix: list[int], visited: set[int]) -> None:
        nonlocal best, explored
        if len(prefix) == problem.size:
            explored += 1
            evaluation = evaluator.evaluate(prefix)
            if best is None or evaluation.total_score > best.total_score:
                best = evaluation
            return
        for candidate in problem.available_stops(visited):
            prefix.append(candidate)
            visited.add(candidate)
            extend(prefix, visited)
            visited.discard(candidate)
            prefix.pop()

    extend([], set())
    assert best is not None
    return SolverOutcome(
        sequence=list(best.sequence),
        evaluation=best,
        iterations=explored,
        converged=True,
        metadata={"sequences_explored": explored},
    )


def greedy_sequence(problem: RoutingProblem, cost: Callable[[Optional[int], int, float], float]) -> list[int]:
    """Build a sequence by repeatedly taking the cheapest feasible next stop.

    ``cost`` receives (previous stop, candidate, clock minutes).
    """
    visited: set[int] = set()
    sequence: list[int] = []
    previous: Optional[int] = None
    clock = 0.0
    while len(sequence) < problem.size:
        candidates = problem.available_stops(visited)
        choice = min(candidates, key=lambda candidate: (cost(previous, candidate, clock), candidate))
        clock += _effective_minutes(problem, previous, choice, clock) + problem.stops[choice].service_min
        sequence.append(choice)
        visited.add(choice)
        previous = choice
    return sequence


def _effective_minutes(problem: RoutingProblem, previous: Optional[int], candidate: int, clock: float) -> float:
    travel = problem.leg_minutes(previous, candidate) * problem.traffic[candidate].travel_multiplier
    stop = problem.stops[candidate]
    wait = 0.0
    if stop.is_pickup and stop.ready_offset_min is not None:
        wait = max(0.0, stop.ready_offset_min - (clock + travel))
    return travel + wait


def nearest_neighbor_sequence(problem: RoutingProblem) -> list[int]:
    return greedy_sequence(problem, lambda previous, candidate, clock: problem.leg_km(previous, candidate))


def time_aware_sequence(problem: RoutingProblem) -> list[int]:
    return greedy_sequence(
        problem, lambda previous, candidate, clock: _effective_minutes(problem, previous, candidate, clock)
    )


def solve_nearest_neighbor(problem: RoutingProblem, evaluator: RouteEvaluator, rng=None) -> SolverOutcome:
    sequence = nearest_neighbor_sequence(problem)
    return SolverOutcome(
        sequence=sequence,
        evaluation=evaluator.evaluate(sequence),
        iterations=problem.size,
        converged=True,
    )


def reversal_neighbors(sequence: Sequence[int]):
    n = len(sequence)
    for i in range(n - 1):
        for j in range(i + 1, n):
            yield [*sequence[:i], *reversed(sequence[i : j + 1]), *sequence[j + 1 :]]


def relocation_neighbors(sequence: Sequence[int]):
    n = len(sequence)
    for i in range(n):
        item = sequence[i]
        rest = [*sequence[:i], *sequence[i + 1 :]]
        for j in range(n):
            if j == i:
                continue
            yield [*rest[:j], item, *rest[j:]]


def local_search(
    problem: RoutingProblem,
    evaluator: RouteEvaluator,
    sequence: Sequence[int],
    max_passes: int = MAX_LOCAL_SEARCH_PASSES,
) -> tuple[RouteEvaluation, int, bool]:
    """First-improvement 2-opt and relocate descent.

    Returns the best evaluation, the number of passes and whether a local optimum was
    reached before ``max_passes``.
    """
    current = evaluator.evaluate(sequence)
    for passes in range(1, max_passes + 1):
        improved = False
        for neighbors in (reversal_neighbors, relocation_neighbors):
            for candidate in neighbors(current.sequence):
                if not problem.is_feasible(candidate):
                    continue
                evaluation = evaluator.evaluate(candidate)
                if evaluation.total_score > current.total_score + 1e-9:
                    current = evaluation
                    improved = True
                    break
            if improved:
                break
        if not improved:
            return current, passes, True
    return current, max_passes, False


def solve_enhanced_nearest(problem: RoutingProblem, evaluator: RouteEvaluator, rng=None) -> SolverOutcome:
    """Time-aware greedy construction refined by 2-opt and relocate moves."""
    start = time_aware_sequence(problem)
    initial_score = evaluator.score(start)
    best, passes, converged = local_search(problem, evaluator, start)
    return SolverOutcome(
        sequence=list(best.sequence),
        evaluation=best,
        iterations=passes,
        converged=converged,
        metadata={"initial_score": round(initial_score * 100.0, 2)},
    )
