"""Population and annealing based sequencing solvers."""

from __future__ import annotations

import logging
import math
import random

from ...config import settings
from .heuristics import SolverOutcome, nearest_neighbor_sequence, time_aware_sequence
from .objective import RouteEvaluation, RouteEvaluator, RoutingProblem

logger = logging.getLogger(__name__)


def _trivial(problem: RoutingProblem, evaluator: RouteEvaluator) -> SolverOutcome:
    sequence = time_aware_sequence(problem)
    return SolverOutcome(sequence=sequence, evaluation=evaluator.evaluate(sequence), iterations=0, converged=True)


def order_crossover(parent_a: list[int], parent_b: list[int], rng: random.Random) -> list[int]:
    """OX: keep a slice of ``parent_a`` and fill the gaps in ``parent_b`` order."""
    size = len(parent_a)
    i, j = sorted(rng.sample(range(size), 2))
    child: list[int | None] = [None] * size
    child[i : j + 1] = parent_a[i : j + 1]
    kept = set(parent_a[i : j + 1])
    fill = iter(gene for gene in parent_b if gene not in kept)
    for position in range(size):
        if child[position] is None:
            child[position] = next(fill)
    return [gene for gene in child if gene is not None]


def swap_mutation(sequence: list[int], rng: random.Random) -> list[int]:
    mutated = list(sequence)
    i, j = rng.sample(range(len(mutated)), 2)
    mutated[i], mutated[j] = mutated[j], mutated[i]
    return mutated


def _tournament(population: list[list[int]], evaluator: RouteEvaluator, rng: random.Random) -> list[int]:
    size = min(settings.ga_tournament_size, len(population))
    contenders = rng.sample(population, size)
    return max(contenders, key=evaluator.score)


def solve_genetic(problem: RoutingProblem, evaluator: RouteEvaluator, rng: random.Random) -> SolverOutcome:
    if problem.size < 3:
        return _trivial(problem, evaluator)

    population_size = settings.ga_population_size
    population = [time_aware_sequence(problem), nearest_neighbor_sequence(problem)]
    while len(population) < population_size:
        population.append(problem.random_sequence(rng))

    best: RouteEvaluation = max((evaluator.evaluate(member) for member in population), key=lambda e: e.total_score)
    stall = 0
    generations = 0
    converged = False
    for generations in range(1, settings.ga_generations + 1):
        ranked = sorted(population, key=evaluator.score, reverse=True)
        offspring = [list(member) for member in ranked[: settings.ga_elite_count]]
        while len(offspring) < population_size:
            parent_a = _tournament(population, evaluator, rng)
            parent_b = _tournament(population, evaluator, rng)
            if rng.random() < settings.ga_crossover_rate:
                child = order_crossover(parent_a, parent_b, rng)
            else:
                child = list(parent_a)
            if rng.random() < settings.ga_mutation_rate:
                child = swap_mutation(child, rng)
            offspring.append(problem.repair(child))
        population = offspring

        generation_best = max((evaluator.evaluate(member) for member in population), key=lambda e: e.total_score)
        if generation_best.total_score > best.total_score + 1e-9:
            best = generation_best
            stall = 0
        else:
            stall += 1
        if stall >= settings.ga_stall_generations:
            converged = True
            break

    logger.debug(f"Genetic search finished after {generations} generations (converged={converged})")
    return SolverOutcome(
        sequence=list(best.sequence),
        evaluation=best,
        iterations=generations,
        converged=converged,
        metadata={"population_size": population_size, "generations": generations},
    )


def _random_neighbor(sequence: tuple[int, ...], rng: random.Random) -> list[int]:
    i, j = sorted(rng.sample(range(len(sequence)), 2))
    if rng.random() < 0.5:
        return [*sequence[:i], *reversed(sequence[i : j + 1]), *sequence[j + 1 :]]
    moved = list(sequence)
    item = moved.pop(i)
    moved.insert(j, item)
    return moved


def solve_simulated_annealing(problem: RoutingProblem, evaluator: RouteEvaluator, rng: random.Random) -> SolverOutcome:
    if problem.size < 3:
        return _trivial(problem, evaluator)

    current = evaluator.evaluate(time_aware_sequence(problem))
    best = current
    temperature = settings.sa_initial_temperature
    iterations = 0
    accepted = 0
    while temperature > settings.sa_min_temperature and iterations < settings.sa_max_iterations:
        iterations += 1
        candidate = _random_neighbor(current.sequence, rng)
        if problem.is_feasible(candidate):
            evaluation = evaluator.evaluate(candidate)
            # delta in score points (0-100) so the temperature scale is readable
            delta = (evaluation.total_score - current.total_score) * 100.0
            if delta >= 0 or rng.random() < math.exp(delta / temperature):
                current = evaluation
                accepted += 1
                if current.total_score > best.total_score:
                    best = current
        temperature *= settings.sa_cooling_rate

    converged = temperature <= settings.sa_min_temperature
    return SolverOutcome(
        sequence=list(best.sequence),
        evaluation=best,
        iterations=iterations,
        converged=converged,
        metadata={"accepted_moves": accepted, "final_temperature": round(temperature, 5)},
    )
