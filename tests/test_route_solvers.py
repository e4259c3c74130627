import random
from datetime import datetime, timedelta, timezone

import pytest

from src.courier_routing.models.domain import GeoPoint, Order
from src.courier_routing.models.monitoring import OptimizationAlgorithm
from src.courier_routing.models.routing import OptimizationCriteria, PreparationWindow, TrafficCondition
from src.courier_routing.services.routing.algorithms import SOLVERS, run_algorithm, select_algorithm
from src.courier_routing.services.routing.heuristics import solve_exact
from src.courier_routing.services.routing.matrix import haversine_matrix
from src.courier_routing.services.routing.objective import RouteEvaluator, RoutingProblem
from src.courier_routing.services.routing.solver import solve_or_tools

NOW = datetime(2024, 5, 6, 15, 0, tzinfo=timezone.utc)
DRIVER = GeoPoint(21.50, 39.20)


def _order(oid: str, pickup: tuple[float, float], delivery: tuple[float, float], **kwargs) -> Order:
    return Order(
        id=oid,
        vendor_id=kwargs.pop("vendor_id", f"V{oid}"),
        pickup_location=GeoPoint(*pickup),
        delivery_location=GeoPoint(*delivery),
        **kwargs,
    )


def _problem(orders, windows=None, picked_up=frozenset(), criteria=None) -> RoutingProblem:
    return RoutingProblem.build(
        orders=orders,
        start=DRIVER,
        departure_time=NOW,
        matrix_builder=haversine_matrix,
        criteria=criteria or OptimizationCriteria.balanced(),
        preparation_windows=windows,
        traffic_lookup=lambda points, at: [TrafficCondition.LIGHT] * len(points),
        picked_up=picked_up,
    )


def _three_orders():
    return [
        _order("A", (21.51, 39.20), (21.52, 39.20)),
        _order("B", (21.60, 39.20), (21.61, 39.20)),
        _order("C", (21.53, 39.21), (21.54, 39.22)),
    ]


def _assert_precedence(problem: RoutingProblem, sequence):
    assert sorted(sequence) == list(range(problem.size))
    position = {stop: index for index, stop in enumerate(sequence)}
    for index, stop in enumerate(problem.stops):
        if stop.pickup_stop is not None:
            assert position[stop.pickup_stop] < position[index]


def test_problem_build_pairs_pickups_with_deliveries():
    problem = _problem(_three_orders())

    assert problem.size == 6
    assert problem.order_count == 3
    assert [stop.type.value for stop in problem.stops[:2]] == ["pickup", "delivery"]
    assert problem.stops[1].pickup_stop == 0
    assert problem.baseline_sequence() == [0, 1, 2, 3, 4, 5]


def test_picked_up_orders_only_need_delivery():
    problem = _problem(_three_orders(), picked_up=frozenset({"A"}))

    assert problem.size == 5
    assert problem.stops[0].order_id == "A"
    assert problem.stops[0].pickup_stop is None


def test_feasibility_and_repair():
    problem = _problem(_three_orders())

    assert problem.is_feasible([0, 2, 1, 3, 4, 5])
    assert not problem.is_feasible([1, 0, 2, 3, 4, 5])
    assert not problem.is_feasible([0, 1, 2, 3])
    repaired = problem.repair([1, 3, 0, 2, 5, 4])
    assert problem.is_feasible(repaired)


def test_random_sequence_is_feasible():
    problem = _problem(_three_orders())
    rng = random.Random(7)

    for _ in range(20):
        assert problem.is_feasible(problem.random_sequence(rng))


def test_evaluator_rejects_infeasible_sequence():
    evaluator = RouteEvaluator(_problem(_three_orders()))

    with pytest.raises(ValueError):
        evaluator.evaluate([1, 0, 2, 3, 4, 5])


def test_shorter_sequence_scores_higher_without_windows():
    orders = _three_orders()[:2]
    evaluator = RouteEvaluator(_problem(orders))

    direct = evaluator.evaluate([0, 1, 2, 3])
    zigzag = evaluator.evaluate([2, 0, 3, 1])

    assert direct.total_distance_km < zigzag.total_distance_km
    assert direct.optimization_score > zigzag.optimization_score
    assert 0.0 <= zigzag.optimization_score <= 100.0
    assert set(direct.component_scores()) == {"distance", "preparation", "traffic", "delivery_window"}


def test_waiting_for_preparation_is_scheduled_and_penalized():
    orders = [_order("A", (21.51, 39.20), (21.52, 39.20))]
    window = PreparationWindow(
        order_id="A",
        vendor_id="VA",
        estimated_start_time=NOW,
        estimated_completion_time=NOW + timedelta(minutes=30),
        estimated_duration_min=30,
    )
    early = RouteEvaluator(_problem(orders, windows={"A": window})).evaluate([0, 1])
    ready = RouteEvaluator(_problem(orders)).evaluate([0, 1])

    assert early.wait_min > 20
    assert early.visits[0].wait_min == early.wait_min
    assert early.preparation_score < ready.preparation_score


def test_late_delivery_lowers_window_score():
    late = _order("A", (21.51, 39.20), (21.52, 39.20), delivery_window_end=NOW + timedelta(minutes=1))
    relaxed = _order("A", (21.51, 39.20), (21.52, 39.20), delivery_window_end=NOW + timedelta(hours=2))

    late_eval = RouteEvaluator(_problem([late])).evaluate([0, 1])
    relaxed_eval = RouteEvaluator(_problem([relaxed])).evaluate([0, 1])

    assert late_eval.delivery_window_score < relaxed_eval.delivery_window_score == 1.0


@pytest.mark.parametrize("algorithm", list(OptimizationAlgorithm))
def test_every_algorithm_returns_feasible_sequence(algorithm):
    problem = _problem(_three_orders())
    outcome = run_algorithm(algorithm, problem, RouteEvaluator(problem), random.Random(42))

    _assert_precedence(problem, outcome.sequence)
    assert 0.0 <= outcome.evaluation.optimization_score <= 100.0


def test_exact_search_is_never_beaten():
    problem = _problem(_three_orders())
    evaluator = RouteEvaluator(problem)
    best = solve_exact(problem, evaluator).evaluation.total_score

    for algorithm, solver in SOLVERS.items():
        outcome = solver(problem, evaluator, random.Random(1))
        assert outcome.evaluation.total_score <= best + 1e-9, algorithm


def test_or_tools_respects_pickup_before_delivery():
    orders = [
        _order("A", (21.51, 39.20), (21.62, 39.20)),
        _order("B", (21.52, 39.21), (21.50, 39.21)),
        _order("C", (21.55, 39.19), (21.53, 39.22)),
        _order("D", (21.58, 39.20), (21.51, 39.19)),
    ]
    problem = _problem(orders)
    outcome = solve_or_tools(problem, RouteEvaluator(problem))

    _assert_precedence(problem, outcome.sequence)
    assert outcome.evaluation.total_distance_km > 0


def test_hybrid_reports_winner_and_scores():
    problem = _problem(_three_orders())
    outcome = run_algorithm(OptimizationAlgorithm.HYBRID_MULTI, problem)

    assert outcome.metadata["winner"] in outcome.metadata["scores"]
    assert outcome.metadata["scores"][outcome.metadata["winner"]] == pytest.approx(
        round(outcome.evaluation.optimization_score, 2)
    )
    assert "exact" in outcome.metadata["scores"]


def test_select_algorithm():
    assert select_algorithm(3) == OptimizationAlgorithm.EXACT
    assert select_algorithm(4, "auto") == OptimizationAlgorithm.EXACT
    assert select_algorithm(8) == OptimizationAlgorithm.ENHANCED_NEAREST
    assert select_algorithm(8, "genetic_algorithm") == OptimizationAlgorithm.GENETIC_ALGORITHM

    with pytest.raises(ValueError):
        select_algorithm(8, "exact")
    with pytest.raises(ValueError):
        select_algorithm(2, "teleport")
