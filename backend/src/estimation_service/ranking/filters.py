from estimation_service.contracts.candidate import Candidate
from estimation_service.contracts.ranking import Constraints, TaskInput
from estimation_service.ranking.features import estimate_cost


class FilterReasons:
    """Stable filter reason codes recorded in candidate set snapshots."""
    JSON_MODE_REQUIRED = "JSON_MODE_REQUIRED"
    COST_OVER_BUDGET = "COST_OVER_BUDGET"
    LATENCY_OVER_BUDGET = "LATENCY_OVER_BUDGET"
    PROVIDER_NOT_ALLOWED = "PROVIDER_NOT_ALLOWED"
    PROVIDER_DENIED = "PROVIDER_DENIED"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"


def filter_reason(
    candidate: Candidate,
    task: TaskInput,
    constraints: Constraints,
) -> str | None:
    """
    Check one candidate against the hard constraints.

    Args:
        candidate: Pool entry to check
        task: Task, used for the expected cost estimate
        constraints: Request constraints (absent fields are unconstrained)

    Returns:
        None if the candidate passes, otherwise the first failing reason code
    """
    if constraints.deny_providers and candidate.provider in constraints.deny_providers:
        return FilterReasons.PROVIDER_DENIED

    if constraints.allow_providers is not None and candidate.provider not in constraints.allow_providers:
        return FilterReasons.PROVIDER_NOT_ALLOWED

    if constraints.require_json_mode and not candidate.capabilities.json_mode:
        return FilterReasons.JSON_MODE_REQUIRED

    if constraints.max_cost_usd is not None and estimate_cost(candidate, task) > constraints.max_cost_usd:
        return FilterReasons.COST_OVER_BUDGET

    # Unknown latency passes; only observed averages are held to the bound
    observed_latency = candidate.dynamic_metrics.avg_latency_ms
    if (
        constraints.max_latency_ms is not None
        and observed_latency is not None
        and observed_latency > constraints.max_latency_ms
    ):
        return FilterReasons.LATENCY_OVER_BUDGET

    return None


def apply_hard_filters(
    candidates: list[Candidate],
    task: TaskInput,
    constraints: Constraints,
) -> tuple[list[Candidate], list[tuple[Candidate, str]]]:
    """Split candidates into (passed, [(dropped, reason)]). Never raises on an empty result."""
    passed: list[Candidate] = []
    dropped: list[tuple[Candidate, str]] = []
    for candidate in candidates:
        reason = filter_reason(candidate, task, constraints)
        if reason is None:
            passed.append(candidate)
        else:
            dropped.append((candidate, reason))
    return passed, dropped
