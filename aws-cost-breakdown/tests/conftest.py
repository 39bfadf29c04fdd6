from datetime import date
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from cost_drilldown import TimeWindow


def client_error(code: str = "AccessDeniedException", operation: str = "GetCostAndUsage") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} raised in test"}}, operation)


def cost_response(groups: list, metric: str = "UnblendedCost", token: str = None) -> dict:
    """Build a GetCostAndUsage response from (time_bucket, key, amount) triples."""
    by_time = {}
    for bucket, key, amount in groups:
        by_time.setdefault(bucket, []).append({
            "Keys": [key],
            "Metrics": {metric: {"Amount": amount, "Unit": "USD"}},
        })
    resp = {
        "ResultsByTime": [
            {"TimePeriod": {"Start": bucket, "End": bucket}, "Groups": items, "Estimated": False}
            for bucket, items in by_time.items()
        ]
    }
    if token:
        resp["NextPageToken"] = token
    return resp


def dimension_response(values: list, token: str = None) -> dict:
    resp = {"DimensionValues": [{"Value": v, "Attributes": {}} for v in values]}
    if token:
        resp["NextPageToken"] = token
    return resp


def make_ce(costs: dict = None, dimensions: dict = None, metric: str = "UnblendedCost"):
    """Mock Cost Explorer client.

    costs maps (group_by, service_or_None) -> list of triples or an exception.
    dimensions maps (dimension, service) -> list of values or an exception.
    Missing dimension entries answer ValidationException.
    """
    costs = costs or {}
    dimensions = dimensions or {}

    def _service(kwargs):
        expression = kwargs.get("Filter")
        if not expression:
            return None
        return expression["Dimensions"]["Values"][0]

    def get_cost_and_usage(**kwargs):
        answer = costs.get((kwargs["GroupBy"][0]["Key"], _service(kwargs)), [])
        if isinstance(answer, Exception):
            raise answer
        return cost_response(answer, metric=metric)

    def get_dimension_values(**kwargs):
        answer = dimensions.get((kwargs["Dimension"], _service(kwargs)))
        if answer is None:
            raise client_error("ValidationException", "GetDimensionValues")
        if isinstance(answer, Exception):
            raise answer
        return dimension_response(answer)

    ce = MagicMock()
    ce.get_cost_and_usage.side_effect = get_cost_and_usage
    ce.get_cost_and_usage_with_resources.side_effect = get_cost_and_usage
    ce.get_dimension_values.side_effect = get_dimension_values
    return ce


def cost_calls(ce, group_by: str = None) -> list:
    """kwargs of every get_cost_and_usage call, optionally filtered by group key."""
    calls = [c.kwargs for c in ce.get_cost_and_usage.call_args_list]
    if group_by:
        calls = [c for c in calls if c["GroupBy"][0]["Key"] == group_by]
    return calls


@pytest.fixture
def window():
    return TimeWindow(start=date(2024, 1, 25), end=date(2024, 2, 1), today=date(2024, 1, 31))
