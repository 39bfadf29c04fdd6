"""
AWS Cost Explorer access

Thin wrappers around the Cost Explorer calls used by the cost breakdown report.
Follows NextPageToken pagination and translates botocore failures into the
report's own error types so callers can decide what is fatal.
"""

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    NoCredentialsError,
    ProfileNotFound,
    SSOTokenLoadError,
    TokenRetrievalError,
)


DEFAULT_REGION = "us-east-1"
DEFAULT_METRIC = "UnblendedCost"
DEFAULT_TIMEOUT = 30

# Cost Explorer answers an unsupported dimension/filter combination with this code
NOT_APPLICABLE_CODES = ("ValidationException",)


class CostExplorerError(Exception):
    """Base class for cost breakdown errors."""


class ConfigurationError(CostExplorerError):
    """A required capability (profile, credentials) is unavailable."""


class QueryFailed(CostExplorerError):
    """A Cost Explorer query failed. Carries the attempted parameters."""

    def __init__(self, operation: str, params: dict, cause: Optional[Exception] = None):
        self.operation = operation
        self.params = params
        self.cause = cause
        super().__init__(f"{operation} failed for {describe_query(params)}: {cause}")


class DimensionNotApplicable(CostExplorerError):
    """A dimension cannot be used to group costs for a service."""

    def __init__(self, dimension: str, service: str, cause: Optional[Exception] = None):
        self.dimension = dimension
        self.service = service
        self.cause = cause
        super().__init__(f"{dimension} is not applicable to {service}: {cause}")


def describe_query(params: dict) -> str:
    """Render query parameters as a short human-readable string."""
    parts = []
    period = params.get("TimePeriod")
    if period:
        parts.append(f"{period['Start']}..{period['End']}")
    if params.get("Metrics"):
        parts.append(",".join(params["Metrics"]))
    for group in params.get("GroupBy", []):
        parts.append(f"by {group['Key']}")
    if params.get("Dimension"):
        parts.append(f"dimension {params['Dimension']}")
    service = get_filtered_service(params.get("Filter"))
    if service:
        parts.append(f"service={service}")
    return " ".join(parts) or "(no parameters)"


def service_filter(service: str) -> dict:
    """Build a Cost Explorer filter expression for a single service."""
    return {"Dimensions": {"Key": "SERVICE", "Values": [service]}}


def get_filtered_service(expression: Optional[dict]) -> Optional[str]:
    """Extract the service name from a filter built by service_filter()."""
    if not expression:
        return None
    dimensions = expression.get("Dimensions", {})
    if dimensions.get("Key") != "SERVICE" or not dimensions.get("Values"):
        return None
    return dimensions["Values"][0]


def get_session(profile_name: Optional[str] = None) -> boto3.Session:
    """Create a boto3 session for the given profile (default chain when None)."""
    try:
        return boto3.Session(profile_name=profile_name)
    except ProfileNotFound as e:
        raise ConfigurationError(f"AWS profile not found: {profile_name}") from e


def check_credentials(session: boto3.Session) -> str:
    """Verify the session's credentials with STS and return the account ID."""
    try:
        identity = session.client("sts").get_caller_identity()
    except (NoCredentialsError, TokenRetrievalError, SSOTokenLoadError) as e:
        raise ConfigurationError(f"AWS credentials not configured or expired: {e}") from e
    except ClientError as e:
        raise ConfigurationError(f"AWS credentials rejected: {e}") from e
    except BotoCoreError as e:
        raise ConfigurationError(f"Unable to verify AWS credentials: {e}") from e
    return identity["Account"]


def get_ce_client(session: boto3.Session, region: str = DEFAULT_REGION, timeout: int = DEFAULT_TIMEOUT):
    """Create a Cost Explorer client with bounded connect/read timeouts."""
    config = Config(
        connect_timeout=timeout,
        read_timeout=timeout,
        retries={"mode": "standard"},
    )
    return session.client("ce", region_name=region, config=config)


def get_cost_and_usage(
    ce_client,
    start: date,
    end: date,
    metric: str,
    group_by: str,
    service: Optional[str] = None,
    with_resources: bool = False,
) -> list:
    """Query cost grouped by one dimension.

    Args:
        ce_client: boto3 Cost Explorer client
        start: First day of the window (inclusive)
        end: Day after the last day of the window (exclusive)
        metric: Cost metric name (e.g., 'UnblendedCost', 'AmortizedCost')
        group_by: Dimension key to group by (e.g., 'SERVICE', 'USAGE_TYPE')
        service: Restrict the query to a single service
        with_resources: Use GetCostAndUsageWithResources (needed for RESOURCE_ID)

    Returns:
        List of (time_bucket, group_key, amount) tuples, amount as Decimal,
        in the order Cost Explorer returned them.

    Raises:
        QueryFailed: On any API error or malformed response.
    """
    params = {
        "TimePeriod": {"Start": start.isoformat(), "End": end.isoformat()},
        "Granularity": "MONTHLY",
        "Metrics": [metric],
        "GroupBy": [{"Type": "DIMENSION", "Key": group_by}],
    }
    if service:
        params["Filter"] = service_filter(service)

    if with_resources:
        operation = "GetCostAndUsageWithResources"
        call = ce_client.get_cost_and_usage_with_resources
    else:
        operation = "GetCostAndUsage"
        call = ce_client.get_cost_and_usage

    triples = []
    token = None
    while True:
        request = dict(params)
        if token:
            request["NextPageToken"] = token
        try:
            resp = call(**request)
        except (ClientError, BotoCoreError) as e:
            raise QueryFailed(operation, params, e) from e

        try:
            for period in resp.get("ResultsByTime", []):
                bucket = period["TimePeriod"]["Start"]
                for group in period.get("Groups", []):
                    key = group["Keys"][0]
                    amount = Decimal(group["Metrics"][metric]["Amount"])
                    triples.append((bucket, key, amount))
        except (KeyError, IndexError, TypeError, InvalidOperation) as e:
            raise QueryFailed(operation, params, ValueError(f"malformed response: {e!r}")) from e

        token = resp.get("NextPageToken")
        if not token:
            break

    return triples


def get_dimension_values(ce_client, dimension: str, start: date, end: date, service: str) -> list:
    """List the distinct values a dimension takes for one service.

    Raises:
        DimensionNotApplicable: If Cost Explorer rejects the dimension for this service.
        QueryFailed: On any other API error or malformed response.
    """
    params = {
        "TimePeriod": {"Start": start.isoformat(), "End": end.isoformat()},
        "Dimension": dimension,
        "Filter": service_filter(service),
    }

    values = []
    token = None
    while True:
        request = dict(params)
        if token:
            request["NextPageToken"] = token
        try:
            resp = ce_client.get_dimension_values(**request)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in NOT_APPLICABLE_CODES:
                raise DimensionNotApplicable(dimension, service, e) from e
            raise QueryFailed("GetDimensionValues", params, e) from e
        except BotoCoreError as e:
            raise QueryFailed("GetDimensionValues", params, e) from e

        try:
            for item in resp.get("DimensionValues", []):
                value = item["Value"]
                if value not in values:
                    values.append(value)
        except (KeyError, TypeError) as e:
            raise QueryFailed("GetDimensionValues", params, ValueError(f"malformed response: {e!r}")) from e

        token = resp.get("NextPageToken")
        if not token:
            break

    return values
