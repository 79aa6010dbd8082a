"""Reachline — Instagram Insights Metric Registry.

Defines the account-level Graph metrics the snapshot pipeline requests and
which snapshot field each one feeds. The Graph API keeps renaming and
retiring metrics, so every request list lives here and nowhere else.
"""

from enum import Enum
from typing import Dict, List


class MetricType(str, Enum):
    """Which upstream parameter shape a metric is requested with."""

    TIME_SERIES = "time_series"  # period=day, no metric_type
    TOTAL_VALUE = "total_value"  # period=day&metric_type=total_value


class MetricDefinition:
    """Describes a single insights metric."""

    def __init__(
        self,
        name: str,
        metric_type: MetricType,
        field: str,
        nullable: bool = False,
        description: str = "",
    ):
        self.name = name
        self.metric_type = metric_type
        self.field = field
        self.nullable = nullable
        self.description = description

    def __repr__(self) -> str:
        return f"<Metric {self.name} ({self.metric_type.value} -> {self.field})>"


# ─────────────────────────────────────────────
# INSTAGRAM ACCOUNT METRICS
# ─────────────────────────────────────────────

IG_METRICS: Dict[str, MetricDefinition] = {
    "reach": MetricDefinition(
        "reach",
        MetricType.TIME_SERIES,
        "reach",
        nullable=True,
        description="Unique accounts that saw any content",
    ),
    "views": MetricDefinition(
        "views",
        MetricType.TIME_SERIES,
        "impressions",
        description="Times content was displayed (replaces impressions)",
    ),
    "total_interactions": MetricDefinition(
        "total_interactions",
        MetricType.TOTAL_VALUE,
        "total_interactions",
        description="Likes, comments, saves, shares and replies",
    ),
    "accounts_engaged": MetricDefinition(
        "accounts_engaged",
        MetricType.TOTAL_VALUE,
        "accounts_engaged",
        description="Accounts that interacted with content",
    ),
    "profile_views": MetricDefinition(
        "profile_views",
        MetricType.TOTAL_VALUE,
        "impressions",
        description="Profile visits; impressions stand-in when views is missing",
    ),
}

# Request lists. The fallback drops metrics the upstream has rejected for
# some account types or API versions.
TIME_SERIES_PRIMARY: List[str] = ["reach", "views"]
TIME_SERIES_FALLBACK: List[str] = ["reach"]
TOTAL_VALUE_METRICS: List[str] = ["total_interactions", "accounts_engaged", "profile_views"]
TOTAL_VALUE_FALLBACK: List[str] = ["total_interactions", "accounts_engaged"]

# Precedence when several metrics feed the same field.
FIELD_SOURCES: Dict[str, List[str]] = {
    "reach": ["reach"],
    "impressions": ["views", "profile_views"],
    "total_interactions": ["total_interactions"],
    "accounts_engaged": ["accounts_engaged"],
}


# ─────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────


def get_metric(name: str) -> MetricDefinition | None:
    """Look up a metric by name."""
    return IG_METRICS.get(name)
