"""
shomer/aggregators — risk aggregation and the risk event log.
"""

from shomer.aggregators.risk_aggregator import (
    RiskAggregator,
    compute_risk_level,
    merge_aggregate,
)

__all__ = ["RiskAggregator", "compute_risk_level", "merge_aggregate"]
