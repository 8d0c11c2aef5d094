"""
shomer — guardian scanning and risk-aggregation engine.
"""

__version__ = "1.0.0"
