"""
Asset Workflow Engine

Configurable approval pipelines for work orders and safety incidents, with
SLA tracking, conditional branching and a hash-chained audit trail.
"""

__version__ = "1.0.0"
