"""
Exceptions raised by the graph and scoring services.
"""


class HarvestGraphError(Exception):
    """Base class for all harvestgraph errors."""


class InvalidNodeIdError(HarvestGraphError, ValueError):
    """A node id does not follow the '{NodeType}:{source id}' format."""


class NodeNotFoundError(HarvestGraphError, LookupError):
    """A node required for single-entity scoring or prediction does not exist."""

    def __init__(self, node_id: str, message: str = ""):
        self.node_id = node_id
        super().__init__(message or f"Node not found: {node_id}")


class AnomalyNotFoundError(HarvestGraphError, LookupError):
    """An anomaly result to acknowledge does not exist."""

    def __init__(self, anomaly_id):
        self.anomaly_id = anomaly_id
        super().__init__(f"Anomaly not found: {anomaly_id}")


class ConfigurationError(HarvestGraphError):
    """Components were wired with an inconsistent configuration."""
