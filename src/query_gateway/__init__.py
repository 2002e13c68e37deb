"""Query gateway package."""

from .config import AdmissionConfig, AgentConfig, GatewaySettings, QueryConfig

__all__ = ["AdmissionConfig", "AgentConfig", "GatewaySettings", "QueryConfig"]
