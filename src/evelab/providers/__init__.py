"""
Cloud gateways — plug-in backends for the lab orchestrator.

Each gateway implements the LabGateway interface from evelab.gateway and
registers itself by cloud name.
"""

from .gcp import GCPGateway

__all__ = ["GCPGateway"]
