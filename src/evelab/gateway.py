"""
Cloud Resource Gateway — the provider interface the orchestrator drives.

Each cloud gets a thin gateway; the contract stays the same. Every
mutating call is fire-and-confirm: it returns once the provider has
accepted the request, not once the resource has settled. Waiting for the
terminal state is the orchestrator's job, and so is checking state before
acting, which keeps each call idempotent at the call site.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional

from .errors import ConfigError
from .models import FirewallRule, ImageRequest, InstanceRequest, InstanceStatus

logger = logging.getLogger(__name__)

# Image states the orchestrator acts on; anything else is a failed build.
IMAGE_PENDING = "PENDING"
IMAGE_READY = "READY"


# ---------------------------------------------------------------------------
# Gateway registry
# ---------------------------------------------------------------------------

_GATEWAYS: Dict[str, type] = {}


def register_gateway(name: str):
    """Decorator to register a gateway class.

    Args:
        name: Cloud name (e.g. 'gcp').
    """
    def wrapper(cls):
        _GATEWAYS[name] = cls
        return cls
    return wrapper


def get_gateway(name: str, **config: Any) -> "LabGateway":
    """Instantiate the gateway registered under ``name``.

    Raises:
        ConfigError: If no gateway is registered for that cloud.
    """
    # Importing the providers package registers the built-in gateways.
    from . import providers  # noqa: F401

    gateway_cls = _GATEWAYS.get(name)
    if gateway_cls is None:
        raise ConfigError(
            f"Unknown cloud '{name}'. Available: {', '.join(sorted(_GATEWAYS))}"
        )
    return gateway_cls(**config)


# ---------------------------------------------------------------------------
# Gateway interface
# ---------------------------------------------------------------------------

class LabGateway:
    """Abstract base for cloud gateways.

    Every method addresses resources by name within the gateway's own
    project/zone.
    """

    name: str = "abstract"

    # Images

    def image_exists(self, name: str) -> bool:
        """True if the image exists and is ready to boot from."""
        raise NotImplementedError

    def image_status(self, name: str) -> Optional[str]:
        """Provider status of the image (e.g. PENDING, READY, FAILED), or None."""
        raise NotImplementedError

    def create_image(self, request: ImageRequest) -> None:
        raise NotImplementedError

    def delete_image(self, name: str) -> None:
        raise NotImplementedError

    # Instances

    def create_instance(self, request: InstanceRequest) -> None:
        raise NotImplementedError

    def instance_status(self, name: str) -> InstanceStatus:
        """Current instance state; ABSENT if it does not exist."""
        raise NotImplementedError

    def delete_instance(self, name: str) -> None:
        raise NotImplementedError

    def stop_instance(self, name: str) -> None:
        raise NotImplementedError

    def start_instance(self, name: str) -> None:
        raise NotImplementedError

    # Firewall

    def upsert_firewall_rule(self, rule: FirewallRule) -> None:
        """Insert a rule.

        Raises:
            ResourceExists: If the provider already has a rule by that name.
        """
        raise NotImplementedError

    def firewall_rule_exists(self, name: str) -> bool:
        raise NotImplementedError

    def delete_firewall_rules(self, names: Iterable[str]) -> None:
        """Delete rules by name; rules that are already gone are skipped."""
        raise NotImplementedError

    # Network

    def external_address(self, name: str) -> Optional[str]:
        """Public address of the instance, or None until one is assigned."""
        raise NotImplementedError
