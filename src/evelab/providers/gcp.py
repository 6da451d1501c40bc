"""
GCP gateway — Compute Engine images, instances and firewall rules.

Uses the google-cloud-compute library. Credentials come from
Application Default Credentials (GOOGLE_APPLICATION_CREDENTIALS or
``gcloud auth application-default login``).

Calls return as soon as Compute Engine accepts the request; the returned
operations are not awaited here.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Optional

from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.cloud import compute_v1

from ..errors import ConfigError, GatewayError, ResourceExists
from ..gateway import IMAGE_READY, LabGateway, register_gateway
from ..models import (
    Direction,
    FirewallRule,
    ImageRequest,
    InstanceRequest,
    InstanceStatus,
)

logger = logging.getLogger(__name__)

INSTANCE_SCOPES = [
    "https://www.googleapis.com/auth/devstorage.full_control",
    "https://www.googleapis.com/auth/compute",
]

# Compute Engine instance states mapped onto the lab's four states.
_STATUS_MAP = {
    "PROVISIONING": InstanceStatus.PROVISIONING,
    "STAGING": InstanceStatus.PROVISIONING,
    "STOPPING": InstanceStatus.PROVISIONING,
    "SUSPENDING": InstanceStatus.PROVISIONING,
    "REPAIRING": InstanceStatus.PROVISIONING,
    "RUNNING": InstanceStatus.RUNNING,
    "STOPPED": InstanceStatus.TERMINATED,
    "SUSPENDED": InstanceStatus.TERMINATED,
    "TERMINATED": InstanceStatus.TERMINATED,
}


def map_instance_status(status: str) -> InstanceStatus:
    """Translate a Compute Engine status string.

    Unknown states are treated as transitional.
    """
    mapped = _STATUS_MAP.get((status or "").upper())
    if mapped is None:
        logger.warning("Unknown instance status %r, treating as provisioning", status)
        return InstanceStatus.PROVISIONING
    return mapped


@register_gateway("gcp")
class GCPGateway(LabGateway):
    """Compute Engine gateway.

    Args:
        project: GCP project ID.
        zone: Compute zone (e.g. 'us-central1-a').
        instances_client: Injected ``compute_v1.InstancesClient``.
        images_client: Injected ``compute_v1.ImagesClient``.
        firewalls_client: Injected ``compute_v1.FirewallsClient``.
    """

    name = "gcp"

    def __init__(
        self,
        project: str,
        zone: str = "us-central1-a",
        instances_client: Optional[Any] = None,
        images_client: Optional[Any] = None,
        firewalls_client: Optional[Any] = None,
        **kwargs: Any,
    ) -> None:
        if not project:
            raise ConfigError("GCP project not configured")
        self._project = project
        self._zone = zone
        self._instances = instances_client
        self._images = images_client
        self._firewalls = firewalls_client

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    @staticmethod
    def _make_client(factory: Callable[[], Any]) -> Any:
        try:
            return factory()
        except auth_exceptions.DefaultCredentialsError as exc:
            raise ConfigError(f"GCP credentials not available: {exc}") from exc

    @property
    def instances(self) -> Any:
        if self._instances is None:
            self._instances = self._make_client(compute_v1.InstancesClient)
        return self._instances

    @property
    def images(self) -> Any:
        if self._images is None:
            self._images = self._make_client(compute_v1.ImagesClient)
        return self._images

    @property
    def firewalls(self) -> Any:
        if self._firewalls is None:
            self._firewalls = self._make_client(compute_v1.FirewallsClient)
        return self._firewalls

    def _call(self, operation: str, resource: str, fn: Callable[..., Any], **kwargs: Any) -> Any:
        """Invoke a client method, turning provider errors into GatewayError."""
        try:
            return fn(**kwargs)
        except google_exceptions.GoogleAPICallError as exc:
            raise GatewayError(operation, resource, exc) from exc

    def _path(self, suffix: str) -> str:
        return f"projects/{self._project}/{suffix}"

    # ------------------------------------------------------------------
    # Request translation
    # ------------------------------------------------------------------

    def image_resource(self, request: ImageRequest) -> compute_v1.Image:
        return compute_v1.Image(
            name=request.name,
            source_image=request.source_image,
            licenses=list(request.licenses),
            disk_size_gb=request.disk_size_gb,
        )

    def instance_resource(self, request: InstanceRequest) -> compute_v1.Instance:
        disk = compute_v1.AttachedDisk(
            auto_delete=True,
            boot=True,
            type_="PERSISTENT",
            initialize_params=compute_v1.AttachedDiskInitializeParams(
                disk_name=request.disk_name,
                source_image=request.source_image,
                disk_type=self._path(f"zones/{request.zone}/diskTypes/{request.disk_type}"),
                disk_size_gb=request.disk_size_gb,
            ),
        )
        network_interface = compute_v1.NetworkInterface(
            network=self._path(f"global/networks/{request.network}"),
            access_configs=[
                compute_v1.AccessConfig(name="External NAT", type_="ONE_TO_ONE_NAT"),
            ],
        )
        return compute_v1.Instance(
            name=request.name,
            description=request.description,
            machine_type=f"zones/{request.zone}/machineTypes/{request.machine_type}",
            min_cpu_platform=request.min_cpu_platform,
            can_ip_forward=request.can_ip_forward,
            tags=compute_v1.Tags(items=list(request.tags)),
            disks=[disk],
            network_interfaces=[network_interface],
            service_accounts=[
                compute_v1.ServiceAccount(email="default", scopes=INSTANCE_SCOPES),
            ],
            metadata=compute_v1.Metadata(
                items=[compute_v1.Items(key="ssh-keys", value=request.ssh_keys)],
            ),
        )

    def firewall_resource(self, rule: FirewallRule) -> compute_v1.Firewall:
        firewall = compute_v1.Firewall(
            name=rule.name,
            direction=rule.direction.value.upper(),
            priority=rule.priority,
            network=self._path(f"global/networks/{rule.network}"),
            target_tags=[rule.target_tag],
            allowed=[compute_v1.Allowed(I_p_protocol=rule.protocol, ports=list(rule.ports))],
        )
        if rule.direction == Direction.INGRESS:
            firewall.source_ranges = list(rule.source_ranges)
        else:
            firewall.destination_ranges = list(rule.destination_ranges)
        return firewall

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------

    def image_status(self, name: str) -> Optional[str]:
        try:
            image = self._call("get_image", name, self.images.get, project=self._project, image=name)
        except GatewayError as exc:
            if isinstance(exc.cause, google_exceptions.NotFound):
                return None
            raise
        logger.debug("Image %s status: %s", name, image.status)
        return image.status

    def image_exists(self, name: str) -> bool:
        return self.image_status(name) == IMAGE_READY

    def create_image(self, request: ImageRequest) -> None:
        logger.info("Creating image %s from %s", request.name, request.source_image)
        self._call(
            "create_image", request.name, self.images.insert,
            project=self._project, image_resource=self.image_resource(request),
        )

    def delete_image(self, name: str) -> None:
        try:
            self._call("delete_image", name, self.images.delete, project=self._project, image=name)
        except GatewayError as exc:
            if isinstance(exc.cause, google_exceptions.NotFound):
                logger.info("Image %s not found, nothing to delete", name)
                return
            raise
        logger.info("Requested deletion of image %s", name)

    # ------------------------------------------------------------------
    # Instances
    # ------------------------------------------------------------------

    def _get_instance(self, operation: str, name: str) -> Any:
        return self._call(
            operation, name, self.instances.get,
            project=self._project, zone=self._zone, instance=name,
        )

    def create_instance(self, request: InstanceRequest) -> None:
        logger.info(
            "Creating instance %s (type=%s zone=%s project=%s)",
            request.name, request.machine_type, self._zone, self._project,
        )
        self._call(
            "create_instance", request.name, self.instances.insert,
            project=self._project, zone=self._zone,
            instance_resource=self.instance_resource(request),
        )

    def instance_status(self, name: str) -> InstanceStatus:
        try:
            instance = self._get_instance("instance_status", name)
        except GatewayError as exc:
            if isinstance(exc.cause, google_exceptions.NotFound):
                return InstanceStatus.ABSENT
            raise
        return map_instance_status(instance.status)

    def delete_instance(self, name: str) -> None:
        try:
            self._call(
                "delete_instance", name, self.instances.delete,
                project=self._project, zone=self._zone, instance=name,
            )
        except GatewayError as exc:
            if isinstance(exc.cause, google_exceptions.NotFound):
                logger.info("Instance %s not found, nothing to delete", name)
                return
            raise
        logger.info("Requested deletion of instance %s", name)

    def stop_instance(self, name: str) -> None:
        logger.info("Stopping instance %s", name)
        self._call(
            "stop_instance", name, self.instances.stop,
            project=self._project, zone=self._zone, instance=name,
        )

    def start_instance(self, name: str) -> None:
        logger.info("Starting instance %s", name)
        self._call(
            "start_instance", name, self.instances.start,
            project=self._project, zone=self._zone, instance=name,
        )

    # ------------------------------------------------------------------
    # Firewall
    # ------------------------------------------------------------------

    def upsert_firewall_rule(self, rule: FirewallRule) -> None:
        logger.info("Creating firewall rule %s", rule.name)
        try:
            self._call(
                "upsert_firewall_rule", rule.name, self.firewalls.insert,
                project=self._project, firewall_resource=self.firewall_resource(rule),
            )
        except GatewayError as exc:
            if isinstance(exc.cause, google_exceptions.Conflict):
                raise ResourceExists(exc.operation, exc.resource, exc.cause) from exc
            raise

    def firewall_rule_exists(self, name: str) -> bool:
        try:
            self._call(
                "firewall_rule_exists", name, self.firewalls.get,
                project=self._project, firewall=name,
            )
        except GatewayError as exc:
            if isinstance(exc.cause, google_exceptions.NotFound):
                return False
            raise
        return True

    def delete_firewall_rules(self, names: Iterable[str]) -> None:
        for name in names:
            try:
                self._call(
                    "delete_firewall_rules", name, self.firewalls.delete,
                    project=self._project, firewall=name,
                )
            except GatewayError as exc:
                if isinstance(exc.cause, google_exceptions.NotFound):
                    logger.info("Firewall rule %s not found, nothing to delete", name)
                    continue
                raise
            logger.info("Requested deletion of firewall rule %s", name)

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    def external_address(self, name: str) -> Optional[str]:
        instance = self._get_instance("external_address", name)
        for iface in instance.network_interfaces:
            # The NAT config added at create time is the last one.
            for access_config in reversed(list(iface.access_configs)):
                if access_config.nat_i_p:
                    logger.info("External address of %s: %s", name, access_config.nat_i_p)
                    return access_config.nat_i_p
        return None
