"""
Lab Lifecycle Orchestrator — create, stop, reset and teardown.

Takes a LabSpec and drives the gateway (and, for create, the bootstrap
client) through exactly one path per run. The orchestrator never trusts a
single status read after a mutating call: it polls until the resource
reaches the state the path needs.

Create flow:
  1. Build the instance request (fails on bad local config before any
     cloud mutation)
  2. Build the custom image if asked and missing, wait until READY
  3. Create the instance if absent, wait until RUNNING
  4. Insert the ingress and egress firewall rules if missing
  5. Start the instance if it was stopped
  6. Resolve the external address and run the bootstrap scripts

Check-then-act against the provider is best-effort reconciliation; a
resource changed by someone else between the check and the act is not
guarded against. Nothing is rolled back when a path fails part-way.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, TypeVar, Union

from .bootstrap import run_bootstrap
from .config import check_lab_files, load_lab_spec
from .errors import GatewayError, PollTimeout, PreconditionError, ResourceExists
from .gateway import IMAGE_PENDING, IMAGE_READY, LabGateway, get_gateway
from .models import (
    Direction,
    InstanceOutcome,
    InstanceRequest,
    InstanceStatus,
    LabSpec,
    Operation,
    ResourceOutcome,
    SettingsOutcome,
    StatusRecord,
)
from .poller import Poller
from .remote import BootstrapClient
from .resources import (
    build_firewall_rule,
    build_image_request,
    build_instance_request,
    firewall_rule_name,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LabOrchestrator:
    """Runs one lifecycle path for one lab.

    Args:
        spec: The lab.
        gateway: Cloud gateway to drive.
        client: SSH client for bootstrap. Defaults to a paramiko-backed
            BootstrapClient built from the LabSpec.
        cancel: Event honored between poll iterations and before each
            remote round trip.
        sleep: Replacement for every wait (tests pass a no-op).
        clock: Monotonic clock for poll deadlines.
    """

    def __init__(
        self,
        spec: LabSpec,
        gateway: LabGateway,
        client: Optional[BootstrapClient] = None,
        cancel: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._spec = spec
        self._gateway = gateway
        self._cancel = cancel
        self._sleep = sleep
        self._clock = clock
        self._client = client or BootstrapClient(
            username=spec.ssh_username,
            key_file=spec.ssh_private_key_file,
            backoff=spec.timings.connect_backoff,
            cancel=cancel,
            sleep=sleep,
        )
        self._status = StatusRecord()

    @property
    def spec(self) -> LabSpec:
        return self._spec

    @property
    def status(self) -> StatusRecord:
        """Status Record of the current (or last) run, complete or not."""
        return self._status

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        operation: Union[Operation, str],
        create_image: bool = False,
    ) -> StatusRecord:
        """Dispatch to one lifecycle path.

        Args:
            operation: create, reset, stop or teardown.
            create_image: Build the custom image first (create/reset only).

        Returns:
            The Status Record of the run.
        """
        operation = Operation(operation)
        logger.info("Running %s for lab %s", operation.value, self._spec.instance_name)

        if operation == Operation.CREATE:
            return self.create(create_image=create_image)
        if operation == Operation.RESET:
            return self.reset(create_image=create_image)
        if operation == Operation.STOP:
            return self.stop()
        return self.teardown()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def create(self, create_image: bool = False) -> StatusRecord:
        """Bring the lab up. Safe to call again on an existing lab."""
        self._status = StatusRecord()
        request = self._prepare()
        self._create(request, create_image)
        return self._status

    def stop(self) -> StatusRecord:
        """Stop a running lab and wait until it is terminated.

        Raises:
            PreconditionError: If the instance is absent or already stopped.
        """
        self._status = StatusRecord()
        name = self._spec.instance_name
        observed = self._read_instance_status()
        if observed in (InstanceStatus.ABSENT, InstanceStatus.TERMINATED):
            raise PreconditionError(
                f"cannot stop instance {name}: it is {observed.value}"
            )

        self._gateway.stop_instance(name)
        self._wait_for_instance(InstanceStatus.TERMINATED)
        self._status.instance = InstanceOutcome.STOPPED
        self._status.settings = SettingsOutcome.NOT_MODIFIED
        for direction in Direction:
            self._status.set_firewall(direction, ResourceOutcome.NOT_MODIFIED)
        logger.info("Instance %s stopped", name)
        return self._status

    def reset(self, create_image: bool = False) -> StatusRecord:
        """Delete the instance only, then create the lab again.

        The custom image and firewall rules are left alone by the
        deletion; the create that follows reconciles them as usual.
        """
        self._status = StatusRecord()
        # Local problems surface before the instance is deleted.
        request = self._prepare()
        self._delete_instance()
        self._create(request, create_image)
        return self._status

    def teardown(self) -> StatusRecord:
        """Delete the instance, both firewall rules and the custom image.

        Stages run in that order; a failure stops the remaining stages.
        """
        self._status = StatusRecord()

        deleted = self._delete_instance()
        self._status.instance = (
            InstanceOutcome.DELETED if deleted else InstanceOutcome.NOT_MODIFIED
        )
        self._status.settings = SettingsOutcome.GONE_WITH_INSTANCE

        existing: List[Direction] = []
        for direction in Direction:
            rule_name = firewall_rule_name(self._spec, direction)
            if self._rule_exists(rule_name):
                existing.append(direction)
            else:
                logger.info("Firewall rule %s not found", rule_name)
                self._status.set_firewall(direction, ResourceOutcome.NOT_FOUND)
        if existing:
            self._gateway.delete_firewall_rules(
                [firewall_rule_name(self._spec, d) for d in existing]
            )
            for direction in existing:
                self._status.set_firewall(direction, ResourceOutcome.DELETED)

        image = self._spec.custom_image_name
        if self._image_exists(image):
            self._gateway.delete_image(image)
            self._status.image = ResourceOutcome.DELETED
        else:
            logger.info("Image %s not found", image)
            self._status.image = ResourceOutcome.NOT_FOUND
        return self._status

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _prepare(self) -> InstanceRequest:
        """Validate local inputs and build the instance request.

        Reads the SSH public key and checks the key and script files, so
        config problems surface before anything changes in the cloud.
        """
        request = build_instance_request(self._spec)
        check_lab_files(self._spec)
        return request

    def _create(self, request: InstanceRequest, create_image: bool) -> None:
        spec = self._spec
        if create_image:
            self._ensure_image()

        observed = self._read_instance_status()
        if observed == InstanceStatus.ABSENT:
            self._gateway.create_instance(request)
            observed = self._wait_for_instance(InstanceStatus.RUNNING)
            self._status.instance = InstanceOutcome.CREATED
        else:
            logger.info("Instance %s already exists (%s)", spec.instance_name, observed.value)
            self._status.instance = InstanceOutcome.NOT_MODIFIED

        self._ensure_firewall()

        if observed == InstanceStatus.PROVISIONING:
            observed = self._wait_for_instance(
                InstanceStatus.RUNNING, InstanceStatus.TERMINATED,
            )
        if observed == InstanceStatus.TERMINATED:
            self._gateway.start_instance(spec.instance_name)
            self._wait_for_instance(InstanceStatus.RUNNING)

        address = self._poller(
            spec.timings.address_poll_interval,
            f"external address of {spec.instance_name}",
        ).wait_for(lambda: self._gateway.external_address(spec.instance_name))

        self._status.settings = run_bootstrap(
            self._client,
            address,
            [spec.scripts_dir / name for name in spec.scripts],
            spec.remote_home,
            connect_attempts=spec.timings.connect_attempts,
            reboot_settle=spec.timings.reboot_settle,
            cancel=self._cancel,
            sleep=self._sleep,
        )

    def _ensure_image(self) -> None:
        name = self._spec.custom_image_name
        if self._image_exists(name):
            logger.info("Image %s already exists", name)
            self._status.image = ResourceOutcome.NOT_MODIFIED
            return

        self._gateway.create_image(build_image_request(self._spec))
        status = self._poller(
            self._spec.timings.image_poll_interval, f"image {name} to finish building",
        ).wait_for(
            lambda: self._gateway.image_status(name),
            ready=lambda s: s != IMAGE_PENDING,
        )
        if status != IMAGE_READY:
            raise GatewayError(
                "create_image", name, f"image build ended as {status or 'absent'}",
            )
        logger.info("Image %s is ready", name)
        self._status.image = ResourceOutcome.CREATED

    def _ensure_firewall(self) -> None:
        for direction in Direction:
            rule = build_firewall_rule(self._spec, direction)
            if self._rule_exists(rule.name):
                logger.info("Firewall rule %s already exists", rule.name)
                self._status.set_firewall(direction, ResourceOutcome.NOT_MODIFIED)
                continue
            try:
                self._gateway.upsert_firewall_rule(rule)
            except ResourceExists:
                logger.info("Firewall rule %s appeared concurrently", rule.name)
                self._status.set_firewall(direction, ResourceOutcome.NOT_MODIFIED)
            else:
                self._status.set_firewall(direction, ResourceOutcome.CREATED)

    def _delete_instance(self) -> bool:
        """Delete the instance and wait until it is gone.

        Returns:
            True if there was an instance to delete.
        """
        name = self._spec.instance_name
        if self._read_instance_status() == InstanceStatus.ABSENT:
            logger.info("Instance %s not found, nothing to delete", name)
            return False
        self._gateway.delete_instance(name)
        self._wait_for_instance(InstanceStatus.ABSENT)
        logger.info("Instance %s deleted", name)
        return True

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _poller(self, interval: float, description: str) -> Poller:
        return Poller(
            interval=interval,
            timeout=self._spec.timings.poll_timeout,
            cancel=self._cancel,
            sleep=self._sleep,
            clock=self._clock,
            description=description,
        )

    def _checked_read(self, description: str, fetch: Callable[[], T]) -> T:
        """Run a read-only check, retrying provider errors a few times.

        The last error is re-raised once ``check_attempts`` are used up.
        """
        timings = self._spec.timings
        poller = Poller(
            interval=timings.check_retry_interval,
            max_attempts=timings.check_attempts,
            cancel=self._cancel,
            sleep=self._sleep,
            clock=self._clock,
            description=description,
        )
        try:
            return poller.wait_for(fetch, ready=lambda _: True, retry_on=(GatewayError,))
        except PollTimeout as exc:
            raise exc.last_error from exc

    def _read_instance_status(self) -> InstanceStatus:
        name = self._spec.instance_name
        return self._checked_read(
            f"status of instance {name}", lambda: self._gateway.instance_status(name),
        )

    def _image_exists(self, name: str) -> bool:
        return self._checked_read(
            f"image {name}", lambda: self._gateway.image_exists(name),
        )

    def _rule_exists(self, name: str) -> bool:
        return self._checked_read(
            f"firewall rule {name}", lambda: self._gateway.firewall_rule_exists(name),
        )

    def _wait_for_instance(self, *wanted: InstanceStatus) -> InstanceStatus:
        name = self._spec.instance_name
        labels = "/".join(w.value for w in wanted)
        return self._poller(
            self._spec.timings.instance_poll_interval,
            f"instance {name} to be {labels}",
        ).wait_for(
            lambda: self._gateway.instance_status(name),
            ready=lambda status: status in wanted,
        )


# ---------------------------------------------------------------------------
# Run entry point
# ---------------------------------------------------------------------------

def build_orchestrator(
    config_path: Union[str, Path],
    instance_name: Optional[str] = None,
    cloud: str = "gcp",
    gateway: Optional[LabGateway] = None,
    client: Optional[BootstrapClient] = None,
    cancel: Optional[threading.Event] = None,
) -> LabOrchestrator:
    """Load the lab config and wire up gateway and bootstrap client.

    Raises:
        ConfigError: If the config is invalid or the cloud is unknown.
    """
    spec = load_lab_spec(Path(config_path), instance_name=instance_name)
    if gateway is None:
        gateway = get_gateway(cloud, project=spec.project, zone=spec.zone)
    return LabOrchestrator(spec, gateway, client=client, cancel=cancel)


def run_lab(
    instance_name: Optional[str],
    config_path: Union[str, Path],
    create_custom_image: bool = False,
    operation: Union[Operation, str] = Operation.CREATE,
    gateway: Optional[LabGateway] = None,
    client: Optional[BootstrapClient] = None,
    cloud: str = "gcp",
    cancel: Optional[threading.Event] = None,
) -> StatusRecord:
    """Load a lab and run one lifecycle operation on it.

    Args:
        instance_name: Overrides the config's instance_name when given.
        config_path: Lab YAML file.
        create_custom_image: Build the custom image first.
        operation: create, reset, stop or teardown.
        gateway: Gateway override (defaults to the registered ``cloud``).
        client: Bootstrap client override.
        cloud: Registered gateway name.
        cancel: Cancellation event.

    Returns:
        The Status Record of the run.
    """
    orchestrator = build_orchestrator(
        config_path,
        instance_name=instance_name,
        cloud=cloud,
        gateway=gateway,
        client=client,
        cancel=cancel,
    )
    return orchestrator.run(operation, create_image=create_custom_image)
