"""Tests for lab models and the resource requests derived from them."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from evelab.errors import ConfigError
from evelab.models import (
    Direction,
    FirewallStatus,
    InstanceOutcome,
    LabSpec,
    LabTimings,
    ResourceOutcome,
    SettingsOutcome,
    StatusRecord,
)
from evelab.resources import (
    build_firewall_rule,
    build_image_request,
    build_instance_request,
    firewall_rule_name,
    firewall_rule_names,
)


def _spec(**overrides) -> LabSpec:
    base = {
        "project": "test-project",
        "instance_name": "lab1",
        "ssh_public_key_file": Path("/nonexistent/id_rsa.pub"),
        "ssh_private_key_file": Path("/nonexistent/id_rsa"),
        "ssh_username": "eve",
    }
    base.update(overrides)
    return LabSpec(**base)


# ---------------------------------------------------------------------------
# LabSpec
# ---------------------------------------------------------------------------


class TestLabSpec:
    """Validate the LabSpec pydantic model."""

    def test_defaults(self):
        spec = _spec()
        assert spec.zone == "us-central1-a"
        assert spec.machine_type == "c2-standard-4"
        assert spec.custom_image_name == "eve-ng"
        assert spec.scripts == ["install.sh", "eve-initial-setup.sh"]
        assert spec.timings == LabTimings()
        assert spec.remote_home == "/home/eve"

    def test_timings_defaults(self):
        timings = LabTimings()
        assert timings.image_poll_interval == 10
        assert timings.instance_poll_interval == 8
        assert timings.connect_backoff == 20
        assert timings.connect_attempts == 3
        assert timings.reboot_settle == 60
        assert timings.poll_timeout is None

    def test_spec_is_frozen(self):
        spec = _spec()
        with pytest.raises(ValidationError):
            spec.instance_name = "other"

    def test_rejects_uppercase_instance_name(self):
        with pytest.raises(ValidationError, match="lowercase"):
            _spec(instance_name="Lab_1")

    def test_rejects_overlong_instance_name(self):
        with pytest.raises(ValidationError):
            _spec(instance_name="a" * 56)

    def test_rejects_script_paths(self):
        with pytest.raises(ValidationError, match="bare file name"):
            _spec(scripts=["../evil.sh"])

    def test_rejects_empty_script_list(self):
        with pytest.raises(ValidationError, match="at least one"):
            _spec(scripts=[])

    def test_rejects_zero_connect_attempts(self):
        with pytest.raises(ValidationError):
            _spec(timings={"connect_attempts": 0})


# ---------------------------------------------------------------------------
# Firewall rules
# ---------------------------------------------------------------------------


class TestFirewallRules:
    """Firewall names and rule shapes."""

    def test_names_follow_direction_and_lab(self):
        spec = _spec()
        assert firewall_rule_name(spec, Direction.INGRESS) == "ingress-lab1"
        assert firewall_rule_name(spec, Direction.EGRESS) == "egress-lab1"

    @pytest.mark.parametrize("name", ["lab1", "eve", "my-lab-2"])
    def test_names_are_stable(self, name):
        first = firewall_rule_names(_spec(instance_name=name))
        second = firewall_rule_names(_spec(instance_name=name))
        assert first == second == [f"ingress-{name}", f"egress-{name}"]

    def test_ingress_opens_source_range(self):
        rule = build_firewall_rule(_spec(), Direction.INGRESS)
        assert rule.name == "ingress-lab1"
        assert rule.source_ranges == ["0.0.0.0/0"]
        assert rule.destination_ranges == []
        assert rule.target_tag == "eve-ng"
        assert rule.protocol == "tcp"
        assert rule.ports == ["0-65535"]
        assert rule.priority == 1000

    def test_egress_opens_destination_range(self):
        rule = build_firewall_rule(_spec(), "egress")
        assert rule.direction == Direction.EGRESS
        assert rule.destination_ranges == ["0.0.0.0/0"]
        assert rule.source_ranges == []

    def test_rebuilding_yields_equal_rules(self):
        spec = _spec()
        assert build_firewall_rule(spec, Direction.EGRESS) == build_firewall_rule(
            spec, Direction.EGRESS
        )


# ---------------------------------------------------------------------------
# Instance / image requests
# ---------------------------------------------------------------------------


class TestRequests:
    """Instance and image request construction."""

    def test_instance_request(self, tmp_path):
        key = tmp_path / "id_rsa.pub"
        key.write_text("ssh-rsa AAAA eve@lab\n")
        spec = _spec(ssh_public_key_file=key, custom_image_name="test-eve-ng")

        request = build_instance_request(spec)

        assert request.name == "lab1"
        assert request.source_image == "projects/test-project/global/images/test-eve-ng"
        assert request.disk_name == "my-root-lab1"
        assert request.tags == ["http-server", "https-server", "eve-ng"]
        assert request.ssh_keys == "eve:ssh-rsa AAAA eve@lab"
        assert request.can_ip_forward is True

    def test_instance_request_missing_key_raises_config_error(self):
        with pytest.raises(ConfigError, match="SSH public key"):
            build_instance_request(_spec())

    def test_instance_request_empty_key_raises_config_error(self, tmp_path):
        key = tmp_path / "empty.pub"
        key.write_text("\n")
        with pytest.raises(ConfigError, match="empty"):
            build_instance_request(_spec(ssh_public_key_file=key))

    def test_image_request_enables_nested_virtualization(self):
        request = build_image_request(_spec(custom_image_name="test-eve-ng"))
        assert request.name == "test-eve-ng"
        assert any(lic.endswith("/licenses/enable-vmx") for lic in request.licenses)
        assert "ubuntu" in request.source_image


# ---------------------------------------------------------------------------
# Status record
# ---------------------------------------------------------------------------


class TestStatusRecord:
    """StatusRecord serialization."""

    def test_empty_record(self):
        assert StatusRecord().to_dict() == {
            "instance": None,
            "settings": None,
            "firewall": {"ingress": None, "egress": None},
        }

    def test_full_record_uses_hyphenated_values(self):
        record = StatusRecord(
            instance=InstanceOutcome.NOT_MODIFIED,
            settings=SettingsOutcome.GONE_WITH_INSTANCE,
            firewall=FirewallStatus(
                ingress=ResourceOutcome.DELETED, egress=ResourceOutcome.NOT_FOUND,
            ),
            image=ResourceOutcome.NOT_FOUND,
        )
        assert record.to_dict() == {
            "instance": "not-modified",
            "settings": "gone-with-instance",
            "firewall": {"ingress": "deleted", "egress": "not-found"},
            "image": "not-found",
        }

    def test_set_firewall(self):
        record = StatusRecord()
        record.set_firewall(Direction.EGRESS, ResourceOutcome.CREATED)
        assert record.firewall.egress == ResourceOutcome.CREATED
        assert record.firewall.ingress is None
