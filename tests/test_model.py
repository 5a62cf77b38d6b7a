from __future__ import annotations

import pytest

from agenthost.api.model import (
    Instance,
    InstanceConfig,
    Provider,
    SetupRecord,
    SetupStatus,
    VmRecord,
    can_transition,
)
from agenthost.core.exceptions import InvalidTransitionError

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


def record(**kwargs: object) -> SetupRecord:
    return SetupRecord(user_id="u1", provider=Provider.AWS, **kwargs)  # type: ignore[arg-type]


class TestTransitions:
    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (SetupStatus.PENDING, SetupStatus.PROVISIONING),
            (SetupStatus.PROVISIONING, SetupStatus.CONFIGURING_VM),
            (SetupStatus.PROVISIONING, SetupStatus.REQUIRES_PAYMENT),
            (SetupStatus.CONFIGURING_VM, SetupStatus.READY),
            (SetupStatus.FAILED, SetupStatus.PROVISIONING),
            (SetupStatus.REQUIRES_PAYMENT, SetupStatus.PROVISIONING),
        ],
    )
    def test_allowed(self, current: SetupStatus, target: SetupStatus) -> None:
        assert can_transition(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (SetupStatus.PENDING, SetupStatus.READY),
            (SetupStatus.PROVISIONING, SetupStatus.READY),
            (SetupStatus.READY, SetupStatus.PROVISIONING),
            (SetupStatus.READY, SetupStatus.FAILED),
            (SetupStatus.FAILED, SetupStatus.READY),
        ],
    )
    def test_rejected(self, current: SetupStatus, target: SetupStatus) -> None:
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransitionError):
            record(status=current, error_message="x").apply({"status": target})

    def test_ready_is_final(self) -> None:
        ready = record(status=SetupStatus.READY)
        with pytest.raises(InvalidTransitionError, match="final"):
            ready.apply({"status": SetupStatus.READY, "error_message": "late"})

    def test_failure_needs_a_message(self) -> None:
        with pytest.raises(InvalidTransitionError, match="requires an error message"):
            record(status=SetupStatus.PROVISIONING).apply({"status": SetupStatus.FAILED})

    def test_apply_returns_a_new_record(self) -> None:
        original = record()
        updated = original.apply({"status": SetupStatus.PROVISIONING})
        assert original.status == SetupStatus.PENDING
        assert updated.status == SetupStatus.PROVISIONING

    def test_unknown_field(self) -> None:
        with pytest.raises(InvalidTransitionError, match="Unknown"):
            record().apply({"colour": "blue"})


class TestMilestones:
    def test_cannot_be_reset(self) -> None:
        with pytest.raises(InvalidTransitionError, match="cannot be reset"):
            record(vm_created=True).apply({"vm_created": False})

    def test_must_follow_order(self) -> None:
        with pytest.raises(InvalidTransitionError, match="before"):
            record().apply({"agent_installed": True})

    def test_can_be_set_together_in_order(self) -> None:
        updated = record().apply({"vm_created": True, "agent_installed": True})
        assert updated.vm_created and updated.agent_installed


class TestViews:
    def test_status_view_hides_instance_until_known(self) -> None:
        view = record().status_view()
        assert view == {
            "status": "pending",
            "vmCreated": False,
            "agentInstalled": False,
            "channelConfigured": False,
            "gatewayStarted": False,
        }

    def test_status_view_with_instance_and_error(self) -> None:
        view = record(
            status=SetupStatus.FAILED,
            error_message="boom",
            instance_id="i-1",
            public_ip="1.2.3.4",
            vm_status="running",
        ).status_view()

        assert view["errorMessage"] == "boom"
        assert view["instanceId"] == "i-1"
        assert view["publicIp"] == "1.2.3.4"

    def test_vm_to_dict(self) -> None:
        vm = VmRecord(
            id="v1",
            user_id="u1",
            name="box",
            provider=Provider.ORGO,
            config=InstanceConfig(name="box", size="4GB/2cpu"),
            instance=Instance(id="c-1", provider=Provider.ORGO, name="box", status="running"),
        )

        data = vm.to_dict()

        assert data["provider"] == "orgo"
        assert data["size"] == "4GB/2cpu"
        assert data["instance"]["id"] == "c-1"
        assert "credentials" not in data
