"""Unit tests for condition utilities."""

from __future__ import annotations

from datetime import timedelta

from fakes import T0, Clock

from hypershift_lite_operator.constants import (
    COND_AVAILABLE,
    COND_ETCD_AVAILABLE,
    COND_KAS_AVAILABLE,
    COND_KCM_AVAILABLE,
    STATUS_FALSE,
    STATUS_TRUE,
)
from hypershift_lite_operator.utils.conditions import (
    format_timestamp,
    get_condition,
    is_condition_true,
    parse_timestamp,
    rollup_available,
    set_condition,
)


class TestSetCondition:
    """Test set_condition."""

    def test_adds_new_condition(self) -> None:
        """Test adding a new condition stamps the transition time."""
        conditions: list = []
        set_condition(conditions, "TestCondition", STATUS_TRUE, "TestReason", "Test message", now=Clock())

        assert conditions == [{
            "type": "TestCondition",
            "status": STATUS_TRUE,
            "reason": "TestReason",
            "message": "Test message",
            "lastTransitionTime": format_timestamp(T0),
        }]

    def test_status_change_updates_transition_time(self) -> None:
        """Test that changing the status moves lastTransitionTime."""
        clock = Clock()
        conditions: list = []
        set_condition(conditions, "A", STATUS_FALSE, "Old", "old", now=clock)
        clock.advance(minutes=1)

        set_condition(conditions, "A", STATUS_TRUE, "New", "new", now=clock)

        assert conditions[0]["status"] == STATUS_TRUE
        assert conditions[0]["reason"] == "New"
        assert conditions[0]["lastTransitionTime"] == format_timestamp(T0 + timedelta(minutes=1))

    def test_reason_change_keeps_transition_time(self) -> None:
        """Test that a reason or message edit alone leaves lastTransitionTime untouched."""
        clock = Clock()
        conditions: list = []
        set_condition(conditions, "A", STATUS_FALSE, "ScalingUp", "scaling", now=clock)
        clock.advance(minutes=5)

        set_condition(conditions, "A", STATUS_FALSE, "EtcdFailed", "failed", now=clock)

        assert conditions[0]["reason"] == "EtcdFailed"
        assert conditions[0]["message"] == "failed"
        assert conditions[0]["lastTransitionTime"] == format_timestamp(T0)

    def test_keeps_first_insertion_order(self) -> None:
        """Test that types stay unique and keep the position of their first write."""
        conditions: list = []
        set_condition(conditions, "A", STATUS_FALSE, "R", "m")
        set_condition(conditions, "B", STATUS_FALSE, "R", "m")
        set_condition(conditions, "A", STATUS_TRUE, "R", "m")

        assert [c["type"] for c in conditions] == ["A", "B"]


class TestConditionQueries:
    """Test condition lookup helpers."""

    def test_get_condition_missing(self) -> None:
        """Test that an absent type yields None."""
        assert get_condition([], "A") is None

    def test_is_condition_true(self) -> None:
        """Test truthiness of present and absent conditions."""
        conditions = [{"type": "A", "status": STATUS_TRUE}, {"type": "B", "status": STATUS_FALSE}]

        assert is_condition_true(conditions, "A") is True
        assert is_condition_true(conditions, "B") is False
        assert is_condition_true(conditions, "C") is False

    def test_timestamp_round_trip(self) -> None:
        """Test that formatted timestamps parse back to the same instant."""
        assert format_timestamp(T0) == "2024-01-01T12:00:00Z"
        assert parse_timestamp("2024-01-01T12:00:00Z") == T0


class TestRollupAvailable:
    """Test derivation of the Available condition."""

    def _subsystems(self, etcd: str, kas: str, kcm: str) -> list:
        conditions: list = []
        set_condition(conditions, COND_ETCD_AVAILABLE, etcd, "R", "m")
        set_condition(conditions, COND_KAS_AVAILABLE, kas, "R", "m")
        set_condition(conditions, COND_KCM_AVAILABLE, kcm, "R", "m")
        return conditions

    def test_all_subsystems_available(self) -> None:
        """Test Available=True when every subsystem is available."""
        conditions = self._subsystems(STATUS_TRUE, STATUS_TRUE, STATUS_TRUE)

        assert rollup_available(conditions) is True
        available = get_condition(conditions, COND_AVAILABLE)
        assert available["status"] == STATUS_TRUE
        assert available["reason"] == "Running"
        assert available["message"] == "Kubernetes service is up and running"

    def test_one_subsystem_unavailable(self) -> None:
        """Test Available=False as soon as one subsystem is not available."""
        conditions = self._subsystems(STATUS_TRUE, STATUS_FALSE, STATUS_TRUE)

        assert rollup_available(conditions) is False
        available = get_condition(conditions, COND_AVAILABLE)
        assert available["status"] == STATUS_FALSE
        assert available["reason"] == "NotAvailable"

    def test_missing_subsystem_counts_as_unavailable(self) -> None:
        """Test that a subsystem without a condition keeps Available=False."""
        conditions: list = []
        set_condition(conditions, COND_ETCD_AVAILABLE, STATUS_TRUE, "R", "m")

        assert rollup_available(conditions) is False
