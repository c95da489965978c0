"""Test heartbeat cycles."""
from datetime import timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from dataflows.exceptions import ClaimError
from heartbeat_server.services.dispatcher import CycleReport, run_cycle


class TestRunCycle:
    """Test run_cycle() function."""

    def test_no_due_flows(self, make_flow, load_runs, now):
        """Test an idle cycle reports zeros and writes nothing."""
        flow = make_flow("recent", run_interval=3600, last_run_at=now - timedelta(seconds=10))

        report = run_cycle(now)

        assert report.to_dict() == {"flows_due": 0, "flows_triggered": 0, "timestamp": now.isoformat()}
        assert load_runs(flow.id) == []

    def test_one_failure_does_not_abort_cycle(self, make_flow, load_flow, load_runs, test_registry, now):
        """Test 3 due flows with 1 failing: all run, 2 counted as triggered."""
        flows = [
            make_flow("a", configuration="succeeding"),
            make_flow("b", configuration="failing"),
            make_flow("c", configuration="succeeding"),
        ]

        report = run_cycle(now, registry=test_registry)

        assert report.flows_due == 3
        assert report.flows_triggered == 2
        for flow in flows:
            runs = load_runs(flow.id)
            assert len(runs) == 1
            assert runs[0].is_terminal
        assert load_flow("b").last_run_status == "failed"
        assert load_flow("c").last_run_status == "success"

    def test_failure_is_logged(self, make_flow, test_registry, now, caplog):
        make_flow("broken", configuration="failing")

        run_cycle(now, registry=test_registry)

        assert any("broken" in r.getMessage() and "boom" in r.getMessage() for r in caplog.records)

    def test_only_due_flows_execute(self, make_flow, load_runs, test_registry, now):
        due = make_flow("A", run_interval=60, last_run_at=now - timedelta(seconds=120))
        not_due = make_flow("B", run_interval=3600, last_run_at=now - timedelta(seconds=1800))

        report = run_cycle(now, registry=test_registry)

        assert report.flows_due == 1
        assert len(load_runs(due.id)) == 1
        assert load_runs(not_due.id) == []

    def test_unexpected_error_contained(self, make_flow, test_registry, now):
        """Test an exception escaping the executor is contained per flow."""
        make_flow("a")
        make_flow("b")

        with patch("heartbeat_server.services.dispatcher.execute_flow") as mock_execute:
            mock_execute.side_effect = [RuntimeError("store hiccup"), mock_execute.return_value]
            mock_execute.return_value.succeeded = True
            report = run_cycle(now, registry=test_registry)

        assert report.flows_due == 2
        assert report.flows_triggered == 1
        assert mock_execute.call_count == 2

    def test_claim_failure_is_fatal(self, make_flow, now):
        """Test a claim failure aborts the cycle before any execution."""
        make_flow("a")

        with patch("heartbeat_server.services.dispatcher.claim_due_flows") as mock_claim, patch(
            "heartbeat_server.services.dispatcher.execute_flow"
        ) as mock_execute:
            mock_claim.side_effect = ClaimError("Failed to claim due flows: connection refused")
            with pytest.raises(ClaimError):
                run_cycle(now)

        mock_execute.assert_not_called()

    def test_second_cycle_skips_claimed_flows(self, make_flow, test_registry, now):
        """Test a flow just executed is not due again in the same window."""
        make_flow("a", run_interval=60)

        assert run_cycle(now, registry=test_registry).flows_due == 1
        assert run_cycle(now, registry=test_registry).flows_due == 0

    def test_parallel_workers(self, make_flow, load_runs, test_registry, now):
        """Test a bounded worker pool runs every claimed flow once."""
        flows = [make_flow(f"flow-{i}", configuration="failing" if i == 0 else "succeeding") for i in range(5)]

        report = run_cycle(now, max_workers=3, registry=test_registry)

        assert report.flows_due == 5
        assert report.flows_triggered == 4
        assert all(len(load_runs(flow.id)) == 1 for flow in flows)


    def test_open_run_failure_does_not_strand_flow(self, make_flow, load_flow, test_registry, now):
        """Test a flow whose run could not be opened is claimed again by the next cycle."""
        make_flow("a")

        with patch("heartbeat_server.services.executor.open_run") as mock_open:
            mock_open.side_effect = OperationalError("INSERT", {}, Exception("disk I/O error"))
            report = run_cycle(now, registry=test_registry)

        assert (report.flows_due, report.flows_triggered) == (1, 0)
        assert load_flow("a").claimed_at is None

        report = run_cycle(now + timedelta(seconds=1), registry=test_registry)

        assert (report.flows_due, report.flows_triggered) == (1, 1)
        assert load_flow("a").last_run_status == "success"

    def test_outcome_failure_does_not_strand_flow(self, make_flow, load_flow, load_runs, test_registry, now):
        """Test a flow whose outcome could not be written is retried with its stale run closed."""
        flow = make_flow("a")

        with patch("heartbeat_server.services.executor.finish_run") as mock_finish:
            mock_finish.side_effect = OperationalError("UPDATE", {}, Exception("database is locked"))
            assert run_cycle(now, registry=test_registry).flows_triggered == 0

        report = run_cycle(now + timedelta(seconds=1), registry=test_registry)

        assert (report.flows_due, report.flows_triggered) == (1, 1)
        assert [r.status for r in load_runs(flow.id)] == ["failed", "success"]
        assert load_flow("a").claimed_at is None

    def test_naive_now_is_utc(self, make_flow, test_registry, now):
        """Test a naive cycle time is taken as UTC."""
        make_flow("a", last_run_at=now - timedelta(seconds=120))

        report = run_cycle(now.replace(tzinfo=None), registry=test_registry)

        assert report.flows_due == 1
        assert report.timestamp == now
        assert report.to_dict()["timestamp"] == "2024-01-01T12:00:00+00:00"

    def test_non_utc_now_is_converted(self, make_flow, load_runs, test_registry, now):
        """Test an aware cycle time in another zone is converted before due selection and reporting."""
        make_flow("due", run_interval=60, last_run_at=now - timedelta(seconds=120))
        not_due = make_flow("not-due", run_interval=3600, last_run_at=now - timedelta(seconds=1800))
        local_now = now.astimezone(timezone(timedelta(hours=2)))

        report = run_cycle(local_now, registry=test_registry)

        assert report.flows_due == 1
        assert report.to_dict()["timestamp"] == "2024-01-01T12:00:00+00:00"
        assert load_runs(not_due.id) == []


def test_cycle_report_to_dict(now):
    report = CycleReport(flows_due=3, flows_triggered=2, timestamp=now)
    assert report.to_dict() == {"flows_due": 3, "flows_triggered": 2, "timestamp": "2024-01-01T12:00:00+00:00"}
