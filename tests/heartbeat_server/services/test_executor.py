"""Test the flow executor (execution coordinator)."""
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from dataflows.models import FlowRunResult
from heartbeat_server.db.models import RunStatus
from heartbeat_server.services.executor import ExecutionState, FlowExecutor, execute_flow
from heartbeat_server.services.flows import claim_due_flows
from heartbeat_server.services.runs import INTERRUPTED_RUN_MESSAGE, finish_run, list_runs


class TestExecuteFlow:
    """Test execute_flow() and FlowExecutor.execute()."""

    def test_success(self, make_flow, load_flow, load_runs, test_registry):
        """Test success updates both the flow summary and one run record."""
        flow = make_flow("export", configuration={"class_name": "succeeding"})

        outcome = execute_flow(flow, registry=test_registry)

        assert outcome.succeeded
        assert outcome.state == ExecutionState.SUCCEEDED
        stored = load_flow("export")
        assert stored.last_run_status == "success"
        assert stored.last_run_at is not None
        assert stored.claimed_at is None

        runs = load_runs(flow.id)
        assert len(runs) == 1
        assert runs[0].id == outcome.run_id
        assert runs[0].status == "success"
        assert runs[0].ended_at is not None
        assert runs[0].duration >= 0
        assert runs[0].error_message is None

    def test_failure_records_then_reports(self, make_flow, load_flow, load_runs, test_registry):
        """Test failure is persisted on flow and run before being returned."""
        flow = make_flow("export", configuration="failing")

        outcome = execute_flow(flow, registry=test_registry)

        assert not outcome.succeeded
        assert outcome.state == ExecutionState.FAILED
        assert outcome.error_message == "boom"
        assert load_flow("export").last_run_status == "failed"

        runs = load_runs(flow.id)
        assert len(runs) == 1
        assert runs[0].status == "failed"
        assert runs[0].error_message == "boom"
        assert "RuntimeError: boom" in runs[0].error_backtrace
        assert runs[0].ended_at is not None

        with pytest.raises(RuntimeError, match="boom"):
            outcome.raise_for_failure()

    def test_unresolvable_configuration(self, make_flow, load_flow, load_runs, test_registry):
        """Test an unknown work unit fails like any other error."""
        flow = make_flow("export", configuration={"class_name": "DoesNotExist"})

        outcome = execute_flow(flow, registry=test_registry)

        assert outcome.state == ExecutionState.FAILED
        assert load_flow("export").last_run_status == "failed"
        assert "DoesNotExist" in load_runs(flow.id)[0].error_message

    def test_each_execution_adds_a_run(self, make_flow, load_runs, test_registry):
        flow = make_flow("export")

        execute_flow(flow, registry=test_registry)
        execute_flow(flow, registry=test_registry)

        assert [r.status for r in load_runs(flow.id)] == ["success", "success"]

    def test_clock_sets_timestamps(self, make_flow, load_runs, test_registry, now):
        """Test run start/end and last_run_at come from the executor clock."""
        flow = make_flow("export")
        ticks = iter([now, now + timedelta(seconds=5)])

        FlowExecutor(flow, registry=test_registry, clock=lambda: next(ticks)).execute()

        run = load_runs(flow.id)[0]
        assert run.duration == pytest.approx(5.0)

    def test_executor_runs_once(self, make_flow, test_registry):
        flow = make_flow("export")
        executor = FlowExecutor(flow, registry=test_registry)
        executor.execute()

        with pytest.raises(RuntimeError, match="already"):
            executor.execute()

    def test_state_machine_order(self, make_flow, test_registry):
        """Test the run record exists before the work unit runs."""
        flow = make_flow("export")
        seen = []

        def fake_run_flow(configuration, registry=None):
            runs, _ = list_runs(flow_id=flow.id)
            seen.append([r.status for r in runs])
            return FlowRunResult(success=True, duration_ms=0)

        with patch("heartbeat_server.services.executor.run_flow", side_effect=fake_run_flow):
            execute_flow(flow, registry=test_registry)

        assert seen == [["in_progress"]]

    def test_outcome_written_in_one_call(self, make_flow, test_registry):
        """Test the flow summary and the run record are closed by a single store write."""
        flow = make_flow("export", configuration="failing")

        with patch("heartbeat_server.services.executor.finish_run") as mock_finish:
            execute_flow(flow, registry=test_registry)

        mock_finish.assert_called_once()
        args = mock_finish.call_args[0]
        assert args[0] == flow.id
        assert args[2] == RunStatus.FAILED
        assert mock_finish.call_args.kwargs["error_message"] == "boom"


class TestExecuteStoreFailures:
    """Test store errors around a flow execution release or close what it claimed."""

    @staticmethod
    def _claim(now):
        flows = claim_due_flows(now)
        assert len(flows) == 1
        return flows[0]

    def test_open_run_failure_releases_claim(self, make_flow, load_flow, load_runs, test_registry, now):
        """Test a flow whose run cannot be opened is left unclaimed."""
        make_flow("export")
        flow = self._claim(now)

        with patch("heartbeat_server.services.executor.open_run") as mock_open:
            mock_open.side_effect = OperationalError("INSERT", {}, Exception("disk I/O error"))
            with pytest.raises(OperationalError):
                FlowExecutor(flow, registry=test_registry).execute()

        assert load_flow("export").claimed_at is None
        assert load_runs(flow.id) == []
        assert [f.id for f in claim_due_flows(now)] == [flow.id]

    def test_outcome_write_retried_as_failure(self, make_flow, load_flow, load_runs, test_registry, now):
        """Test a failed outcome write is followed by recording the run as failed."""
        make_flow("export")
        flow = self._claim(now)
        attempts = []

        def flaky_finish_run(*args, **kwargs):
            attempts.append(args[2])
            if len(attempts) == 1:
                raise OperationalError("UPDATE", {}, Exception("database is locked"))
            return finish_run(*args, **kwargs)

        executor = FlowExecutor(flow, registry=test_registry)
        with patch("heartbeat_server.services.executor.finish_run", side_effect=flaky_finish_run):
            with pytest.raises(OperationalError):
                executor.execute()

        assert attempts == [RunStatus.SUCCESS, RunStatus.FAILED]
        assert executor.state == ExecutionState.FAILED
        stored = load_flow("export")
        assert stored.last_run_status == "failed"
        assert stored.claimed_at is None
        runs = load_runs(flow.id)
        assert len(runs) == 1
        assert runs[0].status == "failed"
        assert runs[0].error_message.startswith("Outcome could not be recorded")
        assert runs[0].ended_at is not None

    def test_outcome_write_failure_releases_claim(self, make_flow, load_flow, load_runs, test_registry, now):
        """Test a flow whose outcome cannot be written is picked up again and its stale run closed."""
        make_flow("export")
        flow = self._claim(now)

        with patch("heartbeat_server.services.executor.finish_run") as mock_finish:
            mock_finish.side_effect = OperationalError("UPDATE", {}, Exception("database is locked"))
            with pytest.raises(OperationalError):
                FlowExecutor(flow, registry=test_registry).execute()

        assert mock_finish.call_count == 2
        stored = load_flow("export")
        assert stored.claimed_at is None
        assert stored.last_run_status is None
        assert [r.status for r in load_runs(flow.id)] == ["in_progress"]

        outcome = execute_flow(self._claim(now), registry=test_registry)

        assert outcome.succeeded
        runs = load_runs(flow.id)
        assert [r.status for r in runs] == ["failed", "success"]
        assert runs[0].error_message == INTERRUPTED_RUN_MESSAGE
        assert load_flow("export").claimed_at is None

    def test_release_failure_still_raises_store_error(self, make_flow, test_registry, now):
        """Test a failing claim release does not hide the error that caused it."""
        make_flow("export")
        flow = self._claim(now)

        with patch("heartbeat_server.services.executor.open_run") as mock_open, patch(
            "heartbeat_server.services.executor.release_claim"
        ) as mock_release:
            mock_open.side_effect = OperationalError("INSERT", {}, Exception("disk I/O error"))
            mock_release.side_effect = OperationalError("UPDATE", {}, Exception("disk I/O error"))
            with pytest.raises(OperationalError, match="INSERT"):
                FlowExecutor(flow, registry=test_registry).execute()

        mock_release.assert_called_once_with(flow.id, claimed_at=flow.claimed_at)
