"""
Scenario executor tests: step order, donation setup and the negative
transfer-base correction.
"""

import pytest

from conftest import FakeSheetsClient
from estimator_constants import DonationType, RangePart
from models import ScenarioOutput
from scenario_executor import (
    ScenarioExecutor,
    TransferBaseCorrection,
    get_range_config,
    get_scenario_config,
)
from sheets_client import TransportError


class TestScenarioConfigs:
    """Test the static scenario catalog."""

    def test_solar_scenarios_carry_fee(self):
        for number in (2, 4, 5):
            assert get_scenario_config(number).coordination_fee == 1950
        for number in (1, 3, 6):
            assert get_scenario_config(number).coordination_fee == 0

    def test_only_scenario_five_seeks_refund(self):
        assert [n for n in range(1, 7) if get_scenario_config(n).seek_refund] == [5]

    def test_range_config(self):
        """Max side uses medtech, min side uses land."""
        high = get_range_config(3, RangePart.MAX)
        low = get_range_config(3, RangePart.MIN)
        assert high.donation_type == DonationType.MEDTECH
        assert low.donation_type == DonationType.LAND
        assert low.progress_message == "Capturing Donation Only minimum (Land)..."
        assert get_scenario_config(3).donation_type == DonationType.MEDTECH

    def test_unknown_scenario(self):
        with pytest.raises(ValueError):
            get_scenario_config(9)


class TestScenarioExecutor:
    """Test each scenario body against the fake workbook."""

    @pytest.fixture
    def client(self):
        return FakeSheetsClient()

    @pytest.fixture
    def executor(self, client):
        return ScenarioExecutor(client)

    def writes(self, client):
        return [call for call in client.calls if call[0] in ("set_cell_value", "set_cell_formula")]

    @pytest.mark.asyncio
    async def test_baseline_steps(self, client, executor, inputs):
        """Baseline clears, zeroes fee and donation, writes inputs, then reads."""
        output = await executor.execute(get_scenario_config(1), inputs, "copy-1")

        assert client.calls[0] == ("cleanup_limited", 3)
        assert self.writes(client) == [
            ("set_cell_value", "E17", 0.0),
            ("set_cell_value", "C92", 0),
        ]
        names = [call[0] for call in client.calls]
        assert names.index("set_user_inputs") < names.index("read_outputs")
        assert names[-1] == "save_scenario_snapshot"
        assert isinstance(output, ScenarioOutput)
        assert client.output_reads == ["scenario1_full"]

    @pytest.mark.asyncio
    async def test_solar_only(self, client, executor, inputs):
        """Solar only restores the pass-through and solves once."""
        await executor.execute(get_scenario_config(2), inputs, "copy-1")

        assert ("set_cell_value", "E17", 1950.0) in client.calls
        assert ("set_cell_formula", "F47", "=F51") in client.calls
        assert client.calls_named("invoke_named_function") == [("invoke_named_function", "solveForITC")]
        assert client.calls_named("read_cell_value") == []
        assert client.calls_named("set_user_inputs") == []

    @pytest.mark.asyncio
    async def test_donation_medtech(self, client, executor, inputs):
        """Medtech parameters and the cap formula are written to the sub-model."""
        await executor.execute(get_range_config(3, RangePart.MAX), inputs, "copy-1")

        assert ("set_cell_formula", "C92", "=MAX(0, B92)") in client.calls
        assert ("set_cell_value", "C90", 0.6) in client.calls
        assert ("set_cell_value", "C88", 5) in client.calls
        assert ("set_cell_formula", "G88", "=MIN(L100, F88)") in client.calls

    @pytest.mark.asyncio
    async def test_donation_only_zeroes_solar_cells(self, client, executor, inputs):
        """Land parameters, no solver, solar-linked cells zeroed."""
        await executor.execute(get_range_config(3, RangePart.MIN), inputs, "copy-1")

        assert ("set_cell_value", "C90", 0.3) in client.calls
        assert ("set_cell_value", "C88", 4.55) in client.calls
        assert ("set_cell_value", "G88", 0) in client.calls
        assert ("set_cell_value", "B43", 0) in client.calls
        assert ("set_cell_value", "F47", 0) in client.calls
        assert client.calls_named("invoke_named_function") == []
        assert client.output_reads == ["scenario3_min"]

    @pytest.mark.asyncio
    async def test_no_refund_positive_transfer_base(self, client, executor, inputs):
        """A positive F51 keeps the pass-through formula without re-solving."""
        client.transfer_base = 1200.0
        await executor.execute(get_range_config(4, RangePart.MAX), inputs, "copy-1")

        assert len(client.calls_named("invoke_named_function")) == 1
        assert self.writes(client)[-1] == ("set_cell_formula", "F47", "=F51")

    @pytest.mark.asyncio
    async def test_no_refund_negative_transfer_base(self, client, executor, inputs):
        """A negative F51 zeroes the pass-through and re-solves exactly once."""
        client.transfer_base = -500.0
        await executor.execute(get_range_config(4, RangePart.MAX), inputs, "copy-1")

        assert client.calls_named("invoke_named_function") == [
            ("invoke_named_function", "solveForITC"),
            ("invoke_named_function", "solveForITC"),
        ]
        assert client.calls_named("read_cell_value") == [("read_cell_value", "F51")]
        assert ("set_cell_value", "F47", 0) in client.calls
        assert client.output_reads == ["scenario4_max"]

    @pytest.mark.asyncio
    async def test_refund_copies_g49(self, client, executor, inputs):
        """Refund path re-solves, then copies G49 into G47."""
        client.refund = 321.0
        await executor.execute(get_range_config(5, RangePart.MAX), inputs, "copy-1")

        assert client.calls_named("invoke_named_function") == [
            ("invoke_named_function", "solveForITCRefund"),
            ("invoke_named_function", "solveForITCRefund"),
        ]
        assert ("set_cell_value", "G47", 321.0) in client.calls
        assert client.output_reads == ["scenario5_max"]

    @pytest.mark.asyncio
    async def test_refund_negative_transfer_base(self, client, executor, inputs):
        client.transfer_base = -1.0
        await executor.execute(get_range_config(5, RangePart.MIN), inputs, "copy-1")

        assert len(client.calls_named("invoke_named_function")) == 2
        assert ("set_cell_value", "F47", 0) in client.calls
        assert ("set_cell_formula", "F47", "=F51") in client.calls

    @pytest.mark.asyncio
    async def test_ctb_setting(self, client, executor, inputs):
        """Scenario 6 sets the CTB formula before reading outputs."""
        await executor.execute(get_range_config(6, RangePart.MAX), inputs, "copy-1")

        assert ("set_cell_formula", "J124", "=I124") in client.calls
        assert client.output_reads == ["scenario6_max"]

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, client, executor, inputs):
        client.fail_on_output = "scenario2_full"
        with pytest.raises(TransportError):
            await executor.execute(get_scenario_config(2), inputs, "copy-1")

    @pytest.mark.asyncio
    async def test_snapshot_failure_is_not_fatal(self, client, inputs):
        """A failed audit copy does not fail the scenario."""
        async def failing_snapshot(scenario_number, inputs):
            raise TransportError("Request failed: createWorkbookCopy: HTTP 500", "createWorkbookCopy", 500)

        client.save_scenario_snapshot = failing_snapshot
        output = await ScenarioExecutor(client).execute(get_scenario_config(1), inputs, "copy-1")
        assert output.agi == 100000

    @pytest.mark.asyncio
    async def test_snapshots_disabled(self, client, inputs):
        await ScenarioExecutor(client, save_snapshots=False).execute(get_scenario_config(1), inputs, "copy-1")
        assert client.calls_named("save_scenario_snapshot") == []


class TestTransferBaseCorrection:
    """Test the clamp-and-resolve rule on its own."""

    @pytest.mark.asyncio
    async def test_applied_only_when_negative(self):
        rule = TransferBaseCorrection(solver="solveForITC")

        client = FakeSheetsClient(transfer_base=-0.01)
        assert await rule.apply(client, "copy-1") is True

        client = FakeSheetsClient(transfer_base=0.0)
        assert await rule.apply(client, "copy-1") is False
        assert client.calls_named("invoke_named_function") == []

    @pytest.mark.asyncio
    async def test_resolve_when_positive(self):
        rule = TransferBaseCorrection(solver="solveForITCRefund", resolve_when_positive=True)
        client = FakeSheetsClient(transfer_base=10.0)

        assert await rule.apply(client, "copy-1") is False
        assert client.calls_named("invoke_named_function") == [("invoke_named_function", "solveForITCRefund")]
