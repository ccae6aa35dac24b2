"""
Shared fixtures: an in-process stand-in for the calculation workbook.
"""

import os
import sys
from typing import Any, Dict, List, Optional, Tuple

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "backend"))

from estimator_constants import (
    CELL_COORDINATION_FEE,
    CELL_CTB,
    CELL_DONATION_AMOUNT,
    CELL_DONATION_PERCENTAGE,
    CELL_REFUND_TARGET,
    CELL_REFUND_SOURCE,
    CELL_TRANSFER_BASE,
    DONATION_AMOUNT_FORMULA,
    SOLAR_COORDINATION_FEE,
)
from models import AnalysisFolder, ScenarioOutput, UserInputs
from resume_cache import InMemoryResumeCache
from sheets_client import TransportError


class FakeSheetsClient:
    """
    Records every call and derives the running scenario from the cells written.

    Args:
        outputs: Per-unit outputs keyed "scenario{N}_{part}"; missing units get
            a deterministic default
        transfer_base: Value returned for the F51 transfer base
        refund: Value returned for the G49 refund source
        fail_on_output: Raise TransportError when this unit's outputs are read
    """

    def __init__(
        self,
        outputs: Optional[Dict[str, Dict[str, float]]] = None,
        transfer_base: float = 1000.0,
        refund: float = 250.0,
        fail_on_output: Optional[str] = None,
    ):
        self.outputs = outputs or {}
        self.transfer_base = transfer_base
        self.refund = refund
        self.fail_on_output = fail_on_output
        self.calls: List[Tuple[Any, ...]] = []
        self.cells: Dict[str, Any] = {}
        self.inputs: Optional[UserInputs] = None
        self.output_reads: List[str] = []
        self.deleted: List[str] = []
        self.copies = 0

    # Lifecycle

    async def create_folder(self, inputs):
        self.calls.append(("create_folder",))
        return AnalysisFolder(folderId="folder-1", folderUrl="https://drive.test/folder-1")

    async def create_working_copy(self, folder_id):
        self.copies += 1
        self.calls.append(("create_working_copy", folder_id))
        return f"copy-{self.copies}"

    async def delete_working_copy(self, handle):
        self.calls.append(("delete_working_copy", handle))
        self.deleted.append(handle)

    async def set_user_inputs(self, inputs, handle):
        self.calls.append(("set_user_inputs", handle))
        self.inputs = inputs

    async def cleanup(self, handle):
        self.calls.append(("cleanup", handle))
        self.cells.clear()

    async def cleanup_limited(self, handle, settle_multiplier=1.0):
        self.calls.append(("cleanup_limited", settle_multiplier))
        self.cells.clear()

    async def aclose(self):
        self.calls.append(("aclose",))

    # Cells

    async def set_cell_value(self, cell, value, handle):
        self.calls.append(("set_cell_value", cell, value))
        self.cells[cell] = value

    async def set_cell_formula(self, cell, formula, handle):
        self.calls.append(("set_cell_formula", cell, formula))
        self.cells[cell] = formula

    async def invoke_named_function(self, name, handle):
        self.calls.append(("invoke_named_function", name))

    async def force_recalculate(self, handle):
        self.calls.append(("force_recalculate",))

    async def read_cell_value(self, cell, handle):
        self.calls.append(("read_cell_value", cell))
        if cell == CELL_TRANSFER_BASE:
            return self.transfer_base
        if cell == CELL_REFUND_SOURCE:
            return self.refund
        return 0.0

    async def read_outputs(self, handle):
        key = self.current_unit()
        self.calls.append(("read_outputs", key))
        if key == self.fail_on_output:
            raise TransportError(f"Request failed: getOutputs: HTTP 500 ({key})", "getOutputs", 500)
        self.output_reads.append(key)
        return ScenarioOutput.model_validate(self.outputs.get(key) or self.default_output(key))

    async def save_scenario_snapshot(self, scenario_number, inputs):
        self.calls.append(("save_scenario_snapshot", scenario_number))
        return {}

    # Helpers

    def current_unit(self) -> str:
        """Unit key implied by the cells the executor wrote."""
        solar = self.cells.get(CELL_COORDINATION_FEE) == SOLAR_COORDINATION_FEE
        donating = self.cells.get(CELL_DONATION_AMOUNT) == DONATION_AMOUNT_FORMULA

        if not donating:
            return "scenario2_full" if solar else "scenario1_full"

        part = "max" if self.cells.get(CELL_DONATION_PERCENTAGE) == 0.6 else "min"
        if solar:
            number = 5 if CELL_REFUND_TARGET in self.cells else 4
        else:
            number = 6 if CELL_CTB in self.cells else 3
        return f"scenario{number}_{part}"

    def default_output(self, key: str) -> Dict[str, float]:
        number = int(key[len("scenario"):key.index("_")])
        offset = 500 if key.endswith("_min") else 0
        return {
            "agi": 100000 - 1000 * (number - 1) - offset,
            "totalTaxDue": 20000 - 2000 * (number - 1) + offset,
            "totalNetGain": 1000 * (number - 1) - offset,
        }

    def calls_named(self, name: str) -> List[Tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == name]


@pytest.fixture
def inputs():
    return UserInputs(
        name="Jane Doe",
        income=100000,
        state="California",
        filingStatus="Single",
    )


@pytest.fixture
def quick_inputs():
    return UserInputs(
        name="Jane Doe",
        income=100000,
        state="California",
        filingStatus="Single",
        skipScenario5Min=True,
    )


@pytest.fixture
def fake_client():
    return FakeSheetsClient()


@pytest.fixture
def cache():
    return InMemoryResumeCache()
