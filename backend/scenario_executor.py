"""
Strategic Partner Estimator - Scenario Executor
================================================
Runs one scenario variant against a working copy and returns its outputs.

The workbook is stateful and order-dependent, so the steps below always run
in the same order:

1. limited cleanup of the previous scenario's transient cells (triple settle)
2. coordination fee
3. donation sub-model
4. user inputs (baseline only)
5. solar / donation branch, including the negative transfer-base correction
6. CTB setting (scenario 6)
7. recalculate and read outputs
8. best-effort workbook snapshot

The executor does not retry and does not catch transport errors, except for
the snapshot, which never decides the fate of a scenario.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Tuple

from estimator_constants import (
    CELL_COORDINATION_FEE,
    CELL_CTB,
    CELL_DONATION_AMOUNT,
    CELL_DONATION_CAP,
    CELL_DONATION_MULTIPLE,
    CELL_DONATION_PERCENTAGE,
    CELL_PASS_THROUGH,
    CELL_REFUND_SOURCE,
    CELL_REFUND_TARGET,
    CELL_SOLAR_INVESTMENT,
    CELL_TRANSFER_BASE,
    CTB_FORMULA,
    DONATION_AMOUNT_FORMULA,
    PASS_THROUGH_FORMULA,
    SCENARIO_NAMES,
    SOLAR_COORDINATION_FEE,
    SOLVER_ITC,
    SOLVER_ITC_REFUND,
    DonationType,
    RangePart,
    get_donation_profile,
)
from models import ScenarioConfig, ScenarioOutput, UserInputs
from sheets_client import SheetsClient, TransportError

logger = logging.getLogger(__name__)


# =============================================================================
# SCENARIO CATALOG
# =============================================================================

SCENARIO_CONFIGS: Dict[int, ScenarioConfig] = {
    1: ScenarioConfig(
        scenario_number=1,
        title=SCENARIO_NAMES[1],
        progress_message="Capturing baseline results...",
    ),
    2: ScenarioConfig(
        scenario_number=2,
        title=SCENARIO_NAMES[2],
        solar=True,
        coordination_fee=SOLAR_COORDINATION_FEE,
        progress_message="Capturing Solar Only results...",
    ),
    3: ScenarioConfig(
        scenario_number=3,
        title=SCENARIO_NAMES[3],
        donation_type=DonationType.MEDTECH,
    ),
    4: ScenarioConfig(
        scenario_number=4,
        title=SCENARIO_NAMES[4],
        solar=True,
        coordination_fee=SOLAR_COORDINATION_FEE,
        donation_type=DonationType.MEDTECH,
    ),
    5: ScenarioConfig(
        scenario_number=5,
        title=SCENARIO_NAMES[5],
        solar=True,
        coordination_fee=SOLAR_COORDINATION_FEE,
        donation_type=DonationType.MEDTECH,
        seek_refund=True,
    ),
    6: ScenarioConfig(
        scenario_number=6,
        title=SCENARIO_NAMES[6],
        donation_type=DonationType.MEDTECH,
        apply_ctb=True,
    ),
}

RANGE_PARTS: Tuple[Tuple[RangePart, DonationType, str], ...] = (
    (RangePart.MAX, DonationType.MEDTECH, "maximum"),
    (RangePart.MIN, DonationType.LAND, "minimum"),
)


def get_scenario_config(scenario_number: int) -> ScenarioConfig:
    if scenario_number not in SCENARIO_CONFIGS:
        raise ValueError(f"Unknown scenario number: {scenario_number}")
    return SCENARIO_CONFIGS[scenario_number]


def get_range_config(scenario_number: int, part: RangePart) -> ScenarioConfig:
    """Config for the max (medtech) or min (land) side of a range scenario."""
    base = get_scenario_config(scenario_number)
    for range_part, donation_type, bound in RANGE_PARTS:
        if range_part == part:
            label = get_donation_profile(donation_type)["label"]
            return base.with_donation(
                donation_type,
                f"Capturing {base.title} {bound} ({label})...",
            )
    raise ValueError(f"Not a range part: {part!r}")


# =============================================================================
# DOMAIN RULE: NEGATIVE TRANSFER BASE
# =============================================================================

@dataclass(frozen=True)
class TransferBaseCorrection:
    """
    If the computed transfer base is negative, clamp and re-solve.

    The ITC solver cannot converge on a negative F51, so the pass-through
    cell is zeroed and the solver runs exactly once more. Otherwise the
    pass-through formula is restored, and re-solved when
    ``resolve_when_positive`` is set (refund path).
    """

    solver: str
    resolve_when_positive: bool = False

    async def apply(self, client: SheetsClient, handle: str) -> bool:
        """Returns True when the correction was applied."""
        transfer_base = await client.read_cell_value(CELL_TRANSFER_BASE, handle)

        if transfer_base < 0:
            logger.info(
                f"Transfer base {CELL_TRANSFER_BASE}={transfer_base} is negative; "
                f"clamping {CELL_PASS_THROUGH} and re-running {self.solver}"
            )
            await client.set_cell_value(CELL_PASS_THROUGH, 0, handle)
            await client.invoke_named_function(self.solver, handle)
            return True

        await client.set_cell_formula(CELL_PASS_THROUGH, PASS_THROUGH_FORMULA, handle)
        if self.resolve_when_positive:
            await client.invoke_named_function(self.solver, handle)
        return False


NO_REFUND_CORRECTION = TransferBaseCorrection(solver=SOLVER_ITC)
REFUND_CORRECTION = TransferBaseCorrection(solver=SOLVER_ITC_REFUND, resolve_when_positive=True)


# =============================================================================
# EXECUTOR
# =============================================================================

class ScenarioExecutor:
    """
    One parameterized algorithm for all six scenario bodies.

    Args:
        client: Remote calculation client bound to the workbook
        save_snapshots: Save a workbook copy per scenario for audit
    """

    def __init__(self, client: SheetsClient, save_snapshots: bool = True):
        self.client = client
        self.save_snapshots = save_snapshots

    async def execute(self, config: ScenarioConfig, inputs: UserInputs, handle: str) -> ScenarioOutput:
        """Run one scenario against the working copy and return its outputs."""
        client = self.client
        logger.info(
            f"Scenario {config.scenario_number} ({config.title}): "
            f"solar={config.solar} donation={config.donation_type.value} refund={config.seek_refund}"
        )

        # Previous scenario's intermediate writes must not leak into this one;
        # the usual settle plus two more before the first write
        await client.cleanup_limited(handle, settle_multiplier=3)

        await client.set_cell_value(CELL_COORDINATION_FEE, config.coordination_fee, handle)
        await self._configure_donation(config, handle)

        if config.is_baseline:
            await client.set_user_inputs(inputs, handle)

        await self._apply_branch(config, handle)

        if config.apply_ctb:
            await client.set_cell_formula(CELL_CTB, CTB_FORMULA, handle)

        outputs = await client.read_outputs(handle)
        logger.info(
            f"Scenario {config.scenario_number} outputs: agi={outputs.agi} "
            f"tax_due={outputs.total_tax_due} net_gain={outputs.total_net_gain}"
        )

        if self.save_snapshots:
            await self._save_snapshot(config, inputs)

        return outputs

    async def _configure_donation(self, config: ScenarioConfig, handle: str) -> None:
        client = self.client
        if not config.has_donation:
            await client.set_cell_value(CELL_DONATION_AMOUNT, 0, handle)
            return

        profile = get_donation_profile(config.donation_type)
        await client.set_cell_formula(CELL_DONATION_AMOUNT, DONATION_AMOUNT_FORMULA, handle)
        await client.set_cell_value(CELL_DONATION_PERCENTAGE, profile["percentage"], handle)
        await client.set_cell_value(CELL_DONATION_MULTIPLE, profile["multiple"], handle)

        cap = profile["cap"]
        if isinstance(cap, str) and cap.startswith("="):
            await client.set_cell_formula(CELL_DONATION_CAP, cap, handle)
        else:
            await client.set_cell_value(CELL_DONATION_CAP, cap, handle)

    async def _apply_branch(self, config: ScenarioConfig, handle: str) -> None:
        client = self.client

        if config.solar and not config.has_donation:
            await client.set_cell_formula(CELL_PASS_THROUGH, PASS_THROUGH_FORMULA, handle)
            await client.invoke_named_function(SOLVER_ITC, handle)

        elif config.solar and config.seek_refund:
            # Two-stage solve: G49 is only available after the first solve converges
            await client.set_cell_formula(CELL_PASS_THROUGH, PASS_THROUGH_FORMULA, handle)
            await client.invoke_named_function(SOLVER_ITC_REFUND, handle)
            await REFUND_CORRECTION.apply(client, handle)

            refund = await client.read_cell_value(CELL_REFUND_SOURCE, handle)
            await client.set_cell_value(CELL_REFUND_TARGET, refund, handle)

        elif config.solar:
            await client.set_cell_formula(CELL_PASS_THROUGH, PASS_THROUGH_FORMULA, handle)
            await client.invoke_named_function(SOLVER_ITC, handle)
            await NO_REFUND_CORRECTION.apply(client, handle)

        elif config.has_donation:
            # Solar-linked cells are not zero under the donation-only parameters
            await client.set_cell_value(CELL_SOLAR_INVESTMENT, 0, handle)
            await client.set_cell_value(CELL_PASS_THROUGH, 0, handle)

    async def _save_snapshot(self, config: ScenarioConfig, inputs: UserInputs) -> None:
        try:
            await self.client.save_scenario_snapshot(config.scenario_number, inputs)
        except TransportError as e:
            logger.warning(f"Workbook snapshot for scenario {config.scenario_number} failed: {e}")
