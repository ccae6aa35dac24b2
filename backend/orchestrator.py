"""
Strategic Partner Estimator - Workflow Orchestrator
====================================================
Drives a complete analysis: one baseline plus the selected variants, each
range variant computed twice (max / min).

Run lifecycle:

    INIT -> FOLDER_CREATED -> WORKING_COPY_CREATED -> PREPARED
         -> [SCENARIO_RUNNING -> SCENARIO_DONE]* -> CLEANED_UP -> COMPLETE
    (FAILED is reachable from any step)

Every completed unit is written to the resume cache before the next one
starts, so a crash never loses finished work. The cache is only cleared after
the whole run succeeded. Mid-run errors are not caught here; the only retry is
the whole-run retry in run_analysis_with_retry.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from estimator_constants import (
    BASELINE_SCENARIO,
    RETRY_DELAY_SECONDS,
    RangePart,
    get_scenario_name,
    is_range_scenario,
)
from models import AnalysisResult, RangeOutput, RunStage, ScenarioOutput, ScenarioValue, UserInputs
from resume_cache import ResumeCache, cache_key, generate_analysis_id
from scenario_executor import RANGE_PARTS, ScenarioExecutor, get_range_config, get_scenario_config
from sheets_client import ConfigurationError, SheetsClient, SheetsClientError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


# =============================================================================
# PROGRESS
# =============================================================================

class ProgressReporter:
    """
    Wraps a progress callback so the reported percentage never goes down.

    A None percent is a message-only update at the current percentage.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self.callback = callback
        self.percent = 0.0

    def __call__(self, percent: Optional[float], message: str) -> None:
        if percent is not None:
            self.percent = max(self.percent, min(100.0, float(percent)))
        logger.debug(f"Progress {self.percent:.0f}%: {message}")
        if self.callback is not None:
            self.callback(self.percent, message)


# =============================================================================
# PLANS
# =============================================================================

@dataclass(frozen=True)
class AnalysisPlan:
    """
    Ordered scenarios of one run and the progress reported as each unit starts.

    checkpoints maps "scenario{N}_{part}" to a percentage.
    """

    name: str
    scenarios: Tuple[int, ...]
    checkpoints: Dict[str, float] = field(default_factory=dict)
    cache_suffix: str = ""

    def units(self) -> List[Tuple[int, RangePart]]:
        units = []
        for number in self.scenarios:
            if is_range_scenario(number):
                units.extend((number, part) for part, _, _ in RANGE_PARTS)
            else:
                units.append((number, RangePart.FULL))
        return units

    def checkpoint(self, scenario_number: int, part: RangePart) -> Optional[float]:
        return self.checkpoints.get(cache_key(scenario_number, part))

    @classmethod
    def for_scenarios(cls, scenarios: Iterable[int], name: str = "custom", cache_suffix: str = "") -> "AnalysisPlan":
        """
        Plan for an arbitrary selection.

        The baseline is always included and always runs first, since every
        other scenario's net gain is measured against it.
        """
        selected = set(scenarios)
        for number in selected:
            get_scenario_name(number)
        selected.discard(BASELINE_SCENARIO)
        ordered = (BASELINE_SCENARIO,) + tuple(sorted(selected))

        plan = cls(name=name, scenarios=ordered, cache_suffix=cache_suffix)
        units = plan.units()
        checkpoints = {
            cache_key(number, part): round(10 + 80 * i / len(units), 1)
            for i, (number, part) in enumerate(units)
        }
        return cls(name=name, scenarios=ordered, checkpoints=checkpoints, cache_suffix=cache_suffix)


PLANS: Dict[str, AnalysisPlan] = {
    "full": AnalysisPlan(
        name="full",
        scenarios=(1, 2, 3, 4, 5),
        checkpoints={
            "scenario1_full": 10,
            "scenario2_full": 20,
            "scenario3_max": 35,
            "scenario3_min": 50,
            "scenario4_max": 55,
            "scenario4_min": 70,
            "scenario5_max": 75,
            "scenario5_min": 90,
        },
    ),
    "scenario5_only": AnalysisPlan(
        name="scenario5_only",
        scenarios=(1, 5),
        checkpoints={"scenario1_full": 10, "scenario5_max": 50, "scenario5_min": 80},
    ),
    "scenario6_only": AnalysisPlan(
        name="scenario6_only",
        scenarios=(1, 3, 6),
        checkpoints={
            "scenario1_full": 10,
            "scenario3_max": 30,
            "scenario3_min": 50,
            "scenario6_max": 70,
            "scenario6_min": 90,
        },
        cache_suffix="_scenario6",
    ),
}


def resolve_plan(
    plan: Union[str, AnalysisPlan] = "full",
    scenarios: Optional[Sequence[int]] = None,
) -> AnalysisPlan:
    """Named plan, explicit plan, or a custom plan built from a scenario selection."""
    if scenarios is not None:
        return AnalysisPlan.for_scenarios(scenarios)
    if isinstance(plan, AnalysisPlan):
        return plan
    if plan not in PLANS:
        raise ValueError(f"Unknown analysis plan: {plan!r}. Expected one of {sorted(PLANS)}")
    return PLANS[plan]


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class WorkflowOrchestrator:
    """
    Runs every scenario of a plan, exactly once per unit of work.

    Args:
        client: Remote calculation client
        cache: Resume cache shared across retries of the same analysis
        executor: Scenario executor (defaults to one bound to ``client``)
        delete_working_copy: Delete the working copy after a successful run
    """

    def __init__(
        self,
        client: SheetsClient,
        cache: ResumeCache,
        executor: Optional[ScenarioExecutor] = None,
        delete_working_copy: bool = True,
    ):
        self.client = client
        self.cache = cache
        self.executor = executor or ScenarioExecutor(client)
        self.delete_working_copy = delete_working_copy
        self.stage = RunStage.INIT
        self.analysis_id: Optional[str] = None

    def _advance(self, stage: RunStage, detail: str = "") -> None:
        self.stage = stage
        logger.info(f"[{self.analysis_id}] {stage.value}{': ' + detail if detail else ''}")

    async def run(
        self,
        inputs: UserInputs,
        on_progress: Optional[ProgressCallback] = None,
        plan: Union[str, AnalysisPlan] = "full",
        scenarios: Optional[Sequence[int]] = None,
    ) -> AnalysisResult:
        """
        Run one analysis to completion.

        Returns:
            AnalysisResult with every planned scenario filled in

        Raises:
            Whatever the client or executor raised; the resume cache keeps
            the units completed before the failure.
        """
        plan = resolve_plan(plan, scenarios)
        progress = ProgressReporter(on_progress)
        self.analysis_id = generate_analysis_id(inputs, plan.cache_suffix)
        self.stage = RunStage.INIT

        try:
            progress(0, "Setting up your analysis...")

            completed = self.cache.get(self.analysis_id)
            if completed:
                logger.info(f"Resuming {self.analysis_id}. Completed: {sorted(completed)}")
                progress(0, "Resuming from previous run...")

            progress(2, "Creating analysis folder...")
            folder = await self.client.create_folder(inputs)
            self._advance(RunStage.FOLDER_CREATED, folder.folder_id)

            progress(5, "Creating working copy...")
            handle = await self.client.create_working_copy(folder.folder_id)
            self._advance(RunStage.WORKING_COPY_CREATED, handle)

            # Known-clean baseline state before any scenario runs
            progress(8, "Preparing working copy...")
            await self.client.cleanup(handle)
            await self.client.set_user_inputs(inputs, handle)
            await self.client.cleanup_limited(handle)
            self._advance(RunStage.PREPARED)

            results: Dict[int, ScenarioValue] = {}
            for number in plan.scenarios:
                if is_range_scenario(number):
                    results[number] = await self._run_range(number, inputs, handle, plan, completed, progress)
                else:
                    results[number] = await self._run_unit(
                        number, RangePart.FULL, inputs, handle, plan, completed, progress
                    )

            if self.delete_working_copy:
                await self._delete_working_copy(handle)
            self._advance(RunStage.CLEANED_UP)

            self.cache.clear(self.analysis_id)
            progress(100, "Analysis complete!")
            self._advance(RunStage.COMPLETE)

            return AnalysisResult.from_scenarios(results)

        except Exception as e:
            self._advance(RunStage.FAILED, str(e))
            logger.error(f"Error running scenarios for {self.analysis_id}: {e}")
            logger.info("Keeping completed scenarios in the resume cache")
            raise

    async def _run_range(
        self,
        number: int,
        inputs: UserInputs,
        handle: str,
        plan: AnalysisPlan,
        completed: Dict[str, ScenarioOutput],
        progress: ProgressReporter,
    ) -> RangeOutput:
        maximum = await self._run_unit(number, RangePart.MAX, inputs, handle, plan, completed, progress)

        if inputs.skip_range_minimum:
            return RangeOutput(min=maximum, max=maximum)

        minimum = await self._run_unit(number, RangePart.MIN, inputs, handle, plan, completed, progress)
        return RangeOutput(min=minimum, max=maximum)

    async def _run_unit(
        self,
        number: int,
        part: RangePart,
        inputs: UserInputs,
        handle: str,
        plan: AnalysisPlan,
        completed: Dict[str, ScenarioOutput],
        progress: ProgressReporter,
    ) -> ScenarioOutput:
        key = cache_key(number, part)
        percent = plan.checkpoint(number, part)
        label = _unit_label(number, part)

        if key in completed:
            logger.info(f"Using cached {key}")
            progress(percent, f"Using cached {label}...")
            return completed[key]

        progress(percent, f"Running {label}...")
        if part == RangePart.FULL:
            config = get_scenario_config(number)
        else:
            config = get_range_config(number, part)

        self._advance(RunStage.SCENARIO_RUNNING, key)
        progress(None, config.progress_message)
        output = await self.executor.execute(config, inputs, handle)

        # Persist before anything else can fail
        self.cache.put(self.analysis_id, number, part, output)
        self._advance(RunStage.SCENARIO_DONE, key)
        return output

    async def _delete_working_copy(self, handle: str) -> None:
        # Every result is already in hand; a leaked copy is not worth failing the run for
        try:
            await self.client.delete_working_copy(handle)
        except SheetsClientError as e:
            logger.warning(f"Failed to delete working copy {handle}: {e}")


def _unit_label(number: int, part: RangePart) -> str:
    name = "Baseline" if number == BASELINE_SCENARIO else get_scenario_name(number)
    if part == RangePart.FULL:
        return f"Scenario {number}: {name}"
    for range_part, donation_type, bound in RANGE_PARTS:
        if range_part == part:
            return f"Scenario {number}: {name} - {bound.title()} ({donation_type.value.title()})"
    raise ValueError(f"Unknown part: {part!r}")


# =============================================================================
# TOP-LEVEL RETRY
# =============================================================================

async def run_analysis_with_retry(
    orchestrator: WorkflowOrchestrator,
    inputs: UserInputs,
    on_progress: Optional[ProgressCallback] = None,
    plan: Union[str, AnalysisPlan] = "full",
    scenarios: Optional[Sequence[int]] = None,
    retry_delay: float = RETRY_DELAY_SECONDS,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AnalysisResult:
    """
    Run an analysis, retrying the whole run once after ``retry_delay`` seconds.

    The retry does not care which scenario failed: the resume cache makes the
    second attempt skip everything already finished. A second failure
    propagates. Configuration errors and unknown plans are never retried.
    """
    plan = resolve_plan(plan, scenarios)

    try:
        return await orchestrator.run(inputs, on_progress, plan=plan)
    except ConfigurationError:
        raise
    except Exception as e:
        logger.warning(f"Analysis failed ({e}); retrying once in {retry_delay}s")

    await sleep(retry_delay)
    return await orchestrator.run(inputs, on_progress, plan=plan)
