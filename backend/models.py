"""
Strategic Partner Estimator - Data Models
==========================================
Pydantic models for everything that crosses a boundary.

These models serve as the contract between:
- the remote calculation workbook (wire names such as ``totalTaxDue``)
- the resume cache (JSON persisted between runs)
- the scenario executor / orchestrator
- the API and UI layers
"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, computed_field, field_validator

from estimator_constants import (
    ALL_SCENARIOS,
    BASELINE_SCENARIO,
    FILING_STATUS_LABELS,
    US_STATES,
    DonationType,
    FilingStatus,
    get_scenario_name,
)


# =============================================================================
# ENUMS
# =============================================================================

class RunStage(str, Enum):
    INIT = "init"
    FOLDER_CREATED = "folder_created"
    WORKING_COPY_CREATED = "working_copy_created"
    PREPARED = "prepared"
    SCENARIO_RUNNING = "scenario_running"
    SCENARIO_DONE = "scenario_done"
    CLEANED_UP = "cleaned_up"
    COMPLETE = "complete"
    FAILED = "failed"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def parse_currency(value: Any) -> float:
    """
    Parse "$1,234,420", "1234420" or a number into a float.

    Blank values parse to 0.0; anything else that is not numeric raises
    ValueError.
    """
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    cleaned = re.sub(r"[$,\s]", "", str(value))
    if not cleaned:
        return 0.0
    return float(cleaned)


# =============================================================================
# USER INPUTS
# =============================================================================

class UserInputs(BaseModel):
    """
    Taxpayer-provided parameters for one analysis run.

    Frozen: the same instance is handed to every scenario of a run.
    Wire names match the fields the Apps Script ``setInputs`` action reads.
    """

    name: str = ""
    income: float = Field(gt=0, description="Annual income")
    avg_income: float = Field(
        default=0.0,
        ge=0,
        alias="avgIncome",
        description="Secondary income / known-tax figure",
    )
    state: str
    filing_status: FilingStatus = Field(alias="filingStatus")
    skip_range_minimum: bool = Field(
        default=False,
        alias="skipScenario5Min",
        description="Compute range scenarios once and report max as min",
    )

    class Config:
        frozen = True
        populate_by_name = True

    @field_validator("income", "avg_income", mode="before")
    @classmethod
    def parse_currency_fields(cls, v):
        return parse_currency(v)

    @field_validator("state")
    @classmethod
    def validate_state(cls, v):
        if v not in US_STATES:
            raise ValueError(f"Unknown state: {v!r}")
        return v

    @field_validator("filing_status", mode="before")
    @classmethod
    def normalize_filing_status(cls, v):
        if isinstance(v, FilingStatus):
            return v
        v_lower = str(v).lower().replace("_", "").replace(" ", "")
        mapping = {
            "single": FilingStatus.SINGLE,
            "marriedjointly": FilingStatus.MARRIED_JOINTLY,
            "marriedfilingjointly": FilingStatus.MARRIED_JOINTLY,
        }
        return mapping.get(v_lower, v)

    @property
    def filing_status_label(self) -> str:
        return FILING_STATUS_LABELS[self.filing_status]

    def to_sheet_payload(self) -> Dict[str, Any]:
        """Inputs keyed by the names the workbook expects."""
        return self.model_dump(by_alias=True, mode="json")


# =============================================================================
# SCENARIO CONFIGURATION
# =============================================================================

class ScenarioConfig(BaseModel):
    """One scenario variant. Defined statically per scenario number."""

    scenario_number: int = Field(ge=1, le=6)
    title: str
    solar: bool = False
    coordination_fee: float = Field(default=0.0, ge=0)
    donation_type: DonationType = DonationType.NONE
    seek_refund: bool = False
    apply_ctb: bool = False
    progress_message: str = ""

    class Config:
        frozen = True

    @property
    def is_baseline(self) -> bool:
        return self.scenario_number == BASELINE_SCENARIO

    @property
    def has_donation(self) -> bool:
        return self.donation_type != DonationType.NONE

    def with_donation(self, donation_type: DonationType, progress_message: str) -> "ScenarioConfig":
        """Copy of this config swept to another donation type (range parts)."""
        return self.model_copy(
            update={"donation_type": donation_type, "progress_message": progress_message}
        )


# =============================================================================
# OUTPUTS
# =============================================================================

class ScenarioOutput(BaseModel):
    """Normalized result of one executor run, as read from the output cells."""

    agi: float = Field(default=0.0, description="Taxable income (AGI-like)")
    total_tax_due: float = Field(default=0.0, alias="totalTaxDue")
    total_net_gain: float = Field(
        default=0.0,
        alias="totalNetGain",
        description="Gain relative to the baseline scenario",
    )

    class Config:
        populate_by_name = True

    @field_validator("agi", "total_tax_due", "total_net_gain", mode="before")
    @classmethod
    def coerce_cell_value(cls, v):
        # Blank cells come back from the workbook as ""
        return parse_currency(v)

    @computed_field
    @property
    def what_you_keep(self) -> float:
        """Taxable income minus total tax due."""
        return self.agi - self.total_tax_due

    def to_payload(self) -> Dict[str, float]:
        return self.model_dump(by_alias=True, exclude={"what_you_keep"})


class RangeOutput(BaseModel):
    """Low/high bound of a donation-percentage sweep."""

    min: ScenarioOutput
    max: ScenarioOutput

    @property
    def is_degenerate(self) -> bool:
        return self.min == self.max

    def to_payload(self) -> Dict[str, Dict[str, float]]:
        return {"min": self.min.to_payload(), "max": self.max.to_payload()}


ScenarioValue = Union[RangeOutput, ScenarioOutput]


class AnalysisResult(BaseModel):
    """
    Aggregated result of one run, keyed by scenario number.

    Scenarios that were not selected stay None.
    """

    scenario1: Optional[ScenarioOutput] = None
    scenario2: Optional[ScenarioOutput] = None
    scenario3: Optional[RangeOutput] = None
    scenario4: Optional[RangeOutput] = None
    scenario5: Optional[RangeOutput] = None
    scenario6: Optional[RangeOutput] = None

    @classmethod
    def from_scenarios(cls, results: Dict[int, ScenarioValue]) -> "AnalysisResult":
        return cls(**{f"scenario{number}": value for number, value in results.items()})

    def get(self, scenario_number: int) -> Optional[ScenarioValue]:
        get_scenario_name(scenario_number)
        return getattr(self, f"scenario{scenario_number}")

    @property
    def completed_scenarios(self) -> List[int]:
        return [n for n in ALL_SCENARIOS if self.get(n) is not None]

    def to_payload(self) -> Dict[str, Any]:
        """Output contract for the presentation layer."""
        payload: Dict[str, Any] = {}
        for number in ALL_SCENARIOS:
            value = self.get(number)
            payload[f"scenario{number}"] = value.to_payload() if value is not None else None
        return payload


# =============================================================================
# REMOTE RESOURCES / CACHE
# =============================================================================

class AnalysisFolder(BaseModel):
    """Folder the workbook copies of one analysis are written to."""

    folder_id: str = Field(alias="folderId")
    folder_url: Optional[str] = Field(default=None, alias="folderUrl")
    folder_name: Optional[str] = Field(default=None, alias="folderName")

    class Config:
        populate_by_name = True


class CacheEntry(BaseModel):
    """Completed units of one analysis, keyed "scenario{N}_{part}"."""

    completed: Dict[str, ScenarioOutput] = Field(default_factory=dict)
    timestamp: float = Field(description="Epoch milliseconds of the last update")
