"""
Strategic Partner Estimator - Constants
========================================
Fixed values shared by the client, the scenario executor and the UI.

The workbook layout (cell addresses, solver names, donation parameters) is
owned by the remote calculation workbook. If the workbook changes, this is
the only file that should need to follow it.
"""

from enum import Enum
from typing import Dict, List

# =============================================================================
# FILING STATUS / DONATION ENUMS
# =============================================================================

class FilingStatus(str, Enum):
    SINGLE = "Single"
    MARRIED_JOINTLY = "MarriedJointly"


FILING_STATUS_LABELS: Dict[FilingStatus, str] = {
    FilingStatus.SINGLE: "Single",
    FilingStatus.MARRIED_JOINTLY: "Married Filing Jointly",
}


class DonationType(str, Enum):
    NONE = "none"
    LAND = "land"        # 30% donation, range minimum
    MEDTECH = "medtech"  # 60% donation, range maximum


class RangePart(str, Enum):
    FULL = "full"
    MAX = "max"
    MIN = "min"


# =============================================================================
# US JURISDICTIONS (50 states + DC)
# =============================================================================

US_STATES: List[str] = [
    "Alabama", "Alaska", "Arizona", "Arkansas", "California", "Colorado",
    "Connecticut", "DC", "Delaware", "Florida", "Georgia", "Hawaii", "Idaho",
    "Illinois", "Indiana", "Iowa", "Kansas", "Kentucky", "Louisiana", "Maine",
    "Maryland", "Massachusetts", "Michigan", "Minnesota", "Mississippi",
    "Missouri", "Montana", "Nebraska", "Nevada", "New Hampshire", "New Jersey",
    "New Mexico", "New York", "North Carolina", "North Dakota", "Ohio",
    "Oklahoma", "Oregon", "Pennsylvania", "Rhode Island", "South Carolina",
    "South Dakota", "Tennessee", "Texas", "Utah", "Vermont", "Virginia",
    "Washington", "West Virginia", "Wisconsin", "Wyoming",
]


# =============================================================================
# SCENARIO NAMES
# =============================================================================

SCENARIO_NAMES: Dict[int, str] = {
    1: "Do Nothing",
    2: "Solar Only",
    3: "Donation Only",
    4: "Solar + Donation (No Refund)",
    5: "Solar + Donation (With Refund)",
    6: "Donation + CTB",
}

BASELINE_SCENARIO = 1
RANGE_SCENARIOS = frozenset({3, 4, 5, 6})
ALL_SCENARIOS = tuple(sorted(SCENARIO_NAMES))

SOLAR_COORDINATION_FEE = 1950


# =============================================================================
# WORKBOOK LAYOUT
# =============================================================================

CELL_COORDINATION_FEE = "E17"
CELL_SOLAR_INVESTMENT = "B43"

# Donation sub-model
CELL_DONATION_AMOUNT = "C92"
CELL_DONATION_PERCENTAGE = "C90"
CELL_DONATION_MULTIPLE = "C88"
CELL_DONATION_CAP = "G88"
DONATION_AMOUNT_FORMULA = "=MAX(0, B92)"

# ITC solver pass-through: F47 mirrors the F51 transfer base
CELL_PASS_THROUGH = "F47"
CELL_TRANSFER_BASE = "F51"
PASS_THROUGH_FORMULA = "=F51"

# Refund path: G49 is only known after the first solve converges
CELL_REFUND_SOURCE = "G49"
CELL_REFUND_TARGET = "G47"

# Scenario 6 CTB setting
CELL_CTB = "J124"
CTB_FORMULA = "=I124"

SOLVER_ITC = "solveForITC"
SOLVER_ITC_REFUND = "solveForITCRefund"

# Per donation type: (percentage, valuation multiple, cap cell value/formula)
DONATION_PROFILES: Dict[DonationType, Dict[str, object]] = {
    DonationType.MEDTECH: {
        "percentage": 0.6,
        "multiple": 5,
        "cap": "=MIN(L100, F88)",
        "label": "Medtech",
    },
    DonationType.LAND: {
        "percentage": 0.3,
        "multiple": 4.55,
        "cap": 0,
        "label": "Land",
    },
}


# =============================================================================
# TIMING / CACHE
# =============================================================================

# Settling delay after every remote write. Raise it if results come back as
# $0, lower it if values are correct but the analysis is slow.
DEFAULT_WAIT_TIME_MS = 100

DEFAULT_REQUEST_TIMEOUT = 60.0

# Resume data older than one hour is discarded
RESUME_TTL_MS = 3_600_000

RETRY_DELAY_SECONDS = 2.0

STORAGE_KEY = "sp_applet_analysis_state"

DEFAULT_CACHE_PATH = ".estimator_cache/analysis_state.json"


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_scenario_name(scenario_number: int) -> str:
    """Display name for a scenario number."""
    if scenario_number not in SCENARIO_NAMES:
        raise ValueError(f"Unknown scenario number: {scenario_number}")
    return SCENARIO_NAMES[scenario_number]


def is_range_scenario(scenario_number: int) -> bool:
    return scenario_number in RANGE_SCENARIOS


def get_donation_profile(donation_type: DonationType) -> Dict[str, object]:
    """
    Workbook parameters for a donation type.

    Raises:
        ValueError: for DonationType.NONE, which has no profile
    """
    if donation_type not in DONATION_PROFILES:
        raise ValueError(f"No donation profile for {donation_type.value!r}")
    return DONATION_PROFILES[donation_type]
