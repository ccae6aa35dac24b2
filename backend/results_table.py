"""
Strategic Partner Estimator - Results Table
============================================
Turns an AnalysisResult into the comparison table shown to the user.
"""

from typing import Dict, List, Optional, Tuple, Union

import pandas as pd

from estimator_constants import SCENARIO_NAMES
from models import AnalysisResult, RangeOutput, ScenarioOutput

Amount = Union[float, Tuple[float, float]]

COLUMNS = ["Scenario", "Taxable Income", "Total Tax Due", "What You Keep", "Net Gain"]


def fmt_currency(amount: Optional[float]) -> str:
    """Format number as whole-dollar currency."""
    if amount is None or amount != amount:
        return "$0"
    if amount < 0:
        return f"-${abs(amount):,.0f}"
    return f"${amount:,.0f}"


def format_amount(value: Amount) -> str:
    """Single value, or "low - high" with the smaller bound first."""
    if isinstance(value, tuple):
        low, high = sorted(value)
        return f"{fmt_currency(low)} - {fmt_currency(high)}"
    return fmt_currency(value)


def what_you_keep(value: Union[ScenarioOutput, RangeOutput]) -> Amount:
    """
    Taxable income minus tax due.

    For a range the worst case pairs the lowest income with the highest tax,
    the best case the highest income with the lowest tax.
    """
    if isinstance(value, RangeOutput):
        return (
            value.min.agi - value.max.total_tax_due,
            value.max.agi - value.min.total_tax_due,
        )
    return value.what_you_keep


def _field(value: Union[ScenarioOutput, RangeOutput], name: str) -> Amount:
    if isinstance(value, RangeOutput):
        return (getattr(value.min, name), getattr(value.max, name))
    return getattr(value, name)


def build_rows(result: AnalysisResult) -> List[Dict[str, Amount]]:
    """Raw (unformatted) rows for every scenario that was run."""
    rows = []
    for number in result.completed_scenarios:
        value = result.get(number)
        rows.append({
            "Scenario": SCENARIO_NAMES[number],
            "Taxable Income": _field(value, "agi"),
            "Total Tax Due": _field(value, "total_tax_due"),
            "What You Keep": what_you_keep(value),
            "Net Gain": _field(value, "total_net_gain"),
        })
    return rows


def build_results_frame(result: AnalysisResult) -> pd.DataFrame:
    """Formatted comparison table, one row per scenario that was run."""
    rows = build_rows(result)
    frame = pd.DataFrame(rows, columns=COLUMNS)
    for column in COLUMNS[1:]:
        frame[column] = frame[column].map(format_amount)
    return frame
