"""
Strategic Partner Estimator - Streamlit App
============================================
Compares what a taxpayer keeps under each strategic-partner scenario.

Flow:
1. Enter income, state and filing status
2. Run the analysis against the calculation workbook (progress bar)
3. Compare scenarios side by side
4. On failure, retry; finished scenarios are not re-run
"""

import sys
import os

# Path setup for Streamlit Cloud
_current_file = os.path.abspath(__file__)
_backend_dir = os.path.dirname(_current_file)
if _backend_dir not in sys.path:
    sys.path.insert(0, _backend_dir)

import asyncio
import logging
from typing import Optional

import streamlit as st
from pydantic import ValidationError

from estimator_constants import (
    DEFAULT_CACHE_PATH,
    FILING_STATUS_LABELS,
    SCENARIO_NAMES,
    US_STATES,
    FilingStatus,
)
from models import AnalysisResult, UserInputs
from orchestrator import PLANS, WorkflowOrchestrator, run_analysis_with_retry
from resume_cache import FileResumeCache
from results_table import build_results_frame, fmt_currency, what_you_keep
from sheets_client import SCRIPT_URL_ENV, ConfigurationError, SheetsClient

logger = logging.getLogger(__name__)


# =============================================================================
# PAGE CONFIGURATION
# =============================================================================

st.set_page_config(
    page_title="Strategic Partner Estimator",
    page_icon="☀️",
    layout="wide",
    initial_sidebar_state="collapsed"
)

st.markdown("""
<style>
    .main .block-container {
        padding-top: 2rem;
        padding-bottom: 2rem;
        max-width: 1100px;
    }

    .main-header {
        text-align: center;
        padding: 2rem 0;
        background: linear-gradient(135deg, #1a1a2e 0%, #16213e 100%);
        border-radius: 16px;
        color: white;
        margin-bottom: 2rem;
    }

    .main-header h1 {
        font-size: 2.3rem;
        margin-bottom: 0.5rem;
    }

    #MainMenu {visibility: hidden;}
    footer {visibility: hidden;}
</style>
""", unsafe_allow_html=True)


PLAN_LABELS = {
    "full": "All scenarios (1-5)",
    "scenario5_only": "Solar + Donation (With Refund) only",
    "scenario6_only": "Donation + CTB",
}


# =============================================================================
# SESSION STATE INITIALIZATION
# =============================================================================

def init_session_state():
    """Initialize all session state variables."""
    if 'inputs' not in st.session_state:
        st.session_state.inputs = None

    if 'plan' not in st.session_state:
        st.session_state.plan = "full"

    if 'result' not in st.session_state:
        st.session_state.result = None

    if 'error' not in st.session_state:
        st.session_state.error = None

init_session_state()


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def get_script_url() -> Optional[str]:
    """Apps Script URL from Streamlit secrets, or the environment."""
    # Try Streamlit secrets first (for deployed apps)
    try:
        if SCRIPT_URL_ENV in st.secrets:
            return st.secrets[SCRIPT_URL_ENV]
    except Exception as e:
        logger.debug(f"No Streamlit secrets available: {e}")

    return os.environ.get(SCRIPT_URL_ENV)


async def _run_analysis(inputs: UserInputs, plan: str, on_progress) -> AnalysisResult:
    cache = FileResumeCache(os.environ.get("ESTIMATOR_CACHE_PATH", DEFAULT_CACHE_PATH))
    async with SheetsClient(script_url=get_script_url()) as client:
        orchestrator = WorkflowOrchestrator(client, cache)
        return await run_analysis_with_retry(orchestrator, inputs, on_progress, plan=plan)


def run_analysis(inputs: UserInputs, plan: str) -> None:
    """Run an analysis with a live progress bar, storing the outcome in session state."""
    st.session_state.inputs = inputs
    st.session_state.plan = plan
    st.session_state.result = None
    st.session_state.error = None

    progress = st.progress(0, "Setting up your analysis...")

    def on_progress(percent: float, message: str) -> None:
        progress.progress(int(percent), message)

    try:
        st.session_state.result = asyncio.run(_run_analysis(inputs, plan, on_progress))
    except ConfigurationError as e:
        st.session_state.error = f"{e} Add it in Streamlit secrets or the environment."
    except Exception as e:
        logger.error(f"Analysis failed: {e}")
        st.session_state.error = str(e) or e.__class__.__name__
    finally:
        progress.empty()


# =============================================================================
# HEADER
# =============================================================================

st.markdown("""
<div class="main-header">
    <h1>☀️ Strategic Partner Estimator</h1>
    <p>See what you keep with solar, donations, or both</p>
</div>
""", unsafe_allow_html=True)

if not get_script_url():
    st.warning(f"🔴 **Calculation backend offline** - Add `{SCRIPT_URL_ENV}` in Streamlit secrets")


# =============================================================================
# INPUT FORM
# =============================================================================

if st.session_state.result is None:
    with st.form("analysis_inputs"):
        st.markdown("### Your Details")

        col1, col2 = st.columns(2)
        with col1:
            name = st.text_input("Name", key="in_name")
            income = st.text_input("Annual Income", placeholder="$500,000", key="in_income")
            avg_income = st.text_input("Known Tax / Average Income", value="0", key="in_avg_income")

        with col2:
            state = st.selectbox("State", US_STATES, index=US_STATES.index("California"), key="in_state")
            filing_status = st.selectbox(
                "Filing Status",
                list(FilingStatus),
                format_func=lambda s: FILING_STATUS_LABELS[s],
                key="in_filing_status",
            )
            plan = st.radio(
                "Scenarios",
                list(PLANS),
                format_func=lambda p: PLAN_LABELS[p],
                key="in_plan",
            )

        skip_min = st.checkbox(
            "Quick estimate (compute each range once)",
            help="Runs only the maximum side of each donation range",
            key="in_skip_min",
        )

        submitted = st.form_submit_button("📊 Run Analysis", type="primary", use_container_width=True)

    if submitted:
        try:
            inputs = UserInputs(
                name=name.strip(),
                income=income,
                avg_income=avg_income,
                state=state,
                filing_status=filing_status,
                skip_range_minimum=skip_min,
            )
        except ValidationError as e:
            for err in e.errors():
                field = ".".join(str(loc) for loc in err["loc"])
                st.error(f"{field}: {err['msg']}")
        else:
            run_analysis(inputs, plan)
            st.rerun()


# =============================================================================
# ERROR PANEL
# =============================================================================

if st.session_state.error:
    st.error(f"❌ **Analysis failed:** {st.session_state.error}")
    st.caption("Finished scenarios are saved for an hour, so a retry picks up where this run stopped.")

    if st.session_state.inputs is not None:
        if st.button("🔁 Retry Analysis", type="primary"):
            run_analysis(st.session_state.inputs, st.session_state.plan)
            st.rerun()


# =============================================================================
# RESULTS
# =============================================================================

if st.session_state.result is not None:
    result: AnalysisResult = st.session_state.result
    inputs: UserInputs = st.session_state.inputs

    st.success("✅ Analysis complete!")
    st.markdown(
        f"**{inputs.name or 'Your'} results** • {fmt_currency(inputs.income)} • "
        f"{inputs.state} • {inputs.filing_status_label}"
    )

    baseline = result.scenario1
    if baseline is not None:
        col1, col2, col3 = st.columns(3)
        with col1:
            st.metric("Taxable Income", fmt_currency(baseline.agi))
        with col2:
            st.metric("Total Tax Due", fmt_currency(baseline.total_tax_due))
        with col3:
            st.metric("What You Keep", fmt_currency(what_you_keep(baseline)))

    st.markdown("### Scenario Comparison")
    st.dataframe(build_results_frame(result), use_container_width=True, hide_index=True)

    if inputs.skip_range_minimum:
        st.caption("Quick estimate: range scenarios show the maximum for both bounds.")

    with st.expander("What do the scenarios mean?"):
        for number in result.completed_scenarios:
            st.markdown(f"- **{SCENARIO_NAMES[number]}**")
        st.caption("Net Gain is measured against Do Nothing.")

    if st.button("🔄 Start a New Analysis", use_container_width=True):
        for key in list(st.session_state.keys()):
            del st.session_state[key]
        st.rerun()
