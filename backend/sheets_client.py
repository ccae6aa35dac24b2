"""
Strategic Partner Estimator - Remote Calculation Client
========================================================
Thin async transport over the Google Apps Script web app that fronts the
calculation workbook.

Every call is one HTTP round trip against a single configured endpoint,
parameterized by an ``action`` query value:

- write-only actions are POSTed with a JSON body; the response body is not read
- read actions are GET requests with query parameters and return JSON

The workbook recalculates asynchronously, so every write is followed by a
settling delay. The delay is a strategy object and can be swapped for a
readiness poll without touching the executor or orchestrator.

Nothing is cached here and nothing is retried here: failures raise
TransportError and propagate to the caller.
"""

import asyncio
import json
import logging
import os
from typing import Any, Dict, Optional

import httpx

from estimator_constants import DEFAULT_REQUEST_TIMEOUT, DEFAULT_WAIT_TIME_MS
from models import AnalysisFolder, ScenarioOutput, UserInputs

logger = logging.getLogger(__name__)


SCRIPT_URL_ENV = "GOOGLE_APPS_SCRIPT_URL"
WAIT_TIME_ENV = "SHEETS_WAIT_TIME_MS"
TIMEOUT_ENV = "SHEETS_REQUEST_TIMEOUT"

WRITE_ONLY_ACTIONS = frozenset({
    "setInputs",
    "writeFormula",
    "setValue",
    "forceRecalc",
    "cleanup",
    "cleanupLimited",
    "runScenario",
    "deleteWorkingCopy",
})


# =============================================================================
# ERRORS
# =============================================================================

class SheetsClientError(Exception):
    """Base class for remote calculation failures."""


class ConfigurationError(SheetsClientError):
    """The endpoint is not configured. Fatal; never retried."""


class TransportError(SheetsClientError):
    """The remote resource answered with a failure, or could not be reached."""

    def __init__(self, message: str, action: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.action = action
        self.status_code = status_code


# =============================================================================
# CONFIGURATION
# =============================================================================

def get_script_url() -> Optional[str]:
    """Endpoint from the environment, or None when unset."""
    return os.environ.get(SCRIPT_URL_ENV) or None


def get_wait_time_ms() -> int:
    raw = os.environ.get(WAIT_TIME_ENV)
    if not raw:
        return DEFAULT_WAIT_TIME_MS
    try:
        return max(0, int(raw))
    except ValueError:
        logger.warning(f"Ignoring invalid {WAIT_TIME_ENV}={raw!r}")
        return DEFAULT_WAIT_TIME_MS


def get_request_timeout() -> float:
    raw = os.environ.get(TIMEOUT_ENV)
    if not raw:
        return DEFAULT_REQUEST_TIMEOUT
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {TIMEOUT_ENV}={raw!r}")
        return DEFAULT_REQUEST_TIMEOUT


# =============================================================================
# SETTLE STRATEGY
# =============================================================================

class FixedDelaySettle:
    """
    Wait a fixed time after a remote write.

    The workbook offers no completion signal for recalculation, so this is
    a best-effort pause, not a guarantee.
    """

    def __init__(self, wait_ms: Optional[int] = None):
        self.wait_ms = get_wait_time_ms() if wait_ms is None else wait_ms

    async def __call__(self, multiplier: float = 1.0) -> None:
        delay = self.wait_ms * multiplier / 1000.0
        await asyncio.sleep(delay)


# =============================================================================
# CLIENT
# =============================================================================

class SheetsClient:
    """
    Cell-level access to a working copy of the calculation workbook.

    Usage:
        async with SheetsClient() as client:
            folder = await client.create_folder(inputs)
            handle = await client.create_working_copy(folder.folder_id)
            await client.set_cell_value("E17", 1950, handle)
            outputs = await client.read_outputs(handle)
    """

    def __init__(
        self,
        script_url: Optional[str] = None,
        settle: Optional[FixedDelaySettle] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self._script_url = script_url
        self.settle = settle or FixedDelaySettle()
        self._http = http_client
        self._owns_http = http_client is None
        self._timeout = get_request_timeout() if timeout is None else timeout

    async def __aenter__(self) -> "SheetsClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

    @property
    def script_url(self) -> str:
        """
        Configured endpoint.

        Raises:
            ConfigurationError: when no URL was passed and the environment has none
        """
        url = self._script_url or get_script_url()
        if not url:
            raise ConfigurationError(
                f"Google Apps Script URL not configured. Please set {SCRIPT_URL_ENV}."
            )
        return url

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._http

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _request(self, action: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send one action. Write-only actions return {"success": True}."""
        url = self.script_url
        data = data or {}

        try:
            if action in WRITE_ONLY_ACTIONS:
                response = await self.http.post(url, params={"action": action}, json=data)
            else:
                params = {"action": action}
                params.update({k: _query_value(v) for k, v in data.items()})
                response = await self.http.get(url, params=params)
        except httpx.HTTPError as e:
            raise TransportError(f"Request failed: {action}: {e}", action) from e

        if not response.is_success:
            raise TransportError(
                f"Request failed: {action}: HTTP {response.status_code} {response.reason_phrase}",
                action,
                response.status_code,
            )

        if action in WRITE_ONLY_ACTIONS:
            return {"success": True}

        try:
            payload = response.json()
        except json.JSONDecodeError as e:
            raise TransportError(f"Invalid JSON from {action}: {e}", action, response.status_code) from e

        if isinstance(payload, dict) and payload.get("success") is False:
            raise TransportError(
                f"Request failed: {action}: {payload.get('error') or 'remote error'}",
                action,
                response.status_code,
            )
        return payload

    async def _write(self, action: str, data: Dict[str, Any], settle_multiplier: float = 1.0) -> None:
        await self._request(action, data)
        await self.settle(settle_multiplier)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create_folder(self, inputs: UserInputs) -> AnalysisFolder:
        """Create the folder the analysis workbooks are saved to."""
        result = await self._request(
            "createFolder", {"userInputs": json.dumps(inputs.to_sheet_payload())}
        )
        await self.settle()
        folder = AnalysisFolder.model_validate(result)
        logger.info(f"Created analysis folder {folder.folder_id}")
        return folder

    async def create_working_copy(self, folder_id: str) -> str:
        """Copy the master workbook into the folder; returns the working copy handle."""
        result = await self._request("createWorkingCopy", {"folderId": folder_id})
        await self.settle()
        handle = result.get("workingCopyId")
        if not handle:
            raise TransportError("createWorkingCopy returned no workingCopyId", "createWorkingCopy")
        logger.info(f"Created working copy {handle}")
        return handle

    async def delete_working_copy(self, handle: str) -> None:
        await self._write("deleteWorkingCopy", {"workingCopyId": handle})
        logger.info(f"Deleted working copy {handle}")

    async def set_user_inputs(self, inputs: UserInputs, handle: str) -> None:
        data = inputs.to_sheet_payload()
        data["workingCopyId"] = handle
        await self._write("setInputs", data)

    async def cleanup(self, handle: str) -> None:
        """Zero every colored input cell (full reset)."""
        await self._write("cleanup", {"workingCopyId": handle})

    async def cleanup_limited(self, handle: str, settle_multiplier: float = 1.0) -> None:
        """Zero the cells a previous scenario may have written."""
        await self._write("cleanupLimited", {"workingCopyId": handle}, settle_multiplier)

    # -------------------------------------------------------------------------
    # Cell operations
    # -------------------------------------------------------------------------

    async def set_cell_value(self, cell: str, value: Any, handle: str) -> None:
        await self._write("setValue", {"cell": cell, "value": value, "workingCopyId": handle})

    async def set_cell_formula(self, cell: str, formula: str, handle: str) -> None:
        await self._write("writeFormula", {"cell": cell, "formula": formula, "workingCopyId": handle})

    async def invoke_named_function(self, name: str, handle: str) -> None:
        """Run a server-side routine such as the ITC solver."""
        await self._write("runScenario", {"function": name, "workingCopyId": handle})

    async def force_recalculate(self, handle: str) -> None:
        await self._write("forceRecalc", {"workingCopyId": handle})

    async def read_cell_value(self, cell: str, handle: str) -> float:
        result = await self._request("getValue", {"cell": cell, "workingCopyId": handle})
        value = result.get("value")
        try:
            return float(value or 0)
        except (TypeError, ValueError) as e:
            raise TransportError(f"Non-numeric value in {cell}: {value!r}", "getValue") from e

    async def read_outputs(self, handle: str) -> ScenarioOutput:
        """Force recalculation, then read AGI, tax due and net gain in one trip."""
        await self.force_recalculate(handle)
        result = await self._request("getOutputs", {"workingCopyId": handle})
        return ScenarioOutput.model_validate(result)

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    async def save_scenario_snapshot(self, scenario_number: int, inputs: UserInputs) -> Dict[str, Any]:
        """Save a full workbook copy for audit. Returns folder/file URLs when present."""
        result = await self._request(
            "createWorkbookCopy",
            {
                "scenarioNumber": str(scenario_number),
                "userInputs": json.dumps(inputs.to_sheet_payload()),
            },
        )
        if result.get("folderUrl"):
            logger.info(f"Scenario {scenario_number} workbook saved: {result.get('fileUrl')}")
        else:
            logger.info(f"Scenario {scenario_number} workbook copy returned no URL")
        await self.settle()
        return result


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
