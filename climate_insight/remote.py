from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Protocol

import snowflake.connector

from climate_insight.errors import BackendUnavailableError, RemoteFailureError
from climate_insight.models import OperationKind
from climate_insight.settings import flag_enabled, get_env, snowflake_configured

LOGGER = logging.getLogger(__name__)


class RemoteBackend(Protocol):
    async def invoke_remote(self, kind: OperationKind, payload: Mapping[str, Any]) -> Any:
        ...


def _require_env(name: str) -> str:
    value = get_env(name)
    if not value:
        raise BackendUnavailableError(f"Missing required env var: {name}")
    return value


def get_connection():
    kwargs: Dict[str, Any] = {
        "account": _require_env("SNOWFLAKE_ACCOUNT"),
        "user": _require_env("SNOWFLAKE_USER"),
        "password": _require_env("SNOWFLAKE_PASSWORD"),
        "role": _require_env("SNOWFLAKE_ROLE"),
        "warehouse": _require_env("SNOWFLAKE_WAREHOUSE"),
        "ocsp_fail_open": flag_enabled("SNOWFLAKE_OCSP_FAIL_OPEN"),
    }
    for optional in ("SNOWFLAKE_DATABASE", "SNOWFLAKE_SCHEMA"):
        if get_env(optional):
            kwargs[optional.split("_", 1)[1].lower()] = get_env(optional)
    return snowflake.connector.connect(**kwargs)


def execute_scalar(sql: str, params: Optional[Mapping[str, Any]] = None) -> Any:
    with get_connection() as conn:
        cur = conn.cursor()
        try:
            cur.execute(sql, params)
            row = cur.fetchone()
            return row[0] if row else None
        finally:
            cur.close()


def call_cortex_complete(prompt: str, model: str) -> str:
    sql = "SELECT snowflake.cortex.complete(%(model)s, %(prompt)s) AS response"
    LOGGER.debug("cortex execute model=%s prompt_length=%s", model, len(prompt))
    result = execute_scalar(sql, params={"model": model, "prompt": prompt})
    if result is None:
        raise RemoteFailureError("Cortex returned no response.")
    LOGGER.debug("cortex response preview=%s", str(result)[:200])
    return str(result)


def _forecast_prompt(payload: Mapping[str, Any]) -> str:
    return (
        "You are a climate and economic forecasting engine. "
        f"Produce a monthly series of {payload['horizon']} points ending this month for the "
        f"indicator '{payload['indicator']}' in {payload['region']}. "
        "Return a strict JSON list of objects with keys: timestamp (ISO-8601, first day of month), "
        "value (number), confidence_low (number), confidence_high (number). "
        "confidence_low must not exceed value and value must not exceed confidence_high. "
        "Return only JSON."
    )


def _narrative_prompt(payload: Mapping[str, Any]) -> str:
    return (
        "You are a concise climate-risk analyst writing for executives. "
        f"Summarise recent {payload['indicator']} patterns in {payload['region']}: "
        "one short paragraph of key findings, then 3 bullet recommendations. "
        "Use cautious language and do not invent facts."
    )


def _table_prompt(payload: Mapping[str, Any]) -> str:
    columns = payload.get("columns") or []
    column_text = ", ".join(columns) if columns else "columns of your choice"
    return (
        f"{payload['prompt']}\n"
        f"Return a strict JSON list of row objects with keys: {column_text}. Return only JSON."
    )


def _similarity_prompt(payload: Mapping[str, Any]) -> str:
    return (
        f"Find up to 5 regions whose {payload['indicator']} patterns are most similar to "
        f"{payload['region']}. Return a strict JSON list of objects with keys: region, country, "
        "similarity_score (0-1), matching_patterns (list of strings), key_metrics (object of "
        "numbers), recommendations (string). Return only JSON."
    )


def _latest_prompt(payload: Mapping[str, Any]) -> str:
    return (
        f"Report the latest known value of '{payload['indicator']}' for {payload['region']}. "
        'Return a strict JSON object: {"value": number, "timestamp": ISO-8601}. Return only JSON.'
    )


PROMPT_BUILDERS: Dict[OperationKind, Callable[[Mapping[str, Any]], str]] = {
    OperationKind.FORECAST: _forecast_prompt,
    OperationKind.NARRATIVE: _narrative_prompt,
    OperationKind.STRUCTURED_TABLE: _table_prompt,
    OperationKind.SIMILARITY: _similarity_prompt,
    OperationKind.LATEST: _latest_prompt,
}


class CortexBackend:
    """Runs every logical request as a Snowflake Cortex completion."""

    def __init__(self, model: str, complete: Callable[[str, str], str] = call_cortex_complete):
        self.model = model
        self._complete = complete

    def is_configured(self) -> bool:
        return snowflake_configured()

    async def invoke_remote(self, kind: OperationKind, payload: Mapping[str, Any]) -> Any:
        if not self.is_configured():
            raise BackendUnavailableError(
                "Snowflake credentials are not configured.",
                context={"operation": OperationKind(kind).value},
            )
        prompt = PROMPT_BUILDERS[OperationKind(kind)](payload)
        return await asyncio.to_thread(self._complete, prompt, self.model)


def extract_json(text: str) -> Any:
    """Pull the first JSON list or object out of model prose."""
    candidates: Iterable[tuple] = (("[", "]"), ("{", "}"))
    starts = []
    for open_char, close_char in candidates:
        start = text.find(open_char)
        end = text.rfind(close_char)
        if start != -1 and end > start:
            starts.append((start, end))
    if not starts:
        raise ValueError("No JSON found in response.")
    start, end = min(starts)
    return json.loads(text[start : end + 1])
