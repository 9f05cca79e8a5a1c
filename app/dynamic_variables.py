"""Dynamic variables: datasource values derived from running a query.

A REST datasource may declare ``config.dynamicVariables`` entries of the form
``{"name": ..., "queryId": ..., "value": "{{ data[0].token }}"}``. The rows of
the producing query are cached per ``(datasource, query)`` and reused by later
executions until the variable is invalidated.
"""

from __future__ import annotations

import copy
import logging
import os
import threading
import time
from typing import Any, Awaitable, Callable, Dict, Iterable

from jinja2 import TemplateError

from app.query_runner import QueryRunError
from app.template_render import render_template

logger = logging.getLogger("quarry.dynamic_variables")

_TTL_S = float(os.getenv("QUARRY_DYNAMIC_VARIABLE_TTL_S", "3600"))


def cache_key(datasource_id: str | None, query_id: str | None) -> str:
    return f"dynamic-var:{datasource_id}:{query_id}"


class VariableCache:
    def __init__(self, ttl_s: float = _TTL_S) -> None:
        self._ttl_s = ttl_s
        self._items: Dict[str, dict] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            if self._ttl_s and time.monotonic() - item["ts"] > self._ttl_s:
                del self._items[key]
                return None
            return copy.deepcopy(item["value"])

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._items[key] = {"value": copy.deepcopy(value), "ts": time.monotonic()}

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._items.keys())


variable_cache = VariableCache()


def invalidate_dynamic_variables(variables: Iterable[dict], datasource_id: str | None, cache: VariableCache | None = None) -> list[str]:
    cache = cache or variable_cache
    evicted = []
    for variable in variables:
        key = cache_key(datasource_id, variable.get("queryId"))
        cache.delete(key)
        evicted.append(key)
    if evicted:
        logger.info("dynamic_variables_invalidated datasource_id=%s keys=%s", datasource_id, evicted)
    return evicted


def remove_dynamic_variables(store, app_id: str, query_id: str, cache: VariableCache | None = None) -> list[dict]:
    """Drop the variables produced by ``query_id`` from its datasource.

    The datasource is persisted before the removed variables are invalidated.
    Returns the removed variables.
    """
    query = store.get(app_id, query_id)
    datasource = store.get(app_id, query["datasourceId"])
    config = datasource.get("config") or {}
    dynamic_variables = config.get("dynamicVariables")
    if not dynamic_variables:
        return []
    kept = [dv for dv in dynamic_variables if dv.get("queryId") != query_id]
    removed = [dv for dv in dynamic_variables if dv.get("queryId") == query_id]
    config["dynamicVariables"] = kept
    datasource["config"] = config
    store.put(app_id, datasource)
    invalidate_dynamic_variables(removed, datasource["_id"], cache=cache)
    return removed


RunQuery = Callable[[str], Awaitable[list]]


async def resolve_dynamic_variables(
    datasource: dict,
    current_query_id: str | None,
    run_query: RunQuery,
    cache: VariableCache | None = None,
) -> dict[str, Any]:
    """Return ``{name: value}`` for the datasource's dynamic variables.

    Variables produced by ``current_query_id`` are skipped so a query never
    executes itself to fill its own bindings.
    """
    cache = cache or variable_cache
    config = datasource.get("config") or {}
    resolved: dict[str, Any] = {}
    for variable in config.get("dynamicVariables") or []:
        name = variable.get("name")
        producer = variable.get("queryId")
        if not name or not producer or producer == current_query_id:
            continue
        key = cache_key(datasource.get("_id"), producer)
        rows = cache.get(key)
        if rows is None:
            rows = await run_query(producer)
            cache.set(key, rows)
        try:
            resolved[name] = render_template(variable.get("value") or "", {"data": rows}, strict=False)
        except TemplateError as exc:
            raise QueryRunError("DYNAMIC_VARIABLE_FAILED", f"Dynamic variable {name} failed: {exc}") from exc
    return resolved
