"""Query documents: storage adapter and execution dispatcher."""

from __future__ import annotations

import logging
from typing import Any, Callable

from app.context import RequestContext
from app.dynamic_variables import VariableCache, remove_dynamic_variables, resolve_dynamic_variables
from app.query_runner import VERB_READ, QueryJob, QueryRunner, collect_keys
from app.quotas import QueryQuota
from quarry.doc_ids import generate_query_id, query_prefix

logger = logging.getLogger("quarry.queries")

Emit = Callable[[str, dict], None]


def enrich_queries(input: Any) -> Any:
    """Flag read queries as ``readable``; accepts one query or a list."""
    was_list = isinstance(input, list)
    queries = input if was_list else [input]
    for query in queries:
        if query.get("queryVerb") == VERB_READ:
            query["readable"] = True
    return queries if was_list else queries[0]


def _event_payload(datasource: dict, query: dict) -> dict:
    return {
        "query_id": query.get("_id"),
        "datasource_id": datasource.get("_id"),
        "source": datasource.get("source"),
        "query_verb": query.get("queryVerb"),
    }


def fetch_queries(store, ctx: RequestContext) -> list[dict]:
    return enrich_queries(store.all_docs(ctx.app_id, query_prefix()))


def find_query(store, ctx: RequestContext, query_id: str) -> dict:
    query = enrich_queries(store.get(ctx.app_id, query_id))
    # a published app must not expose query internals
    if ctx.is_production:
        query.pop("fields", None)
        query.pop("parameters", None)
    return query


def save_query(store, ctx: RequestContext, query: dict, emit: Emit) -> tuple[dict, str]:
    query = dict(query)
    datasource = store.get(ctx.app_id, query.get("datasourceId") or "")
    if not query.get("_id"):
        query["_id"] = generate_query_id(query["datasourceId"])
        event_name = "query.created"
    else:
        event_name = "query.updated"
    response = store.put(ctx.app_id, query)
    query["_rev"] = response["rev"]
    emit(event_name, _event_payload(datasource, query))
    logger.info("query_saved app_id=%s query_id=%s event=%s", ctx.app_id, query["_id"], event_name)
    return query, f"Query {query.get('name')} saved successfully."


def destroy_query(store, ctx: RequestContext, query_id: str, rev: str, emit: Emit, cache: VariableCache | None = None) -> str:
    # variables go first; a failure here leaves the query in place
    removed = remove_dynamic_variables(store, ctx.app_id, query_id, cache=cache)
    query = store.get(ctx.app_id, query_id)
    datasource = store.get(ctx.app_id, query["datasourceId"])
    store.remove(ctx.app_id, query_id, rev)
    logger.info(
        "query_deleted app_id=%s query_id=%s dynamic_variables_removed=%s", ctx.app_id, query_id, len(removed)
    )
    emit("query.deleted", _event_payload(datasource, query))
    return "Query deleted."


def fill_parameter_defaults(declared: list | None, supplied: dict | None) -> dict:
    parameters = dict(supplied or {})
    for parameter in declared or []:
        name = parameter.get("name")
        if not name:
            continue
        if parameters.get(name) in (None, ""):
            parameters[name] = parameter.get("default")
    return parameters


def _preview_parameters(parameters: Any) -> dict:
    # unsaved previews send declarations; callers may also send resolved values
    if isinstance(parameters, dict):
        return dict(parameters)
    return fill_parameter_defaults(parameters if isinstance(parameters, list) else None, {})


class QueryDispatcher:
    def __init__(self, store, runner: QueryRunner, quota: QueryQuota, cache: VariableCache | None = None) -> None:
        self.store = store
        self.runner = runner
        self.quota = quota
        self.cache = cache

    async def _run_producer(self, app_id: str, datasource: dict, query_id: str) -> list:
        query = self.store.get(app_id, query_id)
        job = QueryJob(
            app_id=app_id,
            datasource=datasource,
            query_verb=query.get("queryVerb"),
            fields=query.get("fields") or {},
            parameters=fill_parameter_defaults(query.get("parameters"), {}),
            transformer=query.get("transformer"),
            query_id=query_id,
        )
        result = await self.runner.run(job)
        return result["rows"]

    async def _run(self, ctx: RequestContext, job: QueryJob) -> dict:
        async def run_producer(producer_id: str) -> list:
            return await self._run_producer(ctx.app_id, job.datasource, producer_id)

        variables = await resolve_dynamic_variables(job.datasource, job.query_id, run_producer, cache=self.cache)
        if variables:
            job.parameters = {**variables, **job.parameters}

        async def run_fn() -> dict:
            return await self.runner.run(job)

        return await self.quota.add_query(ctx.app_id, run_fn)

    async def preview(self, ctx: RequestContext, body: dict, emit: Emit) -> dict:
        datasource = self.store.get(ctx.app_id, body.get("datasourceId") or "")
        # an unsaved preview has no queryId; a saved one keeps it so it never feeds its own variables
        job = QueryJob(
            app_id=ctx.app_id,
            datasource=datasource,
            query_verb=body.get("queryVerb"),
            fields=body.get("fields") or {},
            parameters=_preview_parameters(body.get("parameters")),
            transformer=body.get("transformer"),
            query_id=body.get("queryId") or body.get("_id"),
        )
        result = await self._run(ctx, job)
        emit("query.previewed", _event_payload(datasource, body))
        rows = result.get("rows") or []
        keys = result.get("keys") or collect_keys(rows)
        return {
            "rows": rows,
            "schemaFields": list(dict.fromkeys(keys)),
            "info": result.get("info"),
            "extra": result.get("extra"),
        }

    async def execute(self, ctx: RequestContext, query_id: str, body: dict, rows_only: bool) -> Any:
        query = self.store.get(ctx.app_id, query_id)
        datasource = self.store.get(ctx.app_id, query["datasourceId"])
        job = QueryJob(
            app_id=ctx.app_id,
            datasource=datasource,
            query_verb=query.get("queryVerb"),
            fields=query.get("fields") or {},
            parameters=fill_parameter_defaults(query.get("parameters"), body.get("parameters")),
            transformer=query.get("transformer"),
            query_id=query_id,
            pagination=body.get("pagination"),
        )
        result = await self._run(ctx, job)
        rows = result.get("rows") or []
        if rows_only:
            return rows
        return {"data": rows, "pagination": result.get("pagination"), **(result.get("extra") or {})}
