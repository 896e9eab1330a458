"""
HTTP server implementation for GridSync.

This module exposes SyncService over a JSON REST API plus two push-style
change feeds:
- Long-poll: GET /v1/tables/{table}/changes/poll
- Server-Sent Events: GET /v1/changes/stream

Invariants:
    - Handlers are thin adapters; all semantics live in SyncService
    - Writes require an actor (X-Actor header or the body's "actor")
    - Every error body is {error, error_code, details}
    - A stream subscription is closed when the client goes away

How to change safely:
    - Add endpoints under /v1; never change the shape of existing ones
    - Keep request parsing in api/models.py
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..config import HttpConfig
from ..errors import GridSyncError, NotFoundError, ValidationError
from ..storage.query import Filter
from ..sync.models import Row
from ..sync.service import SyncService
from .models import (
    AddColumnsRequest,
    CreateTableRequest,
    DeleteRowsRequest,
    DropColumnsRequest,
    LockRequest,
    PresenceRequest,
    ReleaseAllRequest,
    RenameColumnRequest,
    UpsertCellsRequest,
    UpsertRowsRequest,
)

logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = {
    ValidationError: 400,
    NotFoundError: 404,
}


def create_http_app(
    service: SyncService,
    config: HttpConfig | None = None,
) -> web.Application:
    """Create the aiohttp application.

    Args:
        service: SyncService instance
        config: HTTP configuration (CORS, API key, stream heartbeat)

    Returns:
        aiohttp Application instance
    """
    config = config or HttpConfig()

    @web.middleware
    async def cors_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if request.method == "OPTIONS":
            response = web.Response()
        else:
            try:
                response = await handler(request)
            except web.HTTPException as e:
                response = e

        # Streams set their headers before prepare()
        if not response.prepared:
            apply_cors_headers(request, response, config)
        return response

    @web.middleware
    async def api_key_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        if config.api_key and request.path != "/v1/health":
            if request.headers.get("X-Api-Key") != config.api_key:
                raise web.HTTPUnauthorized(
                    text=json.dumps(
                        {"error": "Invalid or missing X-Api-Key", "error_code": "UNAUTHORIZED"}
                    ),
                    content_type="application/json",
                )
        return await handler(request)

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except GridSyncError as e:
            status = _error_status(e)
            log = logger.warning if status >= 500 else logger.info
            log(
                f"Request failed: {e.message}",
                extra={"path": request.path, "error_code": e.code, "status": status},
            )
            return web.json_response(e.to_dict(), status=status)
        except PydanticValidationError as e:
            return web.json_response(
                {
                    "error": "Invalid request body",
                    "error_code": "VALIDATION_ERROR",
                    "details": {"errors": e.errors(include_url=False, include_context=False)},
                },
                status=400,
            )
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": str(e), "error_code": "INTERNAL", "details": {}},
                status=500,
            )

    app = web.Application(middlewares=[cors_middleware, api_key_middleware, error_middleware])

    app.router.add_get("/v1/health", lambda r: handle_health(r, service))
    app.router.add_get("/v1/meta", lambda r: handle_meta(r, service))
    app.router.add_get("/v1/tables", lambda r: handle_list_tables(r, service))
    app.router.add_post("/v1/tables", lambda r: handle_create_table(r, service))
    app.router.add_get("/v1/tables/{table}", lambda r: handle_describe_table(r, service))
    app.router.add_post("/v1/tables/{table}/columns", lambda r: handle_add_columns(r, service))
    app.router.add_post(
        "/v1/tables/{table}/columns/drop", lambda r: handle_drop_columns(r, service)
    )
    app.router.add_post(
        "/v1/tables/{table}/columns/rename", lambda r: handle_rename_column(r, service)
    )
    app.router.add_post("/v1/cells", lambda r: handle_upsert_cells(r, service))
    app.router.add_post("/v1/tables/{table}/rows", lambda r: handle_upsert_rows(r, service))
    app.router.add_post("/v1/tables/{table}/delete", lambda r: handle_delete_rows(r, service))
    app.router.add_get("/v1/tables/{table}/changes", lambda r: handle_changes(r, service))
    app.router.add_get(
        "/v1/tables/{table}/changes/poll", lambda r: handle_long_poll(r, service)
    )
    app.router.add_get("/v1/tables/{table}/snapshot", lambda r: handle_snapshot(r, service))
    app.router.add_get("/v1/changes/stream", lambda r: handle_stream(r, service, config))
    app.router.add_post("/v1/presence", lambda r: handle_heartbeat(r, service))
    app.router.add_get("/v1/presence", lambda r: handle_list_presence(r, service))
    app.router.add_post("/v1/locks/acquire", lambda r: handle_acquire_lock(r, service))
    app.router.add_post("/v1/locks/release", lambda r: handle_release_lock(r, service))
    app.router.add_post("/v1/locks/release-all", lambda r: handle_release_all(r, service))
    app.router.add_get("/v1/locks", lambda r: handle_list_locks(r, service))
    app.router.add_get("/v1/audit", lambda r: handle_audit(r, service))

    return app


def apply_cors_headers(
    request: web.Request,
    response: web.StreamResponse,
    config: HttpConfig,
) -> None:
    origin = request.headers.get("Origin", "*")
    if "*" in config.cors_origins or origin in config.cors_origins:
        response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = (
        "Content-Type, X-Actor, X-Api-Key, Last-Event-ID"
    )


def _error_status(error: GridSyncError) -> int:
    for cls, status in _STATUS_BY_ERROR.items():
        if isinstance(error, cls):
            return status
    return 503


async def parse_body(request: web.Request, model: type[BaseModel]) -> Any:
    """Parse and validate a JSON body into model."""
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": "Invalid JSON body", "error_code": "VALIDATION_ERROR"}),
            content_type="application/json",
        )
    return model.model_validate(body)


def extract_actor(request: web.Request, body_actor: str | None = None) -> str:
    """Actor from X-Actor, falling back to the body.

    Raises:
        web.HTTPBadRequest: If neither is present
    """
    actor = request.headers.get("X-Actor") or body_actor
    if not actor:
        raise web.HTTPBadRequest(
            text=json.dumps(
                {"error": "X-Actor header is required", "error_code": "VALIDATION_ERROR"}
            ),
            content_type="application/json",
        )
    return actor


def query_int(request: web.Request, name: str, default: int | None = None) -> int | None:
    raw = request.query.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(
            f"Query parameter '{name}' must be an integer", details={name: raw}
        ) from None


def query_bool(request: web.Request, name: str) -> bool:
    return request.query.get(name, "false").lower() in ("1", "true", "yes")


# ---------------------------------------------------------------------------
# Status and schema
# ---------------------------------------------------------------------------


async def handle_health(request: web.Request, service: SyncService) -> web.Response:
    """Handle GET /v1/health - Quick integrity check."""
    result = await service.health()
    status = 200 if result["status"] == "ok" else 503
    return web.json_response(result, status=status)


async def handle_meta(request: web.Request, service: SyncService) -> web.Response:
    """Handle GET /v1/meta - Counter, schema hash and tables."""
    return web.json_response(await service.meta())


async def handle_list_tables(request: web.Request, service: SyncService) -> web.Response:
    tables = await service.list_tables()
    return web.json_response({"tables": [t.to_dict() for t in tables]})


async def handle_create_table(request: web.Request, service: SyncService) -> web.Response:
    """Handle POST /v1/tables - Ensure (or strictly create) a table."""
    body = await parse_body(request, CreateTableRequest)
    if body.strict:
        if not body.key_column:
            raise ValidationError("key_column is required when strict is set")
        table = await service.create_table(body.table, body.key_column, body.key_kind)
    else:
        await service.ensure_table(body.table, body.key_column)
        table = await service.describe_table(body.table)
    return web.json_response(table.to_dict())


async def handle_describe_table(request: web.Request, service: SyncService) -> web.Response:
    table = await service.describe_table(request.match_info["table"])
    return web.json_response(table.to_dict())


async def handle_add_columns(request: web.Request, service: SyncService) -> web.Response:
    """Handle POST /v1/tables/{table}/columns - Add typed columns."""
    body = await parse_body(request, AddColumnsRequest)
    try:
        defs = [spec.to_column_def() for spec in body.columns]
    except ValueError as e:
        raise ValidationError(str(e)) from e
    added = await service.add_columns(request.match_info["table"], defs)
    return web.json_response({"added": [c.to_dict() for c in added]})


async def handle_drop_columns(request: web.Request, service: SyncService) -> web.Response:
    """Handle POST /v1/tables/{table}/columns/drop - Destructive column drop."""
    body = await parse_body(request, DropColumnsRequest)
    dropped = await service.drop_columns(request.match_info["table"], body.columns)
    return web.json_response({"dropped": dropped})


async def handle_rename_column(request: web.Request, service: SyncService) -> web.Response:
    body = await parse_body(request, RenameColumnRequest)
    table = await service.rename_column(request.match_info["table"], body.old, body.new)
    return web.json_response(table.to_dict())


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


async def handle_upsert_cells(request: web.Request, service: SyncService) -> web.Response:
    """Handle POST /v1/cells - Apply a cell edit batch."""
    body = await parse_body(request, UpsertCellsRequest)
    actor = extract_actor(request, body.actor)
    result = await service.upsert_cells([e.to_edit() for e in body.edits], actor)
    return web.json_response(result.to_dict())


async def handle_upsert_rows(request: web.Request, service: SyncService) -> web.Response:
    """Handle POST /v1/tables/{table}/rows - Apply a row edit batch."""
    body = await parse_body(request, UpsertRowsRequest)
    actor = extract_actor(request, body.actor)
    result = await service.upsert_rows(
        request.match_info["table"],
        [r.to_edit() for r in body.rows],
        actor,
        key_column=body.key_column,
    )
    return web.json_response(result.to_dict())


async def handle_delete_rows(request: web.Request, service: SyncService) -> web.Response:
    """Handle POST /v1/tables/{table}/delete - Tombstone rows."""
    body = await parse_body(request, DeleteRowsRequest)
    actor = request.headers.get("X-Actor") or body.actor or "system"
    result = await service.delete_rows(request.match_info["table"], body.keys, actor)
    return web.json_response(result.to_dict())


# ---------------------------------------------------------------------------
# Reads and change feeds
# ---------------------------------------------------------------------------


async def handle_changes(request: web.Request, service: SyncService) -> web.Response:
    """Handle GET /v1/tables/{table}/changes?since= - Incremental read."""
    result = await service.read_since(
        request.match_info["table"],
        since=query_int(request, "since", 0),
        limit=query_int(request, "limit"),
    )
    return web.json_response(result.to_dict())


async def handle_long_poll(request: web.Request, service: SyncService) -> web.Response:
    """Handle GET /v1/tables/{table}/changes/poll?since=&timeout_ms= - Long-poll."""
    result = await service.long_poll_changes(
        request.match_info["table"],
        since=query_int(request, "since", 0),
        timeout_ms=query_int(request, "timeout_ms", service.long_poll_max_ms),
    )
    return web.json_response(result.to_dict())


async def handle_snapshot(request: web.Request, service: SyncService) -> web.Response:
    """Handle GET /v1/tables/{table}/snapshot - Filtered current rows.

    Filters are a JSON list in ?where=, e.g. [{"column":"qty","op":"gt","value":2}].
    """
    filters = []
    raw_where = request.query.get("where")
    if raw_where:
        try:
            parsed = json.loads(raw_where)
        except json.JSONDecodeError:
            raise ValidationError("'where' must be a JSON list of filters") from None
        if not isinstance(parsed, list) or not all(isinstance(f, dict) for f in parsed):
            raise ValidationError("'where' must be a JSON list of filters")
        filters = [Filter.from_dict(f) for f in parsed]

    result = await service.snapshot(
        request.match_info["table"],
        filters=filters,
        order_by=request.query.get("order_by"),
        limit=query_int(request, "limit"),
        offset=query_int(request, "offset", 0),
        include_deleted=query_bool(request, "include_deleted"),
    )
    return web.json_response(result.to_dict())


def _sse_frame(event_id: int, data: dict[str, Any]) -> bytes:
    return f"id: {event_id}\nevent: change\ndata: {json.dumps(data)}\n\n".encode()


async def _catch_up(
    service: SyncService,
    tables: list[str] | None,
    since: int,
) -> tuple[int, list[Row]]:
    if not tables:
        result = await service.read_since(None, since)
        return result.max_row_version, result.patches
    cursor = since
    patches: list[Row] = []
    for table in tables:
        result = await service.read_since(table, since)
        cursor = max(cursor, result.max_row_version)
        patches.extend(result.patches)
    patches.sort(key=lambda r: r.row_version)
    return cursor, patches


async def handle_stream(
    request: web.Request,
    service: SyncService,
    config: HttpConfig,
) -> web.StreamResponse:
    """Handle GET /v1/changes/stream?since=&table= - Server-Sent Events.

    Subscribes first, then (if since or Last-Event-ID is given) sends one
    catch-up event, then forwards live events. Each event id is the
    max_row_version to resume from.
    """
    tables = [t for value in request.query.getall("table", []) for t in value.split(",") if t]
    since = query_int(request, "since")
    if since is None and request.headers.get("Last-Event-ID"):
        try:
            since = int(request.headers["Last-Event-ID"])
        except ValueError:
            raise ValidationError("Last-Event-ID must be a row version") from None

    response = web.StreamResponse(
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        }
    )
    apply_cors_headers(request, response, config)
    sub = service.subscribe_changes(tables or None)
    try:
        await response.prepare(request)
        cursor = -1
        if since is not None:
            cursor, patches = await _catch_up(service, tables, since)
            if patches:
                payload = {
                    "table": None,
                    "max_row_version": cursor,
                    "patches": [p.to_dict() for p in patches],
                }
                await response.write(_sse_frame(cursor, payload))

        while True:
            event = await sub.get(timeout=config.stream_heartbeat_seconds)
            if event is None:
                if sub.closed:
                    break
                await response.write(b": heartbeat\n\n")
                continue
            if event.max_row_version <= cursor:
                continue
            await response.write(_sse_frame(event.max_row_version, event.to_dict()))
    except ConnectionResetError:
        logger.debug("Stream client disconnected", extra={"tables": tables or None})
    finally:
        sub.close()
    return response


# ---------------------------------------------------------------------------
# Presence and locks
# ---------------------------------------------------------------------------


async def handle_heartbeat(request: web.Request, service: SyncService) -> web.Response:
    """Handle POST /v1/presence - Presence heartbeat."""
    body = await parse_body(request, PresenceRequest)
    entry = await service.heartbeat_presence(extract_actor(request, body.actor), body.location)
    return web.json_response(entry.to_dict())


async def handle_list_presence(request: web.Request, service: SyncService) -> web.Response:
    entries = await service.list_presence()
    return web.json_response({"presence": [e.to_dict() for e in entries]})


async def handle_acquire_lock(request: web.Request, service: SyncService) -> web.Response:
    """Handle POST /v1/locks/acquire - Acquire, refresh or steal."""
    body = await parse_body(request, LockRequest)
    actor = extract_actor(request, body.actor)
    acquired = await service.acquire_lock(body.resource_key, actor, body.ttl_sec)
    return web.json_response({"acquired": acquired, "resource_key": body.resource_key})


async def handle_release_lock(request: web.Request, service: SyncService) -> web.Response:
    body = await parse_body(request, LockRequest)
    actor = extract_actor(request, body.actor)
    released = await service.release_lock(body.resource_key, actor)
    return web.json_response({"released": released, "resource_key": body.resource_key})


async def handle_release_all(request: web.Request, service: SyncService) -> web.Response:
    body = await parse_body(request, ReleaseAllRequest)
    released = await service.release_all_locks(extract_actor(request, body.actor))
    return web.json_response({"released": released})


async def handle_list_locks(request: web.Request, service: SyncService) -> web.Response:
    locks = await service.list_locks(request.query.get("prefix"))
    return web.json_response({"locks": [lock.to_dict() for lock in locks]})


async def handle_audit(request: web.Request, service: SyncService) -> web.Response:
    """Handle GET /v1/audit - Audit log.

    Without filters, pages forward by since_version/after_id. With any of
    actor, table, row_key, column, since_ms, until_ms or offset it searches
    newest first.
    """
    limit = query_int(request, "limit")
    search_keys = ("actor", "table", "row_key", "column", "since_ms", "until_ms", "offset")
    if any(k in request.query for k in search_keys):
        entries = await service.query_audit(
            actor=request.query.get("actor"),
            table=request.query.get("table"),
            row_key=request.query.get("row_key"),
            column=request.query.get("column"),
            since_ms=query_int(request, "since_ms"),
            until_ms=query_int(request, "until_ms"),
            limit=limit,
            offset=query_int(request, "offset", 0),
        )
    else:
        entries = await service.audit_log(
            since_version=query_int(request, "since_version"),
            after_id=query_int(request, "after_id"),
            limit=limit,
        )
    return web.json_response({"entries": [e.to_dict() for e in entries]})
