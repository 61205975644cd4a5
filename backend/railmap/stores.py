from __future__ import annotations

import asyncio
import json
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from threading import Lock
from typing import Any, Protocol, TypeVar
from urllib.parse import quote, unquote

from pydantic import BaseModel

from .compute_errors import ComputeError, ScopeClaimConflict
from .dataset import SOURCE_KINDS, ScopeKey, SourceKind, SourceRow
from .models import (
    ComputeScopeRow,
    RouteCalculateRow,
    RouteGeometrySnapshot,
    ScopeStatus,
    StationMapSnapshot,
)
from .payload import normalize_id, read_string, to_number
from .settings import settings


@dataclass(frozen=True)
class ServerInfo:
    server_id: str
    network_variant: str = "MTR"


class SourceStore(Protocol):
    """Read side: raw synced entities, grouped by scope."""

    async def get_server(self, server_id: str) -> ServerInfo | None: ...

    async def fetch_rows(self, scope: ScopeKey, kind: SourceKind) -> list[SourceRow]: ...

    async def aggregate(self, scope: ScopeKey, kind: SourceKind) -> tuple[int, datetime | None]: ...

    async def list_dimension_contexts(self, server_id: str, network_variant: str) -> list[str]: ...

    async def list_rail_contexts(self, server_id: str, network_variant: str) -> list[str]: ...

    async def resolve_dimension(self, scope: ScopeKey) -> str | None: ...

    async def find_route_row(
        self,
        server_id: str,
        network_variant: str,
        route_id: str,
        dimension_context: str | None = None,
    ) -> SourceRow | None: ...


class SnapshotStore(Protocol):
    """Write side: scope claims, route/station snapshots and fallback calculations."""

    async def get_scope(self, scope: ScopeKey) -> ComputeScopeRow | None: ...

    async def claim_scope(self, scope: ScopeKey, fingerprint: str) -> int: ...

    async def insert_scope(self, scope: ScopeKey, fingerprint: str) -> ComputeScopeRow: ...

    async def finish_scope(self, scope: ScopeKey, status: ScopeStatus, message: str | None = None) -> None: ...

    async def upsert_route_geometry(self, snapshot: RouteGeometrySnapshot) -> None: ...

    async def get_route_geometry(self, scope: ScopeKey, route_id: str) -> RouteGeometrySnapshot | None: ...

    async def list_route_geometries(self, scope: ScopeKey) -> list[RouteGeometrySnapshot]: ...

    async def upsert_station_map(self, snapshot: StationMapSnapshot) -> None: ...

    async def get_station_map(self, scope: ScopeKey, station_id: str) -> StationMapSnapshot | None: ...

    async def upsert_route_calculate(self, row: RouteCalculateRow) -> None: ...

    async def delete_route_calculates(self, scope: ScopeKey, keep_route_ids: Iterable[str] | None = None) -> int: ...

    async def list_route_calculates(self, scope: ScopeKey) -> list[RouteCalculateRow]: ...


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    text = read_string(value)
    if text is None:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class InMemorySourceStore:
    def __init__(self) -> None:
        self._servers: dict[str, ServerInfo] = {}
        self._dimensions: dict[tuple[str, str], dict[str, str | None]] = {}
        self._rows: dict[tuple[str, str, str], list[SourceRow]] = {}

    def add_server(self, server_id: str, network_variant: str = "MTR") -> None:
        self._servers[server_id] = ServerInfo(server_id=server_id, network_variant=network_variant)

    def add_dimension(
        self,
        server_id: str,
        network_variant: str,
        dimension_context: str,
        dimension: str | None = None,
    ) -> None:
        self._dimensions.setdefault((server_id, network_variant), {})[dimension_context] = dimension

    def add_rows(self, server_id: str, network_variant: str, kind: SourceKind, rows: Iterable[SourceRow]) -> None:
        if kind not in SOURCE_KINDS:
            raise ValueError(f"unknown source kind: {kind}")
        self._rows.setdefault((server_id, network_variant, kind), []).extend(rows)

    def _scope_rows(self, scope: ScopeKey, kind: SourceKind) -> list[SourceRow]:
        rows = self._rows.get((scope.server_id, scope.network_variant, kind), [])
        return [row for row in rows if row.dimension_context == scope.dimension_context]

    async def get_server(self, server_id: str) -> ServerInfo | None:
        return self._servers.get(server_id)

    async def fetch_rows(self, scope: ScopeKey, kind: SourceKind) -> list[SourceRow]:
        return list(self._scope_rows(scope, kind))

    async def aggregate(self, scope: ScopeKey, kind: SourceKind) -> tuple[int, datetime | None]:
        rows = self._scope_rows(scope, kind)
        stamps = [row.updated_at for row in rows if row.updated_at is not None]
        return len(rows), (max(stamps) if stamps else None)

    async def list_dimension_contexts(self, server_id: str, network_variant: str) -> list[str]:
        declared = self._dimensions.get((server_id, network_variant), {})
        return sorted(ctx for ctx in declared if ctx.strip())

    async def list_rail_contexts(self, server_id: str, network_variant: str) -> list[str]:
        rows = self._rows.get((server_id, network_variant, "rails"), [])
        contexts = dict.fromkeys(row.dimension_context.strip() for row in rows)
        return [ctx for ctx in contexts if ctx]

    async def resolve_dimension(self, scope: ScopeKey) -> str | None:
        declared = self._dimensions.get((scope.server_id, scope.network_variant), {})
        return declared.get(scope.dimension_context)

    async def find_route_row(
        self,
        server_id: str,
        network_variant: str,
        route_id: str,
        dimension_context: str | None = None,
    ) -> SourceRow | None:
        for row in self._rows.get((server_id, network_variant, "routes"), []):
            if row.entity_id != route_id:
                continue
            if dimension_context and row.dimension_context != dimension_context:
                continue
            return row
        return None


def _row_from_json(raw: Any) -> SourceRow | None:
    if not isinstance(raw, dict):
        return None
    payload = raw.get("payload")
    entity_id = normalize_id(raw.get("entity_id"))
    if entity_id is None and isinstance(payload, dict):
        entity_id = normalize_id(payload.get("id"))
    if entity_id is None:
        return None
    return SourceRow(
        entity_id=entity_id,
        payload=payload,
        dimension_context=read_string(raw.get("dimension_context")) or "",
        name=read_string(raw.get("name")),
        color=to_number(raw.get("color")),
        transport_mode=read_string(raw.get("transport_mode")),
        updated_at=_parse_datetime(raw.get("updated_at")),
    )


class JsonFileSourceStore:
    """Source dump per server at ``<dump_dir>/<server_id>.json``.

    Layout: ``server`` (``id``, ``network_variant``), ``dimensions`` (context
    strings or ``{dimension_context, dimension}`` objects), and one row list per
    source kind (``routes``, ``platforms``, ``stations``, ``rails``). Files are
    re-read on every call so a fresh dump is picked up without a restart.
    """

    def __init__(self, dump_dir: str | Path | None = None) -> None:
        self._dump_dir = Path(dump_dir) if dump_dir is not None else settings.resolved_source_dump_dir()

    def _path(self, server_id: str) -> Path:
        return self._dump_dir / f"{server_id}.json"

    def _load(self, server_id: str) -> InMemorySourceStore:
        store = InMemorySourceStore()
        path = self._path(server_id)
        if not path.exists():
            return store
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except Exception as e:
            raise ComputeError(
                reason_code="snapshot_store_unavailable",
                message=f"source dump unreadable: {path.name}",
                details={"error": str(e)},
            ) from e
        if not isinstance(raw, dict):
            return store

        server = raw.get("server") if isinstance(raw.get("server"), dict) else {}
        network_variant = read_string(server.get("network_variant")) or "MTR"
        store.add_server(server_id, network_variant)

        for entry in raw.get("dimensions") or []:
            if isinstance(entry, str):
                store.add_dimension(server_id, network_variant, entry)
            elif isinstance(entry, dict) and read_string(entry.get("dimension_context")):
                store.add_dimension(
                    server_id,
                    network_variant,
                    read_string(entry.get("dimension_context")) or "",
                    read_string(entry.get("dimension")),
                )

        for kind in SOURCE_KINDS:
            items = raw.get(kind)
            if not isinstance(items, list):
                continue
            rows = [row for row in (_row_from_json(item) for item in items) if row is not None]
            store.add_rows(server_id, network_variant, kind, rows)
        return store

    async def get_server(self, server_id: str) -> ServerInfo | None:
        return await self._load(server_id).get_server(server_id)

    async def fetch_rows(self, scope: ScopeKey, kind: SourceKind) -> list[SourceRow]:
        return await self._load(scope.server_id).fetch_rows(scope, kind)

    async def aggregate(self, scope: ScopeKey, kind: SourceKind) -> tuple[int, datetime | None]:
        return await self._load(scope.server_id).aggregate(scope, kind)

    async def list_dimension_contexts(self, server_id: str, network_variant: str) -> list[str]:
        return await self._load(server_id).list_dimension_contexts(server_id, network_variant)

    async def list_rail_contexts(self, server_id: str, network_variant: str) -> list[str]:
        return await self._load(server_id).list_rail_contexts(server_id, network_variant)

    async def resolve_dimension(self, scope: ScopeKey) -> str | None:
        return await self._load(scope.server_id).resolve_dimension(scope)

    async def find_route_row(
        self,
        server_id: str,
        network_variant: str,
        route_id: str,
        dimension_context: str | None = None,
    ) -> SourceRow | None:
        return await self._load(server_id).find_route_row(server_id, network_variant, route_id, dimension_context)


def _scope_prefix(scope: ScopeKey) -> str:
    return scope.as_key() + "|"


def _new_scope_row(scope: ScopeKey, fingerprint: str) -> ComputeScopeRow:
    return ComputeScopeRow(
        server_id=scope.server_id,
        network_variant=scope.network_variant,
        dimension_context=scope.dimension_context,
        fingerprint=fingerprint,
        status="RUNNING",
        updated_at=_utc_now(),
    )


def _claimed_scope_row(row: ComputeScopeRow, fingerprint: str) -> ComputeScopeRow:
    return row.model_copy(
        update={
            "fingerprint": fingerprint,
            "status": "RUNNING",
            "message": None,
            "computed_at": None,
            "updated_at": _utc_now(),
        }
    )


def _finished_scope_row(row: ComputeScopeRow, status: ScopeStatus, message: str | None) -> ComputeScopeRow:
    now = _utc_now()
    update: dict[str, Any] = {"status": status, "message": message, "updated_at": now}
    if status == "SUCCEEDED":
        update["computed_at"] = now
    return row.model_copy(update=update)


class InMemorySnapshotStore:
    """Dict-backed snapshot store.

    Methods never await between reading and writing a scope row, so a
    ``claim_scope`` on the event loop is atomic with respect to other tasks.
    """

    def __init__(self) -> None:
        self._scopes: dict[str, ComputeScopeRow] = {}
        self._route_geometries: dict[str, RouteGeometrySnapshot] = {}
        self._station_maps: dict[str, StationMapSnapshot] = {}
        self._route_calculates: dict[str, RouteCalculateRow] = {}

    async def get_scope(self, scope: ScopeKey) -> ComputeScopeRow | None:
        row = self._scopes.get(scope.as_key())
        return row.model_copy() if row else None

    async def claim_scope(self, scope: ScopeKey, fingerprint: str) -> int:
        row = self._scopes.get(scope.as_key())
        if row is None or row.status == "RUNNING":
            return 0
        self._scopes[scope.as_key()] = _claimed_scope_row(row, fingerprint)
        return 1

    async def insert_scope(self, scope: ScopeKey, fingerprint: str) -> ComputeScopeRow:
        if scope.as_key() in self._scopes:
            raise ScopeClaimConflict()
        row = _new_scope_row(scope, fingerprint)
        self._scopes[scope.as_key()] = row
        return row.model_copy()

    async def finish_scope(self, scope: ScopeKey, status: ScopeStatus, message: str | None = None) -> None:
        row = self._scopes.get(scope.as_key())
        if row is not None:
            self._scopes[scope.as_key()] = _finished_scope_row(row, status, message)

    async def upsert_route_geometry(self, snapshot: RouteGeometrySnapshot) -> None:
        scope = ScopeKey(snapshot.server_id, snapshot.network_variant, snapshot.dimension_context)
        self._route_geometries[_scope_prefix(scope) + snapshot.route_id] = snapshot.model_copy(deep=True)

    async def get_route_geometry(self, scope: ScopeKey, route_id: str) -> RouteGeometrySnapshot | None:
        row = self._route_geometries.get(_scope_prefix(scope) + route_id)
        return row.model_copy(deep=True) if row else None

    async def list_route_geometries(self, scope: ScopeKey) -> list[RouteGeometrySnapshot]:
        prefix = _scope_prefix(scope)
        return [row.model_copy(deep=True) for key, row in self._route_geometries.items() if key.startswith(prefix)]

    async def upsert_station_map(self, snapshot: StationMapSnapshot) -> None:
        scope = ScopeKey(snapshot.server_id, snapshot.network_variant, snapshot.dimension_context)
        self._station_maps[_scope_prefix(scope) + snapshot.station_id] = snapshot.model_copy(deep=True)

    async def get_station_map(self, scope: ScopeKey, station_id: str) -> StationMapSnapshot | None:
        row = self._station_maps.get(_scope_prefix(scope) + station_id)
        return row.model_copy(deep=True) if row else None

    async def upsert_route_calculate(self, row: RouteCalculateRow) -> None:
        scope = ScopeKey(row.server_id, row.network_variant, row.dimension_context)
        self._route_calculates[_scope_prefix(scope) + row.route_id] = row.model_copy(deep=True)

    async def delete_route_calculates(self, scope: ScopeKey, keep_route_ids: Iterable[str] | None = None) -> int:
        keep = set(keep_route_ids or ())
        prefix = _scope_prefix(scope)
        doomed = [
            key
            for key, row in self._route_calculates.items()
            if key.startswith(prefix) and row.route_id not in keep
        ]
        for key in doomed:
            del self._route_calculates[key]
        return len(doomed)

    async def list_route_calculates(self, scope: ScopeKey) -> list[RouteCalculateRow]:
        prefix = _scope_prefix(scope)
        return [row.model_copy(deep=True) for key, row in self._route_calculates.items() if key.startswith(prefix)]


_LOCK = Lock()

RowModel = TypeVar("RowModel", bound=BaseModel)


def _file_key(value: str) -> str:
    return quote(value, safe="")


def _load_row(path: Path, model: type[RowModel]) -> RowModel | None:
    if not path.exists():
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return model.model_validate(raw)
    except Exception as e:
        raise ComputeError(
            reason_code="snapshot_store_unavailable",
            message=f"snapshot row unreadable: {path.name}",
            details={"path": str(path), "error": str(e)},
        ) from e


def _dump_row(path: Path, row: BaseModel) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(row.model_dump(mode="json"), indent=2), encoding="utf-8")
    tmp.replace(path)


class JsonFileSnapshotStore:
    """Snapshot rows persisted one JSON file per row.

    Layout under ``<root>`` (default ``<out_dir>/snapshots``)::

        scopes/<scope>.json
        route_geometries/<scope>/<route_id>.json
        station_maps/<scope>/<station_id>.json
        route_calculates/<scope>/<route_id>.json

    Keys are percent-encoded. File work runs in a worker thread, and scope
    rows are read, checked and written while holding ``_LOCK``. A row that
    cannot be parsed raises ``snapshot_store_unavailable`` and is left as is.
    """

    def __init__(self, root: str | Path | None = None) -> None:
        self._root = Path(root) if root is not None else Path(settings.out_dir) / "snapshots"

    def _scope_path(self, scope: ScopeKey) -> Path:
        return self._root / "scopes" / f"{_file_key(scope.as_key())}.json"

    def _table_dir(self, table: str, scope: ScopeKey) -> Path:
        return self._root / table / _file_key(scope.as_key())

    def _row_path(self, table: str, scope: ScopeKey, row_id: str) -> Path:
        return self._table_dir(table, scope) / f"{_file_key(row_id)}.json"

    def _write(self, path: Path, row: BaseModel) -> None:
        with _LOCK:
            _dump_row(path, row)

    def _list(self, table: str, scope: ScopeKey, model: type[RowModel]) -> list[RowModel]:
        rows: list[RowModel] = []
        for path in sorted(self._table_dir(table, scope).glob("*.json")):
            row = _load_row(path, model)
            if row is not None:
                rows.append(row)
        return rows

    def _claim(self, scope: ScopeKey, fingerprint: str) -> int:
        path = self._scope_path(scope)
        with _LOCK:
            row = _load_row(path, ComputeScopeRow)
            if row is None or row.status == "RUNNING":
                return 0
            _dump_row(path, _claimed_scope_row(row, fingerprint))
        return 1

    def _insert(self, scope: ScopeKey, fingerprint: str) -> ComputeScopeRow:
        path = self._scope_path(scope)
        with _LOCK:
            if path.exists():
                raise ScopeClaimConflict()
            row = _new_scope_row(scope, fingerprint)
            _dump_row(path, row)
        return row

    def _finish(self, scope: ScopeKey, status: ScopeStatus, message: str | None) -> None:
        path = self._scope_path(scope)
        with _LOCK:
            row = _load_row(path, ComputeScopeRow)
            if row is not None:
                _dump_row(path, _finished_scope_row(row, status, message))

    def _delete_calculates(self, scope: ScopeKey, keep: set[str]) -> int:
        deleted = 0
        with _LOCK:
            for path in self._table_dir("route_calculates", scope).glob("*.json"):
                if unquote(path.stem) in keep:
                    continue
                path.unlink(missing_ok=True)
                deleted += 1
        return deleted

    async def get_scope(self, scope: ScopeKey) -> ComputeScopeRow | None:
        return await asyncio.to_thread(_load_row, self._scope_path(scope), ComputeScopeRow)

    async def claim_scope(self, scope: ScopeKey, fingerprint: str) -> int:
        return await asyncio.to_thread(self._claim, scope, fingerprint)

    async def insert_scope(self, scope: ScopeKey, fingerprint: str) -> ComputeScopeRow:
        return await asyncio.to_thread(self._insert, scope, fingerprint)

    async def finish_scope(self, scope: ScopeKey, status: ScopeStatus, message: str | None = None) -> None:
        await asyncio.to_thread(self._finish, scope, status, message)

    async def upsert_route_geometry(self, snapshot: RouteGeometrySnapshot) -> None:
        scope = ScopeKey(snapshot.server_id, snapshot.network_variant, snapshot.dimension_context)
        await asyncio.to_thread(self._write, self._row_path("route_geometries", scope, snapshot.route_id), snapshot)

    async def get_route_geometry(self, scope: ScopeKey, route_id: str) -> RouteGeometrySnapshot | None:
        path = self._row_path("route_geometries", scope, route_id)
        return await asyncio.to_thread(_load_row, path, RouteGeometrySnapshot)

    async def list_route_geometries(self, scope: ScopeKey) -> list[RouteGeometrySnapshot]:
        return await asyncio.to_thread(self._list, "route_geometries", scope, RouteGeometrySnapshot)

    async def upsert_station_map(self, snapshot: StationMapSnapshot) -> None:
        scope = ScopeKey(snapshot.server_id, snapshot.network_variant, snapshot.dimension_context)
        await asyncio.to_thread(self._write, self._row_path("station_maps", scope, snapshot.station_id), snapshot)

    async def get_station_map(self, scope: ScopeKey, station_id: str) -> StationMapSnapshot | None:
        path = self._row_path("station_maps", scope, station_id)
        return await asyncio.to_thread(_load_row, path, StationMapSnapshot)

    async def upsert_route_calculate(self, row: RouteCalculateRow) -> None:
        scope = ScopeKey(row.server_id, row.network_variant, row.dimension_context)
        await asyncio.to_thread(self._write, self._row_path("route_calculates", scope, row.route_id), row)

    async def delete_route_calculates(self, scope: ScopeKey, keep_route_ids: Iterable[str] | None = None) -> int:
        return await asyncio.to_thread(self._delete_calculates, scope, set(keep_route_ids or ()))

    async def list_route_calculates(self, scope: ScopeKey) -> list[RouteCalculateRow]:
        return await asyncio.to_thread(self._list, "route_calculates", scope, RouteCalculateRow)
