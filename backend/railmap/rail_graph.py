from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Literal

from .block_pos import BlockPosition, encode_block_position, extract_block_position
from .dataset import RailRow
from .payload import (
    CONNECTION_FIELD_ALIASES,
    CONNECTION_LIST_ALIASES,
    CONNECTION_TARGET_ALIASES,
    NODE_POSITION_ALIASES,
    as_json_record,
    curve_aliases,
    first_present,
    iter_present,
    normalize_payload_record,
    read_string,
    to_boolean,
    to_number,
)

PreferredCurve = Literal["primary", "secondary"]


@dataclass(frozen=True)
class CurveParameters:
    h: float | None = None
    k: float | None = None
    r: float | None = None
    t_start: float | None = None
    t_end: float | None = None
    reverse: bool | None = None
    is_straight: bool | None = None

    @property
    def is_present(self) -> bool:
        return any(value is not None for value in asdict(self).values())

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ConnectionMetadata:
    target_node_id: str
    rail_type: str | None = None
    transport_mode: str | None = None
    model_key: str | None = None
    is_secondary_dir: bool | None = None
    y_start: float | None = None
    y_end: float | None = None
    vertical_curve_radius: float | None = None
    primary: CurveParameters | None = None
    secondary: CurveParameters | None = None
    preferred_curve: PreferredCurve | None = None

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["primary"] = self.primary.as_dict() if self.primary else None
        out["secondary"] = self.secondary.as_dict() if self.secondary else None
        return out


@dataclass(frozen=True)
class RailSegment:
    start: BlockPosition
    end: BlockPosition
    connection: ConnectionMetadata | None = None

    def key(self) -> str:
        return segment_key(self.start, self.end)

    def as_dict(self) -> dict[str, Any]:
        return {
            "start": self.start.as_dict(),
            "end": self.end.as_dict(),
            "connection": self.connection.as_dict() if self.connection else None,
        }


def segment_key(start: BlockPosition, end: BlockPosition) -> str:
    return f"{start.x},{start.y},{start.z}->{end.x},{end.y},{end.z}"


@dataclass
class RailGraph:
    """Undirected position graph stored as an arena of integer node indices.

    ``connections`` is keyed by directed ``(from, to)`` index pairs; every
    physical edge is stored once per direction.
    """

    positions: list[BlockPosition] = field(default_factory=list)
    index: dict[BlockPosition, int] = field(default_factory=dict)
    # insertion-ordered neighbor sets
    adjacency: list[dict[int, None]] = field(default_factory=list)
    connections: dict[tuple[int, int], ConnectionMetadata] = field(default_factory=dict)
    _columns: dict[tuple[int, int], list[int]] | None = field(default=None, repr=False)

    def add_node(self, position: BlockPosition) -> int:
        existing = self.index.get(position)
        if existing is not None:
            return existing
        idx = len(self.positions)
        self.positions.append(position)
        self.index[position] = idx
        self.adjacency.append({})
        self._columns = None
        return idx

    def add_edge(
        self,
        start: BlockPosition,
        end: BlockPosition,
        metadata: ConnectionMetadata | None,
    ) -> None:
        a = self.add_node(start)
        b = self.add_node(end)
        self.adjacency[a][b] = None
        self.adjacency[b][a] = None
        if metadata is not None:
            self.connections[(a, b)] = metadata
            self.connections[(b, a)] = reverse_connection_metadata(metadata, node_id_for(start))

    def index_of(self, position: BlockPosition) -> int | None:
        return self.index.get(position)

    def node_id(self, idx: int) -> str:
        return node_id_for(self.positions[idx])

    def neighbors(self, idx: int) -> Iterable[int]:
        return self.adjacency[idx].keys()

    def connection(self, start: int, end: int) -> ConnectionMetadata | None:
        return self.connections.get((start, end))

    @property
    def node_count(self) -> int:
        return len(self.positions)

    @property
    def edge_count(self) -> int:
        return sum(len(neighbors) for neighbors in self.adjacency) // 2

    def columns(self) -> dict[tuple[int, int], list[int]]:
        """Node indices bucketed by their ``(x, z)`` column, in insertion order."""
        if self._columns is None:
            columns: dict[tuple[int, int], list[int]] = {}
            for idx, pos in enumerate(self.positions):
                columns.setdefault((pos.x, pos.z), []).append(idx)
            self._columns = columns
        return self._columns


def node_id_for(position: BlockPosition) -> str:
    return encode_block_position(position) or f"{position.x},{position.y},{position.z}"


def pick_preferred_curve(
    primary: CurveParameters | None,
    secondary: CurveParameters | None,
) -> PreferredCurve | None:
    primary_forward = primary is not None and not primary.reverse
    secondary_forward = secondary is not None and not secondary.reverse
    if primary_forward:
        return "primary"
    if secondary_forward:
        return "secondary"
    if primary is not None:
        return "primary"
    if secondary is not None:
        return "secondary"
    return None


def _read_curve(value: dict[str, Any], suffix: str) -> CurveParameters | None:
    curve = CurveParameters(
        h=to_number(first_present(value, curve_aliases("h", suffix))),
        k=to_number(first_present(value, curve_aliases("k", suffix))),
        r=to_number(first_present(value, curve_aliases("r", suffix))),
        t_start=to_number(first_present(value, curve_aliases("t_start", suffix))),
        t_end=to_number(first_present(value, curve_aliases("t_end", suffix))),
        reverse=to_boolean(first_present(value, curve_aliases("reverse", suffix))),
        is_straight=to_boolean(first_present(value, curve_aliases("is_straight", suffix))),
    )
    return curve if curve.is_present else None


def normalize_connection_metadata(value: dict[str, Any], target_node_id: str) -> ConnectionMetadata:
    primary = _read_curve(value, "1")
    secondary = _read_curve(value, "2")

    def _field(name: str) -> Any:
        return first_present(value, CONNECTION_FIELD_ALIASES[name])

    return ConnectionMetadata(
        target_node_id=target_node_id,
        rail_type=read_string(_field("rail_type")),
        transport_mode=read_string(_field("transport_mode")),
        model_key=read_string(_field("model_key")),
        is_secondary_dir=to_boolean(_field("is_secondary_dir")),
        y_start=to_number(_field("y_start")),
        y_end=to_number(_field("y_end")),
        vertical_curve_radius=to_number(_field("vertical_curve_radius")),
        primary=primary,
        secondary=secondary,
        preferred_curve=pick_preferred_curve(primary, secondary),
    )


def _flip(curve: CurveParameters | None) -> CurveParameters | None:
    if curve is None:
        return None
    return replace(curve, reverse=not (curve.reverse or False))


def reverse_connection_metadata(metadata: ConnectionMetadata, target_node_id: str) -> ConnectionMetadata:
    """Metadata for traversing the same edge in the opposite direction."""
    return replace(
        metadata,
        target_node_id=target_node_id,
        y_start=metadata.y_end,
        y_end=metadata.y_start,
        primary=_flip(metadata.primary),
        secondary=_flip(metadata.secondary),
    )


def extract_rail_node_position(record: dict[str, Any]) -> BlockPosition | None:
    for candidate in iter_present(record, NODE_POSITION_ALIASES):
        position = extract_block_position(candidate)
        if position is not None:
            return position
    return None


def _connection_entries(value: Any) -> list[dict[str, Any]]:
    if isinstance(value, list):
        entries = value
    elif isinstance(value, dict):
        entries = list(value.values())
    else:
        return []
    return [entry for entry in entries if isinstance(entry, dict)]


def extract_rail_connections(record: dict[str, Any]) -> list[dict[str, Any]]:
    for candidate in iter_present(record, CONNECTION_LIST_ALIASES):
        entries = _connection_entries(candidate)
        if entries:
            return entries
    return []


def extract_connection_position(connection: dict[str, Any]) -> BlockPosition | None:
    return extract_block_position(first_present(connection, CONNECTION_TARGET_ALIASES))


def build_rail_graph(rows: Iterable[RailRow]) -> RailGraph | None:
    graph = RailGraph()
    for row in rows:
        payload = as_json_record(row.payload)
        if payload is None:
            continue
        record = normalize_payload_record(payload)
        node_position = extract_rail_node_position(record)
        if node_position is None:
            continue
        graph.add_node(node_position)
        for connection in extract_rail_connections(record):
            target = extract_connection_position(connection)
            if target is None:
                continue
            graph.add_edge(
                node_position,
                target,
                normalize_connection_metadata(connection, node_id_for(target)),
            )
    return graph if graph.node_count else None
