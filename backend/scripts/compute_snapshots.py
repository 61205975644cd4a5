from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, Sequence

from railmap.compute_errors import ComputeError
from railmap.snapshot_service import RailwaySnapshotService
from railmap.stores import JsonFileSnapshotStore, JsonFileSourceStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Compute railway route and station snapshots from a source dump directory."
    )
    parser.add_argument("--server-id", required=True)
    parser.add_argument("--network-variant", default="MTR")
    parser.add_argument("--source-dir", default=None, help="Directory holding <server_id>.json dumps.")
    parser.add_argument("--snapshot-dir", default=None, help="Directory the snapshot rows are written under.")
    parser.add_argument("--route-id", default=None, help="Recompute a single route instead of a full sweep.")
    parser.add_argument("--dimension", default=None, help="Dimension as namespace:name, e.g. minecraft:overworld.")
    return parser


def run_compute(args: argparse.Namespace) -> dict[str, Any]:
    service = RailwaySnapshotService(
        JsonFileSourceStore(args.source_dir),
        JsonFileSnapshotStore(args.snapshot_dir),
    )
    if args.route_id:
        report = asyncio.run(
            service.compute_route(
                args.server_id,
                args.network_variant,
                args.route_id,
                dimension=args.dimension,
            )
        )
        # per-rail rows stay in the in-process cache; print the headline only
        return {key: value for key, value in report.items() if key not in ("route_ids", "platform_ids", "rail_ids")}
    return asyncio.run(service.compute_all_for_server(args.server_id, args.network_variant))


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    try:
        payload = run_compute(args)
    except ComputeError as e:
        print(json.dumps({"reason_code": e.reason_code, "message": e.message, "details": e.details}, indent=2))
        return 1
    print(json.dumps(payload, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
