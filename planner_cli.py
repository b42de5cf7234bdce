#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Operator command line for the lab shift planner
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from registry.config import load_config
from registry.errors import PlannerError
from registry.models import Shift, TaskCategory
from registry.store import SqliteDocumentStore
from services.dashboard import load_shift_summary
from services.grid import ALL_TAB, active_column_keys, build_grid, export_grid_summary, filter_groups
from services.importer import (
    categorize_group,
    collect_headers,
    default_excluded_columns,
    normalize_rows,
    read_task_rows,
)
from services.lifecycle import LifecycleEngine
from services.mapping import MappingService, build_column_headers, column_keys

logger = logging.getLogger("planner_cli")


async def _cmd_import(store, config, args) -> int:
    rows = read_task_rows(args.file)
    excluded = set() if args.all_columns else default_excluded_columns(
        collect_headers(rows), config["visible_columns"]
    )
    result = normalize_rows(rows, excluded)

    for group in result.groups:
        print(f"{group.request_id}\t{len(group.tasks)} item(s)")
    print(f"rows: {result.total_rows}  groups: {len(result.groups)}  dropped: {result.dropped_rows}")

    if args.category:
        for group in result.groups:
            await categorize_group(store, group, args.category)
        print(f"{len(result.groups)} group(s) moved to {args.category}")
    return 0


async def _cmd_mappings(store, config, args) -> int:
    result = await MappingService(store).import_workbook(args.file)
    print(f"Import complete: added {result.added}, updated {result.updated}")
    return 0


async def _cmd_grid(store, config, args) -> int:
    engine = LifecycleEngine(store, config["batch_delete_size"])
    mappings = await MappingService(store).list_mappings()
    groups = filter_groups(await engine.load_pool(), args.tab, args.search)
    rows = build_grid(groups, mappings)
    headers = build_column_headers(mappings)

    if args.export:
        export_grid_summary(rows, headers, args.export, hide_empty=not args.show_empty)
        print(f"exported {len(rows)} row(s) to {args.export}")
        return 0

    keys = column_keys(headers)
    if not args.show_empty:
        keys = active_column_keys(rows, keys)
    print("\t".join(["Request ID", "Due"] + keys + ["Unmapped"]))
    for row in rows:
        counts = [str(len(row.cell(k)) or "") for k in keys]
        print("\t".join([row.request_id, row.due_display] + counts + [str(len(row.unmapped) or "")]))
    return 0


async def _cmd_dashboard(store, config, args) -> int:
    for person in await load_shift_summary(store, args.date, args.shift):
        print(f"{person.name} [{person.role}] pending: {person.pending_tasks}")
        for entry in person.summary.values():
            print(f"  {entry.description}: {entry.done}/{entry.total} done,"
                  f" {entry.failed} failed, {entry.returned} returned")
    return 0


async def _cmd_cleanup(store, config, args) -> int:
    deleted = await LifecycleEngine(store, config["batch_delete_size"]).run_cleanup()
    print(f"deleted {deleted} empty group(s)")
    return 0


async def _cmd_wipe(store, config, args) -> int:
    if not args.yes:
        print("refusing to wipe task data without --yes")
        return 2
    deleted = await LifecycleEngine(store, config["batch_delete_size"]).clear_all_task_data()
    print(f"deleted {deleted} document(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lab-planner", description="Lab shift planner")
    parser.add_argument("--config", default="config.json", help="JSON config file")
    parser.add_argument("--data-folder", default=None, help="shared data folder holding .planner/planner.db")
    parser.add_argument("--db", default=None, help="database path, overrides the config")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("import", help="read a request workbook into task groups")
    p.add_argument("file")
    p.add_argument("--category", choices=TaskCategory.ALL, default=None,
                   help="move every group into the pool under this category")
    p.add_argument("--all-columns", action="store_true", help="keep columns outside the visible list")
    p.set_defaults(handler=_cmd_import)

    p = sub.add_parser("mappings", help="import column mapping rules from a workbook")
    p.add_argument("file")
    p.set_defaults(handler=_cmd_mappings)

    p = sub.add_parser("grid", help="show or export the pool grid")
    p.add_argument("--tab", default=ALL_TAB, choices=(ALL_TAB,) + TaskCategory.ALL)
    p.add_argument("--search", default="", help="request id filter")
    p.add_argument("--show-empty", action="store_true", help="keep columns without items")
    p.add_argument("--export", default=None, help="write an .xlsx summary instead of printing")
    p.set_defaults(handler=_cmd_grid)

    p = sub.add_parser("dashboard", help="per-person summary of a shift")
    p.add_argument("--date", required=True, help="YYYY-MM-DD")
    p.add_argument("--shift", choices=Shift.ALL, default=Shift.DAY)
    p.set_defaults(handler=_cmd_dashboard)

    p = sub.add_parser("cleanup", help="delete empty pool groups")
    p.set_defaults(handler=_cmd_cleanup)

    p = sub.add_parser("wipe", help="delete all pool and assignment data")
    p.add_argument("--yes", action="store_true")
    p.set_defaults(handler=_cmd_wipe)
    return parser


async def _run(args, config) -> int:
    store = SqliteDocumentStore(config["store_db_path"], config["store_wal"])
    try:
        return await args.handler(store, config, args)
    finally:
        await store.close()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = load_config(args.config, args.data_folder)
    if args.db:
        config["store_db_path"] = args.db

    logging.basicConfig(
        level=getattr(logging, str(config["log_level"]).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return asyncio.run(_run(args, config))
    except PlannerError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
