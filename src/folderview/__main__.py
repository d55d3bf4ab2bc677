"""Entry point for `python -m folderview` and the `folderview` CLI script."""

from __future__ import annotations

import argparse
import dataclasses
import logging
from collections.abc import Sequence
from pathlib import Path

from folderview import get_version
from folderview.admission import AdmissionDenied
from folderview.manager import Manager
from folderview.manifests import apply_resource, load_manifests
from folderview.models import FolderIndex
from folderview.settings import RuntimeSettings, load_env_file
from folderview.store import FileObjectStore, NotFoundError
from folderview.tree import render_tree
from folderview.validation import IndexValidationError, validate_folder_index


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Folder hierarchy RBAC controller")
    parser.add_argument("--version", action="version", version=f"%(prog)s {get_version()}")
    parser.add_argument(
        "--store-root",
        type=Path,
        default=None,
        help="Object store directory (default: FOLDERVIEW_STORE_ROOT or ./folderview_store)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Environment file with FOLDERVIEW_* overrides (default: ./.env when present)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    apply_cmd = commands.add_parser("apply", help="Create or update objects from JSON manifests")
    apply_cmd.add_argument("paths", nargs="+", type=Path, help="Manifest files")
    apply_cmd.add_argument("--reconcile", action="store_true", help="Run the controllers until idle afterwards")

    reconcile_cmd = commands.add_parser("reconcile", help="Reconcile every folder and index until idle")
    reconcile_cmd.add_argument("--max-passes", type=int, default=None, help="Pass budget (default: FOLDERVIEW_MAX_PASSES)")

    validate_cmd = commands.add_parser("validate-index", help="Check a folder index for loops and dual parents")
    validate_cmd.add_argument("--file", type=Path, default=None, help="Manifest to check instead of the stored index")

    tree_cmd = commands.add_parser("tree", help="Display the folder tree of an index")
    tree_cmd.add_argument("--file", type=Path, default=None, help="Manifest to render instead of the stored index")

    return parser.parse_args(argv)


def load_index(store: FileObjectStore, settings: RuntimeSettings, path: Path | None) -> FolderIndex:
    if path is None:
        return store.get(FolderIndex, settings.index_name)
    indices = [resource for resource in load_manifests(path) if isinstance(resource, FolderIndex)]
    if len(indices) != 1:
        raise ValueError(f"{path} must contain exactly one FolderIndex, found {len(indices)}")
    return indices[0]


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.env_file is not None and not args.env_file.is_file():
        logging.error("Environment file not found: %s", args.env_file)
        return 1
    load_env_file(args.env_file)

    try:
        settings = RuntimeSettings.from_env()
        if args.store_root is not None:
            settings = dataclasses.replace(settings, store_root=str(args.store_root))
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 1

    store = FileObjectStore(settings.store_path)

    if args.command == "apply":
        manager = Manager(store, settings)
        try:
            resources = [resource for path in args.paths for resource in load_manifests(path)]
            for resource in resources:
                outcome = apply_resource(manager.store, resource)
                print(f"{resource.describe()} {outcome.value}")
        except (OSError, ValueError, AdmissionDenied) as exc:
            logging.error("Unable to apply manifests: %s", exc)
            return 1
        if args.reconcile:
            manager.enqueue_all()
            passes = manager.run_until_idle()
            print(f"passes={passes}")
        return 0

    if args.command == "reconcile":
        manager = Manager(store, settings)
        manager.enqueue_all()
        passes = manager.run_until_idle(args.max_passes)
        print(f"passes={passes}")
        return 0 if not len(manager.queue) else 1

    try:
        index = load_index(store, settings, args.file)
    except (NotFoundError, OSError, ValueError) as exc:
        logging.error("Unable to load folder index: %s", exc)
        return 1

    if args.command == "validate-index":
        try:
            validate_folder_index(index)
        except IndexValidationError as exc:
            print(f"invalid: {exc}")
            return 1
        print("valid")
        return 0

    for line in render_tree(index):
        print(line)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
