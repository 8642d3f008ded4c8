"""Catalog sync runner - loads node descriptors into the FlowDoc cache.

Reads the bundled catalog from catalog_data/ (or the given YAML/JSON files or
directories) and replaces the cached catalog in one transaction.

Usage:
    flowdoc-sync                    # Sync the bundled catalog
    flowdoc-sync my-nodes.yaml      # Sync from the given files/directories
    flowdoc-sync --clear            # Empty the cache first
    flowdoc-sync --list             # Show bundled catalog files
"""

import asyncio
import sys
from pathlib import Path

from . import __version__
from .catalog_loader import CATALOG_DIR, catalog_files, load_catalog
from .config import Settings
from .errors import CatalogDataError
from .persistence import KnowledgeStore


async def sync_catalog(store: KnowledgeStore, paths: list[Path] | None = None, clear: bool = False) -> bool:
    """Sync descriptors into the store and print the resulting statistics.

    Returns True on success.
    """
    descriptors, revision = load_catalog(paths)
    print(f"Loaded {len(descriptors)} nodes (revision {revision})")

    if clear:
        await store.clear()
        print("Cleared existing catalog")

    result = await store.sync(descriptors, revision)
    if not result.ok:
        print(f"\nSync failed, previous catalog kept: {result.error}")
        print("Retrying is safe.")
        return False
    print("\nCatalog unchanged" if not result.changed else f"\nSynced {result.count} nodes")

    stats = await store.stats()
    print(f"Total nodes in database: {stats.total_count}")
    for category, count in stats.per_category.items():
        print(f"  {category}: {count}")
    return True


async def run(paths: list[Path] | None, clear: bool) -> bool:
    settings = Settings.from_env()
    store = KnowledgeStore(settings.db_path)
    try:
        print(f"Database: {settings.db_path}\n")
        return await sync_catalog(store, paths, clear=clear)
    finally:
        await store.close_pool()


def main():
    """Run catalog sync."""
    args = sys.argv[1:]

    if args:
        if args[0] in ("--help", "-h"):
            print("""FlowDoc Sync - Load the node catalog into the cache

Usage: flowdoc-sync [OPTIONS] [PATH ...]

Options:
  -h, --help     Show this help message
  -V, --version  Show version number
  --clear        Remove all cached nodes before syncing
  --list         Show bundled catalog files

PATH may be a YAML or JSON catalog file, or a directory of them.
Without PATH the bundled catalog is used. Syncing is atomic and safe to
run repeatedly; an unchanged catalog is left as is.
Data is stored in ~/.flowdoc/ by default (see FLOWDOC_DATA_DIR).
""")
            return
        elif args[0] in ("--version", "-V"):
            print(f"flowdoc-sync {__version__}")
            return
        elif args[0] == "--list":
            print(f"Bundled catalog ({CATALOG_DIR}):")
            for path in catalog_files():
                print(f"  - {path.name}")
            return

    clear = "--clear" in args
    paths = [Path(a).expanduser() for a in args if not a.startswith("--")]

    print("FlowDoc Sync - Loading catalog...\n")
    try:
        ok = asyncio.run(run(paths or None, clear))
    except (CatalogDataError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
