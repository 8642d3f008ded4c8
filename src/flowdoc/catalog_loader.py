"""Load node descriptors from serialized catalog assets.

The bundled catalog lives in YAML files under catalog_data/:
    catalog_data/
    ├── core.yaml           triggers, flow control, transforms
    └── integrations.yaml   third-party integrations

Each file holds a top-level ``nodes`` list. JSON files with the same shape (or a
bare list) are accepted too, so an exported catalog can be synced directly.

The revision marker of a load is derived from the asset bytes, so reloading the
same files always yields the same revision.
"""

import hashlib
import json
from pathlib import Path

import yaml
from pydantic import ValidationError

from .errors import CatalogDataError
from .models import NodeDescriptor

CATALOG_DIR = Path(__file__).parent / "catalog_data"
REVISION_LENGTH = 16


def catalog_files(directory: Path = CATALOG_DIR) -> list[Path]:
    """List catalog asset files in a directory, sorted by name."""
    files = [p for p in directory.iterdir() if p.suffix in (".yaml", ".yml", ".json")]
    return sorted(files, key=lambda p: p.name)


def read_records(path: Path, key: str = "nodes") -> list[dict]:
    """Read the record list of one asset file: a top-level ``key`` list or a bare list."""
    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise CatalogDataError(f"{path.name}: unreadable data file: {e}") from e

    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get(key, [])
    if not isinstance(data, list):
        raise CatalogDataError(f"{path.name}: expected a list of {key}")
    return data


def parse_descriptors(records: list[dict], source: str = "<memory>") -> list[NodeDescriptor]:
    """Validate raw records into descriptors, rejecting duplicate names."""
    descriptors = []
    seen: set[str] = set()
    for i, record in enumerate(records):
        try:
            descriptor = NodeDescriptor.model_validate(record)
        except ValidationError as e:
            name = record.get("name", f"#{i}") if isinstance(record, dict) else f"#{i}"
            raise CatalogDataError(f"{source}: invalid node '{name}': {e}") from e
        if descriptor.name in seen:
            raise CatalogDataError(f"{source}: duplicate node name '{descriptor.name}'")
        seen.add(descriptor.name)
        descriptors.append(descriptor)
    return descriptors


def load_catalog(paths: list[Path] | None = None) -> tuple[list[NodeDescriptor], str]:
    """Load descriptors and compute the revision marker.

    Args:
        paths: Asset files or directories to load. Defaults to the bundled catalog.

    Returns:
        (descriptors, revision) where revision is a SHA-256 prefix over the assets.
    """
    if not paths:
        paths = [CATALOG_DIR]

    files: list[Path] = []
    for path in paths:
        path = Path(path)
        if path.is_dir():
            files.extend(catalog_files(path))
        elif path.exists():
            files.append(path)
        else:
            raise CatalogDataError(f"Catalog path not found: {path}")

    digest = hashlib.sha256()
    records: list[dict] = []
    for file in files:
        digest.update(file.name.encode())
        digest.update(file.read_bytes())
        records.extend(read_records(file))

    descriptors = parse_descriptors(records, source=", ".join(f.name for f in files))
    return descriptors, digest.hexdigest()[:REVISION_LENGTH]
