"""Bundled workflow template library.

Templates live in YAML files under template_data/, each holding a top-level
``templates`` list. They are static package data: loaded once on first use and
never written to the catalog store.
"""

import logging
from collections import Counter
from pathlib import Path

from pydantic import ValidationError

from .catalog_index import tokenize
from .catalog_loader import catalog_files, read_records
from .errors import CatalogDataError
from .models import WorkflowTemplate

logger = logging.getLogger("flowdoc.templates")

TEMPLATE_DIR = Path(__file__).parent / "template_data"

# Token match weights per template field
NAME_WEIGHT = 3
TAG_WEIGHT = 2
TEXT_WEIGHT = 1


def load_templates(paths: list[Path] | None = None) -> list[WorkflowTemplate]:
    """Load and validate templates, rejecting duplicate ids."""
    files: list[Path] = []
    for path in paths or [TEMPLATE_DIR]:
        path = Path(path)
        if path.is_dir():
            files.extend(catalog_files(path))
        elif path.exists():
            files.append(path)
        else:
            raise CatalogDataError(f"Template path not found: {path}")

    templates = []
    seen: set[str] = set()
    for file in files:
        for i, record in enumerate(read_records(file, key="templates")):
            try:
                template = WorkflowTemplate.model_validate(record)
            except ValidationError as e:
                ident = record.get("id", f"#{i}") if isinstance(record, dict) else f"#{i}"
                raise CatalogDataError(f"{file.name}: invalid template '{ident}': {e}") from e
            if template.id in seen:
                raise CatalogDataError(f"{file.name}: duplicate template id '{template.id}'")
            seen.add(template.id)
            templates.append(template)
    return templates


class TemplateLibrary:
    """Search and lookup over workflow templates."""

    def __init__(self, paths: list[Path] | None = None):
        self._paths = paths
        self._templates: dict[str, WorkflowTemplate] | None = None

    def _load(self) -> dict[str, WorkflowTemplate]:
        if self._templates is None:
            templates = load_templates(self._paths)
            self._templates = {t.id: t for t in sorted(templates, key=lambda t: t.id)}
            logger.info(f"Loaded {len(self._templates)} workflow templates")
        return self._templates

    def all(self) -> list[WorkflowTemplate]:
        return list(self._load().values())

    def get(self, template_id: str) -> WorkflowTemplate | None:
        templates = self._load()
        if template_id in templates:
            return templates[template_id]
        folded = template_id.casefold()
        return next((t for t in templates.values() if t.id.casefold() == folded), None)

    def categories(self) -> dict[str, int]:
        counts = Counter(t.category for t in self._load().values())
        return dict(sorted(counts.items()))

    def search(
        self,
        query: str | None = None,
        node_types: list[str] | None = None,
        category: str | None = None,
        limit: int = 20,
    ) -> list[WorkflowTemplate]:
        """Filter by category and node types, then rank by keyword matches.

        Every requested node type must appear in a template's workflow. Without
        a query the filtered templates are returned in id order.
        """
        candidates = self.all()
        if category:
            folded = category.casefold()
            candidates = [t for t in candidates if t.category.casefold() == folded]
        if node_types:
            wanted = set(node_types)
            candidates = [t for t in candidates if wanted <= set(t.node_types)]

        tokens = tokenize(query) if query else set()
        if not tokens:
            return candidates[:limit]

        scored = []
        for template in candidates:
            score = self._score(template, tokens)
            if score:
                scored.append((-score, template.id, template))
        scored.sort(key=lambda entry: entry[:2])
        return [template for _, _, template in scored[:limit]]

    @staticmethod
    def _score(template: WorkflowTemplate, tokens: set[str]) -> int:
        tag_tokens = set().union(*(tokenize(tag) for tag in template.tags)) if template.tags else set()
        text_tokens = tokenize(" ".join([template.description, *template.use_cases, template.category]))
        name_tokens = tokenize(template.name) | tokenize(template.id)
        score = 0
        for token in tokens:
            if token in name_tokens:
                score += NAME_WEIGHT
            if token in tag_tokens:
                score += TAG_WEIGHT
            if token in text_tokens:
                score += TEXT_WEIGHT
        return score
