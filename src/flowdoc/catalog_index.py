"""In-memory lookup and search structures derived from the knowledge store.

The index is rebuilt lazily: the first query after the store's sync marker
(revision, last sync time) changes rebuilds it from a store snapshot, and every
later query reuses it until the next change.
"""

import asyncio
import logging
import re
from collections import defaultdict

from .models import CatalogSnapshot, NodeDescriptor
from .persistence import KnowledgeStore

logger = logging.getLogger("flowdoc.catalog_index")

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_TOKEN = re.compile(r"[a-z0-9]+")

# Search rank tiers, lower is better
RANK_EXACT = 0
RANK_DISPLAY_NAME = 1
RANK_DESCRIPTION = 2
RANK_TOKEN = 3


def tokenize(text: str) -> set[str]:
    """Split text into lowercase word tokens, breaking camelCase apart."""
    return set(_TOKEN.findall(_CAMEL_BOUNDARY.sub(r"\1 \2", text).lower()))


class IndexSnapshot:
    """Lookup structures for one catalog revision. Read-only once built."""

    def __init__(self, snapshot: CatalogSnapshot):
        self.revision = snapshot.revision
        self.marker = snapshot.marker
        self._descriptors = tuple(sorted(snapshot.descriptors, key=lambda d: d.name))
        self._by_name: dict[str, NodeDescriptor] = {}
        self._by_folded: dict[str, NodeDescriptor] = {}
        self._by_short: dict[str, list[NodeDescriptor]] = defaultdict(list)
        self._by_category: dict[str, list[NodeDescriptor]] = defaultdict(list)
        self._tokens: dict[str, set[str]] = defaultdict(set)

        for d in self._descriptors:
            self._by_name[d.name] = d
            self._by_folded.setdefault(d.name.casefold(), d)
            self._by_short[d.short_name.casefold()].append(d)
            self._by_category[d.category].append(d)
            for token in tokenize(f"{d.name} {d.display_name} {d.description}"):
                self._tokens[token].add(d.name)

    def __len__(self) -> int:
        return len(self._descriptors)

    @property
    def descriptors(self) -> tuple[NodeDescriptor, ...]:
        return self._descriptors

    def resolve(self, type_name: str) -> NodeDescriptor | None:
        """Resolve a type reference: exact name, case-insensitive name, then unique short name."""
        if type_name in self._by_name:
            return self._by_name[type_name]
        folded = type_name.casefold()
        if folded in self._by_folded:
            return self._by_folded[folded]
        candidates = self._by_short.get(folded.rsplit(".", 1)[-1], [])
        if len(candidates) == 1:
            return candidates[0]
        return None

    def suggest(self, type_name: str, limit: int = 3) -> list[str]:
        """Names of descriptors resembling an unresolvable type reference."""
        short = type_name.rsplit(".", 1)[-1]
        return [d.name for d in self.search(short, limit=limit)]

    def search(
        self,
        query: str,
        category: str | None = None,
        trigger_only: bool = False,
        limit: int = 20,
    ) -> list[NodeDescriptor]:
        """Ranked search.

        Order: exact name match, display-name substring, description substring,
        then token-prefix matches; ties broken by name ascending.
        """
        q = query.strip().casefold()
        token_hits = self._token_matches(q)

        ranked: list[tuple[int, str, NodeDescriptor]] = []
        for d in self._descriptors:
            if category and d.category != category:
                continue
            if trigger_only and not d.trigger:
                continue
            rank = self._rank(d, q, token_hits)
            if rank is not None:
                ranked.append((rank, d.name, d))

        ranked.sort(key=lambda item: (item[0], item[1]))
        return [d for _, _, d in ranked[:limit]]

    def _rank(self, d: NodeDescriptor, q: str, token_hits: set[str]) -> int | None:
        if not q:
            return RANK_TOKEN
        if d.name.casefold() == q or d.short_name.casefold() == q:
            return RANK_EXACT
        if q in d.display_name.casefold():
            return RANK_DISPLAY_NAME
        if q in d.description.casefold():
            return RANK_DESCRIPTION
        if d.name in token_hits:
            return RANK_TOKEN
        return None

    def _token_matches(self, q: str) -> set[str]:
        names: set[str] = set()
        for query_token in tokenize(q):
            for token, token_names in self._tokens.items():
                if token.startswith(query_token):
                    names |= token_names
        return names

    def list_categories(self) -> list[str]:
        return sorted(self._by_category)

    def by_category(self, category: str) -> list[NodeDescriptor]:
        return list(self._by_category.get(category, []))


class CatalogIndex:
    """Memoized IndexSnapshot over a KnowledgeStore."""

    def __init__(self, store: KnowledgeStore):
        self._store = store
        self._current: IndexSnapshot | None = None
        self._lock = asyncio.Lock()
        self.rebuild_count = 0

    async def current(self) -> IndexSnapshot:
        """Return the index for the store's current revision, rebuilding if it changed."""
        meta = await self._store.get_sync_metadata()
        marker = (meta.revision, meta.last_sync) if meta else (None, None)
        if self._current is not None and self._current.marker == marker:
            return self._current

        async with self._lock:
            if self._current is None or self._current.marker != marker:
                snapshot = await self._store.snapshot()
                self._current = IndexSnapshot(snapshot)
                self.rebuild_count += 1
                logger.info(
                    f"Rebuilt catalog index: {len(self._current)} nodes at revision {snapshot.revision}"
                )
        return self._current

    async def resolve(self, type_name: str) -> NodeDescriptor | None:
        return (await self.current()).resolve(type_name)

    async def search(
        self,
        query: str,
        category: str | None = None,
        trigger_only: bool = False,
        limit: int = 20,
    ) -> list[NodeDescriptor]:
        return (await self.current()).search(query, category=category, trigger_only=trigger_only, limit=limit)

    async def list_categories(self) -> list[str]:
        return (await self.current()).list_categories()

    async def by_category(self, category: str) -> list[NodeDescriptor]:
        return (await self.current()).by_category(category)
