"""
Category hierarchy resolution.

Each level of a slash-delimited path gets an id built from the path prefix up to
that level, so the same path always yields the same ids regardless of record order.
"""
import re
from typing import Any, Iterable, Optional

import structlog

from catalog_ingest.models.domain import CategoryEntity
from catalog_ingest.pipeline.validators import extract_text

logger = structlog.get_logger(__name__)

DEFAULT_CATEGORY_NAME = "Uncategorized"


def category_id_for_path(parts: list[str]) -> str:
    return "_".join(parts)


def fallback_category_id(name: str) -> str:
    slug = re.sub(r"\s+", "_", name.strip()).lower()
    return f"cat_{slug}"


def split_path(path: Optional[str]) -> list[str]:
    if not path:
        return []
    return [part.strip() for part in path.split("/") if part.strip()]


class CategoryHierarchyResolver:
    """
    Resolve feed categories into CategoryEntity nodes.

    Nodes are stored in the shared categories map of the run, keyed by id, and are
    created at most once per run. Insertion order of the map is parents first.
    When a staged map is passed, new nodes go there instead and the caller decides
    whether to merge them into the run.
    """

    def __init__(
        self, categories: dict[str, CategoryEntity], name_limit: Optional[int] = None
    ) -> None:
        self.categories = categories
        self.name_limit = name_limit

    def resolve(self, node: Any, staged: Optional[dict[str, CategoryEntity]] = None) -> str:
        """
        Resolve a raw category node and return the leaf id for the product.

        The node may be a bare name or a mapping with id, name and path.
        """
        if isinstance(node, dict):
            feed_id = extract_text(node.get("id"))
            name = extract_text(node.get("name")) or extract_text(node)
            path = extract_text(node.get("path"))
        else:
            feed_id = ""
            name = extract_text(node)
            path = ""
        return self.resolve_path(path, feed_id=feed_id, name=name, staged=staged)

    def resolve_path(
        self,
        path: Optional[str],
        feed_id: str = "",
        name: str = "",
        staged: Optional[dict[str, CategoryEntity]] = None,
    ) -> str:
        parts = split_path(path)
        if not parts:
            return self._resolve_flat(feed_id, name, staged)

        parent_id: Optional[str] = None
        for depth in range(1, len(parts) + 1):
            prefix = parts[:depth]
            category_id = category_id_for_path(prefix)
            if not self._known(category_id, staged):
                self._add(
                    CategoryEntity(
                        id=category_id,
                        name=self._clip(prefix[-1]),
                        path="/".join(prefix),
                        parent_id=parent_id,
                    ),
                    staged,
                )
            parent_id = category_id
        return parent_id

    def _resolve_flat(
        self, feed_id: str, name: str, staged: Optional[dict[str, CategoryEntity]]
    ) -> str:
        name = name.strip() or DEFAULT_CATEGORY_NAME
        category_id = feed_id.strip() or fallback_category_id(name)
        if not self._known(category_id, staged):
            self._add(
                CategoryEntity(
                    id=category_id, name=self._clip(name), path=name, parent_id=None
                ),
                staged,
            )
        return category_id

    def _known(self, category_id: str, staged: Optional[dict[str, CategoryEntity]]) -> bool:
        return category_id in self.categories or (
            staged is not None and category_id in staged
        )

    def _add(
        self, category: CategoryEntity, staged: Optional[dict[str, CategoryEntity]]
    ) -> None:
        target = self.categories if staged is None else staged
        target[category.id] = category

    def _clip(self, name: str) -> str:
        """Cut a display name to the stored column width; the id keeps the full text"""
        if self.name_limit is not None and len(name) > self.name_limit:
            return name[: self.name_limit]
        return name


def order_parents_first(categories: Iterable[CategoryEntity]) -> list[CategoryEntity]:
    """
    Sort categories by depth so each parent precedes its children.

    Raises:
        ValueError: The parent chain contains a cycle
    """
    by_id = {category.id: category for category in categories}
    depths: dict[str, int] = {}

    def depth_of(category_id: str) -> int:
        seen = set()
        chain = []
        current: Optional[str] = category_id
        while current is not None and current in by_id and current not in depths:
            if current in seen:
                raise ValueError(f"Category cycle detected at '{current}'")
            seen.add(current)
            chain.append(current)
            current = by_id[current].parent_id
        base = depths.get(current, -1) if current is not None else -1
        for offset, item in enumerate(reversed(chain), start=1):
            depths[item] = base + offset
        return depths[category_id]

    for category_id in by_id:
        depth_of(category_id)

    return sorted(by_id.values(), key=lambda category: depths[category.id])


__all__ = [
    "CategoryHierarchyResolver",
    "order_parents_first",
    "category_id_for_path",
    "fallback_category_id",
    "split_path",
    "DEFAULT_CATEGORY_NAME",
]
