"""Waste categories and the mapping from raw model output index to category."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class CategoryId(StrEnum):
    BIODEGRADABLE = "biodegradable"
    NON_BIODEGRADABLE = "non_biodegradable"
    RECYCLED = "recycled"


@dataclass(frozen=True)
class Category:
    """A waste category with its display metadata."""

    id: CategoryId
    label: str
    icon: str
    color: str


CATEGORIES: tuple[Category, ...] = (
    Category(id=CategoryId.BIODEGRADABLE, label="Biodegradable", icon="leaf", color="success"),
    Category(id=CategoryId.NON_BIODEGRADABLE, label="Non-Biodegradable", icon="trash", color="destructive"),
    Category(id=CategoryId.RECYCLED, label="Recycled", icon="recycle", color="secondary"),
)


def category_for_index(index: int) -> Category:
    """Map a model output index to a category.

    The model may emit more classes than there are categories, so indices
    wrap around: ``index`` and ``index + len(CATEGORIES)`` map to the same
    category. This is a placeholder until the model ships a label list.
    """
    if index < 0:
        raise ValueError(f"Class index must be non-negative, got {index}")
    return CATEGORIES[index % len(CATEGORIES)]
