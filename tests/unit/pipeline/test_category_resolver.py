"""
Unit tests for category hierarchy resolution.
"""
import pytest

from catalog_ingest.models.domain import CategoryEntity
from catalog_ingest.pipeline.category_resolver import (
    DEFAULT_CATEGORY_NAME,
    CategoryHierarchyResolver,
    fallback_category_id,
    order_parents_first,
    split_path,
)


@pytest.fixture
def categories():
    return {}


@pytest.fixture
def resolver(categories):
    return CategoryHierarchyResolver(categories)


class TestResolvePath:
    """Test path-based resolution"""

    def test_creates_each_level_once(self, resolver, categories):
        """Test ancestors are created once and chained by parent_id"""
        leaf = resolver.resolve({"path": "Tools/Hand Tools/Hammers"})
        again = resolver.resolve({"path": "Tools/Hand Tools/Hammers"})
        sibling = resolver.resolve({"path": "Tools/Hand Tools/Saws"})

        assert leaf == again == "Tools_Hand Tools_Hammers"
        assert sibling == "Tools_Hand Tools_Saws"
        assert list(categories) == [
            "Tools",
            "Tools_Hand Tools",
            "Tools_Hand Tools_Hammers",
            "Tools_Hand Tools_Saws",
        ]
        assert categories["Tools"].parent_id is None
        assert categories["Tools_Hand Tools"].parent_id == "Tools"
        assert categories[leaf].parent_id == "Tools_Hand Tools"
        assert categories[leaf].name == "Hammers"
        assert categories[leaf].path == "Tools/Hand Tools/Hammers"

    def test_ids_independent_of_order(self):
        """Test the same paths give the same ids in any order"""
        first, second = {}, {}
        CategoryHierarchyResolver(first).resolve({"path": "A/B"})
        CategoryHierarchyResolver(first).resolve({"path": "C"})
        CategoryHierarchyResolver(second).resolve({"path": "C"})
        CategoryHierarchyResolver(second).resolve({"path": "A/B"})

        assert set(first) == set(second) == {"A", "A_B", "C"}

    def test_blank_segments_ignored(self, resolver):
        """Test doubled and trailing slashes"""
        assert resolver.resolve({"path": " A // B / "}) == "A_B"

    def test_path_wins_over_feed_id(self, resolver):
        """Test path ids are used even when the feed supplies an id"""
        assert resolver.resolve({"id": "17", "path": "A/B"}) == "A_B"

    def test_staged_levels_kept_apart(self, resolver, categories):
        """Test new levels go to the staged map and known levels are reused"""
        resolver.resolve({"path": "Tools"})
        staged = {}

        leaf = resolver.resolve({"path": "Tools/Saws"}, staged=staged)

        assert leaf == "Tools_Saws"
        assert list(categories) == ["Tools"]
        assert list(staged) == ["Tools_Saws"]
        assert staged["Tools_Saws"].parent_id == "Tools"

    def test_name_limit_keeps_full_id(self, categories):
        resolver = CategoryHierarchyResolver(categories, name_limit=5)

        leaf = resolver.resolve({"path": "Garden Tools"})

        assert leaf == "Garden Tools"
        assert categories[leaf].name == "Garde"


class TestResolveFlat:
    """Test categories without a path"""

    def test_feed_id_and_name(self, resolver, categories):
        """Test a flat category keeps the feed id"""
        category_id = resolver.resolve({"id": "17", "name": "Garden"})

        assert category_id == "17"
        assert categories["17"].name == "Garden"
        assert categories["17"].parent_id is None

    def test_bare_name(self, resolver):
        """Test a bare name gets a slug id"""
        assert resolver.resolve("Power Tools") == "cat_power_tools"

    def test_missing_category(self, resolver, categories):
        """Test a missing node falls back to the default category"""
        category_id = resolver.resolve(None)

        assert categories[category_id].name == DEFAULT_CATEGORY_NAME
        assert category_id == fallback_category_id(DEFAULT_CATEGORY_NAME)

    def test_split_path(self):
        """Test path splitting"""
        assert split_path(None) == []
        assert split_path("A/B") == ["A", "B"]


class TestOrderParentsFirst:
    """Test topological ordering"""

    def test_parents_precede_children(self):
        """Test depth ordering of an unordered input"""
        ordered = order_parents_first(
            [
                CategoryEntity(id="A_B_C", name="C", parent_id="A_B"),
                CategoryEntity(id="A", name="A"),
                CategoryEntity(id="A_B", name="B", parent_id="A"),
            ]
        )

        assert [category.id for category in ordered] == ["A", "A_B", "A_B_C"]

    def test_unknown_parent_treated_as_root(self):
        """Test a parent outside the set does not break ordering"""
        ordered = order_parents_first([CategoryEntity(id="X_Y", name="Y", parent_id="X")])

        assert [category.id for category in ordered] == ["X_Y"]

    def test_cycle_detected(self):
        """Test a cyclic parent chain raises"""
        with pytest.raises(ValueError, match="cycle"):
            order_parents_first(
                [
                    CategoryEntity(id="A", name="A", parent_id="B"),
                    CategoryEntity(id="B", name="B", parent_id="A"),
                ]
            )
