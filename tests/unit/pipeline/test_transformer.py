"""
Unit tests for the catalog transformer.

Records are given in the raw node form the parser produces.
"""
from decimal import Decimal
from unittest.mock import patch

import pytest

from catalog_ingest.config.settings import IngestionSettings
from catalog_ingest.errors import TransformError
from catalog_ingest.models.domain import EntityGraph, IssueKind
from catalog_ingest.pipeline.context import RunContext
from catalog_ingest.pipeline.transformer import CatalogTransformer, UNKNOWN_PRODUCER


@pytest.fixture
def context():
    return RunContext(source_file="feed.xml")


@pytest.fixture
def transformer(context):
    return CatalogTransformer(context, IngestionSettings(default_currency="PLN"))


def sized_record(code="P-1", **overrides):
    record = {
        "code": code,
        "vat": "23",
        "producer": {"name": "Acme"},
        "category": {"path": "Tools/Hammers"},
        "unit": {"moq": "2", "_": "szt"},
        "ean": "4006381333931",
        "url": "example.com/p",
        "description": {
            "name": {"lang": "en", "_": "Hammer"},
            "short": "Steel",
            "long_desc": "Forged steel hammer",
        },
        "sizes": {
            "size": [
                {"code": f"{code}-S", "weight": "0,5", "stock": {"quantity": "3"}, "price": {"gross": "123.00"}},
                {"id": "L", "grossweight": "1.2", "stock": {"quantity": "0"}, "price": {"gross": "246", "net": "200"}},
            ]
        },
        "images": {"large": {"image": [{"url": "https://cdn.x.com/1.jpg"}, {"url": "https://cdn.x.com/1.jpg"}]}},
    }
    record.update(overrides)
    return record


class TestProducts:
    """Test product level mapping"""

    def test_full_record(self, transformer):
        """Test every product field is mapped"""
        graph = transformer.transform([sized_record()])

        product = graph.products[0]
        assert product.code == "P-1"
        assert product.name == "Hammer"
        assert product.description_short == "Steel"
        assert product.description_long == "Forged steel hammer"
        assert product.ean == "4006381333931"
        assert product.url == "https://example.com/p"
        assert product.producer_name == "Acme"
        assert product.category_id == "Tools_Hammers"
        assert product.unit_id == "szt"
        assert product.vat == Decimal("23")

    def test_reference_data_deduplicated(self, transformer):
        """Test shared producers, units and categories appear once"""
        graph = transformer.transform([sized_record("P-1"), sized_record("P-2")])

        assert [producer.name for producer in graph.producers] == ["Acme"]
        assert [unit.id for unit in graph.units] == ["szt"]
        assert graph.units[0].moq == 2
        assert [category.id for category in graph.categories] == ["Tools", "Tools_Hammers"]

    def test_id_used_when_code_missing(self, transformer):
        """Test the record id is the fallback product code"""
        record = sized_record()
        del record["code"]
        record["id"] = "42"

        graph = transformer.transform([record])

        assert graph.products[0].code == "42"

    def test_name_falls_back_to_code(self, transformer):
        """Test a record without a name is named by its code"""
        graph = transformer.transform([sized_record(description={})])

        assert graph.products[0].name == "P-1"

    def test_producer_without_name(self, transformer):
        """Test an empty producer node maps to the unknown producer"""
        graph = transformer.transform([sized_record(producer={"id": "9"})])

        assert graph.products[0].producer_name == UNKNOWN_PRODUCER

    def test_invalid_ean_nulled(self, transformer, context):
        """Test a bad EAN is dropped with a validation issue"""
        graph = transformer.transform([sized_record(ean="4006381333932")])

        assert graph.products[0].ean is None
        assert context.issues[0].kind == IssueKind.VALIDATION
        assert context.issues[0].field == "ean"
        assert context.issues[0].product_code == "P-1"

    def test_invalid_url_nulled(self, transformer, context):
        """Test an unsupported URL is dropped with a validation issue"""
        graph = transformer.transform([sized_record(url="ftp://files.x.com/p")])

        assert graph.products[0].url is None
        assert context.issues[0].field == "url"


class TestRecordIsolation:
    """Test bad records do not stop the run"""

    def test_missing_code_skipped(self, transformer, context):
        """Test a record without a code is skipped and the rest kept"""
        no_code = sized_record()
        del no_code["code"]

        graph = transformer.transform([sized_record("P-1"), no_code, sized_record("P-3")])

        assert [product.code for product in graph.products] == ["P-1", "P-3"]
        assert len(context.issues) == 1
        assert context.issues[0].kind == IssueKind.VALIDATION
        assert context.issues[0].record_index == 1

    def test_duplicate_code_skipped(self, transformer, context):
        """Test the second record with a code is skipped"""
        graph = transformer.transform([sized_record("P-1"), sized_record("P-1")])

        assert len(graph.products) == 1
        assert "Duplicate product code" in context.issues[0].message

    def test_unexpected_failure_recorded(self, transformer, context):
        """Test an unexpected exception becomes a transform issue"""
        with patch.object(
            CatalogTransformer, "_images", side_effect=[RuntimeError("boom"), []]
        ):
            graph = transformer.transform([sized_record("P-1"), sized_record("P-2")])

        assert [product.code for product in graph.products] == ["P-2"]
        assert context.issues[0].kind == IssueKind.TRANSFORM
        assert "boom" in context.issues[0].message
        assert "P-1" not in context.product_codes

    def test_failure_wrapped_as_transform_error(self, transformer):
        """Test the original exception travels with the TransformError"""
        with patch.object(CatalogTransformer, "_images", side_effect=KeyError("url")):
            with pytest.raises(TransformError) as raised:
                transformer._map_record(0, sized_record(), "P-1", EntityGraph())

        assert raised.value.message == "KeyError: 'url'"
        assert isinstance(raised.value.original_error, KeyError)
        assert raised.value.context == {"product_code": "P-1", "record_index": 0}

    def test_failed_record_leaves_no_reference_rows(self, transformer, context):
        """Test producers, units and categories of a failed record are discarded"""
        ghost = sized_record(
            "P-2",
            producer={"name": "GhostCo"},
            category={"path": "Ghost/Only"},
            unit="box",
        )
        with patch.object(
            CatalogTransformer, "_images", side_effect=[[], RuntimeError("boom")]
        ):
            graph = transformer.transform([sized_record("P-1"), ghost])

        assert [product.code for product in graph.products] == ["P-1"]
        assert [producer.name for producer in graph.producers] == ["Acme"]
        assert [unit.id for unit in graph.units] == ["szt"]
        assert [category.id for category in graph.categories] == ["Tools", "Tools_Hammers"]
        assert "GhostCo" not in context.producers
        assert "Ghost" not in context.categories

    def test_reference_rows_of_skipped_record_reused_later(self, transformer, context):
        """Test a producer first seen in a failed record is created by a later good one"""
        with patch.object(
            CatalogTransformer, "_images", side_effect=[RuntimeError("boom"), []]
        ):
            graph = transformer.transform(
                [sized_record("P-1", producer="Solo"), sized_record("P-2", producer="Solo")]
            )

        assert [producer.name for producer in graph.producers] == ["Solo"]
        assert graph.products[0].producer_name == "Solo"

    def test_gc_checkpoint(self, context):
        """Test forced collections at the configured interval"""
        transformer = CatalogTransformer(context, IngestionSettings(gc_checkpoint_interval=2))

        with patch("catalog_ingest.pipeline.transformer.gc.collect") as collect:
            transformer.transform([sized_record(f"P-{i}") for i in range(5)])

        assert collect.call_count == 2


class TestVariants:
    """Test variants, stock and prices"""

    def test_sizes(self, transformer):
        """Test size codes, weights and stock availability"""
        graph = transformer.transform([sized_record()])

        assert [variant.code for variant in graph.variants] == ["P-1-S", "P-1-L"]
        assert graph.variants[0].weight == Decimal("0.5")
        assert graph.variants[1].gross_weight == Decimal("1.2")
        assert [(stock.quantity, stock.available) for stock in graph.stocks] == [(3, True), (0, False)]

    def test_price_net_derived_from_vat(self, transformer):
        """Test net is computed from gross and VAT when absent"""
        graph = transformer.transform([sized_record(vat="21", sizes={"size": {"code": "V", "price": {"gross": "121"}}})])

        price = graph.prices[0]
        assert price.gross_price == Decimal("121.00")
        assert price.net_price == Decimal("100.00")
        assert price.currency == "PLN"

    def test_explicit_net_kept(self, transformer):
        """Test a supplied net price is not recomputed"""
        graph = transformer.transform([sized_record()])

        assert graph.prices[1].net_price == Decimal("200.00")

    def test_price_list_types(self, transformer):
        """Test typed price entries merge into one price"""
        record = sized_record(
            sizes=None,
            prices={
                "price": [
                    {"type": "retail", "_": "12,30", "currency": "eur"},
                    {"type": "net", "_": "10.00"},
                    {"type": "srp", "_": "15.99"},
                ]
            },
        )

        graph = transformer.transform([record])

        price = graph.prices[0]
        assert price.gross_price == Decimal("12.30")
        assert price.net_price == Decimal("10.00")
        assert price.srp_gross == Decimal("15.99")
        assert price.srp_net == Decimal("13.00")
        assert price.currency == "EUR"

    def test_default_variant(self, transformer):
        """Test a product without variants gets one variant with its own code"""
        record = sized_record(
            sizes=None,
            stock={"quantity": "4", "available": "true"},
            price={"gross": "50"},
        )

        graph = transformer.transform([record])

        assert [variant.code for variant in graph.variants] == ["P-1"]
        assert graph.stocks[0].quantity == 4
        assert graph.stocks[0].available is True
        assert graph.prices[0].gross_price == Decimal("50.00")

    def test_variants_layout(self, transformer):
        """Test the variants/variant layout with summed stock entries"""
        record = sized_record(
            sizes=None,
            variants={
                "variant": {
                    "code": "V-1",
                    "stock": [{"quantity": "2", "max_order_quantity": "10"}, {"quantity": "3"}],
                }
            },
        )

        graph = transformer.transform([record])

        stock = graph.stocks[0]
        assert stock.variant_code == "V-1"
        assert stock.quantity == 5
        assert stock.available is False
        assert stock.max_order_quantity == 10

    def test_negative_stock_clamped(self, transformer, context):
        """Test negative quantities are clamped with an issue"""
        record = sized_record(sizes={"size": {"code": "V", "stock": {"quantity": "-4"}}})

        graph = transformer.transform([record])

        assert graph.stocks[0].quantity == 0
        assert context.issues[0].field == "stock.quantity"

    def test_duplicate_variant_code_skipped(self, transformer, context):
        """Test a repeated variant code within a product"""
        record = sized_record(sizes={"size": [{"code": "V"}, {"code": "V"}]})

        graph = transformer.transform([record])

        assert [variant.code for variant in graph.variants] == ["V"]
        assert context.issues[0].field == "variant.code"

    def test_positional_variant_codes(self, transformer):
        """Test code-less variants are numbered"""
        record = sized_record(sizes={"size": [{"weight": "1"}, {"weight": "2"}]})

        graph = transformer.transform([record])

        assert [variant.code for variant in graph.variants] == ["P-1-1", "P-1-2"]


class TestImages:
    """Test image mapping"""

    def test_deduplicated(self, transformer):
        """Test repeated URLs are kept once"""
        graph = transformer.transform([sized_record()])

        assert [image.url for image in graph.images] == ["https://cdn.x.com/1.jpg"]

    def test_plain_image_list(self, transformer, context):
        """Test the images/image layout with text URLs and an invalid entry"""
        record = sized_record(images={"image": ["cdn.x.com/a.jpg", "not a url"]})

        graph = transformer.transform([record])

        assert [image.url for image in graph.images] == ["https://cdn.x.com/a.jpg"]
        assert context.issues[0].field == "image.url"



class TestStoredBounds:
    """Test values are fitted to what the catalog columns can hold"""

    @pytest.mark.parametrize("vat", ["-100", "150", "-0.5"])
    def test_vat_outside_rate_range_nulled(self, transformer, context, vat):
        """Test an impossible VAT rate is dropped and gross is used as net"""
        record = sized_record(vat=vat, sizes={"size": {"code": "V", "price": {"gross": "50"}}})

        graph = transformer.transform([record])

        assert graph.products[0].vat is None
        assert graph.prices[0].net_price == graph.prices[0].gross_price == Decimal("50.00")
        assert context.issues[0].field == "vat"
        assert context.issues[0].kind == IssueKind.VALIDATION

    def test_vat_and_weights_rounded_to_column_scale(self, transformer):
        """Test extra decimal places are rounded half up"""
        record = sized_record(
            vat="7.675",
            sizes={"size": {"code": "V", "weight": "0,0125", "grossweight": "1.23449"}},
        )

        graph = transformer.transform([record])

        assert str(graph.products[0].vat) == "7.68"
        assert str(graph.variants[0].weight) == "0.013"
        assert str(graph.variants[0].gross_weight) == "1.234"

    def test_price_beyond_column_precision_dropped(self, transformer, context):
        """Test a gross price the column cannot hold is dropped with its derived net"""
        record = sized_record(
            sizes={"size": {"code": "V", "price": {"gross": "1e12"}, "srp": "20"}}
        )

        graph = transformer.transform([record])

        price = graph.prices[0]
        assert price.gross_price is None
        assert price.net_price is None
        assert price.srp_gross == Decimal("20.00")
        assert context.issues[0].field == "price.gross"

    def test_weight_beyond_column_precision_dropped(self, transformer, context):
        record = sized_record(sizes={"size": {"code": "V", "weight": "1234567890"}})

        graph = transformer.transform([record])

        assert graph.variants[0].weight is None
        assert context.issues[0].field == "variant.weight"

    def test_long_product_code_skips_record(self, transformer, context):
        """Test a code wider than the code column skips the record"""
        graph = transformer.transform([sized_record("P" * 101), sized_record("P-2")])

        assert [product.code for product in graph.products] == ["P-2"]
        assert context.issues[0].field == "code"
        assert context.issues[0].record_index == 0

    def test_long_variant_code_skips_variant(self, transformer, context):
        record = sized_record(sizes={"size": [{"code": "V" * 101}, {"code": "V-2"}]})

        graph = transformer.transform([record])

        assert [variant.code for variant in graph.variants] == ["V-2"]
        assert context.issues[0].field == "variant.code"

    def test_long_producer_fields_nulled(self, transformer, context):
        """Test oversized producer name and producer code are dropped"""
        record = sized_record(producer={"name": "A" * 256}, producer_code="X" * 101)

        graph = transformer.transform([record])

        product = graph.products[0]
        assert product.producer_name is None
        assert product.producer_code is None
        assert graph.producers == []
        assert [issue.field for issue in context.issues] == ["producer", "producer_code"]

    def test_long_unit_nulled(self, transformer, context):
        graph = transformer.transform([sized_record(unit="u" * 101)])

        assert graph.products[0].unit_id is None
        assert graph.units == []
        assert context.issues[0].field == "unit"

    def test_long_category_name_shortened(self, transformer, context):
        """Test the stored name is cut while the id keeps the full path"""
        label = "C" * 300

        graph = transformer.transform([sized_record(category={"path": f"Tools/{label}"})])

        leaf = graph.categories[-1]
        assert leaf.id == f"Tools_{label}"
        assert len(leaf.name) == 255
        assert graph.products[0].category_id == leaf.id
        assert context.issues[0].field == "category"

    def test_long_image_url_dropped(self, transformer, context):
        long_url = "https://cdn.x.com/" + "a" * 1000 + ".jpg"
        record = sized_record(images={"image": [long_url, "https://cdn.x.com/2.jpg"]})

        graph = transformer.transform([record])

        assert [image.url for image in graph.images] == ["https://cdn.x.com/2.jpg"]
        assert context.issues[0].field == "image.url"

    @pytest.mark.parametrize("currency", ["EURO", "E1", "zł"])
    def test_invalid_currency_replaced_by_default(self, transformer, context, currency):
        """Test a currency that is not three letters falls back to the default"""
        record = sized_record(
            sizes={"size": {"code": "V", "price": {"gross": "10", "currency": currency}}}
        )

        graph = transformer.transform([record])

        assert graph.prices[0].currency == "PLN"
        assert context.issues[0].field == "price.currency"
