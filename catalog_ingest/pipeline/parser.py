"""
Feed parser: reads the XML catalog file into raw product records.

Elements become plain Python structures: a leaf element without attributes is its
text, anything else is a dict with attributes merged in, lowercased child tags as
keys, repeated children collected into lists and element text under "_".
"""
import asyncio
import gc
import os
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Optional, Union

import structlog

from catalog_ingest.errors import ParseError
from catalog_ingest.models.domain import FeedShape, ParsedFeed
from catalog_ingest.pipeline.retry import RetryPolicy

logger = structlog.get_logger(__name__)

RawNode = Union[str, dict[str, Any]]


def local_name(tag: str) -> str:
    """Strip any namespace and lowercase, so xml:lang becomes lang"""
    return tag.rsplit("}", 1)[-1].lower()


def element_to_node(element: ET.Element) -> RawNode:
    attributes = {local_name(k): v for k, v in element.attrib.items()}
    children = list(element)
    text = (element.text or "").strip()

    if not attributes and not children:
        return text

    node: dict[str, Any] = dict(attributes)
    for child in children:
        key = local_name(child.tag)
        value = element_to_node(child)
        if key not in node:
            node[key] = value
        elif isinstance(node[key], list):
            node[key].append(value)
        else:
            node[key] = [node[key], value]

    if text:
        node["_"] = text
    return node


def as_list(value: Any) -> list[Any]:
    """A feed may omit pluralization when only one item is present"""
    if value is None or value == "":
        return []
    if isinstance(value, list):
        return value
    return [value]


class FeedParser:
    """Parse a feed file with retries on transient read and syntax failures"""

    RETRYABLE_ERRORS = (ET.ParseError, OSError)

    def __init__(self, retry_policy: RetryPolicy) -> None:
        self.retry_policy = retry_policy
        self.logger = logger.bind(component="parser")

    async def parse(
        self,
        source_path: Union[str, Path],
        record_limit: Optional[int] = None,
        on_retry=None,
    ) -> ParsedFeed:
        """
        Parse the feed and return its product records.

        Args:
            source_path: Path of the XML feed
            record_limit: Keep only the first N records
            on_retry: Callback forwarded to the retry policy

        Returns:
            ParsedFeed with the recognized shape and raw records

        Raises:
            ParseError: File missing, unparseable after all retries, or not one of
                the supported envelopes
        """
        path = Path(source_path)
        if not path.is_file():
            raise ParseError(
                f"Feed file not found: {path}", context={"source_file": str(path)}
            )

        try:
            feed = await self.retry_policy.run(
                lambda: asyncio.to_thread(self._parse_file, path, record_limit),
                on_retry=on_retry,
                description="parse_feed",
            )
        except ParseError:
            raise
        except (ET.ParseError, OSError) as e:
            raise ParseError(
                f"Failed to parse feed after {self.retry_policy.max_attempts} attempts: {e}",
                context={"source_file": str(path)},
                original_error=e,
            ) from e

        gc.collect()
        self.logger.info(
            "Feed parsed",
            source_file=str(path),
            shape=feed.shape.value,
            records=len(feed.records),
            total_records=feed.total_records,
            file_size_mb=feed.file_size_mb,
        )
        return feed

    def _parse_file(self, path: Path, record_limit: Optional[int]) -> ParsedFeed:
        file_size_mb = round(os.path.getsize(path) / (1024 * 1024), 3)
        self.logger.debug("Reading feed", source_file=str(path), file_size_mb=file_size_mb)

        root = ET.parse(path).getroot()
        shape = self._recognize_shape(root)

        product_elements = self._product_elements(root)
        if not product_elements:
            raise ParseError(
                f"Feed envelope '{shape.value}' contains no products",
                context={"source_file": str(path)},
            )

        total = len(product_elements)
        if record_limit is not None:
            product_elements = product_elements[:record_limit]

        records = [element_to_node(element) for element in product_elements]
        root.clear()

        return ParsedFeed(
            shape=shape,
            records=records,
            total_records=total,
            file_size_mb=file_size_mb,
        )

    @staticmethod
    def _recognize_shape(root: ET.Element) -> FeedShape:
        name = local_name(root.tag)
        try:
            return FeedShape(name)
        except ValueError:
            supported = [shape.value for shape in FeedShape]
            raise ParseError(
                f"Unrecognized feed root '{name}', expected one of {supported}",
                context={"root": name},
            ) from None

    @staticmethod
    def _product_elements(root: ET.Element) -> list[ET.Element]:
        products = [child for child in root if local_name(child.tag) == "products"]
        if not products:
            return []
        return [child for child in products[0] if local_name(child.tag) == "product"]


__all__ = ["FeedParser", "element_to_node", "as_list", "local_name"]
