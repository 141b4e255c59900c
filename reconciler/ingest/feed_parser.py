"""Retailer feed parser for CSV, XML and JSON catalog snapshots.

Turns the raw bytes of one feed snapshot into a list of raw row dicts. No type
coercion happens here; that is the job of ``RecordCoercer``.
"""

import csv
import io
import json
import logging
from typing import Any, Dict, List
from xml.etree import ElementTree as ET

from reconciler.domain import FeedFormat

logger = logging.getLogger(__name__)

RawRow = Dict[str, Any]


class FeedParseError(Exception):
    """Raised when a feed cannot be read at all (encoding, syntax)."""

    pass


class FeedParser:
    """
    Parses retailer product feeds in various formats.

    Features:
    - Auto-detect the format of GENERIC feeds from the first byte
    - Extract product arrays from wrapped JSON payloads
    - Flatten XML product elements into dict rows
    - Lower-case CSV headers
    """

    # Common keys for product arrays in JSON feeds
    JSON_LIST_KEYS = ["products", "items", "data", "results"]

    # Element names that hold one product in XML feeds
    XML_ITEM_TAGS = {"product", "item", "entry"}

    def detect_format(self, text: str) -> FeedFormat:
        """Guess the feed format from the first non-blank character."""
        stripped = text.lstrip()
        if not stripped:
            return FeedFormat.CSV
        if stripped[0] in "{[":
            return FeedFormat.JSON
        if stripped[0] == "<":
            return FeedFormat.XML
        return FeedFormat.CSV

    def decode(self, content: bytes) -> str:
        """Decode feed bytes as UTF-8, tolerating a byte-order mark."""
        try:
            return content.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise FeedParseError(f"Feed is not valid UTF-8: {e}") from e

    def parse(self, content: bytes, feed_format: FeedFormat = FeedFormat.GENERIC) -> List[RawRow]:
        """
        Parse a feed snapshot into raw rows.

        Args:
            content: Raw feed bytes
            feed_format: Declared format, GENERIC to detect

        Returns:
            List of raw row dicts, in feed order

        Raises:
            FeedParseError: If the feed is unreadable as a whole
        """
        text = self.decode(content)

        if feed_format == FeedFormat.GENERIC:
            feed_format = self.detect_format(text)
            logger.debug(f"Detected feed format: {feed_format.value}")

        if feed_format == FeedFormat.JSON:
            rows = self.parse_json(text)
        elif feed_format == FeedFormat.XML:
            rows = self.parse_xml(text)
        else:
            rows = self.parse_csv(text)

        logger.info(f"Parsed {len(rows)} rows from {feed_format.value} feed")
        return rows

    def parse_json(self, text: str) -> List[RawRow]:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise FeedParseError(f"Malformed JSON feed: {e}") from e

        # Handle different JSON feed formats
        items: list = []
        if isinstance(data, list):
            items = data
        elif isinstance(data, dict):
            for key in self.JSON_LIST_KEYS:
                if key in data and isinstance(data[key], list):
                    items = data[key]
                    break

        # Non-object entries are kept as rows so they get counted as rejects
        return [item if isinstance(item, dict) else {"_value": item} for item in items]

    def parse_xml(self, text: str) -> List[RawRow]:
        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            raise FeedParseError(f"Malformed XML feed: {e}") from e

        rows = []
        for elem in root.iter():
            if self._local_name(elem.tag).lower() not in self.XML_ITEM_TAGS:
                continue
            row: RawRow = {}
            for child in elem:
                name = self._local_name(child.tag).lower()
                text_value = (child.text or "").strip()
                row[name] = text_value if text_value else child.get("href")
            rows.append(row)
        return rows

    def parse_csv(self, text: str) -> List[RawRow]:
        try:
            reader = csv.DictReader(io.StringIO(text))
            rows = []
            for row in reader:
                rows.append({
                    (key or "").strip().lower(): value
                    for key, value in row.items()
                    if key is not None
                })
            return rows
        except csv.Error as e:
            raise FeedParseError(f"Malformed CSV feed: {e}") from e

    @staticmethod
    def _local_name(tag: str) -> str:
        """Strip an XML namespace prefix like ``{http://...}price``."""
        if "}" in tag:
            return tag.split("}", 1)[1]
        return tag


# Global feed parser instance
feed_parser = FeedParser()
