"""Tests for the feed parser."""

import pytest

from reconciler.domain import FeedFormat
from reconciler.ingest.feed_parser import FeedParseError, feed_parser


def test_parse_csv_lowercases_headers():
    """Test CSV rows keep feed order and use lower-case keys."""
    content = b"Title,Price,UPC\nFederal 9mm 115gr,12.99,012345678905\nCCI .22 LR,4.50,\n"

    rows = feed_parser.parse(content, FeedFormat.CSV)

    assert len(rows) == 2
    assert rows[0] == {"title": "Federal 9mm 115gr", "price": "12.99", "upc": "012345678905"}
    assert rows[1]["upc"] == ""


def test_parse_csv_with_byte_order_mark():
    """Test a UTF-8 BOM does not leak into the first header."""
    content = b"\xef\xbb\xbftitle,price\nHornady .308,29.99\n"

    rows = feed_parser.parse(content)

    assert rows[0]["title"] == "Hornady .308"


def test_parse_json_list_and_wrapped():
    """Test JSON feeds as a bare list or wrapped in a products key."""
    bare = feed_parser.parse(b'[{"title": "A", "price": 1.5}]', FeedFormat.JSON)
    wrapped = feed_parser.parse(b'{"products": [{"title": "B", "price": "2"}]}')

    assert bare == [{"title": "A", "price": 1.5}]
    assert wrapped == [{"title": "B", "price": "2"}]


def test_parse_json_keeps_non_object_entries():
    """Test scalar entries survive as rows so they can be rejected and counted."""
    rows = feed_parser.parse(b'{"items": [{"title": "A"}, 42]}')

    assert rows == [{"title": "A"}, {"_value": 42}]


def test_parse_json_without_product_array():
    rows = feed_parser.parse(b'{"meta": {"count": 0}}')
    assert rows == []


def test_parse_xml_with_namespace():
    """Test XML product elements are flattened and namespaces stripped."""
    content = (
        b'<?xml version="1.0"?>'
        b'<feed xmlns="http://example.com/feed">'
        b"<product><title>Federal 9mm</title><price>$12.99</price><UPC>012345678905</UPC></product>"
        b"<product><title>Speer .40</title><price>18.00</price><upc/></product>"
        b"</feed>"
    )

    rows = feed_parser.parse(content)

    assert len(rows) == 2
    assert rows[0] == {"title": "Federal 9mm", "price": "$12.99", "upc": "012345678905"}
    assert rows[1]["upc"] is None


@pytest.mark.parametrize(
    "text,expected",
    [
        ('  {"products": []}', FeedFormat.JSON),
        ("[]", FeedFormat.JSON),
        ("<feed/>", FeedFormat.XML),
        ("title,price", FeedFormat.CSV),
        ("", FeedFormat.CSV),
    ],
)
def test_detect_format(text, expected):
    assert feed_parser.detect_format(text) == expected


@pytest.mark.parametrize(
    "content,feed_format",
    [
        (b"\xff\xfe\xfa\x00", FeedFormat.GENERIC),
        (b'{"products": [', FeedFormat.JSON),
        (b"<feed><product>", FeedFormat.XML),
    ],
)
def test_unreadable_feed_raises(content, feed_format):
    """Test whole-feed failures surface as FeedParseError."""
    with pytest.raises(FeedParseError):
        feed_parser.parse(content, feed_format)
