"""Coerce raw feed rows into typed ParsedRecords."""

import logging
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from reconciler.config import settings
from reconciler.domain import Coercion, FieldIssue, IssueCode, ParsedRecord

logger = logging.getLogger(__name__)


class RecordCoercer:
    """Turn a heterogeneous raw row into a typed, validated record.

    A value that cannot be coerced becomes a typed absence (``None``) plus a
    ``FieldIssue``. Nothing is silently defaulted.
    """

    TITLE_KEYS = ["title", "name", "product_name"]
    PRICE_KEYS = ["price", "sale_price", "current_price"]
    UPC_KEYS = ["upc", "gtin", "ean", "barcode"]
    STOCK_KEYS = ["in_stock", "instock", "stock", "availability", "available"]
    BRAND_KEYS = ["brand", "manufacturer"]
    CALIBER_KEYS = ["caliber"]
    GRAIN_KEYS = ["grain", "grain_weight"]
    ROUND_COUNT_KEYS = ["round_count", "rounds", "pack_size", "quantity"]
    SKU_KEYS = ["sku", "id", "product_id"]
    URL_KEYS = ["url", "link", "product_url"]

    TRUE_VALUES = {"yes", "y", "true", "1", "in stock", "instock", "in_stock", "available"}
    FALSE_VALUES = {
        "no", "n", "false", "0", "out of stock", "outofstock", "out_of_stock",
        "unavailable", "sold out",
    }

    # Currency symbols and codes stripped before parsing a price
    CURRENCY_PATTERN = re.compile(r"(?i)[$€£¥]|\b(?:usd|cad|eur|gbp)\b")

    def __init__(self, upc_min_digits: Optional[int] = None, upc_max_digits: Optional[int] = None):
        min_digits = upc_min_digits or settings.upc_min_digits
        max_digits = upc_max_digits or settings.upc_max_digits
        self.upc_pattern = re.compile(rf"^\d{{{min_digits},{max_digits}}}$")

    def coerce(self, row: dict, row_index: int) -> ParsedRecord:
        """
        Coerce one raw feed row.

        Args:
            row: Raw row dict from the feed parser
            row_index: Position of the row in the feed

        Returns:
            ParsedRecord with coercions and issues attached
        """
        coercions: list[Coercion] = []
        issues: list[FieldIssue] = []

        title = self._text(self._first(row, self.TITLE_KEYS))
        if not title:
            issues.append(FieldIssue("title", IssueCode.MISSING_TITLE, "Title is missing or empty"))

        price = self._coerce_price(self._first(row, self.PRICE_KEYS), coercions, issues)
        in_stock = self._coerce_stock(self._first(row, self.STOCK_KEYS), coercions, issues)

        raw_upc = self._text(self._first(row, self.UPC_KEYS))
        upc = self._coerce_upc(raw_upc, coercions, issues)

        return ParsedRecord(
            row_index=row_index,
            title=title,
            price=price,
            in_stock=in_stock,
            upc=upc,
            raw_upc=raw_upc,
            sku=self._text(self._first(row, self.SKU_KEYS)),
            brand=self._text(self._first(row, self.BRAND_KEYS)),
            caliber=self._text(self._first(row, self.CALIBER_KEYS)),
            grain_weight=self._coerce_int(self._first(row, self.GRAIN_KEYS)),
            round_count=self._coerce_int(self._first(row, self.ROUND_COUNT_KEYS)),
            url=self._text(self._first(row, self.URL_KEYS)),
            raw_row=dict(row),
            coercions=coercions,
            issues=issues,
        )

    def is_valid_upc(self, value: Optional[str]) -> bool:
        if not value:
            return False
        return bool(self.upc_pattern.match(self.clean_upc(value)))

    @staticmethod
    def clean_upc(value: str) -> str:
        return re.sub(r"[\s-]", "", value)

    @staticmethod
    def _first(row: dict, keys: list[str]) -> Any:
        """Return the first present, non-empty value among the key aliases."""
        for key in keys:
            value = row.get(key)
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            return value
        return None

    @staticmethod
    def _text(value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def _coerce_price(self, value: Any, coercions: list, issues: list) -> Optional[Decimal]:
        if value is None:
            issues.append(FieldIssue("price", IssueCode.MISSING_PRICE, "Price is missing"))
            return None

        if isinstance(value, bool):
            issues.append(FieldIssue("price", IssueCode.INVALID_PRICE, "Price is a boolean", value))
            return None

        if isinstance(value, (int, float, Decimal)):
            try:
                price = Decimal(str(value))
            except InvalidOperation:
                price = None
            if price is None or not price.is_finite():
                issues.append(FieldIssue("price", IssueCode.INVALID_PRICE, "Price is not finite", value))
                return None
            return price

        text = self.CURRENCY_PATTERN.sub("", str(value)).replace(",", "").strip()
        try:
            price = Decimal(text)
        except InvalidOperation:
            issues.append(FieldIssue(
                "price", IssueCode.INVALID_PRICE, f"Unparsable price '{value}'", value,
            ))
            return None

        if not price.is_finite():
            issues.append(FieldIssue("price", IssueCode.INVALID_PRICE, "Price is not finite", value))
            return None

        if text != str(value):
            coercions.append(Coercion("price", value, price, "currency_strip"))
        else:
            coercions.append(Coercion("price", value, price, "string_to_decimal"))
        return price

    def _coerce_stock(self, value: Any, coercions: list, issues: list) -> Optional[bool]:
        if value is None:
            return None
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)) and value in (0, 1):
            coercions.append(Coercion("in_stock", value, bool(value), "number_to_bool"))
            return bool(value)

        text = str(value).strip().lower()
        if text in self.TRUE_VALUES:
            coercions.append(Coercion("in_stock", value, True, "string_to_bool"))
            return True
        if text in self.FALSE_VALUES:
            coercions.append(Coercion("in_stock", value, False, "string_to_bool"))
            return False

        issues.append(FieldIssue(
            "in_stock", IssueCode.INVALID_STOCK, f"Unrecognized stock value '{value}'", value,
        ))
        return None

    def _coerce_upc(self, raw_upc: Optional[str], coercions: list, issues: list) -> Optional[str]:
        if not raw_upc:
            issues.append(FieldIssue("upc", IssueCode.MISSING_UPC, "UPC is missing"))
            return None

        cleaned = self.clean_upc(raw_upc)
        if not self.upc_pattern.match(cleaned):
            issues.append(FieldIssue(
                "upc", IssueCode.INVALID_UPC, f"UPC '{raw_upc}' is not a valid 12-13 digit code", raw_upc,
            ))
            return None

        if cleaned != raw_upc:
            coercions.append(Coercion("upc", raw_upc, cleaned, "strip_separators"))
        return cleaned

    @staticmethod
    def _coerce_int(value: Any) -> Optional[int]:
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        match = re.search(r"\d+", str(value))
        return int(match.group()) if match else None


# Global coercer instance
record_coercer = RecordCoercer()
