"""Attribute extraction from retailer product titles and raw feed fields."""

import logging
import re
from typing import Optional

from reconciler.domain import CanonicalAttributes, RetailerSku

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"


class AttributeExtractor:
    """
    Extract normalized caliber, brand, grain and pack size.

    Rule-based only: raw feed fields win over title parsing, and title parsing
    runs against a fixed vocabulary of caliber aliases and brand names. This
    phase performs no lookups.
    """

    # Ordered: the first matching pattern wins
    CALIBER_PATTERNS = [
        (r'\b9\s?mm|9x19|9\s?luger\b', '9mm'),
        (r'(?:^|\W)\.?\s?45\s?acp\b|45\s?auto\b', '.45 ACP'),
        (r'(?:^|\W)\.?\s?40\s?s&w\b|40\s?sw\b', '.40 S&W'),
        (r'(?:^|\W)\.?\s?38\s?special\b|38\s?spl\b', '.38 Special'),
        (r'(?:^|\W)\.?\s?357\s?mag(?:num)?\b', '.357 Magnum'),
        (r'\b10\s?mm(?:\s?auto)?\b', '10mm Auto'),
        (r'(?:^|\W)\.?\s?380\s?(?:acp|auto)\b', '.380 ACP'),
        (r'(?:^|\W)\.?\s?32\s?(?:acp|auto)\b', '.32 ACP'),
        (r'\b5\.56\s?nato|5\.56x45(?:mm)?\b|\b5\.56\b', '5.56 NATO'),
        (r'(?:^|\W)\.?\s?223\s?rem(?:ington)?\b|(?:^|\W)\.223\b', '.223 Remington'),
        (r'(?:^|\W)\.?\s?22\s?lr\b|22\s?long\s?rifle\b', '.22 LR'),
        (r'\b7\.62x39(?:mm)?\b', '7.62x39mm'),
        (r'\b7\.62x54r\b', '7.62x54R'),
        (r'\b7\.62\s?nato|7\.62x51|(?:^|\W)\.?\s?308\s?win(?:chester)?\b|(?:^|\W)\.308\b', '.308 Winchester'),
        (r'(?:^|\W)\.?\s?30-06\b', '.30-06 Springfield'),
        (r'(?:^|\W)\.?\s?300\s?(?:aac\s*)?(?:blk|blackout)\b', '.300 Blackout'),
        (r'\b6\.5\s?(?:creedmoor|cm)\b', '6.5 Creedmoor'),
        (r'\b6\.5\s?grendel\b', '6.5 Grendel'),
        (r'(?:^|\W)\.?\s?270\s?win(?:chester)?\b', '.270 Winchester'),
        (r'(?:^|\W)\.?\s?243\s?win(?:chester)?\b', '.243 Winchester'),
        (r'(?:^|\W)\.?\s?50\s?bmg\b', '.50 BMG'),
        (r'\b12\s?(?:ga|gauge)\b', '12 Gauge'),
        (r'\b20\s?(?:ga|gauge)\b', '20 Gauge'),
        (r'\b16\s?(?:ga|gauge)\b', '16 Gauge'),
        (r'(?:^|\W)\.?410\s?(?:bore|ga|gauge)\b', '.410 Bore'),
    ]

    BRAND_PATTERNS = [
        (r'\bfederal\b', 'Federal'),
        (r'\bhornady\b', 'Hornady'),
        (r'(?<![\d.]\s)(?<![\d.])\bremington\b', 'Remington'),
        (r'(?<![\d.]\s)(?<![\d.])\bwinchester\b', 'Winchester'),
        (r'\bspeer\b', 'Speer'),
        (r'\bfiocchi\b', 'Fiocchi'),
        (r'\bsellier\s*(?:&|and)?\s*bellot\b|\bs&b\b', 'Sellier & Bellot'),
        (r'\bpmc\b', 'PMC'),
        (r'\bmagtech\b', 'Magtech'),
        (r'\baguila\b', 'Aguila'),
        (r'\bcci\b', 'CCI'),
        (r'\bamerican\s?eagle\b', 'American Eagle'),
        (r'\bblazer\b', 'Blazer'),
        (r'\btula(?:ammo)?\b', 'TulAmmo'),
        (r'\bwolf\b', 'Wolf'),
        (r'\bbarnaul\b', 'Barnaul'),
        (r'\bnorma\b', 'Norma'),
        (r'\bgeco\b', 'GECO'),
        (r'\bprvi\s?partizan\b|\bppu\b', 'Prvi Partizan'),
        (r'\bsig\s?sauer\b|\bsig\b', 'SIG Sauer'),
        (r'\bunderwood\b', 'Underwood'),
        (r'\bbuffalo\s?bore\b', 'Buffalo Bore'),
        (r'\bnosler\b', 'Nosler'),
        (r'\bbarnes\b', 'Barnes'),
    ]

    GRAIN_PATTERNS = [
        r'(\d{2,3})\s?gr(?:ain)?s?\b',
        r'(\d{2,3})-grain\b',
    ]

    ROUND_COUNT_PATTERNS = [
        r'(\d+)\s?(?:rounds?|rds?|count|ct)\b',
        r'(\d+)-(?:round|rd|count|ct)\b',
        r'box\s?of\s?(\d+)',
    ]

    def __init__(self):
        self._caliber_patterns = [(re.compile(p, re.IGNORECASE), n) for p, n in self.CALIBER_PATTERNS]
        self._brand_patterns = [(re.compile(p, re.IGNORECASE), n) for p, n in self.BRAND_PATTERNS]
        self._grain_patterns = [re.compile(p, re.IGNORECASE) for p in self.GRAIN_PATTERNS]
        self._round_patterns = [re.compile(p, re.IGNORECASE) for p in self.ROUND_COUNT_PATTERNS]

    def extract(
        self,
        title: str,
        caliber: Optional[str] = None,
        brand: Optional[str] = None,
        grain_weight: Optional[int] = None,
        pack_size: Optional[int] = None,
    ) -> CanonicalAttributes:
        """
        Extract normalized attributes for one product.

        Args:
            title: Raw product title
            caliber: Raw caliber field from the feed, if any
            brand: Raw brand field from the feed, if any
            grain_weight: Raw grain field from the feed, if any
            pack_size: Raw round count field from the feed, if any

        Returns:
            CanonicalAttributes; unmatched caliber/brand are "Unknown"
        """
        title = title or ""

        normalized_caliber = None
        if caliber:
            normalized_caliber = self.extract_caliber(caliber) or caliber.strip()
        if not normalized_caliber:
            normalized_caliber = self.extract_caliber(title)

        normalized_brand = self.normalize_brand(brand) if brand else self.extract_brand(title)

        grain = grain_weight or self.extract_grain_weight(title)
        rounds = pack_size or self.extract_round_count(title)

        return CanonicalAttributes(
            caliber=normalized_caliber or UNKNOWN,
            brand=normalized_brand or UNKNOWN,
            grain_weight=grain,
            pack_size=rounds,
        )

    def extract_sku(self, sku: RetailerSku) -> CanonicalAttributes:
        """Extract attributes from a persisted retailer SKU."""
        return self.extract(
            sku.raw_title,
            caliber=sku.raw_caliber,
            brand=sku.raw_brand,
            grain_weight=sku.raw_grain,
            pack_size=sku.raw_pack_size,
        )

    def extract_caliber(self, text: str) -> Optional[str]:
        for pattern, normalized in self._caliber_patterns:
            if pattern.search(text):
                return normalized
        return None

    def extract_brand(self, text: str) -> Optional[str]:
        for pattern, normalized in self._brand_patterns:
            if pattern.search(text):
                return normalized
        return None

    def normalize_brand(self, brand: str) -> Optional[str]:
        """Map a raw brand field onto the vocabulary, else title-case it."""
        cleaned = brand.strip()
        if not cleaned:
            return None
        known = self.extract_brand(cleaned)
        if known:
            return known
        return " ".join(word.capitalize() for word in cleaned.split())

    def extract_grain_weight(self, text: str) -> Optional[int]:
        for pattern in self._grain_patterns:
            match = pattern.search(text)
            if match:
                grain = int(match.group(1))
                # Typical bullet weights
                if 20 <= grain <= 800:
                    return grain
        return None

    def extract_round_count(self, text: str) -> Optional[int]:
        for pattern in self._round_patterns:
            match = pattern.search(text)
            if match:
                count = int(match.group(1))
                if 5 <= count <= 5000:
                    return count
        return None


# Global attribute extractor instance
attribute_extractor = AttributeExtractor()
