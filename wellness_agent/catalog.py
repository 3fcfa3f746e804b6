from __future__ import annotations

"""Product catalog loader and lookup helpers.

This module loads products.json into Product objects with typed health profiles and
provides deterministic candidate and mention lookups used by the pipeline.
"""

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .utils import contains_phrase, normalize_key, normalize_text

logger = logging.getLogger("wellness.catalog")

CATEGORY_PROFILE_KIND = {
    "digestive_health": "digestive",
    "diabetes_support": "metabolic",
    "weight_management": "metabolic",
    "cardiovascular": "cardiovascular",
    "energy": "energy",
    "general_wellness": "general",
}


@dataclass(frozen=True)
class DigestiveHealthProfile:
    symptoms: Tuple[str, ...]
    conditions: Tuple[str, ...]
    strength: str
    fast_acting: bool
    long_term_support: bool
    kind: str = "digestive"


@dataclass(frozen=True)
class MetabolicHealthProfile:
    symptoms: Tuple[str, ...]
    conditions: Tuple[str, ...]
    strength: str
    fast_acting: bool
    long_term_support: bool
    kind: str = "metabolic"


@dataclass(frozen=True)
class CardiovascularHealthProfile:
    symptoms: Tuple[str, ...]
    conditions: Tuple[str, ...]
    strength: str
    fast_acting: bool
    long_term_support: bool
    kind: str = "cardiovascular"


@dataclass(frozen=True)
class EnergyHealthProfile:
    symptoms: Tuple[str, ...]
    conditions: Tuple[str, ...]
    strength: str
    fast_acting: bool
    long_term_support: bool
    kind: str = "energy"


@dataclass(frozen=True)
class GeneralHealthProfile:
    symptoms: Tuple[str, ...]
    conditions: Tuple[str, ...]
    strength: str
    fast_acting: bool
    long_term_support: bool
    kind: str = "general"


HealthProfile = Union[
    DigestiveHealthProfile,
    MetabolicHealthProfile,
    CardiovascularHealthProfile,
    EnergyHealthProfile,
    GeneralHealthProfile,
]

PROFILE_TYPES = {
    "digestive": DigestiveHealthProfile,
    "metabolic": MetabolicHealthProfile,
    "cardiovascular": CardiovascularHealthProfile,
    "energy": EnergyHealthProfile,
    "general": GeneralHealthProfile,
}


@dataclass(frozen=True)
class Product:
    """Catalog record with an optional typed health profile."""
    id: str
    name: str
    aliases: Tuple[str, ...]
    description: str
    price: int
    category: str
    in_stock: bool
    benefits: Tuple[str, ...]
    suitable_for: Tuple[str, ...]
    dosage: str
    warnings: Tuple[str, ...]
    flavors: Tuple[str, ...]
    health_profile: Optional[HealthProfile]

    def name_variants(self) -> Tuple[str, ...]:
        """Full name, configured aliases and the name without its brand word."""
        variants = [self.name, *self.aliases]
        words = normalize_text(self.name).split()
        # Brand-less form only when it is distinctive on its own ("fiber" is not).
        if len(words) > 1 and len(" ".join(words[1:])) >= 6:
            variants.append(" ".join(words[1:]))
        seen: Dict[str, str] = {}
        for variant in variants:
            key = normalize_text(variant)
            if key and key not in seen:
                seen[key] = variant
        return tuple(seen)


@dataclass
class CatalogMeta:
    """Metadata describing the catalog file version for logging."""
    file_name: str
    updated_at: str
    sha256: str


class ProductCatalog:
    def __init__(self, products: List[Product], meta: Optional[CatalogMeta] = None) -> None:
        self._products = list(products)
        self._by_id = {product.id: product for product in self._products}
        self.meta = meta

    @property
    def products(self) -> List[Product]:
        return list(self._products)

    def get(self, product_id: str) -> Optional[Product]:
        return self._by_id.get(product_id)

    def list_candidates(self, search_terms: List[str]) -> List[Product]:
        """Purpose: Narrow the catalog to products related to the search terms.
        Inputs/Outputs: Input is canonical health terms; output is products in catalog order.
        Side Effects / State: None.
        Dependencies: normalize_text and contains_phrase over profile terms, benefits, names.
        Failure Modes: No terms or no hits returns the whole catalog (catalog-wide fallback).
        If Removed: The scorer always ranks every product, including unrelated ones.
        Testing Notes: ["diabetes"] returns the metabolic products and HOTTO PURTO OAT.
        """
        # Match terms against each product's searchable text blob.
        terms = [normalize_text(term) for term in search_terms if normalize_text(term)]
        if not terms:
            return self.products
        matched = [
            product
            for product in self._products
            if any(contains_phrase(_product_blob(product), term) for term in terms)
        ]
        return matched or self.products

    def find_mentions(self, text: str) -> List[Product]:
        """Purpose: Find catalog products mentioned in free text via names and aliases.
        Inputs/Outputs: Input is text; output is unique products ordered by first mention.
        Side Effects / State: None.
        Dependencies: Product.name_variants, normalize_text and normalize_key.
        Failure Modes: Returns [] when nothing matches.
        If Removed: Validation cannot compare the product asked about with the one answered.
        Testing Notes: "superfood rasa apa aja?" returns mGANIK SUPERFOOD.
        """
        # Word-boundary match first; compact key catches "hottopurto" style spellings.
        normalized = normalize_text(text)
        if not normalized:
            return []
        # Compact positions map back to the normalized text so both match kinds sort together.
        offsets = [index for index, char in enumerate(normalized) if char != " "]
        compact = "".join(normalized[index] for index in offsets)
        found: List[Tuple[int, int, Product]] = []
        for order, product in enumerate(self._products):
            position = -1
            for variant in product.name_variants():
                if contains_phrase(normalized, variant):
                    index = f" {normalized} ".find(f" {variant} ")
                elif len(normalize_key(variant)) >= 6 and normalize_key(variant) in compact:
                    index = offsets[compact.find(normalize_key(variant))]
                else:
                    continue
                if position < 0 or index < position:
                    position = index
            if position >= 0:
                found.append((position, order, product))
        found.sort(key=lambda entry: (entry[0], entry[1]))
        return [product for _, _, product in found]


def load_catalog(path: Path) -> ProductCatalog:
    """Purpose: Load and normalize catalog data from the products file.
    Inputs/Outputs: Input is a Path; returns a ProductCatalog with CatalogMeta attached.
    Side Effects / State: Reads file contents and computes hash/mtime.
    Dependencies: Uses json, hashlib and _parse_profile.
    Failure Modes: JSON decode errors raise to the caller; a profile kind that disagrees
        with the product category raises ValueError.
    If Removed: The pipeline has no products to score or validate against.
    Testing Notes: Load the bundled file and validate ids, prices and profile kinds.
    """
    # Read bytes for hashing and parse JSON into Product records.
    raw_bytes = path.read_bytes()
    sha256 = hashlib.sha256(raw_bytes).hexdigest()
    updated_at = datetime.fromtimestamp(path.stat().st_mtime).isoformat()

    data = json.loads(raw_bytes.decode("utf-8-sig"))
    items: List[Dict[str, Any]]
    if isinstance(data, dict):
        items = data.get("items", [])
    elif isinstance(data, list):
        items = data
    else:
        items = []

    products = [parse_product(item) for item in items if isinstance(item, dict)]
    meta = CatalogMeta(file_name=path.name, updated_at=updated_at, sha256=sha256)
    logger.info("catalog_loaded file=%s products=%s sha256=%s", meta.file_name, len(products), sha256[:12])
    return ProductCatalog(products, meta)


def parse_product(item: Dict[str, Any]) -> Product:
    category = str(item.get("category", "general_wellness")).strip()
    name = str(item.get("name", "")).strip()
    return Product(
        id=str(item.get("id") or normalize_key(name)),
        name=name,
        aliases=tuple(str(alias) for alias in item.get("aliases", [])),
        description=str(item.get("description", "")).strip(),
        price=int(item.get("price", 0)),
        category=category,
        in_stock=bool(item.get("in_stock", True)),
        benefits=tuple(item.get("benefits", [])),
        suitable_for=tuple(item.get("suitable_for", [])),
        dosage=str(item.get("dosage", "")),
        warnings=tuple(item.get("warnings", [])),
        flavors=tuple(item.get("flavors", [])),
        health_profile=_parse_profile(item.get("health_profile"), category, name),
    )


def _parse_profile(raw: Any, category: str, name: str) -> Optional[HealthProfile]:
    """Purpose: Convert a raw health_profile dict into its typed variant.
    Inputs/Outputs: Inputs are the raw dict, product category and name; output is a profile or None.
    Side Effects / State: None.
    Dependencies: PROFILE_TYPES and CATEGORY_PROFILE_KIND.
    Failure Modes: Unknown kind or a kind that contradicts the category raises ValueError.
    If Removed: Scoring cannot read declared symptoms, conditions or strength.
    Testing Notes: Missing profile yields None; kind mismatch raises.
    """
    # Missing metadata is allowed; the scorer treats it as zero match.
    if not isinstance(raw, dict):
        return None
    kind = str(raw.get("kind", "")).strip()
    profile_type = PROFILE_TYPES.get(kind)
    if profile_type is None:
        raise ValueError(f"product {name!r} has unknown health profile kind {kind!r}")
    expected = CATEGORY_PROFILE_KIND.get(category)
    if expected and expected != kind:
        raise ValueError(f"product {name!r} category {category!r} requires profile kind {expected!r}, got {kind!r}")
    return profile_type(
        symptoms=tuple(normalize_text(term) for term in raw.get("symptoms", [])),
        conditions=tuple(normalize_text(term) for term in raw.get("conditions", [])),
        strength=str(raw.get("strength", "standard")).lower(),
        fast_acting=bool(raw.get("fast_acting", False)),
        long_term_support=bool(raw.get("long_term_support", False)),
    )


def _product_blob(product: Product) -> str:
    parts: List[str] = [product.name, product.description, *product.benefits, *product.suitable_for]
    if product.health_profile:
        parts.extend(product.health_profile.symptoms)
        parts.extend(product.health_profile.conditions)
    return normalize_text(" ".join(parts))
