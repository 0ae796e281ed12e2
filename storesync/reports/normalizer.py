"""Convert raw order-line quantities into canonical sales units."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from storesync.config import Config
from storesync.reports.sku_mapping import SkuMappingIndex
from storesync.sync.stores import RETAIL, WHOLESALE, Store, commercial_type

UNKNOWN_SPU = "UNKNOWN"
_SKU_SEPARATORS = ("-", "_", " ", ".")
_WHITESPACE = re.compile(r"[\s\u00a0\u1680\u2000-\u200b\u202f\u205f\u3000\ufeff]+")


@dataclass(frozen=True)
class StoreProfile:
    site_id: str
    name: str
    commercial_type: str = RETAIL
    package_factor: int = 1

    @property
    def wholesale(self) -> bool:
        return self.commercial_type == WHOLESALE

    @classmethod
    def for_store(cls, store: Store, config: Config) -> "StoreProfile":
        kind = commercial_type(
            store,
            retail_names=config.retail_store_names,
            wholesale_names=config.wholesale_store_names,
        )
        return cls(
            site_id=store.id,
            name=store.name,
            commercial_type=kind,
            package_factor=config.wholesale_factor if kind == WHOLESALE else 1,
        )


@dataclass(frozen=True)
class FamilyRule:
    """A product family with its own units-per-package, optionally limited to some stores."""

    family: str
    multiplier: int
    site_types: Tuple[str, ...] = ()
    store_markers: Tuple[str, ...] = ()

    def matches(self, *, series: str, spu: str, profile: StoreProfile) -> bool:
        if self.site_types and profile.commercial_type not in self.site_types:
            return False
        if self.store_markers:
            store_name = profile.name.upper()
            if not any(marker.upper() in store_name for marker in self.store_markers):
                return False
        wanted = self.family.casefold()
        return series.casefold() == wanted or spu.casefold() == wanted


DEFAULT_FAMILY_RULES: Tuple[FamilyRule, ...] = (
    FamilyRule("Surprise Box", 6, site_types=(RETAIL,)),
    FamilyRule("FX182", 10, store_markers=("JNR",)),
    FamilyRule("FL162", 10, store_markers=("JNR",)),
)


def normalize_name(name: str | None) -> str:
    if not name:
        return ""
    return _WHITESPACE.sub(" ", name).strip()


def product_series(name: str | None) -> str:
    """Series part of a product name: text before the first ``-`` (or ``,``)."""

    cleaned = normalize_name(name)
    for separator in ("-", ","):
        index = cleaned.find(separator)
        if index > 0:
            return cleaned[:index].strip()
    return cleaned


def extract_spu(sku: str | None) -> str:
    """SKU prefix up to the first separator, upper-cased."""

    if not sku or not sku.strip():
        return UNKNOWN_SPU
    trimmed = sku.strip()
    cut = len(trimmed)
    for separator in _SKU_SEPARATORS:
        index = trimmed.find(separator)
        if 0 < index < cut:
            cut = index
    return trimmed[:cut].upper()


def family_multiplier(
    *,
    sku: str | None,
    name: str | None,
    profile: StoreProfile,
    rules: Sequence[FamilyRule] = DEFAULT_FAMILY_RULES,
) -> Optional[int]:
    series = product_series(name)
    spu = extract_spu(sku)
    for rule in rules:
        if rule.matches(series=series, spu=spu, profile=profile):
            return rule.multiplier
    return None


def normalize_quantity(
    quantity: int,
    *,
    sku: str | None,
    name: str | None,
    profile: StoreProfile,
    index: SkuMappingIndex | None,
    rules: Sequence[FamilyRule] = DEFAULT_FAMILY_RULES,
) -> int:
    units = int(quantity or 0)

    # family rules replace the store-wide package factor
    family = family_multiplier(sku=sku, name=name, profile=profile, rules=rules)
    if family is not None:
        units *= family
    elif profile.wholesale:
        units *= profile.package_factor

    if index is not None:
        total_multiplier = index.multiplier_sum(sku)
        if total_multiplier is not None:
            units *= total_multiplier
    return units
