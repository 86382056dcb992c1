"""Deterministic hash bucketing and weighted variant selection."""
import hashlib
import struct
from typing import Sequence, TypeVar

from services.errors import NoEligibleVariants

# Changing either of these reshuffles every existing assignment
BUCKETING_ALGORITHM = "sha256-u32be"
_UINT32_RANGE = 2 ** 32

T = TypeVar("T")


def hash_to_unit_interval(key: str) -> float:
    """Maps a key to [0, 1) using the first 4 bytes of its SHA-256 digest."""
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    (value,) = struct.unpack(">I", digest[:4])
    return value / _UINT32_RANGE


def stable_key_for(anonymous_user_id: str, experiment_id: str) -> str:
    return f"{anonymous_user_id}:{experiment_id}"


def _weight_of(variant) -> float:
    weight = variant.get("weight") if isinstance(variant, dict) else getattr(variant, "weight", None)
    if weight is None or weight <= 0:
        return 0.0
    return float(weight)


def _variant_id_of(variant) -> str:
    return variant["variant_id"] if isinstance(variant, dict) else variant.variant_id


def select_weighted_variant(stable_key: str, variants: Sequence[T], experiment_id: str | None = None) -> T:
    """
    Picks a variant with probability proportional to its weight.

    Variants are walked in variant_id order so the result does not depend on the
    order storage returns them in. Accepts ORM rows or plain dicts.
    """
    ordered = sorted(variants, key=_variant_id_of)
    total_weight = sum(_weight_of(v) for v in ordered)
    if not ordered or total_weight <= 0:
        raise NoEligibleVariants(experiment_id)

    point = hash_to_unit_interval(stable_key) * total_weight
    cumulative = 0.0
    for variant in ordered:
        cumulative += _weight_of(variant)
        if point < cumulative:
            return variant

    return ordered[-1]
