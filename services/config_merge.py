import copy
from typing import Any, Iterable

# Client configuration before any experiment overrides are applied
BASELINE_CONFIG: dict[str, Any] = {
    "navigation": {"default_landing_tab": "workouts"},
    "workouts": {"preload_default_plan": False},
    "creatures": {"recommended_creature_id": None},
    "achievements": {"ui_mode": "baseline"},
}


def deep_merge(base: dict, override: dict) -> dict:
    """
    Returns a new dict with ``override`` laid over ``base``.

    Nested dicts merge key by key; lists and scalars from the override replace
    the base value outright. Neither input is modified.
    """
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict):
            current = result.get(key)
            result[key] = deep_merge(current if isinstance(current, dict) else {}, value)
        elif isinstance(value, list):
            result[key] = copy.deepcopy(value)
        else:
            result[key] = value
    return result


def merge_variant_configs(baseline: dict, configs: Iterable[dict | None]) -> dict:
    """Folds variant configs over the baseline in the order given."""
    merged = copy.deepcopy(baseline)
    for config in configs:
        if isinstance(config, dict):
            merged = deep_merge(merged, config)
    return merged
