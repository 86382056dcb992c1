import re
import logging

from packaging.version import InvalidVersion, Version

logger = logging.getLogger(__name__)

# First "major[.minor[.patch]]" run found in the string, e.g. "v2.3-beta" -> 2.3.0
_VERSION_RUN = re.compile(r"(?:^|[^\d])(\d{1,16})(?:\.(\d{1,16}))?(?:\.(\d{1,16}))?(?:$|[^\d])")


def coerce_version(raw: str) -> Version | None:
    """Loose semver coercion; prerelease and build tags are dropped."""
    if not isinstance(raw, str):
        return None
    match = _VERSION_RUN.search(raw)
    if not match:
        return None
    major, minor, patch = (int(part) if part else 0 for part in match.groups())
    try:
        return Version(f"{major}.{minor}.{patch}")
    except InvalidVersion:
        return None


def _allowed_platforms(rule) -> list[str]:
    if isinstance(rule, str):
        return [rule]
    if isinstance(rule, list):
        return [value for value in rule if isinstance(value, str)]
    return []


def matches_targeting(targeting, platform: str | None = None, app_version: str | None = None) -> bool:
    """
    Evaluates an experiment's targeting rules against the request context.

    Missing or non-object rules match everyone. Recognised keys are
    ``platform`` (string or list), ``min_app_version`` and ``max_app_version``;
    any other key is ignored.
    """
    if not targeting or not isinstance(targeting, dict):
        return True

    if "platform" in targeting:
        allowed = _allowed_platforms(targeting["platform"])
        if not platform or not allowed or platform not in allowed:
            return False

    for rule_key in ("min_app_version", "max_app_version"):
        if rule_key not in targeting:
            continue
        bound_raw = targeting[rule_key]
        if not isinstance(bound_raw, str) or not app_version:
            return False

        current = coerce_version(app_version)
        bound = coerce_version(bound_raw)
        if current is None or bound is None:
            logger.debug("unparseable version in targeting check: %s vs %s", app_version, bound_raw)
            return False
        if rule_key == "min_app_version" and current < bound:
            return False
        if rule_key == "max_app_version" and current > bound:
            return False

    return True
