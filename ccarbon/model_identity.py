"""Model identity helpers for grouping usage by model family."""
from __future__ import annotations

import re

_DATE_SUFFIX_PATTERN = re.compile(r"(?:-\d{8}|-\d{4}-\d{2}-\d{2})+$")
_FAMILIES = ("opus", "sonnet", "haiku")


def canonical_model_name(raw_model: str | None) -> str:
    """Lower-cased model id without trailing release-date suffixes."""
    raw = (raw_model or "").strip().lower()
    if not raw:
        return "unknown"
    return _DATE_SUFFIX_PATTERN.sub("", raw) or raw


def model_family(raw_model: str | None) -> str:
    """Family token used by downstream energy tables (`opus`, `sonnet`, `haiku`)."""
    parts = [part for part in re.split(r"[-_\s.]+", (raw_model or "").strip().lower()) if part]
    for family in _FAMILIES:
        if family in parts:
            return family
    return "unknown"
