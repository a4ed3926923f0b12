"""Layered reconciliation configuration.

Bundle defaults for the firm's region are overridden, in order, by firm
defaults, client settings and pay run settings. The result is resolved once
per run and passed down as a plain value.
"""

import math
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel

from ..database.models import Region, SourceType
from .models import ToleranceConfig, ToleranceSettings

BUNDLE_VERSION = "V1"

BASE_REQUIRED_SOURCES = (SourceType.REGISTER, SourceType.BANK, SourceType.GL)

# Override keys are accepted in snake_case or the camelCase used by stored JSON.
_TOLERANCE_KEYS = {
    "register_net_to_bank": "registerNetToBank",
    "journal_balance": "journalBalance",
    "statutory_totals": "statutoryTotals",
    "journal_tie_out": "journalTieOut",
}


class ReconciliationConfig(BaseModel):
    """Everything a run needs to know about firm, client and pay run configuration."""
    region: Region
    bundle_id: str
    bundle_version: str = BUNDLE_VERSION
    tolerances: ToleranceSettings
    required_sources: List[SourceType]


def bundle_id_for_region(region: str) -> str:
    return "BUNDLE_IE" if Region(region) == Region.IE else "BUNDLE_UK"


_BUNDLE_TOLERANCES = ToleranceSettings(
    register_net_to_bank=ToleranceConfig(absolute_cents=100, percent=0.05),
    journal_balance=ToleranceConfig(absolute_cents=50, percent=0.01),
    statutory_totals=ToleranceConfig(absolute_cents=100, percent=0.05),
    journal_tie_out=ToleranceConfig(absolute_cents=100, percent=0.05),
    bank_count_mismatch_percent=5,
)


def bundle_tolerance_defaults(region: str) -> ToleranceSettings:
    """Default tolerances for the region's bundle. UK and IE share one table."""
    Region(region)
    return _BUNDLE_TOLERANCES.model_copy(deep=True)


def _lookup(source: Mapping[str, Any], snake: str, camel: str) -> Any:
    if snake in source:
        return source[snake]
    return source.get(camel)


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return float(value)


def _parse_tolerance_override(value: Any) -> Dict[str, Any]:
    if not isinstance(value, Mapping):
        return {}
    override: Dict[str, Any] = {}
    absolute = _finite_number(_lookup(value, "absolute_cents", "absoluteCents"))
    if absolute is not None:
        override["absolute_cents"] = max(0, int(round(absolute)))
    percent = _finite_number(value.get("percent"))
    if percent is not None:
        override["percent"] = max(0.0, percent)
    return override


def _apply_overrides(base: ToleranceSettings, source: Any) -> ToleranceSettings:
    if not isinstance(source, Mapping):
        return base
    tolerances = source.get("tolerances")
    if not isinstance(tolerances, Mapping):
        return base

    updates: Dict[str, Any] = {}
    for snake, camel in _TOLERANCE_KEYS.items():
        override = _parse_tolerance_override(_lookup(tolerances, snake, camel))
        if override:
            current: ToleranceConfig = getattr(base, snake)
            updates[snake] = current.model_copy(update=override)

    count_percent = _finite_number(
        _lookup(tolerances, "bank_count_mismatch_percent", "bankCountMismatchPercent")
    )
    if count_percent is not None:
        updates["bank_count_mismatch_percent"] = max(0.0, count_percent)

    return base.model_copy(update=updates)


def resolve_tolerances(
    region: str,
    firm_defaults: Optional[Mapping[str, Any]] = None,
    client_settings: Optional[Mapping[str, Any]] = None,
    pay_run_settings: Optional[Mapping[str, Any]] = None,
) -> ToleranceSettings:
    """Resolve tolerances: bundle, then firm, then client, then pay run.

    Each layer reads ``{"tolerances": {...}}``; malformed entries are ignored
    and negative values are clamped to 0.
    """
    resolved = bundle_tolerance_defaults(region)
    for layer in (firm_defaults, client_settings, pay_run_settings):
        resolved = _apply_overrides(resolved, layer)
    return resolved


def resolve_required_sources(firm_defaults: Optional[Mapping[str, Any]] = None) -> List[SourceType]:
    """REGISTER, BANK and GL, plus STATUTORY when the firm requires it."""
    sources = list(BASE_REQUIRED_SOURCES)
    if not isinstance(firm_defaults, Mapping):
        return sources
    required = _lookup(firm_defaults, "required_sources", "requiredSources")
    if isinstance(required, Mapping) and required.get("statutory") is True:
        sources.append(SourceType.STATUTORY)
    return sources


def resolve_config(
    region: str,
    firm_defaults: Optional[Mapping[str, Any]] = None,
    client_settings: Optional[Mapping[str, Any]] = None,
    pay_run_settings: Optional[Mapping[str, Any]] = None,
) -> ReconciliationConfig:
    """Resolve the full layered configuration for one run."""
    return ReconciliationConfig(
        region=Region(region),
        bundle_id=bundle_id_for_region(region),
        tolerances=resolve_tolerances(region, firm_defaults, client_settings, pay_run_settings),
        required_sources=resolve_required_sources(firm_defaults),
    )
