from __future__ import annotations

from caseguard.services.guardian.conflicts import PolicyConflict, detect_conflicts
from caseguard.services.guardian.engine import (
    SYSTEM_CONFIGURATION_RULE_ID,
    EvaluationEngine,
    is_blocking,
)
from caseguard.services.guardian.findings import FindingStore
from caseguard.services.guardian.overrides import OverrideResolver
from caseguard.services.guardian.triggers import TriggerRegistry, default_registry


__all__ = [
    "EvaluationEngine",
    "FindingStore",
    "OverrideResolver",
    "PolicyConflict",
    "SYSTEM_CONFIGURATION_RULE_ID",
    "TriggerRegistry",
    "default_registry",
    "detect_conflicts",
    "is_blocking",
]
