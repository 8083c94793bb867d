"""
Capability registry: every feature is registered at startup and gated at
the call site through the license manager.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from config import settings
from errors import FeatureUnavailable

PRO_FEATURES = {
    "ai_analysis": "AI Analysis",
    "vulnerability_scan": "Vulnerability Scan",
    "one_click_fixes": "One Click Fixes",
    "advanced_scheduling": "Advanced Scheduling",
    "white_label": "White Label",
    "priority_support": "Priority Support",
}

CORE_FEATURES = {
    "site_scan": "Site Scan",
    "basic_reports": "Basic Reports",
}


@dataclass
class FeatureHandle:
    """Default constructor for features whose module lives in the host."""

    key: str
    label: str


@dataclass
class _Registration:
    label: str
    factory: Callable[[], Any]
    core: bool


class FeatureRegistry:
    def __init__(self, license_manager, allow_unlicensed_core: bool = None):
        self.license_manager = license_manager
        self.allow_unlicensed_core = (
            settings.ALLOW_UNLICENSED_CORE_FEATURES if allow_unlicensed_core is None else allow_unlicensed_core
        )
        self._features: Dict[str, _Registration] = {}

    def register(self, key: str, label: str, factory: Callable[[], Any] = None, core: bool = False):
        if key in self._features:
            raise ValueError(f"Feature already registered: {key}")
        self._features[key] = _Registration(
            label=label,
            factory=factory or (lambda: FeatureHandle(key=key, label=label)),
            core=core
        )

    def register_defaults(self):
        for key, label in PRO_FEATURES.items():
            self.register(key, label)
        for key, label in CORE_FEATURES.items():
            self.register(key, label, core=True)

    def check(self, key: str):
        """Raise FeatureUnavailable unless ``key`` may be used right now."""
        registration = self._features.get(key)
        label = registration.label if registration else key.replace("_", " ").title()

        if registration and registration.core and self.allow_unlicensed_core:
            return
        if not self.license_manager.is_license_active():
            raise FeatureUnavailable(key, "license_required", f"{label} requires a valid Pro license.")
        if registration is None:
            raise FeatureUnavailable(key, "feature_not_available", f"{label} is not available with your current license.")

    def is_available(self, key: str) -> bool:
        try:
            self.check(key)
        except FeatureUnavailable:
            return False
        return True

    def require(self, key: str) -> Any:
        """Build the feature registered under ``key`` once the gate allows it."""
        self.check(key)
        return self._features[key].factory()

    def available_features(self) -> List[str]:
        return [key for key in self._features if self.is_available(key)]

    def core_features(self) -> List[str]:
        return [key for key, registration in self._features.items() if registration.core]
