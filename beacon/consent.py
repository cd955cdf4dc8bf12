"""Consent gate for tracked features.

Core features are fixed; callers may define groups that point at core
features. Every tracking call asks ``check()`` first. Changes to core
features are staged and synced to the server as one ``consent`` value once
the debounce window has passed without further changes (or earlier, riding
along on the next delivered request).

Two calls are replay-eligible: a ``begin_session`` or ``track_view`` made
while consent was missing is remembered, and replayed once as soon as the
matching feature is granted.
"""
from __future__ import annotations

import logging
from typing import Callable, Iterable

from beacon.clock import Clock
from beacon.models import ConsentEntry

logger = logging.getLogger(__name__)

FEATURES = ("sessions", "events", "views", "crashes", "attribution", "users")
BULK_FEATURES = FEATURES + ("star-rating", "location")
REPLAY_FEATURES = ("sessions", "views")


class ConsentGate:
    def __init__(self, require_consent: bool = False,
                 features: Iterable[str] = FEATURES,
                 clock: Clock | None = None,
                 sync_window: float = 1.0) -> None:
        self.require_consent = require_consent
        self.clock = clock or Clock()
        self.sync_window = sync_window
        self._entries: dict[str, ConsentEntry] = {f: ConsentEntry() for f in features}
        self._staged: dict[str, bool] = {}
        self._sync_due: float | None = None
        self._deferred: dict[str, Callable[[], None]] = {}

    @property
    def features(self) -> list[str]:
        return list(self._entries)

    def group_features(self, groups: dict) -> None:
        """Define feature groups, e.g. ``{"activity": ["sessions", "views"]}``."""
        if not groups or not isinstance(groups, dict):
            logger.debug("Incorrect features: %s", groups)
            return
        for name, members in groups.items():
            if name in self._entries:
                logger.debug("Feature name %s is already reserved", name)
            elif isinstance(members, str):
                self._entries[name] = ConsentEntry(features=[members])
            elif isinstance(members, (list, tuple)) and members:
                self._entries[name] = ConsentEntry(features=list(members))
            else:
                logger.debug("Incorrect feature list for %s value: %s", name, members)

    def check(self, feature: str) -> bool:
        if not self.require_consent:
            return True
        entry = self._entries.get(feature)
        if entry is None:
            logger.debug("No feature available for %s", feature)
            return False
        return bool(entry.optin)

    def add(self, feature: str | list[str]) -> None:
        if isinstance(feature, (list, tuple)):
            for f in feature:
                self.add(f)
            return
        entry = self._entries.get(feature)
        if entry is None:
            logger.debug("No feature available for %s", feature)
            return
        logger.debug("Adding consent for %s", feature)
        if entry.is_group:
            entry.optin = True
            self.add(entry.features)
            return
        if entry.optin is True:
            return
        entry.optin = True
        self._stage(feature, True)
        replay = self._deferred.pop(feature, None)
        if replay is not None:
            logger.debug("Replaying deferred %s call", feature)
            replay()

    def remove(self, feature: str | list[str]) -> None:
        if isinstance(feature, (list, tuple)):
            for f in feature:
                self.remove(f)
            return
        entry = self._entries.get(feature)
        if entry is None:
            logger.debug("No feature available for %s", feature)
            return
        logger.debug("Removing consent for %s", feature)
        if entry.is_group:
            self.remove(entry.features)
        elif entry.optin is not False:
            self._stage(feature, False)
        entry.optin = False

    def defer(self, feature: str, call: Callable[[], None]) -> None:
        """Remember the latest call that was blocked for a replay-eligible feature."""
        if feature in REPLAY_FEATURES:
            self._deferred[feature] = call

    def has_deferred(self, feature: str) -> bool:
        return feature in self._deferred

    # ── Sync staging ────────────────────────────────────────────────

    def _stage(self, feature: str, value: bool) -> None:
        self._staged[feature] = value
        self._sync_due = self.clock.now() + self.sync_window

    @property
    def staged(self) -> dict[str, bool]:
        return dict(self._staged)

    def sync_due(self) -> bool:
        """True once staged changes have been quiet for the whole window."""
        return bool(self._staged) and self._sync_due is not None \
            and self.clock.now() >= self._sync_due

    def take_staged(self) -> dict[str, bool]:
        staged, self._staged = self._staged, {}
        self._sync_due = None
        return staged
