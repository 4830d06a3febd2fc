"""Collection tier detection.

Tier 0: no external collector, spans are synthesized from hook events.
Tier 1: an external collector writes OTLP JSON into <home>/otel-export and
spans are ingested from there.

The tier is probed once at session start and cached in meta.json. Handlers
read the cached value so a session never holds both kinds of span.
"""

import logging
import os
from enum import Enum

from ..core.store import GlobalStore, SessionStore, count_lines

logger = logging.getLogger(__name__)


class CollectionTier(int, Enum):
    LOCAL = 0
    COLLECTOR = 1


class TierDetector:
    """Cheap existence/liveness probes for the external collector."""

    def __init__(self, global_store: GlobalStore):
        self.global_store = global_store

    def collector_alive(self) -> bool:
        pid_file = self.global_store.collector_pid_file
        try:
            pid = int(pid_file.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return False
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # exists, owned by someone else
            return True
        except OSError:
            return False
        return True

    def export_has_data(self) -> bool:
        export_dir = self.global_store.export_dir
        try:
            return any(export_dir.iterdir())
        except OSError:
            return False

    def detect(self) -> CollectionTier:
        """Tier 1 iff the export dir exists and the collector is alive or has written data."""
        if not self.global_store.export_dir.is_dir():
            return CollectionTier.LOCAL
        if self.collector_alive() or self.export_has_data():
            return CollectionTier.COLLECTOR
        return CollectionTier.LOCAL

    def session_tier(self, store: SessionStore) -> CollectionTier:
        """The tier cached for this session, probing and caching it if absent."""
        meta = store.read_meta()
        cached = meta.get("collection_tier")
        if cached in (0, 1) and not isinstance(cached, bool):
            return CollectionTier(cached)

        tier = self.detect()
        meta.setdefault("session_id", store.directory.name)
        meta["collection_tier"] = tier.value
        store.write_meta(meta)
        return tier

    def reprobe(self, store: SessionStore) -> CollectionTier:
        """Probe again and update the cached tier.

        The cached tier only changes while the session has no spans yet;
        otherwise the existing tier is kept.
        """
        meta = store.read_meta()
        current = meta.get("collection_tier")
        probed = self.detect()
        if current == probed.value:
            return probed
        if count_lines(store.path(SessionStore.SPANS)) > 0 and current in (0, 1):
            logger.info(
                "Keeping tier %s for %s: spans already recorded", current, store.directory.name
            )
            return CollectionTier(current)
        meta["collection_tier"] = probed.value
        store.write_meta(meta)
        return probed
