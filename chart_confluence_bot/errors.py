from __future__ import annotations

from typing import Iterable


class IncompleteBundle(Exception):
    """Raised while a capture cycle is still missing timeframe analyses."""

    def __init__(self, capture_id: str, missing: Iterable[object]):
        self.capture_id = capture_id
        self.missing = [getattr(tf, "value", str(tf)) for tf in missing]
        super().__init__(f"capture {capture_id} missing timeframes: {', '.join(self.missing)}")


class BundleSealed(Exception):
    """Raised on updates to a capture whose bundle was already delivered."""


class VisionServiceError(RuntimeError):
    pass


class StoreError(RuntimeError):
    pass
