from __future__ import annotations

import base64
from dataclasses import dataclass
import logging
import os
from typing import Dict, Optional

from .models import REQUIRED_TIMEFRAMES, Timeframe

log = logging.getLogger("capture")

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp")


@dataclass(frozen=True)
class CaptureFrame:
    timeframe: Timeframe
    path: str
    image_b64: str


class DirectoryCaptureSource:
    """Reads the latest per-timeframe screenshots (``4h.png``, ``15m.png``...) from a folder."""

    def __init__(self, directory: str):
        self.directory = directory

    def _find(self, tf: Timeframe) -> Optional[str]:
        for ext in IMAGE_EXTENSIONS:
            path = os.path.join(self.directory, f"{tf.value}{ext}")
            if os.path.isfile(path):
                return path
        return None

    def read(self) -> Dict[Timeframe, CaptureFrame]:
        frames: Dict[Timeframe, CaptureFrame] = {}
        for tf in REQUIRED_TIMEFRAMES:
            path = self._find(tf)
            if path is None:
                log.warning("capture_missing tf=%s dir=%s", tf.value, self.directory)
                continue
            try:
                with open(path, "rb") as f:
                    data = f.read()
            except OSError as e:
                log.warning("capture_read_failed tf=%s path=%s err=%s", tf.value, path, e)
                continue
            frames[tf] = CaptureFrame(timeframe=tf, path=path, image_b64=base64.b64encode(data).decode("ascii"))
        return frames

    def url(self) -> str:
        return "file://" + os.path.abspath(self.directory)
