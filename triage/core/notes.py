"""Accumulating note buffer attached to the incident at the end of a run."""

from __future__ import annotations

import logging
from typing import List

logger = logging.getLogger(__name__)


class NoteWriter:
    def __init__(self, investigation_name: str) -> None:
        self.investigation_name = investigation_name
        self._lines: List[str] = []

    def _header(self) -> str:
        return f"🤖 Automated {self.investigation_name} pre-investigation 🤖\n===========================\n"

    def append_success(self, message: str) -> None:
        logger.info(message)
        self._lines.append(f"✅ {message}\n")

    def append_warning(self, message: str) -> None:
        logger.warning(message)
        self._lines.append(f"⚠️ {message}\n")

    def append_automation(self, message: str) -> None:
        logger.info(message)
        self._lines.append(f"🤖 {message}\n")

    def is_empty(self) -> bool:
        return not self._lines

    def lines(self) -> List[str]:
        return list(self._lines)

    def truncate(self, length: int) -> None:
        """Drop lines appended after the first `length` (used between retried runs)."""
        del self._lines[length:]

    def render(self) -> str:
        return self._header() + "".join(self._lines)

    def __str__(self) -> str:
        return self.render()
