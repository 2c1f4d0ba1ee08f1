"""Compensating-action stack for orchestrator actions.

Each successful apply sub-step pushes the action that undoes it. On
failure the stack is unwound in reverse order. Compensation failures do
not stop the unwind; they are collected so the caller can record them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

Compensation = Callable[[], Awaitable[object]]


@dataclass
class UndoEntry:
    description: str
    compensate: Compensation


@dataclass
class UndoStack:
    """Per-invocation undo log. Never shared between actions."""

    entries: list[UndoEntry] = field(default_factory=list)

    def push(self, description: str, compensate: Compensation) -> None:
        self.entries.append(UndoEntry(description, compensate))

    def __len__(self) -> int:
        return len(self.entries)

    def discard(self) -> None:
        self.entries.clear()

    async def unwind(self) -> tuple[list[str], list[str]]:
        """Run compensations newest first.

        Returns:
            (undone step descriptions, errors for steps that failed to undo)
        """
        undone: list[str] = []
        errors: list[str] = []
        while self.entries:
            entry = self.entries.pop()
            try:
                await entry.compensate()
                undone.append(entry.description)
                logger.info(f"Rolled back: {entry.description}")
            except Exception as e:
                errors.append(f"{entry.description}: {e}")
                logger.error(f"Failed to roll back '{entry.description}': {e}")
        return undone, errors
