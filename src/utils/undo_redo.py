"""
Undo/Redo System

This module implements the undo/redo log for measurement and ROI edits
using the command pattern. Each action is an immutable record of one
change (add, remove, update, or a batch of those) that knows how to apply
its forward and inverse effect to an AnnotationStore.

Inputs:
    - Actions recorded by the annotation store
    - Undo/redo requests

Outputs:
    - State restoration on the store
    - Bounded undo history

Requirements:
    - Standard library only
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Tuple

from tools.measurement_items import AnyEntry
from utils.debug_log import annotation_debug

if TYPE_CHECKING:
    from core.annotation_store import AnnotationStore


class MeasurementAction(ABC):
    """
    Abstract base class for undoable measurement actions.
    """

    @abstractmethod
    def execute(self, store: "AnnotationStore") -> None:
        """Apply the forward effect."""
        pass

    @abstractmethod
    def undo(self, store: "AnnotationStore") -> None:
        """Apply the inverse effect."""
        pass


@dataclass(frozen=True)
class AddAction(MeasurementAction):
    """An entry was added; undo removes it."""
    entry: AnyEntry

    def execute(self, store: "AnnotationStore") -> None:
        store._insert(self.entry)

    def undo(self, store: "AnnotationStore") -> None:
        store._delete(self.entry.id)


@dataclass(frozen=True)
class RemoveAction(MeasurementAction):
    """
    An entry was removed; undo puts it back.

    index is the entry's position within its (image, frame) partition at the
    time of removal so undo restores the original ordering.
    """
    entry: AnyEntry
    index: Optional[int] = None

    def execute(self, store: "AnnotationStore") -> None:
        store._delete(self.entry.id)

    def undo(self, store: "AnnotationStore") -> None:
        store._insert(self.entry, self.index)


@dataclass(frozen=True)
class UpdateAction(MeasurementAction):
    """
    An entry was replaced by a new version with the same id.

    old_index is set when the update moved the entry to another image or
    frame; it is old's position in its original partition so undo puts it
    back where it was.
    """
    old: AnyEntry
    new: AnyEntry
    old_index: Optional[int] = None

    def execute(self, store: "AnnotationStore") -> None:
        store._replace(self.new)

    def undo(self, store: "AnnotationStore") -> None:
        store._replace(self.old, self.old_index)


@dataclass(frozen=True)
class CompositeAction(MeasurementAction):
    """
    Several actions applied and undone as a single step.
    Used for batch operations like "clear image" or "update many".
    """
    actions: Tuple[MeasurementAction, ...]

    def execute(self, store: "AnnotationStore") -> None:
        for action in self.actions:
            action.execute(store)

    def undo(self, store: "AnnotationStore") -> None:
        for action in reversed(self.actions):
            action.undo(store)


class UndoRedoManager:
    """
    Manages the undo and redo stacks.

    Features:
    - Record already-applied actions
    - Undo/redo operations
    - Bounded history (oldest actions are dropped first)
    - Any newly recorded action invalidates the redo stack
    """

    def __init__(self, max_history: int = 100):
        """
        Initialize the undo/redo manager.

        Args:
            max_history: Maximum number of actions to keep on the undo stack
        """
        self.undo_stack: List[MeasurementAction] = []
        self.redo_stack: List[MeasurementAction] = []
        self.max_history = max(0, int(max_history))

    def record(self, action: MeasurementAction) -> None:
        """
        Push an action whose effect has already been applied.

        Args:
            action: Action to record
        """
        self.undo_stack.append(action)

        # Clear redo stack when a new edit is made
        self.redo_stack.clear()

        # Limit history size
        if len(self.undo_stack) > self.max_history:
            dropped = len(self.undo_stack) - self.max_history
            del self.undo_stack[:dropped]
            annotation_debug(f"Undo history full, dropped {dropped} oldest action(s)")

    def execute_command(self, action: MeasurementAction, store: "AnnotationStore") -> None:
        """
        Apply an action to the store and record it.

        Args:
            action: Action to execute
            store: Store the action applies to
        """
        action.execute(store)
        self.record(action)

    def undo(self, store: "AnnotationStore") -> bool:
        """
        Undo the last action.

        Returns:
            True if undo was successful, False if no actions to undo
        """
        if not self.undo_stack:
            return False

        action = self.undo_stack.pop()
        action.undo(store)
        self.redo_stack.append(action)
        return True

    def redo(self, store: "AnnotationStore") -> bool:
        """
        Redo the last undone action.

        Returns:
            True if redo was successful, False if no actions to redo
        """
        if not self.redo_stack:
            return False

        action = self.redo_stack.pop()
        action.execute(store)
        self.undo_stack.append(action)
        return True

    def can_undo(self) -> bool:
        return len(self.undo_stack) > 0

    def can_redo(self) -> bool:
        return len(self.redo_stack) > 0

    def clear(self) -> None:
        """Clear all action history."""
        self.undo_stack.clear()
        self.redo_stack.clear()
