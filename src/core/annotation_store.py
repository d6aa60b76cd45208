"""
Annotation Store

Holds the measurements and ROIs placed on each image, partitioned by
(image_key, frame_number), and routes every change through the undo/redo
log so edits can be reverted.

The store is not internally synchronized. Use it from one thread (the UI
thread of the host application) or guard it externally; records are
immutable so snapshots returned by the query methods are safe to share.

Inputs:
    - MeasurementEntry / ROIEntry records
    - Undo/redo requests

Outputs:
    - Per-image and per-frame entry lists
    - Undo/redo availability

Requirements:
    - utils.undo_redo for the action log
    - utils.config_manager (optional) for max_undo_history
"""

from typing import Dict, Iterable, List, Optional, Set, Tuple

from tools.measurement_items import AnyEntry, MeasurementEntry, ROIEntry
from utils.debug_log import annotation_debug, debug_log
from utils.undo_redo import (
    AddAction,
    CompositeAction,
    MeasurementAction,
    RemoveAction,
    UndoRedoManager,
    UpdateAction,
)

# Partition key: (image_key / SOP Instance UID, frame_number)
PartitionKey = Tuple[str, int]

DEFAULT_MAX_UNDO_HISTORY = 100


class AnnotationStore:
    """
    Keyed collection of measurement/ROI entries with undo/redo.

    Features:
    - Add, remove and update entries (matched by id)
    - Per-image and per-frame queries
    - Bounded undo history; new edits invalidate redo
    - Batch edits that undo as one step
    """

    def __init__(self, max_undo_history: Optional[int] = None, config_manager=None):
        """
        Initialize the store.

        Args:
            max_undo_history: Undo stack bound; overrides the config value
            config_manager: Optional ConfigManager supplying max_undo_history
        """
        if max_undo_history is None:
            if config_manager is not None:
                max_undo_history = config_manager.get_max_undo_history()
            else:
                max_undo_history = DEFAULT_MAX_UNDO_HISTORY
        self._entries: Dict[PartitionKey, List[AnyEntry]] = {}
        self._keys_by_id: Dict[str, PartitionKey] = {}
        self.history = UndoRedoManager(max_history=max_undo_history)

    # ------------------------------------------------------------------
    # Low-level mutators used by the actions in utils.undo_redo.
    # They bypass the history and must not be called from outside.
    # ------------------------------------------------------------------

    def _insert(self, entry: AnyEntry, index: Optional[int] = None) -> None:
        key = (entry.image_key, entry.frame_number)
        partition = self._entries.setdefault(key, [])
        if index is not None and 0 <= index <= len(partition):
            partition.insert(index, entry)
        else:
            partition.append(entry)
        self._keys_by_id[entry.id] = key

    def _delete(self, entry_id: str) -> Optional[Tuple[AnyEntry, int]]:
        key = self._keys_by_id.pop(entry_id, None)
        if key is None:
            return None
        partition = self._entries.get(key, [])
        for index, entry in enumerate(partition):
            if entry.id == entry_id:
                del partition[index]
                if not partition:
                    del self._entries[key]
                return entry, index
        return None

    def _replace(self, entry: AnyEntry, index: Optional[int] = None) -> bool:
        key = self._keys_by_id.get(entry.id)
        if key is None:
            return False
        new_key = (entry.image_key, entry.frame_number)
        if new_key != key:
            # Entry moved to another image/frame; index places it in the new partition
            self._delete(entry.id)
            self._insert(entry, index)
            return True
        partition = self._entries[key]
        for index, existing in enumerate(partition):
            if existing.id == entry.id:
                partition[index] = entry
                return True
        return False

    def _index_of(self, entry_id: str) -> Optional[int]:
        key = self._keys_by_id.get(entry_id)
        if key is None:
            return None
        for index, entry in enumerate(self._entries[key]):
            if entry.id == entry_id:
                return index
        return None

    def _update_action(self, old: AnyEntry, new: AnyEntry) -> UpdateAction:
        if (old.image_key, old.frame_number) == (new.image_key, new.frame_number):
            return UpdateAction(old, new)
        return UpdateAction(old, new, self._index_of(old.id))

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    def add(self, entry: AnyEntry) -> bool:
        """
        Add an entry and record an AddAction.

        Args:
            entry: Entry to add

        Returns:
            True if added, False if an entry with the same id already exists
        """
        if entry.id in self._keys_by_id:
            annotation_debug(f"add rejected, duplicate id {entry.id}")
            return False
        self._insert(entry)
        self.history.record(AddAction(entry))
        annotation_debug(f"added {entry.tool_type.value} {entry.id} to {entry.image_key}#{entry.frame_number}")
        return True

    def remove(self, entry_id: str) -> Optional[AnyEntry]:
        """
        Remove an entry by id and record a RemoveAction.

        Args:
            entry_id: Id of the entry to remove

        Returns:
            The removed entry, or None if the id is unknown
        """
        result = self._delete(entry_id)
        if result is None:
            return None
        entry, index = result
        self.history.record(RemoveAction(entry, index))
        annotation_debug(f"removed {entry.tool_type.value} {entry.id}")
        return entry

    def update(self, entry: AnyEntry) -> Optional[AnyEntry]:
        """
        Replace the stored entry that has the same id and record an UpdateAction.

        Args:
            entry: New version of the entry

        Returns:
            The previous version, or None if the id is unknown
        """
        old = self.get(entry.id)
        if old is None:
            return None
        action = self._update_action(old, entry)
        self._replace(entry)
        self.history.record(action)
        annotation_debug(f"updated {entry.tool_type.value} {entry.id}")
        return old

    def update_many(self, entries: Iterable[AnyEntry]) -> int:
        """
        Update several entries as a single undoable step.

        Unknown ids are skipped.

        Returns:
            Number of entries updated
        """
        actions: List[MeasurementAction] = []
        for entry in entries:
            old = self.get(entry.id)
            if old is None:
                continue
            actions.append(self._update_action(old, entry))
        return self.apply_batch(actions)

    def refresh(self, entries: Iterable[AnyEntry]) -> int:
        """
        Replace entries in place without recording history.

        Only for derived values that follow view state rather than user
        edits, such as ROI statistics after a calibration change. Unknown
        ids and entries that would change image or frame are skipped.

        Returns:
            Number of entries replaced
        """
        count = 0
        for entry in entries:
            key = self._keys_by_id.get(entry.id)
            if key != (entry.image_key, entry.frame_number):
                continue
            if self._replace(entry):
                count += 1
        return count

    def clear_image(self, image_key: str) -> int:
        """
        Remove every entry of an image as a single undoable step.

        Returns:
            Number of entries removed
        """
        actions: List[MeasurementAction] = []
        for key in sorted(k for k in self._entries if k[0] == image_key):
            # Remove from the end so recorded indices stay valid on undo
            partition = self._entries[key]
            for index in range(len(partition) - 1, -1, -1):
                actions.append(RemoveAction(partition[index], index))
        return self.apply_batch(actions)

    def apply_batch(self, actions: Iterable[MeasurementAction]) -> int:
        """
        Apply several actions as a single undoable step.

        AddActions whose id is already stored, or added earlier in the same
        batch, are skipped.

        Returns:
            Number of actions applied
        """
        actions = self._admissible(actions, set(self._keys_by_id))
        if not actions:
            return 0
        self.history.execute_command(CompositeAction(tuple(actions)), self)
        return len(actions)

    def _admissible(self, actions: Iterable[MeasurementAction], ids: Set[str]) -> List[MeasurementAction]:
        # ids tracks which entries exist as the batch is applied in order
        result: List[MeasurementAction] = []
        for action in actions:
            if isinstance(action, CompositeAction):
                inner = self._admissible(action.actions, ids)
                if inner:
                    result.append(CompositeAction(tuple(inner)))
                continue
            if isinstance(action, AddAction):
                if action.entry.id in ids:
                    annotation_debug(f"batch add skipped, duplicate id {action.entry.id}")
                    continue
                ids.add(action.entry.id)
            elif isinstance(action, RemoveAction):
                ids.discard(action.entry.id)
            result.append(action)
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, entry_id: str) -> Optional[AnyEntry]:
        key = self._keys_by_id.get(entry_id)
        if key is None:
            return None
        for entry in self._entries.get(key, []):
            if entry.id == entry_id:
                return entry
        return None

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._keys_by_id

    def __len__(self) -> int:
        return len(self._keys_by_id)

    def all_for_image(self, image_key: str) -> List[AnyEntry]:
        """All entries of an image, ordered by frame then insertion."""
        result: List[AnyEntry] = []
        for key in sorted(k for k in self._entries if k[0] == image_key):
            result.extend(self._entries[key])
        return result

    def measurements_for_image(self, image_key: str) -> List[MeasurementEntry]:
        """Non-ROI entries of an image."""
        return [e for e in self.all_for_image(image_key) if not isinstance(e, ROIEntry)]

    def rois_for_image(self, image_key: str) -> List[ROIEntry]:
        return [e for e in self.all_for_image(image_key) if isinstance(e, ROIEntry)]

    def for_image_and_frame(self, image_key: str, frame_number: int) -> List[AnyEntry]:
        return list(self._entries.get((image_key, frame_number), []))

    def visible_for_image_and_frame(self, image_key: str, frame_number: int,
                                    frame_count: Optional[int] = None) -> List[AnyEntry]:
        """
        Visible entries on one frame of an image.

        Negative frame numbers, and frame numbers at or beyond frame_count
        when it is given, match nothing.

        Args:
            image_key: SOP Instance UID
            frame_number: Frame being displayed
            frame_count: Number of frames in the image, if known

        Returns:
            Visible entries in insertion order
        """
        if frame_number < 0:
            return []
        if frame_count is not None and frame_number >= frame_count:
            return []
        return [e for e in self._entries.get((image_key, frame_number), []) if e.is_visible]

    def all_entries(self) -> List[AnyEntry]:
        result: List[AnyEntry] = []
        for key in sorted(self._entries):
            result.extend(self._entries[key])
        return result

    def image_keys(self) -> List[str]:
        return sorted({key[0] for key in self._entries})

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def undo(self) -> bool:
        """
        Undo the most recent edit.

        Returns:
            True if an action was undone, False if the undo stack is empty
        """
        done = self.history.undo(self)
        if done:
            annotation_debug(f"undo (undo={self.undo_count}, redo={self.redo_count})")
        return done

    def redo(self) -> bool:
        """
        Redo the most recently undone edit.

        Returns:
            True if an action was redone, False if the redo stack is empty
        """
        done = self.history.redo(self)
        if done:
            annotation_debug(f"redo (undo={self.undo_count}, redo={self.redo_count})")
        return done

    @property
    def can_undo(self) -> bool:
        return self.history.can_undo()

    @property
    def can_redo(self) -> bool:
        return self.history.can_redo()

    @property
    def undo_count(self) -> int:
        return len(self.history.undo_stack)

    @property
    def redo_count(self) -> int:
        return len(self.history.redo_stack)

    @property
    def max_undo_history(self) -> int:
        return self.history.max_history

    def clear_history(self) -> None:
        """Empty both stacks without touching the entries."""
        self.history.clear()

    def clear_all(self) -> None:
        """Remove every entry and all history."""
        debug_log("annotation_store.clear_all", "Clearing store", {"entries": len(self._keys_by_id)})
        self._entries.clear()
        self._keys_by_id.clear()
        self.history.clear()
