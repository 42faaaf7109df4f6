"""Whiteout-aware merge of per-layer file listings.

Layers are folded oldest to newest into a mapping of path to the entry that
currently wins it:

- opaque markers drop everything at or below their directory,
- whiteouts drop their path and everything below it,
- plain entries overwrite the mapping, and also replace whatever was mapped
  below them (directory became a file) or above them (file became a
  directory).

Removals of a layer are applied before its own plain entries, since a
whiteout only ever hides content from lower layers. The fold performs no I/O
and is a pure function of its input.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Sequence

from .exceptions import InconsistentLayerError

if TYPE_CHECKING:
    from .models import FileEntry, LayerInfo

logger = logging.getLogger(__name__)


def is_within(path: str, directory: str) -> bool:
    """Return True if path is directory itself or lies below it."""
    return path == directory or path.startswith(directory + "/")


def _parents(path: str) -> list[str]:
    parts = path.split("/")[:-1]
    return ["/".join(parts[: i + 1]) for i in range(len(parts))]


@dataclass(frozen=True)
class LayerDelta:
    """Classification of one layer's own entries against the state below it."""

    index: int
    digest: str
    added: tuple["FileEntry", ...] = ()
    modified: tuple["FileEntry", ...] = ()
    unchanged: tuple["FileEntry", ...] = ()
    deleted: tuple["FileEntry", ...] = ()

    @property
    def counts(self) -> dict[str, int]:
        return {
            "added": len(self.added),
            "modified": len(self.modified),
            "unchanged": len(self.unchanged),
            "deleted": len(self.deleted),
        }


class _State:
    """Path mapping plus a count of mapped paths under each directory."""

    def __init__(self) -> None:
        self.entries: dict[str, tuple["FileEntry", int]] = {}
        self._dirs: Counter = Counter()

    def get(self, path: str) -> Optional[tuple["FileEntry", int]]:
        return self.entries.get(path)

    def put(self, entry: "FileEntry", index: int) -> None:
        if entry.path not in self.entries:
            self._dirs.update(_parents(entry.path))
        self.entries[entry.path] = (entry, index)

    def _drop(self, path: str) -> None:
        del self.entries[path]
        for parent in _parents(path):
            self._dirs[parent] -= 1
            if not self._dirs[parent]:
                del self._dirs[parent]

    def remove_subtree(self, directory: str) -> list[str]:
        doomed = []
        if directory in self.entries:
            doomed.append(directory)
        if self._dirs.get(directory):
            doomed.extend(
                path for path in self.entries if path.startswith(directory + "/")
            )
        for path in doomed:
            self._drop(path)
        return doomed

    def clear_around(self, path: str) -> list[str]:
        """Drop mapped paths below `path` and mapped ancestors of it.

        A layer that turns a directory into a file, or a file into a
        directory, carries no whiteout: the upper entry hides the lower one.
        The exact path keeps its slot.
        """
        doomed = []
        if self._dirs.get(path):
            doomed.extend(p for p in self.entries if p.startswith(path + "/"))
        doomed.extend(parent for parent in _parents(path) if parent in self.entries)
        for doomed_path in doomed:
            self._drop(doomed_path)
        return doomed


def _check_unique(layer: "LayerInfo", index: int) -> None:
    seen = set()
    for entry in layer.files:
        if entry.path in seen:
            raise InconsistentLayerError(
                f"Duplicate path {entry.path!r} in layer {index} ({layer.digest})"
            )
        seen.add(entry.path)


def _fold(
    layers: Sequence["LayerInfo"], collect_deltas: bool
) -> tuple[_State, list[LayerDelta]]:
    state = _State()
    deltas: list[LayerDelta] = []

    for index, layer in enumerate(layers):
        _check_unique(layer, index)

        opaque = [entry for entry in layer.files if entry.is_opaque]
        whiteouts = [
            entry for entry in layer.files if entry.is_whiteout and not entry.is_opaque
        ]
        plain = [entry for entry in layer.files if not entry.is_whiteout]

        for marker in opaque:
            state.remove_subtree(marker.path)
        for whiteout in whiteouts:
            state.remove_subtree(whiteout.path)

        added, modified, unchanged = [], [], []
        for entry in plain:
            prior = state.get(entry.path)
            if prior is None:
                added.append(entry)
            elif prior[0].size != entry.size:
                modified.append(entry)
            else:
                unchanged.append(entry)
            state.clear_around(entry.path)
            state.put(entry, index)

        if collect_deltas:
            # Whiteouts inside a directory reset by this same layer are
            # implied by the opaque marker and not reported twice.
            reported = [
                whiteout
                for whiteout in whiteouts
                if not any(is_within(whiteout.path, m.path) for m in opaque)
            ]
            deltas.append(
                LayerDelta(
                    index=index,
                    digest=layer.digest,
                    added=tuple(added),
                    modified=tuple(modified),
                    unchanged=tuple(unchanged),
                    deleted=tuple(sorted(opaque + reported)),
                )
            )

        logger.debug(
            "Merged layer %d (%s): +%d ~%d -%d, %d paths resolved",
            index,
            layer.digest,
            len(added),
            len(modified),
            len(opaque) + len(whiteouts),
            len(state.entries),
        )

    return state, deltas


class MergeResult:
    """Resolved view of a layer stack, with per-layer deltas."""

    def __init__(self, layers: Sequence["LayerInfo"]) -> None:
        self._layers = tuple(layers)
        state, deltas = _fold(self._layers, collect_deltas=True)
        self._state = state
        self.deltas: tuple[LayerDelta, ...] = tuple(deltas)

    def __len__(self) -> int:
        return len(self._layers)

    def _state_at(self, upto: Optional[int]) -> _State:
        if upto is None or upto >= len(self._layers):
            return self._state
        if upto < 0:
            raise ValueError(f"Layer count must not be negative: {upto}")
        state, _ = _fold(self._layers[:upto], collect_deltas=False)
        return state

    def resolved(self, upto: Optional[int] = None) -> tuple["FileEntry", ...]:
        """Return the resolved entries after the first `upto` layers (all by default)."""
        state = self._state_at(upto)
        return tuple(entry for _, (entry, _) in sorted(state.entries.items()))

    def resolved_size(self, upto: Optional[int] = None) -> int:
        state = self._state_at(upto)
        return sum(entry.size for entry, _ in state.entries.values())

    def owner(self, path: str) -> Optional[int]:
        """Return the index of the layer whose entry wins `path`, if any."""
        winner = self._state.get(path)
        return winner[1] if winner else None

    def delta(self, index: int) -> LayerDelta:
        return self.deltas[index]


def merge_layers(layers: Sequence["LayerInfo"]) -> MergeResult:
    """Fold an oldest-first layer sequence into its resolved state."""
    return MergeResult(layers)
