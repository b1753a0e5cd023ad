# SPDX-FileCopyrightText: Copyright (c) 2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Array body leak detection.

A tracker records every array body created while its scope is active. After
the scope closes, :meth:`ArrayBodyLeakTracker.is_all_array_bodies_freed`
tells whether any of them is still reachable::

    tracker = ArrayBodyLeakTracker()
    with ArrayBodyLeakDetectionScope(tracker):
        run_something()
    assert tracker.is_all_array_bodies_freed()

The active tracker is process-wide and at most one scope may be active at a
time.
"""

from __future__ import annotations

from typing import Any, IO
import gc
import io
import logging
import weakref

from .error import BackcheckError

logger = logging.getLogger(__name__)

_active_tracker: "ArrayBodyLeakTracker | None" = None


def _record_array_body(body: Any) -> None:
    tracker = _active_tracker
    if tracker is not None:
        tracker.record(body)


def is_leak_detection_active() -> bool:
    return _active_tracker is not None


class ArrayBodyLeakTracker:
    __slots__ = ("_refs",)

    def __init__(self) -> None:
        self._refs: list[weakref.ref] = []

    def record(self, body: Any) -> None:
        self._refs.append(weakref.ref(body))

    @property
    def num_recorded(self) -> int:
        return len(self._refs)

    def get_alive_array_bodies(self) -> list[Any]:
        # Dead graphs may still form reference cycles (a leaf holding a
        # gradient whose graph saved the leaf); collect them first.
        gc.collect()
        return [body for body in (ref() for ref in self._refs) if body is not None]

    def is_all_array_bodies_freed(self, file: IO[str] | None = None) -> bool:
        """Return True if every recorded body has been released.

        Otherwise a report of the survivors is written to ``file``.
        """

        alive = self.get_alive_array_bodies()
        if not alive:
            return True

        out = file if file is not None else io.StringIO()
        print("Some array bodies are not freed.", file=out)
        print(f"Number of alive array bodies: {len(alive)}", file=out)
        for body in alive:
            graphs = ", ".join(
                f"{gid}({'leaf' if node.is_leaf else node.creator.name})"
                for gid, node in body.nodes.items()
            )
            print(
                f"- shape={body.shape} dtype={body.dtype} graphs=[{graphs}]",
                file=out,
            )
        logger.debug("leak tracker: %d array bodies alive", len(alive))
        return False


class ArrayBodyLeakDetectionScope:
    """Activate ``tracker`` for the duration of a ``with`` block."""

    __slots__ = ("_tracker",)

    def __init__(self, tracker: ArrayBodyLeakTracker) -> None:
        self._tracker = tracker

    def __enter__(self) -> ArrayBodyLeakTracker:
        global _active_tracker
        if _active_tracker is not None:
            raise BackcheckError(
                "ArrayBodyLeakDetectionScope: leak detection scopes cannot be nested"
            )
        _active_tracker = self._tracker
        return self._tracker

    def __exit__(self, exc_type, exc, tb) -> None:
        global _active_tracker
        _active_tracker = None
