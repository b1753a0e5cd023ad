# SPDX-FileCopyrightText: Copyright (c) 2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from typing import Any, IO
import sys as _sys
import contextlib
import itertools
import threading
import weakref

from .error import BackcheckError


class GraphId:
    """Opaque token naming one family of gradient-tracking relationships.

    Two ids are equal iff their names are equal. An array may require grad on
    any number of graphs at once; gradient state never crosses graphs.
    """

    __slots__ = ("_name",)

    def __init__(self, name: str) -> None:
        if not isinstance(name, str) or not name:
            raise TypeError("GraphId: name must be a non-empty string")
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GraphId):
            return NotImplemented
        return self._name == other._name

    def __hash__(self) -> int:
        return hash(("GraphId", self._name))

    def __str__(self) -> str:
        return self._name

    def __repr__(self) -> str:
        return f"GraphId({self._name!r})"


DEFAULT_GRAPH_ID = GraphId("default")


def as_graph_id(value: GraphId | str | None) -> GraphId:
    """Normalize ``None`` / ``str`` / :class:`GraphId` into a :class:`GraphId`."""

    if value is None:
        return DEFAULT_GRAPH_ID
    if isinstance(value, GraphId):
        return value
    if isinstance(value, str):
        return GraphId(value)
    raise TypeError(
        f"graph_id must be a GraphId, a string or None, got {type(value)!r}"
    )


_debug_ids = itertools.count(1)


class ArrayNode:
    """Per (array body, graph) record linking an array to its creator.

    The node only holds a weak reference to the body; the body owns its
    nodes. ``creator`` is ``None`` for leaves.
    """

    __slots__ = ("graph_id", "shape", "dtype", "creator", "_body_ref", "__weakref__")

    def __init__(self, body: Any, graph_id: GraphId, creator: "OpNode | None" = None) -> None:
        self.graph_id = graph_id
        self.shape = body.shape
        self.dtype = body.dtype
        self.creator = creator
        self._body_ref = weakref.ref(body)

    def body(self) -> Any | None:
        return self._body_ref()

    @property
    def is_leaf(self) -> bool:
        return self.creator is None

    @property
    def rank(self) -> int:
        return 0 if self.creator is None else self.creator.rank

    def __repr__(self) -> str:  # pragma: no cover - repr stability only
        return (
            f"ArrayNode(graph={self.graph_id}, shape={self.shape}, "
            f"dtype={self.dtype}, leaf={self.is_leaf})"
        )


BackwardFn = Callable[[Sequence[Any]], Sequence[Any]]


class OpNode:
    """One recorded operation on one graph.

    Inputs are held strongly (they must outlive the op for backward), outputs
    weakly so that an op never keeps the arrays it produced alive.
    """

    __slots__ = (
        "name",
        "graph_id",
        "rank",
        "inputs",
        "backward_fn",
        "debug_id",
        "output_meta",
        "_output_refs",
    )

    def __init__(
        self,
        name: str,
        graph_id: GraphId,
        inputs: Sequence[ArrayNode | None],
        backward_fn: BackwardFn,
    ) -> None:
        self.name = name
        self.graph_id = graph_id
        self.inputs = tuple(inputs)
        self.backward_fn = backward_fn
        self.rank = 1 + max((n.rank for n in self.inputs if n is not None), default=0)
        self.debug_id = next(_debug_ids)
        self.output_meta: tuple[tuple[tuple[int, ...], str], ...] = ()
        self._output_refs: tuple[weakref.ref, ...] = ()

    def set_outputs(self, outputs: Sequence[ArrayNode]) -> None:
        self.output_meta = tuple((n.shape, n.dtype) for n in outputs)
        self._output_refs = tuple(weakref.ref(n) for n in outputs)

    def outputs(self) -> tuple[ArrayNode | None, ...]:
        return tuple(ref() for ref in self._output_refs)

    @property
    def num_outputs(self) -> int:
        return len(self._output_refs)

    @property
    def next_functions(self) -> tuple[tuple["OpNode | None", int], ...]:
        """Outgoing edges as ``(creator_or_None, input_nr)`` tuples."""

        out: list[tuple[OpNode | None, int]] = []
        for input_nr, node in enumerate(self.inputs):
            creator = None if node is None else node.creator
            out.append((creator, input_nr))
        return tuple(out)

    def metadata(self) -> dict[str, object]:
        return {
            "debug_id": self.debug_id,
            "rank": self.rank,
            "num_inputs": len(self.inputs),
            "num_outputs": self.num_outputs,
        }

    def __repr__(self) -> str:  # pragma: no cover - repr stability only
        return f"OpNode(name={self.name!r}, graph={self.graph_id}, debug_id={self.debug_id})"

    def __hash__(self) -> int:
        return hash(self.debug_id)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, OpNode):
            return NotImplemented
        return self.debug_id == other.debug_id


# ---------------------------------------------------------------------------
# Backprop mode
# ---------------------------------------------------------------------------

_state = threading.local()


def _mode_stack() -> list[tuple[frozenset[GraphId] | None, bool]]:
    stack = getattr(_state, "mode_stack", None)
    if stack is None:
        stack = []
        _state.mode_stack = stack
    return stack


def is_backprop_required(graph_id: GraphId | str | None = None) -> bool:
    """Return True if ops currently record graph nodes on ``graph_id``.

    The innermost mode scope that covers the graph decides; without any
    scope, recording is enabled.
    """

    gid = as_graph_id(graph_id)
    for graphs, enabled in reversed(_mode_stack()):
        if graphs is None or gid in graphs:
            return enabled
    return True


@contextlib.contextmanager
def _backprop_mode(graph_ids: tuple, enabled: bool):
    graphs = frozenset(as_graph_id(g) for g in graph_ids) if graph_ids else None
    stack = _mode_stack()
    stack.append((graphs, enabled))
    depth = len(stack)
    try:
        yield
    finally:
        # Restore exactly the depth we pushed, even if the body unbalanced it.
        del stack[depth - 1:]


def no_backprop_mode(*graph_ids: GraphId | str):
    """Disable graph recording for ``graph_ids`` (all graphs when empty)."""

    return _backprop_mode(graph_ids, False)


def force_backprop_mode(*graph_ids: GraphId | str):
    """Enable graph recording for ``graph_ids`` (all graphs when empty).

    Overrides any enclosing :func:`no_backprop_mode` for the named graphs.
    """

    return _backprop_mode(graph_ids, True)


# ---------------------------------------------------------------------------
# Inspection
# ---------------------------------------------------------------------------


def _root_node(root: Any, graph_id: GraphId | str | None) -> OpNode | None:
    """Normalize ``root`` argument for traversal helpers."""

    if isinstance(root, OpNode):
        return root
    if isinstance(root, ArrayNode):
        return root.creator
    body = getattr(root, "body", None)
    nodes = getattr(body, "nodes", None)
    if isinstance(nodes, dict):
        gid = as_graph_id(graph_id)
        node = nodes.get(gid)
        if node is None:
            raise BackcheckError(
                f"graph.iter_nodes: array does not require grad on graph '{gid}'"
            )
        return node.creator
    raise TypeError(
        "graph.iter_nodes: root must be an OpNode, an ArrayNode or an Array"
    )


def iter_nodes(
    root: Any,
    *,
    graph_id: GraphId | str | None = None,
    max_depth: int | None = None,
) -> Iterator[OpNode]:
    """Depth-first traversal over the op nodes reachable from ``root``.

    - Deduplicates nodes by ``debug_id``.
    - A leaf root yields nothing.
    """

    start = _root_node(root, graph_id)
    if start is None:
        return
    seen: set[int] = set()
    stack: list[tuple[OpNode, int]] = [(start, 0)]

    while stack:
        node, depth = stack.pop()
        if node.debug_id in seen:
            continue
        seen.add(node.debug_id)
        yield node

        if max_depth is not None and depth >= max_depth:
            continue

        for child, _input_nr in reversed(node.next_functions):
            if child is not None:
                stack.append((child, depth + 1))


def dump_graph(
    root: Any,
    *,
    graph_id: GraphId | str | None = None,
    max_depth: int | None = 5,
    file: IO[str] | None = None,
) -> None:
    """Pretty-print a summary of the graph reachable from ``root``.

    The textual format is not part of the stable API.
    """

    out = file if file is not None else _sys.stdout
    for node in iter_nodes(root, graph_id=graph_id, max_depth=max_depth):
        meta = node.metadata()
        print(
            f"{node.name}(graph={node.graph_id}, debug_id={meta['debug_id']}, "
            f"rank={meta['rank']}, num_inputs={meta['num_inputs']})",
            file=out,
        )
