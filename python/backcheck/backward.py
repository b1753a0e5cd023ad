# SPDX-FileCopyrightText: Copyright (c) 2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from collections.abc import Sequence
import contextlib
import heapq
import logging

from .array import Array, _zeros, ones_like
from .error import BackcheckError, GradientError
from .graph import ArrayNode, GraphId, OpNode, as_graph_id, no_backprop_mode

logger = logging.getLogger(__name__)


_STAT_KEYS = (
    "engine_runs",
    "engine_op_nodes_processed",
    "engine_grads_accumulated",
    "engine_leaf_grads_written",
)

_stats: dict[str, int] = dict.fromkeys(_STAT_KEYS, 0)


def stats() -> dict[str, int]:
    """Return a snapshot of the engine counters."""

    return dict(_stats)


def reset_stats() -> None:
    for key in _STAT_KEYS:
        _stats[key] = 0


def _normalize_outputs(outputs) -> tuple[Array, ...]:
    if isinstance(outputs, Array):
        return (outputs,)
    if isinstance(outputs, Sequence) and not isinstance(outputs, (str, bytes)):
        seq = tuple(outputs)
        for x in seq:
            if not isinstance(x, Array):
                raise TypeError("backward: outputs must be backcheck arrays")
        return seq
    raise TypeError("backward: outputs must be backcheck arrays")


def _check_input_grad(op: OpNode, index: int, node: ArrayNode, grad: object) -> Array:
    if not isinstance(grad, Array):
        raise GradientError(
            f"backward: '{op.name}' returned a non-array gradient for input {index}: "
            f"{type(grad)!r}"
        )
    if grad.shape != node.shape:
        raise GradientError(
            f"backward: '{op.name}' returned a gradient of shape {grad.shape} for input "
            f"{index} of shape {node.shape}"
        )
    if grad.dtype != node.dtype:
        raise GradientError(
            f"backward: '{op.name}' returned a gradient of dtype {grad.dtype} for input "
            f"{index} of dtype {node.dtype}"
        )
    return grad


def backward(
    outputs: Array | Sequence[Array],
    graph_id: GraphId | str | None = None,
    double_backprop: bool = False,
) -> None:
    """Run one reverse pass on ``graph_id`` starting from ``outputs``.

    Outputs without a gradient are seeded with ones. Gradients reaching leaf
    arrays are accumulated into their gradient on ``graph_id``; gradients of
    intermediate arrays are discarded when the pass ends.

    With ``double_backprop=False`` backward rules run with recording disabled
    on ``graph_id``, so the produced gradients are not connected to it. With
    ``True`` they run under the ambient backprop mode.
    """

    gid = as_graph_id(graph_id)
    roots = _normalize_outputs(outputs)

    for i, out in enumerate(roots):
        if not out.is_grad_required(gid):
            raise BackcheckError(
                f"backward: output {i} does not require grad on graph '{gid}'"
            )

    _stats["engine_runs"] += 1
    logger.debug(
        "backward: start graph=%s outputs=%d double_backprop=%s",
        gid, len(roots), double_backprop,
    )

    # Keyed by id(node); the tuple keeps the node alive so ids stay unique.
    grads: dict[int, tuple[ArrayNode, Array]] = {}
    root_node_ids: set[int] = set()
    heap: list[tuple[int, int, OpNode]] = []
    queued: set[int] = set()

    def push(op: OpNode | None) -> None:
        if op is None or op.debug_id in queued:
            return
        queued.add(op.debug_id)
        # Higher rank first: every consumer runs before its producers.
        heapq.heappush(heap, (-op.rank, op.debug_id, op))

    for out in roots:
        if out.get_grad(gid) is None:
            out.set_grad(ones_like(out), gid)
        node = out.body.nodes[gid]
        root_node_ids.add(id(node))
        grads[id(node)] = (node, out.get_grad(gid))
        push(node.creator)

    processed = 0
    mode = contextlib.nullcontext() if double_backprop else no_backprop_mode(gid)
    with mode:
        while heap:
            _, _, op = heapq.heappop(heap)

            gys: list[Array] = []
            has_grad = False
            for node, (shape, dtype) in zip(op.outputs(), op.output_meta):
                entry = None if node is None else grads.pop(id(node), None)
                if entry is None:
                    gys.append(_zeros(shape, dtype))
                else:
                    gys.append(entry[1])
                    has_grad = True
            if not has_grad:
                continue

            input_grads = tuple(op.backward_fn(gys))
            processed += 1
            if len(input_grads) != len(op.inputs):
                raise GradientError(
                    f"backward: '{op.name}' returned {len(input_grads)} gradients "
                    f"for {len(op.inputs)} inputs"
                )

            for i, (in_node, g) in enumerate(zip(op.inputs, input_grads)):
                if in_node is None or g is None:
                    continue
                g = _check_input_grad(op, i, in_node, g)
                key = id(in_node)
                prev = grads.get(key)
                if prev is None:
                    grads[key] = (in_node, g)
                else:
                    grads[key] = (in_node, prev[1] + g)
                    _stats["engine_grads_accumulated"] += 1
                push(in_node.creator)

        written = 0
        for key, (node, g) in grads.items():
            # Roots that are leaves keep their seed.
            if not node.is_leaf or key in root_node_ids:
                continue
            body = node.body()
            if body is None:
                continue
            existing = body.grads.get(gid)
            body.grads[gid] = g if existing is None else existing + g
            written += 1

    _stats["engine_op_nodes_processed"] += processed
    _stats["engine_leaf_grads_written"] += written
    logger.debug(
        "backward: done graph=%s op_nodes=%d leaf_grads=%d", gid, processed, written
    )
