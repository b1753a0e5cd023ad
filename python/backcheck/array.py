# SPDX-FileCopyrightText: Copyright (c) 2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any
import numbers

import numpy as _np

from ._dtype import normalize_dtype_token, to_numpy_dtype, SUPPORTED_DTYPES
from .error import BackcheckError, DimensionError, DtypeError
from .graph import ArrayNode, GraphId, OpNode, as_graph_id, is_backprop_required
from .leak_detection import _record_array_body


class ArrayBody:
    """Storage plus per-graph tracking state of an array.

    ``nodes`` maps each graph the array requires grad on to its
    :class:`ArrayNode`; ``grads`` holds the current gradient per graph.
    """

    __slots__ = ("data", "nodes", "grads", "__weakref__")

    def __init__(self, data: _np.ndarray) -> None:
        self.data = data
        self.nodes: dict[GraphId, ArrayNode] = {}
        self.grads: dict[GraphId, Array | None] = {}
        _record_array_body(self)

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(int(s) for s in self.data.shape)

    @property
    def dtype(self) -> str:
        return self.data.dtype.name

    def create_array_node(self, graph_id: GraphId, creator: OpNode | None = None) -> ArrayNode:
        if graph_id in self.nodes:
            raise BackcheckError(
                f"array already has a node on graph '{graph_id}'"
            )
        node = ArrayNode(self, graph_id, creator)
        self.nodes[graph_id] = node
        self.grads[graph_id] = None
        return node


class Array:
    """Numpy-backed array with per-graph reverse-mode tracking."""

    __slots__ = ("_body",)

    # Makes ``numpy_scalar * array`` dispatch to Array.__rmul__.
    __array_priority__ = 1000

    def __init__(self, body: ArrayBody) -> None:
        if not isinstance(body, ArrayBody):
            raise TypeError("Array: use backcheck.array() to create arrays")
        self._body = body

    # ------------------------------------------------------------------
    # Value surface
    # ------------------------------------------------------------------
    @property
    def body(self) -> ArrayBody:
        return self._body

    @property
    def data(self) -> _np.ndarray:
        return self._body.data

    @property
    def shape(self) -> tuple[int, ...]:
        return self._body.shape

    @property
    def dtype(self) -> str:
        return self._body.dtype

    @property
    def ndim(self) -> int:
        return self._body.data.ndim

    @property
    def size(self) -> int:
        return int(self._body.data.size)

    def to_numpy(self) -> _np.ndarray:
        return self._body.data.copy()

    def tolist(self):
        return self._body.data.tolist()

    def item(self) -> float:
        if self.size != 1:
            raise DimensionError(
                f"item: only size-1 arrays can be converted, got shape {self.shape}"
            )
        return float(self._body.data.reshape(-1)[0])

    def is_same_body(self, other: "Array") -> bool:
        return self._body is other._body

    # ------------------------------------------------------------------
    # Graph surface
    # ------------------------------------------------------------------
    def require_grad(self, graph_id: GraphId | str | None = None) -> "Array":
        """Mark this array as a leaf requiring grad on ``graph_id``.

        Idempotent when the array already requires grad on the graph.
        """

        gid = as_graph_id(graph_id)
        if gid not in self._body.nodes:
            self._body.create_array_node(gid)
        return self

    def is_grad_required(self, graph_id: GraphId | str | None = None) -> bool:
        return as_graph_id(graph_id) in self._body.nodes

    def is_leaf(self, graph_id: GraphId | str | None = None) -> bool:
        node = self._body.nodes.get(as_graph_id(graph_id))
        return node is None or node.creator is None

    def graph_ids(self) -> tuple[GraphId, ...]:
        return tuple(self._body.nodes.keys())

    def _require_graph(self, gid: GraphId, api: str) -> None:
        if gid not in self._body.nodes:
            raise BackcheckError(
                f"Array.{api}: array does not require grad on graph '{gid}'"
            )

    def get_grad(self, graph_id: GraphId | str | None = None) -> "Array | None":
        gid = as_graph_id(graph_id)
        self._require_graph(gid, "get_grad")
        return self._body.grads.get(gid)

    def set_grad(self, grad: "Array", graph_id: GraphId | str | None = None) -> None:
        gid = as_graph_id(graph_id)
        self._require_graph(gid, "set_grad")
        if not isinstance(grad, Array):
            raise TypeError("Array.set_grad: grad must be an Array")
        if grad.shape != self.shape:
            raise DimensionError(
                f"Array.set_grad: gradient shape {grad.shape} does not match "
                f"array shape {self.shape}"
            )
        if grad.dtype != self.dtype:
            raise DtypeError(
                f"Array.set_grad: gradient dtype {grad.dtype} does not match "
                f"array dtype {self.dtype}"
            )
        self._body.grads[gid] = grad

    def clear_grad(self, graph_id: GraphId | str | None = None) -> None:
        gid = as_graph_id(graph_id)
        self._require_graph(gid, "clear_grad")
        self._body.grads[gid] = None

    def as_grad_stopped(self, *, copy: bool = False) -> "Array":
        """Return an array over the same values with no graph linkage."""

        data = self._body.data.copy() if copy else self._body.data
        return Array(ArrayBody(data))

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------
    def __add__(self, other):
        return add(self, other)

    def __radd__(self, other):
        return add(other, self)

    def __sub__(self, other):
        return subtract(self, other)

    def __rsub__(self, other):
        return subtract(other, self)

    def __mul__(self, other):
        return multiply(self, other)

    def __rmul__(self, other):
        return multiply(other, self)

    def __truediv__(self, other):
        return divide(self, other)

    def __rtruediv__(self, other):
        return divide(other, self)

    def __neg__(self):
        return negative(self)

    def exp(self) -> "Array":
        return exp(self)

    def log(self) -> "Array":
        return log(self)

    def __repr__(self) -> str:
        values = _np.array2string(self._body.data, separator=", ")
        return f"array({values}, shape={self.shape}, dtype={self.dtype})"

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _from_numpy(data: _np.ndarray) -> Array:
    return Array(ArrayBody(data))


def array(data: Any, dtype: Any | None = None) -> Array:
    """Create a new array holding a copy of ``data``.

    Without ``dtype``, float NumPy inputs keep their dtype and everything
    else becomes ``float32``.
    """

    if isinstance(data, Array):
        data = data.data
    if dtype is None and isinstance(data, _np.ndarray) and data.dtype.name in SUPPORTED_DTYPES:
        np_dtype = data.dtype
    else:
        np_dtype = to_numpy_dtype(normalize_dtype_token(dtype))
    return _from_numpy(_np.array(data, dtype=np_dtype, copy=True))


def zeros_like(a: Array) -> Array:
    return _from_numpy(_np.zeros_like(a.data))


def ones_like(a: Array) -> Array:
    return _from_numpy(_np.ones_like(a.data))


def full_like(a: Array, value: float) -> Array:
    return _from_numpy(_np.full_like(a.data, value))


def _zeros(shape: tuple[int, ...], dtype: str) -> Array:
    return _from_numpy(_np.zeros(shape, dtype=dtype))


def all_close(a: Array, b: Array, rtol: float = 1e-5, atol: float = 1e-8) -> bool:
    """Element-wise ``|a - b| <= atol + rtol * |b|`` over all elements."""

    if a.shape != b.shape:
        raise DimensionError(
            f"all_close: shape mismatch {a.shape} vs {b.shape}"
        )
    if a.dtype != b.dtype:
        raise DtypeError(f"all_close: dtype mismatch {a.dtype} vs {b.dtype}")
    return bool(_np.allclose(a.data, b.data, rtol=rtol, atol=atol))


# ---------------------------------------------------------------------------
# Op recording
# ---------------------------------------------------------------------------


def _record_op(
    name: str,
    inputs: Sequence[Array],
    outputs: Sequence[Array],
    backward_fn: Callable[[Sequence[Array]], Sequence[Array | None]],
) -> None:
    """Attach one op node per graph on which any input requires grad.

    ``backward_fn`` receives one gradient per output (never ``None``) and
    returns one gradient (or ``None``) per input. It is shared by every graph
    the op is recorded on.
    """

    graph_ids: dict[GraphId, None] = {}
    for x in inputs:
        for gid in x.body.nodes:
            graph_ids.setdefault(gid, None)

    for gid in graph_ids:
        if not is_backprop_required(gid):
            continue
        in_nodes = [x.body.nodes.get(gid) for x in inputs]
        op = OpNode(name, gid, in_nodes, backward_fn)
        out_nodes = [out.body.create_array_node(gid, creator=op) for out in outputs]
        op.set_outputs(out_nodes)


def _as_operand(value: Any, like: Array) -> Array:
    if isinstance(value, Array):
        return value
    if isinstance(value, numbers.Real) or (isinstance(value, _np.generic) and value.ndim == 0):
        return full_like(like, float(value))
    raise TypeError(f"unsupported operand type {type(value)!r}")


def _binary_operands(a: Any, b: Any, op_name: str) -> tuple[Array, Array]:
    if isinstance(a, Array):
        b = _as_operand(b, a)
    elif isinstance(b, Array):
        a = _as_operand(a, b)
    else:
        raise TypeError(f"{op_name}: at least one operand must be an Array")
    if a.shape != b.shape:
        raise DimensionError(
            f"{op_name}: operand shapes {a.shape} and {b.shape} differ"
        )
    if a.dtype != b.dtype:
        raise DtypeError(
            f"{op_name}: operand dtypes {a.dtype} and {b.dtype} differ"
        )
    return a, b


def _identity(x: Array) -> Array:
    # New body over the same values; keeps gradients from aliasing each other.
    out = _from_numpy(x.data)
    _record_op("identity", (x,), (out,), lambda gys: (_identity(gys[0]),))
    return out


def add(a: Any, b: Any) -> Array:
    a, b = _binary_operands(a, b, "add")
    out = _from_numpy(a.data + b.data)
    _record_op("add", (a, b), (out,), lambda gys: (_identity(gys[0]), _identity(gys[0])))
    return out


def subtract(a: Any, b: Any) -> Array:
    a, b = _binary_operands(a, b, "subtract")
    out = _from_numpy(a.data - b.data)
    _record_op("subtract", (a, b), (out,), lambda gys: (_identity(gys[0]), negative(gys[0])))
    return out


def multiply(a: Any, b: Any) -> Array:
    a, b = _binary_operands(a, b, "multiply")
    out = _from_numpy(a.data * b.data)

    def backward(gys):
        (gy,) = gys
        return (gy * b, gy * a)

    _record_op("multiply", (a, b), (out,), backward)
    return out


def divide(a: Any, b: Any) -> Array:
    a, b = _binary_operands(a, b, "divide")
    out = _from_numpy(a.data / b.data)

    def backward(gys):
        (gy,) = gys
        return (gy / b, -(gy * a) / (b * b))

    _record_op("divide", (a, b), (out,), backward)
    return out


def negative(x: Array) -> Array:
    out = _from_numpy(-x.data)
    _record_op("negative", (x,), (out,), lambda gys: (negative(gys[0]),))
    return out


def exp(x: Array) -> Array:
    out = _from_numpy(_np.exp(x.data))
    # Recompute instead of saving ``out``: saving the output would make the
    # op node reachable from its own output body.
    _record_op("exp", (x,), (out,), lambda gys: (gys[0] * exp(x),))
    return out


def log(x: Array) -> Array:
    out = _from_numpy(_np.log(x.data))
    _record_op("log", (x,), (out,), lambda gys: (gys[0] / x,))
    return out
