# SPDX-FileCopyrightText: Copyright (c) 2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any
import logging
import math
import os

from . import backward as _backward
from .array import Array, _from_numpy, _record_op, full_like, ones_like
from .error import BackcheckError, ContractError, GradientCheckError, GradientError
from .gradient_check import (
    _resolve_graph_id,
    check_backward,
    check_double_backward_computation,
)
from .graph import (
    GraphId,
    as_graph_id,
    force_backprop_mode,
    is_backprop_required,
    no_backprop_mode,
)

logger = logging.getLogger(__name__)

__all__ = [
    "Function",
    "backward",
    "grad",
    "gradcheck",
    "gradgradcheck",
    "no_backprop_mode",
    "force_backprop_mode",
    "is_backprop_required",
]


def _as_array_sequence(value: Any, *, api: str, arg_name: str) -> tuple[Array, ...]:
    """Normalize an Array or a sequence of Arrays into a tuple."""

    if isinstance(value, Array):
        return (value,)
    if isinstance(value, (list, tuple)):
        out = tuple(value)
        for x in out:
            if not isinstance(x, Array):
                raise TypeError(
                    f"backcheck.autograd.{api}: {arg_name} must be an Array or a "
                    "sequence of Arrays"
                )
        return out
    raise TypeError(
        f"backcheck.autograd.{api}: {arg_name} must be an Array or a sequence of Arrays"
    )


# ---------------------------------------------------------------------------
# Custom functions
# ---------------------------------------------------------------------------

_env_flag = os.getenv("BACKCHECK_ENABLE_FUNCTION", "1")
try:
    _ENABLE_CUSTOM_FUNCTION: bool = bool(int(_env_flag))
except ValueError:  # pragma: no cover - malformed env value
    _ENABLE_CUSTOM_FUNCTION = True


def _assert_function_enabled() -> None:
    if not _ENABLE_CUSTOM_FUNCTION:
        raise RuntimeError(
            "backcheck.autograd.Function is disabled by BACKCHECK_ENABLE_FUNCTION=0"
        )


class _FunctionMeta(type):
    """Metaclass for custom Functions; prevents instantiation."""

    def __call__(cls, *args, **kwargs):
        raise RuntimeError(
            "backcheck.autograd.Function subclasses must not be instantiated; "
            "call Class.apply(...) instead."
        )


class _FunctionCtx:
    """Context for a single ``Function.apply`` call.

    - Created before ``forward`` and handed to every ``backward`` call of the
      recorded op (on any graph, any number of times).
    - Users may attach non-array attributes in ``forward`` and read them in
      ``backward``.
    """

    __slots__ = ("_saved", "_saved_called", "needs_input_grad", "_stage", "__dict__")

    def __init__(self, needs_input_grad: tuple[bool, ...]) -> None:
        self._saved: tuple[Array, ...] = ()
        self._saved_called = False
        self.needs_input_grad = needs_input_grad
        # "forward" or "backward"; guards misuse.
        self._stage = "forward"

    def save_for_backward(self, *arrays: Array) -> None:
        """Record arrays for use in ``backward``.

        May be called at most once, and only in ``forward``.
        """

        if self._stage != "forward":
            raise RuntimeError(
                "ctx.save_for_backward(...) may only be called in Function.forward"
            )
        if self._saved_called:
            raise RuntimeError(
                "ctx.save_for_backward() may only be called once per Function.forward"
            )
        self._saved_called = True
        for a in arrays:
            if not isinstance(a, Array):
                raise TypeError(
                    "ctx.save_for_backward(...) arguments must be backcheck arrays"
                )
        self._saved = tuple(arrays)

    @property
    def saved_tensors(self) -> tuple[Array, ...]:
        if self._stage != "backward":
            raise RuntimeError("ctx.saved_tensors is only available inside backward()")
        return self._saved


class Function(metaclass=_FunctionMeta):
    """Base class for custom differentiable operations.

    Subclasses override ``forward(ctx, *args)`` and
    ``backward(ctx, *grad_outputs)`` and are called as ``MyFn.apply(*args)``.

    ``forward`` runs with recording disabled on every graph; its outputs are
    then recorded as one op per graph on which an array argument requires
    grad. ``backward`` returns one gradient (or ``None``) per positional
    argument and runs under the engine's backprop mode, so it is
    differentiable when written with array operations.
    """

    @classmethod
    def apply(cls, *args, **kwargs):
        return _function_apply(cls, args, kwargs)

    @staticmethod
    def forward(ctx, *args, **kwargs):  # pragma: no cover - abstract
        raise NotImplementedError

    @staticmethod
    def backward(ctx, *grad_outputs):  # pragma: no cover - abstract
        raise NotImplementedError


def _function_apply(cls: type[Function], args: tuple, kwargs: dict):
    _assert_function_enabled()

    for v in kwargs.values():
        if isinstance(v, Array):
            raise TypeError(
                "backcheck.autograd.Function: array kwargs are not supported; "
                "pass arrays as positional arguments instead"
            )

    array_inputs = [a for a in args if isinstance(a, Array)]
    needs_input_grad = tuple(
        isinstance(a, Array) and any(is_backprop_required(g) for g in a.graph_ids())
        for a in args
    )
    ctx = _FunctionCtx(needs_input_grad)

    with no_backprop_mode():
        raw = cls.forward(ctx, *args, **kwargs)
    ctx._stage = "backward"

    single = isinstance(raw, Array)
    outputs = [raw] if single else list(raw)
    for j, out in enumerate(outputs):
        if not isinstance(out, Array):
            raise TypeError(
                f"backcheck.autograd.Function: {cls.__name__}.forward output {j} is "
                "not an Array"
            )
        # Outputs get fresh bodies when they are an input or already tracked.
        if out.body.nodes or any(out.is_same_body(a) for a in array_inputs):
            outputs[j] = _from_numpy(out.data)

    nargs = len(args)

    def backward_fn(gys: Sequence[Array]) -> tuple[Array | None, ...]:
        grads = cls.backward(ctx, *gys)
        if not isinstance(grads, (tuple, list)):
            grads = (grads,)
        grads = tuple(grads)
        if len(grads) != nargs:
            raise GradientError(
                f"backcheck.autograd.Function: {cls.__name__}.backward returned "
                f"{len(grads)} gradients for {nargs} arguments"
            )
        return tuple(g for a, g in zip(args, grads) if isinstance(a, Array))

    _record_op(cls.__name__, array_inputs, outputs, backward_fn)
    return outputs[0] if single else tuple(outputs)


# ---------------------------------------------------------------------------
# Engine wrappers
# ---------------------------------------------------------------------------


def _seed_outputs(
    api: str,
    outs: tuple[Array, ...],
    grad_outputs: Any,
    gid: GraphId,
) -> None:
    if grad_outputs is None:
        return
    gos = _as_array_sequence(grad_outputs, api=api, arg_name="grad_outputs")
    if len(gos) != len(outs):
        raise BackcheckError(
            f"backcheck.autograd.{api}: expected {len(outs)} grad_outputs, got {len(gos)}"
        )
    for y, gy in zip(outs, gos):
        y.set_grad(gy, gid)


def backward(
    outputs,
    grad_outputs=None,
    graph_id: GraphId | str | None = None,
    double_backprop: bool = False,
) -> None:
    """Run one backward pass from ``outputs`` on ``graph_id``.

    Gradients are accumulated into the leaf arrays of the graph.
    """

    gid = as_graph_id(graph_id)
    outs = _as_array_sequence(outputs, api="backward", arg_name="outputs")
    _seed_outputs("backward", outs, grad_outputs, gid)
    _backward.backward(outs, gid, double_backprop=double_backprop)


def grad(
    outputs,
    inputs,
    grad_outputs=None,
    graph_id: GraphId | str | None = None,
    double_backprop: bool = False,
    allow_unused: bool = False,
) -> tuple[Array | None, ...]:
    """Compute gradients of ``outputs`` w.r.t. leaf ``inputs``.

    Stateful: the inputs' gradients on ``graph_id`` are cleared, one backward
    pass runs, and the returned arrays are the inputs' new gradients.
    """

    gid = as_graph_id(graph_id)

    # Stage 1 - normalize outputs and inputs.
    outs = _as_array_sequence(outputs, api="grad", arg_name="outputs")
    ins = _as_array_sequence(inputs, api="grad", arg_name="inputs")
    for i, x in enumerate(ins):
        if not x.is_grad_required(gid):
            raise BackcheckError(
                f"backcheck.autograd.grad: input {i} does not require grad on graph '{gid}'"
            )
        if not x.is_leaf(gid):
            raise BackcheckError(
                f"backcheck.autograd.grad: input {i} is not a leaf of graph '{gid}'"
            )

    # Stage 2 - seeds, then clear input gradients.
    _seed_outputs("grad", outs, grad_outputs, gid)
    for x in ins:
        x.clear_grad(gid)

    # Stage 3 - run backward once.
    _backward.backward(outs, gid, double_backprop=double_backprop)

    # Stage 4 - collect and apply allow_unused.
    result: list[Array | None] = []
    for x in ins:
        g = x.get_grad(gid)
        if g is None and not allow_unused:
            raise BackcheckError(
                "backcheck.autograd.grad: got unused input with allow_unused=False"
            )
        result.append(g)
    return tuple(result)


# ---------------------------------------------------------------------------
# Gradient checks
# ---------------------------------------------------------------------------


def _validate_tolerances(api: str, eps: Any, atol: Any, rtol: Any) -> tuple[float, float, float]:
    message = (
        f"backcheck.autograd.{api}: eps must be > 0 and atol/rtol must be finite, "
        "non-negative floats"
    )
    try:
        eps_f = float(eps)
        atol_f = float(atol)
        rtol_f = float(rtol)
    except (TypeError, ValueError) as e:
        raise ContractError(message) from e
    if (
        not math.isfinite(eps_f)
        or not math.isfinite(atol_f)
        or not math.isfinite(rtol_f)
        or eps_f <= 0.0
        or atol_f < 0.0
        or rtol_f < 0.0
    ):
        raise ContractError(message)
    return eps_f, atol_f, rtol_f


def _wrap_positional(api: str, fn: Callable[..., Any]) -> Callable[[Sequence[Array]], list[Array]]:
    if not callable(fn):
        raise TypeError(f"{api}: fn must be callable")

    def func(xs: Sequence[Array]) -> list[Array]:
        return list(_as_array_sequence(fn(*xs), api=api, arg_name="fn outputs"))

    return func


def _default_seeds(func, arrays: tuple[Array, ...]) -> list[Array]:
    with no_backprop_mode():
        outs = func(arrays)
    return [ones_like(y) for y in outs]


def gradcheck(
    fn: Callable[..., Any],
    inputs: Array | Sequence[Array],
    *,
    grad_outputs: Array | Sequence[Array] | None = None,
    eps: float = 1e-3,
    atol: float = 1e-5,
    rtol: float = 1e-4,
    graph_id: GraphId | str | None = None,
    raise_exception: bool = True,
) -> bool:
    """First-order gradient check of ``fn(*inputs)``.

    Perturbs every element of every input by ``eps``, seeds every output with
    ones unless ``grad_outputs`` is given, and runs :func:`check_backward`.
    Returns ``True`` on success. A failed check raises
    :class:`GradientCheckError`, or returns ``False`` when
    ``raise_exception=False``; contract violations always raise.
    """

    func = _wrap_positional("gradcheck", fn)
    eps_f, atol_f, rtol_f = _validate_tolerances("gradcheck", eps, atol, rtol)
    arrays = _as_array_sequence(inputs, api="gradcheck", arg_name="inputs")
    if not arrays:
        raise ContractError("backcheck.autograd.gradcheck: inputs must not be empty")
    gid = _resolve_graph_id(arrays[0], graph_id)
    if not any(x.is_grad_required(gid) for x in arrays):
        raise ContractError(
            f"backcheck.autograd.gradcheck: no input requires grad on graph '{gid}'"
        )

    if grad_outputs is None:
        gos = _default_seeds(func, arrays)
    else:
        gos = list(_as_array_sequence(grad_outputs, api="gradcheck", arg_name="grad_outputs"))
    eps_arrays = [full_like(x, eps_f) for x in arrays]

    try:
        check_backward(func, arrays, gos, eps_arrays, atol_f, rtol_f, gid)
    except GradientCheckError:
        if raise_exception:
            raise
        logger.debug("gradcheck: check failed on graph %s", gid)
        return False
    return True


def gradgradcheck(
    fn: Callable[..., Any],
    inputs: Array | Sequence[Array],
    *,
    grad_outputs: Array | Sequence[Array] | None = None,
    grad_grad_inputs: Array | Sequence[Array] | None = None,
    eps: float = 1e-3,
    atol: float = 1e-5,
    rtol: float = 1e-4,
    graph_id: GraphId | str | None = None,
    raise_exception: bool = True,
) -> bool:
    """Second-order gradient check of ``fn(*inputs)``.

    Default ``grad_outputs`` are ones that require grad on the graph; default
    ``grad_grad_inputs`` are ones. Delegates to
    :func:`check_double_backward_computation`.
    """

    func = _wrap_positional("gradgradcheck", fn)
    eps_f, atol_f, rtol_f = _validate_tolerances("gradgradcheck", eps, atol, rtol)
    arrays = _as_array_sequence(inputs, api="gradgradcheck", arg_name="inputs")
    if not arrays:
        raise ContractError("backcheck.autograd.gradgradcheck: inputs must not be empty")
    gid = _resolve_graph_id(arrays[0], graph_id)

    if grad_outputs is None:
        gos = [gy.require_grad(gid) for gy in _default_seeds(func, arrays)]
    else:
        gos = list(
            _as_array_sequence(grad_outputs, api="gradgradcheck", arg_name="grad_outputs")
        )
    if grad_grad_inputs is None:
        ggis = [ones_like(x) for x in arrays]
    else:
        ggis = list(
            _as_array_sequence(
                grad_grad_inputs, api="gradgradcheck", arg_name="grad_grad_inputs"
            )
        )
    eps_arrays = [full_like(a, eps_f) for a in (*arrays, *gos)]

    try:
        check_double_backward_computation(
            func, arrays, gos, ggis, eps_arrays, atol_f, rtol_f, gid
        )
    except GradientCheckError:
        if raise_exception:
            raise
        logger.debug("gradgradcheck: check failed on graph %s", gid)
        return False
    return True
