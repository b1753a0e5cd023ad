# SPDX-FileCopyrightText: Copyright (c) 2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Backward checks: analytical gradients against numerical ones.

Entry points:

- :func:`check_backward` checks first-order gradients and the
  double-backprop option of the engine.
- :func:`check_double_backward_computation` checks second-order gradients.

Both run inside array body leak detection scopes and raise on failure;
on success they return ``None``.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
import contextlib
import io
import logging
import os

from . import backward as _backward
from .array import Array, all_close
from .error import ContractError, GradientCheckError
from .graph import DEFAULT_GRAPH_ID, GraphId, as_graph_id, force_backprop_mode, no_backprop_mode
from .leak_detection import ArrayBodyLeakDetectionScope, ArrayBodyLeakTracker
from .numerical_gradient import calculate_numerical_gradient

logger = logging.getLogger(__name__)

ArrayFunc = Callable[[Sequence[Array]], Sequence[Array]]


_env_flag = os.getenv("BACKCHECK_LEAK_DETECTION", "1")
try:
    _ENABLE_LEAK_DETECTION: bool = bool(int(_env_flag))
except ValueError:  # pragma: no cover - malformed env value
    _ENABLE_LEAK_DETECTION = True


def _resolve_graph_id(first_input: Array, graph_id: GraphId | str | None) -> GraphId:
    if graph_id is not None:
        return as_graph_id(graph_id)
    graph_ids = first_input.graph_ids()
    return graph_ids[0] if graph_ids else DEFAULT_GRAPH_ID


def _as_array_list(value, *, api: str, arg_name: str) -> list[Array]:
    if isinstance(value, Array):
        return [value]
    seq = list(value)
    for x in seq:
        if not isinstance(x, Array):
            raise TypeError(f"{api}: {arg_name} must be backcheck arrays")
    return seq


def _call(func: ArrayFunc, inputs: list[Array]) -> list[Array]:
    return _as_array_list(func(inputs), api="backward_gradients", arg_name="function outputs")


def _disconnect_input_arrays(inputs: Sequence[Array]) -> list[Array]:
    """Grad-stopped views of ``inputs`` requiring grad on the same graphs.

    Graph nodes created while checking attach to these views, never to the
    caller's arrays, so they cannot show up as leaks of unrelated code.
    """

    inputs_view: list[Array] = []
    for x in inputs:
        a = x.as_grad_stopped()
        for gid in x.graph_ids():
            a.require_grad(gid)
        inputs_view.append(a)
    return inputs_view


def _backward_gradients(
    func: ArrayFunc,
    inputs: list[Array],
    grad_outputs: Sequence[Array] | None,
    graph_id: GraphId,
    double_backprop: bool = True,
) -> list[Array | None]:
    """Run ``func`` once and one backward pass; return the input gradients.

    Inputs that do not require grad on ``graph_id`` get ``None``.
    """

    for x in inputs:
        if not x.is_leaf(graph_id):
            raise ContractError(
                "backward_gradients: All inputs must be leaf nodes of computational graph"
            )

    outputs = _call(func, inputs)

    for i, x in enumerate(inputs):
        for j, y in enumerate(outputs):
            if x.is_same_body(y) and x.is_grad_required(graph_id):
                raise ContractError(
                    f"backward_gradients: Input {i} and output {j} of the forward "
                    "function are identical."
                )

    if grad_outputs is not None:
        grad_outputs = list(grad_outputs)
        nout = len(outputs)
        if nout != len(grad_outputs):
            raise ContractError(
                f"backward_gradients: Size of function outputs: {nout} and size of "
                f"grad outputs: {len(grad_outputs)} must be same"
            )
        for y, gy in zip(outputs, grad_outputs):
            if y.is_grad_required(graph_id):
                y.set_grad(gy, graph_id)

    # func may have run backward itself; drop what it left behind.
    for x in inputs:
        if x.is_grad_required(graph_id):
            x.clear_grad(graph_id)

    outputs_requiring_grad = [y for y in outputs if y.is_grad_required(graph_id)]
    _backward.backward(outputs_requiring_grad, graph_id, double_backprop=double_backprop)

    return [x.get_grad(graph_id) if x.is_grad_required(graph_id) else None for x in inputs]


def _check_double_backprop_option(
    func: ArrayFunc,
    inputs: Sequence[Array],
    graph_id: GraphId,
) -> None:
    failures: list[str] = []

    # Squaring makes every output nonlinear, so the check also applies to
    # functions that are not double differentiable themselves.
    def nonlinear_func(func_inputs: list[Array]) -> list[Array]:
        return [y * y for y in _call(func, func_inputs)]

    inputs_disconnected = _disconnect_input_arrays(inputs)
    grads = _backward_gradients(
        nonlinear_func, inputs_disconnected, None, graph_id, double_backprop=False
    )
    for i, g in enumerate(grads):
        if g is not None and g.is_grad_required(graph_id):
            failures.append(
                f"Gradient {i} / {len(grads)} is connected to the graph '{graph_id}' "
                "even when double-backprop is disabled."
            )

    inputs_disconnected = _disconnect_input_arrays(inputs)
    grads = _backward_gradients(
        nonlinear_func, inputs_disconnected, None, graph_id, double_backprop=True
    )
    for i, g in enumerate(grads):
        if g is not None and not g.is_grad_required(graph_id):
            failures.append(
                f"Gradient {i} / {len(grads)} is not connected to the graph '{graph_id}' "
                "even when double-backprop is enabled."
            )

    if failures:
        raise GradientCheckError("\n".join(failures))


def _format_numerical_error(
    title: str,
    num_inputs: int,
    failed_input_indices: Sequence[int],
    backward_grads: Sequence[Array | None],
    numerical_grads: Sequence[Array],
    eps: Sequence[Array],
    graph_id: GraphId,
    atol: float,
    rtol: float,
) -> str:
    out = io.StringIO()
    print(
        f"Numerical error in {title} on inputs (out of {num_inputs}): "
        + ", ".join(str(i) for i in failed_input_indices),
        file=out,
    )
    print(f"Graph: {graph_id}", file=out)
    print(f"Atol: {atol}  Rtol: {rtol}", file=out)
    with no_backprop_mode():
        for i in failed_input_indices:
            backward_grad = backward_grads[i]
            # Signed difference, not its magnitude.
            print(f"Error[{i}]:", file=out)
            print(backward_grad - numerical_grads[i], file=out)
            print(f"Backward gradients[{i}]:", file=out)
            print(backward_grad, file=out)
            print(f"Numerical gradients[{i}]:", file=out)
            print(numerical_grads[i], file=out)
            print(f"Eps[{i}] (perturbation in numerical gradients):", file=out)
            print(eps[i], file=out)
    return out.getvalue()


def check_backward_computation(
    func: ArrayFunc,
    inputs: Sequence[Array],
    grad_outputs: Sequence[Array],
    eps: Sequence[Array],
    atol: float = 1e-5,
    rtol: float = 1e-4,
    graph_id: GraphId | str | None = None,
) -> None:
    """Compare first-order backward gradients of ``func`` with numerical ones.

    Inputs that do not require grad on the graph are skipped. All mismatching
    inputs are reported together in one :class:`GradientCheckError`.
    """

    api = "check_backward_computation"
    inputs = _as_array_list(inputs, api=api, arg_name="inputs")
    grad_outputs = _as_array_list(grad_outputs, api=api, arg_name="grad_outputs")
    eps = _as_array_list(eps, api=api, arg_name="eps")
    if not inputs:
        raise ContractError(f"{api}: inputs must not be empty")
    actual_graph_id = _resolve_graph_id(inputs[0], graph_id)
    logger.debug("check_backward_computation: graph=%s inputs=%d", actual_graph_id, len(inputs))

    inputs_disconnected = _disconnect_input_arrays(inputs)
    backward_grads = _backward_gradients(
        func, inputs_disconnected, grad_outputs, actual_graph_id, double_backprop=False
    )
    if len(backward_grads) != len(inputs):
        raise GradientCheckError("Number of input gradients does not match the input arrays.")
    for i, (backward_grad, x) in enumerate(zip(backward_grads, inputs)):
        if backward_grad is None:
            continue
        if backward_grad.shape != x.shape:
            raise GradientCheckError(
                f"Shape of input gradient {i} of {len(inputs)} {backward_grad.shape} does "
                f"not match the corresponding input shape {x.shape}."
            )
        if backward_grad.dtype != x.dtype:
            raise GradientCheckError(
                f"Dtype of input gradient {i} of {len(inputs)} {backward_grad.dtype} does "
                f"not match the corresponding input dtype {x.dtype}."
            )

    numerical_grads = calculate_numerical_gradient(func, inputs, grad_outputs, eps)

    # Tripping these means the numerical gradient itself is broken.
    assert len(numerical_grads) == len(inputs)
    for numerical_grad, x in zip(numerical_grads, inputs):
        assert numerical_grad.shape == x.shape
        assert numerical_grad.dtype == x.dtype

    failed_input_indices = [
        i
        for i, backward_grad in enumerate(backward_grads)
        if backward_grad is not None
        and not all_close(backward_grad, numerical_grads[i], rtol=rtol, atol=atol)
    ]
    if failed_input_indices:
        raise GradientCheckError(
            _format_numerical_error(
                "backward",
                len(inputs),
                failed_input_indices,
                backward_grads,
                numerical_grads,
                eps,
                actual_graph_id,
                atol,
                rtol,
            )
        )


def _check_all_array_bodies_freed(tracker: ArrayBodyLeakTracker) -> None:
    report = io.StringIO()
    if not tracker.is_all_array_bodies_freed(report):
        raise GradientCheckError(report.getvalue())


@contextlib.contextmanager
def _leak_detection_guard(phase: str):
    if not _ENABLE_LEAK_DETECTION:
        yield
        return
    tracker = ArrayBodyLeakTracker()
    with ArrayBodyLeakDetectionScope(tracker):
        yield
    logger.debug("%s: %d array bodies recorded", phase, tracker.num_recorded)
    _check_all_array_bodies_freed(tracker)


def check_backward(
    func: ArrayFunc,
    inputs: Sequence[Array],
    grad_outputs: Sequence[Array],
    eps: Sequence[Array],
    atol: float = 1e-5,
    rtol: float = 1e-4,
    graph_id: GraphId | str | None = None,
) -> None:
    """Check the backward computation of ``func``.

    Runs two checks, each in its own leak detection scope:

    1. The double-backprop option: gradients computed with double-backprop
       disabled must not be connected to the graph, and gradients computed
       with it enabled must be.
    2. First-order gradients against numerical gradients
       (:func:`check_backward_computation`).

    Raises :class:`GradientCheckError` when a check fails or any array body
    created during a check is still alive afterwards.

    ``inputs`` are checked through grad-stopped copies, so a non-leaf input
    is checked as a fresh leaf of the same graphs rather than rejected.
    """

    inputs = _as_array_list(inputs, api="check_backward", arg_name="inputs")
    if not inputs:
        raise ContractError("check_backward: inputs must not be empty")
    actual_graph_id = _resolve_graph_id(inputs[0], graph_id)

    with _leak_detection_guard("double-backprop option check"):
        _check_double_backprop_option(func, inputs, actual_graph_id)

    with _leak_detection_guard("backward computation check"):
        check_backward_computation(func, inputs, grad_outputs, eps, atol, rtol, actual_graph_id)


def _check_double_backward_computation_impl(
    func: ArrayFunc,
    inputs: list[Array],
    grad_outputs: list[Array],
    grad_grad_inputs: list[Array],
    eps: list[Array],
    atol: float,
    rtol: float,
    graph_id: GraphId | str | None,
) -> None:
    actual_graph_id = _resolve_graph_id(inputs[0], graph_id)
    nin = len(inputs)
    nout = len(grad_outputs)

    if len(grad_grad_inputs) != nin:
        raise ContractError("Number of input arrays and grad_grad_input arrays do not match.")

    # Unlike the first-order check, every input must require grad.
    for i, x in enumerate(inputs):
        if not x.is_grad_required(actual_graph_id):
            raise ContractError(
                f"Input array {i} / {nin} is not differentiable w.r.t. the graph "
                f"'{actual_graph_id}'."
            )
    for i, gy in enumerate(grad_outputs):
        if not gy.is_grad_required(actual_graph_id):
            raise ContractError(
                f"Output gradient array {i} / {nout} is not differentiable w.r.t. the "
                f"graph '{actual_graph_id}'."
            )

    def first_order_grad_func(inputs_and_grad_outputs: list[Array]) -> list[Array]:
        xs = list(inputs_and_grad_outputs[:nin])
        gys = list(inputs_and_grad_outputs[nin:])

        with force_backprop_mode(actual_graph_id):
            for x in xs:
                x.require_grad(actual_graph_id)
            optional_backward_grads = _backward_gradients(func, xs, gys, actual_graph_id)

        if len(optional_backward_grads) != nin:
            raise GradientCheckError(
                f"Number of first-order input gradients arrays {len(optional_backward_grads)} "
                f"do not match the number of input arrays {nin}."
            )
        for i, g in enumerate(optional_backward_grads):
            if g is None:
                raise GradientCheckError(
                    f"First-order input gradient {i} / {nin} does not exist. "
                    "Maybe you need additional nonlinearity in the target function."
                )
        for i, g in enumerate(optional_backward_grads):
            if not g.is_grad_required(actual_graph_id):
                raise GradientCheckError(
                    f"First-order input gradient {i} / {nin} is not differentiable w.r.t. "
                    f"the graph '{actual_graph_id}'. "
                    "Maybe you need additional nonlinearity in the target function."
                )
        return list(optional_backward_grads)

    inputs_and_grad_outputs = inputs + grad_outputs

    numerical_grads = calculate_numerical_gradient(
        first_order_grad_func, inputs_and_grad_outputs, grad_grad_inputs, eps
    )
    assert len(numerical_grads) == nin + nout

    backward_grads = _backward_gradients(
        first_order_grad_func, inputs_and_grad_outputs, grad_grad_inputs, actual_graph_id
    )
    assert len(backward_grads) == nin + nout

    missing = [
        f"Second order gradient w.r.t. the input gradient {i} (Total inputs: {nin}, "
        f"outputs: {nout}) is missing on the graph '{actual_graph_id}'. "
        "Maybe you need additional nonlinearity in the target function."
        for i, g in enumerate(backward_grads)
        if g is None
    ]
    if missing:
        raise GradientCheckError("\n".join(missing))

    failed_input_indices = [
        i
        for i, backward_grad in enumerate(backward_grads)
        if not all_close(backward_grad, numerical_grads[i], rtol=rtol, atol=atol)
    ]
    if failed_input_indices:
        raise GradientCheckError(
            _format_numerical_error(
                "double backward",
                nin,
                failed_input_indices,
                backward_grads,
                numerical_grads,
                eps,
                actual_graph_id,
                atol,
                rtol,
            )
        )


def check_double_backward_computation(
    func: ArrayFunc,
    inputs: Sequence[Array],
    grad_outputs: Sequence[Array],
    grad_grad_inputs: Sequence[Array],
    eps: Sequence[Array],
    atol: float = 1e-5,
    rtol: float = 1e-4,
    graph_id: GraphId | str | None = None,
) -> None:
    """Compare second-order backward gradients of ``func`` with numerical ones.

    The first-order gradients of ``func`` w.r.t. ``inputs`` (seeded with
    ``grad_outputs``) are treated as a function of ``inputs + grad_outputs``
    and checked like :func:`check_backward_computation`, seeded with
    ``grad_grad_inputs``. ``eps`` has one array per entry of
    ``inputs + grad_outputs``.

    Every input and every output gradient must require grad on the graph.
    Like :func:`check_backward`, both are checked through grad-stopped
    copies, so non-leaf arrays are accepted.
    """

    api = "check_double_backward"
    inputs = _as_array_list(inputs, api=api, arg_name="inputs")
    grad_outputs = _as_array_list(grad_outputs, api=api, arg_name="grad_outputs")
    grad_grad_inputs = _as_array_list(grad_grad_inputs, api=api, arg_name="grad_grad_inputs")
    eps = _as_array_list(eps, api=api, arg_name="eps")
    if not inputs:
        raise ContractError(f"{api}: inputs must not be empty")

    with _leak_detection_guard("double backward computation check"):
        _check_double_backward_computation_impl(
            func,
            _disconnect_input_arrays(inputs),
            _disconnect_input_arrays(grad_outputs),
            grad_grad_inputs,
            eps,
            atol,
            rtol,
            graph_id,
        )
