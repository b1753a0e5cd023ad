# SPDX-FileCopyrightText: Copyright (c) 2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import re

import pytest

import backcheck as bc
from backcheck import backward as E
from backcheck import gradient_check as GC
from backcheck.autograd import Function
from backcheck.error import ContractError, GradientCheckError


def _f64(values):
    return bc.array(values, dtype="float64")


def _leaf(values, graph_id=None):
    return _f64(values).require_grad(graph_id)


def _eps_like(*arrays):
    return [bc.full_like(a, 1e-3) for a in arrays]


def _square(xs):
    return [xs[0] * xs[0]]


def _identity(xs):
    return [xs[0]]


def _square_after_nested_pass(xs):
    # Leaves 3 * x ** 2 in the gradient of xs[0] before the real pass.
    bc.autograd.backward(xs[0] * xs[0] * xs[0])
    return [xs[0] * xs[0]]


class _WrongSquare(Function):
    """x * x whose backward is off by one."""

    @staticmethod
    def forward(ctx, x):
        ctx.save_for_backward(x)
        return x * x

    @staticmethod
    def backward(ctx, gy):
        (x,) = ctx.saved_tensors
        return gy * x * 2.0 - 1.0


class _DetachedSquare(Function):
    """x * x whose gradient is built outside of any graph."""

    @staticmethod
    def forward(ctx, x):
        ctx.save_for_backward(x)
        return x * x

    @staticmethod
    def backward(ctx, gy):
        (x,) = ctx.saved_tensors
        return bc.array(gy.data * x.data * 2.0, dtype=x.dtype)


class _AlwaysConnectedSquare(Function):
    """x * x whose backward records even when the engine disables it."""

    @staticmethod
    def forward(ctx, x):
        ctx.save_for_backward(x)
        return x * x

    @staticmethod
    def backward(ctx, gy):
        (x,) = ctx.saved_tensors
        with bc.force_backprop_mode():
            return gy * x * 2.0


class _DetachedMul(Function):
    @staticmethod
    def forward(ctx, a, b):
        ctx.save_for_backward(a, b)
        return a * b

    @staticmethod
    def backward(ctx, gy):
        a, b = ctx.saved_tensors
        return (
            bc.array(gy.data * b.data, dtype=a.dtype),
            bc.array(gy.data * a.data, dtype=b.dtype),
        )


def _error_value(message, index):
    m = re.search(rf"Error\[{index}\]:\narray\(([-+0-9.e]+)", message)
    assert m is not None, message
    return float(m.group(1))


# ---------------------------------------------------------------------------
# Gradient driver
# ---------------------------------------------------------------------------


def test_backward_gradients_runs_one_pass_and_skips_constants():
    x = _leaf(3.0)
    c = _f64(2.0)
    grads = GC._backward_gradients(
        lambda xs: [xs[0] * xs[1]], [x, c], None, bc.DEFAULT_GRAPH_ID
    )
    assert grads[0].item() == 2.0
    assert grads[1] is None
    assert E.stats()["engine_runs"] == 1


def test_backward_gradients_clears_stale_input_grads():
    x = _leaf(3.0)
    x.set_grad(_f64(100.0))
    (gx,) = GC._backward_gradients(_square, [x], [_f64(1.0)], bc.DEFAULT_GRAPH_ID)
    assert gx.item() == 6.0


def test_backward_gradients_connection_follows_double_backprop():
    x = _leaf(3.0, "g")
    gid = bc.GraphId("g")
    (gx,) = GC._backward_gradients(_square, [x], None, gid, double_backprop=False)
    assert not gx.is_grad_required(gid)

    y = _leaf(3.0, "g")
    (gy,) = GC._backward_gradients(_square, [y], None, gid)
    assert gy.is_grad_required(gid)


def test_backward_gradients_contract_errors():
    gid = bc.DEFAULT_GRAPH_ID
    x = _leaf(3.0)

    with pytest.raises(ContractError) as excinfo:
        GC._backward_gradients(_square, [x * x], None, gid)
    assert str(excinfo.value) == (
        "backward_gradients: All inputs must be leaf nodes of computational graph"
    )

    with pytest.raises(ContractError) as excinfo:
        GC._backward_gradients(_identity, [x], None, gid)
    assert str(excinfo.value) == (
        "backward_gradients: Input 0 and output 0 of the forward function are identical."
    )

    with pytest.raises(ContractError) as excinfo:
        GC._backward_gradients(_square, [x], [_f64(1.0), _f64(1.0)], gid)
    assert str(excinfo.value) == (
        "backward_gradients: Size of function outputs: 1 and size of grad outputs: 2 "
        "must be same"
    )


def test_disconnect_input_arrays_keeps_memberships_only():
    x = _leaf([1.0, 2.0], "a").require_grad("b")
    y = x * x
    (xd, yd) = GC._disconnect_input_arrays([x, y])
    assert not xd.is_same_body(x)
    assert [str(g) for g in xd.graph_ids()] == ["a", "b"]
    assert xd.is_leaf("a")
    assert yd.is_leaf("a")
    assert yd.tolist() == [1.0, 4.0]


# ---------------------------------------------------------------------------
# check_backward
# ---------------------------------------------------------------------------


def test_check_backward_passes_for_square():
    x = _leaf(3.0)
    assert GC.check_backward(_square, [x], [_f64(1.0)], _eps_like(x)) is None
    # The caller's arrays gain no gradient.
    assert x.get_grad() is None
    assert x.is_leaf()


def test_check_backward_passes_for_multiple_inputs_and_outputs():
    x = _leaf([1.5, -0.5])
    y = _leaf([2.5, 3.0])
    GC.check_backward(
        lambda xs: [xs[0] * xs[1], xs[0] / xs[1], (xs[0] * 0.5).exp()],
        [x, y],
        [_f64([1.0, 2.0]), _f64([-1.0, 0.5]), _f64([0.3, 0.7])],
        _eps_like(x, y),
    )


def test_check_backward_skips_inputs_without_grad():
    x = _leaf([1.0, 2.0])
    c = _f64([3.0, 4.0])
    GC.check_backward(
        lambda xs: [xs[0] * xs[1]], [x, c], [_f64([1.0, 1.0])], _eps_like(x, c)
    )


def test_check_backward_reports_numerical_mismatch():
    x = _leaf(3.0)
    with pytest.raises(GradientCheckError) as excinfo:
        GC.check_backward(
            lambda xs: [_WrongSquare.apply(xs[0])], [x], [_f64(1.0)], _eps_like(x)
        )
    message = str(excinfo.value)
    lines = message.splitlines()
    assert lines[0] == "Numerical error in backward on inputs (out of 1): 0"
    assert lines[1] == "Graph: default"
    assert lines[2] == "Atol: 1e-05  Rtol: 0.0001"
    assert "Backward gradients[0]:\narray(5., shape=(), dtype=float64)" in message
    assert "Numerical gradients[0]:\narray(6." in message
    assert "Eps[0] (perturbation in numerical gradients):\narray(0.001," in message
    # Signed: analytical minus numerical.
    assert _error_value(message, 0) == pytest.approx(-1.0, abs=1e-6)


def test_check_backward_lists_every_failing_input():
    x = _leaf([1.0, 2.0])
    y = _leaf(3.0)
    z = _leaf(4.0)

    def func(xs):
        return [xs[0] * xs[0], _WrongSquare.apply(xs[1]), _WrongSquare.apply(xs[2])]

    with pytest.raises(GradientCheckError) as excinfo:
        GC.check_backward(
            func, [x, y, z], [_f64([1.0, 1.0]), _f64(1.0), _f64(1.0)], _eps_like(x, y, z)
        )
    message = str(excinfo.value)
    assert message.splitlines()[0] == "Numerical error in backward on inputs (out of 3): 1, 2"
    assert "Error[0]" not in message
    assert _error_value(message, 1) == pytest.approx(-1.0, abs=1e-6)
    assert _error_value(message, 2) == pytest.approx(-1.0, abs=1e-6)


def test_check_backward_uses_tolerances():
    x = _leaf(3.0)
    GC.check_backward(
        lambda xs: [_WrongSquare.apply(xs[0])],
        [x],
        [_f64(1.0)],
        _eps_like(x),
        atol=1.5,
    )


def test_check_backward_defaults_to_first_graph_of_first_input():
    x = _leaf(3.0, "g1")
    with pytest.raises(GradientCheckError) as excinfo:
        GC.check_backward(
            lambda xs: [_WrongSquare.apply(xs[0])], [x], [_f64(1.0)], _eps_like(x)
        )
    assert "Graph: g1" in str(excinfo.value)


def test_check_backward_uses_explicit_graph():
    x = _leaf(3.0, "a").require_grad("b")
    GC.check_backward(_square, [x], [_f64(1.0)], _eps_like(x), graph_id="b")
    # No input requires grad on the graph: nothing to compare.
    GC.check_backward(_square, [x], [_f64(1.0)], _eps_like(x), graph_id="c")


def test_check_backward_rejects_identity_function():
    x = _leaf(3.0)
    with pytest.raises(ContractError) as excinfo:
        GC.check_backward(_identity, [x], [_f64(1.0)], _eps_like(x))
    assert str(excinfo.value) == (
        "backward_gradients: Input 0 and output 0 of the forward function are identical."
    )

    with pytest.raises(ContractError):
        GC.check_backward_computation(_identity, [x], [_f64(1.0)], _eps_like(x))


def test_check_backward_contract_errors():
    x = _leaf([1.0, 2.0])
    with pytest.raises(ContractError) as excinfo:
        GC.check_backward(_square, [], [], [])
    assert str(excinfo.value) == "check_backward: inputs must not be empty"

    with pytest.raises(ContractError, match="Number of eps arrays"):
        GC.check_backward(_square, [x], [_f64([1.0, 1.0])], [])

    with pytest.raises(ContractError, match="Size of function outputs: 1"):
        GC.check_backward_computation(
            _square, [x], [_f64([1.0, 1.0]), _f64([1.0, 1.0])], _eps_like(x)
        )


def test_check_backward_propagates_user_errors():
    x = _leaf(3.0)

    def func(xs):
        raise ValueError("user function failed")

    with pytest.raises(ValueError, match="user function failed"):
        GC.check_backward(func, [x], [_f64(1.0)], _eps_like(x))


# ---------------------------------------------------------------------------
# Double-backprop option
# ---------------------------------------------------------------------------


def test_double_backprop_option_not_connected_when_enabled():
    x = _leaf(3.0)
    with pytest.raises(GradientCheckError) as excinfo:
        GC.check_backward(
            lambda xs: [_DetachedSquare.apply(xs[0])], [x], [_f64(1.0)], _eps_like(x)
        )
    assert str(excinfo.value) == (
        "Gradient 0 / 1 is not connected to the graph 'default' even when "
        "double-backprop is enabled."
    )


def test_double_backprop_option_connected_when_disabled():
    x = _leaf(3.0, "g")
    with pytest.raises(GradientCheckError) as excinfo:
        GC.check_backward(
            lambda xs: [_AlwaysConnectedSquare.apply(xs[0])],
            [x],
            [_f64(1.0)],
            _eps_like(x),
        )
    assert str(excinfo.value) == (
        "Gradient 0 / 1 is connected to the graph 'g' even when "
        "double-backprop is disabled."
    )


def test_double_backprop_option_aggregates_failures():
    a = _leaf(2.0)
    b = _leaf(5.0)
    with pytest.raises(GradientCheckError) as excinfo:
        GC._check_double_backprop_option(
            lambda xs: [_DetachedMul.apply(xs[0], xs[1])], [a, b], bc.DEFAULT_GRAPH_ID
        )
    assert str(excinfo.value).splitlines() == [
        "Gradient 0 / 2 is not connected to the graph 'default' even when "
        "double-backprop is enabled.",
        "Gradient 1 / 2 is not connected to the graph 'default' even when "
        "double-backprop is enabled.",
    ]


def test_detached_backward_is_numerically_correct():
    x = _leaf(3.0)
    GC.check_backward_computation(
        lambda xs: [_DetachedSquare.apply(xs[0])], [x], [_f64(1.0)], _eps_like(x)
    )


# ---------------------------------------------------------------------------
# Leak detection
# ---------------------------------------------------------------------------


def test_check_backward_detects_leaked_arrays():
    kept = []

    def leaky_square(xs):
        y = xs[0] * xs[0]
        kept.append(y)
        return [y]

    x = _leaf(3.0)
    with pytest.raises(GradientCheckError) as excinfo:
        GC.check_backward(leaky_square, [x], [_f64(1.0)], _eps_like(x))
    lines = str(excinfo.value).splitlines()
    assert lines[0] == "Some array bodies are not freed."
    assert lines[1].startswith("Number of alive array bodies: ")
    assert "- shape=() dtype=float64 graphs=[default(multiply)]" in lines


def test_check_backward_without_leak_detection(monkeypatch):
    monkeypatch.setattr(GC, "_ENABLE_LEAK_DETECTION", False)
    kept = []

    def leaky_square(xs):
        y = xs[0] * xs[0]
        kept.append(y)
        return [y]

    x = _leaf(3.0)
    GC.check_backward(leaky_square, [x], [_f64(1.0)], _eps_like(x))
    assert kept


def test_check_backward_leaves_no_active_scope_after_failure():
    x = _leaf(3.0)
    with pytest.raises(GradientCheckError):
        GC.check_backward(
            lambda xs: [_WrongSquare.apply(xs[0])], [x], [_f64(1.0)], _eps_like(x)
        )
    from backcheck import leak_detection as L

    assert not L.is_leak_detection_active()


def test_check_backward_with_nested_reverse_pass():
    x = _leaf(3.0)
    GC.check_backward(_square_after_nested_pass, [x], [_f64(1.0)], _eps_like(x))
    assert x.get_grad() is None

    (gx,) = GC._backward_gradients(
        _square_after_nested_pass,
        GC._disconnect_input_arrays([x]),
        [_f64(1.0)],
        bc.DEFAULT_GRAPH_ID,
    )
    assert gx.item() == 6.0


# ---------------------------------------------------------------------------
# Input handling
# ---------------------------------------------------------------------------


def test_check_backward_accepts_non_leaf_inputs():
    x = _leaf(3.0)
    y = x * x
    assert not y.is_leaf()
    GC.check_backward(_square, [y], [_f64(1.0)], _eps_like(y))
    assert y.get_grad() is None


def test_type_errors_name_the_entry_point():
    x = _leaf(3.0)
    with pytest.raises(TypeError) as excinfo:
        GC.check_backward(_square, [3.0], [_f64(1.0)], _eps_like(x))
    assert str(excinfo.value) == "check_backward: inputs must be backcheck arrays"

    with pytest.raises(TypeError) as excinfo:
        GC.check_backward_computation(_square, [x], [1.0], _eps_like(x))
    assert str(excinfo.value) == (
        "check_backward_computation: grad_outputs must be backcheck arrays"
    )

    with pytest.raises(TypeError) as excinfo:
        GC.check_backward(lambda xs: [1.0], [x], [_f64(1.0)], _eps_like(x))
    assert str(excinfo.value) == (
        "backward_gradients: function outputs must be backcheck arrays"
    )
