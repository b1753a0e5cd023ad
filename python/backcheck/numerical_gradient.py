# SPDX-FileCopyrightText: Copyright (c) 2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from collections.abc import Callable, Sequence
import logging

import numpy as _np

from .array import Array, _from_numpy
from .error import ContractError

logger = logging.getLogger(__name__)

ArrayFunc = Callable[[Sequence[Array]], Sequence[Array]]


def _perturbable_copy(x: Array) -> Array:
    """Contiguous copy of ``x`` that requires grad on the same graphs."""

    copy = _from_numpy(_np.array(x.data, order="C", copy=True))
    for gid in x.graph_ids():
        copy.require_grad(gid)
    return copy


def _evaluate(
    func: ArrayFunc,
    inputs: Sequence[Array],
    grad_outputs: Sequence[Array],
    index: int,
    flat_index: int,
    delta: float,
) -> tuple[list[_np.ndarray], float]:
    xs = [_perturbable_copy(x) for x in inputs]
    flat = xs[index].data.reshape(-1)
    flat[flat_index] = flat[flat_index] + delta
    # The value actually stored after rounding to the input dtype.
    perturbed = float(flat[flat_index])

    ys = list(func(xs))
    if len(ys) != len(grad_outputs):
        raise ContractError(
            f"Number of function outputs ({len(ys)}) and grad outputs "
            f"({len(grad_outputs)}) do not match."
        )
    values: list[_np.ndarray] = []
    for j, (y, gy) in enumerate(zip(ys, grad_outputs)):
        if y.shape != gy.shape:
            raise ContractError(
                f"Shape of function output {j} {y.shape} does not match the "
                f"corresponding grad output shape {gy.shape}."
            )
        values.append(_np.asarray(y.data, dtype=_np.float64).copy())
    return values, perturbed


def calculate_numerical_gradient(
    func: ArrayFunc,
    inputs: Sequence[Array],
    grad_outputs: Sequence[Array],
    eps: Sequence[Array],
) -> list[Array]:
    """Central-difference gradient of ``sum_j <func(inputs)[j], grad_outputs[j]>``.

    ``eps[i]`` holds the perturbation of every element of ``inputs[i]``.
    ``func`` is always called on fresh copies; the given arrays are never
    modified and never gain graph nodes. Returns one gradient per input with
    the input's shape and dtype.
    """

    inputs = list(inputs)
    grad_outputs = list(grad_outputs)
    eps = list(eps)

    if len(eps) != len(inputs):
        raise ContractError(
            f"Number of eps arrays ({len(eps)}) and input arrays ({len(inputs)}) "
            "do not match."
        )
    for i, (x, e) in enumerate(zip(inputs, eps)):
        if e.shape != x.shape:
            raise ContractError(
                f"Shape of eps {i} {e.shape} does not match the corresponding input "
                f"shape {x.shape}."
            )
        if e.dtype != x.dtype:
            raise ContractError(
                f"Dtype of eps {i} {e.dtype} does not match the corresponding input "
                f"dtype {x.dtype}."
            )

    gys = [_np.asarray(gy.data, dtype=_np.float64) for gy in grad_outputs]

    grads: list[Array] = []
    for i, x in enumerate(inputs):
        eps_flat = _np.asarray(eps[i].data, dtype=_np.float64).reshape(-1)
        grad_flat = _np.zeros(x.size, dtype=_np.float64)
        for k in range(x.size):
            ek = float(eps_flat[k])
            ys_plus, x_plus = _evaluate(func, inputs, grad_outputs, i, k, ek)
            ys_minus, x_minus = _evaluate(func, inputs, grad_outputs, i, k, -ek)
            denom = x_plus - x_minus
            if denom == 0.0:
                raise ContractError(
                    f"Perturbation eps[{i}] at flat index {k} ({ek}) vanishes in "
                    f"dtype {x.dtype}."
                )
            total = 0.0
            for y_plus, y_minus, gy in zip(ys_plus, ys_minus, gys):
                total += float(_np.sum((y_plus - y_minus) * gy))
            grad_flat[k] = total / denom
        grads.append(_from_numpy(grad_flat.reshape(x.shape).astype(x.data.dtype)))
        logger.debug("numerical gradient: input %d/%d done (%d elements)", i, len(inputs), x.size)

    return grads
