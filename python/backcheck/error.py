# SPDX-FileCopyrightText: Copyright (c) 2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations


class BackcheckError(RuntimeError):
    """Base class of every error raised by backcheck."""


class ContractError(BackcheckError):
    """A precondition of a check was violated by the caller.

    Raised for non-leaf inputs, inputs aliased by outputs, mismatched array
    counts and arrays that must be differentiable but are not.
    """


class GradientCheckError(BackcheckError):
    """The property under test does not hold.

    Raised for gradient shape/dtype mismatches, double-backprop contract
    violations, numerical mismatches between analytical and numerical
    gradients, missing second-order gradients and leaked graph bodies. The
    message aggregates every failing index.
    """


class DimensionError(BackcheckError):
    pass


class DtypeError(BackcheckError, TypeError):
    pass


class GradientError(BackcheckError):
    """A backward rule produced a gradient that cannot be accumulated."""
