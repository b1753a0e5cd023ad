# SPDX-FileCopyrightText: Copyright (c) 2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Any

import numpy as _np

from .error import DtypeError


# Floating dtypes only: gradients of integer arrays are not defined.
SUPPORTED_DTYPES = ("float16", "float32", "float64")

SUPPORTED_NP_DTYPES = tuple(_np.dtype(name) for name in SUPPORTED_DTYPES)


def _expected_dtype_message() -> str:
    return "unsupported dtype: expected one of {" + ",".join(SUPPORTED_DTYPES) + "}"


def normalize_dtype_token(dtype: Any | None) -> str:
    """Normalize a dtype token into a canonical string.

    Accepts strings, NumPy dtypes and NumPy scalar types. ``None`` maps to
    ``"float32"``.
    """

    if dtype is None:
        return "float32"

    if isinstance(dtype, _np.dtype):
        dtype = dtype.name
    elif isinstance(dtype, type) and issubclass(dtype, _np.generic):
        dtype = _np.dtype(dtype).name

    if isinstance(dtype, str):
        s = dtype.lower()
        if s in SUPPORTED_DTYPES:
            return s
        if s == "half":
            return "float16"
        if s == "float":
            return "float32"
        if s == "double":
            return "float64"

    raise DtypeError(_expected_dtype_message())


def to_numpy_dtype(token: str) -> _np.dtype:
    return _np.dtype(normalize_dtype_token(token))
