# SPDX-FileCopyrightText: Copyright (c) 2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

import logging as _logging

from ._about import __version__  # noqa: F401
from .array import (  # noqa: F401
    Array,
    all_close,
    array,
    full_like,
    ones_like,
    zeros_like,
)
from .gradient_check import (  # noqa: F401
    check_backward,
    check_backward_computation,
    check_double_backward_computation,
)
from .error import (  # noqa: F401
    BackcheckError,
    ContractError,
    DimensionError,
    DtypeError,
    GradientCheckError,
    GradientError,
)
from .graph import (  # noqa: F401
    DEFAULT_GRAPH_ID,
    GraphId,
    force_backprop_mode,
    is_backprop_required,
    no_backprop_mode,
)
from .leak_detection import (  # noqa: F401
    ArrayBodyLeakDetectionScope,
    ArrayBodyLeakTracker,
)
from .numerical_gradient import calculate_numerical_gradient  # noqa: F401
from . import autograd as autograd  # noqa: F401
from . import backward as backward  # noqa: F401

_logging.getLogger(__name__).addHandler(_logging.NullHandler())
