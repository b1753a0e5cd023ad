# SPDX-FileCopyrightText: Copyright (c) 2026 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import pytest

from backcheck import backward as _backward
from backcheck import graph as _graph
from backcheck import leak_detection as _leak_detection


@pytest.fixture(autouse=True)
def _reset_backcheck_state():
    """Keep global engine and mode state isolated between tests.

    Several tests intentionally toggle backprop modes or leave a tracker
    scope by raising. This fixture forces a known default state (no mode
    scopes, no active tracker, zeroed engine counters) before and after each
    test to prevent order-dependent failures.
    """

    def _reset() -> None:
        del _graph._mode_stack()[:]
        _leak_detection._active_tracker = None
        _backward.reset_stats()

    _reset()
    yield
    _reset()
