# -*- coding: utf-8 -*-
"""Location: ./tests/unit/mcpguard/test_models.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0
"""

# Third-Party
import pytest

# First-Party
from mcpguard.exceptions import BuildError, DuplicateExecutionError, ExecutionTimeoutError, PolicyViolationError, RuntimeUnavailableError
from mcpguard.models import ErrorKind, ExecutionPhase


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (ExecutionPhase.GENERATING, ExecutionPhase.BUILDING, True),
        (ExecutionPhase.BUILDING, ExecutionPhase.EXECUTING, True),
        (ExecutionPhase.EXECUTING, ExecutionPhase.COMPLETED, True),
        (ExecutionPhase.GENERATING, ExecutionPhase.EXECUTING, False),
        (ExecutionPhase.EXECUTING, ExecutionPhase.BUILDING, False),
        (ExecutionPhase.GENERATING, ExecutionPhase.FAILED, True),
        (ExecutionPhase.EXECUTING, ExecutionPhase.FAILED, True),
        (ExecutionPhase.COMPLETED, ExecutionPhase.FAILED, False),
        (ExecutionPhase.FAILED, ExecutionPhase.FAILED, False),
    ],
)
def test_phase_transitions(current, target, allowed):
    assert current.can_advance_to(target) is allowed


def test_terminal_phases():
    assert ExecutionPhase.COMPLETED.is_terminal
    assert ExecutionPhase.FAILED.is_terminal
    assert not ExecutionPhase.EXECUTING.is_terminal


def test_error_kind_origin_phase():
    assert ErrorKind.BUILD_ERROR.origin_phase is ExecutionPhase.BUILDING
    assert ErrorKind.TIMEOUT_ERROR.origin_phase is ExecutionPhase.EXECUTING
    assert ErrorKind.RUNTIME_ERROR.origin_phase is ExecutionPhase.EXECUTING
    assert ErrorKind.POLICY_VIOLATION.origin_phase is None
    assert ErrorKind.DUPLICATE_EXECUTION.origin_phase is None


def test_exception_converts_to_execution_error():
    err = BuildError("Unexpected token", file="script.js", line=3, column=7, details={"exitCode": 1})
    model = err.to_execution_error()
    assert model.kind is ErrorKind.BUILD_ERROR
    assert model.phase is ExecutionPhase.BUILDING
    assert (model.file, model.line, model.column) == ("script.js", 3, 7)
    assert model.details == {"exitCode": 1}


def test_explicit_phase_overrides_kind_phase():
    model = ExecutionTimeoutError("slow").to_execution_error(ExecutionPhase.EXECUTING)
    assert model.phase is ExecutionPhase.EXECUTING
    assert PolicyViolationError("nope").to_execution_error().phase is None


def test_runtime_unavailable_is_generation_error():
    assert RuntimeUnavailableError("deno missing").kind is ErrorKind.GENERATION_ERROR
    assert DuplicateExecutionError("dup").kind.value == "DuplicateExecution"
