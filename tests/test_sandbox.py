from __future__ import annotations

import allure
import pytest

from agent_crew.engine.tools.executor import format_code_result, sandbox_environment
from agent_crew.engine.tools.sandbox import SandboxResult, run_restricted

pytestmark = [
    allure.epic("Agent Tools"),
    allure.feature("Code Sandbox"),
]


def test_prints_inside_functions_are_collected() -> None:
    result = run_restricted(
        "import math\n"
        "def area(radius):\n"
        "    print(round(math.pi * radius * radius, 2))\n"
        "area(2)\n"
        "total = 1\n"
        "total += 2\n"
        "print(total)\n",
    )

    assert result.error is None
    assert result.stdout == "12.57\n3\n"


def test_iteration_and_unpacking() -> None:
    result = run_restricted(
        "pairs = dict(a=1, b=2)\n"
        "for key, value in sorted(pairs.items()):\n"
        "    print(key, value)\n"
        "first, *rest = [1, 2, 3]\n"
        "print(first, sum(rest))\n",
    )

    assert result.error is None
    assert result.stdout == "a 1\nb 2\n1 5\n"


@pytest.mark.parametrize("module", ["os", "subprocess", "sys", "pathlib", "socket"])
def test_imports_outside_allow_list_fail(module: str) -> None:
    result = run_restricted(f"import {module}")

    assert result.error == f"ImportError: Import of '{module}' is not allowed"


def test_open_is_not_a_builtin() -> None:
    result = run_restricted("open('/etc/passwd')")

    assert result.error is not None
    assert result.error.startswith("NameError")


def test_dunder_attribute_access_is_rejected_at_compile_time() -> None:
    result = run_restricted("print(().__class__.__bases__)")

    assert result.error is not None
    assert result.error.startswith("Compilation errors:")
    assert result.stdout == ""


def test_output_before_error_is_kept() -> None:
    result = run_restricted("print('partial')\n1 / 0\n")

    assert result.stdout == "partial\n"
    assert result.error == "ZeroDivisionError: division by zero"
    assert format_code_result(result) == (
        "Console output:\npartial\n\nCode execution error: ZeroDivisionError: division by zero"
    )


def test_result_survives_json_transport() -> None:
    original = SandboxResult(stdout="42\n", error=None)

    assert SandboxResult.from_json(original.to_json()) == original
    assert format_code_result(SandboxResult()) == "(no output)"


def test_sandbox_environment_drops_runner_secrets(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_CREW_ENCRYPTION_KEY", "super-secret-master-key")

    env = sandbox_environment()

    assert "AGENT_CREW_ENCRYPTION_KEY" not in env
    assert set(env) <= {"PATH", "LC_ALL", "PYTHONIOENCODING", "SYSTEMROOT"}
