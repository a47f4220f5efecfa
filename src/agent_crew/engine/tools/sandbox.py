"""RestrictedPython sandbox for the `code_interpreter` tool.

The runner executes this file as a separate interpreter (`python -I sandbox.py`) with an
empty environment and a throwaway working directory. The code arrives on stdin, and
the child prints one JSON object with the collected output and the error, if any.
Only the standard library and RestrictedPython are imported here.
"""

from __future__ import annotations

import contextlib
import json
import math
import operator
import sys
from dataclasses import dataclass
from typing import Any

from RestrictedPython import (
    compile_restricted_exec,
    limited_builtins,
    safe_builtins,
    utility_builtins,
)
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)
from RestrictedPython.PrintCollector import PrintCollector

ALLOWED_MODULES = frozenset(
    {
        "collections",
        "datetime",
        "decimal",
        "fractions",
        "itertools",
        "json",
        "math",
        "random",
        "re",
        "statistics",
        "string",
    },
)
MEMORY_LIMIT_BYTES = 1 << 30
CODE_FILENAME = "<agent_code>"

_EXTRA_BUILTINS: dict[str, Any] = {
    "all": all,
    "any": any,
    "dict": dict,
    "enumerate": enumerate,
    "filter": filter,
    "format": format,
    "iter": iter,
    "map": map,
    "max": max,
    "min": min,
    "next": next,
    "reversed": reversed,
    "sum": sum,
    "StopIteration": StopIteration,
}

_INPLACE_OPERATORS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
    "@=": operator.imatmul,
}


@dataclass(slots=True)
class SandboxResult:
    stdout: str = ""
    error: str | None = None

    def to_json(self) -> str:
        return json.dumps({"stdout": self.stdout, "error": self.error})

    @classmethod
    def from_json(cls, raw: str) -> SandboxResult:
        payload = json.loads(raw)
        return cls(stdout=str(payload.get("stdout") or ""), error=payload.get("error"))


def _guarded_import(
    name: str,
    globals: dict[str, Any] | None = None,  # noqa: A002
    locals: dict[str, Any] | None = None,  # noqa: A002
    fromlist: tuple[str, ...] | None = (),
    level: int = 0,
) -> Any:
    if level != 0 or name.split(".", 1)[0] not in ALLOWED_MODULES:
        raise ImportError(f"Import of '{name}' is not allowed")
    return __import__(name, globals, locals, fromlist or (), level)


def _inplacevar(op: str, target: Any, value: Any) -> Any:
    try:
        return _INPLACE_OPERATORS[op](target, value)
    except KeyError:
        raise SyntaxError(f"Unsupported augmented assignment: {op}") from None


def _apply(func: Any, *args: Any, **kwargs: Any) -> Any:
    return func(*args, **kwargs)


def build_globals(collector: PrintCollector) -> dict[str, Any]:
    """Namespace for restricted code; every `print` lands in `collector`."""

    builtins: dict[str, Any] = {}
    builtins.update(safe_builtins)
    builtins.update(limited_builtins)
    builtins.update(utility_builtins)
    builtins.update(_EXTRA_BUILTINS)
    builtins["__import__"] = _guarded_import
    return {
        "__builtins__": builtins,
        "__name__": "agent_code",
        "__metaclass__": type,
        "_print_": lambda _getattr_=None: collector,
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_write_": full_write_guard,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_inplacevar_": _inplacevar,
        "_apply_": _apply,
    }


def run_restricted(code: str) -> SandboxResult:
    """Compile `code` with RestrictedPython and run it in this process."""

    compiled = compile_restricted_exec(code, CODE_FILENAME)
    if compiled.errors:
        return SandboxResult(error="Compilation errors: " + "; ".join(compiled.errors))

    collector = PrintCollector()
    try:
        exec(compiled.code, build_globals(collector))  # noqa: S102
    except Exception as error:  # noqa: BLE001
        return SandboxResult(stdout=collector(), error=f"{error.__class__.__name__}: {error}")
    return SandboxResult(stdout=collector())


def apply_resource_limits(cpu_seconds: float) -> None:
    if sys.platform == "win32":
        return
    import resource

    cpu_limit = math.ceil(cpu_seconds) + 1
    resource.setrlimit(resource.RLIMIT_CPU, (cpu_limit, cpu_limit))
    # Address-space limits are not enforced on every platform.
    with contextlib.suppress(ValueError, OSError):
        resource.setrlimit(resource.RLIMIT_AS, (MEMORY_LIMIT_BYTES, MEMORY_LIMIT_BYTES))


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if args:
        apply_resource_limits(float(args[0]))
    result = run_restricted(sys.stdin.read())
    sys.stdout.write(result.to_json())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
