"""Restricted execution of user-authored Python tool scripts.

Script source is parsed with :mod:`ast`, checked against a small set of
forbidden constructs, grafted into the body of ``def _tool_entry(params)`` and
executed with an explicit capability table as its only globals.  Scripts
return their result with ``return``; raising any exception fails the call.

The checks close the obvious escape hatches (imports, dunder access, frame and
code object attributes, ``str.format`` field lookups).  They are not a
security boundary against a determined attacker; custom tools are authored by
operators of the server.
"""

from __future__ import annotations

import ast
import asyncio
import base64
import binascii
import builtins
import datetime as _datetime
import json
import logging
import math
import re
from functools import lru_cache
from types import CodeType, SimpleNamespace
from typing import Any, Callable, Mapping
from urllib.parse import quote as _quote
from urllib.parse import unquote as _unquote

from .errors import SCRIPT_ERROR, UtilityHubError
from .logging import get_logger

logger = get_logger("sandbox")

__all__ = ["SAFE_BUILTINS", "ScriptRejected", "ScriptRunner", "compile_script", "EMPTY_SCRIPT_NOTICE"]

DEFAULT_SCRIPT_TIMEOUT_SECONDS = 10.0
EMPTY_SCRIPT_NOTICE = "No custom logic defined for this tool."

_ENTRY_POINT = "_tool_entry"
_ENTRY_TEMPLATE = f"def {_ENTRY_POINT}(params):\n    pass\n"

# encodeURIComponent leaves these unescaped.
_URI_COMPONENT_SAFE = "-_.!~*'()"

_FORBIDDEN_NODES: dict[type, str] = {
    ast.Import: "import statements are not allowed",
    ast.ImportFrom: "import statements are not allowed",
    ast.Global: "global statements are not allowed",
    ast.Nonlocal: "nonlocal statements are not allowed",
    ast.ClassDef: "class definitions are not allowed",
    ast.AsyncFunctionDef: "async functions are not allowed",
    ast.Await: "await is not allowed",
}

_FORBIDDEN_ATTRIBUTES = frozenset(
    {
        "format",
        "format_map",
        "mro",
        "gi_frame",
        "gi_code",
        "gi_yieldfrom",
        "cr_frame",
        "cr_code",
        "ag_frame",
        "ag_code",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "tb_frame",
        "tb_next",
    }
)

SAFE_BUILTINS: Mapping[str, Any] = {
    name: getattr(builtins, name)
    for name in (
        "abs",
        "all",
        "any",
        "bin",
        "bool",
        "callable",
        "chr",
        "dict",
        "divmod",
        "enumerate",
        "filter",
        "float",
        "frozenset",
        "hex",
        "int",
        "isinstance",
        "iter",
        "len",
        "list",
        "map",
        "max",
        "min",
        "next",
        "oct",
        "ord",
        "pow",
        "range",
        "repr",
        "reversed",
        "round",
        "set",
        "slice",
        "sorted",
        "str",
        "sum",
        "tuple",
        "zip",
        "ArithmeticError",
        "AssertionError",
        "Exception",
        "IndexError",
        "KeyError",
        "LookupError",
        "NotImplementedError",
        "RuntimeError",
        "StopIteration",
        "TypeError",
        "ValueError",
        "ZeroDivisionError",
    )
}


class ScriptRejected(ValueError):
    """Raised when script source uses a construct outside the allowed subset."""


class _Checker(ast.NodeVisitor):
    def generic_visit(self, node: ast.AST) -> None:
        reason = _FORBIDDEN_NODES.get(type(node))
        if reason is not None:
            self._reject(node, reason)
        super().generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("_"):
            self._reject(node, f"name '{node.id}' is not allowed")
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_") or node.attr in _FORBIDDEN_ATTRIBUTES:
            self._reject(node, f"attribute '{node.attr}' is not allowed")
        self.generic_visit(node)

    def visit_MatchClass(self, node: ast.MatchClass) -> None:
        for attr in node.kwd_attrs:
            if attr.startswith("_") or attr in _FORBIDDEN_ATTRIBUTES:
                self._reject(node, f"attribute '{attr}' is not allowed")
        self.generic_visit(node)

    @staticmethod
    def _reject(node: ast.AST, reason: str) -> None:
        line = getattr(node, "lineno", None)
        suffix = f" (line {line})" if line is not None else ""
        raise ScriptRejected(f"{reason}{suffix}")


@lru_cache(maxsize=256)
def compile_script(source: str) -> CodeType:
    """Parse, check and compile ``source`` into a module defining the entry function."""

    user_tree = ast.parse(source, filename="<tool-script>", mode="exec")
    _Checker().visit(user_tree)
    module = ast.parse(_ENTRY_TEMPLATE, filename="<tool-script>", mode="exec")
    entry = module.body[0]
    assert isinstance(entry, ast.FunctionDef)
    entry.body = list(user_tree.body) or [ast.Pass()]
    ast.fix_missing_locations(module)
    return compile(module, "<tool-script>", "exec")


def _b64encode(text: str) -> str:
    return base64.b64encode(str(text).encode("utf-8")).decode("ascii")


def _b64decode(text: str) -> str:
    try:
        return base64.b64decode(str(text).encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeError) as exc:
        raise ValueError(f"Invalid base64 input: {exc}") from exc


def _quote_component(text: Any) -> str:
    return _quote(str(text), safe=_URI_COMPONENT_SAFE)


def _sink(tool_name: str, level: int) -> Callable[..., None]:
    def emit(*args: Any) -> None:
        logger.log(level, "[%s] %s", tool_name, " ".join(str(arg) for arg in args))

    return emit


def _namespace(module: Any, names: tuple[str, ...]) -> SimpleNamespace:
    return SimpleNamespace(**{name: getattr(module, name) for name in names})


_JSON_CAPABILITY = _namespace(json, ("dumps", "loads", "JSONDecodeError"))
_RE_CAPABILITY = _namespace(
    re,
    (
        "compile",
        "escape",
        "findall",
        "finditer",
        "fullmatch",
        "match",
        "search",
        "split",
        "sub",
        "subn",
        "error",
        "IGNORECASE",
        "MULTILINE",
        "DOTALL",
        "VERBOSE",
        "I",
        "M",
        "S",
        "X",
    ),
)
_MATH_CAPABILITY = _namespace(math, tuple(name for name in dir(math) if not name.startswith("_")))


def build_globals(tool_name: str) -> dict[str, Any]:
    """Return a fresh globals mapping exposing only the script capabilities."""

    return {
        "__builtins__": dict(SAFE_BUILTINS),
        "json": _JSON_CAPABILITY,
        "math": _MATH_CAPABILITY,
        "re": _RE_CAPABILITY,
        "datetime": _datetime.datetime,
        "date": _datetime.date,
        "time": _datetime.time,
        "timedelta": _datetime.timedelta,
        "timezone": _datetime.timezone,
        "b64encode": _b64encode,
        "b64decode": _b64decode,
        "quote": _quote_component,
        "unquote": _unquote,
        "print": _sink(tool_name, logging.INFO),
        "log": _sink(tool_name, logging.INFO),
    }


def _execute(code: CodeType, tool_name: str, params: dict[str, Any]) -> Any:
    namespace = build_globals(tool_name)
    exec(code, namespace)
    try:
        return namespace[_ENTRY_POINT](params)
    except StopIteration as exc:
        # asyncio cannot set StopIteration on a future; the awaiting call would never resolve.
        raise RuntimeError(_describe(exc)) from exc


def _describe(exc: BaseException) -> str:
    message = str(exc)
    return message if message else type(exc).__name__


class ScriptRunner:
    """Executes custom script tools in worker threads under an optional time budget."""

    def __init__(self, *, timeout: float | None = DEFAULT_SCRIPT_TIMEOUT_SECONDS) -> None:
        self._timeout = timeout if timeout and timeout > 0 else None

    @property
    def timeout(self) -> float | None:
        return self._timeout

    async def run(self, tool_name: str, source: str | None, params: Mapping[str, Any]) -> Any:
        if source is None or not source.strip():
            rendered = json.dumps(dict(params), indent=2, ensure_ascii=False, default=str)
            return f'Custom Tool "{tool_name}" executed with parameters:\n{rendered}\n\n{EMPTY_SCRIPT_NOTICE}'

        try:
            code = compile_script(source)
        except (SyntaxError, ScriptRejected) as exc:
            raise UtilityHubError(
                SCRIPT_ERROR,
                f"Error executing custom logic: {_describe(exc)}",
                details={"tool": tool_name},
            ) from exc

        work = asyncio.to_thread(_execute, code, tool_name, dict(params))
        try:
            if self._timeout is None:
                return await work
            return await asyncio.wait_for(work, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            # The worker thread cannot be interrupted; it finishes in the background.
            logger.warning("script.timeout", extra={"context": {"tool": tool_name, "timeout": self._timeout}})
            raise UtilityHubError(
                SCRIPT_ERROR,
                f"Error executing custom logic: script exceeded {self._timeout:g}s time limit",
                details={"tool": tool_name},
            ) from exc
        except Exception as exc:
            raise UtilityHubError(
                SCRIPT_ERROR,
                f"Error executing custom logic: {_describe(exc)}",
                details={"tool": tool_name},
            ) from exc
