"""
Static checks run before any code is executed: required snippets, lesson step
requirements, entry-point presence and an optional AST scan for constructs the
sandbox refuses.
"""
import ast
from typing import Optional

from .models import Language

FORBIDDEN_MODULES = {
    "os", "posix", "nt",
    "sys",
    "io", "_io",        # io.open is the real open()
    "subprocess", "_posixsubprocess", "pty",
    "socket", "_socket", "ssl", "select", "selectors",
    "shutil",
    "pathlib", "glob", "tempfile", "fileinput",
    "fcntl",            # low-level fs control (Unix)
    "mmap",
    "signal", "_signal",  # can disarm the execution timer
    "resource",         # limit bypass
    "ctypes", "_ctypes",  # raw C interop → sandbox escape
    "multiprocessing",  # spawns new processes
    "threading",        # background tasks
    "_thread",
    "asyncio",          # can schedule infinite loops
    "urllib", "http",   # external network comms
    "inspect",          # can access caller frame
    "importlib", "pkgutil", "zipimport",
    "gc",               # reaches every live object
    "builtins",
}

FORBIDDEN_FUNCTIONS = {
    "eval",
    "exec",
    "__import__",
    "compile",
    "open",            # file access
    "globals", "locals",   # can inspect and manipulate env
    "vars",                # reflection
    "getattr", "setattr",  # dynamic runtime access
    "delattr",
    "dir",                # can explore objects
}

FORBIDDEN_ATTRS = {
    "__class__", "__dict__", "__bases__", "__mro__", "__subclasses__",
    "__globals__", "__builtins__", "__self__", "__code__", "__closure__",
    "gi_frame", "f_back", "f_globals",
}


def find_missing_snippet(code: str, required_code: list[str]) -> Optional[str]:
    """Return the first required snippet that does not appear literally in code."""
    for snippet in required_code:
        if snippet and snippet not in code:
            return snippet
    return None


def step_progress(code: str, step_requirements: list[list[str]]) -> list[bool]:
    """A step is complete once any one of its alternatives appears in code."""
    return [any(alt in code for alt in alternatives) for alternatives in step_requirements]


def has_entry_point(code: str, language: Language) -> bool:
    if language == Language.C:
        return "main" in code
    return True


class _ForbiddenConstructs(ast.NodeVisitor):
    """Collects one finding per refused construct, in source order."""

    def __init__(self):
        self.found: list[str] = []

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            if alias.name.split(".")[0] in FORBIDDEN_MODULES:
                self.found.append(f"import {alias.name}")

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        if node.level == 0 and node.module and node.module.split(".")[0] in FORBIDDEN_MODULES:
            self.found.append(f"from {node.module} import ...")

    def visit_Call(self, node: ast.Call) -> None:
        func = node.func
        name = func.id if isinstance(func, ast.Name) else getattr(func, "attr", None)
        if name in FORBIDDEN_FUNCTIONS:
            self.found.append(name)
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr in FORBIDDEN_ATTRS:
            self.found.append(f"attribute {node.attr}")
        elif node.attr.startswith("_") and node.attr.lstrip("_") in FORBIDDEN_MODULES:
            # random._os, json.decoder._sys and similar private re-exports
            self.found.append(f"attribute {node.attr}")
        self.generic_visit(node)

    def visit_With(self, node: ast.With) -> None:
        self.found.append("with statement")
        self.generic_visit(node)


def ast_static_check(code: str) -> list[str]:
    """
    Scan Python source for constructs the sandbox refuses.

    Code that does not parse yields no findings; the sandbox reports the
    interpreter's own SyntaxError instead.
    """
    try:
        tree = ast.parse(code)
    except SyntaxError:
        return []

    visitor = _ForbiddenConstructs()
    visitor.visit(tree)
    return visitor.found
