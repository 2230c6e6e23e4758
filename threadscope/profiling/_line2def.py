# -*- encoding: utf-8 -*-
"""Resolve a ``(filename, line)`` location to the function defined around it.

Allocation tracebacks only carry file names and line numbers. This module parses the source file and finds the
innermost function or class whose span contains the line, so that allocations are attributed to the same function
identity as the samples taken from live frames.
"""
import ast
from functools import lru_cache
from tokenize import open as source_open
import typing

import intervaltree

from threadscope.profiling.stack_table import FuncKey


MODULE_NAME = "<module>"

_DEFS = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)


def _compute_interval(node):
    # type: (ast.AST) -> typing.Tuple[int, int]
    min_lineno = node.lineno  # type: ignore[attr-defined]
    max_lineno = node.lineno  # type: ignore[attr-defined]
    for child in ast.walk(node):
        if hasattr(child, "lineno"):
            min_lineno = min(min_lineno, child.lineno)
            max_lineno = max(max_lineno, getattr(child, "end_lineno", None) or child.lineno)
    return (min_lineno, max_lineno + 1)


def _add_defs(tree, node, prefix):
    # type: (intervaltree.IntervalTree, ast.AST, str) -> None
    for child in ast.iter_child_nodes(node):
        if isinstance(child, _DEFS):
            qualname = prefix + child.name
            start, end = _compute_interval(child)
            # Decorators come first, the same way they do in `co_firstlineno`
            tree[start:end] = (qualname, start)
            if isinstance(child, ast.ClassDef):
                _add_defs(tree, child, qualname + ".")
            else:
                _add_defs(tree, child, qualname + ".<locals>.")
        else:
            _add_defs(tree, child, prefix)


@lru_cache(maxsize=256)
def file_to_tree(filename):
    # type: (str) -> intervaltree.IntervalTree
    # Use tokenize.open to detect encoding
    with source_open(filename) as f:
        parsed = ast.parse(f.read(), filename=filename)
    tree = intervaltree.IntervalTree()
    _add_defs(tree, parsed, "")
    return tree


def default_def(filename, lineno):
    # type: (str, int) -> FuncKey
    return FuncKey(filename + ":" + str(lineno), filename, lineno)


@lru_cache(maxsize=8192)
def filename_and_lineno_to_def(filename, lineno):
    # type: (str, int) -> FuncKey
    """Return the identity of the function defined around ``lineno`` in ``filename``.

    Lines outside of any function or class belong to the module. Files that cannot be read or parsed get a
    placeholder identity named after the location.
    """
    if not filename or (filename[0] == "<" and filename[-1] == ">"):
        return default_def(filename, lineno)

    try:
        matches = file_to_tree(filename)[lineno]
    except (IOError, OSError, SyntaxError, ValueError):
        return default_def(filename, lineno)
    if matches:
        name, first_line = min(matches, key=lambda i: i.length()).data
        return FuncKey(name, filename, first_line)

    return FuncKey(MODULE_NAME, filename, 1)
