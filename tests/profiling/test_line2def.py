import os

import pytest

from threadscope.profiling import _line2def
from threadscope.profiling.stack_table import FuncKey

from . import _test_line2def_1


FILENAME = os.path.join(os.path.dirname(__file__), "_test_line2def_1.py")


@pytest.mark.parametrize(
    "lineno,name,first_line",
    [
        (1, "<module>", 1),
        (4, "<module>", 1),
        (9, "decorator.<locals>.wrapper", 8),
        (10, "decorator.<locals>.wrapper", 8),
        (12, "decorator", 7),
        (16, "outer", 15),
        (19, "outer.<locals>.inner", 18),
        (25, "Shape", 24),
        (28, "Shape.area", 27),
        (32, "Shape.Meta.describe", 31),
        (35, "decorated", 35),
        (40, "decorated", 35),
        (44, "coroutine", 43),
    ],
)
def test_filename_and_lineno_to_def(lineno, name, first_line):
    assert _line2def.filename_and_lineno_to_def(FILENAME, lineno) == FuncKey(name, FILENAME, first_line)


def test_matches_code_objects():
    code = _test_line2def_1.outer.__code__
    key = _line2def.filename_and_lineno_to_def(FILENAME, code.co_firstlineno + 1)
    assert key == FuncKey.from_code(code)._replace(filename=FILENAME)


@pytest.mark.parametrize("filename", ["<string>", "<frozen importlib._bootstrap>", "", "/does/not/exist.py"])
def test_unresolvable(filename):
    assert _line2def.filename_and_lineno_to_def(filename, 12) == FuncKey(filename + ":12", filename, 12)


def test_syntax_error(tmp_path):
    broken = tmp_path / "broken.py"
    broken.write_text("def oops(:\n    pass\n")
    assert _line2def.filename_and_lineno_to_def(str(broken), 1) == FuncKey(str(broken) + ":1", str(broken), 1)
