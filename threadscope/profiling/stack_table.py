# -*- encoding: utf-8 -*-
"""Interning tables for call stacks.

Three append-only columnar tables form a prefix trie of captured call stacks:

* the func table holds ``(name, filename, first_line)`` triples;
* the frame table holds ``(func, line)`` pairs;
* the stack table holds ``(parent, frame)`` pairs, ``parent`` being ``None`` for a root.

Every entity is an index into those tables. Structurally identical call chains always resolve to the same stack
index, so the stack table grows with the number of distinct chains, not with the number of samples.
"""
import sys
import types
import typing

import attr

from threadscope.internal import forksafe


StackId = int
FrameId = int
FuncId = int

# Key of a root node in the stack index
_ROOT = -1


class FuncKey(typing.NamedTuple):
    """Identity of a function: two call sites with the same key are the same function."""

    name: str
    filename: str
    first_line: int

    @classmethod
    def from_code(cls, code: types.CodeType) -> "FuncKey":
        return cls(getattr(code, "co_qualname", code.co_name), code.co_filename, code.co_firstlineno)


WalkType = typing.Iterable[typing.Tuple[typing.Union[types.CodeType, FuncKey, typing.Tuple[str, str, int]], int]]


class IntegrityViolation(AssertionError):
    """The interning tables or an index pointing into them broke a structural invariant."""


def _check_index(idx: int, count: int, kind: str) -> int:
    if not isinstance(idx, int) or idx < 0 or idx >= count:
        raise IndexError("%s index %r out of range (%d %ss)" % (kind, idx, count, kind))
    return idx


@attr.s(frozen=True, slots=True)
class FuncView(object):
    """A function of a stack table."""

    table = attr.ib(repr=False, eq=False)
    idx = attr.ib(type=int)

    @property
    def name(self) -> str:
        return self.table.func_name(self.idx)

    label = name

    @property
    def filename(self) -> str:
        return self.table.func_filename(self.idx)

    @property
    def first_lineno(self) -> int:
        return self.table.func_first_lineno(self.idx)

    def __str__(self):
        return "%s at %s" % (self.name, self.filename)


@attr.s(frozen=True, slots=True)
class FrameView(object):
    """A frame of a stack table."""

    table = attr.ib(repr=False, eq=False)
    idx = attr.ib(type=int)

    @property
    def func(self) -> FuncView:
        return FuncView(self.table, self.table.frame_func_idx(self.idx))

    @property
    def line(self) -> int:
        return self.table.frame_line_no(self.idx)

    @property
    def name(self) -> str:
        return self.func.name

    label = name

    @property
    def filename(self) -> str:
        return self.func.filename

    def __str__(self):
        return "%s:%d" % (self.func, self.line)


@attr.s(frozen=True, slots=True)
class StackView(object):
    """A node of the stack trie and, through its parents, a full call stack."""

    table = attr.ib(repr=False, eq=False)
    idx = attr.ib(type=int)

    @property
    def parent(self) -> typing.Optional["StackView"]:
        parent = self.table.stack_parent_idx(self.idx)
        if parent is None:
            return None
        return StackView(self.table, parent)

    @property
    def leaf_frame_idx(self) -> FrameId:
        return self.table.stack_frame_idx(self.idx)

    @property
    def leaf_frame(self) -> FrameView:
        return FrameView(self.table, self.leaf_frame_idx)

    def each_frame(self) -> typing.Iterator[FrameView]:
        """Iterate over the frames of this stack, from the leaf to the root."""
        stack_idx = self.idx  # type: typing.Optional[int]
        while stack_idx is not None:
            yield FrameView(self.table, self.table.stack_frame_idx(stack_idx))
            stack_idx = self.table.stack_parent_idx(stack_idx)

    @property
    def frames(self) -> typing.List[FrameView]:
        return list(self.each_frame())

    def __len__(self):
        return self.table.depth(self.idx)

    def __str__(self):
        return "\n".join(str(frame) for frame in self.each_frame())


class Backtrace(typing.Sequence[str]):
    """Lines of a call stack, from the leaf to the root, formatted as ``file:line:in 'func'``.

    Nothing is computed until the backtrace is iterated, and it can be iterated any number of times.
    """

    __slots__ = ("_table", "_idx", "_depth")

    def __init__(self, table: "StackTableHelpers", idx: StackId):
        self._table = table
        self._idx = idx
        self._depth = None  # type: typing.Optional[int]

    def __iter__(self) -> typing.Iterator[str]:
        table = self._table
        stack_idx = self._idx  # type: typing.Optional[int]
        while stack_idx is not None:
            yield table.frame_label(table.stack_frame_idx(stack_idx))
            stack_idx = table.stack_parent_idx(stack_idx)

    def __len__(self) -> int:
        if self._depth is None:
            self._depth = self._table.depth(self._idx)
        return self._depth

    def __getitem__(self, index):
        return list(self)[index]

    def __eq__(self, other):
        if isinstance(other, Backtrace):
            return list(self) == list(other)
        if isinstance(other, (list, tuple)):
            return list(self) == list(other)
        return NotImplemented

    def __ne__(self, other):
        eq = self.__eq__(other)
        if eq is NotImplemented:
            return eq
        return not eq

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self):
        return "Backtrace(%r)" % list(self)


class StackTableHelpers(object):
    """Read accessors shared by the live interner and its frozen snapshots.

    Subclasses provide the seven columns as sequences.
    """

    _stack_parent: typing.Sequence[typing.Optional[StackId]]
    _stack_frame: typing.Sequence[FrameId]
    _frame_func: typing.Sequence[FuncId]
    _frame_line: typing.Sequence[int]
    _func_name: typing.Sequence[str]
    _func_filename: typing.Sequence[str]
    _func_first_line: typing.Sequence[int]

    @property
    def stack_count(self) -> int:
        return len(self._stack_frame)

    @property
    def frame_count(self) -> int:
        return len(self._frame_func)

    @property
    def func_count(self) -> int:
        return len(self._func_name)

    def stack_parent_idx(self, idx: StackId) -> typing.Optional[StackId]:
        return self._stack_parent[_check_index(idx, self.stack_count, "stack")]

    def stack_frame_idx(self, idx: StackId) -> FrameId:
        return self._stack_frame[_check_index(idx, self.stack_count, "stack")]

    def frame_func_idx(self, idx: FrameId) -> FuncId:
        return self._frame_func[_check_index(idx, self.frame_count, "frame")]

    def frame_line_no(self, idx: FrameId) -> int:
        return self._frame_line[_check_index(idx, self.frame_count, "frame")]

    def func_name(self, idx: FuncId) -> str:
        return self._func_name[_check_index(idx, self.func_count, "func")]

    def func_filename(self, idx: FuncId) -> str:
        return self._func_filename[_check_index(idx, self.func_count, "func")]

    def func_first_lineno(self, idx: FuncId) -> int:
        return self._func_first_line[_check_index(idx, self.func_count, "func")]

    def func_key(self, idx: FuncId) -> FuncKey:
        return FuncKey(self.func_name(idx), self.func_filename(idx), self.func_first_lineno(idx))

    def frame_label(self, idx: FrameId) -> str:
        func_idx = self.frame_func_idx(idx)
        return "%s:%d:in '%s'" % (self._func_filename[func_idx], self._frame_line[idx], self._func_name[func_idx])

    def full_stack(self, idx: StackId) -> typing.List[StackId]:
        """Return the stack indexes from ``idx`` to its root."""
        _check_index(idx, self.stack_count, "stack")
        full_stack = []
        stack_idx = idx  # type: typing.Optional[int]
        while stack_idx is not None:
            full_stack.append(stack_idx)
            stack_idx = self._stack_parent[stack_idx]
        return full_stack

    def depth(self, idx: StackId) -> int:
        """Return the number of frames of the stack ``idx``."""
        _check_index(idx, self.stack_count, "stack")
        depth = 0
        stack_idx = idx  # type: typing.Optional[int]
        while stack_idx is not None:
            depth += 1
            stack_idx = self._stack_parent[stack_idx]
        return depth

    def stack(self, idx: StackId) -> StackView:
        return StackView(self, _check_index(idx, self.stack_count, "stack"))

    def backtrace(self, idx: StackId) -> Backtrace:
        return Backtrace(self, _check_index(idx, self.stack_count, "stack"))

    def _chain(self, idx: StackId) -> typing.List[typing.Tuple[FuncKey, int]]:
        # (func, line) of each frame, leaf first
        _check_index(idx, self.stack_count, "stack")
        chain = []
        stack_idx = idx  # type: typing.Optional[int]
        while stack_idx is not None:
            frame_idx = self._stack_frame[stack_idx]
            func_idx = self._frame_func[frame_idx]
            chain.append(
                (
                    FuncKey(self._func_name[func_idx], self._func_filename[func_idx], self._func_first_line[func_idx]),
                    self._frame_line[frame_idx],
                )
            )
            stack_idx = self._stack_parent[stack_idx]
        return chain

    def check_stack_ids(self, stack_ids: typing.Iterable[typing.Optional[StackId]], what: str = "sample") -> None:
        """Verify that every stack index of ``stack_ids`` points into the stack table.

        ``None`` is accepted: markers do not always carry a stack.

        :raise IntegrityViolation: if one of them does not.
        """
        count = self.stack_count
        for stack_id in stack_ids:
            if stack_id is not None and not 0 <= stack_id < count:
                raise IntegrityViolation("%s references stack %r but only %d stacks exist" % (what, stack_id, count))

    def check_integrity(self) -> None:
        """Verify every structural invariant of the tables.

        :raise IntegrityViolation: if one does not hold.
        """
        frame_count = self.frame_count
        func_count = self.func_count
        if not (len(self._stack_parent) == len(self._stack_frame)):
            raise IntegrityViolation("stack table columns have different lengths")
        if not (len(self._frame_func) == len(self._frame_line)):
            raise IntegrityViolation("frame table columns have different lengths")
        if not (len(self._func_name) == len(self._func_filename) == len(self._func_first_line)):
            raise IntegrityViolation("func table columns have different lengths")
        for idx, (parent, frame) in enumerate(zip(self._stack_parent, self._stack_frame)):
            if not 0 <= frame < frame_count:
                raise IntegrityViolation(
                    "stack %d references frame %r but only %d frames exist" % (idx, frame, frame_count)
                )
            # Parents are always inserted before their children, so this also rules out cycles.
            if parent is not None and not 0 <= parent < idx:
                raise IntegrityViolation("stack %d has parent %r which was not inserted before it" % (idx, parent))
        for idx, func in enumerate(self._frame_func):
            if not 0 <= func < func_count:
                raise IntegrityViolation(
                    "frame %d references func %r but only %d funcs exist" % (idx, func, func_count)
                )

    def to_dict(self) -> typing.Dict[str, typing.Dict[str, typing.List[typing.Any]]]:
        return {
            "stack_table": {
                "parent": list(self._stack_parent),
                "frame": list(self._stack_frame),
            },
            "frame_table": {
                "func": list(self._frame_func),
                "line": list(self._frame_line),
            },
            "func_table": {
                "name": list(self._func_name),
                "filename": list(self._func_filename),
                "first_line": list(self._func_first_line),
            },
        }

    def __repr__(self):
        return "<%s %d stacks, %d frames, %d funcs>" % (
            self.__class__.__name__,
            self.stack_count,
            self.frame_count,
            self.func_count,
        )


class StackTableSnapshot(StackTableHelpers):
    """Frozen copy of a `StackInterner`, safe to share between threads without locking."""

    __slots__ = (
        "_stack_parent",
        "_stack_frame",
        "_frame_func",
        "_frame_line",
        "_func_name",
        "_func_filename",
        "_func_first_line",
    )

    def __init__(
        self,
        stack_parent: typing.Sequence[typing.Optional[StackId]] = (),
        stack_frame: typing.Sequence[FrameId] = (),
        frame_func: typing.Sequence[FuncId] = (),
        frame_line: typing.Sequence[int] = (),
        func_name: typing.Sequence[str] = (),
        func_filename: typing.Sequence[str] = (),
        func_first_line: typing.Sequence[int] = (),
    ):
        self._stack_parent = tuple(stack_parent)
        self._stack_frame = tuple(stack_frame)
        self._frame_func = tuple(frame_func)
        self._frame_line = tuple(frame_line)
        self._func_name = tuple(func_name)
        self._func_filename = tuple(func_filename)
        self._func_first_line = tuple(func_first_line)

    def __eq__(self, other):
        if not isinstance(other, StackTableSnapshot):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    __hash__ = None  # type: ignore[assignment]


class StackInterner(StackTableHelpers):
    """Owner of the interning tables of one trace.

    All inserts happen under a single lock, so any number of threads can intern concurrently. The lock is fork-safe:
    a child process gets a fresh one, even if the parent was interning when it forked.
    """

    def __init__(self):
        self._lock = forksafe.Lock()

        self._stack_parent = []  # type: typing.List[typing.Optional[StackId]]
        self._stack_frame = []  # type: typing.List[FrameId]
        self._frame_func = []  # type: typing.List[FuncId]
        self._frame_line = []  # type: typing.List[int]
        self._func_name = []  # type: typing.List[str]
        self._func_filename = []  # type: typing.List[str]
        self._func_first_line = []  # type: typing.List[int]

        self._func_index = {}  # type: typing.Dict[FuncKey, FuncId]
        self._code_index = {}  # type: typing.Dict[types.CodeType, FuncId]
        self._frame_index = {}  # type: typing.Dict[typing.Tuple[FuncId, int], FrameId]
        self._stack_index = {}  # type: typing.Dict[typing.Tuple[int, FrameId], StackId]

    # The `_intern_*` methods must be called with the lock held.

    def _intern_func(self, key: FuncKey) -> FuncId:
        func_id = self._func_index.get(key)
        if func_id is None:
            func_id = self._func_index[key] = len(self._func_name)
            self._func_name.append(key.name)
            self._func_filename.append(key.filename)
            self._func_first_line.append(key.first_line)
        return func_id

    def _intern_code(self, code: types.CodeType) -> FuncId:
        func_id = self._code_index.get(code)
        # Code objects compare equal regardless of their filename
        if func_id is None or self._func_filename[func_id] != code.co_filename:
            func_id = self._code_index[code] = self._intern_func(FuncKey.from_code(code))
        return func_id

    def _intern_frame(self, func_id: FuncId, line: typing.Optional[int]) -> FrameId:
        if line is None:
            line = 0
        key = (func_id, line)
        frame_id = self._frame_index.get(key)
        if frame_id is None:
            frame_id = self._frame_index[key] = len(self._frame_func)
            self._frame_func.append(func_id)
            self._frame_line.append(line)
        return frame_id

    def _intern_frames(self, frame_ids: typing.List[FrameId]) -> typing.Optional[StackId]:
        # frame_ids goes from leaf to root
        parent = None  # type: typing.Optional[StackId]
        stack_index = self._stack_index
        for frame_id in reversed(frame_ids):
            key = (_ROOT if parent is None else parent, frame_id)
            stack_id = stack_index.get(key)
            if stack_id is None:
                stack_id = stack_index[key] = len(self._stack_frame)
                self._stack_parent.append(parent)
                self._stack_frame.append(frame_id)
            parent = stack_id
        return parent

    def intern_frame(self, frame: typing.Optional[types.FrameType]) -> typing.Optional[StackId]:
        """Intern the call stack ending at ``frame``.

        :param frame: The innermost Python frame of the stack.
        :return: The stack index, or `None` if ``frame`` is `None`.
        """
        with self._lock:
            frame_ids = []
            while frame is not None:
                frame_ids.append(self._intern_frame(self._intern_code(frame.f_code), frame.f_lineno))
                frame = frame.f_back
            return self._intern_frames(frame_ids)

    def intern_current_stack(self, skip_frames: int = 0) -> typing.Optional[StackId]:
        """Intern the call stack of the calling thread.

        :param skip_frames: The number of innermost frames to leave out, on top of this method's own frame.
        :return: The stack index, or `None` if there is nothing left once frames are skipped.
        """
        if skip_frames < 0:
            raise ValueError("skip_frames must not be negative")
        try:
            frame = sys._getframe(skip_frames + 1)
        except ValueError:
            # Call stack is not deep enough
            return None
        return self.intern_frame(frame)

    def intern_walk(self, walk: WalkType) -> typing.Optional[StackId]:
        """Intern a call stack given as ``(func, line)`` pairs, innermost first.

        ``func`` is either a code object or a ``(name, filename, first_line)`` triple.
        """
        with self._lock:
            frame_ids = []
            for func, line in walk:
                if isinstance(func, types.CodeType):
                    func_id = self._intern_code(func)
                else:
                    func_id = self._intern_func(func if isinstance(func, FuncKey) else FuncKey(*func))
                frame_ids.append(self._intern_frame(func_id, line))
            return self._intern_frames(frame_ids)

    def _export_chain(self, idx: StackId) -> typing.List[typing.Tuple[FuncKey, int]]:
        with self._lock:
            return self._chain(idx)

    def convert(self, source: StackTableHelpers, stack_id: StackId) -> StackId:
        """Copy the stack ``stack_id`` of ``source`` into this interner.

        Funcs, frames and stack nodes that already exist here are reused.

        :param source: The interner or snapshot owning ``stack_id``.
        :return: The index of the same call stack in this interner.
        :raise IndexError: if ``stack_id`` does not exist in ``source``.
        """
        if isinstance(source, StackInterner):
            chain = source._export_chain(stack_id)
        else:
            chain = source._chain(stack_id)
        with self._lock:
            frame_ids = [self._intern_frame(self._intern_func(key), line) for key, line in chain]
            return typing.cast(StackId, self._intern_frames(frame_ids))

    def snapshot(self) -> StackTableSnapshot:
        """Return a frozen copy of the tables as they are now."""
        with self._lock:
            return StackTableSnapshot(
                self._stack_parent,
                self._stack_frame,
                self._frame_func,
                self._frame_line,
                self._func_name,
                self._func_filename,
                self._func_first_line,
            )
