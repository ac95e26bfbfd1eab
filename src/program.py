#!/usr/bin/env python3
"""
Program Model
=============
Typed, ordered syscall sequences built from traces.

This module holds the fuzzer-facing program representation:
- Argument values (constants, results, pointers, data, groups)
- Calls bound to syscall descriptors
- Length assignment for ``len`` arguments
- Structural validation against the Target Context
- Text serialization (the corpus storage form)
"""

from __future__ import annotations

import logging
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from target_registry import (
    ArrayType, BufferType, ConstType, Dir, Field, LenType, PtrType, ResourceType,
    StructType, Syscall, Target, Type,
)

logger = logging.getLogger(__name__)


class ProgramValidationError(RuntimeError):
    """A program is structurally inconsistent with its target."""


def mask(value: int, size: int) -> int:
    """Truncate ``value`` to an unsigned integer of ``size`` bytes."""
    return value & ((1 << (size * 8)) - 1)


def align_up(value: int, alignment: int) -> int:
    if alignment <= 1:
        return value
    return (value + alignment - 1) // alignment * alignment


# ----------------------------------------------------------------------------
# Arguments
# ----------------------------------------------------------------------------


class Arg:
    """Base class of argument values."""

    def __init__(self, typ: Type, dir: Dir):
        self.type = typ
        self.dir = dir

    def size(self) -> int:
        raise NotImplementedError


class ConstArg(Arg):
    """Value of an int, const, flags or len type."""

    def __init__(self, typ: Type, dir: Dir, val: int):
        super().__init__(typ, dir)
        self.val = mask(val, typ.size)

    def size(self) -> int:
        return self.type.size

    def __repr__(self):
        return f"ConstArg(0x{self.val:x})"


class ResultArg(Arg):
    """
    Resource value: either a literal or a reference to a result produced
    by an earlier call.
    """

    def __init__(self, typ: ResourceType, dir: Dir, res: Optional["ResultArg"] = None,
                 val: int = 0):
        super().__init__(typ, dir)
        self.res = res
        self.val = mask(val, typ.size)
        self.uses: List[ResultArg] = []
        if res is not None:
            res.uses.append(self)

    def size(self) -> int:
        return self.type.size

    def __repr__(self):
        target = "ref" if self.res is not None else f"0x{self.val:x}"
        return f"ResultArg({self.type.desc.name}, {target})"


class PointerArg(Arg):
    """
    Pointer into the program's data area.

    ``address is None`` marks a placeholder that the memory tracker has not
    resolved yet. Null pointers carry ``address == 0`` and no pointee.
    """

    def __init__(self, typ: PtrType, dir: Dir, res: Optional[Arg] = None,
                 address: Optional[int] = None, null: bool = False):
        super().__init__(typ, dir)
        self.res = res
        self.address = address
        self.null = null

    @classmethod
    def make_null(cls, typ: PtrType, dir: Dir) -> "PointerArg":
        return cls(typ, dir, res=None, address=0, null=True)

    @property
    def is_placeholder(self) -> bool:
        return not self.null and self.address is None

    def size(self) -> int:
        return 8

    def __repr__(self):
        if self.null:
            return "PointerArg(null)"
        addr = "?" if self.address is None else f"0x{self.address:x}"
        return f"PointerArg({addr} -> {self.res!r})"


class DataArg(Arg):
    """Byte buffer; OUT buffers only carry their size."""

    def __init__(self, typ: BufferType, dir: Dir, data: bytes = b"", out_size: int = 0):
        super().__init__(typ, dir)
        self.data = bytes(data) if dir != Dir.OUT else b""
        self.out_size = out_size if dir == Dir.OUT else len(self.data)

    def size(self) -> int:
        return self.out_size if self.dir == Dir.OUT else len(self.data)

    def __repr__(self):
        if self.dir == Dir.OUT:
            return f"DataArg(out, {self.out_size})"
        return f"DataArg({self.data[:16]!r})"


class GroupArg(Arg):
    """Struct fields or array elements."""

    def __init__(self, typ: Type, dir: Dir, inner: List[Arg]):
        super().__init__(typ, dir)
        self.inner = inner

    def offsets(self) -> Tuple[List[int], int]:
        """Byte offset of each inner value and the total size."""
        offsets: List[int] = []
        offset = 0
        for arg in self.inner:
            offset = align_up(offset, arg.type.alignment())
            offsets.append(offset)
            offset += arg.size()
        if isinstance(self.type, StructType):
            offset = align_up(offset, self.type.alignment())
        return offsets, offset

    def size(self) -> int:
        return self.offsets()[1]

    def __repr__(self):
        return f"GroupArg({self.type.kind}, {len(self.inner)})"


def iter_args(args: Sequence[Arg]) -> Iterator[Arg]:
    """Pre-order walk over arguments, descending into groups and pointees."""
    for arg in args:
        yield arg
        if isinstance(arg, GroupArg):
            yield from iter_args(arg.inner)
        elif isinstance(arg, PointerArg) and arg.res is not None:
            yield from iter_args([arg.res])


# ----------------------------------------------------------------------------
# Length fields
# ----------------------------------------------------------------------------


def len_of(arg: Arg) -> int:
    """Value a ``len`` field takes when it refers to ``arg``."""
    if isinstance(arg, PointerArg):
        if arg.res is None:
            return 0
        arg = arg.res
    if isinstance(arg, GroupArg) and isinstance(arg.type, ArrayType):
        return len(arg.inner)
    return arg.size()


def _len_targets(fields: Sequence[Field], args: Sequence[Arg]) -> Iterator[Tuple[ConstArg, int]]:
    by_name = {f.name: a for f, a in zip(fields, args)}
    for field, arg in zip(fields, args):
        if isinstance(field.type, LenType) and isinstance(arg, ConstArg):
            referent = by_name.get(field.type.of)
            expected = len_of(referent) if referent is not None else 0
            yield arg, mask(expected, field.type.size)


def _nested_groups(args: Sequence[Arg]) -> Iterator[GroupArg]:
    for arg in iter_args(args):
        if isinstance(arg, GroupArg) and isinstance(arg.type, StructType):
            yield arg


def assign_sizes(call: "Call") -> None:
    """Recompute every ``len`` argument of a call from its referent."""
    for arg, value in _len_targets(call.meta.args, call.args):
        arg.val = value
    for group in _nested_groups(call.args):
        for arg, value in _len_targets(group.type.fields, group.inner):
            arg.val = value


# ----------------------------------------------------------------------------
# Calls and programs
# ----------------------------------------------------------------------------


class Call:
    def __init__(self, meta: Syscall, args: List[Arg], ret: Optional[ResultArg] = None):
        self.meta = meta
        self.args = args
        self.ret = ret

    def __repr__(self):
        return f"Call({self.meta.name}, {len(self.args)} args)"


class Program:
    """An ordered sequence of typed calls for one target."""

    def __init__(self, target: Target, calls: Optional[List[Call]] = None):
        self.target = target
        self.calls: List[Call] = calls if calls is not None else []

    def __len__(self):
        return len(self.calls)

    def __repr__(self):
        return f"Program({self.target.name}, {len(self.calls)} calls)"

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self) -> None:
        """
        Check every call against the target's descriptors.

        Raises:
            ProgramValidationError: on the first inconsistency found
        """
        produced: set = set()
        for idx, call in enumerate(self.calls):
            where = f"call #{idx} {call.meta.name}"
            meta = self.target.syscall(call.meta.name)
            if meta is None or meta != call.meta:
                raise ProgramValidationError(f"{where}: unknown syscall descriptor")
            if len(call.args) != len(meta.args):
                raise ProgramValidationError(
                    f"{where}: expected {len(meta.args)} args, got {len(call.args)}")
            for field, arg in zip(meta.args, call.args):
                self._validate_arg(arg, field.type, produced, f"{where} arg '{field.name}'")
            for arg, expected in _len_targets(meta.args, call.args):
                if arg.val != expected:
                    raise ProgramValidationError(
                        f"{where}: len value 0x{arg.val:x} does not match 0x{expected:x}")
            for group in _nested_groups(call.args):
                for arg, expected in _len_targets(group.type.fields, group.inner):
                    if arg.val != expected:
                        raise ProgramValidationError(
                            f"{where}: len value 0x{arg.val:x} in struct {group.type.name} "
                            f"does not match 0x{expected:x}")
            if call.ret is not None:
                if meta.ret is None or call.ret.type != meta.ret:
                    raise ProgramValidationError(f"{where}: unexpected return resource")
                produced.add(id(call.ret))
            for arg in iter_args(call.args):
                if isinstance(arg, ResultArg) and arg.dir == Dir.OUT:
                    produced.add(id(arg))

    def _validate_arg(self, arg: Arg, typ: Type, produced: set, where: str) -> None:
        if arg.type != typ:
            raise ProgramValidationError(f"{where}: type mismatch ({arg.type.kind} vs {typ.kind})")

        if typ.kind in ("int", "const", "flags", "len"):
            if not isinstance(arg, ConstArg):
                raise ProgramValidationError(f"{where}: expected a constant")
            if isinstance(typ, ConstType) and arg.val != mask(typ.value, typ.size):
                raise ProgramValidationError(f"{where}: const value 0x{arg.val:x} differs")
        elif isinstance(typ, ResourceType):
            if not isinstance(arg, ResultArg):
                raise ProgramValidationError(f"{where}: expected a resource")
            if arg.res is not None and id(arg.res) not in produced:
                raise ProgramValidationError(f"{where}: references a result not produced earlier")
        elif isinstance(typ, PtrType):
            if not isinstance(arg, PointerArg):
                raise ProgramValidationError(f"{where}: expected a pointer")
            if arg.null:
                return
            if arg.address is None:
                raise ProgramValidationError(f"{where}: unresolved pointer")
            end = arg.address + max(arg.res.size(), 1)
            if arg.address < self.target.data_offset or end > self.target.data_end:
                raise ProgramValidationError(
                    f"{where}: pointer 0x{arg.address:x} outside the data area")
            self._validate_arg(arg.res, typ.elem, produced, where + " pointee")
        elif isinstance(typ, BufferType):
            if not isinstance(arg, DataArg):
                raise ProgramValidationError(f"{where}: expected data")
        elif isinstance(typ, StructType):
            if not isinstance(arg, GroupArg) or len(arg.inner) != len(typ.fields):
                raise ProgramValidationError(f"{where}: malformed struct {typ.name}")
            for field, inner in zip(typ.fields, arg.inner):
                self._validate_arg(inner, field.type, produced, f"{where}.{field.name}")
        elif isinstance(typ, ArrayType):
            if not isinstance(arg, GroupArg):
                raise ProgramValidationError(f"{where}: expected an array")
            if typ.length is not None and len(arg.inner) != typ.length:
                raise ProgramValidationError(f"{where}: array length {len(arg.inner)} != {typ.length}")
            for i, inner in enumerate(arg.inner):
                self._validate_arg(inner, typ.elem, produced, f"{where}[{i}]")
        else:
            raise ProgramValidationError(f"{where}: unsupported type {typ!r}")

    # ------------------------------------------------------------------
    # Text serialization
    # ------------------------------------------------------------------

    def serialize(self) -> bytes:
        """Render the program in its text form, one call per line."""
        names: Dict[int, str] = {}
        lines: List[str] = []
        for call in self.calls:
            args = ", ".join(_format_arg(arg, names) for arg in call.args)
            prefix = ""
            if call.ret is not None and call.ret.uses:
                prefix = f"{_name_result(call.ret, names)} = "
            lines.append(f"{prefix}{call.meta.name}({args})")
        return ("\n".join(lines) + "\n").encode() if lines else b""


def _name_result(arg: ResultArg, names: Dict[int, str]) -> str:
    if id(arg) not in names:
        names[id(arg)] = f"r{len(names)}"
    return names[id(arg)]


def _is_printable(data: bytes) -> bool:
    body = data[:-1] if data.endswith(b"\x00") else data
    return all(0x20 <= b < 0x7f for b in body)


def _format_data(arg: DataArg) -> str:
    if arg.dir == Dir.OUT:
        return f'""/{arg.out_size}'
    if arg.data and _is_printable(arg.data):
        out = []
        for b in arg.data:
            ch = chr(b)
            if ch in ("\\", "'"):
                out.append("\\" + ch)
            elif 0x20 <= b < 0x7f:
                out.append(ch)
            else:
                out.append(f"\\x{b:02x}")
        return "'" + "".join(out) + "'"
    return '"' + arg.data.hex() + '"'


def _format_arg(arg: Arg, names: Dict[int, str]) -> str:
    if isinstance(arg, ConstArg):
        return f"0x{arg.val:x}"
    if isinstance(arg, ResultArg):
        if arg.res is not None:
            return _name_result(arg.res, names)
        if arg.uses:
            return f"<{_name_result(arg, names)}=>0x{arg.val:x}"
        return f"0x{arg.val:x}"
    if isinstance(arg, PointerArg):
        if arg.null:
            return "0x0"
        addr = "AUTO" if arg.address is None else f"0x{arg.address:x}"
        return f"&({addr})={_format_arg(arg.res, names)}"
    if isinstance(arg, DataArg):
        return _format_data(arg)
    if isinstance(arg, GroupArg):
        inner = ", ".join(_format_arg(a, names) for a in arg.inner)
        if isinstance(arg.type, StructType):
            return "{" + inner + "}"
        return "[" + inner + "]"
    raise TypeError(f"cannot format {arg!r}")
