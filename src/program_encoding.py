#!/usr/bin/env python3
"""Parses the text form produced by ``Program.serialize`` back into a Program."""

import re
from typing import Dict, List, Optional

from program import (
    Arg, Call, ConstArg, DataArg, GroupArg, PointerArg, Program, ResultArg,
)
from target_registry import (
    ArrayType, BufferType, Dir, PtrType, ResourceType, StructType, Target, Type,
)

_CALL = re.compile(r'^(?:(r\d+)\s*=\s*)?([A-Za-z_][\w$]*)\(')
_NUM = re.compile(r'0x[0-9a-fA-F]+')
_NAME = re.compile(r'r\d+')
_DEC = re.compile(r'\d+')


class DeserializeError(ValueError):
    """Text that is not a program for the given target."""


class _LineParser:
    def __init__(self, target: Target, text: str, names: Dict[str, ResultArg], lineno: int):
        self.target = target
        self.text = text
        self.pos = 0
        self.names = names
        self.lineno = lineno

    def error(self, msg: str) -> DeserializeError:
        return DeserializeError(f"line {self.lineno}: {msg} at column {self.pos}: {self.text!r}")

    def peek(self) -> str:
        while self.pos < len(self.text) and self.text[self.pos] == " ":
            self.pos += 1
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def expect(self, s: str) -> None:
        self.peek()
        if not self.text.startswith(s, self.pos):
            raise self.error(f"expected {s!r}")
        self.pos += len(s)

    def number(self) -> int:
        self.peek()
        match = _NUM.match(self.text, self.pos)
        if not match:
            raise self.error("expected a hex number")
        self.pos = match.end()
        return int(match.group(0), 16)

    def args(self, types: List[Type], dirs: List[Dir], closing: str) -> List[Arg]:
        out: List[Arg] = []
        for i, (typ, dir) in enumerate(zip(types, dirs)):
            if i:
                self.expect(",")
            out.append(self.arg(typ, dir))
        self.expect(closing)
        return out

    def arg(self, typ: Type, dir: Dir) -> Arg:
        if isinstance(typ, PtrType):
            return self.pointer(typ, dir)
        if isinstance(typ, ResourceType):
            return self.resource(typ, dir)
        if isinstance(typ, BufferType):
            return self.data(typ, dir)
        if isinstance(typ, StructType):
            self.expect("{")
            dirs = [f.dir or dir for f in typ.fields]
            return GroupArg(typ, dir, self.args([f.type for f in typ.fields], dirs, "}"))
        if isinstance(typ, ArrayType):
            self.expect("[")
            inner: List[Arg] = []
            while self.peek() != "]":
                if inner:
                    self.expect(",")
                inner.append(self.arg(typ.elem, dir))
            self.expect("]")
            return GroupArg(typ, dir, inner)
        return ConstArg(typ, dir, self.number())

    def pointer(self, typ: PtrType, dir: Dir) -> PointerArg:
        if self.peek() != "&":
            if self.number() != 0:
                raise self.error("non-null pointer without pointee")
            return PointerArg.make_null(typ, dir)
        self.expect("&(")
        address = None
        if self.text.startswith("AUTO", self.pos):
            self.pos += len("AUTO")
        else:
            address = self.number()
        self.expect(")=")
        return PointerArg(typ, dir, res=self.arg(typ.elem, typ.dir), address=address)

    def resource(self, typ: ResourceType, dir: Dir) -> ResultArg:
        ch = self.peek()
        if ch == "<":
            self.expect("<")
            name = self.name()
            self.expect("=>")
            arg = ResultArg(typ, dir, val=self.number())
            self.names[name] = arg
            return arg
        if ch == "r":
            name = self.name()
            if name not in self.names:
                raise self.error(f"undefined result {name}")
            return ResultArg(typ, dir, res=self.names[name])
        return ResultArg(typ, dir, val=self.number())

    def name(self) -> str:
        match = _NAME.match(self.text, self.pos)
        if not match:
            raise self.error("expected a result name")
        self.pos = match.end()
        return match.group(0)

    def data(self, typ: BufferType, dir: Dir) -> DataArg:
        ch = self.peek()
        if ch == "'":
            return DataArg(typ, dir, data=self.quoted())
        self.expect('"')
        end = self.text.find('"', self.pos)
        if end == -1:
            raise self.error("unterminated hex data")
        raw = self.text[self.pos:end]
        self.pos = end + 1
        if self.text.startswith("/", self.pos):
            self.pos += 1
            return DataArg(typ, Dir.OUT, out_size=self._decimal())
        try:
            return DataArg(typ, dir, data=bytes.fromhex(raw))
        except ValueError:
            raise self.error("bad hex data") from None

    def _decimal(self) -> int:
        match = _DEC.match(self.text, self.pos)
        if not match:
            raise self.error("expected a size")
        self.pos = match.end()
        return int(match.group(0))

    def quoted(self) -> bytes:
        self.expect("'")
        out = bytearray()
        while self.pos < len(self.text) and self.text[self.pos] != "'":
            ch = self.text[self.pos]
            if ch == "\\":
                nxt = self.text[self.pos + 1:self.pos + 2]
                if nxt == "x":
                    out.append(int(self.text[self.pos + 2:self.pos + 4], 16))
                    self.pos += 4
                    continue
                out += nxt.encode("latin-1")
                self.pos += 2
                continue
            out += ch.encode("latin-1")
            self.pos += 1
        self.expect("'")
        return bytes(out)


def deserialize(target: Target, data: bytes) -> Program:
    """
    Rebuild a Program from its text form.

    Raises:
        DeserializeError: unknown calls, undefined results or malformed values
    """
    prog = Program(target)
    names: Dict[str, ResultArg] = {}
    for lineno, line in enumerate(data.decode("latin-1").splitlines(), 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        match = _CALL.match(line)
        if not match:
            raise DeserializeError(f"line {lineno}: not a call: {line!r}")
        ret_name, call_name = match.groups()
        meta = target.syscall(call_name)
        if meta is None:
            raise DeserializeError(f"line {lineno}: unknown syscall {call_name}")

        parser = _LineParser(target, line, names, lineno)
        parser.pos = match.end()
        args = parser.args([f.type for f in meta.args], [f.dir or Dir.IN for f in meta.args], ")")

        ret: Optional[ResultArg] = None
        if meta.ret is not None:
            ret = ResultArg(meta.ret, Dir.OUT, val=meta.ret.default())
            if ret_name:
                names[ret_name] = ret
        elif ret_name:
            raise DeserializeError(f"line {lineno}: {call_name} returns no resource")
        prog.calls.append(Call(meta, args, ret))
    return prog
