#!/usr/bin/env python3
"""
Exec Encoding
=============
Serializes programs into the fixed-size buffer consumed by the executor.

The stream is a sequence of little-endian uint64 words:
- copyin instructions writing every pointee into the data area
- one call record per call (syscall id, copyout slot, encoded args)
- copyout instructions for resources the kernel writes into memory
- a terminating EOF instruction
"""

import logging
import struct
from typing import Dict, List, Tuple

from program import (
    Arg, ConstArg, DataArg, GroupArg, PointerArg, Program, ResultArg, iter_args, mask,
)
from target_registry import Dir

logger = logging.getLogger(__name__)

EXEC_BUFFER_SIZE = 2 << 20

EXEC_INSTR_EOF = mask(-1, 8)
EXEC_INSTR_COPYIN = mask(-2, 8)
EXEC_INSTR_COPYOUT = mask(-3, 8)

EXEC_ARG_CONST = 0
EXEC_ARG_RESULT = 1
EXEC_ARG_DATA = 2

EXEC_NO_COPYOUT = mask(-1, 8)


class ExecBufferTooSmall(ValueError):
    """The program does not fit into the executor buffer."""


class _ExecWriter:
    def __init__(self, limit: int):
        self.limit = limit
        self.buf = bytearray()

    def _grow(self, data: bytes) -> None:
        if len(self.buf) + len(data) > self.limit:
            raise ExecBufferTooSmall(
                f"program needs more than {self.limit} bytes of exec buffer")
        self.buf += data

    def write(self, value: int) -> None:
        self._grow(struct.pack("<Q", mask(value, 8)))

    def write_data(self, data: bytes) -> None:
        padding = (-len(data)) % 8
        self._grow(bytes(data) + b"\x00" * padding)


def _copyout_slots(prog: Program) -> Dict[int, int]:
    """Assign executor result slots to every result that is referenced later."""
    slots: Dict[int, int] = {}
    for call in prog.calls:
        for arg in iter_args(call.args):
            if isinstance(arg, ResultArg) and arg.uses:
                slots[id(arg)] = len(slots)
        if call.ret is not None and call.ret.uses:
            slots[id(call.ret)] = len(slots)
    return slots


def _write_arg(w: _ExecWriter, arg: Arg, slots: Dict[int, int]) -> None:
    if isinstance(arg, ResultArg) and arg.res is not None:
        w.write(EXEC_ARG_RESULT)
        w.write(arg.size())
        w.write(slots[id(arg.res)])
        w.write(arg.type.default())
    elif isinstance(arg, (ConstArg, ResultArg)):
        w.write(EXEC_ARG_CONST)
        w.write(arg.size())
        w.write(arg.val)
    elif isinstance(arg, PointerArg):
        w.write(EXEC_ARG_CONST)
        w.write(8)
        w.write(0 if arg.null else arg.address)
    elif isinstance(arg, DataArg):
        w.write(EXEC_ARG_DATA)
        w.write(len(arg.data))
        w.write_data(arg.data)
    else:
        raise TypeError(f"cannot encode {arg!r}")


def _write_copyin(w: _ExecWriter, addr: int, arg: Arg, slots: Dict[int, int],
                  copyouts: List[Tuple[int, int, int]]) -> None:
    if isinstance(arg, GroupArg):
        offsets, _ = arg.offsets()
        for offset, inner in zip(offsets, arg.inner):
            _write_copyin(w, addr + offset, inner, slots, copyouts)
        return
    if isinstance(arg, DataArg) and (arg.dir == Dir.OUT or not arg.data):
        return
    if isinstance(arg, ResultArg) and arg.dir == Dir.OUT and id(arg) in slots:
        copyouts.append((slots[id(arg)], addr, arg.size()))
    w.write(EXEC_INSTR_COPYIN)
    w.write(addr)
    _write_arg(w, arg, slots)
    if isinstance(arg, PointerArg) and not arg.null:
        _write_copyin(w, arg.address, arg.res, slots, copyouts)


def serialize_for_exec(prog: Program, buffer_size: int = EXEC_BUFFER_SIZE) -> bytes:
    """
    Encode ``prog`` for execution.

    Raises:
        ExecBufferTooSmall: the encoding exceeds ``buffer_size`` bytes
    """
    w = _ExecWriter(buffer_size)
    slots = _copyout_slots(prog)
    for call in prog.calls:
        copyouts: List[Tuple[int, int, int]] = []
        for arg in call.args:
            if isinstance(arg, PointerArg) and not arg.null:
                _write_copyin(w, arg.address, arg.res, slots, copyouts)
        w.write(call.meta.id)
        if call.ret is not None and id(call.ret) in slots:
            w.write(slots[id(call.ret)])
        else:
            w.write(EXEC_NO_COPYOUT)
        w.write(len(call.args))
        for arg in call.args:
            _write_arg(w, arg, slots)
        for slot, addr, size in copyouts:
            w.write(EXEC_INSTR_COPYOUT)
            w.write(slot)
            w.write(addr)
            w.write(size)
    w.write(EXEC_INSTR_EOF)
    return bytes(w.buf)


def prog_is_too_large(prog: Program, buffer_size: int = EXEC_BUFFER_SIZE) -> bool:
    try:
        serialize_for_exec(prog, buffer_size)
    except ExecBufferTooSmall:
        return True
    return False
