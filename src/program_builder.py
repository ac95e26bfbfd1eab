"""
Program Builder Module
======================
Converts one process's traced syscalls into a candidate program.

This module implements the core trace-to-program conversion:
- Consults the call selector for every traced call, in order
- Coerces argument tokens into the descriptor's argument types
- Tracks resources returned by earlier calls (return cache)
- Leaves pointer arguments as placeholders for the memory tracker
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from call_selector import CallSelector
from memory_tracker import MemoryTracker
from program import (
    Arg, Call, ConstArg, DataArg, GroupArg, PointerArg, Program, ResultArg, assign_sizes, mask,
)
from target_registry import (
    ArrayType, BufferType, ConstType, Dir, Field, IntType, LenType, PtrType, ResourceType,
    StructType, Target, Type,
)
from trace_parser import (
    ArrayToken, IntExpr, StructToken, Token, TraceCall, TraceNode, eval_bytes, eval_int,
)

logger = logging.getLogger(__name__)


class ReturnCache:
    """Maps observed resource values to the results that produced them."""

    def __init__(self):
        self._cache: Dict[int, List[ResultArg]] = {}

    def cache(self, value: int, arg: ResultArg) -> None:
        self._cache.setdefault(mask(value, arg.size()), []).append(arg)

    def get(self, typ: ResourceType, value: int) -> Optional[ResultArg]:
        """Latest compatible result that returned ``value``."""
        for arg in reversed(self._cache.get(mask(value, typ.size), [])):
            if arg.type.desc.compatible_with(typ.desc):
                return arg
        return None

    def __len__(self):
        return sum(len(v) for v in self._cache.values())


class ProgramContext:
    """Build state for the program of one traced process."""

    def __init__(self, node: TraceNode, target: Target, selector: CallSelector):
        self.node = node
        self.target = target
        self.selector = selector
        self.prog = Program(target)
        self.memory = MemoryTracker(target)
        self.return_cache = ReturnCache()
        self.skipped_calls = 0
        self._pending_results: List[Tuple[int, ResultArg]] = []

    @property
    def pid(self) -> int:
        return self.node.pid

    def fill_out_memory(self) -> None:
        self.memory.fill_out_memory(self.prog)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def gen_call(self, trace_call: TraceCall) -> Optional[Call]:
        selection = self.selector.select(trace_call)
        if selection is None:
            logger.debug(f"pid {self.pid}: skipping unsupported call {trace_call.name}")
            return None

        meta = selection.syscall
        tokens = [trace_call.args[idx] if idx is not None and idx < len(trace_call.args) else None
                  for idx in selection.arg_map]
        args = self._gen_fields(meta.args, tokens, Dir.IN)

        ret = None
        if meta.ret is not None:
            ret = ResultArg(meta.ret, Dir.OUT, val=meta.ret.default())
        if not trace_call.failed:
            if ret is not None:
                self.return_cache.cache(trace_call.ret, ret)
            for value, arg in self._pending_results:
                self.return_cache.cache(value, arg)
        self._pending_results = []

        call = Call(meta, args, ret)
        assign_sizes(call)
        return call

    # ------------------------------------------------------------------
    # Arguments
    # ------------------------------------------------------------------

    def _gen_fields(self, fields: Sequence[Field], tokens: Sequence[Optional[Token]],
                    dir: Dir) -> List[Arg]:
        # Observed len values size the OUT buffers they describe.
        size_hints: Dict[str, int] = {}
        for field, token in zip(fields, tokens):
            if isinstance(field.type, LenType) and token is not None:
                value = eval_int(token, self.target.const_map)
                if value is not None and value >= 0:
                    size_hints[field.type.of] = min(value, self.target.page_size)

        return [self._gen_arg(field.type, field.dir or dir, token, size_hints.get(field.name))
                for field, token in zip(fields, tokens)]

    def _gen_arg(self, typ: Type, dir: Dir, token: Optional[Token],
                 size_hint: Optional[int] = None) -> Arg:
        if isinstance(typ, PtrType):
            return self._gen_ptr(typ, dir, token, size_hint)
        if isinstance(typ, ResourceType):
            return self._gen_resource(typ, dir, token)
        if isinstance(typ, BufferType):
            return self._gen_buffer(typ, dir, token, size_hint)
        if isinstance(typ, StructType):
            return self._gen_struct(typ, dir, token)
        if isinstance(typ, ArrayType):
            return self._gen_array(typ, dir, token)
        if isinstance(typ, ConstType):
            return ConstArg(typ, dir, typ.value)
        if isinstance(typ, LenType):
            return ConstArg(typ, dir, 0)
        value = eval_int(token, self.target.const_map) if token is not None else None
        return ConstArg(typ, dir, value if value is not None else 0)

    def _gen_ptr(self, typ: PtrType, dir: Dir, token: Optional[Token],
                 size_hint: Optional[int]) -> PointerArg:
        if token is None:
            return PointerArg.make_null(typ, dir)
        if isinstance(token, IntExpr):
            if not eval_int(token, self.target.const_map):
                return PointerArg.make_null(typ, dir)
            # strace printed a bare address; the pointee content is unknown
            token = None
        inner = self._gen_arg(typ.elem, typ.dir, token, size_hint)
        return PointerArg(typ, dir, res=inner)

    def _gen_resource(self, typ: ResourceType, dir: Dir, token: Optional[Token]) -> ResultArg:
        value = eval_int(token, self.target.const_map) if token is not None else None
        if dir == Dir.OUT:
            arg = ResultArg(typ, dir, val=typ.default())
            if value is not None:
                self._pending_results.append((value, arg))
            return arg
        if value is None:
            return ResultArg(typ, dir, val=typ.default())
        cached = self.return_cache.get(typ, value)
        if cached is not None:
            return ResultArg(typ, dir, res=cached)
        return ResultArg(typ, dir, val=self._fallback_resource(typ, value))

    @staticmethod
    def _fallback_resource(typ: ResourceType, value: int) -> int:
        """Keep well-known values (stdio, AT_FDCWD); anything else becomes invalid."""
        specials = [mask(v, typ.size) for v in typ.desc.special_values]
        value = mask(value, typ.size)
        return value if value in specials else specials[0]

    def _gen_buffer(self, typ: BufferType, dir: Dir, token: Optional[Token],
                    size_hint: Optional[int]) -> DataArg:
        data = eval_bytes(token) or b""
        if dir == Dir.OUT:
            return DataArg(typ, dir, out_size=size_hint if size_hint is not None else len(data))
        if typ.nul_terminated and not data.endswith(b"\x00"):
            data += b"\x00"
        return DataArg(typ, dir, data=data)

    def _gen_struct(self, typ: StructType, dir: Dir, token: Optional[Token]) -> GroupArg:
        names = {f.name for f in typ.fields}
        if isinstance(token, StructToken) and any(name in names for name, _ in token.fields):
            tokens = [token.get(f.name) for f in typ.fields]
        elif isinstance(token, StructToken):
            tokens = [value for _, value in token.fields]
        elif isinstance(token, ArrayToken):
            tokens = list(token.elems)
        else:
            tokens = []
        tokens = (tokens + [None] * len(typ.fields))[:len(typ.fields)]
        return GroupArg(typ, dir, self._gen_fields(typ.fields, tokens, dir))

    def _gen_array(self, typ: ArrayType, dir: Dir, token: Optional[Token]) -> GroupArg:
        raw = None if isinstance(token, ArrayToken) else eval_bytes(token)
        if raw is not None and isinstance(typ.elem, IntType) and typ.elem.size == 1:
            inner: List[Arg] = [ConstArg(typ.elem, dir, b) for b in raw]
        elif isinstance(token, ArrayToken):
            inner = [self._gen_arg(typ.elem, dir, elem) for elem in token.elems]
        else:
            inner = []
        if typ.length is not None:
            inner = inner[:typ.length]
            while len(inner) < typ.length:
                inner.append(self._gen_arg(typ.elem, dir, None))
        return GroupArg(typ, dir, inner)


def gen_program(node: TraceNode, target: Target, selector: CallSelector) -> ProgramContext:
    """
    Build the candidate program of one traced process.

    Unsupported calls are skipped; the output keeps the order of the
    selected calls.
    """
    ctx = ProgramContext(node, target, selector)
    for trace_call in node.calls:
        call = ctx.gen_call(trace_call)
        if call is None:
            ctx.skipped_calls += 1
            continue
        ctx.prog.calls.append(call)
    logger.debug(f"pid {node.pid}: built {len(ctx.prog.calls)} calls, "
                 f"skipped {ctx.skipped_calls}")
    return ctx
