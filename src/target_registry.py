#!/usr/bin/env python3
"""
Target Registry
===============
Syscall descriptor catalog and named constants for one OS/architecture pair.

This module provides the read-only Target Context shared by every stage:
- Argument type model (ints, flags, resources, pointers, buffers, structs)
- Syscall descriptors with typed argument schemas
- Named integer constants and flag sets
- Registry that builds targets from ``target_<os>_<arch>`` spec modules
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from importlib import import_module
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


class UnknownTargetError(LookupError):
    """Raised when no descriptor catalog exists for an OS/arch pair."""


class Dir(Enum):
    """Data direction of a pointee."""
    IN = "in"
    OUT = "out"
    INOUT = "inout"


# ----------------------------------------------------------------------------
# Type model
# ----------------------------------------------------------------------------


class Type:
    """Base class of all argument types."""

    kind = ""

    def alignment(self) -> int:
        return 1

    @property
    def varlen(self) -> bool:
        return False


@dataclass(frozen=True)
class IntType(Type):
    size: int = 8
    kind = "int"

    def alignment(self) -> int:
        return self.size


@dataclass(frozen=True)
class ConstType(Type):
    value: int
    size: int = 8
    kind = "const"

    def alignment(self) -> int:
        return self.size


@dataclass(frozen=True)
class FlagsType(Type):
    values: Tuple[int, ...]
    size: int = 8
    kind = "flags"

    def alignment(self) -> int:
        return self.size


@dataclass(frozen=True)
class LenType(Type):
    """Length of the sibling argument or field named ``of``."""
    of: str
    size: int = 8
    kind = "len"

    def alignment(self) -> int:
        return self.size


@dataclass(frozen=True)
class ResourceDesc:
    name: str
    kinds: Tuple[str, ...]
    special_values: Tuple[int, ...]
    size: int = 4

    def compatible_with(self, other: "ResourceDesc") -> bool:
        """True when one kind chain is a prefix of the other (fd vs sock)."""
        shorter = min(len(self.kinds), len(other.kinds))
        return self.kinds[:shorter] == other.kinds[:shorter]


@dataclass(frozen=True)
class ResourceType(Type):
    desc: ResourceDesc
    kind = "resource"

    @property
    def size(self) -> int:
        return self.desc.size

    def alignment(self) -> int:
        return self.desc.size

    def default(self) -> int:
        return self.desc.special_values[0]


@dataclass(frozen=True)
class PtrType(Type):
    elem: Type
    dir: Dir = Dir.IN
    kind = "ptr"
    size = 8

    def alignment(self) -> int:
        return 8


@dataclass(frozen=True)
class BufferType(Type):
    """Variable-length byte buffer: ``string``, ``filename`` or ``blob``."""
    buffer_kind: str = "blob"
    kind = "buffer"

    @property
    def varlen(self) -> bool:
        return True

    @property
    def nul_terminated(self) -> bool:
        return self.buffer_kind in ("string", "filename")


@dataclass(frozen=True)
class Field:
    name: str
    type: Type
    dir: Optional[Dir] = None


@dataclass(frozen=True)
class StructType(Type):
    name: str
    fields: Tuple[Field, ...]
    kind = "struct"

    def alignment(self) -> int:
        return max((f.type.alignment() for f in self.fields), default=1)

    @property
    def varlen(self) -> bool:
        return any(f.type.varlen for f in self.fields)


@dataclass(frozen=True)
class ArrayType(Type):
    elem: Type
    length: Optional[int] = None
    kind = "array"

    def alignment(self) -> int:
        return self.elem.alignment()

    @property
    def varlen(self) -> bool:
        return self.length is None or self.elem.varlen


@dataclass(frozen=True)
class Syscall:
    """A syscall descriptor; ``name`` may carry a ``$variant`` suffix."""
    id: int
    name: str
    call_name: str
    args: Tuple[Field, ...]
    ret: Optional[ResourceType] = None

    def __repr__(self):
        return f"Syscall({self.name}, args={len(self.args)})"


# ----------------------------------------------------------------------------
# Target context
# ----------------------------------------------------------------------------


class Target:
    """Immutable lookup of syscall descriptors and constants."""

    def __init__(self, os_name: str, arch: str, syscalls: List[Syscall],
                 resources: Dict[str, ResourceDesc], consts: Dict[str, int],
                 page_size: int = 4096, num_pages: int = 4096,
                 data_offset: int = 0x20000000):
        self.os = os_name
        self.arch = arch
        self.page_size = page_size
        self.num_pages = num_pages
        self.data_offset = data_offset
        self.syscalls: Tuple[Syscall, ...] = tuple(syscalls)
        self.resources: Mapping[str, ResourceDesc] = MappingProxyType(dict(resources))
        self.const_map: Mapping[str, int] = MappingProxyType(dict(consts))

        by_name: Dict[str, Syscall] = {}
        by_call: Dict[str, List[Syscall]] = {}
        for syscall in self.syscalls:
            by_name[syscall.name] = syscall
            by_call.setdefault(syscall.call_name, []).append(syscall)
        self._by_name = MappingProxyType(by_name)
        self._by_call = MappingProxyType({k: tuple(v) for k, v in by_call.items()})

        logger.debug(f"Built target {self.name} with {len(self.syscalls)} syscalls, "
                     f"{len(self.const_map)} consts")

    @property
    def name(self) -> str:
        return f"{self.os}/{self.arch}"

    @property
    def data_end(self) -> int:
        return self.data_offset + self.page_size * self.num_pages

    def syscall(self, name: str) -> Optional[Syscall]:
        return self._by_name.get(name)

    def syscalls_for(self, call_name: str) -> Tuple[Syscall, ...]:
        """All descriptors (base and variants) for a kernel call name."""
        return self._by_call.get(call_name, ())

    def const(self, name: str) -> Optional[int]:
        return self.const_map.get(name)

    def __repr__(self):
        return f"Target({self.name})"


# ----------------------------------------------------------------------------
# Building targets from spec modules
# ----------------------------------------------------------------------------

_TYPE_EXPR = re.compile(r'\s*([A-Za-z_][\w$]*)\s*(\[)?')
_INT_SIZES = {"int8": 1, "int16": 2, "int32": 4, "int64": 8, "intptr": 8}


def _split_type_args(text: str) -> List[str]:
    """Split the top-level comma separated arguments of ``name[...]``."""
    parts: List[str] = []
    depth = 0
    current = ""
    for ch in text:
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append(current.strip())
            current = ""
        else:
            current += ch
    if current.strip():
        parts.append(current.strip())
    return parts


class _TargetBuilder:
    """Resolves the compact type expressions used by target spec modules."""

    def __init__(self, spec: Dict[str, Any]):
        self.spec = spec
        self.consts: Dict[str, int] = dict(spec.get("consts", {}))
        self.flag_sets: Dict[str, Tuple[int, ...]] = {
            name: tuple(self._value(v) for v in values)
            for name, values in spec.get("flags", {}).items()
        }
        self.resources: Dict[str, ResourceDesc] = {}
        self.struct_specs: Dict[str, List] = dict(spec.get("structs", {}))
        self.structs: Dict[str, StructType] = {}
        self._build_resources(spec.get("resources", []))

    def _value(self, token) -> int:
        if isinstance(token, int):
            return token
        if token in self.consts:
            return self.consts[token]
        try:
            return int(token, 0)
        except ValueError:
            raise ValueError(f"unknown constant '{token}'") from None

    def _build_resources(self, entries: List[Dict[str, Any]]) -> None:
        pending = {entry["name"]: entry for entry in entries}
        while pending:
            progressed = False
            for name, entry in list(pending.items()):
                parent = entry.get("parent")
                if parent and parent not in self.resources:
                    continue
                parent_desc = self.resources.get(parent) if parent else None
                kinds = (parent_desc.kinds if parent_desc else ()) + (name,)
                specials = entry.get("special_values")
                if specials is None and parent_desc:
                    specials = parent_desc.special_values
                self.resources[name] = ResourceDesc(
                    name=name,
                    kinds=kinds,
                    special_values=tuple(self._value(v) for v in specials or [0]),
                    size=entry.get("size", parent_desc.size if parent_desc else 4),
                )
                del pending[name]
                progressed = True
            if not progressed:
                raise ValueError(f"unresolvable resource parents: {sorted(pending)}")

    def type(self, expr: str) -> Type:
        match = _TYPE_EXPR.match(expr)
        if not match:
            raise ValueError(f"bad type expression '{expr}'")
        name = match.group(1)
        args: List[str] = []
        if match.group(2):
            inner = expr[match.end():expr.rstrip().rfind("]")]
            args = _split_type_args(inner)

        if name in _INT_SIZES:
            return IntType(size=_INT_SIZES[name])
        if name == "const":
            size = _INT_SIZES[args[1]] if len(args) > 1 else 8
            return ConstType(value=self._value(args[0]), size=size)
        if name == "flags":
            size = _INT_SIZES[args[1]] if len(args) > 1 else 8
            return FlagsType(values=self.flag_sets[args[0]], size=size)
        if name == "len":
            size = _INT_SIZES[args[1]] if len(args) > 1 else 8
            return LenType(of=args[0], size=size)
        if name == "ptr":
            return PtrType(elem=self.type(args[1]), dir=Dir(args[0]))
        if name == "buffer":
            return PtrType(elem=BufferType("blob"), dir=Dir(args[0]))
        if name in ("string", "filename", "blob"):
            return BufferType(name)
        if name == "array":
            length = int(args[1], 0) if len(args) > 1 else None
            return ArrayType(elem=self.type(args[0]), length=length)
        if name in self.resources:
            return ResourceType(desc=self.resources[name])
        if name in self.struct_specs:
            return self.struct(name)
        raise ValueError(f"unknown type '{name}'")

    def struct(self, name: str) -> StructType:
        if name not in self.structs:
            fields = []
            for entry in self.struct_specs[name]:
                field_dir = Dir(entry[2]) if len(entry) > 2 else None
                fields.append(Field(entry[0], self.type(entry[1]), field_dir))
            self.structs[name] = StructType(name=name, fields=tuple(fields))
        return self.structs[name]

    def build(self) -> Target:
        syscalls: List[Syscall] = []
        for idx, (name, arg_specs, ret) in enumerate(self.spec["syscalls"]):
            args = tuple(Field(arg_name, self.type(type_expr)) for arg_name, type_expr in arg_specs)
            ret_type = ResourceType(desc=self.resources[ret]) if ret else None
            syscalls.append(Syscall(
                id=idx,
                name=name,
                call_name=name.split("$", 1)[0],
                args=args,
                ret=ret_type,
            ))
        return Target(
            os_name=self.spec["os"],
            arch=self.spec["arch"],
            syscalls=syscalls,
            resources=self.resources,
            consts=self.consts,
            page_size=self.spec.get("page_size", 4096),
            num_pages=self.spec.get("num_pages", 4096),
            data_offset=self.spec.get("data_offset", 0x20000000),
        )


def build_target(spec: Dict[str, Any]) -> Target:
    """Build a Target from a spec dictionary (see ``target_linux_amd64``)."""
    return _TargetBuilder(spec).build()


_TARGETS: Dict[Tuple[str, str], Target] = {}


def get_target(os_name: str, arch: str) -> Target:
    """
    Return the Target Context for an OS/architecture pair.

    Raises:
        UnknownTargetError: no ``target_<os>_<arch>`` module is available
    """
    key = (os_name, arch)
    if key in _TARGETS:
        return _TARGETS[key]

    module_name = f"target_{os_name}_{arch}"
    try:
        module = import_module(module_name)
    except ModuleNotFoundError:
        raise UnknownTargetError(f"unknown target {os_name}/{arch}") from None
    if not hasattr(module, "get_target_spec"):
        raise UnknownTargetError(f"module '{module_name}' does not provide get_target_spec()")

    target = build_target(module.get_target_spec())
    logger.info(f"Loaded target {target.name}: {len(target.syscalls)} syscalls")
    _TARGETS[key] = target
    return target
