#!/usr/bin/env python3
"""Call selection: maps traced syscalls onto the target's descriptors."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from target_registry import ConstType, PtrType, StructType, Syscall, Target, Type
from trace_parser import StructToken, Token, TraceCall, eval_int

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Selection:
    """
    Chosen descriptor plus argument mapping.

    ``arg_map[i]`` is the index of the trace token feeding descriptor
    argument ``i``; ``None`` means the builder synthesizes a default.
    """
    syscall: Syscall
    arg_map: Tuple[Optional[int], ...]


class CallSelector(ABC):
    """Policy deciding whether and how a traced call maps to a descriptor."""

    @abstractmethod
    def select(self, call: TraceCall) -> Optional[Selection]:
        """Return a Selection, or None when the call is unsupported."""


def identity_map(syscall: Syscall, num_tokens: int) -> Tuple[Optional[int], ...]:
    return tuple(i if i < num_tokens else None for i in range(len(syscall.args)))


class DefaultCallSelector(CallSelector):
    """
    Name-based selection with variant discrimination.

    Variants (``socket$inet``, ``fcntl$dupfd``) are chosen when every one of
    their ``const`` arguments equals the traced value; otherwise the base
    descriptor of the same name is used if the target has one.
    """

    # strace name -> (descriptor call name, token index per descriptor arg)
    ALIASES: Dict[str, Tuple[str, Tuple[Optional[int], ...]]] = {
        "send": ("sendto", (0, 1, 2, 3, None, None)),
        "recv": ("recvfrom", (0, 1, 2, 3, None, None)),
        "eventfd": ("eventfd2", (0, None)),
        "epoll_create": ("epoll_create1", (None,)),
        "inotify_init": ("inotify_init1", (None,)),
        "fstatat": ("newfstatat", (0, 1, 2, 3)),
        "fstatat64": ("newfstatat", (0, 1, 2, 3)),
        "stat64": ("stat", (0, 1)),
        "lstat64": ("lstat", (0, 1)),
        "fstat64": ("fstat", (0, 1)),
    }

    def __init__(self, target: Target, unsupported: Iterable[str] = ()):
        self.target = target
        self.unsupported = frozenset(unsupported)

    def select(self, call: TraceCall) -> Optional[Selection]:
        if call.name in self.unsupported:
            return None

        name = call.name
        alias_map: Optional[Tuple[Optional[int], ...]] = None
        if name in self.ALIASES:
            name, alias_map = self.ALIASES[name]

        candidates = self.target.syscalls_for(name)
        if not candidates:
            return None

        for syscall in candidates:
            if "$" not in syscall.name:
                continue
            arg_map = alias_map or identity_map(syscall, len(call.args))
            if self._matches_variant(syscall, call, arg_map):
                return Selection(syscall, arg_map)

        base = self.target.syscall(name)
        if base is None:
            logger.debug(f"No variant of {name} matches {call.raw_line[:80]!r}")
            return None
        return Selection(base, alias_map or identity_map(base, len(call.args)))

    def _matches_variant(self, syscall: Syscall, call: TraceCall,
                         arg_map: Tuple[Optional[int], ...]) -> bool:
        for field, idx in zip(syscall.args, arg_map):
            token = call.args[idx] if idx is not None and idx < len(call.args) else None
            if not self._token_matches(field.type, token):
                return False
        return True

    def _token_matches(self, typ: Type, token: Optional[Token]) -> bool:
        """Check every ``const`` reachable in ``typ`` against the traced token."""
        if isinstance(typ, ConstType):
            value = eval_int(token, self.target.const_map)
            mask = (1 << (typ.size * 8)) - 1
            return value is not None and value & mask == typ.value & mask
        if isinstance(typ, PtrType) and isinstance(typ.elem, StructType):
            # sockaddr family and similar tags live in the pointee
            if not isinstance(token, StructToken):
                return not _has_const(typ.elem)
            named = any(name is not None for name, _ in token.fields)
            for pos, field in enumerate(typ.elem.fields):
                if named:
                    inner = token.get(field.name)
                else:
                    inner = token.fields[pos][1] if pos < len(token.fields) else None
                if not self._token_matches(field.type, inner):
                    return False
        return True


def _has_const(typ: StructType) -> bool:
    return any(isinstance(f.type, ConstType) for f in typ.fields)
